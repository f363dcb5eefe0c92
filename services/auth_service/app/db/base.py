from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Root declarative base for the auth service models."""
    pass
