from contextlib import asynccontextmanager

from fastapi import FastAPI
from shared import RequestIDMiddleware, register_exception_handlers

from .rate_limit import SlidingWindowLimiter
from .routes import register_routes
from .settings import auth_settings
from .startup import init_service_startup, setup_instrumentation, setup_logging, shutdown_instrumentation


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Database readiness and migrations before serving requests
    await init_service_startup(app)
    yield
    await shutdown_instrumentation(app)


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title="Auth Service", version="0.1.0", lifespan=lifespan)
    app.state.refresh_limiter = SlidingWindowLimiter(auth_settings().refresh_rate_limit_per_minute, window_seconds=60)
    app.add_middleware(RequestIDMiddleware)
    register_exception_handlers(app)
    setup_instrumentation(app)
    register_routes(app)
    return app


# Module-level instance for ASGI servers
app = create_app()
