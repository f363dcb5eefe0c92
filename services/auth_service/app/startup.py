import asyncio
import random
import sys

import asyncpg
from fastapi import FastAPI
from loguru import logger
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from .alembic_helper import run_alembic_migrations
from .settings import auth_settings


def setup_logging() -> None:
    """Configure Loguru for consistent, structured service logs."""
    logger.remove()
    logger.configure(extra={"request_id": "-"})
    logger.add(
        sink=sys.stdout,
        level=auth_settings().log_level.upper(),
        backtrace=False,
        diagnose=False,
        colorize=False,
        serialize=False,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
               "<level>{level: <8}</level> | "
               "{extra[request_id]} | "
               "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
               "<level>{message}</level>",
    )
    logger.info("🪵 Logging configured successfully.")


def setup_instrumentation(app: FastAPI) -> None:
    """Attach OpenTelemetry tracing to the FastAPI app when enabled. Idempotent."""
    settings = auth_settings()
    if not settings.otel_enabled:
        logger.info("📈 OpenTelemetry disabled by configuration.")
        return
    if getattr(app.state, "tracer_provider", None) is not None:
        logger.info("📈 OpenTelemetry instrumentation already initialized. Skipping reconfiguration.")
        return

    resource = Resource(attributes={SERVICE_NAME: settings.service_name})
    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=str(settings.otel_endpoint)))
    )
    trace.set_tracer_provider(tracer_provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=tracer_provider)
    app.state.tracer_provider = tracer_provider
    logger.info("📈 OpenTelemetry instrumentation configured.")


async def _check_database_ready(dsn: str, max_retries: int = 5, base_delay: int = 2) -> None:
    """Poll the database connection until ready with exponential backoff and jitter."""
    # Normalize SQLAlchemy async URL to asyncpg-compatible DSN
    if dsn.startswith("postgresql+asyncpg://"):
        dsn = dsn.replace("postgresql+asyncpg://", "postgresql://", 1)

    for attempt in range(max_retries):
        try:
            conn = await asyncpg.connect(dsn=dsn)
            await conn.close()
            logger.info("✅ Database connection successful.")
            return
        except (OSError, asyncpg.PostgresError) as e:
            wait_time = base_delay * (2 ** attempt)
            jitter = random.uniform(0, 0.5)
            total_wait = wait_time + jitter
            logger.warning(f"Database not ready (attempt {attempt + 1}/{max_retries}): {e}. Retrying in {total_wait:.2f}s...")
            await asyncio.sleep(total_wait)
    raise RuntimeError("❌ Database not ready after multiple attempts.")


async def init_service_startup(app: FastAPI) -> None:
    """Wait for the database, apply migrations and flag the app as ready."""
    app.state.is_ready = False
    settings = auth_settings()
    tracer = trace.get_tracer(__name__)
    logger.info(f"🚀 Initializing {settings.service_name} ({settings.environment})...")

    for key, value in settings.safe_dict().items():
        logger.info(f"    {key}: {value}")

    if settings.async_db_url.startswith("postgresql"):
        with tracer.start_as_current_span("db.readiness_check"):
            await _check_database_ready(settings.async_db_url)

        with tracer.start_as_current_span("db.run_migrations"):
            await run_alembic_migrations(settings.sync_db_url)
    else:
        logger.info("Non-Postgres database configured; skipping readiness check and migrations.")

    app.state.is_ready = True
    logger.info(f"✅ {settings.service_name} startup completed successfully.")


async def shutdown_instrumentation(app: FastAPI) -> None:
    """Flush and shut down the OpenTelemetry span processors."""
    tracer_provider = getattr(app.state, "tracer_provider", None)
    if tracer_provider:
        tracer_provider.shutdown()
        logger.info("🧹 OpenTelemetry instrumentation shut down gracefully.")
