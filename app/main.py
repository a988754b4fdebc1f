import logging
from contextlib import asynccontextmanager

from aiokafka import AIOKafkaProducer
from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import make_asgi_app

from app.config import Settings, settings
from app.database import Base, create_engine, create_sessionmaker
from app.middleware.stages import build_pipeline
from app.repositories.order_repository import SqlOrderRepository
from app.routers import orders
from app.services.event_publisher import KafkaEventPublisher
from app.services.order_service import OrderService
from app.utils.logging import setup_logging
from shared.tracing import setup_tracing

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

setup_tracing("order-api", settings.otlp_endpoint, enabled=settings.tracing_enabled)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config: Settings = app.state.settings
    logger.info("Starting up, creating database tables")
    engine = create_engine(config.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if config.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)

    producer = AIOKafkaProducer(
        bootstrap_servers=config.kafka_bootstrap_servers,
        enable_idempotence=True,
    )
    await producer.start()

    # One repository / publisher / service per process, shared by reference.
    app.state.order_service = OrderService.from_settings(
        config,
        SqlOrderRepository(create_sessionmaker(engine)),
        KafkaEventPublisher(producer, config.events_topic, config.publish_retry_policy()),
    )
    logger.info("Startup complete")

    yield

    await producer.stop()
    await engine.dispose()
    logger.info("Shutting down")


def create_app(config: Settings = settings, *, with_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title="Order Management API",
        version="1.0.0",
        lifespan=lifespan if with_lifespan else None,
    )
    app.state.settings = config
    app.state.pipeline = build_pipeline(config)

    if config.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)
    app.include_router(orders.router, prefix="/orders", tags=["orders"])

    # Expose Prometheus metrics at /metrics
    app.mount("/metrics", make_asgi_app())

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
