from pydantic_settings import BaseSettings

from shared.retry import RetryPolicy


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://postgres:postgres@db:5432/orders"
    log_level: str = "INFO"

    # Kafka
    kafka_bootstrap_servers: str = "kafka:9092"
    events_topic: str = "orders.events"

    # Transient store / bus failures
    store_retry_max_attempts: int = 3
    store_retry_base_delay: float = 0.05
    store_retry_max_delay: float = 1.0
    publish_retry_max_attempts: int = 3

    # Optimistic locking
    version_conflict_max_attempts: int = 3
    version_conflict_base_delay: float = 0.05

    # Listing
    default_page_size: int = 20
    max_page_size: int = 100

    # CORS
    cors_allow_origins: list[str] = ["*"]
    cors_allow_methods: list[str] = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
    cors_allow_headers: list[str] = ["Content-Type", "Authorization", "X-Correlation-Id"]

    # Observability
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://jaeger:4318/v1/traces"

    model_config = {"env_file": ".env"}

    def store_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.store_retry_max_attempts,
            base_delay=self.store_retry_base_delay,
            max_delay=self.store_retry_max_delay,
        )

    def publish_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.publish_retry_max_attempts,
            base_delay=self.store_retry_base_delay,
            max_delay=self.store_retry_max_delay,
        )

    def version_conflict_policy(self) -> RetryPolicy:
        # The conflict loop drives its own attempts; only the backoff curve is used.
        return RetryPolicy(
            max_attempts=self.version_conflict_max_attempts,
            base_delay=self.version_conflict_base_delay,
            max_delay=1.0,
            retryable=lambda exc: False,
        )


settings = Settings()
