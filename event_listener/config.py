from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    log_level: str = "INFO"

    # Kafka
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_consumer_group: str = "order-event-listener"
    events_topic: str = "orders.events"
    queue_topic: str = "orders.queue"

    # Enqueue retries
    publish_retry_max_attempts: int = 3
    publish_retry_base_delay: float = 0.05
    publish_retry_max_delay: float = 1.0

    # Observability
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://jaeger:4318/v1/traces"
    metrics_port: int = 8002

    model_config = {"env_file": ".env"}


settings = Settings()
