from app.config import Settings as OrderSettings


class Settings(OrderSettings):
    kafka_consumer_group: str = "order-queue-worker"
    queue_topic: str = "orders.queue"
    dead_letter_topic: str = "orders.queue.dlq"

    queue_batch_size: int = 10
    queue_poll_timeout_ms: int = 1000
    queue_max_delivery_attempts: int = 3

    metrics_port: int = 8001


settings = Settings()
