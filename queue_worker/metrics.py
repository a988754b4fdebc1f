from prometheus_client import Counter, Histogram

MESSAGES_CONSUMED = Counter(
    "queue_messages_consumed_total",
    "Queue messages handled by the worker",
    ["outcome"],  # processed | ignored | redelivered | dead_lettered | unsettled
)

BATCH_SIZE = Histogram(
    "queue_batch_size",
    "Messages per polled batch",
    buckets=[1, 2, 5, 10, 20, 50, 100],
)
