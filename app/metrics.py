from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "route", "status"],
)

REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "route"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

VERSION_CONFLICTS = Counter(
    "order_version_conflicts_total",
    "Conditional writes rejected because the stored version had advanced",
)

PUBLISH_FAILURES = Counter(
    "order_event_publish_failures_total",
    "Domain events that could not be published",
    ["event_type"],
)

STORE_RETRIES = Counter(
    "order_store_retries_total",
    "Store calls retried after a transient failure",
    ["operation"],
)
