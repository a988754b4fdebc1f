from prometheus_client import Counter

EVENTS_HANDLED = Counter(
    "order_events_handled_total",
    "Domain events consumed by the event listener",
    ["event_type", "outcome"],  # outcome: handled | skipped | parse_error | failed
)
