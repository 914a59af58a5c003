from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

PROXY_REQUESTS = Counter(
    "nodeproxy_requests_total",
    "Total proxied requests by outcome",
    ["outcome"],  # relayed, no_instance, dial_error, hijack_error, forward_error
)

BYTES_RELAYED = Counter(
    "nodeproxy_bytes_relayed_total",
    "Bytes copied between clients and backends",
    ["direction"],  # upstream: client -> backend, downstream: backend -> client
)

ACTIVE_RELAYS = Gauge(
    "nodeproxy_active_relays",
    "Current relay sessions",
)

DIAL_DURATION = Histogram(
    "nodeproxy_dial_duration_seconds",
    "Backend dial latency",
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
