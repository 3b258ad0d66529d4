from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

REQUESTS_TOTAL = Counter(
    "notes_requests_total",
    "Total API requests",
    ["endpoint", "outcome"],
)
RATE_LIMITED_TOTAL = Counter(
    "notes_rate_limited_total", "Requests denied by the rate limiter", ["endpoint"]
)
RATELIMIT_RECORDS = Gauge(
    "notes_ratelimit_records", "Live rate limit counter records", ["window"]
)
REQUEST_LATENCY = Histogram(
    "notes_request_latency_seconds", "Request latency in seconds", ["endpoint"]
)


def render_metrics() -> bytes:
    return generate_latest()


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
