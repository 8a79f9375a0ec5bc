"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
generations_started_total = Counter(
    "generations_started_total",
    "Total number of generation requests accepted",
    ["quality", "charged"],
)

generations_succeeded_total = Counter(
    "generations_succeeded_total",
    "Total number of generations with at least one image",
    ["quality"],
)

generations_failed_total = Counter(
    "generations_failed_total",
    "Total number of failed generations",
    ["reason"],  # safety / upstream / database / rate_limit / quota
)

token_operations_total = Counter(
    "token_operations_total",
    "Total token ledger operations",
    ["type"],  # purchase, bonus, generation, refund
)

token_refunds_total = Counter(
    "token_refunds_total",
    "Total refunded tokens",
    ["reason"],
)

balance_rejected_total = Counter(
    "balance_rejected_total",
    "Total spend rejections due to insufficient balance",
)

bonus_claims_total = Counter(
    "bonus_claims_total",
    "Daily bonus claim attempts",
    ["result"],  # claimed / already_claimed
)

payment_webhooks_total = Counter(
    "payment_webhooks_total",
    "Payment webhook events",
    ["event", "result"],
)

gemini_requests_total = Counter(
    "gemini_requests_total",
    "Total Gemini API requests",
    ["status"],
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half-open)",
    ["name"],
)

# Histograms
gemini_request_duration_seconds = Histogram(
    "gemini_request_duration_seconds",
    "Gemini API request duration",
    buckets=[1, 5, 10, 30, 60, 120, 180],
)

generation_duration_seconds = Histogram(
    "generation_duration_seconds",
    "End-to-end generation request duration",
    ["quality"],
    buckets=[1, 5, 10, 30, 60, 120, 300],
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
