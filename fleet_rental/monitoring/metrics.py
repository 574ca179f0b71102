from prometheus_client import Counter, Gauge, Histogram, Info
from prometheus_fastapi_instrumentator import Instrumentator

SERVICE = "fleet-rental"

# Business metrics
rental_transitions_total = Counter(
    "fleet_rental_transitions_total",
    "Committed rental status transitions",
    ["service", "trigger", "to_status"],
)

rental_transition_failures_total = Counter(
    "fleet_rental_transition_failures_total",
    "Rejected rental transition attempts",
    ["service", "trigger", "reason"],  # reason=exception code
)

handovers_total = Counter(
    "fleet_rental_handovers_total",
    "Processed vehicle handovers",
    ["service", "action"],  # action=accept/reject
)

evidence_uploads_total = Counter(
    "fleet_rental_evidence_uploads_total",
    "Evidence photos attached to rentals",
    ["service", "phase"],
)

payments_total = Counter(
    "fleet_rental_payments_total",
    "Recorded settlement payments",
    ["service", "method", "direction", "status"],
)

settled_amount = Histogram(
    "fleet_rental_settled_amount",
    "Settlement payment amounts in minor currency units",
    ["service", "direction"],
    buckets=[0, 10_000, 50_000, 100_000, 250_000, 500_000, 1_000_000, 5_000_000],
)

# Technical metrics
circuit_breaker_state = Gauge(
    "fleet_rental_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["service", "circuit_name"],  # circuit_name=directory/storage
)

circuit_breaker_failures = Counter(
    "fleet_rental_circuit_breaker_failures_total",
    "Total circuit breaker failures",
    ["service", "circuit_name"],
)

# Application info
app_info = Info("fleet_rental_app_info", "Application information")


def record_transition(trigger: str, to_status: str) -> None:
    rental_transitions_total.labels(
        service=SERVICE, trigger=trigger, to_status=to_status
    ).inc()


def record_transition_failure(trigger: str, reason: str) -> None:
    rental_transition_failures_total.labels(
        service=SERVICE, trigger=trigger, reason=reason
    ).inc()


def record_payment(method: str, direction: str, status: str, amount: int) -> None:
    payments_total.labels(
        service=SERVICE, method=method, direction=direction, status=status
    ).inc()
    settled_amount.labels(service=SERVICE, direction=direction).observe(amount)


def setup_instrumentator() -> Instrumentator:
    instrumentator = Instrumentator(
        should_group_status_codes=False,
        should_ignore_untemplated=True,
        should_respect_env_var=False,
        should_instrument_requests_inprogress=True,
        excluded_handlers=["/metrics", "/api/v1/health"],
        inprogress_name="http_requests_inprogress",
        inprogress_labels=True,
    )

    return instrumentator


def init_app_info(version: str = "1.0.0"):
    app_info.info({"version": version, "service": SERVICE, "component": "api"})
