"""Prometheus metrics for monitoring loan transitions, gateway calls and callbacks"""

from prometheus_client import Counter, Histogram

# Lifecycle metrics
loan_transition_counter = Counter(
    "jamii_loan_transitions_total",
    "Loan state transitions",
    ["field", "state"],  # status | disbursement_status, target state
)

loan_amount_bucket_counter = Counter(
    "jamii_loan_amount_bucket",
    "Loan applications by amount bucket",
    ["bucket"],  # <=10k, 10k-50k, 50k-200k, 200k+
)

# Gateway metrics
gateway_latency_histogram = Histogram(
    "mpesa_request_latency_seconds",
    "M-PESA API response time",
    ["operation"],  # oauth | stk_push | b2c
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

gateway_failure_counter = Counter(
    "mpesa_request_failures_total",
    "Failed M-PESA API calls",
    ["operation"],
)

# Callback metrics
callback_counter = Counter(
    "mpesa_callbacks_total",
    "Gateway callbacks received",
    ["kind", "outcome"],  # collection | disbursement | disbursement_timeout, applied | invalid | miss | error
)

# Mail metrics
mail_failure_counter = Counter(
    "mail_failures_total",
    "Failed mail relay deliveries",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_transition(field: str, state: str) -> None:
    """Record a committed loan state change"""
    loan_transition_counter.labels(field=field, state=state).inc()


def record_application(amount: int) -> None:
    """Record loan application metrics for monitoring requested amount distribution"""
    if amount <= 10_000:
        bucket = "<=10k"
    elif amount <= 50_000:
        bucket = "10k-50k"
    elif amount <= 200_000:
        bucket = "50k-200k"
    else:
        bucket = "200k+"

    loan_amount_bucket_counter.labels(bucket=bucket).inc()
    record_transition("status", "pending")
