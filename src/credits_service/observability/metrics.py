"""Prometheus metrics for the credit ledger."""

from prometheus_client import Counter, Histogram

LEDGER_MUTATIONS = Counter(
    "credits_ledger_mutations_total",
    "Ledger credit and debit calls by outcome",
    labelnames=("kind", "outcome"),
)

INSUFFICIENT_BALANCE_REJECTIONS = Counter(
    "credits_insufficient_balance_total",
    "Debits rejected because the balance was too low",
    labelnames=("reason_code",),
)

LEDGER_OPERATION_LATENCY = Histogram(
    "credits_ledger_operation_duration_seconds",
    "Latency of ledger store operations",
    labelnames=("operation",),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)

USAGE_CHARGES = Counter(
    "credits_usage_charges_total",
    "Metered usage charges by resource type and outcome",
    labelnames=("resource_type", "outcome"),
)

WEBHOOK_EVENTS = Counter(
    "credits_webhook_events_total",
    "Payment provider webhook events by type and outcome",
    labelnames=("event_type", "outcome"),
)

PAYMENT_FAILURES = Counter(
    "credits_payment_failures_total",
    "Failed payment attempts reported by the payment provider",
    labelnames=("event_type",),
)
