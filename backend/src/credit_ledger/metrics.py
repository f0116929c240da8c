"""Business metrics for Prometheus monitoring."""
from prometheus_client import Counter

# Grants
credits_granted_total = Counter(
    "credits_granted_total",
    "Total credits granted into new batches",
    labelnames=["batch_type"],
)

duplicate_purchases_total = Counter(
    "duplicate_purchases_total",
    "Purchase allocations skipped because the payment reference was already allocated",
)

# Usage
credits_deducted_total = Counter(
    "credits_deducted_total",
    "Total credits deducted from batches",
    labelnames=["operation_type"],
)

deductions_rejected_total = Counter(
    "deductions_rejected_total",
    "Deductions refused by the engine",
    labelnames=["reason"],  # insufficient_credits, invalid_amount
)

# Expiration
credits_expired_total = Counter(
    "credits_expired_total",
    "Total credits retired by the expiration sweep",
)

batches_expired_total = Counter(
    "batches_expired_total",
    "Total batches flagged expired by the sweep",
)

# Alerts
credit_alerts_total = Counter(
    "credit_alerts_total",
    "Credit alerts created",
    labelnames=["alert_type"],
)

# Storage
ledger_transaction_retries_total = Counter(
    "ledger_transaction_retries_total",
    "Ledger transactions retried after a transient storage failure",
    labelnames=["operation"],
)
