"""Business metrics for Prometheus monitoring."""
from prometheus_client import Counter, Gauge

# Ledger metrics
credits_deducted_total = Counter(
    "credits_deducted_total",
    "Total credits deducted from accounts",
    labelnames=["type"],
)

credit_deductions_rejected_total = Counter(
    "credit_deductions_rejected_total",
    "Deductions rejected by the ledger",
    labelnames=["reason"],  # insufficient_credits, minimum_balance_violation, account_not_found
)

credits_added_total = Counter(
    "credits_added_total",
    "Total credits added to accounts",
    labelnames=["type"],
)

carry_over_expired_total = Counter(
    "carry_over_expired_total",
    "Total carry-over credits forfeited at expiry",
)

monthly_allocations_total = Counter(
    "monthly_allocations_total",
    "Monthly plan allocations granted",
    labelnames=["tier"],
)

ledger_write_conflicts_total = Counter(
    "ledger_write_conflicts_total",
    "Ledger writes retried after losing a concurrent update",
    labelnames=["operation"],
)

# Meter event metrics
meter_events_enqueued_total = Counter(
    "meter_events_enqueued_total",
    "Meter events accepted into the queue",
    labelnames=["event_name"],
)

meter_events_deduplicated_total = Counter(
    "meter_events_deduplicated_total",
    "Meter events merged into an existing job by idempotency key",
    labelnames=["event_name"],
)

meter_events_delivered_total = Counter(
    "meter_events_delivered_total",
    "Meter events completed",
    labelnames=["outcome"],  # delivered, duplicate
)

meter_events_retried_total = Counter(
    "meter_events_retried_total",
    "Meter event delivery retries scheduled",
    labelnames=["reason"],  # rate_limited, transient
)

meter_events_failed_total = Counter(
    "meter_events_failed_total",
    "Meter events marked permanently failed",
    labelnames=["reason"],  # exhausted, permanent
)

meter_queue_jobs = Gauge(
    "meter_queue_jobs",
    "Meter event jobs by queue state",
    labelnames=["state"],  # waiting, active, completed, failed, delayed
)

meter_worker_in_flight = Gauge(
    "meter_worker_in_flight",
    "Provider calls currently in flight",
)

# Usage reporting metrics
usage_reports_total = Counter(
    "usage_reports_total",
    "Usage period reports",
    labelnames=["result"],  # reported, already_reported, no_customer
)

credits_sync_events_total = Counter(
    "credits_sync_events_total",
    "Cumulative credit values queued by the credits sync job",
)

# Auto top-up metrics
auto_top_ups_total = Counter(
    "auto_top_ups_total",
    "Auto top-up attempts",
    labelnames=["outcome"],  # succeeded, payment_failed, grant_failed
)
