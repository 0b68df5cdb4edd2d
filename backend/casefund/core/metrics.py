"""Prometheus metrics for the ledger"""
from prometheus_client import Counter, Gauge

# Checkout metrics
checkout_sessions_counter = Counter(
    'casefund_checkout_sessions_total',
    'Total number of checkout sessions created',
    ['intent', 'status']
)

# Webhook metrics
webhook_events_counter = Counter(
    'casefund_webhook_events_total',
    'Total number of webhook events received',
    ['event_type', 'status']
)

webhook_failures_counter = Counter(
    'casefund_webhook_failures_total',
    'Total number of webhook events whose ledger mutation failed',
    ['event_type']
)

webhook_retries_counter = Counter(
    'casefund_webhook_retries_total',
    'Total number of webhook failure retries',
    ['status']
)

open_webhook_failures_gauge = Gauge(
    'casefund_open_webhook_failures',
    'Number of unresolved webhook failures'
)

# Ledger metrics
ledger_credits_counter = Counter(
    'casefund_ledger_credits_total',
    'Total number of ledger credits applied from processor events',
    ['transaction_type']
)

# Withdrawal metrics
withdrawals_counter = Counter(
    'casefund_withdrawals_total',
    'Withdrawal request transitions',
    ['status']
)

# Batch job metrics
batch_runs_counter = Counter(
    'casefund_batch_runs_total',
    'Total number of batch job runs',
    ['job', 'status']
)

reconciliation_diff_gauge = Gauge(
    'casefund_reconciliation_diff',
    'Difference between processor balance and ledger expectation',
    ['account_type']
)
