"""Prometheus metrics for the Encryption Operator."""

from prometheus_client import Counter, Histogram

# Reconciliation metrics
reconcile_total = Counter(
    "encryption_operator_reconcile_total",
    "Total number of controller syncs",
    ["controller", "result"],
)

reconcile_duration_seconds = Histogram(
    "encryption_operator_reconcile_duration_seconds",
    "Duration of controller syncs in seconds",
    ["controller"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

error_total = Counter(
    "encryption_operator_error_total",
    "Total number of sync errors",
    ["controller", "error_type"],
)

queue_requeues_total = Counter(
    "encryption_operator_queue_requeues_total",
    "Total number of rate limited requeues",
    ["controller"],
)

# Key lifecycle metrics
keys_created_total = Counter(
    "encryption_operator_keys_created_total",
    "Total number of encryption key secrets created",
    ["mode"],
)

keys_pruned_total = Counter(
    "encryption_operator_keys_pruned_total",
    "Total number of encryption key secrets pruned",
)

migrations_total = Counter(
    "encryption_operator_migrations_total",
    "Total number of resource migrations",
    ["resource", "result"],
)

# API call metrics
api_call_total = Counter(
    "encryption_operator_api_call_total",
    "Total number of API calls",
    ["api_type", "operation", "result"],
)

rate_limit_hits_total = Counter(
    "encryption_operator_rate_limit_hits_total",
    "Total number of rate limit hits",
    ["api_type"],
)
