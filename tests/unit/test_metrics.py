"""Tests for Prometheus metrics."""

from __future__ import annotations

from prometheus_client import REGISTRY

from encryption_operator.metrics import (
    api_call_total,
    error_total,
    keys_created_total,
    keys_pruned_total,
    migrations_total,
    queue_requeues_total,
    rate_limit_hits_total,
    reconcile_duration_seconds,
    reconcile_total,
)


class TestMetricsExist:
    """Test that all expected metrics are defined."""

    def test_reconcile_metrics(self):
        # Prometheus counters don't include "_total" in their _name attribute
        assert reconcile_total._name == "encryption_operator_reconcile"
        assert reconcile_duration_seconds._name == "encryption_operator_reconcile_duration_seconds"
        assert error_total._name == "encryption_operator_error"
        assert queue_requeues_total._name == "encryption_operator_queue_requeues"

    def test_key_lifecycle_metrics(self):
        assert keys_created_total._name == "encryption_operator_keys_created"
        assert keys_pruned_total._name == "encryption_operator_keys_pruned"
        assert migrations_total._name == "encryption_operator_migrations"

    def test_api_metrics(self):
        assert api_call_total._name == "encryption_operator_api_call"
        assert rate_limit_hits_total._name == "encryption_operator_rate_limit_hits"


class TestMetricsRecording:
    """Test that metrics record values in the default registry."""

    def test_reconcile_total_increments(self):
        labels = {"controller": "TestController", "result": "success"}
        before = REGISTRY.get_sample_value("encryption_operator_reconcile_total", labels) or 0.0

        reconcile_total.labels(**labels).inc()

        assert REGISTRY.get_sample_value("encryption_operator_reconcile_total", labels) == before + 1

    def test_keys_created_by_mode(self):
        before = REGISTRY.get_sample_value("encryption_operator_keys_created_total", {"mode": "aesgcm"}) or 0.0

        keys_created_total.labels(mode="aesgcm").inc()

        assert REGISTRY.get_sample_value("encryption_operator_keys_created_total", {"mode": "aesgcm"}) == before + 1

    def test_reconcile_duration_observed(self):
        labels = {"controller": "TestController"}
        before = REGISTRY.get_sample_value("encryption_operator_reconcile_duration_seconds_count", labels) or 0.0

        reconcile_duration_seconds.labels(**labels).observe(0.2)

        after = REGISTRY.get_sample_value("encryption_operator_reconcile_duration_seconds_count", labels)
        assert after == before + 1
