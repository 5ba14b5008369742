"""Shared pytest configuration."""

from __future__ import annotations

from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def no_k8s_rate_limit():
    """Keep rate limited Kubernetes calls from sleeping in unit tests."""
    with patch("encryption_operator.utils.rate_limit._K8S_RATE_LIMIT_PER_SECOND", 1_000_000.0):
        yield
