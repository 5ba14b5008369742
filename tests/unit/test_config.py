"""Tests for operator configuration."""

from __future__ import annotations

import pytest

from encryption_operator.config import OperatorConfig
from encryption_operator.controllers.prune import DEFAULT_KEYS_TO_KEEP


class TestOperatorConfig:
    """Test cases for OperatorConfig.from_env."""

    def test_defaults(self, monkeypatch):
        for name in ("OPERATOR_COMPONENT", "ENCRYPTION_KEYS_TO_KEEP", "MASTER_NODE_NAMES", "UNSUPPORTED_CONFIG_PREFIX"):
            monkeypatch.delenv(name, raising=False)

        cfg = OperatorConfig.from_env()

        assert cfg.component == "openshift-apiserver"
        assert cfg.keys_to_keep == DEFAULT_KEYS_TO_KEEP
        assert cfg.master_node_names == []
        assert cfg.unsupported_config_prefix == []
        assert cfg.encrypted_resources == "secrets,configmaps"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("OPERATOR_COMPONENT", "kube-apiserver")
        monkeypatch.setenv("OPERATOR_TARGET_NAMESPACE", "openshift-kube-apiserver")
        monkeypatch.setenv("ENCRYPTION_KEYS_TO_KEEP", "3")
        monkeypatch.setenv("MASTER_NODE_NAMES", "master-0, master-1,")
        monkeypatch.setenv("UNSUPPORTED_CONFIG_PREFIX", "apiServerArguments.encryption")
        monkeypatch.setenv("METRICS_PORT", "9090")

        cfg = OperatorConfig.from_env()

        assert cfg.component == "kube-apiserver"
        assert cfg.target_namespace == "openshift-kube-apiserver"
        assert cfg.keys_to_keep == 3
        assert cfg.master_node_names == ["master-0", "master-1"]
        assert cfg.unsupported_config_prefix == ["apiServerArguments", "encryption"]
        assert cfg.metrics_port == 9090

    def test_invalid_number(self, monkeypatch):
        monkeypatch.setenv("ENCRYPTION_KEYS_TO_KEEP", "many")

        with pytest.raises(ValueError):
            OperatorConfig.from_env()
