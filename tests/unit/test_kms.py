"""Tests for KMS naming helpers and plugin hash lookup."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from encryption_operator import kms
from encryption_operator.state import GroupResource
from encryption_operator.utils.errors import KMSError

from helpers import CONFIGMAPS, KMS_CONFIG, SECRETS


class TestSocketPath:
    """Test cases for generate_unix_socket_path."""

    def test_socket_path_contains_config_hash(self):
        path, config_hash = kms.generate_unix_socket_path(KMS_CONFIG)

        assert len(config_hash) == 16
        assert path == f"unix:///var/run/kms/kms-{config_hash}.sock"
        assert kms.config_hash_from_endpoint(path) == config_hash

    def test_hash_depends_on_arn_and_region(self):
        other = {"type": "AWS", "aws": {"keyARN": KMS_CONFIG["aws"]["keyARN"], "region": "eu-west-1"}}
        assert kms.kms_config_hash(KMS_CONFIG) != kms.kms_config_hash(other)

    @pytest.mark.parametrize(
        "config,message",
        [
            (None, "cannot be nil"),
            ({"type": "Vault"}, "unsupported KMS provider type"),
            ({"type": "AWS"}, "AWS KMS config cannot be nil"),
            ({"type": "AWS", "aws": {"region": "us-east-1"}}, "KeyARN cannot be empty"),
            ({"type": "AWS", "aws": {"keyARN": "arn"}}, "region cannot be empty"),
        ],
    )
    def test_invalid_config(self, config, message):
        with pytest.raises(KMSError, match=message):
            kms.generate_unix_socket_path(config)

    def test_invalid_endpoint(self):
        with pytest.raises(KMSError):
            kms.config_hash_from_endpoint("unix:///tmp/plugin.sock")


class TestProviderName:
    """Test cases for KMS provider names."""

    def test_round_trip(self):
        name = kms.provider_name(12, "0123456789abcdef", SECRETS)

        generation, config_hash, resource_hash = kms.parse_provider_name(name)

        assert generation == 12
        assert config_hash == "0123456789abcdef"
        assert resource_hash == kms.resource_hash(SECRETS)

    def test_resource_hash_ignores_order(self):
        assert kms.resource_hash(SECRETS, CONFIGMAPS) == kms.resource_hash(CONFIGMAPS, SECRETS)
        assert kms.resource_hash(SECRETS) != kms.resource_hash(GroupResource("route.openshift.io", "routes"))

    def test_invalid_name(self):
        with pytest.raises(KMSError):
            kms.parse_provider_name("kms-1-short-hash")


class TestKeyHash:
    """Test cases for compute_kms_key_hash."""

    def test_empty_key_id(self):
        assert kms.compute_kms_key_hash("0123456789abcdef", "") == ""

    def test_hash_length_and_stability(self):
        first = kms.compute_kms_key_hash("0123456789abcdef", "key-1")
        assert len(first) == 32
        assert first == kms.compute_kms_key_hash("0123456789abcdef", "key-1")
        assert first != kms.compute_kms_key_hash("0123456789abcdef", "key-2")


def _factory(healthz: str = "ok", key_id: str = "key-1") -> MagicMock:
    kms_client = MagicMock()
    kms_client.__enter__.return_value = kms_client
    kms_client.status.return_value = kms.StatusResponse(version="v2", healthz=healthz, key_id=key_id)
    return MagicMock(return_value=kms_client)


class TestFetchKMSPluginHash:
    """Test cases for fetch_kms_plugin_hash."""

    def test_healthy_plugin(self):
        factory = _factory()
        endpoint, config_hash = kms.generate_unix_socket_path(KMS_CONFIG)

        plugin_hash = kms.fetch_kms_plugin_hash(KMS_CONFIG, client_factory=factory)

        factory.assert_called_once_with(endpoint)
        assert plugin_hash == kms.compute_kms_key_hash(config_hash, "key-1")

    def test_unhealthy_plugin(self):
        with pytest.raises(KMSError, match="not healthy"):
            kms.fetch_kms_plugin_hash(KMS_CONFIG, client_factory=_factory(healthz="error"))

    def test_empty_key_id(self):
        with pytest.raises(KMSError, match="empty key ID"):
            kms.fetch_kms_plugin_hash(KMS_CONFIG, client_factory=_factory(key_id=""))

    def test_status_messages_are_built(self):
        """Test that the Status messages can be serialized."""
        messages = kms._messages()
        response = messages.StatusResponse(version="v2", healthz="ok", key_id="abc")

        decoded = messages.StatusResponse.FromString(response.SerializeToString())

        assert decoded.key_id == "abc"
        assert messages.StatusRequest().SerializeToString() == b""
