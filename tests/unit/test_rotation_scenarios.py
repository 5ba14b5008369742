"""End-to-end key rotation driven the way the controllers drive it.

Each round runs the key controller, deploys the desired configuration and
then migrates every resource to its write key, until nothing changes.
"""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from unittest.mock import MagicMock

from kubernetes import client

from encryption_operator import encryptionconfig
from encryption_operator.controllers.key import KeyController
from encryption_operator.secrets import set_migrated, to_key_state
from encryption_operator.state import AESCBC, KMS, MigratedState
from encryption_operator.statemachine import get_desired_encryption_state

from helpers import (
    COMPONENT,
    GRS,
    KMS_CONFIG,
    SECRETS,
    FakeDeployer,
    FakeOperatorClient,
    fake_precondition,
    fake_provider,
    make_config_secret,
    secret_list,
)

MAX_ROUNDS = 10


class Cluster:
    """Key secrets and the deployed configuration of one component."""

    def __init__(self, mode: str, kms_config: dict | None = None):
        self.secrets: list[client.V1Secret] = []
        self.deployer = FakeDeployer()
        self.operator_client = FakeOperatorClient()
        self.config_history: list[str] = []
        self.deployed_configs: list[dict] = []
        self.apiserver_informer = MagicMock()
        self.set_mode(mode, kms_config)

        core_api = MagicMock()
        core_api.list_namespaced_secret.side_effect = lambda **_: secret_list(*self.secrets)
        core_api.create_namespaced_secret.side_effect = lambda **kwargs: self._create(kwargs["body"])
        self.key_controller = KeyController(
            component=COMPONENT,
            unsupported_config_prefix=[],
            operator_client=self.operator_client,
            event_recorder=MagicMock(),
            apiserver_informer=self.apiserver_informer,
            deployer=self.deployer,
            provider=fake_provider(),
            precondition=fake_precondition(),
            core_api=core_api,
            kms_plugin_hash_fn=MagicMock(return_value="plugin-hash"),
        )

    def _create(self, secret: client.V1Secret) -> client.V1Secret:
        self.secrets.append(secret)
        return secret

    def set_mode(self, mode: str, kms_config: dict | None = None) -> None:
        encryption: dict = {"type": mode}
        if kms_config is not None:
            encryption["kms"] = kms_config
        self.apiserver_informer.get.return_value = {"metadata": {"name": "cluster"}, "spec": {"encryption": encryption}}

    def deployed_config(self) -> dict | None:
        return encryptionconfig.from_secret(self.deployer.secret)

    def key_names(self) -> list[str]:
        return [s.metadata.name for s in self.secrets]

    def deploy(self) -> None:
        """Deploy the desired configuration and let every API server pick it up."""
        current = encryptionconfig.to_encryption_state(self.deployed_config(), self.secrets)
        desired = get_desired_encryption_state(current, self.secrets, GRS)
        self.deployer.secret = make_config_secret(desired)

        config = self.deployed_config()
        self.deployed_configs.append(config)
        config_string = encryptionconfig.config_string_for(config, SECRETS)
        if not self.config_history or self.config_history[-1] != config_string:
            self.config_history.append(config_string)

    def migrate(self) -> None:
        """Rewrite every resource with its write key and record it on the key secret."""
        state = encryptionconfig.to_encryption_state(self.deployed_config(), self.secrets)
        for gr, grs in state.items():
            write_key = grs.write_key
            if write_key is None or not write_key.backed:
                continue
            secret = next(s for s in self.secrets if to_key_state(s).generation == write_key.generation)
            migrated = to_key_state(secret).migrated
            if gr in migrated.resources:
                continue
            done = MigratedState(timestamp=datetime.now(timezone.utc), resources=[*migrated.resources, gr])
            set_migrated(secret, done)

    def snapshot(self) -> tuple:
        return (
            [(s.metadata.name, copy.deepcopy(s.metadata.annotations)) for s in self.secrets],
            self.deployed_config(),
        )

    def converge(self) -> None:
        for _ in range(MAX_ROUNDS):
            before = self.snapshot()
            self.key_controller.sync()
            self.deploy()
            self.migrate()
            if self.snapshot() == before:
                return
        raise AssertionError(f"no convergence after {MAX_ROUNDS} rounds: {self.config_history}")


def kms_provider_names(config: dict) -> set[str]:
    names = set()
    for entry in config.get("resources") or []:
        for provider in entry.get("providers") or []:
            if "kms" in provider:
                names.add(provider["kms"]["name"])
    return names


class TestRotationScenarios:
    """Test cases for complete key lifecycles."""

    def test_first_key_is_read_before_it_is_written(self):
        """Test that enabling aescbc deploys the first key as read key, then as write key."""
        cluster = Cluster(AESCBC)

        cluster.converge()

        assert cluster.key_names() == ["encryption-key-openshift-apiserver-1"]
        assert cluster.config_history == ["identity,aescbc:1", "aescbc:1,identity"]
        assert to_key_state(cluster.secrets[0]).migrated.resources == GRS

    def test_kms_round_trip_never_reuses_a_provider_name(self):
        """Test that KMS, aescbc and KMS again use distinct KMS provider names."""
        cluster = Cluster(KMS, KMS_CONFIG)
        cluster.converge()

        cluster.set_mode(AESCBC)
        cluster.converge()
        assert cluster.config_history[-1] == "aescbc:2,identity"

        cluster.set_mode(KMS, KMS_CONFIG)
        cluster.converge()

        assert cluster.key_names() == [f"encryption-key-openshift-apiserver-{g}" for g in (1, 2, 3)]
        assert cluster.config_history[-1] == "kms:3,identity"

        names = set().union(*(kms_provider_names(c) for c in cluster.deployed_configs))
        generations = {name.split("-")[1] for name in names}
        config_hashes = {name.split("-")[2] for name in names}
        assert generations == {"1", "3"}
        assert len(config_hashes) == 1
        # one name per generation and resource
        assert len(names) == 2 * len(GRS)

    def test_lost_config_is_rebuilt_from_key_secrets(self):
        """Test that deleting the deployed config mid-rotation keeps every key readable."""
        cluster = Cluster(AESCBC)
        cluster.converge()

        cluster.operator_client.spec["unsupportedConfigOverrides"] = {"encryption": {"reason": "rotate"}}
        cluster.key_controller.sync()
        cluster.deploy()
        assert cluster.config_history[-1] == "aescbc:1,aescbc:2,identity"

        cluster.deployer.secret = None
        cluster.config_history.clear()
        cluster.converge()

        assert cluster.key_names() == [
            "encryption-key-openshift-apiserver-1",
            "encryption-key-openshift-apiserver-2",
        ]
        assert cluster.config_history == [
            "identity,aescbc:2,aescbc:1",
            "aescbc:2,aescbc:1,identity",
            "aescbc:2,identity",
        ]
        assert to_key_state(cluster.secrets[1]).migrated.resources == GRS
