"""Tests for the key state data model."""

from __future__ import annotations

from datetime import datetime, timezone

from encryption_operator.state import (
    AESCBC,
    AESGCM,
    IDENTITY,
    KMS,
    GroupResource,
    GroupResourceState,
    Key,
    KeyState,
    MigratedState,
    equal_key_and_equal_id,
    format_timestamp,
    key_secret_name,
    migrated_for,
    name_to_key_id,
    parse_timestamp,
)


class TestGroupResource:
    """Test cases for GroupResource."""

    def test_core_group_string(self):
        """Test that core group resources render without a group suffix."""
        assert str(GroupResource("", "secrets")) == "secrets"

    def test_named_group_string(self):
        """Test that named groups render as resource.group."""
        assert str(GroupResource("route.openshift.io", "routes")) == "routes.route.openshift.io"

    def test_parse_round_trip(self):
        """Test parsing the string form back."""
        gr = GroupResource("route.openshift.io", "routes")
        assert GroupResource.parse(str(gr)) == gr
        assert GroupResource.parse("secrets") == GroupResource("", "secrets")

    def test_dict_form(self):
        """Test the dict form used in migration annotations."""
        gr = GroupResource("", "configmaps")
        assert gr.to_dict() == {"group": "", "resource": "configmaps"}
        assert GroupResource.from_dict({"resource": "configmaps"}) == gr


class TestNameToKeyID:
    """Test cases for name_to_key_id."""

    def test_valid_suffix(self):
        assert name_to_key_id("encryption-key-openshift-apiserver-12") == 12

    def test_zero_is_invalid(self):
        assert name_to_key_id("encryption-key-openshift-apiserver-0") is None

    def test_missing_suffix(self):
        assert name_to_key_id("encryption-key-openshift-apiserver") is None
        assert name_to_key_id("encryption-key-openshift-apiserver-abc") is None

    def test_key_secret_name(self):
        assert key_secret_name("openshift-apiserver", 3) == "encryption-key-openshift-apiserver-3"


class TestGroupResourceState:
    """Test cases for GroupResourceState helpers."""

    def test_keys_puts_write_key_first(self):
        """Test that keys() returns the write key followed by the read keys."""
        write = KeyState(generation=2, mode=AESCBC)
        read = KeyState(generation=1, mode=AESCBC)
        grs = GroupResourceState(write_key=write, read_keys=[read])

        assert grs.has_write_key()
        assert grs.keys() == [write, read]
        assert grs.latest_key() is write
        assert grs.has_generation(1)
        assert not grs.has_generation(3)

    def test_latest_key_can_be_a_read_key(self):
        """Test that a newer read key counts as latest."""
        grs = GroupResourceState(
            write_key=KeyState(generation=1, mode=AESCBC),
            read_keys=[KeyState(generation=2, mode=AESCBC)],
        )
        assert grs.latest_key().generation == 2

    def test_empty(self):
        grs = GroupResourceState()
        assert not grs.has_write_key()
        assert grs.keys() == []
        assert grs.latest_key() is None


class TestMigratedFor:
    """Test cases for migrated_for."""

    def test_all_migrated(self):
        key = KeyState(
            generation=1,
            migrated=MigratedState(resources=[GroupResource("", "secrets"), GroupResource("", "configmaps")]),
        )
        ok, missing, reason = migrated_for([GroupResource("", "secrets")], key)
        assert ok
        assert missing == []
        assert reason == ""

    def test_missing_resources_reported(self):
        key = KeyState(generation=4, migrated=MigratedState(resources=[GroupResource("", "secrets")]))
        ok, missing, reason = migrated_for([GroupResource("", "secrets"), GroupResource("", "configmaps")], key)
        assert not ok
        assert missing == [GroupResource("", "configmaps")]
        assert "key ID 4" in reason
        assert "configmaps" in reason


class TestEqualKeyAndEqualID:
    """Test cases for equal_key_and_equal_id."""

    def test_same_local_key(self):
        a = KeyState(generation=1, mode=AESCBC, key=Key("1", "abc"))
        b = KeyState(generation=1, mode=AESCBC, key=Key("1", "abc"))
        assert equal_key_and_equal_id(a, b)

    def test_different_material(self):
        a = KeyState(generation=1, mode=AESCBC, key=Key("1", "abc"))
        b = KeyState(generation=1, mode=AESCBC, key=Key("1", "xyz"))
        assert not equal_key_and_equal_id(a, b)

    def test_different_mode_or_generation(self):
        a = KeyState(generation=1, mode=AESCBC, key=Key("1", "abc"))
        assert not equal_key_and_equal_id(a, KeyState(generation=1, mode=AESGCM, key=Key("1", "abc")))
        assert not equal_key_and_equal_id(a, KeyState(generation=2, mode=AESCBC, key=Key("1", "abc")))

    def test_identity_compares_generation_only(self):
        a = KeyState(generation=3, mode=IDENTITY)
        b = KeyState(generation=3, mode=IDENTITY, key=Key("3", "AAAA"))
        assert equal_key_and_equal_id(a, b)

    def test_kms_plugin_hash(self):
        a = KeyState(generation=5, mode=KMS, kms_plugin_hash="h1")
        assert equal_key_and_equal_id(a, KeyState(generation=5, mode=KMS, kms_plugin_hash="h1"))
        assert not equal_key_and_equal_id(a, KeyState(generation=5, mode=KMS, kms_plugin_hash="h2"))
        # keys decoded from a config carry no plugin hash
        assert equal_key_and_equal_id(a, KeyState(generation=5, mode=KMS))


class TestTimestamps:
    """Test cases for timestamp helpers."""

    def test_format_and_parse(self):
        ts = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert format_timestamp(ts) == "2024-01-02T03:04:05Z"
        assert parse_timestamp("2024-01-02T03:04:05Z") == ts

    def test_fractional_seconds_survive(self):
        ts = parse_timestamp("2024-05-01T12:00:00.5Z")

        assert ts == datetime(2024, 5, 1, 12, 0, 0, 500000, tzinfo=timezone.utc)
        assert format_timestamp(ts) == "2024-05-01T12:00:00.5Z"

    def test_nanosecond_timestamps_are_truncated(self):
        ts = parse_timestamp("2024-05-01T12:00:00.123456789Z")
        assert ts.microsecond == 123456
