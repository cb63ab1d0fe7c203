"""
Tests for the allow-list stores, target normalization and secret stores.
"""

import json

import pytest

from core.exceptions import ConfigurationError, StoreCorruptionError
from transport import (
    Credential,
    EnvSecretStore,
    InMemoryAllowListStore,
    InMemorySecretStore,
    JsonFileAllowListStore,
    normalize_target,
)


# ============================================================
# NORMALIZATION TESTS
# ============================================================

class TestNormalizeTarget:
    """Tests for normalize_target."""

    def test_case_whitespace_and_trailing_dot(self):
        """Test that spellings of one host share one identity."""
        assert normalize_target("  WEB-01.corp.  ") == "web-01.corp"

    def test_empty_target_rejected(self):
        """Test that an empty target is a configuration error."""
        with pytest.raises(ConfigurationError):
            normalize_target("   ")


# ============================================================
# IN-MEMORY STORE TESTS
# ============================================================

class TestInMemoryAllowListStore:
    """Tests for InMemoryAllowListStore."""

    @pytest.mark.parametrize("entry", ["*", "*.corp", "web-0?", "a,b"])
    def test_wildcards_rejected(self, entry):
        """Test that wildcard or list entries are never accepted."""
        with pytest.raises(ConfigurationError):
            InMemoryAllowListStore().add(entry)

    def test_add_is_additive_and_idempotent(self):
        """Test that adds append and repeated adds are no-ops."""
        store = InMemoryAllowListStore(initial=["a"])

        assert store.add("b") is True
        assert store.add("B") is False
        assert store.entries() == ["a", "b"]

    def test_manual_entries_not_programmatic(self):
        """Test that only programmatic adds are tracked for cleanup."""
        store = InMemoryAllowListStore()
        store.add("manual", programmatic=False)
        store.add("auto")

        assert store.programmatic_entries() == ["auto"]
        assert store.clear_programmatic() == ["auto"]
        assert store.entries() == ["manual"]

    def test_read_only_store_raises_permission_error(self):
        """Test that a read-only store refuses mutation."""
        with pytest.raises(PermissionError):
            InMemoryAllowListStore(read_only=True).add("web-01")


# ============================================================
# JSON FILE STORE TESTS
# ============================================================

class TestJsonFileAllowListStore:
    """Tests for JsonFileAllowListStore."""

    def test_persists_across_instances(self, tmp_path):
        """Test that entries and their programmatic flag survive a restart."""
        path = tmp_path / "state" / "allow-list.json"
        JsonFileAllowListStore(path).add("web-01")
        JsonFileAllowListStore(path).add("legacy-01", programmatic=False)

        reopened = JsonFileAllowListStore(path)

        assert reopened.entries() == ["web-01", "legacy-01"]
        assert reopened.programmatic_entries() == ["web-01"]
        assert json.loads(path.read_text())["programmatic"] == ["web-01"]

    def test_clear_programmatic(self, tmp_path):
        """Test that clearing rewrites the file without programmatic entries."""
        path = tmp_path / "allow-list.json"
        store = JsonFileAllowListStore(path)
        store.add("legacy-01", programmatic=False)
        store.add("web-01")

        assert store.clear_programmatic() == ["web-01"]
        assert JsonFileAllowListStore(path).entries() == ["legacy-01"]

    def test_corrupt_file_is_fatal(self, tmp_path):
        """Test that an unparseable file raises StoreCorruptionError."""
        path = tmp_path / "allow-list.json"
        path.write_text("{not json")

        with pytest.raises(StoreCorruptionError):
            JsonFileAllowListStore(path).entries()


# ============================================================
# SECRET STORE TESTS
# ============================================================

class TestSecretStores:
    """Tests for the secret stores."""

    def test_in_memory(self):
        """Test named lookup in the in-memory store."""
        store = InMemorySecretStore()
        store.put("svc", Credential("svc-fleet", "s3cret"))

        assert store.get("svc").username == "svc-fleet"
        assert store.get("other") is None

    def test_env_store(self, monkeypatch):
        """Test that the environment store derives variable names from the credential name."""
        monkeypatch.setenv("FLEET_SECRET_FLEET_DEFAULT_USERNAME", "svc-fleet")
        monkeypatch.setenv("FLEET_SECRET_FLEET_DEFAULT_PASSWORD", "s3cret")

        credential = EnvSecretStore().get("fleet-default")

        assert credential == Credential("svc-fleet", "s3cret")
        assert "s3cret" not in repr(credential)

    def test_env_store_missing(self, monkeypatch):
        """Test that a missing username yields no credential."""
        monkeypatch.delenv("FLEET_SECRET_OTHER_USERNAME", raising=False)

        assert EnvSecretStore().get("other") is None
