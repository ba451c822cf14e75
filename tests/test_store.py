"""Tests for the credential store."""

import sqlite3

from sparecompute.store import (
    CAPABILITY,
    CONNECTION_TOKEN,
    PLUGIN_ID,
    CredentialStore,
)


class TestCredentialStore:
    def test_set_and_get(self, store):
        store.set_many({PLUGIN_ID: "p-1", CONNECTION_TOKEN: "t-1"})

        assert store.get(PLUGIN_ID) == "p-1"
        assert store.get_many([PLUGIN_ID, CONNECTION_TOKEN]) == {PLUGIN_ID: "p-1", CONNECTION_TOKEN: "t-1"}

    def test_missing_keys_tolerated(self, store):
        assert store.get(PLUGIN_ID) is None
        assert store.get(PLUGIN_ID, "fallback") == "fallback"
        assert store.get_many([PLUGIN_ID, CAPABILITY]) == {}
        assert store.get_many([]) == {}

    def test_values_are_json(self, store):
        capability = {"gpuDescriptor": "GPU", "localEndpoint": None}
        store.set_many({CAPABILITY: capability, "pricing": 0.0001})

        assert store.get(CAPABILITY) == capability
        assert store.get("pricing") == 0.0001

    def test_overwrite(self, store):
        store.set_many({PLUGIN_ID: "old"})
        store.set_many({PLUGIN_ID: "new"})
        assert store.get(PLUGIN_ID) == "new"

    def test_delete(self, store):
        store.set_many({PLUGIN_ID: "p-1", CONNECTION_TOKEN: "t-1", "pricing": 1})
        store.delete(PLUGIN_ID, CONNECTION_TOKEN, "unknown")

        assert store.get_many([PLUGIN_ID, CONNECTION_TOKEN, "pricing"]) == {"pricing": 1}

    def test_delete_identity_keeps_other_keys(self, store):
        store.set_many({PLUGIN_ID: "p-1", CONNECTION_TOKEN: "t-1", CAPABILITY: {"gpuDescriptor": "GPU"}})

        store.delete_identity()

        assert store.get_many([PLUGIN_ID, CONNECTION_TOKEN]) == {}
        assert store.get(CAPABILITY) == {"gpuDescriptor": "GPU"}

    def test_clear(self, store):
        store.set_many({PLUGIN_ID: "p-1"})
        store.clear()
        assert store.get(PLUGIN_ID) is None

    def test_persists_across_instances(self, db_path):
        CredentialStore(db_path=db_path).set_many({PLUGIN_ID: "p-1"})
        assert CredentialStore(db_path=db_path).get(PLUGIN_ID) == "p-1"

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "agent.db"
        CredentialStore(db_path=path)
        assert path.exists()

    def test_undecodable_value_skipped(self, store, db_path):
        store.set_many({PLUGIN_ID: "p-1"})
        with sqlite3.connect(str(db_path)) as conn:
            conn.execute(
                "INSERT INTO settings (key, value_json, updated_at) VALUES (?, ?, ?)",
                (CONNECTION_TOKEN, "{broken", 0),
            )
            conn.commit()

        assert store.get_many([PLUGIN_ID, CONNECTION_TOKEN]) == {PLUGIN_ID: "p-1"}
