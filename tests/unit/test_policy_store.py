"""Tests for the policy store and matcher snapshots."""

import json
import threading

import pytest

from routewise.core.errors import InvalidPolicyTableError, StaleReloadError
from routewise.core.models import RequestContext
from routewise.policy.defaults import default_policy_table
from routewise.policy.matcher import MergeStrategy, PolicyMatcher
from routewise.policy.store import FilePolicyBackend, InMemoryPolicyBackend, PolicyStore


def table_data(version: str, providers: list[str]) -> dict:
    """A one-rule table whose rule sets every field from ``version``."""
    return {
        "version": version,
        "rules": [{
            "id": "only",
            "name": "Only rule",
            "priority": 10,
            "actions": {
                "preferred_providers": providers,
                "fallback_providers": providers,
                "blocked_models": [version],
            },
        }],
    }


CHAT = RequestContext(user_id="u1", request_type="general_chat")


class TestPolicyStoreLoad:
    """Tests for initial loading."""

    def test_starts_with_default_table(self, clock):
        store = PolicyStore(clock=clock)
        assert store.table.version == "1.0.0"
        assert store.snapshot.revision == 0
        assert store.snapshot.source == "default"

    def test_load_from_backend(self, clock):
        store = PolicyStore(InMemoryPolicyBackend(table_data("7", ["vertex"])), clock=clock)
        snapshot = store.load()
        assert snapshot.table.version == "7"
        assert snapshot.source == "memory"

    def test_load_invalid_falls_back_to_defaults(self, clock):
        store = PolicyStore(InMemoryPolicyBackend({"version": "x", "rules": [{"name": "bad"}]}), clock=clock)
        snapshot = store.load()
        assert snapshot.table.version == "1.0.0"
        assert snapshot.source == "default"

    def test_load_empty_backend(self, clock):
        store = PolicyStore(InMemoryPolicyBackend(), clock=clock)
        assert store.load().table == default_policy_table()


class TestPolicyStoreUpdates:
    """Tests for admin updates."""

    def test_update_table_swaps_atomically(self, policy_store, matcher):
        before = policy_store.snapshot
        snapshot = policy_store.update_table(table_data("2.0.0", ["vertex"]), actor="alice")
        assert snapshot.revision == before.revision + 1
        assert matcher.decide(CHAT).preferred_providers == ["vertex"]
        assert before.table.version == "1.0.0"

    def test_update_stamps_audit_fields(self, policy_store, clock):
        policy_store.update_table(table_data("2.0.0", ["vertex"]), actor="alice")
        rule = policy_store.table.get_rule("only")
        assert rule.modified_by == "alice"
        assert rule.last_modified == clock.now()
        assert policy_store.table.last_updated == clock.now()
        history = policy_store.history()
        assert history[-1]["actor"] == "alice"
        assert history[-1]["version"] == "2.0.0"

    def test_rule_without_id_rejected_and_old_table_kept(self, policy_store, matcher):
        before = matcher.decide(CHAT)
        bad = {"version": "2.0.0", "rules": [{"name": "no id", "priority": 5}]}

        with pytest.raises(InvalidPolicyTableError):
            policy_store.update_table(bad, actor="alice")

        assert policy_store.table.version == "1.0.0"
        assert matcher.decide(CHAT) == before

    def test_invalid_update_not_persisted(self, clock):
        backend = InMemoryPolicyBackend()
        store = PolicyStore(backend, clock=clock)
        with pytest.raises(InvalidPolicyTableError):
            store.update_table({"version": "", "rules": []}, actor="alice")
        assert backend.read() is None

    def test_update_rule_upserts(self, policy_store, clock):
        policy_store.update_rule(
            {
                "id": "cost-optimized-default",
                "name": "Cheaper default",
                "priority": 100,
                "actions": {"preferred_providers": ["ollama"]},
            },
            actor="bob",
        )
        table = policy_store.table
        assert len(table.rules) == 3
        replaced = table.get_rule("cost-optimized-default")
        assert replaced.actions.preferred_providers == ["ollama"]
        assert replaced.modified_by == "bob"

        policy_store.update_rule({"id": "new", "name": "New", "priority": 5}, actor="bob")
        assert len(policy_store.table.rules) == 4

    def test_update_rule_invalid(self, policy_store):
        with pytest.raises(InvalidPolicyTableError):
            policy_store.update_rule({"id": "x", "name": "x", "priority": "high"}, actor="bob")
        assert policy_store.table.get_rule("x") is None


class TestReconcile:
    """Tests for reconciliation with the backing store."""

    def test_unchanged_store(self, clock):
        backend = InMemoryPolicyBackend(table_data("1", ["a"]))
        store = PolicyStore(backend, clock=clock)
        store.load()
        assert store.reconcile() is False

    def test_own_write_is_not_a_change(self, clock):
        store = PolicyStore(InMemoryPolicyBackend(), clock=clock)
        store.update_table(table_data("2", ["a"]), actor="alice")
        assert store.reconcile() is False

    def test_external_edit_picked_up(self, clock):
        backend = InMemoryPolicyBackend(table_data("1", ["a"]))
        store = PolicyStore(backend, clock=clock)
        store.load()
        backend.write(table_data("2", ["b"]))
        assert store.reconcile() is True
        assert store.table.version == "2"

    def test_invalid_external_edit_keeps_last_good(self, clock):
        backend = InMemoryPolicyBackend(table_data("1", ["a"]))
        store = PolicyStore(backend, clock=clock)
        store.load()
        backend.write({"version": "2", "rules": [{"priority": 1}]})

        with pytest.raises(StaleReloadError):
            store.reconcile()
        assert store.table.version == "1"

        assert store.reconcile_safely() is False
        assert store.table.version == "1"

    def test_file_backend_roundtrip(self, tmp_path, clock):
        path = tmp_path / "policy.json"
        store = PolicyStore(FilePolicyBackend(path), clock=clock)
        store.update_table(table_data("3", ["vertex"]), actor="alice")

        stored = json.loads(path.read_text())
        assert stored["version"] == "3"

        reloaded = PolicyStore(FilePolicyBackend(path), clock=clock)
        assert reloaded.load().table.version == "3"

    def test_file_removed(self, tmp_path, clock):
        path = tmp_path / "policy.json"
        store = PolicyStore(FilePolicyBackend(path), clock=clock)
        store.update_table(table_data("3", ["vertex"]), actor="alice")
        path.unlink()

        with pytest.raises(StaleReloadError, match="missing"):
            store.reconcile()
        assert store.table.version == "3"

    def test_file_corrupted(self, tmp_path, clock):
        path = tmp_path / "policy.json"
        store = PolicyStore(FilePolicyBackend(path), clock=clock)
        store.update_table(table_data("3", ["vertex"]), actor="alice")
        path.write_text("{not json")

        assert store.reconcile_safely() is False
        assert store.table.version == "3"


class TestAtomicReload:
    """Concurrent decisions during table swaps see whole tables only."""

    def test_no_mixed_decisions(self, clock):
        store = PolicyStore(InMemoryPolicyBackend(), clock=clock)
        store.update_table(table_data("old", ["old-provider"]), actor="setup")
        matcher = PolicyMatcher(store, MergeStrategy.HIGHEST_PRIORITY_WINS, clock=clock)

        mixed = []
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                d = matcher.decide(CHAT)
                version = d.policy_version
                expected = ["old-provider"] if version == "old" else ["new-provider"]
                if (
                    d.preferred_providers != expected
                    or d.fallback_providers != expected
                    or d.blocked_models != [version]
                ):
                    mixed.append(d)

        def writer():
            for i in range(200):
                if i % 2:
                    store.update_table(table_data("old", ["old-provider"]), actor="w")
                else:
                    store.update_table(table_data("new", ["new-provider"]), actor="w")

        readers = [threading.Thread(target=reader) for _ in range(4)]
        for t in readers:
            t.start()
        writer()
        stop.set()
        for t in readers:
            t.join()

        assert mixed == []
