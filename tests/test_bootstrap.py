"""Tests for clawstown.protocol.bootstrap module."""

import pytest

from clawstown.lib.markers import find_marker
from clawstown.lib.types import PlannedItem
from clawstown.lib.validate import ValidationError
from clawstown.protocol.bootstrap import BootstrapCoordinator
from clawstown.protocol.claim import ClaimResolver, ClaimResult

from conftest import FakeCapability, planned

GOALS = "# Goals\n\nBuild a login service.\n"


class TestNeedsBootstrap:
    def test_empty_store(self, store, capability):
        assert BootstrapCoordinator(store, capability).needs_bootstrap()

    def test_existing_task_item(self, store, capability):
        store.create_item("a", "", ["task"])
        assert not BootstrapCoordinator(store, capability).needs_bootstrap()

    def test_closed_task_items_count(self, store, capability):
        item_id = store.create_item("a", "", ["task"])
        store.close_item(item_id)
        assert not BootstrapCoordinator(store, capability).needs_bootstrap()

    def test_unlabeled_items_ignored(self, store, capability):
        store.create_item("Clawstown status", "", [])
        assert BootstrapCoordinator(store, capability).needs_bootstrap()


class TestBootstrap:
    def test_creates_every_planned_item(self, store):
        capability = FakeCapability(plan=[
            planned("Add login endpoint", "POST /login returns a token", "Tests cover bad passwords"),
            planned("Add logout endpoint"),
        ])
        ids = BootstrapCoordinator(store, capability).bootstrap("agent-1", GOALS)

        assert len(ids) == 2
        first = store.get_item(ids[0])
        assert first.title == "Add login endpoint"
        assert first.labels == frozenset({"task"})
        assert "- [ ] POST /login returns a token\n- [ ] Tests cover bad passwords\n" in first.body
        assert find_marker(first.body, "by") == {"worker": "agent-1"}

    def test_context_kept_in_body(self, store):
        capability = FakeCapability(plan=[PlannedItem("Add cache", ["Hits are served"], context="Use LRU")])
        [item_id] = BootstrapCoordinator(store, capability).bootstrap("agent-1", GOALS)
        assert "Use LRU" in store.get_item(item_id).body

    def test_invalid_plan_creates_nothing(self, store):
        capability = FakeCapability(plan=[PlannedItem("No criteria", [])])
        with pytest.raises(ValidationError):
            BootstrapCoordinator(store, capability).bootstrap("agent-1", GOALS)
        assert store.list_items() == []

    def test_concurrent_bootstrap_leaves_everything_claimable(self, store):
        plan = [planned("Add login endpoint"), planned("Add logout endpoint")]
        a = BootstrapCoordinator(store, FakeCapability(plan=plan))
        b = BootstrapCoordinator(store, FakeCapability(plan=plan))
        assert a.needs_bootstrap() and b.needs_bootstrap()

        ids = a.bootstrap("agent-1", GOALS) + b.bootstrap("agent-2", GOALS)
        assert len(ids) == 4

        resolver = ClaimResolver(store)
        results = [resolver.try_claim(item_id, f"agent-{n}") for n, item_id in enumerate(ids)]
        assert results == [ClaimResult.CLAIMED] * 4


class TestGapItems:
    def test_only_new_titles_created(self, store):
        store.create_item("Add login endpoint", "", ["task"])
        done_id = store.create_item("Add logout endpoint", "", ["task", "done"])
        store.close_item(done_id)
        capability = FakeCapability(gaps=[
            planned("add  LOGIN endpoint"),
            planned("Add logout endpoint"),
            planned("Document the API"),
            planned("Document the API"),
        ])

        created = BootstrapCoordinator(store, capability).create_gap_items("agent-2", GOALS)

        assert [store.get_item(i).title for i in created] == ["Document the API"]
        assert capability.gap_calls == [(["Add login endpoint"], ["Add logout endpoint"])]

    def test_no_gaps(self, store, capability):
        store.create_item("Add login endpoint", "", ["task"])
        assert BootstrapCoordinator(store, capability).create_gap_items("agent-2", GOALS) == []
