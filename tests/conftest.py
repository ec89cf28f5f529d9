"""Shared fixtures: a scripted capability and worker configs."""

from pathlib import Path

import pytest

from clawstown.agents.capability import Capability
from clawstown.lib.config import SwarmConfig
from clawstown.lib.errors import WorkerStuck
from clawstown.lib.types import (
    ImplementResult,
    PlannedItem,
    ReviewDecision,
    ValidationResult,
    Verdict,
)
from clawstown.store.memory import ManualClock, MemoryStore


class FakeCapability(Capability):
    """Capability with scripted answers that records what it was asked."""

    def __init__(self, plan=None, gaps=None, verdict=Verdict.APPROVE, validation=None):
        self.plan = list(plan or [])
        self.gaps = list(gaps or [])
        self.verdict = verdict
        self.validation = validation or ValidationResult(passed=True)
        self.redundant: set[str] = set()
        self.stuck_items: set[str] = set()
        self.implemented: list[tuple[str, str]] = []
        self.reviewed: list[str] = []
        self.responded: list[str] = []
        self.gap_calls: list[tuple[list[str], list[str]]] = []
        self.validations = 0

    def decompose(self, goals):
        return list(self.plan)

    def find_gaps(self, goals, open_titles, done_titles):
        self.gap_calls.append((list(open_titles), list(done_titles)))
        return list(self.gaps)

    def implement(self, item, branch):
        if item.id in self.stuck_items:
            raise WorkerStuck("acceptance criteria contradict each other")
        self.implemented.append((item.id, branch))
        return ImplementResult(branch=branch, summary=f"Implements {item.title}")

    def review(self, change, item):
        self.reviewed.append(change.id)
        return ReviewDecision(
            verdict=self.verdict,
            comments="Reviewed against the acceptance criteria.",
            redundant=change.id in self.redundant,
        )

    def respond(self, change, item, reviews):
        self.responded.append(change.id)

    def validate(self):
        self.validations += 1
        return self.validation


def planned(title: str, *criteria: str) -> PlannedItem:
    return PlannedItem(title=title, criteria=list(criteria) or [f"{title} works"])


def make_config(agent_id: str = "agent-1", **overrides) -> SwarmConfig:
    values = dict(
        repo="octo/project",
        agent_id=agent_id,
        agent_count=3,
        namespace="clawstown",
        label_prefix="clawstown:",
        workdir=Path("."),
        goals_path="SWARM.md",
        base_branch="main",
        quorum=1,
        settle_delay=2.0,
        poll_interval=30.0,
        store_retries=3,
        retry_delay=1.0,
        stale_review_seconds=3600,
    )
    values.update(overrides)
    return SwarmConfig(**values)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def capability():
    return FakeCapability()
