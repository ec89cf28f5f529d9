"""
Bootstrap coordinator.

Turns the goal document into the first set of work items, and later turns
gap-analysis output into additional items. There is no election: several
workers may bootstrap an empty store at the same time and every resulting
item is an ordinary claimable item. Redundant work surfaces in review.
"""

import logging

from clawstown.lib.constants import LABEL_DONE, LABEL_TASK
from clawstown.lib.markers import render_marker
from clawstown.lib.types import PlannedItem, render_item_body
from clawstown.lib.validate import validate
from clawstown.store.base import WorkStore

logger = logging.getLogger(__name__)


def _title_key(title: str) -> str:
    return " ".join(title.lower().split())


class BootstrapCoordinator:
    """Creates work items from goals."""

    def __init__(self, store: WorkStore, capability):
        self.store = store
        self.capability = capability

    def needs_bootstrap(self) -> bool:
        """True when the store has never held a task item."""
        return not self.store.list_items(present=[LABEL_TASK], include_closed=True)

    def bootstrap(self, worker_id: str, goals: str) -> list[str]:
        """Decompose goals and create every planned item. Returns new item ids."""
        plan = self.capability.decompose(goals)
        self._check_plan(plan)
        logger.info(f"[BOOTSTRAP] {worker_id}: decomposed goals into {len(plan)} item(s)")
        return [self._create(planned, worker_id) for planned in plan]

    def create_gap_items(self, worker_id: str, goals: str) -> list[str]:
        """Ask for missing work and create items whose titles are new."""
        items = self.store.list_items(present=[LABEL_TASK], include_closed=True)
        open_titles = [i.title for i in items if not i.closed and not i.has(LABEL_DONE)]
        done_titles = [i.title for i in items if i.closed or i.has(LABEL_DONE)]

        gaps = self.capability.find_gaps(goals, open_titles, done_titles)
        self._check_plan(gaps)

        known = {_title_key(i.title) for i in items}
        created = []
        for planned in gaps:
            key = _title_key(planned.title)
            if key in known:
                logger.debug(f"[BOOTSTRAP] skipping existing gap item: {planned.title}")
                continue
            known.add(key)
            created.append(self._create(planned, worker_id))
        if created:
            logger.info(f"[BOOTSTRAP] {worker_id}: created {len(created)} gap item(s)")
        return created

    def _create(self, planned: PlannedItem, worker_id: str) -> str:
        context = render_marker("by", worker=worker_id)
        if planned.context:
            context += "\n" + planned.context
        body = render_item_body(planned.criteria, context=context)
        return self.store.create_item(planned.title, body, [LABEL_TASK])

    @staticmethod
    def _check_plan(plan: list[PlannedItem]) -> None:
        data = {"items": []}
        for planned in plan:
            entry = {"title": planned.title, "criteria": list(planned.criteria)}
            if planned.context:
                entry["context"] = planned.context
            data["items"].append(entry)
        validate(data, "plan")
