"""
Post-merge feedback loop.

Runs validation against the integration branch and converts failures into
ordinary claimable work (`task` + `failing`). Items are deduplicated by a
signature of the normalized failure output so N workers reaching the same
failure produce one item, on a best-effort basis without transactions.
"""

import hashlib
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable

from clawstown.lib.constants import LABEL_DONE, LABEL_FAILING, LABEL_TASK
from clawstown.lib.markers import find_marker, render_marker
from clawstown.lib.types import render_item_body
from clawstown.store.base import WorkStore

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 4000
MAX_TITLE_DETAIL = 80

_VOLATILE_PATTERNS = [
    re.compile(r'\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?'),
    re.compile(r'0x[0-9a-fA-F]+'),
    re.compile(r'\b\d+(?:\.\d+)?\s*(?:ms|s|sec|secs|seconds)\b'),
    re.compile(r'\bpid[ =:]\d+\b', re.IGNORECASE),
]


def failure_signature(details: str) -> str:
    """Stable hash of failure output, ignoring timings, addresses and whitespace."""
    text = details
    for pattern in _VOLATILE_PATTERNS:
        text = pattern.sub("#", text)
    text = re.sub(r'\s+', ' ', text).strip()
    return hashlib.sha1(text.encode("utf-8")).hexdigest()[:12]


def _id_order(item_id: str):
    return (len(item_id), item_id)


def _headline(details: str) -> str:
    for line in details.splitlines():
        line = line.strip()
        if line:
            return line[:MAX_TITLE_DETAIL]
    return "validation failed"


@dataclass
class FeedbackOutcome:
    passed: bool
    signature: str | None = None
    item_id: str | None = None
    created: bool = False


class FeedbackLoop:
    """Validation -> failing work item."""

    def __init__(
        self,
        store: WorkStore,
        validate: Callable,
        settle_delay: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.validate = validate
        self.settle_delay = settle_delay
        self.sleep = sleep

    def find_failing_items(self, signature: str) -> list:
        """Open failing items recording this signature, oldest id first."""
        matches = []
        for item in self.store.list_items(present=[LABEL_FAILING], absent=[LABEL_DONE]):
            marker = find_marker(item.body, "failure")
            if marker and marker.get("signature") == signature:
                matches.append(item)
        return sorted(matches, key=lambda i: _id_order(i.id))

    def run(self, merged_change_id: str | None = None) -> FeedbackOutcome:
        result = self.validate()
        if result.passed:
            logger.info("[FEEDBACK] validation passed")
            return FeedbackOutcome(passed=True)
        return self.report_failure(result.details, merged_change_id)

    def report_failure(self, details: str, merged_change_id: str | None = None) -> FeedbackOutcome:
        signature = failure_signature(details)
        existing = self.find_failing_items(signature)
        if existing:
            logger.info(f"[FEEDBACK] failure {signature} already tracked by item {existing[0].id}")
            return FeedbackOutcome(passed=False, signature=signature, item_id=existing[0].id)

        item_id = self.store.create_item(
            f"Fix failing validation: {_headline(details)}",
            self._render_body(details, signature, merged_change_id),
            [LABEL_TASK, LABEL_FAILING],
        )
        logger.info(f"[FEEDBACK] created failing item {item_id} for signature {signature}")

        # Concurrent workers may have filed the same failure. Smallest id wins.
        self.sleep(self.settle_delay)
        duplicates = self.find_failing_items(signature)
        if duplicates and duplicates[0].id != item_id:
            winner = duplicates[0].id
            logger.info(f"[FEEDBACK] item {item_id} duplicates {winner}; closing it")
            self.store.close_item(item_id, f"Duplicate of #{winner}.")
            return FeedbackOutcome(passed=False, signature=signature, item_id=winner)

        return FeedbackOutcome(passed=False, signature=signature, item_id=item_id, created=True)

    @staticmethod
    def _render_body(details: str, signature: str, merged_change_id: str | None) -> str:
        output = details.strip()
        if len(output) > MAX_OUTPUT_CHARS:
            output = output[-MAX_OUTPUT_CHARS:]
        source = f"after change #{merged_change_id} merged" if merged_change_id else "on the integration branch"
        context = (
            f"{render_marker('failure', signature=signature)}\n"
            f"Validation failed {source}.\n\n"
            f"```\n{output}\n```"
        )
        return render_item_body(
            [
                "Validation passes on the integration branch",
                "A regression test covers this failure",
            ],
            context=context,
        )
