"""Shared constants for the swarm."""

import re

# Logical label vocabulary. Stores may decorate these on the wire.
LABEL_TASK = "task"
LABEL_IN_PROGRESS = "in-progress"
LABEL_REVIEW = "review"
LABEL_BLOCKED = "blocked"
LABEL_DONE = "done"
LABEL_FAILING = "failing"

LABELS = (
    LABEL_TASK,
    LABEL_IN_PROGRESS,
    LABEL_REVIEW,
    LABEL_BLOCKED,
    LABEL_DONE,
    LABEL_FAILING,
)

# name -> (colour, description), as created on GitHub
LABEL_SPECS = {
    LABEL_TASK: ("0075ca", "Work item for the swarm"),
    LABEL_IN_PROGRESS: ("fbca04", "An agent is working on this issue"),
    LABEL_REVIEW: ("d4c5f9", "PR awaiting peer review"),
    LABEL_BLOCKED: ("e4e669", "Blocked on a dependency"),
    LABEL_DONE: ("0e8a16", "Complete and merged"),
    LABEL_FAILING: ("b60205", "Tests are failing after merge"),
}

DEFAULT_LABEL_PREFIX = "clawstown:"
DEFAULT_NAMESPACE = "clawstown"
DEFAULT_GOALS_PATH = "SWARM.md"

STATUS_ITEM_TITLE = "Clawstown status"
TERMINAL_STATUS_TEXT = "All goals satisfied and validation passes. The swarm is idle."

# Worker identities: "agent-0", "agent-1", ...
WORKER_ID_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')

MAX_SLUG_LEN = 40
