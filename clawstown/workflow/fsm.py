"""Worker state machine using transitions library.

Each worker runs one of these. The state lives only in memory: a restarted
worker starts again from `idle` and rediscovers everything from the store.

Usage:
    from clawstown.workflow.fsm import WorkerFSM

    fsm = WorkerFSM("agent-1")
    fsm.seek_work()   # idle -> find_work
    fsm.claimed()     # find_work -> implement
"""

import logging

from transitions import Machine

logger = logging.getLogger(__name__)


STATES = [
    "idle",
    "bootstrap",
    "find_work",
    "implement",
    "review_peers",
    "respond_reviews",
    "check_progress",
]

# Each trigger becomes a method on the FSM
TRANSITIONS = [
    # Empty store on start-up
    {"trigger": "start_bootstrap", "source": "idle", "dest": "bootstrap"},

    # Back to the queue
    {"trigger": "seek_work", "source": "idle", "dest": "find_work"},
    {"trigger": "seek_work", "source": "bootstrap", "dest": "find_work"},
    {"trigger": "seek_work", "source": "implement", "dest": "find_work"},
    {"trigger": "seek_work", "source": "check_progress", "dest": "find_work"},

    # Find-Work outcomes
    {"trigger": "claimed", "source": "find_work", "dest": "implement"},
    {"trigger": "review", "source": "find_work", "dest": "review_peers"},
    {"trigger": "check", "source": "find_work", "dest": "check_progress"},

    # Review round
    {"trigger": "respond", "source": "review_peers", "dest": "respond_reviews"},
    {"trigger": "reviewed", "source": "respond_reviews", "dest": "check_progress"},

    # Error in any state: drop whatever was in hand
    {"trigger": "recover", "source": "*", "dest": "find_work"},
]


class WorkerFSM:
    """State machine for one worker's loop. Logs every transition."""

    def __init__(self, worker_id: str, initial: str = "idle"):
        self.worker_id = worker_id

        if initial not in STATES:
            logger.warning(f"[FSM] {worker_id}: Unknown state '{initial}', defaulting to 'idle'")
            initial = "idle"

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=initial,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    def on_state_change(self, event) -> None:
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        logger.debug(f"[FSM] {self.worker_id}: {from_state} -> {to_state} ({trigger})")
