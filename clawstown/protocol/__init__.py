"""Coordination protocol. Stateless logic run by every worker against the shared store."""

from clawstown.protocol.bootstrap import BootstrapCoordinator
from clawstown.protocol.claim import ClaimResolver, ClaimResult
from clawstown.protocol.feedback import FeedbackLoop, FeedbackOutcome, failure_signature
from clawstown.protocol.merge_gate import MergeGate, MergeResult, readiness
from clawstown.protocol.progress import ProgressChecker, ProgressReport

__all__ = [
    "BootstrapCoordinator",
    "ClaimResolver",
    "ClaimResult",
    "FeedbackLoop",
    "FeedbackOutcome",
    "failure_signature",
    "MergeGate",
    "MergeResult",
    "readiness",
    "ProgressChecker",
    "ProgressReport",
]
