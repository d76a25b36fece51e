"""
Run State - the audit run and its status state machine.

Status only moves forward::

    pending -> fetching -> analyzing -> evaluating -> complete
        \\_________\\___________\\____________\\______> failed

``complete`` and ``failed`` are terminal.  Every change goes through
``AuditRun.advance`` / ``AuditRun.fail``, which consult
``ALLOWED_TRANSITIONS``; anything else raises ``InvalidTransitionError``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional

from exceptions import InvalidTransitionError
from schemas.pipeline import IngestStats

# Agents that post to the progress feed
AGENT_INGESTION = "INGESTION"
AGENT_SECURITY_ANALYST = "SECURITY_ANALYST"
AGENT_EVALUATOR = "EVALUATOR"


class RunStatus(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    ANALYZING = "analyzing"
    EVALUATING = "evaluating"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[RunStatus] = frozenset({RunStatus.COMPLETE, RunStatus.FAILED})

ALLOWED_TRANSITIONS: Dict[RunStatus, FrozenSet[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.FETCHING, RunStatus.FAILED}),
    RunStatus.FETCHING: frozenset({RunStatus.ANALYZING, RunStatus.FAILED}),
    RunStatus.ANALYZING: frozenset({RunStatus.EVALUATING, RunStatus.FAILED}),
    RunStatus.EVALUATING: frozenset({RunStatus.COMPLETE, RunStatus.FAILED}),
    RunStatus.COMPLETE: frozenset(),
    RunStatus.FAILED: frozenset(),
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def new_run_id() -> str:
    return uuid.uuid4().hex


@dataclass
class AuditRun:
    """One end-to-end audit of one repository snapshot."""

    owner: str
    repo: str
    run_id: str = field(default_factory=new_run_id)
    status: RunStatus = RunStatus.PENDING
    repo_url: str = ""
    commit_hash: str = ""
    truncated: bool = False
    stats: Optional[IngestStats] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def __post_init__(self):
        if not self.repo_url:
            self.repo_url = f"https://github.com/{self.owner}/{self.repo}"

    def advance(self, target: RunStatus) -> None:
        if not can_transition(self.status, target):
            raise InvalidTransitionError(
                f"Run {self.run_id}: cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def fail(self, error: str, error_code: Optional[str] = None) -> None:
        self.advance(RunStatus.FAILED)
        self.error = error
        self.error_code = error_code


__all__ = [
    "AGENT_INGESTION",
    "AGENT_SECURITY_ANALYST",
    "AGENT_EVALUATOR",
    "RunStatus",
    "TERMINAL_STATUSES",
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "new_run_id",
    "AuditRun",
]
