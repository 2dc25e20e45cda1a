"""Apply outcome tracking.

Tracks per-change status (pending, running, applied, failed, blocked,
cancelled) during an apply and persists the result next to the state so
a partial apply can be inspected afterwards.
"""

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from engine.state import StateRecord

logger = logging.getLogger(__name__)

PENDING = 'pending'
RUNNING = 'running'
APPLIED = 'applied'
FAILED = 'failed'
BLOCKED = 'blocked'
CANCELLED = 'cancelled'

UNRESOLVED = (PENDING, BLOCKED, CANCELLED)


@dataclass
class ChangeOutcome:
    """Per-change execution state.

    Attributes:
        address: Resource identity
        action: Planned action
        status: Current status
        attempts: Provider calls made (retries included)
        error: Error message if failed or blocked
        error_type: Exception class name for failures
        started_at: Timestamp when execution started
        completed_at: Timestamp when execution finished
    """
    address: str
    action: str
    status: str = PENDING
    attempts: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def start(self) -> None:
        self.status = RUNNING
        self.started_at = time.time()

    def complete(self) -> None:
        self.status = APPLIED
        self.completed_at = time.time()

    def fail(self, error: str, error_type: Optional[str] = None) -> None:
        self.status = FAILED
        self.completed_at = time.time()
        self.error = error
        self.error_type = error_type

    def block(self, blocker: str) -> None:
        self.status = BLOCKED
        self.error = f"blocked by '{blocker}'"

    def cancel(self) -> None:
        self.status = CANCELLED

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'address': self.address,
            'action': self.action,
            'status': self.status,
        }
        if self.attempts:
            d['attempts'] = self.attempts
        if self.error is not None:
            d['error'] = self.error
        if self.error_type is not None:
            d['error_type'] = self.error_type
        if self.duration is not None:
            d['duration'] = round(self.duration, 3)
        return d


class ApplyResult:
    """Outcome of one apply: per-change outcomes plus resulting state.

    Partial application is a normal result: applied changes stay applied,
    failures and the changes they blocked are listed.
    """

    def __init__(self, workspace: str):
        self.workspace = workspace
        self._outcomes: dict[str, ChangeOutcome] = {}
        self.records: list[StateRecord] = []
        self.cancelled = False
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None

    def add(self, address: str, action: str) -> ChangeOutcome:
        """Register a change for tracking."""
        outcome = ChangeOutcome(address=address, action=action)
        self._outcomes[address] = outcome
        return outcome

    def get(self, address: str) -> ChangeOutcome:
        """Get outcome by address.

        Raises:
            KeyError: If address not registered
        """
        return self._outcomes[address]

    @property
    def outcomes(self) -> list[ChangeOutcome]:
        return list(self._outcomes.values())

    def with_status(self, *statuses: str) -> list[ChangeOutcome]:
        return [o for o in self._outcomes.values() if o.status in statuses]

    @property
    def success(self) -> bool:
        return all(o.status == APPLIED for o in self._outcomes.values())

    @property
    def partial(self) -> bool:
        return not self.success and any(
            o.status == APPLIED and o.action != 'no-op' for o in self._outcomes.values()
        )

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        self.completed_at = time.time()

    @property
    def duration(self) -> float:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return 0.0

    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for outcome in self._outcomes.values():
            counts[outcome.status] = counts.get(outcome.status, 0) + 1
        return counts

    def to_dict(self) -> dict:
        return {
            'workspace': self.workspace,
            'success': self.success,
            'partial': self.partial,
            'cancelled': self.cancelled,
            'duration_seconds': round(self.duration, 2),
            'counts': self.counts(),
            'changes': [o.to_dict() for o in self._outcomes.values()],
        }

    def save(self, path: Path) -> Path:
        """Save the result to JSON (typically .states/{workspace}/last-apply.json)."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.debug(f"Saved apply result to {path}")
        return path
