from __future__ import annotations

import enum
import secrets
import time
from dataclasses import dataclass, field
from threading import Event, Lock
from typing import Any

from .db import utc_now
from .sequencer import RolloutPlan


class RolloutState(str, enum.Enum):
    PENDING = "pending"
    PULLING = "pulling"
    STARTING = "starting"
    AWAITING_HEALTH = "awaiting_health"
    HEALTHY = "healthy"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


# Forward-only; a rollback re-enters PULLING from any state the service reached.
_TRANSITIONS: dict[RolloutState, set[RolloutState]] = {
    RolloutState.PENDING: {RolloutState.PULLING},
    RolloutState.PULLING: {RolloutState.STARTING, RolloutState.FAILED, RolloutState.PULLING},
    RolloutState.STARTING: {RolloutState.AWAITING_HEALTH, RolloutState.FAILED, RolloutState.PULLING},
    RolloutState.AWAITING_HEALTH: {
        RolloutState.HEALTHY,
        RolloutState.FAILED,
        RolloutState.ROLLED_BACK,
        RolloutState.PULLING,
    },
    RolloutState.HEALTHY: {RolloutState.PULLING},
    RolloutState.FAILED: {RolloutState.PULLING},
    RolloutState.ROLLED_BACK: {RolloutState.PULLING},
}


class Outcome(str, enum.Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"  # a traffic-serving service is waiting on migrations
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not Outcome.RUNNING


@dataclass
class ServiceStatus:
    service: str
    target_image: str
    previous_image: str
    state: RolloutState = RolloutState.PENDING
    container_id: str | None = None
    container_name: str | None = None
    error_type: str | None = None
    error: str | None = None
    # State the service was in when its last error was observed.
    failed_in: RolloutState | None = None
    # True while a rollback of this service is in flight.
    rolling_back: bool = False
    rollback_image: str | None = None
    history: list[tuple[str, str]] = field(default_factory=list)

    def transition(self, new: RolloutState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise ValueError(f"{self.service}: illegal transition {self.state.value} -> {new.value}")
        self.state = new
        self.history.append((utc_now(), new.value))

    def record_error(self, exc: BaseException) -> None:
        self.error_type = type(exc).__name__
        self.error = str(exc)
        self.failed_in = self.state

    def as_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "state": self.state.value,
            "target_image": self.target_image,
            "previous_image": self.previous_image,
            "container_id": self.container_id,
            "container_name": self.container_name,
            "error_type": self.error_type,
            "error": self.error,
            "failed_in": self.failed_in.value if self.failed_in else None,
            "rolling_back": self.rolling_back,
            "rollback_image": self.rollback_image,
            "history": [{"ts": ts, "state": s} for ts, s in self.history],
        }


@dataclass
class RolloutRecord:
    id: str
    plan: RolloutPlan
    statuses: dict[str, ServiceStatus]
    outcome: Outcome = Outcome.RUNNING
    message: str = ""
    failed_service: str | None = None
    started_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    finished_at: str | None = None
    cancel: Event = field(default_factory=Event, repr=False)
    lock: Lock = field(default_factory=Lock, repr=False)
    # time.monotonic() at the last terminal transition; drives retention.
    finished_mono: float | None = field(default=None, repr=False)
    # At most one rollback batch runs against a record at a time.
    rollback_active: bool = False

    def status(self, service: str) -> ServiceStatus:
        return self.statuses[service]

    def set_state(self, service: str, state: RolloutState) -> None:
        with self.lock:
            self.statuses[service].transition(state)
            self.updated_at = utc_now()

    def fail(self, service: str, exc: BaseException) -> None:
        """Record ``exc`` against ``service`` and mark it failed if it had started."""
        with self.lock:
            status = self.statuses[service]
            status.record_error(exc)
            if RolloutState.FAILED in _TRANSITIONS[status.state]:
                status.transition(RolloutState.FAILED)
            self.updated_at = utc_now()

    def begin_rollback(self) -> Event:
        """Claim the record for a rollback and return a fresh cancel event for it."""
        with self.lock:
            if not self.outcome.terminal:
                raise ValueError(f"Rollout {self.id} is still running; cancel it before rolling back.")
            if self.rollback_active:
                raise ValueError(f"Rollout {self.id} already has a rollback in progress.")
            self.rollback_active = True
            self.cancel = Event()
            return self.cancel

    def end_rollback(self) -> None:
        with self.lock:
            self.rollback_active = False

    @property
    def cancellable(self) -> bool:
        return not self.outcome.terminal or self.rollback_active

    def finish(self, outcome: Outcome, message: str, failed_service: str | None = None) -> None:
        with self.lock:
            self.outcome = outcome
            self.message = message
            self.failed_service = failed_service
            self.updated_at = utc_now()
            if outcome.terminal:
                self.finished_at = self.updated_at
                self.finished_mono = time.monotonic()
            else:
                self.finished_at = None
                self.finished_mono = None

    def snapshot(self) -> dict[str, Any]:
        with self.lock:
            return {
                "id": self.id,
                "outcome": self.outcome.value,
                "message": self.message,
                "failed_service": self.failed_service,
                "plan": list(self.plan),
                "started_at": self.started_at,
                "updated_at": self.updated_at,
                "finished_at": self.finished_at,
                "rolling_back": self.rollback_active,
                "services": [self.statuses[name].as_dict() for name in self.plan],
            }


class RolloutRegistry:
    """Rollouts keyed by id.

    Running rollouts stay until they finish; finished ones are kept for
    ``retention_s`` seconds so they can still be inspected, then dropped.
    """

    def __init__(self, retention_s: float = 3600.0):
        self.retention_s = retention_s
        self._lock = Lock()
        self._records: dict[str, RolloutRecord] = {}

    def create(self, plan: RolloutPlan, images: dict[str, tuple[str, str]]) -> RolloutRecord:
        """``images`` maps service -> (target_image, previous_image)."""
        rollout_id = secrets.token_hex(6)
        statuses = {
            name: ServiceStatus(service=name, target_image=images[name][0], previous_image=images[name][1])
            for name in plan
        }
        record = RolloutRecord(id=rollout_id, plan=plan, statuses=statuses)
        with self._lock:
            self._records[rollout_id] = record
        return record

    def get(self, rollout_id: str) -> RolloutRecord | None:
        self.purge()
        with self._lock:
            return self._records.get(rollout_id)

    def list(self) -> list[RolloutRecord]:
        self.purge()
        with self._lock:
            return list(self._records.values())

    def active(self) -> list[RolloutRecord]:
        return [r for r in self.list() if not r.outcome.terminal]

    def purge(self, now: float | None = None) -> list[str]:
        now = time.monotonic() if now is None else now
        with self._lock:
            expired = [
                rid
                for rid, r in self._records.items()
                if r.finished_mono is not None
                and not r.rollback_active
                and now - r.finished_mono >= self.retention_s
            ]
            for rid in expired:
                del self._records[rid]
        return expired
