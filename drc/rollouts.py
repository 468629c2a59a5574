from __future__ import annotations

from dataclasses import dataclass
from threading import Event, Lock, Thread
from typing import Any, Callable

from . import db
from .alerts import notify_failure
from .descriptors import DescriptorStore, validate_image
from .docker_ops import ContainerRef, ContainerRuntime
from .errors import (
    MigrationError,
    MigrationPendingError,
    NotFoundError,
    RuntimeStepError,
    StartError,
)
from .health import HealthProber, WaitResult
from .migrations import DEFAULT_VERSION, MigrationGate
from .runtime import Outcome, RolloutRecord, RolloutRegistry, RolloutState
from .sequencer import build_plan

# Every state but pending; a pending service was never touched.
ROLLBACK_STATES = (
    RolloutState.PULLING,
    RolloutState.STARTING,
    RolloutState.AWAITING_HEALTH,
    RolloutState.HEALTHY,
    RolloutState.FAILED,
    RolloutState.ROLLED_BACK,
)
# Left mid-flight by a cancelled rollout, possibly with the new container running.
_IN_FLIGHT = (RolloutState.STARTING.value, RolloutState.AWAITING_HEALTH.value)


@dataclass(frozen=True)
class MigrationTarget:
    """Schema the traffic-serving services of a rollout require."""

    checksum: str
    version: str = DEFAULT_VERSION
    # Run the migration when the first traffic-serving service is reached.
    apply: bool = True


@dataclass
class RolloutReport:
    rollout_id: str
    outcome: Outcome
    message: str
    failed_service: str | None
    services: list[dict[str, Any]]

    def state_of(self, service: str) -> str:
        for s in self.services:
            if s["service"] == service:
                return s["state"]
        raise NotFoundError(service)

    @property
    def rollback_candidates(self) -> list[dict[str, str]]:
        """Services now running an image other than the one they had before.

        The failed service comes first, then services a cancellation left mid-flight,
        then healthy ones in reverse plan order.
        Nothing is rolled back automatically; the caller picks from this list.
        """
        changed = [
            s
            for s in self.services
            if s["state"] in (RolloutState.FAILED.value, RolloutState.HEALTHY.value, *_IN_FLIGHT)
            and s["target_image"] != s["previous_image"]
        ]
        failed = [s for s in changed if s["state"] == RolloutState.FAILED.value]
        in_flight = [s for s in changed if s["state"] in _IN_FLIGHT]
        healthy = [s for s in reversed(changed) if s["state"] == RolloutState.HEALTHY.value]
        return [
            {"service": s["service"], "previous_image": s["previous_image"], "state": s["state"]}
            for s in failed + in_flight + healthy
        ]

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.rollout_id,
            "outcome": self.outcome.value,
            "message": self.message,
            "failed_service": self.failed_service,
            "services": self.services,
            "rollback_candidates": self.rollback_candidates,
        }


def rollback_failed_service(report: RolloutReport) -> list[str]:
    """Rollback decision that only reverts the service that failed."""
    return [c["service"] for c in report.rollback_candidates if c["state"] == RolloutState.FAILED.value]


class RolloutEngine:
    """Drives one plan at a time through pull -> start -> health gate, strictly in order."""

    def __init__(
        self,
        store: DescriptorStore,
        runtime: ContainerRuntime,
        prober: HealthProber,
        gate: MigrationGate | None = None,
        health_timeout_s: float | None = None,
    ):
        self.store = store
        self.runtime = runtime
        self.prober = prober
        self.gate = gate or MigrationGate()
        self.health_timeout_s = health_timeout_s

    def prepare(
        self,
        registry: RolloutRegistry,
        images: dict[str, str] | None = None,
        targets: list[str] | None = None,
    ) -> RolloutRecord:
        """Validate inputs and sequence the plan. Raises before anything is started."""
        images = images or {}
        for name, image in images.items():
            self.store.resolve(name)
            validate_image(image)

        plan = build_plan(self.store.list(), targets)
        pairs = {}
        for name in plan:
            current = self.store.resolve(name).image
            pairs[name] = (images.get(name, current), current)
        return registry.create(plan, pairs)

    def run(self, record: RolloutRecord, migration: MigrationTarget | None = None) -> RolloutReport:
        db.log_event("INFO", f"Rollout started: {' -> '.join(record.plan)}", rollout_id=record.id)
        for name in record.plan:
            if record.cancel.is_set():
                return self._cancelled(record, name)
            try:
                result = self._deploy(record, name, migration)
            except MigrationPendingError as e:
                record.fail(name, e)
                db.log_event("WARN", f"Blocked: {e}", service_name=name, rollout_id=record.id)
                record.finish(Outcome.BLOCKED, str(e), failed_service=name)
                return self.report(record)
            except (MigrationError, RuntimeStepError) as e:
                state = record.status(name).state.value
                record.fail(name, e)
                db.log_event("ERROR", f"{type(e).__name__} while {state}: {e}", service_name=name, rollout_id=record.id)
                record.finish(Outcome.FAILED, f"{name} failed while {state}: {e}", failed_service=name)
                return self.report(record)
            if result is WaitResult.CANCELLED:
                return self._cancelled(record, name)

        record.finish(Outcome.SUCCEEDED, f"{len(record.plan)} service(s) healthy.")
        db.log_event("INFO", "Rollout completed", rollout_id=record.id)
        return self.report(record)

    def _cancelled(self, record: RolloutRecord, name: str) -> RolloutReport:
        state = record.status(name).state.value
        db.log_event("WARN", f"Rollout cancelled at {name} ({state})", service_name=name, rollout_id=record.id)
        record.finish(Outcome.CANCELLED, f"Cancelled at {name} ({state}); healthy services left running.")
        return self.report(record)

    def _deploy(self, record: RolloutRecord, name: str, migration: MigrationTarget | None) -> WaitResult:
        descriptor = self.store.resolve(name)
        status = record.status(name)

        for dep in descriptor.depends_on:
            dep_status = record.statuses.get(dep)
            if dep_status is not None and dep_status.state is not RolloutState.HEALTHY:
                raise StartError(name, f"Dependency '{dep}' is {dep_status.state.value}, not healthy.")

        if descriptor.serves_traffic and migration is not None:
            if migration.apply:
                self.gate.apply_migrations(migration.checksum, migration.version)
            self.gate.require(migration.checksum, migration.version, service=name)

        result = self._bring_up(record, name, status.target_image)
        if result is WaitResult.HEALTHY:
            record.set_state(name, RolloutState.HEALTHY)
            self.store.update_image(name, status.target_image)
            db.log_event("INFO", f"Healthy on {status.target_image}", service_name=name, rollout_id=record.id)
        return result

    def _bring_up(self, record: RolloutRecord, name: str, image: str, cancel: Event | None = None) -> WaitResult:
        """pulling -> starting -> awaiting_health; stops at each boundary if cancelled."""
        cancel = cancel or record.cancel
        descriptor = self.store.resolve(name).with_image(image)
        status = record.status(name)

        record.set_state(name, RolloutState.PULLING)
        db.log_event("INFO", f"Pulling {image}", service_name=name, rollout_id=record.id)
        self.runtime.pull(name, image)
        if cancel.is_set():
            return WaitResult.CANCELLED

        record.set_state(name, RolloutState.STARTING)
        ref = self.runtime.start(descriptor)
        with record.lock:
            status.container_id = ref.id
            status.container_name = ref.name
        if cancel.is_set():
            return WaitResult.CANCELLED

        record.set_state(name, RolloutState.AWAITING_HEALTH)
        return self.prober.wait_healthy(descriptor, timeout=self.health_timeout_s, cancel=cancel)

    def check_rollback(self, record: RolloutRecord, service: str) -> None:
        if service not in record.statuses:
            raise NotFoundError(service, f"Service '{service}' is not part of rollout {record.id}.")
        if not record.outcome.terminal:
            raise ValueError(f"Rollout {record.id} is still running; cancel it before rolling back.")
        state = record.status(service).state
        if state not in ROLLBACK_STATES:
            raise ValueError(f"Service '{service}' is {state.value}; nothing to roll back.")

    def rollback(
        self,
        record: RolloutRecord,
        service: str,
        previous_image: str | None = None,
        cancel: Event | None = None,
    ) -> dict[str, Any]:
        """Re-deploy ``service`` on its previous image. Dependents are left alone.

        Without ``cancel`` the call claims the record itself; a caller already
        holding the claim from ``RolloutRecord.begin_rollback`` passes its event.
        """
        self.check_rollback(record, service)
        image = previous_image or record.status(service).previous_image
        validate_image(image)
        if cancel is not None:
            return self._roll_back(record, service, image, cancel)
        cancel = record.begin_rollback()
        try:
            return self._roll_back(record, service, image, cancel)
        finally:
            record.end_rollback()

    def _roll_back(self, record: RolloutRecord, service: str, image: str, cancel: Event) -> dict[str, Any]:
        status = record.status(service)
        with record.lock:
            status.rolling_back = True
            status.rollback_image = image
            old = ContainerRef(status.container_id, status.container_name or "") if status.container_id else None

        db.log_event("WARN", f"Rolling back to {image}", service_name=service, rollout_id=record.id)
        try:
            message = self._redeploy(record, service, image, old, cancel)
        finally:
            with record.lock:
                status.rolling_back = False
        record.finish(record.outcome, message, failed_service=record.failed_service)
        return status.as_dict()

    def _redeploy(
        self, record: RolloutRecord, service: str, image: str, old: ContainerRef | None, cancel: Event
    ) -> str:
        if old is not None:
            self.runtime.stop(old)
        try:
            result = self._bring_up(record, service, image, cancel=cancel)
        except RuntimeStepError as e:
            record.fail(service, e)
            db.log_event("ERROR", f"Rollback failed: {e}", service_name=service, rollout_id=record.id)
            return f"Rollback of {service} failed: {e}"

        if result is WaitResult.CANCELLED:
            db.log_event("WARN", "Rollback cancelled", service_name=service, rollout_id=record.id)
            return f"Rollback of {service} cancelled."
        record.set_state(service, RolloutState.ROLLED_BACK)
        self.store.update_image(service, image)
        db.log_event("INFO", f"Rolled back to {image}", service_name=service, rollout_id=record.id)
        return f"{service} rolled back to {image}."

    def report(self, record: RolloutRecord) -> RolloutReport:
        snap = record.snapshot()
        return RolloutReport(
            rollout_id=record.id,
            outcome=record.outcome,
            message=snap["message"],
            failed_service=snap["failed_service"],
            services=snap["services"],
        )


FailureCallback = Callable[[RolloutReport], list[str]]


class RolloutManager:
    """Runs rollouts on background threads, one thread per rollout.

    Independent rollouts (e.g. for distinct stacks sharing the registry) run
    concurrently; a single plan is never parallelized.
    """

    def __init__(
        self,
        engine: RolloutEngine,
        registry: RolloutRegistry,
        on_failure: FailureCallback | None = None,
    ):
        self.engine = engine
        self.registry = registry
        self.on_failure = on_failure
        self._lock = Lock()
        self._threads: dict[str, Thread] = {}

    def start_rollout(
        self,
        images: dict[str, str] | None = None,
        targets: list[str] | None = None,
        migration: MigrationTarget | None = None,
        on_failure: FailureCallback | None = None,
        background: bool = True,
    ) -> str:
        record = self.engine.prepare(self.registry, images=images, targets=targets)
        callback = on_failure or self.on_failure
        if background:
            self._spawn(record.id, self._run, record, migration, callback)
        else:
            self._run(record, migration, callback)
        return record.id

    def _spawn(self, rollout_id: str, target: Callable[..., None], *args: Any) -> None:
        thr = Thread(target=target, args=args, daemon=True, name=f"rollout-{rollout_id}")
        with self._lock:
            self._threads = {rid: t for rid, t in self._threads.items() if t.is_alive()}
            self._threads[rollout_id] = thr
        thr.start()

    def _run(self, record: RolloutRecord, migration: MigrationTarget | None, callback: FailureCallback | None) -> None:
        try:
            report = self.engine.run(record, migration)
        except Exception as e:
            db.log_event("ERROR", f"Rollout crashed: {type(e).__name__}: {e}", rollout_id=record.id)
            record.finish(Outcome.FAILED, f"Internal error: {type(e).__name__}: {e}")
            report = self.engine.report(record)

        if report.outcome in (Outcome.FAILED, Outcome.BLOCKED):
            notify_failure(report)
            if callback is not None:
                self._auto_rollback(record, callback, report)

    def _auto_rollback(self, record: RolloutRecord, callback: FailureCallback, report: RolloutReport) -> None:
        try:
            services = callback(report)
            if not services:
                return
            for service in services:
                self.engine.check_rollback(record, service)
            cancel = record.begin_rollback()
        except (NotFoundError, ValueError) as e:
            db.log_event("ERROR", f"Automatic rollback skipped: {e}", rollout_id=record.id)
            return
        try:
            self._roll_back_all(record, services, {}, cancel)
        finally:
            record.end_rollback()

    def _roll_back_all(
        self, record: RolloutRecord, services: list[str], previous_images: dict[str, str], cancel: Event
    ) -> None:
        for service in services:
            if cancel.is_set():
                db.log_event("WARN", "Rollback cancelled", service_name=service, rollout_id=record.id)
                return
            try:
                self.engine.rollback(record, service, previous_images.get(service), cancel=cancel)
            except Exception as e:
                db.log_event(
                    "ERROR",
                    f"Rollback crashed: {type(e).__name__}: {e}",
                    service_name=service,
                    rollout_id=record.id,
                )
                return

    def get(self, rollout_id: str) -> RolloutRecord:
        record = self.registry.get(rollout_id)
        if record is None:
            raise KeyError("unknown rollout")
        return record

    def cancel(self, rollout_id: str) -> RolloutRecord:
        """Stop a running rollout, or the rollback currently running against it."""
        record = self.get(rollout_id)
        if record.cancellable:
            record.cancel.set()
            db.log_event("WARN", "Cancellation requested", rollout_id=rollout_id)
        return record

    def rollback(
        self,
        rollout_id: str,
        services: list[str],
        previous_images: dict[str, str] | None = None,
        background: bool = True,
    ) -> RolloutRecord:
        """Roll ``services`` back in the given order. One rollback per rollout at a time."""
        record = self.get(rollout_id)
        previous_images = previous_images or {}
        for service in services:
            self.engine.check_rollback(record, service)
        for image in previous_images.values():
            validate_image(image)
        cancel = record.begin_rollback()

        def _do() -> None:
            try:
                self._roll_back_all(record, services, previous_images, cancel)
            finally:
                record.end_rollback()

        if background:
            self._spawn(rollout_id, _do)
        else:
            _do()
        return record

    def wait(self, rollout_id: str, timeout: float | None = None) -> RolloutRecord:
        with self._lock:
            thr = self._threads.get(rollout_id)
        if thr is not None:
            thr.join(timeout)
        return self.get(rollout_id)
