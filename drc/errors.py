from __future__ import annotations


class DRCError(Exception):
    """Base class for controller errors."""


# Configuration-time errors: fatal to plan construction.


class DuplicateNameError(DRCError):
    def __init__(self, name: str):
        super().__init__(f"Service '{name}' is already registered.")
        self.name = name


class NotFoundError(DRCError):
    def __init__(self, name: str, detail: str | None = None):
        super().__init__(detail or f"Service '{name}' is not registered.")
        self.name = name


class CyclicDependencyError(DRCError):
    def __init__(self, cycle: list[str]):
        super().__init__("Cyclic dependency: " + " -> ".join(cycle))
        self.cycle = cycle


# Runtime errors: halt the current plan only.


class RuntimeStepError(DRCError):
    """Failure reported while driving a service through its rollout steps."""

    def __init__(self, service: str, message: str):
        super().__init__(message)
        self.service = service


class PullError(RuntimeStepError):
    pass


class StartError(RuntimeStepError):
    pass


class HealthTimeoutError(RuntimeStepError):
    pass


class ProbeTransportError(RuntimeStepError):
    pass


class ServiceUnhealthyError(RuntimeStepError):
    """The service answered its health endpoint but kept reporting unhealthy."""


# Migration gate.


class MigrationError(DRCError):
    pass


class MigrationConflictError(MigrationError):
    def __init__(self, version: str, applied_checksum: str, requested_checksum: str):
        super().__init__(
            f"Migration slot '{version}' already applied with checksum {applied_checksum}; "
            f"refusing to apply divergent checksum {requested_checksum}."
        )
        self.version = version
        self.applied_checksum = applied_checksum
        self.requested_checksum = requested_checksum


class MigrationPendingError(MigrationError):
    def __init__(self, version: str, checksum: str, service: str | None = None):
        who = f" for '{service}'" if service else ""
        super().__init__(f"Migration {checksum} ({version}) has not been applied{who}.")
        self.version = version
        self.checksum = checksum
        self.service = service


class MigrationFailedError(MigrationError):
    def __init__(self, version: str, checksum: str, detail: str):
        super().__init__(f"Migration {checksum} ({version}) failed: {detail}")
        self.version = version
        self.checksum = checksum
        self.detail = detail
