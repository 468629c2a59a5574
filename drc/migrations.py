"""Migration gate.

Records are append-only. A slot (``version``) holds at most one successful
checksum; that is enforced by a partial UNIQUE index rather than a lock, so
concurrent identical calls collapse into one success and divergent ones
surface as a conflict.
"""

from __future__ import annotations

import hashlib
import os
import subprocess
from typing import Callable, Protocol

from . import db
from .db import MigrationRow
from .errors import MigrationConflictError, MigrationFailedError, MigrationPendingError

DEFAULT_VERSION = "default"


class MigrationRunner(Protocol):
    def __call__(self, checksum: str, version: str) -> tuple[bool, str]: ...


class CommandMigrationRunner:
    """Runs an external migration command and reads success from its exit code."""

    def __init__(self, command: list[str] | tuple[str, ...], timeout_s: int = 600):
        if not command:
            raise ValueError("Migration command is empty.")
        self.command = list(command)
        self.timeout_s = timeout_s

    def __call__(self, checksum: str, version: str) -> tuple[bool, str]:
        env = dict(os.environ)
        env["DRC_MIGRATION_CHECKSUM"] = checksum
        env["DRC_MIGRATION_VERSION"] = version
        try:
            proc = subprocess.run(
                self.command,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
            )
        except FileNotFoundError as e:
            return False, f"Command not found: {e.filename}"
        except subprocess.TimeoutExpired:
            return False, f"Timed out after {self.timeout_s}s"
        output = (proc.stdout or "") + (proc.stderr or "")
        tail = output.strip()[-500:]
        if proc.returncode != 0:
            return False, f"exit {proc.returncode}: {tail}"
        return True, tail or "ok"


def checksum_directory(path: str) -> str:
    """sha256 over the relative paths and contents of every file under ``path``."""
    h = hashlib.sha256()
    for root, dirs, files in os.walk(path):
        dirs[:] = sorted(d for d in dirs if d != "__pycache__")
        for fname in sorted(files):
            full = os.path.join(root, fname)
            rel = os.path.relpath(full, path).replace(os.sep, "/")
            h.update(rel.encode())
            h.update(b"\0")
            with open(full, "rb") as f:
                h.update(f.read())
            h.update(b"\0")
    return h.hexdigest()


class MigrationGate:
    def __init__(self, runner: MigrationRunner | Callable[[str, str], tuple[bool, str]] | None = None):
        self.runner = runner

    def apply_migrations(self, checksum: str, version: str = DEFAULT_VERSION) -> MigrationRow:
        """Apply ``checksum`` to slot ``version`` unless it is already applied.

        Returns the successful record (new or existing).
        """
        existing = self._check_applied(checksum, version)
        if existing is not None:
            return existing

        if self.runner is None:
            raise MigrationFailedError(version, checksum, "no migration runner configured")

        db.log_event("INFO", f"Applying migration {checksum} ({version})")
        ok, detail = self.runner(checksum, version)
        if not ok:
            db.insert_migration(version, checksum, success=False, detail=detail)
            db.log_event("ERROR", f"Migration {checksum} ({version}) failed: {detail}")
            raise MigrationFailedError(version, checksum, detail)

        row = db.insert_migration(version, checksum, success=True, detail=detail)
        if row is None:
            # A concurrent caller recorded success first.
            winner = db.get_applied_migration(version)
            if winner is None:
                raise MigrationFailedError(version, checksum, "success record was rejected by the store")
            if winner.checksum != checksum:
                db.insert_migration(
                    version,
                    checksum,
                    success=False,
                    detail=f"applied but lost slot '{version}' to {winner.checksum}: {detail}",
                )
                db.log_event("ERROR", f"Migration {checksum} ({version}) ran but {winner.checksum} holds the slot")
                raise MigrationConflictError(version, winner.checksum, checksum)
            return winner
        db.log_event("INFO", f"Migration {checksum} ({version}) applied")
        return row

    def _check_applied(self, checksum: str, version: str) -> MigrationRow | None:
        applied = db.get_applied_migration(version)
        if applied is None:
            return None
        if applied.checksum != checksum:
            raise MigrationConflictError(version, applied.checksum, checksum)
        return applied

    def is_satisfied(self, checksum: str, version: str = DEFAULT_VERSION) -> bool:
        applied = db.get_applied_migration(version)
        return applied is not None and applied.checksum == checksum

    def require(self, checksum: str, version: str = DEFAULT_VERSION, service: str | None = None) -> None:
        if not self.is_satisfied(checksum, version):
            raise MigrationPendingError(version, checksum, service=service)

    def records(self, version: str | None = None) -> list[MigrationRow]:
        return db.list_migrations(version)
