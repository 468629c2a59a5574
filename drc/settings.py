from __future__ import annotations

import os
import shlex
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_command(name: str) -> tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return ()
    return tuple(shlex.split(raw))


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("DRC_DB_PATH", "drc.db")
    config_path: str = os.getenv("DRC_CONFIG_PATH", "stack.yaml")
    docker_network: str = os.getenv("DRC_DOCKER_NETWORK", "drc")
    # always|if-not-present
    pull_policy: str = os.getenv("DRC_PULL_POLICY", "always")

    # Health gating
    probe_interval_s: float = _env_float("DRC_PROBE_INTERVAL_S", 2.0)
    health_timeout_s: float = _env_float("DRC_HEALTH_TIMEOUT_S", 120.0)

    # Rollout bookkeeping: how long finished rollouts stay inspectable.
    rollout_retention_s: int = _env_int("DRC_ROLLOUT_RETENTION_S", 3600)

    # Migrations
    migration_command: tuple[str, ...] = _env_command("DRC_MIGRATION_COMMAND")
    migration_timeout_s: int = _env_int("DRC_MIGRATION_TIMEOUT_S", 600)

    # API auth; disabled while no password is configured.
    admin_user: str = os.getenv("DRC_ADMIN_USER", "admin")
    admin_password: str | None = os.getenv("DRC_ADMIN_PASSWORD")

    # Email alerting (optional)
    enable_email: bool = _env_bool("DRC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("DRC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("DRC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("DRC_SMTP_USER")
    smtp_password: str | None = os.getenv("DRC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("DRC_EMAIL_FROM")
    email_to: str | None = os.getenv("DRC_EMAIL_TO")


settings = Settings()
