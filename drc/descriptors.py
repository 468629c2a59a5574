"""Service descriptors, the descriptor store and the static config loader."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Any

import yaml

from .errors import DuplicateNameError, NotFoundError


SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
IMAGE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9\-\._/:@]{0,254}$")
MEMORY_RE = re.compile(r"^\d+[bkmg]?$", re.IGNORECASE)


def validate_service_name(name: str) -> None:
    if not SERVICE_NAME_RE.match(name):
        raise ValueError(
            "Invalid service name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


def validate_image(image: str) -> None:
    if not IMAGE_RE.match(image or ""):
        raise ValueError(f"Invalid image reference: {image!r}")


def validate_health_url(url: str) -> None:
    if not url.startswith(("http://", "https://")):
        raise ValueError("health_check.url must be an http(s) URL.")


@dataclass(frozen=True)
class HealthCheck:
    url: str
    expected_status: int = 200
    timeout_s: float = 2.0
    interval_s: float = 2.0
    predicate: str = "status"
    unhealthy_threshold: int = 3
    transport_failure_limit: int = 15


@dataclass(frozen=True)
class ResourceLimits:
    cpu: float | None = None  # cores
    memory: str | None = None  # docker notation, e.g. 512m


@dataclass(frozen=True)
class ServiceDescriptor:
    name: str
    image: str
    health_check: HealthCheck
    depends_on: tuple[str, ...] = ()
    resources: ResourceLimits = field(default_factory=ResourceLimits)
    # Traffic-serving services wait for the migration gate.
    serves_traffic: bool = False
    environment: dict[str, str] = field(default_factory=dict, hash=False)
    command: tuple[str, ...] | None = None
    ports: dict[str, int] = field(default_factory=dict, hash=False)

    def with_image(self, image: str) -> "ServiceDescriptor":
        return replace(self, image=image)


@dataclass(frozen=True)
class SchemaConfig:
    """Declared schema migration the stack expects before serving traffic."""

    checksum: str
    version: str = "default"
    command: tuple[str, ...] = ()


@dataclass
class StackConfig:
    services: list[ServiceDescriptor]
    schema: SchemaConfig | None = None


class DescriptorStore:
    """Holds service descriptors in declaration order.

    Descriptors are immutable; an image update swaps the whole object under the
    lock, so readers never observe a half-written reference.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._by_name: dict[str, ServiceDescriptor] = {}

    def register(self, descriptor: ServiceDescriptor) -> None:
        with self._lock:
            if descriptor.name in self._by_name:
                raise DuplicateNameError(descriptor.name)
            self._by_name[descriptor.name] = descriptor

    def resolve(self, name: str) -> ServiceDescriptor:
        with self._lock:
            d = self._by_name.get(name)
        if d is None:
            raise NotFoundError(name)
        return d

    def update_image(self, name: str, image: str) -> ServiceDescriptor:
        validate_image(image)
        with self._lock:
            d = self._by_name.get(name)
            if d is None:
                raise NotFoundError(name)
            updated = d.with_image(image)
            self._by_name[name] = updated
            return updated

    def list(self) -> list[ServiceDescriptor]:
        with self._lock:
            return list(self._by_name.values())

    def names(self) -> list[str]:
        with self._lock:
            return list(self._by_name)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._by_name

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_name)


def image_env_var(service: str) -> str:
    return "DRC_IMAGE_" + service.upper().replace("-", "_")


def _health_check(name: str, raw: Any, default_interval_s: float) -> HealthCheck:
    if isinstance(raw, str):
        raw = {"url": raw}
    if not isinstance(raw, dict) or "url" not in raw:
        raise ValueError(f"Service '{name}' needs a health_check with a url.")
    validate_health_url(raw["url"])
    return HealthCheck(
        url=raw["url"],
        expected_status=int(raw.get("expected_status", 200)),
        timeout_s=float(raw.get("timeout_s", 2.0)),
        interval_s=float(raw.get("interval_s", default_interval_s)),
        predicate=str(raw.get("predicate", "status")),
        unhealthy_threshold=int(raw.get("unhealthy_threshold", 3)),
        transport_failure_limit=int(raw.get("transport_failure_limit", 15)),
    )


def _resources(name: str, raw: dict[str, Any] | None) -> ResourceLimits:
    if not raw:
        return ResourceLimits()
    cpu = raw.get("cpu")
    memory = raw.get("memory")
    if cpu is not None and float(cpu) <= 0:
        raise ValueError(f"Service '{name}': resources.cpu must be positive.")
    if memory is not None and not MEMORY_RE.match(str(memory)):
        raise ValueError(f"Service '{name}': resources.memory must look like 512m or 2g.")
    return ResourceLimits(
        cpu=float(cpu) if cpu is not None else None,
        memory=str(memory) if memory is not None else None,
    )


def parse_descriptor(name: str, raw: dict[str, Any], env: dict[str, str] | None = None,
                     default_interval_s: float = 2.0) -> ServiceDescriptor:
    validate_service_name(name)
    env = os.environ if env is None else env
    image = env.get(image_env_var(name)) or raw.get("image")
    validate_image(image)

    depends_on = raw.get("depends_on") or []
    if isinstance(depends_on, str):
        depends_on = [depends_on]
    command = raw.get("command")
    if isinstance(command, str):
        command = command.split()

    return ServiceDescriptor(
        name=name,
        image=image,
        health_check=_health_check(name, raw.get("health_check"), default_interval_s),
        depends_on=tuple(depends_on),
        resources=_resources(name, raw.get("resources")),
        serves_traffic=bool(raw.get("serves_traffic", False)),
        environment={str(k): str(v) for k, v in (raw.get("environment") or {}).items()},
        command=tuple(command) if command else None,
        ports={str(k): int(v) for k, v in (raw.get("ports") or {}).items()},
    )


def parse_stack(data: dict[str, Any], env: dict[str, str] | None = None,
                default_interval_s: float = 2.0) -> StackConfig:
    services_raw = data.get("services") or {}
    if not isinstance(services_raw, dict):
        raise ValueError("'services' must be a mapping of service name to settings.")

    services = [
        parse_descriptor(name, raw or {}, env=env, default_interval_s=default_interval_s)
        for name, raw in services_raw.items()
    ]

    schema = None
    schema_raw = data.get("schema")
    if schema_raw:
        command = schema_raw.get("command") or ()
        if isinstance(command, str):
            command = command.split()
        schema = SchemaConfig(
            checksum=str(schema_raw["checksum"]),
            version=str(schema_raw.get("version", "default")),
            command=tuple(command),
        )
    return StackConfig(services=services, schema=schema)


def load_stack(path: str, env: dict[str, str] | None = None, default_interval_s: float = 2.0) -> StackConfig:
    """Read the stack file once; it is never re-read while the controller runs."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return parse_stack(data, env=env, default_interval_s=default_interval_s)


def build_store(descriptors: list[ServiceDescriptor]) -> DescriptorStore:
    store = DescriptorStore()
    for d in descriptors:
        store.register(d)
    return store
