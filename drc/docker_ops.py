from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Protocol

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

from .db import log_event
from .descriptors import ServiceDescriptor
from .errors import PullError, StartError
from .settings import settings


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


class ContainerRuntime(Protocol):
    """What the rollout engine needs from a container runtime."""

    def pull(self, service: str, image: str) -> None: ...

    def start(self, descriptor: ServiceDescriptor) -> ContainerRef: ...

    def stop(self, ref: ContainerRef) -> None: ...


def resource_kwargs(descriptor: ServiceDescriptor) -> dict[str, Any]:
    kwargs: dict[str, Any] = {}
    if descriptor.resources.cpu is not None:
        kwargs["nano_cpus"] = int(descriptor.resources.cpu * 1_000_000_000)
    if descriptor.resources.memory is not None:
        kwargs["mem_limit"] = descriptor.resources.memory
    return kwargs


class DockerRuntime:
    """Container runtime backed by the local docker daemon.

    Containers are labeled so a service's previous container can be found and
    replaced (compose-style recreate) when a new image is started.
    """

    def __init__(self, client: docker.DockerClient | None = None, network: str | None = None,
                 pull_policy: str | None = None):
        self._client = client
        self.network = network or settings.docker_network
        self.pull_policy = pull_policy or settings.pull_policy

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def available(self) -> bool:
        try:
            self.client.ping()
            return True
        except DockerException:
            return False

    def ensure_network(self) -> None:
        try:
            self.client.networks.get(self.network)
        except NotFound:
            self.client.networks.create(self.network, driver="bridge")
            log_event("INFO", f"Created docker network '{self.network}'.")

    def pull(self, service: str, image: str) -> None:
        try:
            if self.pull_policy == "if-not-present":
                try:
                    self.client.images.get(image)
                    return
                except ImageNotFound:
                    pass
            self.client.images.pull(image)
        except DockerException as e:
            raise PullError(service, f"Pull of {image} failed: {e}") from e

    def start(self, descriptor: ServiceDescriptor) -> ContainerRef:
        name = f"drc-{descriptor.name}-{secrets.token_hex(3)}"
        labels = {
            "drc.service": descriptor.name,
            "drc.image": descriptor.image,
        }
        try:
            self.ensure_network()
            for old in self.list_containers(descriptor.name):
                self.remove(old)
            container = self.client.containers.run(
                descriptor.image,
                command=list(descriptor.command) if descriptor.command else None,
                detach=True,
                name=name,
                hostname=descriptor.name,
                environment=dict(descriptor.environment),
                network=self.network,
                labels=labels,
                ports=dict(descriptor.ports) or None,
                # Restarts are the controller's decision; keep docker's policy off.
                restart_policy={"Name": "no"},
                **resource_kwargs(descriptor),
            )
        except DockerException as e:
            raise StartError(descriptor.name, f"Start of {descriptor.image} failed: {e}") from e

        log_event("INFO", f"Started container {name} from image {descriptor.image}", service_name=descriptor.name)
        return ContainerRef(id=container.id, name=name)

    def stop(self, ref: ContainerRef) -> None:
        try:
            self.remove(ref)
        except DockerException as e:
            log_event("WARN", f"Could not stop container {ref.name}: {e}")

    def remove(self, ref: ContainerRef) -> None:
        try:
            self.client.containers.get(ref.id).remove(force=True)
        except NotFound:
            return

    def list_containers(self, service: str) -> list[ContainerRef]:
        containers = self.client.containers.list(all=True, filters={"label": [f"drc.service={service}"]})
        return [ContainerRef(id=x.id, name=x.name) for x in containers]
