import os
import sys
from dataclasses import replace
from threading import Lock
from urllib.parse import urlparse

import pytest

# Ensure project root is importable (so `import main`, `import cli` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from drc import db  # noqa: E402
from drc.descriptors import HealthCheck, ServiceDescriptor  # noqa: E402
from drc.docker_ops import ContainerRef  # noqa: E402
from drc.errors import PullError, StartError  # noqa: E402
from drc.health import HealthProber, ProbeResult  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file for events and migration records."""
    path = tmp_path / "drc.db"
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(path)))
    db.init_db()
    return path


def make_descriptor(name, depends_on=(), image=None, serves_traffic=False, **check):
    params = {
        "interval_s": 0.01,
        "timeout_s": 0.5,
        "unhealthy_threshold": 3,
        "transport_failure_limit": 3,
    }
    params.update(check)
    return ServiceDescriptor(
        name=name,
        image=image or f"registry.local/{name}:1",
        health_check=HealthCheck(url=f"http://{name}:8000/health", **params),
        depends_on=tuple(depends_on),
        serves_traffic=serves_traffic,
    )


class FakeRuntime:
    """Records calls; fails pulls/starts for the images it is told to."""

    def __init__(self, fail_pull=(), fail_start=()):
        self.fail_pull = set(fail_pull)
        self.fail_start = set(fail_start)
        self.calls = []
        self.running = {}
        self._n = 0
        self._lock = Lock()

    def pull(self, service, image):
        with self._lock:
            self.calls.append(("pull", service, image))
        if image in self.fail_pull:
            raise PullError(service, f"manifest for {image} not found")

    def start(self, descriptor):
        with self._lock:
            self.calls.append(("start", descriptor.name, descriptor.image))
            if descriptor.image in self.fail_start:
                raise StartError(descriptor.name, f"port already allocated for {descriptor.image}")
            self._n += 1
            self.running[descriptor.name] = descriptor.image
            return ContainerRef(id=f"c{self._n}", name=f"drc-{descriptor.name}-{self._n}")

    def stop(self, ref):
        with self._lock:
            self.calls.append(("stop", ref.id))

    def started(self):
        return [c[1] for c in self.calls if c[0] == "start"]

    def pulled(self):
        return [c[1] for c in self.calls if c[0] == "pull"]


class FakeProbe:
    """Health answers keyed on the image the fake runtime is running for the service."""

    def __init__(self, runtime, unhealthy_images=(), down_images=()):
        self.runtime = runtime
        self.unhealthy_images = set(unhealthy_images)
        self.down_images = set(down_images)
        self.count = 0

    def __call__(self, check, timeout_s):
        self.count += 1
        service = urlparse(check.url).hostname
        image = self.runtime.running.get(service)
        if image is None or image in self.down_images:
            return ProbeResult(False, "No response: ConnectError", transport_error=True)
        if image in self.unhealthy_images:
            return ProbeResult(False, "HTTP 503", status_code=503)
        return ProbeResult(True, "Healthy", 1.0, 200)


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def probe(runtime):
    return FakeProbe(runtime)


@pytest.fixture
def prober(probe):
    return HealthProber(probe=probe, default_timeout_s=1.0)
