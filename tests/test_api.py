"""Tests for the HTTP API in main.py."""

from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

import main
from drc.controller import build_controller
from drc.descriptors import parse_stack
from drc.health import HealthProber

from conftest import FakeProbe, FakeRuntime


STACK = {
    "schema": {"version": "main", "checksum": "abc"},
    "services": {
        "db": {"image": "postgres:16", "health_check": "http://db:8000/health"},
        "api": {
            "image": "registry.local/api:1",
            "depends_on": ["db"],
            "serves_traffic": True,
            "health_check": "http://api:8000/health",
        },
        "dashboard": {
            "image": "registry.local/dashboard:1",
            "depends_on": ["api"],
            "serves_traffic": True,
            "health_check": "http://dashboard:8000/health",
        },
        "analytics": {
            "image": "registry.local/analytics:1",
            "depends_on": ["db"],
            "health_check": "http://analytics:8000/health",
        },
    },
}


class Env:
    def __init__(self):
        self.runtime = FakeRuntime()
        self.probe = FakeProbe(self.runtime, unhealthy_images={"registry.local/api:broken"})
        self.migrations = []
        stack = parse_stack(STACK, env={}, default_interval_s=0.01)
        self.ctl = build_controller(
            stack,
            runtime=self.runtime,
            prober=HealthProber(probe=self.probe, default_timeout_s=2),
            runner=self._runner,
        )

    def _runner(self, checksum, version):
        self.migrations.append((checksum, version))
        return True, "ok"


@pytest.fixture
def env():
    return Env()


@pytest.fixture
def client(env):
    with TestClient(main.create_app(env.ctl)) as c:
        yield c


def _finish(env, rollout_id):
    return env.ctl.manager.wait(rollout_id, timeout=10)


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy"}


def test_services(client):
    r = client.get("/services")
    assert r.status_code == 200
    assert [s["name"] for s in r.json()] == ["db", "api", "dashboard", "analytics"]

    r = client.get("/services/api")
    assert r.json()["depends_on"] == ["db"]
    assert r.json()["serves_traffic"] is True

    assert client.get("/services/nope").status_code == 404


def test_update_image(client, env):
    r = client.put("/services/api/image", json={"image": "registry.local/api:7"})
    assert r.status_code == 200
    assert env.ctl.store.resolve("api").image == "registry.local/api:7"

    assert client.put("/services/nope/image", json={"image": "x:1"}).status_code == 404
    assert client.put("/services/api/image", json={"image": "no spaces allowed"}).status_code == 400


def test_plan(client):
    assert client.get("/plan").json() == {"plan": ["db", "api", "dashboard", "analytics"]}
    r = client.get("/plan", params={"targets": ["dashboard"]})
    assert r.json() == {"plan": ["db", "api", "dashboard"]}
    assert client.get("/plan", params={"targets": ["nope"]}).status_code == 404


def test_rollout_succeeds_and_applies_stack_migration(client, env):
    r = client.post("/rollouts", json={"images": {"api": "registry.local/api:2"}})
    assert r.status_code == 202
    rid = r.json()["id"]
    assert r.json()["plan"] == ["db", "api", "dashboard", "analytics"]
    _finish(env, rid)

    body = client.get(f"/rollouts/{rid}").json()
    assert body["outcome"] == "succeeded"
    assert all(s["state"] == "healthy" for s in body["services"])
    assert env.migrations == [("abc", "main")]
    assert env.ctl.store.resolve("api").image == "registry.local/api:2"

    listed = client.get("/rollouts").json()
    assert [x["id"] for x in listed] == [rid]


def test_rollout_rejects_unknown_service(client):
    r = client.post("/rollouts", json={"images": {"web": "registry.local/web:2"}})
    assert r.status_code == 404


def test_rollout_blocked_without_migration(client, env):
    r = client.post("/rollouts", json={"apply_migrations": False})
    _finish(env, r.json()["id"])
    body = client.get(f"/rollouts/{r.json()['id']}").json()
    assert body["outcome"] == "blocked"
    assert body["failed_service"] == "api"
    states = {s["service"]: s["state"] for s in body["services"]}
    assert states == {"db": "healthy", "api": "pending", "dashboard": "pending", "analytics": "pending"}


def test_failed_rollout_then_rollback(client, env):
    r = client.post("/rollouts", json={"images": {"api": "registry.local/api:broken"}})
    rid = r.json()["id"]
    _finish(env, rid)

    body = client.get(f"/rollouts/{rid}").json()
    assert body["outcome"] == "failed"
    assert body["failed_service"] == "api"
    failed = [s for s in body["services"] if s["service"] == "api"][0]
    assert failed["error_type"] == "ServiceUnhealthyError"
    assert failed["failed_in"] == "awaiting_health"
    assert body["rollback_candidates"][0] == {
        "service": "api",
        "previous_image": "registry.local/api:1",
        "state": "failed",
    }

    r = client.post(f"/rollouts/{rid}/rollback", json={"services": ["api"]})
    assert r.status_code == 202
    _finish(env, rid)
    api = [s for s in client.get(f"/rollouts/{rid}").json()["services"] if s["service"] == "api"][0]
    assert api["state"] == "rolled_back"

    # dashboard never started.
    assert client.post(f"/rollouts/{rid}/rollback", json={"services": ["dashboard"]}).status_code == 400
    assert client.post(f"/rollouts/{rid}/rollback", json={"services": ["nope"]}).status_code == 404


def test_auto_rollback(client, env):
    r = client.post("/rollouts", json={"images": {"api": "registry.local/api:broken"}, "auto_rollback": True})
    rid = r.json()["id"]
    _finish(env, rid)
    api = [s for s in client.get(f"/rollouts/{rid}").json()["services"] if s["service"] == "api"][0]
    assert api["state"] == "rolled_back"
    assert env.ctl.store.resolve("api").image == "registry.local/api:1"


def test_unknown_rollout(client):
    assert client.get("/rollouts/nope").status_code == 404
    assert client.post("/rollouts/nope/cancel").status_code == 404


def test_migrations_endpoints(client, env):
    r = client.post("/migrations/apply", json={"checksum": "abc"})
    assert r.status_code == 200
    assert r.json()["version"] == "main"
    assert r.json()["success"] is True

    r = client.post("/migrations/apply", json={"checksum": "abc"})
    assert r.status_code == 200
    assert len(env.migrations) == 1

    r = client.post("/migrations/apply", json={"checksum": "zzz"})
    assert r.status_code == 409

    rows = client.get("/migrations").json()
    assert [(m["checksum"], m["success"]) for m in rows] == [("abc", True)]


def test_events(client, env):
    r = client.post("/rollouts", json={})
    _finish(env, r.json()["id"])
    events = client.get("/events", params={"rollout_id": r.json()["id"]}).json()
    assert events
    assert any("Rollout completed" in e["message"] for e in events)


def test_basic_auth_on_mutations(client, env, monkeypatch):
    monkeypatch.setattr(main, "settings", replace(main.settings, admin_user="ops", admin_password="s3cret"))

    r = client.post("/rollouts", json={})
    assert r.status_code == 401
    r = client.post("/rollouts", json={}, auth=("ops", "wrong"))
    assert r.status_code == 401
    r = client.post("/rollouts", json={}, auth=("ops", "s3cret"))
    assert r.status_code == 202
    _finish(env, r.json()["id"])
    # Reads stay open.
    assert client.get("/services").status_code == 200
