"""Tests for the descriptor store and the stack loader."""

import os
from threading import Event, Thread

import pytest

from drc.descriptors import (
    DescriptorStore,
    build_store,
    image_env_var,
    load_stack,
    parse_stack,
)
from drc.errors import DuplicateNameError, NotFoundError

from conftest import make_descriptor


EXAMPLE_STACK = os.path.join(os.path.dirname(os.path.dirname(__file__)), "examples", "stack.yaml")


class TestStore:
    def test_register_and_resolve(self):
        store = DescriptorStore()
        store.register(make_descriptor("db"))
        assert store.resolve("db").image == "registry.local/db:1"
        assert "db" in store
        assert len(store) == 1

    def test_duplicate_name_rejected(self):
        store = DescriptorStore()
        store.register(make_descriptor("db"))
        with pytest.raises(DuplicateNameError):
            store.register(make_descriptor("db", image="postgres:17"))
        assert store.resolve("db").image == "registry.local/db:1"

    def test_resolve_unknown(self):
        with pytest.raises(NotFoundError):
            DescriptorStore().resolve("nope")

    def test_update_image_swaps_descriptor(self):
        store = build_store([make_descriptor("api", depends_on=["db"]), make_descriptor("db")])
        before = store.resolve("api")
        after = store.update_image("api", "registry.local/api:2")
        assert after.image == "registry.local/api:2"
        assert after.depends_on == ("db",)
        # The old object is untouched.
        assert before.image == "registry.local/api:1"
        assert store.resolve("api") is after

    def test_update_image_unknown_or_invalid(self):
        store = build_store([make_descriptor("api")])
        with pytest.raises(NotFoundError):
            store.update_image("web", "web:1")
        with pytest.raises(ValueError):
            store.update_image("api", "not an image")

    def test_names_keep_declaration_order(self):
        store = build_store([make_descriptor(n) for n in ("web", "api", "db")])
        assert store.names() == ["web", "api", "db"]

    def test_concurrent_update_never_tears_reads(self):
        old = "registry.local/api:" + "a" * 120
        new = "registry.local/api:" + "b" * 120
        store = build_store([make_descriptor("api", image=old)])
        stop = Event()
        seen = set()
        bad = []

        def writer():
            for i in range(3000):
                store.update_image("api", new if i % 2 == 0 else old)
            stop.set()

        def reader():
            while not stop.is_set():
                ref = store.resolve("api").image
                seen.add(ref)
                if ref not in (old, new):
                    bad.append(ref)

        threads = [Thread(target=reader) for _ in range(4)] + [Thread(target=writer)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert bad == []
        assert seen <= {old, new}


STACK = {
    "schema": {"version": "main", "checksum": "abc123", "command": "alembic upgrade head"},
    "services": {
        "db": {"image": "postgres:16", "health_check": "http://db-health:8080/health"},
        "api": {
            "image": "registry.local/api:1",
            "depends_on": ["db"],
            "serves_traffic": True,
            "health_check": {"url": "http://api:8000/health", "predicate": "json_status", "unhealthy_threshold": 5},
            "resources": {"cpu": 0.5, "memory": "512m"},
            "ports": {"8000/tcp": 8000},
        },
        "worker": {"image": "registry.local/worker:1", "depends_on": "db", "health_check": "http://worker/health"},
    },
}


class TestParseStack:
    def test_services_and_schema(self):
        stack = parse_stack(STACK, env={})
        assert [d.name for d in stack.services] == ["db", "api", "worker"]
        api = stack.services[1]
        assert api.serves_traffic is True
        assert api.depends_on == ("db",)
        assert api.health_check.predicate == "json_status"
        assert api.health_check.unhealthy_threshold == 5
        assert api.resources.cpu == 0.5
        assert api.resources.memory == "512m"
        assert api.ports == {"8000/tcp": 8000}
        assert stack.services[2].depends_on == ("db",)
        assert stack.services[0].health_check.url == "http://db-health:8080/health"
        assert stack.schema.version == "main"
        assert stack.schema.command == ("alembic", "upgrade", "head")

    def test_env_overrides_image(self):
        stack = parse_stack(STACK, env={image_env_var("api"): "registry.local/api:9"})
        assert stack.services[1].image == "registry.local/api:9"

    def test_env_var_name(self):
        assert image_env_var("status-page") == "DRC_IMAGE_STATUS_PAGE"

    def test_default_interval_applied(self):
        stack = parse_stack(STACK, env={}, default_interval_s=0.5)
        assert stack.services[0].health_check.interval_s == 0.5

    @pytest.mark.parametrize(
        "services",
        [
            {"Bad_Name": {"image": "x:1", "health_check": "http://x/health"}},
            {"api": {"image": "x:1"}},
            {"api": {"health_check": "http://x/health"}},
            {"api": {"image": "x:1", "health_check": "ftp://x/health"}},
            {"api": {"image": "x:1", "health_check": "http://x/health", "resources": {"memory": "lots"}}},
            {"api": {"image": "x:1", "health_check": "http://x/health", "resources": {"cpu": 0}}},
        ],
    )
    def test_invalid_service_rejected(self, services):
        with pytest.raises(ValueError):
            parse_stack({"services": services}, env={})

    def test_load_example_stack(self):
        stack = load_stack(EXAMPLE_STACK, env={})
        names = [d.name for d in stack.services]
        assert names == ["db", "api", "dashboard", "status-page", "analytics"]
        assert [d.name for d in stack.services if d.serves_traffic] == ["api", "dashboard", "status-page"]
        assert stack.schema is not None and stack.schema.version == "main"
