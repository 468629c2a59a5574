from __future__ import annotations

from dataclasses import dataclass

from .descriptors import DescriptorStore, SchemaConfig, StackConfig, build_store, load_stack
from .docker_ops import ContainerRuntime, DockerRuntime
from .health import HealthProber
from .migrations import CommandMigrationRunner, MigrationGate, MigrationRunner
from .rollouts import MigrationTarget, RolloutEngine, RolloutManager
from .runtime import RolloutRegistry
from .sequencer import build_plan
from .settings import Settings, settings as default_settings


@dataclass
class Controller:
    """Everything one controller instance owns. No process-wide singletons."""

    store: DescriptorStore
    gate: MigrationGate
    registry: RolloutRegistry
    engine: RolloutEngine
    manager: RolloutManager
    schema: SchemaConfig | None = None

    def migration_target(
        self, checksum: str | None = None, version: str | None = None, apply: bool = True
    ) -> MigrationTarget | None:
        if checksum:
            default_version = self.schema.version if self.schema else "default"
            return MigrationTarget(checksum=checksum, version=version or default_version, apply=apply)
        if self.schema is not None:
            return MigrationTarget(checksum=self.schema.checksum, version=version or self.schema.version, apply=apply)
        return None


def build_controller(
    stack: StackConfig,
    runtime: ContainerRuntime | None = None,
    prober: HealthProber | None = None,
    runner: MigrationRunner | None = None,
    cfg: Settings | None = None,
) -> Controller:
    cfg = cfg or default_settings
    store = build_store(stack.services)
    # Reject a stack that cannot be sequenced before anything is served.
    build_plan(store.list())

    if runner is None:
        command = (stack.schema.command if stack.schema else ()) or cfg.migration_command
        if command:
            runner = CommandMigrationRunner(command, timeout_s=cfg.migration_timeout_s)

    gate = MigrationGate(runner)
    registry = RolloutRegistry(retention_s=cfg.rollout_retention_s)
    engine = RolloutEngine(
        store=store,
        runtime=runtime or DockerRuntime(network=cfg.docker_network, pull_policy=cfg.pull_policy),
        prober=prober or HealthProber(default_timeout_s=cfg.health_timeout_s),
        gate=gate,
        health_timeout_s=cfg.health_timeout_s,
    )
    manager = RolloutManager(engine, registry)
    return Controller(store=store, gate=gate, registry=registry, engine=engine, manager=manager, schema=stack.schema)


def controller_from_settings(cfg: Settings | None = None) -> Controller:
    cfg = cfg or default_settings
    stack = load_stack(cfg.config_path, default_interval_s=cfg.probe_interval_s)
    return build_controller(stack, cfg=cfg)
