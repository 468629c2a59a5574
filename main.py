from __future__ import annotations

import secrets
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from drc import db
from drc.api_models import ImageUpdateRequest, MigrationRequest, RollbackRequest, RolloutRequest
from drc.controller import Controller, controller_from_settings
from drc.errors import (
    CyclicDependencyError,
    DuplicateNameError,
    MigrationConflictError,
    MigrationFailedError,
    MigrationPendingError,
    NotFoundError,
)
from drc.rollouts import rollback_failed_service
from drc.sequencer import build_plan
from drc.settings import settings

security = HTTPBasic(auto_error=False)


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, (NotFoundError, KeyError)):
        return HTTPException(status_code=404, detail=str(e).strip("'\""))
    if isinstance(e, (DuplicateNameError, MigrationConflictError, MigrationPendingError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, MigrationFailedError):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, (CyclicDependencyError, ValueError)):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail=f"{type(e).__name__}: {e}")


def get_controller(request: Request) -> Controller:
    return request.app.state.controller


def require_admin(credentials: HTTPBasicCredentials | None = Depends(security)) -> str:
    # Auth is off until an admin password is configured.
    if not settings.admin_password:
        return "anonymous"
    if credentials is None or not (
        secrets.compare_digest(credentials.username, settings.admin_user)
        and secrets.compare_digest(credentials.password, settings.admin_password)
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


def create_app(controller: Controller | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db.init_db()
        if app.state.controller is None:
            app.state.controller = controller_from_settings()
        db.log_event("INFO", f"Controller ready with {len(app.state.controller.store)} service(s)")
        yield

    app = FastAPI(title="Deployment Rollout Controller", lifespan=lifespan)
    app.state.controller = controller

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/services")
    def list_services(ctl: Controller = Depends(get_controller)):
        return [asdict(d) for d in ctl.store.list()]

    @app.get("/services/{name}")
    def get_service(name: str, ctl: Controller = Depends(get_controller)):
        try:
            return asdict(ctl.store.resolve(name))
        except NotFoundError as e:
            raise _http_error(e)

    @app.put("/services/{name}/image")
    def update_image(
        name: str,
        body: ImageUpdateRequest,
        ctl: Controller = Depends(get_controller),
        user: str = Depends(require_admin),
    ):
        try:
            d = ctl.store.update_image(name, body.image)
        except (NotFoundError, ValueError) as e:
            raise _http_error(e)
        db.log_event("INFO", f"Image set to {body.image} by {user}", service_name=name)
        return asdict(d)

    @app.get("/plan")
    def get_plan(targets: list[str] | None = Query(None), ctl: Controller = Depends(get_controller)):
        try:
            return {"plan": list(build_plan(ctl.store.list(), targets))}
        except (NotFoundError, CyclicDependencyError) as e:
            raise _http_error(e)

    @app.post("/rollouts", status_code=202)
    def start_rollout(
        body: RolloutRequest,
        ctl: Controller = Depends(get_controller),
        user: str = Depends(require_admin),
    ):
        migration = ctl.migration_target(body.migration_checksum, body.migration_version, body.apply_migrations)
        try:
            rollout_id = ctl.manager.start_rollout(
                images=body.images,
                targets=body.targets,
                migration=migration,
                on_failure=rollback_failed_service if body.auto_rollback else None,
            )
        except (NotFoundError, CyclicDependencyError, ValueError) as e:
            raise _http_error(e)
        db.log_event("INFO", f"Rollout requested by {user}", rollout_id=rollout_id)
        return ctl.manager.get(rollout_id).snapshot()

    @app.get("/rollouts")
    def list_rollouts(ctl: Controller = Depends(get_controller)):
        return [r.snapshot() for r in ctl.registry.list()]

    @app.get("/rollouts/{rollout_id}")
    def get_rollout(rollout_id: str, ctl: Controller = Depends(get_controller)):
        try:
            record = ctl.manager.get(rollout_id)
        except KeyError as e:
            raise _http_error(e)
        return ctl.engine.report(record).as_dict()

    @app.post("/rollouts/{rollout_id}/cancel")
    def cancel_rollout(
        rollout_id: str,
        ctl: Controller = Depends(get_controller),
        user: str = Depends(require_admin),
    ):
        try:
            record = ctl.manager.cancel(rollout_id)
        except KeyError as e:
            raise _http_error(e)
        return record.snapshot()

    @app.post("/rollouts/{rollout_id}/rollback", status_code=202)
    def rollback_rollout(
        rollout_id: str,
        body: RollbackRequest,
        ctl: Controller = Depends(get_controller),
        user: str = Depends(require_admin),
    ):
        try:
            record = ctl.manager.rollback(rollout_id, body.services, previous_images=body.images)
        except (KeyError, NotFoundError, ValueError) as e:
            raise _http_error(e)
        db.log_event("WARN", f"Rollback of {', '.join(body.services)} requested by {user}", rollout_id=rollout_id)
        return record.snapshot()

    @app.get("/migrations")
    def list_migrations(version: str | None = None, ctl: Controller = Depends(get_controller)):
        return [asdict(m) for m in ctl.gate.records(version)]

    @app.post("/migrations/apply")
    def apply_migrations(
        body: MigrationRequest,
        ctl: Controller = Depends(get_controller),
        user: str = Depends(require_admin),
    ):
        target = ctl.migration_target(body.checksum, body.version)
        try:
            row = ctl.gate.apply_migrations(target.checksum, target.version)
        except (MigrationConflictError, MigrationFailedError) as e:
            raise _http_error(e)
        return asdict(row)

    @app.get("/events")
    def events(limit: int = 100, rollout_id: str | None = None):
        return db.latest_events(limit=max(1, min(limit, 1000)), rollout_id=rollout_id)

    return app


app = create_app()
