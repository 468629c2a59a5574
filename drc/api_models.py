from __future__ import annotations

from pydantic import BaseModel, Field


class ImageUpdateRequest(BaseModel):
    image: str = Field(..., description="New image reference (name:tag or digest)")


class RolloutRequest(BaseModel):
    images: dict[str, str] = Field(default_factory=dict, description="service -> new image reference")
    targets: list[str] | None = Field(None, description="Only these services and their dependencies")
    migration_checksum: str | None = Field(None, description="Schema checksum traffic-serving services require")
    migration_version: str | None = Field(None, description="Migration slot; defaults to the stack's")
    apply_migrations: bool = Field(True, description="Run the migration before the first traffic-serving service")
    auto_rollback: bool = Field(False, description="Roll the failed service back to its previous image")


class RollbackRequest(BaseModel):
    services: list[str] = Field(..., min_length=1)
    images: dict[str, str] = Field(default_factory=dict, description="Override service -> image to roll back to")


class MigrationRequest(BaseModel):
    checksum: str = Field(..., min_length=1)
    version: str | None = None
