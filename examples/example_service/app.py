from __future__ import annotations

import os
import time

from fastapi import FastAPI, Response

VERSION = os.getenv("VERSION", "dev")
# Seconds after boot during which /health answers 503, to exercise health gating.
READY_AFTER_S = float(os.getenv("READY_AFTER_S", "0"))
# Force a permanently unhealthy build, to exercise failure reports and rollback.
BROKEN = os.getenv("BROKEN", "false").lower() in {"1", "true", "yes"}

STARTED_AT = time.monotonic()

app = FastAPI(title=f"Example Service {VERSION}")


@app.get("/health")
def health(response: Response) -> dict[str, str]:
    if BROKEN:
        response.status_code = 503
        return {"status": "unhealthy", "detail": "broken build"}
    if time.monotonic() - STARTED_AT < READY_AFTER_S:
        response.status_code = 503
        return {"status": "starting"}
    return {"status": "healthy"}


@app.get("/version")
def version() -> dict[str, str]:
    return {"version": VERSION}
