# src/anchorid/apps/api/server.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from anchorid.apps.api import trust_endpoints
from anchorid.services.logging import setup_logging
from anchorid.services.trust import TrustControlPlane, TrustError

_log = logging.getLogger("anchorid.api")


def create_app(
    plane: TrustControlPlane | None = None,
    *,
    config_path: str | Path | None = None,
    configure_logging: bool = False,
) -> FastAPI:
    """Build the HTTP app; a control plane passed in is left open on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = plane is None
        control_plane = plane or TrustControlPlane(config_path=config_path)
        if configure_logging:
            setup_logging(control_plane.settings.logging.level, control_plane.settings.logging.file)
        app.state.control_plane = control_plane
        _log.info("trust control plane ready")
        try:
            yield
        finally:
            if owned:
                control_plane.close()

    app = FastAPI(title="anchorid", lifespan=lifespan)
    if plane is not None:
        app.state.control_plane = plane

    @app.exception_handler(TrustError)
    async def _trust_error(request: Request, exc: TrustError) -> JSONResponse:
        headers = {}
        if exc.envelope.retry_after is not None:
            headers["Retry-After"] = str(exc.envelope.retry_after)
        return JSONResponse(status_code=exc.status_code, content=exc.envelope.as_dict(), headers=headers)

    app.include_router(trust_endpoints.router)

    @app.get("/health")
    async def health() -> dict:
        return {"ok": True}

    return app


def serve_app() -> FastAPI:
    """uvicorn factory; configuration comes from ``ANCHORID_CONFIG``."""
    return create_app(configure_logging=True)
