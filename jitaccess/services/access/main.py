"""
JIT Access Service (port 8080)
------------------------------
HTTP API, Slack webhook and the in-process reconcilers for time-bounded,
approval-gated EKS access.

Startup creates the tables, starts both controllers (which resync every live
Request and Job) and the expiry sweeper. Shutdown stops the sweeper, lets
in-flight reconciles finish and exits.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm.exc import StaleDataError

from jitaccess.services.access.plane import AccessPlane, build_plane
from jitaccess.services.shared.config import JitSettings, get_settings
from jitaccess.services.shared.database import create_all_tables
from jitaccess.services.shared.errors import JitError
from jitaccess.services.shared.logs import configure_logging

logger = structlog.get_logger()

SERVICE_NAME = "jit-access"
VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    plane: AccessPlane = app.state.plane
    logger.info("jit_access_starting")
    create_all_tables(bind=plane.session_factory.kw.get("bind"))
    logger.info("jit_access_tables_ready")

    await plane.manager.start()
    sweeper_task = None
    if plane.settings.sweeper.enabled:
        sweeper_task = asyncio.create_task(
            plane.sweeper.run(plane.settings.sweeper.interval.total_seconds())
        )
    yield

    logger.info("jit_access_stopping")
    if sweeper_task is not None:
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass
    await plane.manager.stop()
    plane.slack.close()
    logger.info("jit_access_stopped")


async def jit_error_handler(request: Request, exc: JitError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, reason=exc.reason, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def stale_data_handler(request: Request, exc: StaleDataError):
    return JSONResponse(
        status_code=409,
        content={"error": "Conflict", "message": "resource was modified concurrently, retry"},
    )


def create_app(settings: Optional[JitSettings] = None, plane: Optional[AccessPlane] = None) -> FastAPI:
    if plane is None:
        settings = settings or get_settings()
        configure_logging(settings.log)
        plane = build_plane(settings)

    app = FastAPI(
        title="JIT Access Service",
        version=VERSION,
        description="Just-in-time, approval-gated access to EKS clusters.",
        lifespan=lifespan,
    )
    app.state.plane = plane

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(JitError, jit_error_handler)
    app.add_exception_handler(StaleDataError, stale_data_handler)

    from jitaccess.services.access.routes_clusters import router as clusters_router
    from jitaccess.services.access.routes_users    import router as users_router
    from jitaccess.services.access.routes_access   import router as access_router
    from jitaccess.services.access.routes_slack    import router as slack_router

    app.include_router(clusters_router, prefix="/api/v1", tags=["Clusters"])
    app.include_router(users_router,    prefix="/api/v1", tags=["Users"])
    app.include_router(access_router,   prefix="/api/v1", tags=["Access"])
    app.include_router(slack_router,                      tags=["Slack"])

    @app.get("/health", tags=["Health"])
    def health():
        return {"status": "healthy", "service": SERVICE_NAME, "version": VERSION}

    @app.get("/ready", tags=["Health"])
    def ready():
        if not plane.manager.running:
            return JSONResponse(status_code=503, content={"status": "starting", "service": SERVICE_NAME})
        return {"status": "ready", "service": SERVICE_NAME}

    return app
