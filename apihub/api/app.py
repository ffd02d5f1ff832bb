from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from apihub.api.errors import register_exception_handlers
from apihub.api.routes.builders import router as builders_router
from apihub.api.routes.compare import router as compare_router
from apihub.api.routes.groups import router as groups_router
from apihub.api.routes.health import router as health_router
from apihub.api.routes.internal import router as internal_router
from apihub.api.routes.packages import router as packages_router
from apihub.api.routes.publish import router as publish_router
from apihub.api.routes.ws import router as ws_router
from apihub.core.config import get_settings
from apihub.core.lifecycle import get_readiness
from apihub.core.logging import configure_logging
from apihub.db.init_db import initialize_database
from apihub.db.session import get_session_factory
from apihub.worker import BuildExecutor
from apihub.ws.runtime import get_load_balancer, get_session_manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()

    executor: BuildExecutor | None = None
    stop = asyncio.Event()
    maintenance: asyncio.Task[None] | None = None
    if settings.background_tasks_enabled:
        if settings.executor_enabled:
            executor = BuildExecutor(settings, get_session_factory())
            executor.start()
        maintenance = asyncio.create_task(
            get_load_balancer().run_maintenance(stop, get_session_manager().active_keys)
        )

    get_readiness().mark_ready()
    logger.info("%s ready on %s", settings.app_name, settings.effective_node_address)
    try:
        yield
    finally:
        get_readiness().reset()
        stop.set()
        if maintenance is not None:
            maintenance.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await maintenance
        if executor is not None:
            await asyncio.to_thread(executor.stop)
        logger.info("%s stopped", settings.app_name)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    register_exception_handlers(app)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(publish_router, prefix="/api/v2")
    app.include_router(builders_router, prefix="/api/v2")
    app.include_router(compare_router, prefix="/api/v2")
    app.include_router(packages_router, prefix="/api/v2")
    app.include_router(groups_router, prefix="/api/v2")
    app.include_router(internal_router, prefix="/api")
    app.include_router(ws_router)
    return app
