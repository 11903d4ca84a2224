"""
DR Orchestrator Service
FastAPI application hosting the operator API, health and metrics endpoints
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .config import get_settings
from .logging_adapter import configure_logging, get_safe_logger
from .orchestrator import Orchestrator
from .routers.disaster_recovery import router as dr_router

logger = get_safe_logger("dr_orchestrator.app")


def create_app(orchestrator: Optional[Orchestrator] = None, manage_lifecycle: bool = True) -> FastAPI:
    """
    Build the application. A pre-built orchestrator is used as-is (tests);
    otherwise one is created from settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        instance = orchestrator
        if instance is None:
            settings = get_settings()
            configure_logging(settings.log_level, settings.log_json)
            instance = Orchestrator.from_settings(settings)
        app.state.orchestrator = instance
        if manage_lifecycle:
            await instance.start()
        logger.info("dr_orchestrator_api_started")
        try:
            yield
        finally:
            if manage_lifecycle:
                await instance.stop()
            logger.info("dr_orchestrator_api_stopped")

    app = FastAPI(
        title="DR Orchestrator",
        description="Cross-region backup, replication and failover for stateful workloads",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(dr_router)

    @app.get("/health")
    async def health(request: Request):
        instance = getattr(request.app.state, "orchestrator", None)
        if instance is None:
            return JSONResponse(status_code=503, content={"status": "starting"})
        state = await instance.repository.load_dr_state()
        return {"status": "ok", "role": state.role.value, "halted": state.halted}

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
