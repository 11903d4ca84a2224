"""
Disaster Recovery API Router
Operator endpoints over the orchestrator's command surface
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..error_models import http_status_for
from ..logging_adapter import get_safe_logger
from ..orchestrator import CommandOutcome, CommandResult, Orchestrator

logger = get_safe_logger("dr_orchestrator.dr_api")

router = APIRouter(prefix="/api/v1/dr", tags=["disaster-recovery"])


class RestoreRequest(BaseModel):
    sequence: int = Field(..., ge=1, description="Backup sequence to restore")


class TransitionRequest(BaseModel):
    actor: str = Field(default="operator", min_length=1)
    reason: str = Field(default="operator request", min_length=1)


class ClearHaltRequest(BaseModel):
    actor: str = Field(default="operator", min_length=1)


def get_orchestrator(request: Request) -> Orchestrator:
    """Orchestrator instance attached to the application by its lifespan"""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator is not running")
    return orchestrator


def command_response(result: CommandResult) -> JSONResponse:
    if result.outcome == CommandOutcome.ACCEPTED:
        status_code = 202
    elif result.error is not None:
        status_code = http_status_for(result.error)
    else:
        status_code = 500
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


@router.get("/status")
async def get_status(orchestrator: Orchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    """Current DR state, region health and per-workload backup progress"""
    try:
        return await orchestrator.get_status()
    except Exception as e:
        logger.error("failed_to_get_dr_status", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to retrieve DR status")


@router.post("/workloads")
async def register_workload(spec: Dict[str, Any],
                            orchestrator: Orchestrator = Depends(get_orchestrator)):
    return command_response(await orchestrator.register_workload(spec))


@router.post("/workloads/{namespace}/{name}/backups")
async def trigger_backup(namespace: str, name: str,
                         orchestrator: Orchestrator = Depends(get_orchestrator)):
    return command_response(await orchestrator.trigger_backup(f"{namespace}/{name}"))


@router.post("/workloads/{namespace}/{name}/restores")
async def trigger_restore(namespace: str, name: str, body: RestoreRequest,
                          orchestrator: Orchestrator = Depends(get_orchestrator)):
    return command_response(await orchestrator.trigger_restore(f"{namespace}/{name}", body.sequence))


@router.post("/promote")
async def promote(body: Optional[TransitionRequest] = None,
                  orchestrator: Orchestrator = Depends(get_orchestrator)):
    body = body or TransitionRequest()
    return command_response(await orchestrator.promote(actor=body.actor, reason=body.reason))


@router.post("/failback")
async def failback(body: Optional[TransitionRequest] = None,
                   orchestrator: Orchestrator = Depends(get_orchestrator)):
    body = body or TransitionRequest()
    return command_response(await orchestrator.failback(actor=body.actor, reason=body.reason))


@router.post("/clear-halt")
async def clear_halt(body: Optional[ClearHaltRequest] = None,
                     orchestrator: Orchestrator = Depends(get_orchestrator)):
    body = body or ClearHaltRequest()
    return command_response(await orchestrator.clear_halt(actor=body.actor))
