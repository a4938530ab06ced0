"""API endpoints for dispatching jobs and probing the lead sourcing pipeline."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.services.capabilities import get_dispatch_orchestrator, get_lead_pipeline
from app.services.dispatch.orchestrator import DispatchOrchestrator, DispatchResult
from app.services.errors import AlreadyDispatchedError, DispatchError
from app.services.sourcing.pipeline import LeadSourcingPipeline, PipelineStatus

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/jobs/{job_id}/dispatch",
    response_model=DispatchResult,
    status_code=status.HTTP_201_CREATED,
)
async def dispatch_job(
    job_id: str,
    orchestrator: DispatchOrchestrator = Depends(get_dispatch_orchestrator),
) -> DispatchResult:
    """Dispatch a job to warm technicians, falling back to cold leads."""
    try:
        return await orchestrator.dispatch(job_id)
    except AlreadyDispatchedError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "code": exc.code, "outreach_id": exc.outreach_id},
        ) from exc
    except DispatchError as exc:
        logger.error("dispatch.api_error", extra={"job_id": job_id, "code": exc.code})
        raise HTTPException(
            status_code=_map_error_code(exc.code),
            detail={"message": str(exc), "code": exc.code},
        ) from exc


@router.get("/pipeline/status", response_model=PipelineStatus)
async def pipeline_status(
    state: str = Query(..., min_length=2, description="Two-letter state to probe, e.g. FL."),
    pipeline: LeadSourcingPipeline = Depends(get_lead_pipeline),
) -> PipelineStatus:
    """Report whether the sourcing pipeline has credits and staged records to work on."""
    try:
        return await pipeline.status(state.upper())
    except DispatchError as exc:
        logger.error("pipeline.status_error", extra={"state": state, "code": exc.code})
        raise HTTPException(status_code=_map_error_code(exc.code), detail=str(exc)) from exc


def _map_error_code(code: str) -> int:
    if code == "404_JOB_NOT_FOUND":
        return status.HTTP_404_NOT_FOUND
    if code == "404_NO_CANDIDATES":
        return status.HTTP_404_NOT_FOUND
    if code in ("409_ALREADY_DISPATCHED", "409_DUPLICATE_RECORD"):
        return status.HTTP_409_CONFLICT
    if code == "402_NO_VERIFICATION_CREDITS":
        return status.HTTP_402_PAYMENT_REQUIRED
    if code == "502_PIPELINE_UPSTREAM":
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR
