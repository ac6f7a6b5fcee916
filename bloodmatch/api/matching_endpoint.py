"""
Matching API — thin adapter over the match engine and lifecycle.

POST /v1/matching/{request_id}/run          → ranked matches for one request
POST /v1/matching/sweep                     → one periodic sweep cycle
POST /v1/matching/matches/{match_id}/accept → donor accepts
POST /v1/matching/matches/{match_id}/reject → donor declines
POST /v1/matching/matches/{match_id}/complete → donation confirmed
"""
from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from bloodmatch.api.deps import get_container
from bloodmatch.schemas.match import Match, MatchCandidate
from bloodmatch.services.container import ServiceContainer
from bloodmatch.services.matching_sweep import run_sweep

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/matching", tags=["matching"])


class MatchingRunResponse(BaseModel):
    request_id: str
    match_count: int
    matches: list[MatchCandidate]


class SweepResponse(BaseModel):
    status: str
    job_result: dict


class DonorAction(BaseModel):
    donor_id: str


@router.post(
    "/{request_id}/run",
    response_model=MatchingRunResponse,
    summary="Run autonomous matching for a blood request",
)
async def run_matching(
    request_id: str,
    limit: Optional[int] = Query(None, ge=1, le=50),
    container: ServiceContainer = Depends(get_container),
) -> MatchingRunResponse:
    logger.info("matching_triggered", request_id=request_id, limit=limit)
    matches = await container.match_engine.run_matching(request_id, limit)
    return MatchingRunResponse(request_id=request_id, match_count=len(matches), matches=matches)


@router.post("/sweep", response_model=SweepResponse, summary="Run one matching sweep cycle")
async def trigger_sweep(container: ServiceContainer = Depends(get_container)) -> SweepResponse:
    result = await run_sweep(container.datastore, container.match_engine, container.lifecycle)
    return SweepResponse(status=result["status"], job_result=result)


@router.post("/matches/{match_id}/accept", response_model=Match)
async def accept_match(
    match_id: str,
    action: DonorAction,
    container: ServiceContainer = Depends(get_container),
) -> Match:
    return await container.lifecycle.accept_match(match_id, action.donor_id)


@router.post("/matches/{match_id}/reject", response_model=Match)
async def reject_match(
    match_id: str,
    action: DonorAction,
    container: ServiceContainer = Depends(get_container),
) -> Match:
    return await container.lifecycle.reject_match(match_id, action.donor_id)


@router.post("/matches/{match_id}/complete", response_model=Match)
async def complete_match(
    match_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Match:
    return await container.lifecycle.complete_match(match_id)
