"""
Trust API — fraud analysis and peer verification.

POST /v1/fraud/{user_id}/analyze               → composite fraud score
POST /v1/verification/{record_id}              → M-of-N attestation round
POST /v1/verification/verifiers/{user_id}      → join the verifier pool
POST /v1/verification/verifiers/{user_id}/outcome → record a verification outcome
"""
from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from bloodmatch.api.deps import get_container
from bloodmatch.schemas.fraud import EventContext, FraudScore
from bloodmatch.schemas.verification import VerifierCandidate
from bloodmatch.services.container import ServiceContainer

logger = structlog.get_logger()
fraud_router = APIRouter(prefix="/v1/fraud", tags=["fraud"])
verification_router = APIRouter(prefix="/v1/verification", tags=["verification"])


class VerificationResponse(BaseModel):
    record_id: str
    verifier_ids: list[str]


class VerificationOutcome(BaseModel):
    successful: bool


@fraud_router.post("/{user_id}/analyze", response_model=FraudScore)
async def analyze_fraud(
    user_id: str,
    context: EventContext,
    container: ServiceContainer = Depends(get_container),
) -> FraudScore:
    return await container.fraud_engine.analyze(user_id, context)


@verification_router.post("/{record_id}", response_model=VerificationResponse)
async def verify_record(
    record_id: str,
    record_data: dict[str, Any],
    container: ServiceContainer = Depends(get_container),
) -> VerificationResponse:
    verifier_ids = await container.verifier.verify(record_id, record_data)
    return VerificationResponse(record_id=record_id, verifier_ids=verifier_ids)


@verification_router.post("/verifiers/{user_id}", response_model=VerifierCandidate, status_code=201)
async def register_verifier(
    user_id: str,
    container: ServiceContainer = Depends(get_container),
) -> VerifierCandidate:
    return await container.verifier.register_as_verifier(user_id)


@verification_router.post("/verifiers/{user_id}/outcome", response_model=VerifierCandidate)
async def record_outcome(
    user_id: str,
    outcome: VerificationOutcome,
    container: ServiceContainer = Depends(get_container),
) -> VerifierCandidate:
    return await container.verifier.update_qualification(user_id, outcome.successful)
