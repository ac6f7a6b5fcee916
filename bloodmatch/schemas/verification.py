"""
Peer-attestation pool members, proofs and persisted verifications.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class VerificationStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    DISPUTED = "DISPUTED"


class VerificationType(str, Enum):
    PEER_REVIEW = "PEER_REVIEW"


class VerifierCandidate(BaseModel):
    user_id: str
    qualification_score: float = Field(0.5, ge=0, le=1)
    successful_verifications: int = Field(0, ge=0)
    disputed_verifications: int = Field(0, ge=0)
    is_active: bool = True


class VerifierPoolFilter(BaseModel):
    is_active: bool = True
    min_qualification: float = 0.8
    max_disputed: int = 5  # exclusive


class AttestationProof(BaseModel):
    verifier_id: str
    signature: str
    merkle_proof: str


class Verification(BaseModel):
    id: str
    request_id: str
    verifier_id: str
    status: VerificationStatus = VerificationStatus.VERIFIED
    verification_type: VerificationType = VerificationType.PEER_REVIEW
    confidence: float = Field(0.95, ge=0, le=1)
    signature: str
    merkle_proof: str
    created_at: datetime
