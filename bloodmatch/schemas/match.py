"""
Ranked candidates and the Match records they become.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from bloodmatch.schemas.request import as_utc


class MatchStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    COMPLETED = "COMPLETED"


class MatchCandidate(BaseModel):
    """Transient ranking output of one matching run."""
    donor_id: str
    user_id: str
    distance_km: float = Field(ge=0)
    model_score: float
    distance_score: float
    overall_score: float
    response_score: float
    reputation_score: float


class Match(BaseModel):
    id: str
    request_id: str
    donor_id: str
    user_id: str
    status: MatchStatus = MatchStatus.PENDING

    # ── Scores frozen at creation ──
    distance_km: float
    model_score: float
    distance_score: float
    overall_score: float

    created_at: datetime
    expires_at: datetime
    responded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("created_at", "expires_at", "responded_at", "completed_at")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)
