"""
Blood requests and donor profiles as exchanged with the datastore.

The core never owns these records; it reads them through the Datastore
protocol and writes back patches (status, counters, risk score, blocked flag).
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes from the datastore are taken to be UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Enums matching the donation domain ──

class BloodGroup(str, Enum):
    A = "A"
    B = "B"
    AB = "AB"
    O = "O"


class RhFactor(str, Enum):
    POSITIVE = "POSITIVE"
    NEGATIVE = "NEGATIVE"


class Urgency(str, Enum):
    """Ordered by `rank`: LOW < MEDIUM < HIGH < CRITICAL < EMERGENCY."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"
    EMERGENCY = "EMERGENCY"

    @property
    def rank(self) -> int:
        return URGENCY_RANK[self]


URGENCY_RANK = {
    Urgency.LOW: 1,
    Urgency.MEDIUM: 2,
    Urgency.HIGH: 3,
    Urgency.CRITICAL: 4,
    Urgency.EMERGENCY: 5,
}


class RequestStatus(str, Enum):
    OPEN = "OPEN"
    MATCHED = "MATCHED"
    FULFILLED = "FULFILLED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


TERMINAL_REQUEST_STATUSES = frozenset({
    RequestStatus.FULFILLED,
    RequestStatus.EXPIRED,
    RequestStatus.CANCELLED,
})


# ── Sub-models ──

class Coordinate(BaseModel):
    """Unvalidated on purpose: geo helpers decide what an invalid point means."""
    latitude: float
    longitude: float


# ── Top-level records ──

class BloodRequest(BaseModel):
    id: str
    recipient_id: str
    blood_group: BloodGroup
    rh_factor: RhFactor
    units_needed: int = Field(1, ge=1, le=10)
    urgency: Urgency = Urgency.MEDIUM
    origin: Optional[Coordinate] = None
    radius_km: float = Field(50.0, gt=0)
    expires_at: datetime
    status: RequestStatus = RequestStatus.OPEN

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, v: datetime) -> datetime:
        return as_utc(v)


class DonorProfile(BaseModel):
    id: str
    user_id: str
    blood_group: BloodGroup
    rh_factor: RhFactor
    is_available: bool = True
    last_location: Optional[Coordinate] = None

    # Reliability
    reputation_score: float = 0.5
    successful_donations: int = Field(0, ge=0)
    failed_matches: int = Field(0, ge=0)
    avg_response_seconds: Optional[float] = Field(None, ge=0)
    last_donation_at: Optional[datetime] = None

    # Risk
    fraud_risk_score: float = 0.0
    biometric_verified: bool = False
    blocked: bool = False

    # Reward amount owed, paid out by the ledger collaborator
    rewards_owed: float = 0.0

    @field_validator("last_donation_at")
    @classmethod
    def normalize_last_donation(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class DonorFilter(BaseModel):
    """Candidate retrieval filter passed to Datastore.find_candidate_donors."""
    blood_group: Optional[BloodGroup] = None
    rh_factor: Optional[RhFactor] = None
    is_available: bool = True
    blocked: bool = False
