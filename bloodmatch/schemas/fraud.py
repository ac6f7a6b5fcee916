"""
Fraud analysis inputs and outputs.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from bloodmatch.schemas.request import as_utc


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertSeverity(str, Enum):
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AttemptStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


# ── Inputs ──

class DeviceSignals(BaseModel):
    """Client-reported device fingerprint flags."""
    new_device: bool = False
    vpn_detected: bool = False
    proxy_detected: bool = False
    rooted_device: bool = False
    emulator: bool = False
    shared_device: bool = False
    multiple_users: bool = False


class EventContext(BaseModel):
    """The user action being gated, e.g. REQUEST_CREATE or DONATION_CLAIM."""
    event: Optional[str] = None
    device: DeviceSignals = Field(default_factory=DeviceSignals)


class VerificationAttempt(BaseModel):
    user_id: str
    status: AttemptStatus
    trust_score: float = Field(ge=0, le=1)
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def normalize_created(cls, v: datetime) -> datetime:
        return as_utc(v)


class DonationCounterpart(BaseModel):
    """The other party of a past donation and whether they are blocked."""
    user_id: str
    blocked: bool = False


class UserActivity(BaseModel):
    user_id: str
    created_at: datetime
    last_active_at: Optional[datetime] = None
    donation_times: list[datetime] = Field(
        default_factory=list, description="Newest first",
    )
    counterparts: list[DonationCounterpart] = Field(default_factory=list)

    @field_validator("created_at", "last_active_at")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @field_validator("donation_times")
    @classmethod
    def normalize_donation_times(cls, v: list[datetime]) -> list[datetime]:
        return [as_utc(t) for t in v]


# ── Outputs ──

class FraudFactors(BaseModel):
    behavioral: float = 0.0
    device: float = 0.0
    velocity: float = 0.0
    pattern: float = 0.0
    network: float = 0.0


class FraudScore(BaseModel):
    score: float = Field(ge=0, le=1)
    risk: RiskLevel
    factors: FraudFactors = Field(default_factory=FraudFactors)


class FraudAlert(BaseModel):
    """Append-only audit record."""
    id: str
    user_id: str
    alert_type: str
    severity: AlertSeverity
    score: float
    description: str
    created_at: datetime
