"""
Feature extraction for the donor compatibility model.

Each (request, donor) pair becomes a 10-component vector. Every component
is clamped to [0, 1] and the order below is the model's input layout:

   0  blood_type_compatibility
   1  rh_compatibility
   2  reputation
   3  availability
   4  success_rate
   5  response_time          1 - avg_response_seconds / 3600
   6  donation_recency       days since last donation / 90
   7  urgency                urgency rank / 5
   8  fraud_risk_inverse
   9  biometric_verification 1.0 verified, 0.5 not yet verified

Convention: HIGHER value = BETTER candidate.
"""
from __future__ import annotations

from dataclasses import astuple, dataclass, fields
from datetime import datetime, timezone
from typing import Optional

from bloodmatch.schemas.request import BloodRequest, DonorProfile

FEATURE_COUNT = 10

RESPONSE_TIME_HORIZON_SECONDS = 3600.0
DONATION_RECOVERY_DAYS = 90.0
MAX_URGENCY_RANK = 5
UNVERIFIED_BIOMETRIC_CREDIT = 0.5


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class FeatureVector:
    blood_type_compatibility: float
    rh_compatibility: float
    reputation: float
    availability: float
    success_rate: float
    response_time: float
    donation_recency: float
    urgency: float
    fraud_risk_inverse: float
    biometric_verification: float

    def __post_init__(self):
        for f in fields(self):
            object.__setattr__(self, f.name, clamp(float(getattr(self, f.name))))

    def as_list(self) -> list[float]:
        return list(astuple(self))


FEATURE_NAMES = tuple(f.name for f in fields(FeatureVector))
assert len(FEATURE_NAMES) == FEATURE_COUNT


def success_rate(successful: int, failed: int) -> float:
    return successful / max(successful + failed, 1)


def response_time_score(avg_response_seconds: Optional[float]) -> float:
    return max(0.0, 1.0 - (avg_response_seconds or 0.0) / RESPONSE_TIME_HORIZON_SECONDS)


def donation_recency_score(last_donation_at: Optional[datetime], now: datetime) -> float:
    # Never donated counts as fully recovered
    if last_donation_at is None:
        return 1.0
    days = (now - last_donation_at).total_seconds() / 86_400
    return min(days / DONATION_RECOVERY_DAYS, 1.0)


def extract_features(
    request: BloodRequest,
    donor: DonorProfile,
    now: Optional[datetime] = None,
    blood_type_compatibility: float = 1.0,
    rh_compatibility: float = 1.0,
) -> FeatureVector:
    """
    Compatibility flags default to 1.0 because the candidate pool handed to
    the model is already filtered to the exact blood group and Rh factor.
    """
    now = now or datetime.now(timezone.utc)
    return FeatureVector(
        blood_type_compatibility=blood_type_compatibility,
        rh_compatibility=rh_compatibility,
        reputation=donor.reputation_score,
        availability=1.0 if donor.is_available else 0.0,
        success_rate=success_rate(donor.successful_donations, donor.failed_matches),
        response_time=response_time_score(donor.avg_response_seconds),
        donation_recency=donation_recency_score(donor.last_donation_at, now),
        urgency=request.urgency.rank / MAX_URGENCY_RANK,
        fraud_risk_inverse=1.0 - clamp(donor.fraud_risk_score),
        biometric_verification=1.0 if donor.biometric_verified else UNVERIFIED_BIOMETRIC_CREDIT,
    )
