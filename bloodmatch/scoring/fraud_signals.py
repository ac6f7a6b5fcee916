"""
Fraud risk signals — 5 independent sub-scores.

Each signal:
  1. Takes already-fetched inputs (no I/O here)
  2. Returns a sub-score in [0, 1]

Weights are applied in the fraud engine, not here.

Convention: HIGHER score = HIGHER risk.
"""
from __future__ import annotations

import statistics
from datetime import datetime, timedelta
from typing import Optional

from bloodmatch.schemas.fraud import (
    AttemptStatus,
    DeviceSignals,
    DonationCounterpart,
    UserActivity,
    VerificationAttempt,
)


# ═══════════════════════════════════════════════════════════════
# 1. BEHAVIORAL  (weight = 0.20)
#    Last 10 verification attempts: failure rate + trust-score spread
# ═══════════════════════════════════════════════════════════════
BEHAVIORAL_WINDOW = 10
BEHAVIORAL_NO_HISTORY = 0.2


def score_behavioral(attempts: list[VerificationAttempt]) -> float:
    recent = attempts[:BEHAVIORAL_WINDOW]
    if not recent:
        return BEHAVIORAL_NO_HISTORY

    failure_rate = sum(1 for a in recent if a.status == AttemptStatus.REJECTED) / len(recent)
    trust_spread = min(statistics.pstdev([a.trust_score for a in recent]), 1.0)
    return min((failure_rate + trust_spread) / 2, 1.0)


# ═══════════════════════════════════════════════════════════════
# 2. DEVICE FINGERPRINT  (weight = 0.15)
#    Additive penalties over a 0.1 baseline
# ═══════════════════════════════════════════════════════════════
DEVICE_BASELINE = 0.1
DEVICE_PENALTIES: dict[str, float] = {
    "new_device": 0.2,
    "vpn_detected": 0.3,
    "proxy_detected": 0.25,
    "rooted_device": 0.25,
    "emulator": 0.3,
    "shared_device": 0.4,
    "multiple_users": 0.3,
}


def score_device(device: Optional[DeviceSignals]) -> float:
    score = DEVICE_BASELINE
    if device is not None:
        for flag, penalty in DEVICE_PENALTIES.items():
            if getattr(device, flag):
                score += penalty
    return min(score, 1.0)


# ═══════════════════════════════════════════════════════════════
# 3. VELOCITY  (weight = 0.25)
#    Tiered on recent attempt counts
# ═══════════════════════════════════════════════════════════════
VELOCITY_BURST_WINDOW = timedelta(minutes=5)
VELOCITY_HOUR_WINDOW = timedelta(hours=1)


def score_velocity(attempts_last_5_min: int, attempts_last_hour: int) -> float:
    if attempts_last_5_min > 3:
        return 0.95
    elif attempts_last_hour > 10:
        return 0.8
    elif attempts_last_hour > 5:
        return 0.5
    else:
        return 0.1


# ═══════════════════════════════════════════════════════════════
# 4. USAGE PATTERN  (weight = 0.20)
#    New account, inactivity, mechanically regular donations
# ═══════════════════════════════════════════════════════════════
PATTERN_UNKNOWN_USER = 0.5
NEW_ACCOUNT_DAYS = 7
INACTIVE_DAYS = 30
REGULARITY_MIN_DONATIONS = 6
REGULARITY_MAX_STDDEV = timedelta(hours=24)


def score_pattern(activity: Optional[UserActivity], now: datetime) -> float:
    if activity is None:
        return PATTERN_UNKNOWN_USER

    score = 0.0
    if now - activity.created_at < timedelta(days=NEW_ACCOUNT_DAYS):
        score += 0.3

    if activity.last_active_at is None or now - activity.last_active_at > timedelta(days=INACTIVE_DAYS):
        score += 0.2

    times = sorted(activity.donation_times, reverse=True)
    if len(times) >= REGULARITY_MIN_DONATIONS:
        intervals = [(newer - older).total_seconds() for newer, older in zip(times, times[1:])]
        if statistics.pstdev(intervals) < REGULARITY_MAX_STDDEV.total_seconds():
            score += 0.3

    return min(score, 1.0)


# ═══════════════════════════════════════════════════════════════
# 5. NETWORK  (weight = 0.20)
#    Association with blocked users in the donation graph
# ═══════════════════════════════════════════════════════════════
BLOCKED_COUNTERPART_PENALTY = 0.3
BLOCKED_CLUSTER_SIZE = 2
BLOCKED_CLUSTER_PENALTY = 0.4


def score_network(counterparts: list[DonationCounterpart]) -> float:
    score = 0.0
    blocked_users: set[str] = set()
    for counterpart in counterparts:
        if counterpart.blocked:
            score += BLOCKED_COUNTERPART_PENALTY
            blocked_users.add(counterpart.user_id)

    if len(blocked_users) > BLOCKED_CLUSTER_SIZE:
        score += BLOCKED_CLUSTER_PENALTY

    return min(score, 1.0)
