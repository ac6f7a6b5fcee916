"""
Fraud Risk Engine

Orchestrates:
  1. Input collection from the datastore
  2. All 5 signal sub-scores
  3. Weighted composite score (true weighted sum, weights sum to 1.0)
  4. Risk level
  5. Enforcement: alert above 0.7, block + FraudDetected above 0.9

Runs independently of matching; blocked users drop out of candidate
retrieval. A failing signal contributes 0. Any other internal failure
returns the neutral default (0.5, medium). FraudDetected is the one
failure that always reaches the caller.
"""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import structlog

from bloodmatch.core import metrics
from bloodmatch.core.errors import FraudDetected
from bloodmatch.schemas.fraud import (
    AlertSeverity,
    EventContext,
    FraudAlert,
    FraudFactors,
    FraudScore,
    RiskLevel,
)
from bloodmatch.scoring import fraud_signals
from bloodmatch.services.collaborators import Datastore

logger = structlog.get_logger()


# ═══════════════════════════════════════════════════════════════
# Signal weights, must sum to 1.0
# ═══════════════════════════════════════════════════════════════
SIGNAL_WEIGHTS: dict[str, float] = {
    "behavioral": 0.20,
    "device": 0.15,
    "velocity": 0.25,
    "pattern": 0.20,
    "network": 0.20,
}
assert abs(sum(SIGNAL_WEIGHTS.values()) - 1.0) < 1e-9, "Weights must sum to 1.0"


# ═══════════════════════════════════════════════════════════════
# Decision thresholds (strictly greater than)
#   score > 0.9  → CRITICAL alert + block + FraudDetected
#   score > 0.7  → HIGH alert
# ═══════════════════════════════════════════════════════════════
ALERT_THRESHOLD = 0.7
BLOCK_THRESHOLD = 0.9

# Risk level bands: score < bound → level
RISK_LEVEL_BANDS = [
    (0.3, RiskLevel.LOW),
    (0.6, RiskLevel.MEDIUM),
    (0.85, RiskLevel.HIGH),
]

NEUTRAL_SCORE = FraudScore(score=0.5, risk=RiskLevel.MEDIUM)

DEFAULT_ALERT_TYPE = "AUTONOMOUS_FRAUD_DETECTION"


@dataclass(frozen=True)
class FraudSignals:
    behavioral: float
    device: float
    velocity: float
    pattern: float
    network: float

    def composite(self) -> float:
        values = asdict(self)
        return min(1.0, max(0.0, sum(values[name] * weight for name, weight in SIGNAL_WEIGHTS.items())))


def categorize_risk(score: float) -> RiskLevel:
    for bound, level in RISK_LEVEL_BANDS:
        if score < bound:
            return level
    return RiskLevel.CRITICAL


class FraudRiskEngine:

    def __init__(self, datastore: Datastore):
        self.datastore = datastore

    async def analyze(self, user_id: str, context: Optional[EventContext] = None) -> FraudScore:
        """
        Main fraud entry point.
        """
        context = context or EventContext()
        logger.info("fraud_analysis_started", user_id=user_id, fraud_event=context.event)

        try:
            signals = await self.collect_signals(user_id, context)
            composite = signals.composite()
            await self.enforce(user_id, composite, context)
            await self._record_score(user_id, composite)
        except FraudDetected:
            raise
        except Exception as e:
            logger.error("fraud_analysis_failed", user_id=user_id, error=str(e))
            return NEUTRAL_SCORE.model_copy(deep=True)

        risk = categorize_risk(composite)
        logger.info("fraud_analysis_complete", user_id=user_id, score=round(composite, 3), risk=risk.value)
        return FraudScore(score=composite, risk=risk, factors=FraudFactors(**asdict(signals)))

    async def guard(self, user_id: str, context: Optional[EventContext] = None) -> FraudScore:
        """Gate a user action: analyze and let FraudDetected abort the caller."""
        return await self.analyze(user_id, context)

    # ───────────────────────────────────────────────────────────

    async def collect_signals(self, user_id: str, context: EventContext) -> FraudSignals:
        now = datetime.now(timezone.utc)

        async def behavioral() -> float:
            attempts = await self.datastore.recent_verification_attempts(
                user_id, fraud_signals.BEHAVIORAL_WINDOW,
            )
            return fraud_signals.score_behavioral(attempts)

        async def device() -> float:
            return fraud_signals.score_device(context.device)

        async def velocity() -> float:
            burst = await self.datastore.count_recent_attempts(user_id, fraud_signals.VELOCITY_BURST_WINDOW)
            hourly = await self.datastore.count_recent_attempts(user_id, fraud_signals.VELOCITY_HOUR_WINDOW)
            return fraud_signals.score_velocity(burst, hourly)

        activity = None
        activity_loaded = False

        async def load_activity():
            nonlocal activity, activity_loaded
            if not activity_loaded:
                activity = await self.datastore.find_user_activity(user_id)
                activity_loaded = True
            return activity

        async def pattern() -> float:
            return fraud_signals.score_pattern(await load_activity(), now)

        async def network() -> float:
            loaded = await load_activity()
            return fraud_signals.score_network(loaded.counterparts if loaded else [])

        return FraudSignals(
            behavioral=await self._signal("behavioral", user_id, behavioral),
            device=await self._signal("device", user_id, device),
            velocity=await self._signal("velocity", user_id, velocity),
            pattern=await self._signal("pattern", user_id, pattern),
            network=await self._signal("network", user_id, network),
        )

    async def enforce(self, user_id: str, composite: float, context: Optional[EventContext] = None) -> None:
        """
        Apply the decision thresholds to a composite score.
        Raises FraudDetected after blocking when composite > BLOCK_THRESHOLD.
        """
        context = context or EventContext()

        if composite > ALERT_THRESHOLD:
            await self._create_alert(user_id, composite, context)

        if composite > BLOCK_THRESHOLD:
            await self._block_user(user_id, composite)
            raise FraudDetected(user_id, composite)

    # ───────────────────────────────────────────────────────────

    async def _signal(self, name: str, user_id: str, compute: Callable[[], Awaitable[float]]) -> float:
        try:
            return await compute()
        except Exception as e:
            logger.error("fraud_signal_failed", signal=name, user_id=user_id, error=str(e))
            return 0.0

    async def _create_alert(self, user_id: str, composite: float, context: EventContext) -> FraudAlert:
        severity = AlertSeverity.CRITICAL if composite > BLOCK_THRESHOLD else AlertSeverity.HIGH
        alert = await self.datastore.create_fraud_alert(FraudAlert(
            id=str(uuid.uuid4()),
            user_id=user_id,
            alert_type=context.event or DEFAULT_ALERT_TYPE,
            severity=severity,
            score=composite,
            description=f"Fraud score: {composite:.3f}. Event: {context.event or 'unknown'}",
            created_at=datetime.now(timezone.utc),
        ))
        metrics.FRAUD_ALERTS.labels(severity=severity.value).inc()
        logger.warning("fraud_alert_created", alert_id=alert.id, user_id=user_id, score=round(composite, 3))
        return alert

    async def _block_user(self, user_id: str, composite: float) -> None:
        try:
            donor = await self.datastore.find_donor_by_user(user_id)
            if donor is not None:
                await self.datastore.update_donor_profile(
                    donor.id, {"blocked": True, "fraud_risk_score": composite},
                )
        except Exception as e:
            # The block must still abort the caller even if persisting it failed
            logger.error("fraud_block_persist_failed", user_id=user_id, error=str(e))
        metrics.FRAUD_BLOCKS.inc()
        logger.critical("user_blocked_fraud", user_id=user_id, score=round(composite, 3))

    async def _record_score(self, user_id: str, composite: float) -> None:
        try:
            donor = await self.datastore.find_donor_by_user(user_id)
            if donor is not None:
                await self.datastore.update_donor_profile(donor.id, {"fraud_risk_score": composite})
        except Exception as e:
            logger.warning("fraud_score_persist_failed", user_id=user_id, error=str(e))
