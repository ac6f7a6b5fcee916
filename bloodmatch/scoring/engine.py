"""
Match Engine

Orchestrates one matching run for a blood request:
  1. Load request (must be open and located)
  2. Retrieve candidate donors (exact blood group + Rh, available, not blocked)
  3. Geo filter against the request radius
  4. Feature vector + model score per candidate
  5. Compatibility floor on the model score
  6. Score fusion (model vs distance)
  7. Rank + truncate
  8. Persist PENDING matches (at most once per request/donor pair)
  9. Notify the top donor(s), fire-and-forget

Per-candidate failures are logged and skipped. Zero candidates is a valid
result; at EMERGENCY urgency it triggers the urgent broadcast.

Concurrent runs for different requests share nothing but the datastore and
the read-only location cache.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from bloodmatch.core import metrics
from bloodmatch.core.config import Settings, get_settings
from bloodmatch.core.errors import DuplicateMatch, NotFound, ValidationError
from bloodmatch.schemas.match import Match, MatchCandidate, MatchStatus
from bloodmatch.schemas.request import (
    BloodRequest,
    DonorFilter,
    DonorProfile,
    RequestStatus,
    TERMINAL_REQUEST_STATUSES,
    Urgency,
)
from bloodmatch.scoring.features import extract_features, response_time_score
from bloodmatch.scoring.model import ScoringModel
from bloodmatch.services import geo
from bloodmatch.services.broadcast import UrgentBroadcaster
from bloodmatch.services.collaborators import Datastore, Notifier, notify_safely, read_with_retry
from bloodmatch.services.location_cache import DonorLocationCache

logger = structlog.get_logger()


# ═══════════════════════════════════════════════════════════════
# Fusion weights, must sum to 1.0
# ═══════════════════════════════════════════════════════════════
FUSION_WEIGHTS: dict[str, float] = {
    "model": 0.6,
    "distance": 0.4,
}
assert abs(sum(FUSION_WEIGHTS.values()) - 1.0) < 1e-9, "Weights must sum to 1.0"

# Candidates at or below this model score are never proposed
COMPATIBILITY_FLOOR = 0.7

MATCH_FOUND_EVENT = "MATCH_FOUND"


@dataclass(frozen=True)
class MatchingRun:
    """Ranked candidates plus how many of them became new Match records."""
    matches: list[MatchCandidate] = field(default_factory=list)
    created: int = 0


def distance_score(distance_km: float, radius_km: float) -> float:
    if radius_km <= 0:
        return 0.0
    return max(0.0, 1.0 - distance_km / radius_km)


def fuse_scores(model_score: float, dist_score: float) -> float:
    return model_score * FUSION_WEIGHTS["model"] + dist_score * FUSION_WEIGHTS["distance"]


def rank_candidates(candidates: list[MatchCandidate], limit: int) -> list[MatchCandidate]:
    """overall desc, then distance asc, then reputation desc."""
    ordered = sorted(
        candidates,
        key=lambda c: (-c.overall_score, c.distance_km, -c.reputation_score),
    )
    return ordered[:max(limit, 0)]


class MatchEngine:

    def __init__(
        self,
        datastore: Datastore,
        model: ScoringModel,
        locations: DonorLocationCache,
        notifier: Optional[Notifier] = None,
        broadcaster: Optional[UrgentBroadcaster] = None,
        settings: Optional[Settings] = None,
    ):
        self.datastore = datastore
        self.model = model
        self.locations = locations
        self.notifier = notifier
        self.broadcaster = broadcaster
        self.settings = settings or get_settings()

    async def run_matching(self, request_id: str, limit: Optional[int] = None) -> list[MatchCandidate]:
        """
        Main matching entry point. Returns the ranked candidates that hold a
        PENDING match for the request.
        """
        return (await self.match(request_id, limit)).matches

    async def match(self, request_id: str, limit: Optional[int] = None) -> MatchingRun:
        t0 = time.perf_counter_ns()
        limit = self.settings.default_match_limit if limit is None else limit
        now = datetime.now(timezone.utc)

        # ── Step 1: Request ──
        request = await self._load_request(request_id)
        if request.expires_at <= now:
            if request.status == RequestStatus.OPEN:
                await self.datastore.update_request(request.id, {"status": RequestStatus.EXPIRED})
                logger.info("request_expired_before_matching", request_id=request.id)
            metrics.MATCHING_RUNS.labels(outcome="expired").inc()
            return MatchingRun()

        # ── Step 2: Candidate donors ──
        donors = await read_with_retry(
            lambda: self.datastore.find_candidate_donors(
                DonorFilter(
                    blood_group=request.blood_group,
                    rh_factor=request.rh_factor,
                    is_available=True,
                    blocked=False,
                ),
                self.settings.candidate_fetch_limit,
            ),
            attempts=self.settings.store_read_attempts,
            backoff_seconds=self.settings.store_read_backoff_seconds,
            operation="find_candidate_donors",
        )

        # ── Steps 3-6: Geo filter, score, floor, fuse ──
        scored: list[MatchCandidate] = []
        for donor in donors:
            try:
                candidate = self._score_candidate(request, donor, now)
            except Exception as e:
                metrics.CANDIDATES_SKIPPED.labels(reason="error").inc()
                logger.warning("candidate_scoring_failed", request_id=request.id, donor_id=donor.id, error=str(e))
                continue
            if candidate is not None:
                scored.append(candidate)

        # ── Step 7: Rank ──
        ranked = rank_candidates(scored, limit)

        # ── Step 8: Persist ──
        created = await self._persist_matches(request, ranked, now)

        elapsed_ms = int((time.perf_counter_ns() - t0) / 1_000_000)
        logger.info(
            "matching_complete",
            request_id=request.id,
            donors_considered=len(donors),
            candidates_scored=len(scored),
            match_count=len(ranked),
            matches_created=created,
            model_version=self.model.version,
            elapsed_ms=elapsed_ms,
        )

        # ── Step 9: Side effects ──
        if ranked:
            metrics.MATCHING_RUNS.labels(outcome="matched").inc()
            await self._notify_top(request, ranked)
        else:
            metrics.MATCHING_RUNS.labels(outcome="empty").inc()
            logger.warning("no_matches_found", request_id=request.id, urgency=request.urgency.value)
            if request.urgency is Urgency.EMERGENCY and self.broadcaster is not None:
                await self.broadcaster.broadcast(request)

        return MatchingRun(matches=ranked, created=created)

    # ───────────────────────────────────────────────────────────

    async def _load_request(self, request_id: str) -> BloodRequest:
        request = await read_with_retry(
            lambda: self.datastore.find_request(request_id),
            attempts=self.settings.store_read_attempts,
            backoff_seconds=self.settings.store_read_backoff_seconds,
            operation="find_request",
        )
        if request is None:
            raise NotFound(f"Request {request_id} not found")
        if request.origin is None:
            raise NotFound(f"Request {request_id} has no location")
        if request.status in TERMINAL_REQUEST_STATUSES:
            raise ValidationError(f"Request {request_id} is {request.status.value}")
        return request

    def _score_candidate(
        self,
        request: BloodRequest,
        donor: DonorProfile,
        now: datetime,
    ) -> Optional[MatchCandidate]:
        """Returns None when the donor is filtered out."""
        if donor.blocked or not donor.is_available:
            metrics.CANDIDATES_SKIPPED.labels(reason="ineligible").inc()
            return None

        location = self.locations.get(donor.user_id, now=now) or donor.last_location
        if not geo.is_valid_coordinate(location):
            metrics.CANDIDATES_SKIPPED.labels(reason="unknown_location").inc()
            return None

        distance = geo.distance_km(request.origin, location)
        if distance > request.radius_km:
            metrics.CANDIDATES_SKIPPED.labels(reason="out_of_radius").inc()
            return None

        model_score = self.model.predict(extract_features(request, donor, now=now))
        if model_score <= COMPATIBILITY_FLOOR:
            metrics.CANDIDATES_SKIPPED.labels(reason="below_floor").inc()
            return None

        dist_score = distance_score(distance, request.radius_km)
        return MatchCandidate(
            donor_id=donor.id,
            user_id=donor.user_id,
            distance_km=round(distance, 4),
            model_score=model_score,
            distance_score=dist_score,
            overall_score=fuse_scores(model_score, dist_score),
            response_score=response_time_score(donor.avg_response_seconds),
            reputation_score=donor.reputation_score,
        )

    async def _persist_matches(
        self,
        request: BloodRequest,
        ranked: list[MatchCandidate],
        now: datetime,
    ) -> int:
        if not ranked:
            return 0

        expires_at = now + timedelta(hours=self.settings.match_expiry_hours)
        created = 0
        seen: set[str] = set()
        for candidate in ranked:
            if candidate.donor_id in seen:
                continue
            seen.add(candidate.donor_id)
            try:
                await self.datastore.create_match(Match(
                    id=str(uuid.uuid4()),
                    request_id=request.id,
                    donor_id=candidate.donor_id,
                    user_id=candidate.user_id,
                    status=MatchStatus.PENDING,
                    distance_km=candidate.distance_km,
                    model_score=candidate.model_score,
                    distance_score=candidate.distance_score,
                    overall_score=candidate.overall_score,
                    created_at=now,
                    expires_at=expires_at,
                ))
                created += 1
            except DuplicateMatch:
                logger.info("match_already_exists", request_id=request.id, donor_id=candidate.donor_id)

        metrics.MATCHES_CREATED.inc(created)
        if request.status == RequestStatus.OPEN:
            await self.datastore.update_request(request.id, {"status": RequestStatus.MATCHED})
        return created

    async def _notify_top(self, request: BloodRequest, ranked: list[MatchCandidate]) -> None:
        for candidate in ranked[:self.settings.notify_top_n]:
            await notify_safely(
                self.notifier,
                candidate.user_id,
                MATCH_FOUND_EVENT,
                {
                    "request_id": request.id,
                    "donor_id": candidate.donor_id,
                    "score": round(candidate.overall_score, 4),
                    "message": f"Your profile matches a blood request. Score: {candidate.overall_score * 100:.0f}%",
                },
            )
