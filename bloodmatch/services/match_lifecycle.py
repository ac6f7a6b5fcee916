"""
Match lifecycle transitions after a matching run.

  PENDING  → ACCEPTED   donor accepts before expiry
  PENDING  → REJECTED   donor declines            (failed_matches + 1)
  PENDING  → EXPIRED    unactioned past expiry    (failed_matches + 1)
  ACCEPTED → COMPLETED  donation confirmed        (request FULFILLED,
                                                    successful_donations + 1,
                                                    reward recorded as owed)

Open requests past their expiry with no accepted match become EXPIRED.
The reward is only recorded here; the ledger payout happens elsewhere.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import structlog

from bloodmatch.core.config import Settings, get_settings
from bloodmatch.core.errors import NotFound, ValidationError
from bloodmatch.schemas.match import Match, MatchStatus
from bloodmatch.schemas.request import BloodRequest, RequestStatus, TERMINAL_REQUEST_STATUSES
from bloodmatch.services.collaborators import Datastore

logger = structlog.get_logger()

ALLOWED_TRANSITIONS: dict[MatchStatus, frozenset[MatchStatus]] = {
    MatchStatus.PENDING: frozenset({MatchStatus.ACCEPTED, MatchStatus.REJECTED, MatchStatus.EXPIRED}),
    MatchStatus.ACCEPTED: frozenset({MatchStatus.COMPLETED, MatchStatus.EXPIRED}),
    MatchStatus.REJECTED: frozenset(),
    MatchStatus.EXPIRED: frozenset(),
    MatchStatus.COMPLETED: frozenset(),
}


def check_transition(current: MatchStatus, target: MatchStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise ValidationError(f"Illegal match transition {current.value} -> {target.value}")


class MatchLifecycle:

    def __init__(self, datastore: Datastore, settings: Optional[Settings] = None):
        self.datastore = datastore
        self.settings = settings or get_settings()

    async def accept_match(self, match_id: str, donor_id: str, now: Optional[datetime] = None) -> Match:
        now = now or datetime.now(timezone.utc)
        match = await self._load_for_donor(match_id, donor_id)
        check_transition(match.status, MatchStatus.ACCEPTED)
        if match.expires_at <= now:
            raise ValidationError(f"Match {match_id} expired at {match.expires_at.isoformat()}")
        await self._load_open_request(match.request_id)

        updated = await self.datastore.update_match(match_id, {
            "status": MatchStatus.ACCEPTED,
            "responded_at": now,
        })
        logger.info("match_accepted", match_id=match_id, request_id=match.request_id, donor_id=donor_id)
        return updated

    async def reject_match(self, match_id: str, donor_id: str, now: Optional[datetime] = None) -> Match:
        now = now or datetime.now(timezone.utc)
        match = await self._load_for_donor(match_id, donor_id)
        check_transition(match.status, MatchStatus.REJECTED)

        updated = await self.datastore.update_match(match_id, {
            "status": MatchStatus.REJECTED,
            "responded_at": now,
        })
        await self._count_failure(match.donor_id)
        logger.info("match_rejected", match_id=match_id, request_id=match.request_id, donor_id=donor_id)
        return updated

    async def complete_match(self, match_id: str, now: Optional[datetime] = None) -> Match:
        now = now or datetime.now(timezone.utc)
        match = await self.datastore.find_match(match_id)
        if match is None:
            raise NotFound(f"Match {match_id} not found")
        check_transition(match.status, MatchStatus.COMPLETED)

        # Validate everything before the first write
        request = await self._load_open_request(match.request_id)
        donor = await self.datastore.find_donor(match.donor_id)
        if donor is None:
            raise NotFound(f"Donor {match.donor_id} not found")

        updated = await self.datastore.update_match(match_id, {
            "status": MatchStatus.COMPLETED,
            "completed_at": now,
        })
        await self.datastore.update_request(request.id, {"status": RequestStatus.FULFILLED})
        await self.datastore.update_donor_profile(donor.id, {
            "successful_donations": donor.successful_donations + 1,
            "last_donation_at": now,
            "rewards_owed": donor.rewards_owed + self.settings.donation_reward_amount,
        })

        logger.info(
            "match_completed",
            match_id=match_id,
            request_id=match.request_id,
            donor_id=donor.id,
            reward_owed=self.settings.donation_reward_amount,
        )
        return updated

    async def expire_stale(self, now: Optional[datetime] = None) -> dict:
        now = now or datetime.now(timezone.utc)

        expired_matches = 0
        for match in await self.datastore.find_pending_matches_expired(now):
            await self.datastore.update_match(match.id, {"status": MatchStatus.EXPIRED})
            await self._count_failure(match.donor_id)
            expired_matches += 1

        expired_requests = 0
        for request in await self.datastore.find_expired_requests(now):
            matches = await self.datastore.find_matches_for_request(request.id)
            if any(m.status in (MatchStatus.ACCEPTED, MatchStatus.COMPLETED) for m in matches):
                continue
            await self.datastore.update_request(request.id, {"status": RequestStatus.EXPIRED})
            expired_requests += 1

        result = {"expired_matches": expired_matches, "expired_requests": expired_requests}
        logger.info("expiry_pass_complete", **result)
        return result

    # ───────────────────────────────────────────────────────────

    async def _load_for_donor(self, match_id: str, donor_id: str) -> Match:
        match = await self.datastore.find_match(match_id)
        if match is None:
            raise NotFound(f"Match {match_id} not found")
        if match.donor_id != donor_id:
            raise ValidationError(f"Match {match_id} does not belong to donor {donor_id}")
        return match

    async def _load_open_request(self, request_id: str) -> BloodRequest:
        request = await self.datastore.find_request(request_id)
        if request is None:
            raise NotFound(f"Request {request_id} not found")
        if request.status in TERMINAL_REQUEST_STATUSES:
            raise ValidationError(f"Request {request_id} is {request.status.value}")
        return request

    async def _count_failure(self, donor_id: str) -> None:
        donor = await self.datastore.find_donor(donor_id)
        if donor is None:
            logger.warning("donor_missing_for_match", donor_id=donor_id)
            return
        await self.datastore.update_donor_profile(donor.id, {"failed_matches": donor.failed_matches + 1})
