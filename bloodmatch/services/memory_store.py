"""
In-memory Datastore — development mode and tests.

Implements the Datastore protocol over plain dicts. Enforces the
(request, donor) uniqueness constraint for matches the same way a unique
index would, by raising DuplicateMatch.

Failure injection: `fail(operation, times)` makes the next `times` calls of
that operation raise StoreUnavailable.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from bloodmatch.core.errors import DuplicateMatch, NotFound, StoreUnavailable
from bloodmatch.schemas.fraud import FraudAlert, UserActivity, VerificationAttempt
from bloodmatch.schemas.match import Match, MatchStatus
from bloodmatch.schemas.request import BloodRequest, DonorFilter, DonorProfile, RequestStatus
from bloodmatch.schemas.verification import Verification, VerifierCandidate, VerifierPoolFilter


class InMemoryDatastore:

    def __init__(self):
        self.requests: dict[str, BloodRequest] = {}
        self.donors: dict[str, DonorProfile] = {}
        self.matches: dict[str, Match] = {}
        self.fraud_alerts: list[FraudAlert] = []
        self.attempts: dict[str, list[VerificationAttempt]] = defaultdict(list)
        self.activity: dict[str, UserActivity] = {}
        self.verifiers: dict[str, VerifierCandidate] = {}
        self.verifications: list[Verification] = []
        self._match_pairs: set[tuple[str, str]] = set()
        self._failures: dict[str, int] = {}

    # ── Seeding / test hooks ──

    def add_request(self, request: BloodRequest) -> BloodRequest:
        self.requests[request.id] = request
        return request

    def add_donor(self, donor: DonorProfile) -> DonorProfile:
        self.donors[donor.id] = donor
        return donor

    def add_attempt(self, attempt: VerificationAttempt) -> VerificationAttempt:
        self.attempts[attempt.user_id].append(attempt)
        return attempt

    def set_activity(self, activity: UserActivity) -> UserActivity:
        self.activity[activity.user_id] = activity
        return activity

    def add_verifier(self, verifier: VerifierCandidate) -> VerifierCandidate:
        self.verifiers[verifier.user_id] = verifier
        return verifier

    def fail(self, operation: str, times: int = 1) -> None:
        self._failures[operation] = times

    def _check(self, operation: str) -> None:
        remaining = self._failures.get(operation, 0)
        if remaining > 0:
            self._failures[operation] = remaining - 1
            raise StoreUnavailable(f"{operation} unavailable")

    # ── Requests ──

    async def find_request(self, request_id: str) -> Optional[BloodRequest]:
        self._check("find_request")
        return self.requests.get(request_id)

    async def find_open_requests_expiring(self, after: datetime, before: datetime) -> list[BloodRequest]:
        self._check("find_open_requests_expiring")
        return [
            r for r in self.requests.values()
            if r.status == RequestStatus.OPEN and after < r.expires_at < before
        ]

    async def find_expired_requests(self, now: datetime) -> list[BloodRequest]:
        self._check("find_expired_requests")
        return [
            r for r in self.requests.values()
            if r.status in (RequestStatus.OPEN, RequestStatus.MATCHED) and r.expires_at <= now
        ]

    async def update_request(self, request_id: str, patch: dict[str, Any]) -> BloodRequest:
        self._check("update_request")
        current = self.requests.get(request_id)
        if current is None:
            raise NotFound(f"Request {request_id} not found")
        updated = current.model_copy(update=patch)
        self.requests[request_id] = updated
        return updated

    # ── Donors ──

    async def find_candidate_donors(self, filter: DonorFilter, limit: int) -> list[DonorProfile]:
        self._check("find_candidate_donors")
        result = []
        for donor in self.donors.values():
            if filter.blood_group is not None and donor.blood_group != filter.blood_group:
                continue
            if filter.rh_factor is not None and donor.rh_factor != filter.rh_factor:
                continue
            if donor.is_available != filter.is_available or donor.blocked != filter.blocked:
                continue
            result.append(donor)
            if len(result) >= limit:
                break
        return result

    async def find_donor(self, donor_id: str) -> Optional[DonorProfile]:
        self._check("find_donor")
        return self.donors.get(donor_id)

    async def find_donor_by_user(self, user_id: str) -> Optional[DonorProfile]:
        self._check("find_donor_by_user")
        return next((d for d in self.donors.values() if d.user_id == user_id), None)

    async def update_donor_profile(self, donor_id: str, patch: dict[str, Any]) -> DonorProfile:
        self._check("update_donor_profile")
        current = self.donors.get(donor_id)
        if current is None:
            raise NotFound(f"Donor {donor_id} not found")
        updated = current.model_copy(update=patch)
        self.donors[donor_id] = updated
        return updated

    # ── Matches ──

    async def create_match(self, record: Match) -> Match:
        self._check("create_match")
        pair = (record.request_id, record.donor_id)
        if pair in self._match_pairs:
            raise DuplicateMatch(*pair)
        self._match_pairs.add(pair)
        self.matches[record.id] = record
        return record

    async def find_match(self, match_id: str) -> Optional[Match]:
        self._check("find_match")
        return self.matches.get(match_id)

    async def find_matches_for_request(self, request_id: str) -> list[Match]:
        self._check("find_matches_for_request")
        return [m for m in self.matches.values() if m.request_id == request_id]

    async def find_pending_matches_expired(self, now: datetime) -> list[Match]:
        self._check("find_pending_matches_expired")
        return [
            m for m in self.matches.values()
            if m.status == MatchStatus.PENDING and m.expires_at <= now
        ]

    async def update_match(self, match_id: str, patch: dict[str, Any]) -> Match:
        self._check("update_match")
        current = self.matches.get(match_id)
        if current is None:
            raise NotFound(f"Match {match_id} not found")
        updated = current.model_copy(update=patch)
        self.matches[match_id] = updated
        return updated

    # ── Fraud ──

    async def create_fraud_alert(self, record: FraudAlert) -> FraudAlert:
        self._check("create_fraud_alert")
        self.fraud_alerts.append(record)
        return record

    async def count_recent_attempts(self, user_id: str, window: timedelta) -> int:
        self._check("count_recent_attempts")
        since = datetime.now(timezone.utc) - window
        return sum(1 for a in self.attempts.get(user_id, []) if a.created_at >= since)

    async def recent_verification_attempts(self, user_id: str, limit: int) -> list[VerificationAttempt]:
        self._check("recent_verification_attempts")
        ordered = sorted(self.attempts.get(user_id, []), key=lambda a: a.created_at, reverse=True)
        return ordered[:limit]

    async def find_user_activity(self, user_id: str) -> Optional[UserActivity]:
        self._check("find_user_activity")
        activity = self.activity.get(user_id)
        if activity is None:
            return None
        # Blocks applied after the activity snapshot was stored still count
        blocked_users = {d.user_id for d in self.donors.values() if d.blocked}
        counterparts = [
            c.model_copy(update={"blocked": c.blocked or c.user_id in blocked_users})
            for c in activity.counterparts
        ]
        return activity.model_copy(update={"counterparts": counterparts})

    # ── Verifier pool ──

    async def find_verifier_pool(self, filter: VerifierPoolFilter, limit: int) -> list[VerifierCandidate]:
        self._check("find_verifier_pool")
        pool = [
            v for v in self.verifiers.values()
            if v.is_active == filter.is_active
            and v.qualification_score >= filter.min_qualification
            and v.disputed_verifications < filter.max_disputed
        ]
        pool.sort(key=lambda v: v.qualification_score, reverse=True)
        return pool[:limit]

    async def find_verifier(self, user_id: str) -> Optional[VerifierCandidate]:
        self._check("find_verifier")
        return self.verifiers.get(user_id)

    async def create_verifier(self, record: VerifierCandidate) -> VerifierCandidate:
        self._check("create_verifier")
        self.verifiers[record.user_id] = record
        return record

    async def update_verifier(self, user_id: str, patch: dict[str, Any]) -> VerifierCandidate:
        self._check("update_verifier")
        current = self.verifiers.get(user_id)
        if current is None:
            raise NotFound(f"Verifier {user_id} not found")
        updated = current.model_copy(update=patch)
        self.verifiers[user_id] = updated
        return updated

    async def create_verification(self, record: Verification) -> Verification:
        self._check("create_verification")
        self.verifications.append(record)
        return record
