"""
Capability contracts of the collaborators the core consumes.

Datastore  — every operation may raise StoreUnavailable. Reads are idempotent
             and go through read_with_retry; writes are never retried.
Notifier   — fire-and-forget, best-effort.
RealtimeBus — emergency fan-out, best-effort.
Ledger     — reward payout. Declared for completeness; the core only records
             the amount owed and never calls it.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

import structlog

from bloodmatch.core.errors import StoreUnavailable
from bloodmatch.schemas.fraud import FraudAlert, UserActivity, VerificationAttempt
from bloodmatch.schemas.match import Match
from bloodmatch.schemas.request import BloodRequest, DonorFilter, DonorProfile
from bloodmatch.schemas.verification import Verification, VerifierCandidate, VerifierPoolFilter

logger = structlog.get_logger()

T = TypeVar("T")


class Datastore(Protocol):

    # ── Requests ──
    async def find_request(self, request_id: str) -> Optional[BloodRequest]: ...
    async def find_open_requests_expiring(self, after: datetime, before: datetime) -> list[BloodRequest]: ...
    async def find_expired_requests(self, now: datetime) -> list[BloodRequest]: ...
    async def update_request(self, request_id: str, patch: dict[str, Any]) -> BloodRequest: ...

    # ── Donors ──
    async def find_candidate_donors(self, filter: DonorFilter, limit: int) -> list[DonorProfile]: ...
    async def find_donor(self, donor_id: str) -> Optional[DonorProfile]: ...
    async def find_donor_by_user(self, user_id: str) -> Optional[DonorProfile]: ...
    async def update_donor_profile(self, donor_id: str, patch: dict[str, Any]) -> DonorProfile: ...

    # ── Matches ──
    async def create_match(self, record: Match) -> Match: ...
    async def find_match(self, match_id: str) -> Optional[Match]: ...
    async def find_matches_for_request(self, request_id: str) -> list[Match]: ...
    async def find_pending_matches_expired(self, now: datetime) -> list[Match]: ...
    async def update_match(self, match_id: str, patch: dict[str, Any]) -> Match: ...

    # ── Fraud inputs / audit trail ──
    async def create_fraud_alert(self, record: FraudAlert) -> FraudAlert: ...
    async def count_recent_attempts(self, user_id: str, window: timedelta) -> int: ...
    async def recent_verification_attempts(self, user_id: str, limit: int) -> list[VerificationAttempt]: ...
    async def find_user_activity(self, user_id: str) -> Optional[UserActivity]: ...

    # ── Verifier pool ──
    async def find_verifier_pool(self, filter: VerifierPoolFilter, limit: int) -> list[VerifierCandidate]: ...
    async def find_verifier(self, user_id: str) -> Optional[VerifierCandidate]: ...
    async def create_verifier(self, record: VerifierCandidate) -> VerifierCandidate: ...
    async def update_verifier(self, user_id: str, patch: dict[str, Any]) -> VerifierCandidate: ...
    async def create_verification(self, record: Verification) -> Verification: ...


class Notifier(Protocol):
    async def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None: ...


class RealtimeBus(Protocol):
    async def publish(self, topic: str, event: dict[str, Any]) -> None: ...


class Ledger(Protocol):
    async def transfer(self, address: str, amount: float) -> str: ...


async def read_with_retry(
    read: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    backoff_seconds: float = 0.2,
    operation: str = "read",
) -> T:
    """
    Retry an idempotent datastore read on StoreUnavailable with linear backoff.
    The last failure is re-raised.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await read()
        except StoreUnavailable as e:
            if attempt >= attempts:
                logger.error("store_read_failed", operation=operation, attempts=attempt, error=str(e))
                raise
            logger.warning("store_read_retry", operation=operation, attempt=attempt, error=str(e))
            await asyncio.sleep(backoff_seconds * attempt)
    raise StoreUnavailable(f"{operation}: no attempts made")


async def notify_safely(notifier: Optional[Notifier], user_id: str, event: str, payload: dict[str, Any]) -> bool:
    """Best-effort delivery: failures are logged, never raised."""
    if notifier is None:
        return False
    try:
        await notifier.notify(user_id, event, payload)
        return True
    except Exception as e:
        logger.warning("notification_failed", user_id=user_id, notification_event=event, error=str(e))
        return False


async def publish_safely(bus: Optional[RealtimeBus], topic: str, event: dict[str, Any]) -> bool:
    if bus is None:
        return False
    try:
        await bus.publish(topic, event)
        return True
    except Exception as e:
        logger.warning("realtime_publish_failed", topic=topic, error=str(e))
        return False
