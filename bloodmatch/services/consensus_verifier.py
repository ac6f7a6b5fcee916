"""
Consensus Verifier — M-of-N peer attestation of a claimed donation.

  1. Select 3·M qualified verifiers (active, qualification >= 0.8,
     fewer than 5 disputes), best first, then shuffle and keep M
  2. Challenge = sha256 of the canonical JSON of the record
  3. Each verifier attests: HMAC signature + merkle root over
     (record id, verifier id, challenge)
  4. All M proofs must be present, else the round fails
  5. One VERIFIED Verification record per verifier

The shuffle keeps the same top verifiers from being picked every round.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import random
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import structlog

from bloodmatch.core import metrics
from bloodmatch.core.errors import InsufficientVerifiers, NotFound, ValidationError
from bloodmatch.schemas.verification import (
    AttestationProof,
    Verification,
    VerificationStatus,
    VerificationType,
    VerifierCandidate,
    VerifierPoolFilter,
)
from bloodmatch.services.collaborators import Datastore

logger = structlog.get_logger()

REQUIRED_VERIFIERS = 3
CANDIDATE_MULTIPLIER = 3
VERIFIED_CONFIDENCE = 0.95
INITIAL_QUALIFICATION = 0.5

# Qualification = success rate * 0.7 + (1 - dispute rate) * 0.3,
# dispute rate taken over at least 10 verifications
QUALIFICATION_SUCCESS_WEIGHT = 0.7
QUALIFICATION_DISPUTE_WEIGHT = 0.3
DISPUTE_RATE_MIN_DENOMINATOR = 10


# ═══════════════════════════════════════════════════════════════
# Hashing primitives
# ═══════════════════════════════════════════════════════════════

def sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def content_hash(record_data: dict[str, Any]) -> str:
    canonical = json.dumps(record_data, sort_keys=True, separators=(",", ":"), default=str)
    return sha256_hex(canonical)


def keyed_mac(message: str, key: str) -> str:
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def merkle_root(items: list[str]) -> str:
    if not items:
        return sha256_hex("")
    level = [sha256_hex(item) for item in items]
    while len(level) > 1:
        if len(level) % 2:
            level.append(level[-1])
        level = [sha256_hex(level[i] + level[i + 1]) for i in range(0, len(level), 2)]
    return level[0]


def qualification_score(successful: int, disputed: int) -> float:
    total = successful + disputed
    success_rate = successful / max(total, 1)
    dispute_rate = disputed / max(total, DISPUTE_RATE_MIN_DENOMINATOR)
    score = success_rate * QUALIFICATION_SUCCESS_WEIGHT + (1 - dispute_rate) * QUALIFICATION_DISPUTE_WEIGHT
    return min(1.0, max(0.0, score))


# ═══════════════════════════════════════════════════════════════
# Attestation capability
# ═══════════════════════════════════════════════════════════════

class Attestor(Protocol):
    async def attest(self, verifier_id: str, record_id: str, challenge: str) -> AttestationProof: ...


class HmacAttestor:
    """Computes the verifier's proof locally."""

    async def attest(self, verifier_id: str, record_id: str, challenge: str) -> AttestationProof:
        return AttestationProof(
            verifier_id=verifier_id,
            signature=keyed_mac(challenge, verifier_id),
            merkle_proof=merkle_root([record_id, verifier_id, challenge]),
        )


# ═══════════════════════════════════════════════════════════════
# Verifier
# ═══════════════════════════════════════════════════════════════

class ConsensusVerifier:

    def __init__(
        self,
        datastore: Datastore,
        attestor: Optional[Attestor] = None,
        rng: Optional[random.Random] = None,
        required: int = REQUIRED_VERIFIERS,
    ):
        self.datastore = datastore
        self.attestor = attestor or HmacAttestor()
        self.rng = rng or random.SystemRandom()
        self.required = required

    async def verify(self, record_id: str, record_data: dict[str, Any]) -> list[str]:
        logger.info("verification_started", record_id=record_id)

        verifiers = await self.select_verifiers()
        challenge = content_hash(record_data)

        proofs = [
            await self.attestor.attest(v.user_id, record_id, challenge)
            for v in verifiers
        ]

        if not self._validate_proofs(proofs):
            metrics.VERIFICATIONS.labels(outcome="invalid").inc()
            logger.error("multi_signature_invalid", record_id=record_id)
            raise ValidationError("multi-signature verification failed")

        now = datetime.now(timezone.utc)
        for proof in proofs:
            await self.datastore.create_verification(Verification(
                id=str(uuid.uuid4()),
                request_id=record_id,
                verifier_id=proof.verifier_id,
                status=VerificationStatus.VERIFIED,
                verification_type=VerificationType.PEER_REVIEW,
                confidence=VERIFIED_CONFIDENCE,
                signature=proof.signature,
                merkle_proof=proof.merkle_proof,
                created_at=now,
            ))

        metrics.VERIFICATIONS.labels(outcome="verified").inc()
        verifier_ids = [p.verifier_id for p in proofs]
        logger.info("verification_complete", record_id=record_id, verifier_count=len(verifier_ids))
        return verifier_ids

    async def select_verifiers(self) -> list[VerifierCandidate]:
        pool = await self.datastore.find_verifier_pool(
            VerifierPoolFilter(), self.required * CANDIDATE_MULTIPLIER,
        )
        if len(pool) < self.required:
            metrics.VERIFICATIONS.labels(outcome="insufficient").inc()
            logger.warning("insufficient_verifiers", required=self.required, available=len(pool))
            raise InsufficientVerifiers(self.required, len(pool))

        shuffled = list(pool)
        self.rng.shuffle(shuffled)
        return shuffled[:self.required]

    def _validate_proofs(self, proofs: list[AttestationProof]) -> bool:
        if len(proofs) < self.required:
            return False
        return all(p.signature and p.merkle_proof for p in proofs)

    # ── Pool management ──

    async def register_as_verifier(self, user_id: str) -> VerifierCandidate:
        if await self.datastore.find_verifier(user_id) is not None:
            raise ValidationError("User already registered as verifier")

        verifier = await self.datastore.create_verifier(VerifierCandidate(
            user_id=user_id,
            qualification_score=INITIAL_QUALIFICATION,
            successful_verifications=0,
            disputed_verifications=0,
            is_active=True,
        ))
        logger.info("verifier_registered", user_id=user_id)
        return verifier

    async def update_qualification(self, verifier_id: str, successful: bool) -> VerifierCandidate:
        verifier = await self.datastore.find_verifier(verifier_id)
        if verifier is None:
            raise NotFound(f"Verifier {verifier_id} not found")

        succeeded = verifier.successful_verifications + (1 if successful else 0)
        disputed = verifier.disputed_verifications + (0 if successful else 1)
        score = qualification_score(succeeded, disputed)

        updated = await self.datastore.update_verifier(verifier_id, {
            "successful_verifications": succeeded,
            "disputed_verifications": disputed,
            "qualification_score": score,
        })
        logger.info("verifier_qualification_updated", verifier_id=verifier_id, qualification_score=round(score, 3))
        return updated
