"""
Typed failures raised by the matching core.

Whole-operation failures propagate to the caller as one of these.
Per-candidate failures inside a batch never do; they are logged and skipped.
"""
from __future__ import annotations


class BloodMatchError(Exception):
    """Base class for every failure the core raises on purpose."""


class NotFound(BloodMatchError):
    """Request, donor, match or verifier is missing."""


class ValidationError(BloodMatchError):
    """Malformed input, illegal state transition or failed consensus."""


class DuplicateMatch(ValidationError):
    """A match for the same (request, donor) pair already exists."""

    def __init__(self, request_id: str, donor_id: str):
        super().__init__(f"Match already exists for request={request_id} donor={donor_id}")
        self.request_id = request_id
        self.donor_id = donor_id


class InsufficientVerifiers(BloodMatchError):
    """Quorum unmet. Retryable once the verifier pool grows."""

    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient qualified verifiers: need {required}, found {available}")
        self.required = required
        self.available = available


class FraudDetected(BloodMatchError):
    """Critical fraud score. The user has already been blocked when this is raised."""

    def __init__(self, user_id: str, score: float):
        super().__init__(f"User blocked for critical fraud score: {score:.3f}")
        self.user_id = user_id
        self.score = score


class StoreUnavailable(BloodMatchError):
    """The datastore collaborator failed."""
