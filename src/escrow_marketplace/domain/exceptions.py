"""Domain exceptions for the Escrow Marketplace.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.

Families:
    ValidationError          — bad input shape/range, rejected before any mutation
    GuardViolationError      — illegal transition, verification not met, permission denied
    NotFoundError            — unknown escrow / dispute / user
    ConcurrentModificationError — optimistic concurrency conflict, caller re-fetches
    UpstreamUnavailableError — payment / payout / KYC provider failure
    InvariantViolationError  — programming error, never a business outcome
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from escrow_marketplace.domain.verification import Denied


class EscrowError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Structured payload for API responses."""
        return {"error": self.code, "message": self.message}


# --- Validation Errors ---


class ValidationError(EscrowError):
    """Raised for bad input shape or range."""

    def __init__(self, message: str, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message=message, code=code)


class InvalidAmountError(ValidationError):
    def __init__(self, amount: object, reason: str = "must be strictly positive") -> None:
        super().__init__(
            message=f"Amount {reason}, got {amount}",
            code="INVALID_AMOUNT",
        )
        self.amount = amount


class UnsupportedCurrencyError(ValidationError):
    def __init__(self, currency: str) -> None:
        super().__init__(
            message=f"Unsupported currency: {currency}",
            code="UNSUPPORTED_CURRENCY",
        )
        self.currency = currency


class UnknownTierError(ValidationError):
    def __init__(self, tier_id: str) -> None:
        super().__init__(message=f"Unknown tier: {tier_id}", code="UNKNOWN_TIER")
        self.tier_id = tier_id


class InvalidParticipantsError(ValidationError):
    """Raised when buyer and seller are not two distinct, existing, active accounts."""

    def __init__(self, reason: str) -> None:
        super().__init__(message=reason, code="INVALID_PARTICIPANTS")


# --- Guard Violations ---


class GuardViolationError(EscrowError):
    """A precondition for the requested action does not hold."""

    def __init__(self, message: str, code: str = "GUARD_VIOLATION") -> None:
        super().__init__(message=message, code=code)


class InvalidStateTransitionError(GuardViolationError):
    """Raised when an attempted state transition is not allowed.

    Example: pending -> completed (must go through funded, delivered).
    """

    def __init__(self, current_state: str, attempted_state: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {current_state} -> {attempted_state}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted_state = attempted_state

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "current_state": self.current_state,
            "attempted_state": self.attempted_state,
        }


class VerificationRequiredError(GuardViolationError):
    """Raised when the Verification Gate denies a user.

    Carries the full Denied decision so the caller can route the user to
    the first broken rule.
    """

    def __init__(self, denial: Denied, code: str = "VERIFICATION_REQUIRED") -> None:
        super().__init__(message=denial.reason, code=code)
        self.denial = denial

    @property
    def step(self) -> int:
        return self.denial.step

    @property
    def required_action(self) -> str:
        return self.denial.required_action.value

    def to_dict(self) -> dict:
        return {**super().to_dict(), **self.denial.to_dict()}


class UpgradeRequiredError(VerificationRequiredError):
    """Tier limits exceeded; the caller should route to a tier-upgrade flow."""

    def __init__(self, denial: Denied) -> None:
        super().__init__(denial, code="UPGRADE_REQUIRED")


class PermissionDeniedError(GuardViolationError):
    def __init__(self, actor_id: str, action: str) -> None:
        super().__init__(
            message=f"Actor {actor_id} is not allowed to {action}",
            code="PERMISSION_DENIED",
        )
        self.actor_id = actor_id
        self.action = action


class DeliveryProofMismatchError(GuardViolationError):
    def __init__(self, method: str, proof_type: str) -> None:
        super().__init__(
            message=f"Proof type '{proof_type}' is not valid for delivery method '{method}'",
            code="DELIVERY_PROOF_MISMATCH",
        )
        self.method = method
        self.proof_type = proof_type


class PaymentNotConfirmedError(GuardViolationError):
    def __init__(self, reference: str, reason: str) -> None:
        super().__init__(
            message=f"Payment {reference} not confirmed: {reason}",
            code="PAYMENT_NOT_CONFIRMED",
        )
        self.reference = reference


class PaymentReferenceInUseError(GuardViolationError):
    """One gateway payment can fund at most one escrow."""

    def __init__(self, reference: str) -> None:
        super().__init__(
            message=f"Payment {reference} already funds another escrow",
            code="PAYMENT_REFERENCE_IN_USE",
        )
        self.reference = reference


class AutoReleaseNotDueError(GuardViolationError):
    def __init__(self, escrow_id: str, reason: str) -> None:
        super().__init__(
            message=f"Escrow {escrow_id} is not due for auto-release: {reason}",
            code="AUTO_RELEASE_NOT_DUE",
        )


class DisputeAlreadyRaisedError(GuardViolationError):
    def __init__(self, escrow_id: str) -> None:
        super().__init__(
            message=f"Dispute already raised on escrow: {escrow_id}",
            code="DISPUTE_ALREADY_RAISED",
        )


class AlreadyResolvedError(GuardViolationError):
    def __init__(self, dispute_id: str) -> None:
        super().__init__(
            message=f"Dispute already resolved: {dispute_id}",
            code="ALREADY_RESOLVED",
        )
        self.dispute_id = dispute_id


class RateLimitExceededError(GuardViolationError):
    def __init__(self, key: str) -> None:
        super().__init__(message=f"Rate limit exceeded for {key}", code="RATE_LIMITED")
        self.key = key


# --- Not Found ---


class NotFoundError(EscrowError):
    pass


class EscrowNotFoundError(NotFoundError):
    def __init__(self, escrow_id: str) -> None:
        super().__init__(message=f"Escrow not found: {escrow_id}", code="ESCROW_NOT_FOUND")
        self.escrow_id = escrow_id


class DisputeNotFoundError(NotFoundError):
    def __init__(self, dispute_id: str) -> None:
        super().__init__(message=f"Dispute not found: {dispute_id}", code="DISPUTE_NOT_FOUND")
        self.dispute_id = dispute_id


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str) -> None:
        super().__init__(message=f"User not found: {user_id}", code="USER_NOT_FOUND")
        self.user_id = user_id


# --- Concurrency ---


class ConcurrentModificationError(EscrowError):
    """The record changed between read and conditional write. Re-fetch and retry."""

    def __init__(self, entity_id: str, expected_version: int) -> None:
        super().__init__(
            message=(
                f"Concurrent modification of {entity_id}: "
                f"expected version {expected_version} is stale"
            ),
            code="CONCURRENT_MODIFICATION",
        )
        self.entity_id = entity_id
        self.expected_version = expected_version


# --- Collaborator Failures ---


class UpstreamUnavailableError(EscrowError):
    """A payment/payout/KYC provider failed. The escrow stays in its pre-transition state."""

    def __init__(self, provider: str, detail: str) -> None:
        super().__init__(
            message=f"Upstream provider '{provider}' unavailable",
            code="UPSTREAM_UNAVAILABLE",
        )
        self.provider = provider
        self.detail = detail


# --- Invariant Violations ---


class InvariantViolationError(EscrowError):
    """A programming error. Fail loudly, never recover."""

    def __init__(self, message: str, code: str = "INVARIANT_VIOLATION") -> None:
        super().__init__(message=message, code=code)


class PaymentAlreadyRecordedError(InvariantViolationError):
    def __init__(self, escrow_id: str) -> None:
        super().__init__(
            message=f"Payment snapshot already recorded for escrow: {escrow_id}",
            code="PAYMENT_ALREADY_RECORDED",
        )
        self.escrow_id = escrow_id


class DuplicateEscrowIdError(InvariantViolationError):
    def __init__(self, escrow_id: str) -> None:
        super().__init__(
            message=f"Escrow id collision: {escrow_id}",
            code="DUPLICATE_ESCROW_ID",
        )
        self.escrow_id = escrow_id
