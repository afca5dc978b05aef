"""Exception taxonomy for the session lifecycle.

Every error carries a stable `code` and a `category`; the HTTP layer maps
categories to status codes. `retryable` tells a client whether re-fetching
state and re-attempting the same call can succeed.
"""

from __future__ import annotations

from enum import Enum

from src.models.enums import RejectionReason


class ErrorCategory(str, Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    STATE = "state"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    COLLABORATOR = "collaborator"


class LifecycleError(Exception):
    """Base class for all domain errors."""

    code: str = "LifecycleError"
    category: ErrorCategory = ErrorCategory.STATE
    retryable: bool = False

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.code
        super().__init__(self.message)


# ── Authentication / authorization ───────────────────────────────────


class AuthenticationError(LifecycleError):
    code = "Unauthorized"
    category = ErrorCategory.AUTHENTICATION


class NotParticipantError(LifecycleError):
    code = RejectionReason.NOT_PARTICIPANT.value
    category = ErrorCategory.AUTHORIZATION


class NotPractitionerError(LifecycleError):
    code = RejectionReason.NOT_PRACTITIONER.value
    category = ErrorCategory.AUTHORIZATION


class RoleMismatchError(LifecycleError):
    code = "RoleMismatch"
    category = ErrorCategory.AUTHORIZATION


# ── State ────────────────────────────────────────────────────────────


class WrongPhaseError(LifecycleError):
    code = RejectionReason.WRONG_PHASE.value


class AcknowledgmentRequiredError(LifecycleError):
    code = RejectionReason.ACKNOWLEDGMENT_REQUIRED.value


class PractitionerUnavailableError(LifecycleError):
    code = "PractitionerUnavailable"


class ReviewNotAllowedError(LifecycleError):
    code = "ReviewNotAllowed"


# ── Not found ────────────────────────────────────────────────────────


class SessionNotFoundError(LifecycleError):
    code = "SessionNotFound"
    category = ErrorCategory.NOT_FOUND


class PractitionerNotFoundError(LifecycleError):
    code = "PractitionerNotFound"
    category = ErrorCategory.NOT_FOUND


class ProfileNotFoundError(LifecycleError):
    code = "ProfileNotFound"
    category = ErrorCategory.NOT_FOUND


# ── Conflict ─────────────────────────────────────────────────────────


class AdmissionConflictError(LifecycleError):
    """Another admission for the same practitioner won the race."""

    code = "AdmissionConflict"
    category = ErrorCategory.CONFLICT
    retryable = True


class TransitionConflictError(LifecycleError):
    """Compare-and-set kept losing to concurrent writers."""

    code = "TransitionConflict"
    category = ErrorCategory.CONFLICT
    retryable = True


class DuplicateReviewError(LifecycleError):
    code = "DuplicateReview"
    category = ErrorCategory.CONFLICT


class ProfileExistsError(LifecycleError):
    code = "ProfileExists"
    category = ErrorCategory.CONFLICT


# ── Collaborators ────────────────────────────────────────────────────


class CollaboratorError(LifecycleError):
    """A store, auth provider or token service failed; safe to re-drive."""

    code = "CollaboratorUnavailable"
    category = ErrorCategory.COLLABORATOR
    retryable = True


class TransportNotConfiguredError(CollaboratorError):
    code = "TransportNotConfigured"
    retryable = False


REJECTION_ERRORS: dict[RejectionReason, type[LifecycleError]] = {
    RejectionReason.NOT_PARTICIPANT: NotParticipantError,
    RejectionReason.NOT_PRACTITIONER: NotPractitionerError,
    RejectionReason.WRONG_PHASE: WrongPhaseError,
    RejectionReason.ACKNOWLEDGMENT_REQUIRED: AcknowledgmentRequiredError,
}
