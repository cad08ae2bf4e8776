"""
Error taxonomy for credential handling and the review reply lifecycle

Every failure a service can raise maps to one ErrorKind and one HTTP status
class. Routers let them propagate to the application exception handler,
which renders `to_dict()` as the response body; services never return error
dictionaries.
"""
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import status


class ErrorKind(Enum):
    """Caller-visible error kinds"""
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    NOT_FOUND_OR_FORBIDDEN = "not_found_or_forbidden"
    PLAN_RESTRICTED = "plan_restricted"
    INVALID_TRANSITION = "invalid_transition"
    ALREADY_POSTED = "already_posted"
    MISSING_EXTERNAL_ID = "missing_external_id"
    PUBLISH_FAILED = "publish_failed"
    PUBLISH_OUTCOME_UNKNOWN = "publish_outcome_unknown"
    POSTED_BUT_UNRECORDED = "posted_but_unrecorded"
    INTERNAL = "internal"


class ReviewFlowError(Exception):
    """Base exception for all service-level failures"""

    kind = ErrorKind.INTERNAL
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    # Whether the caller may safely repeat the same request
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.kind.value, "message": self.message, "retryable": self.retryable}
        body.update(self.details)
        return body


class ValidationError(ReviewFlowError):
    """Missing or malformed input; always fixable by the caller"""
    kind = ErrorKind.VALIDATION
    status_code = status.HTTP_400_BAD_REQUEST


class MissingExternalIdError(ValidationError):
    """Review was never linked to a provider review and cannot be replied to"""
    kind = ErrorKind.MISSING_EXTERNAL_ID


class UnauthorizedError(ReviewFlowError):
    """No authenticated user on the request"""
    kind = ErrorKind.UNAUTHORIZED
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "User authentication required", details=None):
        super().__init__(message, details)


class ForbiddenError(ReviewFlowError):
    kind = ErrorKind.FORBIDDEN
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(ReviewFlowError):
    kind = ErrorKind.NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND


class NotFoundOrForbiddenError(ReviewFlowError):
    """Resource is missing or owned by someone else; the two are not distinguished"""
    kind = ErrorKind.NOT_FOUND_OR_FORBIDDEN
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, message: str = "Business not found or access denied", details=None):
        super().__init__(message, details)


class PlanRestrictedError(ReviewFlowError):
    kind = ErrorKind.PLAN_RESTRICTED
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str, plan_id: str, feature: str, details=None):
        merged = {"plan": plan_id, "feature": feature, "upgrade_required": True}
        merged.update(details or {})
        super().__init__(message, merged)
        self.plan_id = plan_id
        self.feature = feature


class InvalidTransitionError(ReviewFlowError):
    kind = ErrorKind.INVALID_TRANSITION
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str, current_status: Optional[str] = None, details=None):
        merged = {"current_status": current_status}
        merged.update(details or {})
        super().__init__(message, merged)
        self.current_status = current_status


class AlreadyPostedError(ReviewFlowError):
    """Idempotency guard: the reply is already on the provider"""
    kind = ErrorKind.ALREADY_POSTED
    status_code = status.HTTP_409_CONFLICT


class PublishFailedError(ReviewFlowError):
    """Provider call failed; local state was not changed"""
    kind = ErrorKind.PUBLISH_FAILED
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = True

    def __init__(self, message: str, error_code: Optional[str] = None, details=None):
        merged = {"code": error_code}
        merged.update(details or {})
        super().__init__(message, merged)
        self.error_code = error_code


class PublishOutcomeUnknownError(ReviewFlowError):
    """
    Provider call did not complete in time. The reply may or may not have been
    written, so the review stays claimed until an operator checks the provider.
    """
    kind = ErrorKind.PUBLISH_OUTCOME_UNKNOWN
    status_code = status.HTTP_504_GATEWAY_TIMEOUT


class PostedButUnrecordedError(ReviewFlowError):
    """Provider accepted the reply but the local commit failed; needs reconciliation"""
    kind = ErrorKind.POSTED_BUT_UNRECORDED
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, posted_at: str, details=None):
        merged = {"posted_at": posted_at, "requires_reconciliation": True}
        merged.update(details or {})
        super().__init__(message, merged)
        self.posted_at = posted_at


class CredentialsMissingError(ValidationError):
    """Business has no complete Google credential bundle or access token"""


class InternalError(ReviewFlowError):
    kind = ErrorKind.INTERNAL
