"""
Ownership checks shared by every business-scoped operation
"""
import logging
from enum import Enum
from typing import Any, Optional

from reviewflow.core.errors import ForbiddenError

logger = logging.getLogger(__name__)


class OwnershipDecision(Enum):
    AUTHORIZED = "authorized"
    FORBIDDEN = "forbidden"


def check_ownership(resource_owner_id: Optional[Any], requester_id: Optional[Any]) -> OwnershipDecision:
    """Compare the owning user of a resource with the requesting user"""
    if resource_owner_id is None or requester_id is None:
        return OwnershipDecision.FORBIDDEN
    if str(resource_owner_id) != str(requester_id):
        return OwnershipDecision.FORBIDDEN
    return OwnershipDecision.AUTHORIZED


def require_owner(resource_owner_id: Optional[Any], requester_id: Optional[Any], error: Optional[Exception] = None) -> None:
    """
    Raise unless requester_id owns the resource.

    Args:
        resource_owner_id: user id recorded on the resource
        requester_id: user id making the request
        error: exception to raise instead of ForbiddenError, e.g. a
            NotFoundOrForbiddenError where existence must not leak
    """
    if check_ownership(resource_owner_id, requester_id) is OwnershipDecision.AUTHORIZED:
        return
    logger.warning(f"Ownership check failed for requester {requester_id}")
    raise error or ForbiddenError("You do not own this business")
