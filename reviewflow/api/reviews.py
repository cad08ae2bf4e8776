"""
Reviews API endpoints - Drafting, approval and posting of review replies
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session
from typing import Dict, Any, List, Optional
import logging

from reviewflow.core.errors import InternalError, ReviewFlowError, UnauthorizedError
from reviewflow.db.database import get_db
from reviewflow.services.credential_service import CredentialService
from reviewflow.services.reply_publisher import ReplyPublisher
from reviewflow.services.review_lifecycle_service import (
    SYSTEM_ACTOR,
    ApprovalMode,
    AutoApprovalPolicy,
    ReviewLifecycleService,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reviews", tags=["reviews"])


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PostReplyRequest(CamelModel):
    review_id: str = Field(..., alias="reviewId", min_length=1)
    user_id: Optional[str] = Field(None, alias="userId")
    reply_text: Optional[str] = Field(None, alias="replyText")


class UpdateReplyRequest(CamelModel):
    review_id: str = Field(..., alias="reviewId", min_length=1)
    user_id: Optional[str] = Field(None, alias="userId")
    reply_text: str = Field(..., alias="replyText", min_length=1)


class DraftRequest(CamelModel):
    user_id: Optional[str] = Field(None, alias="userId")
    draft_text: str = Field(..., alias="draftText")


class ApproveRequest(CamelModel):
    user_id: Optional[str] = Field(None, alias="userId")
    final_text: Optional[str] = Field(None, alias="finalText")


class AutoApproveRequest(CamelModel):
    user_id: Optional[str] = Field(None, alias="userId")
    mode: ApprovalMode = ApprovalMode.MANUAL
    min_rating: Optional[int] = Field(None, alias="minRating", ge=1, le=5)


class BatchAutoApproveRequest(AutoApproveRequest):
    business_id: str = Field(..., alias="businessId", min_length=1)
    review_ids: Optional[List[str]] = Field(None, alias="reviewIds")
    preview_only: bool = Field(False, alias="previewOnly")


def get_lifecycle_service(db: Session = Depends(get_db)) -> ReviewLifecycleService:
    """Wire the lifecycle service with a publisher backed by stored Google credentials"""
    publisher = ReplyPublisher(CredentialService(db))
    return ReviewLifecycleService(db, publisher=publisher)


def _require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise UnauthorizedError()
    # The automation actor bypasses ownership checks and is never a caller identity
    if user_id == SYSTEM_ACTOR:
        raise UnauthorizedError("Invalid user id")
    return user_id


def _review_summary(review) -> Dict[str, Any]:
    return {
        "reviewId": review.id,
        "status": review.status,
        "aiReply": review.ai_reply,
        "finalReply": review.final_reply,
        "autoApproved": review.auto_approved,
    }


@router.post("/post-reply")
def post_reply(
    request: PostReplyRequest,
    service: ReviewLifecycleService = Depends(get_lifecycle_service),
):
    """Post the approved reply for a review to Google"""
    user_id = _require_user(request.user_id)
    try:
        result = service.post_reply(request.review_id, user_id, request.reply_text)
        return result.to_dict()

    except ReviewFlowError:
        raise
    except Exception as e:
        logger.error(f"Unexpected error posting reply for review {request.review_id}: {e}", exc_info=True)
        raise InternalError("Internal server error") from e


@router.put("/update-reply")
def update_reply(
    request: UpdateReplyRequest,
    service: ReviewLifecycleService = Depends(get_lifecycle_service),
):
    """Edit a reply that is already posted on Google"""
    user_id = _require_user(request.user_id)
    return service.update_reply(request.review_id, user_id, request.reply_text).to_dict()


@router.post("/auto-approve")
def auto_approve_batch(
    request: BatchAutoApproveRequest,
    service: ReviewLifecycleService = Depends(get_lifecycle_service),
):
    """Apply an auto-approval policy to several reviews of a business, or preview it"""
    user_id = _require_user(request.user_id)
    policy = AutoApprovalPolicy(mode=request.mode, min_rating=request.min_rating)
    result = service.auto_approve_many(
        request.business_id,
        user_id,
        policy,
        review_ids=request.review_ids,
        preview_only=request.preview_only,
    )
    return result.to_dict()


@router.post("/{review_id}/draft")
def record_draft(
    review_id: str,
    request: DraftRequest,
    service: ReviewLifecycleService = Depends(get_lifecycle_service),
):
    """Store an AI-generated draft reply"""
    user_id = _require_user(request.user_id)
    review = service.record_draft(review_id, request.draft_text, actor=user_id)
    return _review_summary(review)


@router.post("/{review_id}/approve")
def approve_reply(
    review_id: str,
    request: ApproveRequest,
    service: ReviewLifecycleService = Depends(get_lifecycle_service),
):
    """Approve the draft (or an edited version of it) for posting"""
    user_id = _require_user(request.user_id)
    review = service.approve(review_id, request.final_text, user_id)
    return _review_summary(review)


@router.post("/{review_id}/auto-approve")
def auto_approve_reply(
    review_id: str,
    request: AutoApproveRequest,
    service: ReviewLifecycleService = Depends(get_lifecycle_service),
):
    """Apply an auto-approval policy to one drafted review the caller owns"""
    user_id = _require_user(request.user_id)
    policy = AutoApprovalPolicy(mode=request.mode, min_rating=request.min_rating)
    return service.auto_approve(review_id, user_id, policy).to_dict()
