"""
Review Lifecycle Service - State machine for review replies

pending -> drafted -> approved -> posted

Every transition is a conditional update on the current status, so a racing
caller sees a conflict instead of overwriting a newer state. Posting follows
a claim / publish / commit sequence:

1. claim the approved review (conditional update on an empty publish_claim)
2. publish to Google outside any database transaction
3. commit `posted` only if our claim still holds

A definite publish failure releases the claim and leaves the review approved.
An unknown outcome (timeout after the request was sent) keeps the claim so
nothing retries until an operator has checked Google; see reconcile_posted()
and release_publish_claim().

A posted reply can be edited with update_reply(). The review stays posted and
the same claim column keeps two edits from publishing at once; Google's reply
endpoint replaces the existing reply, so a failed edit is always safe to retry.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from reviewflow.core.authorization import require_owner
from reviewflow.core.errors import (
    AlreadyPostedError,
    InternalError,
    InvalidTransitionError,
    MissingExternalIdError,
    NotFoundError,
    NotFoundOrForbiddenError,
    PlanRestrictedError,
    PostedButUnrecordedError,
    PublishFailedError,
    PublishOutcomeUnknownError,
    ReviewFlowError,
    ValidationError,
)
from reviewflow.db.models import Business, Review, ReviewStatus
from reviewflow.integrations.constants import GOOGLE_REPLY_MAX_LENGTH
from reviewflow.services.activity_service import ActivityRecorder, ActivityType
from reviewflow.services.plan_service import capabilities_for
from reviewflow.services.reply_publisher import ReplyPublisher

logger = logging.getLogger(__name__)

# Actor used by automation (sync jobs, auto-approval); anything else is a user id
SYSTEM_ACTOR = "system"

DraftGenerator = Callable[[Optional[str], int, Optional[Dict[str, Any]]], str]


class ApprovalMode(str, Enum):
    MANUAL = "manual"
    AUTO_4_PLUS = "auto_4_plus"
    AUTO_EXCEPT_LOW = "auto_except_low"


_MODE_THRESHOLDS = {
    ApprovalMode.MANUAL: None,
    ApprovalMode.AUTO_4_PLUS: 4,
    ApprovalMode.AUTO_EXCEPT_LOW: 3,
}


@dataclass(frozen=True)
class AutoApprovalPolicy:
    """Business-configured rule for which drafted replies skip human approval"""
    mode: ApprovalMode = ApprovalMode.MANUAL
    # Overrides the mode's threshold when set
    min_rating: Optional[int] = None

    def __post_init__(self):
        if self.min_rating is not None and not 1 <= self.min_rating <= 5:
            raise ValidationError("min_rating must be between 1 and 5")

    @property
    def threshold(self) -> Optional[int]:
        if self.mode == ApprovalMode.MANUAL:
            return None
        if self.min_rating is not None:
            return self.min_rating
        return _MODE_THRESHOLDS[self.mode]

    def allows(self, rating: int) -> bool:
        threshold = self.threshold
        return threshold is not None and rating >= threshold


@dataclass
class AutoApprovalOutcome:
    review_id: str
    approved: bool
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"reviewId": self.review_id, "approved": self.approved, "reason": self.reason}


@dataclass
class PostReplyResult:
    review_id: str
    final_reply: str
    posted_at: datetime
    activity_recorded: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "message": "Reply posted successfully",
            "reviewId": self.review_id,
            "finalReply": self.final_reply,
            "postedAt": self.posted_at.isoformat(),
        }


@dataclass
class UpdateReplyResult:
    review_id: str
    final_reply: str
    previous_reply: Optional[str]
    updated_at: datetime
    activity_recorded: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "message": "Reply updated successfully on Google Business Profile",
            "reviewId": self.review_id,
            "finalReply": self.final_reply,
            "updatedAt": self.updated_at.isoformat(),
        }


def _empty_rating_buckets() -> Dict[int, Dict[str, int]]:
    return {rating: {"approve": 0, "skip": 0} for rating in range(1, 6)}


@dataclass
class AutoApprovalPreview:
    """What a batch auto-approval would do, without changing anything"""
    mode: ApprovalMode
    would_approve: int = 0
    would_skip: int = 0
    by_rating: Dict[int, Dict[str, int]] = field(default_factory=_empty_rating_buckets)

    def count(self, rating: int, approve: bool) -> None:
        bucket = self.by_rating.setdefault(rating, {"approve": 0, "skip": 0})
        if approve:
            self.would_approve += 1
            bucket["approve"] += 1
        else:
            self.would_skip += 1
            bucket["skip"] += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "preview": True,
            "approvalMode": self.mode.value,
            "wouldApprove": self.would_approve,
            "wouldSkip": self.would_skip,
            "byRating": {str(rating): dict(counts) for rating, counts in self.by_rating.items()},
        }


@dataclass
class BatchAutoApprovalResult:
    mode: ApprovalMode
    total_reviews: int
    outcomes: List[AutoApprovalOutcome] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def approved_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.approved)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.approved_count > 0 or self.total_reviews == 0,
            "approvalMode": self.mode.value,
            "totalReviews": self.total_reviews,
            "approvedCount": self.approved_count,
            "results": [outcome.to_dict() for outcome in self.outcomes],
            "errors": list(self.errors),
        }
        if self.total_reviews == 0:
            data["message"] = "No reviews are eligible for auto-approval"
        return data


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean_text(text: Optional[str], label: str) -> str:
    cleaned = text.strip() if isinstance(text, str) else ""
    if not cleaned:
        raise ValidationError(f"{label} is required")
    if len(cleaned) > GOOGLE_REPLY_MAX_LENGTH:
        raise ValidationError(
            f"{label} exceeds {GOOGLE_REPLY_MAX_LENGTH} characters",
            {"max_length": GOOGLE_REPLY_MAX_LENGTH},
        )
    return cleaned


class ReviewLifecycleService:
    """Owns every status change of a review"""

    def __init__(
        self,
        db: Session,
        publisher: Optional[ReplyPublisher] = None,
        activity_recorder: Optional[ActivityRecorder] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.publisher = publisher
        self.activity = activity_recorder or ActivityRecorder(db)
        self._now = clock or _utcnow

    def _load(self, review_id: str) -> Tuple[Review, Business]:
        if not review_id:
            raise ValidationError("Review ID is required")

        review = self.db.query(Review).filter(Review.id == review_id).first()
        if review is None or review.business is None:
            raise NotFoundError("Review not found")
        return review, review.business

    @staticmethod
    def _authorize(business: Business, actor: Optional[str]) -> None:
        if actor == SYSTEM_ACTOR:
            return
        require_owner(business.user_id, actor)

    def _conditional_update(self, review_id: str, conditions, values: Dict[str, Any]) -> bool:
        """Apply `values` only if the row still matches `conditions`; True when it did"""
        try:
            updated = (
                self.db.query(Review)
                .filter(Review.id == review_id, *conditions)
                .update(values, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Status update failed for review {review_id}: {e}", extra={"review_id": review_id})
            raise InternalError("Failed to update review") from e
        return updated == 1

    def _raise_conflict(self, review_id: str, action: str) -> None:
        """Raise the error matching the status another caller left behind"""
        current = self.db.query(Review.status).filter(Review.id == review_id).scalar()
        if current == ReviewStatus.POSTED.value:
            raise AlreadyPostedError("Reply has already been posted to Google")
        raise InvalidTransitionError(f"Cannot {action}: review is {current}", current_status=current)

    @staticmethod
    def _require_transition(review: Review, target: ReviewStatus, action: str) -> None:
        """Raise unless the review's current status may move to `target`"""
        if review.can_transition_to(target):
            return
        if review.status == ReviewStatus.POSTED.value:
            raise AlreadyPostedError("Reply has already been posted to Google")
        raise InvalidTransitionError(
            f"Cannot {action} a review that is {review.status}",
            current_status=review.status,
        )

    def record_draft(self, review_id: str, draft_text: str, actor: str = SYSTEM_ACTOR) -> Review:
        """Store an AI draft: pending -> drafted"""
        draft = _clean_text(draft_text, "Draft reply")
        review, business = self._load(review_id)
        self._authorize(business, actor)

        self._require_transition(review, ReviewStatus.DRAFTED, "record a draft for")
        capabilities_for(business.plan_id).require_feature("ai_replies")

        if not self._conditional_update(
            review_id,
            [Review.status == ReviewStatus.PENDING.value],
            {"status": ReviewStatus.DRAFTED.value, "ai_reply": draft},
        ):
            self._raise_conflict(review_id, "record draft")

        logger.info(f"Recorded draft for review {review_id}", extra={"review_id": review_id})
        self.activity.record(
            business.id,
            ActivityType.REPLY_DRAFTED,
            f"AI reply drafted for {review.rating}-star review from {review.customer_name}",
            {"review_id": review_id, "rating": review.rating},
        )
        return review

    def generate_draft(
        self,
        review_id: str,
        requester: str,
        generator: DraftGenerator,
        brand_voice: Optional[Dict[str, Any]] = None,
    ) -> Review:
        """Ask the AI generator for a reply and record it as the draft"""
        review, business = self._load(review_id)
        self._authorize(business, requester)

        self._require_transition(review, ReviewStatus.DRAFTED, "generate a draft for")
        capabilities = capabilities_for(business.plan_id)
        capabilities.require_feature("ai_replies")
        if brand_voice:
            capabilities.require_feature("custom_voice")

        try:
            draft = generator(review.review_text, review.rating, brand_voice)
        except Exception as e:
            logger.error(f"Draft generation failed for review {review_id}: {e}", extra={"review_id": review_id})
            raise InternalError("Failed to generate reply draft") from e

        return self.record_draft(review_id, draft, actor=requester)

    def approve(self, review_id: str, final_text: Optional[str], actor: str) -> Review:
        """
        Choose the reply to post: drafted -> approved

        `final_text` defaults to the AI draft. Approval by SYSTEM_ACTOR needs
        the plan's auto_approval feature.
        """
        review, business = self._load(review_id)
        self._authorize(business, actor)

        self._require_transition(review, ReviewStatus.APPROVED, "approve")

        is_system = actor == SYSTEM_ACTOR
        if is_system:
            capabilities_for(business.plan_id).require_feature("auto_approval")

        text = _clean_text(final_text if final_text is not None else review.ai_reply, "Reply text")

        if not self._conditional_update(
            review_id,
            [Review.status == ReviewStatus.DRAFTED.value],
            {"status": ReviewStatus.APPROVED.value, "final_reply": text, "auto_approved": is_system},
        ):
            self._raise_conflict(review_id, "approve")

        logger.info(
            f"Approved reply for review {review_id} ({'auto' if is_system else 'manual'})",
            extra={"review_id": review_id},
        )
        self.activity.record(
            business.id,
            ActivityType.REPLY_APPROVED,
            f"Reply {'auto-approved' if is_system else 'approved'} for {review.rating}-star review",
            {"review_id": review_id, "rating": review.rating, "auto_approved": is_system},
        )
        return review

    def auto_approve(self, review_id: str, requester: str, policy: AutoApprovalPolicy) -> AutoApprovalOutcome:
        """
        Approve the AI draft without a human when the policy allows it

        The requester must own the business (SYSTEM_ACTOR for scheduled jobs).
        Ineligible reviews are left untouched. Raises PlanRestrictedError when the
        policy would approve but the plan has no auto_approval.
        """
        review, business = self._load(review_id)
        self._authorize(business, requester)

        if policy.threshold is None:
            return AutoApprovalOutcome(review_id, False, "Manual approval mode")
        if review.status != ReviewStatus.DRAFTED.value:
            return AutoApprovalOutcome(review_id, False, f"Review is {review.status}, not drafted")
        if not policy.allows(review.rating):
            return AutoApprovalOutcome(
                review_id, False, f"Rating {review.rating} is below {policy.threshold}"
            )

        self.approve(review_id, review.ai_reply, SYSTEM_ACTOR)
        return AutoApprovalOutcome(review_id, True, f"Rating {review.rating} meets {policy.threshold}")

    def _get_owned_business(self, business_id: str, requester: str) -> Business:
        if not business_id:
            raise ValidationError("Business ID is required")
        business = self.db.query(Business).filter(Business.id == business_id).first()
        if requester == SYSTEM_ACTOR and business is not None:
            return business
        require_owner(
            business.user_id if business else None,
            requester,
            error=NotFoundOrForbiddenError(),
        )
        return business

    def _batch_candidates(self, business_id: str, review_ids: Optional[Sequence[str]]) -> Tuple[List[Review], List[str]]:
        """Reviews to consider, plus requested ids that are not this business's reviews"""
        query = self.db.query(Review).filter(Review.business_id == business_id)
        if review_ids is None:
            reviews = (
                query.filter(Review.status == ReviewStatus.DRAFTED.value, Review.ai_reply.isnot(None))
                .order_by(Review.created_at)
                .all()
            )
            return reviews, []

        requested = list(dict.fromkeys(review_ids))
        found = {review.id: review for review in query.filter(Review.id.in_(requested)).all()}
        return [found[i] for i in requested if i in found], [i for i in requested if i not in found]

    def auto_approve_many(
        self,
        business_id: str,
        requester: str,
        policy: AutoApprovalPolicy,
        review_ids: Optional[Sequence[str]] = None,
        preview_only: bool = False,
    ):
        """
        Run auto-approval over several reviews of one business

        With `review_ids` only those reviews are considered; otherwise every
        drafted review that has an AI draft. `preview_only` returns an
        AutoApprovalPreview and changes nothing. A failure on one review is
        collected in the result's errors and does not stop the batch; one
        activity record summarises the run.

        Raises:
            NotFoundOrForbiddenError: business missing or owned by someone else
            PlanRestrictedError: the plan has no auto_approval
        """
        business = self._get_owned_business(business_id, requester)
        capabilities_for(business.plan_id).require_feature("auto_approval")

        reviews, unknown_ids = self._batch_candidates(business.id, review_ids)

        if preview_only:
            preview = AutoApprovalPreview(policy.mode)
            for review in reviews:
                if review.status == ReviewStatus.DRAFTED.value:
                    preview.count(review.rating, policy.allows(review.rating))
            return preview

        result = BatchAutoApprovalResult(policy.mode, total_reviews=len(reviews) + len(unknown_ids))
        for review_id in unknown_ids:
            result.errors.append({"reviewId": review_id, "error": "Review not found"})

        for review_id in [review.id for review in reviews]:
            try:
                result.outcomes.append(self.auto_approve(review_id, requester, policy))
            except ReviewFlowError as e:
                logger.warning(
                    f"Auto-approval failed for review {review_id}: {e.message}",
                    extra={"review_id": review_id, "business_id": business.id},
                )
                result.errors.append({"reviewId": review_id, "error": e.message})

        logger.info(
            f"Auto-approved {result.approved_count}/{result.total_reviews} reviews for business {business.id}",
            extra={"business_id": business.id},
        )
        if result.total_reviews:
            self.activity.record(
                business.id,
                ActivityType.REPLY_AUTO_APPROVED,
                f"Batch auto-approval completed: {result.approved_count}/{result.total_reviews} approved",
                {
                    "approval_mode": policy.mode.value,
                    "total_reviews": result.total_reviews,
                    "approved_count": result.approved_count,
                    "error_count": len(result.errors),
                    "review_ids": [outcome.review_id for outcome in result.outcomes],
                },
            )
        return result

    def _replies_this_month(self, business_id: str) -> int:
        month_start = self._now().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return self.db.query(func.count(Review.id)).filter(
            Review.business_id == business_id,
            Review.status == ReviewStatus.POSTED.value,
            Review.posted_at >= month_start,
        ).scalar() or 0

    def _check_reply_quota(self, business: Business) -> None:
        capabilities = capabilities_for(business.plan_id)
        if capabilities.is_unlimited("max_replies_per_month"):
            return
        used = self._replies_this_month(business.id)
        if not capabilities.within_limit("max_replies_per_month", used):
            raise PlanRestrictedError(
                f"Monthly reply limit reached for the {capabilities.plan_id} plan",
                plan_id=capabilities.plan_id,
                feature="max_replies_per_month",
                details={"used": used, "limit": capabilities.limit("max_replies_per_month")},
            )

    def _release_claim(self, review_id: str, claim: str) -> None:
        try:
            released = self._conditional_update(
                review_id,
                [Review.publish_claim == claim],
                {"publish_claim": None, "publish_claimed_at": None},
            )
        except InternalError:
            logger.error(f"Could not release publish claim on review {review_id}", extra={"review_id": review_id})
            return
        if not released:
            logger.warning(f"Publish claim on review {review_id} was already gone", extra={"review_id": review_id})

    def post_reply(self, review_id: str, requester: str, reply_text: Optional[str] = None) -> PostReplyResult:
        """
        Publish the approved reply to Google and mark the review posted

        Raises:
            NotFoundError, ForbiddenError: review missing / not the requester's
            MissingExternalIdError: review was never linked to Google
            AlreadyPostedError: the reply is already on Google
            InvalidTransitionError: review not approved, or a publish is in flight
            ValidationError: no reply text
            PlanRestrictedError: monthly reply limit reached
            PublishFailedError: Google rejected the reply; safe to retry
            PublishOutcomeUnknownError: Google may have the reply; do not retry
            PostedButUnrecordedError: Google has the reply, the local commit failed
        """
        if self.publisher is None:
            raise InternalError("No reply publisher configured")

        review, business = self._load(review_id)
        self._authorize(business, requester)

        if not review.google_review_id:
            raise MissingExternalIdError("Review is not linked to a Google review and cannot be replied to")
        self._require_transition(review, ReviewStatus.POSTED, "post a reply for")

        text = _clean_text(reply_text if reply_text is not None else review.final_reply, "Reply text")
        self._check_reply_quota(business)

        business_id = business.id
        google_review_id = review.google_review_id
        rating = review.rating
        customer_name = review.customer_name

        claim = str(uuid.uuid4())
        if not self._conditional_update(
            review_id,
            [Review.status == ReviewStatus.APPROVED.value, Review.publish_claim.is_(None)],
            {"publish_claim": claim, "publish_claimed_at": self._now()},
        ):
            current = self.db.query(Review.status).filter(Review.id == review_id).scalar()
            if current == ReviewStatus.POSTED.value:
                raise AlreadyPostedError("Reply has already been posted to Google")
            raise InvalidTransitionError(
                "A reply for this review is already being published",
                current_status=current,
            )

        try:
            result = self.publisher.publish(business_id, google_review_id, text)
        except Exception as e:
            # Unclassified failure: Google may or may not have the reply
            logger.critical(
                f"Unexpected error publishing reply for review {review_id}; claim kept: {e}",
                exc_info=True,
                extra={"review_id": review_id, "business_id": business_id},
            )
            raise PublishOutcomeUnknownError(
                "Publishing did not complete; check Google before retrying",
                {"review_id": review_id},
            ) from e

        if not result.success:
            if result.outcome_unknown:
                logger.error(
                    f"Publish outcome unknown for review {review_id}; claim kept for reconciliation",
                    extra={"review_id": review_id, "business_id": business_id, "error_kind": result.error_code},
                )
                raise PublishOutcomeUnknownError(
                    result.message or "Publishing did not complete; check Google before retrying",
                    {"review_id": review_id, "code": result.error_code},
                )
            self._release_claim(review_id, claim)
            logger.warning(
                f"Publishing reply for review {review_id} failed: {result.error_code}",
                extra={"review_id": review_id, "business_id": business_id, "error_kind": result.error_code},
            )
            raise PublishFailedError(result.message or "Failed to post reply to Google", error_code=result.error_code)

        posted_at = self._now()
        try:
            recorded = (
                self.db.query(Review)
                .filter(
                    Review.id == review_id,
                    Review.status == ReviewStatus.APPROVED.value,
                    Review.publish_claim == claim,
                )
                .update(
                    {
                        "status": ReviewStatus.POSTED.value,
                        "final_reply": text,
                        "posted_at": posted_at,
                        "publish_claim": None,
                        "publish_claimed_at": None,
                    },
                    synchronize_session=False,
                )
            ) == 1
            if recorded:
                self.db.commit()
            else:
                self.db.rollback()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Commit after publish failed for review {review_id}: {e}")
            recorded = False

        if not recorded:
            logger.critical(
                f"Reply for review {review_id} is on Google but was not recorded locally (posted at {posted_at.isoformat()})",
                extra={"review_id": review_id, "business_id": business_id},
            )
            raise PostedButUnrecordedError(
                "Reply was posted to Google but could not be saved",
                posted_at=posted_at.isoformat(),
                details={"review_id": review_id},
            )

        logger.info(f"Posted reply for review {review_id}", extra={"review_id": review_id, "business_id": business_id})
        activity_recorded = self.activity.record(
            business_id,
            ActivityType.REPLY_POSTED,
            f"Reply posted to {rating}-star review from {customer_name}",
            {"review_id": review_id, "rating": rating, "google_review_id": google_review_id},
        )
        return PostReplyResult(review_id, text, posted_at, activity_recorded)

    def update_reply(self, review_id: str, requester: str, reply_text: Optional[str]) -> UpdateReplyResult:
        """
        Replace the text of a reply that is already on Google; the review stays posted

        Raises:
            NotFoundError, ForbiddenError: review missing / not the requester's
            MissingExternalIdError: review was never linked to Google
            InvalidTransitionError: review not posted yet, or another edit is in flight
            ValidationError: empty text, or text identical to the current reply
            PlanRestrictedError: monthly reply limit reached
            PublishFailedError: Google did not confirm the edit; safe to retry
            PostedButUnrecordedError: Google has the new text, the local commit failed
        """
        if self.publisher is None:
            raise InternalError("No reply publisher configured")

        review, business = self._load(review_id)
        self._authorize(business, requester)

        if not review.google_review_id:
            raise MissingExternalIdError("Review is not linked to a Google review and cannot be replied to")
        if review.status != ReviewStatus.POSTED.value:
            raise InvalidTransitionError(
                f"Reply must be posted before it can be updated. Current status: {review.status}",
                current_status=review.status,
            )

        text = _clean_text(reply_text, "Reply text")
        previous = review.final_reply
        if previous is not None and text == previous.strip():
            raise ValidationError("New reply text is identical to the current reply")
        self._check_reply_quota(business)

        business_id = business.id
        google_review_id = review.google_review_id
        rating = review.rating
        customer_name = review.customer_name

        claim = str(uuid.uuid4())
        if not self._conditional_update(
            review_id,
            [Review.status == ReviewStatus.POSTED.value, Review.publish_claim.is_(None)],
            {"publish_claim": claim, "publish_claimed_at": self._now()},
        ):
            current = self.db.query(Review.status).filter(Review.id == review_id).scalar()
            raise InvalidTransitionError(
                "An update to this reply is already being published",
                current_status=current,
            )

        try:
            result = self.publisher.publish(business_id, google_review_id, text)
        except Exception as e:
            self._release_claim(review_id, claim)
            logger.error(
                f"Unexpected error updating reply for review {review_id}: {e}",
                exc_info=True,
                extra={"review_id": review_id, "business_id": business_id},
            )
            raise PublishFailedError("Failed to update reply on Google Business Profile") from e

        if not result.success:
            # An edit replaces the stored reply, so even an unknown outcome can be retried
            self._release_claim(review_id, claim)
            logger.warning(
                f"Updating reply for review {review_id} failed: {result.error_code}",
                extra={"review_id": review_id, "business_id": business_id, "error_kind": result.error_code},
            )
            raise PublishFailedError(
                result.message or "Failed to update reply on Google Business Profile",
                error_code=result.error_code,
                details={"outcome_unknown": result.outcome_unknown},
            )

        updated_at = self._now()
        try:
            recorded = (
                self.db.query(Review)
                .filter(Review.id == review_id, Review.publish_claim == claim)
                .update(
                    {
                        "final_reply": text,
                        "updated_at": updated_at,
                        "publish_claim": None,
                        "publish_claimed_at": None,
                    },
                    synchronize_session=False,
                )
            ) == 1
            if recorded:
                self.db.commit()
            else:
                self.db.rollback()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Commit after reply update failed for review {review_id}: {e}")
            recorded = False

        if not recorded:
            self._release_claim(review_id, claim)
            logger.critical(
                f"Reply for review {review_id} was updated on Google but not recorded locally",
                extra={"review_id": review_id, "business_id": business_id},
            )
            raise PostedButUnrecordedError(
                "Reply was updated on Google but could not be saved",
                posted_at=updated_at.isoformat(),
                details={"review_id": review_id},
            )

        logger.info(f"Updated reply for review {review_id}", extra={"review_id": review_id, "business_id": business_id})
        activity_recorded = self.activity.record(
            business_id,
            ActivityType.REPLY_UPDATED,
            f"Reply updated for {rating}-star review from {customer_name}",
            {
                "review_id": review_id,
                "rating": rating,
                "google_review_id": google_review_id,
                "previous_reply": previous,
                "new_reply": text,
            },
        )
        return UpdateReplyResult(review_id, text, previous, updated_at, activity_recorded)

    def reconcile_posted(
        self,
        review_id: str,
        posted_at: Optional[datetime] = None,
        reply_text: Optional[str] = None,
    ) -> PostReplyResult:
        """Record a reply an operator confirmed is on Google: approved -> posted"""
        review, business = self._load(review_id)

        self._require_transition(review, ReviewStatus.POSTED, "reconcile")
        if not review.google_review_id:
            raise MissingExternalIdError("Review is not linked to a Google review")

        text = _clean_text(reply_text if reply_text is not None else review.final_reply, "Reply text")
        posted_at = posted_at or self._now()
        business_id = business.id
        google_review_id = review.google_review_id

        if not self._conditional_update(
            review_id,
            [Review.status == ReviewStatus.APPROVED.value],
            {
                "status": ReviewStatus.POSTED.value,
                "final_reply": text,
                "posted_at": posted_at,
                "publish_claim": None,
                "publish_claimed_at": None,
            },
        ):
            self._raise_conflict(review_id, "reconcile")

        logger.warning(f"Reconciled review {review_id} as posted", extra={"review_id": review_id})
        activity_recorded = self.activity.record(
            business_id,
            ActivityType.REPLY_RECONCILED,
            "Reply confirmed on Google and recorded during reconciliation",
            {"review_id": review_id, "google_review_id": google_review_id},
        )
        return PostReplyResult(review_id, text, posted_at, activity_recorded)

    def release_publish_claim(self, review_id: str) -> bool:
        """Clear a stuck claim after confirming Google does not have the reply"""
        released = self._conditional_update(
            review_id,
            [Review.status == ReviewStatus.APPROVED.value, Review.publish_claim.isnot(None)],
            {"publish_claim": None, "publish_claimed_at": None},
        )
        if released:
            logger.warning(f"Released publish claim on review {review_id}", extra={"review_id": review_id})
        return released
