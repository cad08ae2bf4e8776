from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, JSON, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from enum import Enum
import uuid

from reviewflow.db.database import Base


# Stored encrypted via reviewflow.core.encryption
GOOGLE_CREDENTIAL_FIELDS = (
    "google_client_id",
    "google_client_secret",
    "google_account_id",
    "google_location_id",
)
GOOGLE_TOKEN_FIELDS = (
    "google_access_token",
    "google_refresh_token",
)


class ReviewStatus(str, Enum):
    PENDING = "pending"
    DRAFTED = "drafted"
    APPROVED = "approved"
    POSTED = "posted"


# pending -> drafted -> approved -> posted; posted is terminal
REVIEW_TRANSITIONS = {
    ReviewStatus.PENDING: {ReviewStatus.DRAFTED},
    ReviewStatus.DRAFTED: {ReviewStatus.APPROVED},
    ReviewStatus.APPROVED: {ReviewStatus.POSTED},
    ReviewStatus.POSTED: set(),
}


def _uuid() -> str:
    return str(uuid.uuid4())


class Business(Base):
    """A connected Google Business Profile location owned by one user"""
    __tablename__ = "businesses"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False, default="")
    plan_id = Column(String(32), nullable=True)  # basic, starter, pro, pro-plus

    # Encrypted credential bundle; all four present or all four null
    google_client_id = Column(Text, nullable=True)
    google_client_secret = Column(Text, nullable=True)
    google_account_id = Column(Text, nullable=True)
    google_location_id = Column(Text, nullable=True)

    # Encrypted OAuth tokens
    google_access_token = Column(Text, nullable=True)
    google_refresh_token = Column(Text, nullable=True)
    tokens_updated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    reviews = relationship("Review", back_populates="business")
    activities = relationship("Activity", back_populates="business")

    @property
    def has_credentials(self) -> bool:
        return all(getattr(self, field) for field in GOOGLE_CREDENTIAL_FIELDS)

    @property
    def has_tokens(self) -> bool:
        return bool(self.google_access_token and self.google_refresh_token)


class Review(Base):
    """A customer review mirrored from Google"""
    __tablename__ = "reviews"

    id = Column(String(36), primary_key=True, default=_uuid)
    business_id = Column(String(36), ForeignKey("businesses.id"), nullable=False, index=True)
    google_review_id = Column(String(255), nullable=True, unique=True)

    customer_name = Column(String(255), nullable=False, default="Anonymous")
    rating = Column(Integer, nullable=False)
    review_text = Column(Text, nullable=True)

    ai_reply = Column(Text, nullable=True)
    final_reply = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=ReviewStatus.PENDING.value, index=True)
    auto_approved = Column(Boolean, default=False, nullable=False)

    # Set while a publish is in flight; guards against concurrent double posting
    publish_claim = Column(String(36), nullable=True)
    publish_claimed_at = Column(DateTime(timezone=True), nullable=True)

    posted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    business = relationship("Business", back_populates="reviews")

    __table_args__ = (
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_reviews_rating_range"),
        CheckConstraint(
            "status != 'posted' OR (final_reply IS NOT NULL AND posted_at IS NOT NULL "
            "AND google_review_id IS NOT NULL)",
            name="ck_reviews_posted_complete",
        ),
        Index("ix_reviews_business_status", "business_id", "status"),
    )

    def can_transition_to(self, new_status) -> bool:
        try:
            current = ReviewStatus(self.status)
            target = ReviewStatus(new_status)
        except ValueError:
            return False
        return target in REVIEW_TRANSITIONS[current]


class Activity(Base):
    """Append-only audit record"""
    __tablename__ = "activities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    business_id = Column(String(36), ForeignKey("businesses.id"), nullable=False, index=True)
    type = Column(String(64), nullable=False)
    description = Column(Text, nullable=False)
    activity_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    business = relationship("Business", back_populates="activities")
