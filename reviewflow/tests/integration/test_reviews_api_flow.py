"""
Integration tests for the HTTP boundary: reviews, credentials and plans

Runs the real app factory against a sqlite database; only the Google
publisher is replaced.
"""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from reviewflow.api.reviews import get_lifecycle_service
from reviewflow.core.app_factory import AppConfig, create_app
from reviewflow.db.database import get_db
from reviewflow.db.models import Review, ReviewStatus
from reviewflow.services.reply_publisher import PublishResult, ReplyPublisher
from reviewflow.services.review_lifecycle_service import ReviewLifecycleService
from reviewflow.tests.fixtures.review_fixtures import OTHER_USER_ID, OWNER_ID, PLAIN_CREDENTIALS

POSTED_AT = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def publisher():
    publisher = Mock(spec=ReplyPublisher)
    publisher.publish.return_value = PublishResult(success=True)
    return publisher


@pytest.fixture
def client(session_factory, publisher):
    app = create_app(AppConfig(environment="test", configure_logging=False, create_schema=False))

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    def override_lifecycle_service(db: Session = Depends(get_db)):
        return ReviewLifecycleService(db, publisher=publisher)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_lifecycle_service] = override_lifecycle_service
    return TestClient(app)


def fetch_review(session_factory, review_id):
    db = session_factory()
    try:
        return db.query(Review).filter(Review.id == review_id).first()
    finally:
        db.close()


class TestPostReplyEndpoint:
    """POST /api/reviews/post-reply"""

    def test_success(self, client, publisher, business, make_review, session_factory):
        review = make_review(business, google_review_id="g1")

        response = client.post(
            "/api/reviews/post-reply",
            json={"reviewId": review.id, "userId": OWNER_ID, "replyText": "Thank you!"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["finalReply"] == "Thank you!"
        assert body["postedAt"]
        publisher.publish.assert_called_once_with(business.id, "g1", "Thank you!")
        assert fetch_review(session_factory, review.id).status == "posted"

    def test_duplicate_request_is_conflict(self, client, publisher, business, make_review):
        review = make_review(business, final_reply="Thanks")
        payload = {"reviewId": review.id, "userId": OWNER_ID}

        assert client.post("/api/reviews/post-reply", json=payload).status_code == 200
        response = client.post("/api/reviews/post-reply", json=payload)

        assert response.status_code == 409
        assert response.json()["error"] == "already_posted"
        assert publisher.publish.call_count == 1

    def test_requires_user(self, client, business, make_review):
        review = make_review(business, final_reply="Thanks")

        response = client.post("/api/reviews/post-reply", json={"reviewId": review.id})

        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    def test_system_actor_is_not_a_caller_identity(self, client, publisher, business, make_review):
        review = make_review(business, final_reply="Thanks")

        response = client.post("/api/reviews/post-reply", json={"reviewId": review.id, "userId": "system"})

        assert response.status_code == 401
        publisher.publish.assert_not_called()

    def test_requires_review_id(self, client):
        response = client.post("/api/reviews/post-reply", json={"userId": OWNER_ID})

        assert response.status_code == 400
        assert response.json()["error"] == "validation"

    def test_not_owner(self, client, business, make_review):
        review = make_review(business, final_reply="Thanks")

        response = client.post("/api/reviews/post-reply", json={"reviewId": review.id, "userId": OTHER_USER_ID})

        assert response.status_code == 403

    def test_unknown_review(self, client):
        response = client.post("/api/reviews/post-reply", json={"reviewId": "nope", "userId": OWNER_ID})

        assert response.status_code == 404

    def test_unlinked_review(self, client, business, make_review):
        review = make_review(business, google_review_id=None, final_reply="Thanks")

        response = client.post("/api/reviews/post-reply", json={"reviewId": review.id, "userId": OWNER_ID})

        assert response.status_code == 400
        assert response.json()["error"] == "missing_external_id"

    def test_publish_failure(self, client, publisher, business, make_review, session_factory):
        review = make_review(business, final_reply="Thanks")
        publisher.publish.return_value = PublishResult(
            success=False, message="Google's Business Profile API is temporarily unavailable.",
            error_code="API_UNAVAILABLE",
        )

        response = client.post("/api/reviews/post-reply", json={"reviewId": review.id, "userId": OWNER_ID})

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "publish_failed"
        assert body["code"] == "API_UNAVAILABLE"
        assert body["retryable"] is True
        assert fetch_review(session_factory, review.id).status == "approved"

    def test_unknown_outcome(self, client, publisher, business, make_review):
        review = make_review(business, final_reply="Thanks")
        publisher.publish.return_value = PublishResult(success=False, error_code="TIMEOUT", outcome_unknown=True)

        response = client.post("/api/reviews/post-reply", json={"reviewId": review.id, "userId": OWNER_ID})

        assert response.status_code == 504
        assert response.json()["retryable"] is False


class TestDraftAndApprovalEndpoints:
    """Draft, approve and auto-approve"""

    def test_draft_then_approve_then_post(self, client, business, make_review, session_factory):
        review = make_review(business, status=ReviewStatus.PENDING)

        response = client.post(f"/api/reviews/{review.id}/draft", json={"userId": OWNER_ID, "draftText": "AI draft"})
        assert response.status_code == 200
        assert response.json()["status"] == "drafted"

        response = client.post(f"/api/reviews/{review.id}/approve", json={"userId": OWNER_ID})
        assert response.status_code == 200
        assert response.json()["finalReply"] == "AI draft"

        response = client.post("/api/reviews/post-reply", json={"reviewId": review.id, "userId": OWNER_ID})
        assert response.status_code == 200
        assert fetch_review(session_factory, review.id).final_reply == "AI draft"

    def test_approve_wrong_state(self, client, business, make_review):
        review = make_review(business, status=ReviewStatus.PENDING)

        response = client.post(f"/api/reviews/{review.id}/approve", json={"userId": OWNER_ID, "finalText": "Hi"})

        assert response.status_code == 409
        assert response.json()["current_status"] == "pending"

    def test_draft_on_basic_plan(self, client, make_business, make_review):
        business = make_business(plan_id="basic")
        review = make_review(business, status=ReviewStatus.PENDING)

        response = client.post(f"/api/reviews/{review.id}/draft", json={"userId": OWNER_ID, "draftText": "AI draft"})

        assert response.status_code == 403
        assert response.json()["upgrade_required"] is True

    def test_auto_approve(self, client, business, make_review):
        review = make_review(business, status=ReviewStatus.DRAFTED, ai_reply="AI draft", rating=5)

        response = client.post(
            f"/api/reviews/{review.id}/auto-approve", json={"userId": OWNER_ID, "mode": "auto_4_plus"}
        )

        assert response.status_code == 200
        assert response.json()["approved"] is True

    def test_auto_approve_by_non_owner_is_forbidden(self, client, business, make_review, session_factory):
        review = make_review(business, status=ReviewStatus.DRAFTED, ai_reply="AI draft", rating=5)

        response = client.post(
            f"/api/reviews/{review.id}/auto-approve", json={"userId": OTHER_USER_ID, "mode": "auto_4_plus"}
        )

        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"
        assert fetch_review(session_factory, review.id).status == "drafted"

    @pytest.mark.parametrize("user_id", [None, "system"])
    def test_auto_approve_requires_real_user(self, client, business, make_review, session_factory, user_id):
        review = make_review(business, status=ReviewStatus.DRAFTED, ai_reply="AI draft", rating=5)

        response = client.post(
            f"/api/reviews/{review.id}/auto-approve", json={"userId": user_id, "mode": "auto_4_plus"}
        )

        assert response.status_code == 401
        assert fetch_review(session_factory, review.id).status == "drafted"

    def test_auto_approve_rejects_bad_rating(self, client, business, make_review):
        review = make_review(business, status=ReviewStatus.DRAFTED, ai_reply="AI draft")

        response = client.post(
            f"/api/reviews/{review.id}/auto-approve", json={"userId": OWNER_ID, "mode": "auto_4_plus", "minRating": 9}
        )

        assert response.status_code == 400


class TestBatchAutoApproveEndpoint:
    """POST /api/reviews/auto-approve"""

    def test_approves_all_eligible(self, client, business, make_review, session_factory):
        five = make_review(business, status=ReviewStatus.DRAFTED, ai_reply="Thanks!", rating=5)
        make_review(business, status=ReviewStatus.DRAFTED, ai_reply="Sorry!", rating=2)

        response = client.post(
            "/api/reviews/auto-approve",
            json={"businessId": business.id, "userId": OWNER_ID, "mode": "auto_4_plus"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["approvedCount"] == 1
        assert body["totalReviews"] == 2
        assert fetch_review(session_factory, five.id).status == "approved"

    def test_preview(self, client, business, make_review, session_factory):
        review = make_review(business, status=ReviewStatus.DRAFTED, ai_reply="Thanks!", rating=4)

        response = client.post(
            "/api/reviews/auto-approve",
            json={"businessId": business.id, "userId": OWNER_ID, "mode": "auto_4_plus", "previewOnly": True},
        )

        assert response.status_code == 200
        assert response.json()["preview"] is True
        assert response.json()["wouldApprove"] == 1
        assert fetch_review(session_factory, review.id).status == "drafted"

    def test_other_user_gets_not_found(self, client, business, make_review, session_factory):
        review = make_review(business, status=ReviewStatus.DRAFTED, ai_reply="Thanks!", rating=5)

        response = client.post(
            "/api/reviews/auto-approve",
            json={"businessId": business.id, "userId": OTHER_USER_ID, "mode": "auto_4_plus", "reviewIds": [review.id]},
        )

        assert response.status_code == 404
        assert response.json()["error"] == "not_found_or_forbidden"
        assert fetch_review(session_factory, review.id).status == "drafted"


class TestUpdateReplyEndpoint:
    """PUT /api/reviews/update-reply"""

    def test_updates_posted_reply(self, client, publisher, business, make_review, session_factory):
        review = make_review(
            business, status=ReviewStatus.POSTED, google_review_id="g1", final_reply="Thanks!", posted_at=POSTED_AT
        )

        response = client.put(
            "/api/reviews/update-reply",
            json={"reviewId": review.id, "userId": OWNER_ID, "replyText": "Thank you, Jane!"},
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["updatedAt"]
        publisher.publish.assert_called_once_with(business.id, "g1", "Thank you, Jane!")
        stored = fetch_review(session_factory, review.id)
        assert stored.status == "posted"
        assert stored.final_reply == "Thank you, Jane!"

    def test_identical_text(self, client, publisher, business, make_review):
        review = make_review(business, status=ReviewStatus.POSTED, final_reply="Thanks!", posted_at=POSTED_AT)

        response = client.put(
            "/api/reviews/update-reply",
            json={"reviewId": review.id, "userId": OWNER_ID, "replyText": "Thanks!"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "validation"
        publisher.publish.assert_not_called()

    def test_not_yet_posted(self, client, business, make_review):
        review = make_review(business, final_reply="Thanks!")

        response = client.put(
            "/api/reviews/update-reply",
            json={"reviewId": review.id, "userId": OWNER_ID, "replyText": "New text"},
        )

        assert response.status_code == 409
        assert response.json()["current_status"] == "approved"

    def test_not_owner(self, client, publisher, business, make_review):
        review = make_review(business, status=ReviewStatus.POSTED, final_reply="Thanks!", posted_at=POSTED_AT)

        response = client.put(
            "/api/reviews/update-reply",
            json={"reviewId": review.id, "userId": OTHER_USER_ID, "replyText": "New text"},
        )

        assert response.status_code == 403
        publisher.publish.assert_not_called()


class TestCredentialEndpoints:
    """GET/POST/DELETE /api/google-business/credentials"""

    def test_get_credentials(self, client, business):
        response = client.get(
            "/api/google-business/credentials", params={"businessId": business.id, "userId": OWNER_ID}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["hasCredentials"] is True
        assert body["hasTokens"] is True
        assert body["credentials"]["clientId"] == PLAIN_CREDENTIALS["google_client_id"]
        assert body["unreadableFields"] == []

    def test_one_corrupt_field_does_not_fail_the_read(self, client, business, test_db):
        business.google_client_secret = "enc:v1:test:not-a-fernet-token"
        test_db.commit()

        response = client.get(
            "/api/google-business/credentials", params={"businessId": business.id, "userId": OWNER_ID}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["unreadableFields"] == ["google_client_secret"]
        assert body["credentials"]["clientSecret"] is None
        assert body["credentials"]["clientId"] == PLAIN_CREDENTIALS["google_client_id"]

    def test_other_user_gets_not_found(self, client, business):
        response = client.get(
            "/api/google-business/credentials", params={"businessId": business.id, "userId": OTHER_USER_ID}
        )
        missing = client.get(
            "/api/google-business/credentials", params={"businessId": "unknown", "userId": OTHER_USER_ID}
        )

        assert response.status_code == missing.status_code == 404
        assert response.json() == missing.json()

    def test_save_and_disconnect(self, client, make_business):
        business = make_business(connected=False)
        credentials = {"clientId": "id", "clientSecret": "secret", "accountId": "acc", "locationId": "loc"}

        response = client.post(
            "/api/google-business/credentials",
            json={"businessId": business.id, "userId": OWNER_ID, "credentials": credentials},
        )
        assert response.status_code == 200

        params = {"businessId": business.id, "userId": OWNER_ID}
        assert client.get("/api/google-business/credentials", params=params).json()["credentials"]["clientSecret"] == "secret"

        assert client.delete("/api/google-business/credentials", params=params).status_code == 200
        assert client.get("/api/google-business/credentials", params=params).json()["hasCredentials"] is False

    def test_partial_credentials_rejected(self, client, make_business):
        business = make_business(connected=False)

        response = client.post(
            "/api/google-business/credentials",
            json={"businessId": business.id, "userId": OWNER_ID, "credentials": {"clientId": "id"}},
        )

        assert response.status_code == 400
        assert set(response.json()["missing_fields"]) == {"client_secret", "account_id", "location_id"}


class TestPlanEndpoints:

    def test_list_plans(self, client):
        response = client.get("/api/plans")

        assert response.status_code == 200
        assert set(response.json()) == {"basic", "starter", "pro", "pro-plus"}

    def test_unknown_plan_falls_back(self, client):
        response = client.get("/api/plans/enterprise")

        assert response.status_code == 200
        assert response.json()["plan"] == "basic"
        assert response.json()["fallback"] is True


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"
