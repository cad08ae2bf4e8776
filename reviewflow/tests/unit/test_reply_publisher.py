"""
Tests for the reply publisher: credential loading, single refresh and retry
"""

from unittest.mock import Mock

from sqlalchemy.exc import OperationalError

from reviewflow.core.encryption import EncryptionError
from reviewflow.core.errors import CredentialsMissingError, InternalError, NotFoundOrForbiddenError
from reviewflow.integrations.google_business_client import GoogleBusinessAPIError
from reviewflow.integrations.google_errors import GoogleErrorType
from reviewflow.services.credential_service import PublishingCredentials
from reviewflow.services.reply_publisher import ReplyPublisher


def expired():
    return GoogleBusinessAPIError("expired", error_type=GoogleErrorType.CONNECTION_EXPIRED, status_code=401)


class TestReplyPublisher:
    """Test ReplyPublisher.publish"""

    def setup_method(self):
        self.credentials = PublishingCredentials(
            business_id="biz-1",
            client_id="client-id",
            client_secret="client-secret",
            account_id="acc-1",
            location_id="loc-1",
            access_token="stale-token",
            refresh_token="refresh-token",
        )
        self.credential_service = Mock()
        self.credential_service.load_for_publishing.return_value = self.credentials
        self.client = Mock()
        self.publisher = ReplyPublisher(self.credential_service, client=self.client)

    def test_success_first_try(self):
        """Test that a valid token posts once without refreshing"""
        result = self.publisher.publish("biz-1", "g1", "Thank you!")

        assert result.success is True
        assert result.token_refreshed is False
        self.client.post_reply.assert_called_once_with(
            account_id="acc-1",
            location_id="loc-1",
            review_id="g1",
            text="Thank you!",
            access_token="stale-token",
        )
        self.client.refresh_access_token.assert_not_called()

    def test_expired_token_refreshes_once_and_retries(self):
        """Test that a 401 triggers one refresh, stores the new token, and retries once"""
        self.client.post_reply.side_effect = [expired(), {"comment": "Thank you!"}]
        self.client.refresh_access_token.return_value = {"access_token": "fresh-token"}

        result = self.publisher.publish("biz-1", "g1", "Thank you!")

        assert result.success is True
        assert result.token_refreshed is True
        assert self.client.post_reply.call_count == 2
        assert self.client.post_reply.call_args.kwargs["access_token"] == "fresh-token"
        self.client.refresh_access_token.assert_called_once_with(
            refresh_token="refresh-token",
            client_id="client-id",
            client_secret="client-secret",
        )
        self.credential_service.store_tokens.assert_called_once_with("biz-1", "fresh-token", None)

    def test_second_401_is_not_refreshed_again(self):
        """Test that the retry is bounded to one attempt"""
        self.client.post_reply.side_effect = [expired(), expired()]
        self.client.refresh_access_token.return_value = {"access_token": "fresh-token", "refresh_token": "rotated"}

        result = self.publisher.publish("biz-1", "g1", "Thank you!")

        assert result.success is False
        assert result.error_code == GoogleErrorType.CONNECTION_EXPIRED.value
        assert self.client.post_reply.call_count == 2
        self.client.refresh_access_token.assert_called_once()
        self.credential_service.store_tokens.assert_called_once_with("biz-1", "fresh-token", "rotated")

    def test_refresh_failure(self):
        self.client.post_reply.side_effect = expired()
        self.client.refresh_access_token.side_effect = GoogleBusinessAPIError(
            "revoked", error_type=GoogleErrorType.TOKEN_REFRESH_FAILED
        )

        result = self.publisher.publish("biz-1", "g1", "Thank you!")

        assert result.success is False
        assert result.error_code == GoogleErrorType.TOKEN_REFRESH_FAILED.value
        self.client.post_reply.assert_called_once()
        self.credential_service.store_tokens.assert_not_called()

    def test_token_store_failure_does_not_block_retry(self):
        self.client.post_reply.side_effect = [expired(), {"comment": "ok"}]
        self.client.refresh_access_token.return_value = {"access_token": "fresh-token"}
        self.credential_service.store_tokens.side_effect = InternalError("db down")

        result = self.publisher.publish("biz-1", "g1", "Thank you!")

        assert result.success is True

    def test_non_auth_failure_is_not_retried(self):
        self.client.post_reply.side_effect = GoogleBusinessAPIError(
            "gone", error_type=GoogleErrorType.REVIEW_NOT_FOUND, status_code=404
        )

        result = self.publisher.publish("biz-1", "g1", "Thank you!")

        assert result.success is False
        assert result.error_code == "REVIEW_NOT_FOUND"
        assert result.outcome_unknown is False
        self.client.post_reply.assert_called_once()
        self.client.refresh_access_token.assert_not_called()

    def test_timeout_reports_unknown_outcome(self):
        self.client.post_reply.side_effect = GoogleBusinessAPIError("timeout", error_type=GoogleErrorType.TIMEOUT)

        result = self.publisher.publish("biz-1", "g1", "Thank you!")

        assert result.success is False
        assert result.outcome_unknown is True

    def test_missing_credentials(self):
        self.credential_service.load_for_publishing.side_effect = CredentialsMissingError("not connected")

        result = self.publisher.publish("biz-1", "g1", "Thank you!")

        assert result.success is False
        assert result.error_code == "CREDENTIALS_MISSING"
        self.client.post_reply.assert_not_called()

    def test_undecryptable_credentials(self):
        self.credential_service.load_for_publishing.side_effect = EncryptionError("bad key")

        result = self.publisher.publish("biz-1", "g1", "Thank you!")

        assert result.error_code == "CREDENTIALS_UNREADABLE"
        self.client.post_reply.assert_not_called()

    def test_database_error_while_loading_is_a_definite_failure(self):
        self.credential_service.load_for_publishing.side_effect = OperationalError(
            "SELECT", {}, Exception("connection reset")
        )

        result = self.publisher.publish("biz-1", "g1", "Thank you!")

        assert result.success is False
        assert result.outcome_unknown is False
        assert result.error_code == "CREDENTIALS_LOAD_FAILED"
        self.client.post_reply.assert_not_called()

    def test_business_gone_while_loading_is_a_definite_failure(self):
        self.credential_service.load_for_publishing.side_effect = NotFoundOrForbiddenError()

        result = self.publisher.publish("biz-1", "g1", "Thank you!")

        assert result.error_code == "CREDENTIALS_LOAD_FAILED"
        assert result.outcome_unknown is False
