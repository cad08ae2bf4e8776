"""
Reply Publisher - Sends an approved reply to Google Business Profile

Loads the business's decrypted credentials, calls the reply endpoint and, when
Google reports the access token as expired, refreshes it once, stores the new
token encrypted and retries once. All provider failures come back as a
classified PublishResult; nothing raw escapes.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from prometheus_client import Counter
from sqlalchemy.exc import SQLAlchemyError

from reviewflow.core.encryption import EncryptionError
from reviewflow.core.errors import CredentialsMissingError, ReviewFlowError
from reviewflow.integrations.google_business_client import GoogleBusinessAPIError, GoogleBusinessClient
from reviewflow.integrations.google_errors import GoogleErrorType, get_error_info
from reviewflow.services.credential_service import CredentialService, PublishingCredentials

logger = logging.getLogger(__name__)

PUBLISH_ATTEMPTS = Counter(
    'review_reply_publish_total',
    'Review reply publish attempts by outcome',
    ['outcome']
)

TOKEN_REFRESHES = Counter(
    'google_token_refresh_total',
    'Google access token refreshes triggered by expired tokens',
    ['result']
)


@dataclass
class PublishResult:
    success: bool
    message: Optional[str] = None
    error_code: Optional[str] = None
    # Set when Google may have stored the reply even though the call failed
    outcome_unknown: bool = False
    token_refreshed: bool = False

    @classmethod
    def failure(cls, error_type: GoogleErrorType, message: Optional[str] = None, **kwargs) -> "PublishResult":
        return cls(
            success=False,
            message=message or get_error_info(error_type).message,
            error_code=error_type.value,
            **kwargs,
        )


class ReplyPublisher:
    """Publishes replies using a business's stored Google credentials"""

    def __init__(self, credential_service: CredentialService, client: Optional[GoogleBusinessClient] = None):
        self.credential_service = credential_service
        self.client = client or GoogleBusinessClient()

    def publish(self, business_id: str, external_review_id: str, text: str) -> PublishResult:
        try:
            credentials = self.credential_service.load_for_publishing(business_id)
        except CredentialsMissingError as e:
            return self._finish(PublishResult.failure(GoogleErrorType.CREDENTIALS_MISSING, e.message))
        except EncryptionError as e:
            logger.error(f"Stored credentials for business {business_id} could not be decrypted: {e}")
            return self._finish(PublishResult.failure(GoogleErrorType.CREDENTIALS_UNREADABLE))
        except (ReviewFlowError, SQLAlchemyError) as e:
            # Nothing was sent, so this is a definite failure
            logger.error(f"Could not load credentials for business {business_id}: {e}", exc_info=True)
            return self._finish(PublishResult.failure(GoogleErrorType.CREDENTIALS_LOAD_FAILED))

        try:
            self._send(credentials, external_review_id, text, credentials.access_token)
            return self._finish(PublishResult(success=True))
        except GoogleBusinessAPIError as e:
            if not e.auth_expired:
                return self._finish(self._from_error(e))

        logger.info(f"Access token expired for business {business_id}, refreshing once")
        access_token = self._refresh(credentials)
        if access_token is None:
            return self._finish(PublishResult.failure(GoogleErrorType.TOKEN_REFRESH_FAILED))

        try:
            self._send(credentials, external_review_id, text, access_token)
        except GoogleBusinessAPIError as e:
            # No second refresh; a 401 here means the connection must be renewed
            return self._finish(self._from_error(e, token_refreshed=True))

        return self._finish(PublishResult(success=True, token_refreshed=True))

    def _send(self, credentials: PublishingCredentials, external_review_id: str, text: str, access_token: str):
        return self.client.post_reply(
            account_id=credentials.account_id,
            location_id=credentials.location_id,
            review_id=external_review_id,
            text=text,
            access_token=access_token,
        )

    def _refresh(self, credentials: PublishingCredentials) -> Optional[str]:
        """Refresh and persist the access token; returns None when refresh fails"""
        try:
            token = self.client.refresh_access_token(
                refresh_token=credentials.refresh_token,
                client_id=credentials.client_id,
                client_secret=credentials.client_secret,
            )
        except GoogleBusinessAPIError as e:
            TOKEN_REFRESHES.labels(result="failed").inc()
            logger.warning(f"Token refresh failed for business {credentials.business_id}: {e}")
            return None

        TOKEN_REFRESHES.labels(result="success").inc()
        access_token = token["access_token"]
        try:
            self.credential_service.store_tokens(
                credentials.business_id,
                access_token,
                token.get("refresh_token"),
            )
        except ReviewFlowError as e:
            # The retry can still use the new token; the next publish refreshes again
            logger.error(f"Could not persist refreshed token for business {credentials.business_id}: {e}")
        return access_token

    @staticmethod
    def _from_error(error: GoogleBusinessAPIError, token_refreshed: bool = False) -> PublishResult:
        return PublishResult.failure(
            error.error_type,
            str(error),
            outcome_unknown=error.outcome_unknown,
            token_refreshed=token_refreshed,
        )

    @staticmethod
    def _finish(result: PublishResult) -> PublishResult:
        if result.success:
            outcome = "success"
        elif result.outcome_unknown:
            outcome = "unknown"
        else:
            outcome = "failed"
        PUBLISH_ATTEMPTS.labels(outcome=outcome).inc()
        return result
