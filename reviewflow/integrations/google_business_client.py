"""
Google Business Profile API Client

Posts review replies and refreshes OAuth access tokens. Credentials are never
held by the client; every call receives the decrypted values it needs.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests
from oauthlib.oauth2.rfc6749.errors import OAuth2Error
from requests_oauthlib import OAuth2Session

from reviewflow.core.config import get_settings
from reviewflow.integrations.constants import USER_AGENT
from reviewflow.integrations.google_errors import (
    GoogleErrorType,
    classify_exception,
    classify_status,
    get_error_info,
    is_outcome_unknown,
)

logger = logging.getLogger(__name__)


class GoogleBusinessAPIError(Exception):
    """Google Business Profile API specific exceptions"""
    def __init__(
        self,
        message: str,
        error_type: GoogleErrorType = GoogleErrorType.UNKNOWN_ERROR,
        status_code: Optional[int] = None,
        response_data: Optional[Dict] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.response_data = response_data

    @property
    def auth_expired(self) -> bool:
        return self.error_type == GoogleErrorType.CONNECTION_EXPIRED

    @property
    def outcome_unknown(self) -> bool:
        return is_outcome_unknown(self.error_type)

    @property
    def retryable(self) -> bool:
        return get_error_info(self.error_type).retryable


@dataclass
class GoogleBusinessConfig:
    """Google Business Profile API configuration"""
    base_url: str
    token_url: str
    timeout: float = 30.0

    @classmethod
    def from_settings(cls) -> "GoogleBusinessConfig":
        settings = get_settings()
        return cls(
            base_url=settings.google_business_api_url.rstrip("/"),
            token_url=settings.google_token_url,
            timeout=settings.google_http_timeout,
        )


class GoogleBusinessClient:
    """Thin wrapper over the v4 reviews endpoint"""

    def __init__(self, config: Optional[GoogleBusinessConfig] = None, session: Optional[requests.Session] = None):
        self.config = config or GoogleBusinessConfig.from_settings()
        self.session = session or requests.Session()
        self.session.headers.update({
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
        })

    def reply_url(self, account_id: str, location_id: str, review_id: str) -> str:
        return (
            f"{self.config.base_url}/accounts/{quote(account_id, safe='')}"
            f"/locations/{quote(location_id, safe='')}"
            f"/reviews/{quote(review_id, safe='')}/reply"
        )

    def post_reply(
        self,
        account_id: str,
        location_id: str,
        review_id: str,
        text: str,
        access_token: str,
    ) -> Dict[str, Any]:
        """
        Create or replace the owner reply on a review

        Returns:
            The reply resource returned by Google

        Raises:
            GoogleBusinessAPIError: classified failure; check outcome_unknown
            before assuming nothing was written
        """
        url = self.reply_url(account_id, location_id, review_id)

        try:
            response = self.session.put(
                url,
                json={"comment": text},
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.config.timeout,
            )
        except requests.exceptions.RequestException as e:
            error_type = classify_exception(e)
            logger.warning(f"Google reply request for review {review_id} failed: {error_type.value}: {e}")
            raise GoogleBusinessAPIError(get_error_info(error_type).message, error_type=error_type) from e

        if response.status_code >= 400:
            error_type = classify_status(response.status_code)
            response_data = self._json_or_none(response)
            logger.warning(
                f"Google rejected reply for review {review_id}: "
                f"{response.status_code} {error_type.value}"
            )
            raise GoogleBusinessAPIError(
                self._error_message(response_data) or get_error_info(error_type).message,
                error_type=error_type,
                status_code=response.status_code,
                response_data=response_data,
            )

        return self._json_or_none(response) or {"comment": text}

    def refresh_access_token(self, refresh_token: str, client_id: str, client_secret: str) -> Dict[str, Any]:
        """
        Exchange a refresh token for a new access token

        Returns:
            Token response with access_token and, when Google rotates it,
            a new refresh_token
        """
        if not refresh_token:
            raise GoogleBusinessAPIError(
                "No refresh token stored", error_type=GoogleErrorType.TOKEN_REFRESH_FAILED
            )

        oauth = OAuth2Session(client_id=client_id)
        try:
            token = oauth.refresh_token(
                self.config.token_url,
                refresh_token=refresh_token,
                client_id=client_id,
                client_secret=client_secret,
                timeout=self.config.timeout,
            )
        except (OAuth2Error, requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"Google token refresh failed: {e}")
            raise GoogleBusinessAPIError(
                f"Failed to refresh token: {e}", error_type=GoogleErrorType.TOKEN_REFRESH_FAILED
            ) from e

        if not token.get("access_token"):
            raise GoogleBusinessAPIError(
                "Token response did not include an access token",
                error_type=GoogleErrorType.TOKEN_REFRESH_FAILED,
            )

        logger.info("Refreshed Google access token")
        return dict(token)

    @staticmethod
    def _json_or_none(response: requests.Response) -> Optional[Dict[str, Any]]:
        if not response.content:
            return None
        try:
            data = response.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    @staticmethod
    def _error_message(response_data: Optional[Dict[str, Any]]) -> Optional[str]:
        if not response_data:
            return None
        error = response_data.get("error")
        if isinstance(error, dict):
            return error.get("message")
        return None
