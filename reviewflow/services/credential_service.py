"""
Credential Service - Encrypted storage of Google Business Profile credentials

Client id/secret, account/location ids and OAuth tokens are stored encrypted
on the business row and decrypted on demand. Values saved before encryption
was introduced are still readable through the plaintext fallback path.
"""
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from reviewflow.core.authorization import require_owner
from reviewflow.core.encryption import (
    EncryptionError,
    VersionedEncryption,
    encrypt_fields,
    get_encryption,
    reencrypt_fields,
    reveal_fields,
)
from reviewflow.core.errors import (
    CredentialsMissingError,
    InternalError,
    NotFoundOrForbiddenError,
    ValidationError,
)
from reviewflow.db.models import Business, GOOGLE_CREDENTIAL_FIELDS, GOOGLE_TOKEN_FIELDS

logger = logging.getLogger(__name__)


@dataclass
class GoogleCredentials:
    """The four-part credential bundle for one business"""
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    account_id: Optional[str] = None
    location_id: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GoogleCredentials":
        """Accept either snake_case or the camelCase keys the web client sends"""
        def pick(snake: str, camel: str) -> Optional[str]:
            value = data.get(snake, data.get(camel))
            return value.strip() if isinstance(value, str) else value

        return cls(
            client_id=pick("client_id", "clientId"),
            client_secret=pick("client_secret", "clientSecret"),
            account_id=pick("account_id", "accountId"),
            location_id=pick("location_id", "locationId"),
        )

    def missing_fields(self) -> List[str]:
        return [name for name, value in asdict(self).items() if not value]

    def to_columns(self) -> Dict[str, Optional[str]]:
        return {
            "google_client_id": self.client_id,
            "google_client_secret": self.client_secret,
            "google_account_id": self.account_id,
            "google_location_id": self.location_id,
        }

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "clientId": self.client_id,
            "clientSecret": self.client_secret,
            "accountId": self.account_id,
            "locationId": self.location_id,
        }


@dataclass
class CredentialStatus:
    has_credentials: bool
    has_tokens: bool
    credentials: Optional[GoogleCredentials] = None
    # Fields read as legacy plaintext
    plaintext_fields: List[str] = field(default_factory=list)
    # Fields whose ciphertext could not be decrypted; returned as None
    unreadable_fields: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasCredentials": self.has_credentials,
            "hasTokens": self.has_tokens,
            "credentials": self.credentials.to_dict() if self.credentials else None,
            "unreadableFields": list(self.unreadable_fields),
        }


@dataclass
class PublishingCredentials:
    """Decrypted material needed to call the Google reply API"""
    business_id: str
    client_id: str
    client_secret: str
    account_id: str
    location_id: str
    access_token: str
    refresh_token: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"PublishingCredentials(business_id={self.business_id!r}, "
            f"account_id={self.account_id!r}, location_id={self.location_id!r})"
        )


def _columns(business: Business, names) -> Dict[str, Optional[str]]:
    return {name: getattr(business, name) for name in names}


class CredentialService:
    """Reads and writes encrypted Google credentials with ownership checks"""

    def __init__(self, db: Session, encryption: Optional[VersionedEncryption] = None):
        self.db = db
        self.encryption = encryption or get_encryption()

    def _get_owned_business(self, business_id: str, requester_user_id: str) -> Business:
        if not business_id or not requester_user_id:
            raise ValidationError("Business ID and User ID are required")

        business = self.db.query(Business).filter(Business.id == business_id).first()
        require_owner(
            business.user_id if business else None,
            requester_user_id,
            error=NotFoundOrForbiddenError(),
        )
        return business

    def get_credentials(self, business_id: str, requester_user_id: str) -> CredentialStatus:
        """
        Get the decrypted credential bundle for a business the requester owns

        A field that cannot be decrypted (corrupt, or written under a key no
        longer configured) is returned as None and listed in unreadable_fields;
        the rest of the bundle is still returned.

        Raises:
            NotFoundOrForbiddenError: business missing or owned by someone else
        """
        business = self._get_owned_business(business_id, requester_user_id)

        if not business.has_credentials:
            return CredentialStatus(has_credentials=False, has_tokens=business.has_tokens)

        decrypted = {}
        fallbacks = []
        unreadable = []
        for column in GOOGLE_CREDENTIAL_FIELDS:
            try:
                outcome = self.encryption.reveal(getattr(business, column), field=column)
            except EncryptionError as e:
                logger.error(
                    f"Credential field {column} for business {business_id} could not be decrypted: {e}",
                    extra={"business_id": business_id},
                )
                decrypted[column] = None
                unreadable.append(column)
                continue
            decrypted[column] = outcome.value
            if outcome.fell_back:
                fallbacks.append(column)

        if fallbacks:
            logger.warning(
                f"Business {business_id} has unencrypted credential fields: {', '.join(fallbacks)}",
                extra={"business_id": business_id},
            )

        return CredentialStatus(
            has_credentials=True,
            has_tokens=business.has_tokens,
            credentials=GoogleCredentials(
                client_id=decrypted["google_client_id"],
                client_secret=decrypted["google_client_secret"],
                account_id=decrypted["google_account_id"],
                location_id=decrypted["google_location_id"],
            ),
            plaintext_fields=fallbacks,
            unreadable_fields=unreadable,
        )

    def save_credentials(
        self,
        business_id: str,
        requester_user_id: str,
        credentials: Union[GoogleCredentials, Mapping[str, Any]],
    ) -> None:
        """
        Encrypt and store a complete credential bundle

        Raises:
            ValidationError: any of the four fields is missing
            NotFoundOrForbiddenError: business missing or owned by someone else
            InternalError: the write failed (nothing is persisted)
        """
        if credentials is None:
            raise ValidationError("Credentials are required")
        if not isinstance(credentials, GoogleCredentials):
            credentials = GoogleCredentials.from_mapping(credentials)

        missing = credentials.missing_fields()
        if missing:
            raise ValidationError("All credential fields are required", {"missing_fields": missing})

        business = self._get_owned_business(business_id, requester_user_id)
        encrypted = encrypt_fields(credentials.to_columns(), GOOGLE_CREDENTIAL_FIELDS, encryption=self.encryption)

        try:
            for column, value in encrypted.items():
                setattr(business, column, value)
            business.updated_at = datetime.now(timezone.utc)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to save credentials for business {business_id}: {e}")
            raise InternalError("Failed to save credentials") from e

        logger.info(f"Saved encrypted Google credentials for business {business_id}")

    def clear_credentials(self, business_id: str, requester_user_id: str) -> None:
        """Disconnect: remove the credential bundle and tokens together"""
        business = self._get_owned_business(business_id, requester_user_id)
        try:
            for column in GOOGLE_CREDENTIAL_FIELDS + GOOGLE_TOKEN_FIELDS:
                setattr(business, column, None)
            business.tokens_updated_at = None
            business.updated_at = datetime.now(timezone.utc)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to clear credentials for business {business_id}: {e}")
            raise InternalError("Failed to disconnect Google Business Profile") from e

        logger.info(f"Cleared Google credentials for business {business_id}")

    def store_tokens(self, business_id: str, access_token: str, refresh_token: Optional[str] = None) -> None:
        """
        Store OAuth tokens encrypted. A missing refresh token keeps the stored one,
        since Google only returns a new one when it rotates it.
        """
        if not access_token:
            raise ValidationError("Access token is required")

        business = self.db.query(Business).filter(Business.id == business_id).first()
        if business is None:
            raise NotFoundOrForbiddenError()

        tokens = {"google_access_token": access_token}
        if refresh_token:
            tokens["google_refresh_token"] = refresh_token
        encrypted = encrypt_fields(tokens, tokens.keys(), encryption=self.encryption)

        try:
            for column, value in encrypted.items():
                setattr(business, column, value)
            business.tokens_updated_at = datetime.now(timezone.utc)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to store OAuth tokens for business {business_id}: {e}")
            raise InternalError("Failed to store OAuth tokens") from e

        logger.info(f"Stored refreshed OAuth tokens for business {business_id}")

    def load_for_publishing(self, business_id: str) -> PublishingCredentials:
        """
        System-level read of everything the publisher needs. Callers must have
        authorized the request already.

        Raises:
            CredentialsMissingError: credential bundle or access token absent
        """
        business = self.db.query(Business).filter(Business.id == business_id).first()
        if business is None:
            raise NotFoundOrForbiddenError()

        if not business.has_credentials or not business.google_access_token:
            raise CredentialsMissingError(
                "Google Business Profile not connected. Please connect in Settings."
            )

        names = GOOGLE_CREDENTIAL_FIELDS + GOOGLE_TOKEN_FIELDS
        decrypted, fallbacks = reveal_fields(_columns(business, names), names, encryption=self.encryption)
        if fallbacks:
            logger.warning(
                f"Publishing with unencrypted fields for business {business_id}: {', '.join(fallbacks)}",
                extra={"business_id": business_id},
            )

        return PublishingCredentials(
            business_id=business_id,
            client_id=decrypted["google_client_id"],
            client_secret=decrypted["google_client_secret"],
            account_id=decrypted["google_account_id"],
            location_id=decrypted["google_location_id"],
            access_token=decrypted["google_access_token"],
            refresh_token=decrypted["google_refresh_token"],
        )

    def reencrypt_business(self, business_id: str) -> List[str]:
        """Rewrite plaintext, legacy and retired-key values under the current key"""
        business = self.db.query(Business).filter(Business.id == business_id).first()
        if business is None:
            raise NotFoundOrForbiddenError()

        names = GOOGLE_CREDENTIAL_FIELDS + GOOGLE_TOKEN_FIELDS
        updated, changed = reencrypt_fields(_columns(business, names), names, encryption=self.encryption)
        if not changed:
            return []

        try:
            for column in changed:
                setattr(business, column, updated[column])
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Re-encryption failed for business {business_id}: {e}")
            raise InternalError("Failed to re-encrypt credentials") from e

        logger.info(f"Re-encrypted {len(changed)} fields for business {business_id}")
        return changed
