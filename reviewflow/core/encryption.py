"""
Versioned field encryption for stored Google credentials and OAuth tokens

Envelope formats:
    enc:v1:<kid>:<fernet token>     current format (Fernet, random IV per call)
    <iv>:<tag>:<data> (hex)         v0, AES-256-GCM written by earlier deployments

Any other non-empty string, including one that merely starts with "enc:", is
treated as legacy plaintext. Strict decryption
raises NotEncryptedError for it; reveal() returns a tagged plaintext fallback
and logs, so callers decide explicitly whether to accept unencrypted data.
"""
import base64
import binascii
import hashlib
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from prometheus_client import Counter

from reviewflow.core.config import get_settings

logger = logging.getLogger(__name__)

ENVELOPE_PREFIX = "enc"
CURRENT_VERSION = "v1"
LEGACY_VERSION = "v0"

_ENVELOPE_PATTERN = re.compile(r"^enc:(v\d+):([^:\s]+):([A-Za-z0-9_=-]+)$")
_LEGACY_PATTERN = re.compile(r"^[0-9a-f]{24}:[0-9a-f]{32}:[0-9a-f]*$")

PLAINTEXT_FALLBACKS = Counter(
    'credential_plaintext_fallbacks_total',
    'Stored credential values read as legacy plaintext',
    ['field']
)


class EncryptionError(Exception):
    """Encryption or decryption failed"""
    pass


class NotEncryptedError(EncryptionError):
    """Value is not in any known ciphertext format"""
    pass


class DecryptKind(Enum):
    DECRYPTED = "decrypted"
    PLAINTEXT_FALLBACK = "plaintext_fallback"


@dataclass(frozen=True)
class DecryptResult:
    """Outcome of a lenient decryption"""
    kind: DecryptKind
    value: Optional[str]
    version: Optional[str] = None

    @property
    def fell_back(self) -> bool:
        return self.kind is DecryptKind.PLAINTEXT_FALLBACK


def _fernet_key(secret: str) -> bytes:
    """Turn configured key material into a Fernet key"""
    if len(secret) == 64:
        try:
            return base64.urlsafe_b64encode(bytes.fromhex(secret))
        except ValueError:
            pass
    try:
        if len(base64.urlsafe_b64decode(secret.encode("utf-8"))) == 32:
            return secret.encode("utf-8")
    except (binascii.Error, ValueError):
        pass
    return base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())


def _legacy_gcm_key(secret: str) -> bytes:
    """Key derivation used by the v0 AES-256-GCM format"""
    if len(secret) == 64:
        try:
            return bytes.fromhex(secret)
        except ValueError:
            pass
    return hashlib.sha256(secret.encode("utf-8")).digest()


class VersionedEncryption:
    """
    Key ring aware encryption service

    The current key encrypts; the current key and every retired key listed in
    configuration decrypt, selected by the key id embedded in the envelope.
    """

    def __init__(
        self,
        key: Optional[str] = None,
        kid: Optional[str] = None,
        previous_keys: Optional[Dict[str, str]] = None
    ):
        settings = get_settings()
        key = key or settings.credentials_encryption_key
        if not key:
            raise EncryptionError("CREDENTIALS_ENCRYPTION_KEY is not configured")

        self.default_kid = kid or settings.credentials_encryption_kid
        if ":" in self.default_kid:
            raise EncryptionError("Encryption key id must not contain ':'")
        self.current_version = CURRENT_VERSION

        if previous_keys is None:
            previous_keys = settings.previous_keys

        self._secrets: Dict[str, str] = {self.default_kid: key}
        for old_kid, old_key in previous_keys.items():
            self._secrets.setdefault(old_kid, old_key)

        self._fernets = {
            key_id: Fernet(_fernet_key(secret)) for key_id, secret in self._secrets.items()
        }

    @property
    def key_ids(self) -> List[str]:
        return list(self._secrets.keys())

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """Encrypt a value with the current key; empty values pass through"""
        if not plaintext:
            return plaintext
        try:
            token = self._fernets[self.default_kid].encrypt(plaintext.encode("utf-8"))
        except Exception as e:
            raise EncryptionError(f"Failed to encrypt data: {e}") from e
        return f"{ENVELOPE_PREFIX}:{self.current_version}:{self.default_kid}:{token.decode('utf-8')}"

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        """
        Strictly decrypt a stored value

        Raises:
            NotEncryptedError: value is not ciphertext (legacy plaintext)
            EncryptionError: ciphertext is corrupt, unsupported, or uses an unknown key
        """
        if not value:
            return value

        match = _ENVELOPE_PATTERN.match(value)
        if match:
            return self._decrypt_envelope(*match.groups())
        if _LEGACY_PATTERN.match(value):
            return self._decrypt_legacy(value)
        raise NotEncryptedError("Value is not in a recognised ciphertext format")

    def reveal(self, value: Optional[str], field: str = "value") -> DecryptResult:
        """Decrypt a value, falling back to plaintext for unencrypted legacy data"""
        if not value:
            return DecryptResult(DecryptKind.DECRYPTED, value)
        try:
            plaintext = self.decrypt(value)
        except NotEncryptedError:
            logger.warning(f"Field '{field}' is stored unencrypted; using plaintext fallback")
            PLAINTEXT_FALLBACKS.labels(field=field).inc()
            return DecryptResult(DecryptKind.PLAINTEXT_FALLBACK, value)
        return DecryptResult(DecryptKind.DECRYPTED, plaintext, self.get_envelope_info(value)["version"])

    def is_encrypted(self, value: Optional[str]) -> bool:
        if not value:
            return False
        return bool(_ENVELOPE_PATTERN.match(value) or _LEGACY_PATTERN.match(value))

    def needs_reencryption(self, value: Optional[str]) -> bool:
        """True when a non-empty value is not current-format ciphertext under the current key"""
        if not value:
            return False
        info = self.get_envelope_info(value)
        return info["version"] != self.current_version or info["kid"] != self.default_kid

    def get_envelope_info(self, value: Optional[str]) -> Dict[str, Any]:
        """Describe a stored value without decrypting it"""
        match = _ENVELOPE_PATTERN.match(value) if value else None
        if match:
            return {"format": "fernet", "version": match.group(1), "kid": match.group(2)}
        if value and _LEGACY_PATTERN.match(value):
            return {"format": "aes-256-gcm", "version": LEGACY_VERSION, "kid": None}
        return {"format": "plaintext", "version": None, "kid": None}

    def _decrypt_envelope(self, version: str, kid: str, token: str) -> str:
        if version != CURRENT_VERSION:
            raise EncryptionError(f"Unsupported ciphertext version '{version}'")

        fernet = self._fernets.get(kid)
        if fernet is None:
            raise EncryptionError(f"Unknown encryption key id '{kid}'")

        try:
            return fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise EncryptionError("Failed to decrypt data - invalid key or corrupted data") from e

    def _decrypt_legacy(self, value: str) -> str:
        iv_hex, tag_hex, data_hex = value.split(":")
        iv = bytes.fromhex(iv_hex)
        payload = bytes.fromhex(data_hex) + bytes.fromhex(tag_hex)

        # v0 envelopes carry no key id; try every key in the ring
        for secret in self._secrets.values():
            try:
                return AESGCM(_legacy_gcm_key(secret)).decrypt(iv, payload, None).decode("utf-8")
            except InvalidTag:
                continue
        raise EncryptionError("Failed to decrypt legacy ciphertext with any configured key")


# Process-wide instance, initialised once at startup
_encryption: Optional[VersionedEncryption] = None


def init_encryption(
    key: Optional[str] = None,
    kid: Optional[str] = None,
    previous_keys: Optional[Dict[str, str]] = None
) -> VersionedEncryption:
    """Load key material and install the process-wide encryption service"""
    global _encryption
    _encryption = VersionedEncryption(key=key, kid=kid, previous_keys=previous_keys)
    logger.info(f"Credential encryption initialised (kid={_encryption.default_kid}, keys={len(_encryption.key_ids)})")
    return _encryption


def get_encryption() -> VersionedEncryption:
    """Get the process-wide encryption service, initialising it from settings on first use"""
    if _encryption is None:
        return init_encryption()
    return _encryption


def reset_encryption() -> None:
    global _encryption
    _encryption = None


def encrypt_fields(
    record: Mapping[str, Any],
    field_names: Iterable[str],
    encryption: Optional[VersionedEncryption] = None
) -> Dict[str, Any]:
    """Return a copy of record with the named string fields encrypted"""
    encryption = encryption or get_encryption()
    result = dict(record)
    for field in field_names:
        value = result.get(field)
        if isinstance(value, str) and value:
            result[field] = encryption.encrypt(value)
    return result


def decrypt_fields(
    record: Mapping[str, Any],
    field_names: Iterable[str],
    encryption: Optional[VersionedEncryption] = None
) -> Dict[str, Any]:
    """
    Return a copy of record with the named fields decrypted

    Raises:
        NotEncryptedError: a named field holds plaintext
        EncryptionError: a named field holds unreadable ciphertext
    """
    encryption = encryption or get_encryption()
    result = dict(record)
    for field in field_names:
        value = result.get(field)
        if isinstance(value, str) and value:
            try:
                result[field] = encryption.decrypt(value)
            except NotEncryptedError as e:
                raise NotEncryptedError(f"Field '{field}' is not encrypted") from e
    return result


def reveal_fields(
    record: Mapping[str, Any],
    field_names: Iterable[str],
    encryption: Optional[VersionedEncryption] = None
) -> Tuple[Dict[str, Any], List[str]]:
    """
    Decrypt the named fields, accepting legacy plaintext per field

    Returns:
        (decrypted copy of record, names of fields that fell back to plaintext)
    """
    encryption = encryption or get_encryption()
    result = dict(record)
    fallbacks = []
    for field in field_names:
        value = result.get(field)
        if isinstance(value, str) and value:
            outcome = encryption.reveal(value, field=field)
            result[field] = outcome.value
            if outcome.fell_back:
                fallbacks.append(field)
    return result, fallbacks


def reencrypt_fields(
    record: Mapping[str, Any],
    field_names: Iterable[str],
    encryption: Optional[VersionedEncryption] = None
) -> Tuple[Dict[str, Any], List[str]]:
    """Rewrite stale ciphertext and plaintext in the current format; returns (record, changed fields)"""
    encryption = encryption or get_encryption()
    result = dict(record)
    changed = []
    for field in field_names:
        value = result.get(field)
        if isinstance(value, str) and value and encryption.needs_reencryption(value):
            plaintext = encryption.reveal(value, field=field).value
            result[field] = encryption.encrypt(plaintext)
            changed.append(field)
    return result, changed


def generate_key() -> str:
    """Generate key material suitable for CREDENTIALS_ENCRYPTION_KEY"""
    return Fernet.generate_key().decode("utf-8")


def validate_encryption(encryption: Optional[VersionedEncryption] = None) -> bool:
    """Round-trip self test run at boot"""
    try:
        encryption = encryption or get_encryption()
        sample = "encryption-self-test"
        return encryption.decrypt(encryption.encrypt(sample)) == sample
    except EncryptionError as e:
        logger.error(f"Encryption self test failed: {e}")
        return False
