from __future__ import annotations

from base64 import urlsafe_b64encode
import hashlib
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from hookrelay.core.config import get_settings
from hookrelay.core.errors import CredentialConfigurationError


# Marks stored values as ciphertext so re-saving a subscription never double-encrypts.
ENCRYPTED_PREFIX = "enc:"

# Secret-bearing auth fields; usernames, header names and token URLs stay readable for operators.
_SECRET_AUTH_FIELDS = ("password", "token", "header_value")
_SECRET_OAUTH2_FIELDS = ("client_secret",)


def _build_fernet() -> Fernet:
    settings = get_settings()
    # Require explicit key configuration; never fall back to plaintext credential storage.
    source = (settings.credentials_master_key or "").strip()
    if not source:
        raise CredentialConfigurationError("CREDENTIALS_MASTER_KEY is required for webhook credentials")
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return Fernet(urlsafe_b64encode(digest))


def is_encrypted(value: str | None) -> bool:
    return isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX)


def encrypt_credential(value: str) -> str:
    if is_encrypted(value):
        return value
    token = _build_fernet().encrypt(value.encode("utf-8"))
    return ENCRYPTED_PREFIX + token.decode("utf-8")


def decrypt_credential(value: str) -> str:
    if not is_encrypted(value):
        return value
    try:
        plain = _build_fernet().decrypt(value[len(ENCRYPTED_PREFIX):].encode("utf-8"))
    except InvalidToken as exc:
        raise CredentialConfigurationError("Stored credential cannot be decrypted with the configured key") from exc
    return plain.decode("utf-8")


def encrypt_auth_fields(auth: dict[str, Any] | None) -> dict[str, Any] | None:
    # Encrypt only secret-bearing fields; already-encrypted values pass through unchanged.
    if not auth:
        return auth
    encrypted = dict(auth)
    for key in _SECRET_AUTH_FIELDS:
        value = encrypted.get(key)
        if isinstance(value, str) and value:
            encrypted[key] = encrypt_credential(value)
    oauth2 = encrypted.get("oauth2")
    if isinstance(oauth2, dict):
        oauth2 = dict(oauth2)
        for key in _SECRET_OAUTH2_FIELDS:
            value = oauth2.get(key)
            if isinstance(value, str) and value:
                oauth2[key] = encrypt_credential(value)
        encrypted["oauth2"] = oauth2
    return encrypted
