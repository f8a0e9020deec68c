from __future__ import annotations

import base64
from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from idportal.config import Settings

_TOKEN_KEY_INFO = b"idportal action-token v1"
_SESSION_KEY_INFO = b"idportal session-cookie v1"


def derive_fernet_key(secret: str, info: bytes) -> bytes:
    """Derive a url-safe base64 Fernet key from a configured secret.

    Distinct ``info`` labels give independent keys from the same input, so
    a session cookie can never be replayed as an action token.
    """
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=info)
    return base64.urlsafe_b64encode(hkdf.derive(secret.encode("utf-8")))


@dataclass(frozen=True)
class SecretStore:
    """Process-wide key material, loaded once at startup."""

    token_key: bytes
    session_key: bytes

    @classmethod
    def from_secrets(cls, token_secret: str, session_secret: str) -> "SecretStore":
        return cls(
            token_key=derive_fernet_key(token_secret, _TOKEN_KEY_INFO),
            session_key=derive_fernet_key(session_secret, _SESSION_KEY_INFO),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretStore":
        return cls.from_secrets(settings.token_secret, settings.session_secret)

    def __repr__(self) -> str:
        return "SecretStore(<redacted>)"
