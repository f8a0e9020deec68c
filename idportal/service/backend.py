from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol

from idportal.service.otp import OTPSecret


class BackendErrorKind(str, Enum):
    POLICY_VIOLATION = "policy_violation"
    INVALID_CREDENTIAL = "invalid_credential"
    NOT_FOUND = "not_found"
    OTHER = "other"


class BackendError(Exception):
    """Tagged failure from the identity backend.

    Callers branch on ``kind``; ``unreachable`` marks transport failures and
    timeouts, which always carry ``OTHER``.
    """

    def __init__(
        self,
        kind: BackendErrorKind,
        message: str,
        *,
        unreachable: bool = False,
        code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.unreachable = unreachable
        self.code = code

    def __repr__(self) -> str:
        return f"BackendError(kind={self.kind.value!r}, message={self.message!r})"


@dataclass
class UserRecord:
    uid: str
    email: str = ""
    first: str = ""
    last: str = ""
    locked: bool = False
    otp_only: bool = False

    @property
    def display_name(self) -> str:
        return " ".join(part for part in (self.first, self.last) if part) or self.uid


@dataclass
class OTPToken:
    """A second-factor token as listed by the directory; never carries the secret."""

    token_id: str
    description: str = ""
    enabled: bool = True
    algorithm: str = "sha1"
    digits: int = 6
    period: int = 30


@dataclass
class ProvisionedToken:
    token: OTPToken
    # otpauth:// URI for authenticator apps, shown to the user exactly once
    uri: str


class IdentityBackend(Protocol):
    """Capability interface to the external identity directory.

    Every method raises ``BackendError`` on failure.
    """

    async def verify_credentials(self, uid: str, password: str) -> str:
        """Return an opaque backend session handle."""
        ...

    async def ping(self, session_handle: str) -> None: ...

    async def lookup_user(self, uid: str) -> UserRecord: ...

    async def change_password(
        self, uid: str, old_password: str, new_password: str, otp: str = ""
    ) -> None: ...

    async def reset_password(self, uid: str, new_password: str, otp: str = "") -> None: ...

    async def enable_user(self, uid: str) -> None: ...

    async def get_otp_secrets(self, uid: str) -> List[OTPSecret]:
        """Secrets of the enabled TOTP tokens; empty when OTP is not configured."""
        ...

    # Token management runs under the user's own directory session
    async def list_otp_tokens(self, session_handle: str, uid: str) -> List[OTPToken]: ...

    async def add_otp_token(
        self, session_handle: str, uid: str, description: str = ""
    ) -> ProvisionedToken: ...

    async def set_otp_token_enabled(
        self, session_handle: str, token_id: str, enabled: bool
    ) -> None: ...

    async def remove_otp_token(self, session_handle: str, token_id: str) -> None: ...

    async def end_session(self, session_handle: str) -> None: ...

    async def close(self) -> None: ...
