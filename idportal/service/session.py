"""Browser sessions as versioned records sealed into a cookie.

The whole record is covered by Fernet's HMAC, and the Fernet timestamp doubles
as the idle clock: every save re-seals the record, and a cookie older than the
idle timeout no longer opens.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Optional

from cryptography.fernet import Fernet, InvalidToken
from fastapi import Request, Response

from idportal.logging import get_logger
from idportal.service.secret_store import SecretStore

logger = get_logger(__name__)

SESSION_VERSION = 1


class AuthStage(str, Enum):
    OTP_CHALLENGE = "otp_challenge"
    QUESTION_CHALLENGE = "question_challenge"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class SessionRecord:
    subject: str
    backend_session_handle: str
    stage: AuthStage
    otp_required: bool = False
    authenticated: bool = False
    issued_at: int = 0
    version: int = SESSION_VERSION

    def to_json(self) -> str:
        data = asdict(self)
        data["stage"] = self.stage.value
        return json.dumps(data, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: bytes | str) -> "SessionRecord":
        data = json.loads(raw)
        if data.get("version") != SESSION_VERSION:
            raise ValueError(f"unsupported session version {data.get('version')!r}")
        record = cls(
            subject=data["subject"],
            backend_session_handle=data["backend_session_handle"],
            stage=AuthStage(data["stage"]),
            otp_required=bool(data["otp_required"]),
            authenticated=bool(data["authenticated"]),
            issued_at=int(data["issued_at"]),
        )
        # authenticated and the stage must agree
        if record.authenticated != (record.stage is AuthStage.AUTHENTICATED):
            raise ValueError("inconsistent session stage")
        return record


class SessionStore:
    def __init__(
        self,
        secrets: SecretStore,
        *,
        cookie_name: str = "idportal-session",
        idle_timeout: int = 900,
        secure: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cookie_name = cookie_name
        self.idle_timeout = idle_timeout
        self.secure = secure
        self._fernet = Fernet(secrets.session_key)
        self._clock = clock

    def seal(self, record: SessionRecord) -> str:
        return self._fernet.encrypt_at_time(
            record.to_json().encode("utf-8"), int(self._clock())
        ).decode("ascii")

    def open(self, value: Optional[str]) -> Optional[SessionRecord]:
        """Return the record sealed in ``value``, or None if it is absent, stale or forged."""
        if not value:
            return None
        try:
            raw = self._fernet.decrypt_at_time(
                value.encode("ascii"), self.idle_timeout, int(self._clock())
            )
        except (InvalidToken, UnicodeEncodeError):
            logger.info("session_cookie_rejected")
            return None
        try:
            return SessionRecord.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("session_record_invalid", error=str(exc))
            return None

    def load(self, request: Request) -> Optional[SessionRecord]:
        return self.open(request.cookies.get(self.cookie_name))

    def save(self, response: Response, record: SessionRecord) -> None:
        response.set_cookie(
            self.cookie_name,
            self.seal(record),
            max_age=self.idle_timeout,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite="lax",
        )

    def clear(self, response: Response) -> None:
        response.delete_cookie(
            self.cookie_name,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite="lax",
        )
