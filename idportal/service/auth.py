from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Callable, Iterable, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from idportal.logging import get_logger
from idportal.service.backend import BackendError, BackendErrorKind, IdentityBackend
from idportal.service.errors import (
    BackendUnreachable,
    ChallengeFailed,
    InvalidCredentials,
    LoginRequired,
    PasswordPolicyError,
    ValidationError,
)
from idportal.service.otp import verify_totp
from idportal.service.password import validate_password_change
from idportal.service.session import AuthStage, SessionRecord
from idportal.storage.answers import AnswerStore
from idportal.storage.models import SecurityAnswer

logger = get_logger(__name__)

MIN_ANSWER_LENGTH = 2
MAX_ANSWER_LENGTH = 100


def _normalize_answer(answer: str) -> str:
    return " ".join((answer or "").split()).casefold()


class AuthService:
    """Login state machine: primary credentials, then one second factor.

    Users with an OTP token answer a TOTP challenge; everyone else answers
    (or, the first time, sets up) a security question. Authenticated
    sessions are revalidated against the backend on every protected request.
    """

    def __init__(
        self,
        backend: IdentityBackend,
        answers: AnswerStore,
        *,
        questions: List[str],
        block_users: Iterable[str] = (),
        min_password_length: int = 8,
        min_password_classes: int = 2,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.answers = answers
        self.questions = list(questions)
        self.block_users = frozenset(block_users)
        self.min_password_length = min_password_length
        self.min_password_classes = min_password_classes
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def _backend_unavailable(self, exc: BackendError, operation: str, uid: str) -> BackendUnreachable:
        logger.error(
            "backend_call_failed",
            operation=operation,
            subject=uid,
            kind=exc.kind.value,
            unreachable=exc.unreachable,
            error=exc.message,
        )
        return BackendUnreachable()

    async def login(self, uid: str, password: str) -> SessionRecord:
        uid = (uid or "").strip()
        if not uid or not password:
            raise InvalidCredentials()
        if uid in self.block_users:
            logger.warning("login_failed", subject=uid, reason="blocked")
            raise InvalidCredentials()

        try:
            handle = await self.backend.verify_credentials(uid, password)
        except BackendError as exc:
            if exc.kind in (BackendErrorKind.INVALID_CREDENTIAL, BackendErrorKind.NOT_FOUND):
                logger.warning("login_failed", subject=uid, reason=exc.kind.value)
                raise InvalidCredentials() from exc
            raise self._backend_unavailable(exc, "verify_credentials", uid) from exc

        try:
            otp_secrets = await self.backend.get_otp_secrets(uid)
        except BackendError as exc:
            await self._end_backend_session(handle, uid)
            raise self._backend_unavailable(exc, "get_otp_secrets", uid) from exc

        stage = AuthStage.OTP_CHALLENGE if otp_secrets else AuthStage.QUESTION_CHALLENGE
        logger.info("login_credentials_verified", subject=uid, stage=stage.value)
        return SessionRecord(
            subject=uid,
            backend_session_handle=handle,
            stage=stage,
            otp_required=bool(otp_secrets),
            authenticated=False,
            issued_at=int(self._clock()),
        )

    def _authenticated(self, record: SessionRecord) -> SessionRecord:
        logger.info("login_succeeded", subject=record.subject, otp=record.otp_required)
        return replace(record, stage=AuthStage.AUTHENTICATED, authenticated=True)

    @staticmethod
    def _require_stage(record: Optional[SessionRecord], stage: AuthStage) -> SessionRecord:
        if record is None:
            raise LoginRequired("no session")
        if record.stage is not stage:
            raise ValidationError(f"session is not in the {stage.value} stage")
        return record

    async def submit_otp(self, record: Optional[SessionRecord], code: str) -> SessionRecord:
        record = self._require_stage(record, AuthStage.OTP_CHALLENGE)
        try:
            otp_secrets = await self.backend.get_otp_secrets(record.subject)
        except BackendError as exc:
            if exc.kind is BackendErrorKind.NOT_FOUND:
                raise LoginRequired("account disappeared") from exc
            raise self._backend_unavailable(exc, "get_otp_secrets", record.subject) from exc

        now = self._clock()
        if not any(verify_totp(otp_secret, code, now=now) for otp_secret in otp_secrets):
            logger.warning("otp_challenge_failed", subject=record.subject)
            raise ChallengeFailed("Invalid OTP code. Please try again.")
        return self._authenticated(record)

    def question_text(self, question_id: int) -> Optional[str]:
        if 0 <= question_id < len(self.questions):
            return self.questions[question_id]
        return None

    async def pending_question(self, record: Optional[SessionRecord]) -> Optional[str]:
        """Question the user must answer, or None when one must be set up first."""
        record = self._require_stage(record, AuthStage.QUESTION_CHALLENGE)
        stored = await self.answers.get_answer(record.subject)
        if stored is None:
            return None
        return self.question_text(stored.question_id)

    def _hash_answer(self, answer: str) -> str:
        return self._pwd_hasher.hash(_normalize_answer(answer))

    def _verify_answer(self, answer_hash: str, answer: str) -> bool:
        try:
            return self._pwd_hasher.verify(answer_hash, _normalize_answer(answer))
        except (InvalidHash, VerifyMismatchError):
            return False

    async def submit_answer(self, record: Optional[SessionRecord], answer: str) -> SessionRecord:
        record = self._require_stage(record, AuthStage.QUESTION_CHALLENGE)
        stored = await self.answers.get_answer(record.subject)
        if stored is None:
            raise ValidationError("Please set up a security question first")
        matches = await asyncio.to_thread(self._verify_answer, stored.answer_hash, answer)
        if not matches:
            logger.warning("security_answer_failed", subject=record.subject)
            raise ChallengeFailed(
                "The security answer you provided does not match. Please check and try again."
            )
        return self._authenticated(record)

    async def setup_question(
        self, record: Optional[SessionRecord], question_id: int, answer: str
    ) -> SessionRecord:
        """Store a security answer.

        Completes the question challenge for users with nothing on file;
        authenticated users may replace their answer.
        """
        if record is None:
            raise LoginRequired("no session")
        if record.stage is AuthStage.OTP_CHALLENGE:
            raise ValidationError("Please complete the OTP challenge first")
        if self.question_text(question_id) is None:
            raise ValidationError("Please choose a security question")
        answer = (answer or "").strip()
        if not MIN_ANSWER_LENGTH <= len(answer) <= MAX_ANSWER_LENGTH:
            raise ValidationError(
                f"Security answer must be between {MIN_ANSWER_LENGTH} and "
                f"{MAX_ANSWER_LENGTH} characters"
            )

        existing = await self.answers.get_answer(record.subject)
        if existing is not None and not record.authenticated:
            raise ValidationError("A security question is already set up")

        answer_hash = await asyncio.to_thread(self._hash_answer, answer)
        await self.answers.save_answer(
            SecurityAnswer(uid=record.subject, question_id=question_id, answer_hash=answer_hash)
        )
        logger.info("security_question_saved", subject=record.subject, question_id=question_id)
        if record.authenticated:
            return record
        return self._authenticated(record)

    async def revalidate(self, record: Optional[SessionRecord]) -> SessionRecord:
        """Ping the backend with the stored handle; any failure ends the session."""
        if record is None or not record.authenticated:
            raise LoginRequired("not authenticated")
        try:
            await self.backend.ping(record.backend_session_handle)
        except BackendError as exc:
            logger.warning(
                "session_revalidation_failed",
                subject=record.subject,
                kind=exc.kind.value,
                unreachable=exc.unreachable,
            )
            raise LoginRequired("session expired") from exc
        return record

    async def _end_backend_session(self, handle: str, uid: str) -> None:
        try:
            await self.backend.end_session(handle)
        except BackendError as exc:
            logger.info("backend_logout_failed", subject=uid, kind=exc.kind.value)

    async def end_replaced_session(
        self, previous: Optional[SessionRecord], record: SessionRecord
    ) -> None:
        """End the backend session that a fresh login replaces."""
        if previous is None or previous.backend_session_handle == record.backend_session_handle:
            return
        await self._end_backend_session(previous.backend_session_handle, previous.subject)
        logger.info("session_replaced", subject=previous.subject, new_subject=record.subject)

    async def logout(self, record: Optional[SessionRecord]) -> None:
        if record is None:
            return
        await self._end_backend_session(record.backend_session_handle, record.subject)
        logger.info("logout", subject=record.subject)

    async def change_password(
        self,
        record: SessionRecord,
        current: str,
        password: str,
        confirm: str,
        otp: str = "",
    ) -> None:
        validate_password_change(
            current,
            password,
            confirm,
            min_length=self.min_password_length,
            min_classes=self.min_password_classes,
        )
        uid = record.subject
        if record.otp_required and not (otp or "").strip():
            raise ValidationError("Please enter your OTP code")
        try:
            await self.backend.change_password(uid, current, password, (otp or "").strip())
        except BackendError as exc:
            if exc.kind is BackendErrorKind.POLICY_VIOLATION:
                logger.info("password_change_rejected", subject=uid, reason="policy")
                raise PasswordPolicyError(exc.message) from exc
            if exc.kind is BackendErrorKind.INVALID_CREDENTIAL:
                logger.warning("password_change_rejected", subject=uid, reason="credentials")
                raise InvalidCredentials("Invalid current password or OTP code") from exc
            if exc.kind is BackendErrorKind.NOT_FOUND:
                raise LoginRequired("account disappeared") from exc
            raise self._backend_unavailable(exc, "change_password", uid) from exc
        logger.info("password_changed", subject=uid)
