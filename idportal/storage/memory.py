from __future__ import annotations

import asyncio
import secrets
import threading
import uuid
from typing import Dict, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from idportal.logging import get_logger
from idportal.service.backend import (
    BackendError,
    BackendErrorKind,
    OTPToken,
    ProvisionedToken,
    UserRecord,
)
from idportal.service.otp import OTPSecret, new_totp_secret, provisioning_uri, verify_totp
from idportal.storage.models import DirectoryAccount, DirectoryOTPToken, SecurityAnswer


class MemoryDirectory:
    """In-memory identity backend for tests and local development.

    Behaves like the directory the portal fronts: password logins yield opaque
    session handles, sessions can be revoked out of band, and password
    changes are checked against the old password and any OTP token.
    Argon2 work runs in a worker thread so it never stalls the event loop.
    """

    def __init__(self, *, min_password_length: int = 8, issuer: str = "idportal") -> None:
        self.logger = get_logger(__name__)
        self.min_password_length = min_password_length
        self.issuer = issuer
        self.accounts: Dict[str, DirectoryAccount] = {}
        # session handle -> uid
        self.sessions: Dict[str, str] = {}
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._data_lock = threading.RLock()

    def add_user(
        self,
        uid: str,
        password: str,
        *,
        email: str = "",
        first: str = "",
        last: str = "",
        locked: bool = False,
        otp_secret: Optional[str] = None,
    ) -> UserRecord:
        account = DirectoryAccount(
            uid=uid,
            email=email or f"{uid}@example.com",
            password_hash=self._pwd_hasher.hash(password),
            first=first,
            last=last,
            locked=locked,
        )
        if otp_secret is not None:
            account.otp_tokens.append(
                DirectoryOTPToken(token_id=str(uuid.uuid4()), secret=otp_secret)
            )
        with self._data_lock:
            self.accounts[uid] = account
        return self._record(account)

    def revoke_session(self, session_handle: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_handle, None)

    def revoke_user_sessions(self, uid: str) -> int:
        with self._data_lock:
            handles = [h for h, owner in self.sessions.items() if owner == uid]
            for handle in handles:
                del self.sessions[handle]
        return len(handles)

    @staticmethod
    def _record(account: DirectoryAccount) -> UserRecord:
        return UserRecord(
            uid=account.uid,
            email=account.email,
            first=account.first,
            last=account.last,
            locked=account.locked,
            otp_only=bool(account.active_tokens()),
        )

    @staticmethod
    def _token(token: DirectoryOTPToken) -> OTPToken:
        return OTPToken(
            token_id=token.token_id, description=token.description, enabled=token.enabled
        )

    def _account(self, uid: str) -> DirectoryAccount:
        with self._data_lock:
            account = self.accounts.get(uid)
        if account is None:
            raise BackendError(BackendErrorKind.NOT_FOUND, f"user {uid} not found")
        return account

    def _session_owner(self, session_handle: str) -> DirectoryAccount:
        with self._data_lock:
            uid = self.sessions.get(session_handle)
            account = self.accounts.get(uid) if uid else None
        if account is None or account.locked:
            raise BackendError(BackendErrorKind.INVALID_CREDENTIAL, "session expired")
        return account

    def _owned_token(self, account: DirectoryAccount, token_id: str) -> DirectoryOTPToken:
        for token in account.otp_tokens:
            if token.token_id == token_id:
                return token
        raise BackendError(BackendErrorKind.NOT_FOUND, f"{token_id}: OTP token not found")

    def _password_matches(self, account: DirectoryAccount, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def _check_otp(self, account: DirectoryAccount, otp: str) -> None:
        active = account.active_tokens()
        if not active:
            return
        if not any(verify_totp(OTPSecret(secret=token.secret), otp) for token in active):
            raise BackendError(BackendErrorKind.INVALID_CREDENTIAL, "invalid OTP")

    async def _set_password(self, account: DirectoryAccount, new_password: str) -> None:
        if len(new_password) < self.min_password_length:
            raise BackendError(
                BackendErrorKind.POLICY_VIOLATION,
                f"password must be at least {self.min_password_length} characters",
            )
        password_hash = await asyncio.to_thread(self._pwd_hasher.hash, new_password)
        with self._data_lock:
            account.password_hash = password_hash

    async def verify_credentials(self, uid: str, password: str) -> str:
        with self._data_lock:
            account = self.accounts.get(uid)
        if account is None or account.locked:
            raise BackendError(BackendErrorKind.INVALID_CREDENTIAL, "invalid credentials")
        if not await asyncio.to_thread(self._password_matches, account, password):
            raise BackendError(BackendErrorKind.INVALID_CREDENTIAL, "invalid credentials")
        handle = secrets.token_urlsafe(32)
        with self._data_lock:
            self.sessions[handle] = uid
        return handle

    async def ping(self, session_handle: str) -> None:
        self._session_owner(session_handle)

    async def lookup_user(self, uid: str) -> UserRecord:
        return self._record(self._account(uid))

    async def change_password(
        self, uid: str, old_password: str, new_password: str, otp: str = ""
    ) -> None:
        account = self._account(uid)
        if not await asyncio.to_thread(self._password_matches, account, old_password):
            raise BackendError(BackendErrorKind.INVALID_CREDENTIAL, "invalid password")
        self._check_otp(account, otp)
        await self._set_password(account, new_password)

    async def reset_password(self, uid: str, new_password: str, otp: str = "") -> None:
        account = self._account(uid)
        self._check_otp(account, otp)
        await self._set_password(account, new_password)

    async def enable_user(self, uid: str) -> None:
        account = self._account(uid)
        with self._data_lock:
            account.locked = False

    async def get_otp_secrets(self, uid: str) -> List[OTPSecret]:
        account = self._account(uid)
        with self._data_lock:
            return [OTPSecret(secret=token.secret) for token in account.active_tokens()]

    async def list_otp_tokens(self, session_handle: str, uid: str) -> List[OTPToken]:
        account = self._session_owner(session_handle)
        if account.uid != uid:
            raise BackendError(BackendErrorKind.INVALID_CREDENTIAL, "insufficient access")
        with self._data_lock:
            return [self._token(token) for token in account.otp_tokens]

    async def add_otp_token(
        self, session_handle: str, uid: str, description: str = ""
    ) -> ProvisionedToken:
        account = self._session_owner(session_handle)
        if account.uid != uid:
            raise BackendError(BackendErrorKind.INVALID_CREDENTIAL, "insufficient access")
        token = DirectoryOTPToken(
            token_id=str(uuid.uuid4()), secret=new_totp_secret(), description=description
        )
        with self._data_lock:
            account.otp_tokens.append(token)
        uri = provisioning_uri(OTPSecret(secret=token.secret), uid, self.issuer)
        return ProvisionedToken(token=self._token(token), uri=uri)

    async def set_otp_token_enabled(
        self, session_handle: str, token_id: str, enabled: bool
    ) -> None:
        account = self._session_owner(session_handle)
        with self._data_lock:
            token = self._owned_token(account, token_id)
            if not enabled and token.enabled and len(account.active_tokens()) == 1:
                raise BackendError(
                    BackendErrorKind.POLICY_VIOLATION, "Can't disable last active token"
                )
            token.enabled = enabled

    async def remove_otp_token(self, session_handle: str, token_id: str) -> None:
        account = self._session_owner(session_handle)
        with self._data_lock:
            token = self._owned_token(account, token_id)
            if token.enabled and len(account.active_tokens()) == 1:
                raise BackendError(
                    BackendErrorKind.POLICY_VIOLATION, "Can't delete last active token"
                )
            account.otp_tokens.remove(token)

    async def end_session(self, session_handle: str) -> None:
        self.revoke_session(session_handle)

    async def close(self) -> None:
        with self._data_lock:
            self.sessions.clear()


class MemoryAnswerStore:
    """Process-local security answer store."""

    def __init__(self) -> None:
        self.answers: Dict[str, SecurityAnswer] = {}
        self._lock = threading.Lock()

    async def get_answer(self, uid: str) -> Optional[SecurityAnswer]:
        with self._lock:
            return self.answers.get(uid)

    async def save_answer(self, answer: SecurityAnswer) -> None:
        with self._lock:
            self.answers[answer.uid] = answer

    async def delete_answer(self, uid: str) -> None:
        with self._lock:
            self.answers.pop(uid, None)

    async def close(self) -> None:
        return None
