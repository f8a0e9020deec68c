"""FreeIPA implementation of the identity backend over its HTTP session API."""

from __future__ import annotations

import asyncio
import base64
import binascii
import secrets
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Any, List, Optional

import httpx

from idportal.logging import get_logger
from idportal.service.backend import (
    BackendError,
    BackendErrorKind,
    OTPToken,
    ProvisionedToken,
    UserRecord,
)
from idportal.service.otp import OTPSecret

logger = get_logger(__name__)

IPA_API_VERSION = "2.251"
IPA_SESSION_COOKIE = "ipa_session"

# FreeIPA JSON-RPC error codes we branch on
_IPA_NOT_FOUND = 4001
_IPA_ACI_ERROR = 2100
_IPA_VALIDATION_ERROR = 4203


def _first(entry: dict, key: str, default: Any = None) -> Any:
    value = entry.get(key, default)
    if isinstance(value, list):
        return value[0] if value else default
    return value


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    return bool(value)


class FreeIPABackend:
    """Talks to ``/ipa/session/*`` with a bounded timeout and no retries.

    User sessions are the ``ipa_session`` cookie returned by
    ``login_password``; directory lookups and resets run under a lazily
    created service-account session.
    """

    def __init__(
        self,
        base_url: str,
        *,
        admin_user: Optional[str] = None,
        admin_password: Optional[str] = None,
        verify_tls: bool = True,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.admin_user = admin_user
        self.admin_password = admin_password
        # The client must never remember one user's session cookie for the next request
        no_cookies = CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            verify=verify_tls,
            timeout=httpx.Timeout(timeout),
            cookies=no_cookies,
            headers={"Referer": f"{self.base_url}/ipa"},
            transport=transport,
        )
        self._admin_handle: Optional[str] = None
        self._admin_lock = asyncio.Lock()

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            logger.error(
                "ipa_unreachable",
                url=url,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise BackendError(
                BackendErrorKind.OTHER, "identity backend unreachable", unreachable=True
            ) from exc

    async def _login(self, uid: str, password: str) -> str:
        resp = await self._send(
            "POST",
            "/ipa/session/login_password",
            data={"user": uid, "password": password},
            headers={"Accept": "text/plain"},
        )
        if resp.status_code == 401:
            reason = resp.headers.get("X-IPA-Rejection-Reason", "invalid-password")
            raise BackendError(BackendErrorKind.INVALID_CREDENTIAL, reason)
        if resp.status_code != 200:
            raise BackendError(
                BackendErrorKind.OTHER, f"login failed with status {resp.status_code}"
            )
        handle = resp.cookies.get(IPA_SESSION_COOKIE)
        if not handle:
            raise BackendError(BackendErrorKind.OTHER, "login returned no session")
        return handle

    async def _rpc(
        self,
        session_handle: str,
        method: str,
        args: Optional[list] = None,
        options: Optional[dict] = None,
    ) -> Any:
        body = {
            "method": method,
            "params": [args or [], {**(options or {}), "version": IPA_API_VERSION}],
            "id": 0,
        }
        resp = await self._send(
            "POST",
            "/ipa/session/json",
            json=body,
            headers={
                "Accept": "application/json",
                "Cookie": f"{IPA_SESSION_COOKIE}={session_handle}",
            },
        )
        if resp.status_code == 401:
            raise BackendError(BackendErrorKind.INVALID_CREDENTIAL, "session expired")
        if resp.status_code != 200:
            raise BackendError(
                BackendErrorKind.OTHER, f"{method} failed with status {resp.status_code}"
            )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise BackendError(BackendErrorKind.OTHER, f"{method} returned invalid JSON") from exc

        error = payload.get("error")
        if error:
            code = error.get("code")
            message = error.get("message") or error.get("name") or "ipa error"
            if code == _IPA_NOT_FOUND:
                kind = BackendErrorKind.NOT_FOUND
            elif code == _IPA_ACI_ERROR:
                kind = BackendErrorKind.INVALID_CREDENTIAL
            elif code == _IPA_VALIDATION_ERROR and "last active token" in message:
                kind = BackendErrorKind.POLICY_VIOLATION
                message = "Can't delete last active token"
            else:
                kind = BackendErrorKind.OTHER
            raise BackendError(kind, message, code=code)
        return (payload.get("result") or {}).get("result")

    async def _admin_rpc(
        self, method: str, args: Optional[list] = None, options: Optional[dict] = None
    ) -> Any:
        if not self.admin_user or not self.admin_password:
            raise BackendError(BackendErrorKind.OTHER, "service account not configured")
        async with self._admin_lock:
            if self._admin_handle is None:
                self._admin_handle = await self._login(self.admin_user, self.admin_password)
            handle = self._admin_handle
        try:
            return await self._rpc(handle, method, args, options)
        except BackendError as exc:
            if exc.kind is BackendErrorKind.INVALID_CREDENTIAL and exc.code is None:
                # Service session expired; the next call logs in again
                self._admin_handle = None
                raise BackendError(BackendErrorKind.OTHER, "service session expired") from exc
            raise

    async def verify_credentials(self, uid: str, password: str) -> str:
        return await self._login(uid, password)

    async def ping(self, session_handle: str) -> None:
        await self._rpc(session_handle, "ping")

    async def lookup_user(self, uid: str) -> UserRecord:
        entry = await self._admin_rpc("user_show", [uid], {"all": True})
        if not isinstance(entry, dict):
            raise BackendError(BackendErrorKind.OTHER, "user_show returned no entry")
        auth_types = [str(t).lower() for t in entry.get("ipauserauthtype") or []]
        return UserRecord(
            uid=_first(entry, "uid", uid),
            email=_first(entry, "mail", "") or "",
            first=_first(entry, "givenname", "") or "",
            last=_first(entry, "sn", "") or "",
            locked=_as_bool(_first(entry, "nsaccountlock", False)),
            otp_only="otp" in auth_types,
        )

    async def change_password(
        self, uid: str, old_password: str, new_password: str, otp: str = ""
    ) -> None:
        data = {"user": uid, "old_password": old_password, "new_password": new_password}
        if otp:
            data["otp"] = otp
        resp = await self._send(
            "POST",
            "/ipa/session/change_password",
            data=data,
            headers={"Accept": "text/plain"},
        )
        result = resp.headers.get("X-IPA-Pwchange-Result", "")
        if resp.status_code == 200 and result == "ok":
            return
        if result == "invalid-password":
            raise BackendError(BackendErrorKind.INVALID_CREDENTIAL, "invalid password or OTP")
        if result == "policy-error":
            message = resp.headers.get(
                "X-IPA-Pwchange-Policy-Error", "password does not satisfy policy"
            )
            raise BackendError(BackendErrorKind.POLICY_VIOLATION, message)
        raise BackendError(
            BackendErrorKind.OTHER,
            f"change_password failed with status {resp.status_code} result {result or 'none'}",
        )

    async def reset_password(self, uid: str, new_password: str, otp: str = "") -> None:
        # An administrative reset leaves a one-time password which the user
        # immediately replaces, so the final password never expires on first use.
        one_time = secrets.token_urlsafe(24)
        await self._admin_rpc("passwd", [uid, one_time])
        await self.change_password(uid, one_time, new_password, otp)

    async def enable_user(self, uid: str) -> None:
        await self._admin_rpc("user_enable", [uid])

    async def get_otp_secrets(self, uid: str) -> List[OTPSecret]:
        tokens = await self._admin_rpc(
            "otptoken_find", [], {"ipatokenowner": uid, "all": True}
        )
        secrets_found = []
        for entry in tokens or []:
            if _as_bool(_first(entry, "ipatokendisabled", False)):
                continue
            if _first(entry, "ipatokentotptimestep") is None:
                # HOTP tokens are counter based and cannot be checked here
                continue
            raw_key = _first(entry, "ipatokenotpkey")
            if isinstance(raw_key, dict):
                raw_key = raw_key.get("__base64__")
            if not raw_key:
                continue
            try:
                key = base64.b64decode(raw_key)
            except (binascii.Error, ValueError):
                logger.warning("ipa_otp_key_invalid", uid=uid)
                continue
            secrets_found.append(
                OTPSecret(
                    secret=base64.b32encode(key).decode("ascii").rstrip("="),
                    algorithm=str(_first(entry, "ipatokenotpalgorithm", "sha1")),
                    digits=int(_first(entry, "ipatokenotpdigits", 6)),
                    period=int(_first(entry, "ipatokentotptimestep", 30)),
                )
            )
        return secrets_found

    @staticmethod
    def _token(entry: dict) -> OTPToken:
        return OTPToken(
            token_id=str(_first(entry, "ipatokenuniqueid", "")),
            description=_first(entry, "description", "") or "",
            enabled=not _as_bool(_first(entry, "ipatokendisabled", False)),
            algorithm=str(_first(entry, "ipatokenotpalgorithm", "sha1")),
            digits=int(_first(entry, "ipatokenotpdigits", 6)),
            period=int(_first(entry, "ipatokentotptimestep", 30)),
        )

    async def list_otp_tokens(self, session_handle: str, uid: str) -> List[OTPToken]:
        entries = await self._rpc(
            session_handle, "otptoken_find", [], {"ipatokenowner": uid, "all": True}
        )
        return [self._token(entry) for entry in entries or []]

    async def add_otp_token(
        self, session_handle: str, uid: str, description: str = ""
    ) -> ProvisionedToken:
        options = {
            "type": "totp",
            "ipatokenowner": uid,
            "ipatokenotpalgorithm": "sha1",
            "ipatokenotpdigits": 6,
            "ipatokentotptimestep": 30,
        }
        if description:
            options["description"] = description
        entry = await self._rpc(session_handle, "otptoken_add", [], options)
        uri = entry.get("uri") if isinstance(entry, dict) else None
        if not uri:
            raise BackendError(BackendErrorKind.OTHER, "otptoken_add returned no URI")
        return ProvisionedToken(token=self._token(entry), uri=uri)

    async def set_otp_token_enabled(
        self, session_handle: str, token_id: str, enabled: bool
    ) -> None:
        await self._rpc(
            session_handle, "otptoken_mod", [token_id], {"ipatokendisabled": not enabled}
        )

    async def remove_otp_token(self, session_handle: str, token_id: str) -> None:
        await self._rpc(session_handle, "otptoken_del", [[token_id]])

    async def end_session(self, session_handle: str) -> None:
        await self._rpc(session_handle, "session_logout")
