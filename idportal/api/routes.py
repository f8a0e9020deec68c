from __future__ import annotations

import hmac
from typing import Any, Optional

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from idportal.api.error_handling import LOGIN_PATH, redirect
from idportal.api.schemas import (
    AccountResponse,
    ChallengeResponse,
    Envelope,
    OTPTokenItem,
    OTPTokenListResponse,
    ProvisionedTokenResponse,
    QuestionItem,
    QuestionListResponse,
    ResetTokenResponse,
    VerifyTokenResponse,
)
from idportal.logging import get_logger
from idportal.service.backend import BackendError, BackendErrorKind, OTPToken
from idportal.service.errors import (
    BackendUnreachable,
    ForbiddenError,
    LoginRequired,
    RateLimitedError,
    ValidationError,
)
from idportal.service.runtime import get_runtime
from idportal.service.session import AuthStage, SessionRecord

logger = get_logger(__name__)

HOME_PATH = "/"
CHALLENGE_PATH = "/auth/2fa"
SETUP_PATH = "/auth/setsec"
OTP_PATH = "/otp"

CSRF_HEADER = "X-CSRF-Token"
CSRF_FORM_FIELD = "csrf"


def client_identity(request: Request) -> str:
    """First ``X-Forwarded-For`` hop, else the transport peer."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return request.client.host if request.client else "unknown"


async def enforce_rate_limit(request: Request) -> None:
    if request.method.upper() != "POST":
        return
    route = request.scope.get("route")
    route_key = getattr(route, "path", None) or request.url.path
    if not await get_runtime().rate_limiter.allow(route_key, client_identity(request)):
        raise RateLimitedError("Too many requests. Please try again later.")


async def current_session(request: Request) -> SessionRecord:
    """Authenticated session, revalidated against the backend on every call."""
    runtime = get_runtime()
    record = runtime.sessions.load(request)
    return await runtime.auth.revalidate(record)


async def enforce_csrf(request: Request) -> None:
    """Double-submit check: POSTs echo the CSRF cookie in a header or form field."""
    if request.method.upper() != "POST":
        return
    expected = request.cookies.get(get_runtime().settings.csrf_cookie_name, "")
    submitted = request.headers.get(CSRF_HEADER, "")
    if not submitted:
        form = await request.form()
        submitted = form.get(CSRF_FORM_FIELD) or ""
    if (
        not expected
        or not isinstance(submitted, str)
        or not hmac.compare_digest(expected.encode(), submitted.encode())
    ):
        route = request.scope.get("route")
        logger.warning(
            "csrf_validation_failed",
            path=getattr(route, "path", None) or request.url.path,
            has_cookie=bool(expected),
            has_token=bool(submitted),
        )
        raise ForbiddenError("missing or invalid CSRF token")


router = APIRouter(dependencies=[Depends(enforce_rate_limit), Depends(enforce_csrf)])


def _ok(data: Any = None) -> JSONResponse:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    return JSONResponse(content=Envelope(status="ok", data=data).model_dump())


def _load_session(request: Request) -> SessionRecord:
    record = get_runtime().sessions.load(request)
    if record is None:
        raise LoginRequired("no session")
    return record


def _questions() -> list[QuestionItem]:
    return [
        QuestionItem(id=idx, text=text)
        for idx, text in enumerate(get_runtime().auth.questions)
    ]


@router.get("/auth/login")
async def login_form(request: Request) -> Response:
    runtime = get_runtime()
    record = runtime.sessions.load(request)
    if record is not None and record.authenticated:
        return redirect(request, HOME_PATH)
    return _ok({"fields": ["uid", "password"]})


@router.get("/auth/csrf")
async def csrf_token(request: Request) -> Response:
    return _ok(
        {
            "csrf_token": request.state.csrf_token,
            "header": CSRF_HEADER,
            "field": CSRF_FORM_FIELD,
        }
    )


@router.post("/auth/login")
async def login(request: Request, uid: str = Form(...), password: str = Form(...)) -> Response:
    runtime = get_runtime()
    previous = runtime.sessions.load(request)
    record = await runtime.auth.login(uid, password)
    await runtime.auth.end_replaced_session(previous, record)
    response = redirect(request, CHALLENGE_PATH)
    runtime.sessions.save(response, record)
    return response


@router.get("/auth/2fa")
async def challenge_form(request: Request) -> Response:
    runtime = get_runtime()
    record = _load_session(request)
    if record.authenticated:
        return redirect(request, HOME_PATH)
    if record.stage is AuthStage.OTP_CHALLENGE:
        return _ok(ChallengeResponse(stage=record.stage.value))
    question = await runtime.auth.pending_question(record)
    if question is None:
        return redirect(request, SETUP_PATH)
    return _ok(ChallengeResponse(stage=record.stage.value, question=question))


@router.post("/auth/2fa")
async def challenge(
    request: Request,
    code: str = Form(""),
    answer: str = Form(""),
) -> Response:
    runtime = get_runtime()
    record = _load_session(request)
    if record.authenticated:
        return redirect(request, HOME_PATH)
    if record.stage is AuthStage.OTP_CHALLENGE:
        record = await runtime.auth.submit_otp(record, code)
    else:
        if await runtime.auth.pending_question(record) is None:
            return redirect(request, SETUP_PATH)
        record = await runtime.auth.submit_answer(record, answer)
    response = redirect(request, HOME_PATH)
    runtime.sessions.save(response, record)
    return response


@router.get("/auth/setsec")
async def setup_form(request: Request) -> Response:
    runtime = get_runtime()
    record = _load_session(request)
    if record.stage is AuthStage.OTP_CHALLENGE:
        return redirect(request, CHALLENGE_PATH)
    if record.authenticated:
        record = await runtime.auth.revalidate(record)
    configured = await runtime.answers.get_answer(record.subject) is not None
    response = _ok(QuestionListResponse(questions=_questions(), configured=configured))
    runtime.sessions.save(response, record)
    return response


@router.post("/auth/setsec")
async def setup(
    request: Request,
    question: int = Form(...),
    answer: str = Form(...),
) -> Response:
    runtime = get_runtime()
    record = _load_session(request)
    if record.authenticated:
        record = await runtime.auth.revalidate(record)
    record = await runtime.auth.setup_question(record, question, answer)
    response = redirect(request, HOME_PATH)
    runtime.sessions.save(response, record)
    return response


@router.api_route("/auth/logout", methods=["GET", "POST"])
async def logout(request: Request) -> Response:
    runtime = get_runtime()
    await runtime.auth.logout(runtime.sessions.load(request))
    response = redirect(request, LOGIN_PATH)
    runtime.sessions.clear(response)
    return response


@router.get("/auth/forgotpw")
async def forgot_password_form() -> Response:
    return _ok({"fields": ["uid"]})


@router.post("/auth/forgotpw")
async def forgot_password(request: Request, uid: str = Form(...)) -> Response:
    await get_runtime().accounts.forgot_password(uid)
    return redirect(request, LOGIN_PATH)


@router.get("/auth/resetpw/{token}")
async def reset_password_form(token: str) -> Response:
    context = await get_runtime().accounts.begin_reset(token)
    return _ok(ResetTokenResponse(uid=context.uid, otp_required=context.otp_required))


@router.post("/auth/resetpw/{token}")
async def reset_password(
    request: Request,
    token: str,
    password: str = Form(""),
    password2: str = Form(""),
    otpcode: str = Form(""),
) -> Response:
    await get_runtime().accounts.complete_reset(token, password, password2, otpcode)
    return redirect(request, LOGIN_PATH)


@router.post("/auth/verify/resend")
async def resend_verification(request: Request, uid: str = Form(...)) -> Response:
    await get_runtime().accounts.resend_verification(uid)
    return redirect(request, LOGIN_PATH)


@router.get("/auth/verify/{token}")
async def verify_account_form(token: str) -> Response:
    user = await get_runtime().accounts.begin_verify(token)
    return _ok(VerifyTokenResponse(uid=user.uid, locked=user.locked))


@router.post("/auth/verify/{token}")
async def verify_account(request: Request, token: str) -> Response:
    await get_runtime().accounts.complete_verify(token)
    return redirect(request, LOGIN_PATH)


@router.get("/")
async def account_summary(record: SessionRecord = Depends(current_session)) -> Response:
    runtime = get_runtime()
    try:
        user = await runtime.backend.lookup_user(record.subject)
    except BackendError as exc:
        if exc.kind is BackendErrorKind.NOT_FOUND:
            raise LoginRequired("account disappeared") from exc
        logger.error("account_lookup_failed", subject=record.subject, error=exc.message)
        raise BackendUnreachable() from exc
    response = _ok(
        AccountResponse(
            uid=user.uid,
            email=user.email,
            first=user.first,
            last=user.last,
            otp_only=user.otp_only,
        )
    )
    runtime.sessions.save(response, record)
    return response


@router.get("/password")
async def password_form(record: SessionRecord = Depends(current_session)) -> Response:
    response = _ok({"otp_required": record.otp_required})
    get_runtime().sessions.save(response, record)
    return response


@router.post("/password")
async def change_password(
    request: Request,
    record: SessionRecord = Depends(current_session),
    current: str = Form(""),
    password: str = Form(""),
    password2: str = Form(""),
    otpcode: Optional[str] = Form(""),
) -> Response:
    runtime = get_runtime()
    await runtime.auth.change_password(record, current, password, password2, otpcode or "")
    response = redirect(request, HOME_PATH)
    runtime.sessions.save(response, record)
    return response


def _token_item(token: OTPToken) -> OTPTokenItem:
    return OTPTokenItem(id=token.token_id, description=token.description, enabled=token.enabled)


@router.get("/otp")
async def otp_tokens(record: SessionRecord = Depends(current_session)) -> Response:
    runtime = get_runtime()
    tokens = await runtime.otp_tokens.list_tokens(record)
    response = _ok(OTPTokenListResponse(tokens=[_token_item(token) for token in tokens]))
    runtime.sessions.save(response, record)
    return response


@router.post("/otp")
async def modify_otp_tokens(
    request: Request,
    record: SessionRecord = Depends(current_session),
    action: str = Form(...),
    uuid: str = Form(""),
    description: str = Form(""),
) -> Response:
    runtime = get_runtime()
    service = runtime.otp_tokens
    action = action.strip().lower()
    if action == "add":
        provisioned = await service.add_token(record, description)
        response = _ok(
            ProvisionedTokenResponse(token=_token_item(provisioned.token), uri=provisioned.uri)
        )
    elif action == "enable":
        await service.enable_token(record, uuid)
        response = redirect(request, OTP_PATH)
    elif action == "disable":
        await service.disable_token(record, uuid)
        response = redirect(request, OTP_PATH)
    elif action == "delete":
        await service.remove_token(record, uuid)
        response = redirect(request, OTP_PATH)
    else:
        raise ValidationError("Unknown OTP token action")
    runtime.sessions.save(response, record)
    return response
