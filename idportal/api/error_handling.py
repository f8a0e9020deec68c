from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse, Response
from starlette.exceptions import HTTPException

from idportal.api.schemas import Envelope, ErrorBody
from idportal.logging import get_logger
from idportal.service.errors import LoginRequired, ServiceError, TokenError

logger = get_logger(__name__)

LOGIN_PATH = "/auth/login"

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
    503: "service_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def is_htmx(request: Request) -> bool:
    return request.headers.get("HX-Request", "").lower() == "true"


def redirect(request: Request, url: str) -> Response:
    """302 for browsers; htmx callers get 204 with ``HX-Redirect``."""
    if is_htmx(request):
        return Response(status_code=204, headers={"HX-Redirect": url})
    return RedirectResponse(url, status_code=302)


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _route_path(request: Request) -> str:
    # Route templates keep bearer tokens out of the logs
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def register_exception_handlers(app: FastAPI) -> None:
    """Install the envelope, redirect and 404 collapsing handlers."""

    @app.exception_handler(LoginRequired)
    async def handle_login_required(request: Request, exc: LoginRequired):
        from idportal.service.runtime import get_runtime

        logger.info(
            "login_required",
            path=_route_path(request),
            method=request.method,
            reason=exc.reason,
            client_ip=_client_ip(request),
        )
        response = redirect(request, LOGIN_PATH)
        get_runtime().sessions.clear(response)
        return response

    @app.exception_handler(TokenError)
    async def handle_token_error(request: Request, exc: TokenError):
        # Every token failure looks the same to the caller
        logger.warning(
            "token_rejected",
            path=_route_path(request),
            method=request.method,
            reason=exc.reason,
            client_ip=_client_ip(request),
        )
        return _error_response(404, "not found", code="not_found")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=_route_path(request),
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            client_ip=_client_ip(request),
        )
        return _error_response(exc.status_code, exc.message, exc.detail or None, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        missing = sorted(
            {str(err.get("loc", ["", "?"])[-1]) for err in exc.errors()}
        )
        logger.info(
            "request_validation_failed",
            path=_route_path(request),
            method=request.method,
            fields=missing,
        )
        return _error_response(
            400, "invalid request", {"fields": missing}, code="validation_error"
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if exc.status_code == 404:
            message = "not found"
        else:
            message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=_route_path(request),
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=_route_path(request),
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
