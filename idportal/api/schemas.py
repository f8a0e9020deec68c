from __future__ import annotations

from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class QuestionItem(BaseModel):
    id: int
    text: str


class ChallengeResponse(BaseModel):
    """Second factor the current session still has to pass."""

    stage: str
    question: Optional[str] = None


class AccountResponse(BaseModel):
    uid: str
    email: str
    first: str
    last: str
    otp_only: bool


class ResetTokenResponse(BaseModel):
    uid: str
    otp_required: bool


class VerifyTokenResponse(BaseModel):
    uid: str
    locked: bool


class QuestionListResponse(BaseModel):
    questions: List[QuestionItem]
    configured: bool = False


class HealthResponse(BaseModel):
    status: str
    checks: dict


class OTPTokenItem(BaseModel):
    id: str
    description: str = ""
    enabled: bool


class OTPTokenListResponse(BaseModel):
    tokens: List[OTPTokenItem]


class ProvisionedTokenResponse(BaseModel):
    """A freshly added token; ``uri`` is only ever returned here."""

    token: OTPTokenItem
    uri: str
