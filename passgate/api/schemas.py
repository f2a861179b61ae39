from __future__ import annotations

import unicodedata
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from passgate.service.results import ActionResult, ResultCode

MAX_PARAM_LENGTH = 4096


def _normalize_text(value: str) -> str:
    """NFKC-normalize and strip zero-width characters used for spoofing."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned).strip()


class ActionData(BaseModel):
    content: Optional[Any] = None
    message: str
    code: str
    success: bool


class Envelope(BaseModel):
    """Body of every action response: ``{status, data, request_id}``."""

    status: int
    data: ActionData
    request_id: Optional[str] = None

    @classmethod
    def from_result(cls, result: ActionResult, request_id: Optional[str] = None) -> "Envelope":
        return cls(
            status=result.status,
            data=ActionData(
                content=result.content,
                message=result.message,
                code=result.code.value,
                success=result.ok,
            ),
            request_id=request_id,
        )

    @classmethod
    def error(
        cls,
        status: int,
        code: str,
        message: str,
        content: Any = None,
        request_id: Optional[str] = None,
    ) -> "Envelope":
        return cls(
            status=status,
            data=ActionData(content=content, message=message, code=code, success=False),
            request_id=request_id,
        )


class ActionParams(BaseModel):
    """Base for action parameter models; unknown keys are ignored."""

    model_config = ConfigDict(
        extra="ignore", populate_by_name=True, str_max_length=MAX_PARAM_LENGTH
    )


class EmptyParams(ActionParams):
    pass


class VerifyCodeParams(ActionParams):
    email: str = Field(..., min_length=1)
    purpose: str = Field(..., alias="type", min_length=1)

    @field_validator("email", "purpose")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_text(value)


class CredentialParams(ActionParams):
    """Shared by register, login and forgetPassword."""

    email: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1, max_length=16)
    password_blob: str = Field(..., alias="hash", min_length=1)

    @field_validator("email", "code")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_text(value)


class UpdatePasswordParams(ActionParams):
    code: str = Field(..., min_length=1, max_length=16)
    password_blob: str = Field(..., alias="hash", min_length=1)


class RefreshTokenParams(ActionParams):
    refresh_token: Optional[str] = Field(None, alias="refreshToken")


class ResolveTokenParams(ActionParams):
    token: str = Field(..., min_length=1)


class QrSessionParams(ActionParams):
    session_id: str = Field(..., alias="id", min_length=1, max_length=128)


def validation_failure(message: str) -> ActionResult:
    return ActionResult.failure(ResultCode.VALIDATION_ERROR, message)
