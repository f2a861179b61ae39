from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from passgate.service.tokens import TokenPair


class ResultCode(str, Enum):
    """Stable outcome codes carried in ``data.code`` of every envelope."""

    SUCCESS = "SUCCESS"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_EMAIL = "INVALID_EMAIL"
    EMAIL_NOT_REGISTERED = "EMAIL_NOT_REGISTERED"
    EMAIL_EXISTS = "EMAIL_EXISTS"
    CODE_MISMATCH = "CODE_MISMATCH"
    PASSWORD_MISMATCH = "PASSWORD_MISMATCH"
    SECURITY_MISMATCH = "SECURITY_MISMATCH"
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"
    SERVICE_ACTION_FAILED = "SERVICE_ACTION_FAILED"


@dataclass
class ActionResult:
    """Outcome of one routed action.

    ``issued`` and ``clear_cookies`` are read by the gateway after the call
    and never serialized into the response body.
    """

    code: ResultCode
    message: str
    content: Any = None
    status: int = 200
    issued: Optional["TokenPair"] = field(default=None, repr=False)
    clear_cookies: bool = False

    @property
    def ok(self) -> bool:
        return self.code is ResultCode.SUCCESS

    @classmethod
    def success(cls, content: Any = None, message: str = "ok", **kwargs: Any) -> "ActionResult":
        return cls(code=ResultCode.SUCCESS, message=message, content=content, **kwargs)

    @classmethod
    def failure(
        cls, code: ResultCode, message: str, content: Any = None, *, status: int = 200
    ) -> "ActionResult":
        return cls(code=code, message=message, content=content, status=status)


__all__ = ["ResultCode", "ActionResult"]
