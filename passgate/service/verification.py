from __future__ import annotations

import asyncio
import hmac
import re
import secrets
from enum import Enum
from typing import Callable, Optional, Union

from passgate.logging import get_logger, redact_email
from passgate.service.email import MailDispatcher, render_verification_email
from passgate.service.errors import RateLimitedError, TransientFailure
from passgate.service.results import ActionResult, ResultCode
from passgate.storage.cache import Cache

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9_-]+(\.[a-zA-Z0-9_-]+)+$")
CODE_LENGTH = 6


class CodePurpose(str, Enum):
    LOGIN = "login"
    REGISTER = "register"
    FORGET = "forget"
    UPDATE = "update"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and EMAIL_PATTERN.match(email) is not None


def code_key(email: str, purpose: Union[CodePurpose, str]) -> str:
    return f"verifyCode:{email};type:{CodePurpose(purpose).value}"


def generate_code() -> str:
    return f"{secrets.randbelow(10 ** CODE_LENGTH):0{CODE_LENGTH}d}"


def code_failures_key(email: str, purpose: Union[CodePurpose, str]) -> str:
    return f"verifyCodeFailures:{email};type:{CodePurpose(purpose).value}"


class VerificationCodeManager:
    """Issue, check and retire one-time codes scoped to ``(email, purpose)``.

    At most one code lives per key. Asking again while a code is cached is a
    no-op that keeps the original code and its TTL and sends no mail.
    ``verify`` leaves a correct code in place; the caller calls ``consume``
    once its own state change has gone through so a failed write leaves the
    code usable. After ``max_failures`` wrong guesses the pending code is
    burned and a new one must be requested.
    """

    def __init__(
        self,
        cache: Cache,
        mailer: MailDispatcher,
        *,
        ttl_seconds: int = 300,
        dispatch_timeout: float = 10.0,
        issue_limit: int = 0,
        issue_window_seconds: int = 3600,
        max_failures: int = 5,
        code_factory: Callable[[], str] = generate_code,
    ) -> None:
        self.cache = cache
        self.mailer = mailer
        self.ttl_seconds = ttl_seconds
        self.dispatch_timeout = dispatch_timeout
        self.issue_limit = issue_limit
        self.issue_window_seconds = issue_window_seconds
        self.max_failures = max_failures
        self._code_factory = code_factory

    async def issue(
        self,
        email: str,
        purpose: Union[CodePurpose, str],
        *,
        client_ip: Optional[str] = None,
    ) -> ActionResult:
        email = normalize_email(email or "")
        if not is_valid_email(email):
            return ActionResult.failure(ResultCode.INVALID_EMAIL, "invalid email format")
        try:
            purpose = CodePurpose(purpose)
        except ValueError:
            return ActionResult.failure(ResultCode.VALIDATION_ERROR, "unknown code purpose")

        if self.issue_limit and client_ip:
            attempts = await self.cache.incr_window(
                f"code_attempts:{client_ip}", self.issue_window_seconds
            )
            if attempts > self.issue_limit:
                logger.warning("verification_code_rate_limited", client_ip=client_ip)
                raise RateLimitedError(
                    "too many verification code requests",
                    retry_after=self.issue_window_seconds,
                )

        code = self._code_factory()
        created = await self.cache.set_if_absent(code_key(email, purpose), code, self.ttl_seconds)
        if not created:
            logger.info(
                "verification_code_pending",
                to=redact_email(email),
                purpose=purpose.value,
            )
            return ActionResult.success(message="verification code already sent")

        await self.cache.delete(code_failures_key(email, purpose))
        await self._dispatch(email, purpose, code)
        logger.info("verification_code_issued", to=redact_email(email), purpose=purpose.value)
        return ActionResult.success(
            {"expire": self.ttl_seconds}, message="verification code sent"
        )

    async def _dispatch(self, email: str, purpose: CodePurpose, code: str) -> None:
        subject, text_body, html_body = render_verification_email(
            code, purpose.value, self.ttl_seconds
        )
        try:
            sent = await asyncio.wait_for(
                asyncio.to_thread(self.mailer.send, email, subject, text_body, html_body),
                timeout=self.dispatch_timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error(
                "verification_mail_timeout",
                to=redact_email(email),
                timeout=self.dispatch_timeout,
            )
            raise TransientFailure("verification email could not be sent") from exc
        except Exception as exc:
            logger.error(
                "verification_mail_failed",
                to=redact_email(email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise TransientFailure("verification email could not be sent") from exc
        if not sent:
            logger.error("verification_mail_rejected", to=redact_email(email))
            raise TransientFailure("verification email could not be sent")

    async def verify(
        self, email: str, purpose: Union[CodePurpose, str], candidate: Optional[str]
    ) -> bool:
        if not candidate:
            return False
        email = normalize_email(email)
        cached = await self.cache.get(code_key(email, purpose))
        if cached is None:
            return False
        if hmac.compare_digest(cached.encode(), str(candidate).encode()):
            return True
        await self._record_failure(email, purpose)
        return False

    async def _record_failure(self, email: str, purpose: Union[CodePurpose, str]) -> None:
        if not self.max_failures:
            return
        failures = await self.cache.incr_window(
            code_failures_key(email, purpose), self.ttl_seconds
        )
        if failures >= self.max_failures:
            logger.warning(
                "verification_code_burned",
                to=redact_email(email),
                purpose=CodePurpose(purpose).value,
                failures=failures,
            )
            await self.consume(email, purpose)

    async def consume(self, email: str, purpose: Union[CodePurpose, str]) -> None:
        email = normalize_email(email)
        await self.cache.delete(code_key(email, purpose), code_failures_key(email, purpose))


__all__ = [
    "CodePurpose",
    "VerificationCodeManager",
    "code_failures_key",
    "code_key",
    "generate_code",
    "is_valid_email",
    "normalize_email",
]
