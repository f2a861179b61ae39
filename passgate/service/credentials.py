from __future__ import annotations

import asyncio
import uuid
from typing import Optional, Protocol

from passgate.logging import get_logger, redact_email
from passgate.service.errors import RateLimitedError
from passgate.service.passwords import (
    PasswordDecryptError,
    decrypt_transport_password,
    derive_password_hash,
    new_salt,
    password_matches,
)
from passgate.service.results import ActionResult, ResultCode
from passgate.service.tokens import Identity, TokenService
from passgate.service.verification import (
    CodePurpose,
    VerificationCodeManager,
    is_valid_email,
    normalize_email,
)
from passgate.storage.cache import Cache
from passgate.storage.models import Credential, UserAccount

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def user_exists(self, email: str) -> bool: ...

    def find_credential(self, email: str) -> Optional[Credential]: ...

    def find_credential_by_user(self, user_id: str) -> Optional[Credential]: ...

    def upsert_credential(self, record: Credential) -> Credential: ...


class UserDirectory(Protocol):
    def create_user(self, user_id: str, email: str, source: str = "email") -> UserAccount: ...

    def find_user_by_email(self, email: str) -> Optional[UserAccount]: ...


def login_attempts_key(email: str) -> str:
    return f"login_attempts:{email}"


class CredentialService:
    """Email/password flows: register, login, forgotten and changed passwords.

    Every flow answers with an ``ActionResult``. Codes are consumed only after
    the credential write they guard has succeeded.
    """

    def __init__(
        self,
        store: CredentialStore,
        directory: UserDirectory,
        codes: VerificationCodeManager,
        tokens: TokenService,
        cache: Cache,
        *,
        transport_secret: str,
        login_max_attempts: int = 5,
        login_attempt_window_seconds: int = 900,
    ) -> None:
        self.store = store
        self.directory = directory
        self.codes = codes
        self.tokens = tokens
        self.cache = cache
        self.transport_secret = transport_secret
        self.login_max_attempts = login_max_attempts
        self.login_attempt_window_seconds = login_attempt_window_seconds

    def _decrypt(self, blob: str) -> Optional[str]:
        try:
            return decrypt_transport_password(blob, self.transport_secret)
        except PasswordDecryptError as exc:
            logger.warning("password_payload_rejected", reason=str(exc))
            return None

    @staticmethod
    def _bad_payload() -> ActionResult:
        return ActionResult.failure(
            ResultCode.VALIDATION_ERROR, "password payload could not be decrypted"
        )

    @staticmethod
    def _code_mismatch() -> ActionResult:
        return ActionResult.failure(
            ResultCode.CODE_MISMATCH, "verification code is wrong or has expired"
        )

    async def register(self, email: str, code: str, password_blob: str) -> ActionResult:
        email = normalize_email(email)
        if not is_valid_email(email):
            return ActionResult.failure(ResultCode.INVALID_EMAIL, "invalid email format")
        if await asyncio.to_thread(self.store.user_exists, email):
            return ActionResult.failure(ResultCode.EMAIL_EXISTS, "email is already registered")
        if not await self.codes.verify(email, CodePurpose.REGISTER, code):
            return self._code_mismatch()
        password = self._decrypt(password_blob)
        if password is None:
            return self._bad_payload()

        salt = new_salt()
        password_hash = derive_password_hash(password, salt)
        try:
            account = await asyncio.to_thread(self._directory_account, email)
        except Exception as exc:
            # The code stays cached so the user can retry with it.
            logger.error(
                "user_directory_create_failed",
                email=redact_email(email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return ActionResult.failure(
                ResultCode.SERVICE_ACTION_FAILED, "could not create the user account"
            )

        await asyncio.to_thread(
            self.store.upsert_credential,
            Credential(user_id=account.id, email=email, password_hash=password_hash, salt=salt),
        )
        await self.codes.consume(email, CodePurpose.REGISTER)
        logger.info("user_registered", user_id=account.id)
        return ActionResult.success({"userId": account.id}, message="registration complete")

    def _directory_account(self, email: str) -> UserAccount:
        # A user row left by an earlier registration whose credential write
        # failed is reused, so the email can still complete registration.
        existing = self.directory.find_user_by_email(email)
        if existing is not None:
            logger.info("user_directory_entry_reused", user_id=existing.id)
            return existing
        return self.directory.create_user(uuid.uuid4().hex, email, "email")

    async def login(self, email: str, code: str, password_blob: str) -> ActionResult:
        email = normalize_email(email)
        if not is_valid_email(email):
            return ActionResult.failure(ResultCode.INVALID_EMAIL, "invalid email format")
        credential = await asyncio.to_thread(self.store.find_credential, email)
        if credential is None:
            return ActionResult.failure(
                ResultCode.EMAIL_NOT_REGISTERED, "email is not registered"
            )
        await self._check_login_budget(email)
        if not await self.codes.verify(email, CodePurpose.LOGIN, code):
            return self._code_mismatch()
        password = self._decrypt(password_blob)
        if password is None:
            return self._bad_payload()
        if not password_matches(password, credential.salt, credential.password_hash):
            await self.cache.incr_window(
                login_attempts_key(email), self.login_attempt_window_seconds
            )
            logger.warning("login_password_mismatch", user_id=credential.user_id)
            return ActionResult.failure(ResultCode.PASSWORD_MISMATCH, "incorrect password")

        await self.cache.delete(login_attempts_key(email))
        await self.codes.consume(email, CodePurpose.LOGIN)
        pair = self.tokens.issue(credential.user_id)
        logger.info("login_succeeded", user_id=credential.user_id)
        return ActionResult.success(pair.to_content(), message="login successful", issued=pair)

    async def _check_login_budget(self, email: str) -> None:
        if not self.login_max_attempts:
            return
        failures = await self.cache.get(login_attempts_key(email))
        if failures is not None and int(failures) >= self.login_max_attempts:
            logger.warning("login_rate_limited", email=redact_email(email))
            raise RateLimitedError(
                "too many failed login attempts",
                retry_after=self.login_attempt_window_seconds,
            )

    async def forget_password(self, email: str, code: str, password_blob: str) -> ActionResult:
        email = normalize_email(email)
        if not is_valid_email(email):
            return ActionResult.failure(ResultCode.INVALID_EMAIL, "invalid email format")
        credential = await asyncio.to_thread(self.store.find_credential, email)
        if credential is None:
            return ActionResult.failure(
                ResultCode.EMAIL_NOT_REGISTERED, "email is not registered"
            )
        if not await self.codes.verify(email, CodePurpose.FORGET, code):
            return self._code_mismatch()
        return await self._replace_password(credential, password_blob, CodePurpose.FORGET)

    async def update_password(
        self, identity: Identity, code: str, password_blob: str
    ) -> ActionResult:
        credential = await asyncio.to_thread(
            self.store.find_credential_by_user, identity.user_id
        )
        if credential is None:
            return ActionResult.failure(
                ResultCode.EMAIL_NOT_REGISTERED, "no email credential for this account"
            )
        if not await self.codes.verify(credential.email, CodePurpose.UPDATE, code):
            return self._code_mismatch()
        return await self._replace_password(credential, password_blob, CodePurpose.UPDATE)

    async def _replace_password(
        self, credential: Credential, password_blob: str, purpose: CodePurpose
    ) -> ActionResult:
        password = self._decrypt(password_blob)
        if password is None:
            return self._bad_payload()
        credential.password_hash = derive_password_hash(password, credential.salt)
        await asyncio.to_thread(self.store.upsert_credential, credential)
        await self.codes.consume(credential.email, purpose)
        await self.cache.delete(login_attempts_key(credential.email))
        logger.info("password_changed", user_id=credential.user_id, purpose=purpose.value)
        return ActionResult.success(message="password updated")

    async def logout(
        self,
        identity: Identity,
        *,
        access_token: Optional[str],
        refresh_token: Optional[str] = None,
    ) -> ActionResult:
        await self.tokens.revoke(access_token=access_token, refresh_token=refresh_token)
        logger.info("logout", user_id=identity.user_id)
        return ActionResult.success(message="logged out", clear_cookies=True)


__all__ = ["CredentialStore", "UserDirectory", "CredentialService", "login_attempts_key"]
