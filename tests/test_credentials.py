"""Tests for register, login, forgotten-password and change-password flows."""

import pytest

from passgate.service.errors import RateLimitedError
from passgate.service.passwords import derive_password_hash
from passgate.service.results import ResultCode
from passgate.service.tokens import Identity
from passgate.service.verification import code_key
from passgate.storage.memory import MemoryStore

EMAIL = "alice@example.com"
PASSWORD = "Correct-Horse-1"


class TestRegister:
    async def test_register_stores_salted_hash(self, runtime, accounts, store):
        user_id = await accounts.register(EMAIL, PASSWORD)

        credential = store.find_credential(EMAIL)
        assert credential.user_id == user_id
        assert len(credential.salt) == 32
        assert len(credential.password_hash) == 128
        assert credential.password_hash == derive_password_hash(PASSWORD, credential.salt)
        assert store.get_user(user_id).email == EMAIL

    async def test_register_consumes_code(self, runtime, accounts, cache):
        await accounts.register(EMAIL, PASSWORD)
        assert await cache.get(code_key(EMAIL, "register")) is None

    async def test_register_normalizes_email(self, runtime, accounts, store):
        code = await accounts.code_for(EMAIL, "register")
        result = await runtime.credentials.register("  Alice@Example.COM", code, accounts.blob(PASSWORD))

        assert result.ok
        assert store.find_credential(EMAIL) is not None

    async def test_register_existing_email(self, runtime, accounts):
        await accounts.register(EMAIL, PASSWORD)
        code = await accounts.code_for(EMAIL, "register")

        result = await runtime.credentials.register(EMAIL, code, accounts.blob(PASSWORD))
        assert result.code is ResultCode.EMAIL_EXISTS

    async def test_register_with_code_for_other_purpose(self, runtime, accounts):
        code = await accounts.code_for(EMAIL, "login")

        result = await runtime.credentials.register(EMAIL, code, accounts.blob(PASSWORD))
        assert result.code is ResultCode.CODE_MISMATCH

    async def test_register_with_expired_code(self, runtime, accounts, clock):
        code = await accounts.code_for(EMAIL, "register")
        clock.advance(301)

        result = await runtime.credentials.register(EMAIL, code, accounts.blob(PASSWORD))
        assert result.code is ResultCode.CODE_MISMATCH

    async def test_register_invalid_email(self, runtime, accounts):
        result = await runtime.credentials.register("alice", "123456", accounts.blob(PASSWORD))
        assert result.code is ResultCode.INVALID_EMAIL

    async def test_register_undecryptable_password(self, runtime, accounts, store):
        code = await accounts.code_for(EMAIL, "register")

        result = await runtime.credentials.register(EMAIL, code, "bm90IGFuIGVudmVsb3Bl")
        assert result.code is ResultCode.VALIDATION_ERROR
        assert store.find_credential(EMAIL) is None

    async def test_directory_failure_keeps_code(self, make_runtime, accounts, mailer, cache):
        class DirectoryDown(MemoryStore):
            def create_user(self, user_id, email, source="email"):
                raise ConnectionError("directory unavailable")

        runtime = make_runtime(store=DirectoryDown())
        await runtime.codes.issue(EMAIL, "register")
        code = mailer.last_code(EMAIL)
        result = await runtime.credentials.register(EMAIL, code, accounts.blob(PASSWORD))

        assert result.code is ResultCode.SERVICE_ACTION_FAILED
        assert await cache.get(code_key(EMAIL, "register")) == code
        assert runtime.store.find_credential(EMAIL) is None

    async def test_retry_after_failed_credential_write(self, make_runtime, accounts, mailer):
        class FlakyCredentials(MemoryStore):
            failures = 1

            def upsert_credential(self, record):
                if self.failures:
                    self.failures -= 1
                    raise ConnectionError("db write failed")
                return super().upsert_credential(record)

        store = FlakyCredentials()
        runtime = make_runtime(store=store)
        await runtime.codes.issue(EMAIL, "register")
        code = mailer.last_code(EMAIL)

        with pytest.raises(ConnectionError):
            await runtime.credentials.register(EMAIL, code, accounts.blob(PASSWORD))
        orphan = store.find_user_by_email(EMAIL)
        assert orphan is not None

        result = await runtime.credentials.register(EMAIL, code, accounts.blob(PASSWORD))

        assert result.ok
        assert result.content == {"userId": orphan.id}
        assert store.find_credential(EMAIL).user_id == orphan.id
        assert len(store.users) == 1


class TestLogin:
    async def test_login_issues_token_pair(self, runtime, accounts):
        user_id = await accounts.register(EMAIL, PASSWORD)
        code = await accounts.code_for(EMAIL, "login")

        result = await runtime.credentials.login(EMAIL, code, accounts.blob(PASSWORD))

        assert result.ok
        assert result.content["userId"] == user_id
        assert result.issued.access_token == result.content["accessToken"]
        resolution = await runtime.tokens.resolve(result.content["accessToken"])
        assert resolution.identity.user_id == user_id

    async def test_login_code_is_single_use(self, runtime, accounts):
        await accounts.register(EMAIL, PASSWORD)
        code = await accounts.code_for(EMAIL, "login")
        await runtime.credentials.login(EMAIL, code, accounts.blob(PASSWORD))

        again = await runtime.credentials.login(EMAIL, code, accounts.blob(PASSWORD))
        assert again.code is ResultCode.CODE_MISMATCH

    async def test_login_unknown_email(self, runtime, accounts):
        result = await runtime.credentials.login("bob@example.com", "123456", accounts.blob(PASSWORD))
        assert result.code is ResultCode.EMAIL_NOT_REGISTERED

    async def test_login_wrong_code(self, runtime, accounts):
        await accounts.register(EMAIL, PASSWORD)
        await accounts.code_for(EMAIL, "login")

        result = await runtime.credentials.login(EMAIL, "000000x", accounts.blob(PASSWORD))
        assert result.code is ResultCode.CODE_MISMATCH

    async def test_login_wrong_password_keeps_code(self, runtime, accounts):
        await accounts.register(EMAIL, PASSWORD)
        code = await accounts.code_for(EMAIL, "login")

        wrong = await runtime.credentials.login(EMAIL, code, accounts.blob("not-the-password"))
        assert wrong.code is ResultCode.PASSWORD_MISMATCH
        assert wrong.issued is None

        right = await runtime.credentials.login(EMAIL, code, accounts.blob(PASSWORD))
        assert right.ok

    async def test_repeated_failures_are_rate_limited(self, runtime, accounts):
        await accounts.register(EMAIL, PASSWORD)
        code = await accounts.code_for(EMAIL, "login")
        for _ in range(5):
            result = await runtime.credentials.login(EMAIL, code, accounts.blob("nope-nope"))
            assert result.code is ResultCode.PASSWORD_MISMATCH

        with pytest.raises(RateLimitedError):
            await runtime.credentials.login(EMAIL, code, accounts.blob(PASSWORD))

    async def test_failure_budget_resets_after_window(self, runtime, accounts, clock):
        await accounts.register(EMAIL, PASSWORD)
        for _ in range(5):
            code = await accounts.code_for(EMAIL, "login")
            await runtime.credentials.login(EMAIL, code, accounts.blob("nope-nope"))
        clock.advance(901)

        issued = await accounts.login(EMAIL, PASSWORD)
        assert issued is not None


class TestPasswordChanges:
    async def test_forget_password_replaces_hash(self, runtime, accounts, store):
        await accounts.register(EMAIL, PASSWORD)
        salt = store.find_credential(EMAIL).salt
        code = await accounts.code_for(EMAIL, "forget")

        result = await runtime.credentials.forget_password(EMAIL, code, accounts.blob("New-Pass-2"))

        assert result.ok
        credential = store.find_credential(EMAIL)
        assert credential.salt == salt
        assert credential.password_hash == derive_password_hash("New-Pass-2", salt)
        assert await accounts.login(EMAIL, "New-Pass-2") is not None

    async def test_forget_password_unknown_email(self, runtime, accounts):
        result = await runtime.credentials.forget_password(
            "bob@example.com", "123456", accounts.blob(PASSWORD)
        )
        assert result.code is ResultCode.EMAIL_NOT_REGISTERED

    async def test_forget_password_needs_forget_code(self, runtime, accounts):
        await accounts.register(EMAIL, PASSWORD)
        code = await accounts.code_for(EMAIL, "update")

        result = await runtime.credentials.forget_password(EMAIL, code, accounts.blob("New-Pass-2"))
        assert result.code is ResultCode.CODE_MISMATCH

    async def test_guessing_the_reset_code_burns_it(self, runtime, accounts, store):
        await accounts.register(EMAIL, PASSWORD)
        code = await accounts.code_for(EMAIL, "forget")
        guess = f"{(int(code) + 1) % 1_000_000:06d}"
        takeover = accounts.blob("Attacker-Pass-9")

        for _ in range(runtime.settings.code_max_failures):
            result = await runtime.credentials.forget_password(EMAIL, guess, takeover)
            assert result.code is ResultCode.CODE_MISMATCH

        result = await runtime.credentials.forget_password(EMAIL, code, takeover)
        assert result.code is ResultCode.CODE_MISMATCH
        credential = store.find_credential(EMAIL)
        assert credential.password_hash == derive_password_hash(PASSWORD, credential.salt)

    async def test_update_password_for_signed_in_user(self, runtime, accounts, store):
        user_id = await accounts.register(EMAIL, PASSWORD)
        pair = await accounts.login(EMAIL, PASSWORD)
        identity = (await runtime.tokens.resolve(pair.access_token)).identity
        code = await accounts.code_for(EMAIL, "update")

        result = await runtime.credentials.update_password(identity, code, accounts.blob("New-Pass-2"))

        assert result.ok
        assert identity.user_id == user_id
        assert await accounts.login(EMAIL, "New-Pass-2") is not None

    async def test_update_password_without_credential(self, runtime, accounts):
        identity = Identity(user_id="ghost", token_id="jti", expires_at=0)
        result = await runtime.credentials.update_password(identity, "123456", accounts.blob("x-y-z-1"))
        assert result.code is ResultCode.EMAIL_NOT_REGISTERED


class TestLogout:
    async def test_logout_revokes_both_tokens(self, runtime, accounts):
        await accounts.register(EMAIL, PASSWORD)
        pair = await accounts.login(EMAIL, PASSWORD)
        identity = (await runtime.tokens.resolve(pair.access_token)).identity

        result = await runtime.credentials.logout(
            identity, access_token=pair.access_token, refresh_token=pair.refresh_token
        )

        assert result.ok
        assert result.clear_cookies
        assert not (await runtime.tokens.resolve(pair.access_token)).ok
        assert not (await runtime.tokens.refresh(pair.refresh_token)).ok
