from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from passgate.config import Settings
from passgate.logging import get_logger
from passgate.storage.cache import Cache

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


def refresh_revoked_key(jti: str) -> str:
    return f"auth:refresh:revoked:{jti}"


def access_denylist_key(jti: str) -> str:
    return f"auth:access:denylist:{jti}"


@dataclass
class Identity:
    user_id: str
    token_id: str
    expires_at: int


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    user_id: str
    issued_at: int
    access_ttl: int
    refresh_ttl: int

    def to_content(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "issuedAt": self.issued_at,
            "accessTtl": self.access_ttl,
            "refreshTtl": self.refresh_ttl,
        }


class ResolutionStatus(str, Enum):
    OK = "OK"
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"


@dataclass
class TokenResolution:
    status: ResolutionStatus
    identity: Optional[Identity] = None
    pair: Optional[TokenPair] = None

    @property
    def ok(self) -> bool:
        return self.status is ResolutionStatus.OK


_NOT_FOUND = TokenResolution(ResolutionStatus.NOT_FOUND)
_EXPIRED = TokenResolution(ResolutionStatus.EXPIRED)


class TokenService:
    """Mint and verify HS256 access/refresh token pairs.

    Refresh tokens rotate on use: exchanging one issues a fresh pair and
    revokes the old refresh ``jti`` for the rest of its lifetime, so a leaked
    refresh token works at most once. Revocation markers live in the shared
    cache; signing and claim checks need no I/O.
    """

    def __init__(
        self,
        settings: Settings,
        cache: Cache,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._clock = clock
        self._secret = settings.jwt_secret.encode()

    @property
    def access_ttl(self) -> int:
        return self.settings.access_token_ttl_seconds

    @property
    def refresh_ttl(self) -> int:
        return self.settings.refresh_token_ttl_seconds

    def issue(self, user_id: str) -> TokenPair:
        now = int(self._clock())
        access = self._encode_jwt(self._claims(user_id, ACCESS, now, self.access_ttl))
        refresh = self._encode_jwt(self._claims(user_id, REFRESH, now, self.refresh_ttl))
        logger.info("token_pair_issued", user_id=user_id)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            user_id=user_id,
            issued_at=now,
            access_ttl=self.access_ttl,
            refresh_ttl=self.refresh_ttl,
        )

    async def resolve(self, token: Optional[str], *, token_type: str = ACCESS) -> TokenResolution:
        """Map a token back to its identity.

        NOT_FOUND covers anything that is not a genuine, unrevoked token of
        ``token_type``; EXPIRED means it is genuine but past ``exp``.
        """
        if not token:
            return _NOT_FOUND
        payload = self._decode_jwt(token)
        if payload is None or payload.get("token_type") != token_type:
            return _NOT_FOUND
        if payload["exp"] <= self._clock():
            return _EXPIRED
        jti = payload["jti"]
        if token_type == REFRESH:
            if await self.cache.exists(refresh_revoked_key(jti)):
                return _NOT_FOUND
        else:
            try:
                if await self.cache.exists(access_denylist_key(jti)):
                    logger.info("access_token_denylisted", jti=jti)
                    return _NOT_FOUND
            except Exception as exc:
                # Fail open so a cache outage does not lock out every caller
                logger.warning("denylist_check_failed", jti=jti, error=str(exc))
        identity = Identity(user_id=payload["sub"], token_id=jti, expires_at=payload["exp"])
        return TokenResolution(ResolutionStatus.OK, identity=identity)

    async def refresh(self, refresh_token: Optional[str]) -> TokenResolution:
        resolution = await self.resolve(refresh_token, token_type=REFRESH)
        if not resolution.ok:
            return resolution
        identity = resolution.identity
        # Claiming the revocation marker is the single point where a refresh
        # token is spent; a concurrent exchange of the same token loses here.
        claimed = await self.cache.set_if_absent(
            refresh_revoked_key(identity.token_id), "1", self._remaining(identity.expires_at)
        )
        if not claimed:
            logger.warning("refresh_token_reused", user_id=identity.user_id)
            return _NOT_FOUND
        pair = self.issue(identity.user_id)
        return TokenResolution(ResolutionStatus.OK, identity=identity, pair=pair)

    async def revoke(
        self, *, access_token: Optional[str] = None, refresh_token: Optional[str] = None
    ) -> None:
        """Invalidate the given tokens until their natural expiry."""
        for token, token_type, key_for in (
            (access_token, ACCESS, access_denylist_key),
            (refresh_token, REFRESH, refresh_revoked_key),
        ):
            payload = self._decode_jwt(token) if token else None
            if payload is None or payload.get("token_type") != token_type:
                continue
            if payload["exp"] <= self._clock():
                continue
            await self.cache.set(key_for(payload["jti"]), "1", self._remaining(payload["exp"]))
            logger.info("token_revoked", token_type=token_type, user_id=payload["sub"])

    def _remaining(self, exp: int) -> int:
        return max(1, int(exp - self._clock()))

    def _claims(self, user_id: str, token_type: str, now: int, ttl: int) -> dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "token_type": token_type,
            "jti": secrets.token_urlsafe(16),
            "iat": now,
            "exp": now + ttl,
        }

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).rstrip(b"=").decode()

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * (-len(segment) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Verify signature and static claims; expiry is left to the caller."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        # Pin the algorithm to rule out alg confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        if not payload.get("sub") or not payload.get("jti"):
            return None
        try:
            payload["exp"] = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        return payload


__all__ = [
    "ACCESS",
    "REFRESH",
    "Identity",
    "TokenPair",
    "ResolutionStatus",
    "TokenResolution",
    "TokenService",
]
