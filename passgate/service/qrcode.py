from __future__ import annotations

import asyncio
import json
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from passgate.logging import get_logger
from passgate.service.errors import RateLimitedError
from passgate.service.results import ActionResult, ResultCode
from passgate.service.tokens import TokenService
from passgate.storage.cache import Cache
from passgate.storage.models import ScanAuthRecord

logger = get_logger(__name__)


class QrStatus(str, Enum):
    PENDING = "PENDING"
    SCANNED = "SCANNED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    # never stored; reported when the status key is gone
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class ClientFingerprint:
    """The browser that displays the QR code."""

    ip: Optional[str]
    user_agent: str = ""

    def to_json(self) -> str:
        return json.dumps({"ip": self.ip, "userAgent": self.user_agent})

    @classmethod
    def from_json(cls, raw: str) -> "ClientFingerprint":
        data = json.loads(raw)
        return cls(ip=data.get("ip"), user_agent=data.get("userAgent") or "")


@dataclass(frozen=True)
class DeviceFingerprint:
    """The phone that scans and confirms."""

    device_id: str
    device_type: str

    @property
    def complete(self) -> bool:
        return bool(self.device_id and self.device_type)

    def matches(self, other: "DeviceFingerprint") -> bool:
        return self.device_id == other.device_id and self.device_type == other.device_type


class ScanAuditSink(Protocol):
    def record_scan_auth(self, record: ScanAuthRecord) -> None: ...


def qr_key(session_id: str, part: str) -> str:
    return f"qr_code:{session_id}:{part}"


def scan_attempts_key(ip: str) -> str:
    return f"scan_attempts:{ip}"


def new_session_id() -> str:
    return secrets.token_hex(16)


class QrSessionMachine:
    """Cross-device QR login held entirely in the cache.

    ``PENDING -> SCANNED -> CONFIRMED`` with ``PENDING|SCANNED -> CANCELLED``;
    a missing status key reads as EXPIRED. Status changes go through
    ``Cache.compare_and_set`` so a scan and a cancel cannot both win against
    the same PENDING session. Repeating a transition that already happened
    for the same device and user succeeds without side effects.
    """

    def __init__(
        self,
        cache: Cache,
        tokens: TokenService,
        audit: ScanAuditSink,
        *,
        ttl_seconds: int = 120,
        retention_seconds: int = 30,
        max_attempts: int = 5,
        attempt_window_seconds: int = 3600,
        id_factory: Callable[[], str] = new_session_id,
    ) -> None:
        self.cache = cache
        self.tokens = tokens
        self.audit = audit
        self.ttl_seconds = ttl_seconds
        self.retention_seconds = retention_seconds
        self.max_attempts = max_attempts
        self.attempt_window_seconds = attempt_window_seconds
        self._id_factory = id_factory

    # helpers

    @staticmethod
    def _illegal(current: Optional[str], action: str) -> ActionResult:
        status = current or QrStatus.EXPIRED.value
        logger.info("qr_illegal_transition", action=action, status=status)
        return ActionResult.failure(
            ResultCode.ILLEGAL_TRANSITION,
            f"cannot {action} a QR session in state {status}",
            {"status": status},
        )

    @staticmethod
    def _security_mismatch(message: str) -> ActionResult:
        return ActionResult.failure(ResultCode.SECURITY_MISMATCH, message, status=403)

    @staticmethod
    def _device_record(device: DeviceFingerprint, user_id: str) -> str:
        return json.dumps(
            {"deviceId": device.device_id, "deviceType": device.device_type, "userId": user_id}
        )

    async def _device_matches(
        self, session_id: str, device: DeviceFingerprint, user_id: str
    ) -> bool:
        raw = await self.cache.get(qr_key(session_id, "device"))
        if raw is None:
            return False
        stored = json.loads(raw)
        recorded = DeviceFingerprint(
            device_id=stored.get("deviceId") or "", device_type=stored.get("deviceType") or ""
        )
        return recorded.matches(device) and stored.get("userId") == user_id

    async def _extend_client(self, session_id: str, ttl_seconds: int) -> None:
        # The client binding lives exactly as long as the status it guards.
        client_key = qr_key(session_id, "client")
        stored = await self.cache.get(client_key)
        if stored is not None:
            await self.cache.set(client_key, stored, ttl_seconds)

    @staticmethod
    def _invalid_request(session_id: str, device: Optional[DeviceFingerprint]) -> Optional[ActionResult]:
        if not session_id:
            return ActionResult.failure(ResultCode.VALIDATION_ERROR, "QR session id is required")
        if device is not None and not device.complete:
            return ActionResult.failure(
                ResultCode.VALIDATION_ERROR, "device id and device type are required"
            )
        return None

    # operations

    async def create_session(self, client: ClientFingerprint) -> ActionResult:
        if not client.ip:
            return ActionResult.failure(
                ResultCode.VALIDATION_ERROR, "client address could not be determined"
            )
        attempts = await self.cache.incr_window(
            scan_attempts_key(client.ip), self.attempt_window_seconds
        )
        if self.max_attempts and attempts > self.max_attempts:
            logger.warning("qr_create_rate_limited", client_ip=client.ip, attempts=attempts)
            raise RateLimitedError(
                "too many QR login requests", retry_after=self.attempt_window_seconds
            )

        session_id = self._id_factory()
        # client binding first so a poll never finds a status without it
        await self.cache.set(qr_key(session_id, "client"), client.to_json(), self.ttl_seconds)
        await self.cache.set(qr_key(session_id, "status"), QrStatus.PENDING.value, self.ttl_seconds)
        logger.info("qr_session_created", session_id=session_id, client_ip=client.ip)
        return ActionResult.success({"id": session_id, "expire": self.ttl_seconds})

    async def poll_status(self, session_id: str, client: ClientFingerprint) -> ActionResult:
        invalid = self._invalid_request(session_id, None)
        if invalid:
            return invalid
        expired = ActionResult.success({"status": QrStatus.EXPIRED.value})
        status = await self.cache.get(qr_key(session_id, "status"))
        if status is None:
            return expired
        stored_client = await self.cache.get(qr_key(session_id, "client"))
        if stored_client is None:
            return expired
        if ClientFingerprint.from_json(stored_client) != client:
            logger.warning("qr_poll_client_mismatch", session_id=session_id, client_ip=client.ip)
            return self._security_mismatch("QR session belongs to another client")

        if status != QrStatus.CONFIRMED.value:
            return ActionResult.success({"status": status})

        # Only the poll that takes the bound user gets the tokens.
        bound = await self.cache.get_delete(qr_key(session_id, "user"))
        if bound is None:
            return expired
        user_id = json.loads(bound)["userId"]
        await self.cache.delete(
            qr_key(session_id, "status"),
            qr_key(session_id, "client"),
            qr_key(session_id, "device"),
        )
        pair = self.tokens.issue(user_id)
        logger.info("qr_login_completed", session_id=session_id, user_id=user_id)
        return ActionResult.success(
            {"status": QrStatus.CONFIRMED.value, "userInfo": {"userId": user_id}},
            message="login successful",
            issued=pair,
        )

    async def scan(
        self, session_id: str, device: DeviceFingerprint, user_id: str
    ) -> ActionResult:
        invalid = self._invalid_request(session_id, device)
        if invalid:
            return invalid
        status_key = qr_key(session_id, "status")
        device_key = qr_key(session_id, "device")

        claimed = await self.cache.set_if_absent(
            device_key, self._device_record(device, user_id), self.ttl_seconds
        )
        if claimed:
            swapped, current = await self.cache.compare_and_set(
                status_key, (QrStatus.PENDING.value,), QrStatus.SCANNED.value, self.ttl_seconds
            )
            if swapped:
                await self._extend_client(session_id, self.ttl_seconds)
                logger.info("qr_session_scanned", session_id=session_id, user_id=user_id)
                return ActionResult.success({"status": QrStatus.SCANNED.value})
            await self.cache.delete(device_key)
            return self._illegal(current, "scan")

        current = await self.cache.get(status_key)
        if current == QrStatus.SCANNED.value and await self._device_matches(
            session_id, device, user_id
        ):
            return ActionResult.success({"status": QrStatus.SCANNED.value})
        return self._illegal(current, "scan")

    async def confirm(
        self, session_id: str, device: DeviceFingerprint, user_id: str
    ) -> ActionResult:
        invalid = self._invalid_request(session_id, device)
        if invalid:
            return invalid
        status_key = qr_key(session_id, "status")
        user_key = qr_key(session_id, "user")

        current = await self.cache.get(status_key)
        if current == QrStatus.CONFIRMED.value:
            bound = await self.cache.get(user_key)
            if bound is not None and json.loads(bound).get("userId") == user_id:
                return ActionResult.success({"status": QrStatus.CONFIRMED.value})
            return self._illegal(current, "confirm")
        if current != QrStatus.SCANNED.value:
            return self._illegal(current, "confirm")
        if not await self._device_matches(session_id, device, user_id):
            logger.warning("qr_confirm_device_mismatch", session_id=session_id, user_id=user_id)
            return self._security_mismatch("confirming device does not match the scanning device")

        # The bound user must exist before CONFIRMED becomes visible to pollers.
        await self.cache.set(
            user_key, json.dumps({"userId": user_id}), self.retention_seconds
        )
        swapped, current = await self.cache.compare_and_set(
            status_key,
            (QrStatus.SCANNED.value,),
            QrStatus.CONFIRMED.value,
            self.retention_seconds,
        )
        if not swapped:
            await self.cache.delete(user_key)
            return self._illegal(current, "confirm")

        await self._extend_client(session_id, self.retention_seconds)
        await self.cache.delete(qr_key(session_id, "device"))
        await asyncio.to_thread(
            self.audit.record_scan_auth,
            ScanAuthRecord(
                user_id=user_id, device_id=device.device_id, device_type=device.device_type
            ),
        )
        logger.info("qr_session_confirmed", session_id=session_id, user_id=user_id)
        return ActionResult.success({"status": QrStatus.CONFIRMED.value})

    async def cancel(
        self, session_id: str, device: DeviceFingerprint, user_id: str
    ) -> ActionResult:
        invalid = self._invalid_request(session_id, device)
        if invalid:
            return invalid
        status_key = qr_key(session_id, "status")

        current = await self.cache.get(status_key)
        if current == QrStatus.CANCELLED.value:
            return ActionResult.success({"status": QrStatus.CANCELLED.value})
        if current not in (QrStatus.PENDING.value, QrStatus.SCANNED.value):
            return self._illegal(current, "cancel")
        if current == QrStatus.SCANNED.value and not await self._device_matches(
            session_id, device, user_id
        ):
            logger.warning("qr_cancel_device_mismatch", session_id=session_id, user_id=user_id)
            return self._security_mismatch("cancelling device does not match the scanning device")

        swapped, latest = await self.cache.compare_and_set(
            status_key, (current,), QrStatus.CANCELLED.value, self.retention_seconds
        )
        if not swapped:
            if latest == QrStatus.CANCELLED.value:
                return ActionResult.success({"status": QrStatus.CANCELLED.value})
            return self._illegal(latest, "cancel")
        await self._extend_client(session_id, self.retention_seconds)
        await self.cache.delete(qr_key(session_id, "device"))
        logger.info("qr_session_cancelled", session_id=session_id, user_id=user_id)
        return ActionResult.success({"status": QrStatus.CANCELLED.value})


__all__ = [
    "QrStatus",
    "ClientFingerprint",
    "DeviceFingerprint",
    "ScanAuditSink",
    "QrSessionMachine",
    "qr_key",
    "scan_attempts_key",
]
