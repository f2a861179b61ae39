from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from passgate.logging import get_logger, redact_email
from passgate.storage.errors import ConstraintViolation
from passgate.storage.models import Credential, ScanAuthRecord, UserAccount


class MemoryStore:
    """In-memory credential store, user directory and scan-audit sink."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserAccount] = {}
        # keyed by normalized email
        self.credentials: Dict[str, Credential] = {}
        self.scan_auths: List[ScanAuthRecord] = []
        # RLock so helpers can nest acquisitions
        self._data_lock = threading.RLock()

    # user directory

    def create_user(self, user_id: str, email: str, source: str = "email") -> UserAccount:
        with self._data_lock:
            if user_id in self.users:
                raise ConstraintViolation("user id already exists", {"user_id": user_id})
            if any(user.email == email for user in self.users.values()):
                raise ConstraintViolation("email already exists", {"email": redact_email(email)})
            user = UserAccount(id=user_id, email=email, source=source)
            self.users[user_id] = user
        self.logger.info("user_created", user_id=user_id, source=source)
        return user

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._data_lock:
            return self.users.get(user_id)

    def find_user_by_email(self, email: str) -> Optional[UserAccount]:
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return replace(user)
        return None

    # credential store

    def user_exists(self, email: str) -> bool:
        with self._data_lock:
            return email in self.credentials

    def find_credential(self, email: str) -> Optional[Credential]:
        with self._data_lock:
            record = self.credentials.get(email)
            return replace(record) if record else None

    def find_credential_by_user(self, user_id: str) -> Optional[Credential]:
        with self._data_lock:
            for record in self.credentials.values():
                if record.user_id == user_id:
                    return replace(record)
        return None

    def upsert_credential(self, record: Credential) -> Credential:
        with self._data_lock:
            existing = self.credentials.get(record.email)
            if existing and existing.user_id != record.user_id:
                raise ConstraintViolation(
                    "email bound to another user", {"email": redact_email(record.email)}
                )
            stored = replace(
                record,
                created_at=existing.created_at if existing else record.created_at,
                last_updated_at=datetime.now(timezone.utc),
            )
            self.credentials[record.email] = stored
            return replace(stored)

    # scan audit

    def record_scan_auth(self, record: ScanAuthRecord) -> None:
        with self._data_lock:
            self.scan_auths.append(record)

    def list_scan_auths(self, user_id: str) -> List[ScanAuthRecord]:
        with self._data_lock:
            return [record for record in self.scan_auths if record.user_id == user_id]

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None
