from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserAccount:
    id: str
    email: str
    source: str = "email"
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Credential:
    user_id: str
    email: str
    password_hash: str
    salt: str
    is_verified: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class ScanAuthRecord:
    user_id: str
    device_id: str
    device_type: str
    created_at: datetime = field(default_factory=_utcnow)
