from __future__ import annotations

import hashlib
import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_remember_token(value: str) -> str:
    """Remember tokens are stored only as the sha256 of the presented value."""
    return hashlib.sha256(value.encode()).hexdigest()


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


@dataclass
class SessionContext:
    """Request attributes a session is bound to."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None

    def fingerprint(self) -> str:
        raw = f"{self.ip or ''}|{self.user_agent or ''}"
        return hashlib.sha256(raw.encode()).hexdigest()


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    device_fingerprint: str
    remember_me: bool = False
    generation: int = 0
    role: str = "user"
    revoked: bool = False
    revoked_reason: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl: timedelta,
        context: SessionContext,
        *,
        generation: int,
        remember_me: bool = False,
        role: str = "user",
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or _utcnow()
        return cls(
            id=new_session_id(),
            user_id=user_id,
            created_at=now,
            expires_at=now + ttl,
            last_activity_at=now,
            device_fingerprint=context.fingerprint(),
            remember_me=remember_me,
            generation=generation,
            role=role,
            ip_addr=context.ip,
            user_agent=context.user_agent,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("created_at", "expires_at", "last_activity_at"):
            data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        values = dict(data)
        for key in ("created_at", "expires_at", "last_activity_at"):
            raw = values.get(key)
            if isinstance(raw, str):
                values[key] = datetime.fromisoformat(raw)
        values["generation"] = int(values.get("generation") or 0)
        return cls(**{k: v for k, v in values.items() if k in cls.__dataclass_fields__})


@dataclass
class RememberToken:
    id: str
    user_id: str
    session_id: str
    created_at: datetime
    expires_at: datetime
    device_fingerprint: str
    generation: int = 0
    rotation_count: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["expires_at"] = self.expires_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RememberToken":
        values = dict(data)
        for key in ("created_at", "expires_at"):
            raw = values.get(key)
            if isinstance(raw, str):
                values[key] = datetime.fromisoformat(raw)
        values["generation"] = int(values.get("generation") or 0)
        values["rotation_count"] = int(values.get("rotation_count") or 0)
        return cls(**{k: v for k, v in values.items() if k in cls.__dataclass_fields__})


@dataclass
class AttemptCounter:
    """Failures recorded for one key inside the current sliding window."""

    key: str
    count: int = 0
    window_start: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    # Set by the guard from its delay policy; stores leave it at 0
    delay_level: int = 0

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class CredentialRecord:
    user_id: str
    identifier: str
    password_hash: str
    status: str = "active"
    role: str = "user"
    email_verified: bool = False
    phone_verified: bool = False
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def identifier_kind(self) -> str:
        return "email" if "@" in self.identifier else "phone"
