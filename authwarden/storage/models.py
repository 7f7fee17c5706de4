from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserAccount:
    id: str
    email: str
    username: str
    first_name: str
    last_name: str
    password_hash: str
    role: str = "user"
    is_verified: bool = False
    verification_token: Optional[str] = None
    verification_expires_at: Optional[datetime] = None
    failed_login_count: int = 0
    locked_until: Optional[datetime] = None
    reset_token: Optional[str] = None
    reset_expires_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        *,
        email: str,
        username: str,
        first_name: str,
        last_name: str,
        password_hash: str,
        verification_token: Optional[str] = None,
        verification_expires_at: Optional[datetime] = None,
        role: str = "user",
        now: Optional[datetime] = None,
    ) -> "UserAccount":
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            username=username.strip(),
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            password_hash=password_hash,
            role=role,
            verification_token=verification_token,
            verification_expires_at=verification_expires_at,
            created_at=now or utc_now(),
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def public_dict(self) -> Dict[str, Any]:
        """Fields safe to return to clients."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role,
            "is_verified": self.is_verified,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    refresh_token_ref: Optional[str] = None
    is_valid: bool = True
    invalidated_at: Optional[datetime] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    # insertion order, breaks created_at ties during eviction
    seq: int = 0

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24 * 7,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        refresh_token_ref: str | None = None,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utc_now()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            refresh_token_ref=refresh_token_ref,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_active(self, now: datetime) -> bool:
        return self.is_valid and self.expires_at > now
