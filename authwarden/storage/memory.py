from __future__ import annotations

import itertools
import threading
from dataclasses import fields as dataclass_fields
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from authwarden.logging import get_logger
from authwarden.storage.errors import ConstraintViolation
from authwarden.storage.models import Session, UserAccount

_USER_FIELDS = {f.name for f in dataclass_fields(UserAccount)} - {"id", "created_at"}


class MemoryStore:
    """In-process credential and session store.

    Backs single-process deployments and tests. Every read hands out a copy
    so callers cannot mutate stored rows behind the lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserAccount] = {}
        self.sessions: Dict[str, Session] = {}
        self._session_seq = itertools.count(1)
        # RLock so helpers can nest acquisitions from the same thread
        self._data_lock = threading.RLock()

    # -- users -----------------------------------------------------------

    def create_user(self, user: UserAccount) -> UserAccount:
        with self._data_lock:
            email = user.email.lower()
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if any(existing.username == user.username for existing in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            stored = replace(user, email=email)
            self.users[stored.id] = stored
            return replace(stored)

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        needle = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == needle), None)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[UserAccount]:
        needle = username.strip()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == needle), None)
            return replace(user) if user else None

    def get_user_by_verification_token(
        self, token: str, now: datetime
    ) -> Optional[UserAccount]:
        with self._data_lock:
            for user in self.users.values():
                if (
                    user.verification_token == token
                    and user.verification_expires_at is not None
                    and user.verification_expires_at > now
                ):
                    return replace(user)
            return None

    def get_user_by_reset_token(self, token: str, now: datetime) -> Optional[UserAccount]:
        with self._data_lock:
            for user in self.users.values():
                if (
                    user.reset_token == token
                    and user.reset_expires_at is not None
                    and user.reset_expires_at > now
                ):
                    return replace(user)
            return None

    def update_user_fields(self, user_id: str, **changes) -> Optional[UserAccount]:
        unknown = set(changes) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, updated_at=datetime.now(timezone.utc), **changes)
            self.users[user_id] = updated
            return replace(updated)

    def increment_failed_login_count(self, user_id: str) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            user.failed_login_count += 1
            return user.failed_login_count

    # -- sessions --------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        *,
        ttl_minutes: int,
        refresh_token_ref: str | None = None,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        now: datetime | None = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
                refresh_token_ref=refresh_token_ref,
                now=now,
            )
            sess.seq = next(self._session_seq)
            self.sessions[sess.id] = sess
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def list_valid_sessions(self, user_id: str, now: datetime) -> List[Session]:
        """Valid, unexpired sessions for a user, oldest first."""
        with self._data_lock:
            active = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_active(now)
            ]
        return sorted(active, key=lambda s: (s.created_at, s.seq))

    def set_session_refresh_ref(self, session_id: str, refresh_token_ref: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_valid:
                return False
            sess.refresh_token_ref = refresh_token_ref
            return True

    def invalidate_session(self, session_id: str, now: datetime) -> bool:
        """Soft-invalidate one session; False when it was already invalid."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_valid:
                return False
            sess.is_valid = False
            sess.invalidated_at = now
            return True

    def invalidate_user_sessions(
        self, user_id: str, now: datetime, *, except_session_id: str | None = None
    ) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_valid:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                sess.is_valid = False
                sess.invalidated_at = now
                count += 1
            return count
