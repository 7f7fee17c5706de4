from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from authwarden.config import Settings
from authwarden.logging import get_logger
from authwarden.service.calls import store_call
from authwarden.storage.models import Clock, Session, utc_now

logger = get_logger(__name__)


class SessionStore(Protocol):
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
        ...

    def get_session(self, session_id: str) -> Optional[Session]:
        ...

    def list_valid_sessions(self, user_id: str, now: datetime) -> List[Session]:
        ...

    def set_session_refresh_ref(self, session_id: str, refresh_token_ref: str) -> bool:
        ...

    def invalidate_session(self, session_id: str, now: datetime) -> bool:
        ...

    def invalidate_user_sessions(
        self, user_id: str, now: datetime, *, except_session_id: str | None = None
    ) -> int:
        ...


class SessionRegistry:
    """Bounded set of concurrent sessions per user.

    Admission evicts the single oldest valid session once the user is at the
    limit. Concurrent logins may briefly overshoot the limit; every session
    stays individually revocable, and the next admission converges.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utc_now

    @property
    def _timeout(self) -> float:
        return self.settings.store_timeout_seconds

    @property
    def max_sessions(self) -> int:
        return self.settings.max_concurrent_sessions

    async def list_valid(self, user_id: str) -> List[Session]:
        return await store_call(
            self.store.list_valid_sessions, user_id, self._clock(), timeout=self._timeout
        )

    async def admit(self, user_id: str) -> Optional[str]:
        """Make room for one more session; returns the oldest evicted session id.

        At the limit exactly the oldest session goes. Concurrent logins can
        overshoot the limit, so the next admission evicts as many of the
        oldest sessions as it takes to bring the count back under it.
        """
        active = await self.list_valid(user_id)
        if len(active) < self.max_sessions:
            return None
        excess = len(active) - self.max_sessions + 1
        evicted = sorted(active, key=lambda s: (s.created_at, s.seq))[:excess]
        for session in evicted:
            await store_call(
                self.store.invalidate_session, session.id, self._clock(), timeout=self._timeout
            )
            logger.info(
                "session_evicted",
                user_id=user_id,
                session_id=session.id,
                active_sessions=len(active),
                max_sessions=self.max_sessions,
            )
        return evicted[0].id

    async def open(
        self,
        user_id: str,
        *,
        refresh_token_ref: str | None = None,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> Session:
        session = await store_call(
            self.store.create_session,
            user_id,
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            refresh_token_ref=refresh_token_ref,
            user_agent=user_agent,
            ip_addr=ip_addr,
            now=self._clock(),
            timeout=self._timeout,
        )
        logger.info("session_opened", user_id=user_id, session_id=session.id)
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        return await store_call(self.store.get_session, session_id, timeout=self._timeout)

    async def is_active(self, session_id: str) -> bool:
        session = await self.get(session_id)
        return bool(session and session.is_active(self._clock()))

    async def bind_refresh(self, session_id: str, refresh_token_ref: str) -> bool:
        return await store_call(
            self.store.set_session_refresh_ref,
            session_id,
            refresh_token_ref,
            timeout=self._timeout,
        )

    async def revoke(self, session_id: str) -> bool:
        revoked = await store_call(
            self.store.invalidate_session, session_id, self._clock(), timeout=self._timeout
        )
        if revoked:
            logger.info("session_revoked", session_id=session_id)
        return revoked

    async def revoke_all(self, user_id: str, *, except_session_id: str | None = None) -> int:
        count = await store_call(
            self.store.invalidate_user_sessions,
            user_id,
            self._clock(),
            except_session_id=except_session_id,
            timeout=self._timeout,
        )
        logger.info(
            "sessions_revoked",
            user_id=user_id,
            count=count,
            kept_session_id=except_session_id,
        )
        return count


__all__ = ["SessionRegistry", "SessionStore"]
