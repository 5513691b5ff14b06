from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from authcore.clock import Clock, utc_now
from authcore.logging import get_logger
from authcore.service.persistence import StoreGateway
from authcore.storage.models import Session, User

logger = get_logger(__name__)


@dataclass
class SessionInfo:
    id: str
    ip_addr: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    is_current: bool = False


class SessionManager:
    """Lifecycle of the server-side sessions that back token pairs."""

    def __init__(
        self,
        db: StoreGateway,
        *,
        lifetime: timedelta,
        clock: Clock = utc_now,
    ) -> None:
        if lifetime <= timedelta(0):
            raise ValueError("session lifetime must be positive")
        self.db = db
        self.lifetime = lifetime
        self._clock = clock

    async def create(
        self,
        user_id: str,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        now = self._clock()
        session = Session(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=secrets.token_hex(32),
            refresh_token=secrets.token_hex(32),
            created_at=now,
            expires_at=now + self.lifetime,
            last_used_at=now,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        await self.db.call("create_session", session)
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return session

    async def touch(self, session_id: str) -> bool:
        return await self.db.call("touch_session", session_id, self._clock())

    async def get_live(self, session_id: str) -> Optional[Session]:
        """Return the session if it exists and has not expired, without touching it."""
        if not session_id:
            return None
        session = await self.db.call("get_session", session_id)
        if session is None or session.is_expired(self._clock()):
            return None
        return session

    async def validate_session(self, session_id: str) -> Optional[Tuple[Session, User]]:
        session = await self.get_live(session_id)
        if session is None:
            return None
        user = await self.db.call("get_user", session.user_id)
        if user is None:
            return None
        await self.touch(session.id)
        return session, user

    async def validate(self, session_id: str) -> Optional[User]:
        """Resolve a session to its principal, or None if missing or expired.

        Only a live session has its last-used time advanced.
        """
        resolved = await self.validate_session(session_id)
        return resolved[1] if resolved else None

    async def revoke(self, session_id: str) -> bool:
        removed = await self.db.call("delete_session", session_id)
        if removed:
            logger.info("session_revoked", session_id=session_id)
        return removed

    async def revoke_all(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        count = await self.db.call(
            "delete_user_sessions", user_id, except_session_id
        )
        logger.info(
            "user_sessions_revoked",
            user_id=user_id,
            count=count,
            kept_session=except_session_id,
        )
        return count

    async def list_for_user(
        self, user_id: str, *, current_session_id: Optional[str] = None
    ) -> List[SessionInfo]:
        now = self._clock()
        sessions = await self.db.call("list_user_sessions", user_id)
        return [
            SessionInfo(
                id=s.id,
                ip_addr=s.ip_addr,
                user_agent=s.user_agent,
                created_at=s.created_at,
                last_used_at=s.last_used_at,
                expires_at=s.expires_at,
                is_current=s.id == current_session_id,
            )
            for s in sessions
            if not s.is_expired(now)
        ]

    async def login_history(self, user_id: str, *, limit: int = 10) -> List[SessionInfo]:
        sessions = await self.db.call("list_user_sessions", user_id)
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return [
            SessionInfo(
                id=s.id,
                ip_addr=s.ip_addr,
                user_agent=s.user_agent,
                created_at=s.created_at,
                last_used_at=s.last_used_at,
                expires_at=s.expires_at,
            )
            for s in sessions[:limit]
        ]

    async def recent(self, user_id: str, window: timedelta) -> List[Session]:
        return await self.db.call(
            "list_sessions_created_since", user_id, self._clock() - window
        )

    async def cleanup_expired(self) -> int:
        removed = await self.db.call("delete_expired_sessions", self._clock())
        if removed:
            logger.info("expired_sessions_removed", count=removed)
        return removed
