"""Authenticated sessions.

A session records who signed in and the GitHub access token obtained for
them. Sessions outlive no longer than their ``expired_at``; an expired
session is treated exactly like a missing one.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class SessionNotFoundError(Exception):
    """Raised when a session does not exist or has expired."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found or expired")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Session(BaseModel):
    """A signed-in user's session."""

    session_id: str = Field(..., min_length=1)

    user_id: int

    username: str = Field(..., min_length=1)

    email: Optional[str] = None

    name: Optional[str] = None

    avatar: Optional[str] = None

    profile_url: Optional[str] = None

    github_access_token: Optional[str] = Field(default=None, repr=False)

    created_at: datetime = Field(default_factory=_utcnow)

    expired_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expired_at


class SessionStore(Protocol):
    """Persistence for sessions."""

    async def create_session(
        self,
        user_id: int,
        username: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        profile_url: Optional[str] = None,
        github_access_token: Optional[str] = None,
    ) -> Session:
        ...

    async def verify_session(self, session_id: str) -> Session:
        ...

    async def delete_session(self, session_id: str) -> bool:
        ...


class InMemorySessionStore:
    """Process-local session store.

    Attributes:
        ttl: Lifetime of newly created sessions.
    """

    def __init__(self, ttl: timedelta = timedelta(days=7)):
        self.ttl = ttl
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def create_session(
        self,
        user_id: int,
        username: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        profile_url: Optional[str] = None,
        github_access_token: Optional[str] = None,
    ) -> Session:
        now = _utcnow()
        session = Session(
            session_id=uuid.uuid4().hex,
            user_id=user_id,
            username=username,
            email=email,
            name=name,
            avatar=avatar,
            profile_url=profile_url,
            github_access_token=github_access_token,
            created_at=now,
            expired_at=now + self.ttl,
        )
        async with self._lock:
            self._sessions[session.session_id] = session
        logger.info(
            "Session created",
            extra={"user_id": user_id, "session_id": session.session_id},
        )
        return session

    async def verify_session(self, session_id: str) -> Session:
        """Return the live session for ``session_id``.

        Raises:
            SessionNotFoundError: If it is unknown or expired. Expired
                sessions are evicted.
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.is_expired():
                del self._sessions[session_id]
                raise SessionNotFoundError(session_id)
            return session.model_copy()

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock:
            return self._sessions.pop(session_id, None) is not None
