"""FastAPI dependencies for session authentication.

``authenticate_user`` extracts the bearer token, verifies it, loads the
session it names, and attaches a UserContext to ``request.state.user``.
Every failure is an AuthenticationError carrying a machine-readable code;
the application maps it to a 401 response.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Request
from pydantic import BaseModel, Field

from src.autopr.auth.sessions import SessionNotFoundError
from src.autopr.auth.tokens import TokenExpiredError, TokenError

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


class AuthenticationError(Exception):
    """Authentication failed; maps to HTTP 401."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)

    def to_response(self) -> Dict[str, Any]:
        return {"error": "Unauthorized", "message": self.message, "code": self.code}


class UserContext(BaseModel):
    """The authenticated caller, as attached to the request."""

    user_id: int

    username: str

    email: Optional[str] = None

    name: Optional[str] = None

    avatar: Optional[str] = None

    profile_url: Optional[str] = None

    session_id: str

    github_access_token: Optional[str] = Field(default=None, repr=False)

    created_at: datetime

    expired_at: datetime

    def public_view(self) -> Dict[str, Any]:
        """Camel-cased profile without the GitHub access token."""
        return {
            "userId": self.user_id,
            "username": self.username,
            "email": self.email,
            "name": self.name,
            "avatar": self.avatar,
            "profileUrl": self.profile_url,
            "sessionId": self.session_id,
            "createdAt": self.created_at.isoformat(),
            "expiredAt": self.expired_at.isoformat(),
        }


def extract_bearer_token(header: Optional[str]) -> str:
    """Return the token from an ``Authorization: Bearer <token>`` header.

    Raises:
        AuthenticationError: NO_AUTHENTICATION_HEADER,
            INVALID_AUTHENTICATION_FORMAT or NO_TOKEN_PROVIDED.
    """
    if not header:
        raise AuthenticationError(
            "NO_AUTHENTICATION_HEADER", "No authorization header provided"
        )
    if not header.startswith(BEARER_PREFIX):
        raise AuthenticationError(
            "INVALID_AUTHENTICATION_FORMAT", "Invalid authorization header format"
        )
    token = header[len(BEARER_PREFIX):].strip()
    if not token:
        raise AuthenticationError(
            "NO_TOKEN_PROVIDED", "No authentication token provided"
        )
    return token


async def authenticate_user(request: Request) -> UserContext:
    """Authenticate the request's bearer token against a live session."""
    context = request.app.state.context
    token = extract_bearer_token(request.headers.get("authorization"))

    try:
        claims = context.tokens.verify_session_token(token)
    except TokenExpiredError as e:
        raise AuthenticationError("TOKEN_EXPIRED", "Session token has expired") from e
    except TokenError as e:
        raise AuthenticationError("INVALID_TOKEN", "Invalid session token") from e

    try:
        session = await context.sessions.verify_session(claims["sessionId"])
    except SessionNotFoundError as e:
        logger.info(
            "Session verification failed", extra={"session_id": claims["sessionId"]}
        )
        raise AuthenticationError(
            "SESSION_NOT_FOUND", "Session not found or expired"
        ) from e

    user = UserContext(
        user_id=session.user_id,
        username=session.username,
        email=session.email,
        name=session.name,
        avatar=session.avatar,
        profile_url=session.profile_url,
        session_id=session.session_id,
        github_access_token=session.github_access_token,
        created_at=session.created_at,
        expired_at=session.expired_at,
    )
    request.state.user = user
    logger.info(
        "User authenticated",
        extra={"username": user.username, "user_id": user.user_id},
    )
    return user


async def optional_authentication(request: Request) -> Optional[UserContext]:
    """Authenticate only when the service requires it for submissions."""
    if not request.app.state.context.settings.require_authentication:
        return None
    return await authenticate_user(request)
