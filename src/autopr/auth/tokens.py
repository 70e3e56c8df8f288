"""Session tokens.

Session tokens are HS256 JWTs carrying the session id and the user id.
The token only proves which session the caller claims; the session
itself must still exist in the SessionStore for a request to pass.

Claims:
{
  "sessionId": "9b1d...",
  "userId": 583231,
  "iat": 1760745600,
  "exp": 1761350400
}
"""

import base64
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
SECONDS_PER_DAY = 24 * 60 * 60


class TokenError(Exception):
    """Base class for session token failures."""


class TokenExpiredError(TokenError):
    """The token's ``exp`` claim is in the past."""


class InvalidTokenError(TokenError):
    """The token is malformed, badly signed, or lacks required claims."""


def generate_jwt_secret(length: int = 64) -> str:
    """Return a random base64 signing secret of ``length`` bytes."""
    return base64.b64encode(secrets.token_bytes(length)).decode("ascii")


def decode_token_unsafe(token: str) -> Optional[Dict[str, Any]]:
    """Decode claims without checking signature or expiry.

    Only for diagnostics; never use the result to authorize anything.
    Returns None if the token cannot be decoded at all.
    """
    try:
        return jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": False},
            algorithms=[ALGORITHM],
        )
    except jwt.PyJWTError:
        return None


class SessionTokenManager:
    """Issues and verifies session tokens.

    Attributes:
        expire_days: Lifetime of a newly issued token.

    Example:
        >>> tokens = SessionTokenManager("signing-secret")
        >>> token = tokens.generate_session_token("abc123", 42)
        >>> tokens.verify_session_token(token)["userId"]
        42
    """

    def __init__(self, secret: str, expire_days: int = 7):
        if not secret:
            raise ValueError("Session signing secret cannot be empty")
        if expire_days < 1:
            raise ValueError("expire_days must be at least 1")
        self._secret = secret
        self.expire_days = expire_days

    @property
    def lifetime(self) -> timedelta:
        return timedelta(days=self.expire_days)

    def generate_session_token(
        self,
        session_id: str,
        user_id: int,
        now: Optional[datetime] = None,
    ) -> str:
        """Sign a token for ``session_id`` owned by ``user_id``."""
        issued_at = now or datetime.now(timezone.utc)
        payload = {
            "sessionId": session_id,
            "userId": user_id,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + self.lifetime).timestamp()),
        }
        token = jwt.encode(payload, self._secret, algorithm=ALGORITHM)
        logger.debug(
            "Generated session token",
            extra={"user_id": user_id, "session_id": session_id},
        )
        return token

    def verify_session_token(self, token: str) -> Dict[str, Any]:
        """Verify signature and expiry and return the claims.

        Raises:
            TokenExpiredError: If the token has expired.
            InvalidTokenError: If the token is empty, malformed, badly
                signed, or missing sessionId/userId.
        """
        if not token or not token.strip():
            raise InvalidTokenError("Session token is required")

        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"require": ["exp", "iat"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenExpiredError("Session token has expired") from e
        except jwt.PyJWTError as e:
            logger.info("Session token verification failed: %s", e)
            raise InvalidTokenError("Invalid session token") from e

        if not claims.get("sessionId") or claims.get("userId") is None:
            raise InvalidTokenError("Session token is missing required claims")
        return claims

    def refresh_session_token(self, token: str) -> str:
        """Issue a fresh token for the same session and user.

        Raises:
            TokenError: If ``token`` does not verify.
        """
        claims = self.verify_session_token(token)
        return self.generate_session_token(claims["sessionId"], claims["userId"])

    def is_token_expired(self, token: str) -> Optional[bool]:
        """True/False from the unverified ``exp`` claim, None if absent."""
        claims = decode_token_unsafe(token)
        if not claims or "exp" not in claims:
            return None
        return datetime.now(timezone.utc).timestamp() > claims["exp"]
