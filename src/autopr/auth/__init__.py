"""Session tokens, session storage and request authentication."""

from src.autopr.auth.dependencies import (
    AuthenticationError,
    UserContext,
    authenticate_user,
    extract_bearer_token,
    optional_authentication,
)
from src.autopr.auth.sessions import (
    InMemorySessionStore,
    Session,
    SessionNotFoundError,
    SessionStore,
)
from src.autopr.auth.tokens import (
    InvalidTokenError,
    SessionTokenManager,
    TokenError,
    TokenExpiredError,
    decode_token_unsafe,
    generate_jwt_secret,
)

__all__ = [
    "AuthenticationError",
    "InMemorySessionStore",
    "InvalidTokenError",
    "Session",
    "SessionNotFoundError",
    "SessionStore",
    "SessionTokenManager",
    "TokenError",
    "TokenExpiredError",
    "UserContext",
    "authenticate_user",
    "decode_token_unsafe",
    "extract_bearer_token",
    "generate_jwt_secret",
    "optional_authentication",
]
