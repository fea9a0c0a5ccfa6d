from __future__ import annotations

import time
from typing import Callable, Optional

import jwt

"""
Bearer tokens
-------------
The relay only needs verify(token) -> user id; issuing tokens belongs to the
login surface. TokenAuthenticator implements both as HS256 JWTs carrying
{userId, iat, exp}. Expiry is checked against the wall clock by PyJWT.
"""

NO_TOKEN = "Authentication error: No token provided"
INVALID_TOKEN = "Authentication error: Invalid token"

JWT_ALGORITHM = "HS256"


class AuthError(Exception):
    """Raised with one of the reason strings above."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class Authenticator:
    def verify(self, token: Optional[str]) -> str:
        raise NotImplementedError


class TokenAuthenticator(Authenticator):
    def __init__(
        self,
        secret: str | bytes,
        *,
        ttl_secs: int = 86400,
        now: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret
        self.ttl_secs = ttl_secs
        self.now = now

    def issue(self, user_id: str) -> str:
        if not user_id:
            raise ValueError("user_id is required")
        issued = int(self.now())
        claims = {"userId": user_id, "iat": issued, "exp": issued + self.ttl_secs}
        return jwt.encode(claims, self._secret, algorithm=JWT_ALGORITHM)

    def verify(self, token: Optional[str]) -> str:
        if not token:
            raise AuthError(NO_TOKEN)
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["exp", "userId"]},
            )
        except (jwt.ExpiredSignatureError, jwt.InvalidTokenError) as exc:
            raise AuthError(INVALID_TOKEN) from exc

        user_id = claims.get("userId")
        if not isinstance(user_id, str) or not user_id:
            raise AuthError(INVALID_TOKEN)
        return user_id


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an Authorization header value."""
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


__all__ = [
    "AuthError",
    "Authenticator",
    "TokenAuthenticator",
    "bearer_token",
    "NO_TOKEN",
    "INVALID_TOKEN",
    "JWT_ALGORITHM",
]
