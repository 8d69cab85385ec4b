"""
Shared authentication state for Deribit client handles.

HttpSession is the single source of truth for the current bearer token.
Every clone of a DeribitClient holds the same HttpSession, so one
authentication is visible to all of them.
"""

import asyncio
import time
from dataclasses import dataclass, field


@dataclass(frozen=True)
class AuthToken:
    """OAuth2 token as returned in the result of /public/auth.

    `issued_at` is recorded when the token is created so expiry can be
    derived from `expires_in`.
    """
    access_token: str = field(repr=False)
    token_type: str = "Bearer"
    expires_in: int = 0
    refresh_token: str | None = field(default=None, repr=False)
    scope: str = ""
    issued_at: float = field(default_factory=time.time)

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.expires_in

    def is_expired(self, margin: float = 0.0) -> bool:
        """True once `now + margin` reaches the expiry time.

        A token without `expires_in` (0) has no known expiry and never
        expires locally; the server rejecting it triggers renewal instead.
        """
        if self.expires_in <= 0:
            return False
        return time.time() + margin >= self.expires_at

    def header_value(self) -> str:
        return f"{self.token_type} {self.access_token}"

    @classmethod
    def from_dict(cls, data: dict, issued_at: float | None = None) -> 'AuthToken':
        """Build a token from an auth result dict.

        Raises KeyError when access_token is missing.
        """
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type") or "Bearer",
            expires_in=int(data.get("expires_in", 0)),
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope", ""),
            issued_at=time.time() if issued_at is None else issued_at,
        )


class HttpSession:
    """Lock-guarded holder of the current AuthToken.

    States: unauthenticated (no token) and authenticated (token held).
    The lock is held only to read or replace the token, never across I/O.
    """

    def __init__(self):
        self._auth_token: AuthToken | None = None
        self._lock = asyncio.Lock()

    async def set_auth_token(self, token: AuthToken) -> None:
        async with self._lock:
            self._auth_token = token

    async def auth_token(self) -> AuthToken | None:
        # AuthToken is frozen, so handing out the instance is a safe copy
        async with self._lock:
            return self._auth_token

    async def is_authenticated(self) -> bool:
        """True while a token is held. Does not look at expiry."""
        async with self._lock:
            return self._auth_token is not None

    async def clear_auth_token(self) -> None:
        async with self._lock:
            self._auth_token = None

    async def is_token_expired(self, margin: float = 0.0) -> bool:
        """True when no token is held or the held token is expired."""
        async with self._lock:
            token = self._auth_token
        return token is None or token.is_expired(margin)

    async def authorization_header(self) -> str | None:
        """Value for the HTTP Authorization header, or None when unauthenticated."""
        token = await self.auth_token()
        if token is None:
            return None
        return token.header_value()
