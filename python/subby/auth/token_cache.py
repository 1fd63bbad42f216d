"""
subby/auth/token_cache.py

Expiry-aware memoization in front of a token source. Refresh is lazy: the
first get_token() call at or after expiry fetches a new token. There is no
background renewal.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from subby.auth.token_source import Clock, TokenSource
from subby.errors import AuthError
from subby.models.credentials import CachedToken

logger = logging.getLogger(__name__)


class TokenCache:
    """Holds at most one CachedToken and replaces it wholesale on refresh.

    The check-fetch-store sequence runs under an asyncio.Lock, so concurrent
    callers that observe an expired token trigger a single fetch and share
    its result.
    """

    def __init__(
        self,
        source: TokenSource,
        clock: Clock = time.time,
        leeway_seconds: float = 0.0,
    ) -> None:
        """
        Args:
            source (TokenSource): Where fresh tokens come from.
            clock (Clock): Returns the current epoch time in seconds.
            leeway_seconds (float): Treat tokens as expired this long before expires_at.
        """
        self._source = source
        self._clock = clock
        self._leeway = leeway_seconds
        self._token: Optional[CachedToken] = None
        self._lock = asyncio.Lock()

    @property
    def source(self) -> TokenSource:
        return self._source

    @property
    def token(self) -> Optional[CachedToken]:
        """The currently held token, which may be expired. Never use it for auth."""
        return self._token

    def invalidate(self) -> None:
        """Drop the held token so the next get_token() fetches a new one."""
        self._token = None

    def _usable(self, token: Optional[CachedToken]) -> bool:
        return token is not None and not token.is_expired(self._clock(), self._leeway)

    async def get_token(self, timeout: Optional[float] = None) -> str:
        """Return a bearer token that has not expired.

        Args:
            timeout (Optional[float]): Timeout for the underlying fetch, if one happens.

        Returns:
            str: The token value.

        Raises:
            AuthError: If a refresh fails, or yields a token that is already expired.
            RequestTimeoutError: If a refresh exceeds the timeout.
        """
        held = self._token
        if held is not None and self._usable(held):
            return held.value

        async with self._lock:
            # Another task may have refreshed while we waited for the lock.
            held = self._token
            if held is not None and self._usable(held):
                return held.value

            logger.debug("Refreshing access token via %s source.", self._source.kind)
            fresh = await self._source.fetch_token(timeout=timeout)
            self._token = fresh
            if not self._usable(fresh):
                raise AuthError("Token source returned a token that is already expired.")
            return fresh.value
