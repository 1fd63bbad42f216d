"""
subby/auth/token_source.py

The two ways of minting a short-lived bearer token:

  - ServiceAccountTokenSource: signs a JWT assertion with a service account key
    and exchanges it at the OAuth2 token endpoint (RFC 7523 jwt-bearer grant).
  - MetadataTokenSource: asks the GCE metadata service for a token of the
    instance's default service account.

`TokenSource` is the union of both; callers only ever use `fetch_token()`.
Both normalize the response into a CachedToken whose absolute expiry is
computed from the clock reading taken when the response arrived.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Literal, Optional, Union

import aiohttp
from jose import jwt
from jose.exceptions import JOSEError

from subby.auth.metadata import TOKEN_PATH, metadata_get
from subby.errors import ExchangeFailedError, MetadataUnreachableError, RequestTimeoutError
from subby.models.credentials import CachedToken, ServiceAccountKey, TokenResponse
from subby.models.settings import PubSubSettings
from subby.models.validator import parse_json

logger = logging.getLogger(__name__)

JWT_BEARER_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"

Clock = Callable[[], float]


class ServiceAccountTokenSource:
    """Mint tokens through the OAuth2 JWT-bearer exchange."""

    kind: Literal["service_account"] = "service_account"

    def __init__(
        self,
        key: ServiceAccountKey,
        session: aiohttp.ClientSession,
        settings: PubSubSettings,
        clock: Clock = time.time,
    ) -> None:
        self._key = key
        self._session = session
        self._settings = settings
        self._clock = clock

    @property
    def key(self) -> ServiceAccountKey:
        return self._key

    @property
    def token_uri(self) -> str:
        return self._key.token_uri or self._settings.token_uri

    def _build_assertion(self, issued_at: int) -> str:
        """Sign the JWT assertion for the configured scope.

        Raises:
            ExchangeFailedError: If the private key cannot sign (bad PEM, wrong type).
        """
        claims = {
            "iss": self._key.client_email,
            "scope": self._settings.scope,
            "aud": self.token_uri,
            "iat": issued_at,
            "exp": issued_at + self._settings.token_lifetime_seconds,
        }
        headers = (
            {"kid": self._key.private_key_id} if self._key.private_key_id else None
        )
        try:
            return jwt.encode(
                claims, self._key.private_key, algorithm="RS256", headers=headers
            )
        except JOSEError as exc:
            raise ExchangeFailedError(
                f"Cannot sign assertion for {self._key.client_email}: "
                f"{type(exc).__name__}"
            ) from exc

    async def fetch_token(self, timeout: Optional[float] = None) -> CachedToken:
        """Exchange a freshly signed assertion for an access token.

        Args:
            timeout (Optional[float]): Overrides settings.request_timeout_seconds.

        Returns:
            CachedToken: The token and its absolute expiry.

        Raises:
            ExchangeFailedError: On transport failure, non-2xx, or malformed body.
            RequestTimeoutError: If the exchange exceeds the timeout.
        """
        total = timeout if timeout is not None else self._settings.request_timeout_seconds
        assertion = self._build_assertion(int(self._clock()))
        payload = {"grant_type": JWT_BEARER_GRANT_TYPE, "assertion": assertion}
        headers = {"User-Agent": self._settings.user_agent}

        logger.debug(
            "Requesting access token for %s from %s",
            self._key.client_email,
            self.token_uri,
        )
        try:
            async with self._session.post(
                self.token_uri,
                data=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=total),
            ) as resp:
                body = await resp.text()
                received_at = self._clock()
                if not 200 <= resp.status < 300:
                    raise ExchangeFailedError(
                        f"Token exchange for {self._key.client_email} failed: {resp.status}",
                        status=resp.status,
                    )
        except asyncio.TimeoutError as exc:
            raise RequestTimeoutError("Token exchange", total) from exc
        except aiohttp.ClientError as exc:
            raise ExchangeFailedError(f"Token exchange request failed: {exc}") from exc

        parsed = parse_json(
            body,
            TokenResponse,
            lambda msg: ExchangeFailedError(f"Malformed token response: {msg}"),
        )
        return parsed.to_cached(received_at)


class MetadataTokenSource:
    """Fetch tokens for the default service account of the current GCE instance."""

    kind: Literal["metadata"] = "metadata"

    def __init__(
        self,
        session: aiohttp.ClientSession,
        settings: PubSubSettings,
        metadata_host: Optional[str] = None,
        clock: Clock = time.time,
    ) -> None:
        self._session = session
        self._settings = settings
        self._host = metadata_host or settings.metadata_host
        self._clock = clock

    @property
    def metadata_host(self) -> str:
        return self._host

    async def fetch_token(self, timeout: Optional[float] = None) -> CachedToken:
        """Fetch a token from the metadata service.

        Raises:
            MetadataUnreachableError: Host unreachable, non-2xx, or malformed body.
            RequestTimeoutError: If the request exceeds the timeout.
        """
        total = timeout if timeout is not None else self._settings.request_timeout_seconds
        logger.debug("Requesting access token from metadata host %s", self._host)
        body = await metadata_get(
            self._session,
            self._host,
            TOKEN_PATH,
            timeout=total,
            user_agent=self._settings.user_agent,
        )
        received_at = self._clock()
        parsed = parse_json(
            body,
            TokenResponse,
            lambda msg: MetadataUnreachableError(f"Malformed metadata token: {msg}"),
        )
        return parsed.to_cached(received_at)


TokenSource = Union[ServiceAccountTokenSource, MetadataTokenSource]
