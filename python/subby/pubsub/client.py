"""
subby/pubsub/client.py

An asynchronous Pub/Sub publisher:

  - PubSubBuilder: collects explicit credentials/project id, then resolves
    everything else from the environment exactly once in build().
  - PubSub: owns the aiohttp session, the resolved identity and the shared
    token cache; hands out Topic objects.
  - Topic: validates the topic exists and publishes messages to it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Type

import aiohttp

from subby.auth.resolver import ResolvedIdentity, resolve
from subby.auth.token_cache import TokenCache
from subby.auth.token_source import Clock
from subby.errors import (
    AuthError,
    RequestTimeoutError,
    TopicNotFoundError,
    UnauthorizedError,
    UnexpectedStatusError,
)
from subby.models.credentials import (
    CredentialsConfig,
    ServiceAccountKey,
    load_service_account_key,
)
from subby.models.settings import PubSubSettings
from subby.models.validator import parse_json
from subby.pubsub.message import PubSubMessages, PubSubResponse

logger = logging.getLogger(__name__)

_MAX_DETAIL_CHARS = 200


def check_status(status: int, body: str, topic: str) -> None:
    """Map a Pub/Sub response status onto the error taxonomy.

    Raises:
        TopicNotFoundError: On 404.
        UnauthorizedError: On 403.
        UnexpectedStatusError: On any other non-2xx.
    """
    if 200 <= status < 300:
        return
    if status == 404:
        raise TopicNotFoundError(topic)
    if status == 403:
        logger.error("Authorization failed for topic %s.", topic)
        raise UnauthorizedError(topic)
    raise UnexpectedStatusError(status, body.strip()[:_MAX_DETAIL_CHARS])


class PubSubBuilder:
    """Mutable collector for client options. Call build() once."""

    def __init__(self) -> None:
        self._project_id: Optional[str] = None
        self._key: Optional[ServiceAccountKey] = None
        self._settings: Optional[PubSubSettings] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._environ: Optional[Mapping[str, str]] = None
        self._clock: Clock = time.time

    def set_project_id(self, project_id: str) -> PubSubBuilder:
        self._project_id = project_id
        return self

    async def set_sa_key(self, keypath: str) -> PubSubBuilder:
        """Load a service account key file now; it wins over any discovered credentials."""
        self._key = await load_service_account_key(keypath)
        return self

    def set_sa_key_info(self, info: Mapping[str, Any]) -> PubSubBuilder:
        self._key = ServiceAccountKey.from_info(info)
        return self

    def set_settings(self, settings: PubSubSettings) -> PubSubBuilder:
        self._settings = settings
        return self

    def set_session(self, session: aiohttp.ClientSession) -> PubSubBuilder:
        """Use a caller-owned session; the client will not close it."""
        self._session = session
        return self

    def set_environ(self, environ: Mapping[str, str]) -> PubSubBuilder:
        """Resolve against this mapping instead of os.environ."""
        self._environ = environ
        return self

    def set_clock(self, clock: Clock) -> PubSubBuilder:
        self._clock = clock
        return self

    async def build(self) -> PubSub:
        """Resolve credentials and project id, and return a ready client.

        Raises:
            ConfigError: If credentials or the project id cannot be determined.
            MetadataUnreachableError: If the GCE project id lookup fails.
        """
        settings = self._settings or PubSubSettings()
        owns_session = self._session is None
        session = self._session or aiohttp.ClientSession()
        config = CredentialsConfig(
            explicit_project_id=self._project_id, explicit_key=self._key
        )
        try:
            identity = await resolve(
                config, session, settings, environ=self._environ, clock=self._clock
            )
        except BaseException:
            if owns_session:
                await session.close()
            raise
        return PubSub(
            identity,
            session,
            settings,
            owns_session=owns_session,
            clock=self._clock,
        )


class PubSub:
    """Client bound to one resolved identity.

    All topics share the session, the identity and a single TokenCache.
    """

    def __init__(
        self,
        identity: ResolvedIdentity,
        session: aiohttp.ClientSession,
        settings: PubSubSettings,
        *,
        owns_session: bool = False,
        clock: Clock = time.time,
    ) -> None:
        self._identity = identity
        self._session = session
        self._settings = settings
        self._owns_session = owns_session
        self._token_cache = TokenCache(
            identity.source,
            clock=clock,
            leeway_seconds=settings.token_expiry_leeway_seconds,
        )

    @staticmethod
    def builder() -> PubSubBuilder:
        return PubSubBuilder()

    @classmethod
    async def from_env(cls) -> PubSub:
        """Build a client purely from ambient credentials."""
        return await cls.builder().build()

    async def __aenter__(self) -> PubSub:
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the session if this client created it."""
        if self._owns_session and not self._session.closed:
            await self._session.close()

    @property
    def project_id(self) -> str:
        return self._identity.project_id

    @property
    def identity(self) -> ResolvedIdentity:
        return self._identity

    @property
    def settings(self) -> PubSubSettings:
        return self._settings

    @property
    def session(self) -> aiohttp.ClientSession:
        return self._session

    @property
    def token_cache(self) -> TokenCache:
        return self._token_cache

    def topic(self, topic: str) -> Topic:
        if not topic:
            raise ValueError("Topic name must not be empty.")
        return Topic(self, topic)


class Deadline:
    """A single time budget shared by every network call of one operation.

    Attributes:
        operation (str): Label used in the timeout error.
        timeout (float): The whole budget in seconds.
    """

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        self._loop = asyncio.get_running_loop()
        self._expires_at = self._loop.time() + timeout

    def expired(self) -> RequestTimeoutError:
        return RequestTimeoutError(self.operation, self.timeout)

    def remaining(self) -> float:
        """Seconds left in the budget.

        Raises:
            RequestTimeoutError: If the budget is used up.
        """
        left = self._expires_at - self._loop.time()
        if left <= 0:
            raise self.expired()
        return left


class Topic:
    """A publish target within the client's project."""

    def __init__(self, client: PubSub, name: str) -> None:
        self._client = client
        self._name = name
        self._validated = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def path(self) -> str:
        return f"projects/{self._client.project_id}/topics/{self._name}"

    @property
    def url(self) -> str:
        return f"{self._client.settings.pubsub_endpoint}/{self.path}"

    def _deadline(self, operation: str, timeout: Optional[float]) -> Deadline:
        total = (
            timeout
            if timeout is not None
            else self._client.settings.request_timeout_seconds
        )
        return Deadline(f"{operation} {self.path}", total)

    async def _headers(self, deadline: Deadline) -> Dict[str, str]:
        # A new token lookup per request; headers are never reused.
        try:
            token = await self._client.token_cache.get_token(
                timeout=deadline.remaining()
            )
        except RequestTimeoutError as exc:
            raise deadline.expired() from exc
        return {
            "Authorization": f"Bearer {token}",
            "User-Agent": self._client.settings.user_agent,
        }

    async def _send(
        self,
        method: str,
        url: str,
        deadline: Deadline,
        *,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, str]:
        headers = await self._headers(deadline)
        try:
            async with self._client.session.request(
                method,
                url,
                json=json_body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=deadline.remaining()),
            ) as resp:
                return resp.status, await resp.text()
        except asyncio.TimeoutError as exc:
            raise deadline.expired() from exc
        except aiohttp.ClientError as exc:
            raise AuthError(f"{method} {self.path} failed: {exc}") from exc

    async def _validate(self, deadline: Deadline) -> None:
        status, body = await self._send("GET", self.url, deadline)
        check_status(status, body, self._name)
        self._validated = True

    async def validate(self, timeout: Optional[float] = None) -> None:
        """Check that the topic exists and is accessible. Not retried.

        Args:
            timeout (Optional[float]): Budget in seconds for the token lookup and the check.

        Raises:
            TopicNotFoundError: On 404.
            UnauthorizedError: On 403.
            UnexpectedStatusError: On any other non-2xx.
            RequestTimeoutError: If the budget runs out.
        """
        await self._validate(self._deadline("validate", timeout))

    async def _publish(
        self, messages: PubSubMessages, timeout: Optional[float]
    ) -> List[str]:
        deadline = self._deadline("publish to", timeout)
        if self._client.settings.validate_topics and not self._validated:
            await self._validate(deadline)
        status, body = await self._send(
            "POST",
            f"{self.url}:publish",
            deadline,
            json_body=messages.to_body(),
        )
        check_status(status, body, self._name)
        response = parse_json(
            body,
            PubSubResponse,
            lambda msg: UnexpectedStatusError(status, f"malformed publish response: {msg}"),
        )
        logger.info(
            "Published %d message(s) to %s", len(response.message_ids), self.path
        )
        return response.message_ids

    async def publish(
        self,
        message: Any,
        attributes: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Publish one message and return its message id.

        Args:
            message (Any): JSON-serializable value, pydantic model, or bytes.
            attributes (Optional[Dict[str, str]]): Message attributes.
            timeout (Optional[float]): Budget in seconds for the whole operation,
                covering token refresh, the topic check and the publish call.

        Returns:
            str: The server-assigned message id.

        Raises:
            RequestTimeoutError: If the budget runs out.
        """
        ids = await self._publish(PubSubMessages.oneshot(message, attributes), timeout)
        if len(ids) != 1:
            raise UnexpectedStatusError(200, f"expected 1 message id, got {len(ids)}")
        return ids[0]

    async def publish_many(
        self, messages: Iterable[Any], timeout: Optional[float] = None
    ) -> List[str]:
        """Publish several messages in one request, returning ids in order."""
        batch = PubSubMessages.from_values(messages)
        if not batch.messages:
            raise ValueError("publish_many() needs at least one message.")
        return await self._publish(batch, timeout)
