"""
subby/errors.py

Exception hierarchy for credential discovery, token acquisition and publishing.

    PubSubError
      ConfigError          -- terminal, nothing to retry
        NoCredentialsError
        NoProjectIdError
        KeyFileError
      AuthError            -- failed token fetch or rejected publish
        ExchangeFailedError
        MetadataUnreachableError
        TopicNotFoundError
        UnauthorizedError
        UnexpectedStatusError
      RequestTimeoutError

Messages never carry bearer tokens, assertions or private key material.
"""

from __future__ import annotations

from typing import Optional


class PubSubError(Exception):
    """Base class for every error raised by subby."""


class ConfigError(PubSubError):
    """Credentials or project id could not be determined from the environment."""


class NoCredentialsError(ConfigError):
    def __init__(self) -> None:
        super().__init__(
            "Failed to discover authentication credentials from environment"
        )


class NoProjectIdError(ConfigError):
    def __init__(self) -> None:
        super().__init__("No project ID found (is your keyfile missing data?)")


class KeyFileError(ConfigError):
    """Service account key material is unreadable or malformed.

    Attributes:
        path (Optional[str]): The key file path, if the key came from a file.
    """

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        if path is not None:
            message = f"{message} (key file: {path})"
        super().__init__(message)
        self.path = path


class AuthError(PubSubError):
    """A token could not be obtained, or the service rejected a request.

    Attributes:
        status (Optional[int]): The HTTP status code, if a response was received.
    """

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ExchangeFailedError(AuthError):
    """The OAuth2 JWT-bearer exchange failed or returned an unusable body."""


class MetadataUnreachableError(AuthError):
    """The managed-instance metadata service could not be used."""


class TopicNotFoundError(AuthError):
    def __init__(self, topic: str) -> None:
        super().__init__(f"Topic '{topic}' does not exist", status=404)
        self.topic = topic


class UnauthorizedError(AuthError):
    def __init__(self, topic: str) -> None:
        super().__init__(
            f"Authorization failed for topic '{topic}' (insufficient permissions)",
            status=403,
        )
        self.topic = topic


class UnexpectedStatusError(AuthError):
    def __init__(self, status: int, detail: str = "") -> None:
        message = f"Unexpected response status {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, status=status)


class RequestTimeoutError(PubSubError):
    """An outbound request did not complete within its timeout.

    Attributes:
        timeout (Optional[float]): The timeout in seconds that was exceeded.
    """

    def __init__(self, operation: str, timeout: Optional[float] = None) -> None:
        suffix = f" after {timeout}s" if timeout is not None else ""
        super().__init__(f"{operation} timed out{suffix}")
        self.timeout = timeout
