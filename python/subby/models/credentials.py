"""
subby/models/credentials.py

Pydantic models for credential material and the values derived from it:

  - ServiceAccountKey: parsed service account JSON key (only the fields we use).
  - CredentialsConfig: explicit, caller-supplied inputs to credential resolution.
  - CachedToken: a bearer token with an absolute expiry.
  - TokenResponse: wire shape shared by the OAuth2 and metadata token endpoints.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

import aiofiles
from pydantic import BaseModel, ConfigDict, Field, field_validator

from subby.errors import KeyFileError
from subby.models.validator import parse_json, validate_type


class ServiceAccountKey(BaseModel):
    """Pydantic model for the parts of a GCP service account key we need.

    Extra fields present in a console-downloaded key (client_id, auth_uri, ...)
    are ignored.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    private_key: str = Field(repr=False)
    client_email: str
    project_id: Optional[str] = None
    private_key_id: Optional[str] = Field(default=None, repr=False)
    token_uri: Optional[str] = None

    @field_validator("private_key", "client_email")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value

    @classmethod
    def from_info(
        cls, info: Mapping[str, Any], path: Optional[str] = None
    ) -> ServiceAccountKey:
        """Build a key from an already-decoded JSON mapping.

        Raises:
            KeyFileError: If mandatory fields are missing or empty.
        """
        return validate_type(info, cls, lambda msg: KeyFileError(msg, path))

    @classmethod
    def from_json(cls, text: str, path: Optional[str] = None) -> ServiceAccountKey:
        """Parse a key from its JSON text.

        Raises:
            KeyFileError: On malformed JSON or missing mandatory fields.
        """
        return parse_json(text, cls, lambda msg: KeyFileError(msg, path))


async def load_service_account_key(path: str) -> ServiceAccountKey:
    """Read and parse a service account key file.

    Args:
        path (str): Filesystem path of the JSON key.

    Returns:
        ServiceAccountKey: The parsed key.

    Raises:
        KeyFileError: If the file cannot be read or does not hold a valid key.
    """
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            text = await f.read()
    except OSError as exc:
        raise KeyFileError(f"Cannot read key file: {exc.strerror}", path) from exc
    return ServiceAccountKey.from_json(text, path)


class CredentialsConfig(BaseModel):
    """Explicit inputs to credential resolution. Both fields are optional;
    whatever is missing is discovered from the environment."""

    model_config = ConfigDict(frozen=True)

    explicit_project_id: Optional[str] = None
    explicit_key: Optional[ServiceAccountKey] = None


class CachedToken(BaseModel):
    """A bearer token and the absolute epoch time at which it stops being valid."""

    model_config = ConfigDict(frozen=True)

    value: str = Field(repr=False)
    expires_at: float

    def is_expired(self, now: float, leeway: float = 0.0) -> bool:
        return self.expires_at - leeway <= now


class TokenResponse(BaseModel):
    """Body returned by both the OAuth2 token endpoint and the metadata token path."""

    access_token: str = Field(min_length=1, repr=False)
    expires_in: int
    token_type: str = "Bearer"

    def to_cached(self, received_at: float) -> CachedToken:
        """Convert the relative `expires_in` into an absolute expiry.

        Args:
            received_at (float): Clock reading taken when the response arrived.
        """
        return CachedToken(
            value=self.access_token, expires_at=received_at + self.expires_in
        )
