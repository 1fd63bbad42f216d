# subby/models/settings.py

from __future__ import annotations

from pydantic import Field
from pydantic.functional_validators import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PubSubSettings(BaseSettings):
    """
    Transport settings for the Pub/Sub client and its token sources.
    By default, these fields map to environment variables prefixed with `SUBBY_`.
    For example, `SUBBY_REQUEST_TIMEOUT_SECONDS`, `SUBBY_METADATA_HOST`, etc.

    Credential discovery variables (GOOGLE_APPLICATION_CREDENTIALS,
    GCLOUD_PROJECT_ID, GCE_METADATA_HOST) are not settings: they are read
    once by the resolver when a client is built.

    Metadata host order: an explicitly set `metadata_host` (constructor
    argument or SUBBY_METADATA_HOST) wins, then GCE_METADATA_HOST, then the
    default `metadata.google.internal`.
    """

    model_config = SettingsConfigDict(env_prefix="SUBBY_", frozen=True)

    pubsub_endpoint: str = "https://pubsub.googleapis.com/v1"
    token_uri: str = "https://oauth2.googleapis.com/token"
    metadata_host: str = "metadata.google.internal"
    scope: str = "https://www.googleapis.com/auth/pubsub"
    user_agent: str = "subby/0.1.0"
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    metadata_check_timeout_seconds: float = Field(default=3.0, gt=0)
    token_lifetime_seconds: int = Field(default=3600, gt=0, le=3600)
    # Tokens are treated as expired this many seconds before expires_at.
    token_expiry_leeway_seconds: float = Field(default=0.0, ge=0, le=300)
    validate_topics: bool = True

    @model_validator(mode="after")
    def check_leeway(self) -> PubSubSettings:
        """
        Ensure the expiry leeway is shorter than the token lifetime, otherwise
        every freshly minted token would already count as expired.
        """
        if self.token_expiry_leeway_seconds >= self.token_lifetime_seconds:
            raise ValueError(
                "token_expiry_leeway_seconds must be less than token_lifetime_seconds."
            )
        return self
