"""
subby/auth/resolver.py

One-shot credential discovery. Given the explicit CredentialsConfig and a
snapshot of the process environment, choose exactly one token source and the
project id it will publish under.

Source precedence (first match wins):
  1) explicit service account key
  2) key file named by GOOGLE_APPLICATION_CREDENTIALS
  3) reachable GCE metadata service
Project id precedence:
  1) explicit project id
  2) GCLOUD_PROJECT_ID
  3) metadata service (only when the metadata source was selected)
  4) project_id embedded in the service account key
"""

from __future__ import annotations

import logging
import os
import time
from typing import Mapping, Optional

import aiohttp
from pydantic import BaseModel, ConfigDict

from subby.auth.metadata import gce_project_id, is_on_gce
from subby.auth.token_source import (
    Clock,
    MetadataTokenSource,
    ServiceAccountTokenSource,
    TokenSource,
)
from subby.errors import NoCredentialsError, NoProjectIdError
from subby.models.credentials import (
    CredentialsConfig,
    ServiceAccountKey,
    load_service_account_key,
)
from subby.models.settings import PubSubSettings

logger = logging.getLogger(__name__)

CREDENTIALS_ENV_VAR = "GOOGLE_APPLICATION_CREDENTIALS"
PROJECT_ID_ENV_VAR = "GCLOUD_PROJECT_ID"
METADATA_HOST_ENV_VAR = "GCE_METADATA_HOST"


class ResolvedIdentity(BaseModel):
    """The frozen outcome of discovery, shared read-only by every topic of a client."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    project_id: str
    source: TokenSource


async def _discover_key(
    config: CredentialsConfig, environ: Mapping[str, str]
) -> Optional[ServiceAccountKey]:
    if config.explicit_key is not None:
        logger.info("Using explicitly supplied service account key.")
        return config.explicit_key
    keypath = environ.get(CREDENTIALS_ENV_VAR)
    if keypath:
        logger.info("Using service account key file from %s.", CREDENTIALS_ENV_VAR)
        return await load_service_account_key(keypath)
    return None


async def resolve(
    config: CredentialsConfig,
    session: aiohttp.ClientSession,
    settings: PubSubSettings,
    environ: Optional[Mapping[str, str]] = None,
    clock: Clock = time.time,
) -> ResolvedIdentity:
    """Discover credentials and the project id.

    Args:
        config (CredentialsConfig): Explicit inputs; take precedence over the environment.
        session (aiohttp.ClientSession): Session the chosen source will use.
        settings (PubSubSettings): Endpoints and timeouts.
        environ (Optional[Mapping[str, str]]): Environment to inspect. Defaults to
            a snapshot of os.environ taken now.
        clock (Clock): Time function handed to the token source.

    Returns:
        ResolvedIdentity: The project id and the single selected token source.

    Raises:
        NoCredentialsError: If no strategy is available.
        NoProjectIdError: If no project id can be determined.
        KeyFileError: If a key file is named but unusable.
        MetadataUnreachableError: If the project id lookup on GCE fails.
    """
    env = dict(os.environ if environ is None else environ)
    metadata_host = _metadata_host(settings, env)

    source: TokenSource
    key = await _discover_key(config, env)
    if key is not None:
        source = ServiceAccountTokenSource(key, session, settings, clock=clock)
    elif await is_on_gce(
        session,
        metadata_host,
        timeout=settings.metadata_check_timeout_seconds,
        user_agent=settings.user_agent,
    ):
        logger.info("Using GCE metadata credentials from %s.", metadata_host)
        source = MetadataTokenSource(session, settings, metadata_host, clock=clock)
    else:
        raise NoCredentialsError()

    project_id = await _resolve_project_id(config, env, source, session, settings)
    logger.info("Resolved project id %s (credentials: %s).", project_id, source.kind)
    return ResolvedIdentity(project_id=project_id, source=source)


def _metadata_host(settings: PubSubSettings, env: Mapping[str, str]) -> str:
    # An explicitly set metadata_host (argument or SUBBY_METADATA_HOST) beats GCE_METADATA_HOST.
    if "metadata_host" in settings.model_fields_set:
        return settings.metadata_host
    return env.get(METADATA_HOST_ENV_VAR) or settings.metadata_host


async def _resolve_project_id(
    config: CredentialsConfig,
    env: Mapping[str, str],
    source: TokenSource,
    session: aiohttp.ClientSession,
    settings: PubSubSettings,
) -> str:
    if config.explicit_project_id:
        return config.explicit_project_id
    env_project = env.get(PROJECT_ID_ENV_VAR)
    if env_project:
        return env_project
    if isinstance(source, MetadataTokenSource):
        return await gce_project_id(
            session,
            source.metadata_host,
            timeout=settings.request_timeout_seconds,
            user_agent=settings.user_agent,
        )
    if source.key.project_id:
        return source.key.project_id
    raise NoProjectIdError()
