"""
subby/auth/metadata.py

Thin helpers for the GCE metadata service:

  - metadata_get(): GET a computeMetadata/v1 path with the mandatory
    `Metadata-Flavor: Google` header and return the body text.
  - is_on_gce(): reachability check used during credential discovery.
  - gce_project_id(): the project id of the instance we run on.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict

import aiohttp

from subby.errors import MetadataUnreachableError, RequestTimeoutError

logger = logging.getLogger(__name__)

METADATA_FLAVOR_HEADER = "Metadata-Flavor"
METADATA_FLAVOR_VALUE = "Google"

TOKEN_PATH = "instance/service-accounts/default/token"
PROJECT_ID_PATH = "project/project-id"


def metadata_url(host: str, path: str = "") -> str:
    return f"http://{host}/computeMetadata/v1/{path}"


def metadata_headers(user_agent: str) -> Dict[str, str]:
    return {
        METADATA_FLAVOR_HEADER: METADATA_FLAVOR_VALUE,
        "User-Agent": user_agent,
    }


async def metadata_get(
    session: aiohttp.ClientSession,
    host: str,
    path: str,
    *,
    timeout: float,
    user_agent: str,
) -> str:
    """GET a metadata path and return the response body.

    Args:
        session (aiohttp.ClientSession): Shared HTTP session.
        host (str): Metadata host (or host:port).
        path (str): Path under /computeMetadata/v1/.
        timeout (float): Total request timeout in seconds.
        user_agent (str): User-Agent header value.

    Returns:
        str: The response body.

    Raises:
        MetadataUnreachableError: If the host cannot be reached or answers non-2xx.
        RequestTimeoutError: If the request exceeds `timeout`.
    """
    url = metadata_url(host, path)
    try:
        async with session.get(
            url,
            headers=metadata_headers(user_agent),
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            body = await resp.text()
            if not 200 <= resp.status < 300:
                raise MetadataUnreachableError(
                    f"Metadata request for '{path}' failed: {resp.status}",
                    status=resp.status,
                )
            return body
    except asyncio.TimeoutError as exc:
        raise RequestTimeoutError(f"Metadata request for '{path}'", timeout) from exc
    except aiohttp.ClientError as exc:
        raise MetadataUnreachableError(
            f"Metadata host {host} unreachable: {exc}"
        ) from exc


async def is_on_gce(
    session: aiohttp.ClientSession,
    host: str,
    *,
    timeout: float,
    user_agent: str,
) -> bool:
    """Check whether the metadata host answers.

    A reachable host that answers 200 with `Metadata-Flavor: Google` means we
    run on managed infrastructure. Every failure is a negative answer, never an
    error: it is the signal to try the next credential strategy.
    """
    try:
        async with session.get(
            metadata_url(host),
            headers=metadata_headers(user_agent),
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            flavor = resp.headers.get(METADATA_FLAVOR_HEADER)
            if resp.status == 200 and flavor == METADATA_FLAVOR_VALUE:
                return True
            logger.warning(
                "Metadata check of %s answered %d (flavor=%r); not on GCE.",
                host,
                resp.status,
                flavor,
            )
            return False
    except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as exc:
        logger.warning("Metadata check of %s failed: %s; not on GCE.", host, exc)
        return False


async def gce_project_id(
    session: aiohttp.ClientSession,
    host: str,
    *,
    timeout: float,
    user_agent: str,
) -> str:
    """Return the project id of the current instance.

    Raises:
        MetadataUnreachableError: If the lookup fails or returns an empty body.
        RequestTimeoutError: If the request exceeds `timeout`.
    """
    body = await metadata_get(
        session, host, PROJECT_ID_PATH, timeout=timeout, user_agent=user_agent
    )
    project_id = body.strip()
    if not project_id:
        raise MetadataUnreachableError("Metadata service returned an empty project id.")
    return project_id
