"""Outbound HTTP lookups with bounded retry and exponential backoff."""

import asyncio
import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from leadflow.config import get_settings
from leadflow.services.conditions import to_text

logger = logging.getLogger(__name__)


def expand_url(template: str, session_state: dict) -> str:
    """Replace ``{field}`` placeholders with URL-encoded session values."""
    url = template
    for key, value in session_state.items():
        url = url.replace(f"{{{key}}}", quote(to_text(value), safe=""))
    return url


async def fetch_json(url: str, params: Optional[dict] = None) -> Optional[Any]:
    """GET ``url`` and decode JSON.

    Transport errors and 5xx responses are retried up to
    ``external_max_retries`` attempts, sleeping ``backoff * 2**(attempt-1)``
    between them. 4xx responses and undecodable bodies return None at once.
    """
    settings = get_settings()
    attempts = max(1, settings.external_max_retries)

    async with httpx.AsyncClient(timeout=settings.external_timeout_seconds) as client:
        for attempt in range(1, attempts + 1):
            try:
                resp = await client.get(url, params=params)
            except httpx.HTTPError as exc:
                logger.warning(f"GET {url} failed (attempt {attempt}/{attempts}): {exc}")
            else:
                if resp.status_code < 400:
                    try:
                        return resp.json()
                    except ValueError:
                        logger.warning(f"GET {url} returned a non-JSON body")
                        return None
                if resp.status_code < 500:
                    logger.warning(f"GET {url} returned {resp.status_code}")
                    return None
                logger.warning(f"GET {url} returned {resp.status_code} (attempt {attempt}/{attempts})")

            if attempt < attempts:
                await asyncio.sleep(settings.external_backoff_seconds * 2 ** (attempt - 1))

    return None
