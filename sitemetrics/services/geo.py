"""
Geo lookup — coarse visitor region from a third-party IP geolocation API.

Best effort: any network, status or decode failure is logged and returns
None, and the caller simply does not record a geo event for the session.
"""

import logging
from typing import Optional

import aiohttp

from sitemetrics.config import settings

logger = logging.getLogger("sitemetrics.geo")


def lookup_url(ip: Optional[str] = None) -> str:
    template = settings.geo_lookup_url
    if ip:
        return template.format(ip=ip)
    # No IP → ask the service about the caller itself
    return template.replace("{ip}/", "").replace("{ip}", "")


async def lookup_region(ip: Optional[str] = None) -> Optional[str]:
    """Return ``region``, else ``country_name``, else ``"Unknown"``; None on failure."""
    url = lookup_url(ip)
    timeout = aiohttp.ClientTimeout(total=settings.geo_timeout_seconds)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url) as resp:
                if resp.status != 200:
                    logger.warning(f"Geo lookup {url} → HTTP {resp.status}")
                    return None
                data = await resp.json(content_type=None)
    except Exception as e:
        logger.warning(f"Geo lookup failed for {ip or 'self'}: {e}")
        return None

    if not isinstance(data, dict) or data.get("error"):
        logger.warning(f"Geo lookup for {ip or 'self'} returned no location: {data}")
        return None
    return data.get("region") or data.get("country_name") or "Unknown"
