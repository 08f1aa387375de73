"""Client IP geolocation via the MaxMind GeoIP2 web service.

Location context is forwarded to getgather so hosted sign-in pages run
from a nearby region. Lookups are best-effort: no credentials, loopback
addresses, timeouts and API errors all yield ``None``.
"""

import logging
import time
from typing import Any

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)

MAXMIND_CITY_URL = "https://geoip.maxmind.com/geoip/v2.1/city/{ip}"
LOOKUP_TIMEOUT_SECONDS = 3.0

_SKIPPED_IPS = frozenset({"unknown", "127.0.0.1", "::1"})


class LocationData(BaseModel):
    """Request location attached by the geolocation middleware."""

    ip: str
    city: str | None = None
    state: str | None = None
    country: str | None = None
    postal_code: str | None = None

    def as_upstream(self) -> dict[str, Any]:
        """Dict form sent to getgather (auth body and MCP headers)."""
        return self.model_dump()


def parse_city_response(ip: str, data: dict[str, Any]) -> LocationData:
    """Map a GeoIP2 City response onto LocationData.

    The state is the most specific subdivision, the country its ISO code.
    """
    subdivisions = data.get("subdivisions") or []
    state = None
    if subdivisions:
        state = (subdivisions[-1].get("names") or {}).get("en")
    return LocationData(
        ip=ip,
        city=((data.get("city") or {}).get("names") or {}).get("en"),
        state=state,
        country=(data.get("country") or {}).get("iso_code"),
        postal_code=(data.get("postal") or {}).get("code"),
    )


class GeolocationService:
    """Cached MaxMind City lookups.

    Attributes:
        _cache: Dict of ip -> (expires_at, LocationData).
    """

    def __init__(
        self,
        account_id: str = "",
        license_key: str = "",
        cache_ttl: float = 300,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._account_id = account_id
        self._license_key = license_key
        self._cache_ttl = cache_ttl
        self._transport = transport
        self._cache: dict[str, tuple[float, LocationData]] = {}

    @property
    def enabled(self) -> bool:
        return bool(self._account_id and self._license_key)

    def _cached(self, ip: str) -> LocationData | None:
        entry = self._cache.get(ip)
        if entry is None:
            return None
        expires_at, location = entry
        if expires_at < time.monotonic():
            del self._cache[ip]
            return None
        return location

    async def lookup(self, ip: str) -> LocationData | None:
        """Resolve an IP to a location.

        Args:
            ip: Client address.

        Returns:
            LocationData, or None when the lookup is skipped or fails.
        """
        if not ip or ip in _SKIPPED_IPS:
            return None

        cached = self._cached(ip)
        if cached is not None:
            logger.debug("Geolocation cache hit for %s", ip)
            return cached

        if not self.enabled:
            logger.debug("MaxMind credentials not configured, skipping lookup")
            return None

        try:
            async with httpx.AsyncClient(
                timeout=LOOKUP_TIMEOUT_SECONDS, transport=self._transport,
            ) as client:
                response = await client.get(
                    MAXMIND_CITY_URL.format(ip=ip),
                    auth=(self._account_id, self._license_key),
                )
                response.raise_for_status()
                location = parse_city_response(ip, response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Geolocation lookup for %s failed: %s", ip, e)
            return None

        self._cache[ip] = (time.monotonic() + self._cache_ttl, location)
        logger.info(
            "Client location: city=%s state=%s country=%s postal_code=%s",
            location.city, location.state, location.country, location.postal_code,
        )
        return location

    async def locate(self, ip: str) -> LocationData:
        """Like ``lookup`` but always returns a LocationData carrying the IP."""
        return await self.lookup(ip) or LocationData(ip=ip)
