"""IP geolocation: local GeoLite2 reader plus a primary/fallback HTTP chain."""

import asyncio
import ipaddress
import logging

import geoip2.database
import geoip2.errors
import httpx

from pnodewatch.models import GeoLocation
from pnodewatch.ratelimit import MinIntervalScheduler

logger = logging.getLogger(__name__)

IPWHO_URL = "https://ipwho.is/{ip}"
IPWHO_FIELDS = "success,latitude,longitude,city,country,country_code,message"
IPAPI_URL = "http://ip-api.com/json/{ip}"
IPAPI_FIELDS = "status,message,lat,lon,city,country,countryCode"

DEFAULT_TIMEOUT = 3.0


class ProviderRateLimited(Exception):
    """A provider explicitly refused the lookup because of its quota."""


def is_routable(ip: str) -> bool:
    """Return ``True`` for globally routable addresses worth looking up.

    Private, loopback, link-local, reserved, shared (100.64/10) and
    malformed addresses return ``False``.
    """
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return addr.is_global and not addr.is_multicast


class GeoIPReader:
    """Wrapper around a MaxMind GeoLite2-City database reader.

    The reader is tolerant of a missing database file: if the path is
    ``None`` or points to a non-existent file, lookups return ``None``.

    Args:
        city_db_path: Path to ``GeoLite2-City.mmdb``, or ``None``.
    """

    def __init__(self, city_db_path: str | None = None) -> None:
        self._city_reader: geoip2.database.Reader | None = None

        if city_db_path:
            try:
                self._city_reader = geoip2.database.Reader(city_db_path)
                logger.debug("Opened GeoLite2-City DB: %s", city_db_path)
            except FileNotFoundError:
                logger.warning(
                    "GeoLite2-City DB not found at %s; local lookups disabled",
                    city_db_path,
                )

    @property
    def available(self) -> bool:
        return self._city_reader is not None

    def close(self) -> None:
        """Close the underlying database reader."""
        if self._city_reader:
            self._city_reader.close()
            self._city_reader = None

    def lookup(self, ip: str) -> GeoLocation | None:
        """Look up city/country/coordinates for an IP address.

        Returns:
            A ``GeoLocation``, or ``None`` if the database has no usable
            entry for *ip*.
        """
        if not self._city_reader:
            return None
        try:
            resp = self._city_reader.city(ip)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            logger.debug("City lookup failed for %s", ip)
            return None

        if resp.location.latitude is None or resp.location.longitude is None:
            return None
        return GeoLocation(
            lat=resp.location.latitude,
            lng=resp.location.longitude,
            city=resp.city.name,
            country=resp.country.name,
            country_code=resp.country.iso_code,
        )


class GeoResolver:
    """Resolve IPs to locations through a provider chain.

    The resolver is stateless per call: callers filter cached IPs first
    and route new lookups through a ``MinIntervalScheduler``.

    Args:
        client: Shared ``httpx.AsyncClient``.
        timeout: Per-provider request timeout in seconds.
        local_db: Optional ``GeoIPReader`` consulted before any HTTP call.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        timeout: float = DEFAULT_TIMEOUT,
        local_db: GeoIPReader | None = None,
    ) -> None:
        self._client = client
        self.timeout = timeout
        self.local_db = local_db

    def lookup_local(self, ip: str) -> GeoLocation | None:
        """Offline lookup in the GeoLite2 database, if one is configured."""
        if self.local_db is None or not is_routable(ip):
            return None
        return self.local_db.lookup(ip)

    async def resolve(self, ip: str) -> GeoLocation | None:
        """Return the location of *ip*, or ``None``.

        Tries the primary provider (ipwho.is) and, on any failure or an
        explicit rate-limit reply, the fallback provider (ip-api.com).
        """
        if not is_routable(ip):
            return None

        for name, provider in (("ipwho.is", self._ipwho), ("ip-api.com", self._ipapi)):
            try:
                geo = await provider(ip)
            except ProviderRateLimited:
                logger.warning("%s rate limited; trying next provider for %s", name, ip)
                continue
            except (httpx.HTTPError, ValueError) as exc:
                logger.debug("%s lookup for %s failed: %s", name, ip, exc)
                continue
            if geo is not None:
                return geo

        logger.debug("All geolocation providers failed for %s", ip)
        return None

    async def _ipwho(self, ip: str) -> GeoLocation | None:
        response = await self._client.get(
            IPWHO_URL.format(ip=ip),
            params={"fields": IPWHO_FIELDS},
            timeout=self.timeout,
        )
        if response.status_code == 429:
            raise ProviderRateLimited("ipwho.is")
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            return None
        if data.get("success"):
            return GeoLocation(
                lat=data.get("latitude") or None,
                lng=data.get("longitude") or None,
                city=data.get("city") or None,
                country=data.get("country") or None,
                country_code=data.get("country_code") or None,
            )
        if "limit" in str(data.get("message", "")).lower():
            raise ProviderRateLimited("ipwho.is")
        return None

    async def _ipapi(self, ip: str) -> GeoLocation | None:
        response = await self._client.get(
            IPAPI_URL.format(ip=ip),
            params={"fields": IPAPI_FIELDS},
            timeout=self.timeout,
        )
        if response.status_code == 429:
            raise ProviderRateLimited("ip-api.com")
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict) or data.get("status") != "success":
            return None
        return GeoLocation(
            lat=data.get("lat") or None,
            lng=data.get("lon") or None,
            city=data.get("city") or None,
            country=data.get("country") or None,
            country_code=data.get("countryCode") or None,
        )


async def geolocate_all(
    ips: list[str],
    known: dict[str, GeoLocation],
    resolver: GeoResolver,
    scheduler: MinIntervalScheduler,
) -> tuple[list[GeoLocation | None], int]:
    """Locate every IP, reusing *known* locations.

    Cached IPs and local-database hits bypass the scheduler; only the
    remaining routable IPs are resolved remotely, one at a time through
    *scheduler*.  Results are positionally aligned with *ips*.

    Returns:
        ``(locations, remote_lookups)``.
    """
    results: list[GeoLocation | None] = [None] * len(ips)
    pending: list[int] = []

    for i, ip in enumerate(ips):
        cached = known.get(ip)
        if cached is not None:
            results[i] = cached
            continue
        local = resolver.lookup_local(ip)
        if local is not None:
            results[i] = local
            continue
        if is_routable(ip):
            pending.append(i)

    if pending:
        logger.info(
            "Geolocating %d new IPs (%d cached) at <= %.0f requests/minute",
            len(pending),
            len(ips) - len(pending),
            60.0 / scheduler.min_interval if scheduler.min_interval else float("inf"),
        )

    async def _lookup(index: int) -> GeoLocation | None:
        return await scheduler.run(lambda: resolver.resolve(ips[index]))

    outcomes = await asyncio.gather(*(_lookup(i) for i in pending), return_exceptions=True)
    for index, outcome in zip(pending, outcomes):
        if isinstance(outcome, BaseException):
            logger.warning("Geolocation of %s raised %r", ips[index], outcome)
            continue
        results[index] = outcome

    return results, len(pending)
