"""
auth/geo.py -- Request origin resolution for anomaly detection.

GeoResolver maps an IP address to an ISO 3166 country code using a local
MaxMind GeoLite2/GeoIP2 Country database (geoip2). Every miss -- no database
configured, private or unroutable address, unparsable input, address not in
the database -- returns None. A lookup problem must never fail a login; it
only means the country comparison is skipped.
"""

from __future__ import annotations

import ipaddress
import logging

import geoip2.database
import geoip2.errors
import maxminddb
from fastapi import Request

from auth.errors import ConfigurationError
from auth.models import RequestOrigin

logger = logging.getLogger("authority.geo")


class GeoResolver:
    """Country lookup against a local database.

    A configured path that cannot be opened is a startup error (the operator
    asked for anomaly detection); no path at all disables the check.
    """

    def __init__(self, database_path: str | None = None) -> None:
        self._reader: geoip2.database.Reader | None = None
        if database_path:
            try:
                self._reader = geoip2.database.Reader(database_path)
            except OSError as exc:
                raise ConfigurationError(f"GEOIP_DATABASE_PATH is not readable: {exc}") from exc
            logger.info("GeoIP database loaded from %s", database_path)
        else:
            logger.info("GEOIP_DATABASE_PATH not set -- country checks disabled")

    def resolve_country(self, ip: str | None) -> str | None:
        if not ip:
            return None
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return None
        if not address.is_global:
            return None
        return self._lookup(str(address))

    def _lookup(self, ip: str) -> str | None:
        if self._reader is None:
            return None
        try:
            return self._reader.country(ip).country.iso_code
        except (geoip2.errors.AddressNotFoundError, maxminddb.InvalidDatabaseError, TypeError, ValueError):
            # TypeError: the configured file is not a Country database
            return None

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()


def client_ip(request: Request, trust_proxy_headers: bool = True) -> str | None:
    """Return the originating client IP.

    Behind a reverse proxy the socket peer is the proxy, so the first
    X-Forwarded-For entry is used when proxy headers are trusted.
    """
    if trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For", "")
        if forwarded:
            return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def request_origin(request: Request, resolver: GeoResolver, trust_proxy_headers: bool = True) -> RequestOrigin:
    ip = client_ip(request, trust_proxy_headers)
    return RequestOrigin(
        ip_address=ip,
        country=resolver.resolve_country(ip),
        user_agent=request.headers.get("User-Agent"),
    )
