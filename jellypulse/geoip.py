import ipaddress
import logging
from typing import Any, Optional

import geoip2.database
import geoip2.errors
from maxminddb import InvalidDatabaseError

from .config import settings
from .models import GeoLocation

logger = logging.getLogger(__name__)


class GeoResolver:
    """Resolve a client IP to a country/city pair from a MaxMind database.

    Works with both GeoLite2-Country and GeoLite2-City files. Private and
    loopback addresses resolve to "Local"; a missing database, an unreadable
    file or an address not in the database resolve to "Unknown". Lookups
    never raise.
    """

    def __init__(self, database_path: Optional[str] = None, reader: Any = None):
        self.database_path = (
            settings.geoip_database_path if database_path is None else database_path
        )
        self._reader = reader
        self._has_city: Optional[bool] = None
        self._open_failed = False

    def _get_reader(self) -> Any:
        if self._reader is not None or self._open_failed or not self.database_path:
            return self._reader
        try:
            self._reader = geoip2.database.Reader(self.database_path)
            logger.info(f"Loaded GeoIP database: {self.database_path}")
        except (OSError, InvalidDatabaseError) as e:
            self._open_failed = True
            logger.warning(f"GeoIP database unavailable, locations will be Unknown: {e}")
        return self._reader

    def lookup(self, ip: str) -> GeoLocation:
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return GeoLocation()
        if address.is_loopback or address.is_private or address.is_link_local:
            return GeoLocation(country="Local", city="Local")

        reader = self._get_reader()
        if reader is None:
            return GeoLocation()

        try:
            if self._has_city is None:
                self._has_city = "City" in reader.metadata().database_type
            if self._has_city:
                response = reader.city(str(address))
                city = response.city.name
            else:
                response = reader.country(str(address))
                city = None
        except geoip2.errors.AddressNotFoundError:
            return GeoLocation()
        except (ValueError, InvalidDatabaseError) as e:
            logger.debug(f"GeoIP lookup failed for {ip}: {e}")
            return GeoLocation()

        return GeoLocation(
            country=response.country.iso_code or "Unknown",
            city=city or "Unknown",
        )

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None


geo_resolver = GeoResolver()
