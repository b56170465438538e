"""
GeoIP lookup with caching, rate limiting and a first-octet fallback.

Lookups go to ip-api.com (free tier, 45 requests/minute, no key). Results,
including fallbacks for failed lookups, are cached for the lifetime of the
resolver so each IP is queried at most once per process.
"""

import asyncio
import ipaddress
import logging
import time
from dataclasses import dataclass
from typing import Dict, Any, List, Optional

import aiohttp


PRIVATE_LOCATION = 'Private/Local Network'

PRIVATE_NETWORKS = [
    ipaddress.ip_network('10.0.0.0/8'),
    ipaddress.ip_network('172.16.0.0/12'),
    ipaddress.ip_network('192.168.0.0/16'),
    ipaddress.ip_network('127.0.0.0/8'),
    ipaddress.ip_network('::1/128'),
]

LOOKUP_FIELDS = 'status,message,country,countryCode,region,regionName,city,lat,lon,isp,org,as'

US_EAST_STATES = {'NY', 'VA', 'FL', 'GA', 'NC', 'SC', 'NJ', 'PA', 'MD', 'MA', 'CT', 'NH', 'ME', 'VT', 'RI', 'DE'}
US_WEST_STATES = {'CA', 'WA', 'OR', 'NV', 'AZ', 'CO', 'UT', 'ID', 'MT', 'WY', 'NM', 'HI', 'AK'}

COUNTRY_REGIONS = {
    'EU-Central': {'DE', 'FR', 'NL', 'BE', 'LU', 'AT', 'CH', 'PL', 'CZ', 'SK', 'HU'},
    'EU-West': {'GB', 'IE', 'PT', 'ES'},
    'EU-North': {'SE', 'NO', 'FI', 'DK', 'IS', 'EE', 'LV', 'LT'},
    'Asia-Pacific': {'JP', 'KR', 'SG', 'HK', 'TW', 'MY', 'TH', 'VN', 'PH', 'ID', 'IN', 'AU', 'NZ'},
    'South-America': {'BR', 'AR', 'CL', 'CO', 'PE', 'VE', 'EC', 'UY', 'PY'},
    'Middle-East': {'AE', 'SA', 'IL', 'TR', 'QA', 'KW', 'BH', 'OM'},
    'Africa': {'ZA', 'NG', 'EG', 'KE', 'MA'},
}


@dataclass
class GeoIPResult:
    """Geographic information for one IP."""

    ip: str
    location: str
    country: str = 'Unknown'
    country_code: str = 'XX'
    region: str = ''
    city: str = ''
    lat: float = 0.0
    lon: float = 0.0
    isp: str = ''
    org: str = ''
    asn: str = ''
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'ip': self.ip,
            'location': self.location,
            'country': self.country,
            'country_code': self.country_code,
            'region': self.region,
            'city': self.city,
            'lat': self.lat,
            'lon': self.lon,
            'isp': self.isp,
            'org': self.org,
            'asn': self.asn,
            'error': self.error
        }


def map_to_region(country: Optional[str], country_code: Optional[str], region: Optional[str]) -> str:
    """
    Map a country/state to a coarse region label.

    Args:
        country: Country name as reported by the provider
        country_code: ISO 3166-1 alpha-2 code
        region: State/region code (used for the US only)

    Returns:
        Region label, the raw country name when unmatched, or "Unknown"
    """
    if country_code == 'US':
        if region in US_EAST_STATES:
            return 'US-East'
        if region in US_WEST_STATES:
            return 'US-West'
        return 'US-Central'

    for label, codes in COUNTRY_REGIONS.items():
        if country_code in codes:
            return label

    return country or 'Unknown'


def estimate_location_from_ip(ip: str) -> str:
    """Rough region guess from the first octet of an IPv4 address."""
    try:
        first_octet = int(ip.split('.')[0])
    except (ValueError, IndexError):
        return 'Unknown'

    if 1 <= first_octet <= 126:
        return 'US-East'
    if 128 <= first_octet <= 191:
        return 'EU-Central'
    if 192 <= first_octet <= 223:
        return 'Asia-Pacific'
    return 'Unknown'


def is_private_ip(ip: str) -> bool:
    """RFC 1918 and loopback only; documentation ranges still go to the provider."""
    if ip == 'localhost':
        return True
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(address in network for network in PRIVATE_NETWORKS if network.version == address.version)


class GeoIPResolver:
    """Resolves IPs to regions; one instance is shared by the whole process."""

    def __init__(self, config: Dict[str, Any], session: Optional[aiohttp.ClientSession] = None):
        """
        Initialize GeoIP resolver.

        Args:
            config: Configuration dictionary
            session: Optional shared HTTP session
        """
        geoip_config = config['geoip']
        self.provider_url = geoip_config['provider_url']
        self.timeout = geoip_config['timeout_seconds']
        self.min_request_interval = geoip_config['min_request_interval_ms'] / 1000
        self.logger = logging.getLogger('geoip_resolver')

        self.session = session
        self._owns_session = session is None
        self._cache: Dict[str, GeoIPResult] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._rate_lock = asyncio.Lock()
        self._last_request_time = 0.0

    async def close(self):
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    def clear_cache(self):
        """Drop every cached result."""
        self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    async def resolve(self, ip: str) -> GeoIPResult:
        """
        Resolve an IP to geographic information.

        Never raises: provider failures produce a cached heuristic result
        with ``error`` set.
        """
        cached = self._cache.get(ip)
        if cached:
            return cached

        if is_private_ip(ip):
            result = GeoIPResult(
                ip=ip,
                location=PRIVATE_LOCATION,
                country='Private',
                city='Local Network',
                isp='Private Network',
                org='Private Network'
            )
            self._cache[ip] = result
            return result

        # Concurrent callers for one IP share a single provider lookup
        task = self._in_flight.get(ip)
        if task is None:
            task = asyncio.ensure_future(self._lookup_and_cache(ip))
            self._in_flight[ip] = task
            task.add_done_callback(lambda _: self._in_flight.pop(ip, None))
        return await asyncio.shield(task)

    async def _lookup_and_cache(self, ip: str) -> GeoIPResult:
        try:
            await self._wait_for_rate_limit()
            data = await self._lookup(ip)
        except (asyncio.TimeoutError, aiohttp.ClientError, ValueError) as e:
            error = str(e) or type(e).__name__
            self.logger.warning(f"GeoIP lookup failed for {ip}: {error}")
            result = GeoIPResult(ip=ip, location=estimate_location_from_ip(ip), error=error)
            self._cache[ip] = result
            return result

        if data.get('status') == 'fail':
            message = data.get('message', 'lookup failed')
            self.logger.warning(f"GeoIP provider rejected {ip}: {message}")
            result = GeoIPResult(ip=ip, location=estimate_location_from_ip(ip), error=message)
            self._cache[ip] = result
            return result

        result = GeoIPResult(
            ip=ip,
            location=map_to_region(data.get('country'), data.get('countryCode'), data.get('region')),
            country=data.get('country') or 'Unknown',
            country_code=data.get('countryCode') or 'XX',
            region=data.get('region') or '',
            city=data.get('city') or '',
            lat=data.get('lat') or 0.0,
            lon=data.get('lon') or 0.0,
            isp=data.get('isp') or '',
            org=data.get('org') or '',
            asn=data.get('as') or ''
        )
        self._cache[ip] = result
        return result

    async def location_for(self, ip: str) -> str:
        """Region label for an IP."""
        return (await self.resolve(ip)).location

    async def resolve_many(self, ips: List[str]) -> Dict[str, GeoIPResult]:
        """Resolve several IPs one after another."""
        results = {}
        for ip in ips:
            results[ip] = await self.resolve(ip)
        return results

    async def _wait_for_rate_limit(self):
        """Keep at least ``min_request_interval`` between provider calls."""
        async with self._rate_lock:
            elapsed = time.monotonic() - self._last_request_time
            if elapsed < self.min_request_interval:
                await asyncio.sleep(self.min_request_interval - elapsed)
            self._last_request_time = time.monotonic()

    async def _lookup(self, ip: str) -> Dict[str, Any]:
        """Query the provider; raises on transport errors and non-2xx."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self._owns_session = True

        url = f"{self.provider_url}{ip}"
        async with self.session.get(
            url,
            params={'fields': LOOKUP_FIELDS},
            timeout=aiohttp.ClientTimeout(total=self.timeout)
        ) as response:
            if response.status != 200:
                raise aiohttp.ClientResponseError(
                    response.request_info, response.history,
                    status=response.status, message=f"HTTP {response.status}"
                )
            return await response.json(content_type=None)
