"""
Tests for GeoIP resolution, caching and fallbacks.
"""

import asyncio
import time

import aiohttp
import pytest
from unittest.mock import AsyncMock

from pnode_indexer.core.geoip import (
    PRIVATE_LOCATION,
    GeoIPResolver,
    estimate_location_from_ip,
    is_private_ip,
    map_to_region,
)


@pytest.fixture
def resolver(config):
    return GeoIPResolver(config)


class TestRegionMapping:
    """Tests for the country/state to region mapping."""

    @pytest.mark.parametrize("country,code,region,expected", [
        ('United States', 'US', 'VA', 'US-East'),
        ('United States', 'US', 'CA', 'US-West'),
        ('United States', 'US', 'TX', 'US-Central'),
        ('Germany', 'DE', 'BE', 'EU-Central'),
        ('Finland', 'FI', '18', 'EU-North'),
        ('Singapore', 'SG', '01', 'Asia-Pacific'),
        ('Canada', 'CA', 'ON', 'Canada'),
        (None, None, None, 'Unknown'),
    ])
    def test_map_to_region(self, country, code, region, expected):
        assert map_to_region(country, code, region) == expected

    @pytest.mark.parametrize("ip,expected", [
        ('8.8.8.8', 'US-East'),
        ('150.0.0.1', 'EU-Central'),
        ('203.0.113.5', 'Asia-Pacific'),
        ('240.0.0.1', 'Unknown'),
        ('not-an-ip', 'Unknown'),
    ])
    def test_first_octet_heuristic(self, ip, expected):
        assert estimate_location_from_ip(ip) == expected

    def test_private_ranges(self):
        """Test that only local ranges count as private."""
        assert is_private_ip('10.1.2.3')
        assert is_private_ip('172.20.0.1')
        assert is_private_ip('192.168.1.1')
        assert is_private_ip('127.0.0.1')
        assert is_private_ip('localhost')
        assert not is_private_ip('172.32.0.1')
        assert not is_private_ip('203.0.113.5')
        assert not is_private_ip('8.8.8.8')


class TestGeoIPResolver:
    """Tests for GeoIPResolver."""

    @pytest.mark.asyncio
    async def test_private_ip_skips_lookup(self, resolver):
        """Test that private addresses never reach the provider."""
        resolver._lookup = AsyncMock()

        result = await resolver.resolve('192.168.1.10')

        assert result.location == PRIVATE_LOCATION
        resolver._lookup.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_timeout_falls_back_and_is_cached(self, resolver):
        """Test that a timed-out lookup yields the heuristic region once per IP."""
        resolver._lookup = AsyncMock(side_effect=asyncio.TimeoutError())

        first = await resolver.resolve('203.0.113.5')
        second = await resolver.resolve('203.0.113.5')

        assert first.location == 'Asia-Pacific'
        assert first.error == 'TimeoutError'
        assert second is first
        assert resolver._lookup.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_resolves_share_one_lookup(self, resolver):
        """Test that simultaneous callers for one IP wait on the same provider call."""
        async def slow_timeout(ip):
            await asyncio.sleep(0.01)
            raise asyncio.TimeoutError()

        resolver._lookup = AsyncMock(side_effect=slow_timeout)

        results = await asyncio.gather(*(resolver.resolve('203.0.113.5') for _ in range(5)))

        assert resolver._lookup.await_count == 1
        assert all(result is results[0] for result in results)
        assert results[0].location == 'Asia-Pacific'
        assert resolver.cache_size == 1

    @pytest.mark.asyncio
    async def test_http_error_falls_back(self, resolver):
        """Test that transport errors produce a heuristic result."""
        resolver._lookup = AsyncMock(side_effect=aiohttp.ClientConnectionError('refused'))

        assert await resolver.location_for('8.8.8.8') == 'US-East'

    @pytest.mark.asyncio
    async def test_provider_failure_status(self, resolver):
        """Test that a provider-side failure is treated like a lookup error."""
        resolver._lookup = AsyncMock(return_value={'status': 'fail', 'message': 'reserved range'})

        result = await resolver.resolve('150.0.0.1')

        assert result.location == 'EU-Central'
        assert result.error == 'reserved range'

    @pytest.mark.asyncio
    async def test_successful_lookup(self, resolver):
        """Test that provider data is mapped to a region and kept."""
        resolver._lookup = AsyncMock(return_value={
            'status': 'success', 'country': 'Germany', 'countryCode': 'DE',
            'region': 'HE', 'city': 'Frankfurt', 'lat': 50.1, 'lon': 8.7,
            'isp': 'Hetzner', 'org': 'Hetzner Online', 'as': 'AS24940'
        })

        result = await resolver.resolve('88.99.1.1')

        assert result.location == 'EU-Central'
        assert result.city == 'Frankfurt'
        assert result.asn == 'AS24940'
        assert result.error is None
        assert resolver.cache_size == 1

        resolver.clear_cache()
        assert resolver.cache_size == 0

    @pytest.mark.asyncio
    async def test_requests_are_spaced(self, config):
        """Test that consecutive provider calls respect the minimum interval."""
        config['geoip']['min_request_interval_ms'] = 100
        resolver = GeoIPResolver(config)
        calls = []

        async def lookup(ip):
            calls.append(time.monotonic())
            return {'status': 'success', 'country': 'Japan', 'countryCode': 'JP'}

        resolver._lookup = lookup
        await resolver.resolve_many(['1.1.1.1', '1.0.0.1'])

        assert len(calls) == 2
        assert calls[1] - calls[0] >= 0.09
