"""
JSON-RPC over HTTP client with ordered endpoint fallback.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from ..exceptions import RPCError, RegistryUnavailable


def _not_none(result: Any) -> bool:
    return result is not None


class JsonRpcClient:
    """Sends JSON-RPC 2.0 requests over a shared aiohttp session."""

    def __init__(self, logger_name: str = 'rpc_client'):
        """
        Initialize JSON-RPC client.

        Args:
            logger_name: Name of the logger used for per-endpoint failures
        """
        self.logger = logging.getLogger(logger_name)
        self.session: Optional[aiohttp.ClientSession] = None
        self._request_id = 0

    async def start(self):
        """Open the HTTP session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                headers={'Content-Type': 'application/json'}
            )

    async def close(self):
        """Close the HTTP session."""
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    async def __aenter__(self) -> 'JsonRpcClient':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _post(self, endpoint: str, payload: Dict[str, Any], timeout: float) -> Tuple[int, Any]:
        """POST a payload and return (HTTP status, decoded JSON body)."""
        await self.start()
        async with self.session.post(
            endpoint,
            json=payload,
            timeout=aiohttp.ClientTimeout(total=timeout)
        ) as response:
            if response.status < 200 or response.status >= 300:
                return response.status, None
            return response.status, await response.json(content_type=None)

    async def call(self, endpoint: str, method: str, params: Optional[List[Any]] = None,
                   timeout: float = 10) -> Any:
        """
        Call a JSON-RPC method on one endpoint.

        Args:
            endpoint: URL of the JSON-RPC endpoint
            method: RPC method name
            params: Method parameters
            timeout: Total request timeout in seconds

        Returns:
            The ``result`` member of the response envelope

        Raises:
            RPCError: On transport failure, non-2xx status, an ``error``
                member in the envelope or a malformed body
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params if params is not None else [],
            "id": self._request_id
        }

        try:
            status, body = await self._post(endpoint, payload, timeout)
        except asyncio.TimeoutError:
            raise RPCError(method, endpoint, f"Request timeout after {timeout}s")
        except aiohttp.ClientError as e:
            raise RPCError(method, endpoint, f"HTTP error: {e}")
        except ValueError as e:
            raise RPCError(method, endpoint, f"Invalid JSON response: {e}")

        if body is None:
            raise RPCError(method, endpoint, f"HTTP {status}")

        if not isinstance(body, dict):
            raise RPCError(method, endpoint, "Response is not a JSON-RPC envelope")

        if body.get('error'):
            error = body['error']
            if isinstance(error, dict):
                raise RPCError(method, endpoint, error.get('message', str(error)), error.get('code'))
            raise RPCError(method, endpoint, str(error))

        return body.get('result')

    async def call_first_success(self, endpoints: List[str], method: str,
                                 params: Optional[List[Any]] = None, timeout: float = 10,
                                 accept: Callable[[Any], bool] = _not_none) -> Tuple[str, Any]:
        """
        Try endpoints in order and return the first accepted result.

        Args:
            endpoints: Candidate endpoint URLs, in priority order
            method: RPC method name
            params: Method parameters
            timeout: Per-endpoint timeout in seconds
            accept: Predicate a result must satisfy to stop the search

        Returns:
            Tuple of (endpoint that answered, result)

        Raises:
            RegistryUnavailable: If no endpoint produced an accepted result
        """
        errors: Dict[str, str] = {}

        for endpoint in endpoints:
            try:
                result = await self.call(endpoint, method, params, timeout)
            except RPCError as e:
                self.logger.warning(f"Failed to fetch {method} from {endpoint}: {e}")
                errors[endpoint] = str(e)
                continue

            if accept(result):
                self.logger.debug(f"{method} answered by {endpoint}")
                return endpoint, result

            self.logger.warning(f"{method} returned no usable data from {endpoint}")
            errors[endpoint] = "empty result"

        raise RegistryUnavailable(method, endpoints, errors)
