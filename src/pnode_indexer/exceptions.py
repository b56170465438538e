"""
Exception types raised by the indexing pipeline.
"""

from typing import Dict, List, Optional


class PNodeIndexerError(Exception):
    """Base exception for the pNode indexer."""
    pass


class RPCError(PNodeIndexerError):
    """A single JSON-RPC endpoint failed to answer a call."""

    def __init__(self, method: str, endpoint: str, message: str, code: Optional[int] = None):
        self.method = method
        self.endpoint = endpoint
        self.code = code
        super().__init__(f"{method} failed on {endpoint}: {message}")


class RegistryUnavailable(PNodeIndexerError):
    """Every seed or endpoint candidate was exhausted for an RPC method."""

    def __init__(self, method: str, endpoints: List[str], errors: Optional[Dict[str, str]] = None):
        self.method = method
        self.endpoints = list(endpoints)
        self.errors = dict(errors or {})

        details = '; '.join(f"{endpoint}: {error}" for endpoint, error in self.errors.items())
        message = f"{method} unavailable. Tried: {', '.join(self.endpoints)}"
        if details:
            message += f". Errors: {details}"
        super().__init__(message)


class PersistenceError(PNodeIndexerError):
    """A snapshot, event or alert could not be written to the store."""
    pass
