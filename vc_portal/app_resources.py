"""App resources."""

import logging
import threading

import aiohttp

LOGGER = logging.getLogger(__name__)


def _new_client() -> aiohttp.ClientSession:
    return aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=30, connect=10),
        connector=aiohttp.TCPConnector(limit=100, limit_per_host=10, ttl_dns_cache=300),
    )


class AppResources:
    """Application-wide resources like the outbound HTTP client."""

    _http_client: aiohttp.ClientSession | None = None
    _lock = threading.Lock()

    @classmethod
    async def startup(cls):
        """Initialize resources."""
        with cls._lock:
            # Prevent multiple initializations
            if cls._http_client is not None:
                LOGGER.debug("HTTP client already initialized")
                return
            LOGGER.info("Initializing HTTP client...")
            cls._http_client = _new_client()

    @classmethod
    async def shutdown(cls):
        """Clean up resources."""
        with cls._lock:
            client, cls._http_client = cls._http_client, None
        if client:
            LOGGER.info("Closing HTTP client...")
            await client.close()

    @classmethod
    def get_http_client(cls) -> aiohttp.ClientSession:
        """Get the initialized HTTP client."""
        if cls._http_client is None:
            raise RuntimeError("HTTP client is not initialized")
        return cls._http_client
