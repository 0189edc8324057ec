"""
HTTP client utilities with connection pooling.
Provides reusable httpx clients for provider, catalog and webhook traffic.
"""
import httpx
from config import Config


class HTTPClientManager:
    """Manages shared httpx clients with connection pooling."""

    _provider_client: httpx.AsyncClient | None = None
    _catalog_client: httpx.AsyncClient | None = None
    _webhook_client: httpx.AsyncClient | None = None

    @classmethod
    def get_provider_client(cls) -> httpx.AsyncClient:
        """
        Get or create the shared client for streaming completions.

        Features:
        - Connection pooling (reuses TCP connections)
        - Long read timeout for slow token streams

        Returns:
            Configured httpx.AsyncClient for completion providers
        """
        if cls._provider_client is None:
            limits = httpx.Limits(
                max_connections=100,
                max_keepalive_connections=20,
                keepalive_expiry=60.0
            )

            cls._provider_client = httpx.AsyncClient(
                timeout=httpx.Timeout(Config.PROVIDER_TIMEOUT, connect=10.0),
                limits=limits,
                http2=True
            )

        return cls._provider_client

    @classmethod
    def get_catalog_client(cls) -> httpx.AsyncClient:
        """
        Get or create the shared client for model list requests.

        Returns:
            Configured httpx.AsyncClient for provider catalogs
        """
        if cls._catalog_client is None:
            limits = httpx.Limits(
                max_connections=10,
                max_keepalive_connections=5,
                keepalive_expiry=30.0
            )

            cls._catalog_client = httpx.AsyncClient(
                timeout=Config.CATALOG_TIMEOUT,
                follow_redirects=True,
                limits=limits,
                http2=True
            )

        return cls._catalog_client

    @classmethod
    def get_webhook_client(cls) -> httpx.AsyncClient:
        """Get or create the shared client for outbound notifications."""
        if cls._webhook_client is None:
            cls._webhook_client = httpx.AsyncClient(timeout=Config.WEBHOOK_TIMEOUT)

        return cls._webhook_client

    @classmethod
    async def close_all(cls) -> None:
        """
        Close all managed clients and clean up connections.
        """
        for attr in ("_provider_client", "_catalog_client", "_webhook_client"):
            client = getattr(cls, attr)
            if client is not None:
                await client.aclose()
                setattr(cls, attr, None)
