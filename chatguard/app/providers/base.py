from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Dict, Optional

import httpx


class AttestationProvider(ABC):
    """Base class for attestation token providers.

    A provider issues short-lived bearer tokens proving that a request
    comes from a genuine client instance. The issuance protocol itself is
    opaque to chatguard: providers expose a single `issue_token` call.

    Subclasses can accept an external httpx.AsyncClient for connection
    pooling, or create their own if not provided.
    """

    def __init__(
        self,
        base_url: str,
        site_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        """Initialize the provider.

        Args:
            base_url: The attestation service base URL
            site_key: The site key identifying this application
            http_client: Optional shared HTTP client for connection pooling
            timeout: Request timeout in seconds
        """
        self._http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.site_key = site_key
        self.timeout = timeout
        self.headers = self._build_headers()

    @property
    def http_client(self) -> Optional[httpx.AsyncClient]:
        """Get the HTTP client, if one was provided."""
        return self._http_client

    def _build_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.site_key}",
            "Content-Type": "application/json",
        }

    @asynccontextmanager
    async def _client_context(self):
        """Yield the shared client, or a per-call client that is closed afterwards."""
        if self._http_client is not None:
            yield self._http_client
            return
        client = httpx.AsyncClient(timeout=self.timeout)
        try:
            yield client
        finally:
            await client.aclose()

    def _get_endpoint_url(self, endpoint: str) -> str:
        return f"{self.base_url}{endpoint}"

    @abstractmethod
    async def issue_token(self) -> str:
        """Request a fresh attestation token.

        Returns:
            Opaque bearer token string

        Raises:
            TokenRequestError: If the provider cannot issue a token
        """
        pass
