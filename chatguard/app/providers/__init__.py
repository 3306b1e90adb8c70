"""Attestation providers for chatguard.

This package provides:
- Base provider interface (AttestationProvider)
- HTTP provider (HttpAttestationProvider)
- Local mock provider (MockAttestationProvider)
- create_provider(), which picks one from settings
"""

from typing import Any, Optional

import httpx

from chatguard.app.providers.base import AttestationProvider
from chatguard.app.providers.http import HttpAttestationProvider
from chatguard.app.providers.mock import MockAttestationProvider


def create_provider(
    http_client: Optional[httpx.AsyncClient] = None,
    config: Optional[Any] = None,
) -> AttestationProvider:
    """Create the attestation provider configured in settings.

    Args:
        http_client: Shared HTTP client for the HTTP provider
        config: Settings to read (module settings if None)

    Returns:
        MockAttestationProvider when ATTESTATION_MOCK is set, otherwise
        HttpAttestationProvider
    """
    if config is None:
        from chatguard.app.core.config import settings as config

    if config.attestation_mock:
        return MockAttestationProvider(site_key=config.attestation_site_key or "mock-site-key")
    return HttpAttestationProvider(
        base_url=config.attestation_base_url,
        site_key=config.attestation_site_key,
        http_client=http_client,
        timeout=config.attestation_timeout,
    )


__all__ = [
    "AttestationProvider",
    "HttpAttestationProvider",
    "MockAttestationProvider",
    "create_provider",
]
