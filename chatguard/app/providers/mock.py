"""Mock attestation provider for development and tests.

Issues synthetic JWT-shaped tokens without contacting any service.

Enable by setting environment variable:
    ATTESTATION_MOCK=true
"""

import asyncio
import base64
import json
import time
import uuid
from typing import Optional

from chatguard.app.exceptions import TokenRequestError
from chatguard.app.providers.base import AttestationProvider


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


class MockAttestationProvider(AttestationProvider):
    """Attestation provider that fabricates tokens locally.

    Features:
    - Configurable delay to simulate a slow provider
    - Failure switch to exercise error handling
    - Counts issued requests so tests can assert on coalescing
    - Optional fixed token to exercise malformed-token handling
    """

    def __init__(
        self,
        base_url: str = "http://mock.attestation",
        site_key: str = "mock-site-key",
        delay: float = 0.0,
        fail: bool = False,
        token: Optional[str] = None,
    ):
        super().__init__(base_url, site_key)
        self.delay = delay
        self.fail = fail
        self.token = token
        self.request_count = 0

    def _generate_token(self) -> str:
        now = int(time.time())
        header = _b64({"alg": "none", "typ": "JWT"})
        claims = _b64({
            "sub": self.site_key,
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + 3600,
        })
        signature = uuid.uuid4().hex
        return f"{header}.{claims}.{signature}"

    async def issue_token(self) -> str:
        self.request_count += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise TokenRequestError("Mock attestation provider configured to fail")
        if self.token is not None:
            return self.token
        return self._generate_token()
