from typing import Optional

import httpx

from chatguard.app.exceptions import TokenRequestError
from chatguard.app.providers.base import AttestationProvider


class HttpAttestationProvider(AttestationProvider):
    """Attestation provider speaking JSON over HTTP.

    POSTs to `{base_url}/token` with the site key as bearer credential and
    expects `{"token": "<opaque>"}` back. Any transport error, non-2xx
    status or missing token is reported as TokenRequestError.
    """

    def __init__(
        self,
        base_url: str,
        site_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        super().__init__(base_url, site_key, http_client, timeout)

    async def issue_token(self) -> str:
        url = self._get_endpoint_url("/token")

        try:
            async with self._client_context() as client:
                resp = await client.post(
                    url, headers=self.headers, json={}, timeout=self.timeout
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            raise TokenRequestError(
                f"Attestation provider returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise TokenRequestError(f"Attestation provider unreachable: {e}") from e
        except ValueError as e:
            raise TokenRequestError("Attestation provider returned invalid JSON") from e

        token = data.get("token") if isinstance(data, dict) else None
        if not isinstance(token, str) or not token:
            raise TokenRequestError("Attestation provider returned no token")
        return token
