"""Shared plumbing for gateways reached over plain HTTPS."""

import json
import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from ..errors import (
    ProviderAuthError,
    ProviderError,
    ProviderNotFoundError,
    ProviderUnreachableError,
)
from .base import ConnectorBase, normalize_headers
from .signing import verify_hmac_signature

logger = logging.getLogger(__name__)


class HttpConnector(ConnectorBase):
    """Connector talking JSON over an ``httpx.AsyncClient``.

    Subclasses provide ``base_url`` selection and ``_auth_headers``. HTTP
    failures are translated into the ProviderError family so callers never
    see httpx exceptions.
    """

    signature_header = "x-signature"
    timestamp_header = "x-timestamp"

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        webhook_secret: Optional[str] = None,
        production: bool = False,
    ):
        super().__init__(webhook_secret=webhook_secret, production=production)
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def webhook_path(self) -> str:
        return f"/webhooks/{self.name}"

    async def _auth_headers(self, method: str, path: str, body: bytes) -> Dict[str, str]:
        return {}

    async def _make_request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Make an authenticated request and return the decoded JSON body."""
        body = json.dumps(data).encode() if data is not None else b""
        headers = {"Accept": "application/json"}
        if data is not None:
            headers["Content-Type"] = "application/json"
        headers.update(await self._auth_headers(method, path, body))
        if extra_headers:
            headers.update(extra_headers)

        try:
            response = await self.http_client.request(
                method,
                f"{self.base_url}{path}",
                content=body or None,
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.error(f"{self.name} request {method} {path} failed: {e}")
            raise ProviderUnreachableError(f"{self.name} is unreachable", provider=self.name) from e

        self._raise_for_status(response, method, path)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"{self.name} returned invalid JSON", provider=self.name) from e

    def _raise_for_status(self, response: httpx.Response, method: str, path: str) -> None:
        status = response.status_code
        if status < 400:
            return
        logger.error(f"{self.name} API error: {status} on {method} {path}")
        if status in (401, 403):
            raise ProviderAuthError(
                f"{self.name} rejected the credentials", provider=self.name, provider_status_code=status
            )
        if status == 404:
            raise ProviderNotFoundError(
                f"{self.name} does not know this payment", provider=self.name, provider_status_code=status
            )
        if status >= 500 or status == 429:
            raise ProviderUnreachableError(
                f"{self.name} is temporarily unavailable", provider=self.name, provider_status_code=status
            )
        raise ProviderError(
            f"{self.name} API error {status}", provider=self.name, provider_status_code=status
        )

    async def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_secret:
            return self.skip_unsigned()
        lowered = normalize_headers(headers)
        return verify_hmac_signature(
            self.webhook_secret,
            lowered.get(self.signature_header),
            lowered.get(self.timestamp_header),
            "POST",
            self.webhook_path,
            raw_body,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

