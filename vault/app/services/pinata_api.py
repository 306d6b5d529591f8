import json
import logging
from typing import Annotated, Any, Dict, List, Optional

import httpx

from vault.app.core.config import Settings
from vault.app.services.errors import FetchError, StoreError

logger = logging.getLogger("vault.pinata_api")


class PinataClient:
    """
    Async client for a Pinata-compatible pinning service.

    Covers exactly three collaborator endpoints:
    - pin JSON content with metadata tags (authenticated)
    - list currently pinned entries filtered by metadata (authenticated)
    - resolve a content hash through the public gateway (anonymous)

    The client holds no state beyond its configuration. It performs no
    retries; every failure surfaces on first occurrence.
    """

    PIN_JSON_PATH = "/pinning/pinJSONToIPFS"
    PIN_LIST_PATH = "/data/pinList"

    def __init__(
        self,
        http_client: Annotated[
            httpx.AsyncClient,
            "Persistent HTTP client",
        ],
        settings: Annotated[
            Settings,
            "Application configuration",
        ],
        auth_headers: Annotated[
            Dict[str, str],
            "Resolved pinning credentials",
        ],
    ):
        if not auth_headers:
            raise ValueError("PinataClient requires resolved credentials")

        self.client = http_client
        self.settings = settings
        self._auth_headers = auth_headers

        self.base_url = settings.api_base_url
        self.gateway_url = settings.gateway_base_url

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _headers(self, correlation_id: str) -> dict[str, str]:
        return {
            **self._auth_headers,
            "Accept": "application/json",
            "X-Correlation-ID": correlation_id,
        }

    def gateway_link(self, content_hash: str) -> str:
        return f"{self.gateway_url}/{content_hash}"

    @staticmethod
    def _keyvalue_filter(keyvalues: Dict[str, str]) -> str:
        return json.dumps(
            {
                key: {"value": value, "op": "eq"}
                for key, value in keyvalues.items()
            },
            separators=(",", ":"),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def pin_json(
        self,
        *,
        content: Any,
        name: str,
        keyvalues: Dict[str, str],
        correlation_id: str,
    ) -> str:
        """
        Pin JSON content with metadata tags.

        Returns the content hash assigned by the service.
        """
        payload = {
            "pinataContent": content,
            "pinataMetadata": {
                "name": name,
                "keyvalues": keyvalues,
            },
        }

        try:
            response = await self.client.post(
                f"{self.base_url}{self.PIN_JSON_PATH}",
                headers=self._headers(correlation_id),
                json=payload,
                timeout=self.settings.http_timeout_seconds,
            )
        except httpx.RequestError as exc:
            logger.error(
                "pin_request_unreachable",
                extra={
                    "trace_id": correlation_id,
                    "error_type": type(exc).__name__,
                },
            )
            raise StoreError(f"Pinata API unreachable: {exc}") from exc

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "pin_request_failed",
                extra={
                    "status_code": response.status_code,
                    "response_body": response.text,
                    "trace_id": correlation_id,
                },
            )
            raise StoreError(
                f"Pinata API error: {response.status_code}",
                status_code=response.status_code,
            ) from exc

        try:
            content_hash = response.json()["IpfsHash"]
        except (ValueError, KeyError, TypeError) as exc:
            raise StoreError(
                "Pinata API response missing IpfsHash",
                status_code=response.status_code,
            ) from exc

        return str(content_hash)

    async def list_pins(
        self,
        *,
        correlation_id: str,
        keyvalues: Optional[Dict[str, str]] = None,
        name: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        List currently pinned entries matching every given metadata tag.

        Rows are returned in the order the index produced them.
        """
        params: Dict[str, Any] = {
            "status": "pinned",
            "pageLimit": self.settings.pin_list_page_limit,
        }
        if name is not None:
            params["metadata[name]"] = name
        if keyvalues:
            params["metadata[keyvalues]"] = self._keyvalue_filter(keyvalues)

        try:
            response = await self.client.get(
                f"{self.base_url}{self.PIN_LIST_PATH}",
                headers=self._headers(correlation_id),
                params=params,
                timeout=self.settings.http_timeout_seconds,
            )
        except httpx.RequestError as exc:
            logger.error(
                "pin_list_unreachable",
                extra={
                    "trace_id": correlation_id,
                    "error_type": type(exc).__name__,
                },
            )
            raise FetchError(f"Pinata API unreachable: {exc}") from exc

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "pin_list_failed",
                extra={
                    "status_code": response.status_code,
                    "response_body": response.text,
                    "trace_id": correlation_id,
                },
            )
            raise FetchError(
                f"Pinata API error: {response.status_code}",
                status_code=response.status_code,
            ) from exc

        try:
            rows = response.json()["rows"]
        except (ValueError, KeyError, TypeError) as exc:
            raise FetchError(
                "Pinata API response missing rows",
                status_code=response.status_code,
            ) from exc

        if not isinstance(rows, list):
            raise FetchError(
                "Pinata API rows is not a list",
                status_code=response.status_code,
            )

        return rows

    async def fetch_content(
        self,
        content_hash: str,
        *,
        correlation_id: str,
    ) -> Any:
        """Resolve a content hash through the public gateway."""
        try:
            response = await self.client.get(
                self.gateway_link(content_hash),
                headers={
                    "Accept": "application/json",
                    "X-Correlation-ID": correlation_id,
                },
                timeout=self.settings.http_timeout_seconds,
                follow_redirects=True,
            )
        except httpx.RequestError as exc:
            logger.error(
                "gateway_unreachable",
                extra={
                    "content_hash": content_hash,
                    "trace_id": correlation_id,
                    "error_type": type(exc).__name__,
                },
            )
            raise FetchError(f"IPFS gateway unreachable: {exc}") from exc

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "gateway_fetch_failed",
                extra={
                    "status_code": response.status_code,
                    "content_hash": content_hash,
                    "trace_id": correlation_id,
                },
            )
            raise FetchError(
                f"IPFS fetch error: {response.status_code}",
                status_code=response.status_code,
            ) from exc

        try:
            return response.json()
        except ValueError as exc:
            raise FetchError(
                f"IPFS content is not JSON: {content_hash}",
                status_code=response.status_code,
            ) from exc
