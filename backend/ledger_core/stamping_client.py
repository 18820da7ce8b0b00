"""
E-stamp (e-materai) provider client.

Uploads a rendered contract PDF with stamp placement coordinates and returns
the provider's reference to the stamped document. Every failure mode,
including timeouts, surfaces as StampingProviderError.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging
import os

import httpx

logger = logging.getLogger(__name__)

STAMPING_API_URL = os.getenv(
    "STAMPING_API_URL", "https://staging-event.meteraiku.co.id/api/document-upload"
)
STAMPING_API_KEY = os.getenv("STAMPING_API_KEY", "")
STAMPING_TIMEOUT_SECONDS = float(os.getenv("STAMPING_TIMEOUT_SECONDS", "20"))


class StampingProviderError(Exception):
    """Raised when the stamping provider rejects, times out, or answers garbage"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass
class StampCoordinates:
    """Stamp box on the page, in provider units"""
    x: float = 230
    xr: float = 385 * 0.9
    y: float = 220
    yr: float = 365 * 0.9
    page: int = 1

    def as_form_fields(self) -> Dict[str, str]:
        return {
            "custom_stamp[x]": str(self.x),
            "custom_stamp[xr]": str(self.xr),
            "custom_stamp[y]": str(self.y),
            "custom_stamp[yr]": str(self.yr),
            "custom_stamp[page]": str(self.page),
        }


@dataclass
class StampReceipt:
    uuid: str
    file_url: str
    status_text: Optional[str] = None


class EStampClient:
    """Async client for the e-materai document-upload API"""

    def __init__(
        self,
        base_url: str = STAMPING_API_URL,
        api_key: str = STAMPING_API_KEY,
        timeout: float = STAMPING_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self.transport,
            headers={"X-API-KEY": self.api_key},
        )

    async def stamp_document(
        self,
        pdf_bytes: bytes,
        filename: str,
        coordinates: StampCoordinates,
    ) -> StampReceipt:
        """Upload a PDF for stamping. Returns the provider receipt."""
        logger.info(f"[E-STAMP] Stamping document: {filename}")
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/file-stamp",
                    files={"file": (filename, pdf_bytes, "application/pdf")},
                    data=coordinates.as_form_fields(),
                )
        except httpx.TimeoutException:
            logger.error(f"[E-STAMP] Provider timeout for {filename}")
            raise StampingProviderError("Stamping provider timed out")
        except httpx.HTTPError as e:
            logger.error(f"[E-STAMP] Transport error for {filename}: {e}")
            raise StampingProviderError(f"Stamping provider unreachable: {e}")

        data = self._parse(response)
        receipt = StampReceipt(
            uuid=str(data.get("uuid", "")),
            file_url=data.get("file_stamp") or "",
            status_text=data.get("status_text"),
        )
        if not receipt.file_url:
            raise StampingProviderError("Stamping provider returned no stamped file", response.status_code)

        logger.info(f"[E-STAMP] Success! UUID: {receipt.uuid}, File: {receipt.file_url}")
        return receipt

    async def fetch_stamped_document(self, uuid: str) -> bytes:
        """Download a stamped document by provider UUID"""
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/{uuid}")
        except httpx.HTTPError as e:
            raise StampingProviderError(f"Failed to fetch stamped document: {e}")
        if response.status_code != 200:
            raise StampingProviderError(
                f"Failed to fetch stamped document: {response.status_code}", response.status_code
            )
        return response.content

    async def retry_stamp(self, uuid: str) -> StampReceipt:
        """Ask the provider to retry a failed stamping job"""
        try:
            async with self._client() as client:
                response = await client.post(f"{self.base_url}/{uuid}/retry")
        except httpx.HTTPError as e:
            raise StampingProviderError(f"Failed to retry stamp: {e}")
        data = self._parse(response)
        return StampReceipt(
            uuid=str(data.get("uuid", uuid)),
            file_url=data.get("file_stamp") or "",
            status_text=data.get("status_text"),
        )

    @staticmethod
    def _parse(response: httpx.Response) -> Dict[str, Any]:
        if response.status_code < 200 or response.status_code >= 300:
            logger.error(f"[E-STAMP] API error ({response.status_code}): {response.text[:200]}")
            raise StampingProviderError(
                f"Stamping API failed: {response.status_code} - {response.text[:200]}",
                response.status_code
            )
        try:
            body = response.json()
        except ValueError:
            logger.error(f"[E-STAMP] Non-JSON response: {response.text[:200]}")
            raise StampingProviderError("Stamping API returned non-JSON response", response.status_code)
        if not isinstance(body, dict):
            raise StampingProviderError("Stamping API returned an unexpected payload", response.status_code)
        return body.get("data") or {}
