from __future__ import annotations

from io import BytesIO

import httpx
from PIL import Image, UnidentifiedImageError

from .config import get_settings


class QrImageError(Exception):
    """The QR image service failed or returned something that isn't an image."""


class QrImageClient:
    """Fetches QR images from an external generator (api.qrserver.com by default)."""

    def __init__(self, endpoint: str | None = None, size: int | None = None,
                 timeout: float | None = None,
                 transport: httpx.AsyncBaseTransport | None = None):
        settings = get_settings() if None in (endpoint, size, timeout) else None
        self.endpoint = endpoint or settings.qr_image_endpoint
        self.size = size or settings.qr_image_size
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, data: str, size: int | None = None) -> Image.Image:
        """Render `data` as a QR code and return it as a PIL image."""
        size = size or self.size
        client = await self._get_client()
        try:
            response = await client.get(
                self.endpoint,
                params={"size": f"{size}x{size}", "data": data, "format": "png"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise QrImageError(f"QR image request failed: {e}") from e

        try:
            image = Image.open(BytesIO(response.content))
            image.load()
        except (UnidentifiedImageError, OSError) as e:
            raise QrImageError(f"QR service returned an unreadable image: {e}") from e
        return image

    async def fetch_png(self, data: str, size: int | None = None) -> bytes:
        image = await self.fetch(data, size)
        buffer = BytesIO()
        image.save(buffer, format="PNG")
        return buffer.getvalue()


# Singleton
_qr_client: QrImageClient | None = None


def get_qr_client() -> QrImageClient:
    global _qr_client
    if _qr_client is None:
        _qr_client = QrImageClient()
    return _qr_client
