"""Binary payload helpers for image and audio items.

Binary content is stored inline as a data URI (``data:<mime>;base64,<data>``).
Items imported from elsewhere may instead point at a storage URL, in which
case the bytes are downloaded on demand.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 60.0


@dataclass(frozen=True)
class MediaBlob:
    """Raw bytes of an image or audio payload with their mime type."""

    data: bytes
    mime_type: str

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @classmethod
    def from_base64(cls, encoded: str, mime_type: str) -> MediaBlob:
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid base64 payload: {e}") from e
        return cls(data=data, mime_type=mime_type)

    @classmethod
    def from_data_uri(cls, uri: str, mime_type: str | None = None) -> MediaBlob:
        """Decode a base64 data URI. A bare base64 string is accepted when
        ``mime_type`` is given."""
        if not uri.startswith("data:"):
            if not mime_type:
                raise ValueError("Not a data URI and no mime type given")
            return cls.from_base64(uri, mime_type)

        header, sep, encoded = uri.partition(",")
        if not sep:
            raise ValueError("Malformed data URI: missing ','")
        meta = header[len("data:"):].split(";")
        if "base64" not in meta[1:]:
            raise ValueError("Only base64 data URIs are supported")
        return cls.from_base64(encoded, meta[0] or mime_type or "application/octet-stream")


def inline_base64(content: str) -> str:
    """Return only the base64 portion of a data URI (or the string itself)."""
    if content.startswith("data:"):
        return content.partition(",")[2]
    return content


async def load_blob(
    content: str,
    mime_type: str,
    client: httpx.AsyncClient | None = None,
) -> MediaBlob:
    """Fetch the stored binary behind an item's ``content``.

    Data URIs are decoded in place; http(s) URLs are downloaded.
    """
    if not content.startswith(("http://", "https://")):
        return MediaBlob.from_data_uri(content, mime_type)

    logger.info(f"Downloading media payload ({mime_type})")
    if client is not None:
        response = await client.get(content, follow_redirects=True)
    else:
        async with httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT) as own_client:
            response = await own_client.get(content, follow_redirects=True)
    response.raise_for_status()
    served_type = response.headers.get("content-type", "").split(";", 1)[0].strip()
    return MediaBlob(data=response.content, mime_type=served_type or mime_type)
