"""Image sources: uploaded files and user-supplied URLs.

An upload is kept in memory and referred to as ``upload://<id>``. Typed
URLs are stored verbatim and only fetched when a classification runs.
"""

from __future__ import annotations

import base64
import binascii
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from urllib.parse import unquote_to_bytes, urlsplit

import httpx

from imageid.errors import InvalidImageError

logger = logging.getLogger(__name__)

UPLOAD_SCHEME = "upload://"


def upload_id(ref: str) -> str | None:
    """Return the upload id of an ``upload://`` reference, else None."""
    if ref.startswith(UPLOAD_SCHEME):
        return ref[len(UPLOAD_SCHEME) :]
    return None


@dataclass(frozen=True)
class StoredUpload:
    data: bytes
    content_type: str


class UploadStore:
    """Bounded in-memory store for uploaded images, oldest evicted first."""

    def __init__(self, max_uploads: int) -> None:
        self._max_uploads = max_uploads
        self._uploads: OrderedDict[str, StoredUpload] = OrderedDict()

    def put(self, data: bytes, content_type: str) -> str:
        """Store an upload and return its reference."""
        key = uuid.uuid4().hex
        self._uploads[key] = StoredUpload(data=data, content_type=content_type)
        while len(self._uploads) > self._max_uploads:
            evicted, _ = self._uploads.popitem(last=False)
            logger.debug("Evicted upload %s", evicted)
        return f"{UPLOAD_SCHEME}{key}"

    def get(self, key: str) -> StoredUpload:
        """Look up an upload by id.

        Raises:
            KeyError: If the upload is unknown or was evicted.
        """
        return self._uploads[key]

    def __len__(self) -> int:
        return len(self._uploads)


class ImageFetcher:
    """Resolves an image reference to raw bytes."""

    def __init__(
        self,
        uploads: UploadStore,
        max_file_size: int,
        timeout: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._uploads = uploads
        self._max_file_size = max_file_size
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def fetch(self, ref: str) -> bytes:
        """Return the bytes behind ``ref``.

        Raises:
            InvalidImageError: If the reference cannot be resolved.
        """
        uploaded = upload_id(ref)
        if uploaded is not None:
            try:
                return self._uploads.get(uploaded).data
            except KeyError:
                raise InvalidImageError("Uploaded image is no longer available") from None

        scheme = urlsplit(ref).scheme.lower()
        if scheme == "data":
            data = _decode_data_url(ref)
        elif scheme in ("http", "https"):
            data = await self._download(ref)
        else:
            raise InvalidImageError(f"Unsupported image reference: {ref!r}")

        if len(data) > self._max_file_size:
            raise InvalidImageError(f"Image exceeds {self._max_file_size} bytes")
        return data

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _download(self, url: str) -> bytes:
        """Stream ``url`` into memory, aborting once it passes ``max_file_size``."""
        try:
            async with self._client.stream("GET", url) as response:
                response.raise_for_status()
                declared = response.headers.get("content-length")
                if declared is not None and declared.isdigit() and int(declared) > self._max_file_size:
                    raise InvalidImageError(f"Image exceeds {self._max_file_size} bytes")
                buffer = bytearray()
                async for chunk in response.aiter_bytes():
                    buffer.extend(chunk)
                    if len(buffer) > self._max_file_size:
                        raise InvalidImageError(f"Image exceeds {self._max_file_size} bytes")
        except httpx.HTTPError as exc:
            logger.warning("Could not fetch %s: %s", url, exc)
            raise InvalidImageError(f"Could not fetch image: {exc}") from exc
        return bytes(buffer)


def _decode_data_url(ref: str) -> bytes:
    header, sep, payload = ref.partition(",")
    if not sep:
        raise InvalidImageError("Malformed data URL")
    if header.endswith(";base64"):
        try:
            return base64.b64decode(payload, validate=True)
        except binascii.Error as exc:
            raise InvalidImageError("Malformed base64 data URL") from exc
    return unquote_to_bytes(payload)
