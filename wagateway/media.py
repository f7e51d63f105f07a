from __future__ import annotations

import base64
import logging
import posixpath
from dataclasses import dataclass
from urllib.parse import unquote, urlparse

import httpx

from .errors import MediaFetchError, MediaTooLargeError
from .metrics import MEDIA_BYTES


LOGGER = logging.getLogger("wagateway.media")

DEFAULT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_FILENAME = "Media"


@dataclass(frozen=True, slots=True)
class MediaPayload:
    data: bytes
    content_type: str
    filename: str = DEFAULT_FILENAME

    @property
    def size(self) -> int:
        return len(self.data)

    def as_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


def _content_type(raw: str | None) -> str:
    if not raw:
        return DEFAULT_CONTENT_TYPE
    cleaned = raw.split(";", 1)[0].strip().lower()
    return cleaned or DEFAULT_CONTENT_TYPE


def _filename_from_url(url: str) -> str:
    path = unquote(urlparse(url).path or "")
    name = posixpath.basename(path.rstrip("/"))
    return name or DEFAULT_FILENAME


class MediaFetcher:
    """Fetch remote media by URL with size, type and time bounds."""

    def __init__(
        self,
        *,
        max_bytes: int,
        timeout: float = 15.0,
        allowed_types: tuple[str, ...] = (),
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._max_bytes = max_bytes
        self._timeout = timeout
        self._allowed_types = tuple(item.lower() for item in allowed_types)
        self._transport = transport

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    def _check_type(self, content_type: str) -> None:
        if not self._allowed_types:
            return
        if any(content_type.startswith(prefix) for prefix in self._allowed_types):
            return
        raise MediaFetchError(f"unsupported_media_type: {content_type}")

    async def resolve(self, ref: str) -> MediaPayload:
        url = (ref or "").strip()
        try:
            parsed = urlparse(url)
            host = parsed.hostname
        except ValueError as exc:
            LOGGER.warning("stage=media_fetch_fail url=%s error=%s", url, exc)
            raise MediaFetchError("invalid_media_url", cause=exc) from exc
        if parsed.scheme.lower() not in {"http", "https"} or not host:
            raise MediaFetchError("invalid_media_url")

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as session:
                async with session.stream("GET", url) as resp:
                    if resp.status_code < 200 or resp.status_code >= 300:
                        raise MediaFetchError(
                            f"media_http_status: {resp.status_code}", status=resp.status_code
                        )
                    content_type = _content_type(resp.headers.get("content-type"))
                    self._check_type(content_type)

                    declared = resp.headers.get("content-length")
                    if declared is not None:
                        try:
                            declared_size = int(declared)
                        except ValueError:
                            declared_size = None
                        if declared_size is not None and declared_size > self._max_bytes:
                            raise MediaTooLargeError(self._max_bytes, declared_size)

                    chunks: list[bytes] = []
                    received = 0
                    async for chunk in resp.aiter_bytes():
                        received += len(chunk)
                        if received > self._max_bytes:
                            raise MediaTooLargeError(self._max_bytes, received)
                        chunks.append(chunk)
        except MediaFetchError as exc:
            LOGGER.warning("stage=media_fetch_fail url=%s error=%s", url, exc)
            raise
        except httpx.TimeoutException as exc:
            LOGGER.warning("stage=media_fetch_fail url=%s error=timeout", url)
            raise MediaFetchError("media_fetch_timeout", cause=exc) from exc
        except httpx.InvalidURL as exc:
            LOGGER.warning("stage=media_fetch_fail url=%s error=%s", url, exc)
            raise MediaFetchError("invalid_media_url", cause=exc) from exc
        except httpx.HTTPError as exc:
            LOGGER.warning("stage=media_fetch_fail url=%s error=%s", url, exc)
            raise MediaFetchError(f"media_fetch_error: {exc}", cause=exc) from exc

        payload = MediaPayload(
            data=b"".join(chunks),
            content_type=content_type,
            filename=_filename_from_url(url),
        )
        MEDIA_BYTES.observe(payload.size)
        LOGGER.info(
            "stage=media_fetch_ok url=%s content_type=%s size=%s",
            url,
            payload.content_type,
            payload.size,
        )
        return payload


__all__ = ["MediaFetcher", "MediaPayload", "DEFAULT_CONTENT_TYPE"]
