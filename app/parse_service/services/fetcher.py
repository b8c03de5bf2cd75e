"""Download PDF sources given by URL."""

import logging
from urllib.parse import urlparse

import httpx

from ..errors import ErrorCode, ServiceError
from .pdf_service import PDF_MAGIC

logger = logging.getLogger(__name__)


def validate_source_url(url: str) -> str:
    """Reject anything that is not an absolute http(s) URL.

    Raises ServiceError(INVALID_URL).
    """
    url = (url or "").strip()
    if not _is_http_url(url):
        raise ServiceError(
            ErrorCode.INVALID_URL,
            "URL must be an absolute http or https URL",
            details={"url": url},
        )
    return url


def _is_http_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
        # port is parsed lazily
        parsed.port
        httpx.URL(url)
    except (ValueError, httpx.InvalidURL):
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.hostname)


class SourceFetcher:
    """Fetch a PDF over HTTP with a size cap and a hard timeout."""

    def __init__(
        self,
        max_bytes: int,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.max_bytes = max_bytes
        self.timeout = timeout
        self._transport = transport

    async def fetch(self, url: str) -> bytes:
        """Download the PDF at *url*.

        Raises:
            ServiceError: INVALID_URL when the request fails or returns a
                non-2xx status, FILE_TOO_LARGE past max_bytes,
                INVALID_FILE_FORMAT when the body is not a PDF.
        """
        chunks: list[bytes] = []
        received = 0
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self.timeout,
                follow_redirects=True,
            ) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    async for chunk in response.aiter_bytes():
                        received += len(chunk)
                        if received > self.max_bytes:
                            raise ServiceError(
                                ErrorCode.FILE_TOO_LARGE,
                                f"Document at URL exceeds {self.max_bytes} bytes",
                                details={"max_bytes": self.max_bytes},
                            )
                        chunks.append(chunk)
        except httpx.HTTPStatusError as e:
            logger.warning("Fetching %s returned %d", url, e.response.status_code)
            raise ServiceError(
                ErrorCode.INVALID_URL,
                f"Could not fetch document: HTTP {e.response.status_code}",
                details={"url": url, "status_code": e.response.status_code},
            ) from e
        except (httpx.InvalidURL, UnicodeError) as e:
            logger.warning("Fetching %s failed, invalid URL: %s", url, e)
            raise ServiceError(
                ErrorCode.INVALID_URL,
                "Could not fetch document: the URL cannot be requested",
                details={"url": url},
            ) from e
        except httpx.HTTPError as e:
            logger.warning("Fetching %s failed: %s", url, e)
            raise ServiceError(
                ErrorCode.INVALID_URL,
                f"Could not fetch document: {type(e).__name__}",
                details={"url": url},
            ) from e

        content = b"".join(chunks)
        if not content.startswith(PDF_MAGIC):
            raise ServiceError(
                ErrorCode.INVALID_FILE_FORMAT,
                "Document at URL is not a PDF",
                details={"supported_formats": ["application/pdf"]},
            )
        logger.info("Fetched %s (%d bytes)", url, len(content))
        return content
