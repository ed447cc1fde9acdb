"""
Fetch deck lists referenced by URL.
"""
import logging
from typing import Optional

import requests

from app.services.import_errors import ImportSystemError, ImportTimeoutError, InvalidFormatError

logger = logging.getLogger("app.import.fetcher")

DEFAULT_FETCH_TIMEOUT = 30  # seconds
MAX_CONTENT_LENGTH = 5 * 1024 * 1024


class SourceFetcher:
    """Downloads the raw payload for jobs created with ``source_url``."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = DEFAULT_FETCH_TIMEOUT):
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch(self, url: str, timeout_ms: Optional[int] = None) -> str:
        """
        Download ``url`` and return its body as text.

        Args:
            url: Deck list URL
            timeout_ms: Per-request timeout in milliseconds, defaults to the fetcher timeout

        Returns:
            Response body

        Raises:
            InvalidFormatError: URL is malformed or the server answered 4xx
            ImportTimeoutError: request timed out (recoverable)
            ImportSystemError: network failure or 5xx answer (recoverable)
        """
        if not url.lower().startswith(("http://", "https://")):
            raise InvalidFormatError(f"Unsupported URL: {url}")

        timeout = timeout_ms / 1000 if timeout_ms else self.timeout
        logger.info(f"Fetching import source {url}")
        try:
            response = self.session.get(url, timeout=timeout, headers={"Accept": "application/json, text/plain, */*"})
        except requests.Timeout as e:
            raise ImportTimeoutError(f"Timed out fetching {url}: {e}")
        except requests.RequestException as e:
            raise ImportSystemError(f"Could not fetch {url}: {e}")

        if 400 <= response.status_code < 500:
            raise InvalidFormatError(
                f"Source returned HTTP {response.status_code} for {url}",
                suggestions=["Check that the deck is public and the URL is correct"],
            )
        if response.status_code >= 500:
            raise ImportSystemError(f"Source returned HTTP {response.status_code} for {url}")

        if len(response.content) > MAX_CONTENT_LENGTH:
            raise InvalidFormatError(f"Source at {url} is larger than {MAX_CONTENT_LENGTH} bytes")

        logger.info(f"Fetched {len(response.content)} bytes from {url}")
        return response.text
