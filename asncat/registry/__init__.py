"""Registry metadata sources and shared download helpers."""

from __future__ import annotations

import logging
import re
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Callable

import requests

if TYPE_CHECKING:
    from asncat.models import AsnMetadata

logger = logging.getLogger(__name__)

DOWNLOAD_MAX_RETRIES = 3
DOWNLOAD_RETRY_DELAY = 5.0
DOWNLOAD_TIMEOUT = 600.0
_CHUNK_SIZE = 1 << 20

# Query parameters whose values never reach a log line or error message.
_SECRET_PARAM = re.compile(r"(?i)\b(api_?key|token)=[^&\s'\")]+")


class MetadataSource(ABC):
    """Something that can answer "what do we know about AS<n>?".

    Implemented by the on-disk registry cache and by the RDAP client.
    A ``None`` answer is a terminal miss; callers do not retry it.
    """

    @abstractmethod
    def lookup(self, asn: int) -> AsnMetadata | None:
        """Return metadata for *asn*, or ``None`` if nothing is known.

        Args:
            asn: Autonomous System Number.

        Returns:
            An ``AsnMetadata`` record or ``None``.
        """


class ChainedSource(MetadataSource):
    """Query several sources in order and return the first hit."""

    def __init__(self, *sources: MetadataSource) -> None:
        if not sources:
            raise ValueError("ChainedSource needs at least one source")
        self.sources = sources

    def lookup(self, asn: int) -> AsnMetadata | None:
        for source in self.sources:
            found = source.lookup(asn)
            if found is not None:
                return found
        return None


class RegistryParseError(Exception):
    """Raised when a registry dump cannot be parsed (corrupt gzip, bad XML)."""


class DownloadError(Exception):
    """Raised when a registry download fails after all retries."""


def redact_secrets(text: str) -> str:
    """Mask ``apikey=...`` style query values in *text*."""
    return _SECRET_PARAM.sub(lambda m: f"{m.group(1)}=***", text)


def download_to_file(
    session: requests.Session,
    url: str,
    dest: Path,
    *,
    retries: int = DOWNLOAD_MAX_RETRIES,
    retry_delay: float = DOWNLOAD_RETRY_DELAY,
    timeout: float = DOWNLOAD_TIMEOUT,
    sleep: Callable[[float], None] = time.sleep,
    label: str | None = None,
) -> Path:
    """Stream *url* to *dest*, retrying network failures with a fixed delay.

    A non-200 response is not retried; the server has answered and asking
    again will not change its mind.

    Args:
        session: HTTP session to use.
        url: URL to download.
        dest: Destination file (overwritten).
        retries: Additional attempts after the first network failure.
        retry_delay: Seconds to sleep between attempts.
        timeout: Per-request timeout in seconds.
        sleep: Sleep function (injectable for tests).
        label: Human-readable name for log messages; defaults to *url*.

    Returns:
        *dest*.

    Raises:
        DownloadError: On a non-200 status or when retries are exhausted.
    """
    name = label or redact_secrets(url)
    attempts_left = retries
    while True:
        try:
            with session.get(url, stream=True, timeout=timeout) as response:
                if response.status_code != 200:
                    content_type = response.headers.get("Content-Type", "unknown")
                    preview = redact_secrets(response.text[:512]) if response.text else ""
                    raise DownloadError(
                        f"Failed to download {name} (status {response.status_code}, "
                        f"content-type {content_type}): {preview}"
                    )
                with open(dest, "wb") as fh:
                    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                        if chunk:
                            fh.write(chunk)
            return dest
        except requests.RequestException as exc:
            reason = redact_secrets(str(exc))
            if attempts_left <= 0:
                raise DownloadError(
                    f"Download error for {name}: {reason} (no retries left)"
                ) from exc
            logger.warning(
                "Download error for %s: %s (retrying in %.0fs, %d retries left)",
                name,
                reason,
                retry_delay,
                attempts_left,
            )
            attempts_left -= 1
            sleep(retry_delay)
