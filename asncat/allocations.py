"""Allocation source: actionable ASN ranges from the RIR delegated files.

Downloads are cached as ``allocations-<UTC timestamp>.ndjson`` files and
reused while the newest one is younger than the configured TTL.
"""

import json
import logging
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable

import requests

from asncat.config import DEFAULT_REGISTRY_SOURCES
from asncat.models import AsnAllocation
from asncat.registry.delegated import parse_allocations

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(days=7)


class AllocationError(Exception):
    """Raised when no allocations can be loaded or downloaded."""


class AllocationCache:
    """Load ASN allocations from a TTL-bound on-disk cache or the network.

    Args:
        directory: Directory holding ``allocations-*.ndjson`` files.
        sources: Delegated-extended URLs.
        ttl: Maximum age of a cache file before it is refreshed.
        session: HTTP session; a new one is created when omitted.
        timeout: Per-download timeout in seconds.
        clock: Wall-clock seconds source (injectable for tests).
    """

    def __init__(
        self,
        directory: Path | str,
        sources: list[str] | tuple[str, ...] = DEFAULT_REGISTRY_SOURCES,
        *,
        ttl: timedelta = DEFAULT_TTL,
        session: requests.Session | None = None,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = Path(directory)
        self.sources = list(sources)
        self.ttl = ttl
        self.session = session or requests.Session()
        self.timeout = timeout
        self._clock = clock

    def load(self) -> list[AsnAllocation]:
        """Return allocations sorted by start ASN.

        Raises:
            AllocationError: If nothing could be loaded.
        """
        self.directory.mkdir(parents=True, exist_ok=True)
        latest = self.newest_file()
        if latest is not None and not self.is_stale(latest):
            allocations = read_allocations(latest)
            logger.info("Loaded cached allocations from %s", latest)
        else:
            allocations = self.fetch()
            path = self.write(allocations)
            logger.info("Wrote allocation cache %s", path)

        if not allocations:
            raise AllocationError("No ASN allocations downloaded")
        return sorted(allocations, key=lambda a: a.start_asn)

    def newest_file(self) -> Path | None:
        candidates = list(self.directory.glob("allocations-*.ndjson"))
        if not candidates:
            return None
        return max(candidates, key=lambda p: p.stat().st_mtime)

    def is_stale(self, path: Path) -> bool:
        age = self._clock() - path.stat().st_mtime
        return age > self.ttl.total_seconds()

    def fetch(self) -> list[AsnAllocation]:
        """Download and parse every source; failing sources are skipped."""
        allocations: list[AsnAllocation] = []
        for url in self.sources:
            try:
                response = self.session.get(
                    url, headers={"Accept": "text/plain"}, timeout=self.timeout
                )
            except requests.RequestException as exc:
                logger.error("Failed to download %s: %s", url, exc)
                continue
            if not 200 <= response.status_code < 300:
                logger.error(
                    "Failed to download registry data from %s: %d",
                    url,
                    response.status_code,
                )
                continue
            parsed = parse_allocations(response.text.splitlines())
            logger.info("Parsed %d allocations from %s", len(parsed), url)
            allocations.extend(parsed)
        return allocations

    def write(self, allocations: list[AsnAllocation]) -> Path:
        stamp = datetime.fromtimestamp(self._clock(), UTC).strftime("%Y%m%dT%H%M%SZ")
        path = self.directory / f"allocations-{stamp}.ndjson"
        with open(path, "w", encoding="utf-8") as fh:
            for allocation in allocations:
                fh.write(json.dumps(allocation.to_dict()) + "\n")
        return path


def read_allocations(path: Path) -> list[AsnAllocation]:
    """Read an allocation cache file.

    Raises:
        AllocationError: If a line cannot be decoded.
    """
    allocations: list[AsnAllocation] = []
    with open(path, encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            if not line.strip():
                continue
            try:
                allocations.append(AsnAllocation.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                raise AllocationError(
                    f"Invalid allocation at {path}:{lineno}: {exc}"
                ) from exc
    return allocations
