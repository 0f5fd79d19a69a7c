"""Tests for asncat.allocations."""

import os
import time
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from asncat.allocations import AllocationCache, AllocationError, read_allocations
from asncat.models import AsnAllocation

_FEED_A = "arin|US|asn|65000|2|20240101|allocated\narin|US|asn|64512|1|20240101|reserved\n"
_FEED_B = "ripencc|NL|asn|1101|1|19930901|assigned\n"


def _make_response(text: str = "", status_code: int = 200) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    return response


def _write_cache(directory: Path, name: str, allocations: list[AsnAllocation], mtime: float) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    cache = AllocationCache(directory, [], session=MagicMock(), clock=lambda: mtime)
    path = cache.write(allocations)
    target = directory / name
    path.rename(target)
    os.utime(target, (mtime, mtime))
    return target


class TestFetch:
    def test_failing_sources_skipped(self, tmp_path: Path) -> None:
        session = MagicMock()
        session.get.side_effect = [
            _make_response(_FEED_A),
            _make_response(status_code=500),
            requests.ConnectionError("down"),
            _make_response(_FEED_B),
        ]
        cache = AllocationCache(tmp_path, ["a", "b", "c", "d"], session=session)

        allocations = cache.fetch()

        assert [(a.start_asn, a.status) for a in allocations] == [
            (65000, "allocated"),
            (1101, "assigned"),
        ]
        assert session.get.call_args.kwargs["headers"] == {"Accept": "text/plain"}


class TestLoad:
    def test_downloads_sorts_and_caches(self, tmp_path: Path) -> None:
        session = MagicMock()
        session.get.side_effect = [_make_response(_FEED_A), _make_response(_FEED_B)]
        cache = AllocationCache(tmp_path, ["a", "b"], session=session)

        allocations = cache.load()

        assert [a.start_asn for a in allocations] == [1101, 65000]
        cached = list(tmp_path.glob("allocations-*.ndjson"))
        assert len(cached) == 1
        assert sorted(a.start_asn for a in read_allocations(cached[0])) == [1101, 65000]

    def test_fresh_cache_reused(self, tmp_path: Path) -> None:
        now = time.time()
        _write_cache(tmp_path, "allocations-20240101T000000Z.ndjson",
                     [AsnAllocation(7, 1, "arin", "US", "allocated")], now - 60)
        session = MagicMock()
        cache = AllocationCache(tmp_path, ["a"], session=session, clock=lambda: now)

        allocations = cache.load()

        assert [a.start_asn for a in allocations] == [7]
        session.get.assert_not_called()

    def test_stale_cache_refreshed(self, tmp_path: Path) -> None:
        now = time.time()
        _write_cache(tmp_path, "allocations-20240101T000000Z.ndjson",
                     [AsnAllocation(7, 1, "arin", "US", "allocated")], now - 8 * 86400)
        session = MagicMock()
        session.get.return_value = _make_response(_FEED_B)
        cache = AllocationCache(
            tmp_path, ["a"], ttl=timedelta(days=7), session=session, clock=lambda: now
        )

        allocations = cache.load()

        assert [a.start_asn for a in allocations] == [1101]
        assert session.get.call_count == 1

    def test_newest_file_by_mtime(self, tmp_path: Path) -> None:
        now = time.time()
        older = _write_cache(tmp_path, "allocations-b.ndjson", [], now - 600)
        newer = _write_cache(tmp_path, "allocations-a.ndjson", [], now - 60)
        cache = AllocationCache(tmp_path, [], session=MagicMock(), clock=lambda: now)

        assert cache.newest_file() == newer
        assert cache.newest_file() != older

    def test_nothing_downloaded_raises(self, tmp_path: Path) -> None:
        session = MagicMock()
        session.get.return_value = _make_response(status_code=503)
        cache = AllocationCache(tmp_path, ["a"], session=session)

        with pytest.raises(AllocationError, match="No ASN allocations downloaded"):
            cache.load()


class TestReadAllocations:
    def test_invalid_line(self, tmp_path: Path) -> None:
        path = tmp_path / "allocations-x.ndjson"
        path.write_text('{"startAsn": 1, "count": 1}\nnot json\n', encoding="utf-8")

        with pytest.raises(AllocationError, match=":2"):
            read_allocations(path)
