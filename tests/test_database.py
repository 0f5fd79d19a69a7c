"""Tests for asncat.registry.database."""

import json
from pathlib import Path

import pytest

from asncat.models import AsnMetadata
from asncat.registry.database import RegistryCacheError, RegistryDatabase, write_database


def _records(*asns: int) -> list[AsnMetadata]:
    return [AsnMetadata.minimal(asn, f"AS-{asn}", organization=f"Org {asn}") for asn in asns]


class TestRegistryDatabase:
    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        db = RegistryDatabase(tmp_path / "registry.ndjson")

        assert db.is_empty()
        assert len(db) == 0
        assert db.lookup(13335) is None

    def test_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "registry.ndjson"
        assert write_database(path, _records(3320, 13335)) == 2

        db = RegistryDatabase(path)

        assert len(db) == 2
        assert 13335 in db
        assert db.lookup(13335).entity_for_classification() == "Org 13335"
        assert db.lookup(1) is None

    def test_skips_blank_and_comment_lines(self, tmp_path: Path) -> None:
        path = tmp_path / "registry.ndjson"
        record = json.dumps(_records(7)[0].to_dict())
        path.write_text(f"# header\n\n{record}\n", encoding="utf-8")

        assert len(RegistryDatabase(path)) == 1

    @pytest.mark.parametrize("line", ["{not json", '{"name": "no asn"}', "[1, 2]"])
    def test_bad_line_raises_with_location(self, tmp_path: Path, line: str) -> None:
        path = tmp_path / "registry.ndjson"
        record = json.dumps(_records(7)[0].to_dict())
        path.write_text(f"{record}\n{line}\n", encoding="utf-8")

        with pytest.raises(RegistryCacheError, match=r"registry.ndjson:2"):
            RegistryDatabase(path)

    @pytest.mark.parametrize("line", ["[1, 2]", "42", '"text"', "null"])
    def test_non_object_line_rejected(self, tmp_path: Path, line: str) -> None:
        path = tmp_path / "registry.ndjson"
        path.write_text(f"{line}\n", encoding="utf-8")

        with pytest.raises(RegistryCacheError, match="expected an object"):
            RegistryDatabase(path)


class TestWriteDatabase:
    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "registry.ndjson"
        write_database(path, _records(1))

        assert path.exists()

    def test_failure_keeps_previous_file(self, tmp_path: Path) -> None:
        path = tmp_path / "registry.ndjson"
        write_database(path, _records(1, 2))
        before = path.read_text(encoding="utf-8")

        def exploding():
            yield _records(3)[0]
            raise RuntimeError("source failed")

        with pytest.raises(RuntimeError):
            write_database(path, exploding())

        assert path.read_text(encoding="utf-8") == before
        assert sorted(p.name for p in tmp_path.iterdir()) == ["registry.ndjson"]
