"""NDJSON registry cache: eager in-memory load, atomic rewrite."""

import json
import logging
import os
import tempfile
from collections.abc import Iterable
from pathlib import Path

from asncat.models import AsnMetadata
from asncat.registry import MetadataSource

logger = logging.getLogger(__name__)


class RegistryCacheError(Exception):
    """Raised when the registry cache file cannot be read or decoded."""


class RegistryDatabase(MetadataSource):
    """ASN -> ``AsnMetadata`` map loaded from one NDJSON file.

    The whole file is parsed on construction; lookups never touch disk.
    A missing file yields an empty database, which callers treat as
    "rebuild required".

    Args:
        path: Cache file, one ``AsnMetadata.to_dict()`` object per line.

    Raises:
        RegistryCacheError: If a line is not valid JSON or lacks ``asn``.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._records: dict[int, AsnMetadata] = {}
        if not self.path.exists():
            logger.warning("Registry cache %s not found; lookups will miss", self.path)
            return
        self._load()

    def _load(self) -> None:
        with open(self.path, encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                stripped = line.strip()
                if not stripped or stripped.startswith("#"):
                    continue
                try:
                    data = json.loads(stripped)
                    if not isinstance(data, dict):
                        raise TypeError(f"expected an object, got {type(data).__name__}")
                    record = AsnMetadata.from_dict(data)
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                    raise RegistryCacheError(
                        f"Invalid record at {self.path}:{lineno}: {exc}"
                    ) from exc
                self._records[record.asn] = record
        logger.info("Loaded %d ASNs from %s", len(self._records), self.path)

    def lookup(self, asn: int) -> AsnMetadata | None:
        return self._records.get(asn)

    def is_empty(self) -> bool:
        return not self._records

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, asn: object) -> bool:
        return asn in self._records


def write_database(path: Path | str, records: Iterable[AsnMetadata]) -> int:
    """Write *records* to *path* atomically.

    Records are serialized to a temp file in the destination directory,
    which replaces *path* only once everything has been written.  If
    anything raises (including the *records* iterator itself), the temp
    file is removed and the previous cache is left untouched.

    Returns:
        Number of records written.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
    )
    count = 0
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            for record in records:
                fh.write(json.dumps(record.to_dict(), ensure_ascii=False))
                fh.write("\n")
                count += 1
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.info("Wrote %d ASNs to %s", count, path)
    return count
