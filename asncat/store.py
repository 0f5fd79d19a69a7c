"""Append-only classification output store (tab-separated, one row per ASN).

Canonical form::

    asn<TAB>name<TAB>organization<TAB>category
    13335<TAB>Cloudflare<TAB>Cloudflare, Inc.<TAB>Hosting

Backslash and tab inside a field are written as ``\\\\`` and ``\\t``;
carriage returns and newlines are folded to spaces.  Older runs wrote
JSON lines, comma-separated rows and three-column ``asn,entity,category``
rows.  All of them are accepted on read and rewritten in canonical form.
"""

import json
import logging
import os
import tempfile
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

from asncat.models import FinalClassification

logger = logging.getLogger(__name__)

HEADER = "asn\tname\torganization\tcategory"

_KNOWN_HEADERS = frozenset(
    {
        HEADER,
        "asn,name,organization,category",
        "asn\tentity\tcategory",
        "asn,entity,category",
    }
)

UNKNOWN_SAMPLE_SIZE = 20


# ---------------------------------------------------------------------------
# Row format
# ---------------------------------------------------------------------------


def is_header(line: str) -> bool:
    """True for the canonical header or one of the legacy headers."""
    return line.strip().lower() in _KNOWN_HEADERS


def escape_field(value: str | None) -> str:
    if value is None:
        return ""
    cleaned = value.replace("\r", " ").replace("\n", " ")
    return cleaned.replace("\\", "\\\\").replace("\t", "\\t")


def format_row(classification: FinalClassification) -> str:
    """Render one canonical row (without the trailing newline)."""
    return "\t".join(
        [
            str(classification.asn),
            escape_field(classification.name),
            escape_field(classification.organization),
            escape_field(classification.category),
        ]
    )


def parse_row(line: str) -> FinalClassification | None:
    """Parse a row in any accepted format.

    Returns:
        The classification, or ``None`` for headers, blank lines and
        anything that cannot be parsed.
    """
    # Only the line ending is stripped: a trailing tab is an empty field.
    trimmed = line.rstrip("\r\n")
    if not trimmed.strip() or is_header(trimmed):
        return None
    if trimmed.lstrip().startswith("{"):
        return _parse_json_row(trimmed.strip())

    delimiter = "\t" if "\t" in trimmed else ","
    parts = _split_escaped(trimmed, delimiter)
    try:
        asn = int(parts[0].strip())
    except ValueError:
        return None
    if len(parts) == 4:
        return FinalClassification(asn, parts[1], parts[2], parts[3])
    if len(parts) == 3:
        return FinalClassification(asn, parts[1], parts[1], parts[2])
    return None


def _parse_json_row(text: str) -> FinalClassification | None:
    try:
        node = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(node, dict):
        return None
    try:
        asn = int(node.get("asn", -1))
    except (TypeError, ValueError):
        return None
    entity = _text(node.get("entity"))
    name = _text(node.get("name"))
    organization = _text(node.get("organization"))
    return FinalClassification(
        asn=asn,
        name=name if name is not None else entity,
        organization=organization if organization is not None else entity,
        category=_text(node.get("category")),
    )


def _text(value: object) -> str | None:
    if value is None:
        return None
    return str(value)


def _split_escaped(line: str, delimiter: str) -> list[str]:
    parts: list[str] = []
    current: list[str] = []
    escaping = False
    for ch in line:
        if escaping:
            current.append("\t" if ch == "t" else ch)
            escaping = False
        elif ch == "\\":
            escaping = True
        elif ch == delimiter:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))
    return parts


# ---------------------------------------------------------------------------
# File operations
# ---------------------------------------------------------------------------


@dataclass
class ProcessedLoad:
    """ASNs already present in the output store.

    Attributes:
        known: ASNs whose row has every field resolved.
        unknowns: ASNs with only blank or ``Unknown`` rows, in file order.
        unknown_samples: The first few unknown ASNs, for log messages.
        unknown_rows: Rows with a blank or ``Unknown`` field, including
            those shadowed by a resolved row for the same ASN.
    """

    known: set[int] = field(default_factory=set)
    unknowns: list[int] = field(default_factory=list)
    unknown_samples: list[int] = field(default_factory=list)
    unknown_rows: int = 0


def read_rows(path: Path | str) -> Iterator[FinalClassification]:
    """Yield every parseable row; unparseable lines are dropped."""
    path = Path(path)
    if not path.exists():
        return
    with open(path, encoding="utf-8") as fh:
        for line in fh:
            row = parse_row(line)
            if row is not None:
                yield row


def normalize(path: Path | str) -> bool:
    """Make sure *path* exists and starts with the canonical header.

    A missing or empty file gets just the header.  A file whose first
    non-blank line is anything else is rewritten in canonical form.  A
    canonical file missing its final newline gets one, so appended rows
    start on a line of their own.

    Returns:
        True if the file was created or rewritten.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists() or path.stat().st_size == 0:
        path.write_text(HEADER + "\n", encoding="utf-8")
        return True

    first = None
    with open(path, encoding="utf-8") as fh:
        for line in fh:
            if line.strip():
                first = line.rstrip("\r\n")
                break
    if first == HEADER:
        _ensure_trailing_newline(path)
        return False

    logger.info("Rewriting %s in canonical format", path)
    _rewrite(path, lambda row: True)
    return True


def load_processed(path: Path | str) -> ProcessedLoad:
    """Split the ASNs present in *path* into known-good and unknown."""
    load = ProcessedLoad()
    unknowns: dict[int, None] = {}
    for row in read_rows(path):
        if row.asn <= 0:
            continue
        if row.is_unknown:
            unknowns[row.asn] = None
            load.unknown_rows += 1
        else:
            load.known.add(row.asn)
    load.unknowns = [asn for asn in unknowns if asn not in load.known]
    load.unknown_samples = load.unknowns[:UNKNOWN_SAMPLE_SIZE]
    return load


def rewrite_known(path: Path | str, known: set[int]) -> None:
    """Rewrite *path* keeping only resolved rows whose ASN is in *known*."""
    _rewrite(Path(path), lambda row: row.asn in known and not row.is_unknown)


def remove_asns(path: Path | str, asns: Iterable[int]) -> None:
    """Rewrite *path* without any row for *asns*."""
    path = Path(path)
    if not path.exists():
        return
    drop = set(asns)
    _rewrite(path, lambda row: row.asn not in drop)


def _ensure_trailing_newline(path: Path) -> None:
    with open(path, "rb+") as fh:
        fh.seek(-1, os.SEEK_END)
        if fh.read(1) != b"\n":
            fh.write(b"\n")


def _rewrite(path: Path, keep: Callable[[FinalClassification], bool]) -> None:
    fd, tmp_name = tempfile.mkstemp(
        prefix=".asn-classifications", suffix=".tsv", dir=path.parent
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(HEADER + "\n")
            for row in read_rows(path):
                if keep(row):
                    fh.write(format_row(row) + "\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class OutputWriter:
    """Append rows to the output store, flushing after each one.

    Each row is a single ``write`` followed by a flush, so an interrupted
    run never leaves half a row behind.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._fh = open(self.path, "a", encoding="utf-8")

    def write(self, classification: FinalClassification) -> None:
        self._fh.write(format_row(classification) + "\n")
        self._fh.flush()

    def close(self) -> None:
        if not self._fh.closed:
            self._fh.close()

    def __enter__(self) -> "OutputWriter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
