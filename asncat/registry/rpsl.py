"""RPSL whois dump parser: streamed objects indexed by aut-num."""

import gzip
import logging
import zlib
from collections.abc import Iterable, Iterator
from pathlib import Path

from asncat.models import RpslObject
from asncat.registry import RegistryParseError

logger = logging.getLogger(__name__)


def iter_rpsl_objects(lines: Iterable[str]) -> Iterator[RpslObject]:
    """Reassemble RPSL objects from a stream of text lines.

    A blank line ends the current object.  A line starting with a space or
    tab continues the previous attribute's last value (joined with a single
    space).  Keys are lowercased and repeated keys keep every value in
    order.  Lines without a ``:`` that are not continuations are ignored.

    Args:
        lines: Text lines, with or without trailing newlines.

    Yields:
        One ``RpslObject`` per non-empty stanza.
    """
    raw: list[str] = []
    attrs: dict[str, list[str]] = {}
    last_key: str | None = None

    for line in lines:
        line = line.rstrip("\r\n")
        if not line.strip():
            obj = _finalize(raw, attrs)
            if obj is not None:
                yield obj
            raw = []
            attrs = {}
            last_key = None
            continue

        raw.append(line)
        if line[0] in (" ", "\t"):
            if last_key is not None:
                values = attrs[last_key]
                values[-1] = f"{values[-1]} {line.strip()}"
            continue

        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip().lower()
        attrs.setdefault(key, []).append(value.strip())
        last_key = key

    obj = _finalize(raw, attrs)
    if obj is not None:
        yield obj


def iter_rpsl_objects_from_gz(path: Path) -> Iterator[RpslObject]:
    """Stream RPSL objects out of a gzip-compressed dump.

    Raises:
        RegistryParseError: If the gzip stream is corrupt or truncated.
    """
    try:
        with gzip.open(path, "rt", encoding="utf-8", errors="replace") as fh:
            yield from iter_rpsl_objects(fh)
    except (OSError, EOFError, zlib.error) as exc:
        raise RegistryParseError(f"Failed to read RPSL dump {path}: {exc}") from exc


def parse_autnum(value: str | None) -> int | None:
    """Turn an ``aut-num`` value such as ``AS64500`` into an integer."""
    if not value:
        return None
    text = value.strip().upper().removeprefix("AS")
    try:
        return int(text)
    except ValueError:
        return None


def index_by_asn(
    objects: Iterable[RpslObject],
    into: dict[int, RpslObject] | None = None,
) -> dict[int, RpslObject]:
    """Index aut-num objects by ASN, keeping the first object per ASN.

    Args:
        objects: Parsed RPSL objects; non-aut-num objects are skipped.
        into: Existing index to extend, so that first-wins also holds
            across several dumps.

    Returns:
        The (possibly shared) ASN -> object mapping.
    """
    by_asn = into if into is not None else {}
    duplicates = 0
    for obj in objects:
        asn = parse_autnum(obj.first("aut-num"))
        if asn is None:
            continue
        if asn in by_asn:
            duplicates += 1
            continue
        by_asn[asn] = obj
    if duplicates:
        logger.debug("Discarded %d duplicate aut-num objects", duplicates)
    return by_asn


def _finalize(raw: list[str], attrs: dict[str, list[str]]) -> RpslObject | None:
    if not raw or not attrs:
        return None
    object_type = next(iter(attrs))
    return RpslObject(
        object_type=object_type,
        attributes=attrs,
        raw_text="\n".join(raw) + "\n",
    )
