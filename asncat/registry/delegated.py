"""RIR delegated-extended parser: per-ASN records and allocation ranges."""

import logging
from collections.abc import Iterable, Iterator
from datetime import datetime
from pathlib import Path

from asncat.models import AsnAllocation, DelegatedRecord

logger = logging.getLogger(__name__)

ACTIONABLE_STATUSES = frozenset({"allocated", "assigned"})


def parse_delegated_line(line: str) -> DelegatedRecord | None:
    """Parse one ``registry|cc|type|start|count|date|status`` line.

    Returns:
        A ``DelegatedRecord`` for well-formed ``asn`` lines, else ``None``.
        Malformed lines are skipped without complaint; the feeds carry
        summary and version lines that are expected to fail here.
    """
    parts = line.rstrip("\r\n").split("|")
    if len(parts) < 7:
        return None
    if parts[2].lower() != "asn":
        return None
    start = _parse_int(parts[3])
    count = _parse_int(parts[4])
    if start is None or count is None or start < 0 or count <= 0:
        return None
    return DelegatedRecord(
        start=start,
        count=count,
        registry=parts[0],
        country=parts[1],
        status=parts[6],
        allocation_date=parts[5],
        raw=line.rstrip("\r\n"),
    )


def parse_delegated_extended(
    lines: Iterable[str],
) -> dict[int, list[DelegatedRecord]]:
    """Index every delegated ``asn`` record under each ASN it covers.

    A single ``DelegatedRecord`` object is shared by all ASNs of its range,
    so the list length for an ASN tells how many lines claim it.

    Args:
        lines: Lines of one or more concatenated delegated-extended files.

    Returns:
        ASN -> records claiming it, in file order.
    """
    by_asn: dict[int, list[DelegatedRecord]] = {}
    for line in lines:
        if not line.strip() or line.startswith("#"):
            continue
        record = parse_delegated_line(line)
        if record is None:
            continue
        for asn in range(record.start, record.start + record.count):
            by_asn.setdefault(asn, []).append(record)
    return by_asn


def parse_delegated_file(path: Path) -> dict[int, list[DelegatedRecord]]:
    """Stream a delegated-extended file from disk."""
    with open(path, encoding="utf-8", errors="replace") as fh:
        by_asn = parse_delegated_extended(fh)
    logger.info("Indexed %d ASNs from %s", len(by_asn), path)
    return by_asn


def parse_allocations(lines: Iterable[str]) -> list[AsnAllocation]:
    """Extract actionable (allocated/assigned) ASN ranges.

    Args:
        lines: Delegated-extended lines.

    Returns:
        Allocations in file order.
    """
    allocations: list[AsnAllocation] = []
    for line in lines:
        if not line.strip() or line.startswith("#"):
            continue
        record = parse_delegated_line(line)
        if record is None:
            continue
        status = record.status.lower()
        if status not in ACTIONABLE_STATUSES:
            continue
        allocations.append(
            AsnAllocation(
                start_asn=record.start,
                count=record.count,
                registry=record.registry,
                country=record.country,
                status=status,
                allocation_date=_parse_date(record.allocation_date),
            )
        )
    return allocations


def expand_allocations(allocations: Iterable[AsnAllocation]) -> Iterator[int]:
    """Yield every ASN of every allocation, in allocation order."""
    for allocation in allocations:
        yield from range(allocation.start_asn, allocation.start_asn + allocation.count)


def _parse_int(value: str) -> int | None:
    try:
        return int(value.strip())
    except ValueError:
        return None


def _parse_date(raw: str) -> str | None:
    try:
        return datetime.strptime(raw.strip(), "%Y%m%d").date().isoformat()
    except ValueError:
        return None
