"""Aggregator: category distribution, top organizations, resolved-vs-unknown ratio."""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from asncat.models import UNKNOWN, FinalClassification

logger = logging.getLogger(__name__)


@dataclass
class AggregatedResult:
    """Aggregated statistics computed from output-store rows.

    Attributes:
        category_distribution: ``(category, count)`` pairs sorted by count
            descending.
        organization_distribution: ``(organization, asn_count)`` pairs
            sorted by count descending.
        unknown_ratio: Dict with keys ``resolved``, ``unknown``, ``total``.
    """

    category_distribution: list[tuple[str, int]] = field(default_factory=list)
    organization_distribution: list[tuple[str, int]] = field(default_factory=list)
    unknown_ratio: dict[str, int] = field(default_factory=dict)


def aggregate(rows: Iterable[FinalClassification]) -> AggregatedResult:
    """Compute aggregate statistics from classification rows.

    Args:
        rows: Rows as read from the output store.

    Returns:
        An ``AggregatedResult``.
    """
    category_counts: dict[str, int] = {}
    org_counts: dict[str, int] = {}
    resolved = 0
    unknown = 0

    for row in rows:
        category = (row.category or "").strip() or UNKNOWN
        category_counts[category] = category_counts.get(category, 0) + 1

        organization = (row.organization or "").strip()
        if organization and organization.lower() != UNKNOWN.lower():
            org_counts[organization] = org_counts.get(organization, 0) + 1

        if row.is_unknown:
            unknown += 1
        else:
            resolved += 1

    category_distribution = sorted(
        category_counts.items(), key=lambda item: (-item[1], item[0])
    )
    organization_distribution = sorted(
        org_counts.items(), key=lambda item: (-item[1], item[0])
    )
    return AggregatedResult(
        category_distribution=category_distribution,
        organization_distribution=organization_distribution,
        unknown_ratio={
            "resolved": resolved,
            "unknown": unknown,
            "total": resolved + unknown,
        },
    )
