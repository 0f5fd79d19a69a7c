"""Output renderer: rich tables and JSON for run summaries and store statistics."""

import dataclasses
import json
import logging
import sys
from io import StringIO

from rich.console import Console
from rich.table import Table

from asncat.aggregator import AggregatedResult
from asncat.models import RunSummary

logger = logging.getLogger(__name__)

# How many entries to show in top-N tables.
_TOP_N = 10

_SUMMARY_ROWS = [
    ("Mode", "mode"),
    ("Output", "output_path"),
    ("Classified", "classified"),
    ("Skipped (Unknown)", "skipped_unknown"),
    ("No registry record", "missing_metadata"),
    ("Approx. prompt tokens", "approx_tokens"),
]


def render(
    summary: RunSummary | None,
    fmt: str,
    *,
    stats: AggregatedResult | None = None,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Dispatch output to the appropriate formatter.

    Args:
        summary: Run summary to render, or ``None`` for statistics only.
        fmt: Output format, ``"table"`` or ``"json"``.
        stats: Optional store statistics from ``aggregator.aggregate``.
        file: Writable file object for output (default: ``sys.stdout``).
        width: Explicit console width (default: auto-detect).

    Raises:
        ValueError: If *fmt* is not ``"table"`` or ``"json"``.
    """
    if fmt == "table":
        render_table(summary, stats=stats, file=file, width=width)
    elif fmt == "json":
        render_json(summary, stats=stats, file=file)
    else:
        raise ValueError(f"Unknown output format: {fmt!r}")


# ---------------------------------------------------------------------------
# Table (rich) formatter
# ---------------------------------------------------------------------------


def render_table(
    summary: RunSummary | None,
    *,
    stats: AggregatedResult | None = None,
    file: object | None = None,
    width: int | None = None,
) -> None:
    out = file or sys.stdout
    console = Console(file=out, highlight=False, width=width)

    if summary is not None:
        _render_summary(console, summary)
    if stats is not None:
        _render_stats(console, stats)


def _render_summary(console: Console, summary: RunSummary) -> None:
    table = Table(title=f"Classification run ({summary.mode})")
    table.add_column("Field")
    table.add_column("Value", justify="right")
    for header, attr in _SUMMARY_ROWS:
        table.add_row(header, _fmt(getattr(summary, attr)))
    table.add_row("Duration", f"{summary.duration_seconds:.1f}s")
    console.print(table)

    if summary.categories:
        t = Table(title="Written this run")
        t.add_column("Category")
        t.add_column("ASNs", justify="right")
        for category, count in sorted(
            summary.categories.items(), key=lambda item: (-item[1], item[0])
        ):
            t.add_row(category, str(count))
        console.print(t)


def _render_stats(console: Console, stats: AggregatedResult) -> None:
    """Render store-wide statistics tables."""
    if stats.category_distribution:
        t = Table(title="Categories")
        t.add_column("Category")
        t.add_column("ASNs", justify="right")
        for category, count in stats.category_distribution:
            t.add_row(category, str(count))
        console.print(t)

    if stats.organization_distribution:
        t = Table(title="Top organizations")
        t.add_column("Organization")
        t.add_column("ASNs", justify="right")
        for organization, count in stats.organization_distribution[:_TOP_N]:
            t.add_row(organization, str(count))
        console.print(t)

    ratio = stats.unknown_ratio
    if ratio.get("total"):
        console.print(
            f"  {ratio['total']} rows, {ratio.get('resolved', 0)} resolved, "
            f"{ratio.get('unknown', 0)} with Unknown fields"
        )
    else:
        console.print("  No classifications stored yet.")


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------


def render_json(
    summary: RunSummary | None,
    *,
    stats: AggregatedResult | None = None,
    file: object | None = None,
) -> None:
    """Render as one JSON object with ``summary`` and/or ``stats`` keys."""
    out = file or sys.stdout
    payload: dict = {}
    if summary is not None:
        payload["summary"] = dataclasses.asdict(summary)
    if stats is not None:
        payload["stats"] = dataclasses.asdict(stats)
    json.dump(payload, out, indent=2, default=str)
    out.write("\n")  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fmt(value: object) -> str:
    """``None`` becomes ``"-"``, everything else is stringified."""
    if value is None:
        return "-"
    return str(value)


def render_to_string(
    summary: RunSummary | None,
    fmt: str,
    *,
    stats: AggregatedResult | None = None,
    width: int = 200,
) -> str:
    """Render to a string instead of stdout, for tests."""
    buf = StringIO()
    render(summary, fmt, stats=stats, file=buf, width=width)
    return buf.getvalue()
