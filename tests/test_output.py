"""Tests for the output renderer."""

import json

import pytest

from asncat.aggregator import AggregatedResult
from asncat.models import RunSummary
from asncat.output import render, render_to_string

# -- Fixtures ----------------------------------------------------------------


def _summary(**overrides: object) -> RunSummary:
    """RunSummary of a finished resume run, overridable per-field."""
    defaults: dict = {
        "mode": "resume",
        "output_path": "/tmp/asn-classifications.tsv",
        "classified": 42,
        "skipped_unknown": 3,
        "missing_metadata": 1,
        "approx_tokens": 12345,
        "duration_seconds": 7.25,
        "categories": {"Hosting": 30, "ISP": 12},
    }
    defaults.update(overrides)
    return RunSummary(**defaults)


def _stats() -> AggregatedResult:
    return AggregatedResult(
        category_distribution=[("Hosting", 120), ("ISP", 80), ("Unknown", 4)],
        organization_distribution=[
            ("Amazon.com, Inc.", 90),
            ("Hetzner Online GmbH", 60),
        ],
        unknown_ratio={"resolved": 200, "unknown": 4, "total": 204},
    )


# -- render() dispatch -------------------------------------------------------


class TestRenderDispatch:
    """render() routes to the correct formatter."""

    def test_unknown_format_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown output format"):
            render(_summary(), "xml")

    def test_table_format_produces_output(self) -> None:
        output = render_to_string(_summary(), "table")
        assert len(output) > 0

    def test_json_format_produces_valid_json(self) -> None:
        output = render_to_string(_summary(), "json")
        parsed = json.loads(output)
        assert isinstance(parsed, dict)


# -- Run summary (table) -----------------------------------------------------


class TestSummaryTable:
    """Table output for a classification run."""

    def test_contains_mode_heading(self) -> None:
        output = render_to_string(_summary(mode="reprocess"), "table")
        assert "Classification run (reprocess)" in output

    def test_contains_counters(self) -> None:
        output = render_to_string(_summary(), "table")
        assert "Skipped (Unknown)" in output
        assert "No registry record" in output
        assert "12345" in output
        assert "7.2s" in output or "7.3s" in output

    def test_categories_written_this_run(self) -> None:
        output = render_to_string(_summary(), "table")
        assert "Written this run" in output
        assert output.index("Hosting") < output.index("ISP")

    def test_no_categories_table_when_nothing_written(self) -> None:
        output = render_to_string(_summary(classified=0, categories={}), "table")
        assert "Written this run" not in output


# -- Store statistics (table) ------------------------------------------------


class TestStatsTable:
    """Table output for store-wide statistics."""

    def test_contains_category_distribution(self) -> None:
        output = render_to_string(None, "table", stats=_stats())
        assert "Categories" in output
        assert "Hosting" in output
        assert "120" in output

    def test_contains_organizations(self) -> None:
        output = render_to_string(None, "table", stats=_stats())
        assert "Top organizations" in output
        assert "Amazon.com, Inc." in output

    def test_contains_ratio_line(self) -> None:
        output = render_to_string(None, "table", stats=_stats())
        assert "204 rows, 200 resolved, 4 with Unknown fields" in output

    def test_empty_store_message(self) -> None:
        output = render_to_string(None, "table", stats=AggregatedResult())
        assert "No classifications stored yet." in output


# -- JSON --------------------------------------------------------------------


class TestJson:
    """JSON output."""

    def test_summary_keys(self) -> None:
        data = json.loads(render_to_string(_summary(), "json"))
        assert set(data) == {"summary"}
        assert data["summary"]["classified"] == 42
        assert data["summary"]["categories"] == {"Hosting": 30, "ISP": 12}

    def test_stats_keys(self) -> None:
        data = json.loads(render_to_string(None, "json", stats=_stats()))
        assert set(data) == {"stats"}
        categories = dict(data["stats"]["category_distribution"])
        assert categories["Hosting"] == 120
        assert data["stats"]["unknown_ratio"]["total"] == 204
