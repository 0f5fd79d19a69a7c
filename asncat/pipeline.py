"""Resumable, rate-limited classification over all allocated ASNs.

A run walks the allocation ranges in ascending order, skips ASNs that
already have a fully resolved row in the output store, and appends one
row per newly classified ASN.  Rows with an ``Unknown`` field are not
written unless unknowns are explicitly accepted, so the presence of a
row always means "done".
"""

import logging
import time
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Callable, Protocol

from asncat import store
from asncat.models import (
    UNKNOWN,
    AsnAllocation,
    AsnMetadata,
    ClassificationResponse,
    FinalClassification,
    RunSummary,
)
from asncat.registry import MetadataSource

logger = logging.getLogger(__name__)


class Classifier(Protocol):
    def classify_with_usage(self, metadata: AsnMetadata) -> ClassificationResponse: ...


# ---------------------------------------------------------------------------
# Work selection
# ---------------------------------------------------------------------------


def should_skip_unknowns(
    classification: FinalClassification, accept_unknowns: bool
) -> bool:
    return not accept_unknowns and classification.is_unknown


def sort_allocations(allocations: Iterable[AsnAllocation]) -> list[AsnAllocation]:
    return sorted(allocations, key=lambda a: a.start_asn)


def first_missing(
    allocations: Iterable[AsnAllocation], known: set[int]
) -> int | None:
    """Lowest ASN, in allocation order, that is not in *known*."""
    for allocation in allocations:
        for asn in range(allocation.start_asn, allocation.end_asn + 1):
            if asn not in known:
                return asn
    return None


def pending_asns(
    allocations: Iterable[AsnAllocation],
    known: set[int],
    *,
    start_at: int | None = None,
    limit: int | None = None,
) -> Iterator[int]:
    """Lazily yield the ASNs still to classify.

    ASNs come out strictly ascending within ascending allocation order,
    each at most once even if allocation ranges overlap.  ASNs below
    *start_at* and ASNs in *known* are skipped.  *known* is read as the
    generator advances, so ASNs added to it during a run are honoured.

    Args:
        allocations: Ranges sorted by start ASN.
        known: ASNs already done.
        start_at: First ASN to consider.
        limit: Maximum number of ASNs to yield; ``None`` or ``<= 0`` means
            no limit.
    """
    remaining = limit if limit is not None and limit > 0 else None
    if remaining == 0:
        return
    next_asn = start_at if start_at is not None else 0
    for allocation in allocations:
        if allocation.end_asn < next_asn:
            continue
        for asn in range(max(allocation.start_asn, next_asn), allocation.end_asn + 1):
            next_asn = asn + 1
            if asn in known:
                continue
            yield asn
            if remaining is not None:
                remaining -= 1
                if remaining == 0:
                    return


def count_pending(
    allocations: Iterable[AsnAllocation],
    known: set[int],
    *,
    start_at: int | None = None,
    limit: int | None = None,
) -> int:
    return sum(1 for _ in pending_asns(allocations, known, start_at=start_at, limit=limit))


def progress_interval(total: int) -> int:
    """Rows between progress lines; keeps a run to about 1000 lines."""
    return max(1, total // 1000)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Pipeline:
    """Drive lookups and classification into the output store.

    Args:
        source: Registry metadata source (cache, RDAP, or a chain).
        classifier: Object with ``classify_with_usage(metadata)``.
        accept_unknowns: Write rows with ``Unknown`` fields and treat
            existing ones as final.
        clock: Seconds source used for the run duration.
    """

    def __init__(
        self,
        source: MetadataSource,
        classifier: Classifier,
        *,
        accept_unknowns: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.source = source
        self.classifier = classifier
        self.accept_unknowns = accept_unknowns
        self._clock = clock

    def run(
        self,
        allocations: Iterable[AsnAllocation],
        output_path: Path | str,
        *,
        limit: int | None = None,
    ) -> RunSummary:
        """Classify pending ASNs, resuming from what *output_path* holds.

        Raises:
            Exception: Whatever the classifier raises; the run stops and
                rows written so far stay in the store.
        """
        started = self._clock()
        output_path = Path(output_path)
        summary = RunSummary(mode="resume", output_path=str(output_path))
        ordered = sort_allocations(allocations)

        store.normalize(output_path)
        load = store.load_processed(output_path)
        if load.known:
            logger.info("Skipping %d ASNs already classified", len(load.known))

        done = set(load.known)
        if self.accept_unknowns:
            done.update(load.unknowns)
        elif load.unknown_rows:
            if load.unknowns:
                _log_unknowns(load)
            store.rewrite_known(output_path, load.known)

        start_at = first_missing(ordered, done)
        total = 0
        if start_at is not None:
            total = count_pending(ordered, done, start_at=start_at, limit=limit)
        if total == 0:
            logger.info("Nothing new to classify.")
            summary.duration_seconds = self._clock() - started
            return summary

        logger.info("Preparing to classify %d ASNs starting at AS%d", total, start_at)
        every = progress_interval(total)
        with store.OutputWriter(output_path) as writer:
            for asn in pending_asns(ordered, done, start_at=start_at, limit=limit):
                classification = self._classify(asn, summary)
                if not self._write(writer, classification, summary):
                    continue
                done.add(asn)
                if summary.classified % every == 0 or summary.classified == total:
                    logger.info(
                        "Progress: %.2f%% (%d/%d) | ~%d total tokens sent",
                        summary.classified * 100.0 / total,
                        summary.classified,
                        total,
                        summary.approx_tokens,
                    )

        summary.duration_seconds = self._clock() - started
        logger.info("Classification complete -> %s", output_path)
        return summary

    def reprocess(self, asns: Iterable[int], output_path: Path | str) -> RunSummary:
        """Drop existing rows for *asns* and classify them again."""
        started = self._clock()
        output_path = Path(output_path)
        summary = RunSummary(mode="reprocess", output_path=str(output_path))
        targets = list(dict.fromkeys(asns))
        logger.info(
            "Reprocessing %d ASN(s): %s", len(targets), ", ".join(map(str, targets))
        )

        store.normalize(output_path)
        store.remove_asns(output_path, targets)
        with store.OutputWriter(output_path) as writer:
            for asn in targets:
                classification = self._classify(asn, summary)
                self._write(writer, classification, summary)

        summary.duration_seconds = self._clock() - started
        logger.info("Classification complete -> %s", output_path)
        return summary

    def _classify(self, asn: int, summary: RunSummary) -> FinalClassification:
        metadata = self.source.lookup(asn)
        if metadata is None:
            logger.warning("No registry record for AS%d", asn)
            summary.missing_metadata += 1
            return FinalClassification.unknown(asn)
        try:
            response = self.classifier.classify_with_usage(metadata)
        except KeyboardInterrupt:
            logger.warning("Interrupted while classifying AS%d", asn)
            raise
        except Exception as exc:
            logger.error("Classification failed for AS%d: %s", asn, exc)
            raise
        summary.approx_tokens += response.approximate_prompt_tokens
        return response.classification

    def _write(
        self,
        writer: store.OutputWriter,
        classification: FinalClassification,
        summary: RunSummary,
    ) -> bool:
        if should_skip_unknowns(classification, self.accept_unknowns):
            logger.warning(
                "Skipping write for AS%d due to Unknown fields", classification.asn
            )
            summary.skipped_unknown += 1
            return False
        writer.write(classification)
        summary.classified += 1
        category = classification.category or UNKNOWN
        summary.categories[category] = summary.categories.get(category, 0) + 1
        return True


def _log_unknowns(load: store.ProcessedLoad) -> None:
    count = len(load.unknowns)
    details = ", ".join(str(asn) for asn in load.unknown_samples)
    if count > len(load.unknown_samples):
        details += ", ..."
    logger.info(
        "Will retry %d ASNs with entity/category Unknown (e.g., %s)", count, details
    )
