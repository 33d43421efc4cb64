"""
Orphan detection.

An orphan is a concept (or collection) that cannot be reached from any
scheme through a relationship the endpoint supports. Two strategies compute
the same set:

- slow: fetch every entity, run each exclusion branch as its own paginated
  query, subtract client-side. Works on any endpoint.
- fast: one paginated query with FILTER NOT EXISTS over the UNION of all
  exclusion branches. Much quicker, but some engines reject or mis-evaluate
  nested NOT EXISTS/UNION.

In "auto" mode the fast strategy runs first and any failure falls back to
the slow one. Collections are orphans when none of their members reach a
scheme; the same machinery runs with the membership branches.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Sequence

from .capabilities import COLLECTION, CONCEPT, CapabilityDescriptor
from .composer import Branches, Task, compose_branches
from .pagination import fetch_all
from .queries import all_entities_query, entity_var, exclusion_query, orphan_query
from .sparql import SPARQLError

logger = logging.getLogger(__name__)

PAGE_SIZE = 5000
SINGLE_QUERY_STEP = "single-query-orphan-detection"
STRATEGIES = ("auto", "fast", "slow")

PHASES = ("idle", "fetching-all", "running-exclusions", "calculating", "complete")


class OrphanDetectionError(Exception):
    """Every orphan detection strategy failed."""


@dataclass(frozen=True)
class CompletedStep:
    name: str
    excluded_count: int
    cumulative_excluded: int
    remaining_after: int
    duration: float


@dataclass(frozen=True)
class OrphanProgress:
    """Immutable progress snapshot handed to progress callbacks."""

    phase: str = "idle"
    strategy: str | None = None
    kind: str = CONCEPT
    total_count: int = 0
    fetched_count: int = 0
    remaining_candidates: int = 0
    completed_steps: tuple[CompletedStep, ...] = ()
    skipped_steps: tuple[str, ...] = ()
    current_step: str | None = None
    failures: tuple[str, ...] = ()
    orphan_collections: int = 0
    collections_phase: str = "idle"


class _ProgressReporter:
    def __init__(self, on_progress: Callable[[OrphanProgress], Any] | None, initial: OrphanProgress):
        self.on_progress = on_progress
        self.progress = initial

    def __call__(self, **changes: Any) -> OrphanProgress:
        self.progress = replace(self.progress, **changes)
        if self.on_progress is not None:
            self.on_progress(self.progress)
        return self.progress


def _exclusion_task(kind: str) -> Task:
    return Task.ORPHAN_COLLECTION_MEMBERSHIP if kind == COLLECTION else Task.ORPHAN_EXCLUSION


class OrphanStrategy:
    """Base class: strategies compute a sorted orphan list or raise."""

    name = ""

    async def run(self, calculator: OrphanCalculator, kind: str, report: _ProgressReporter) -> list[str]:
        raise NotImplementedError


class SlowOrphanStrategy(OrphanStrategy):
    """All entities minus the union of every exclusion branch."""

    name = "slow"

    async def run(self, calculator: OrphanCalculator, kind: str, report: _ProgressReporter) -> list[str]:
        var = entity_var(kind).lstrip("?")
        page_size = calculator.page_size

        report(phase="fetching-all")
        all_uris = await fetch_all(
            lambda limit, offset: all_entities_query(kind, limit, offset),
            page_size,
            calculator.client,
            var,
            on_page=lambda count: report(fetched_count=count),
        )
        total = len(all_uris)
        logger.info("Fetched %d %s entities", total, kind)
        report(phase="running-exclusions", total_count=total, fetched_count=total, remaining_candidates=total)

        remaining = set(all_uris)
        branches = calculator.exclusion_branches(kind)
        if branches.unsupported:
            logger.warning("No exclusion branches for %s; every %s is an orphan", kind, kind)

        for branch in branches:
            if not remaining:
                logger.debug("Skipping exclusion %s: no candidates left", branch.name)
                report(skipped_steps=report.progress.skipped_steps + (branch.name,))
                continue

            report(current_step=branch.name)
            start = time.monotonic()
            try:
                excluded = await fetch_all(
                    lambda limit, offset, pattern=branch.pattern: exclusion_query(kind, pattern, limit, offset),
                    page_size,
                    calculator.client,
                    var,
                )
            except SPARQLError as e:
                logger.warning("Exclusion query %s failed: %s", branch.name, e)
                excluded = []

            remaining.difference_update(excluded)
            step = CompletedStep(
                name=branch.name,
                excluded_count=len(excluded),
                cumulative_excluded=total - len(remaining),
                remaining_after=len(remaining),
                duration=time.monotonic() - start,
            )
            logger.debug(
                "Exclusion %s matched %d, %d candidates remain (%.2fs)",
                branch.name,
                step.excluded_count,
                step.remaining_after,
                step.duration,
            )
            report(
                completed_steps=report.progress.completed_steps + (step,),
                remaining_candidates=len(remaining),
                current_step=None,
            )

        report(phase="calculating", current_step=None)
        orphans = sorted(remaining)
        report(phase="complete", remaining_candidates=len(orphans))
        return orphans


class FastOrphanStrategy(OrphanStrategy):
    """Single FILTER NOT EXISTS query, optionally with a direct-link pre-filter."""

    name = "fast"

    async def run(self, calculator: OrphanCalculator, kind: str, report: _ProgressReporter) -> list[str]:
        var = entity_var(kind).lstrip("?")
        exclusion = calculator.exclusion_branches(kind)
        prefilter = calculator.prefilter_branches() if calculator.prefilter else None

        if orphan_query(kind, exclusion, 1, 0, prefilter) is None:
            raise OrphanDetectionError(f"No exclusion branches for {kind}; cannot build single orphan query")

        report(phase="running-exclusions", current_step=SINGLE_QUERY_STEP)
        start = time.monotonic()
        orphans = await fetch_all(
            lambda limit, offset: orphan_query(kind, exclusion, limit, offset, prefilter),
            calculator.page_size,
            calculator.client,
            var,
            on_page=lambda count: report(fetched_count=count),
        )
        step = CompletedStep(
            name=SINGLE_QUERY_STEP,
            excluded_count=0,
            cumulative_excluded=0,
            remaining_after=len(orphans),
            duration=time.monotonic() - start,
        )
        report(
            phase="complete",
            completed_steps=(step,),
            remaining_candidates=len(orphans),
            current_step=None,
        )
        return sorted(orphans)


class OrphanCalculator:
    """Finds orphan concepts and collections.

    Args:
        client: Object with an ``execute(query, retries=, signal=)`` coroutine.
        capabilities: Endpoint capabilities.
        page_size: Page size for every paginated query.
        prefilter: Use the direct-link pre-filter in the fast strategy.
    """

    def __init__(
        self,
        client,
        capabilities: CapabilityDescriptor,
        page_size: int = PAGE_SIZE,
        prefilter: bool = False,
        strategies: Sequence[OrphanStrategy] | None = None,
    ):
        self.client = client
        self.capabilities = capabilities
        self.page_size = page_size
        self.prefilter = prefilter
        strategies = strategies or (FastOrphanStrategy(), SlowOrphanStrategy())
        self.strategies = {strategy.name: strategy for strategy in strategies}

    def exclusion_branches(self, kind: str) -> Branches:
        return compose_branches(_exclusion_task(kind), self.capabilities)

    def prefilter_branches(self) -> Branches:
        return compose_branches(Task.DIRECT_MEMBERSHIP, self.capabilities)

    def _strategy_order(self, strategy: str) -> list[OrphanStrategy]:
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown orphan strategy: {strategy} (expected one of {', '.join(STRATEGIES)})")
        names = ("fast", "slow") if strategy == "auto" else (strategy,)
        return [self.strategies[name] for name in names if name in self.strategies]

    async def find_orphans(
        self,
        kind: str = CONCEPT,
        strategy: str = "auto",
        on_progress: Callable[[OrphanProgress], Any] | None = None,
    ) -> list[str]:
        """Find orphans of a kind.

        Args:
            kind: "concept" or "collection".
            strategy: "auto" (fast, then slow on failure), "fast" or "slow".
            on_progress: Called with an OrphanProgress snapshot on every change.

        Returns:
            Sorted orphan URIs.

        Raises:
            OrphanDetectionError: If every strategy tried failed.
        """
        if kind not in (CONCEPT, COLLECTION):
            raise ValueError(f"Orphan detection is not defined for {kind}")

        if kind == COLLECTION and self.exclusion_branches(kind).unsupported:
            logger.warning("Orphan collection detection unsupported: no membership capabilities")
            return []

        failures: list[str] = []
        order = self._strategy_order(strategy)
        for i, current in enumerate(order):
            report = _ProgressReporter(
                on_progress, OrphanProgress(strategy=current.name, kind=kind, failures=tuple(failures))
            )
            try:
                orphans = await current.run(self, kind, report)
            except Exception as e:
                failures.append(f"{current.name}: {e}")
                if i == len(order) - 1:
                    raise OrphanDetectionError(
                        f"Orphan detection failed ({'; '.join(failures)})"
                    ) from e
                logger.warning("%s orphan detection failed, falling back to %s: %s", current.name, order[i + 1].name, e)
                continue
            logger.info("Found %d orphan %s entities (%s strategy)", len(orphans), kind, current.name)
            return orphans

        raise OrphanDetectionError(f"No orphan strategy available for {strategy}")

    async def find_orphan_collections(
        self,
        strategy: str = "auto",
        on_progress: Callable[[OrphanProgress], Any] | None = None,
    ) -> list[str]:
        """Collections none of whose members reach a scheme."""

        def forward(progress: OrphanProgress) -> None:
            if on_progress is not None:
                on_progress(replace(progress, collections_phase=progress.phase))

        orphans = await self.find_orphans(COLLECTION, strategy, forward)
        if on_progress is not None:
            on_progress(
                OrphanProgress(
                    phase="complete", kind=COLLECTION, collections_phase="complete", orphan_collections=len(orphans)
                )
            )
        return orphans
