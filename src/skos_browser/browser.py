"""
Scheme browsing facade.

SchemeBrowser wires the composer, pagination, label resolver, orphan
calculator and stale guard together for the usual navigation actions:
select a scheme (top concepts), expand a node (children), open the
collections of a scheme, list the members of an opened collection, and
browse orphans.

Every action runs as a guarded chain: metadata first, then labels streamed
round by round into the same EntityRef objects. A newer action on the same
scope drops whatever the older one still had to write.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from functools import partial
from typing import Any, AsyncIterator, Callable, Iterable, Sequence

from .capabilities import COLLECTION, CONCEPT, CapabilityDescriptor
from .composer import Branches, Task, compose_branches
from .deprecation import DEFAULT_DEPRECATION_RULES, DeprecationDetector, DeprecationRule
from .entities import EntityRef, entities_from_bindings, members_from_bindings
from .guard import EpochToken, RequestEpochs
from .labels import DEFAULT_MAX_LANGUAGE_ITERATIONS, DEFAULT_THRESHOLD, LabelValue, ProgressiveLabelResolver
from .orphans import PAGE_SIZE as ORPHAN_PAGE_SIZE
from .orphans import OrphanCalculator, OrphanProgress
from .pagination import DEFAULT_PAGE_SIZE, Page, PageTracker, fetch_page
from .queries import (
    child_collections_query,
    collection_members_query,
    collections_query,
    concept_page_query,
    entity_details_query,
)
from .sparql import get_bindings, parse_boolean, term_value

logger = logging.getLogger(__name__)

TOP_CONCEPTS_SCOPE = "top-concepts"
COLLECTIONS_SCOPE = "collections"
ORPHANS_SCOPE = "orphans"
MEMBERS_SCOPE = "collection-members"


@dataclass
class BrowserSettings:
    """Tunables for a SchemeBrowser (see Config.browser_settings())."""

    preferred_language: str = "en"
    language_priorities: list[str] | None = None
    page_size: int = DEFAULT_PAGE_SIZE
    orphan_page_size: int = ORPHAN_PAGE_SIZE
    label_threshold: int = DEFAULT_THRESHOLD
    max_language_iterations: int = DEFAULT_MAX_LANGUAGE_ITERATIONS
    orphan_strategy: str = "auto"
    orphan_prefilter: bool = False
    deprecation_rules: Sequence[DeprecationRule] = field(default_factory=lambda: DEFAULT_DEPRECATION_RULES)


def _apply_labels(by_uri: dict[str, list[EntityRef]], labels: dict[str, LabelValue]) -> None:
    for uri, label in labels.items():
        for entity in by_uri.get(uri, ()):
            entity.set_label(label)


class SchemeBrowser:
    """Browse one endpoint's schemes, concepts and collections."""

    def __init__(
        self,
        client,
        capabilities: CapabilityDescriptor | None = None,
        settings: BrowserSettings | None = None,
    ):
        self.client = client
        self.capabilities = capabilities or CapabilityDescriptor()
        self.settings = settings or BrowserSettings()

        self.resolver = ProgressiveLabelResolver(
            client,
            self.capabilities,
            preferred_language=self.settings.preferred_language,
            language_priorities=self.settings.language_priorities,
            threshold=self.settings.label_threshold,
            max_language_iterations=self.settings.max_language_iterations,
        )
        self.orphans = OrphanCalculator(
            client,
            self.capabilities,
            page_size=self.settings.orphan_page_size,
            prefilter=self.settings.orphan_prefilter,
        )
        self.deprecation = DeprecationDetector(self.settings.deprecation_rules)
        self.pages = PageTracker(self.settings.page_size)
        self.epochs = RequestEpochs()

        self.top_concept_modes: dict[str, str] = {}
        self.collections: dict[str, list[EntityRef]] = {}
        self.orphan_progress: OrphanProgress | None = None
        self._orphan_list: list[tuple[str, str]] | None = None
        self.orphans_has_more = False

    # =========================================================================
    # QUERY HELPERS
    # =========================================================================

    def _narrower_branches(self, subject: str = "?narrower") -> Branches:
        return compose_branches(Task.CHILDREN, self.capabilities, parent="?concept", subject=subject)

    def _concept_page_builder(self, branches: Branches, require_type: bool = True) -> Callable[[int, int], str]:
        narrower = self._narrower_branches()
        return lambda limit, offset: concept_page_query(
            branches,
            limit,
            offset,
            narrower=narrower,
            deprecation=self.deprecation,
            require_type=require_type,
            with_labels=False,
        )

    def _entities(self, rows: Iterable[dict], kind: str = CONCEPT) -> list[EntityRef]:
        return entities_from_bindings(
            rows,
            kind,
            preferred=self.settings.preferred_language,
            priorities=self.resolver.language_priorities,
            deprecation=self.deprecation if kind == CONCEPT else None,
        )

    async def _fetch(self, builder: Callable[[int, int], str], offset: int) -> Page:
        return await fetch_page(builder, self.settings.page_size, offset, self.client, key="concept", retries=1)

    # =========================================================================
    # LABELS
    # =========================================================================

    async def _label_rounds(
        self, entities: Sequence[EntityRef], kind: str, signal: Any = None
    ) -> AsyncIterator[Callable[[], None]]:
        """Yield one label-applying mutation per resolver round."""
        by_uri: dict[str, list[EntityRef]] = {}
        for entity in entities:
            if entity.label is None:
                by_uri.setdefault(entity.uri, []).append(entity)
        if not by_uri:
            return

        queue: asyncio.Queue = asyncio.Queue()
        done = object()

        async def resolve() -> None:
            try:
                await self.resolver.resolve_labels(list(by_uri), kind, queue.put_nowait, signal)
            finally:
                queue.put_nowait(done)

        task = asyncio.create_task(resolve())
        try:
            while True:
                labels = await queue.get()
                if labels is done:
                    break
                yield partial(_apply_labels, by_uri, dict(labels))
            await task
        finally:
            if not task.done():
                task.cancel()

    async def resolve_labels(
        self,
        entities: Sequence[EntityRef],
        kind: str = CONCEPT,
        token: EpochToken | None = None,
        signal: Any = None,
    ) -> bool:
        """Resolve labels for entities and write them through, round by round.

        Args:
            entities: Entities to label; ones that already have a label are skipped.
            kind: Resource kind.
            token: Guard token; defaults to a fresh request in the "labels" scope.
            signal: Optional abort signal for the resolver.

        Returns:
            False if a newer request superseded this one.
        """
        if token is None:
            token = self.epochs.begin_request(f"labels:{kind}")
        return await self.epochs.run_guarded(token, self._label_rounds(entities, kind, signal))

    # =========================================================================
    # TOP CONCEPTS
    # =========================================================================

    def _top_concept_branches(self, scheme: str, mode: str) -> Branches:
        if mode == "fallback":
            return compose_branches(Task.TOP_CONCEPTS, self.capabilities, scheme=scheme, explicit=False, include_fallback=True)
        if mode == "mixed":
            return compose_branches(Task.TOP_CONCEPTS, self.capabilities, scheme=scheme, include_fallback=True)
        return compose_branches(Task.TOP_CONCEPTS, self.capabilities, scheme=scheme, include_fallback=False)

    async def _first_top_page(self, scheme: str) -> tuple[list[EntityRef], bool, str]:
        """Explicit top concepts first, then the structural fallback, merged."""
        explicit = self._top_concept_branches(scheme, "explicit")
        fallback = self._top_concept_branches(scheme, "fallback")

        explicit_entities: list[EntityRef] = []
        explicit_more = False
        if explicit:
            page = await self._fetch(self._concept_page_builder(explicit), 0)
            explicit_entities = self._entities(page.rows)
            explicit_more = page.has_more
            if explicit_entities:
                logger.info("Found %d explicit top concepts for %s", len(explicit_entities), scheme)

        fallback_entities: list[EntityRef] = []
        fallback_more = False
        if fallback:
            page = await self._fetch(self._concept_page_builder(fallback), 0)
            fallback_entities = self._entities(page.rows)
            fallback_more = page.has_more

        known = {entity.uri for entity in explicit_entities}
        new_from_fallback = [entity for entity in fallback_entities if entity.uri not in known]

        if not explicit_entities and fallback_entities:
            logger.info("Using structural fallback for %s: %d concepts", scheme, len(fallback_entities))
            return fallback_entities, fallback_more, "fallback"
        if explicit_entities and new_from_fallback:
            logger.info(
                "Mixed top concepts for %s: %d explicit + %d from fallback",
                scheme,
                len(explicit_entities),
                len(new_from_fallback),
            )
            merged = sorted(explicit_entities + new_from_fallback, key=lambda e: e.uri)
            return merged, explicit_more or fallback_more, "mixed"
        if explicit_entities:
            return explicit_entities, explicit_more, "explicit"
        return [], False, "fallback" if fallback else "explicit"

    async def load_top_concepts(self, scheme: str, offset: int = 0, signal: Any = None) -> list[EntityRef]:
        """Load a page of top concepts of a scheme.

        The first page runs the explicit and fallback queries one after the
        other and merges them; the outcome (explicit, fallback or mixed)
        decides which query later pages use.

        Returns:
            The page's entities (empty if superseded, unsupported or
            already loading).
        """
        if not (compose_branches(Task.TOP_CONCEPTS, self.capabilities, scheme=scheme, include_fallback=True)):
            logger.warning("Top concepts unsupported for %s: no usable capabilities", scheme)
            return []

        # A load already running for this scheme keeps its epoch
        if not self.pages.try_begin(scheme):
            return []
        token = self.epochs.begin_request(TOP_CONCEPTS_SCOPE)
        result: list[EntityRef] = []

        async def chain():
            try:
                if offset == 0:
                    entities, has_more, mode = await self._first_top_page(scheme)
                else:
                    mode = self.top_concept_modes.get(scheme) or (
                        "explicit" if self._top_concept_branches(scheme, "explicit") else "fallback"
                    )
                    page = await self._fetch(self._concept_page_builder(self._top_concept_branches(scheme, mode)), offset)
                    entities, has_more = self._entities(page.rows), page.has_more
            finally:
                self.pages.end(scheme)

            def commit() -> None:
                self.top_concept_modes[scheme] = mode
                self.pages.commit(scheme, offset, has_more, entities)
                result.extend(entities)

            yield commit
            async with aclosing(self._label_rounds(entities, CONCEPT, signal)) as rounds:
                async for mutation in rounds:
                    yield mutation

        await self.epochs.run_guarded(token, chain())
        return result

    async def load_more_top_concepts(self, scheme: str, signal: Any = None) -> list[EntityRef]:
        state = self.pages.state(scheme)
        if not state.has_more:
            return []
        return await self.load_top_concepts(scheme, state.next_offset, signal)

    # =========================================================================
    # CHILDREN
    # =========================================================================

    async def load_children(self, parent: str, offset: int | None = None, signal: Any = None) -> list[EntityRef]:
        """Load a page of children of a concept (next page when offset is None)."""
        branches = compose_branches(Task.CHILDREN, self.capabilities, parent=parent)
        if branches.unsupported:
            logger.debug("Children unsupported: no broader/narrower capability")
            return []

        if not self.pages.try_begin(parent):
            return []
        state = self.pages.state(parent)
        if offset is None:
            offset = state.next_offset
        token = self.epochs.begin_request(f"children:{parent}")
        result: list[EntityRef] = []

        async def chain():
            try:
                page = await self._fetch(self._concept_page_builder(branches, require_type=False), offset)
            finally:
                self.pages.end(parent)
            entities = self._entities(page.rows)

            def commit() -> None:
                self.pages.commit(parent, offset, page.has_more, entities)
                result.extend(entities)

            yield commit
            async with aclosing(self._label_rounds(entities, CONCEPT, signal)) as rounds:
                async for mutation in rounds:
                    yield mutation

        await self.epochs.run_guarded(token, chain())
        return result

    # =========================================================================
    # COLLECTIONS
    # =========================================================================

    async def _load_collection_rows(
        self, query: str, scope: str, key: str, signal: Any, top_level_only: bool = False
    ) -> list[EntityRef]:
        token = self.epochs.begin_request(scope)
        result: list[EntityRef] = []

        async def chain():
            results = await self.client.execute(query, retries=1)
            rows = get_bindings(results)
            entities = self._entities(rows, COLLECTION)
            if top_level_only:
                # Nested collections are reached by expanding their parent
                nested = {
                    term_value(row, "collection")
                    for row in rows
                    if parse_boolean(term_value(row, "hasParentCollection"))
                }
                entities = [entity for entity in entities if entity.uri not in nested]

            def commit() -> None:
                self.collections[key] = entities
                result.extend(entities)

            yield commit
            async with aclosing(self._label_rounds(entities, COLLECTION, signal)) as rounds:
                async for mutation in rounds:
                    yield mutation

        await self.epochs.run_guarded(token, chain())
        return result

    async def load_collections(self, scheme: str, signal: Any = None) -> list[EntityRef]:
        """Collections with members in a scheme (top-level ones only)."""
        branches = compose_branches(Task.COLLECTION_MEMBERSHIP, self.capabilities, scheme=scheme)
        query = collections_query(branches, self.capabilities.label_capabilities(COLLECTION))
        if query is None:
            logger.debug("Collections unsupported for %s", scheme)
            return []
        return await self._load_collection_rows(query, COLLECTIONS_SCOPE, scheme, signal, top_level_only=True)

    async def load_child_collections(self, parent: str, signal: Any = None) -> list[EntityRef]:
        """Collections that are members of a parent collection."""
        query = child_collections_query(parent, self.capabilities.label_capabilities(COLLECTION))
        return await self._load_collection_rows(query, f"{COLLECTIONS_SCOPE}:{parent}", parent, signal)

    async def load_collection_members(
        self,
        collection: str,
        scheme: str | None = None,
        offset: int | None = None,
        signal: Any = None,
    ) -> list[EntityRef]:
        """Load a page of an opened collection's members (next page when offset is None).

        Members carry whether they are collections, whether they are in
        ``scheme`` and a scheme to display, so members from other schemes
        can be told apart.
        """
        scope = f"{MEMBERS_SCOPE}:{collection}"
        if not self.pages.try_begin(scope):
            return []
        if offset is None:
            offset = self.pages.state(scope).next_offset
        token = self.epochs.begin_request(MEMBERS_SCOPE)
        narrower = compose_branches(Task.CHILDREN, self.capabilities, parent="?member", subject="[]")
        with_schemes = self.capabilities.has_in_scheme
        result: list[EntityRef] = []

        def builder(limit: int, page_offset: int) -> str:
            return collection_members_query(
                collection, limit, page_offset, narrower=narrower, scheme=scheme, with_schemes=with_schemes
            )

        async def chain():
            try:
                page = await fetch_page(builder, self.settings.page_size, offset, self.client, key="member", retries=1)
            finally:
                self.pages.end(scope)
            entities = members_from_bindings(page.rows)

            def commit() -> None:
                self.pages.commit(scope, offset, page.has_more, entities)
                result.extend(entities)

            yield commit
            for kind in (COLLECTION, CONCEPT):
                async with aclosing(self._label_rounds([e for e in entities if e.kind == kind], kind, signal)) as rounds:
                    async for mutation in rounds:
                        yield mutation

        await self.epochs.run_guarded(token, chain())
        return result

    # =========================================================================
    # ORPHANS
    # =========================================================================

    def _record_progress(
        self, token: EpochToken, on_progress: Callable[[OrphanProgress], Any] | None, progress: OrphanProgress
    ) -> None:
        if not self.epochs.is_current(token):
            return
        self.orphan_progress = progress
        if on_progress is not None:
            on_progress(progress)

    async def _enrich_orphan_concepts(self, entities: Sequence[EntityRef]) -> Callable[[], None]:
        concepts = [entity for entity in entities if entity.kind == CONCEPT]
        if not concepts:
            return lambda: None
        query = entity_details_query([e.uri for e in concepts], self._narrower_branches(subject="[]"))
        rows = get_bindings(await self.client.execute(query, retries=1))

        def commit() -> None:
            by_uri = {entity.uri: entity for entity in concepts}
            for row in rows:
                entity = by_uri.get(term_value(row, "concept"))
                if entity is None:
                    continue
                notation = term_value(row, "notation")
                if notation:
                    entity.set_notation(notation)
                entity.set_has_narrower(parse_boolean(term_value(row, "hasNarrower")))

        return commit

    async def load_orphans(
        self,
        offset: int = 0,
        on_progress: Callable[[OrphanProgress], Any] | None = None,
        signal: Any = None,
    ) -> list[EntityRef]:
        """Load a page of orphans: orphan collections first, then concepts.

        The full orphan list is computed on the first page (offset 0) and
        reused for later pages.
        """
        token = self.epochs.begin_request(ORPHANS_SCOPE)
        page_size = self.settings.page_size
        result: list[EntityRef] = []

        async def chain():
            orphan_list = self._orphan_list
            if offset == 0 or orphan_list is None:
                record = partial(self._record_progress, token, on_progress)
                strategy = self.settings.orphan_strategy
                collections = await self.orphans.find_orphan_collections(strategy, record)
                concepts = await self.orphans.find_orphans(CONCEPT, strategy, record)
                orphan_list = [(uri, COLLECTION) for uri in collections] + [(uri, CONCEPT) for uri in concepts]

            window = orphan_list[offset : offset + page_size]
            has_more = len(orphan_list) > offset + page_size
            entities = [EntityRef(uri, kind) for uri, kind in window]
            for entity in entities:
                if entity.kind == COLLECTION:
                    entity.set_collection_like(True)
            enrich = await self._enrich_orphan_concepts(entities)

            def commit() -> None:
                self._orphan_list = orphan_list
                self.orphans_has_more = has_more
                enrich()
                result.extend(entities)

            yield commit
            for kind in (COLLECTION, CONCEPT):
                async with aclosing(self._label_rounds([e for e in entities if e.kind == kind], kind, signal)) as rounds:
                    async for mutation in rounds:
                        yield mutation

        await self.epochs.run_guarded(token, chain())
        return result
