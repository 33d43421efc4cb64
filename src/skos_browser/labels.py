"""
Label selection and progressive label resolution.

Labels are resolved per resource in rounds: one query per language in
priority order (only for the URIs still unresolved), then a single
unrestricted query for whatever remains. Small remainders skip straight to
the unrestricted query, since a round-trip per language costs more than the
smaller payload saves.

Within one round, the display label for a resource is chosen by label type
first (prefLabel > xlPrefLabel > dctTitle > dcTitle > rdfsLabel), then by
language (preferred > endpoint priorities > untagged > first seen).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Sequence

from .capabilities import CONCEPT, LABEL_PREDICATE_KEYS, CapabilityDescriptor
from .queries import labels_query
from .sparql import QueryAborted, get_bindings, term_value

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 5
DEFAULT_MAX_LANGUAGE_ITERATIONS = 5

LABEL_TYPE_PRIORITY = LABEL_PREDICATE_KEYS


@dataclass(frozen=True)
class LabelValue:
    """A label literal with its language tag (None when untagged) and type."""

    value: str
    lang: str | None = None
    type: str = "prefLabel"

    def __str__(self) -> str:
        return self.value


LabelMap = Mapping[str, LabelValue]
OnRoundResolved = Callable[[LabelMap], Any]


def select_label(
    candidates: Sequence[LabelValue],
    preferred: str,
    priorities: Sequence[str] = (),
) -> LabelValue | None:
    """Pick the display label from one resource's candidates.

    Type priority outranks language priority: a prefLabel in any language
    beats an rdfs:label in the preferred language.

    Args:
        candidates: Labels in the order the endpoint returned them.
        preferred: Preferred language code.
        priorities: Further language codes, in order.

    Returns:
        The chosen label, or None if there are no candidates.
    """
    for label_type in LABEL_TYPE_PRIORITY:
        of_type = [c for c in candidates if c.type == label_type]
        if not of_type:
            continue
        for lang in (preferred, *priorities):
            for candidate in of_type:
                if candidate.lang == lang:
                    return candidate
        for candidate in of_type:
            if not candidate.lang:
                return candidate
        return of_type[0]

    # Unknown label types only
    return candidates[0] if candidates else None


def group_label_bindings(bindings: Iterable[Mapping[str, Any]], subject: str = "concept") -> dict[str, list[LabelValue]]:
    """Group ?label/?labelLang/?labelType rows by subject URI."""
    grouped: dict[str, list[LabelValue]] = {}
    for binding in bindings:
        uri = term_value(binding, subject)
        value = term_value(binding, "label")
        if not uri or value is None:
            continue
        grouped.setdefault(uri, []).append(
            LabelValue(
                value=value,
                lang=term_value(binding, "labelLang") or None,
                type=term_value(binding, "labelType") or "prefLabel",
            )
        )
    return grouped


def pick_labels(
    bindings: Iterable[Mapping[str, Any]],
    preferred: str,
    priorities: Sequence[str] = (),
    subject: str = "concept",
) -> dict[str, LabelValue]:
    """Select the best label for every subject in a result set."""
    result = {}
    for uri, candidates in group_label_bindings(bindings, subject).items():
        label = select_label(candidates, preferred, priorities)
        if label is not None:
            result[uri] = label
    return result


def sort_labels(labels: Iterable[LabelValue], preferred: str, priorities: Sequence[str] = ()) -> list[LabelValue]:
    """Deduplicate labels and order them for display.

    Preferred language first, then the priority languages in order, then
    untagged literals, then everything else by language and value.
    """
    order = {lang: i for i, lang in enumerate(dict.fromkeys((preferred, *priorities)))}
    seen = set()
    unique = []
    for label in labels:
        key = (label.value, label.lang or "")
        if key in seen:
            continue
        seen.add(key)
        unique.append(label)

    def sort_key(label: LabelValue):
        lang = label.lang or ""
        if lang in order:
            return (0, order[lang], "", label.value)
        if not lang:
            return (1, 0, "", label.value)
        return (2, 0, lang, label.value)

    return sorted(unique, key=sort_key)


def default_language_priorities(detected: Iterable[str]) -> list[str]:
    """Default language order for an endpoint: 'en' first, then alphabetical."""
    langs = sorted(set(detected))
    if "en" in langs:
        langs.remove("en")
        langs.insert(0, "en")
    return langs


def language_rounds(preferred: str, priorities: Sequence[str], max_iterations: int) -> list[str]:
    """Languages to try in order: preferred first, then priorities, capped."""
    ordered = [preferred] + [lang for lang in priorities if lang != preferred]
    return list(dict.fromkeys(ordered))[:max_iterations]


def _aborted(signal: Any) -> bool:
    return signal is not None and signal.is_set()


class ProgressiveLabelResolver:
    """Resolves display labels for many resources in language-ordered rounds.

    Args:
        client: Object with an ``execute(query, retries=, signal=)`` coroutine.
        capabilities: Endpoint capabilities (label predicates per kind).
        preferred_language: User's preferred language.
        language_priorities: Endpoint language priorities. Defaults to the
            detected languages, 'en' first.
        threshold: At or below this many unresolved URIs, stop per-language
            rounds and run the unrestricted query.
        max_language_iterations: Maximum number of per-language rounds.
    """

    def __init__(
        self,
        client,
        capabilities: CapabilityDescriptor | None = None,
        preferred_language: str = "en",
        language_priorities: Sequence[str] | None = None,
        threshold: int = DEFAULT_THRESHOLD,
        max_language_iterations: int = DEFAULT_MAX_LANGUAGE_ITERATIONS,
    ):
        self.client = client
        self.capabilities = capabilities or CapabilityDescriptor()
        self.preferred_language = preferred_language
        if language_priorities is None:
            language_priorities = default_language_priorities(self.capabilities.language_codes)
        self.language_priorities = list(language_priorities)
        self.threshold = threshold
        self.max_language_iterations = max_language_iterations

    def languages(self) -> list[str]:
        return language_rounds(self.preferred_language, self.language_priorities, self.max_language_iterations)

    def _subject(self, kind: str) -> str:
        return "collection" if kind == "collection" else "concept"

    async def _run_round(self, uris: list[str], kind: str, language: str | None, signal: Any) -> dict[str, LabelValue] | None:
        """Run one round; returns None if aborted, an empty map on failure."""
        capabilities = self.capabilities.label_capabilities(kind)
        subject = self._subject(kind)
        query = labels_query(uris, f"?{subject}", capabilities, language=language)
        if query is None:
            logger.debug("No label predicates available for %s", kind)
            return {}

        round_name = language or "final"
        try:
            results = await self.client.execute(query, retries=0, signal=signal)
        except QueryAborted:
            logger.debug("Label round %s aborted", round_name)
            return None
        except Exception as e:
            logger.warning("Label query failed for round %s: %s", round_name, e)
            return {}

        if _aborted(signal):
            logger.debug("Discarding label round %s: aborted", round_name)
            return None
        return pick_labels(get_bindings(results), self.preferred_language, self.language_priorities, subject)

    async def query_language(self, uris: list[str], language: str, kind: str = CONCEPT, signal: Any = None) -> dict[str, LabelValue]:
        """Resolve labels in a single language."""
        if not uris:
            return {}
        return await self._run_round(uris, kind, language, signal) or {}

    async def query_all(self, uris: list[str], kind: str = CONCEPT, signal: Any = None) -> dict[str, LabelValue]:
        """Resolve labels without a language restriction."""
        if not uris:
            return {}
        return await self._run_round(uris, kind, None, signal) or {}

    async def resolve_labels(
        self,
        uris: Iterable[str],
        kind: str = CONCEPT,
        on_round_resolved: OnRoundResolved | None = None,
        signal: Any = None,
    ) -> dict[str, LabelValue]:
        """Resolve labels progressively.

        Args:
            uris: Resource URIs to label.
            kind: Resource kind (concept, scheme, collection).
            on_round_resolved: Called with an immutable URI -> LabelValue map
                after every round that resolved something.
            signal: Optional abort signal with ``is_set()``.

        Returns:
            Every label resolved before completion or abort.
        """
        remaining = list(dict.fromkeys(uris))
        if not remaining:
            return {}

        start = time.monotonic()
        total = len(remaining)
        resolved: dict[str, LabelValue] = {}
        languages = self.languages()
        logger.debug(
            "Resolving %d %s labels, languages=%s threshold=%d", total, kind, ",".join(languages), self.threshold
        )

        def publish(results: dict[str, LabelValue]) -> None:
            resolved.update(results)
            if on_round_resolved is not None:
                on_round_resolved(MappingProxyType(dict(results)))

        for lang in languages:
            if _aborted(signal):
                logger.debug("Label resolution aborted")
                return resolved
            if len(remaining) <= self.threshold:
                break

            results = await self._run_round(remaining, kind, lang, signal)
            if results is None:
                return resolved
            if results:
                publish(results)
                remaining = [uri for uri in remaining if uri not in results]
                logger.debug("Resolved %d with lang=%s, %d remaining", len(results), lang, len(remaining))

        if remaining:
            if _aborted(signal):
                logger.debug("Label resolution aborted before final query")
                return resolved
            results = await self._run_round(remaining, kind, None, signal)
            if results is None:
                return resolved
            if results:
                publish(results)
            logger.debug("Final query resolved %d, %d unresolved", len(results), len(remaining) - len(results))

        logger.info(
            "Resolved %d/%d %s labels in %.0fms", len(resolved), total, kind, (time.monotonic() - start) * 1000
        )
        return resolved
