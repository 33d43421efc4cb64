"""
Endpoint capability descriptor.

A capability descriptor is the read-only result of the (external) endpoint
analysis pass: which SKOS relationship predicates the endpoint has data for,
and which label predicates exist per resource kind. Everything that builds
queries consults it, and never emits a pattern for a predicate it does not
list.

Analysis documents use the camelCase layout produced by the analysis pass:

    relationships:
      hasInScheme: true
      hasTopConceptOf: false
      hasBroader: true
    labelPredicates:
      concept: {prefLabel: true, rdfsLabel: true}
      scheme: {dctTitle: true}
    totalConcepts: 12345
    languages:
      - {lang: en, count: 9000}
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

logger = logging.getLogger(__name__)

CONCEPT = "concept"
SCHEME = "scheme"
COLLECTION = "collection"
RESOURCE_KINDS = (CONCEPT, SCHEME, COLLECTION)

# Analysis document key -> descriptor attribute
RELATIONSHIP_KEYS = {
    "hasInScheme": "has_in_scheme",
    "hasTopConceptOf": "has_top_concept_of",
    "hasHasTopConcept": "has_has_top_concept",
    "hasBroader": "has_broader",
    "hasNarrower": "has_narrower",
    "hasBroaderTransitive": "has_broader_transitive",
    "hasNarrowerTransitive": "has_narrower_transitive",
}
RELATIONSHIP_FLAGS = tuple(RELATIONSHIP_KEYS.values())

# Label predicate keys, also used as ?labelType values in queries
LABEL_PREDICATE_KEYS = ("prefLabel", "xlPrefLabel", "dctTitle", "dcTitle", "rdfsLabel")


@dataclass(frozen=True)
class DetectedLanguage:
    """A language tag seen on the endpoint, with its literal count."""

    lang: str
    count: int = 0


@dataclass(frozen=True)
class CapabilityDescriptor:
    """Immutable snapshot of what an endpoint is known to support.

    Missing flags default to False: an unknown capability is treated as
    absent. Label capabilities are per resource kind; a kind that was never
    analysed maps to None, meaning all label predicates are assumed.
    """

    has_in_scheme: bool = False
    has_top_concept_of: bool = False
    has_has_top_concept: bool = False
    has_broader: bool = False
    has_narrower: bool = False
    has_broader_transitive: bool = False
    has_narrower_transitive: bool = False
    label_predicates: Mapping[str, frozenset[str]] = field(default_factory=dict)
    total_concepts: int | None = None
    languages: tuple[DetectedLanguage, ...] = ()

    def __post_init__(self) -> None:
        frozen = {kind: frozenset(preds) for kind, preds in self.label_predicates.items()}
        object.__setattr__(self, "label_predicates", MappingProxyType(frozen))
        object.__setattr__(self, "languages", tuple(self.languages))

    def supports(self, flag: str) -> bool:
        """Return whether a relationship flag (e.g. "has_broader") is set."""
        if flag not in RELATIONSHIP_FLAGS:
            raise ValueError(f"Unknown capability flag: {flag}")
        return bool(getattr(self, flag))

    @property
    def has_top_capability(self) -> bool:
        """True if either top-concept relation is available."""
        return self.has_top_concept_of or self.has_has_top_concept

    @property
    def has_relationships(self) -> bool:
        return any(getattr(self, flag) for flag in RELATIONSHIP_FLAGS)

    def label_capabilities(self, kind: str) -> frozenset[str] | None:
        """Return the supported label predicates for a resource kind.

        Returns None when the kind was not analysed; callers then fall back to
        the full label predicate set.
        """
        if kind not in RESOURCE_KINDS:
            raise ValueError(f"Unknown resource kind: {kind}")
        return self.label_predicates.get(kind)

    @property
    def language_codes(self) -> list[str]:
        return [lang.lang for lang in self.languages]

    @classmethod
    def full(cls) -> CapabilityDescriptor:
        """Descriptor claiming every relationship (label kinds left unanalysed)."""
        return cls(**{flag: True for flag in RELATIONSHIP_FLAGS})

    @classmethod
    def from_analysis(cls, data: Mapping[str, Any] | None) -> CapabilityDescriptor:
        """Build a descriptor from an analysis document (see module docstring)."""
        if not data:
            return cls()

        relationships = data.get("relationships") or {}
        flags = {}
        for key, attr in RELATIONSHIP_KEYS.items():
            value = relationships.get(key, relationships.get(attr, False))
            flags[attr] = _parse_flag(value)

        label_predicates: dict[str, frozenset[str]] = {}
        for kind, preds in (data.get("labelPredicates") or {}).items():
            if kind not in RESOURCE_KINDS:
                logger.debug("Ignoring label predicates for unknown kind %s", kind)
                continue
            if isinstance(preds, Mapping):
                enabled = [name for name, value in preds.items() if _parse_flag(value)]
            else:
                enabled = list(preds or [])
            unknown = set(enabled) - set(LABEL_PREDICATE_KEYS)
            if unknown:
                logger.debug("Ignoring unknown label predicates for %s: %s", kind, sorted(unknown))
            label_predicates[kind] = frozenset(p for p in enabled if p in LABEL_PREDICATE_KEYS)

        languages = []
        for entry in data.get("languages") or []:
            if isinstance(entry, Mapping):
                languages.append(DetectedLanguage(str(entry["lang"]), int(entry.get("count", 0))))
            else:
                languages.append(DetectedLanguage(str(entry)))

        total = data.get("totalConcepts", data.get("total_concepts"))
        return cls(
            **flags,
            label_predicates=label_predicates,
            total_concepts=int(total) if total is not None else None,
            languages=tuple(languages),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert back to the analysis document layout."""
        result: dict[str, Any] = {
            "relationships": {key: getattr(self, attr) for key, attr in RELATIONSHIP_KEYS.items()},
        }
        if self.label_predicates:
            result["labelPredicates"] = {
                kind: {name: True for name in LABEL_PREDICATE_KEYS if name in preds}
                for kind, preds in self.label_predicates.items()
            }
        if self.total_concepts is not None:
            result["totalConcepts"] = self.total_concepts
        if self.languages:
            result["languages"] = [{"lang": lang.lang, "count": lang.count} for lang in self.languages]
        return result

    @classmethod
    def load(cls, path: Path | str) -> CapabilityDescriptor:
        """Load a descriptor from a JSON or YAML analysis file.

        Raises:
            FileNotFoundError: If the file does not exist.
        """
        path = Path(path)
        with open(path, encoding="utf-8") as f:
            if path.suffix in (".yaml", ".yml"):
                import yaml

                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)
        # Analysis may be nested under the endpoint object
        if "analysis" in data and isinstance(data["analysis"], Mapping):
            data = data["analysis"]
        descriptor = cls.from_analysis(data)
        logger.debug("Loaded capabilities from %s: %s", path, descriptor.to_dict()["relationships"])
        return descriptor


def _parse_flag(value: Any) -> bool:
    """Parse an EXISTS result; endpoints answer "true"/"false" or "1"/"0"."""
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1")
    return bool(value)
