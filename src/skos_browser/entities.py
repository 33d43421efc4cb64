"""
Entity stubs shared between pages, trees and the label resolver.

An EntityRef is created from a metadata row with its URI and structural
flags only. Labels and enrichment flags are written into it later through
setters that are safe to apply more than once.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Sequence

from .capabilities import COLLECTION, CONCEPT, RESOURCE_KINDS
from .deprecation import DeprecationDetector
from .labels import LabelValue, group_label_bindings, select_label
from .sparql import parse_boolean, term_value

logger = logging.getLogger(__name__)


def uri_fragment(uri: str) -> str:
    """Last segment of a URI, used when no label is known."""
    stripped = uri.rstrip("/#")
    for sep in ("#", "/"):
        if sep in stripped:
            stripped = stripped.rsplit(sep, 1)[1]
    return stripped or uri


class EntityRef:
    """A concept, scheme or collection as shown in a list or tree."""

    _READ_ONLY = ("uri", "kind")

    def __init__(self, uri: str, kind: str = CONCEPT, **fields: Any):
        if kind not in RESOURCE_KINDS:
            raise ValueError(f"Unknown resource kind: {kind}")
        object.__setattr__(self, "uri", uri)
        object.__setattr__(self, "kind", kind)
        self.notation: str | None = None
        self.label: LabelValue | None = None
        self.has_narrower: bool | None = None
        self.is_collection_like: bool | None = None
        self.in_current_scheme: bool | None = None
        self.display_scheme: str | None = None
        self.deprecated: bool | None = None
        for name, value in fields.items():
            if not hasattr(self, name):
                raise TypeError(f"Unknown EntityRef field: {name}")
            setattr(self, name, value)

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self._READ_ONLY:
            raise AttributeError(f"EntityRef.{name} is read-only")
        object.__setattr__(self, name, value)

    def __repr__(self) -> str:
        return f"EntityRef({self.uri!r}, kind={self.kind!r}, label={self.display_label!r})"

    def _update(self, name: str, value: Any) -> bool:
        if getattr(self, name) == value:
            return False
        object.__setattr__(self, name, value)
        return True

    # Setters return True when the value changed

    def set_label(self, label: LabelValue | None) -> bool:
        return self._update("label", label)

    def set_notation(self, notation: str | None) -> bool:
        return self._update("notation", notation)

    def set_has_narrower(self, has_narrower: bool) -> bool:
        return self._update("has_narrower", bool(has_narrower))

    def set_collection_like(self, value: bool) -> bool:
        return self._update("is_collection_like", bool(value))

    def set_in_current_scheme(self, value: bool) -> bool:
        return self._update("in_current_scheme", bool(value))

    def set_display_scheme(self, scheme: str | None) -> bool:
        return self._update("display_scheme", scheme)

    def set_deprecated(self, value: bool) -> bool:
        return self._update("deprecated", bool(value))

    @property
    def language(self) -> str | None:
        return self.label.lang if self.label else None

    @property
    def display_label(self) -> str:
        if self.label:
            return self.label.value
        return uri_fragment(self.uri)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"uri": self.uri, "kind": self.kind, "label": self.display_label}
        if self.label and self.label.lang:
            result["lang"] = self.label.lang
        for name in ("notation", "has_narrower", "is_collection_like", "in_current_scheme", "display_scheme", "deprecated"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        return result


def entities_from_bindings(
    bindings: Iterable[Mapping[str, Any]],
    kind: str = CONCEPT,
    preferred: str = "en",
    priorities: Sequence[str] = (),
    deprecation: DeprecationDetector | None = None,
) -> list[EntityRef]:
    """Build one EntityRef per distinct subject from metadata rows.

    Rows may repeat per subject (one per label candidate). The subject
    variable is ?collection for collections and ?concept otherwise.
    """
    subject = "collection" if kind == COLLECTION else "concept"
    rows = list(bindings)
    by_uri: dict[str, EntityRef] = {}

    for row in rows:
        uri = term_value(row, subject)
        if not uri:
            continue
        entity = by_uri.get(uri)
        if entity is None:
            entity = by_uri[uri] = EntityRef(uri, kind)

        notation = term_value(row, "notation")
        if notation and entity.notation is None:
            entity.set_notation(notation)

        count = term_value(row, "narrowerCount")
        if count is not None:
            entity.set_has_narrower(int(count) > 0)
        elif "hasNarrower" in row:
            entity.set_has_narrower(parse_boolean(term_value(row, "hasNarrower")))
        if "hasChildCollections" in row:
            entity.set_has_narrower(parse_boolean(term_value(row, "hasChildCollections")))
            entity.set_collection_like(True)

        if deprecation is not None:
            if deprecation.is_deprecated(row):
                entity.set_deprecated(True)
            elif entity.deprecated is None:
                entity.set_deprecated(False)

    for uri, candidates in group_label_bindings(rows, subject).items():
        label = select_label(candidates, preferred, priorities)
        if label is not None:
            by_uri[uri].set_label(label)

    return list(by_uri.values())


def members_from_bindings(bindings: Iterable[Mapping[str, Any]]) -> list[EntityRef]:
    """Build EntityRefs for collection member rows.

    A member is a collection when ?isCollection is true, else a concept.
    The first ?displayScheme seen for a member is kept.
    """
    by_uri: dict[str, EntityRef] = {}
    for row in bindings:
        uri = term_value(row, "member")
        if not uri:
            continue
        entity = by_uri.get(uri)
        if entity is None:
            is_collection = parse_boolean(term_value(row, "isCollection"))
            entity = by_uri[uri] = EntityRef(uri, COLLECTION if is_collection else CONCEPT)
            entity.set_collection_like(is_collection)
            if is_collection:
                entity.set_has_narrower(parse_boolean(term_value(row, "hasMembers")))
            else:
                entity.set_has_narrower(parse_boolean(term_value(row, "hasNarrower")))
            if "inCurrentScheme" in row:
                entity.set_in_current_scheme(parse_boolean(term_value(row, "inCurrentScheme")))

        notation = term_value(row, "notation")
        if notation and entity.notation is None:
            entity.set_notation(notation)
        scheme = term_value(row, "displayScheme")
        if scheme and entity.display_scheme is None:
            entity.set_display_scheme(scheme)

    return list(by_uri.values())
