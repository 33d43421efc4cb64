"""
Deprecation detection for concepts.

Each enabled rule contributes an OPTIONAL clause and a select variable to
concept queries; a result row is deprecated if any rule matches it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

CONDITIONS = ("exists", "equals", "not-equals")


@dataclass(frozen=True)
class DeprecationRule:
    id: str
    predicate: str
    condition: str = "exists"
    value: str | None = None
    enabled: bool = True
    label: str = ""

    def __post_init__(self) -> None:
        if self.condition not in CONDITIONS:
            raise ValueError(f"Unknown deprecation condition: {self.condition}")

    @property
    def var_name(self) -> str:
        return "deprec_" + re.sub(r"[^a-zA-Z0-9]", "_", self.id)

    def matches(self, value: str | None) -> bool:
        """Evaluate the rule against the bound value (None when unbound)."""
        if value is None:
            return False
        if self.condition == "exists":
            return True
        if not self.value:
            return False
        if self.condition == "equals":
            return value == self.value
        return value != self.value

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DeprecationRule:
        return cls(
            id=str(data["id"]),
            predicate=str(data["predicate"]),
            condition=str(data.get("condition", "exists")),
            value=data.get("value"),
            enabled=bool(data.get("enabled", True)),
            label=str(data.get("label", "")),
        )


DEFAULT_DEPRECATION_RULES = (
    DeprecationRule(
        id="owl-deprecated",
        label="OWL Deprecated",
        predicate="http://www.w3.org/2002/07/owl#deprecated",
        condition="equals",
        value="true",
    ),
    DeprecationRule(
        id="euvoc-status",
        label="EU Vocabularies Status",
        predicate="http://publications.europa.eu/ontology/euvoc#status",
        condition="not-equals",
        value="http://publications.europa.eu/resource/authority/concept-status/CURRENT",
    ),
)


class DeprecationDetector:
    """Builds deprecation clauses for queries and evaluates result rows."""

    def __init__(self, rules: Iterable[DeprecationRule] | None = None):
        if rules is None:
            rules = DEFAULT_DEPRECATION_RULES
        self.rules = tuple(rule for rule in rules if rule.enabled)

    def sparql_clauses(self, subject: str = "?concept") -> str:
        """OPTIONAL clauses fetching each rule's predicate."""
        return "\n          ".join(
            f"OPTIONAL {{ {subject} <{rule.predicate}> ?{rule.var_name} }}" for rule in self.rules
        )

    def select_vars(self) -> str:
        return " ".join(f"?{rule.var_name}" for rule in self.rules)

    def is_deprecated(self, binding: Mapping[str, Any]) -> bool:
        """True if any enabled rule matches the row."""
        for rule in self.rules:
            term = binding.get(rule.var_name)
            value = term.get("value") if term else None
            if rule.matches(value):
                return True
        return False


def load_rules(data: Iterable[Mapping[str, Any]] | None) -> tuple[DeprecationRule, ...]:
    """Build rules from config entries; None gives the defaults."""
    if data is None:
        return DEFAULT_DEPRECATION_RULES
    return tuple(DeprecationRule.from_dict(entry) for entry in data)
