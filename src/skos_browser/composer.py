"""
Capability-adaptive query branch composition.

A task (top concepts, children, collection membership, orphan exclusion) is
described by an ordered table of branch templates. Each template names the
capability flags it depends on; composing a task filters the table against a
CapabilityDescriptor and renders the survivors. The caller joins the branches
with UNION and embeds them in a complete query (see queries.py).

Templates are plain data (string.Template with ``$subject``, ``$scheme`` and
``$parent`` placeholders), so the branch set for any descriptor can be
inspected without an endpoint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from string import Template

from .capabilities import CapabilityDescriptor

logger = logging.getLogger(__name__)


class Task(str, Enum):
    """Query tasks the composer knows how to build branches for."""

    TOP_CONCEPTS = "top-concepts"
    CHILDREN = "children"
    COLLECTION_MEMBERSHIP = "collection-membership"
    ORPHAN_EXCLUSION = "orphan-exclusion"
    ORPHAN_COLLECTION_MEMBERSHIP = "orphan-collection-membership"
    DIRECT_MEMBERSHIP = "direct-membership"


@dataclass(frozen=True)
class BranchTemplate:
    """One row of a task's branch table.

    Attributes:
        name: Stable branch identifier (used for logging and progress).
        pattern: Graph pattern template, without the enclosing braces.
        requires: Flags that must all be set for the branch to be emitted.
        negates: Flags whose predicates appear only inside FILTER NOT EXISTS.
        superseded_by: Flags that make this branch redundant (a transitive
            predicate supersedes the equivalent property path).
        fallback: True for the structural top-concept fallback.
    """

    name: str
    pattern: str
    requires: tuple[str, ...] = ()
    negates: tuple[str, ...] = ()
    superseded_by: tuple[str, ...] = ()
    fallback: bool = False

    def applies(self, capabilities: CapabilityDescriptor) -> bool:
        if not all(capabilities.supports(flag) for flag in self.requires):
            return False
        return not any(capabilities.supports(flag) for flag in self.superseded_by)


@dataclass(frozen=True)
class QueryBranch:
    """A rendered graph pattern plus the flags it depends on."""

    name: str
    pattern: str
    requires: tuple[str, ...] = ()
    negates: tuple[str, ...] = ()
    fallback: bool = False

    @property
    def block(self) -> str:
        return "{ " + self.pattern + " }"


@dataclass(frozen=True)
class Branches:
    """Ordered branch list for one task.

    An empty list means the task is unsupported on this endpoint; callers
    check ``unsupported`` (or truthiness) and skip the task.
    """

    task: Task
    branches: tuple[QueryBranch, ...] = ()

    def __iter__(self):
        return iter(self.branches)

    def __len__(self) -> int:
        return len(self.branches)

    def __bool__(self) -> bool:
        return bool(self.branches)

    @property
    def unsupported(self) -> bool:
        return not self.branches

    @property
    def names(self) -> list[str]:
        return [branch.name for branch in self.branches]

    def union(self, separator: str = "\n        UNION\n        ") -> str:
        """Join the branches into one UNION pattern."""
        return separator.join(branch.block for branch in self.branches)

    def without(self, names) -> Branches:
        """Return a copy without the named branches."""
        excluded = set(names)
        return Branches(self.task, tuple(b for b in self.branches if b.name not in excluded))

    @property
    def explicit(self) -> Branches:
        return Branches(self.task, tuple(b for b in self.branches if not b.fallback))

    @property
    def fallback(self) -> Branches:
        return Branches(self.task, tuple(b for b in self.branches if b.fallback))


def as_term(value: str) -> str:
    """Render a URI as a SPARQL term; variables and bracketed IRIs pass through."""
    if value.startswith(("?", "<", "_:")):
        return value
    return f"<{value}>"


# =============================================================================
# BRANCH TABLES
# =============================================================================

_IN_SCHEME = "has_in_scheme"
_TOP_OF = "has_top_concept_of"
_HAS_TOP = "has_has_top_concept"
_BROADER = "has_broader"
_NARROWER = "has_narrower"
_BROADER_T = "has_broader_transitive"
_NARROWER_T = "has_narrower_transitive"

TOP_CONCEPT_TEMPLATES = (
    BranchTemplate("topConceptOf", "$subject skos:topConceptOf $scheme .", requires=(_TOP_OF,)),
    BranchTemplate("hasTopConcept", "$scheme skos:hasTopConcept $subject .", requires=(_HAS_TOP,)),
    BranchTemplate(
        "structural",
        "$subject skos:inScheme $scheme . "
        "FILTER NOT EXISTS { $subject skos:broader ?broader } "
        "FILTER NOT EXISTS { ?parent skos:narrower $subject }",
        requires=(_IN_SCHEME,),
        negates=(_BROADER, _NARROWER),
        fallback=True,
    ),
)

CHILDREN_TEMPLATES = (
    BranchTemplate("broader", "$subject skos:broader $parent .", requires=(_BROADER,)),
    BranchTemplate("narrower", "$parent skos:narrower $subject .", requires=(_NARROWER,)),
)

DIRECT_MEMBERSHIP_TEMPLATES = (
    BranchTemplate("inScheme", "$subject skos:inScheme $scheme .", requires=(_IN_SCHEME,)),
    BranchTemplate("topConceptOf", "$subject skos:topConceptOf $scheme .", requires=(_TOP_OF,)),
    BranchTemplate("hasTopConcept", "$scheme skos:hasTopConcept $subject .", requires=(_HAS_TOP,)),
)

# Membership through a top concept; transitive predicates win over paths
MEMBERSHIP_TEMPLATES = DIRECT_MEMBERSHIP_TEMPLATES + (
    BranchTemplate(
        "topConceptOf-broaderTransitive",
        "$subject skos:broaderTransitive ?top . ?top skos:topConceptOf $scheme .",
        requires=(_TOP_OF, _BROADER_T),
    ),
    BranchTemplate(
        "hasTopConcept-broaderTransitive",
        "$subject skos:broaderTransitive ?top . $scheme skos:hasTopConcept ?top .",
        requires=(_HAS_TOP, _BROADER_T),
    ),
    BranchTemplate(
        "topConceptOf-broader-path",
        "$subject skos:broader+ ?top . ?top skos:topConceptOf $scheme .",
        requires=(_TOP_OF, _BROADER),
        superseded_by=(_BROADER_T,),
    ),
    BranchTemplate(
        "hasTopConcept-broader-path",
        "$subject skos:broader+ ?top . $scheme skos:hasTopConcept ?top .",
        requires=(_HAS_TOP, _BROADER),
        superseded_by=(_BROADER_T,),
    ),
    BranchTemplate(
        "topConceptOf-narrowerTransitive",
        "?top skos:topConceptOf $scheme . ?top skos:narrowerTransitive $subject .",
        requires=(_TOP_OF, _NARROWER_T),
    ),
    BranchTemplate(
        "hasTopConcept-narrowerTransitive",
        "$scheme skos:hasTopConcept ?top . ?top skos:narrowerTransitive $subject .",
        requires=(_HAS_TOP, _NARROWER_T),
    ),
    BranchTemplate(
        "topConceptOf-narrower-path",
        "?top skos:topConceptOf $scheme . ?top skos:narrower+ $subject .",
        requires=(_TOP_OF, _NARROWER),
        superseded_by=(_NARROWER_T,),
    ),
    BranchTemplate(
        "hasTopConcept-narrower-path",
        "$scheme skos:hasTopConcept ?top . ?top skos:narrower+ $subject .",
        requires=(_HAS_TOP, _NARROWER),
        superseded_by=(_NARROWER_T,),
    ),
)

# Every independently checkable path from a scheme; no supersession, so the
# slow strategy can check each one on its own.
ORPHAN_EXCLUSION_TEMPLATES = (
    BranchTemplate("inScheme", "$subject skos:inScheme ?scheme .", requires=(_IN_SCHEME,)),
    BranchTemplate("hasTopConcept", "?scheme skos:hasTopConcept $subject .", requires=(_HAS_TOP,)),
    BranchTemplate("topConceptOf", "$subject skos:topConceptOf ?scheme .", requires=(_TOP_OF,)),
    BranchTemplate(
        "hasTopConcept-narrowerTransitive",
        "?scheme skos:hasTopConcept ?top . ?top skos:narrowerTransitive $subject .",
        requires=(_HAS_TOP, _NARROWER_T),
    ),
    BranchTemplate(
        "topConceptOf-narrowerTransitive",
        "?top skos:topConceptOf ?scheme . ?top skos:narrowerTransitive $subject .",
        requires=(_TOP_OF, _NARROWER_T),
    ),
    BranchTemplate(
        "hasTopConcept-broaderTransitive",
        "?scheme skos:hasTopConcept ?top . $subject skos:broaderTransitive ?top .",
        requires=(_HAS_TOP, _BROADER_T),
    ),
    BranchTemplate(
        "topConceptOf-broaderTransitive",
        "?top skos:topConceptOf ?scheme . $subject skos:broaderTransitive ?top .",
        requires=(_TOP_OF, _BROADER_T),
    ),
    BranchTemplate(
        "hasTopConcept-narrower-path",
        "?scheme skos:hasTopConcept ?top . ?top skos:narrower+ $subject .",
        requires=(_HAS_TOP, _NARROWER),
    ),
    BranchTemplate(
        "topConceptOf-narrower-path",
        "?top skos:topConceptOf ?scheme . ?top skos:narrower+ $subject .",
        requires=(_TOP_OF, _NARROWER),
    ),
    BranchTemplate(
        "hasTopConcept-broader-path",
        "?scheme skos:hasTopConcept ?top . $subject skos:broader+ ?top .",
        requires=(_HAS_TOP, _BROADER),
    ),
    BranchTemplate(
        "topConceptOf-broader-path",
        "?top skos:topConceptOf ?scheme . $subject skos:broader+ ?top .",
        requires=(_TOP_OF, _BROADER),
    ),
)

TEMPLATES: dict[Task, tuple[BranchTemplate, ...]] = {
    Task.TOP_CONCEPTS: TOP_CONCEPT_TEMPLATES,
    Task.CHILDREN: CHILDREN_TEMPLATES,
    Task.COLLECTION_MEMBERSHIP: MEMBERSHIP_TEMPLATES,
    Task.ORPHAN_EXCLUSION: ORPHAN_EXCLUSION_TEMPLATES,
    Task.ORPHAN_COLLECTION_MEMBERSHIP: MEMBERSHIP_TEMPLATES,
    Task.DIRECT_MEMBERSHIP: DIRECT_MEMBERSHIP_TEMPLATES,
}

# Tasks whose scheme is a query parameter rather than an unbound variable
_SCHEME_BOUND = (Task.TOP_CONCEPTS, Task.COLLECTION_MEMBERSHIP)


def compose_branches(
    task: Task | str,
    capabilities: CapabilityDescriptor,
    *,
    scheme: str | None = None,
    parent: str | None = None,
    subject: str = "?concept",
    include_fallback: bool | None = None,
    explicit: bool = True,
) -> Branches:
    """Compose the branches for a task under the given capabilities.

    Args:
        task: The task to compose.
        capabilities: What the endpoint supports.
        scheme: Scheme URI for TOP_CONCEPTS and COLLECTION_MEMBERSHIP.
        parent: Parent URI for CHILDREN.
        subject: Variable the branches bind.
        include_fallback: TOP_CONCEPTS only. None emits the structural
            fallback only when no explicit branch applies; True always adds
            it (merged completeness); False never does.
        explicit: TOP_CONCEPTS only. False drops the explicit branches.

    Returns:
        Branches in preference order; empty when the task is unsupported.

    Raises:
        ValueError: If a required parameter is missing.
    """
    task = Task(task)
    if task in _SCHEME_BOUND and not scheme:
        raise ValueError(f"{task.value} requires a scheme")
    if task == Task.CHILDREN and not parent:
        raise ValueError("children requires a parent")

    values = {
        "subject": subject,
        "scheme": as_term(scheme) if scheme else "?scheme",
        "parent": as_term(parent) if parent else "?parent",
    }

    selected = [t for t in TEMPLATES[task] if t.applies(capabilities)]

    if task == Task.TOP_CONCEPTS:
        explicit_rows = [t for t in selected if not t.fallback]
        fallback_rows = [t for t in selected if t.fallback]
        if include_fallback is None:
            include_fallback = not explicit_rows
        selected = (explicit_rows if explicit else []) + (fallback_rows if include_fallback else [])

    branches = tuple(
        QueryBranch(
            name=t.name,
            pattern=Template(t.pattern).substitute(values),
            requires=t.requires,
            negates=t.negates,
            fallback=t.fallback,
        )
        for t in selected
    )
    if not branches:
        logger.debug("Task %s unsupported by endpoint capabilities", task.value)
    return Branches(task, branches)
