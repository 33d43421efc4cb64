"""
Complete SPARQL queries built from composed branches.

Every paginated query orders by the entity URI; the N+1 pagination in
pagination.py is only safe on a stable order. Builders that take ``limit``
and ``offset`` are meant to be wrapped as ``lambda limit, offset: ...`` and
handed to fetch_page(), which asks for one row more than the page size.
"""

from __future__ import annotations

from typing import Iterable

from .capabilities import COLLECTION, CONCEPT, LABEL_PREDICATE_KEYS, SCHEME
from .composer import Branches, as_term
from .deprecation import DeprecationDetector
from .sparql import with_prefixes

LABEL_PATTERNS = {
    "prefLabel": "skos:prefLabel",
    "xlPrefLabel": "skosxl:prefLabel/skosxl:literalForm",
    "dctTitle": "dct:title",
    "dcTitle": "dc:title",
    "rdfsLabel": "rdfs:label",
}

# Resource kind -> (variable, rdf:type)
ENTITY_TYPES = {
    CONCEPT: ("?concept", "skos:Concept"),
    COLLECTION: ("?collection", "skos:Collection"),
    SCHEME: ("?scheme", "skos:ConceptScheme"),
}


def entity_var(kind: str) -> str:
    try:
        return ENTITY_TYPES[kind][0]
    except KeyError:
        raise ValueError(f"Unknown resource kind: {kind}") from None


def string_literal(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def values_clause(var: str, uris: Iterable[str]) -> str:
    return f"VALUES {var} {{ {' '.join(as_term(uri) for uri in uris)} }}"


# =============================================================================
# LABEL CLAUSES
# =============================================================================


def label_union_clause(subject: str, capabilities: Iterable[str] | None = None) -> str:
    """UNION of label patterns binding ?label, ?labelType and ?labelLang.

    Only predicates in ``capabilities`` are included (None means all of them),
    in type priority order. Returns an empty string when none apply.
    """
    if capabilities is None:
        types = list(LABEL_PREDICATE_KEYS)
    else:
        supported = set(capabilities)
        types = [t for t in LABEL_PREDICATE_KEYS if t in supported]
    if not types:
        return ""

    unions = " UNION ".join(
        f'{{ {subject} {LABEL_PATTERNS[t]} ?label . BIND("{t}" AS ?labelType) }}' for t in types
    )
    return f"{unions}\n        BIND(LANG(?label) AS ?labelLang)"


def optional_label_clause(subject: str, capabilities: Iterable[str] | None = None) -> str:
    clause = label_union_clause(subject, capabilities)
    if not clause:
        return ""
    return f"OPTIONAL {{\n        {clause}\n      }}"


def labels_query(
    uris: Iterable[str],
    subject: str,
    capabilities: Iterable[str] | None = None,
    language: str | None = None,
) -> str | None:
    """Labels for a fixed set of URIs, optionally for one language only.

    Returns None when no label predicate is available.
    """
    clause = label_union_clause(subject, capabilities)
    if not clause:
        return None

    if language is not None:
        body = f"{clause}\n        FILTER(LANG(?label) = {string_literal(language)})"
    else:
        body = f"OPTIONAL {{\n        {clause}\n      }}"

    return with_prefixes(f"""
    SELECT {subject} ?label ?labelLang ?labelType
    WHERE {{
      {values_clause(subject, uris)}
      {body}
    }}
    ORDER BY {subject}
    """)


# =============================================================================
# TREE QUERIES
# =============================================================================


def concept_page_query(
    branches: Branches,
    limit: int,
    offset: int,
    narrower: Branches | None = None,
    deprecation: DeprecationDetector | None = None,
    label_capabilities: Iterable[str] | None = None,
    require_type: bool = True,
    with_labels: bool = True,
) -> str:
    """One page of concepts matched by ``branches``, with labels and flags.

    The inner subquery paginates distinct concepts and counts their
    narrower concepts; the outer query attaches notation, deprecation
    values (and labels, unless ``with_labels`` is False), so a page boundary
    never splits a concept's rows. Multi-valued metadata only multiplies
    outer rows; fetch with ``key="concept"``.

    Args:
        branches: Branches binding ?concept (TOP_CONCEPTS or CHILDREN).
        limit: LIMIT for the inner subquery (page size + 1).
        offset: OFFSET for the inner subquery.
        narrower: CHILDREN branches binding ?narrower under ?concept, for
            the narrower count. Omitted when None or unsupported.
        deprecation: Adds deprecation rule variables.
        label_capabilities: Concept label predicates.
        require_type: Require ``?concept a skos:Concept``.
    """
    dep_vars = deprecation.select_vars() if deprecation else ""
    dep_clauses = deprecation.sparql_clauses("?concept") if deprecation else ""
    type_clause = "?concept a skos:Concept ." if require_type else ""
    narrower_clause = f"OPTIONAL {{ {narrower.union(' UNION ')} }}" if narrower else ""
    label_clause = optional_label_clause("?concept", label_capabilities) if with_labels else ""

    return with_prefixes(f"""
    SELECT ?concept ?label ?labelLang ?labelType ?notation ?narrowerCount {dep_vars}
    WHERE {{
      {{
        SELECT ?concept (COUNT(DISTINCT ?narrower) AS ?narrowerCount)
        WHERE {{
          {type_clause}
          {branches.union()}
          {narrower_clause}
        }}
        GROUP BY ?concept
        ORDER BY ?concept
        LIMIT {limit}
        OFFSET {offset}
      }}
      OPTIONAL {{ ?concept skos:notation ?notation }}
      {dep_clauses}
      {label_clause}
    }}
    ORDER BY ?concept
    """)


def entity_details_query(uris: Iterable[str], narrower: Branches | None = None) -> str:
    """Notation and has-narrower flag for a fixed set of concepts."""
    if narrower:
        has_narrower = f"BIND(EXISTS {{ {narrower.union(' UNION ')} }} AS ?hasNarrower)"
    else:
        has_narrower = "BIND(false AS ?hasNarrower)"

    return with_prefixes(f"""
    SELECT ?concept ?notation ?hasNarrower
    WHERE {{
      {values_clause("?concept", uris)}
      OPTIONAL {{ ?concept skos:notation ?notation }}
      {has_narrower}
    }}
    ORDER BY ?concept
    """)


# =============================================================================
# COLLECTION QUERIES
# =============================================================================


def collections_query(branches: Branches, label_capabilities: Iterable[str] | None = None) -> str | None:
    """Collections with at least one member in a scheme.

    ``branches`` are COLLECTION_MEMBERSHIP branches binding ?concept.
    Returns None when the task is unsupported.
    """
    if branches.unsupported:
        return None

    return with_prefixes(f"""
    SELECT DISTINCT ?collection ?label ?labelLang ?labelType ?notation
           ?hasParentCollection ?hasChildCollections WHERE {{
      ?collection a skos:Collection .
      ?collection skos:member ?concept .

      {branches.union()}

      BIND(EXISTS {{
        ?parentCol a skos:Collection .
        ?parentCol skos:member ?collection .
      }} AS ?hasParentCollection)

      BIND(EXISTS {{
        ?collection skos:member ?childCol .
        ?childCol a skos:Collection .
      }} AS ?hasChildCollections)

      {optional_label_clause("?collection", label_capabilities)}

      OPTIONAL {{ ?collection skos:notation ?notation }}
    }}
    ORDER BY ?collection
    """)


def child_collections_query(parent: str, label_capabilities: Iterable[str] | None = None) -> str:
    """Collections that are members of a parent collection."""
    return with_prefixes(f"""
    SELECT DISTINCT ?collection ?label ?labelLang ?labelType ?notation
           ?hasChildCollections WHERE {{
      {as_term(parent)} skos:member ?collection .
      ?collection a skos:Collection .

      BIND(EXISTS {{
        ?collection skos:member ?childCol .
        ?childCol a skos:Collection .
      }} AS ?hasChildCollections)

      {optional_label_clause("?collection", label_capabilities)}

      OPTIONAL {{ ?collection skos:notation ?notation }}
    }}
    ORDER BY ?collection
    """)


def collection_members_query(
    collection: str,
    limit: int,
    offset: int,
    narrower: Branches | None = None,
    scheme: str | None = None,
    with_schemes: bool = True,
) -> str:
    """One page of a collection's members, concepts and collections alike.

    Members are paginated in a subquery. The outer query flags nested
    collections, checks membership in ``scheme`` and picks up any scheme
    for display, so a member can come back on several rows (fetch with
    ``key="member"``).

    Args:
        narrower: CHILDREN branches with parent ?member and subject ``[]``,
            for the has-narrower flag of concept members.
        scheme: Scheme currently browsed; binds ?inCurrentScheme.
        with_schemes: False when the endpoint has no skos:inScheme.
    """
    if narrower:
        has_narrower = f"BIND(EXISTS {{ {narrower.union(' UNION ')} }} AS ?hasNarrower)"
    else:
        has_narrower = "BIND(false AS ?hasNarrower)"
    scheme_clauses = ""
    if with_schemes:
        scheme_clauses = "OPTIONAL { ?member skos:inScheme ?displayScheme }"
        if scheme:
            scheme_clauses = (
                f"BIND(EXISTS {{ ?member skos:inScheme {as_term(scheme)} }} AS ?inCurrentScheme)\n      "
                + scheme_clauses
            )

    return with_prefixes(f"""
    SELECT ?member ?notation ?hasNarrower ?hasMembers ?isCollection ?inCurrentScheme ?displayScheme
    WHERE {{
      {{
        SELECT DISTINCT ?member
        WHERE {{
          {as_term(collection)} skos:member ?member .
        }}
        ORDER BY ?member
        LIMIT {limit}
        OFFSET {offset}
      }}
      BIND(EXISTS {{ ?member a skos:Collection }} AS ?isCollection)
      BIND(EXISTS {{ ?member skos:member [] }} AS ?hasMembers)
      {has_narrower}
      {scheme_clauses}
      OPTIONAL {{ ?member skos:notation ?notation }}
    }}
    ORDER BY ?member ?displayScheme
    """)


# =============================================================================
# ORPHAN QUERIES
# =============================================================================


def _entity_prefix(kind: str) -> tuple[str, str]:
    """Variable and the pattern linking an entity to the ?concept a branch binds."""
    var = entity_var(kind)
    if kind == COLLECTION:
        return var, "?collection skos:member ?concept . "
    return var, ""


def all_entities_query(kind: str, limit: int, offset: int) -> str:
    """All entities of a kind."""
    var, rdf_type = ENTITY_TYPES[kind]
    return with_prefixes(f"""
    SELECT DISTINCT {var}
    WHERE {{
      {var} a {rdf_type} .
    }}
    ORDER BY {var}
    LIMIT {limit}
    OFFSET {offset}
    """)


def exclusion_query(kind: str, pattern: str, limit: int, offset: int) -> str:
    """Entities of a kind reachable through one exclusion branch."""
    var, member = _entity_prefix(kind)
    rdf_type = ENTITY_TYPES[kind][1]
    return with_prefixes(f"""
    SELECT DISTINCT {var}
    WHERE {{
      {var} a {rdf_type} .
      {member}{pattern}
    }}
    ORDER BY {var}
    LIMIT {limit}
    OFFSET {offset}
    """)


def orphan_query(
    kind: str,
    exclusion: Branches,
    limit: int,
    offset: int,
    prefilter: Branches | None = None,
) -> str | None:
    """Single FILTER NOT EXISTS query for orphans of a kind.

    With ``prefilter`` (the direct membership branches), those branches move
    out of the NOT EXISTS union and become filters on a candidate subquery.
    The result set is the same either way.

    Returns None when there is nothing to filter on.
    """
    var, member = _entity_prefix(kind)
    rdf_type = ENTITY_TYPES[kind][1]

    union = exclusion.without(prefilter.names) if prefilter else exclusion
    candidate_filters = [f"FILTER NOT EXISTS {{ {member}{b.pattern} }}" for b in prefilter or ()]

    if candidate_filters:
        filters = "\n          ".join(candidate_filters)
        candidates = f"""{{
        SELECT DISTINCT {var}
        WHERE {{
          {var} a {rdf_type} .
          {filters}
        }}
      }}"""
    else:
        candidates = f"{var} a {rdf_type} ."

    if not union:
        if not candidate_filters:
            return None
        return with_prefixes(f"""
    SELECT DISTINCT {var}
    WHERE {{
      {candidates}
    }}
    ORDER BY {var}
    LIMIT {limit}
    OFFSET {offset}
    """)

    return with_prefixes(f"""
    SELECT DISTINCT {var}
    WHERE {{
      {candidates}

      FILTER NOT EXISTS {{
        {member}{union.union()}
      }}
    }}
    ORDER BY {var}
    LIMIT {limit}
    OFFSET {offset}
    """)
