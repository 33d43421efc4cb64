"""Tests for queries module."""
import pytest

from skos_browser.capabilities import CapabilityDescriptor
from skos_browser.composer import Task, compose_branches
from skos_browser.deprecation import DeprecationDetector
from skos_browser.queries import (
    all_entities_query,
    collection_members_query,
    collections_query,
    concept_page_query,
    entity_details_query,
    entity_var,
    exclusion_query,
    label_union_clause,
    labels_query,
    orphan_query,
    string_literal,
)
from skos_browser.sparql import SPARQL_PREFIXES, with_prefixes

SCHEME = "http://example.org/scheme"


class TestLabelClauses:
    """Tests for label query building."""

    def test_all_predicates_in_priority_order(self):
        """Test that None includes every label predicate, prefLabel first."""
        clause = label_union_clause("?concept")
        assert clause.index("skos:prefLabel") < clause.index("skosxl:prefLabel/skosxl:literalForm")
        assert clause.index("dct:title") < clause.index("dc:title") < clause.index("rdfs:label")
        assert 'BIND("rdfsLabel" AS ?labelType)' in clause
        assert "BIND(LANG(?label) AS ?labelLang)" in clause

    def test_only_supported_predicates(self):
        """Test that unsupported label predicates are left out."""
        clause = label_union_clause("?concept", {"rdfsLabel"})
        assert "rdfs:label" in clause
        assert "skos:prefLabel" not in clause
        assert "UNION" not in clause

    def test_no_predicates(self):
        """Test that an empty capability set gives no clause."""
        assert label_union_clause("?concept", set()) == ""

    def test_labels_query_for_language(self):
        """Test a language-restricted label round."""
        query = labels_query(["http://example.org/a", "http://example.org/b"], "?concept", {"prefLabel"}, "fr")
        assert "VALUES ?concept { <http://example.org/a> <http://example.org/b> }" in query
        assert 'FILTER(LANG(?label) = "fr")' in query
        assert "OPTIONAL" not in query
        assert query.startswith(SPARQL_PREFIXES)

    def test_labels_query_unrestricted(self):
        """Test the final unrestricted label round."""
        query = labels_query(["http://example.org/a"], "?concept", None)
        assert "FILTER(LANG" not in query
        assert "OPTIONAL" in query

    def test_labels_query_unsupported(self):
        """Test that no label predicates means no query."""
        assert labels_query(["http://example.org/a"], "?concept", set(), "en") is None


class TestConceptPageQuery:
    """Tests for concept page queries."""

    def test_top_concept_page(self):
        """Test the paginated top-concept query."""
        caps = CapabilityDescriptor(has_top_concept_of=True, has_broader=True)
        branches = compose_branches(Task.TOP_CONCEPTS, caps, scheme=SCHEME)
        narrower = compose_branches(Task.CHILDREN, caps, parent="?concept", subject="?narrower")

        query = concept_page_query(branches, 201, 400, narrower=narrower)
        assert f"?concept skos:topConceptOf <{SCHEME}>" in query
        assert "LIMIT 201" in query
        assert "OFFSET 400" in query
        assert "ORDER BY ?concept" in query
        assert "COUNT(DISTINCT ?narrower) AS ?narrowerCount" in query
        assert "OPTIONAL { { ?narrower skos:broader ?concept . } }" in query
        assert "?concept a skos:Concept ." in query
        assert "skos:prefLabel" in query

    def test_without_labels_or_type(self):
        """Test a children page without labels or a type requirement."""
        caps = CapabilityDescriptor(has_broader=True)
        branches = compose_branches(Task.CHILDREN, caps, parent="http://example.org/p")
        query = concept_page_query(branches, 11, 0, require_type=False, with_labels=False)
        assert "a skos:Concept" not in query
        assert "skos:prefLabel" not in query
        assert "?narrower skos" not in query

    def test_deprecation_variables(self):
        """Test that deprecation rules add variables and clauses."""
        branches = compose_branches(Task.TOP_CONCEPTS, CapabilityDescriptor(has_in_scheme=True), scheme=SCHEME)
        query = concept_page_query(branches, 11, 0, deprecation=DeprecationDetector())
        assert "?deprec_owl_deprecated" in query
        assert "OPTIONAL { ?concept <http://www.w3.org/2002/07/owl#deprecated> ?deprec_owl_deprecated }" in query
        # Rule values are attached outside the paginated subquery
        assert "GROUP BY ?concept\n" in query
        inner = query[query.index("SELECT ?concept (COUNT"):query.index("OFFSET 0")]
        assert "deprec_" not in inner
        assert "?deprec_euvoc_status }" in query.split("OFFSET 0", 1)[1]

    def test_entity_details_query(self):
        """Test details for a fixed concept list."""
        narrower = compose_branches(Task.CHILDREN, CapabilityDescriptor(has_narrower=True), parent="?concept", subject="[]")
        query = entity_details_query(["http://example.org/a"], narrower)
        assert "VALUES ?concept { <http://example.org/a> }" in query
        assert "BIND(EXISTS { { ?concept skos:narrower [] . } } AS ?hasNarrower)" in query

    def test_entity_details_query_without_hierarchy(self):
        """Test that no hierarchy support binds hasNarrower to false."""
        query = entity_details_query(["http://example.org/a"], None)
        assert "BIND(false AS ?hasNarrower)" in query


class TestCollectionQueries:
    """Tests for collection queries."""

    def test_collections_query(self):
        """Test collections with members in a scheme."""
        branches = compose_branches(Task.COLLECTION_MEMBERSHIP, CapabilityDescriptor(has_in_scheme=True), scheme=SCHEME)
        query = collections_query(branches)
        assert "?collection skos:member ?concept ." in query
        assert f"?concept skos:inScheme <{SCHEME}>" in query
        assert "AS ?hasParentCollection" in query
        assert "AS ?hasChildCollections" in query

    def test_collections_query_unsupported(self):
        """Test that no membership branches means no query."""
        branches = compose_branches(Task.COLLECTION_MEMBERSHIP, CapabilityDescriptor(), scheme=SCHEME)
        assert collections_query(branches) is None

    def test_collection_members_query(self):
        """Test a members page with scheme checks."""
        narrower = compose_branches(Task.CHILDREN, CapabilityDescriptor(has_broader=True), parent="?member", subject="[]")
        query = collection_members_query("http://example.org/col", 3, 2, narrower=narrower, scheme=SCHEME)
        inner = query[query.index("SELECT DISTINCT ?member"):query.index("OFFSET 2")]
        assert "<http://example.org/col> skos:member ?member ." in inner
        assert "LIMIT 3" in inner
        assert f"BIND(EXISTS {{ ?member skos:inScheme <{SCHEME}> }} AS ?inCurrentScheme)" in query
        assert "OPTIONAL { ?member skos:inScheme ?displayScheme }" in query
        assert "BIND(EXISTS { { [] skos:broader ?member . } } AS ?hasNarrower)" in query
        assert query.rstrip().endswith("ORDER BY ?member ?displayScheme")

    def test_collection_members_query_without_schemes(self):
        """Test members without a current scheme or inScheme support."""
        query = collection_members_query("http://example.org/col", 11, 0)
        assert "?inCurrentScheme)" not in query
        assert "?displayScheme }" in query
        assert "BIND(false AS ?hasNarrower)" in query
        assert "skos:inScheme" not in collection_members_query("http://example.org/col", 11, 0, with_schemes=False)


class TestOrphanQueries:
    """Tests for orphan detection queries."""

    def test_all_entities_query(self):
        """Test the full entity list query."""
        query = all_entities_query("concept", 5001, 0)
        assert "?concept a skos:Concept ." in query
        assert "LIMIT 5001" in query
        assert "ORDER BY ?concept" in query

    def test_exclusion_query_for_collections(self):
        """Test that collection exclusions go through membership."""
        query = exclusion_query("collection", "?concept skos:inScheme ?scheme .", 11, 10)
        assert "?collection a skos:Collection ." in query
        assert "?collection skos:member ?concept . ?concept skos:inScheme ?scheme ." in query
        assert "OFFSET 10" in query

    def test_single_orphan_query(self):
        """Test the FILTER NOT EXISTS orphan query."""
        exclusion = compose_branches(Task.ORPHAN_EXCLUSION, CapabilityDescriptor(has_in_scheme=True, has_top_concept_of=True))
        query = orphan_query("concept", exclusion, 11, 0)
        assert "?concept a skos:Concept ." in query
        assert "FILTER NOT EXISTS {" in query
        assert "{ ?concept skos:inScheme ?scheme . }" in query
        assert "{ ?concept skos:topConceptOf ?scheme . }" in query
        assert "SELECT DISTINCT ?concept\n        WHERE" not in query

    def test_orphan_query_with_prefilter(self):
        """Test that direct branches become candidate filters."""
        caps = CapabilityDescriptor(has_in_scheme=True, has_top_concept_of=True, has_broader=True)
        exclusion = compose_branches(Task.ORPHAN_EXCLUSION, caps)
        prefilter = compose_branches(Task.DIRECT_MEMBERSHIP, caps)
        query = orphan_query("concept", exclusion, 11, 0, prefilter)

        assert "FILTER NOT EXISTS { ?concept skos:inScheme ?scheme . }" in query
        assert "FILTER NOT EXISTS { ?concept skos:topConceptOf ?scheme . }" in query
        # Only the hierarchy branch remains in the union
        assert "{ ?top skos:topConceptOf ?scheme . ?concept skos:broader+ ?top . }" in query

    def test_orphan_query_prefilter_only(self):
        """Test a query where every exclusion branch is a direct link."""
        caps = CapabilityDescriptor(has_in_scheme=True)
        exclusion = compose_branches(Task.ORPHAN_EXCLUSION, caps)
        prefilter = compose_branches(Task.DIRECT_MEMBERSHIP, caps)
        query = orphan_query("concept", exclusion, 11, 0, prefilter)
        assert query.count("FILTER NOT EXISTS") == 1

    def test_orphan_query_nothing_to_filter(self):
        """Test that no exclusion branches means no single query."""
        exclusion = compose_branches(Task.ORPHAN_EXCLUSION, CapabilityDescriptor())
        assert orphan_query("concept", exclusion, 11, 0) is None


class TestHelpers:
    """Tests for small query helpers."""

    def test_with_prefixes_skips_declared(self):
        """Test that queries declaring prefixes are left alone."""
        query = "PREFIX ex: <http://example.org/>\nSELECT * WHERE { ?s ?p ?o }"
        assert with_prefixes(query) == query

    def test_string_literal_escapes(self):
        assert string_literal('say "hi"') == '"say \\"hi\\""'

    def test_entity_var(self):
        assert entity_var("collection") == "?collection"
        with pytest.raises(ValueError):
            entity_var("property")
