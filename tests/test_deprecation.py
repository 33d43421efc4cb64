"""Tests for deprecation module."""
import pytest

from skos_browser.deprecation import DEFAULT_DEPRECATION_RULES, DeprecationDetector, DeprecationRule, load_rules

CURRENT = "http://publications.europa.eu/resource/authority/concept-status/CURRENT"


def lit(value):
    return {"type": "literal", "value": value}


class TestDeprecationRule:
    """Tests for DeprecationRule class."""

    def test_var_name_is_sparql_safe(self):
        """Test that rule ids become valid variable names."""
        rule = DeprecationRule(id="euvoc-status.v2", predicate="http://example.org/status")
        assert rule.var_name == "deprec_euvoc_status_v2"

    def test_conditions(self):
        """Test exists, equals and not-equals."""
        exists = DeprecationRule(id="a", predicate="http://example.org/p")
        equals = DeprecationRule(id="b", predicate="http://example.org/p", condition="equals", value="true")
        not_equals = DeprecationRule(id="c", predicate="http://example.org/p", condition="not-equals", value=CURRENT)

        assert exists.matches("anything")
        assert not exists.matches(None)
        assert equals.matches("true")
        assert not equals.matches("false")
        assert not_equals.matches("http://example.org/DEPRECATED")
        assert not not_equals.matches(CURRENT)
        assert not not_equals.matches(None)

    def test_unknown_condition(self):
        """Test that an unknown condition is rejected."""
        with pytest.raises(ValueError):
            DeprecationRule(id="x", predicate="http://example.org/p", condition="matches")


class TestDeprecationDetector:
    """Tests for DeprecationDetector class."""

    def test_default_rules(self):
        """Test the OWL and EU Vocabularies defaults."""
        detector = DeprecationDetector()
        assert detector.is_deprecated({"deprec_owl_deprecated": lit("true")})
        assert detector.is_deprecated({"deprec_euvoc_status": lit("http://example.org/DEPRECATED")})
        assert not detector.is_deprecated({"deprec_euvoc_status": lit(CURRENT)})
        assert not detector.is_deprecated({})

    def test_disabled_rules_are_ignored(self):
        """Test that disabled rules add no clauses."""
        rules = [
            DeprecationRule(id="on", predicate="http://example.org/on"),
            DeprecationRule(id="off", predicate="http://example.org/off", enabled=False),
        ]
        detector = DeprecationDetector(rules)
        assert detector.select_vars() == "?deprec_on"
        assert detector.sparql_clauses("?c") == "OPTIONAL { ?c <http://example.org/on> ?deprec_on }"
        assert not detector.is_deprecated({"deprec_off": lit("x")})

    def test_load_rules(self):
        """Test rules from config entries."""
        assert load_rules(None) == DEFAULT_DEPRECATION_RULES
        rules = load_rules([{"id": "skos-note", "predicate": "http://example.org/note", "enabled": False}])
        assert rules[0].condition == "exists"
        assert rules[0].enabled is False
        assert DeprecationDetector(rules).rules == ()
