"""Tests for sparql module."""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import requests

from skos_browser import sparql
from skos_browser.sparql import (
    QueryAborted,
    SPARQLClient,
    SPARQLError,
    get_bindings,
    map_http_error,
    parse_boolean,
    term_lang,
    term_value,
    with_prefixes,
)

ENDPOINT = "https://example.org/sparql"


def ok_response(payload):
    response = MagicMock()
    response.ok = True
    response.status_code = 200
    response.json.return_value = payload
    return response


def error_response(status, reason="Error"):
    response = MagicMock()
    response.ok = False
    response.status_code = status
    response.reason = reason
    return response


def make_client(*responses, **kwargs):
    session = MagicMock()
    session.post.side_effect = list(responses)
    return SPARQLClient(ENDPOINT, session=session, **kwargs), session


class TestHelpers:
    """Tests for result helpers."""

    def test_with_prefixes(self):
        """Test that standard prefixes are prepended."""
        query = with_prefixes("SELECT ?s WHERE { ?s a skos:Concept }")
        assert query.startswith("PREFIX skos: <http://www.w3.org/2004/02/skos/core#>")
        assert "PREFIX skosxl:" in query
        assert query.endswith("SELECT ?s WHERE { ?s a skos:Concept }")

    @pytest.mark.parametrize("status,code", [
        (400, "QUERY_ERROR"),
        (401, "AUTH_REQUIRED"),
        (403, "AUTH_FAILED"),
        (404, "NOT_FOUND"),
        (408, "TIMEOUT"),
        (502, "SERVER_ERROR"),
        (418, "UNKNOWN"),
    ])
    def test_map_http_error(self, status, code):
        """Test HTTP status to error code mapping."""
        assert map_http_error(status, "reason")[0] == code

    def test_binding_accessors(self):
        """Test term_value, term_lang and get_bindings."""
        binding = {"label": {"type": "literal", "value": "Katze", "xml:lang": "de"}}
        assert term_value(binding, "label") == "Katze"
        assert term_value(binding, "missing") is None
        assert term_lang(binding, "label") == "de"
        assert term_lang(binding, "missing") == ""
        assert get_bindings(None) == []
        assert get_bindings({"results": {"bindings": [binding]}}) == [binding]

    def test_parse_boolean(self):
        """Test engine-specific boolean spellings."""
        assert parse_boolean("true")
        assert parse_boolean("1")
        assert not parse_boolean("false")
        assert not parse_boolean("0")
        assert not parse_boolean(None)


class TestSPARQLClient:
    """Tests for SPARQLClient class."""

    def test_execute_success(self):
        """Test a successful POST query."""
        payload = {"head": {"vars": ["x"]}, "results": {"bindings": [{"x": {"type": "literal", "value": "test"}}]}}
        client, session = make_client(ok_response(payload), headers={"Authorization": "Bearer t"})

        result = asyncio.run(client.execute("SELECT ?x WHERE {}"))

        assert result == payload
        args, kwargs = session.post.call_args
        assert args[0] == ENDPOINT
        assert kwargs["data"] == {"query": "SELECT ?x WHERE {}"}
        assert kwargs["headers"]["Accept"] == "application/sparql-results+json"
        assert kwargs["headers"]["Authorization"] == "Bearer t"
        assert kwargs["timeout"] == sparql.DEFAULT_TIMEOUT

    def test_retries_server_errors_with_backoff(self):
        """Test that transient failures are retried with exponential backoff."""
        client, session = make_client(
            error_response(503),
            error_response(502),
            ok_response({"results": {"bindings": []}}),
            retries=3,
            retry_delay=0.5,
        )

        with patch("skos_browser.sparql.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            result = asyncio.run(client.execute("SELECT * WHERE {}"))

        assert get_bindings(result) == []
        assert session.post.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.5, 1.0]

    def test_query_errors_are_not_retried(self):
        """Test that a 400 fails immediately."""
        client, session = make_client(error_response(400, "Bad Request"), retries=3)

        with pytest.raises(SPARQLError) as exc_info:
            asyncio.run(client.execute("SELEC nonsense"))

        assert exc_info.value.code == "QUERY_ERROR"
        assert exc_info.value.status == 400
        assert session.post.call_count == 1

    def test_retries_exhausted(self):
        """Test that the last error is raised after all retries."""
        client, session = make_client(error_response(500), error_response(500), retries=1)

        with patch("skos_browser.sparql.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(SPARQLError, match="SERVER_ERROR"):
                asyncio.run(client.execute("SELECT * WHERE {}"))

        assert session.post.call_count == 2

    def test_per_call_retries_override(self):
        """Test that retries=0 makes a single attempt."""
        client, session = make_client(error_response(500), ok_response({}), retries=3)

        with pytest.raises(SPARQLError):
            asyncio.run(client.execute("SELECT * WHERE {}", retries=0))

        assert session.post.call_count == 1

    def test_negative_retries(self):
        """Test that a negative retry count raises instead of returning nothing."""
        client, session = make_client(ok_response({}))

        with pytest.raises(SPARQLError) as exc_info:
            asyncio.run(client.execute("SELECT * WHERE {}", retries=-1))

        assert exc_info.value.code == "UNKNOWN"
        session.post.assert_not_called()

    def test_network_errors(self):
        """Test that requests exceptions become SPARQLError codes."""
        session = MagicMock()
        session.post.side_effect = [requests.Timeout("slow"), requests.ConnectionError("refused")]
        client = SPARQLClient(ENDPOINT, session=session)

        with pytest.raises(SPARQLError) as exc_info:
            client._post("SELECT * WHERE {}")
        assert exc_info.value.code == "TIMEOUT"

        with pytest.raises(SPARQLError) as exc_info:
            client._post("SELECT * WHERE {}")
        assert exc_info.value.code == "NETWORK_ERROR"

    def test_invalid_json(self):
        """Test that an unparseable body is a PARSE_ERROR."""
        response = ok_response(None)
        response.json.side_effect = ValueError("Expecting value")
        client, _ = make_client(response)

        with pytest.raises(SPARQLError) as exc_info:
            client._post("SELECT * WHERE {}")
        assert exc_info.value.code == "PARSE_ERROR"

    def test_abort_before_sending(self):
        """Test that a set signal prevents the request."""
        client, session = make_client(ok_response({}))
        signal = MagicMock()
        signal.is_set.return_value = True

        with pytest.raises(QueryAborted):
            asyncio.run(client.execute("SELECT * WHERE {}", signal=signal))
        session.post.assert_not_called()

    def test_abort_discards_late_result(self):
        """Test that a result arriving after abort is discarded."""
        client, session = make_client(ok_response({"results": {"bindings": []}}))
        signal = MagicMock()
        signal.is_set.side_effect = [False, True]

        with pytest.raises(QueryAborted) as exc_info:
            asyncio.run(client.execute("SELECT * WHERE {}", signal=signal))
        assert exc_info.value.code == "ABORTED"
        assert session.post.call_count == 1

    def test_sync_query(self):
        """Test the synchronous helper returning bindings."""
        client, _ = make_client(ok_response({"results": {"bindings": [{"x": {"value": "1"}}]}}))
        assert client.query("SELECT ?x WHERE {}") == [{"x": {"value": "1"}}]


class TestOxigraphStore:
    """Tests for OxigraphStore class."""

    DATA = """
@prefix skos: <http://www.w3.org/2004/02/skos/core#> .
@prefix ex: <http://example.org/> .
ex:c1 a skos:Concept ; skos:prefLabel "Cat"@en ; skos:notation "42"^^<http://example.org/code> .
ex:c2 a skos:Concept ; skos:broader ex:c1 .
"""

    @pytest.fixture
    def store(self):
        pytest.importorskip("pyoxigraph")
        store = sparql.OxigraphStore()
        store.load_data(self.DATA, "ttl")
        return store

    def test_select_results_layout(self, store):
        """Test conversion to the SPARQL JSON layout."""
        results = store.run(with_prefixes(
            "SELECT ?c ?label ?notation WHERE { ?c skos:prefLabel ?label ; skos:notation ?notation }"
        ))
        assert results["head"]["vars"] == ["c", "label", "notation"]
        row = results["results"]["bindings"][0]
        assert row["c"] == {"type": "uri", "value": "http://example.org/c1"}
        assert row["label"] == {"type": "literal", "value": "Cat", "xml:lang": "en"}
        assert row["notation"]["datatype"] == "http://example.org/code"

    def test_unbound_variables_omitted(self, store):
        """Test that OPTIONAL misses leave the variable out of the row."""
        rows = store.query(with_prefixes(
            "SELECT ?c ?broader WHERE { ?c a skos:Concept OPTIONAL { ?c skos:broader ?broader } } ORDER BY ?c"
        ))
        assert "broader" not in rows[0]
        assert rows[1]["broader"]["value"] == "http://example.org/c1"

    def test_ask(self, store):
        """Test boolean results."""
        assert store.run(with_prefixes("ASK { ?c skos:broader ?b }"))["boolean"] is True

    def test_execute_matches_client_contract(self, store):
        """Test the async execute used by the browsing layer."""
        results = asyncio.run(store.execute(with_prefixes("SELECT ?c WHERE { ?c a skos:Concept }"), retries=2))
        assert len(get_bindings(results)) == 2

    def test_syntax_error(self, store):
        """Test that invalid queries raise QUERY_ERROR."""
        with pytest.raises(SPARQLError) as exc_info:
            store.run("SELEC ?x WHERE")
        assert exc_info.value.code == "QUERY_ERROR"

    def test_load_file(self, tmp_path):
        """Test loading a Turtle file once."""
        pytest.importorskip("pyoxigraph")
        path = tmp_path / "vocab.ttl"
        path.write_text(self.DATA)
        store = sparql.OxigraphStore()

        assert store.load(path) == 5
        assert store.load(path) == 0
        assert store.is_loaded
        assert len(store) == 5

    def test_load_missing_file(self, tmp_path):
        """Test that a missing file raises FileNotFoundError."""
        pytest.importorskip("pyoxigraph")
        with pytest.raises(FileNotFoundError):
            sparql.OxigraphStore().load(tmp_path / "missing.ttl")
