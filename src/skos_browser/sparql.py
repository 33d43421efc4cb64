"""
SPARQL query execution.

Two interchangeable backends implement the same coroutine
``execute(query, retries=None, signal=None)`` returning W3C SPARQL JSON
results (``{"head": ..., "results": {"bindings": [...]}}``):

- SPARQLClient: a remote endpoint over HTTP, with retry and backoff.
- OxigraphStore: a local in-process store (pyoxigraph), loaded from RDF files.

Everything above this module only sees ``execute`` and ``with_prefixes``.

Example:
    >>> client = SPARQLClient("https://vocabularies.example.org/sparql")
    >>> results = asyncio.run(client.execute(with_prefixes("SELECT ?s WHERE { ?s a skos:Concept } LIMIT 1")))
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import requests

logger = logging.getLogger(__name__)

SPARQL_PREFIXES = """
PREFIX skos: <http://www.w3.org/2004/02/skos/core#>
PREFIX skosxl: <http://www.w3.org/2008/05/skos-xl#>
PREFIX dct: <http://purl.org/dc/terms/>
PREFIX dc: <http://purl.org/dc/elements/1.1/>
PREFIX rdfs: <http://www.w3.org/2000/01/rdf-schema#>
PREFIX rdf: <http://www.w3.org/1999/02/22-rdf-syntax-ns#>
PREFIX owl: <http://www.w3.org/2002/07/owl#>
""".strip()

DEFAULT_TIMEOUT = 60.0  # SPARQL endpoints can be slow
DEFAULT_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0

# Errors that will not go away by asking again
NON_RETRYABLE_CODES = frozenset({"QUERY_ERROR", "AUTH_REQUIRED", "AUTH_FAILED", "NOT_FOUND", "ABORTED"})


class SPARQLError(Exception):
    """A query failed at the transport or endpoint level."""

    def __init__(self, code: str, message: str, status: int | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class QueryAborted(SPARQLError):
    """The caller's abort signal was set before the result could be used."""

    def __init__(self, message: str = "Query aborted"):
        super().__init__("ABORTED", message)


def with_prefixes(query: str) -> str:
    """Prepend the standard prefixes unless the query already declares some."""
    if query.strip().upper().startswith("PREFIX"):
        return query
    return SPARQL_PREFIXES + "\n\n" + query


def map_http_error(status: int, reason: str = "") -> tuple[str, str]:
    """Map an HTTP status code to an error code and message."""
    if status == 400:
        return "QUERY_ERROR", "Invalid SPARQL query"
    if status == 401:
        return "AUTH_REQUIRED", "Authentication required"
    if status == 403:
        return "AUTH_FAILED", "Access denied. Check credentials."
    if status == 404:
        return "NOT_FOUND", "Endpoint not found"
    if status == 408:
        return "TIMEOUT", "Request timed out"
    if status in (500, 502, 503, 504):
        return "SERVER_ERROR", f"Server error: {reason}"
    return "UNKNOWN", f"HTTP {status}: {reason}"


def get_bindings(results: dict | None) -> list[dict]:
    """Return the bindings list of a SPARQL JSON result."""
    if not results:
        return []
    return results.get("results", {}).get("bindings", [])


def term_value(binding: dict, var: str) -> str | None:
    """Return the value bound to a variable, or None."""
    term = binding.get(var)
    if not term:
        return None
    return term.get("value")


def term_lang(binding: dict, var: str) -> str:
    """Return the language tag of a literal binding ('' when untagged)."""
    term = binding.get(var)
    if not term:
        return ""
    return term.get("xml:lang", "") or ""


def parse_boolean(value: str | None) -> bool:
    """Parse an EXISTS/boolean binding; engines answer "true"/"false" or "1"/"0"."""
    if not value:
        return False
    return value in ("true", "1")


def _is_aborted(signal: Any) -> bool:
    return signal is not None and signal.is_set()


class SPARQLClient:
    """Client for a remote SPARQL endpoint."""

    def __init__(
        self,
        endpoint: str,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        headers: dict[str, str] | None = None,
        session: requests.Session | None = None,
    ):
        """Initialize SPARQL client.

        Args:
            endpoint: SPARQL endpoint URL.
            timeout: Request timeout in seconds.
            retries: Default number of retries after the first attempt.
            retry_delay: Base delay for exponential backoff, in seconds.
            headers: Extra HTTP headers (e.g. an Authorization header).
            session: Optional requests session to reuse connections.
        """
        self.endpoint = endpoint
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.headers = headers or {}
        self.session = session or requests.Session()

    def _post(self, query: str) -> dict:
        """Send one query and return the parsed JSON result.

        Raises:
            SPARQLError: On HTTP, network or decoding failure.
        """
        headers = {
            "Accept": "application/sparql-results+json",
            **self.headers,
        }
        try:
            response = self.session.post(
                self.endpoint, data={"query": query}, headers=headers, timeout=self.timeout
            )
        except requests.Timeout as e:
            raise SPARQLError("TIMEOUT", f"Request timed out: {e}") from e
        except requests.RequestException as e:
            raise SPARQLError("NETWORK_ERROR", f"Request failed: {e}") from e

        if not response.ok:
            code, message = map_http_error(response.status_code, response.reason or "")
            logger.warning("HTTP %s from %s: %s", response.status_code, self.endpoint, message)
            raise SPARQLError(code, message, status=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise SPARQLError("PARSE_ERROR", f"Invalid JSON response: {e}") from e

    async def execute(self, query: str, retries: int | None = None, signal: Any = None) -> dict:
        """Execute a query, retrying transient failures with exponential backoff.

        Args:
            query: Complete SPARQL query text.
            retries: Retries after the first attempt (default: client setting).
            signal: Optional abort signal with ``is_set()`` (e.g. asyncio.Event).

        Returns:
            SPARQL JSON results.

        Raises:
            QueryAborted: If the signal was set before or while querying.
            SPARQLError: When all attempts failed.
        """
        retries = self.retries if retries is None else retries
        preview = " ".join(query.split())[:200]
        logger.debug("Executing query on %s: %s", self.endpoint, preview)

        last_error: SPARQLError | None = None
        for attempt in range(retries + 1):
            if attempt > 0:
                logger.debug("Retry attempt %d/%d", attempt, retries)
                await asyncio.sleep(self.retry_delay * 2 ** (attempt - 1))
            if _is_aborted(signal):
                raise QueryAborted()
            try:
                result = await asyncio.to_thread(self._post, query)
            except SPARQLError as e:
                last_error = e
                if e.code in NON_RETRYABLE_CODES:
                    break
                logger.debug("Attempt %d failed: %s", attempt + 1, e)
                continue
            # The response may arrive after the caller gave up on it
            if _is_aborted(signal):
                raise QueryAborted("Query aborted; result discarded")
            return result

        if last_error is None:
            # Only reachable with a negative retry count
            raise SPARQLError("UNKNOWN", f"No attempt made (retries={retries})")
        raise last_error

    def query(self, query: str) -> list[dict]:
        """Execute a query synchronously (single attempt) and return its bindings."""
        return get_bindings(self._post(query))


class OxigraphStore:
    """Local SKOS store using Oxigraph (pyoxigraph).

    Loads RDF data from files or strings and answers queries with the same
    result layout as a remote endpoint, so it can stand in for one.

    Example:
        >>> store = OxigraphStore()
        >>> store.load("/path/to/thesaurus.ttl")
        >>> results = asyncio.run(store.execute(with_prefixes("SELECT ?s WHERE { ?s a skos:Concept }")))
    """

    def __init__(self, persistent_path: Path | None = None):
        """Initialize Oxigraph store.

        Args:
            persistent_path: If provided, use persistent storage at this path.
                            Otherwise, use in-memory storage.
        """
        try:
            import pyoxigraph
        except ImportError as e:
            raise ImportError(
                "pyoxigraph required for local SKOS store. "
                "Install with: pip install skos-browser[oxigraph]"
            ) from e

        self._pyoxigraph = pyoxigraph
        if persistent_path:
            persistent_path.parent.mkdir(parents=True, exist_ok=True)
            self._store = pyoxigraph.Store(str(persistent_path))
        else:
            self._store = pyoxigraph.Store()

        self._loaded_files: set[str] = set()
        self.endpoint = str(persistent_path) if persistent_path else "oxigraph:memory"

    def _rdf_format(self, name: str | None, suffix: str = ""):
        formats = {
            "nt": self._pyoxigraph.RdfFormat.N_TRIPLES,
            "ntriples": self._pyoxigraph.RdfFormat.N_TRIPLES,
            "ttl": self._pyoxigraph.RdfFormat.TURTLE,
            "turtle": self._pyoxigraph.RdfFormat.TURTLE,
            "rdf": self._pyoxigraph.RdfFormat.RDF_XML,
            "xml": self._pyoxigraph.RdfFormat.RDF_XML,
            "nq": self._pyoxigraph.RdfFormat.N_QUADS,
        }
        key = name or suffix.lstrip(".").lower()
        return formats.get(key, self._pyoxigraph.RdfFormat.N_TRIPLES)

    def load(self, path: Path | str, format: str | None = None) -> int:
        """Load RDF data from a file.

        Args:
            path: Path to RDF file (N-Triples, Turtle, RDF/XML, N-Quads).
            format: "nt", "ttl", "rdf" or "nq". Auto-detected from extension if not provided.

        Returns:
            Number of triples loaded.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"RDF file not found: {path}")

        path_str = str(path.resolve())
        if path_str in self._loaded_files:
            logger.debug("File already loaded: %s", path)
            return 0

        rdf_format = self._rdf_format(format, path.suffix)
        logger.info("Loading RDF data from %s (format: %s)...", path, rdf_format)
        initial_count = len(self._store)

        with open(path, "rb") as f:
            self._store.load(f, rdf_format)

        loaded = len(self._store) - initial_count
        self._loaded_files.add(path_str)
        logger.info("Loaded %d triples from %s (total: %d)", loaded, path, len(self._store))
        return loaded

    def load_data(self, data: str, format: str = "ttl") -> int:
        """Load RDF data from a string."""
        initial_count = len(self._store)
        self._store.load(data, self._rdf_format(format))
        return len(self._store) - initial_count

    def _term(self, value: Any) -> dict[str, str]:
        ox = self._pyoxigraph
        if isinstance(value, ox.NamedNode):
            return {"type": "uri", "value": value.value}
        if isinstance(value, ox.BlankNode):
            return {"type": "bnode", "value": value.value}
        if isinstance(value, ox.Literal):
            term = {"type": "literal", "value": value.value}
            if value.language:
                term["xml:lang"] = value.language
            elif value.datatype is not None:
                term["datatype"] = value.datatype.value
            return term
        return {"type": "literal", "value": str(value)}

    def run(self, sparql: str) -> dict:
        """Execute a query and convert the result to SPARQL JSON layout.

        Raises:
            SPARQLError: If Oxigraph rejects or fails the query.
        """
        try:
            query_results = self._store.query(sparql)
        except SyntaxError as e:
            raise SPARQLError("QUERY_ERROR", f"Invalid SPARQL query: {e}") from e
        except (OSError, ValueError, RuntimeError) as e:
            raise SPARQLError("SERVER_ERROR", f"Oxigraph query failed: {e}") from e

        if not hasattr(query_results, "variables"):
            return {"head": {}, "boolean": bool(query_results)}

        names = [var.value for var in query_results.variables]
        rows = []
        for solution in query_results:
            row = {}
            for name in names:
                value = solution[name]
                if value is not None:
                    row[name] = self._term(value)
            rows.append(row)
        return {"head": {"vars": names}, "results": {"bindings": rows}}

    async def execute(self, query: str, retries: int | None = None, signal: Any = None) -> dict:
        """Execute a query against the local store (same contract as SPARQLClient)."""
        if _is_aborted(signal):
            raise QueryAborted()
        return self.run(query)

    def query(self, sparql: str) -> list[dict]:
        """Execute a SELECT query and return its bindings."""
        return get_bindings(self.run(sparql))

    def __len__(self) -> int:
        """Return number of triples in store."""
        return len(self._store)

    @property
    def is_loaded(self) -> bool:
        """Check if any data has been loaded."""
        return len(self._store) > 0
