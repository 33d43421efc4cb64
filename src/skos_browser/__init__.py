"""
skos-browser - Browse SKOS vocabularies on SPARQL endpoints of unknown capability

Features:
- Compose the smallest correct query for what an endpoint actually supports
- Paginate large result sets without COUNT queries
- Resolve display labels progressively, one language round at a time
- Find orphan concepts and collections with a fast or a portable strategy
- Query remote endpoints, or local RDF files through Oxigraph
"""

from ._version import __version__
from .browser import BrowserSettings, SchemeBrowser
from .capabilities import CapabilityDescriptor
from .composer import Branches, QueryBranch, Task, compose_branches
from .entities import EntityRef
from .guard import EpochToken, RequestEpochs
from .labels import LabelValue, ProgressiveLabelResolver, select_label
from .orphans import OrphanCalculator, OrphanDetectionError, OrphanProgress
from .pagination import Page, PageTracker, fetch_all, fetch_page
from .sparql import OxigraphStore, QueryAborted, SPARQLClient, SPARQLError, with_prefixes

__all__ = [
    "__version__",
    "BrowserSettings",
    "SchemeBrowser",
    "CapabilityDescriptor",
    "Branches",
    "QueryBranch",
    "Task",
    "compose_branches",
    "EntityRef",
    "EpochToken",
    "RequestEpochs",
    "LabelValue",
    "ProgressiveLabelResolver",
    "select_label",
    "OrphanCalculator",
    "OrphanDetectionError",
    "OrphanProgress",
    "Page",
    "PageTracker",
    "fetch_all",
    "fetch_page",
    "OxigraphStore",
    "QueryAborted",
    "SPARQLClient",
    "SPARQLError",
    "with_prefixes",
]
