#!/usr/bin/env python3
# PYTHON_ARGCOMPLETE_OK
"""
Command-line interface for skos-browser
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import argcomplete

from ._version import __version__
from .browser import MEMBERS_SCOPE, SchemeBrowser
from .capabilities import COLLECTION, CONCEPT, RESOURCE_KINDS, CapabilityDescriptor
from .composer import Task, compose_branches
from .config import Config
from .entities import EntityRef
from .orphans import STRATEGIES, OrphanDetectionError, OrphanProgress
from .queries import collections_query, concept_page_query, orphan_query
from .sparql import OxigraphStore, SPARQLClient, SPARQLError

logger = logging.getLogger(__name__)


def config_command(config: Config, show: bool = False, show_path: bool = False) -> int:
    """Show configuration information."""
    if show_path:
        if config.path:
            print(config.path)
        else:
            print("No configuration file found")
        return 0

    if config.path:
        print(f"# Configuration loaded from: {config.path}")
    else:
        print("# No configuration file found, showing defaults")
    print()
    print(json.dumps(config.data, indent=2, default=str))
    return 0


def _load_capabilities(args, config: Config) -> CapabilityDescriptor:
    path = getattr(args, 'capabilities', None) or config.capabilities_file
    if path:
        return CapabilityDescriptor.load(path)
    if _data_files(args, config):
        # Local files have no analysis; assume every relationship
        return CapabilityDescriptor.full()
    print("Warning: no capabilities file given, only capability-free queries will run", file=sys.stderr)
    return CapabilityDescriptor()


def _data_files(args, config: Config) -> list[Path]:
    return list(getattr(args, 'data', None) or []) or config.data_files


def _make_client(args, config: Config):
    """Build the query backend: local RDF files, or a SPARQL endpoint."""
    data_files = _data_files(args, config)
    if data_files:
        store = OxigraphStore()
        for path in data_files:
            store.load(path)
        return store

    endpoint = getattr(args, 'endpoint', None) or config.endpoint_url
    if not endpoint:
        return None
    return SPARQLClient(
        endpoint,
        timeout=config.timeout,
        retries=config.retries,
        retry_delay=config.retry_delay,
        headers=config.headers,
    )


def _make_browser(args, config: Config) -> SchemeBrowser | None:
    client = _make_client(args, config)
    if client is None:
        print("Error: SPARQL endpoint required (use --endpoint, --data, or set endpoint.url in config)", file=sys.stderr)
        return None
    settings = config.browser_settings()
    if getattr(args, 'lang', None):
        settings.preferred_language = args.lang
    return SchemeBrowser(client, _load_capabilities(args, config), settings)


def _print_entities(entities: list[EntityRef], output_json: bool = False, has_more: bool = False) -> None:
    if output_json:
        print(json.dumps({"items": [e.to_dict() for e in entities], "has_more": has_more}, indent=2, ensure_ascii=False))
        return
    for entity in entities:
        marker = "+" if entity.has_narrower else " "
        notation = f"[{entity.notation}] " if entity.notation else ""
        lang = f"@{entity.language}" if entity.language else ""
        deprecated = " (deprecated)" if entity.deprecated else ""
        kind = " (collection)" if entity.kind == COLLECTION else ""
        # Members from outside the browsed scheme
        if entity.in_current_scheme is False:
            other = f" (in {entity.display_scheme})" if entity.display_scheme else " (no scheme)"
        else:
            other = ""
        print(f"{marker} {notation}{entity.display_label}{lang}{kind}{other}{deprecated}  <{entity.uri}>")
    if has_more:
        print("... more available (use --offset)")


def top_command(browser: SchemeBrowser, scheme: str, offset: int = 0, output_json: bool = False) -> int:
    """List top concepts of a scheme."""
    entities = asyncio.run(browser.load_top_concepts(scheme, offset))
    state = browser.pages.state(scheme)
    if not output_json:
        mode = browser.top_concept_modes.get(scheme)
        print(f"Top concepts of {scheme}" + (f" ({mode})" if mode else ""))
    _print_entities(entities, output_json, state.has_more)
    return 0


def children_command(browser: SchemeBrowser, parent: str, offset: int = 0, output_json: bool = False) -> int:
    """List children of a concept."""
    entities = asyncio.run(browser.load_children(parent, offset))
    _print_entities(entities, output_json, browser.pages.state(parent).has_more)
    return 0


def collections_command(browser: SchemeBrowser, scheme: str, parent: str | None = None, output_json: bool = False) -> int:
    """List collections of a scheme, or members of a parent collection."""
    if parent:
        entities = asyncio.run(browser.load_child_collections(parent))
    else:
        entities = asyncio.run(browser.load_collections(scheme))
    _print_entities(entities, output_json)
    return 0


def members_command(
    browser: SchemeBrowser, collection: str, scheme: str | None = None, offset: int = 0, output_json: bool = False
) -> int:
    """List members of a collection."""
    entities = asyncio.run(browser.load_collection_members(collection, scheme, offset))
    _print_entities(entities, output_json, browser.pages.state(f"{MEMBERS_SCOPE}:{collection}").has_more)
    return 0


def _print_progress(progress: OrphanProgress) -> None:
    step = f" [{progress.current_step}]" if progress.current_step else ""
    print(
        f"  {progress.kind} {progress.strategy}: {progress.phase}{step} "
        f"fetched={progress.fetched_count} remaining={progress.remaining_candidates}",
        file=sys.stderr,
    )


def orphans_command(
    browser: SchemeBrowser,
    kind: str | None = None,
    strategy: str = "auto",
    offset: int = 0,
    output_json: bool = False,
    show_progress: bool = False,
) -> int:
    """Find orphan concepts and collections."""
    on_progress = _print_progress if show_progress else None
    browser.settings.orphan_strategy = strategy
    try:
        if kind is None:
            entities = asyncio.run(browser.load_orphans(offset, on_progress))
            has_more = browser.orphans_has_more
        else:
            uris = asyncio.run(browser.orphans.find_orphans(kind, strategy, on_progress))
            if output_json:
                print(json.dumps({"kind": kind, "orphans": uris}, indent=2))
            else:
                print("\n".join(uris))
                print(f"# {len(uris)} orphan {kind} entities", file=sys.stderr)
            return 0
    except OrphanDetectionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    _print_entities(entities, output_json, has_more)
    return 0


def labels_command(browser: SchemeBrowser, uris: list[str], kind: str = CONCEPT, output_json: bool = False) -> int:
    """Resolve display labels for URIs."""
    entities = [EntityRef(uri, kind) for uri in uris]
    asyncio.run(browser.resolve_labels(entities, kind))
    if output_json:
        result = {
            e.uri: ({"value": e.label.value, "lang": e.label.lang, "type": e.label.type} if e.label else None)
            for e in entities
        }
        print(json.dumps(result, indent=2, ensure_ascii=False))
    else:
        for entity in entities:
            lang = f"@{entity.language}" if entity.language else ""
            print(f"{entity.uri}\t{entity.display_label}{lang}")
    return 0


def compose_command(
    capabilities: CapabilityDescriptor,
    task: str,
    scheme: str | None = None,
    parent: str | None = None,
    kind: str = CONCEPT,
    show_query: bool = False,
    page_size: int = 200,
) -> int:
    """Print the branches (or full query) composed for a task, without executing."""
    try:
        branches = compose_branches(task, capabilities, scheme=scheme, parent=parent)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if branches.unsupported:
        print(f"Task {task} is unsupported with these capabilities")
        return 1

    if not show_query:
        for branch in branches:
            print(f"{branch.name}: {branch.block}")
        return 0

    task = Task(task)
    if task in (Task.TOP_CONCEPTS, Task.CHILDREN):
        query = concept_page_query(branches, page_size + 1, 0, require_type=task == Task.TOP_CONCEPTS)
    elif task == Task.COLLECTION_MEMBERSHIP:
        query = collections_query(branches)
    else:
        if task == Task.ORPHAN_COLLECTION_MEMBERSHIP:
            kind = COLLECTION
        query = orphan_query(kind, branches, page_size + 1, 0)
    print(query)
    return 0


def main() -> int:
    """Main entry point for the CLI."""
    parser_cli = argparse.ArgumentParser(
        description="skos-browser - Browse SKOS vocabularies on any SPARQL endpoint",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Top concepts of a scheme, using a saved endpoint analysis
  skos-browser --endpoint https://example.org/sparql --capabilities analysis.json top http://example.org/scheme

  # Browse a local Turtle file
  skos-browser --data thesaurus.ttl children http://example.org/concept/1

  # Orphan concepts, slow strategy, with progress
  skos-browser --data thesaurus.ttl orphans --kind concept --strategy slow --progress

  # Show the query the composer builds
  skos-browser --capabilities analysis.json compose orphan-exclusion --query
        """
    )
    parser_cli.add_argument(
        '--version', '-V',
        action='version',
        version=f'%(prog)s {__version__}'
    )
    parser_cli.add_argument('--config', type=Path, help='Config file (default: standard locations)')
    parser_cli.add_argument('--endpoint', '-e', type=str, help='SPARQL endpoint URL (default: from config)')
    parser_cli.add_argument('--data', '-d', type=Path, action='append',
                            help='Local RDF file to query instead of an endpoint (repeatable)')
    parser_cli.add_argument('--capabilities', '-c', type=Path, help='Endpoint analysis file (JSON or YAML)')
    parser_cli.add_argument('--lang', '-l', type=str, help='Preferred label language (default: from config)')
    parser_cli.add_argument('--json', action='store_true', help='Output JSON')
    parser_cli.add_argument('--verbose', '-v', action='count', default=0, help='More logging (-vv for debug)')

    subparsers = parser_cli.add_subparsers(dest='command', help='Command to run')

    config_parser = subparsers.add_parser('config', help='Show configuration')
    config_parser.add_argument('--show', action='store_true', help='Show merged configuration')
    config_parser.add_argument('--path', action='store_true', help='Show config file path')

    top_parser = subparsers.add_parser('top', help='List top concepts of a scheme')
    top_parser.add_argument('scheme', type=str, help='Scheme URI')
    top_parser.add_argument('--offset', type=int, default=0, help='Page offset (default: 0)')

    children_parser = subparsers.add_parser('children', help='List children of a concept')
    children_parser.add_argument('uri', type=str, help='Parent concept URI')
    children_parser.add_argument('--offset', type=int, default=0, help='Page offset (default: 0)')

    collections_parser = subparsers.add_parser('collections', help='List collections of a scheme')
    collections_parser.add_argument('scheme', type=str, help='Scheme URI')
    collections_parser.add_argument('--parent', type=str, help='List member collections of this collection instead')

    members_parser = subparsers.add_parser('members', help='List members of a collection')
    members_parser.add_argument('collection', type=str, help='Collection URI')
    members_parser.add_argument('--scheme', type=str, help='Mark members outside this scheme')
    members_parser.add_argument('--offset', type=int, default=0, help='Page offset (default: 0)')

    orphans_parser = subparsers.add_parser('orphans', help='Find entities not reachable from any scheme')
    orphans_parser.add_argument('--kind', type=str, choices=[CONCEPT, COLLECTION],
                                help='Only this kind, as plain URIs (default: collections then concepts)')
    orphans_parser.add_argument('--strategy', type=str, choices=STRATEGIES, default=None,
                                help='Detection strategy (default: from config or auto)')
    orphans_parser.add_argument('--prefilter', action='store_true', help='Pre-filter direct links in the fast strategy')
    orphans_parser.add_argument('--offset', type=int, default=0, help='Page offset (default: 0)')
    orphans_parser.add_argument('--progress', action='store_true', help='Print progress to stderr')

    labels_parser = subparsers.add_parser('labels', help='Resolve display labels for URIs')
    labels_parser.add_argument('uris', nargs='+', help='Resource URIs')
    labels_parser.add_argument('--kind', type=str, choices=RESOURCE_KINDS, default=CONCEPT,
                               help='Resource kind (default: concept)')

    compose_parser = subparsers.add_parser('compose', help='Show the query branches for a task')
    compose_parser.add_argument('task', type=str, choices=[t.value for t in Task], help='Task')
    compose_parser.add_argument('--scheme', type=str, help='Scheme URI (top-concepts, collection-membership)')
    compose_parser.add_argument('--parent', type=str, help='Parent URI (children)')
    compose_parser.add_argument('--query', action='store_true', help='Print the complete query')

    argcomplete.autocomplete(parser_cli)

    args = parser_cli.parse_args()
    config = Config(args.config)

    if args.verbose:
        level = logging.DEBUG if args.verbose > 1 else logging.INFO
    else:
        level = getattr(logging, config.log_level, logging.WARNING)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    if args.command == 'config':
        return config_command(config, show=args.show, show_path=args.path)
    if args.command == 'compose':
        return compose_command(
            _load_capabilities(args, config),
            args.task,
            scheme=args.scheme,
            parent=args.parent,
            show_query=args.query,
            page_size=config.page_size,
        )
    if args.command is None:
        parser_cli.print_help()
        return 1

    browser = _make_browser(args, config)
    if browser is None:
        return 1

    try:
        if args.command == 'top':
            return top_command(browser, args.scheme, args.offset, args.json)
        elif args.command == 'children':
            return children_command(browser, args.uri, args.offset, args.json)
        elif args.command == 'collections':
            return collections_command(browser, args.scheme, args.parent, args.json)
        elif args.command == 'members':
            return members_command(browser, args.collection, args.scheme, args.offset, args.json)
        elif args.command == 'orphans':
            if args.prefilter:
                browser.orphans.prefilter = True
            strategy = args.strategy or config.orphan_strategy
            return orphans_command(browser, args.kind, strategy, args.offset, args.json, args.progress)
        elif args.command == 'labels':
            return labels_command(browser, args.uris, args.kind, args.json)
    except SPARQLError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    parser_cli.print_help()
    return 1


if __name__ == '__main__':
    sys.exit(main())
