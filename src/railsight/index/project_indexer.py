"""ProjectIndexer: incremental indexing of a Rails workspace and its query surface.

Orchestrates SourceScanner, SemanticGraph and the analysers built on top of
it.  Entry points:

  initialize()          load the hash cache, parse schema.rb and routes.rb
  index_workspace()     discover files and (re)index them in batches
  handle_file_event()   apply a single created/changed/deleted notification

A workspace run moves through

  IDLE -> DISCOVERING -> BATCH_INDEXING -> SAVING -> IDLE

and ends in CANCELLED or TIMED_OUT instead when the cancellation token
fires or the wall-clock timeout elapses.  Either way the graph is left
consistent (every file is ingested whole or not at all) but possibly
incomplete.  Only a successful run writes the hash cache, and dispose()
skips the write while the latest run is incomplete.

Files whose content hash matches the hash ingested earlier in the *same
session* are skipped.  Hashes loaded from the cache describe the previous
session only: after a restart the graph is empty, so every file is parsed
again and the cached hashes are used to report how many files changed.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from railsight.core.config import RailsightConfig
from railsight.index.conventions import ConventionResolver, RailsComponents, RouteInfo
from railsight.index.graph import CallHierarchy, GraphStats, SemanticGraph
from railsight.index.hash_cache import HashCache
from railsight.index.inflection import singularize, snake_to_camel
from railsight.index.models import (
    Association,
    CallTarget,
    ClassInfo,
    DependencyType,
    FileDependency,
    FileMetadata,
    InferredType,
    Location,
    MethodCallEdge,
    MethodInfo,
    ModuleInfo,
    Reference,
    ReferenceContext,
    ReferenceType,
    method_id,
)
from railsight.index.references import (
    DeadCodeAnalysis,
    DeletionCheck,
    ReferenceInfo,
    ReferenceTracker,
    render_dead_code_report,
)
from railsight.index.schema_parser import SchemaParser
from railsight.index.search import IndexedSymbol, SearchContext, SearchResult, SmartSearchEngine, SymbolKind
from railsight.index.source_parser import (
    AssociationNode,
    CallbackNode,
    ClassNode,
    ConstantNode,
    ContainerNode,
    MethodCall,
    MethodNode,
    Node,
    ReferenceNode,
    RequireNode,
    SourceScanner,
)
from railsight.index.type_inference import InferenceContext, TypeInferenceEngine
from railsight.index.workspace import FileEvent, FileEventType, LocalWorkspace

logger = logging.getLogger(__name__)

# Receiver-less calls inside a class resolve to the class itself.
_SELF_CALL_CONFIDENCE = 0.7
_CONSTANT_CALL_CONFIDENCE = 0.9
_TYPED_CALL_CONFIDENCE = 0.6
_UNKNOWN_CALL_CONFIDENCE = 0.3

# Owner used for methods defined outside any class (Ruby puts them on Object).
_TOP_LEVEL_OWNER = "Object"

_MODEL_SUPERCLASSES = frozenset({"ApplicationRecord", "ActiveRecord::Base"})
_CONTROLLER_SUPERCLASSES = frozenset({"ApplicationController", "ActionController::Base", "ActionController::API"})

ProgressCallback = Callable[[int, int], None]


class IndexState(str, Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    BATCH_INDEXING = "batch_indexing"
    SAVING = "saving"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


class CancellationToken:
    """Cooperative cancellation flag, checked between batches and files."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled


@dataclass(frozen=True)
class IndexRunResult:
    """Summary returned after a workspace run."""

    state: IndexState
    total_files: int = 0
    indexed: int = 0
    skipped: int = 0
    failed: int = 0
    changed_since_last_session: int = 0
    duration_seconds: float = 0.0
    message: str = ""
    can_retry: bool = False


@dataclass(frozen=True)
class TypeHierarchy:
    class_name: str
    ancestors: list[str] = field(default_factory=list)
    descendants: list[str] = field(default_factory=list)
    mixins: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class IndexerStats:
    state: IndexState
    graph: GraphStats
    indexed_files: int
    symbols: int
    routes: int
    tables: int


@dataclass
class _RunCounters:
    total: int = 0
    indexed: int = 0
    skipped: int = 0
    failed: int = 0
    changed: int = 0


class ProjectIndexer:
    """Build and query the semantic index of one Rails workspace.

    Parameters
    ----------
    workspace:
        File-content provider for the project.
    config:
        Indexer and search configuration; defaults when omitted.
    graph:
        Graph to populate.  A fresh one is created when omitted.
    """

    def __init__(
        self,
        workspace: LocalWorkspace,
        config: RailsightConfig | None = None,
        graph: SemanticGraph | None = None,
    ) -> None:
        self._workspace = workspace
        self._config = config or RailsightConfig()
        cfg = self._config.indexer

        self.graph = graph or SemanticGraph()
        self._scanner = SourceScanner()
        self._schema = SchemaParser(workspace.resolve(cfg.schema_path))
        self._conventions = ConventionResolver(workspace.root)
        self._types = TypeInferenceEngine(self.graph, self._schema)
        self._tracker = ReferenceTracker(self.graph)
        self._search = SmartSearchEngine(self.graph, self._config.search)
        self._cache = HashCache(workspace.root / cfg.cache_dir / cfg.cache_file)

        self._state = IndexState.IDLE
        self._session_hashes: dict[str, str] = {}
        self._previous_hashes: dict[str, str] = {}
        self._metadata: dict[str, FileMetadata] = {}
        # Set while a workspace run is cancelled, timed out or failed.
        self._run_incomplete = False

    @property
    def state(self) -> IndexState:
        return self._state

    @property
    def schema(self) -> SchemaParser:
        return self._schema

    @property
    def conventions(self) -> ConventionResolver:
        return self._conventions

    @property
    def search_engine(self) -> SmartSearchEngine:
        return self._search

    def get_file_metadata(self, uri: str) -> FileMetadata | None:
        return self._metadata.get(uri)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Load the previous session's hashes, the schema and the routes."""
        self._previous_hashes = self._cache.load()
        self._schema.load()
        self._conventions.load_routes(self._workspace.resolve(self._config.indexer.routes_path))

    def save_cache(self) -> bool:
        return self._cache.save(self._session_hashes)

    def dispose(self) -> None:
        """Persist hashes for this session and drop in-memory state.

        Nothing is written while the latest workspace run is incomplete.
        """
        if self._session_hashes and not self._run_incomplete:
            self.save_cache()
        self.graph.clear()
        self._search.clear()
        self._session_hashes.clear()
        self._metadata.clear()

    # ── Workspace runs ────────────────────────────────────────────────────────

    async def index_workspace(
        self,
        token: CancellationToken | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> IndexRunResult:
        """Index every discoverable file, skipping ones unchanged this session."""
        if self._state in (IndexState.DISCOVERING, IndexState.BATCH_INDEXING):
            logger.info("Index run rejected: already %s", self._state.value)
            return IndexRunResult(state=self._state, message="Indexing already in progress")

        token = token or CancellationToken()
        counters = _RunCounters()
        started = time.monotonic()
        cfg = self._config.indexer
        self._state = IndexState.DISCOVERING
        self._run_incomplete = True

        try:
            await asyncio.wait_for(
                self._run(token, counters, progress_callback),
                timeout=cfg.timeout_seconds,
            )
        except asyncio.TimeoutError:
            self._state = IndexState.TIMED_OUT
            logger.warning(
                "Indexing timed out after %.0fs (%d/%d files); the index is partial",
                cfg.timeout_seconds, counters.indexed + counters.skipped, counters.total,
            )
            return self._result(
                counters, started,
                message="Indexing timed out; results may be incomplete",
                can_retry=True,
            )
        except asyncio.CancelledError:
            self._state = IndexState.CANCELLED
            logger.info("Indexing task cancelled after %d files", counters.indexed + counters.skipped)
            raise
        except Exception as exc:
            self._state = IndexState.IDLE
            logger.warning("Workspace indexing failed: %s", exc)
            return self._result(
                counters, started,
                message=f"Indexing failed; results may be incomplete ({exc})",
                can_retry=True,
            )
        finally:
            if self._state in (IndexState.DISCOVERING, IndexState.BATCH_INDEXING):
                self._state = IndexState.CANCELLED
            self.graph.refresh_call_links()

        if token.is_cancelled:
            self._state = IndexState.CANCELLED
            logger.info("Indexing cancelled after %d files", counters.indexed + counters.skipped)
            return self._result(counters, started, message="Indexing cancelled")

        self._state = IndexState.SAVING
        self.save_cache()
        self._run_incomplete = False
        self._state = IndexState.IDLE

        result = self._result(
            counters, started,
            message=(
                f"Indexed {counters.indexed} files "
                f"({counters.skipped} unchanged, {counters.failed} failed)"
            ),
        )
        logger.info(
            "Workspace index: indexed=%d skipped=%d failed=%d changed_since_last_session=%d in %.2fs",
            result.indexed, result.skipped, result.failed,
            result.changed_since_last_session, result.duration_seconds,
        )
        return result

    async def _run(
        self,
        token: CancellationToken,
        counters: _RunCounters,
        progress_callback: ProgressCallback | None,
    ) -> None:
        loop = asyncio.get_running_loop()
        files = await loop.run_in_executor(None, self._workspace.find_files)
        counters.total = len(files)

        # Files ingested earlier this session that have since disappeared.
        on_disk = set(files)
        for uri in [u for u in self._session_hashes if u not in on_disk]:
            self._retract(uri)

        self._state = IndexState.BATCH_INDEXING
        cfg = self._config.indexer
        done = 0
        for start in range(0, len(files), cfg.batch_size):
            if token.is_cancelled:
                return
            batch = files[start:start + cfg.batch_size]
            outcomes = await asyncio.gather(*(self._index_file(uri, token) for uri in batch))
            for uri, outcome in zip(batch, outcomes):
                if outcome == "indexed":
                    counters.indexed += 1
                    if self._previous_hashes.get(uri) != self._session_hashes.get(uri):
                        counters.changed += 1
                elif outcome == "skipped":
                    counters.skipped += 1
                elif outcome == "failed":
                    counters.failed += 1
            done += len(batch)

            if progress_callback is not None:
                try:
                    progress_callback(done, len(files))
                except Exception as exc:
                    logger.debug("Progress callback error: %s", exc)

            if start + cfg.batch_size < len(files):
                await asyncio.sleep(cfg.batch_yield_seconds)

    async def _index_file(self, uri: str, token: CancellationToken) -> str:
        """Returns 'indexed', 'skipped', 'failed' or 'cancelled'."""
        if token.is_cancelled:
            return "cancelled"
        try:
            text = await self._workspace.read_text(uri)
        except OSError as exc:
            logger.warning("Cannot read %s: %s", uri, exc)
            return "failed"
        return self.index_text(uri, text)

    def _result(
        self,
        counters: _RunCounters,
        started: float,
        message: str,
        can_retry: bool = False,
    ) -> IndexRunResult:
        return IndexRunResult(
            state=self._state,
            total_files=counters.total,
            indexed=counters.indexed,
            skipped=counters.skipped,
            failed=counters.failed,
            changed_since_last_session=counters.changed,
            duration_seconds=time.monotonic() - started,
            message=message,
            can_retry=can_retry,
        )

    # ── File events ───────────────────────────────────────────────────────────

    async def handle_file_event(self, event: FileEvent) -> bool:
        """Apply one change notification.  Returns True if the index changed."""
        cfg = self._config.indexer
        path = Path(event.uri)
        if path == self._workspace.resolve(cfg.schema_path).resolve():
            self._schema.load()
            return True
        if path == self._workspace.resolve(cfg.routes_path).resolve():
            self._conventions.load_routes(path)
            return True
        if not self._workspace.is_indexable(event.uri):
            return False

        if event.type == FileEventType.DELETED:
            if event.uri not in self._session_hashes:
                return False
            self._retract(event.uri)
            self.graph.refresh_call_links()
            return True

        try:
            text = await self._workspace.read_text(event.uri)
        except OSError as exc:
            logger.warning("Cannot read %s: %s", event.uri, exc)
            return False
        changed = self.index_text(event.uri, text) == "indexed"
        self.graph.refresh_call_links()
        return changed

    # ── Per-file ingestion ────────────────────────────────────────────────────

    def index_text(self, uri: str, text: str) -> str:
        """Ingest one file's content.  Returns 'indexed', 'skipped' or 'failed'.

        Runs without suspension points, so a file is never half-ingested.
        """
        digest = hashlib.md5(text.encode("utf-8", errors="replace")).hexdigest()
        if self._session_hashes.get(uri) == digest:
            return "skipped"
        try:
            if uri in self._session_hashes:
                self._retract(uri)
            nodes = self._scanner.parse(text)
            symbol_count = self._ingest(uri, nodes)
        except Exception as exc:
            logger.warning("Failed to index %s: %s", uri, exc)
            self.graph.remove_file(uri)
            self._search.remove_file(uri)
            return "failed"
        self._session_hashes[uri] = digest
        self._metadata[uri] = FileMetadata(
            uri=uri, content_hash=digest, last_indexed=time.time(), symbol_count=symbol_count,
        )
        return "indexed"

    def _retract(self, uri: str) -> None:
        self.graph.remove_file(uri)
        self._search.remove_file(uri)
        self._session_hashes.pop(uri, None)
        self._metadata.pop(uri, None)

    def _ingest(self, uri: str, nodes: list[Node]) -> int:
        graph = self.graph
        symbols: list[IndexedSymbol] = []
        containers = [n for n in nodes if isinstance(n, ContainerNode)]
        pending_calls: list[tuple[MethodInfo, MethodNode, str | None]] = []

        for node in containers:
            location = Location(uri=uri, line=node.line)
            if isinstance(node, ClassNode):
                info = self._class_info(uri, node, location)
                graph.add_class(info)
                symbols.append(IndexedSymbol(node.short_name, SymbolKind.CLASS, location, node.namespace))
            else:
                graph.add_module(ModuleInfo(
                    name=node.short_name, fully_qualified_name=node.name, location=location,
                ))
                symbols.append(IndexedSymbol(node.short_name, SymbolKind.MODULE, location, node.namespace))
            graph.add_reference(Reference(node.name, location, ReferenceType.DEFINITION))

            for mixin in node.mixins:
                graph.add_mixin(node.name, mixin.name, mixin.kind, uri)
                graph.add_dependency(FileDependency(source_uri=uri, target=mixin.name, type=mixin.kind))

            for child in node.children:
                child_location = Location(uri=uri, line=child.line)
                if isinstance(child, AssociationNode):
                    graph.add_association(_association(node.name, child, child_location))
                elif isinstance(child, ConstantNode):
                    symbols.append(IndexedSymbol(child.name, SymbolKind.CONSTANT, child_location, node.name))
                    graph.add_reference(Reference(
                        f"{node.name}::{child.name}", child_location, ReferenceType.DEFINITION,
                    ))

            for method_node in node.methods:
                info = self._add_method(uri, method_node, node.name)
                symbols.append(IndexedSymbol(info.name, SymbolKind.METHOD, info.location, node.name))
                pending_calls.append((info, method_node, node.name))

        for node in nodes:
            if isinstance(node, MethodNode):
                info = self._add_method(uri, node, None)
                symbols.append(IndexedSymbol(info.name, SymbolKind.METHOD, info.location, None))
                pending_calls.append((info, node, None))
            elif isinstance(node, RequireNode):
                kind = DependencyType.REQUIRE_RELATIVE if node.relative else DependencyType.REQUIRE
                graph.add_dependency(FileDependency(source_uri=uri, target=node.name, type=kind))
            elif isinstance(node, ReferenceNode):
                graph.add_reference(Reference(
                    symbol_name=node.name,
                    location=Location(uri=uri, line=node.line, column=node.column),
                    type=node.ref_type,
                    context=ReferenceContext(
                        line=node.text,
                        containing_class=node.containing_class,
                        containing_method=node.containing_method,
                    ),
                ))

        # Calls and callbacks last, so same-file targets already exist.
        for info, method_node, owner in pending_calls:
            for call in method_node.calls:
                edge = self._resolve_call(uri, call, info, owner)
                if edge is not None:
                    graph.add_method_call(edge)

        for node in containers:
            for child in node.children:
                if isinstance(child, CallbackNode):
                    graph.add_usage(
                        method_id(node.name, child.name),
                        Location(uri=uri, line=child.line),
                        CallTarget(node.name, child.name),
                    )

        self._search.index_symbols(uri, symbols)
        return len(symbols)

    def _class_info(self, uri: str, node: ClassNode, location: Location) -> ClassInfo:
        superclass = node.superclass or ""
        is_model = "/app/models/" in uri or superclass in _MODEL_SUPERCLASSES
        is_controller = "/app/controllers/" in uri or superclass in _CONTROLLER_SUPERCLASSES
        constants = {
            c.name: c.value for c in node.children if isinstance(c, ConstantNode)
        }
        return ClassInfo(
            name=node.short_name,
            fully_qualified_name=node.name,
            location=location,
            superclass=node.superclass,
            mixins=[m.name for m in node.mixins],
            constants=constants,
            is_rails_model=is_model,
            is_rails_controller=is_controller,
            namespace=node.namespace,
        )

    def _add_method(self, uri: str, node: MethodNode, owner: str | None) -> MethodInfo:
        location = Location(uri=uri, line=node.line)
        info = MethodInfo(
            id=method_id(owner or _TOP_LEVEL_OWNER, node.name, node.is_class_method),
            name=node.name,
            location=location,
            class_name=owner,
            parameters=list(node.parameters),
            visibility=node.visibility,
            is_class_method=node.is_class_method,
            return_type=node.return_type,
        )
        self.graph.add_method(info)
        self.graph.add_reference(Reference(node.name, location, ReferenceType.DEFINITION))
        return info

    def _resolve_call(
        self,
        uri: str,
        call: MethodCall,
        caller: MethodInfo,
        owner: str | None,
    ) -> MethodCallEdge | None:
        """Turn a call token into an edge, or None when the receiver is unknowable.

        Edges with a known receiver carry a ``CallTarget``; the graph picks
        the defining class along the ancestry and re-resolves it as more
        files arrive.
        """
        location = Location(uri=uri, line=call.line, column=call.column)
        receiver = call.receiver

        if call.chained:
            return None

        if receiver is None or receiver == "self":
            target_owner = owner or _TOP_LEVEL_OWNER
            target = CallTarget(target_owner, call.method, caller.is_class_method)
            return self._edge(caller, target, location, _SELF_CALL_CONFIDENCE)

        if receiver[:1].isupper():
            resolved = self.graph.resolve_constant(receiver, owner) or receiver
            if call.method == "new":
                target = CallTarget(resolved, "initialize", False, constant=receiver, scope=owner)
            else:
                target = CallTarget(resolved, call.method, True, constant=receiver, scope=owner)
            return self._edge(caller, target, location, _CONSTANT_CALL_CONFIDENCE)

        context = InferenceContext(
            uri=uri,
            line=call.line,
            containing_class=owner,
            containing_method=caller.name,
        )
        receiver_type = self._types.get_variable_type(receiver, context)
        if receiver_type is None:
            receiver_type = self._conventional_model(receiver)
        if receiver_type is not None:
            target = CallTarget(receiver_type, call.method, False)
            return self._edge(caller, target, location, _TYPED_CALL_CONFIDENCE)
        return MethodCallEdge(
            caller.id, f"{receiver}#{call.method}", location, _UNKNOWN_CALL_CONFIDENCE,
        )

    @staticmethod
    def _edge(caller: MethodInfo, target: CallTarget, location: Location, confidence: float) -> MethodCallEdge:
        return MethodCallEdge(
            caller=caller.id,
            callee=method_id(target.owner, target.method, target.class_level),
            location=location,
            confidence=confidence,
            receiver_type=target.owner,
            target=target,
        )

    def _conventional_model(self, variable: str) -> str | None:
        """``@user`` / ``users`` -> ``User`` when such a model is indexed."""
        candidate = snake_to_camel(singularize(variable.lstrip("@")))
        cls = self.graph.get_class(candidate)
        return candidate if cls is not None and cls.is_rails_model else None

    # ── Query surface ─────────────────────────────────────────────────────────

    def search(
        self,
        query: str,
        context: SearchContext | None = None,
        limit: int | None = None,
    ) -> list[SearchResult]:
        return self._search.search(query, context, limit)

    def find_references(self, symbol: str) -> ReferenceInfo:
        return self._tracker.find_references(symbol)

    def find_method_references(self, class_name: str, method_name: str) -> list[Reference]:
        return self._tracker.find_method_references(class_name, method_name)

    def is_safe_to_delete(self, symbol: str) -> DeletionCheck:
        return self._tracker.is_safe_to_delete(symbol)

    def get_call_hierarchy(self, class_name: str, method_name: str) -> CallHierarchy:
        instance_id = method_id(class_name, method_name)
        if self.graph.get_method(instance_id) is None:
            class_id = method_id(class_name, method_name, is_class_method=True)
            if self.graph.get_method(class_id) is not None:
                return self.graph.get_call_hierarchy(class_id)
        return self.graph.get_call_hierarchy(instance_id)

    def get_type_hierarchy(self, class_name: str) -> TypeHierarchy:
        cls = self.graph.get_class(class_name)
        return TypeHierarchy(
            class_name=class_name,
            ancestors=self.graph.get_inheritance_chain(class_name)[1:],
            descendants=self.graph.get_all_subclasses(class_name),
            mixins=list(cls.mixins) if cls else [],
        )

    def get_all_subclasses(self, class_name: str) -> list[str]:
        return self.graph.get_all_subclasses(class_name)

    def get_rails_components(self, model_name: str) -> RailsComponents:
        return self._conventions.get_rails_components(model_name)

    def find_view_for_action(self, controller: str, action: str) -> Location | None:
        return self._conventions.find_view_for_action(controller, action)

    def get_route_info(self, controller: str, action: str) -> RouteInfo | None:
        return self._conventions.get_route_info(controller, action)

    def get_controller_routes(self, controller: str) -> list[RouteInfo]:
        return self._conventions.get_controller_routes(controller)

    def detect_dead_code(self) -> DeadCodeAnalysis:
        return self._tracker.detect_dead_code()

    def render_dead_code_report(self, analysis: DeadCodeAnalysis | None = None) -> str:
        return render_dead_code_report(analysis or self.detect_dead_code())

    def infer_type(self, expression: str, context: InferenceContext | None = None) -> InferredType | None:
        return self._types.infer_type(expression, context)

    def infer_model_types(self, class_name: str) -> dict[str, InferredType]:
        return self._types.infer_model_types(class_name)

    def infer_association_types(self, class_name: str) -> dict[str, InferredType]:
        return self._types.infer_association_types(class_name)

    def get_available_methods(self, type_name: str) -> list[str]:
        return self._types.get_available_methods(type_name)

    def get_stats(self) -> IndexerStats:
        return IndexerStats(
            state=self._state,
            graph=self.graph.get_stats(),
            indexed_files=len(self._session_hashes),
            symbols=self._search.symbol_count,
            routes=len(self._conventions.routes),
            tables=len(self._schema.get_table_names()),
        )


def _association(source: str, node: AssociationNode, location: Location) -> Association:
    """Target model from ``class_name:`` when given, else by naming convention."""
    target = node.options.get("class_name")
    if not target:
        base = singularize(node.name) if node.association_type.is_collection else node.name
        target = snake_to_camel(base)
    return Association(
        source_model=source,
        target_model=target,
        type=node.association_type,
        name=node.name,
        location=location,
        options=dict(node.options),
    )
