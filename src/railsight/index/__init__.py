"""Semantic index module: convention-aware analysis of Rails workspaces."""

from railsight.index.graph import SemanticGraph
from railsight.index.project_indexer import (
    CancellationToken,
    IndexRunResult,
    IndexState,
    ProjectIndexer,
)
from railsight.index.references import ReferenceTracker, render_dead_code_report
from railsight.index.schema_parser import SchemaParser, parse_schema
from railsight.index.search import SearchContext, SmartSearchEngine
from railsight.index.source_parser import SourceScanner
from railsight.index.type_inference import TypeInferenceEngine
from railsight.index.workspace import FileEvent, FileEventType, LocalWorkspace

__all__ = [
    "CancellationToken",
    "FileEvent",
    "FileEventType",
    "IndexRunResult",
    "IndexState",
    "LocalWorkspace",
    "ProjectIndexer",
    "ReferenceTracker",
    "SchemaParser",
    "SearchContext",
    "SemanticGraph",
    "SmartSearchEngine",
    "SourceScanner",
    "TypeInferenceEngine",
    "parse_schema",
    "render_dead_code_report",
]
