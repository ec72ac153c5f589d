"""SmartSearchEngine: context-ranked symbol search with usage feedback.

Score = match tier + sum of bonuses.  Tiers (exact, prefix, substring,
fuzzy) are mutually exclusive and a symbol matching none of them is not
returned at all.  Bonuses:

  usage      log-normalised access count, clamped to 1
  recency    exp(-age_hours / decay_hours) since the last time it was returned
  context    controller<->model, model<->association, spec<->subject, same file
  project    not under a gem / vendored bundle directory
  file type  symbol lives where the caller's file type lives
  scope      symbol kind matches the requested search kind

The configured tier spacing is validated to exceed the sum of all bonuses,
so a better tier always outranks a worse one.
"""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from railsight.core.config import SearchConfig
from railsight.index.graph import SemanticGraph
from railsight.index.inflection import singularize, snake_to_camel
from railsight.index.models import Location

logger = logging.getLogger(__name__)

_LIBRARY_MARKERS = ("/.gem/", "/vendor/bundle/", "/ruby/gems/")
_SPEC_FILE_RE = re.compile(r"(?:^|/)([^/]+)_spec\.rb$")


class SymbolKind(str, Enum):
    CLASS = "class"
    MODULE = "module"
    METHOD = "method"
    CONSTANT = "constant"


class FileType(str, Enum):
    MODEL = "model"
    CONTROLLER = "controller"
    VIEW = "view"
    SPEC = "spec"
    OTHER = "other"


class SearchScope(str, Enum):
    CLASS = "class"
    METHOD = "method"
    CONSTANT = "constant"
    ANY = "any"


class RankingFactor(str, Enum):
    EXACT_MATCH = "exact_match"
    PREFIX_MATCH = "prefix_match"
    SUBSTRING_MATCH = "substring_match"
    FUZZY_MATCH = "fuzzy_match"
    USAGE_FREQUENCY = "usage_frequency"
    RECENCY = "recency"
    CONTEXT_MATCH = "context_match"
    PROJECT_CODE = "project_code"
    FILE_TYPE_MATCH = "file_type_match"
    SCOPE_MATCH = "scope_match"


_PATH_MARKERS: dict[FileType, str] = {
    FileType.MODEL: "/app/models/",
    FileType.CONTROLLER: "/app/controllers/",
    FileType.VIEW: "/app/views/",
    FileType.SPEC: "/spec/",
}


@dataclass(frozen=True)
class IndexedSymbol:
    name: str
    kind: SymbolKind
    location: Location
    container: str | None = None  # owning class/module, if any

    @property
    def key(self) -> str:
        return f"{self.location.uri}:{self.name}:{self.kind.value}"


@dataclass(frozen=True)
class SearchContext:
    current_file: str | None = None
    current_class: str | None = None
    current_method: str | None = None
    file_type: FileType | None = None
    search_type: SearchScope = SearchScope.ANY


@dataclass(frozen=True)
class RankingReason:
    factor: RankingFactor
    weight: float
    explanation: str


@dataclass
class SearchResult:
    symbol: IndexedSymbol
    score: float
    reasons: list[RankingReason] = field(default_factory=list)


@dataclass
class UsageStats:
    access_count: int = 0
    last_accessed: float | None = None


def fuzzy_match(text: str, pattern: str) -> bool:
    """Case-insensitive in-order subsequence test."""
    if not pattern:
        return True
    it = iter(text.lower())
    return all(ch in it for ch in pattern.lower())


def tested_name(spec_path: str) -> str:
    """``spec/models/line_item_spec.rb`` -> ``LineItem``."""
    m = _SPEC_FILE_RE.search(spec_path)
    return snake_to_camel(m.group(1)) if m else ""


class SmartSearchEngine:
    """Ranked retrieval over symbols indexed per file.

    Parameters
    ----------
    graph:
        Workspace graph, read for association membership.
    config:
        Search limits and weights.
    clock:
        Returns the current Unix time; injectable for tests.
    """

    def __init__(
        self,
        graph: SemanticGraph,
        config: SearchConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._graph = graph
        self._config = config or SearchConfig()
        self._clock = clock
        self._symbols: dict[str, list[IndexedSymbol]] = {}
        self._usage: dict[str, UsageStats] = {}

    # ── Index maintenance ─────────────────────────────────────────────────────

    def index_symbols(self, uri: str, symbols: list[IndexedSymbol]) -> None:
        """Replace the symbols held for *uri*."""
        self._symbols[uri] = list(symbols)
        for symbol in symbols:
            self._usage.setdefault(symbol.key, UsageStats())

    def remove_file(self, uri: str) -> None:
        self._symbols.pop(uri, None)

    def clear(self) -> None:
        """Drop every symbol and the usage history gathered for them."""
        self._symbols.clear()
        self._usage.clear()

    @property
    def symbol_count(self) -> int:
        return sum(len(s) for s in self._symbols.values())

    def get_usage(self, symbol: IndexedSymbol) -> UsageStats:
        return self._usage.get(symbol.key, UsageStats())

    # ── Search ────────────────────────────────────────────────────────────────

    def search(
        self,
        query: str,
        context: SearchContext | None = None,
        limit: int | None = None,
    ) -> list[SearchResult]:
        context = context or SearchContext()
        limit = self._config.limit if limit is None else max(limit, 0)
        results: list[SearchResult] = []
        for symbols in self._symbols.values():
            for symbol in symbols:
                result = self._score(symbol, query, context)
                if result is not None:
                    results.append(result)

        results.sort(key=lambda r: r.score, reverse=True)
        top = results[:limit]
        now = self._clock()
        for result in top:
            stats = self._usage.setdefault(result.symbol.key, UsageStats())
            stats.access_count += 1
            stats.last_accessed = now
        logger.debug("search %r: %d matches, returning %d", query, len(results), len(top))
        return top

    def _score(self, symbol: IndexedSymbol, query: str, context: SearchContext) -> SearchResult | None:
        weights = self._config.weights
        tier = self._match_tier(symbol.name, query)
        if tier is None:
            return None
        factor, explanation = tier
        tier_weight = {
            RankingFactor.EXACT_MATCH: weights.exact_match,
            RankingFactor.PREFIX_MATCH: weights.prefix_match,
            RankingFactor.SUBSTRING_MATCH: weights.substring_match,
            RankingFactor.FUZZY_MATCH: weights.fuzzy_match,
        }[factor]
        reasons = [RankingReason(factor, tier_weight, explanation)]

        bonuses = (
            (RankingFactor.USAGE_FREQUENCY, self._usage_score(symbol) * weights.usage_frequency,
             "Frequently used"),
            (RankingFactor.RECENCY, self._recency_score(symbol) * weights.recency,
             "Recently accessed"),
            (RankingFactor.CONTEXT_MATCH, self._context_score(symbol, context) * weights.context_match,
             "Relevant to current context"),
            (RankingFactor.PROJECT_CODE, weights.project_code if _is_project_code(symbol) else 0.0,
             "From project code"),
            (RankingFactor.FILE_TYPE_MATCH,
             weights.file_type_match if _matches_file_type(symbol, context) else 0.0,
             "Matches current file type"),
            (RankingFactor.SCOPE_MATCH, weights.scope_match if _matches_scope(symbol, context) else 0.0,
             "Matches search kind"),
        )
        for bonus_factor, weight, text in bonuses:
            if weight > 0:
                reasons.append(RankingReason(bonus_factor, weight, text))

        return SearchResult(symbol=symbol, score=sum(r.weight for r in reasons), reasons=reasons)

    @staticmethod
    def _match_tier(name: str, query: str) -> tuple[RankingFactor, str] | None:
        name_lower = name.lower()
        query_lower = query.lower()
        if name_lower == query_lower:
            return RankingFactor.EXACT_MATCH, "Exact name match"
        if name_lower.startswith(query_lower):
            return RankingFactor.PREFIX_MATCH, "Name starts with query"
        if query_lower in name_lower:
            return RankingFactor.SUBSTRING_MATCH, "Name contains query"
        if fuzzy_match(name, query):
            return RankingFactor.FUZZY_MATCH, "Name fuzzy-matches query"
        return None

    def _usage_score(self, symbol: IndexedSymbol) -> float:
        stats = self._usage.get(symbol.key)
        if stats is None:
            return 0.0
        ceiling = math.log(self._config.popular_access_count)
        return min(1.0, math.log(stats.access_count + 1) / ceiling)

    def _recency_score(self, symbol: IndexedSymbol) -> float:
        stats = self._usage.get(symbol.key)
        if stats is None or stats.last_accessed is None:
            return 0.0
        age_hours = max(0.0, self._clock() - stats.last_accessed) / 3600
        return math.exp(-age_hours / self._config.recency_decay_hours)

    def _context_score(self, symbol: IndexedSymbol, context: SearchContext) -> float:
        """Average of the context signals that fired; 0 when none did."""
        score = 0.0
        factors = 0
        is_type = symbol.kind in (SymbolKind.CLASS, SymbolKind.MODULE)

        if context.file_type == FileType.CONTROLLER and context.current_class:
            short = context.current_class.split("::")[-1]
            model_name = singularize(short.replace("Controller", ""))
            if is_type and symbol.name == model_name:
                score += 1.0
                factors += 1

        if context.file_type == FileType.MODEL and context.current_class:
            targets = {a.target_model for a in self._graph.get_associations(context.current_class)}
            if symbol.name in targets:
                score += 0.8
                factors += 1

        if context.file_type == FileType.SPEC and context.current_file:
            if symbol.name == tested_name(context.current_file):
                score += 1.0
                factors += 1

        if context.current_file and symbol.location.uri == context.current_file:
            score += 0.5
            factors += 1

        return score / factors if factors else 0.0


def _is_project_code(symbol: IndexedSymbol) -> bool:
    path = symbol.location.uri
    return not any(marker in path for marker in _LIBRARY_MARKERS)


def _matches_file_type(symbol: IndexedSymbol, context: SearchContext) -> bool:
    marker = _PATH_MARKERS.get(context.file_type) if context.file_type else None
    return marker is not None and marker in symbol.location.uri


def _matches_scope(symbol: IndexedSymbol, context: SearchContext) -> bool:
    scope = context.search_type
    if scope == SearchScope.CLASS:
        return symbol.kind in (SymbolKind.CLASS, SymbolKind.MODULE)
    if scope == SearchScope.METHOD:
        return symbol.kind == SymbolKind.METHOD
    if scope == SearchScope.CONSTANT:
        return symbol.kind == SymbolKind.CONSTANT
    return True
