"""Tests for SmartSearchEngine ranking and usage feedback."""

from __future__ import annotations

import pytest

from railsight.core.config import SearchConfig
from railsight.index.graph import SemanticGraph
from railsight.index.models import Association, AssociationType, Location
from railsight.index.search import (
    FileType,
    IndexedSymbol,
    RankingFactor,
    SearchContext,
    SearchScope,
    SmartSearchEngine,
    SymbolKind,
    fuzzy_match,
    tested_name,
)

# Imported helper whose name starts with "test"; keep pytest from collecting it.
tested_name.__test__ = False

_ROOT = "/proj"


def _sym(name: str, path: str, kind: SymbolKind = SymbolKind.CLASS) -> IndexedSymbol:
    return IndexedSymbol(name=name, kind=kind, location=Location(uri=f"{_ROOT}/{path}"))


class _Clock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def graph() -> SemanticGraph:
    return SemanticGraph()


@pytest.fixture()
def clock() -> _Clock:
    return _Clock()


@pytest.fixture()
def engine(graph: SemanticGraph, clock: _Clock) -> SmartSearchEngine:
    return SmartSearchEngine(graph, SearchConfig(), clock=clock)


def _weight(result, factor: RankingFactor) -> float:
    return sum(r.weight for r in result.reasons if r.factor == factor)


# ── Matching ──────────────────────────────────────────────────────────────────


class TestMatching:
    def test_fuzzy_match(self) -> None:
        assert fuzzy_match("UsersController", "usctl")
        assert fuzzy_match("anything", "")
        assert not fuzzy_match("User", "resu")

    def test_tested_name(self) -> None:
        assert tested_name(f"{_ROOT}/spec/models/line_item_spec.rb") == "LineItem"
        assert tested_name(f"{_ROOT}/app/models/user.rb") == ""

    def test_tier_order(self, engine: SmartSearchEngine) -> None:
        engine.index_symbols(f"{_ROOT}/a.rb", [
            _sym("UltraSecretReport", "a.rb"),
            _sym("AdminUser", "a.rb"),
            _sym("UserProfile", "a.rb"),
            _sym("User", "a.rb"),
            _sym("Post", "a.rb"),
        ])
        results = engine.search("user")
        assert [r.symbol.name for r in results] == ["User", "UserProfile", "AdminUser", "UltraSecretReport"]
        assert [r.reasons[0].factor for r in results] == [
            RankingFactor.EXACT_MATCH,
            RankingFactor.PREFIX_MATCH,
            RankingFactor.SUBSTRING_MATCH,
            RankingFactor.FUZZY_MATCH,
        ]

    def test_exact_beats_prefix_with_every_bonus(self, graph: SemanticGraph, engine: SmartSearchEngine) -> None:
        controller_file = f"{_ROOT}/app/controllers/users_controller.rb"
        engine.index_symbols(controller_file, [_sym("Users", "app/controllers/users_controller.rb")])
        engine.index_symbols(f"{_ROOT}/lib/user.rb", [_sym("User", "lib/user.rb")])
        context = SearchContext(
            current_file=controller_file,
            current_class="UsersController",
            file_type=FileType.CONTROLLER,
            search_type=SearchScope.CLASS,
        )
        for _ in range(5):
            engine.search("Users", context, limit=1)
        results = engine.search("user", context)
        assert results[0].symbol.name == "User"

    def test_no_match_is_omitted(self, engine: SmartSearchEngine) -> None:
        engine.index_symbols(f"{_ROOT}/a.rb", [_sym("Post", "a.rb")])
        assert engine.search("zzz") == []

    def test_limit(self, engine: SmartSearchEngine) -> None:
        engine.index_symbols(f"{_ROOT}/a.rb", [_sym(f"User{i}", "a.rb") for i in range(10)])
        assert len(engine.search("user", limit=3)) == 3

    def test_zero_limit_returns_nothing(self, engine: SmartSearchEngine) -> None:
        engine.index_symbols(f"{_ROOT}/a.rb", [_sym("User", "a.rb")])
        assert engine.search("user", limit=0) == []
        assert len(engine.search("user")) == 1


# ── Bonuses ───────────────────────────────────────────────────────────────────


class TestBonuses:
    def test_project_code_outranks_vendored_gem(self, engine: SmartSearchEngine) -> None:
        engine.index_symbols("/gems/vendor/bundle/rack.rb", [
            IndexedSymbol(name="Rack", kind=SymbolKind.CLASS, location=Location(uri="/gems/vendor/bundle/rack.rb")),
        ])
        engine.index_symbols(f"{_ROOT}/lib/rack.rb", [_sym("Rack", "lib/rack.rb")])
        results = engine.search("Rack")
        assert results[0].symbol.location.uri == f"{_ROOT}/lib/rack.rb"
        assert _weight(results[1], RankingFactor.PROJECT_CODE) == 0

    def test_controller_context_prefers_its_model(self, engine: SmartSearchEngine) -> None:
        engine.index_symbols(f"{_ROOT}/app/models/user.rb", [_sym("User", "app/models/user.rb")])
        context = SearchContext(current_class="UsersController", file_type=FileType.CONTROLLER)
        result = engine.search("User", context)[0]
        assert _weight(result, RankingFactor.CONTEXT_MATCH) == pytest.approx(30.0)

    def test_model_context_prefers_associated_models(self, graph: SemanticGraph, engine: SmartSearchEngine) -> None:
        graph.add_association(Association(
            source_model="User", target_model="Post", type=AssociationType.HAS_MANY,
            name="posts", location=Location(uri=f"{_ROOT}/app/models/user.rb"),
        ))
        engine.index_symbols(f"{_ROOT}/app/models/post.rb", [_sym("Post", "app/models/post.rb")])
        context = SearchContext(current_class="User", file_type=FileType.MODEL)
        result = engine.search("Post", context)[0]
        assert _weight(result, RankingFactor.CONTEXT_MATCH) == pytest.approx(0.8 * 30.0)
        assert _weight(result, RankingFactor.FILE_TYPE_MATCH) == pytest.approx(20.0)

    def test_spec_context_prefers_tested_class(self, engine: SmartSearchEngine) -> None:
        engine.index_symbols(f"{_ROOT}/app/models/line_item.rb", [_sym("LineItem", "app/models/line_item.rb")])
        context = SearchContext(current_file=f"{_ROOT}/spec/models/line_item_spec.rb", file_type=FileType.SPEC)
        result = engine.search("LineItem", context)[0]
        assert _weight(result, RankingFactor.CONTEXT_MATCH) == pytest.approx(30.0)

    def test_scope_bonus(self, engine: SmartSearchEngine) -> None:
        engine.index_symbols(f"{_ROOT}/a.rb", [
            _sym("save", "a.rb", SymbolKind.CLASS),
            _sym("save", "a.rb", SymbolKind.METHOD),
        ])
        results = engine.search("save", SearchContext(search_type=SearchScope.METHOD))
        assert results[0].symbol.kind == SymbolKind.METHOD
        assert _weight(results[1], RankingFactor.SCOPE_MATCH) == 0


# ── Usage feedback ────────────────────────────────────────────────────────────


class TestUsageFeedback:
    def test_returned_results_gain_usage(self, engine: SmartSearchEngine) -> None:
        first = _sym("Alpha", "a.rb")
        second = _sym("Alpha", "b.rb")
        engine.index_symbols(f"{_ROOT}/a.rb", [first])
        engine.index_symbols(f"{_ROOT}/b.rb", [second])

        engine.search("Alpha", limit=1)
        results = engine.search("Alpha")

        assert results[0].symbol == first
        assert results[0].score > results[1].score
        assert engine.get_usage(first).access_count == 2
        assert engine.get_usage(second).access_count == 1

    def test_recency_decays(self, engine: SmartSearchEngine, clock: _Clock) -> None:
        engine.index_symbols(f"{_ROOT}/a.rb", [_sym("Alpha", "a.rb")])
        engine.search("Alpha")
        fresh = engine.search("Alpha")[0]
        clock.now += 1000 * 3600
        stale = engine.search("Alpha")[0]
        assert _weight(fresh, RankingFactor.RECENCY) == pytest.approx(15.0)
        assert _weight(stale, RankingFactor.RECENCY) < 0.01

    def test_remove_file(self, engine: SmartSearchEngine) -> None:
        engine.index_symbols(f"{_ROOT}/a.rb", [_sym("Alpha", "a.rb")])
        assert engine.symbol_count == 1
        engine.remove_file(f"{_ROOT}/a.rb")
        assert engine.symbol_count == 0
        assert engine.search("Alpha") == []

    def test_clear_forgets_usage(self, engine: SmartSearchEngine) -> None:
        alpha = _sym("Alpha", "a.rb")
        engine.index_symbols(f"{_ROOT}/a.rb", [alpha])
        engine.search("Alpha")
        assert engine.get_usage(alpha).access_count == 1

        engine.clear()

        assert engine.symbol_count == 0
        assert engine.get_usage(alpha).access_count == 0
