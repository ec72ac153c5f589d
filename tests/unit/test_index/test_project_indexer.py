"""Tests for ProjectIndexer: workspace runs, incremental updates and queries."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from railsight.core.config import IndexerConfig, RailsightConfig
from railsight.index.hash_cache import HashCache
from railsight.index.models import TypeSource
from railsight.index.project_indexer import CancellationToken, IndexState, ProjectIndexer
from railsight.index.search import SymbolKind
from railsight.index.type_inference import InferenceContext
from railsight.index.workspace import FileEvent, FileEventType, LocalWorkspace


class _SlowWorkspace(LocalWorkspace):
    """Delays every read so runs can be interrupted."""

    def __init__(self, root: Path, delay: float) -> None:
        super().__init__(root)
        self.delay = delay

    async def read_text(self, uri: str) -> str:
        await asyncio.sleep(self.delay)
        return await super().read_text(uri)


class _BrokenWorkspace(LocalWorkspace):
    """Fails to read one file."""

    async def read_text(self, uri: str) -> str:
        if uri.endswith("post.rb"):
            raise OSError("permission denied")
        return await super().read_text(uri)


# ── Fixtures ──────────────────────────────────────────────────────────────────


@pytest.fixture()
def workspace(rails_project: Path) -> LocalWorkspace:
    return LocalWorkspace(rails_project)


@pytest.fixture()
def indexer(workspace: LocalWorkspace) -> ProjectIndexer:
    return ProjectIndexer(workspace)


def _uri(workspace: LocalWorkspace, rel: str) -> str:
    return workspace.uri_for(workspace.root / rel)


async def _indexed(indexer: ProjectIndexer) -> ProjectIndexer:
    await indexer.initialize()
    result = await indexer.index_workspace()
    assert result.state == IndexState.IDLE
    return indexer


# ── Workspace runs ────────────────────────────────────────────────────────────


class TestWorkspaceRun:
    @pytest.mark.asyncio
    async def test_full_index(self, indexer: ProjectIndexer, rails_project: Path) -> None:
        await indexer.initialize()
        result = await indexer.index_workspace()

        assert result.state == IndexState.IDLE
        assert result.total_files == 6
        assert result.indexed == 6
        assert result.skipped == 0
        assert result.failed == 0
        assert result.can_retry is False
        assert result.message == "Indexed 6 files (0 unchanged, 0 failed)"
        assert indexer.graph.get_class("User") is not None
        assert indexer.graph.get_class("Rack") is None
        assert (rails_project / ".railsight" / "index.json").is_file()

    @pytest.mark.asyncio
    async def test_second_run_skips_unchanged_files(self, indexer: ProjectIndexer) -> None:
        await _indexed(indexer)
        before = indexer.get_stats()

        result = await indexer.index_workspace()

        assert result.indexed == 0
        assert result.skipped == 6
        after = indexer.get_stats()
        assert after.graph == before.graph
        assert after.symbols == before.symbols

    @pytest.mark.asyncio
    async def test_changed_file_is_reindexed(self, indexer: ProjectIndexer, rails_project: Path) -> None:
        await _indexed(indexer)
        (rails_project / "app/models/post.rb").write_text(
            "class Post < ApplicationRecord\n  belongs_to :user\n  def summary\n  end\nend\n",
            encoding="utf-8",
        )

        result = await indexer.index_workspace()

        assert result.indexed == 1
        assert result.skipped == 5
        assert indexer.graph.get_method("Post#summary") is not None

    @pytest.mark.asyncio
    async def test_deleted_file_is_retracted(self, indexer: ProjectIndexer, rails_project: Path) -> None:
        await _indexed(indexer)
        (rails_project / "lib/legacy_report.rb").unlink()

        result = await indexer.index_workspace()

        assert result.total_files == 5
        assert indexer.graph.get_class("LegacyReport") is None
        assert indexer.search("LegacyReport") == []

    @pytest.mark.asyncio
    async def test_new_session_reparses_and_counts_changes(
        self, workspace: LocalWorkspace, rails_project: Path,
    ) -> None:
        first = await _indexed(ProjectIndexer(workspace))
        first.dispose()
        (rails_project / "lib/legacy_report.rb").write_text("class LegacyReport\nend\n", encoding="utf-8")

        second = ProjectIndexer(workspace)
        await second.initialize()
        result = await second.index_workspace()

        assert result.indexed == 6
        assert result.changed_since_last_session == 1
        assert second.graph.get_class("User") is not None

    @pytest.mark.asyncio
    async def test_first_session_counts_every_file_as_changed(self, indexer: ProjectIndexer) -> None:
        await indexer.initialize()
        result = await indexer.index_workspace()
        assert result.changed_since_last_session == 6

    @pytest.mark.asyncio
    async def test_cache_holds_session_hashes(
        self, indexer: ProjectIndexer, workspace: LocalWorkspace, rails_project: Path,
    ) -> None:
        await _indexed(indexer)
        hashes = HashCache(rails_project / ".railsight" / "index.json").load()
        uri = _uri(workspace, "app/models/user.rb")
        assert hashes[uri] == indexer.get_file_metadata(uri).content_hash

    @pytest.mark.asyncio
    async def test_progress_callback(self, indexer: ProjectIndexer) -> None:
        calls: list[tuple[int, int]] = []
        await indexer.initialize()
        await indexer.index_workspace(progress_callback=lambda done, total: calls.append((done, total)))
        assert calls[-1] == (6, 6)

    @pytest.mark.asyncio
    async def test_progress_callback_errors_are_ignored(self, indexer: ProjectIndexer) -> None:
        def boom(done: int, total: int) -> None:
            raise RuntimeError("ui gone")

        await indexer.initialize()
        result = await indexer.index_workspace(progress_callback=boom)
        assert result.state == IndexState.IDLE
        assert result.indexed == 6

    @pytest.mark.asyncio
    async def test_unreadable_file_counts_as_failed(self, rails_project: Path) -> None:
        indexer = ProjectIndexer(_BrokenWorkspace(rails_project))
        await indexer.initialize()
        result = await indexer.index_workspace()
        assert result.failed == 1
        assert result.indexed == 5
        assert result.state == IndexState.IDLE

    @pytest.mark.asyncio
    async def test_small_batches(self, rails_project: Path) -> None:
        config = RailsightConfig(indexer=IndexerConfig(batch_size=2, batch_yield_seconds=0))
        indexer = ProjectIndexer(LocalWorkspace(rails_project), config)
        await indexer.initialize()
        result = await indexer.index_workspace()
        assert result.indexed == 6


class TestRunInterruptions:
    @pytest.mark.asyncio
    async def test_cancelled_run(self, indexer: ProjectIndexer, rails_project: Path) -> None:
        await indexer.initialize()
        token = CancellationToken()
        token.cancel()

        result = await indexer.index_workspace(token=token)

        assert result.state == IndexState.CANCELLED
        assert indexer.state == IndexState.CANCELLED
        assert result.indexed == 0
        assert not (rails_project / ".railsight" / "index.json").exists()

    @pytest.mark.asyncio
    async def test_timeout(self, rails_project: Path) -> None:
        config = RailsightConfig(indexer=IndexerConfig(timeout_seconds=0.05))
        indexer = ProjectIndexer(_SlowWorkspace(rails_project, delay=1.0), config)
        await indexer.initialize()

        result = await indexer.index_workspace()

        assert result.state == IndexState.TIMED_OUT
        assert result.can_retry is True
        assert "timed out" in result.message

    @pytest.mark.asyncio
    async def test_concurrent_run_is_rejected(self, rails_project: Path) -> None:
        indexer = ProjectIndexer(_SlowWorkspace(rails_project, delay=0.05))
        await indexer.initialize()

        first = asyncio.create_task(indexer.index_workspace())
        await asyncio.sleep(0)
        rejected = await indexer.index_workspace()
        completed = await first

        assert rejected.message == "Indexing already in progress"
        assert completed.state == IndexState.IDLE
        assert completed.indexed == 6

    @pytest.mark.asyncio
    async def test_run_after_timeout_can_retry(self, rails_project: Path) -> None:
        workspace = _SlowWorkspace(rails_project, delay=1.0)
        config = RailsightConfig(indexer=IndexerConfig(timeout_seconds=0.05))
        indexer = ProjectIndexer(workspace, config)
        await indexer.initialize()
        await indexer.index_workspace()

        workspace.delay = 0
        config.indexer.timeout_seconds = 300.0
        result = await indexer.index_workspace()

        assert result.state == IndexState.IDLE
        assert result.indexed == 6

    @pytest.mark.asyncio
    async def test_cancelled_task_leaves_terminal_state(self, rails_project: Path) -> None:
        workspace = _SlowWorkspace(rails_project, delay=1.0)
        indexer = ProjectIndexer(workspace)
        await indexer.initialize()

        task = asyncio.create_task(indexer.index_workspace())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert indexer.state == IndexState.CANCELLED
        workspace.delay = 0
        result = await indexer.index_workspace()
        assert result.state == IndexState.IDLE
        assert result.indexed == 6

    @pytest.mark.asyncio
    async def test_dispose_after_cancelled_run_keeps_cache_untouched(
        self, indexer: ProjectIndexer, workspace: LocalWorkspace, rails_project: Path,
    ) -> None:
        await indexer.initialize()
        indexer.index_text(_uri(workspace, "lib/legacy_report.rb"), "class LegacyReport\nend\n")
        token = CancellationToken()
        token.cancel()
        await indexer.index_workspace(token=token)

        indexer.dispose()

        assert not (rails_project / ".railsight" / "index.json").exists()


# ── Per-file ingestion ────────────────────────────────────────────────────────


class TestIndexText:
    def test_identical_content_is_skipped(self, indexer: ProjectIndexer) -> None:
        text = "class Widget\n  def spin\n  end\nend\n"
        assert indexer.index_text("/p/widget.rb", text) == "indexed"
        before = indexer.get_stats()
        assert indexer.index_text("/p/widget.rb", text) == "skipped"
        assert indexer.get_stats() == before

    def test_changed_content_replaces_old_symbols(self, indexer: ProjectIndexer) -> None:
        indexer.index_text("/p/widget.rb", "class Widget\n  def spin\n  end\nend\n")
        indexer.index_text("/p/widget.rb", "class Widget\n  def stop\n  end\nend\n")
        assert indexer.graph.get_method("Widget#spin") is None
        assert indexer.graph.get_method("Widget#stop") is not None
        assert indexer.graph.get_class("Widget").methods == ["Widget#stop"]

    def test_failure_rolls_back_partial_ingestion(
        self, indexer: ProjectIndexer, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def explode(uri, symbols):
            raise RuntimeError("boom")

        monkeypatch.setattr(indexer.search_engine, "index_symbols", explode)
        assert indexer.index_text("/p/widget.rb", "class Widget\n  def spin\n  end\nend\n") == "failed"
        assert indexer.graph.get_class("Widget") is None
        assert indexer.graph.get_method("Widget#spin") is None
        assert indexer.get_file_metadata("/p/widget.rb") is None

    def test_subclass_indexed_before_parent(self, indexer: ProjectIndexer) -> None:
        indexer.index_text("/p/child.rb", "class Child < Base\nend\n")
        indexer.index_text("/p/base.rb", "class Base\nend\n")
        assert indexer.graph.get_class("Base").subclasses == ["Child"]
        assert indexer.get_all_subclasses("Base") == ["Child"]

    def test_cross_file_call_resolved_later(self, indexer: ProjectIndexer) -> None:
        indexer.index_text("/p/runner.rb", "class Runner\n  def go\n    Report.build_all\n  end\nend\n")
        indexer.index_text("/p/report.rb", "class Report\n  def self.build_all\n  end\nend\n")
        callee = indexer.graph.get_method("Report.build_all")
        assert callee.called_by == ["Runner#go"]
        assert indexer.get_call_hierarchy("Report", "build_all").callers[0].method_id == "Runner#go"

    def test_instantiation_targets_initialize(self, indexer: ProjectIndexer) -> None:
        indexer.index_text("/p/runner.rb", "class Runner\n  def go\n    Report.new\n  end\nend\n")
        edges = [e for e in indexer.graph.method_calls if e.caller == "Runner#go"]
        assert [(e.callee, e.confidence) for e in edges] == [("Report#initialize", 0.9)]

    def test_unknown_receiver_gets_low_confidence(self, indexer: ProjectIndexer) -> None:
        indexer.index_text("/p/runner.rb", "class Runner\n  def go(thing)\n    thing.spin\n  end\nend\n")
        edge = next(e for e in indexer.graph.method_calls if e.callee.endswith("spin"))
        assert edge.callee == "thing#spin"
        assert edge.confidence == 0.3

    def test_top_level_methods_belong_to_object(self, indexer: ProjectIndexer) -> None:
        indexer.index_text("/p/helpers.rb", "def shout(text)\n  text\nend\n")
        method = indexer.graph.get_method("Object#shout")
        assert method is not None
        assert method.class_name is None

    def test_requires_become_dependencies(self, indexer: ProjectIndexer) -> None:
        indexer.index_text("/p/boot.rb", "require 'json'\nrequire_relative 'config'\n")
        targets = [d.target for d in indexer.graph.get_dependencies("/p/boot.rb")]
        assert targets == ["json", "config"]

    @pytest.mark.parametrize("child_first", [True, False])
    def test_inherited_call_independent_of_order(self, indexer: ProjectIndexer, child_first: bool) -> None:
        child = ("/p/admin.rb", "class Admin < Base\n  def run\n    helper\n  end\nend\n")
        parent = ("/p/base.rb", "class Base\n  private\n\n  def helper\n  end\nend\n")
        for uri, text in ([child, parent] if child_first else [parent, child]):
            indexer.index_text(uri, text)

        analysis = indexer.detect_dead_code()

        assert analysis.unused_methods == []
        assert indexer.graph.get_method("Base#helper").called_by == ["Admin#run"]

    def test_inherited_callback_target_indexed_later(self, indexer: ProjectIndexer) -> None:
        indexer.index_text("/p/account.rb", "class Account < Auditable\n  before_save :stamp\nend\n")
        indexer.index_text("/p/auditable.rb", "class Auditable\n  private\n\n  def stamp\n  end\nend\n")
        assert indexer.detect_dead_code().unused_methods == []
        assert indexer.graph.get_method("Auditable#stamp").usage_count == 1


# ── File events ───────────────────────────────────────────────────────────────


class TestFileEvents:
    @pytest.mark.asyncio
    async def test_changed_event(
        self, indexer: ProjectIndexer, workspace: LocalWorkspace, rails_project: Path,
    ) -> None:
        await _indexed(indexer)
        path = rails_project / "lib/legacy_report.rb"
        path.write_text("class LegacyReport\n  def fresh\n  end\nend\n", encoding="utf-8")
        uri = _uri(workspace, "lib/legacy_report.rb")

        assert await indexer.handle_file_event(FileEvent(FileEventType.CHANGED, uri)) is True
        assert indexer.graph.get_method("LegacyReport#fresh") is not None
        assert indexer.graph.get_method("LegacyReport#orphan") is None

    @pytest.mark.asyncio
    async def test_unchanged_event_reports_no_change(
        self, indexer: ProjectIndexer, workspace: LocalWorkspace,
    ) -> None:
        await _indexed(indexer)
        uri = _uri(workspace, "app/models/user.rb")
        assert await indexer.handle_file_event(FileEvent(FileEventType.CHANGED, uri)) is False

    @pytest.mark.asyncio
    async def test_deleted_event(
        self, indexer: ProjectIndexer, workspace: LocalWorkspace, rails_project: Path,
    ) -> None:
        await _indexed(indexer)
        uri = _uri(workspace, "app/models/post.rb")
        (rails_project / "app/models/post.rb").unlink()

        assert await indexer.handle_file_event(FileEvent(FileEventType.DELETED, uri)) is True
        assert indexer.graph.get_class("Post") is None
        assert await indexer.handle_file_event(FileEvent(FileEventType.DELETED, uri)) is False

    @pytest.mark.asyncio
    async def test_routes_change_reloads_routes(
        self, indexer: ProjectIndexer, workspace: LocalWorkspace, rails_project: Path,
    ) -> None:
        await _indexed(indexer)
        routes = rails_project / "config/routes.rb"
        routes.write_text("Rails.application.routes.draw do\n  resources :posts, only: [:index]\nend\n")

        changed = await indexer.handle_file_event(
            FileEvent(FileEventType.CHANGED, _uri(workspace, "config/routes.rb"))
        )

        assert changed is True
        assert indexer.get_route_info("PostsController", "index").path == "/posts"
        assert indexer.get_route_info("UsersController", "show") is None

    @pytest.mark.asyncio
    async def test_ignored_paths(
        self, indexer: ProjectIndexer, workspace: LocalWorkspace, rails_project: Path,
    ) -> None:
        await _indexed(indexer)
        uri = _uri(workspace, "vendor/bundle/gems/rack/lib/rack.rb")
        assert await indexer.handle_file_event(FileEvent(FileEventType.CHANGED, uri)) is False


# ── Queries over the sample application ───────────────────────────────────────


class TestQueries:
    @pytest.mark.asyncio
    async def test_models_and_controllers_are_classified(self, indexer: ProjectIndexer) -> None:
        await _indexed(indexer)
        assert indexer.graph.get_class("User").is_rails_model is True
        assert indexer.graph.get_class("UsersController").is_rails_controller is True
        assert indexer.graph.get_class("LegacyReport").is_rails_model is False

    @pytest.mark.asyncio
    async def test_association_type(self, indexer: ProjectIndexer) -> None:
        await _indexed(indexer)
        posts = indexer.infer_association_types("User")["posts"]
        assert posts.type == "ActiveRecord::Relation<Post>"
        assert posts.confidence == 0.9
        assert posts.source == TypeSource.ASSOCIATION
        assert indexer.infer_association_types("Post")["user"].type == "User"

    @pytest.mark.asyncio
    async def test_schema_types(self, indexer: ProjectIndexer) -> None:
        await _indexed(indexer)
        types = indexer.infer_model_types("User")
        assert list(types)[:3] == ["id", "email", "name"]
        assert types["email"].type == "String"
        inferred = indexer.infer_type("user.email", InferenceContext(local_variables={"user": "User"}))
        assert inferred.source == TypeSource.SCHEMA

    @pytest.mark.asyncio
    async def test_controller_call_to_model(self, indexer: ProjectIndexer) -> None:
        await _indexed(indexer)
        refs = indexer.find_method_references("User", "find")
        assert len(refs) == 1
        assert refs[0].context.containing_class == "UsersController"
        assert refs[0].context.containing_method == "show"

    @pytest.mark.asyncio
    async def test_self_call_edge(self, indexer: ProjectIndexer) -> None:
        await _indexed(indexer)
        hierarchy = indexer.get_call_hierarchy("LegacyReport", "build")
        assert [c.method_id for c in hierarchy.callers] == ["LegacyReport#run"]

    @pytest.mark.asyncio
    async def test_callback_counts_as_usage(self, indexer: ProjectIndexer) -> None:
        await _indexed(indexer)
        assert indexer.graph.get_method("User#normalize_email").usage_count == 1

    @pytest.mark.asyncio
    async def test_dead_code(self, indexer: ProjectIndexer) -> None:
        await _indexed(indexer)
        analysis = indexer.detect_dead_code()
        assert [i.name for i in analysis.unused_methods] == ["LegacyReport#orphan"]
        assert [i.name for i in analysis.unused_constants] == ["LegacyReport::TEMPLATE"]
        assert analysis.unused_classes == []
        assert "### LegacyReport#orphan" in indexer.render_dead_code_report(analysis)

    @pytest.mark.asyncio
    async def test_safe_to_delete(self, indexer: ProjectIndexer) -> None:
        await _indexed(indexer)
        assert indexer.is_safe_to_delete("User").safe is False
        assert indexer.is_safe_to_delete("LegacyReport").safe is True

    @pytest.mark.asyncio
    async def test_type_hierarchy(self, indexer: ProjectIndexer) -> None:
        await _indexed(indexer)
        hierarchy = indexer.get_type_hierarchy("User")
        assert hierarchy.ancestors == ["ApplicationRecord"]
        assert hierarchy.descendants == []

    @pytest.mark.asyncio
    async def test_search(self, indexer: ProjectIndexer) -> None:
        await _indexed(indexer)
        results = indexer.search("User")
        assert results[0].symbol.name == "User"
        assert results[0].symbol.kind == SymbolKind.CLASS

    @pytest.mark.asyncio
    async def test_routes_and_components(self, indexer: ProjectIndexer) -> None:
        await _indexed(indexer)
        assert len(indexer.get_controller_routes("UsersController")) == 7
        components = indexer.get_rails_components("User")
        assert components.model is not None
        assert components.controller is not None

    @pytest.mark.asyncio
    async def test_stats(self, indexer: ProjectIndexer) -> None:
        await _indexed(indexer)
        stats = indexer.get_stats()
        assert stats.indexed_files == 6
        assert stats.routes == 8
        assert stats.tables == 2
        assert stats.graph.models == 2
        assert stats.graph.controllers == 1

    @pytest.mark.asyncio
    async def test_dispose_clears_state(self, indexer: ProjectIndexer) -> None:
        await _indexed(indexer)
        indexer.dispose()
        assert indexer.get_stats().graph.classes == 0
        assert indexer.get_stats().indexed_files == 0

    @pytest.mark.asyncio
    async def test_dispose_after_successful_run_saves_cache(
        self, indexer: ProjectIndexer, rails_project: Path,
    ) -> None:
        await _indexed(indexer)
        cache_path = rails_project / ".railsight" / "index.json"
        cache_path.unlink()

        indexer.dispose()

        assert len(HashCache(cache_path).load()) == 6
