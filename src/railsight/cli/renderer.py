"""Rich-based output rendering for the CLI."""

from __future__ import annotations

from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table
from rich.text import Text

from railsight.index.conventions import RailsComponents, RouteInfo
from railsight.index.models import Location
from railsight.index.project_indexer import IndexerStats, IndexRunResult, IndexState
from railsight.index.search import SearchResult


class Renderer:
    """Renders formatted output to the terminal."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def markdown(self, text: str) -> None:
        """Render markdown text."""
        self.console.print(Markdown(text))

    def error(self, message: str) -> None:
        """Display an error message."""
        self.console.print(Text(f"Error: {message}", style="bold red"))

    def info(self, message: str) -> None:
        """Display an info message."""
        self.console.print(Text(message, style="dim"))

    def success(self, message: str) -> None:
        """Display a success message."""
        self.console.print(Text(message, style="bold green"))

    def warning(self, message: str) -> None:
        """Display a warning."""
        self.console.print(Text(f"Warning: {message}", style="yellow"))

    def run_result(self, result: IndexRunResult) -> None:
        """Summarise a workspace indexing run."""
        if result.state == IndexState.IDLE and not result.can_retry:
            self.success(result.message)
        else:
            self.warning(result.message)
            if result.can_retry:
                self.info("Run the command again to retry.")
        self.info(
            f"{result.total_files} files · {result.indexed} indexed · "
            f"{result.skipped} unchanged · {result.failed} failed · "
            f"{result.changed_since_last_session} changed since last session · "
            f"{result.duration_seconds:.2f}s"
        )

    def stats(self, stats: IndexerStats) -> None:
        g = stats.graph
        table = Table(title="Index", show_header=False, expand=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Count", justify="right")
        for label, value in (
            ("Files", stats.indexed_files),
            ("Symbols", stats.symbols),
            ("Classes", g.classes),
            ("  models", g.models),
            ("  controllers", g.controllers),
            ("Modules", g.modules),
            ("Methods", g.methods),
            ("Call edges", g.method_calls),
            ("References", g.references),
            ("Associations", g.associations),
            ("Tables", stats.tables),
            ("Routes", stats.routes),
        ):
            table.add_row(label, str(value))
        self.console.print(table)

    def search_results(self, results: list[SearchResult]) -> None:
        if not results:
            self.info("No matches.")
            return
        table = Table(expand=False)
        table.add_column("Score", justify="right", style="magenta")
        table.add_column("Kind", style="cyan")
        table.add_column("Symbol", style="bold")
        table.add_column("Location", style="dim")
        for r in results:
            name = f"{r.symbol.container}::{r.symbol.name}" if r.symbol.container else r.symbol.name
            table.add_row(
                f"{r.score:.1f}",
                r.symbol.kind.value,
                name,
                _format_location(r.symbol.location),
            )
        self.console.print(table)

    def components(self, model: str, components: RailsComponents) -> None:
        table = Table(title=model, show_header=False, expand=False)
        table.add_column("Artifact", style="cyan")
        table.add_column("Path")
        rows = [
            ("model", components.model),
            ("controller", components.controller),
            ("model spec", components.specs.model),
            ("controller spec", components.specs.controller),
            ("request spec", components.specs.request),
            ("migration", components.migration),
            ("factory", components.factory),
            ("serializer", components.serializer),
        ]
        for label, location in rows:
            table.add_row(label, location.uri if location else Text("-", style="dim"))
        for view in components.views:
            table.add_row("view", view.uri)
        self.console.print(table)

    def routes(self, routes: list[RouteInfo]) -> None:
        if not routes:
            self.info("No routes.")
            return
        table = Table(expand=False)
        table.add_column("Verb", style="green")
        table.add_column("Path")
        table.add_column("Controller#Action", style="cyan")
        table.add_column("Name", style="dim")
        for route in sorted(routes, key=lambda r: (r.controller, r.path, r.http_method)):
            table.add_row(route.http_method, route.path, route.key, route.name or "")
        self.console.print(table)


def _format_location(location: Location) -> str:
    return f"{location.uri}:{location.line + 1}"
