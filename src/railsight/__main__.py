"""Railsight - convention-aware semantic index for Rails projects."""

import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

_HELP = """\
Usage: railsight index [--dir <path>]
       railsight search <query> [--kind class|method|constant] [--limit <n>] [--dir <path>]
       railsight dead-code [--dir <path>]
       railsight components <Model> [--dir <path>]
       railsight routes [<Controller>] [--dir <path>]

Every command indexes the workspace first; the graph is not persisted.

Environment:
  RAILSIGHT_LOG_LEVEL              Logging level (default INFO)
  RAILSIGHT_INDEX_TIMEOUT_SECONDS  Wall-clock limit for one indexing run
"""

_COMMANDS = ("index", "search", "dead-code", "components", "routes")


def main() -> None:
    """Entry point for the railsight CLI."""
    args = sys.argv[1:]
    if not args or args[0] in ("--help", "-h") or args[0] not in _COMMANDS:
        print(_HELP)
        sys.exit(0 if not args or args[0] in ("--help", "-h") else 1)

    command, rest = args[0], args[1:]
    options = _parse_options(rest)
    _configure_logging()
    sys.exit(asyncio.run(_run(command, options)))


def _parse_options(args: list[str]) -> dict[str, str | list[str]]:
    """Split ``--flag value`` pairs from positional arguments."""
    options: dict[str, str | list[str]] = {"positional": []}
    positional: list[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ("--dir", "--kind", "--limit") and i + 1 < len(args):
            options[arg[2:]] = args[i + 1]
            i += 2
        elif arg.startswith("--"):
            print(f"Unknown argument: {arg}")
            print("Run 'railsight --help' for usage.")
            sys.exit(1)
        else:
            positional.append(arg)
            i += 1
    options["positional"] = positional
    return options


def _configure_logging() -> None:
    from rich.logging import RichHandler

    from railsight.core.config import EnvSettings

    level = EnvSettings().log_level.upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(show_path=False)],
    )


async def _run(command: str, options: dict[str, str | list[str]]) -> int:
    from railsight.cli.renderer import Renderer
    from railsight.core.config import load_config
    from railsight.index.project_indexer import ProjectIndexer
    from railsight.index.search import SearchContext, SearchScope
    from railsight.index.workspace import LocalWorkspace

    renderer = Renderer()
    project_dir = Path(str(options.get("dir") or Path.cwd())).resolve()
    positional = list(options["positional"])
    if not project_dir.is_dir():
        renderer.error(f"Not a directory: {project_dir}")
        return 1

    config = load_config(project_dir)
    indexer = ProjectIndexer(LocalWorkspace(project_dir, config.indexer), config)
    await indexer.initialize()

    def _progress(done: int, total: int) -> None:
        print(f"\r  [{done}/{total}] files", end="", flush=True)

    renderer.info(f"Indexing {project_dir}...")
    result = await indexer.index_workspace(progress_callback=_progress)
    print()
    renderer.run_result(result)

    try:
        if command == "index":
            renderer.stats(indexer.get_stats())
        elif command == "search":
            if not positional:
                renderer.error("search needs a query")
                return 1
            kind = str(options.get("kind", "any"))
            try:
                scope = SearchScope(kind)
            except ValueError:
                renderer.error(f"Unknown kind: {kind}")
                return 1
            try:
                limit = int(str(options.get("limit", config.search.limit)))
            except ValueError:
                renderer.error(f"--limit must be an integer, got {options.get('limit')}")
                return 1
            if limit < 1:
                renderer.error("--limit must be at least 1")
                return 1
            renderer.search_results(
                indexer.search(" ".join(positional), SearchContext(search_type=scope), limit)
            )
        elif command == "dead-code":
            renderer.markdown(indexer.render_dead_code_report())
        elif command == "components":
            if not positional:
                renderer.error("components needs a model name")
                return 1
            renderer.components(positional[0], indexer.get_rails_components(positional[0]))
        elif command == "routes":
            if positional:
                routes = indexer.get_controller_routes(positional[0])
            else:
                routes = list(indexer.conventions.routes.values())
            renderer.routes(routes)
    finally:
        indexer.dispose()
    return 0


if __name__ == "__main__":
    main()
