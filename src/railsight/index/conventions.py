"""ConventionResolver: hop between Rails artifacts by naming convention.

Component lookups only check whether conventionally named files exist;
they never read them.  Routes are the exception: ``config/routes.rb`` is
scanned line by line for ``resources``/``resource`` declarations and explicit
``verb 'path', to: 'controller#action'`` routes.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from railsight.index.inflection import camel_to_snake, pluralize, singularize, snake_to_camel
from railsight.index.models import Location

logger = logging.getLogger(__name__)

REST_ACTIONS: list[tuple[str, str, str]] = [
    # (action, verb, path suffix)
    ("index", "GET", ""),
    ("show", "GET", "/:id"),
    ("new", "GET", "/new"),
    ("create", "POST", ""),
    ("edit", "GET", "/:id/edit"),
    ("update", "PATCH", "/:id"),
    ("destroy", "DELETE", "/:id"),
]

# ``resource :profile``: no index, no :id segment.
SINGULAR_REST_ACTIONS: list[tuple[str, str, str]] = [
    ("show", "GET", ""),
    ("new", "GET", "/new"),
    ("create", "POST", ""),
    ("edit", "GET", "/edit"),
    ("update", "PATCH", ""),
    ("destroy", "DELETE", ""),
]

VIEW_TEMPLATE_SUFFIXES = (".html.erb", ".html.haml", ".html.slim", ".json.jbuilder")

_RESOURCES_RE = re.compile(r"^(resources|resource)\s+:(\w+)(.*)$")
_EXPLICIT_ROUTE_RE = re.compile(
    r"""^(get|post|put|patch|delete)\s+['"](.+?)['"]\s*,\s*to:\s*['"]([\w/]+)#(\w+)['"]"""
    r"""(?:.*?\bas:\s*:?['"]?(\w+))?"""
)
_NAMESPACE_RE = re.compile(r"^namespace\s+:(\w+)\s+do\b")
_ACTION_LIST_RE = re.compile(r"\b(only|except):\s*(\[[^\]]*\]|:\w+)")
_DO_RE = re.compile(r"\bdo\s*(\|[^|]*\|)?\s*$")


@dataclass(frozen=True)
class RouteInfo:
    path: str
    http_method: str
    controller: str
    action: str
    name: str | None = None
    location: Location | None = None

    @property
    def key(self) -> str:
        return f"{self.controller}#{self.action}"


@dataclass
class RailsSpecs:
    model: Location | None = None
    controller: Location | None = None
    request: Location | None = None


@dataclass
class RailsComponents:
    model: Location | None = None
    controller: Location | None = None
    views: list[Location] = field(default_factory=list)
    specs: RailsSpecs = field(default_factory=RailsSpecs)
    migration: Location | None = None
    factory: Location | None = None
    serializer: Location | None = None


def controller_for(snake_path: str) -> str:
    """``admin/users`` -> ``Admin::UsersController``."""
    return f"{snake_to_camel(snake_path)}Controller"


def _selected_actions(
    options: str,
    actions: list[tuple[str, str, str]] = REST_ACTIONS,
) -> list[tuple[str, str, str]]:
    m = _ACTION_LIST_RE.search(options)
    if not m:
        return actions
    names = set(re.findall(r":(\w+)", m.group(2)))
    if m.group(1) == "only":
        return [a for a in actions if a[0] in names]
    return [a for a in actions if a[0] not in names]


def parse_routes(text: str, uri: str = "") -> dict[str, RouteInfo]:
    """Parse routes.rb text into a ``Controller#action`` keyed table.

    ``namespace`` blocks prefix both the path and the controller module;
    routes nested in a ``resources :users do`` block get a
    ``/users/:user_id`` path prefix only.  A later declaration for the
    same key replaces an earlier one.
    """
    routes: dict[str, RouteInfo] = {}
    # One entry per open ``do`` block: (kind, segment), kind is
    # "namespace", "resource" or "" for any other block.
    blocks: list[tuple[str, str]] = []

    for lineno, raw in enumerate(text.splitlines()):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if re.match(r"^end\b", line):
            if blocks:
                blocks.pop()
            continue

        namespace = [segment for kind, segment in blocks if kind == "namespace"]
        prefix = "".join(f"/{segment}" for kind, segment in blocks if kind)
        location = Location(uri=uri, line=lineno)
        opened: tuple[str, str] = ("", "")

        m = _NAMESPACE_RE.match(line)
        if m:
            blocks.append(("namespace", m.group(1)))
            continue

        m = _RESOURCES_RE.match(line)
        if m:
            singular = m.group(1) == "resource"
            resource, options = m.group(2), m.group(3)
            if singular:
                controller = controller_for("/".join(namespace + [pluralize(resource)]))
                actions = _selected_actions(options, SINGULAR_REST_ACTIONS)
                opened = ("resource", resource)
            else:
                controller = controller_for("/".join(namespace + [resource]))
                actions = _selected_actions(options)
                opened = ("resource", f"{resource}/:{singularize(resource)}_id")
            base = f"{prefix}/{resource}"
            for action, verb, suffix in actions:
                route = RouteInfo(
                    path=base + suffix,
                    http_method=verb,
                    controller=controller,
                    action=action,
                    location=location,
                )
                routes[route.key] = route

        m = _EXPLICIT_ROUTE_RE.match(line)
        if m:
            verb, path, target, action, name = m.groups()
            controller = controller_for("/".join(namespace + [target]))
            if not path.startswith("/"):
                path = f"/{path}"
            route = RouteInfo(
                path=prefix + path,
                http_method=verb.upper(),
                controller=controller,
                action=action,
                name=name,
                location=location,
            )
            routes[route.key] = route

        if _DO_RE.search(line):
            blocks.append(opened)

    return routes


class ConventionResolver:
    """Filesystem-convention lookups rooted at a Rails workspace.

    Parameters
    ----------
    root:
        Workspace root (the directory holding ``app/`` and ``config/``).
    """

    def __init__(self, root: Path) -> None:
        self._root = root
        self._routes: dict[str, RouteInfo] = {}

    # ── Components ────────────────────────────────────────────────────────────

    def get_rails_components(self, model_name: str) -> RailsComponents:
        snake = camel_to_snake(model_name)
        plural = pluralize(snake)
        return RailsComponents(
            model=self._existing("app", "models", f"{snake}.rb"),
            controller=self._existing("app", "controllers", f"{plural}_controller.rb"),
            views=self._list_dir("app", "views", plural),
            specs=RailsSpecs(
                model=self._existing("spec", "models", f"{snake}_spec.rb"),
                controller=self._existing("spec", "controllers", f"{plural}_controller_spec.rb"),
                request=self._existing("spec", "requests", f"{plural}_spec.rb"),
            ),
            migration=self._find_migration(plural.split("/")[-1]),
            factory=self._existing("spec", "factories", f"{plural}.rb"),
            serializer=self._existing("app", "serializers", f"{snake}_serializer.rb"),
        )

    def find_view_for_action(self, controller_name: str, action: str) -> Location | None:
        resource = re.sub(r"Controller$", "", controller_name)
        view_dir = camel_to_snake(resource)
        for suffix in VIEW_TEMPLATE_SUFFIXES:
            found = self._existing("app", "views", view_dir, f"{action}{suffix}")
            if found is not None:
                return found
        return None

    def _existing(self, *parts: str) -> Location | None:
        path = self._root.joinpath(*parts)
        return Location(uri=str(path)) if path.is_file() else None

    def _list_dir(self, *parts: str) -> list[Location]:
        directory = self._root.joinpath(*parts)
        if not directory.is_dir():
            return []
        return [Location(uri=str(p)) for p in sorted(directory.iterdir()) if p.is_file()]

    def _find_migration(self, table: str) -> Location | None:
        directory = self._root / "db" / "migrate"
        if not directory.is_dir():
            return None
        for path in sorted(directory.glob(f"*_create_{table}.rb")):
            return Location(uri=str(path))
        return None

    # ── Routes ────────────────────────────────────────────────────────────────

    def load_routes(self, routes_path: Path) -> int:
        """(Re)parse the routes file.  A missing file yields an empty table."""
        try:
            text = routes_path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.info("No routes loaded from %s: %s", routes_path, exc)
            self._routes = {}
            return 0
        self._routes = parse_routes(text, str(routes_path))
        logger.info("Parsed %d routes", len(self._routes))
        return len(self._routes)

    def load_routes_text(self, text: str, uri: str = "") -> int:
        self._routes = parse_routes(text, uri)
        return len(self._routes)

    @property
    def routes(self) -> dict[str, RouteInfo]:
        return dict(self._routes)

    def get_route_info(self, controller: str, action: str) -> RouteInfo | None:
        return self._routes.get(f"{controller}#{action}")

    def get_controller_routes(self, controller: str) -> list[RouteInfo]:
        return [r for r in self._routes.values() if r.controller == controller]
