"""SemanticGraph: the in-memory store behind every query.

One graph instance belongs to one workspace index.  It is passed by
reference to the components that read it; nothing here is a module-level
singleton, so several independent indexes can coexist in one process.

All cross-reference bookkeeping lives here:

* ``ClassInfo.subclasses`` and ``ClassInfo.methods``
* ``ModuleInfo.methods``, ``included_in`` and ``extended_in``
* ``MethodInfo.calls``, ``called_by`` and ``usage_count``

Edges are resolved independently of insertion order.  Adding a class adopts
subclasses and methods registered before it, and adding a module picks up
earlier ``include``/``extend`` edges.  Calls that carry a ``CallTarget`` are
re-resolved along the current ancestry by ``refresh_call_links`` once the
hierarchy has changed.  Every entity remembers the file it came from so
``remove_file`` can retract a file's contributions before the file is
indexed again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from railsight.index.models import (
    Association,
    CallTarget,
    ClassInfo,
    DependencyType,
    FileDependency,
    Location,
    MethodCallEdge,
    MethodInfo,
    ModuleInfo,
    Reference,
    TypeInformation,
    method_id,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GraphStats:
    classes: int = 0
    modules: int = 0
    methods: int = 0
    method_calls: int = 0
    references: int = 0
    associations: int = 0
    type_infos: int = 0
    dependencies: int = 0
    models: int = 0
    controllers: int = 0


@dataclass
class CallHierarchy:
    """Reverse-call tree rooted at one method."""

    method_id: str
    calls: list[str] = field(default_factory=list)
    callers: list[CallHierarchy] = field(default_factory=list)


@dataclass(frozen=True)
class _MixinEdge:
    owner: str
    module: str
    kind: DependencyType
    uri: str


@dataclass(frozen=True)
class _Usage:
    method_id: str
    location: Location
    target: CallTarget | None = None


class SemanticGraph:
    """Mutable semantic graph for one workspace."""

    def __init__(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self.classes: dict[str, ClassInfo] = {}
        self.modules: dict[str, ModuleInfo] = {}
        self.methods: dict[str, MethodInfo] = {}
        self.method_calls: list[MethodCallEdge] = []
        self.references: dict[str, list[Reference]] = {}
        self.associations: dict[str, list[Association]] = {}
        self.type_info: dict[str, TypeInformation] = {}
        self.dependencies: dict[str, list[FileDependency]] = {}
        self._mixin_edges: list[_MixinEdge] = []
        self._usages: list[_Usage] = []
        # Files that declare each class/module; Ruby classes can be reopened.
        self._contributors: dict[str, set[str]] = {}
        # Set when the hierarchy changed after dispatched calls were resolved.
        self._links_stale = False

    # ── Mutation ──────────────────────────────────────────────────────────────

    def add_class(self, info: ClassInfo) -> ClassInfo:
        """Insert a class, or merge a reopened class into the existing record."""
        fqn = info.fully_qualified_name
        self._links_stale = True
        self._contributors.setdefault(fqn, set()).add(info.location.uri)
        existing = self.classes.get(fqn)
        if existing is not None:
            for mixin in info.mixins:
                if mixin not in existing.mixins:
                    existing.mixins.append(mixin)
            existing.constants.update(info.constants)
            existing.is_rails_model = existing.is_rails_model or info.is_rails_model
            existing.is_rails_controller = existing.is_rails_controller or info.is_rails_controller
            if existing.superclass is None and info.superclass:
                existing.superclass = info.superclass
                self._link_superclass(existing)
            return existing

        self.classes[fqn] = info
        self._link_superclass(info)

        # Adopt subclasses and methods that arrived before this class did.
        for other in self.classes.values():
            if other is info or other.superclass is None:
                continue
            if self._resolve_superclass(other) == fqn:
                other.superclass = fqn
                _append_unique(info.subclasses, other.fully_qualified_name)
        for method in self.methods.values():
            if method.class_name == fqn:
                _append_unique(info.methods, method.id)
        return info

    def add_module(self, info: ModuleInfo) -> ModuleInfo:
        fqn = info.fully_qualified_name
        self._links_stale = True
        self._contributors.setdefault(fqn, set()).add(info.location.uri)
        existing = self.modules.get(fqn)
        if existing is not None:
            return existing
        self.modules[fqn] = info
        for edge in self._mixin_edges:
            if self._resolve_module(edge.module, edge.owner) == fqn:
                self._register_mixin(info, edge)
        for method in self.methods.values():
            if method.class_name == fqn:
                _append_unique(info.methods, method.id)
        return info

    def add_mixin(self, owner: str, module: str, kind: DependencyType, uri: str) -> None:
        """Record ``include``/``extend``/``prepend`` of *module* into *owner*."""
        edge = _MixinEdge(owner=owner, module=module, kind=kind, uri=uri)
        self._links_stale = True
        self._mixin_edges.append(edge)
        cls = self.classes.get(owner)
        if cls is not None:
            _append_unique(cls.mixins, module)
        target = self.modules.get(self._resolve_module(module, owner) or "")
        if target is not None:
            self._register_mixin(target, edge)

    def add_method(self, info: MethodInfo) -> MethodInfo:
        self._links_stale = True
        self.methods[info.id] = info
        if info.class_name:
            owner = self.classes.get(info.class_name) or self.modules.get(info.class_name)
            if owner is not None:
                _append_unique(owner.methods, info.id)
        for edge in self.method_calls:
            if edge.callee == info.id:
                _append_unique(info.called_by, edge.caller)
                info.usage_count += 1
            if edge.caller == info.id:
                _append_unique(info.calls, edge.callee)
        info.usage_count += sum(1 for u in self._usages if u.method_id == info.id)
        return info

    def add_method_call(self, edge: MethodCallEdge) -> None:
        """Record a call edge.

        Edges carrying a ``target`` are resolved against the current hierarchy
        here and again by ``refresh_call_links``.
        """
        edge = self._dispatch(edge, {})
        self.method_calls.append(edge)
        caller = self.methods.get(edge.caller)
        if caller is not None:
            _append_unique(caller.calls, edge.callee)
        callee = self.methods.get(edge.callee)
        if callee is not None:
            _append_unique(callee.called_by, edge.caller)
            callee.usage_count += 1

    def add_usage(self, method_id: str, location: Location, target: CallTarget | None = None) -> None:
        """Count a non-call use of a method, e.g. ``before_save :normalize``."""
        usage = self._dispatch_usage(_Usage(method_id=method_id, location=location, target=target), {})
        self._usages.append(usage)
        method = self.methods.get(usage.method_id)
        if method is not None:
            method.usage_count += 1

    def refresh_call_links(self) -> None:
        """Re-resolve targeted calls and usages after the hierarchy changed.

        Makes the call graph independent of the order files were indexed in.
        """
        if not self._links_stale:
            return
        cache: dict[str, list[MethodInfo]] = {}
        self.method_calls = [self._dispatch(e, cache) for e in self.method_calls]
        self._usages = [self._dispatch_usage(u, cache) for u in self._usages]
        self._rebuild_call_links()
        self._links_stale = False

    def add_reference(self, reference: Reference) -> None:
        """Append a reference.  References are never deduplicated."""
        self.references.setdefault(reference.symbol_name, []).append(reference)

    def add_association(self, association: Association) -> None:
        self.associations.setdefault(association.source_model, []).append(association)

    def add_type_info(self, info: TypeInformation) -> bool:
        """Store *info* unless a more reliable entry already exists for its key.

        A stored entry is replaced only by a strictly higher-priority source,
        or by the same source with higher confidence.  Returns True when
        *info* was stored.
        """
        current = self.type_info.get(info.symbol)
        if current is not None:
            if info.source.priority > current.source.priority:
                return False
            if info.source == current.source and info.confidence <= current.confidence:
                return False
        self.type_info[info.symbol] = info
        return True

    def add_dependency(self, dependency: FileDependency) -> None:
        self.dependencies.setdefault(dependency.source_uri, []).append(dependency)

    def remove_file(self, uri: str) -> None:
        """Retract everything *uri* contributed to the graph."""
        for fqn in [f for f, files in self._contributors.items() if uri in files]:
            files = self._contributors[fqn]
            files.discard(uri)
            if files:
                self._relocate(fqn, next(iter(files)))
                continue
            del self._contributors[fqn]
            cls = self.classes.pop(fqn, None)
            if cls is not None:
                parent = self.classes.get(cls.superclass or "")
                if parent is not None and fqn in parent.subclasses:
                    parent.subclasses.remove(fqn)
            self.modules.pop(fqn, None)

        for edge in [e for e in self._mixin_edges if e.uri == uri]:
            self._mixin_edges.remove(edge)
            self._unregister_mixin(edge)

        for mid in [m.id for m in self.methods.values() if m.location.uri == uri]:
            method = self.methods.pop(mid)
            owner = self.classes.get(method.class_name or "") or self.modules.get(method.class_name or "")
            if owner is not None and mid in owner.methods:
                owner.methods.remove(mid)

        self.method_calls = [e for e in self.method_calls if e.location.uri != uri]
        self._usages = [u for u in self._usages if u.location.uri != uri]
        self._links_stale = True
        self.refresh_call_links()

        for name in list(self.references):
            kept = [r for r in self.references[name] if r.location.uri != uri]
            if kept:
                self.references[name] = kept
            else:
                del self.references[name]

        for model in list(self.associations):
            kept_assocs = [a for a in self.associations[model] if a.location.uri != uri]
            if kept_assocs:
                self.associations[model] = kept_assocs
            else:
                del self.associations[model]

        for key in [k for k, t in self.type_info.items() if t.location.uri == uri]:
            del self.type_info[key]
        self.dependencies.pop(uri, None)

    def clear(self) -> None:
        self._reset()

    # ── Queries ───────────────────────────────────────────────────────────────

    def get_class(self, name: str) -> ClassInfo | None:
        return self.classes.get(name)

    def get_module(self, name: str) -> ModuleInfo | None:
        return self.modules.get(name)

    def get_method(self, method_id: str) -> MethodInfo | None:
        return self.methods.get(method_id)

    def get_class_methods(self, class_name: str) -> list[MethodInfo]:
        owner = self.classes.get(class_name) or self.modules.get(class_name)
        if owner is None:
            return []
        return [self.methods[m] for m in owner.methods if m in self.methods]

    def get_references(self, symbol: str) -> list[Reference]:
        return list(self.references.get(symbol, []))

    def get_associations(self, model: str) -> list[Association]:
        return list(self.associations.get(model, []))

    def get_type_info(self, key: str) -> TypeInformation | None:
        return self.type_info.get(key)

    def get_dependencies(self, uri: str) -> list[FileDependency]:
        return list(self.dependencies.get(uri, []))

    def resolve_constant(self, name: str, namespace: str | None = None) -> str | None:
        """Resolve a constant path lexically, innermost namespace first."""
        if name.startswith("::"):
            name = name[2:]
            return name if name in self.classes or name in self.modules else None
        scope = namespace
        while scope:
            candidate = f"{scope}::{name}"
            if candidate in self.classes or candidate in self.modules:
                return candidate
            scope = scope.rsplit("::", 1)[0] if "::" in scope else None
        if name in self.classes or name in self.modules:
            return name
        return None

    def get_inheritance_chain(self, class_name: str) -> list[str]:
        """The class followed by its ancestors, nearest first.

        The walk stops at the first superclass that is not in the graph
        (typically a framework class) after including its name.
        """
        chain: list[str] = []
        current: str | None = class_name
        while current and current not in chain:
            chain.append(current)
            cls = self.classes.get(current)
            if cls is None or not cls.superclass:
                break
            current = self._resolve_superclass(cls) or cls.superclass
        return chain

    def get_all_subclasses(self, class_name: str) -> list[str]:
        """Every transitive subclass of *class_name*, depth-first."""
        result: list[str] = []
        visited: set[str] = {class_name}

        def walk(name: str) -> None:
            cls = self.classes.get(name)
            if cls is None:
                return
            for sub in cls.subclasses:
                if sub in visited:
                    continue
                visited.add(sub)
                result.append(sub)
                walk(sub)

        walk(class_name)
        return result

    def get_all_available_methods(self, class_name: str) -> list[MethodInfo]:
        """Own, inherited and mixed-in methods; the nearest definition wins."""
        seen_names: set[str] = set()
        visited: set[str] = set()
        result: list[MethodInfo] = []

        def collect(owner: str) -> None:
            if owner in visited:
                return
            visited.add(owner)
            for method in self.get_class_methods(owner):
                if method.name not in seen_names:
                    seen_names.add(method.name)
                    result.append(method)
            cls = self.classes.get(owner)
            if cls is None:
                return
            for mixin in cls.mixins:
                resolved = self._resolve_module(mixin, owner)
                if resolved:
                    collect(resolved)
            if cls.superclass:
                parent = self._resolve_superclass(cls)
                if parent:
                    collect(parent)

        collect(class_name)
        return result

    def find_method(self, owner: str, name: str, class_level: bool = False) -> str:
        """Resolve *name* along *owner*'s ancestry, defaulting to *owner* itself."""
        return self._find_method(owner, name, class_level, {})

    def get_call_hierarchy(self, method_id: str) -> CallHierarchy:
        """Walk callers recursively; each method appears at most once."""
        self.refresh_call_links()
        visited: set[str] = set()

        def build(mid: str) -> CallHierarchy:
            visited.add(mid)
            method = self.methods.get(mid)
            node = CallHierarchy(method_id=mid, calls=list(method.calls) if method else [])
            if method is None:
                return node
            for caller in method.called_by:
                if caller not in visited:
                    node.callers.append(build(caller))
            return node

        return build(method_id)

    def get_stats(self) -> GraphStats:
        return GraphStats(
            classes=len(self.classes),
            modules=len(self.modules),
            methods=len(self.methods),
            method_calls=len(self.method_calls),
            references=sum(len(refs) for refs in self.references.values()),
            associations=sum(len(a) for a in self.associations.values()),
            type_infos=len(self.type_info),
            dependencies=sum(len(d) for d in self.dependencies.values()),
            models=sum(1 for c in self.classes.values() if c.is_rails_model),
            controllers=sum(1 for c in self.classes.values() if c.is_rails_controller),
        )

    # ── Internals ─────────────────────────────────────────────────────────────

    def _resolve_superclass(self, cls: ClassInfo) -> str | None:
        if not cls.superclass:
            return None
        return self.resolve_constant(cls.superclass, cls.namespace)

    def _resolve_module(self, name: str, owner: str) -> str | None:
        name = name.lstrip(":")
        scope: str | None = owner
        while scope:
            candidate = f"{scope}::{name}"
            if candidate in self.modules:
                return candidate
            scope = scope.rsplit("::", 1)[0] if "::" in scope else None
        return name if name in self.modules else None

    def _link_superclass(self, cls: ClassInfo) -> None:
        parent_name = self._resolve_superclass(cls)
        if parent_name is None:
            return
        parent = self.classes.get(parent_name)
        if parent is not None:
            cls.superclass = parent_name
            _append_unique(parent.subclasses, cls.fully_qualified_name)

    @staticmethod
    def _register_mixin(module: ModuleInfo, edge: _MixinEdge) -> None:
        if edge.kind == DependencyType.EXTEND:
            _append_unique(module.extended_in, edge.owner)
        else:
            _append_unique(module.included_in, edge.owner)

    def _unregister_mixin(self, edge: _MixinEdge) -> None:
        still_linked = any(
            e.owner == edge.owner and e.module == edge.module for e in self._mixin_edges
        )
        if still_linked:
            return
        cls = self.classes.get(edge.owner)
        if cls is not None and edge.module in cls.mixins:
            cls.mixins.remove(edge.module)
        module = self.modules.get(self._resolve_module(edge.module, edge.owner) or "")
        if module is not None:
            for bucket in (module.included_in, module.extended_in):
                if edge.owner in bucket:
                    bucket.remove(edge.owner)

    def _relocate(self, fqn: str, uri: str) -> None:
        """Point a reopened class/module at a file that still declares it."""
        entity = self.classes.get(fqn) or self.modules.get(fqn)
        if entity is not None and entity.location.uri not in self._contributors.get(fqn, ()):
            entity.location = Location(uri=uri)

    def _find_method(
        self,
        owner: str,
        name: str,
        class_level: bool,
        cache: dict[str, list[MethodInfo]],
    ) -> str:
        available = cache.get(owner)
        if available is None:
            available = cache[owner] = self.get_all_available_methods(owner)
        for method in available:
            if method.name == name and method.is_class_method == class_level:
                return method.id
        return method_id(owner, name, class_level)

    def _target_owner(self, target: CallTarget) -> str:
        if target.constant is None:
            return target.owner
        return self.resolve_constant(target.constant, target.scope) or target.constant

    def _dispatch(self, edge: MethodCallEdge, cache: dict[str, list[MethodInfo]]) -> MethodCallEdge:
        if edge.target is None:
            return edge
        owner = self._target_owner(edge.target)
        callee = self._find_method(owner, edge.target.method, edge.target.class_level, cache)
        if callee == edge.callee and owner == edge.receiver_type:
            return edge
        return replace(edge, callee=callee, receiver_type=owner)

    def _dispatch_usage(self, usage: _Usage, cache: dict[str, list[MethodInfo]]) -> _Usage:
        if usage.target is None:
            return usage
        owner = self._target_owner(usage.target)
        resolved = self._find_method(owner, usage.target.method, usage.target.class_level, cache)
        return usage if resolved == usage.method_id else replace(usage, method_id=resolved)

    def _rebuild_call_links(self) -> None:
        for method in self.methods.values():
            method.calls = []
            method.called_by = []
            method.usage_count = 0
        for edge in self.method_calls:
            caller = self.methods.get(edge.caller)
            if caller is not None:
                _append_unique(caller.calls, edge.callee)
            callee = self.methods.get(edge.callee)
            if callee is not None:
                _append_unique(callee.called_by, edge.caller)
                callee.usage_count += 1
        for usage in self._usages:
            method = self.methods.get(usage.method_id)
            if method is not None:
                method.usage_count += 1


def _append_unique(items: list[str], value: str) -> None:
    if value not in items:
        items.append(value)
