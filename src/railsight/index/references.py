"""ReferenceTracker: reverse lookups and convention-aware dead-code detection.

Dead code here is a heuristic signal, not proof of unreachability.  Ruby
code is routinely reached through ``send``, string constantization and
framework conventions, so the rules below are conservative and every
flagged item carries a confidence and a list of things to check before
deleting it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from railsight.index.graph import SemanticGraph
from railsight.index.models import (
    ClassInfo,
    Location,
    Reference,
    ReferenceContext,
    ReferenceType,
    Visibility,
)

logger = logging.getLogger(__name__)

# ActiveRecord lifecycle callbacks; methods with these names are never dead.
CALLBACK_METHODS = frozenset({
    "before_validation", "after_validation",
    "before_save", "after_save",
    "before_create", "after_create",
    "before_update", "after_update",
    "before_destroy", "after_destroy",
    "around_save", "around_create", "around_update", "around_destroy",
})

_FRAMEWORK_SUFFIXES = ("Mailer", "Job", "Serializer")

_CLASS_SUGGESTIONS = [
    "Remove the class if no longer needed",
    "Check if class is used via metaprogramming",
    "Verify class is not loaded dynamically",
]
_METHOD_SUGGESTIONS = [
    "Remove the method if no longer needed",
    "Check if method is called via send() or metaprogramming",
    "Make the method public if it should be part of API",
]
_CONSTANT_SUGGESTIONS = [
    "Remove the constant if no longer needed",
    "Check if constant is used in config files",
    "Verify constant is not referenced as string",
]


@dataclass
class ReferenceInfo:
    symbol: str
    references: list[Reference] = field(default_factory=list)
    definitions: list[Reference] = field(default_factory=list)
    reads: list[Reference] = field(default_factory=list)
    writes: list[Reference] = field(default_factory=list)
    calls: list[Reference] = field(default_factory=list)

    @property
    def usage_count(self) -> int:
        """References other than definitions."""
        return len(self.reads) + len(self.writes) + len(self.calls)


@dataclass(frozen=True)
class DeadCodeItem:
    name: str
    location: Location
    reason: str
    confidence: float
    suggestions: list[str] = field(default_factory=list)


@dataclass
class DeadCodeAnalysis:
    unused_classes: list[DeadCodeItem] = field(default_factory=list)
    unused_methods: list[DeadCodeItem] = field(default_factory=list)
    unused_constants: list[DeadCodeItem] = field(default_factory=list)
    confidence: str = "high"

    @property
    def total_items(self) -> int:
        return len(self.unused_classes) + len(self.unused_methods) + len(self.unused_constants)


@dataclass(frozen=True)
class DeletionCheck:
    safe: bool
    reason: str
    references: list[Reference] = field(default_factory=list)


class ReferenceTracker:
    """Read-only analyses over a ``SemanticGraph``'s reference index."""

    def __init__(self, graph: SemanticGraph) -> None:
        self._graph = graph

    def find_references(self, symbol: str) -> ReferenceInfo:
        """Partition every recorded reference to *symbol* by kind.

        Instantiations count as calls.
        """
        info = ReferenceInfo(symbol=symbol, references=self._graph.get_references(symbol))
        for ref in info.references:
            if ref.type == ReferenceType.DEFINITION:
                info.definitions.append(ref)
            elif ref.type == ReferenceType.READ:
                info.reads.append(ref)
            elif ref.type == ReferenceType.WRITE:
                info.writes.append(ref)
            else:
                info.calls.append(ref)
        return info

    def find_method_references(self, class_name: str, method_name: str) -> list[Reference]:
        """Call sites of ``class_name#method_name`` (or the class method) from the call graph."""
        self._graph.refresh_call_links()
        targets = {f"{class_name}#{method_name}", f"{class_name}.{method_name}"}
        result: list[Reference] = []
        for edge in self._graph.method_calls:
            if edge.callee not in targets:
                continue
            caller = self._graph.get_method(edge.caller)
            result.append(Reference(
                symbol_name=method_name,
                location=edge.location,
                type=ReferenceType.CALL,
                context=ReferenceContext(
                    containing_class=caller.class_name if caller else None,
                    containing_method=caller.name if caller else edge.caller,
                ),
            ))
        return result

    def is_safe_to_delete(self, symbol: str) -> DeletionCheck:
        info = self.find_references(symbol)
        if info.usage_count == 0:
            return DeletionCheck(safe=True, reason="No references found")
        return DeletionCheck(
            safe=False,
            reason=f"Found {info.usage_count} reference(s)",
            references=[r for r in info.references if r.type != ReferenceType.DEFINITION],
        )

    # ── Dead code ─────────────────────────────────────────────────────────────

    def detect_dead_code(self) -> DeadCodeAnalysis:
        self._graph.refresh_call_links()
        analysis = DeadCodeAnalysis(
            unused_classes=self._find_unused_classes(),
            unused_methods=self._find_unused_methods(),
            unused_constants=self._find_unused_constants(),
        )
        analysis.confidence = _overall_confidence(
            analysis.unused_classes + analysis.unused_methods + analysis.unused_constants
        )
        logger.info(
            "Dead code analysis: %d classes, %d methods, %d constants",
            len(analysis.unused_classes),
            len(analysis.unused_methods),
            len(analysis.unused_constants),
        )
        return analysis

    def _find_unused_classes(self) -> list[DeadCodeItem]:
        unused: list[DeadCodeItem] = []
        for fqn, cls in self._graph.classes.items():
            if _is_framework_class(fqn, cls):
                continue
            if self._usage_count(fqn, cls.name) > 0:
                continue
            if cls.subclasses:
                continue
            if any(self._is_called(mid) for mid in cls.methods):
                continue
            unused.append(DeadCodeItem(
                name=fqn,
                location=cls.location,
                reason="Class is never instantiated or referenced",
                confidence=0.8,
                suggestions=list(_CLASS_SUGGESTIONS),
            ))
        return unused

    def _find_unused_methods(self) -> list[DeadCodeItem]:
        unused: list[DeadCodeItem] = []
        for method in self._graph.methods.values():
            if method.visibility == Visibility.PUBLIC:
                continue
            if method.class_name and "Controller" in method.class_name:
                continue
            if method.name in CALLBACK_METHODS:
                continue
            if method.called_by or method.usage_count:
                continue
            unused.append(DeadCodeItem(
                name=method.id,
                location=method.location,
                reason="Private/protected method is never called",
                confidence=0.9,
                suggestions=list(_METHOD_SUGGESTIONS),
            ))
        return unused

    def _find_unused_constants(self) -> list[DeadCodeItem]:
        unused: list[DeadCodeItem] = []
        for fqn, cls in self._graph.classes.items():
            for constant in cls.constants:
                full_name = f"{fqn}::{constant}"
                if self._usage_count(full_name, constant) > 0:
                    continue
                unused.append(DeadCodeItem(
                    name=full_name,
                    location=cls.location,
                    reason="Constant is never referenced",
                    confidence=0.7,
                    suggestions=list(_CONSTANT_SUGGESTIONS),
                ))
        return unused

    def _is_called(self, method_id: str) -> bool:
        method = self._graph.get_method(method_id)
        return method is not None and bool(method.called_by)

    def _usage_count(self, *names: str) -> int:
        return sum(self.find_references(name).usage_count for name in dict.fromkeys(names))


def _is_framework_class(name: str, cls: ClassInfo) -> bool:
    if cls.is_rails_model or cls.is_rails_controller:
        return True
    short = name.split("::")[-1]
    if short.startswith("Application"):
        return True
    return short.endswith(_FRAMEWORK_SUFFIXES)


def _overall_confidence(items: list[DeadCodeItem]) -> str:
    if not items:
        return "high"
    average = sum(item.confidence for item in items) / len(items)
    if average >= 0.8:
        return "high"
    if average >= 0.6:
        return "medium"
    return "low"


# ── Report ────────────────────────────────────────────────────────────────────


def render_dead_code_report(analysis: DeadCodeAnalysis) -> str:
    """Render a dead-code analysis as a Markdown document."""
    lines: list[str] = [
        "# Dead Code Analysis Report",
        "",
        f"**Total unused items found**: {analysis.total_items}",
        f"**Confidence**: {analysis.confidence.upper()}",
        "",
    ]
    for heading, items in (
        ("Unused Classes", analysis.unused_classes),
        ("Unused Methods", analysis.unused_methods),
        ("Unused Constants", analysis.unused_constants),
    ):
        if not items:
            continue
        lines.append(f"## {heading}")
        lines.append("")
        for item in items:
            lines.append(f"### {item.name}")
            lines.append(f"**Location**: {item.location.uri}:{item.location.line + 1}")
            lines.append(f"**Reason**: {item.reason}")
            lines.append(f"**Confidence**: {item.confidence * 100:.0f}%")
            lines.append("**Suggestions**:")
            lines.extend(f"- {s}" for s in item.suggestions)
            lines.append("")

    if analysis.total_items == 0:
        lines.append("## No dead code detected!")
        lines.append("")
        lines.append("Your codebase appears to be well-maintained.")

    return "\n".join(lines)
