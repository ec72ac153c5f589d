"""Layered type inference over the semantic graph and the database schema.

Each strategy is a pure function ``(expression, context, env)`` returning an
``InferredType`` or None.  ``DEFAULT_STRATEGIES`` fixes the order they are
tried in; the first strategy to answer wins.  Confidence values are
estimates of reliability, never guarantees.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Mapping

from railsight.index.graph import SemanticGraph
from railsight.index.inflection import table_name_for
from railsight.index.models import (
    Association,
    InferredType,
    Location,
    TypeInformation,
    TypeSource,
)
from railsight.index.schema_parser import SchemaParser

logger = logging.getLogger(__name__)

# schema.rb column type -> Ruby class
COLUMN_TYPE_MAP: dict[str, str] = {
    "string": "String",
    "text": "String",
    "binary": "String",
    "citext": "String",
    "uuid": "String",
    "integer": "Integer",
    "bigint": "Integer",
    "references": "Integer",
    "belongs_to": "Integer",
    "float": "Float",
    "decimal": "BigDecimal",
    "numeric": "BigDecimal",
    "boolean": "Boolean",
    "date": "Date",
    "datetime": "DateTime",
    "timestamp": "Time",
    "time": "Time",
    "json": "Hash",
    "jsonb": "Hash",
    "hstore": "Hash",
    "array": "Array",
}

RELATION_METHODS: list[str] = [
    "each", "map", "select", "find", "where", "order", "limit", "offset",
    "includes", "joins", "group", "count", "sum", "first", "last", "pluck", "exists?",
]

BUILTIN_METHODS: dict[str, list[str]] = {
    "String": ["length", "upcase", "downcase", "strip", "split", "match"],
    "Array": ["each", "map", "select", "reject", "find", "length", "empty?"],
    "Hash": ["keys", "values", "fetch", "each", "map", "select"],
}

# (type, confidence, method vocabulary), checked in order.
DUCK_TYPE_VOCABULARY: tuple[tuple[str, float, frozenset[str]], ...] = (
    ("Array", 0.6, frozenset({"each", "map", "select"})),
    ("Hash", 0.6, frozenset({"keys", "values", "fetch"})),
    ("String", 0.5, frozenset({"length", "upcase", "downcase"})),
    ("ActiveRecord::Base", 0.7, frozenset({"save", "update", "destroy"})),
)

_MEMBER_RE = re.compile(r"^(.+)\.([a-z_]\w*[?!]?)(?:\(.*\))?$")


@dataclass(frozen=True)
class InferenceContext:
    """Where an expression appears and which locals are already typed."""

    uri: str = ""
    line: int = 0
    containing_class: str | None = None
    containing_method: str | None = None
    local_variables: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class InferenceEnv:
    graph: SemanticGraph
    schema: SchemaParser


Strategy = Callable[[str, InferenceContext, InferenceEnv], "InferredType | None"]


def column_ruby_type(column_type: str) -> str:
    return COLUMN_TYPE_MAP.get(column_type, "Object")


def association_type(association: Association) -> str:
    if association.type.is_collection:
        return f"ActiveRecord::Relation<{association.target_model}>"
    return association.target_model


def split_member(expression: str) -> tuple[str, str] | None:
    """``user.posts`` -> ("user", "posts"); None for a bare name."""
    m = _MEMBER_RE.match(expression.strip())
    if not m:
        return None
    return m.group(1), m.group(2)


def get_variable_type(name: str, context: InferenceContext, env: InferenceEnv) -> str | None:
    """Resolve a receiver name to a class name, if possible.

    * ``self`` is the containing class.
    * ``@ivar`` is the containing class, but only when that class is a model.
    * locals come from ``context.local_variables``.
    * a capitalized identifier is a class reference when the graph knows it.
    """
    graph = env.graph
    if name == "self":
        return context.containing_class
    if name.startswith("@"):
        cls = graph.get_class(context.containing_class or "")
        if cls is not None and cls.is_rails_model:
            return cls.fully_qualified_name
        return None
    if name in context.local_variables:
        return context.local_variables[name]
    if name[:1].isupper():
        namespace = None
        if context.containing_class:
            cls = graph.get_class(context.containing_class)
            namespace = cls.namespace if cls else None
        return graph.resolve_constant(name, namespace)
    return None


def _receiver_class(receiver: str, context: InferenceContext, env: InferenceEnv) -> str | None:
    resolved = get_variable_type(receiver, context, env)
    if resolved is not None or "." not in receiver:
        return resolved
    # Chained receiver (``post.author.email``): infer the inner expression.
    for strategy in (schema_strategy, association_strategy, method_return_strategy):
        inner = strategy(receiver, context, env)
        if inner is not None and env.graph.get_class(inner.type) is not None:
            return inner.type
    return None


# ── Strategies ────────────────────────────────────────────────────────────────


def schema_strategy(expression: str, context: InferenceContext, env: InferenceEnv) -> InferredType | None:
    member = split_member(expression)
    if member is None:
        return None
    receiver, attr = member
    class_name = _receiver_class(receiver, context, env)
    cls = env.graph.get_class(class_name or "")
    if cls is None or not cls.is_rails_model:
        return None
    table = env.schema.get_table(table_name_for(cls.fully_qualified_name))
    column = table.get_column(attr) if table else None
    if column is None:
        return None
    return InferredType(type=column_ruby_type(column.type), confidence=0.95, source=TypeSource.SCHEMA)


def association_strategy(expression: str, context: InferenceContext, env: InferenceEnv) -> InferredType | None:
    member = split_member(expression)
    if member is None:
        return None
    receiver, attr = member
    class_name = _receiver_class(receiver, context, env)
    if class_name is None:
        return None
    for association in env.graph.get_associations(class_name):
        if association.name == attr:
            return InferredType(
                type=association_type(association),
                confidence=0.9,
                source=TypeSource.ASSOCIATION,
            )
    return None


def method_return_strategy(expression: str, context: InferenceContext, env: InferenceEnv) -> InferredType | None:
    member = split_member(expression)
    graph = env.graph
    if member is None:
        owner, name = context.containing_class, expression.strip()
        class_level = False
    else:
        receiver, name = member
        owner = _receiver_class(receiver, context, env)
        class_level = receiver[:1].isupper()
    if not owner:
        return None
    for method in graph.get_all_available_methods(owner):
        if method.name == name and method.is_class_method == class_level and method.return_type:
            return InferredType(type=method.return_type, confidence=0.8, source=TypeSource.METHOD_RETURN)
    return None


def assignment_strategy(expression: str, context: InferenceContext, env: InferenceEnv) -> InferredType | None:
    """Assignment tracking is not implemented; this slot never answers."""
    return None


_LITERALS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"""^(?:"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')$"""), "String"),
    (re.compile(r"^-?\d[\d_]*$"), "Integer"),
    (re.compile(r"^-?\d[\d_]*\.\d+$"), "Float"),
    (re.compile(r"^(?:true|false)$"), "Boolean"),
    (re.compile(r"^nil$"), "NilClass"),
    (re.compile(r"^:\w+[?!]?$"), "Symbol"),
    (re.compile(r"^\[.*\]$"), "Array"),
    (re.compile(r"^\{.*\}$"), "Hash"),
)


def literal_strategy(expression: str, context: InferenceContext, env: InferenceEnv) -> InferredType | None:
    text = expression.strip()
    for pattern, type_name in _LITERALS:
        if pattern.match(text):
            return InferredType(type=type_name, confidence=1.0, source=TypeSource.EXPLICIT)
    return None


def duck_typed_strategy(expression: str, context: InferenceContext, env: InferenceEnv) -> InferredType | None:
    symbol = expression.strip()
    references = env.graph.get_references(symbol)
    if not references:
        return None
    call_re = re.compile(rf"(?<![\w@]){re.escape(symbol)}\.([a-z_]\w*[?!]?)")
    observed: set[str] = set()
    for reference in references:
        observed.update(call_re.findall(reference.context.line))
    for type_name, confidence, vocabulary in DUCK_TYPE_VOCABULARY:
        if observed & vocabulary:
            return InferredType(type=type_name, confidence=confidence, source=TypeSource.DUCK_TYPED)
    return None


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (
    schema_strategy,
    association_strategy,
    method_return_strategy,
    assignment_strategy,
    literal_strategy,
    duck_typed_strategy,
)


# ── Engine ────────────────────────────────────────────────────────────────────


class TypeInferenceEngine:
    """Runs the strategy chain and records answers in the graph's type table.

    Parameters
    ----------
    graph:
        The workspace graph; inferred types are written back into it.
    schema:
        Parsed ``schema.rb`` (may hold no schema at all).
    strategies:
        Strategy order.  Defaults to ``DEFAULT_STRATEGIES``.
    """

    def __init__(
        self,
        graph: SemanticGraph,
        schema: SchemaParser,
        strategies: tuple[Strategy, ...] = DEFAULT_STRATEGIES,
    ) -> None:
        self._env = InferenceEnv(graph=graph, schema=schema)
        self._strategies = strategies

    def infer_type(self, expression: str, context: InferenceContext | None = None) -> InferredType | None:
        context = context or InferenceContext()
        for strategy in self._strategies:
            result = strategy(expression, context, self._env)
            if result is not None:
                self._record(
                    f"{context.uri}:{expression}",
                    result,
                    Location(uri=context.uri, line=context.line),
                )
                return result
        return None

    def get_variable_type(self, name: str, context: InferenceContext | None = None) -> str | None:
        return get_variable_type(name, context or InferenceContext(), self._env)

    def infer_model_types(self, class_name: str) -> dict[str, InferredType]:
        """Column name -> type for a model backed by a schema table."""
        graph = self._env.graph
        cls = graph.get_class(class_name)
        if cls is None or not cls.is_rails_model:
            return {}
        table = self._env.schema.get_table(table_name_for(class_name))
        if table is None:
            return {}
        result: dict[str, InferredType] = {}
        for column in table.columns:
            inferred = InferredType(
                type=column_ruby_type(column.type), confidence=0.95, source=TypeSource.SCHEMA,
            )
            result[column.name] = inferred
            self._record(f"{cls.location.uri}:{class_name}#{column.name}", inferred, cls.location)
        return result

    def infer_association_types(self, class_name: str) -> dict[str, InferredType]:
        result: dict[str, InferredType] = {}
        for association in self._env.graph.get_associations(class_name):
            inferred = InferredType(
                type=association_type(association), confidence=0.9, source=TypeSource.ASSOCIATION,
            )
            result[association.name] = inferred
            self._record(
                f"{association.location.uri}:{class_name}#{association.name}",
                inferred,
                association.location,
            )
        return result

    def get_available_methods(self, type_name: str) -> list[str]:
        graph = self._env.graph
        if graph.get_class(type_name) is not None:
            return [m.name for m in graph.get_all_available_methods(type_name)]
        if type_name.startswith("ActiveRecord::Relation<"):
            return list(RELATION_METHODS)
        return list(BUILTIN_METHODS.get(type_name, []))

    def _record(self, key: str, inferred: InferredType, location: Location) -> None:
        stored = self._env.graph.add_type_info(TypeInformation(
            symbol=key,
            inferred_type=inferred.type,
            confidence=inferred.confidence,
            source=inferred.source,
            location=location,
        ))
        if not stored:
            logger.debug("Kept existing type for %s over %s", key, inferred.source.value)
