"""Data model for the semantic index.

Graph entities (classes, modules, methods) are mutable because the graph
builder maintains their cross-reference lists in place.  Edges, references
and inferred types are immutable records that only ever get appended or
replaced wholesale.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    PROTECTED = "protected"


class ReferenceType(str, Enum):
    DEFINITION = "definition"
    READ = "read"
    WRITE = "write"
    CALL = "call"
    INSTANTIATION = "instantiation"


class AssociationType(str, Enum):
    HAS_MANY = "has_many"
    HAS_ONE = "has_one"
    BELONGS_TO = "belongs_to"
    HAS_AND_BELONGS_TO_MANY = "has_and_belongs_to_many"

    @property
    def is_collection(self) -> bool:
        return self in (AssociationType.HAS_MANY, AssociationType.HAS_AND_BELONGS_TO_MANY)


class DependencyType(str, Enum):
    REQUIRE = "require"
    REQUIRE_RELATIVE = "require_relative"
    INCLUDE = "include"
    EXTEND = "extend"
    PREPEND = "prepend"


class TypeSource(str, Enum):
    """Where an inferred type came from, most reliable first."""

    EXPLICIT = "explicit"
    SCHEMA = "schema"
    ASSOCIATION = "association"
    METHOD_RETURN = "method_return"
    INFERRED = "inferred"
    DUCK_TYPED = "duck_typed"

    @property
    def priority(self) -> int:
        """Lower is more reliable."""
        return _SOURCE_ORDER.index(self)


_SOURCE_ORDER: list[TypeSource] = [
    TypeSource.EXPLICIT,
    TypeSource.SCHEMA,
    TypeSource.ASSOCIATION,
    TypeSource.METHOD_RETURN,
    TypeSource.INFERRED,
    TypeSource.DUCK_TYPED,
]


@dataclass(frozen=True)
class Location:
    """A position inside a workspace file (0-based line and column)."""

    uri: str
    line: int = 0
    column: int = 0


@dataclass(frozen=True)
class ParameterInfo:
    name: str
    keyword: bool = False
    splat: bool = False
    block: bool = False
    default_value: str | None = None


@dataclass
class ClassInfo:
    name: str
    fully_qualified_name: str
    location: Location
    superclass: str | None = None
    mixins: list[str] = field(default_factory=list)
    subclasses: list[str] = field(default_factory=list)
    methods: list[str] = field(default_factory=list)  # method ids
    constants: dict[str, str] = field(default_factory=dict)
    is_rails_model: bool = False
    is_rails_controller: bool = False
    namespace: str | None = None


@dataclass
class ModuleInfo:
    name: str
    fully_qualified_name: str
    location: Location
    methods: list[str] = field(default_factory=list)
    included_in: list[str] = field(default_factory=list)
    extended_in: list[str] = field(default_factory=list)


@dataclass
class MethodInfo:
    id: str  # "Owner#name" (instance) or "Owner.name" (class method)
    name: str
    location: Location
    class_name: str | None = None
    parameters: list[ParameterInfo] = field(default_factory=list)
    visibility: Visibility = Visibility.PUBLIC
    is_class_method: bool = False
    return_type: str | None = None
    calls: list[str] = field(default_factory=list)
    called_by: list[str] = field(default_factory=list)
    usage_count: int = 0


@dataclass(frozen=True)
class CallTarget:
    """What a call dispatches on, kept so the callee can be re-resolved.

    ``constant`` is the receiver path as written (``Admin::User``) and
    ``scope`` the namespace it appeared in; when set, ``owner`` is
    recomputed from them as classes arrive.
    """

    owner: str
    method: str
    class_level: bool = False
    constant: str | None = None
    scope: str | None = None


@dataclass(frozen=True)
class MethodCallEdge:
    caller: str
    callee: str
    location: Location
    confidence: float  # 0-1, dynamic dispatch makes every edge a guess
    receiver_type: str | None = None
    target: CallTarget | None = None


@dataclass(frozen=True)
class ReferenceContext:
    line: str = ""
    containing_class: str | None = None
    containing_method: str | None = None


@dataclass(frozen=True)
class Reference:
    symbol_name: str
    location: Location
    type: ReferenceType
    context: ReferenceContext = field(default_factory=ReferenceContext)


@dataclass(frozen=True)
class FileDependency:
    source_uri: str
    target: str  # file path, gem name or module name
    type: DependencyType


@dataclass(frozen=True)
class Association:
    source_model: str
    target_model: str
    type: AssociationType
    name: str
    location: Location
    options: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TypeInformation:
    symbol: str
    inferred_type: str
    confidence: float
    source: TypeSource
    location: Location


@dataclass(frozen=True)
class InferredType:
    type: str
    confidence: float
    source: TypeSource


@dataclass(frozen=True)
class FileMetadata:
    uri: str
    content_hash: str
    last_indexed: float  # Unix timestamp
    symbol_count: int


def method_id(owner: str, name: str, is_class_method: bool = False) -> str:
    """Build the graph key for a method."""
    return f"{owner}.{name}" if is_class_method else f"{owner}#{name}"
