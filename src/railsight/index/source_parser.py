"""Best-effort structural scanner for Ruby source.

This is a line-oriented scanner, not a parser: there is no grammar, no
backtracking and no soundness guarantee.  Every node it emits is a hint.
Downstream consumers must treat the output as lossy: a line the scanner
does not recognise simply contributes nothing.

Recognised constructs:

  class / module headers (namespaced, optional superclass, ``class << self``)
  def headers (``self.`` prefix, parameters, inline ``private def``)
  association macros      has_many / has_one / belongs_to / habtm
  mixins                  include / extend / prepend
  callback macros         before_* / after_* / around_* / validate
  class-scoped constants  FOO = ...
  require / require_relative
  method calls, local writes, receiver reads and constant references
  inside method bodies
  YARD ``# @return [Type]`` comments preceding a def

Heredoc bodies (``<<~SQL`` ... ``SQL``) are string data and are skipped.

``SourceScanner.parse`` never raises.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from railsight.index.models import (
    AssociationType,
    DependencyType,
    ParameterInfo,
    ReferenceType,
    Visibility,
)

logger = logging.getLogger(__name__)


class NodeKind(str, Enum):
    CLASS = "class"
    MODULE = "module"
    METHOD = "method"
    ASSOCIATION = "association"
    CALLBACK = "callback"
    CONSTANT = "constant"
    REQUIRE = "require"
    COMMENT = "comment"
    REFERENCE = "reference"


# ── Node types ────────────────────────────────────────────────────────────────


@dataclass
class Node:
    kind: NodeKind
    name: str
    line: int          # 0-based
    end_line: int = -1  # -1 until the closing ``end`` is seen


@dataclass
class MethodCall:
    method: str
    line: int
    column: int
    receiver: str | None = None
    arguments: list[str] = field(default_factory=list)
    chained: bool = False  # receiver is an unnamed expression (``a.b.c``)


@dataclass
class Mixin:
    kind: DependencyType  # INCLUDE / EXTEND / PREPEND
    name: str


@dataclass
class MethodNode(Node):
    owner: str | None = None
    parameters: list[ParameterInfo] = field(default_factory=list)
    visibility: Visibility = Visibility.PUBLIC
    is_class_method: bool = False
    return_type: str | None = None
    calls: list[MethodCall] = field(default_factory=list)


@dataclass
class AssociationNode(Node):
    association_type: AssociationType = AssociationType.HAS_MANY
    options: dict[str, str] = field(default_factory=dict)


@dataclass
class CallbackNode(Node):
    """``before_save :normalize``: *name* is the referenced method."""

    macro: str = ""


@dataclass
class ConstantNode(Node):
    value: str = ""


@dataclass
class RequireNode(Node):
    relative: bool = False


@dataclass
class CommentNode(Node):
    pass


@dataclass
class ReferenceNode(Node):
    ref_type: ReferenceType = ReferenceType.READ
    column: int = 0
    containing_class: str | None = None
    containing_method: str | None = None
    text: str = ""


@dataclass
class ContainerNode(Node):
    """Shared shape of classes and modules; *name* is fully qualified."""

    short_name: str = ""
    namespace: str | None = None
    mixins: list[Mixin] = field(default_factory=list)
    methods: list[MethodNode] = field(default_factory=list)
    children: list[Node] = field(default_factory=list)


@dataclass
class ClassNode(ContainerNode):
    superclass: str | None = None


@dataclass
class ModuleNode(ContainerNode):
    pass


# ── Patterns ──────────────────────────────────────────────────────────────────

_CONST_PATH = r"(?:::)?[A-Z]\w*(?:::[A-Z]\w*)*"

_CLASS_RE = re.compile(rf"^class\s+({_CONST_PATH})\s*(?:<\s*({_CONST_PATH}))?")
_SINGLETON_RE = re.compile(r"^class\s*<<\s*self\b")
_MODULE_RE = re.compile(rf"^module\s+({_CONST_PATH})")
_DEF_RE = re.compile(
    r"^(?:(private|protected|public)\s+)?def\s+(self\.)?([a-z_]\w*[?!=]?|\[\]=?|[+\-*/<=>!%&|^~]+)"
)
_PARAMS_PAREN_RE = re.compile(r"def\s+(?:self\.)?\S+?\s*\((.*)\)")
_PARAMS_BARE_RE = re.compile(r"def\s+(?:self\.)?[a-z_]\w*[?!]?\s+([^=(;#][^;#]*)$")
_ASSOCIATION_RE = re.compile(r"^(has_many|has_one|belongs_to|has_and_belongs_to_many)\s+:(\w+)(?:\s*,\s*(.*))?")
_MIXIN_RE = re.compile(rf"^(include|extend|prepend)\s+({_CONST_PATH}(?:\s*,\s*{_CONST_PATH})*)")
_REQUIRE_RE = re.compile(r"""^(require_relative|require)\s*\(?\s*['"](.+?)['"]""")
_CALLBACK_RE = re.compile(r"^((?:before|after|around)_\w+|validate)\s+(.+)$")
_VISIBILITY_RE = re.compile(r"^(private|protected|public)\s*$")
_VISIBILITY_ARGS_RE = re.compile(r"^(private|protected|public)\s+(:\w+[?!]?(?:\s*,\s*:\w+[?!]?)*)\s*$")
_CONSTANT_DEF_RE = re.compile(r"^([A-Z][A-Z0-9_]*)\s*=(?!=)\s*(.*)$")
_YARD_RETURN_RE = re.compile(r"^#\s*@return\s+\[([^\]]+)\]")
_END_RE = re.compile(r"^end\b")
_OPTION_RE = re.compile(r"(\w+):\s*(:?\w[\w:]*|['\"][^'\"]*['\"])")
_SYMBOL_ARG_RE = re.compile(r":(\w+[?!]?)")

_BLOCK_START_RE = re.compile(r"^(if|unless|while|until|case|begin|for)\b")
_ASSIGNED_BLOCK_RE = re.compile(r"=\s*(if|unless|case|begin|while|until)\b")
_DO_BLOCK_RE = re.compile(r"\bdo\s*(\|[^|]*\|)?\s*$")
_TRAILING_END_RE = re.compile(r"\bend\s*$")
_HEREDOC_RE = re.compile(r"""<<([~-]?)(?:(['"`])(\w+)\2|([A-Z_][A-Z0-9_]*)\b)""")

_STRING_RE = re.compile(r""""(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*'""")
_BLOCK_PARAMS_RE = re.compile(r"\|[^|]*\|")
_TRAILING_COMMENT_RE = re.compile(r"\s#(?!\{).*$")

_CALL_RE = re.compile(
    r"(?<![\w@$:.?!])"
    r"(?:(?P<receiver>@{1,2}\w+|[A-Za-z_]\w*(?:::[A-Z]\w*)*)\.)?"
    r"(?P<method>[a-z_]\w*[?!]?)"
)
_CHAIN_RE = re.compile(r"(?<=[\w)\]?!])\.(?P<method>[a-z_]\w*[?!]?)")
_ARGS_RE = re.compile(r"\(([^()]*)\)")
_CONST_REF_RE = re.compile(r"(?<![\w@$:])([A-Z]\w*(?:::[A-Z]\w*)*)(\.new\b)?")
_WRITE_RE = re.compile(r"^(@{0,2}[a-z_]\w*)\s*(?:\|\||\+|-|\*|/)?=(?![=~>])")

_KEYWORDS = frozenset({
    "if", "unless", "while", "until", "for", "case", "when", "in",
    "begin", "rescue", "ensure", "return", "yield", "break", "next",
    "redo", "retry", "raise", "and", "or", "not", "then", "else",
    "elsif", "do", "end", "def", "class", "module", "true", "false",
    "nil", "self", "super", "defined?", "alias", "undef",
    "__FILE__", "__LINE__", "__method__",
})


# ── Scanner ───────────────────────────────────────────────────────────────────


@dataclass
class _Frame:
    kind: str  # "class" | "module" | "singleton" | "method" | "block"
    node: Node | None = None
    visibility: Visibility = Visibility.PUBLIC
    locals: set[str] = field(default_factory=set)


def parse_parameters(params: str) -> list[ParameterInfo]:
    """Split a parameter list into ParameterInfo records.  Types are never resolved."""
    result: list[ParameterInfo] = []
    if not params or not params.strip():
        return result
    for part in (p.strip() for p in params.split(",")):
        if not part:
            continue
        if part.startswith("&"):
            result.append(ParameterInfo(name=part[1:] or "block", block=True))
        elif part.startswith("**"):
            result.append(ParameterInfo(name=part[2:] or "options", splat=True, keyword=True))
        elif part.startswith("*"):
            result.append(ParameterInfo(name=part[1:] or "args", splat=True))
        elif re.match(r"^\w+:", part):
            key, _, value = part.partition(":")
            result.append(ParameterInfo(
                name=key.strip(), keyword=True, default_value=value.strip() or None,
            ))
        elif "=" in part:
            key, _, value = part.partition("=")
            result.append(ParameterInfo(name=key.strip(), default_value=value.strip()))
        else:
            result.append(ParameterInfo(name=part))
    return result


class SourceScanner:
    """Scan Ruby source text into a shallow list of tagged nodes.

    Classes and modules are emitted flat with fully-qualified names; their
    methods, associations, callbacks and constants hang off them.  Top-level
    methods, requires, comments and references are emitted directly.

    Usage::

        nodes = SourceScanner().parse(path.read_text())
    """

    def parse(self, text: str) -> list[Node]:
        nodes: list[Node] = []
        stack: list[_Frame] = []
        pending_return: str | None = None
        # Open heredocs as (terminator, indented); bodies are string data.
        heredocs: list[tuple[str, bool]] = []

        for lineno, raw in enumerate(text.splitlines()):
            stripped = raw.strip()
            if heredocs:
                terminator, indented = heredocs[0]
                if (stripped if indented else raw.rstrip()) == terminator:
                    heredocs.pop(0)
                continue
            if not stripped:
                continue
            if stripped.startswith("#"):
                nodes.append(CommentNode(kind=NodeKind.COMMENT, name=stripped, line=lineno))
                m = _YARD_RETURN_RE.match(stripped)
                if m:
                    pending_return = m.group(1).strip()
                continue
            try:
                pending_return = self._scan_line(
                    stripped, raw, lineno, stack, nodes, pending_return,
                )
            except Exception as exc:  # a bad line must never abort the file
                logger.debug("Scanner skipped line %d: %s", lineno + 1, exc)
            heredocs.extend(_heredoc_openers(stripped))
        return nodes

    # ── Line dispatch ─────────────────────────────────────────────────────────

    def _scan_line(
        self,
        line: str,
        raw: str,
        lineno: int,
        stack: list[_Frame],
        nodes: list[Node],
        pending_return: str | None,
    ) -> str | None:
        """Handle one non-blank, non-comment line.  Returns the pending YARD type."""
        container = _nearest(stack, ("class", "module"))
        method = _nearest(stack, ("method",))

        if _END_RE.match(line):
            if stack:
                frame = stack.pop()
                if frame.node is not None:
                    frame.node.end_line = lineno
            return None

        m = _SINGLETON_RE.match(line)
        if m:
            stack.append(_Frame(kind="singleton"))
            return None

        m = _CLASS_RE.match(line)
        if m:
            node = self._container(ClassNode, NodeKind.CLASS, m.group(1), lineno, container)
            node.superclass = m.group(2).lstrip(":") if m.group(2) else None
            nodes.append(node)
            if node.superclass:
                nodes.append(self._reference(
                    node.superclass, ReferenceType.READ, lineno, raw, node.name, None,
                ))
            if not _closes_inline(line):
                stack.append(_Frame(kind="class", node=node))
            return None

        m = _MODULE_RE.match(line)
        if m:
            node = self._container(ModuleNode, NodeKind.MODULE, m.group(1), lineno, container)
            nodes.append(node)
            if not _closes_inline(line):
                stack.append(_Frame(kind="module", node=node))
            return None

        m = _DEF_RE.match(line)
        if m:
            self._scan_def(m, line, lineno, stack, container, nodes, pending_return)
            return None

        if method is not None:
            self._scan_body(line, raw, lineno, stack, method, container, nodes)
        elif container is not None:
            self._scan_class_body(line, raw, lineno, stack, container, nodes)
        else:
            self._scan_top_level(line, raw, lineno, nodes)

        self._push_block(line, stack)
        return None

    # ── Headers ───────────────────────────────────────────────────────────────

    @staticmethod
    def _container(
        cls: type[ContainerNode],
        kind: NodeKind,
        declared: str,
        lineno: int,
        enclosing: _Frame | None,
    ) -> ContainerNode:
        declared = declared.lstrip(":")
        namespace = enclosing.node.name if enclosing is not None and enclosing.node else None
        fqn = f"{namespace}::{declared}" if namespace else declared
        short = declared.split("::")[-1]
        outer = fqn.rsplit("::", 1)[0] if "::" in fqn else None
        return cls(kind=kind, name=fqn, line=lineno, short_name=short, namespace=outer)

    def _scan_def(
        self,
        m: re.Match[str],
        line: str,
        lineno: int,
        stack: list[_Frame],
        container: _Frame | None,
        nodes: list[Node],
        pending_return: str | None,
    ) -> None:
        inline_visibility, self_prefix, name = m.group(1), m.group(2), m.group(3)
        in_singleton = bool(stack) and stack[-1].kind == "singleton"

        if inline_visibility:
            visibility = Visibility(inline_visibility)
        elif container is not None and not in_singleton:
            visibility = container.visibility
        else:
            visibility = Visibility.PUBLIC

        params_match = _PARAMS_PAREN_RE.search(line) or _PARAMS_BARE_RE.search(line)
        parameters = parse_parameters(params_match.group(1)) if params_match else []

        owner = container.node.name if container is not None and container.node else None
        node = MethodNode(
            kind=NodeKind.METHOD,
            name=name,
            line=lineno,
            owner=owner,
            parameters=parameters,
            visibility=visibility,
            is_class_method=bool(self_prefix) or in_singleton,
            return_type=pending_return,
        )
        if container is not None and isinstance(container.node, ContainerNode):
            container.node.methods.append(node)
        else:
            nodes.append(node)

        endless = re.search(r"\)\s*=(?![=~>])|^\S*def\s+\S+\s*=\s", line) is not None
        if _closes_inline(line) or endless:
            node.end_line = lineno
            return
        frame = _Frame(kind="method", node=node)
        frame.locals.update(p.name for p in parameters)
        stack.append(frame)

    # ── Bodies ────────────────────────────────────────────────────────────────

    def _scan_class_body(
        self,
        line: str,
        raw: str,
        lineno: int,
        stack: list[_Frame],
        container: _Frame,
        nodes: list[Node],
    ) -> None:
        owner = container.node
        assert isinstance(owner, ContainerNode)

        m = _VISIBILITY_RE.match(line)
        if m:
            if stack[-1].kind != "singleton":
                container.visibility = Visibility(m.group(1))
            return

        m = _VISIBILITY_ARGS_RE.match(line)
        if m:
            wanted = set(_SYMBOL_ARG_RE.findall(m.group(2)))
            for method in owner.methods:
                if method.name in wanted:
                    method.visibility = Visibility(m.group(1))
            return

        m = _ASSOCIATION_RE.match(line)
        if m and isinstance(owner, ClassNode):
            options = dict(
                (k, v.strip("'\":")) for k, v in _OPTION_RE.findall(m.group(3) or "")
            )
            owner.children.append(AssociationNode(
                kind=NodeKind.ASSOCIATION,
                name=m.group(2),
                line=lineno,
                association_type=AssociationType(m.group(1)),
                options=options,
            ))
            return

        m = _MIXIN_RE.match(line)
        if m:
            kind = DependencyType(m.group(1))
            for name in (n.strip().lstrip(":") for n in m.group(2).split(",")):
                owner.mixins.append(Mixin(kind=kind, name=name))
                nodes.append(self._reference(name, ReferenceType.READ, lineno, raw, owner.name, None))
            return

        m = _CALLBACK_RE.match(line)
        if m:
            head = re.split(r"\b\w+:\s", m.group(2), maxsplit=1)[0]
            for target in _SYMBOL_ARG_RE.findall(head):
                owner.children.append(CallbackNode(
                    kind=NodeKind.CALLBACK, name=target, line=lineno, macro=m.group(1),
                ))
            return

        m = _CONSTANT_DEF_RE.match(line)
        if m:
            owner.children.append(ConstantNode(
                kind=NodeKind.CONSTANT, name=m.group(1), line=lineno, value=m.group(2).strip(),
            ))
            self._scan_constants(m.group(2), raw, lineno, owner.name, None, nodes)
            return

        m = _REQUIRE_RE.match(line)
        if m:
            nodes.append(self._require(m, lineno))
            return

        self._scan_constants(_sanitize(line), raw, lineno, owner.name, None, nodes)

    def _scan_top_level(self, line: str, raw: str, lineno: int, nodes: list[Node]) -> None:
        m = _REQUIRE_RE.match(line)
        if m:
            nodes.append(self._require(m, lineno))
            return
        self._scan_constants(_sanitize(line), raw, lineno, None, None, nodes)

    def _scan_body(
        self,
        line: str,
        raw: str,
        lineno: int,
        stack: list[_Frame],
        method_frame: _Frame,
        container: _Frame | None,
        nodes: list[Node],
    ) -> None:
        method = method_frame.node
        assert isinstance(method, MethodNode)
        owner = container.node.name if container is not None and container.node else None
        code = _sanitize(line)

        w = _WRITE_RE.match(code)
        if w:
            target = w.group(1)
            nodes.append(self._reference(target, ReferenceType.WRITE, lineno, raw, owner, method.name))
            if not target.startswith("@"):
                method_frame.locals.add(target)
            code_after = code[w.end():]
            offset = w.end()
        else:
            code_after = code
            offset = 0

        seen: set[int] = set()
        for cm in _CALL_RE.finditer(code_after):
            name = cm.group("method")
            receiver = cm.group("receiver")
            am = _ARGS_RE.match(code_after, cm.end())
            args = am.group(1) if am else None
            start = offset + cm.start("method")
            seen.add(start)
            if name in _KEYWORDS:
                continue
            rest = code_after[cm.end():]
            if rest.startswith(":") and not rest.startswith("::"):
                continue  # hash key / keyword argument
            if receiver is None and args is None:
                if name in method_frame.locals:
                    nodes.append(self._reference(name, ReferenceType.READ, lineno, raw, owner, method.name))
                    continue
                if re.match(r"\s*=(?![=~>])", rest):
                    continue
            if receiver is not None and receiver not in _KEYWORDS - {"self"}:
                if receiver[0].isupper():
                    ref_type = ReferenceType.INSTANTIATION if name == "new" else ReferenceType.READ
                    nodes.append(self._reference(receiver, ref_type, lineno, raw, owner, method.name))
                elif receiver != "self":
                    nodes.append(self._reference(receiver, ReferenceType.READ, lineno, raw, owner, method.name))
            if receiver is not None and re.match(r"\s*=(?![=~>])", rest):
                name = f"{name}="
            method.calls.append(MethodCall(
                method=name,
                line=lineno,
                column=start,
                receiver=receiver,
                arguments=_split_args(args),
            ))
            nodes.append(self._reference(name, ReferenceType.CALL, lineno, raw, owner, method.name))

        for chm in _CHAIN_RE.finditer(code_after):
            start = offset + chm.start("method")
            if start in seen or chm.group("method") in _KEYWORDS:
                continue
            name = chm.group("method")
            am = _ARGS_RE.match(code_after, chm.end())
            method.calls.append(MethodCall(
                method=name,
                line=lineno,
                column=start,
                arguments=_split_args(am.group(1) if am else None),
                chained=True,
            ))
            nodes.append(self._reference(name, ReferenceType.CALL, lineno, raw, owner, method.name))

        self._scan_constants(code, raw, lineno, owner, method.name, nodes, skip_receivers=True)

    def _scan_constants(
        self,
        code: str,
        raw: str,
        lineno: int,
        owner: str | None,
        method: str | None,
        nodes: list[Node],
        skip_receivers: bool = False,
    ) -> None:
        """Emit READ references for bare constant tokens (``Foo``, ``Foo::BAR``)."""
        for cm in _CONST_REF_RE.finditer(code):
            name, instantiation = cm.group(1), cm.group(2)
            if skip_receivers and code[cm.end(1):cm.end(1) + 1] == ".":
                continue  # already recorded as a call receiver
            ref_type = ReferenceType.INSTANTIATION if instantiation else ReferenceType.READ
            nodes.append(self._reference(name, ref_type, lineno, raw, owner, method, cm.start(1)))

    # ── Helpers ───────────────────────────────────────────────────────────────

    @staticmethod
    def _reference(
        name: str,
        ref_type: ReferenceType,
        lineno: int,
        raw: str,
        owner: str | None,
        method: str | None,
        column: int = 0,
    ) -> ReferenceNode:
        return ReferenceNode(
            kind=NodeKind.REFERENCE,
            name=name,
            line=lineno,
            ref_type=ref_type,
            column=column,
            containing_class=owner,
            containing_method=method,
            text=raw.rstrip("\n"),
        )

    @staticmethod
    def _require(m: re.Match[str], lineno: int) -> RequireNode:
        return RequireNode(
            kind=NodeKind.REQUIRE,
            name=m.group(2),
            line=lineno,
            relative=m.group(1) == "require_relative",
        )

    @staticmethod
    def _push_block(line: str, stack: list[_Frame]) -> None:
        """Track non-definition blocks so their ``end`` does not close a method."""
        if _closes_inline(line):
            return
        if (
            _BLOCK_START_RE.match(line)
            or _ASSIGNED_BLOCK_RE.search(line)
            or _DO_BLOCK_RE.search(_sanitize(line))
        ):
            stack.append(_Frame(kind="block"))


def _nearest(stack: list[_Frame], kinds: tuple[str, ...]) -> _Frame | None:
    for frame in reversed(stack):
        if frame.kind in kinds:
            return frame
    return None


def _closes_inline(line: str) -> bool:
    """True for one-liners such as ``class Foo; end`` or ``if x then y end``."""
    code = _sanitize(line)
    return bool(_TRAILING_END_RE.search(code)) and not _END_RE.match(code)


def _sanitize(line: str) -> str:
    """Blank out string literals, block parameters and trailing comments."""
    code = _STRING_RE.sub('""', line)
    code = _BLOCK_PARAMS_RE.sub("", code)
    return _TRAILING_COMMENT_RE.sub("", code)


def _heredoc_openers(line: str) -> list[tuple[str, bool]]:
    """Terminators of heredocs opened on *line*, in order.

    ``<<~ID`` and ``<<-ID`` allow an indented terminator, bare ``<<ID``
    does not.
    """
    code = _TRAILING_COMMENT_RE.sub("", line)
    return [
        (m.group(3) or m.group(4), bool(m.group(1)))
        for m in _HEREDOC_RE.finditer(code)
    ]


def _split_args(args: str | None) -> list[str]:
    if not args:
        return []
    return [a.strip() for a in args.split(",") if a.strip()]
