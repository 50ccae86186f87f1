"""The inert value graph produced by the stack machine.

Every node is a small dataclass deriving from :class:`Value`. Nothing in here
refers to live Python objects named by the stream: external symbols stay as
:class:`Raw` module/name pairs and calls stay as :class:`Global` or
:class:`Build` records.

Memo backreferences share nodes, so a crafted stream can produce a graph that
contains itself, and heavy sharing can make even an acyclic graph expand
exponentially. All traversals in this module therefore take a ``max_depth``
and a total ``max_nodes`` allowance and substitute :data:`TRUNCATED` once
either runs out.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple

from .common import MAX_DEPTH, MAX_NODES

BYTES_PREFIX = "__bytes__:"
TRUNCATED_MARKER = "<...>"


class SequenceType(Enum):
    TUPLE = "Tuple"
    LIST = "List"
    DICT = "Dict"
    SET = "Set"
    FROZENSET = "FrozenSet"


class Value:
    """Base class of every decoded node."""

    __slots__ = ()


@dataclass(frozen=True)
class NoneValue(Value):
    pass


@dataclass(frozen=True)
class Bool(Value):
    value: bool


@dataclass(frozen=True)
class Int(Value):
    value: int


@dataclass(frozen=True)
class Float(Value):
    value: float


@dataclass(frozen=True)
class String(Value):
    value: str


@dataclass(frozen=True)
class Bytes(Value):
    value: bytes


@dataclass(frozen=True)
class Raw(Value):
    """Reference to ``module.name`` that is never imported."""

    module: str
    name: str

    @property
    def qualname(self) -> str:
        return f"{self.module}.{self.name}"

    def matches(self, reference: Tuple[str, str]) -> bool:
        return (self.module, self.name) == tuple(reference)


@dataclass(frozen=True)
class Truncated(Value):
    """Placeholder emitted by traversals that hit the depth or node ceiling."""


@dataclass
class Seq(Value):
    """Ordered container. ``DICT`` items alternate key, value."""

    kind: SequenceType
    items: List[Value] = field(default_factory=list)

    def pairs(self) -> List[Tuple[Value, Value]]:
        """Re-pair a flattened key/value item list in insertion order."""

        if len(self.items) % 2:
            raise ValueError(
                f"{self.kind.value} holds {len(self.items)} items; key/value pairs need an even count"
            )
        it = iter(self.items)
        return list(zip(it, it))


@dataclass
class Global(Value):
    """``callee(*args)`` recorded as data."""

    callee: Value
    args: List[Value] = field(default_factory=list)


@dataclass
class Build(Value):
    """``target.__setstate__(state)`` recorded as data."""

    target: Value
    state: Value


@dataclass
class PersId(Value):
    """Persistent reference left for the embedding application."""

    key: Value


NONE = NoneValue()
TRUNCATED = Truncated()


class _Budget:
    """Depth ceiling and node allowance for a single traversal."""

    def __init__(self, max_depth: int, max_nodes: int) -> None:
        self.max_depth = max_depth
        self.remaining = max_nodes

    def exhausted(self, depth: int) -> bool:
        if depth >= self.max_depth or self.remaining <= 0:
            return True
        self.remaining -= 1
        return False


def _scalar_repr(value: Value) -> str | None:
    if isinstance(value, NoneValue):
        return "None"
    if isinstance(value, (Bool, Int, Float, String, Bytes)):
        return f"{type(value).__name__}({value.value!r})"
    if isinstance(value, Raw):
        return f"Raw({value.qualname})"
    if isinstance(value, Truncated):
        return TRUNCATED_MARKER
    return None


def format_value(
    value: Value,
    *,
    indent: int = 2,
    max_depth: int = MAX_DEPTH,
    max_nodes: int = MAX_NODES,
) -> str:
    """Render ``value`` as an indented tree.

    At most ``max_depth`` levels and ``max_nodes`` nodes are expanded; the rest
    render as ``<...>``.
    """

    lines: List[str] = []
    budget = _Budget(max_depth, max_nodes)

    def emit(node: Value, depth: int, prefix: str, suffix: str) -> None:
        pad = " " * (indent * depth)
        if budget.exhausted(depth):
            node = TRUNCATED
        leaf = _scalar_repr(node)
        if leaf is not None:
            lines.append(f"{pad}{prefix}{leaf}{suffix}")
            return
        if isinstance(node, Seq):
            emit_list(f"Seq({node.kind.value}, ", node.items, depth, prefix, ")" + suffix)
        elif isinstance(node, Global):
            lines.append(f"{pad}{prefix}Global(")
            emit(node.callee, depth + 1, "", ",")
            emit_list("", node.args, depth + 1, "", "")
            lines.append(f"{pad}){suffix}")
        elif isinstance(node, Build):
            lines.append(f"{pad}{prefix}Build(")
            emit(node.target, depth + 1, "", ",")
            emit(node.state, depth + 1, "", "")
            lines.append(f"{pad}){suffix}")
        elif isinstance(node, PersId):
            lines.append(f"{pad}{prefix}PersId(")
            emit(node.key, depth + 1, "", "")
            lines.append(f"{pad}){suffix}")
        else:
            raise TypeError(f"Not a decoded value: {type(node)!r}")

    def emit_list(head: str, items: List[Value], depth: int, prefix: str, tail: str) -> None:
        pad = " " * (indent * depth)
        if not items:
            lines.append(f"{pad}{prefix}{head}[]{tail}")
            return
        lines.append(f"{pad}{prefix}{head}[")
        for item in items:
            emit(item, depth + 1, "", ",")
        lines.append(f"{pad}]{tail}")

    emit(value, 0, "", "")
    return "\n".join(lines)


def to_builtin(
    value: Value, *, max_depth: int = MAX_DEPTH, max_nodes: int = MAX_NODES
) -> object:
    """Convert ``value`` into JSON-serialisable primitives.

    Scalars map to their Python equivalents, bytes to a prefixed hex string
    and structured nodes to small tagged dictionaries.
    """

    budget = _Budget(max_depth, max_nodes)

    def convert(node: Value, depth: int) -> object:
        if budget.exhausted(depth) or isinstance(node, Truncated):
            return TRUNCATED_MARKER
        if isinstance(node, NoneValue):
            return None
        if isinstance(node, (Bool, Int, Float, String)):
            return node.value
        if isinstance(node, Bytes):
            return BYTES_PREFIX + node.value.hex()
        if isinstance(node, Raw):
            return {"raw": node.qualname}
        if isinstance(node, Seq):
            return {
                "seq": node.kind.value,
                "items": [convert(item, depth + 1) for item in node.items],
            }
        if isinstance(node, Global):
            return {
                "global": convert(node.callee, depth + 1),
                "args": [convert(item, depth + 1) for item in node.args],
            }
        if isinstance(node, Build):
            return {
                "build": convert(node.target, depth + 1),
                "state": convert(node.state, depth + 1),
            }
        if isinstance(node, PersId):
            return {"persid": convert(node.key, depth + 1)}
        raise TypeError(f"Not a decoded value: {type(node)!r}")

    return convert(value, 0)


def count_nodes(
    value: Value, *, max_depth: int = MAX_DEPTH, max_nodes: int = MAX_NODES
) -> Dict[str, int]:
    """Count nodes per variant name, stopping at ``max_depth`` or ``max_nodes``."""

    counts: Dict[str, int] = {}
    budget = _Budget(max_depth, max_nodes)
    pending: List[Tuple[Value, int]] = [(value, 0)]
    while pending:
        node, depth = pending.pop()
        if budget.exhausted(depth):
            counts[Truncated.__name__] = counts.get(Truncated.__name__, 0) + 1
            continue
        name = type(node).__name__
        counts[name] = counts.get(name, 0) + 1
        if isinstance(node, Seq):
            children = node.items
        elif isinstance(node, Global):
            children = [node.callee, *node.args]
        elif isinstance(node, Build):
            children = [node.target, node.state]
        elif isinstance(node, PersId):
            children = [node.key]
        else:
            continue
        pending.extend((child, depth + 1) for child in children)
    return counts


__all__ = [
    "BYTES_PREFIX",
    "Bool",
    "Build",
    "Bytes",
    "Float",
    "Global",
    "Int",
    "NONE",
    "NoneValue",
    "PersId",
    "Raw",
    "Seq",
    "SequenceType",
    "String",
    "TRUNCATED",
    "TRUNCATED_MARKER",
    "Truncated",
    "Value",
    "count_nodes",
    "format_value",
    "to_builtin",
]
