"""Fold a stream of pickle opcodes into one inert :class:`~repugnant_pickle.value.Value`.

The machine mirrors the unpickler's operand stack, mark stack and memo table,
but every operation that would import or call something is recorded as data
instead (:class:`Raw`, :class:`Global`, :class:`Build`). Persistent references
are handed to a caller supplied hook whose return value becomes the
:class:`PersId` key.
"""

from __future__ import annotations

import codecs
import logging
from dataclasses import dataclass
from typing import BinaryIO, Callable, Dict, Iterable, List, Optional, Union

from .common import (
    MAX_DEPTH,
    MAX_NODES,
    MAX_PROTOCOL,
    MalformedStream,
    MissingMemoEntry,
    StackUnderflow,
    TruncatedInput,
)
from .ops import Opcode, PickleOp, iter_ops
from .value import (
    NONE,
    Bool,
    Build,
    Bytes,
    Float,
    Global,
    Int,
    PersId,
    Raw,
    Seq,
    SequenceType,
    String,
    Value,
)

logger = logging.getLogger(__name__)

PersistentLoad = Callable[[Value], Value]


@dataclass
class DecoderSettings:
    """Tunables shared by the decoder and the traversals run on its output."""

    max_depth: int = MAX_DEPTH
    max_nodes: int = MAX_NODES
    max_protocol: int = MAX_PROTOCOL


def _pass_through(key: Value) -> Value:
    return key


def _text_to_int(text: str) -> int:
    text = text.strip()
    if text.endswith("L"):
        text = text[:-1]
    return int(text)


def _binary_string(raw: bytes) -> Value:
    try:
        return String(raw.decode("utf-8"))
    except UnicodeDecodeError:
        return Bytes(raw)


def _describe(value: Value) -> str:
    if isinstance(value, Seq):
        return f"Seq({value.kind.value})"
    return type(value).__name__


class PickleMachine:
    """Single-threaded evaluator for one pickle stream at a time.

    ``run`` resets all state on entry, so an instance may be reused for
    several streams in sequence but must not be shared between threads.
    """

    def __init__(
        self,
        persistent_load: Optional[PersistentLoad] = None,
        *,
        settings: Optional[DecoderSettings] = None,
    ) -> None:
        self.persistent_load = persistent_load or _pass_through
        self.settings = settings or DecoderSettings()
        self._stack: List[Value] = []
        self._marks: List[int] = []
        self._memo: Dict[int, Value] = {}
        self._op: Optional[PickleOp] = None
        self._dispatch: Dict[Opcode, Callable[[PickleOp], Optional[Value]]] = {
            Opcode.MARK: self._op_mark,
            Opcode.STOP: self._op_stop,
            Opcode.POP: self._op_pop,
            Opcode.POP_MARK: self._op_pop_mark,
            Opcode.DUP: self._op_dup,
            Opcode.NONE: lambda op: self._push(NONE),
            Opcode.NEWTRUE: lambda op: self._push(Bool(True)),
            Opcode.NEWFALSE: lambda op: self._push(Bool(False)),
            Opcode.INT: self._op_int,
            Opcode.LONG: lambda op: self._push(Int(self._int_arg(op))),
            Opcode.BININT: self._op_literal_int,
            Opcode.BININT1: self._op_literal_int,
            Opcode.BININT2: self._op_literal_int,
            Opcode.LONG1: self._op_literal_int,
            Opcode.LONG4: self._op_literal_int,
            Opcode.FLOAT: self._op_float,
            Opcode.BINFLOAT: lambda op: self._push(Float(op.arg)),
            Opcode.STRING: self._op_string,
            Opcode.BINSTRING: lambda op: self._push(_binary_string(op.arg)),
            Opcode.SHORT_BINSTRING: lambda op: self._push(_binary_string(op.arg)),
            Opcode.UNICODE: lambda op: self._push(String(op.arg)),
            Opcode.BINUNICODE: lambda op: self._push(String(op.arg)),
            Opcode.SHORT_BINUNICODE: lambda op: self._push(String(op.arg)),
            Opcode.BINUNICODE8: lambda op: self._push(String(op.arg)),
            Opcode.BINBYTES: lambda op: self._push(Bytes(op.arg)),
            Opcode.SHORT_BINBYTES: lambda op: self._push(Bytes(op.arg)),
            Opcode.BINBYTES8: lambda op: self._push(Bytes(op.arg)),
            Opcode.BYTEARRAY8: lambda op: self._push(Bytes(op.arg)),
            Opcode.EMPTY_TUPLE: lambda op: self._push(Seq(SequenceType.TUPLE, [])),
            Opcode.EMPTY_LIST: lambda op: self._push(Seq(SequenceType.LIST, [])),
            Opcode.EMPTY_DICT: lambda op: self._push(Seq(SequenceType.DICT, [])),
            Opcode.EMPTY_SET: lambda op: self._push(Seq(SequenceType.SET, [])),
            Opcode.TUPLE: lambda op: self._push(Seq(SequenceType.TUPLE, self._pop_mark())),
            Opcode.LIST: lambda op: self._push(Seq(SequenceType.LIST, self._pop_mark())),
            Opcode.FROZENSET: lambda op: self._push(
                Seq(SequenceType.FROZENSET, self._pop_mark())
            ),
            Opcode.DICT: self._op_dict,
            Opcode.TUPLE1: self._op_small_tuple,
            Opcode.TUPLE2: self._op_small_tuple,
            Opcode.TUPLE3: self._op_small_tuple,
            Opcode.APPEND: self._op_append,
            Opcode.APPENDS: self._op_appends,
            Opcode.ADDITEMS: self._op_appends,
            Opcode.SETITEM: self._op_setitem,
            Opcode.SETITEMS: self._op_setitems,
            Opcode.PUT: self._op_put,
            Opcode.BINPUT: self._op_put,
            Opcode.LONG_BINPUT: self._op_put,
            Opcode.MEMOIZE: self._op_memoize,
            Opcode.GET: self._op_get,
            Opcode.BINGET: self._op_get,
            Opcode.LONG_BINGET: self._op_get,
            Opcode.GLOBAL: self._op_global,
            Opcode.STACK_GLOBAL: self._op_stack_global,
            Opcode.INST: self._op_inst,
            Opcode.OBJ: self._op_obj,
            Opcode.REDUCE: self._op_reduce,
            Opcode.NEWOBJ: self._op_reduce,
            Opcode.NEWOBJ_EX: self._op_newobj_ex,
            Opcode.BUILD: self._op_build,
            Opcode.PERSID: lambda op: self._push(PersId(self.persistent_load(String(op.arg)))),
            Opcode.BINPERSID: lambda op: self._push(PersId(self.persistent_load(self._pop()))),
            Opcode.EXT1: self._op_ext,
            Opcode.EXT2: self._op_ext,
            Opcode.EXT4: self._op_ext,
            Opcode.NEXT_BUFFER: lambda op: self._push(Global(Raw("pickle", "PickleBuffer"), [])),
            Opcode.READONLY_BUFFER: self._op_readonly_buffer,
            Opcode.PROTO: self._op_proto,
            Opcode.FRAME: self._op_frame,
        }

    # Public API ---------------------------------------------------------

    def run(self, ops: Iterable[PickleOp]) -> Value:
        """Evaluate ``ops`` up to ``STOP`` and return the single result."""

        self._stack = []
        self._marks = []
        self._memo = {}
        self._op = None
        try:
            for op in ops:
                self._op = op
                handler = self._dispatch[op.opcode]
                result = handler(op)
                if op.opcode is Opcode.STOP:
                    return result  # type: ignore[return-value]
            offset = None
            if self._op is not None:
                offset = self._op.offset
            raise TruncatedInput("Stream ended before the STOP opcode", offset=offset)
        finally:
            self._stack = []
            self._marks = []
            self._memo = {}
            self._op = None

    # Stack helpers ------------------------------------------------------

    def _fail(self, exc_type, message: str):
        op = self._op
        return exc_type(
            message,
            offset=op.offset if op is not None else None,
            opcode=op.name if op is not None else None,
        )

    def _floor(self) -> int:
        return self._marks[-1] if self._marks else 0

    def _push(self, value: Value) -> None:
        self._stack.append(value)

    def _pop(self) -> Value:
        if len(self._stack) <= self._floor():
            raise self._fail(StackUnderflow, "Stack is empty above the current mark")
        return self._stack.pop()

    def _top(self) -> Value:
        if len(self._stack) <= self._floor():
            raise self._fail(StackUnderflow, "Stack is empty above the current mark")
        return self._stack[-1]

    def _pop_mark(self) -> List[Value]:
        if not self._marks:
            raise self._fail(MalformedStream, "No MARK to pop back to")
        start = self._marks.pop()
        items = self._stack[start:]
        del self._stack[start:]
        return items

    def _int_arg(self, op: PickleOp) -> int:
        try:
            return _text_to_int(op.arg)  # type: ignore[arg-type]
        except ValueError as exc:
            raise self._fail(MalformedStream, f"Invalid integer literal {op.arg!r}") from exc

    # Stack manipulation -------------------------------------------------

    def _op_mark(self, op: PickleOp) -> None:
        self._marks.append(len(self._stack))

    def _op_stop(self, op: PickleOp) -> Value:
        if self._marks:
            raise self._fail(
                MalformedStream, f"{len(self._marks)} unclosed MARK(s) at STOP"
            )
        if len(self._stack) != 1:
            raise self._fail(
                MalformedStream,
                f"Expected exactly one value at STOP, found {len(self._stack)}",
            )
        return self._stack.pop()

    def _op_pop(self, op: PickleOp) -> None:
        if self._marks and len(self._stack) == self._marks[-1]:
            self._marks.pop()
            return
        self._pop()

    def _op_pop_mark(self, op: PickleOp) -> None:
        self._pop_mark()

    def _op_dup(self, op: PickleOp) -> None:
        self._push(self._top())

    # Literals -----------------------------------------------------------

    def _op_int(self, op: PickleOp) -> None:
        if op.arg == "01":
            self._push(Bool(True))
        elif op.arg == "00":
            self._push(Bool(False))
        else:
            self._push(Int(self._int_arg(op)))

    def _op_literal_int(self, op: PickleOp) -> None:
        self._push(Int(op.arg))  # type: ignore[arg-type]

    def _op_float(self, op: PickleOp) -> None:
        try:
            self._push(Float(float(op.arg)))  # type: ignore[arg-type]
        except ValueError as exc:
            raise self._fail(MalformedStream, f"Invalid float literal {op.arg!r}") from exc

    def _op_string(self, op: PickleOp) -> None:
        raw: bytes = op.arg  # type: ignore[assignment]
        if len(raw) < 2 or raw[:1] != raw[-1:] or raw[:1] not in (b"'", b'"'):
            raise self._fail(MalformedStream, "STRING operand is not quoted")
        try:
            decoded = codecs.escape_decode(raw[1:-1])[0]
        except ValueError as exc:
            raise self._fail(MalformedStream, f"Invalid STRING escape: {exc}") from exc
        self._push(_binary_string(decoded))

    # Containers ---------------------------------------------------------

    def _op_dict(self, op: PickleOp) -> None:
        items = self._pop_mark()
        if len(items) % 2:
            raise self._fail(MalformedStream, "DICT needs an even number of items")
        self._push(Seq(SequenceType.DICT, items))

    def _op_small_tuple(self, op: PickleOp) -> None:
        count = op.opcode - Opcode.TUPLE1 + 1
        items = [self._pop() for _ in range(count)]
        items.reverse()
        self._push(Seq(SequenceType.TUPLE, items))

    def _extend_target(self, items: List[Value]) -> None:
        target = self._top()
        if isinstance(target, Seq) and target.kind is not SequenceType.DICT:
            target.items.extend(items)
        elif isinstance(target, Global):
            target.args.extend(items)
        else:
            raise self._fail(
                MalformedStream, f"Cannot extend a {_describe(target)} value"
            )

    def _op_append(self, op: PickleOp) -> None:
        item = self._pop()
        self._extend_target([item])

    def _op_appends(self, op: PickleOp) -> None:
        items = self._pop_mark()
        self._extend_target(items)

    def _set_items(self, items: List[Value]) -> None:
        if len(items) % 2:
            raise self._fail(MalformedStream, "Key/value items must come in pairs")
        target = self._top()
        if isinstance(target, Seq) and target.kind is SequenceType.DICT:
            target.items.extend(items)
        elif isinstance(target, Global):
            target.args.append(Seq(SequenceType.TUPLE, items))
        else:
            raise self._fail(
                MalformedStream, f"Cannot set items on a {_describe(target)} value"
            )

    def _op_setitem(self, op: PickleOp) -> None:
        value = self._pop()
        key = self._pop()
        self._set_items([key, value])

    def _op_setitems(self, op: PickleOp) -> None:
        self._set_items(self._pop_mark())

    # Memo ---------------------------------------------------------------

    def _memo_key(self, op: PickleOp) -> int:
        if isinstance(op.arg, str):
            try:
                return int(op.arg)
            except ValueError as exc:
                raise self._fail(MalformedStream, f"Invalid memo key {op.arg!r}") from exc
        return op.arg  # type: ignore[return-value]

    def _op_put(self, op: PickleOp) -> None:
        key = self._memo_key(op)
        if key < 0:
            raise self._fail(MalformedStream, f"Negative memo key {key}")
        self._memo[key] = self._top()

    def _op_memoize(self, op: PickleOp) -> None:
        self._memo[len(self._memo)] = self._top()

    def _op_get(self, op: PickleOp) -> None:
        key = self._memo_key(op)
        try:
            value = self._memo[key]
        except KeyError:
            raise self._fail(MissingMemoEntry, f"Memo id {key} was never bound") from None
        self._push(value)

    # Object construction ------------------------------------------------

    def _op_global(self, op: PickleOp) -> None:
        module, name = op.arg  # type: ignore[misc]
        self._push(Raw(module, name))

    def _op_stack_global(self, op: PickleOp) -> None:
        name = self._pop()
        module = self._pop()
        if not isinstance(module, String) or not isinstance(name, String):
            raise self._fail(MalformedStream, "STACK_GLOBAL needs two strings")
        self._push(Raw(module.value, name.value))

    def _op_inst(self, op: PickleOp) -> None:
        module, name = op.arg  # type: ignore[misc]
        args = self._pop_mark()
        self._push(Global(Raw(module, name), [Seq(SequenceType.TUPLE, args)]))

    def _op_obj(self, op: PickleOp) -> None:
        items = self._pop_mark()
        if not items:
            raise self._fail(StackUnderflow, "OBJ needs a class after the MARK")
        self._push(Global(items[0], [Seq(SequenceType.TUPLE, items[1:])]))

    def _op_reduce(self, op: PickleOp) -> None:
        args = self._pop()
        callee = self._pop()
        self._push(Global(callee, [args]))

    def _op_newobj_ex(self, op: PickleOp) -> None:
        kwargs = self._pop()
        args = self._pop()
        cls = self._pop()
        self._push(
            Global(
                Raw("copyreg", "__newobj_ex__"),
                [Seq(SequenceType.TUPLE, [cls, args, kwargs])],
            )
        )

    def _op_build(self, op: PickleOp) -> None:
        state = self._pop()
        target = self._pop()
        self._push(Build(target, state))

    def _op_ext(self, op: PickleOp) -> None:
        self._push(Global(Raw("copyreg", "_extension_registry"), [Int(op.arg)]))  # type: ignore[arg-type]

    def _op_readonly_buffer(self, op: PickleOp) -> None:
        self._top()

    # Advisory markers ---------------------------------------------------

    def _op_proto(self, op: PickleOp) -> None:
        if op.arg > self.settings.max_protocol:  # type: ignore[operator]
            logger.warning(
                "Stream declares protocol %s (newest known is %s); decoding anyway",
                op.arg,
                self.settings.max_protocol,
            )
        else:
            logger.debug("Pickle protocol %s", op.arg)

    def _op_frame(self, op: PickleOp) -> None:
        logger.debug("Frame of %d bytes at offset %d", op.arg, op.offset)


def evaluate(
    ops: Iterable[PickleOp],
    persistent_load: Optional[PersistentLoad] = None,
    *,
    settings: Optional[DecoderSettings] = None,
) -> Value:
    """Evaluate an opcode sequence with a fresh :class:`PickleMachine`."""

    return PickleMachine(persistent_load, settings=settings).run(ops)


def loads(
    data: Union[bytes, bytearray, memoryview],
    persistent_load: Optional[PersistentLoad] = None,
    *,
    settings: Optional[DecoderSettings] = None,
) -> Value:
    """Decode a complete pickle byte string into a value graph."""

    return evaluate(iter_ops(data), persistent_load, settings=settings)


def load(
    handle: BinaryIO,
    persistent_load: Optional[PersistentLoad] = None,
    *,
    settings: Optional[DecoderSettings] = None,
) -> Value:
    """Read ``handle`` to the end and decode it."""

    return loads(handle.read(), persistent_load, settings=settings)


__all__ = [
    "DecoderSettings",
    "PersistentLoad",
    "PickleMachine",
    "evaluate",
    "load",
    "loads",
]
