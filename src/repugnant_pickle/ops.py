"""Split a raw pickle byte stream into ``(opcode, operand)`` tokens.

The reader only understands the byte-level encoding of each opcode: fixed
width integers and floats, counted strings and newline terminated text
arguments. It does not interpret what the opcodes mean; that is the job of
:mod:`repugnant_pickle.machine`.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

from .common import MalformedStream, TruncatedInput, UnknownOpcode

Operand = Union[None, int, float, str, bytes, Tuple[str, str]]


class Opcode(IntEnum):
    MARK = 0x28  # (
    STOP = 0x2E  # .
    POP = 0x30  # 0
    POP_MARK = 0x31  # 1
    DUP = 0x32  # 2
    FLOAT = 0x46  # F
    INT = 0x49  # I
    BININT = 0x4A  # J
    BININT1 = 0x4B  # K
    LONG = 0x4C  # L
    BININT2 = 0x4D  # M
    NONE = 0x4E  # N
    PERSID = 0x50  # P
    BINPERSID = 0x51  # Q
    REDUCE = 0x52  # R
    STRING = 0x53  # S
    BINSTRING = 0x54  # T
    SHORT_BINSTRING = 0x55  # U
    UNICODE = 0x56  # V
    BINUNICODE = 0x58  # X
    APPEND = 0x61  # a
    BUILD = 0x62  # b
    GLOBAL = 0x63  # c
    DICT = 0x64  # d
    EMPTY_DICT = 0x7D  # }
    APPENDS = 0x65  # e
    GET = 0x67  # g
    BINGET = 0x68  # h
    INST = 0x69  # i
    LONG_BINGET = 0x6A  # j
    LIST = 0x6C  # l
    EMPTY_LIST = 0x5D  # ]
    OBJ = 0x6F  # o
    PUT = 0x70  # p
    BINPUT = 0x71  # q
    LONG_BINPUT = 0x72  # r
    SETITEM = 0x73  # s
    TUPLE = 0x74  # t
    EMPTY_TUPLE = 0x29  # )
    SETITEMS = 0x75  # u
    BINFLOAT = 0x47  # G

    # Protocol 2
    PROTO = 0x80
    NEWOBJ = 0x81
    EXT1 = 0x82
    EXT2 = 0x83
    EXT4 = 0x84
    TUPLE1 = 0x85
    TUPLE2 = 0x86
    TUPLE3 = 0x87
    NEWTRUE = 0x88
    NEWFALSE = 0x89
    LONG1 = 0x8A
    LONG4 = 0x8B

    # Protocol 3
    BINBYTES = 0x42  # B
    SHORT_BINBYTES = 0x43  # C

    # Protocol 4
    SHORT_BINUNICODE = 0x8C
    BINUNICODE8 = 0x8D
    BINBYTES8 = 0x8E
    EMPTY_SET = 0x8F
    ADDITEMS = 0x90
    FROZENSET = 0x91
    NEWOBJ_EX = 0x92
    STACK_GLOBAL = 0x93
    MEMOIZE = 0x94
    FRAME = 0x95

    # Protocol 5
    BYTEARRAY8 = 0x96
    NEXT_BUFFER = 0x97
    READONLY_BUFFER = 0x98


@dataclass(frozen=True)
class PickleOp:
    """One decoded opcode together with its operand and source position."""

    opcode: Opcode
    arg: Operand
    offset: int

    @property
    def name(self) -> str:
        return self.opcode.name


_U8 = struct.Struct("<B")
_U16 = struct.Struct("<H")
_I32 = struct.Struct("<i")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
_F64_BE = struct.Struct(">d")


class _Cursor:
    """Bounds-checked read position over an immutable byte buffer."""

    __slots__ = ("_data", "pos", "_op_offset", "_op_name")

    def __init__(self, data: memoryview, pos: int) -> None:
        self._data = data
        self.pos = pos
        self._op_offset = pos
        self._op_name: Optional[str] = None

    def begin(self, offset: int, name: Optional[str]) -> None:
        self._op_offset = offset
        self._op_name = name

    def at_end(self) -> bool:
        return self.pos >= len(self._data)

    def take(self, size: int) -> bytes:
        end = self.pos + size
        if size < 0 or end > len(self._data):
            raise TruncatedInput(
                f"Needed {size} operand bytes, {len(self._data) - self.pos} remain",
                offset=self._op_offset,
                opcode=self._op_name,
            )
        chunk = bytes(self._data[self.pos : end])
        self.pos = end
        return chunk

    def unpack(self, fmt: struct.Struct):
        return fmt.unpack(self.take(fmt.size))[0]

    def line(self) -> bytes:
        data = self._data
        start = self.pos
        for index in range(start, len(data)):
            if data[index] == 0x0A:
                self.pos = index + 1
                return bytes(data[start:index])
        raise TruncatedInput(
            "Text operand is missing its terminating newline",
            offset=self._op_offset,
            opcode=self._op_name,
        )

    def text(self, raw: bytes, encoding: str = "utf-8", errors: str = "strict") -> str:
        try:
            return raw.decode(encoding, errors)
        except UnicodeDecodeError as exc:
            raise MalformedStream(
                f"Operand is not valid {encoding}: {exc.reason}",
                offset=self._op_offset,
                opcode=self._op_name,
            ) from exc

    def counted(self, length_fmt: struct.Struct) -> bytes:
        length = self.unpack(length_fmt)
        if length < 0:
            raise MalformedStream(
                f"Negative operand length {length}",
                offset=self._op_offset,
                opcode=self._op_name,
            )
        return self.take(length)


def _no_operand(cursor: _Cursor) -> Operand:
    return None


def _text_line(cursor: _Cursor) -> Operand:
    return cursor.text(cursor.line(), "ascii")


def _raw_line(cursor: _Cursor) -> Operand:
    return cursor.line()


def _unicode_line(cursor: _Cursor) -> Operand:
    return cursor.text(cursor.line(), "raw-unicode-escape")


def _name_pair(cursor: _Cursor) -> Operand:
    module = cursor.text(cursor.line())
    name = cursor.text(cursor.line())
    return module, name


def _fixed(fmt: struct.Struct) -> Callable[[_Cursor], Operand]:
    def reader(cursor: _Cursor) -> Operand:
        return cursor.unpack(fmt)

    return reader


def _counted_bytes(fmt: struct.Struct) -> Callable[[_Cursor], Operand]:
    def reader(cursor: _Cursor) -> Operand:
        return cursor.counted(fmt)

    return reader


def _counted_text(fmt: struct.Struct) -> Callable[[_Cursor], Operand]:
    def reader(cursor: _Cursor) -> Operand:
        return cursor.text(cursor.counted(fmt), "utf-8", "surrogatepass")

    return reader


def _counted_long(fmt: struct.Struct) -> Callable[[_Cursor], Operand]:
    def reader(cursor: _Cursor) -> Operand:
        return int.from_bytes(cursor.counted(fmt), "little", signed=True)

    return reader


def _float_be(cursor: _Cursor) -> Operand:
    return cursor.unpack(_F64_BE)


_OPERAND_READERS: Dict[Opcode, Callable[[_Cursor], Operand]] = {
    Opcode.FLOAT: _text_line,
    Opcode.INT: _text_line,
    Opcode.LONG: _text_line,
    Opcode.PERSID: _text_line,
    Opcode.GET: _text_line,
    Opcode.PUT: _text_line,
    Opcode.STRING: _raw_line,
    Opcode.UNICODE: _unicode_line,
    Opcode.GLOBAL: _name_pair,
    Opcode.INST: _name_pair,
    Opcode.BININT: _fixed(_I32),
    Opcode.BININT1: _fixed(_U8),
    Opcode.BININT2: _fixed(_U16),
    Opcode.BINGET: _fixed(_U8),
    Opcode.BINPUT: _fixed(_U8),
    Opcode.LONG_BINGET: _fixed(_U32),
    Opcode.LONG_BINPUT: _fixed(_U32),
    Opcode.PROTO: _fixed(_U8),
    Opcode.EXT1: _fixed(_U8),
    Opcode.EXT2: _fixed(_U16),
    Opcode.EXT4: _fixed(_I32),
    Opcode.FRAME: _fixed(_U64),
    Opcode.BINFLOAT: _float_be,
    Opcode.BINSTRING: _counted_bytes(_I32),
    Opcode.SHORT_BINSTRING: _counted_bytes(_U8),
    Opcode.BINBYTES: _counted_bytes(_U32),
    Opcode.SHORT_BINBYTES: _counted_bytes(_U8),
    Opcode.BINBYTES8: _counted_bytes(_U64),
    Opcode.BYTEARRAY8: _counted_bytes(_U64),
    Opcode.BINUNICODE: _counted_text(_U32),
    Opcode.SHORT_BINUNICODE: _counted_text(_U8),
    Opcode.BINUNICODE8: _counted_text(_U64),
    Opcode.LONG1: _counted_long(_U8),
    Opcode.LONG4: _counted_long(_I32),
}

_OPCODES_BY_BYTE: Dict[int, Opcode] = {member.value: member for member in Opcode}


def iter_ops(data: Union[bytes, bytearray, memoryview], start: int = 0) -> Iterator[PickleOp]:
    """Yield the opcodes of ``data`` lazily, stopping after ``STOP``.

    The generator ends silently when the input runs out between opcodes; a
    missing ``STOP`` is the stack machine's concern. Bytes following ``STOP``
    are never looked at.
    """

    view = memoryview(data)
    if view.format != "B" or view.ndim != 1:
        view = view.cast("B")
    cursor = _Cursor(view, start)
    while not cursor.at_end():
        offset = cursor.pos
        tag = cursor.take(1)[0]
        opcode = _OPCODES_BY_BYTE.get(tag)
        if opcode is None:
            raise UnknownOpcode(f"Unknown opcode byte 0x{tag:02x}", offset=offset)
        cursor.begin(offset, opcode.name)
        reader = _OPERAND_READERS.get(opcode, _no_operand)
        yield PickleOp(opcode, reader(cursor), offset)
        if opcode is Opcode.STOP:
            return


def parse_ops(data: Union[bytes, bytearray, memoryview], start: int = 0) -> List[PickleOp]:
    """Eager variant of :func:`iter_ops`."""

    return list(iter_ops(data, start))


__all__ = ["Opcode", "Operand", "PickleOp", "iter_ops", "parse_ops"]
