from __future__ import annotations

import pickle
import struct

import pytest

from repugnant_pickle.common import MalformedStream, TruncatedInput, UnknownOpcode
from repugnant_pickle.ops import Opcode, PickleOp, iter_ops, parse_ops


def test_parse_ops_records_offsets_and_operands() -> None:
    ops = parse_ops(b"\x80\x02K\x07X\x02\x00\x00\x00hi\x86.")

    assert [op.opcode for op in ops] == [
        Opcode.PROTO,
        Opcode.BININT1,
        Opcode.BINUNICODE,
        Opcode.TUPLE2,
        Opcode.STOP,
    ]
    assert [op.offset for op in ops] == [0, 2, 4, 11, 12]
    assert ops[0].arg == 2
    assert ops[1].arg == 7
    assert ops[2].arg == "hi"
    assert ops[3].arg is None
    assert ops[2].name == "BINUNICODE"


@pytest.mark.parametrize(
    "payload, opcode, expected",
    [
        (b"J\xfe\xff\xff\xff", Opcode.BININT, -2),
        (b"M\x01\x02", Opcode.BININT2, 0x0201),
        (b"G" + struct.pack(">d", 1.25), Opcode.BINFLOAT, 1.25),
        (b"\x8a\x01\xff", Opcode.LONG1, -1),
        (b"\x8a\x00", Opcode.LONG1, 0),
        (b"\x8b\x02\x00\x00\x00\x00\x01", Opcode.LONG4, 256),
        (b"I42\n", Opcode.INT, "42"),
        (b"L12L\n", Opcode.LONG, "12L"),
        (b"F2.5\n", Opcode.FLOAT, "2.5"),
        (b"S'abc'\n", Opcode.STRING, b"'abc'"),
        (b"V\\u00e9\n", Opcode.UNICODE, "é"),
        (b"T\x02\x00\x00\x00ab", Opcode.BINSTRING, b"ab"),
        (b"C\x02\x00\xff", Opcode.SHORT_BINBYTES, b"\x00\xff"),
        (b"\x8c\x02\xc3\xa9", Opcode.SHORT_BINUNICODE, "é"),
        (b"cmodule\nName\n", Opcode.GLOBAL, ("module", "Name")),
        (b"r\x00\x01\x00\x00", Opcode.LONG_BINPUT, 256),
        (b"\x83\x34\x12", Opcode.EXT2, 0x1234),
        (b"\x95\x10\x00\x00\x00\x00\x00\x00\x00", Opcode.FRAME, 16),
    ],
)
def test_operand_encodings(payload: bytes, opcode: Opcode, expected: object) -> None:
    (op,) = parse_ops(payload)
    assert op == PickleOp(opcode, expected, 0)


def test_iteration_stops_after_stop_opcode() -> None:
    ops = parse_ops(b"N.\xff\xff garbage")
    assert [op.opcode for op in ops] == [Opcode.NONE, Opcode.STOP]


def test_iter_ops_is_lazy() -> None:
    stream = iter_ops(b"NN\xff")
    assert next(stream).opcode is Opcode.NONE
    assert next(stream).opcode is Opcode.NONE
    with pytest.raises(UnknownOpcode):
        next(stream)


def test_unknown_opcode_reports_offset() -> None:
    with pytest.raises(UnknownOpcode) as excinfo:
        parse_ops(b"N\xfe.")
    assert excinfo.value.offset == 1
    assert "0xfe" in str(excinfo.value)


@pytest.mark.parametrize(
    "payload",
    [
        b"K",
        b"J\x01\x02",
        b"X\x05\x00\x00\x00abc",
        b"B\xff\xff\xff\xff",
        b"cmodule\nName",
        b"I12",
        b"G\x00\x00",
    ],
)
def test_truncated_operands(payload: bytes) -> None:
    with pytest.raises(TruncatedInput) as excinfo:
        parse_ops(payload)
    assert excinfo.value.offset == 0
    assert excinfo.value.opcode is not None


def test_negative_binstring_length_is_malformed() -> None:
    with pytest.raises(MalformedStream):
        parse_ops(b"T\xff\xff\xff\xff")


def test_invalid_utf8_operand_is_malformed() -> None:
    with pytest.raises(MalformedStream):
        parse_ops(b"\x8c\x01\xff")


def test_start_offset_skips_prefix() -> None:
    data = b"junkN."
    ops = parse_ops(data, start=4)
    assert [op.offset for op in ops] == [4, 5]


@pytest.mark.parametrize("protocol", range(pickle.HIGHEST_PROTOCOL + 1))
def test_stdlib_pickles_tokenize(protocol: int) -> None:
    data = pickle.dumps({"key": [1, 2.5, None, True, "text", b"raw"]}, protocol=protocol)
    ops = parse_ops(data)
    assert ops[-1].opcode is Opcode.STOP
    assert ops[-1].offset == len(data) - 1


def test_accepts_memoryview_input() -> None:
    view = memoryview(bytearray(b"K\x05."))
    assert [op.arg for op in parse_ops(view)] == [5, None]
