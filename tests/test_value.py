from __future__ import annotations

import json

import pytest

from repugnant_pickle.value import (
    NONE,
    TRUNCATED_MARKER,
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
    Truncated,
    count_nodes,
    format_value,
    to_builtin,
)


def _sample() -> Global:
    return Global(
        Raw("mod", "make"),
        [
            Seq(
                SequenceType.TUPLE,
                [Int(1), String("a"), Bytes(b"\x01\xff"), NONE, Bool(True), Float(0.5)],
            ),
            PersId(String("7")),
        ],
    )


def test_format_value_layout() -> None:
    value = Seq(SequenceType.LIST, [Int(1), String("a"), Seq(SequenceType.DICT, [])])
    assert format_value(value) == "\n".join(
        [
            "Seq(List, [",
            "  Int(1),",
            "  String('a'),",
            "  Seq(Dict, []),",
            "])",
        ]
    )


def test_format_value_renders_calls_and_builds() -> None:
    rendered = format_value(Build(_sample(), Seq(SequenceType.DICT, [])))
    lines = rendered.splitlines()
    assert lines[0] == "Build("
    assert lines[1] == "  Global("
    assert lines[2] == "    Raw(mod.make),"
    assert "PersId(" in rendered
    assert "Bytes(b'\\x01\\xff')," in rendered
    assert lines[-1] == ")"


def test_format_value_truncates_at_depth() -> None:
    nested: Seq = Seq(SequenceType.LIST, [])
    current = nested
    for _ in range(10):
        child = Seq(SequenceType.LIST, [])
        current.items.append(child)
        current = child

    rendered = format_value(nested, max_depth=3)
    assert rendered.count("Seq(List") == 3
    assert TRUNCATED_MARKER in rendered


def test_to_builtin_is_json_serialisable() -> None:
    converted = to_builtin(_sample())
    assert converted == {
        "global": {"raw": "mod.make"},
        "args": [
            {"seq": "Tuple", "items": [1, "a", "__bytes__:01ff", None, True, 0.5]},
            {"persid": "7"},
        ],
    }
    json.dumps(converted)


def test_to_builtin_handles_cycles() -> None:
    looped = Seq(SequenceType.LIST, [])
    looped.items.append(looped)

    converted = to_builtin(looped, max_depth=3)
    assert converted == {
        "seq": "List",
        "items": [{"seq": "List", "items": [{"seq": "List", "items": [TRUNCATED_MARKER]}]}],
    }


def test_count_nodes_stops_at_depth() -> None:
    looped = Seq(SequenceType.LIST, [Int(1)])
    looped.items.append(looped)

    counts = count_nodes(looped, max_depth=4)
    assert counts == {"Seq": 4, "Int": 3, Truncated.__name__: 2}


def test_shared_children_exhaust_node_budget() -> None:
    looped = Seq(SequenceType.LIST, [])
    looped.items.extend([looped, looped])

    rendered = format_value(looped, max_nodes=64)
    assert rendered.count("Seq(List, [") == 64
    assert rendered.count(TRUNCATED_MARKER) == 65
    assert count_nodes(looped, max_nodes=64) == {"Seq": 64, Truncated.__name__: 65}
    assert to_builtin(looped, max_nodes=3) == {
        "seq": "List",
        "items": [
            {
                "seq": "List",
                "items": [
                    {"seq": "List", "items": [TRUNCATED_MARKER, TRUNCATED_MARKER]},
                    TRUNCATED_MARKER,
                ],
            },
            TRUNCATED_MARKER,
        ],
    }


def test_count_nodes_of_sample() -> None:
    counts = count_nodes(Build(_sample(), NONE))
    assert counts["Build"] == 1
    assert counts["Global"] == 1
    assert counts["Raw"] == 1
    assert counts["NoneValue"] == 2
    assert counts["String"] == 2


def test_pairs_require_even_items() -> None:
    mapping = Seq(SequenceType.DICT, [String("a"), Int(1), String("b"), Int(2)])
    assert mapping.pairs() == [(String("a"), Int(1)), (String("b"), Int(2))]

    with pytest.raises(ValueError):
        Seq(SequenceType.DICT, [String("a")]).pairs()


def test_raw_reference_helpers() -> None:
    raw = Raw("torch._utils", "_rebuild_tensor_v2")
    assert raw.qualname == "torch._utils._rebuild_tensor_v2"
    assert raw.matches(("torch._utils", "_rebuild_tensor_v2"))
    assert not raw.matches(("torch", "_rebuild_tensor_v2"))


def test_leaf_values_are_immutable() -> None:
    with pytest.raises(AttributeError):
        Int(1).value = 2  # type: ignore[misc]


def test_format_value_rejects_foreign_objects() -> None:
    with pytest.raises(TypeError):
        format_value(Seq(SequenceType.LIST, [object()]))  # type: ignore[list-item]
