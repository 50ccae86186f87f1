from __future__ import annotations

import pickle

import pytest

import repugnant_pickle


def test_top_level_exports() -> None:
    value = repugnant_pickle.loads(pickle.dumps(("a", 1), protocol=2))
    assert value == repugnant_pickle.Seq(
        repugnant_pickle.SequenceType.TUPLE,
        [repugnant_pickle.String("a"), repugnant_pickle.Int(1)],
    )
    assert issubclass(repugnant_pickle.TruncatedInput, repugnant_pickle.PickleError)
    assert issubclass(repugnant_pickle.EntryNotFound, ValueError)


def test_numpy_helpers_load_lazily() -> None:
    pytest.importorskip("numpy")
    assert callable(repugnant_pickle.store.load_tensor)
    assert callable(repugnant_pickle.tools.dump.main)


def test_unknown_attribute() -> None:
    with pytest.raises(AttributeError):
        repugnant_pickle.does_not_exist  # noqa: B018
