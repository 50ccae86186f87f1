from __future__ import annotations

import json
import pickle
from pathlib import Path

import pytest

from repugnant_pickle.common import VERBOSE_ENV_VAR
from repugnant_pickle.tools import dump
from repugnant_pickle.value import Int, Seq, SequenceType
from tests.checkpoint_fixtures import sample_checkpoint


@pytest.fixture
def pickle_path(tmp_path: Path) -> Path:
    path = tmp_path / "payload.pkl"
    path.write_bytes(pickle.dumps({"alpha": [1, 2], "beta": None}, protocol=4))
    return path


def test_dump_prints_value_tree(pickle_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    dump.main([str(pickle_path)])

    out = capsys.readouterr().out
    assert out.startswith(f"* Dumping: {pickle_path}")
    assert "Seq(Dict, [" in out
    assert "String('alpha')," in out
    assert "None," in out


def test_dump_json_output(pickle_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    dump.main([str(pickle_path), "--format", "json"])

    payload = json.loads(capsys.readouterr().out)
    assert payload == {
        "seq": "Dict",
        "items": ["alpha", {"seq": "List", "items": [1, 2]}, "beta", None],
    }


def test_dump_stats_and_depth(pickle_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    dump.main([str(pickle_path), "--stats", "--max-depth", "1"])

    out = capsys.readouterr().out
    assert "<...>" in out
    assert "Truncated" in out
    assert "Seq" in out


def test_dump_reads_checkpoint_metadata(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = sample_checkpoint(tmp_path)

    dump.main([str(path)])

    out = capsys.readouterr().out
    assert "Raw(collections.OrderedDict)" in out
    assert "Raw(torch._utils._rebuild_tensor_v2)" in out
    assert "PersId(" in out


def test_dump_named_entry(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = sample_checkpoint(tmp_path)

    with pytest.raises(SystemExit) as excinfo:
        dump.main([str(path), "--entry", "version"])

    assert excinfo.value.code == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert captured.err.startswith("repugnant-pickle-dump: UnknownOpcode:")


def test_read_payload_resolves_entries(tmp_path: Path) -> None:
    path = sample_checkpoint(tmp_path)

    metadata = dump.read_payload(path)
    assert metadata.startswith(b"\x80\x02")
    assert dump.read_payload(path, "archive/data/2") == dump.read_payload(path, "data/2")


def test_dump_reports_decode_errors(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "broken.pkl"
    path.write_bytes(pickle.dumps([1, 2, 3], protocol=2)[:-3])

    with pytest.raises(SystemExit) as excinfo:
        dump.main([str(path)])

    assert excinfo.value.code == 1
    err = capsys.readouterr().err
    assert err.startswith("repugnant-pickle-dump: TruncatedInput:")


def test_dump_reports_missing_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        dump.main([str(tmp_path / "absent.pkl")])

    assert excinfo.value.code == 1
    assert capsys.readouterr().err.startswith("repugnant-pickle-dump: ")


def test_render_value_formats() -> None:
    value = Seq(SequenceType.TUPLE, [Int(1)])
    assert dump.render_value(value, format="TEXT") == "Seq(Tuple, [\n  Int(1),\n])"
    assert json.loads(dump.render_value(value, format="json")) == {"seq": "Tuple", "items": [1]}
    with pytest.raises(ValueError):
        dump.render_value(value, format="yaml")


@pytest.mark.parametrize(
    "env_value, expected",
    [(None, False), ("1", True), ("yes", True), ("0", False), ("false", False), ("", False)],
)
def test_verbose_environment(
    monkeypatch: pytest.MonkeyPatch, pickle_path: Path, env_value, expected: bool
) -> None:
    if env_value is None:
        monkeypatch.delenv(VERBOSE_ENV_VAR, raising=False)
    else:
        monkeypatch.setenv(VERBOSE_ENV_VAR, env_value)

    assert dump._parse_args([str(pickle_path)]).verbose is expected
    assert dump._parse_args([str(pickle_path), "--verbose"]).verbose is True
    assert dump._parse_args([str(pickle_path), "--quiet"]).verbose is False


def test_max_depth_must_be_positive(pickle_path: Path) -> None:
    with pytest.raises(SystemExit):
        dump._parse_args([str(pickle_path), "--max-depth", "0"])
    with pytest.raises(SystemExit):
        dump._parse_args([str(pickle_path), "--max-nodes", "0"])


def test_dump_node_budget(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    looped: list = []
    looped.append(looped)
    looped.append(looped)
    path = tmp_path / "looped.pkl"
    path.write_bytes(pickle.dumps(looped, protocol=2))

    dump.main([str(path), "--max-nodes", "4", "--stats"])

    out = capsys.readouterr().out
    assert out.count("Seq(List, [") == 4
    assert "Seq 4 Truncated 5" in " ".join(out.split())
