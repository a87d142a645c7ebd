import json
import os

import pytest

from pbench.graph import (
    file_name_without_path_and_ext,
    parse_stage,
    parse_stage_from_file,
    parse_stage_graph,
    parse_stage_graph_from_file,
    read_stage_from_file,
)
from pbench.model import Stage


def write_stage(directory, name, data):
    path = directory / f"{name}.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


@pytest.fixture
def diamond(tmp_path):
    (tmp_path / "q.sql").write_text("select 1;", encoding="utf-8")
    write_stage(tmp_path, "stage_1", {"queries": ["select 1"], "next": ["stage_2.json", "stage_3.json"]})
    write_stage(tmp_path, "stage_2", {"queries": ["select 2"], "next": ["stage_4.json"]})
    write_stage(tmp_path, "stage_3", {"query_files": ["q.sql"], "next": ["stage_4.json"]})
    write_stage(tmp_path, "stage_4", {"queries": ["select 4"]})
    return tmp_path


def test_parse_graph_from_file(diamond):
    first, stages = parse_stage_graph_from_file(str(diamond / "stage_1.json"))
    assert set(stages) == {"stage_1", "stage_2", "stage_3", "stage_4"}
    assert first is stages["stage_1"]
    assert first.next_stages == [stages["stage_2"], stages["stage_3"]]
    assert stages["stage_2"].next_stages == [stages["stage_4"]]
    assert stages["stage_3"].next_stages == [stages["stage_4"]]
    assert stages["stage_4"].next_stages == []
    assert stages["stage_3"].query_files == [str(diamond / "q.sql")]
    assert first.base_dir == str(diamond)


def test_shared_stage_counts_each_prerequisite(diamond):
    _, stages = parse_stage_graph_from_file(str(diamond / "stage_1.json"))
    last = stages["stage_4"]
    last.prerequisite_done()
    assert last.wait_for_prerequisites(timeout=0) is False
    last.prerequisite_done()
    assert last.wait_for_prerequisites(timeout=0) is True
    assert stages["stage_1"].wait_for_prerequisites(timeout=0) is True


def test_parse_stage_graph_from_stage(diamond):
    start = Stage(id="start", base_dir=str(diamond), next_stage_paths=["stage_4.json"])
    first, stages = parse_stage_graph(start)
    assert first is start
    assert start.next_stages == [stages["stage_4"]]
    assert start.next_stage_paths == [str(diamond / "stage_4.json")]


def test_parse_stage_returns_already_parsed(diamond):
    existing = Stage(id="stage_4")
    stages = {"stage_4": existing}
    assert parse_stage(Stage(id="stage_4"), stages) is existing
    assert parse_stage_from_file(str(diamond / "stage_4.json"), stages) is existing


def test_duplicated_next_stage(tmp_path):
    write_stage(tmp_path, "a", {"next": ["b.json", "b.json"]})
    write_stage(tmp_path, "b", {})
    with pytest.raises(ValueError, match="duplicated"):
        parse_stage_graph_from_file(str(tmp_path / "a.json"))


def test_missing_query_file(tmp_path):
    write_stage(tmp_path, "a", {"query_files": ["missing.sql"]})
    with pytest.raises(OSError, match="invalid query file"):
        read_stage_from_file(str(tmp_path / "a.json"))


def test_missing_next_stage(tmp_path):
    write_stage(tmp_path, "a", {"next": ["missing.json"]})
    with pytest.raises(OSError, match="invalid next stage file"):
        parse_stage_graph_from_file(str(tmp_path / "a.json"))


def test_directory_as_next_stage(tmp_path):
    (tmp_path / "sub").mkdir()
    write_stage(tmp_path, "a", {"next": ["sub"]})
    with pytest.raises(IsADirectoryError):
        parse_stage_graph_from_file(str(tmp_path / "a.json"))


def test_invalid_json(tmp_path):
    (tmp_path / "a.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError, match="failed to parse json"):
        read_stage_from_file(str(tmp_path / "a.json"))


def test_validation_failure(tmp_path):
    write_stage(tmp_path, "a", {"cold_runs": -1})
    with pytest.raises(ValueError):
        read_stage_from_file(str(tmp_path / "a.json"))


def test_missing_file(tmp_path):
    with pytest.raises(OSError, match="failed to read"):
        read_stage_from_file(str(tmp_path / "none.json"))


@pytest.mark.parametrize(
    "path, expected",
    [
        (os.sep.join(["", "a", "b", "stage_1.json"]), "stage_1"),
        ("stage.json", "stage"),
        ("noext", "noext"),
        (os.sep.join(["", "a.b", "c"]), os.sep.join(["", "a.b", "c"])),
        (os.sep.join(["", "a", ".hidden"]), os.sep.join(["", "a", ".hidden"])),
        (os.sep.join(["", "a", "b", ""]), os.sep.join(["", "a", "b", ""])),
    ],
)
def test_file_name_without_path_and_ext(path, expected):
    assert file_name_without_path_and_ext(path) == expected