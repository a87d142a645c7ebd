import json
import threading
from concurrent.futures import CancelledError
from pathlib import Path
from types import SimpleNamespace

import pytest

from pbench.graph import parse_stage_graph_from_file
from pbench.recorders import FileBasedRunRecorder, NotSupportedRecorder, RunRecorder
from pbench.runner import run

FOO_ERROR = "SYNTAX_ERROR: Table tpch.sf1.foo does not exist"
HTTP_ERROR = "Schema is set but catalog is not (status code: 400)"


class FakeHandle:
    def __init__(self, query_id, rows, error):
        self.id = query_id
        self.info_uri = f"http://localhost:8080/ui/query.html?{query_id}"
        self._rows = rows
        self._error = error

    def drain(self, handler):
        if self._error:
            raise RuntimeError(self._error)
        handler(
            SimpleNamespace(
                data=[[n] for n in range(self._rows)],
                next_uri=None,
                columns=[{"name": "n", "type": "integer"}],
            )
        )


class FakeClient:
    def __init__(self, submit_error=None):
        self.submit_error = submit_error
        self._catalog = "tpch"
        self._schema = "sf1"
        self._timezone = ""
        self.session = {}
        self.tags = []
        self._lock = threading.Lock()
        self._next_id = 0

    def catalog(self, name):
        self._catalog = name

    def get_catalog(self):
        return self._catalog

    def schema(self, name):
        self._schema = name

    def get_schema(self):
        return self._schema

    def session_param(self, key, value):
        self.session[key] = value

    def get_session_params(self):
        return ",".join(f"{k}={v}" for k, v in self.session.items())

    def time_zone(self, name):
        self._timezone = name

    def get_time_zone(self):
        return self._timezone

    def append_client_tag(self, tag):
        self.tags.append(tag)

    def query(self, text, headers):
        if self.submit_error:
            raise RuntimeError(self.submit_error)
        with self._lock:
            self._next_id += 1
            query_id = f"q{self._next_id}"
        kind, _, arg = text.partition(" ")
        if kind == "fail":
            return FakeHandle(query_id, 0, arg)
        return FakeHandle(query_id, int(arg), None)

    def get_query_info(self, query_id, out):
        out.write(json.dumps({"queryId": query_id}).encode("utf-8"))


def _write_stage(directory, name, **definition):
    definition.setdefault("pre_stage_scripts", ["echo x >> count.txt"])
    (directory / f"{name}.json").write_text(json.dumps(definition), encoding="utf-8")


@pytest.fixture
def graph_dir(tmp_path):
    r"""
           stage_1
           /      \
      stage_2   stage_3
        \           |
         \      stage_4 (has error)
          \       /
           stage_5
              |
           stage_6
    """
    _write_stage(tmp_path, "stage_1", queries=["rows 1"], next=["stage_2.json", "stage_3.json"])
    _write_stage(tmp_path, "stage_2", queries=["rows 2"], next=["stage_5.json"])
    _write_stage(tmp_path, "stage_3", queries=["rows 3"], next=["stage_4.json"])
    _write_stage(
        tmp_path, "stage_4", queries=[f"fail {FOO_ERROR}", "rows 4"], next=["stage_5.json"]
    )
    _write_stage(tmp_path, "stage_5", queries=["rows 5"], next=["stage_6.json"])
    _write_stage(tmp_path, "stage_6", queries=["rows 6"])
    return tmp_path


class Completions:
    def __init__(self):
        self.lock = threading.Lock()
        self.results = []

    def __call__(self, result):
        with self.lock:
            self.results.append(result)

    @property
    def errors(self):
        return [
            str(r.query_error)
            for r in self.results
            if r.query_error is not None and not isinstance(r.query_error, CancelledError)
        ]

    @property
    def texts(self):
        return {r.query.text for r in self.results}


def _prepare(graph_dir, abort_on_error, client=None):
    stage1, stages = parse_stage_graph_from_file(str(graph_dir / "stage_1.json"))
    stage1.init_states()
    stages["stage_4"].abort_on_error = abort_on_error
    shared_client = client or FakeClient()
    stage1.states.new_client = lambda: shared_client
    completions = Completions()
    stage1.states.on_query_completion = completions
    return stage1, stages, completions


def _script_count(directory):
    return len((directory / "count.txt").read_text().splitlines())


def test_graph_without_abort_on_error_runs_everything(graph_dir):
    stage1, _, completions = _prepare(graph_dir, abort_on_error=False)
    exit_code = run(stage1)
    assert exit_code == 0
    assert len(completions.results) == 7
    assert sum(r.row_count for r in completions.results) == 21
    assert completions.errors == [FOO_ERROR]
    assert _script_count(graph_dir) == 6


def test_graph_with_abort_on_error_stops_after_failure(graph_dir):
    stage1, _, completions = _prepare(graph_dir, abort_on_error=True)
    exit_code = run(stage1)
    assert exit_code == 1
    assert completions.errors == [FOO_ERROR]
    assert {"rows 1", "rows 3"} <= completions.texts
    assert not {"rows 4", "rows 5", "rows 6"} & completions.texts
    assert 3 <= _script_count(graph_dir) <= 4


def test_http_error_is_reported_on_the_result(tmp_path):
    (tmp_path / "http_error.json").write_text(
        json.dumps({"schema": "sf1", "queries": ["select 1"]}), encoding="utf-8"
    )
    stage, _ = parse_stage_graph_from_file(str(tmp_path / "http_error.json"))
    stage.init_states()
    client = FakeClient(submit_error=HTTP_ERROR)
    stage.states.new_client = lambda: client
    completions = Completions()
    stage.states.on_query_completion = completions
    assert run(stage) == 0
    assert len(completions.results) == 1
    assert str(completions.results[0].query_error) == HTTP_ERROR


def test_output_directory_holds_log_summary_and_error_json(graph_dir):
    stage1, _, _ = _prepare(graph_dir, abort_on_error=False)
    stage1.states.register_run_recorder(FileBasedRunRecorder())
    run(stage1)
    output = Path(stage1.states.output_path)
    assert output == graph_dir / "stage_1"
    assert (output / "stage_1.log").stat().st_size > 0
    summary = (output / "stage_1_summary.csv").read_text().splitlines()
    assert summary[0].startswith("stage_id,query_file,query_index")
    assert len(summary) == 8
    error_doc = json.loads((output / "stage_4_inline_q0.error.json").read_text())
    assert error_doc["message"] == FOO_ERROR
    info = json.loads((output / "stage_4_inline_q0.json").read_text())
    assert info["queryId"].startswith("q")


def test_preset_run_name_and_output_path(graph_dir, tmp_path_factory):
    out_root = tmp_path_factory.mktemp("out")
    stage1, _, _ = _prepare(graph_dir, abort_on_error=False)
    stage1.states.run_name = "nightly"
    stage1.states.output_path = str(out_root)
    run(stage1)
    assert Path(stage1.states.output_path) == out_root / "nightly"
    assert (out_root / "nightly" / "nightly.log").is_file()


class ListRecorder(RunRecorder):
    def __init__(self):
        self.started = 0
        self.queries = []
        self.runs = []

    def start(self, stage):
        self.started += 1

    def record_query(self, stage, result):
        self.queries.append(result.query_id)

    def record_run(self, stage, results):
        self.runs.append([r.query_id for r in results])


def test_recorder_sees_every_query_and_the_run(graph_dir):
    stage1, _, completions = _prepare(graph_dir, abort_on_error=False)
    recorder = ListRecorder()
    stage1.states.register_run_recorder(recorder)
    run(stage1)
    assert recorder.started == 1
    assert len(recorder.queries) == 7
    assert recorder.runs == [recorder.queries]
    assert sorted(recorder.queries) == sorted(r.query_id for r in completions.results)
    assert stage1.states.run_finish_time >= stage1.states.run_start_time


def test_recorder_that_cannot_start_stops_the_run(graph_dir):
    stage1, _, completions = _prepare(graph_dir, abort_on_error=False)
    stage1.states.register_run_recorder(NotSupportedRecorder())
    with pytest.raises(RuntimeError, match="InfluxDB support not available"):
        run(stage1)
    assert completions.results == []