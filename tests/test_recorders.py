import csv
import io
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from pbench.query import Query, QueryResult
from pbench.recorders import (
    SUMMARY_HEADER,
    FileBasedRunRecorder,
    NotSupportedRecorder,
    new_influx_run_recorder,
)
from pbench.states import SharedStageStates


def _result(file=None, error=None, tz=timezone.utc, expected=-1):
    start = datetime(2024, 1, 2, 3, 4, 5, tzinfo=tz)
    result = QueryResult(
        stage_id="stage_a",
        query=Query(text="select 1", file=file, expected_row_count=expected),
        info_url="http://localhost/ui",
        query_error=error,
        row_count=10,
        start_time=start,
    )
    result.end_time = start + timedelta(seconds=1, milliseconds=500)
    result.duration = result.end_time - start
    return result


def _stage(tmp_path):
    return SimpleNamespace(id="stage_a", states=SharedStageStates(output_path=str(tmp_path)))


def test_start_writes_header(tmp_path):
    recorder = FileBasedRunRecorder()
    recorder.start(_stage(tmp_path))
    assert recorder.summary == SUMMARY_HEADER


def test_record_query_inline_line(tmp_path):
    recorder = FileBasedRunRecorder()
    stage = _stage(tmp_path)
    recorder.start(stage)
    recorder.record_query(stage, _result())
    line = recorder.summary.splitlines()[1]
    assert line == (
        "stage_a,inline,0,true,0,http://localhost/ui,true,10,-1,"
        "2024-01-02T03:04:05Z,2024-01-02T03:04:06Z,1.500000"
    )


def test_record_query_with_file_and_error(tmp_path):
    recorder = FileBasedRunRecorder()
    stage = _stage(tmp_path)
    recorder.start(stage)
    recorder.record_query(stage, _result(file="q/query_01.sql", error=ValueError("bad"), expected=7))
    rows = list(csv.DictReader(io.StringIO(recorder.summary)))
    assert len(rows) == 1
    assert rows[0]["query_file"] == "q/query_01.sql"
    assert rows[0]["succeeded"] == "false"
    assert rows[0]["expected_row_count"] == "7"


def test_time_offset_is_kept(tmp_path):
    recorder = FileBasedRunRecorder()
    stage = _stage(tmp_path)
    recorder.record_query(stage, _result(tz=timezone(timedelta(hours=2))))
    fields = recorder.summary.strip().split(",")
    assert fields[9] == "2024-01-02T03:04:05+02:00"


def test_record_run_writes_summary_file(tmp_path):
    recorder = FileBasedRunRecorder()
    stage = _stage(tmp_path)
    recorder.start(stage)
    recorder.record_query(stage, _result())
    recorder.record_query(stage, _result())
    recorder.record_run(stage, [])
    written = (tmp_path / "stage_a_summary.csv").read_text(encoding="utf-8")
    assert written == recorder.summary
    assert len(written.splitlines()) == 3


def test_influx_recorder_without_config():
    assert new_influx_run_recorder("") is None


def test_influx_recorder_refuses_to_start(tmp_path):
    recorder = new_influx_run_recorder("influx.json")
    assert isinstance(recorder, NotSupportedRecorder)
    with pytest.raises(RuntimeError, match="TAGS=influx"):
        recorder.start(_stage(tmp_path))