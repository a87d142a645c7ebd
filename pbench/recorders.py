"""Run recorders: hooks that receive every query result and the run summary."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional, Sequence

from pbench.query import QueryResult

_logger = logging.getLogger(__name__)

SUMMARY_HEADER = (
    "stage_id,query_file,query_index,cold_run,sequence_no,info_url,succeeded,"
    "row_count,expected_row_count,start_time,end_time,duration_in_seconds\n"
)

INFLUX_NOT_SUPPORTED = (
    "InfluxDB support not available with this build. Please rebuild with `make TAGS=influx`"
)


class RunRecorder(ABC):
    """Receives the progress of a benchmark run."""

    @abstractmethod
    def start(self, stage: Any) -> None:
        """Prepare for a run; raise to refuse to start."""

    @abstractmethod
    def record_query(self, stage: Any, result: QueryResult) -> None:
        """Record the result of one query execution."""

    @abstractmethod
    def record_run(self, stage: Any, results: Sequence[QueryResult]) -> None:
        """Record the end of the run."""


def _rfc3339(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    moment = moment.replace(microsecond=0)
    text = moment.isoformat()
    if moment.utcoffset() == timedelta(0):
        text = text[: -len("+00:00")] + "Z"
    return text


@dataclass
class FileBasedRunRecorder(RunRecorder):
    """Collects a CSV summary of the run and writes it next to the run output."""

    _lines: list[str] = field(default_factory=list, repr=False)

    @property
    def summary(self) -> str:
        return "".join(self._lines)

    def start(self, stage: Any) -> None:
        self._lines.append(SUMMARY_HEADER)

    def record_query(self, stage: Any, result: QueryResult) -> None:
        query = result.query
        query_file = query.file if query.file is not None else "inline"
        duration = result.duration.total_seconds() if result.duration is not None else 0.0
        end_time = _rfc3339(result.end_time) if result.end_time is not None else ""
        fields = [
            result.stage_id,
            query_file,
            str(query.index),
            str(bool(query.cold_run)).lower(),
            str(query.sequence_no),
            result.info_url,
            str(result.query_error is None).lower(),
            str(result.row_count),
            str(query.expected_row_count),
            _rfc3339(result.start_time),
            end_time,
            f"{duration:.6f}",
        ]
        self._lines.append(",".join(fields) + "\n")

    def record_run(self, stage: Any, results: Sequence[QueryResult]) -> None:
        path = Path(stage.states.output_path, f"{stage.id}_summary.csv")
        try:
            path.write_text(self.summary, encoding="utf-8")
        except OSError as exc:
            _logger.error("failed to write run summary %s: %s", path, exc)


class NotSupportedRecorder(RunRecorder):
    """Stands in for the InfluxDB recorder, which this package does not provide."""

    def start(self, stage: Any) -> None:
        raise RuntimeError(INFLUX_NOT_SUPPORTED)

    def record_query(self, stage: Any, result: QueryResult) -> None:
        pass

    def record_run(self, stage: Any, results: Sequence[QueryResult]) -> None:
        pass


def new_influx_run_recorder(cfg_path: str) -> Optional[RunRecorder]:
    """Return None without a config path, otherwise a recorder that refuses to start."""
    if not cfg_path:
        return None
    return NotSupportedRecorder()