"""Queries and the results of running them."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional


def _now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class Query:
    """One execution of a query text within a stage."""

    text: str
    file: Optional[str] = None
    index: int = 0
    batch_size: int = 1
    cold_run: bool = True
    sequence_no: int = 0
    # -1 means no expected row count was given.
    expected_row_count: int = -1


@dataclass
class QueryResult:
    """The outcome of running a Query."""

    stage_id: str
    query: Query
    query_id: str = ""
    info_url: str = ""
    query_error: Optional[BaseException] = None
    row_count: int = 0
    start_time: datetime = field(default_factory=_now)
    end_time: Optional[datetime] = None
    duration: Optional[timedelta] = None

    @property
    def succeeded(self) -> bool:
        return self.query_error is None

    def conclude_execution(self) -> None:
        """Set the end time to now and compute the duration."""
        self.end_time = _now()
        self.duration = self.end_time - self.start_time

    def log_fields(self, simple: bool = False) -> dict[str, Any]:
        """Return the fields describing this result for structured logging."""
        fields: dict[str, Any] = {"benchmark_stage_id": self.stage_id}
        if self.query.file is not None:
            fields["query_file"] = self.query.file
        elif not simple:
            fields["query"] = self.query.text
        fields["query_index"] = self.query.index
        fields["cold_run"] = self.query.cold_run
        fields["sequence_no"] = self.query.sequence_no
        fields["info_url"] = self.info_url
        if simple:
            return fields
        fields["query_id"] = self.query_id
        if self.query_error is not None:
            fields["query_error"] = str(self.query_error)
        else:
            fields["row_count"] = self.row_count
        if self.query.expected_row_count >= 0:
            fields["expected_row_count"] = self.query.expected_row_count
        fields["start_time"] = self.start_time.isoformat()
        if self.end_time is not None:
            fields["finish_time"] = self.end_time.isoformat()
        if self.duration is not None:
            fields["duration_in_seconds"] = self.duration.total_seconds()
        return fields


class QueryFailedError(Exception):
    """Raised when a query fails; carries the failing QueryResult."""

    def __init__(self, result: QueryResult) -> None:
        super().__init__(str(result.query_error) if result.query_error is not None else "")
        self.result = result
        self.__cause__ = result.query_error