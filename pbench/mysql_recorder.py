"""Run recorder that stores run and query summaries in MySQL."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Iterable, Optional, Sequence

import pymysql

from pbench.query import QueryResult
from pbench.recorders import RunRecorder
from pbench.utils import init_mysql_conn_from_cfg

_logger = logging.getLogger(__name__)

_RECORD_NEW_RUN = """INSERT INTO pbench_runs (run_name, cluster_fqdn, start_time, queries_ran, failed, mismatch, comment)
VALUES (%s, %s, %s, 0, 0, 0, %s)"""

_RECORD_NEW_QUERY = """INSERT INTO pbench_queries (run_id, stage_id, query_file, query_index, query_id, sequence_no,
cold_run, succeeded, start_time, end_time, row_count, expected_row_count, duration_ms, info_url) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)"""

_UPDATE_RUN_INFO = """UPDATE pbench_runs SET start_time = %s, queries_ran = queries_ran + 1, failed = %s, mismatch = %s WHERE run_id = %s"""

_COMPLETE_RUN_INFO = """UPDATE pbench_runs SET start_time = %s, duration_ms = %s, rand_seed = %s WHERE run_id = %s"""


def _execute(db: Any, statement: str, params: Optional[tuple] = None) -> tuple[int, Optional[int]]:
    """Run one statement and commit it; return (rowcount, lastrowid)."""
    try:
        with db.cursor() as cursor:
            cursor.execute(statement, params)
            rowcount, lastrowid = cursor.rowcount, cursor.lastrowid
        db.commit()
    except pymysql.MySQLError:
        db.rollback()
        raise
    return rowcount, lastrowid


def _milliseconds(duration: Optional[timedelta]) -> int:
    if duration is None:
        return 0
    return int(duration / timedelta(milliseconds=1))


@dataclass
class MySQLRunRecorder(RunRecorder):
    """Records each run in pbench_runs and each query in pbench_queries."""

    db: Any
    run_id: int = -1
    failed: int = 0
    mismatch: int = 0

    def start(self, stage: Any) -> None:
        states = stage.states
        try:
            _, last_id = _execute(
                self.db,
                _RECORD_NEW_RUN,
                (states.run_name, states.server_fqdn, states.run_start_time, states.comment),
            )
        except pymysql.MySQLError as exc:
            _logger.error(
                "failed to add a new run %s to the MySQL database: %s", states.run_name, exc
            )
            raise
        self.run_id = last_id if last_id is not None else -1
        _logger.info("added a new run %s to the MySQL database, run_id=%d", states.run_name, self.run_id)

    def record_query(self, stage: Any, result: QueryResult) -> None:
        query = result.query
        query_file = query.file if query.file is not None else "inline"
        if result.query_error is not None:
            self.failed += 1
        if query.expected_row_count >= 0 and query.expected_row_count != result.row_count:
            self.mismatch += 1
        expected = query.expected_row_count if query.expected_row_count >= 0 else None
        try:
            _execute(
                self.db,
                _RECORD_NEW_QUERY,
                (
                    self.run_id,
                    result.stage_id,
                    query_file,
                    query.index,
                    result.query_id,
                    query.sequence_no,
                    query.cold_run,
                    result.query_error is None,
                    result.start_time,
                    result.end_time,
                    result.row_count,
                    expected,
                    _milliseconds(result.duration),
                    result.info_url,
                ),
            )
        except pymysql.MySQLError as exc:
            _logger.error("failed to send query summary to MySQL: %s %s", exc, result.log_fields())
        states = stage.states
        try:
            rows_affected, _ = _execute(
                self.db,
                _UPDATE_RUN_INFO,
                (states.run_start_time, self.failed, self.mismatch, self.run_id),
            )
        except pymysql.MySQLError as exc:
            _logger.error(
                "failed to update the run information of %s (run_id=%d) in the MySQL database: %s",
                states.run_name, self.run_id, exc,
            )
            return
        if rows_affected > 1:
            _logger.error(
                "more than 1 row (%d) was affected when updating run %s (run_id=%d)",
                rows_affected, states.run_name, self.run_id,
            )

    def record_run(self, stage: Any, results: Sequence[QueryResult]) -> None:
        states = stage.states
        finish = states.run_finish_time or states.run_start_time
        rand_seed = states.rand_seed if states.rand_seed_used else None
        try:
            rows_affected, _ = _execute(
                self.db,
                _COMPLETE_RUN_INFO,
                (
                    states.run_start_time,
                    _milliseconds(finish - states.run_start_time),
                    rand_seed,
                    self.run_id,
                ),
            )
        except pymysql.MySQLError as exc:
            _logger.error(
                "failed to complete the run information of %s (run_id=%d) in the MySQL database: %s",
                states.run_name, self.run_id, exc,
            )
            return
        if rows_affected > 1:
            _logger.error(
                "more than 1 row (%d) was affected when completing run %s (run_id=%d)",
                rows_affected, states.run_name, self.run_id,
            )


def new_mysql_run_recorder(
    cfg_path: str, ddl_statements: Iterable[str]
) -> Optional[MySQLRunRecorder]:
    """Connect using the config at ``cfg_path`` and create the recorder."""
    return new_mysql_run_recorder_with_db(init_mysql_conn_from_cfg(cfg_path), ddl_statements)


def new_mysql_run_recorder_with_db(
    db: Any, ddl_statements: Iterable[str]
) -> Optional[MySQLRunRecorder]:
    """Create the tables with ``ddl_statements`` and return a recorder, or None on failure."""
    if db is None:
        return None
    try:
        for statement in ddl_statements:
            _execute(db, statement)
    except pymysql.MySQLError as exc:
        _logger.error("failed to create MySQL table: %s", exc)
        return None
    _logger.info(
        "MySQL connection initialized, benchmark result summary will be sent to this database."
    )
    return MySQLRunRecorder(db=db)