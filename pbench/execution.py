"""Running the queries and scripts of a single stage."""

from __future__ import annotations

import json
import logging
import os
import random
import re
import subprocess
import time
from concurrent.futures import CancelledError
from pathlib import Path
from typing import Any, BinaryIO, Callable, Optional, Sequence

from pbench.model import Stage
from pbench.query import Query, QueryFailedError, QueryResult

_logger = logging.getLogger(__name__)

SOURCE_HEADER = "X-Presto-Source"
TRINO_SOURCE_HEADER = "X-Trino-Source"

_POLL_SECONDS = 0.1

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_INTEGER = re.compile(r"[+-]?\d+")


def _cancelled_error() -> CancelledError:
    return CancelledError("context canceled")


def _is_cancelled(stage: Stage) -> bool:
    return stage.states is not None and stage.states.cancelled


def _relative(base_dir: str, path: str) -> Optional[str]:
    """Return ``path`` relative to ``base_dir``, or None when that is not possible."""
    if not base_dir or os.path.isabs(base_dir) != os.path.isabs(path):
        return None
    try:
        return os.path.relpath(path, base_dir)
    except ValueError:
        return None


def _parse_duration(text: str) -> Optional[float]:
    """Parse a duration such as "1h30m" or "1.5s" into seconds; None if invalid."""
    value = text
    sign = 1.0
    if value[:1] in ("+", "-"):
        sign = -1.0 if value[0] == "-" else 1.0
        value = value[1:]
    if value == "0":
        return 0.0
    if not value:
        return None
    total = 0.0
    pos = 0
    while pos < len(value):
        match = _DURATION_PART.match(value, pos)
        if match is None:
            return None
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return sign * total


def _split_queries(text: str) -> list[str]:
    """Split SQL text on semicolons outside of quotes and comments."""
    queries: list[str] = []
    current: list[str] = []
    quote: Optional[str] = None
    pos = 0
    length = len(text)
    while pos < length:
        char = text[pos]
        if quote is not None:
            current.append(char)
            if char == quote:
                quote = None
            pos += 1
            continue
        if char in ("'", '"', "`"):
            quote = char
            current.append(char)
            pos += 1
        elif text.startswith("--", pos):
            end = text.find("\n", pos)
            end = length if end == -1 else end
            current.append(text[pos:end])
            pos = end
        elif text.startswith("/*", pos):
            end = text.find("*/", pos + 2)
            end = length if end == -1 else end + 2
            current.append(text[pos:end])
            pos = end
        elif char == ";":
            statement = "".join(current).strip()
            if statement:
                queries.append(statement)
            current = []
            pos += 1
        else:
            current.append(char)
            pos += 1
    statement = "".join(current).strip()
    if statement:
        queries.append(statement)
    return queries


def _log_err(stage: Stage, err: BaseException) -> None:
    states = stage.states
    if states is not None and states.cancelled:
        cause = states.cause
        if isinstance(cause, QueryFailedError):
            _logger.error(
                "stage %s aborted, caused_by_stage=%s caused_by_query=%s info_url=%s",
                stage.id, cause.result.stage_id, cause.result.query_id, cause.result.info_url,
            )
        else:
            _logger.error("stage %s aborted, caused_by_error=%s", stage.id, err)
        return
    if isinstance(err, QueryFailedError):
        _logger.error("execution failed: %s", err.result.log_fields())
    else:
        _logger.error("stage %s execution failed: %s", stage.id, err)


def run_shell_scripts(stage: Stage, scripts: Sequence[str]) -> None:
    """Run each script with /bin/sh in the stage directory.

    A failing script is logged; it raises only when the stage aborts on
    error or the run has been cancelled, recording the script's exit code.
    """
    states = stage.states
    for index, script in enumerate(scripts):
        if _is_cancelled(stage):
            _logger.error("stage %s skipped script %d: run cancelled", stage.id, index)
            raise _cancelled_error()
        try:
            proc = subprocess.Popen(
                ["/bin/sh", "-c", script],
                cwd=stage.base_dir or None,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            _logger.error("stage %s run shell script %d failed: %s", stage.id, index, exc)
            if stage.abort_on_error or _is_cancelled(stage):
                if states is not None:
                    states.set_exit_code(-1)
                raise
            continue
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if _is_cancelled(stage):
                    proc.kill()
        returncode = proc.returncode
        exit_code = returncode if returncode >= 0 else -1
        if returncode != 0:
            _logger.error(
                "run shell script failed. stage=%s script_index=%d script=%r exit_code=%d "
                "stdout=%r stderr=%r",
                stage.id, index, script, exit_code, stdout, stderr,
            )
            if stage.abort_on_error or _is_cancelled(stage):
                if states is not None:
                    states.set_exit_code(exit_code)
                raise subprocess.CalledProcessError(returncode, script, stdout, stderr)
        else:
            _logger.info(
                "run shell script. stage=%s script_index=%d script=%r stdout=%r stderr=%r",
                stage.id, index, script, stdout, stderr,
            )


def match_expected_row_counts(stage: Stage) -> Optional[list[int]]:
    """Pick the expected row counts for the stage's current catalog and schema.

    An exact "catalog.schema" key wins, then a "schema" key, then the first
    key that, as a regular expression, matches "catalog.schema".
    """
    key = f"{stage.current_catalog}.{stage.current_schema}"
    counts = stage.expected_row_counts
    if key in counts:
        stage.expected_row_count_in_current_schema = counts[key]
    elif stage.current_schema in counts:
        stage.expected_row_count_in_current_schema = counts[stage.current_schema]
    else:
        for pattern, values in counts.items():
            try:
                matcher = re.compile(pattern)
            except re.error:
                continue
            if matcher.search(key):
                stage.expected_row_count_in_current_schema = values
                break
    return stage.expected_row_count_in_current_schema


def run_sequentially(stage: Stage) -> None:
    """Run the inline queries and then every query file, in order."""
    match_expected_row_counts(stage)
    run_queries(stage, stage.queries, None, 0)
    start_index = len(stage.queries)
    for query_file in list(stage.query_files):
        start_index += run_query_file(stage, query_file, start_index, None)


def run_query_file(
    stage: Stage,
    query_file: str,
    expected_row_count_start_index: Optional[int],
    file_alias: Optional[str],
) -> int:
    """Run the queries in ``query_file``; return how many it holds.

    A file that cannot be read is skipped (returning 0) unless the stage
    aborts on error, in which case the error is raised.
    """
    if file_alias is None:
        file_alias = _relative(stage.base_dir, query_file) or query_file
    try:
        queries = _split_queries(Path(query_file).read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        if not stage.abort_on_error:
            _logger.error("failed to read queries from file %s: %s", query_file, exc)
            # The offset into the expected row counts is no longer reliable.
            stage.expected_row_count_in_current_schema = None
            return 0
        if stage.states is not None:
            stage.states.set_exit_code(1)
        raise
    run_queries(stage, queries, file_alias, expected_row_count_start_index or 0)
    return len(queries)


def run_randomly(stage: Stage) -> None:
    """Run randomly chosen queries until a duration passes or a count is reached."""
    states = stage.states
    until = stage.randomly_execute_until or ""
    seconds = _parse_duration(until)
    continue_execution: Callable[[int], bool]
    if seconds is not None:
        deadline = time.monotonic() + seconds
        continue_execution = lambda _count: time.monotonic() < deadline  # noqa: E731
    elif _INTEGER.fullmatch(until):
        limit = int(until)
        continue_execution = lambda count: count <= limit  # noqa: E731
    else:
        err = ValueError(f"failed to parse randomly_execute_until {until}")
        if stage.abort_on_error:
            states.set_exit_code(2)
            raise err
        _logger.error("%s", err)
        return
    rng = random.Random(states.rand_seed)
    states.rand_seed_used = True
    _logger.info("random source seeded with %d", states.rand_seed)
    upper_bound = len(stage.queries) + len(stage.query_files)
    i = 1
    while continue_execution(i):
        idx = rng.randrange(upper_bound)
        if i <= states.rand_skip:
            if i == states.rand_skip:
                _logger.info("skipped %d random selections", i)
            i += 1
            continue
        if idx < len(stage.queries):
            run_queries(stage, stage.queries[idx : idx + 1], f"rand_{i}", 0)
        else:
            query_file = stage.query_files[idx - len(stage.queries)]
            alias = _relative(stage.base_dir, query_file) or query_file
            run_query_file(stage, query_file, None, f"rand_{i}_{alias}")
        i += 1
    _logger.info("random execution concluded.")


def run_queries(
    stage: Stage,
    queries: Sequence[str],
    query_file: Optional[str],
    expected_row_count_start_index: int,
) -> None:
    """Run each query the stage's number of cold and warm times.

    Every result is reported to the shared states. A failed query raises
    QueryFailedError when the stage aborts on error or the run is cancelled;
    otherwise it is logged and the next run proceeds.
    """
    states = stage.states
    batch_size = len(queries)
    runs = (stage.cold_runs or 0) + (stage.warm_runs or 0)
    expected_counts = stage.expected_row_count_in_current_schema
    for i, text in enumerate(queries):
        try:
            run_shell_scripts(stage, stage.pre_query_cycle_scripts)
        except Exception as exc:
            raise RuntimeError(f"pre-query script execution failed: {exc}") from exc
        for j in range(runs):
            query = Query(
                text=text,
                file=query_file,
                index=i,
                batch_size=batch_size,
                cold_run=j < (stage.cold_runs or 0),
                sequence_no=j,
            )
            expected_counts = stage.expected_row_count_in_current_schema
            position = expected_row_count_start_index + i
            if expected_counts is not None and len(expected_counts) > position:
                query.expected_row_count = expected_counts[position]
            result = run_query(stage, query)
            if states.on_query_completion is not None:
                states.on_query_completion(result)
            save_query_json_file(stage, result)
            states.result_queue.put(result)
            if result.query_error is not None:
                if stage.abort_on_error or states.cancelled:
                    states.set_exit_code(1)
                    raise QueryFailedError(result)
                _log_err(stage, QueryFailedError(result))
                continue
            _logger.info("query finished: %s", result.log_fields())
        try:
            run_shell_scripts(stage, stage.post_query_cycle_scripts)
        except Exception as exc:
            raise RuntimeError(f"post-query script execution failed: {exc}") from exc


def _row_bytes(row: Any) -> bytes:
    if isinstance(row, (bytes, bytearray)):
        return bytes(row)
    if isinstance(row, str):
        return row.encode("utf-8")
    return json.dumps(row, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _execute_query(stage: Stage, result: QueryResult) -> None:
    query = result.query
    if _is_cancelled(stage):
        raise _cancelled_error()
    source = stage.query_source_string(result)
    headers = {SOURCE_HEADER: source, TRINO_SOURCE_HEADER: source}
    handle = stage.client.query(query.text, headers)
    result.query_id = getattr(handle, "id", "") or ""
    result.info_url = getattr(handle, "info_uri", "") or ""
    submitted = result.log_fields(simple=True)
    for name, value in (
        ("catalog", stage.current_catalog),
        ("schema", stage.current_schema),
        ("timezone", stage.current_timezone),
    ):
        if value:
            submitted[name] = value
    if stage.save_output:
        submitted["save_output"] = True
    if stage.save_column_metadata:
        submitted["save_column_metadata"] = True
    _logger.info("submitted query: %s", submitted)

    output: Optional[BinaryIO] = None
    if stage.save_output:
        output = open(os.path.join(stage.states.output_path, source) + ".output", "wb")

    def on_batch(batch: Any) -> None:
        data = getattr(batch, "data", None) or []
        result.row_count += len(data)
        if output is not None:
            for row in data:
                try:
                    output.write(_row_bytes(row) + b"\n")
                except OSError as exc:
                    _logger.error("failed to write query result: %s %s", exc, result.log_fields(True))
                    break
        if getattr(batch, "next_uri", None) is None and query.sequence_no == 0:
            save_column_metadata_file(stage, getattr(batch, "columns", None), result, source)

    drain_error: Optional[Exception] = None
    try:
        handle.drain(on_batch)
    except Exception as exc:
        drain_error = exc
    finally:
        if output is not None:
            try:
                output.close()
                _logger.info("query data saved successfully: %s", result.log_fields(True))
            except OSError as exc:
                _logger.error("failed to write query result: %s %s", exc, result.log_fields(True))
    try:
        run_shell_scripts(stage, stage.post_query_scripts)
    except Exception:
        if drain_error is None:
            raise
    if drain_error is not None:
        raise drain_error


def run_query(stage: Stage, query: Query) -> QueryResult:
    """Submit one query, drain its results and run the post-query scripts.

    Failures do not raise: they are stored in the result's query_error.
    """
    result = QueryResult(stage_id=stage.id, query=query)
    try:
        _execute_query(stage, result)
    except Exception as exc:
        result.query_error = exc
    result.conclude_execution()
    return result


def _error_document(err: BaseException) -> dict[str, Any]:
    return {"type": type(err).__name__, "message": str(err)}


def save_query_json_file(stage: Stage, result: QueryResult) -> None:
    """Save the query info JSON, and the error of a failed query.

    Nothing is saved for a successful query unless save_json is set.
    """
    if not stage.save_json and result.query_error is None:
        return
    base = os.path.join(stage.states.output_path, stage.query_source_string(result))
    try:
        with open(base + ".json", "wb") as out:
            stage.client.get_query_info(result.query_id, out)
    except Exception as exc:
        _logger.error("error when saving query json file: %s %s", exc, result.log_fields(True))
    if result.query_error is not None:
        try:
            Path(base + ".error.json").write_text(
                json.dumps(_error_document(result.query_error), indent=2), encoding="utf-8"
            )
        except OSError as exc:
            _logger.error("error when saving query json file: %s %s", exc, result.log_fields(True))


def save_column_metadata_file(
    stage: Stage, columns: Any, result: QueryResult, query_source: str
) -> Optional[Path]:
    """Write the result's column metadata as JSON; return the file written, if any."""
    if not stage.save_column_metadata or not columns:
        return None
    path = Path(os.path.join(stage.states.output_path, query_source) + ".cols.json")
    try:
        path.write_text(json.dumps(columns, indent=2), encoding="utf-8")
    except (OSError, TypeError, ValueError) as exc:
        _logger.error("failed to write query column metadata: %s %s", exc, result.log_fields(True))
        return None
    return path