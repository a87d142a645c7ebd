"""Running a stage graph from its main stage to completion."""

from __future__ import annotations

import logging
import os
import queue
import signal
import threading
from concurrent.futures import CancelledError
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from pbench.execution import run_randomly, run_sequentially, run_shell_scripts
from pbench.model import Stage
from pbench.query import QueryFailedError, QueryResult
from pbench.states import SharedStageStates
from pbench.utils import prepare_output_directory

_logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.05


class _WaitGroup:
    """Counts running tasks; waiting returns once the count drops to zero."""

    def __init__(self) -> None:
        self._count = 0
        self._cond = threading.Condition()

    def add(self, delta: int = 1) -> None:
        with self._cond:
            self._count += delta

    def done(self) -> None:
        with self._cond:
            self._count -= 1
            if self._count <= 0:
                self._cond.notify_all()

    def wait(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._count <= 0, timeout)


@contextmanager
def _log_to_file(log_path: str) -> Iterator[None]:
    """Copy log records to ``log_path`` while the block runs."""
    root = logging.getLogger()
    try:
        handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    except OSError as exc:
        _logger.error("failed to create the log file %s: %s", log_path, exc)
        yield
        return
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    previous_level = root.level
    if root.level > logging.INFO:
        root.setLevel(logging.INFO)
    root.addHandler(handler)
    _logger.info("log file will be saved to this path: %s", log_path)
    try:
        yield
    finally:
        root.removeHandler(handler)
        handler.close()
        root.setLevel(previous_level)


@contextmanager
def _abort_on_signals(states: SharedStageStates) -> Iterator[None]:
    """Cancel the run on SIGINT, SIGTERM or SIGQUIT while the block runs."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum: int, _frame: object) -> None:
        name = signal.strsignal(signum) or signal.Signals(signum).name
        states.abort_all(RuntimeError(name))

    signals = [
        getattr(signal, name) for name in ("SIGINT", "SIGTERM", "SIGQUIT") if hasattr(signal, name)
    ]
    previous = {sig: signal.signal(sig, handler) for sig in signals}
    try:
        yield
    finally:
        for sig, old in previous.items():
            if old is not None:
                signal.signal(sig, old)


def _log_stage_error(stage: Stage, error: BaseException) -> None:
    states = stage.states
    if states is not None and states.cancelled:
        cause = states.cause
        if isinstance(cause, QueryFailedError):
            _logger.error(
                "stage %s aborted, caused_by_stage=%s caused_by_query=%s info_url=%s",
                stage.id, cause.result.stage_id, cause.result.query_id, cause.result.info_url,
            )
        else:
            _logger.error("stage %s aborted, caused_by_error=%s", stage.id, error)
        return
    if isinstance(error, QueryFailedError):
        _logger.error("execution failed: %s", error.result.log_fields())
    else:
        _logger.error("stage %s execution failed: %s", stage.id, error)


def _execute_stage(stage: Stage) -> None:
    states = stage.states
    while not stage.wait_for_prerequisites(_POLL_SECONDS):
        if states.cancelled:
            raise CancelledError("context canceled")
    if states.cancelled:
        raise CancelledError("context canceled")
    _logger.info("stage %s: all prerequisites finished", stage.id)
    stage.set_defaults()
    stage.prepare_client()
    stage.propagate_states()
    try:
        run_shell_scripts(stage, stage.pre_stage_scripts)
    except Exception as exc:
        raise RuntimeError(f"pre-stage script execution failed: {exc}") from exc

    error: Optional[Exception] = None
    if stage.queries or stage.query_files:
        try:
            if stage.random_execution:
                run_randomly(stage)
            else:
                run_sequentially(stage)
        except Exception as exc:
            error = exc
    else:
        _logger.info("stage %s: no query to run.", stage.id)

    try:
        run_shell_scripts(stage, stage.post_stage_scripts)
    except Exception as exc:
        if error is None:
            error = exc
    if error is not None:
        raise error


def _run_stage(stage: Stage, wait_group: _WaitGroup) -> None:
    """Run one stage once all its prerequisites finished, then trigger the next stages."""
    if not stage.mark_started():
        # Another prerequisite already started this stage.
        wait_group.done()
        return
    error: Optional[Exception] = None
    try:
        _execute_stage(stage)
    except Exception as exc:
        error = exc
    finally:
        if error is not None:
            _log_stage_error(stage, error)
            if stage.abort_on_error:
                _logger.debug("stage %s cancels the run because abort_on_error is set", stage.id)
                stage.states.abort_all(error)
        for nxt in stage.next_stages:
            nxt.prerequisite_done()
        if error is None:
            wait_group.add(len(stage.next_stages))
            for nxt in stage.next_stages:
                threading.Thread(
                    target=_run_stage, args=(nxt, wait_group), name=f"stage-{nxt.id}", daemon=True
                ).start()
        wait_group.done()


def _record_query(states: SharedStageStates, stage: Stage, result: QueryResult) -> None:
    for recorder in states.run_recorders:
        try:
            recorder.record_query(stage, result)
        except Exception as exc:
            _logger.error("%s failed to record a query: %s", type(recorder).__name__, exc)


def _drive(stage: Stage) -> int:
    states = stage.states
    if states.run_start_time is None:
        states.run_start_time = datetime.now()
    results: list[QueryResult] = []
    result_queue: queue.Queue = queue.Queue()
    states.result_queue = result_queue
    wait_group = _WaitGroup()
    wait_group.add(1)

    for recorder in states.run_recorders:
        try:
            recorder.start(stage)
        except Exception as exc:
            _logger.critical("failed to prepare %s: %s", type(recorder).__name__, exc)
            raise

    worker = threading.Thread(
        target=_run_stage, args=(stage, wait_group), name=f"stage-{stage.id}", daemon=True
    )

    def collect(result: QueryResult) -> None:
        results.append(result)
        _record_query(states, stage, result)

    with _abort_on_signals(states):
        worker.start()
        while True:
            try:
                result = result_queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if wait_group.wait(0):
                    while True:
                        try:
                            collect(result_queue.get_nowait())
                        except queue.Empty:
                            break
                    break
                continue
            collect(result)
        worker.join()

    states.run_finish_time = datetime.now()
    for recorder in states.run_recorders:
        try:
            recorder.record_run(stage, results)
        except Exception as exc:
            _logger.error("%s failed to record the run: %s", type(recorder).__name__, exc)
    return states.exit_code


def run(stage: Stage) -> int:
    """Run ``stage`` and every stage after it; return the run's exit code.

    Output goes to a directory named after the run inside the output path
    (by default the stage's directory), together with a log of the run.
    """
    if stage.states is None:
        stage.init_states()
    states = stage.states
    if not states.run_name:
        states.run_name = stage.id
    if not states.output_path:
        states.output_path = stage.base_dir
    states.output_path = os.path.join(states.output_path, states.run_name)
    prepare_output_directory(states.output_path)
    log_path = os.path.join(states.output_path, states.run_name + ".log")
    with _log_to_file(log_path):
        return _drive(stage)