"""State shared by all the stages of one benchmark run."""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from pbench.query import QueryResult


def _now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class SharedStageStates:
    """Run-wide settings and bookkeeping shared between linked stages."""

    run_name: str = ""
    comment: str = ""
    server_fqdn: str = ""
    rand_seed: int = 0
    rand_skip: int = 0
    rand_seed_used: bool = False
    run_start_time: datetime = field(default_factory=_now)
    run_finish_time: Optional[datetime] = None
    # Where logs, query output and query json files are written.
    output_path: str = ""
    # Creates a new Presto client when a stage needs one.
    new_client: Optional[Callable[[], Any]] = None
    # Called after each query's result has been drained.
    on_query_completion: Optional[Callable[[QueryResult], None]] = None
    run_recorders: list[Any] = field(default_factory=list)
    # Stages send their query results to the main stage through this queue.
    result_queue: "queue.Queue[QueryResult]" = field(
        default_factory=queue.Queue, repr=False, compare=False
    )
    _exit_code: int = field(default=0, init=False, repr=False, compare=False)
    _cause: Optional[BaseException] = field(default=None, init=False, repr=False, compare=False)
    _abort_event: threading.Event = field(
        default_factory=threading.Event, init=False, repr=False, compare=False
    )
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def register_run_recorder(self, recorder: Any) -> None:
        """Add a run recorder; None is ignored."""
        if recorder is None:
            return
        self.run_recorders.append(recorder)

    @property
    def exit_code(self) -> int:
        return self._exit_code

    def set_exit_code(self, code: int) -> bool:
        """Record ``code`` unless a non-zero exit code is already set."""
        with self._lock:
            if self._exit_code != 0:
                return False
            self._exit_code = code
            return True

    def abort_all(self, cause: BaseException) -> None:
        """Cancel the run; the first cause given is the one kept."""
        with self._lock:
            if self._abort_event.is_set():
                return
            self._cause = cause
            self._abort_event.set()

    @property
    def cancelled(self) -> bool:
        return self._abort_event.is_set()

    @property
    def cause(self) -> Optional[BaseException]:
        return self._cause

    def wait_cancelled(self, timeout: Optional[float] = None) -> bool:
        """Block until the run is cancelled or ``timeout`` passes."""
        return self._abort_event.wait(timeout)