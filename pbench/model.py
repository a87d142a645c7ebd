"""The benchmark stage definition and the settings it passes to its descendants."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, Mapping, Optional, Protocol

from pbench.query import QueryResult
from pbench.states import SharedStageStates

_logger = logging.getLogger(__name__)

DEFAULT_STAGE_FILE_EXT = ".json"


class PrestoClient(Protocol):
    """The Presto client operations a stage relies on."""

    def catalog(self, name: str) -> Any:
        """Set the catalog used by later queries."""

    def get_catalog(self) -> str:
        """Return the current catalog."""

    def schema(self, name: str) -> Any:
        """Set the schema used by later queries."""

    def get_schema(self) -> str:
        """Return the current schema."""

    def session_param(self, key: str, value: Any) -> Any:
        """Set one session property."""

    def get_session_params(self) -> str:
        """Return the session properties as text."""

    def time_zone(self, name: str) -> Any:
        """Set the session time zone."""

    def get_time_zone(self) -> str:
        """Return the session time zone."""

    def append_client_tag(self, tag: str) -> Any:
        """Add a client tag sent with every query."""

    def query(self, text: str, headers: Mapping[str, str]) -> Any:
        """Submit ``text``; return a query handle with ``id``, ``info_uri`` and ``drain``."""

    def get_query_info(self, query_id: str, out: BinaryIO) -> Any:
        """Write the query info JSON of ``query_id`` to ``out``."""


def _opt_str(key: str, value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


def _opt_bool(key: str, value: Any) -> Optional[bool]:
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be a boolean")
    return value


def _opt_int(key: str, value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return value


def _str_list(key: str, value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{key} must be an array of strings")
    return list(value)


def _params(key: str, value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{key} must be an object")
    return dict(value)


def _counts(key: str, value: Any) -> dict[str, Optional[list[int]]]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{key} must be an object")
    counts: dict[str, Optional[list[int]]] = {}
    for name, numbers in value.items():
        if numbers is None:
            counts[name] = None
            continue
        if not isinstance(numbers, list) or any(
            isinstance(n, bool) or not isinstance(n, int) for n in numbers
        ):
            raise ValueError(f"{key}.{name} must be an array of integers")
        counts[name] = list(numbers)
    return counts


# JSON key, attribute name, parser, whether the key is omitted when empty.
_FIELDS: list[tuple[str, str, Callable[[str, Any], Any]]] = [
    ("catalog", "catalog", _opt_str),
    ("schema", "schema", _opt_str),
    ("session_params", "session_params", _params),
    ("timezone", "timezone", _opt_str),
    ("queries", "queries", _str_list),
    ("query_files", "query_files", _str_list),
    ("pre_stage_scripts", "pre_stage_scripts", _str_list),
    ("post_stage_scripts", "post_stage_scripts", _str_list),
    ("post_query_scripts", "post_query_scripts", _str_list),
    ("pre_query_cycle_scripts", "pre_query_cycle_scripts", _str_list),
    ("post_query_cycle_scripts", "post_query_cycle_scripts", _str_list),
    ("expected_row_counts", "expected_row_counts", _counts),
    ("random_execution", "random_execution", _opt_bool),
    ("randomly_execute_until", "randomly_execute_until", _opt_str),
    ("cold_runs", "cold_runs", _opt_int),
    ("warm_runs", "warm_runs", _opt_int),
    ("start_on_new_client", "start_on_new_client", _opt_bool),
    ("abort_on_error", "abort_on_error", _opt_bool),
    ("save_output", "save_output", _opt_bool),
    ("save_column_metadata", "save_column_metadata", _opt_bool),
    ("save_json", "save_json", _opt_bool),
    ("next", "next_stage_paths", _str_list),
]


@dataclass(eq=False)
class Stage:
    """A set of queries and scripts to run, linked to the stages that follow it.

    Catalog, schema, session parameters and the optional settings are
    inherited by descendant stages that leave them unset.
    """

    id: str = ""
    catalog: Optional[str] = None
    schema: Optional[str] = None
    session_params: dict[str, Any] = field(default_factory=dict)
    timezone: Optional[str] = None
    # Queries run first, then the query files.
    queries: list[str] = field(default_factory=list)
    query_files: list[str] = field(default_factory=list)
    pre_stage_scripts: list[str] = field(default_factory=list)
    post_stage_scripts: list[str] = field(default_factory=list)
    post_query_scripts: list[str] = field(default_factory=list)
    pre_query_cycle_scripts: list[str] = field(default_factory=list)
    post_query_cycle_scripts: list[str] = field(default_factory=list)
    # "catalog.schema", "schema" or a regular expression -> expected row counts.
    expected_row_counts: dict[str, Optional[list[int]]] = field(default_factory=dict)
    random_execution: Optional[bool] = None
    # A duration such as "1h" or a number of queries.
    randomly_execute_until: Optional[str] = None
    cold_runs: Optional[int] = None
    warm_runs: Optional[int] = None
    # Not inherited by descendant stages.
    start_on_new_client: bool = False
    abort_on_error: Optional[bool] = None
    save_output: Optional[bool] = None
    save_column_metadata: Optional[bool] = None
    save_json: Optional[bool] = None
    next_stage_paths: list[str] = field(default_factory=list)

    base_dir: str = ""
    states: Optional[SharedStageStates] = field(default=None, repr=False)
    next_stages: list["Stage"] = field(default_factory=list, repr=False)
    client: Optional[Any] = field(default=None, repr=False)

    expected_row_count_in_current_schema: Optional[list[int]] = field(default=None, repr=False)
    current_catalog: str = ""
    current_schema: str = ""
    current_timezone: str = ""

    _prerequisites: int = field(default=0, init=False, repr=False)
    _prerequisite_cond: threading.Condition = field(
        default_factory=threading.Condition, init=False, repr=False
    )
    _started: bool = field(default=False, init=False, repr=False)
    _start_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @classmethod
    def from_dict(cls, data: Any, stage_id: str = "", base_dir: str = "") -> "Stage":
        """Build a stage from its JSON object; raise ValueError on bad values."""
        if not isinstance(data, dict):
            raise ValueError("a stage definition must be a JSON object")
        stage = cls(id=stage_id, base_dir=base_dir)
        for key, attr, parse in _FIELDS:
            if key not in data:
                continue
            value = parse(key, data[key])
            if attr == "start_on_new_client":
                value = bool(value)
            setattr(stage, attr, value)
        for key in ("cold_runs", "warm_runs"):
            value = getattr(stage, key)
            if value is not None and value < 0:
                raise ValueError(f"{key} must be greater than or equal to 0")
        return stage

    def to_dict(self) -> dict[str, Any]:
        """Return the stage definition as a JSON object, leaving out unset values."""
        data: dict[str, Any] = {}
        for key, attr, _ in _FIELDS:
            value = getattr(self, attr)
            if value is None or value is False and attr == "start_on_new_client":
                continue
            if isinstance(value, (list, dict)):
                if not value:
                    continue
                value = list(value) if isinstance(value, list) else dict(value)
            data[key] = value
        return data

    def __str__(self) -> str:
        return self.id

    def log_fields(self) -> dict[str, Any]:
        """Return the fields identifying this stage in log records."""
        return {"benchmark_stage_id": self.id}

    def merge_with(self, other: "Stage") -> "Stage":
        """Overlay the settings of ``other`` onto this stage and return it."""
        self.id = other.id
        if other.catalog is not None:
            self.catalog = other.catalog
        if other.schema is not None:
            self.schema = other.schema
        for key, value in other.session_params.items():
            if value is not None:
                self.session_params[key] = value
            else:
                self.session_params.pop(key, None)
        if other.timezone is not None:
            self.timezone = other.timezone
        self.queries.extend(other.queries)
        self.query_files.extend(other.query_files)
        for key, counts in other.expected_row_counts.items():
            if counts is not None:
                self.expected_row_counts[key] = counts
            else:
                self.expected_row_counts.pop(key, None)
        if other.random_execution is not None:
            self.random_execution = other.random_execution
        if other.randomly_execute_until is not None:
            self.randomly_execute_until = other.randomly_execute_until
        if other.cold_runs is not None:
            self.cold_runs = other.cold_runs
        if other.warm_runs is not None:
            self.warm_runs = other.warm_runs
        self.start_on_new_client = other.start_on_new_client
        if other.abort_on_error is not None:
            self.abort_on_error = other.abort_on_error
        if other.save_output is not None:
            self.save_output = other.save_output
        if other.save_column_metadata is not None:
            self.save_column_metadata = other.save_column_metadata
        if other.save_json is not None:
            self.save_json = other.save_json
        self.next_stage_paths.extend(other.next_stage_paths)
        self.base_dir = other.base_dir
        self.pre_stage_scripts.extend(other.pre_stage_scripts)
        self.post_query_scripts.extend(other.post_query_scripts)
        self.post_stage_scripts.extend(other.post_stage_scripts)
        self.pre_query_cycle_scripts.extend(other.pre_query_cycle_scripts)
        self.post_query_cycle_scripts.extend(other.post_query_cycle_scripts)
        return self

    def init_states(self) -> "Stage":
        """Give this stage a fresh set of shared states and return it."""
        self.states = SharedStageStates()
        return self

    def set_defaults(self) -> None:
        """Fill unset options with their defaults; at least one run is made."""
        if self.random_execution is None:
            self.random_execution = False
        if self.abort_on_error is None:
            self.abort_on_error = False
        if self.save_output is None:
            self.save_output = False
        if self.save_column_metadata is None:
            self.save_column_metadata = False
        if self.save_json is None:
            self.save_json = False
        if self.cold_runs is None:
            self.cold_runs = 0
        if self.warm_runs is None:
            self.warm_runs = 0
        if self.cold_runs + self.warm_runs <= 0:
            self.cold_runs, self.warm_runs = 1, 0

    def propagate_states(self) -> None:
        """Pass inherited settings, shared states and the client to the next stages."""
        for nxt in self.next_stages:
            if nxt.catalog is None:
                nxt.catalog = self.catalog
            if nxt.schema is None:
                nxt.schema = self.schema
            if nxt.timezone is None:
                nxt.timezone = self.timezone
            if nxt.random_execution is None:
                nxt.random_execution = self.random_execution
            if nxt.randomly_execute_until is None:
                nxt.randomly_execute_until = self.randomly_execute_until
            for key, value in self.session_params.items():
                if value is not None and key not in nxt.session_params:
                    nxt.session_params[key] = value
            if nxt.cold_runs is None and nxt.warm_runs is None:
                nxt.cold_runs, nxt.warm_runs = self.cold_runs, self.warm_runs
            elif nxt.cold_runs is None:
                nxt.cold_runs = 0
            elif nxt.warm_runs is None:
                nxt.warm_runs = 0
            if (nxt.cold_runs or 0) + (nxt.warm_runs or 0) <= 0:
                nxt.cold_runs, nxt.warm_runs = 1, 0
            if nxt.abort_on_error is None:
                nxt.abort_on_error = self.abort_on_error
            if nxt.save_output is None:
                nxt.save_output = self.save_output
            if nxt.save_column_metadata is None:
                nxt.save_column_metadata = self.save_column_metadata
            if nxt.save_json is None:
                nxt.save_json = self.save_json
            nxt.states = self.states
            nxt.client = self.client

    def prepare_client(self) -> None:
        """Create and configure a new client unless an inherited one can be used."""
        if self.client is not None and not self.start_on_new_client:
            return
        if self.states is None or self.states.new_client is None:
            raise RuntimeError(f"no Presto client factory configured for stage {self.id}")
        self.client = client = self.states.new_client()
        _logger.info("created new client for stage %s", self.id)
        if self.catalog is not None:
            self.current_catalog = self.catalog
            client.catalog(self.current_catalog)
            _logger.info("stage %s set catalog %s", self.id, self.current_catalog)
        else:
            self.current_catalog = client.get_catalog()
        if self.schema is not None:
            self.current_schema = self.schema
            client.schema(self.current_schema)
            _logger.info("stage %s set schema %s", self.id, self.current_schema)
        else:
            self.current_schema = client.get_schema()
        for key, value in self.session_params.items():
            client.session_param(key, value)
        if self.session_params:
            _logger.info("stage %s set session params %s", self.id, client.get_session_params())
        if self.timezone is not None:
            self.current_timezone = self.timezone
            client.time_zone(self.current_timezone)
            _logger.info("stage %s set timezone %s", self.id, self.current_timezone)
        else:
            self.current_timezone = client.get_time_zone()
        client.append_client_tag(self.id)

    def query_source_string(self, result: QueryResult) -> str:
        """Return the name used for the result's output files and source header."""
        from pbench.graph import file_name_without_path_and_ext

        query = result.query
        source = file_name_without_path_and_ext(query.file) if query.file is not None else "inline"
        if query.batch_size > 1:
            source = f"{self.id}_{source}_q{query.index}"
        else:
            source = f"{self.id}_{source}"
        if (self.cold_runs or 0) + (self.warm_runs or 0) > 1:
            source += ("_c" if query.cold_run else "_w") + str(query.sequence_no)
        return source

    def add_prerequisite(self) -> None:
        """Count one more stage that must finish before this one starts."""
        with self._prerequisite_cond:
            self._prerequisites += 1

    def prerequisite_done(self) -> None:
        """Mark one prerequisite stage as finished."""
        with self._prerequisite_cond:
            if self._prerequisites <= 0:
                raise ValueError(f"stage {self.id} has no pending prerequisite")
            self._prerequisites -= 1
            if self._prerequisites == 0:
                self._prerequisite_cond.notify_all()

    def wait_for_prerequisites(self, timeout: Optional[float] = None) -> bool:
        """Block until all prerequisites finished; False if ``timeout`` passed first."""
        with self._prerequisite_cond:
            return self._prerequisite_cond.wait_for(lambda: self._prerequisites == 0, timeout)

    def mark_started(self) -> bool:
        """Mark the stage as started; False if it already was."""
        with self._start_lock:
            if self._started:
                return False
            self._started = True
            return True