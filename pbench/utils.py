"""File system, logging and database helpers."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Optional

import pymysql

_logger = logging.getLogger("pbench")

DEFAULT_MYSQL_PORT = 3306


def expand_home_directory(path: Optional[str]) -> Optional[str]:
    """Return ``path`` with a leading ``~`` replaced by the user's home directory."""
    if path is None or not path.startswith("~"):
        return path
    rest = path[1:].lstrip("/\\")
    home = str(Path.home())
    return str(Path(home, rest)) if rest else home


def prepare_output_directory(path: str) -> None:
    """Make sure ``path`` is an existing directory, creating it if needed."""
    target = Path(path)
    if not target.exists():
        target.mkdir(parents=True, exist_ok=True)
        _logger.info("output directory created: %s", path)
    elif not target.is_dir():
        raise NotADirectoryError(f"output path is not a directory: {path}")
    else:
        _logger.info("output directory: %s", path)


def init_log_file(log_path: str) -> Callable[[], None]:
    """Start copying the package log to ``log_path``.

    Returns a function that flushes and detaches the file. If the file cannot
    be created the error is logged and the returned function does nothing.
    """
    try:
        handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    except OSError as exc:
        _logger.error("failed to create the log file %s: %s", log_path, exc)
        return lambda: None
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )
    _logger.addHandler(handler)
    if _logger.level == logging.NOTSET:
        _logger.setLevel(logging.INFO)
    _logger.info("log file will be saved to this path: %s", log_path)

    def finalize() -> None:
        handler.flush()
        _logger.removeHandler(handler)
        handler.close()

    return finalize


def init_mysql_conn_from_cfg(cfg_path: str) -> Optional[Any]:
    """Open a MySQL connection described by the JSON file at ``cfg_path``.

    The file holds ``username``, ``password``, ``server`` (``host[:port]``)
    and ``database``. Returns None when no path is given or on any failure.
    """
    if not cfg_path:
        return None
    try:
        cfg_text = Path(cfg_path).read_text(encoding="utf-8")
    except OSError as exc:
        _logger.error("failed to read MySQL connection config: %s", exc)
        return None
    try:
        cfg = json.loads(cfg_text)
        if not isinstance(cfg, dict):
            raise ValueError("config must be a JSON object")
    except ValueError as exc:
        _logger.error("failed to unmarshal MySQL connection config for the run recorder: %s", exc)
        return None
    server = str(cfg.get("server", ""))
    host, sep, port_text = server.rpartition(":")
    if not sep:
        host, port_text = server, ""
    try:
        port = int(port_text) if port_text else DEFAULT_MYSQL_PORT
        return pymysql.connect(
            host=host,
            port=port,
            user=cfg.get("username", ""),
            password=cfg.get("password", ""),
            database=cfg.get("database", ""),
            autocommit=False,
        )
    except (ValueError, pymysql.MySQLError) as exc:
        _logger.error("failed to initialize MySQL connection for the run recorder: %s", exc)
        return None