"""Reading stage files and linking them into a stage graph."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pbench.model import Stage

_logger = logging.getLogger(__name__)

StageMap = dict[str, Stage]


def file_name_without_path_and_ext(file_path: str) -> str:
    """Return the file name of ``file_path`` without directory and extension.

    The path is returned unchanged when no such name can be cut out of it.
    """
    last_sep = file_path.rfind(os.sep)
    last_dot = file_path.rfind(".")
    if last_dot == -1:
        last_dot = len(file_path)
    if last_dot <= last_sep + 1 or last_sep + 1 >= len(file_path):
        return file_path
    return file_path[last_sep + 1 : last_dot]


def _resolve(base_dir: str, path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(base_dir, path)


def _check_stage_links(stage: Stage) -> None:
    seen: set[str] = set()
    for nxt in stage.next_stages:
        if nxt.id in seen:
            raise ValueError(f"stage {stage.id} got duplicated next stages {nxt.id}")
        seen.add(nxt.id)
        _check_stage_links(nxt)


def read_stage_from_file(file_path: str) -> Stage:
    """Read and validate one stage file; query file paths are made absolute."""
    path = os.path.abspath(file_path)
    try:
        raw = Path(path).read_bytes()
    except OSError as exc:
        raise OSError(f"failed to read {path}: {exc}") from exc
    try:
        stage = Stage.from_dict(
            json.loads(raw),
            stage_id=file_name_without_path_and_ext(path),
            base_dir=os.path.dirname(path),
        )
    except ValueError as exc:
        raise ValueError(f"failed to parse json {path}: {exc}") from exc
    stage.query_files = [_resolve(stage.base_dir, q) for q in stage.query_files]
    for query_file in stage.query_files:
        try:
            os.stat(query_file)
        except OSError as exc:
            raise OSError(
                f"{stage.id} links to an invalid query file {query_file}: {exc}"
            ) from exc
    _logger.debug("read stage file %s as %s", path, stage.id)
    return stage


def parse_stage(stage: Stage, stages: StageMap) -> Stage:
    """Register ``stage`` and, recursively, the stages it links to."""
    found = stages.get(stage.id)
    if found is not None:
        _logger.debug("%s already parsed, returned", stage.id)
        return found
    stage.next_stage_paths = [_resolve(stage.base_dir, p) for p in stage.next_stage_paths]
    for next_path in stage.next_stage_paths:
        try:
            is_dir = os.path.isdir(next_path)
            os.stat(next_path)
        except OSError as exc:
            raise OSError(
                f"{stage.id} links to an invalid next stage file {next_path}: {exc}"
            ) from exc
        if is_dir:
            raise IsADirectoryError(f"{stage.id} links to a directory as next stage: {next_path}")
    stages[stage.id] = stage
    for next_path in stage.next_stage_paths:
        nxt = parse_stage_from_file(next_path, stages)
        stage.next_stages.append(nxt)
        nxt.add_prerequisite()
    return stage


def parse_stage_from_file(file_path: str, stages: StageMap) -> Stage:
    """Return the stage in ``file_path``, reading it unless already parsed."""
    found = stages.get(file_name_without_path_and_ext(file_path))
    if found is not None:
        _logger.debug("%s already parsed, returned", found.id)
        return found
    return parse_stage(read_stage_from_file(file_path), stages)


def parse_stage_graph(starting_stage: Stage) -> tuple[Stage, StageMap]:
    """Link the graph reachable from ``starting_stage``; return it and all stages by id."""
    stages: StageMap = {}
    stage = parse_stage(starting_stage, stages)
    _check_stage_links(stage)
    return stage, stages


def parse_stage_graph_from_file(starting_file: str) -> tuple[Stage, StageMap]:
    """Read the stage graph starting at ``starting_file``; return it and all stages by id."""
    stages: StageMap = {}
    stage = parse_stage_from_file(starting_file, stages)
    _check_stage_links(stage)
    return stage, stages