"""Flatten dataclass objects into per-table rows and insert them.

A dataclass field is mapped to a column of a table through its field
metadata: ``field(metadata={"table_name": "column_name"})``. Nested
dataclasses and lists of dataclasses are flattened, each list element
producing its own set of rows which are multiplied with the rows of the
enclosing object.
"""

from __future__ import annotations

import dataclasses
import json
from datetime import timedelta
from typing import Any

from pbench.rows import Row, multiply_rows

RowsMap = dict[str, list[Row]]


def merge_rows_map(a: RowsMap, b: RowsMap) -> RowsMap:
    """Multiply the rows of ``b`` into ``a`` table by table and return ``a``."""
    for table_name, rows2 in b.items():
        rows1 = a.get(table_name) or [Row()]
        a[table_name] = multiply_rows(rows1, rows2)
    return a


def _is_struct(value: Any) -> bool:
    return dataclasses.is_dataclass(value) and not isinstance(value, type)


def _column_value(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
        try:
            return json.dumps(json.loads(raw), separators=(",", ":"), ensure_ascii=False)
        except ValueError:
            return raw.decode("utf-8", errors="replace")
    if isinstance(value, timedelta):
        return int(value / timedelta(milliseconds=1))
    return value


def collect_rows_for_each_table(obj: Any, *table_names: str) -> RowsMap:
    """Return the rows ``obj`` contributes to each of ``table_names``."""
    rows_map: RowsMap = {}
    if not _is_struct(obj):
        return rows_map
    for f in dataclasses.fields(obj):
        value = getattr(obj, f.name)
        if value is None:
            continue
        column_value: Any = None
        converted = False
        for table_name in table_names:
            column_name = f.metadata.get(table_name)
            if not column_name:
                continue
            if not converted:
                column_value = _column_value(value)
                converted = True
            rows = rows_map.setdefault(table_name, [])
            if not rows:
                rows.append(Row())
            for row in rows:
                row.add_column(column_name, column_value)
        if _is_struct(value):
            rows_map = merge_rows_map(rows_map, collect_rows_for_each_table(value, *table_names))
        elif isinstance(value, (list, tuple)):
            if not value or not _is_struct(value[0]):
                continue
            rows_from_list: RowsMap = {}
            for element in value:
                for table, rows in collect_rows_for_each_table(element, *table_names).items():
                    rows_from_list.setdefault(table, []).extend(rows)
            rows_map = merge_rows_map(rows_map, rows_from_list)
    return rows_map


def sql_insert_object(conn: Any, obj: Any, *table_names: str) -> None:
    """Insert the rows of ``obj`` into ``table_names`` within one transaction.

    ``conn`` is a DB-API connection using the ``format`` parameter style.
    The transaction is committed on success and rolled back on any error.
    """
    if not _is_struct(obj):
        raise TypeError(f"obj must be a dataclass instance, got {type(obj).__name__}")
    rows_map = collect_rows_for_each_table(obj, *table_names)
    cursor = conn.cursor()
    try:
        for table, rows in rows_map.items():
            if not rows:
                continue
            placeholders = ",".join(["%s"] * rows[0].column_count())
            statement = (
                f"INSERT INTO {table} ({','.join(rows[0].column_names)}) VALUES ({placeholders})"
            )
            for row in rows:
                cursor.execute(statement, tuple(row.values))
    except BaseException:
        conn.rollback()
        raise
    finally:
        close = getattr(cursor, "close", None)
        if close is not None:
            close()
    conn.commit()