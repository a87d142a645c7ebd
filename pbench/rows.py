"""Column/value rows used when flattening objects into SQL inserts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Row:
    """An ordered set of named column values."""

    column_names: list[str] = field(default_factory=list)
    values: list[Any] = field(default_factory=list)

    def add_column(self, name: str, value: Any) -> None:
        """Append a column and its value."""
        self.column_names.append(name)
        self.values.append(value)

    def column_count(self) -> int:
        """Return the number of columns, checking that names and values agree."""
        if len(self.column_names) != len(self.values):
            raise ValueError("invalid state")
        return len(self.column_names)


def merge_columns(a: Row, b: Row) -> Row:
    """Return a row holding the columns of ``a`` followed by those of ``b``.

    When either side is empty the other one is returned as is.
    """
    if a.column_count() == 0:
        return b
    if b.column_count() == 0:
        return a
    return Row(
        column_names=[*a.column_names, *b.column_names],
        values=[*a.values, *b.values],
    )


def multiply_rows(a: list[Row], b: list[Row]) -> list[Row]:
    """Return the cartesian product of two row lists, merging each pair."""
    return [merge_columns(x, y) for x in a for y in b]