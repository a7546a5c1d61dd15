"""Row store handle used by the back office.

The handle exposes the small query surface the rest of the application
needs (per-table select, insert, update and count with filter predicates,
plus embedding of child rows) so that callers never build SQL themselves
and tests can swap in a fake that returns fixture rows.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from pathlib import Path
from typing import Any, Iterable, Mapping

from .database import get_connection, initialize_database
from .errors import FetchError

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")

# Filter values may be plain values (equality, or IS NULL for None) or
# (operator, operand) tuples using one of these operators.
_OPERATORS = {
    "eq": "=",
    "neq": "!=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "like": "LIKE",
}


def as_list(value: Any) -> list:
    """Normalize an embedded relation to an ordered list of rows."""

    if value is None:
        return []
    if isinstance(value, Mapping):
        return [dict(value)]
    return list(value)


def as_single(value: Any) -> dict | None:
    """Normalize a to-one embedded relation to a single row (or ``None``)."""

    if value is None:
        return None
    if isinstance(value, Mapping):
        return dict(value)
    rows = list(value)
    return dict(rows[0]) if rows else None


def _identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    return name


def _where(filters: Mapping[str, Any] | None) -> tuple[str, list[Any]]:
    if not filters:
        return "", []
    clauses: list[str] = []
    params: list[Any] = []
    for column, value in filters.items():
        column = _identifier(column)
        if value is None:
            clauses.append(f"{column} IS NULL")
        elif isinstance(value, tuple):
            operator, operand = value
            if operator == "in":
                operand = list(operand)
                if not operand:
                    clauses.append("0")
                    continue
                placeholders = ", ".join("?" for _ in operand)
                clauses.append(f"{column} IN ({placeholders})")
                params.extend(operand)
            elif operator == "is_not_null":
                clauses.append(f"{column} IS NOT NULL")
            elif operator in _OPERATORS:
                clauses.append(f"{column} {_OPERATORS[operator]} ?")
                params.append(operand)
            else:
                raise ValueError(f"Unsupported filter operator: {operator!r}")
        else:
            clauses.append(f"{column} = ?")
            params.append(value)
    return " WHERE " + " AND ".join(clauses), params


class RowStore:
    """SQLite backed implementation of the row store handle."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    @classmethod
    def open(cls, path: str | Path = ":memory:") -> "RowStore":
        conn = get_connection(path)
        initialize_database(conn)
        return cls(conn)

    def _run(self, table: str, sql: str, params: Iterable[Any]) -> sqlite3.Cursor:
        try:
            return self.conn.execute(sql, list(params))
        except sqlite3.Error as exc:
            logger.error("Query against %s failed: %s", table, exc)
            raise FetchError(f"Could not query {table}") from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def select(
        self,
        table: str,
        *,
        filters: Mapping[str, Any] | None = None,
        order_by: str | Iterable[str] | None = None,
        descending: bool = False,
        limit: int | None = None,
        embed: Mapping[str, tuple[str, str]] | None = None,
    ) -> list[dict]:
        """Return rows of ``table``.

        ``embed`` maps an attribute name to ``(child_table, foreign_key)``.
        Each returned row receives that attribute holding the list of child
        rows whose ``foreign_key`` equals the row's ``id``. A foreign key
        living on the parent row itself can be requested with the
        ``"<column>->"`` form, e.g. ``{"client": ("clients", "client_id->")}``,
        which attaches the single referenced row instead of a list.
        """

        table = _identifier(table)
        where, params = _where(filters)
        sql = f"SELECT * FROM {table}{where}"
        if order_by:
            columns = [order_by] if isinstance(order_by, str) else list(order_by)
            direction = " DESC" if descending else ""
            sql += " ORDER BY " + ", ".join(_identifier(col) + direction for col in columns)
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        rows = self._run(table, sql, params).fetchall()
        for name, (child_table, foreign_key) in (embed or {}).items():
            self._embed(rows, name, child_table, foreign_key)
        return rows

    def select_one(self, table: str, **kwargs: Any) -> dict | None:
        rows = self.select(table, limit=1, **kwargs)
        return rows[0] if rows else None

    def count(self, table: str, *, filters: Mapping[str, Any] | None = None) -> int:
        table = _identifier(table)
        where, params = _where(filters)
        row = self._run(table, f"SELECT COUNT(*) AS total FROM {table}{where}", params).fetchone()
        return row["total"] if row else 0

    def _embed(self, rows: list[dict], name: str, child_table: str, foreign_key: str) -> None:
        if foreign_key.endswith("->"):
            local_key = foreign_key[:-2]
            ids = {row[local_key] for row in rows if row.get(local_key) is not None}
            children = self.select(child_table, filters={"id": ("in", ids)}) if ids else []
            by_id = {child["id"]: child for child in children}
            for row in rows:
                row[name] = by_id.get(row.get(local_key))
            return
        ids = [row["id"] for row in rows]
        children = (
            self.select(child_table, filters={foreign_key: ("in", ids)}, order_by="id")
            if ids
            else []
        )
        grouped: dict[Any, list[dict]] = {row_id: [] for row_id in ids}
        for child in children:
            grouped.setdefault(child[foreign_key], []).append(child)
        for row in rows:
            row[name] = grouped.get(row["id"], [])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def insert(self, table: str, values: Mapping[str, Any]) -> dict:
        table = _identifier(table)
        columns = [_identifier(column) for column in values]
        placeholders = ", ".join("?" for _ in columns)
        cur = self._run(
            table,
            f"INSERT INTO {table}({', '.join(columns)}) VALUES ({placeholders})",
            values.values(),
        )
        self.conn.commit()
        return self.select_one(table, filters={"id": cur.lastrowid})

    def update(
        self,
        table: str,
        values: Mapping[str, Any],
        *,
        filters: Mapping[str, Any],
    ) -> int:
        """Update matching rows and return how many were changed."""

        if not filters:
            raise ValueError("Refusing to update without filters")
        table = _identifier(table)
        assignments = ", ".join(f"{_identifier(column)} = ?" for column in values)
        where, params = _where(filters)
        cur = self._run(
            table,
            f"UPDATE {table} SET {assignments}{where}",
            list(values.values()) + params,
        )
        self.conn.commit()
        return cur.rowcount

    def close(self) -> None:
        self.conn.close()
