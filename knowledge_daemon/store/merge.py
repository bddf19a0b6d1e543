"""
Single parameterized upsert used by every store table.

Each column carries a merge strategy deciding how an incoming value combines
with the stored one when the natural key already exists:

==========  ============================================================
REPLACE     incoming value wins
COALESCE    incoming value wins unless it is empty
KEEP        stored value wins unless it is empty
UNION       ordered set union of two JSON lists
MAX         larger of the two values
INCREMENT   stored value plus incoming value
==========  ============================================================

Table and column names always come from store code, never from callers.
"""

from __future__ import annotations

import json
import sqlite3
from typing import Any, Optional

REPLACE = "replace"
COALESCE = "coalesce"
KEEP = "keep"
UNION = "union"
MAX = "max"
INCREMENT = "increment"

STRATEGIES = (REPLACE, COALESCE, KEEP, UNION, MAX, INCREMENT)


def is_empty(value: Any) -> bool:
    """Return True for None, blank strings and empty JSON containers."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() in ("", "[]", "{}")
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def union(old: Optional[list], new: Optional[list]) -> list:
    """Ordered set union: stored items first, then unseen incoming items."""
    merged: list = []
    seen: set = set()
    for item in list(old or []) + list(new or []):
        marker = json.dumps(item, sort_keys=True) if isinstance(item, (dict, list)) else item
        if marker in seen:
            continue
        seen.add(marker)
        merged.append(item)
    return merged


def merge_value(strategy: str, old: Any, new: Any) -> Any:
    """Combine *old* and *new* according to *strategy*."""
    if strategy == REPLACE:
        return new
    if strategy == COALESCE:
        return old if is_empty(new) else new
    if strategy == KEEP:
        return new if is_empty(old) else old
    if strategy == UNION:
        return union(_decode_list(old), _decode_list(new))
    if strategy == MAX:
        if old is None:
            return new
        if new is None:
            return old
        return max(old, new)
    if strategy == INCREMENT:
        return (old or 0) + (new or 0)
    raise ValueError(f"Unknown merge strategy: {strategy!r}")


def encode(value: Any) -> Any:
    """Convert a Python value into something sqlite3 can bind."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(list(value) if isinstance(value, tuple) else value)
    return value


def _decode_list(value: Any) -> list:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        try:
            data = json.loads(value)
        except ValueError:
            return [value]
        return data if isinstance(data, list) else [data]
    return list(value)


def upsert_row(
    conn: sqlite3.Connection,
    table: str,
    key: dict,
    values: dict,
    strategies: Optional[dict] = None,
    touch: Optional[tuple[str, str]] = None,
) -> tuple[int, bool]:
    """
    Insert or merge one row identified by its natural *key*.

    Parameters
    ----------
    conn:
        Connection inside an open write transaction.
    table:
        Target table (must have an ``id`` primary key).
    key:
        Natural-key columns and their values.
    values:
        Non-key columns to write.  On insert they are written as given;
        on conflict each is merged with its strategy (default REPLACE).
    strategies:
        Column name to merge strategy.
    touch:
        Optional ``(column, timestamp)`` written only when the merge
        actually changed a column, so unchanged rows keep their
        modification time.

    Returns
    -------
    tuple[int, bool]
        The row id and whether the row was newly inserted.
    """
    strategies = strategies or {}
    for col, strategy in strategies.items():
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown merge strategy for {col}: {strategy!r}")

    where = " AND ".join(f"{col} = ?" for col in key)
    row = conn.execute(
        f"SELECT * FROM {table} WHERE {where}", tuple(encode(v) for v in key.values())
    ).fetchone()

    if row is None:
        cols = dict(key)
        cols.update(values)
        if touch is not None:
            cols[touch[0]] = touch[1]
        names = ", ".join(cols)
        marks = ", ".join("?" for _ in cols)
        cur = conn.execute(
            f"INSERT INTO {table} ({names}) VALUES ({marks})",
            tuple(encode(v) for v in cols.values()),
        )
        return cur.lastrowid, True

    changes: dict = {}
    for col, new in values.items():
        merged = encode(merge_value(strategies.get(col, REPLACE), row[col], new))
        if merged != row[col]:
            changes[col] = merged

    if changes:
        if touch is not None:
            changes[touch[0]] = touch[1]
        assignments = ", ".join(f"{col} = ?" for col in changes)
        conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            tuple(changes.values()) + (row["id"],),
        )
    return row["id"], False
