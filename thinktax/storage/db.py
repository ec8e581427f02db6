"""
Read-only access to VS Code style ``state.vscdb`` databases.

Cursor keeps auth tokens, composer history and usage snapshots in a
SQLite key/value table named ``ItemTable``.
"""

import sqlite3
from pathlib import Path
from typing import List, Optional, Tuple, Union


def get_connection(db_path: Union[str, Path]) -> sqlite3.Connection:
    """Open a SQLite database read-only.

    Args:
        db_path: Path to the SQLite database file

    Returns:
        Read-only SQLite connection with a short busy timeout, since the
        owning application may hold a write lock
    """
    path = Path(db_path).resolve()
    return sqlite3.connect(f"{path.as_uri()}?mode=ro", uri=True, timeout=5.0)


def get_item(db_path: Union[str, Path], key: str) -> Optional[str]:
    """Fetch a single ItemTable value.

    Raises:
        sqlite3.Error: If the database can't be read
    """
    conn = get_connection(db_path)
    try:
        row = conn.execute("SELECT value FROM ItemTable WHERE key = ?", (key,)).fetchone()
        return _as_text(row[0]) if row else None
    finally:
        conn.close()


def find_items(db_path: Union[str, Path], *fragments: str) -> List[Tuple[str, str]]:
    """Fetch ItemTable rows whose key contains any of ``fragments``.

    Raises:
        sqlite3.Error: If the database can't be read
    """
    if not fragments:
        return []
    conditions = " OR ".join("key LIKE ?" for _ in fragments)
    params = [f"%{fragment}%" for fragment in fragments]

    conn = get_connection(db_path)
    try:
        cursor = conn.execute(f"SELECT key, value FROM ItemTable WHERE {conditions}", params)
        return [(row[0], _as_text(row[1])) for row in cursor.fetchall()]
    finally:
        conn.close()


def _as_text(value) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return "" if value is None else str(value)
