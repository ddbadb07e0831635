"""SQLite helpers shared by producers, validator, restorer and rehearsal."""

import logging
import os
import re
import sqlite3
import threading
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from vaultdr.utils.errors import IntegrityError, PreconditionError

from .models import DumpInspection

logger = logging.getLogger(__name__)

PLACEHOLDER_MARKER = "-- vaultdr placeholder dump"
CREATE_TABLE = re.compile(r"\bCREATE\s+TABLE\b", re.IGNORECASE)
INSERT_INTO = re.compile(r"\bINSERT\s+INTO\b", re.IGNORECASE)


def open_readonly(db_path: str) -> sqlite3.Connection:
    """
    Open a database without write access.

    Raises:
        PreconditionError: If the file is missing or not a database
    """
    if not os.path.exists(db_path):
        raise PreconditionError(f"Database not found: {db_path}")
    try:
        conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
        conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
    except sqlite3.DatabaseError as e:
        raise PreconditionError(f"Database is not queryable: {db_path}", details=str(e)) from e
    return conn


def dump_database(db_path: str, output_path: str) -> int:
    """
    Write a logical SQL dump of a database.

    Returns:
        int: Number of statements written

    Raises:
        IntegrityError: If the database cannot be read to the end
    """
    conn = open_readonly(db_path)
    count = 0
    try:
        with open(output_path, "w", encoding="utf-8") as out:
            for statement in conn.iterdump():
                out.write(statement)
                out.write("\n")
                count += 1
    except sqlite3.Error as e:
        raise IntegrityError(f"Database could not be dumped: {db_path}", details=str(e)) from e
    finally:
        conn.close()
    return count


def write_placeholder_dump(output_path: str, db_path: str) -> None:
    """Write the dump used when a freshly provisioned host has no database yet."""
    with open(output_path, "w", encoding="utf-8") as out:
        out.write(f"{PLACEHOLDER_MARKER}\n")
        out.write(f"-- No database present at {db_path}\n")
        out.write(f"-- Created {datetime.now().isoformat()}\n")


def scan_dump(dump_path: str) -> Tuple[bool, bool]:
    """
    Scan dump text for schema and data statements.

    Returns:
        Tuple[bool, bool]: (has CREATE TABLE, has INSERT INTO)
    """
    has_schema = False
    has_inserts = False
    with open(dump_path, encoding="utf-8", errors="replace") as f:
        for line in f:
            if not has_schema and CREATE_TABLE.search(line):
                has_schema = True
            if not has_inserts and INSERT_INTO.search(line):
                has_inserts = True
            if has_schema and has_inserts:
                break
    return has_schema, has_inserts


def load_dump(dump_path: str, db_path: str) -> None:
    """
    Execute a SQL dump into a new database file.

    Raises:
        IntegrityError: If the dump cannot be executed
    """
    name = os.path.basename(dump_path)
    try:
        with open(dump_path, encoding="utf-8") as f:
            script = f.read()
    except UnicodeDecodeError as e:
        raise IntegrityError(f"Dump is not valid UTF-8: {name}", details=str(e)) from e
    try:
        conn = sqlite3.connect(db_path)
    except sqlite3.Error as e:
        raise IntegrityError(f"Dump could not be loaded: {name}", details=str(e)) from e
    try:
        conn.executescript(script)
        conn.commit()
    except sqlite3.Error as e:
        raise IntegrityError(f"Dump could not be loaded: {name}", details=str(e)) from e
    finally:
        conn.close()


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def list_tables(conn: sqlite3.Connection) -> List[str]:
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    ).fetchall()
    return [row[0] for row in rows]


def count_rows(conn: sqlite3.Connection, table: str) -> int:
    return conn.execute(f"SELECT COUNT(*) FROM {quote_identifier(table)}").fetchone()[0]


def integrity_check(db_path: str) -> Tuple[bool, str]:
    """
    Run PRAGMA integrity_check.

    Returns:
        Tuple[bool, str]: (passed, first result row)
    """
    try:
        conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
        try:
            row = conn.execute("PRAGMA integrity_check").fetchone()
        finally:
            conn.close()
    except sqlite3.DatabaseError as e:
        return False, str(e)
    result = row[0] if row else "no result"
    return result == "ok", result


def database_summary(db_path: str) -> dict:
    """Table count, journal mode and page size for system info."""
    conn = open_readonly(db_path)
    try:
        return {
            "tables": len(list_tables(conn)),
            "journal_mode": conn.execute("PRAGMA journal_mode").fetchone()[0],
            "page_size": conn.execute("PRAGMA page_size").fetchone()[0],
        }
    finally:
        conn.close()


def inspect_dump(dump_path: str, scratch_dir: str, essential_tables: Iterable[str]) -> DumpInspection:
    """
    Load a dump into a scratch database and inspect its catalog.

    Args:
        dump_path: SQL dump
        scratch_dir: Private directory for the scratch database
        essential_tables: Tables that must be present

    Returns:
        DumpInspection: Catalog findings

    Raises:
        IntegrityError: If the dump has schema statements but cannot be loaded
    """
    essential = list(essential_tables)
    has_schema, has_inserts = scan_dump(dump_path)
    if not has_schema:
        return DumpInspection(placeholder=True, essential_missing=essential, has_inserts=has_inserts)

    scratch_db = os.path.join(scratch_dir, "inspect.sqlite3")
    try:
        load_dump(dump_path, scratch_db)
        conn = sqlite3.connect(scratch_db)
        try:
            tables = list_tables(conn)
            counts = {table: count_rows(conn, table) for table in essential if table in tables}
        finally:
            conn.close()
    finally:
        for suffix in ("", "-wal", "-shm", "-journal"):
            if os.path.exists(scratch_db + suffix):
                os.remove(scratch_db + suffix)

    return DumpInspection(
        placeholder=False,
        tables=tables,
        essential_found=[t for t in essential if t in tables],
        essential_missing=[t for t in essential if t not in tables],
        row_counts=counts,
        has_inserts=has_inserts,
    )


def remove_database_files(db_path: str) -> List[str]:
    """Remove a database file with its WAL and shared-memory side files."""
    removed = []
    for suffix in ("", "-wal", "-shm", "-journal"):
        path = db_path + suffix
        if os.path.exists(path):
            os.remove(path)
            removed.append(path)
    return removed


def run_query(conn: sqlite3.Connection, sql: str, timeout: Optional[float]) -> list:
    """
    Run a query, interrupting it after timeout seconds.

    Raises:
        sqlite3.OperationalError: If the query fails or is interrupted
    """
    timer = None
    if timeout:
        timer = threading.Timer(timeout, conn.interrupt)
        timer.daemon = True
        timer.start()
    try:
        return conn.execute(sql).fetchall()
    finally:
        if timer is not None:
            timer.cancel()
