import json
import secrets
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from backend.config import DB_PATH
from database.store import (
    Predicate,
    Record,
    RecordNotFound,
    StoreUnavailable,
    VersionConflict,
)

SQLITE_BUSY_TIMEOUT_SECONDS = 5.0


def connect_db(db_path: Path | str | None = None) -> sqlite3.Connection:
    conn = sqlite3.connect(
        str(db_path or DB_PATH),
        timeout=SQLITE_BUSY_TIMEOUT_SECONDS,
        check_same_thread=False,
    )
    conn.execute("PRAGMA journal_mode = WAL;")
    return conn


def create_tables(db_path: Path | str | None = None) -> None:
    conn = connect_db(db_path)
    cursor = conn.cursor()

    # One generic keyed table; logical tables are a column so every record
    # shares the same compare-and-swap path.
    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS records (
        table_name TEXT NOT NULL,
        partition_key TEXT NOT NULL,
        row_key TEXT NOT NULL,
        body TEXT NOT NULL,
        version TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (table_name, partition_key, row_key)
    )
    """
    )

    cursor.execute(
        """
    CREATE INDEX IF NOT EXISTS idx_records_partition
    ON records(table_name, partition_key)
    """
    )

    conn.commit()
    conn.close()


def _new_version() -> str:
    return secrets.token_hex(8)


@contextmanager
def _store_call(db_path: Path | str) -> Iterator[sqlite3.Connection]:
    try:
        conn = connect_db(db_path)
    except sqlite3.OperationalError as exc:
        raise StoreUnavailable(str(exc)) from exc
    try:
        yield conn
    except sqlite3.OperationalError as exc:
        conn.rollback()
        raise StoreUnavailable(str(exc)) from exc
    finally:
        conn.close()


class SqliteRecordTable:
    def __init__(self, name: str, db_path: Path | str):
        self.name = name
        self.db_path = db_path

    def get(self, partition: str, key: str) -> tuple[Record, str]:
        with _store_call(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT body, version
                FROM records
                WHERE table_name = ? AND partition_key = ? AND row_key = ?
                """,
                (self.name, partition, key),
            )
            row = cur.fetchone()
        if not row:
            raise RecordNotFound(self.name, partition, key)
        return json.loads(row[0]), str(row[1])

    def insert(self, partition: str, key: str, record: Record) -> str:
        version = _new_version()
        with _store_call(self.db_path) as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO records (table_name, partition_key, row_key, body, version)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (self.name, partition, key, json.dumps(record), version),
                )
                conn.commit()
            except sqlite3.IntegrityError:
                conn.rollback()
                raise VersionConflict(self.name, partition, key)
        return version

    def put(
        self,
        partition: str,
        key: str,
        record: Record,
        *,
        if_version: str | None = None,
    ) -> str:
        version = _new_version()
        body = json.dumps(record)
        with _store_call(self.db_path) as conn:
            cur = conn.cursor()
            if if_version is None:
                cur.execute(
                    """
                    INSERT INTO records (table_name, partition_key, row_key, body, version)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (table_name, partition_key, row_key)
                    DO UPDATE SET body = excluded.body,
                                  version = excluded.version,
                                  updated_at = CURRENT_TIMESTAMP
                    """,
                    (self.name, partition, key, body, version),
                )
                conn.commit()
                return version

            # The WHERE on version is the whole concurrency story: sqlite
            # serializes writers, so only one UPDATE can match a given stamp.
            cur.execute(
                """
                UPDATE records
                SET body = ?, version = ?, updated_at = CURRENT_TIMESTAMP
                WHERE table_name = ? AND partition_key = ? AND row_key = ? AND version = ?
                """,
                (body, version, self.name, partition, key, if_version),
            )
            if cur.rowcount == 1:
                conn.commit()
                return version

            conn.rollback()
            cur.execute(
                """
                SELECT 1
                FROM records
                WHERE table_name = ? AND partition_key = ? AND row_key = ?
                """,
                (self.name, partition, key),
            )
            exists = cur.fetchone() is not None
        if not exists:
            raise RecordNotFound(self.name, partition, key)
        raise VersionConflict(self.name, partition, key)

    def scan(
        self,
        partition: str,
        predicate: Predicate | None = None,
    ) -> Iterator[tuple[str, Record, str]]:
        with _store_call(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT row_key, body, version
                FROM records
                WHERE table_name = ? AND partition_key = ?
                ORDER BY row_key ASC
                """,
                (self.name, partition),
            )
            rows = cur.fetchall()

        for row_key, body, version in rows:
            record = json.loads(body)
            if predicate is None or predicate(record):
                yield str(row_key), record, str(version)

    def partitions(self) -> list[str]:
        with _store_call(self.db_path) as conn:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT DISTINCT partition_key
                FROM records
                WHERE table_name = ?
                ORDER BY partition_key ASC
                """,
                (self.name,),
            )
            return [str(r[0]) for r in cur.fetchall()]


class SqliteRecordStore:
    def __init__(self, db_path: Path | str | None = None):
        self.db_path = db_path or DB_PATH
        create_tables(self.db_path)

    def table(self, name: str) -> SqliteRecordTable:
        return SqliteRecordTable(name, self.db_path)
