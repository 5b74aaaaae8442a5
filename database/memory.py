import copy
import secrets
import threading
from typing import Iterator

from database.store import (
    Predicate,
    Record,
    RecordNotFound,
    VersionConflict,
)


class MemoryRecordTable:
    """
    Process-local table. Every operation holds the table lock, so conditional
    writes are linearizable inside one process.
    """

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._rows: dict[str, dict[str, tuple[Record, str]]] = {}

    def get(self, partition: str, key: str) -> tuple[Record, str]:
        with self._lock:
            row = self._rows.get(partition, {}).get(key)
            if row is None:
                raise RecordNotFound(self.name, partition, key)
            record, version = row
            return copy.deepcopy(record), version

    def insert(self, partition: str, key: str, record: Record) -> str:
        with self._lock:
            rows = self._rows.setdefault(partition, {})
            if key in rows:
                raise VersionConflict(self.name, partition, key)
            version = secrets.token_hex(8)
            rows[key] = (copy.deepcopy(record), version)
            return version

    def put(
        self,
        partition: str,
        key: str,
        record: Record,
        *,
        if_version: str | None = None,
    ) -> str:
        with self._lock:
            rows = self._rows.setdefault(partition, {})
            if if_version is not None:
                current = rows.get(key)
                if current is None:
                    raise RecordNotFound(self.name, partition, key)
                if current[1] != if_version:
                    raise VersionConflict(self.name, partition, key)
            version = secrets.token_hex(8)
            rows[key] = (copy.deepcopy(record), version)
            return version

    def scan(
        self,
        partition: str,
        predicate: Predicate | None = None,
    ) -> Iterator[tuple[str, Record, str]]:
        with self._lock:
            snapshot = [
                (key, copy.deepcopy(record), version)
                for key, (record, version) in sorted(self._rows.get(partition, {}).items())
            ]
        for key, record, version in snapshot:
            if predicate is None or predicate(record):
                yield key, record, version

    def partitions(self) -> list[str]:
        with self._lock:
            return sorted(p for p, rows in self._rows.items() if rows)


class MemoryRecordStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._tables: dict[str, MemoryRecordTable] = {}

    def table(self, name: str) -> MemoryRecordTable:
        with self._lock:
            if name not in self._tables:
                self._tables[name] = MemoryRecordTable(name)
            return self._tables[name]
