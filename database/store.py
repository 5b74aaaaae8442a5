from typing import Any, Callable, Iterator, Protocol

Record = dict[str, Any]
Predicate = Callable[[Record], bool]


class StoreError(Exception):
    pass


class RecordNotFound(StoreError):
    def __init__(self, table: str, partition: str, key: str):
        super().__init__(f"{table}: no record at ({partition}, {key})")
        self.table = table
        self.partition = partition
        self.key = key


class VersionConflict(StoreError):
    """The row changed (or appeared) since the caller read it."""

    def __init__(self, table: str, partition: str, key: str):
        super().__init__(f"{table}: version conflict at ({partition}, {key})")
        self.table = table
        self.partition = partition
        self.key = key


class StoreUnavailable(StoreError):
    """
    Infrastructure fault (locked database, I/O error, timeout).

    The outcome of a write that raised this is unknown: it may have landed.
    """


class RecordTable(Protocol):
    name: str

    def get(self, partition: str, key: str) -> tuple[Record, str]: ...

    def insert(self, partition: str, key: str, record: Record) -> str: ...

    def put(
        self,
        partition: str,
        key: str,
        record: Record,
        *,
        if_version: str | None = None,
    ) -> str: ...

    def scan(
        self,
        partition: str,
        predicate: Predicate | None = None,
    ) -> Iterator[tuple[str, Record, str]]: ...

    def partitions(self) -> list[str]: ...


class RecordStore(Protocol):
    def table(self, name: str) -> RecordTable: ...


TABLE_SESSIONS = "sessions"
TABLE_TOKENS = "tokens"
TABLE_CHAINS = "chains"
TABLE_ATTENDANCE = "attendance"
TABLE_SCAN_LOGS = "scan_logs"
