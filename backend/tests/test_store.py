import threading

import pytest

from database.store import RecordNotFound, VersionConflict


def test_get_missing_row_raises(store):
    table = store.table("tokens")
    with pytest.raises(RecordNotFound):
        table.get("s1", "missing")


def test_insert_then_get_round_trip(store):
    table = store.table("tokens")
    version = table.insert("s1", "k1", {"status": "ACTIVE", "n": 1})

    record, got_version = table.get("s1", "k1")
    assert record == {"status": "ACTIVE", "n": 1}
    assert got_version == version


def test_insert_existing_row_conflicts(store):
    table = store.table("tokens")
    table.insert("s1", "k1", {"n": 1})
    with pytest.raises(VersionConflict):
        table.insert("s1", "k1", {"n": 2})
    assert table.get("s1", "k1")[0] == {"n": 1}


def test_conditional_put_checks_version(store):
    table = store.table("tokens")
    first = table.insert("s1", "k1", {"n": 1})
    second = table.put("s1", "k1", {"n": 2}, if_version=first)
    assert second != first

    with pytest.raises(VersionConflict):
        table.put("s1", "k1", {"n": 3}, if_version=first)
    assert table.get("s1", "k1") == ({"n": 2}, second)


def test_conditional_put_on_missing_row(store):
    with pytest.raises(RecordNotFound):
        store.table("tokens").put("s1", "nope", {"n": 1}, if_version="abc")


def test_unconditional_put_upserts(store):
    table = store.table("tokens")
    table.put("s1", "k1", {"n": 1})
    table.put("s1", "k1", {"n": 2})
    assert table.get("s1", "k1")[0] == {"n": 2}


def test_scan_is_partitioned_and_ordered(store):
    table = store.table("scan_logs")
    table.insert("s1", "002", {"result": "SUCCESS"})
    table.insert("s1", "001", {"result": "EXPIRED"})
    table.insert("s2", "001", {"result": "SUCCESS"})
    store.table("tokens").insert("s1", "zzz", {"result": "SUCCESS"})

    rows = list(table.scan("s1"))
    assert [key for key, _, _ in rows] == ["001", "002"]

    ok = list(table.scan("s1", lambda r: r["result"] == "SUCCESS"))
    assert [key for key, _, _ in ok] == ["002"]
    assert table.partitions() == ["s1", "s2"]


def test_records_are_copied_out(store):
    table = store.table("tokens")
    table.insert("s1", "k1", {"items": [1]})
    record, _ = table.get("s1", "k1")
    record["items"].append(2)
    assert table.get("s1", "k1")[0] == {"items": [1]}


def test_concurrent_conditional_puts_have_one_winner(store):
    table = store.table("tokens")
    version = table.insert("s1", "k1", {"owner": None})
    workers = 8
    barrier = threading.Barrier(workers)
    wins: list[int] = []
    conflicts: list[int] = []

    def _attempt(i: int) -> None:
        barrier.wait()
        try:
            table.put("s1", "k1", {"owner": i}, if_version=version)
            wins.append(i)
        except VersionConflict:
            conflicts.append(i)

    threads = [threading.Thread(target=_attempt, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(wins) == 1
    assert len(conflicts) == workers - 1
    assert table.get("s1", "k1")[0] == {"owner": wins[0]}
