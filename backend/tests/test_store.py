import threading
from uuid import uuid4

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from finance_tracker.errors import StorageUnavailable, Timeout
from finance_tracker.persistence import InMemoryPersistence, SqlPersistence
from finance_tracker.store import InMemoryStore


def _hold_unit_of_work(persistence, entered: threading.Event, release: threading.Event) -> None:
    with persistence.unit_of_work(timeout=5):
        entered.set()
        release.wait(5)


def test_busy_memory_store_times_out_instead_of_hanging() -> None:
    persistence = InMemoryPersistence(InMemoryStore(), timeout=5)
    entered, release = threading.Event(), threading.Event()
    holder = threading.Thread(target=_hold_unit_of_work, args=(persistence, entered, release))
    holder.start()
    try:
        assert entered.wait(5)
        with pytest.raises(Timeout):
            persistence.get("accounts", uuid4(), uuid4(), timeout=0.05)
    finally:
        release.set()
        holder.join()

    assert persistence.get("accounts", uuid4(), uuid4(), timeout=0.05) is None


def test_failed_unit_of_work_rolls_back_memory_rows() -> None:
    persistence = InMemoryPersistence(InMemoryStore(), timeout=1)
    owner_id, account_id = uuid4(), uuid4()
    with pytest.raises(RuntimeError):
        with persistence.unit_of_work() as uow:
            uow.insert("accounts", {"id": account_id, "owner_id": owner_id, "name": "Cash", "balance": 0})
            raise RuntimeError("boom")
    assert persistence.get("accounts", owner_id, account_id) is None


def test_sql_operational_error_becomes_storage_unavailable(tmp_path) -> None:
    persistence = SqlPersistence(f"sqlite:///{tmp_path / 'ledger.db'}", timeout=1, auto_migrate=True)
    try:
        with pytest.raises(StorageUnavailable):
            with persistence.unit_of_work() as uow:
                uow.conn.execute(text("select * from no_such_table"))
    finally:
        persistence.close()


def test_sql_lock_contention_becomes_timeout(tmp_path) -> None:
    persistence = SqlPersistence(f"sqlite:///{tmp_path / 'ledger.db'}", timeout=1, auto_migrate=True)
    try:
        with pytest.raises(Timeout):
            with persistence.unit_of_work():
                raise OperationalError("update accounts", {}, Exception("database is locked"))
    finally:
        persistence.close()
