from __future__ import annotations

import copy
import json
import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any, Iterator
from uuid import UUID

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from .config import settings
from .errors import Conflict, LedgerError, StorageUnavailable, Timeout
from .migrate import apply_migrations
from .store import InMemoryStore, store

logger = logging.getLogger(__name__)

_TIMESTAMPS = {"created_at": "datetime", "updated_at": "datetime"}

# Column name -> codec kind, per table. Also the whitelist for generated SQL.
COLUMNS: dict[str, dict[str, str]] = {
    "accounts": {
        "id": "uuid",
        "owner_id": "uuid",
        "name": "str",
        "account_type": "str",
        "currency": "str",
        "opening_balance": "int",
        "balance": "int",
        "is_active": "bool",
        **_TIMESTAMPS,
    },
    "categories": {
        "id": "uuid",
        "owner_id": "uuid",
        "name": "str",
        "category_type": "str",
        "is_system": "bool",
        **_TIMESTAMPS,
    },
    "transactions": {
        "id": "uuid",
        "owner_id": "uuid",
        "transaction_type": "str",
        "amount": "int",
        "description": "str",
        "occurred_on": "date",
        "account_id": "uuid",
        "to_account_id": "uuid",
        "category_id": "uuid",
        "tags": "json",
        "metadata": "json",
        "source": "str",
        "recurring_id": "uuid",
        **_TIMESTAMPS,
    },
    "recurring_transactions": {
        "id": "uuid",
        "owner_id": "uuid",
        "transaction_type": "str",
        "amount": "int",
        "description": "str",
        "account_id": "uuid",
        "to_account_id": "uuid",
        "category_id": "uuid",
        "frequency": "str",
        "interval_count": "int",
        "start_date": "date",
        "end_date": "date",
        "status": "str",
        "last_processed_date": "date",
        "next_due_date": "date",
        **_TIMESTAMPS,
    },
    "budgets": {
        "id": "uuid",
        "owner_id": "uuid",
        "name": "str",
        "category_id": "uuid",
        "amount": "int",
        "period": "str",
        "start_date": "date",
        "end_date": "date",
        "alert_threshold": "float",
        "is_active": "bool",
        **_TIMESTAMPS,
    },
    "goals": {
        "id": "uuid",
        "owner_id": "uuid",
        "name": "str",
        "goal_type": "str",
        "target_amount": "int",
        "current_amount": "int",
        "deadline": "date",
        "linked_account_id": "uuid",
        "linked_category_id": "uuid",
        "priority": "str",
        "status": "str",
        "milestones": "json",
        **_TIMESTAMPS,
    },
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _columns(table: str, names: Any = ()) -> dict[str, str]:
    try:
        columns = COLUMNS[table]
    except KeyError:
        raise ValueError(f"unknown table: {table}") from None
    unknown = [name for name in names if name not in columns]
    if unknown:
        raise ValueError(f"unknown column(s) for {table}: {', '.join(unknown)}")
    return columns


def _complete(table: str, row: dict[str, Any]) -> dict[str, Any]:
    columns = _columns(table, row.keys())
    return {name: row.get(name) for name in columns}


def _encode_value(kind: str, value: Any) -> Any:
    if value is None:
        return None
    if kind == "uuid":
        return str(value)
    if kind in ("date", "datetime"):
        return value.isoformat()
    if kind == "json":
        return json.dumps(value, default=str)
    if kind == "bool":
        return bool(value)
    return value


def _decode_value(kind: str, value: Any) -> Any:
    if value is None:
        return None
    if kind == "uuid":
        return value if isinstance(value, UUID) else UUID(str(value))
    if kind == "date":
        if isinstance(value, datetime):
            return value.date()
        return value if isinstance(value, date) else date.fromisoformat(str(value))
    if kind == "datetime":
        return value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if kind == "json":
        return json.loads(value) if isinstance(value, str) else value
    if kind == "bool":
        return bool(value)
    if kind == "int":
        return int(value)
    if kind == "float":
        return float(value)
    return value


def _encode(table: str, row: dict[str, Any]) -> dict[str, Any]:
    columns = _columns(table, row.keys())
    return {name: _encode_value(columns[name], value) for name, value in row.items()}


def _decode(table: str, row: dict[str, Any]) -> dict[str, Any]:
    columns = COLUMNS[table]
    return {name: _decode_value(columns[name], row.get(name)) for name in columns}


class UnitOfWork:
    """Owner-scoped access to the ledger tables inside one atomic boundary.

    Everything done through a unit either commits together when the
    ``with`` block exits cleanly or is discarded when it raises.
    """

    def get(self, table: str, owner_id: UUID | None, entity_id: UUID, *, for_update: bool = False) -> dict[str, Any] | None:
        raise NotImplementedError

    def find(self, table: str, **equals: Any) -> list[dict[str, Any]]:
        raise NotImplementedError

    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def update(self, table: str, owner_id: UUID, entity_id: UUID, changes: dict[str, Any]) -> dict[str, Any] | None:
        raise NotImplementedError

    def delete(self, table: str, owner_id: UUID, entity_id: UUID) -> bool:
        raise NotImplementedError

    def increment(self, table: str, owner_id: UUID, entity_id: UUID, column: str, delta: int) -> int | None:
        raise NotImplementedError

    def due_recurring(self, today: date) -> list[dict[str, Any]]:
        raise NotImplementedError


class Persistence:
    def unit_of_work(self, timeout: float | None = None):
        raise NotImplementedError

    def get(self, table: str, owner_id: UUID | None, entity_id: UUID, timeout: float | None = None) -> dict[str, Any] | None:
        with self.unit_of_work(timeout) as uow:
            return uow.get(table, owner_id, entity_id)

    def find(self, table: str, timeout: float | None = None, **equals: Any) -> list[dict[str, Any]]:
        with self.unit_of_work(timeout) as uow:
            return uow.find(table, **equals)

    def due_recurring(self, today: date, timeout: float | None = None) -> list[dict[str, Any]]:
        with self.unit_of_work(timeout) as uow:
            return uow.due_recurring(today)

    def close(self) -> None:
        return None


class InMemoryUnitOfWork(UnitOfWork):
    def __init__(self, memory: InMemoryStore) -> None:
        self._memory = memory
        self._journal: list[tuple[str, UUID, dict[str, Any] | None]] = []

    def _remember(self, table: str, entity_id: UUID) -> None:
        previous = self._memory.tables[table].get(entity_id)
        self._journal.append((table, entity_id, copy.deepcopy(previous)))

    def _owned(self, table: str, owner_id: UUID | None, entity_id: UUID) -> dict[str, Any] | None:
        _columns(table)
        row = self._memory.tables[table].get(entity_id)
        if owner_id is None or row is None or row.get("owner_id") != owner_id:
            return None
        return row

    def rollback(self) -> None:
        for table, entity_id, previous in reversed(self._journal):
            rows = self._memory.tables[table]
            if previous is None:
                rows.pop(entity_id, None)
            else:
                rows[entity_id] = previous
        self._journal.clear()

    def get(self, table: str, owner_id: UUID | None, entity_id: UUID, *, for_update: bool = False) -> dict[str, Any] | None:
        row = self._owned(table, owner_id, entity_id)
        return copy.deepcopy(row) if row is not None else None

    def find(self, table: str, **equals: Any) -> list[dict[str, Any]]:
        _columns(table, equals.keys())
        return [
            copy.deepcopy(row)
            for row in self._memory.tables[table].values()
            if all(row.get(name) == value for name, value in equals.items())
        ]

    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        full = _complete(table, row)
        if full["id"] in self._memory.tables[table]:
            raise Conflict(f"duplicate id in {table}: {full['id']}")
        self._remember(table, full["id"])
        self._memory.tables[table][full["id"]] = copy.deepcopy(full)
        return copy.deepcopy(full)

    def update(self, table: str, owner_id: UUID, entity_id: UUID, changes: dict[str, Any]) -> dict[str, Any] | None:
        _columns(table, changes.keys())
        row = self._owned(table, owner_id, entity_id)
        if row is None:
            return None
        self._remember(table, entity_id)
        row.update(copy.deepcopy(changes))
        return copy.deepcopy(row)

    def delete(self, table: str, owner_id: UUID, entity_id: UUID) -> bool:
        if self._owned(table, owner_id, entity_id) is None:
            return False
        self._remember(table, entity_id)
        del self._memory.tables[table][entity_id]
        return True

    def increment(self, table: str, owner_id: UUID, entity_id: UUID, column: str, delta: int) -> int | None:
        _columns(table, [column])
        row = self._owned(table, owner_id, entity_id)
        if row is None:
            return None
        self._remember(table, entity_id)
        row[column] = row[column] + delta
        row["updated_at"] = _utcnow()
        return row[column]

    def due_recurring(self, today: date) -> list[dict[str, Any]]:
        rows = [
            copy.deepcopy(row)
            for row in self._memory.recurring_transactions.values()
            if row.get("status") == "active" and row.get("next_due_date") is not None and row["next_due_date"] <= today
        ]
        return sorted(rows, key=lambda r: (r["next_due_date"], str(r["id"])))


class InMemoryPersistence(Persistence):
    def __init__(self, memory: InMemoryStore | None = None, timeout: float | None = None) -> None:
        self.store = memory if memory is not None else store
        self.timeout = settings.store_timeout_seconds if timeout is None else timeout

    @contextmanager
    def unit_of_work(self, timeout: float | None = None) -> Iterator[InMemoryUnitOfWork]:
        wait = self.timeout if timeout is None else timeout
        if not self.store.lock.acquire(timeout=max(wait, 0)):
            raise Timeout(f"store busy for more than {wait}s")
        uow = InMemoryUnitOfWork(self.store)
        try:
            yield uow
        except BaseException:
            uow.rollback()
            raise
        finally:
            self.store.lock.release()


class SqlUnitOfWork(UnitOfWork):
    def __init__(self, conn: Connection, dialect: str) -> None:
        self.conn = conn
        self.dialect = dialect

    def _run(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        result = self.conn.execute(text(sql), params or {})
        if result.returns_rows:
            return [dict(row._mapping) for row in result.fetchall()]
        return []

    def get(self, table: str, owner_id: UUID | None, entity_id: UUID, *, for_update: bool = False) -> dict[str, Any] | None:
        _columns(table)
        if owner_id is None:
            return None
        sql = f"select * from {table} where id = :id and owner_id = :owner_id"
        if for_update and self.dialect != "sqlite":
            sql += " for update"
        rows = self._run(sql, {"id": str(entity_id), "owner_id": str(owner_id)})
        return _decode(table, rows[0]) if rows else None

    def find(self, table: str, **equals: Any) -> list[dict[str, Any]]:
        encoded = _encode(table, equals)
        clauses = [f"{name} is null" if value is None else f"{name} = :{name}" for name, value in encoded.items()]
        sql = f"select * from {table}"
        if clauses:
            sql += " where " + " and ".join(clauses)
        params = {name: value for name, value in encoded.items() if value is not None}
        return [_decode(table, row) for row in self._run(sql, params)]

    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        full = _complete(table, row)
        names = list(full)
        self._run(
            f"insert into {table} ({', '.join(names)}) values ({', '.join(':' + n for n in names)})",
            _encode(table, full),
        )
        return copy.deepcopy(full)

    def update(self, table: str, owner_id: UUID, entity_id: UUID, changes: dict[str, Any]) -> dict[str, Any] | None:
        if changes:
            encoded = _encode(table, changes)
            assignments = ", ".join(f"{name} = :{name}" for name in encoded)
            result = self.conn.execute(
                text(f"update {table} set {assignments} where id = :pk_id and owner_id = :pk_owner"),
                {**encoded, "pk_id": str(entity_id), "pk_owner": str(owner_id)},
            )
            if result.rowcount == 0:
                return None
        return self.get(table, owner_id, entity_id)

    def delete(self, table: str, owner_id: UUID, entity_id: UUID) -> bool:
        _columns(table)
        result = self.conn.execute(
            text(f"delete from {table} where id = :id and owner_id = :owner_id"),
            {"id": str(entity_id), "owner_id": str(owner_id)},
        )
        return result.rowcount > 0

    def increment(self, table: str, owner_id: UUID, entity_id: UUID, column: str, delta: int) -> int | None:
        _columns(table, [column])
        params = {"delta": delta, "updated_at": _utcnow().isoformat(), "id": str(entity_id), "owner_id": str(owner_id)}
        result = self.conn.execute(
            text(f"update {table} set {column} = {column} + :delta, updated_at = :updated_at where id = :id and owner_id = :owner_id"),
            params,
        )
        if result.rowcount == 0:
            return None
        rows = self._run(f"select {column} from {table} where id = :id", {"id": str(entity_id)})
        return int(rows[0][column])

    def due_recurring(self, today: date) -> list[dict[str, Any]]:
        rows = self._run(
            """
            select * from recurring_transactions
            where status = 'active' and next_due_date is not null and next_due_date <= :today
            order by next_due_date asc, id asc
            """,
            {"today": today.isoformat()},
        )
        return [_decode("recurring_transactions", row) for row in rows]


def _is_timeout(exc: SQLAlchemyError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return "timeout" in message or "locked" in message or "canceling statement" in message


class SqlPersistence(Persistence):
    def __init__(self, database_url: str, timeout: float | None = None, auto_migrate: bool | None = None) -> None:
        self.timeout = settings.store_timeout_seconds if timeout is None else timeout
        if database_url.startswith("sqlite"):
            self.engine: Engine = create_engine(
                database_url,
                future=True,
                connect_args={"check_same_thread": False, "timeout": self.timeout},
            )
        else:
            self.engine = create_engine(database_url, future=True, pool_pre_ping=True, pool_timeout=self.timeout)
        self.dialect = self.engine.dialect.name
        if settings.auto_migrate if auto_migrate is None else auto_migrate:
            try:
                apply_migrations(self.engine)
            except SQLAlchemyError as exc:
                raise StorageUnavailable(f"migration failed: {exc.__class__.__name__}") from exc

    @contextmanager
    def unit_of_work(self, timeout: float | None = None) -> Iterator[SqlUnitOfWork]:
        wait = self.timeout if timeout is None else timeout
        try:
            with self.engine.begin() as conn:
                if self.dialect == "postgresql":
                    conn.execute(text(f"set local statement_timeout = {int(wait * 1000)}"))
                yield SqlUnitOfWork(conn, self.dialect)
        except LedgerError:
            raise
        except PoolTimeoutError as exc:
            raise Timeout(f"no database connection within {wait}s") from exc
        except IntegrityError as exc:
            raise Conflict(f"storage constraint violated: {exc.__class__.__name__}") from exc
        except OperationalError as exc:
            if _is_timeout(exc):
                raise Timeout(f"database busy for more than {wait}s") from exc
            raise StorageUnavailable(f"database error: {exc.__class__.__name__}") from exc
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"database error: {exc.__class__.__name__}") from exc

    def close(self) -> None:
        self.engine.dispose()


def get_persistence() -> Persistence:
    if settings.storage_backend in {"sql", "postgres"}:
        return SqlPersistence(settings.database_url)
    return InMemoryPersistence()
