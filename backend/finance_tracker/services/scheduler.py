from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from ..errors import AccountNotFound, InactiveAccount, LedgerError, NotFound, PartialBatchFailure, ValidationError
from ..persistence import Persistence, UnitOfWork
from ..schemas import (
    Frequency,
    RecurringProcessResponse,
    RecurringStatus,
    RecurringTransactionCreate,
    RecurringTransactionUpdate,
    TransactionCreate,
    TransactionSource,
    TransactionType,
)
from .recurrence import next_occurrence
from .transactions import TransactionService, check_shape, reject_cleared

logger = logging.getLogger(__name__)

RECURRING_TAG = "recurring"

_TEMPLATE_FIELDS = {
    "transactionType": "transaction_type",
    "amount": "amount",
    "description": "description",
    "accountId": "account_id",
    "toAccountId": "to_account_id",
    "categoryId": "category_id",
}
_SCHEDULE_FIELDS = {
    "frequency": "frequency",
    "interval": "interval_count",
    "startDate": "start_date",
    "endDate": "end_date",
}
_CLEARABLE_FIELDS = {"toAccountId", "categoryId", "description", "endDate"}

# Failures that a retry on the next run cannot heal; the schedule is paused instead.
_REFERENTIAL_ERRORS = (AccountNotFound, InactiveAccount)


@dataclass
class ProcessDueResult:
    processed: int = 0
    failed: int = 0
    created: int = 0
    exhausted: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def as_response(self) -> RecurringProcessResponse:
        return RecurringProcessResponse(
            processed=self.processed,
            failed=self.failed,
            created=self.created,
            exhausted=self.exhausted,
            errors=self.errors,
        )


def _today(now: date | datetime | None) -> date:
    if now is None:
        return datetime.now(timezone.utc).date()
    if isinstance(now, datetime):
        return now.date()
    return now


def _resolve_next_due(row: dict[str, Any]) -> date:
    if row["last_processed_date"] is None:
        return row["start_date"]
    return next_occurrence(Frequency(row["frequency"]), row["interval_count"], row["start_date"], row["last_processed_date"])


def _past_end(row: dict[str, Any], due: date) -> bool:
    return row["end_date"] is not None and due > row["end_date"]


def _check_accounts_owned(uow: UnitOfWork, owner_id: UUID, row: dict[str, Any]) -> None:
    for account_id in (row["account_id"], row.get("to_account_id")):
        if account_id is not None and uow.get("accounts", owner_id, account_id) is None:
            raise AccountNotFound(f"account not found: {account_id}")


class RecurringScheduler:
    """Recurring definitions and the job that materializes their occurrences.

    A definition is ``active``, ``paused`` or ``exhausted``. ``next_due_date``
    is the first occurrence not yet materialized and is persisted in the same
    unit of work as the transaction created for the previous occurrence, so
    a crash between occurrences neither loses nor duplicates one.
    """

    def __init__(self, persistence: Persistence, transactions: TransactionService | None = None, timeout: float | None = None) -> None:
        self.persistence = persistence
        self.transactions = transactions or TransactionService(persistence, timeout)
        self.timeout = timeout

    def _timeout(self, timeout: float | None) -> float | None:
        return self.timeout if timeout is None else timeout

    def _load(self, uow: UnitOfWork, owner_id: UUID, recurring_id: UUID) -> dict[str, Any]:
        row = uow.get("recurring_transactions", owner_id, recurring_id, for_update=True)
        if row is None:
            raise NotFound(f"recurring transaction not found: {recurring_id}")
        return row

    def create(self, owner_id: UUID, payload: RecurringTransactionCreate, timeout: float | None = None) -> dict[str, Any]:
        if payload.endDate is not None and payload.endDate < payload.startDate:
            raise ValidationError("endDate must be on or after startDate")
        now = datetime.now(timezone.utc)
        row = {
            "id": uuid4(),
            "owner_id": owner_id,
            "transaction_type": payload.transactionType.value,
            "amount": payload.amount,
            "description": payload.description,
            "account_id": payload.accountId,
            "to_account_id": payload.toAccountId,
            "category_id": payload.categoryId,
            "frequency": payload.frequency.value,
            "interval_count": payload.interval,
            "start_date": payload.startDate,
            "end_date": payload.endDate,
            "status": RecurringStatus.active.value,
            "last_processed_date": None,
            "next_due_date": payload.startDate,
            "created_at": now,
            "updated_at": now,
        }
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            check_shape(uow, owner_id, row)
            _check_accounts_owned(uow, owner_id, row)
            return uow.insert("recurring_transactions", row)

    def get(self, owner_id: UUID, recurring_id: UUID, timeout: float | None = None) -> dict[str, Any]:
        row = self.persistence.get("recurring_transactions", owner_id, recurring_id, timeout=self._timeout(timeout))
        if row is None:
            raise NotFound(f"recurring transaction not found: {recurring_id}")
        return row

    def list(self, owner_id: UUID, status: RecurringStatus | None = None, timeout: float | None = None) -> list[dict[str, Any]]:
        equals: dict[str, Any] = {"owner_id": owner_id}
        if status is not None:
            equals["status"] = status.value
        rows = self.persistence.find("recurring_transactions", timeout=self._timeout(timeout), **equals)
        return sorted(rows, key=lambda r: (r["next_due_date"] or date.max, r["created_at"]))

    def update(self, owner_id: UUID, recurring_id: UUID, payload: RecurringTransactionUpdate, timeout: float | None = None) -> dict[str, Any]:
        updates = payload.model_dump(exclude_unset=True)
        reject_cleared(updates, _CLEARABLE_FIELDS)
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            row = self._load(uow, owner_id, recurring_id)
            merged = dict(row)
            for fieldname, column in {**_TEMPLATE_FIELDS, **_SCHEDULE_FIELDS}.items():
                if fieldname in updates:
                    value = updates[fieldname]
                    merged[column] = value.value if hasattr(value, "value") else value
            if merged["transaction_type"] != TransactionType.transfer.value and "toAccountId" not in updates:
                merged["to_account_id"] = None
            if merged["description"] is None:
                merged["description"] = ""
            if merged["end_date"] is not None and merged["end_date"] < merged["start_date"]:
                raise ValidationError("endDate must be on or after startDate")
            check_shape(uow, owner_id, merged)
            _check_accounts_owned(uow, owner_id, merged)

            if any(f in updates for f in ("frequency", "interval", "startDate")):
                merged["next_due_date"] = _resolve_next_due(merged)
            if merged["status"] != RecurringStatus.paused.value:
                if _past_end(merged, merged["next_due_date"]):
                    merged["status"] = RecurringStatus.exhausted.value
                elif merged["status"] == RecurringStatus.exhausted.value:
                    merged["status"] = RecurringStatus.active.value

            changes = {k: v for k, v in merged.items() if k not in ("id", "owner_id", "created_at", "last_processed_date")}
            changes["updated_at"] = datetime.now(timezone.utc)
            return uow.update("recurring_transactions", owner_id, recurring_id, changes)

    def pause(self, owner_id: UUID, recurring_id: UUID, timeout: float | None = None) -> dict[str, Any]:
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            row = self._load(uow, owner_id, recurring_id)
            if row["status"] == RecurringStatus.exhausted.value:
                raise ValidationError("an exhausted recurring transaction cannot be paused")
            if row["status"] == RecurringStatus.paused.value:
                return row
            return uow.update(
                "recurring_transactions",
                owner_id,
                recurring_id,
                {"status": RecurringStatus.paused.value, "updated_at": datetime.now(timezone.utc)},
            )

    def resume(self, owner_id: UUID, recurring_id: UUID, now: date | datetime | None = None, timeout: float | None = None) -> dict[str, Any]:
        """Reactivate a paused schedule without backfilling the paused window.

        The next occurrence becomes the first one strictly after ``now``
        unless the stored one is still in the future.
        """
        today = _today(now)
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            row = self._load(uow, owner_id, recurring_id)
            if row["status"] == RecurringStatus.exhausted.value:
                raise ValidationError("an exhausted recurring transaction cannot be resumed")
            if row["status"] == RecurringStatus.active.value:
                return row
            next_due = row["next_due_date"]
            if next_due is None or next_due <= today:
                next_due = next_occurrence(Frequency(row["frequency"]), row["interval_count"], row["start_date"], today)
            status = RecurringStatus.exhausted if _past_end(row, next_due) else RecurringStatus.active
            return uow.update(
                "recurring_transactions",
                owner_id,
                recurring_id,
                {"status": status.value, "next_due_date": next_due, "updated_at": datetime.now(timezone.utc)},
            )

    def delete(self, owner_id: UUID, recurring_id: UUID, timeout: float | None = None) -> None:
        # Transactions already materialized keep their recurring_id and stay.
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            if not uow.delete("recurring_transactions", owner_id, recurring_id):
                raise NotFound(f"recurring transaction not found: {recurring_id}")

    def _materialize_next(self, owner_id: UUID, recurring_id: UUID, today: date, timeout: float | None) -> tuple[bool, bool]:
        """Materialize at most one due occurrence. Returns ``(created, exhausted)``."""
        with self.persistence.unit_of_work(timeout) as uow:
            row = uow.get("recurring_transactions", owner_id, recurring_id, for_update=True)
            if row is None or row["status"] != RecurringStatus.active.value:
                return False, False
            due = row["next_due_date"] or _resolve_next_due(row)
            if _past_end(row, due):
                uow.update(
                    "recurring_transactions",
                    owner_id,
                    recurring_id,
                    {"status": RecurringStatus.exhausted.value, "next_due_date": due, "updated_at": datetime.now(timezone.utc)},
                )
                return False, True
            if due > today:
                return False, False

            payload = TransactionCreate(
                transactionType=TransactionType(row["transaction_type"]),
                amount=row["amount"],
                occurredOn=due,
                accountId=row["account_id"],
                toAccountId=row["to_account_id"],
                categoryId=row["category_id"],
                description=row["description"],
                tags=[RECURRING_TAG],
                metadata={
                    "notes": f"Auto-generated from recurring transaction: {row['description']}",
                    "recurringTransactionId": str(recurring_id),
                },
            )
            self.transactions.record(uow, owner_id, payload, source=TransactionSource.recurring, recurring_id=recurring_id)

            following = next_occurrence(Frequency(row["frequency"]), row["interval_count"], row["start_date"], due)
            exhausted = _past_end(row, following)
            changes: dict[str, Any] = {
                "last_processed_date": due,
                "next_due_date": following,
                "updated_at": datetime.now(timezone.utc),
            }
            if exhausted:
                changes["status"] = RecurringStatus.exhausted.value
            uow.update("recurring_transactions", owner_id, recurring_id, changes)
            return True, exhausted

    def _auto_pause(self, owner_id: UUID, recurring_id: UUID, timeout: float | None) -> bool:
        try:
            self.pause(owner_id, recurring_id, timeout=timeout)
        except LedgerError:
            logger.exception("Could not pause recurring transaction %s after failure", recurring_id)
            return False
        return True

    def process_due(self, now: date | datetime | None = None, timeout: float | None = None, strict: bool = False) -> ProcessDueResult:
        """Materialize every occurrence due on or before ``now`` for all owners.

        Missed occurrences are caught up one by one with their own dates. A
        failing record is reported in the result and never stops the batch;
        ``strict`` turns a non-empty failure list into ``PartialBatchFailure``.
        """
        today = _today(now)
        wait = self._timeout(timeout)
        result = ProcessDueResult()
        due_rows = self.persistence.due_recurring(today, timeout=wait)
        logger.info("Found %d due recurring transactions to process", len(due_rows))

        for row in due_rows:
            owner_id, recurring_id = row["owner_id"], row["id"]
            try:
                while True:
                    created, exhausted = self._materialize_next(owner_id, recurring_id, today, wait)
                    if created:
                        result.created += 1
                    if exhausted:
                        result.exhausted += 1
                    if not created or exhausted:
                        break
                result.processed += 1
            except Exception as exc:
                result.failed += 1
                auto_paused = isinstance(exc, _REFERENTIAL_ERRORS) and self._auto_pause(owner_id, recurring_id, wait)
                logger.warning("Error processing recurring transaction %s: %s", recurring_id, exc)
                result.errors.append(
                    {
                        "id": recurring_id,
                        "code": getattr(exc, "code", exc.__class__.__name__),
                        "error": str(exc),
                        "autoPaused": auto_paused,
                    }
                )

        logger.info(
            "Recurring transaction processing complete: processed=%d failed=%d created=%d exhausted=%d",
            result.processed,
            result.failed,
            result.created,
            result.exhausted,
        )
        if strict and result.failed:
            raise PartialBatchFailure(result)
        return result
