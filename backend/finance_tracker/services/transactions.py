from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from ..errors import NotFound, ValidationError
from ..persistence import Persistence, UnitOfWork
from ..schemas import (
    TransactionCreate,
    TransactionFilter,
    TransactionSource,
    TransactionType,
    TransactionUpdate,
)
from .balance import apply_effect, reverse_effect

_UPDATE_FIELDS = {
    "transactionType": "transaction_type",
    "amount": "amount",
    "occurredOn": "occurred_on",
    "accountId": "account_id",
    "toAccountId": "to_account_id",
    "categoryId": "category_id",
    "description": "description",
    "tags": "tags",
    "metadata": "metadata",
}
_CLEARABLE_FIELDS = {"toAccountId", "categoryId", "description", "tags", "metadata"}


def reject_cleared(updates: dict[str, Any], clearable: set[str]) -> None:
    """Explicit ``None`` is only allowed on optional fields."""
    for field, value in updates.items():
        if value is None and field not in clearable:
            raise ValidationError(f"{field} cannot be cleared")


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def visible_category(uow: UnitOfWork, owner_id: UUID, category_id: UUID) -> dict[str, Any] | None:
    rows = uow.find("categories", id=category_id)
    if not rows:
        return None
    category = rows[0]
    if category["is_system"] or category["owner_id"] == owner_id:
        return category
    return None


def check_shape(uow: UnitOfWork, owner_id: UUID, row: dict[str, Any]) -> None:
    """Cross-field rules every stored transaction (or template) must satisfy."""
    kind = TransactionType(row["transaction_type"])
    if int(row["amount"]) <= 0:
        raise ValidationError("amount must be a positive number of minor units")
    if kind is TransactionType.transfer:
        if row.get("to_account_id") is None:
            raise ValidationError("transfer requires toAccountId")
        if row["to_account_id"] == row["account_id"]:
            raise ValidationError("transfer source and destination must differ")
        if row.get("category_id") is not None:
            raise ValidationError("transfer cannot have a category")
        return
    if row.get("to_account_id") is not None:
        raise ValidationError(f"{kind.value} cannot have toAccountId")
    if row.get("category_id") is not None:
        category = visible_category(uow, owner_id, row["category_id"])
        if category is None:
            raise NotFound(f"category not found: {row['category_id']}")
        if category["category_type"] != kind.value:
            raise ValidationError(f"category {category['name']} is not an {kind.value} category")


class TransactionService:
    """The only writer of transaction rows and, through them, of balances."""

    def __init__(self, persistence: Persistence, timeout: float | None = None) -> None:
        self.persistence = persistence
        self.timeout = timeout

    def _timeout(self, timeout: float | None) -> float | None:
        return self.timeout if timeout is None else timeout

    def record(
        self,
        uow: UnitOfWork,
        owner_id: UUID,
        payload: TransactionCreate,
        source: TransactionSource = TransactionSource.user,
        recurring_id: UUID | None = None,
    ) -> dict[str, Any]:
        """Insert and apply one transaction inside an already open unit of work."""
        now = datetime.now(timezone.utc)
        row = {
            "id": uuid4(),
            "owner_id": owner_id,
            "transaction_type": payload.transactionType.value,
            "amount": payload.amount,
            "description": payload.description,
            "occurred_on": payload.occurredOn,
            "account_id": payload.accountId,
            "to_account_id": payload.toAccountId,
            "category_id": payload.categoryId,
            "tags": list(payload.tags),
            "metadata": dict(payload.metadata),
            "source": source.value,
            "recurring_id": recurring_id,
            "created_at": now,
            "updated_at": now,
        }
        check_shape(uow, owner_id, row)
        stored = uow.insert("transactions", row)
        apply_effect(uow, stored)
        return stored

    def create(self, owner_id: UUID, payload: TransactionCreate, timeout: float | None = None) -> dict[str, Any]:
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            return self.record(uow, owner_id, payload)

    def update(self, owner_id: UUID, transaction_id: UUID, payload: TransactionUpdate, timeout: float | None = None) -> dict[str, Any]:
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            original = uow.get("transactions", owner_id, transaction_id, for_update=True)
            if original is None:
                raise NotFound(f"transaction not found: {transaction_id}")
            updates = payload.model_dump(exclude_unset=True)
            reject_cleared(updates, _CLEARABLE_FIELDS)
            reverse_effect(uow, original)

            merged = dict(original)
            for field, column in _UPDATE_FIELDS.items():
                if field in updates:
                    merged[column] = _enum_value(updates[field])
            kind = TransactionType(merged["transaction_type"])
            if kind is not TransactionType.transfer and "toAccountId" not in updates:
                merged["to_account_id"] = None
            if kind is TransactionType.transfer and "categoryId" not in updates:
                merged["category_id"] = None
            if merged["tags"] is None:
                merged["tags"] = []
            if merged["metadata"] is None:
                merged["metadata"] = {}
            if merged["description"] is None:
                merged["description"] = ""
            check_shape(uow, owner_id, merged)

            apply_effect(uow, merged)
            changes = {column: merged[column] for column in _UPDATE_FIELDS.values()}
            changes["updated_at"] = datetime.now(timezone.utc)
            return uow.update("transactions", owner_id, transaction_id, changes)

    def delete(self, owner_id: UUID, transaction_id: UUID, timeout: float | None = None) -> None:
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            original = uow.get("transactions", owner_id, transaction_id, for_update=True)
            if original is None:
                raise NotFound(f"transaction not found: {transaction_id}")
            reverse_effect(uow, original)
            uow.delete("transactions", owner_id, transaction_id)

    def get(self, owner_id: UUID, transaction_id: UUID, timeout: float | None = None) -> dict[str, Any]:
        row = self.persistence.get("transactions", owner_id, transaction_id, timeout=self._timeout(timeout))
        if row is None:
            raise NotFound(f"transaction not found: {transaction_id}")
        return row

    def list(self, owner_id: UUID, filters: TransactionFilter | None = None, timeout: float | None = None) -> list[dict[str, Any]]:
        filters = filters or TransactionFilter()
        equals: dict[str, Any] = {"owner_id": owner_id}
        if filters.transactionType is not None:
            equals["transaction_type"] = filters.transactionType.value
        if filters.categoryId is not None:
            equals["category_id"] = filters.categoryId
        if filters.source is not None:
            equals["source"] = filters.source.value
        rows = self.persistence.find("transactions", timeout=self._timeout(timeout), **equals)
        if filters.accountId is not None:
            rows = [r for r in rows if filters.accountId in (r["account_id"], r["to_account_id"])]
        if filters.startDate is not None:
            rows = [r for r in rows if r["occurred_on"] >= filters.startDate]
        if filters.endDate is not None:
            rows = [r for r in rows if r["occurred_on"] <= filters.endDate]
        return sorted(rows, key=lambda r: (r["occurred_on"], r["created_at"]), reverse=True)
