from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from ..errors import NotFound, ValidationError
from ..persistence import Persistence, UnitOfWork
from ..schemas import BudgetCreate, BudgetStatusResponse, BudgetUpdate, CategoryType, Frequency, TransactionType
from .recurrence import period_window
from .transactions import visible_category

_UPDATE_FIELDS = {
    "name": "name",
    "categoryId": "category_id",
    "amount": "amount",
    "period": "period",
    "startDate": "start_date",
    "endDate": "end_date",
    "alertThreshold": "alert_threshold",
    "isActive": "is_active",
}


def budget_window(budget: dict[str, Any], today: date) -> tuple[date, date]:
    if budget["end_date"] is not None:
        return budget["start_date"], budget["end_date"]
    return period_window(Frequency(budget["period"]), budget["start_date"], today)


def spent_in_window(uow: UnitOfWork, budget: dict[str, Any], start: date, end: date) -> int:
    equals: dict[str, Any] = {"owner_id": budget["owner_id"], "transaction_type": TransactionType.expense.value}
    if budget["category_id"] is not None:
        equals["category_id"] = budget["category_id"]
    return sum(r["amount"] for r in uow.find("transactions", **equals) if start <= r["occurred_on"] <= end)


def _status(uow: UnitOfWork, budget: dict[str, Any], today: date) -> BudgetStatusResponse:
    start, end = budget_window(budget, today)
    spent = spent_in_window(uow, budget, start, end)
    percentage = spent / budget["amount"] * 100
    return BudgetStatusResponse(
        budgetId=budget["id"],
        name=budget["name"],
        windowStart=start,
        windowEnd=end,
        limit=budget["amount"],
        spent=spent,
        remaining=budget["amount"] - spent,
        percentage=round(percentage, 2),
        isOverBudget=spent > budget["amount"],
        shouldAlert=percentage >= budget["alert_threshold"] * 100,
    )


def _check_category(uow: UnitOfWork, owner_id: UUID, category_id: UUID | None) -> None:
    if category_id is None:
        return
    category = visible_category(uow, owner_id, category_id)
    if category is None:
        raise NotFound(f"category not found: {category_id}")
    if category["category_type"] != CategoryType.expense.value:
        raise ValidationError("budgets can only track expense categories")


class BudgetService:
    """Spending limits; spend is always derived from stored expense transactions."""

    def __init__(self, persistence: Persistence, timeout: float | None = None) -> None:
        self.persistence = persistence
        self.timeout = timeout

    def _timeout(self, timeout: float | None) -> float | None:
        return self.timeout if timeout is None else timeout

    def create(self, owner_id: UUID, payload: BudgetCreate, timeout: float | None = None) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        row = {
            "id": uuid4(),
            "owner_id": owner_id,
            "name": payload.name.strip(),
            "category_id": payload.categoryId,
            "amount": payload.amount,
            "period": payload.period.value,
            "start_date": payload.startDate,
            "end_date": payload.endDate,
            "alert_threshold": payload.alertThreshold,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            _check_category(uow, owner_id, payload.categoryId)
            return uow.insert("budgets", row)

    def get(self, owner_id: UUID, budget_id: UUID, timeout: float | None = None) -> dict[str, Any]:
        row = self.persistence.get("budgets", owner_id, budget_id, timeout=self._timeout(timeout))
        if row is None:
            raise NotFound(f"budget not found: {budget_id}")
        return row

    def list(self, owner_id: UUID, active_only: bool = True, timeout: float | None = None) -> list[dict[str, Any]]:
        equals: dict[str, Any] = {"owner_id": owner_id}
        if active_only:
            equals["is_active"] = True
        rows = self.persistence.find("budgets", timeout=self._timeout(timeout), **equals)
        return sorted(rows, key=lambda r: r["created_at"], reverse=True)

    def update(self, owner_id: UUID, budget_id: UUID, payload: BudgetUpdate, timeout: float | None = None) -> dict[str, Any]:
        updates = payload.model_dump(exclude_unset=True)
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            row = uow.get("budgets", owner_id, budget_id, for_update=True)
            if row is None:
                raise NotFound(f"budget not found: {budget_id}")
            changes: dict[str, Any] = {}
            for field, column in _UPDATE_FIELDS.items():
                if field in updates:
                    value = updates[field]
                    changes[column] = value.value if hasattr(value, "value") else value
            for required in ("name", "amount", "period", "start_date", "alert_threshold", "is_active"):
                if required in changes and changes[required] is None:
                    raise ValidationError(f"{required} cannot be cleared")
            merged = {**row, **changes}
            if merged["end_date"] is not None and merged["end_date"] < merged["start_date"]:
                raise ValidationError("endDate must be on or after startDate")
            if "category_id" in changes:
                _check_category(uow, owner_id, changes["category_id"])
            changes["updated_at"] = datetime.now(timezone.utc)
            return uow.update("budgets", owner_id, budget_id, changes)

    def delete(self, owner_id: UUID, budget_id: UUID, timeout: float | None = None) -> None:
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            if not uow.delete("budgets", owner_id, budget_id):
                raise NotFound(f"budget not found: {budget_id}")

    def status(self, owner_id: UUID, budget_id: UUID, today: date, timeout: float | None = None) -> BudgetStatusResponse:
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            budget = uow.get("budgets", owner_id, budget_id)
            if budget is None:
                raise NotFound(f"budget not found: {budget_id}")
            return _status(uow, budget, today)

    def statuses(self, owner_id: UUID, today: date, timeout: float | None = None) -> list[BudgetStatusResponse]:
        """Status of every active budget whose window covers ``today``."""
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            result = []
            for budget in uow.find("budgets", owner_id=owner_id, is_active=True):
                if today < budget["start_date"]:
                    continue
                if budget["end_date"] is not None and today > budget["end_date"]:
                    continue
                result.append(_status(uow, budget, today))
        return sorted(result, key=lambda s: s.percentage, reverse=True)

    def alerts(self, owner_id: UUID, today: date, timeout: float | None = None) -> list[BudgetStatusResponse]:
        return [s for s in self.statuses(owner_id, today, timeout) if s.shouldAlert]
