from __future__ import annotations

import math
from datetime import date, datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from ..errors import NotFound, ValidationError
from ..persistence import Persistence, UnitOfWork
from ..schemas import GoalContribution, GoalCreate, GoalProgressResponse, GoalStatus, GoalUpdate
from .recurrence import add_months

_UPDATE_FIELDS = {
    "name": "name",
    "targetAmount": "target_amount",
    "deadline": "deadline",
    "linkedAccountId": "linked_account_id",
    "linkedCategoryId": "linked_category_id",
    "priority": "priority",
    "status": "status",
}
_PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}
_DAYS_PER_MONTH = 30


def _check_links(uow: UnitOfWork, owner_id: UUID, account_id: UUID | None, category_id: UUID | None) -> None:
    if account_id is not None and uow.get("accounts", owner_id, account_id) is None:
        raise NotFound(f"account not found: {account_id}")
    if category_id is not None:
        rows = uow.find("categories", id=category_id)
        if not rows or not (rows[0]["is_system"] or rows[0]["owner_id"] == owner_id):
            raise NotFound(f"category not found: {category_id}")


def _milestone_time(milestone: dict[str, Any]) -> datetime:
    return datetime.fromisoformat(milestone["date"])


class GoalService:
    def __init__(self, persistence: Persistence, timeout: float | None = None) -> None:
        self.persistence = persistence
        self.timeout = timeout

    def _timeout(self, timeout: float | None) -> float | None:
        return self.timeout if timeout is None else timeout

    def _load(self, uow: UnitOfWork, owner_id: UUID, goal_id: UUID) -> dict[str, Any]:
        row = uow.get("goals", owner_id, goal_id, for_update=True)
        if row is None:
            raise NotFound(f"goal not found: {goal_id}")
        return row

    def create(self, owner_id: UUID, payload: GoalCreate, timeout: float | None = None) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        completed = payload.currentAmount >= payload.targetAmount
        row = {
            "id": uuid4(),
            "owner_id": owner_id,
            "name": payload.name.strip(),
            "goal_type": payload.goalType.value,
            "target_amount": payload.targetAmount,
            "current_amount": payload.currentAmount,
            "deadline": payload.deadline,
            "linked_account_id": payload.linkedAccountId,
            "linked_category_id": payload.linkedCategoryId,
            "priority": payload.priority.value,
            "status": GoalStatus.completed.value if completed else GoalStatus.active.value,
            "milestones": [],
            "created_at": now,
            "updated_at": now,
        }
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            _check_links(uow, owner_id, payload.linkedAccountId, payload.linkedCategoryId)
            return uow.insert("goals", row)

    def get(self, owner_id: UUID, goal_id: UUID, timeout: float | None = None) -> dict[str, Any]:
        row = self.persistence.get("goals", owner_id, goal_id, timeout=self._timeout(timeout))
        if row is None:
            raise NotFound(f"goal not found: {goal_id}")
        return row

    def list(self, owner_id: UUID, status: GoalStatus | None = None, timeout: float | None = None) -> list[dict[str, Any]]:
        equals: dict[str, Any] = {"owner_id": owner_id}
        if status is not None:
            equals["status"] = status.value
        rows = self.persistence.find("goals", timeout=self._timeout(timeout), **equals)
        return sorted(rows, key=lambda r: (_PRIORITY_ORDER.get(r["priority"], 1), r["deadline"] or date.max, r["name"]))

    def update(self, owner_id: UUID, goal_id: UUID, payload: GoalUpdate, timeout: float | None = None) -> dict[str, Any]:
        updates = payload.model_dump(exclude_unset=True)
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            row = self._load(uow, owner_id, goal_id)
            changes: dict[str, Any] = {}
            for field, column in _UPDATE_FIELDS.items():
                if field in updates:
                    value = updates[field]
                    changes[column] = value.value if hasattr(value, "value") else value
            for required in ("name", "target_amount", "priority", "status"):
                if required in changes and changes[required] is None:
                    raise ValidationError(f"{required} cannot be cleared")
            if changes.get("target_amount") is not None and changes["target_amount"] < row["current_amount"]:
                raise ValidationError("targetAmount cannot be below the amount already saved")
            _check_links(uow, owner_id, changes.get("linked_account_id"), changes.get("linked_category_id"))
            changes["updated_at"] = datetime.now(timezone.utc)
            return uow.update("goals", owner_id, goal_id, changes)

    def delete(self, owner_id: UUID, goal_id: UUID, timeout: float | None = None) -> None:
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            if not uow.delete("goals", owner_id, goal_id):
                raise NotFound(f"goal not found: {goal_id}")

    def contribute(
        self,
        owner_id: UUID,
        goal_id: UUID,
        payload: GoalContribution,
        now: datetime | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Add to the saved amount and record a milestone; reaching the target completes the goal."""
        now = now or datetime.now(timezone.utc)
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            row = self._load(uow, owner_id, goal_id)
            if row["status"] == GoalStatus.completed.value:
                raise ValidationError("goal is already completed")
            if row["current_amount"] + payload.amount > row["target_amount"]:
                raise ValidationError(
                    f"contribution exceeds the remaining amount of {row['target_amount'] - row['current_amount']}"
                )
            new_amount = uow.increment("goals", owner_id, goal_id, "current_amount", payload.amount)
            milestones = list(row["milestones"] or [])
            milestones.append(
                {
                    "amount": new_amount,
                    "date": now.isoformat(),
                    "note": payload.note or f"Contributed {payload.amount}",
                }
            )
            changes: dict[str, Any] = {"milestones": milestones, "updated_at": now}
            if new_amount >= row["target_amount"] and row["status"] == GoalStatus.active.value:
                changes["status"] = GoalStatus.completed.value
            return uow.update("goals", owner_id, goal_id, changes)

    def complete(self, owner_id: UUID, goal_id: UUID, timeout: float | None = None) -> dict[str, Any]:
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            row = self._load(uow, owner_id, goal_id)
            return uow.update(
                "goals",
                owner_id,
                goal_id,
                {
                    "status": GoalStatus.completed.value,
                    "current_amount": max(row["current_amount"], row["target_amount"]),
                    "updated_at": datetime.now(timezone.utc),
                },
            )

    def progress(self, owner_id: UUID, goal_id: UUID, today: date | None = None, timeout: float | None = None) -> GoalProgressResponse:
        goal = self.get(owner_id, goal_id, timeout)
        today = today or datetime.now(timezone.utc).date()
        target, current = goal["target_amount"], goal["current_amount"]
        remaining = max(target - current, 0)
        response = GoalProgressResponse(
            goalId=goal["id"],
            progress=min(current / target * 100, 100) if target > 0 else 0,
            remainingAmount=remaining,
        )

        milestones = sorted(goal["milestones"] or [], key=_milestone_time)
        if len(milestones) < 2:
            return response
        first, last = milestones[0], milestones[-1]
        months = (_milestone_time(last) - _milestone_time(first)).total_seconds() / 86400 / _DAYS_PER_MONTH
        if months <= 0:
            return response
        average = (last["amount"] - first["amount"]) / months
        response.averageMonthlyContribution = average
        if average > 0 and remaining > 0:
            response.monthsToCompletion = remaining / average
            response.projectedCompletionDate = add_months(today, math.ceil(response.monthsToCompletion))
        return response
