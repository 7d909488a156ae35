from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from ..errors import Conflict, NotFound, ValidationError
from ..persistence import Persistence, UnitOfWork
from ..schemas import CategoryCreate, CategoryType, CategoryUpdate

logger = logging.getLogger(__name__)

SYSTEM_CATEGORIES: tuple[tuple[str, CategoryType], ...] = (
    ("Food & Dining", CategoryType.expense),
    ("Transportation", CategoryType.expense),
    ("Shopping", CategoryType.expense),
    ("Entertainment", CategoryType.expense),
    ("Bills & Utilities", CategoryType.expense),
    ("Healthcare", CategoryType.expense),
    ("Education", CategoryType.expense),
    ("Personal Care", CategoryType.expense),
    ("Travel", CategoryType.expense),
    ("Other Expenses", CategoryType.expense),
    ("Salary", CategoryType.income),
    ("Business", CategoryType.income),
    ("Investments", CategoryType.income),
    ("Gifts", CategoryType.income),
    ("Other Income", CategoryType.income),
)


class CategoryService:
    def __init__(self, persistence: Persistence, timeout: float | None = None) -> None:
        self.persistence = persistence
        self.timeout = timeout

    def _timeout(self, timeout: float | None) -> float | None:
        return self.timeout if timeout is None else timeout

    def initialize_system_categories(self, timeout: float | None = None) -> int:
        """Seed the shared categories; safe to call on every start."""
        created = 0
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            existing = {(r["name"], r["category_type"]) for r in uow.find("categories", is_system=True)}
            now = datetime.now(timezone.utc)
            for name, category_type in SYSTEM_CATEGORIES:
                if (name, category_type.value) in existing:
                    continue
                uow.insert(
                    "categories",
                    {
                        "id": uuid4(),
                        "owner_id": None,
                        "name": name,
                        "category_type": category_type.value,
                        "is_system": True,
                        "created_at": now,
                        "updated_at": now,
                    },
                )
                created += 1
        if created:
            logger.info("Seeded %d system categories", created)
        return created

    def _visible(self, uow: UnitOfWork, owner_id: UUID, category_type: str | None = None) -> list[dict[str, Any]]:
        system = uow.find("categories", is_system=True)
        own = uow.find("categories", owner_id=owner_id, is_system=False)
        rows = system + own
        if category_type is not None:
            rows = [r for r in rows if r["category_type"] == category_type]
        return rows

    def _check_unique(self, uow: UnitOfWork, owner_id: UUID, name: str, category_type: str, exclude: UUID | None = None) -> None:
        wanted = name.strip().casefold()
        for row in self._visible(uow, owner_id, category_type):
            if row["id"] != exclude and row["name"].casefold() == wanted:
                raise Conflict(f"category already exists: {row['name']}")

    def list(self, owner_id: UUID, category_type: CategoryType | None = None, timeout: float | None = None) -> list[dict[str, Any]]:
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            rows = self._visible(uow, owner_id, category_type.value if category_type else None)
        return sorted(rows, key=lambda r: (not r["is_system"], r["name"].lower()))

    def get(self, owner_id: UUID, category_id: UUID, timeout: float | None = None) -> dict[str, Any]:
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            for row in uow.find("categories", id=category_id):
                if row["is_system"] or row["owner_id"] == owner_id:
                    return row
        raise NotFound(f"category not found: {category_id}")

    def create(self, owner_id: UUID, payload: CategoryCreate, timeout: float | None = None) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            self._check_unique(uow, owner_id, payload.name, payload.categoryType.value)
            return uow.insert(
                "categories",
                {
                    "id": uuid4(),
                    "owner_id": owner_id,
                    "name": payload.name.strip(),
                    "category_type": payload.categoryType.value,
                    "is_system": False,
                    "created_at": now,
                    "updated_at": now,
                },
            )

    def _owned(self, uow: UnitOfWork, owner_id: UUID, category_id: UUID) -> dict[str, Any]:
        for row in uow.find("categories", id=category_id):
            if row["is_system"]:
                raise ValidationError("system categories cannot be changed")
            if row["owner_id"] == owner_id:
                return row
        raise NotFound(f"category not found: {category_id}")

    def update(self, owner_id: UUID, category_id: UUID, payload: CategoryUpdate, timeout: float | None = None) -> dict[str, Any]:
        updates = payload.model_dump(exclude_unset=True, exclude_none=True)
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            row = self._owned(uow, owner_id, category_id)
            name = updates.get("name", row["name"]).strip()
            category_type = updates["categoryType"].value if "categoryType" in updates else row["category_type"]
            self._check_unique(uow, owner_id, name, category_type, exclude=category_id)
            if category_type != row["category_type"]:
                for table in ("transactions", "recurring_transactions", "budgets"):
                    if uow.find(table, owner_id=owner_id, category_id=category_id):
                        raise ValidationError(f"category type cannot change while {table.replace('_', ' ')} use it")
            return uow.update(
                "categories",
                owner_id,
                category_id,
                {"name": name, "category_type": category_type, "updated_at": datetime.now(timezone.utc)},
            )

    def delete(self, owner_id: UUID, category_id: UUID, timeout: float | None = None) -> int:
        """Remove an owner category; returns how many transactions were detached from it."""
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            self._owned(uow, owner_id, category_id)
            now = datetime.now(timezone.utc)
            transactions = uow.find("transactions", owner_id=owner_id, category_id=category_id)
            for table, rows in (
                ("transactions", transactions),
                ("recurring_transactions", uow.find("recurring_transactions", owner_id=owner_id, category_id=category_id)),
                ("budgets", uow.find("budgets", owner_id=owner_id, category_id=category_id)),
            ):
                for row in rows:
                    uow.update(table, owner_id, row["id"], {"category_id": None, "updated_at": now})
            for goal in uow.find("goals", owner_id=owner_id, linked_category_id=category_id):
                uow.update("goals", owner_id, goal["id"], {"linked_category_id": None, "updated_at": now})
            uow.delete("categories", owner_id, category_id)
            return len(transactions)
