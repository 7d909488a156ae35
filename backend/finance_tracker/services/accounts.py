from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from ..errors import NotFound
from ..persistence import Persistence
from ..schemas import AccountCreate, AccountUpdate


class AccountService:
    def __init__(self, persistence: Persistence, timeout: float | None = None) -> None:
        self.persistence = persistence
        self.timeout = timeout

    def _timeout(self, timeout: float | None) -> float | None:
        return self.timeout if timeout is None else timeout

    def create(self, owner_id: UUID, payload: AccountCreate, timeout: float | None = None) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        row = {
            "id": uuid4(),
            "owner_id": owner_id,
            "name": payload.name.strip(),
            "account_type": payload.accountType.value,
            "currency": payload.currency,
            "opening_balance": payload.openingBalance,
            "balance": payload.openingBalance,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            return uow.insert("accounts", row)

    def get(self, owner_id: UUID, account_id: UUID, timeout: float | None = None) -> dict[str, Any]:
        row = self.persistence.get("accounts", owner_id, account_id, timeout=self._timeout(timeout))
        if row is None:
            raise NotFound(f"account not found: {account_id}")
        return row

    def list(self, owner_id: UUID, include_inactive: bool = False, timeout: float | None = None) -> list[dict[str, Any]]:
        equals: dict[str, Any] = {"owner_id": owner_id}
        if not include_inactive:
            equals["is_active"] = True
        rows = self.persistence.find("accounts", timeout=self._timeout(timeout), **equals)
        return sorted(rows, key=lambda r: (r["name"].lower(), r["created_at"]))

    def update(self, owner_id: UUID, account_id: UUID, payload: AccountUpdate, timeout: float | None = None) -> dict[str, Any]:
        # Balance is only ever moved by transactions.
        updates = payload.model_dump(exclude_unset=True, exclude_none=True)
        changes: dict[str, Any] = {}
        if "name" in updates:
            changes["name"] = updates["name"].strip()
        if "accountType" in updates:
            changes["account_type"] = updates["accountType"].value
        if "currency" in updates:
            changes["currency"] = updates["currency"]
        if "isActive" in updates:
            changes["is_active"] = updates["isActive"]
        changes["updated_at"] = datetime.now(timezone.utc)
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            row = uow.update("accounts", owner_id, account_id, changes)
            if row is None:
                raise NotFound(f"account not found: {account_id}")
            return row

    def delete(self, owner_id: UUID, account_id: UUID, timeout: float | None = None) -> dict[str, Any] | None:
        """Hard delete an unreferenced account, otherwise deactivate it.

        Returns the deactivated row, or ``None`` when the row was removed.
        """
        with self.persistence.unit_of_work(self._timeout(timeout)) as uow:
            row = uow.get("accounts", owner_id, account_id, for_update=True)
            if row is None:
                raise NotFound(f"account not found: {account_id}")
            referenced = (
                uow.find("transactions", owner_id=owner_id, account_id=account_id)
                or uow.find("transactions", owner_id=owner_id, to_account_id=account_id)
                or uow.find("recurring_transactions", owner_id=owner_id, account_id=account_id)
                or uow.find("recurring_transactions", owner_id=owner_id, to_account_id=account_id)
            )
            if not referenced:
                uow.delete("accounts", owner_id, account_id)
                return None
            return uow.update(
                "accounts",
                owner_id,
                account_id,
                {"is_active": False, "updated_at": datetime.now(timezone.utc)},
            )
