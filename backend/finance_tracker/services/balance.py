"""Balance effects of transactions.

Every path that creates, changes or removes a transaction goes through
:func:`apply_effect` / :func:`reverse_effect` inside the same unit of work
as the transaction row itself, so balances and rows commit together.
"""
from typing import Any, assert_never
from uuid import UUID

from ..errors import AccountNotFound, InactiveAccount
from ..persistence import UnitOfWork
from ..schemas import TransactionType


def effects(tx: dict[str, Any]) -> list[tuple[UUID, int]]:
    """Signed balance deltas, per account, of one stored transaction."""
    kind = TransactionType(tx["transaction_type"])
    amount = int(tx["amount"])
    if kind is TransactionType.expense:
        return [(tx["account_id"], -amount)]
    if kind is TransactionType.income:
        return [(tx["account_id"], amount)]
    if kind is TransactionType.transfer:
        return [(tx["account_id"], -amount), (tx["to_account_id"], amount)]
    assert_never(kind)


def _check_accounts(uow: UnitOfWork, owner_id: UUID, deltas: list[tuple[UUID, int]], require_active: bool) -> None:
    # Row locks are always taken in id order so opposite transfers cannot deadlock.
    for account_id in sorted({account_id for account_id, _ in deltas}, key=str):
        account = uow.get("accounts", owner_id, account_id, for_update=True)
        if account is None:
            raise AccountNotFound(f"account not found: {account_id}")
        if require_active and not account["is_active"]:
            raise InactiveAccount(f"account is inactive: {account_id}")


def _shift(uow: UnitOfWork, owner_id: UUID, deltas: list[tuple[UUID, int]]) -> None:
    for account_id, delta in deltas:
        if uow.increment("accounts", owner_id, account_id, "balance", delta) is None:
            raise AccountNotFound(f"account not found: {account_id}")


def apply_effect(uow: UnitOfWork, tx: dict[str, Any]) -> None:
    deltas = effects(tx)
    _check_accounts(uow, tx["owner_id"], deltas, require_active=True)
    _shift(uow, tx["owner_id"], deltas)


def reverse_effect(uow: UnitOfWork, tx: dict[str, Any]) -> None:
    # Inactive accounts still accept reversals so old entries stay removable.
    deltas = [(account_id, -delta) for account_id, delta in effects(tx)]
    _check_accounts(uow, tx["owner_id"], deltas, require_active=False)
    _shift(uow, tx["owner_id"], deltas)


def recompute_balance(opening_balance: int, account_id: UUID, transactions: list[dict[str, Any]]) -> int:
    """Balance rebuilt from scratch; used to audit the incrementally kept value."""
    total = opening_balance
    for tx in transactions:
        for affected, delta in effects(tx):
            if affected == account_id:
                total += delta
    return total
