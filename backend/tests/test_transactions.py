import random
import threading
from datetime import date
from uuid import uuid4

import pytest

from conftest import balance, open_account
from finance_tracker.errors import AccountNotFound, InactiveAccount, NotFound, ValidationError
from finance_tracker.persistence import InMemoryPersistence
from finance_tracker.schemas import (
    AccountUpdate,
    CategoryCreate,
    CategoryType,
    TransactionCreate,
    TransactionFilter,
    TransactionSource,
    TransactionType,
    TransactionUpdate,
)
from finance_tracker.services.balance import apply_effect, recompute_balance, reverse_effect


def _expense(account_id, amount, day=date(2025, 3, 1), **extra) -> TransactionCreate:
    return TransactionCreate(transactionType=TransactionType.expense, amount=amount, occurredOn=day, accountId=account_id, **extra)


def test_transfer_moves_money_and_delete_restores(ledger, owner_id) -> None:
    a = open_account(ledger, owner_id, 10000, "A")
    b = open_account(ledger, owner_id, 0, "B")
    tx = ledger.transactions.create(
        owner_id,
        TransactionCreate(
            transactionType=TransactionType.transfer,
            amount=5000,
            occurredOn=date(2025, 3, 1),
            accountId=a,
            toAccountId=b,
        ),
    )
    assert balance(ledger, owner_id, a) == 5000
    assert balance(ledger, owner_id, b) == 5000

    ledger.transactions.delete(owner_id, tx["id"])
    assert balance(ledger, owner_id, a) == 10000
    assert balance(ledger, owner_id, b) == 0


def test_income_and_expense_effects(ledger, owner_id) -> None:
    account = open_account(ledger, owner_id, 1000)
    ledger.transactions.create(
        owner_id,
        TransactionCreate(transactionType=TransactionType.income, amount=2500, occurredOn=date(2025, 3, 1), accountId=account),
    )
    ledger.transactions.create(owner_id, _expense(account, 700))
    assert balance(ledger, owner_id, account) == 2800


def test_update_reverses_stored_values_before_applying_new_ones(ledger, owner_id) -> None:
    a = open_account(ledger, owner_id, 10000, "A")
    b = open_account(ledger, owner_id, 0, "B")
    tx = ledger.transactions.create(owner_id, _expense(a, 3000))

    ledger.transactions.update(owner_id, tx["id"], TransactionUpdate(amount=1000, accountId=b))
    assert balance(ledger, owner_id, a) == 10000
    assert balance(ledger, owner_id, b) == -1000

    moved = ledger.transactions.update(
        owner_id, tx["id"], TransactionUpdate(transactionType=TransactionType.transfer, accountId=a, toAccountId=b)
    )
    assert moved["transaction_type"] == "transfer"
    assert balance(ledger, owner_id, a) == 9000
    assert balance(ledger, owner_id, b) == 1000


def test_reverse_then_apply_is_a_no_op(ledger, owner_id) -> None:
    a = open_account(ledger, owner_id, 10000, "A")
    b = open_account(ledger, owner_id, 500, "B")
    tx = ledger.transactions.create(
        owner_id,
        TransactionCreate(transactionType=TransactionType.transfer, amount=1234, occurredOn=date(2025, 3, 1), accountId=a, toAccountId=b),
    )
    before = (balance(ledger, owner_id, a), balance(ledger, owner_id, b))
    with ledger.persistence.unit_of_work() as uow:
        reverse_effect(uow, tx)
        apply_effect(uow, tx)
    assert (balance(ledger, owner_id, a), balance(ledger, owner_id, b)) == before


def test_random_sequence_matches_recomputed_balances(ledger, owner_id) -> None:
    rng = random.Random(7)
    openings = {open_account(ledger, owner_id, opening, f"acct-{i}"): opening for i, opening in enumerate((10000, 0, 2500))}
    accounts = list(openings)
    live: list = []

    for step in range(40):
        action = rng.choice(["create", "create", "update", "delete"]) if live else "create"
        if action == "create":
            kind = rng.choice(list(TransactionType))
            source = rng.choice(accounts)
            payload = TransactionCreate(
                transactionType=kind,
                amount=rng.randint(1, 5000),
                occurredOn=date(2025, 1, 1 + step % 28),
                accountId=source,
                toAccountId=rng.choice([a for a in accounts if a != source]) if kind is TransactionType.transfer else None,
            )
            live.append(ledger.transactions.create(owner_id, payload)["id"])
        elif action == "update":
            ledger.transactions.update(owner_id, rng.choice(live), TransactionUpdate(amount=rng.randint(1, 5000)))
        else:
            ledger.transactions.delete(owner_id, live.pop(rng.randrange(len(live))))

    stored = ledger.transactions.list(owner_id)
    assert len(stored) == len(live)
    for account_id, opening in openings.items():
        assert balance(ledger, owner_id, account_id) == recompute_balance(opening, account_id, stored)


def test_failed_update_rolls_back_the_reversal(ledger, owner_id) -> None:
    a = open_account(ledger, owner_id, 10000, "A")
    closed = open_account(ledger, owner_id, 0, "Closed")
    tx = ledger.transactions.create(owner_id, _expense(a, 4000))
    ledger.accounts.update(owner_id, closed, AccountUpdate(isActive=False))

    with pytest.raises(InactiveAccount):
        ledger.transactions.update(owner_id, tx["id"], TransactionUpdate(accountId=closed, amount=100))

    assert balance(ledger, owner_id, a) == 6000
    assert balance(ledger, owner_id, closed) == 0
    stored = ledger.transactions.get(owner_id, tx["id"])
    assert stored["account_id"] == a
    assert stored["amount"] == 4000


def test_delete_is_allowed_on_inactive_account(ledger, owner_id) -> None:
    a = open_account(ledger, owner_id, 1000)
    tx = ledger.transactions.create(owner_id, _expense(a, 400))
    ledger.accounts.update(owner_id, a, AccountUpdate(isActive=False))
    ledger.transactions.delete(owner_id, tx["id"])
    assert balance(ledger, owner_id, a) == 1000


def test_shape_rules_are_enforced(ledger, owner_id) -> None:
    a = open_account(ledger, owner_id, 1000, "A")
    b = open_account(ledger, owner_id, 0, "B")
    with pytest.raises(ValidationError):
        ledger.transactions.create(
            owner_id,
            TransactionCreate(transactionType=TransactionType.transfer, amount=10, occurredOn=date(2025, 3, 1), accountId=a, toAccountId=a),
        )
    with pytest.raises(ValidationError):
        ledger.transactions.create(
            owner_id,
            TransactionCreate(transactionType=TransactionType.transfer, amount=10, occurredOn=date(2025, 3, 1), accountId=a),
        )
    with pytest.raises(ValidationError):
        ledger.transactions.create(owner_id, _expense(a, 10, toAccountId=b))
    assert balance(ledger, owner_id, a) == 1000
    assert ledger.transactions.list(owner_id) == []


def test_category_must_match_transaction_type(ledger, owner_id) -> None:
    a = open_account(ledger, owner_id, 1000)
    salary = ledger.categories.create(owner_id, CategoryCreate(name="Side gig", categoryType=CategoryType.income))
    with pytest.raises(ValidationError):
        ledger.transactions.create(owner_id, _expense(a, 10, categoryId=salary["id"]))
    with pytest.raises(NotFound):
        ledger.transactions.create(owner_id, _expense(a, 10, categoryId=uuid4()))


def test_ownership_is_enforced(ledger, owner_id) -> None:
    intruder = uuid4()
    a = open_account(ledger, owner_id, 1000)
    tx = ledger.transactions.create(owner_id, _expense(a, 100))

    with pytest.raises(NotFound):
        ledger.transactions.get(intruder, tx["id"])
    with pytest.raises(NotFound):
        ledger.transactions.update(intruder, tx["id"], TransactionUpdate(amount=1))
    with pytest.raises(NotFound):
        ledger.transactions.delete(intruder, tx["id"])
    with pytest.raises(AccountNotFound):
        ledger.transactions.create(intruder, _expense(a, 100))
    assert balance(ledger, owner_id, a) == 900


def test_list_filters_and_orders_newest_first(ledger, owner_id) -> None:
    a = open_account(ledger, owner_id, 0, "A")
    b = open_account(ledger, owner_id, 0, "B")
    ledger.transactions.create(owner_id, _expense(a, 1, day=date(2025, 3, 1)))
    ledger.transactions.create(owner_id, _expense(a, 2, day=date(2025, 3, 5)))
    ledger.transactions.create(owner_id, _expense(b, 3, day=date(2025, 3, 3)))

    rows = ledger.transactions.list(owner_id)
    assert [r["amount"] for r in rows] == [2, 3, 1]
    only_a = ledger.transactions.list(owner_id, TransactionFilter(accountId=a, startDate=date(2025, 3, 2)))
    assert [r["amount"] for r in only_a] == [2]
    assert ledger.transactions.list(owner_id, TransactionFilter(source=TransactionSource.recurring)) == []
    assert rows[0]["source"] == "user"


def test_concurrent_updates_never_blend_amounts(owner_id) -> None:
    from types import SimpleNamespace

    from finance_tracker.services.accounts import AccountService
    from finance_tracker.services.transactions import TransactionService
    from finance_tracker.store import InMemoryStore

    persistence = InMemoryPersistence(InMemoryStore(), timeout=10)
    ledger = SimpleNamespace(accounts=AccountService(persistence), transactions=TransactionService(persistence))
    a = open_account(ledger, owner_id, 100000)
    tx = ledger.transactions.create(owner_id, _expense(a, 1000))

    amounts = [1500, 2500, 3500, 4500] * 5
    barrier = threading.Barrier(len(amounts))

    def worker(amount: int) -> None:
        barrier.wait()
        ledger.transactions.update(owner_id, tx["id"], TransactionUpdate(amount=amount))

    threads = [threading.Thread(target=worker, args=(amount,)) for amount in amounts]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    final = ledger.transactions.get(owner_id, tx["id"])
    assert final["amount"] in amounts
    assert balance(ledger, owner_id, a) == 100000 - final["amount"]


@pytest.mark.parametrize(
    "changes",
    [{"occurredOn": None}, {"amount": None}, {"transactionType": None}, {"accountId": None}],
)
def test_update_rejects_clearing_required_fields(ledger, owner_id, changes) -> None:
    a = open_account(ledger, owner_id, 1000)
    tx = ledger.transactions.create(owner_id, _expense(a, 300))

    with pytest.raises(ValidationError):
        ledger.transactions.update(owner_id, tx["id"], TransactionUpdate(**changes))

    stored = ledger.transactions.get(owner_id, tx["id"])
    assert stored["occurred_on"] == date(2025, 3, 1)
    assert stored["amount"] == 300
    assert balance(ledger, owner_id, a) == 700
    assert len(ledger.transactions.list(owner_id)) == 1


def test_update_can_clear_optional_fields(ledger, owner_id) -> None:
    a = open_account(ledger, owner_id, 1000)
    food = ledger.categories.create(owner_id, CategoryCreate(name="Snacks", categoryType=CategoryType.expense))
    tx = ledger.transactions.create(owner_id, _expense(a, 300, categoryId=food["id"], tags=["x"]))

    cleared = ledger.transactions.update(owner_id, tx["id"], TransactionUpdate(categoryId=None, tags=None))
    assert cleared["category_id"] is None
    assert cleared["tags"] == []


class _LockRecorder:
    def __init__(self, inner) -> None:
        self.inner = inner
        self.locked: list = []

    def get(self, table, owner_id, entity_id, *, for_update=False):
        if for_update:
            self.locked.append(entity_id)
        return self.inner.get(table, owner_id, entity_id, for_update=for_update)

    def __getattr__(self, name):
        return getattr(self.inner, name)


def test_transfer_locks_accounts_in_id_order(ledger, owner_id) -> None:
    first = open_account(ledger, owner_id, 1000, "First")
    second = open_account(ledger, owner_id, 1000, "Second")
    low, high = sorted([first, second], key=str)
    transfer = {
        "owner_id": owner_id,
        "transaction_type": "transfer",
        "amount": 10,
        "account_id": high,
        "to_account_id": low,
    }

    with ledger.persistence.unit_of_work() as uow:
        recorder = _LockRecorder(uow)
        apply_effect(recorder, transfer)
        reverse_effect(recorder, transfer)

    assert recorder.locked == [low, high, low, high]
    assert balance(ledger, owner_id, first) == 1000
