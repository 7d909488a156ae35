from types import SimpleNamespace
from uuid import UUID, uuid4

import pytest

from finance_tracker.persistence import InMemoryPersistence, Persistence, SqlPersistence
from finance_tracker.schemas import AccountCreate, AccountType
from finance_tracker.services.accounts import AccountService
from finance_tracker.services.analytics import AnalyticsService
from finance_tracker.services.budgets import BudgetService
from finance_tracker.services.categories import CategoryService
from finance_tracker.services.goals import GoalService
from finance_tracker.services.scheduler import RecurringScheduler
from finance_tracker.services.transactions import TransactionService
from finance_tracker.store import InMemoryStore


@pytest.fixture(params=["memory", "sqlite"])
def persistence(request, tmp_path) -> Persistence:
    if request.param == "memory":
        backend: Persistence = InMemoryPersistence(InMemoryStore(), timeout=2)
    else:
        backend = SqlPersistence(f"sqlite:///{tmp_path / 'ledger.db'}", timeout=5, auto_migrate=True)
    yield backend
    backend.close()


@pytest.fixture
def ledger(persistence: Persistence) -> SimpleNamespace:
    transactions = TransactionService(persistence)
    return SimpleNamespace(
        persistence=persistence,
        accounts=AccountService(persistence),
        categories=CategoryService(persistence),
        transactions=transactions,
        scheduler=RecurringScheduler(persistence, transactions),
        budgets=BudgetService(persistence),
        goals=GoalService(persistence),
        analytics=AnalyticsService(persistence),
    )


@pytest.fixture
def owner_id() -> UUID:
    return uuid4()


def open_account(ledger: SimpleNamespace, owner_id: UUID, opening: int = 0, name: str = "Checking") -> UUID:
    row = ledger.accounts.create(
        owner_id,
        AccountCreate(name=name, accountType=AccountType.bank, openingBalance=opening),
    )
    return row["id"]


def balance(ledger: SimpleNamespace, owner_id: UUID, account_id: UUID) -> int:
    return ledger.accounts.get(owner_id, account_id)["balance"]
