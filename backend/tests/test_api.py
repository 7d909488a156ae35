import threading
import time
from datetime import date
from uuid import uuid4

from fastapi.testclient import TestClient

from finance_tracker import main
from finance_tracker.main import app
from finance_tracker.schemas import (
    AccountCreate,
    AccountType,
    AccountUpdate,
    Frequency,
    RecurringTransactionCreate,
    TransactionFilter,
    TransactionSource,
    TransactionType,
)
from finance_tracker.services.accounts import AccountService

client = TestClient(app)
accounts = AccountService(main.persistence)


def _schedule(owner_id, start: date) -> dict:
    account = accounts.create(owner_id, AccountCreate(name="Main", accountType=AccountType.bank, openingBalance=5000))
    recurring = main.scheduler.create(
        owner_id,
        RecurringTransactionCreate(
            transactionType=TransactionType.expense,
            amount=250,
            description="Gym",
            accountId=account["id"],
            frequency=Frequency.daily,
            startDate=start,
        ),
    )
    return {"account": account, "recurring": recurring}


def test_health_reports_backend() -> None:
    res = client.get("/api/v1/health")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert body["storageBackend"] == "memory"


def test_process_endpoint_catches_up() -> None:
    owner_id = uuid4()
    _schedule(owner_id, date(2024, 1, 1))
    res = client.post("/api/v1/recurring-transactions/process", json={"now": "2024-01-03"})
    assert res.status_code == 200
    assert res.json()["created"] >= 3
    generated = main.transactions.list(owner_id, TransactionFilter(source=TransactionSource.recurring))
    assert sorted(r["occurred_on"].isoformat() for r in generated) == ["2024-01-01", "2024-01-02", "2024-01-03"]


def test_process_endpoint_reports_partial_failure() -> None:
    owner_id = uuid4()
    created = _schedule(owner_id, date(2024, 2, 1))
    accounts.update(owner_id, created["account"]["id"], AccountUpdate(isActive=False))

    res = client.post("/api/v1/recurring-transactions/process", json={"now": "2024-02-01"})
    assert res.status_code == 207
    errors = res.json()["errors"]
    failed = [e for e in errors if e["id"] == str(created["recurring"]["id"])]
    assert failed and failed[0]["code"] == "INACTIVE_ACCOUNT"
    assert failed[0]["autoPaused"] is True


def test_process_endpoint_validates_payload() -> None:
    res = client.post("/api/v1/recurring-transactions/process", json={"now": "not-a-date"})
    assert res.status_code == 422
    assert res.json()["error"]["code"] == "VALIDATION_ERROR"


def test_startup_seeds_system_categories() -> None:
    with TestClient(app):
        names = {c["name"] for c in main.categories.list(uuid4())}
    assert {"Salary", "Food & Dining"} <= names


def test_process_endpoint_waits_off_the_event_loop() -> None:
    entered, release = threading.Event(), threading.Event()
    responses: list = []

    def hold_store() -> None:
        with main.persistence.unit_of_work(timeout=5):
            entered.set()
            release.wait(5)

    with TestClient(app) as shared:
        holder = threading.Thread(target=hold_store)
        holder.start()
        assert entered.wait(5)
        worker = threading.Thread(
            target=lambda: responses.append(shared.post("/api/v1/recurring-transactions/process", json={"now": "2023-01-01"}))
        )
        worker.start()
        time.sleep(0.2)

        health = shared.get("/api/v1/health")
        assert health.status_code == 200
        assert worker.is_alive()

        release.set()
        holder.join()
        worker.join()
    assert responses[0].status_code == 200
