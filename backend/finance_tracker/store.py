import threading
from uuid import UUID

TABLES = ("accounts", "categories", "transactions", "recurring_transactions", "budgets", "goals")


class InMemoryStore:
    def __init__(self) -> None:
        self.tables: dict[str, dict[UUID, dict]] = {name: {} for name in TABLES}
        # One writer at a time; a unit of work holds it for its whole lifetime.
        self.lock = threading.RLock()

    @property
    def recurring_transactions(self) -> dict[UUID, dict]:
        return self.tables["recurring_transactions"]


store = InMemoryStore()
