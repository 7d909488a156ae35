from __future__ import annotations

from collections import defaultdict
from datetime import date, timedelta
from typing import Any
from uuid import UUID

from ..errors import ValidationError
from ..persistence import Persistence
from ..schemas import (
    CategoryBreakdownItem,
    CategoryType,
    ChangeItem,
    ComparisonChange,
    ComparisonResponse,
    SummaryResponse,
    TransactionType,
    TrendGrouping,
    TrendPoint,
)


def _period_key(day: date, grouping: TrendGrouping) -> str:
    if grouping is TrendGrouping.week:
        year, week, _ = day.isocalendar()
        return f"{year}-W{week:02d}"
    if grouping is TrendGrouping.month:
        return day.strftime("%Y-%m")
    return day.isoformat()


def _change(current: int, previous: int) -> ChangeItem:
    amount = current - previous
    return ChangeItem(amount=amount, percentage=amount / previous * 100 if previous else 0)


class AnalyticsService:
    """Read-only aggregates over stored transactions."""

    def __init__(self, persistence: Persistence, timeout: float | None = None) -> None:
        self.persistence = persistence
        self.timeout = timeout

    def _in_range(self, owner_id: UUID, start: date, end: date, timeout: float | None, **equals: Any) -> list[dict[str, Any]]:
        if end < start:
            raise ValidationError("end must be on or after start")
        wait = self.timeout if timeout is None else timeout
        rows = self.persistence.find("transactions", timeout=wait, owner_id=owner_id, **equals)
        return [r for r in rows if start <= r["occurred_on"] <= end]

    def summary(self, owner_id: UUID, start: date, end: date, timeout: float | None = None) -> SummaryResponse:
        rows = self._in_range(owner_id, start, end, timeout)
        income = sum(r["amount"] for r in rows if r["transaction_type"] == TransactionType.income.value)
        expense = sum(r["amount"] for r in rows if r["transaction_type"] == TransactionType.expense.value)
        return SummaryResponse(
            totalIncome=income,
            totalExpense=expense,
            netBalance=income - expense,
            transactionCount=len(rows),
            startDate=start,
            endDate=end,
        )

    def trends(
        self,
        owner_id: UUID,
        start: date,
        end: date,
        grouping: TrendGrouping = TrendGrouping.day,
        timeout: float | None = None,
    ) -> list[TrendPoint]:
        """Income and expense totals per day, ISO week or month, oldest first."""
        points: dict[str, TrendPoint] = {}
        for row in self._in_range(owner_id, start, end, timeout):
            kind = row["transaction_type"]
            if kind == TransactionType.transfer.value:
                continue
            key = _period_key(row["occurred_on"], grouping)
            point = points.setdefault(key, TrendPoint(period=key))
            if kind == TransactionType.income.value:
                point.income += row["amount"]
            else:
                point.expense += row["amount"]
            point.net = point.income - point.expense
        return [points[key] for key in sorted(points)]

    def comparison(self, owner_id: UUID, start: date, end: date, timeout: float | None = None) -> ComparisonResponse:
        """Compare ``[start, end]`` with the window of equal length right before it."""
        length = end - start
        previous_end = start - timedelta(days=1)
        current = self.summary(owner_id, start, end, timeout)
        previous = self.summary(owner_id, previous_end - length, previous_end, timeout)
        return ComparisonResponse(
            current=current,
            previous=previous,
            change=ComparisonChange(
                income=_change(current.totalIncome, previous.totalIncome),
                expense=_change(current.totalExpense, previous.totalExpense),
                net=_change(current.netBalance, previous.netBalance),
            ),
        )

    def category_breakdown(
        self,
        owner_id: UUID,
        category_type: CategoryType,
        start: date,
        end: date,
        limit: int = 50,
        timeout: float | None = None,
    ) -> list[CategoryBreakdownItem]:
        rows = self._in_range(owner_id, start, end, timeout, transaction_type=category_type.value)
        totals: dict[UUID | None, list[int]] = defaultdict(lambda: [0, 0])
        for row in rows:
            bucket = totals[row["category_id"]]
            bucket[0] += row["amount"]
            bucket[1] += 1

        wait = self.timeout if timeout is None else timeout
        names = {
            r["id"]: r["name"]
            for r in self.persistence.find("categories", timeout=wait)
            if r["is_system"] or r["owner_id"] == owner_id
        }
        grand_total = sum(amount for amount, _ in totals.values())
        items = [
            CategoryBreakdownItem(
                categoryId=category_id,
                categoryName=names.get(category_id, "Uncategorized"),
                amount=amount,
                percentage=amount / grand_total * 100 if grand_total else 0,
                transactionCount=count,
            )
            for category_id, (amount, count) in totals.items()
        ]
        items.sort(key=lambda item: item.amount, reverse=True)
        return items[:limit]
