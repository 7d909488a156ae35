from datetime import date, datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator


class AccountType(str, Enum):
    cash = "cash"
    bank = "bank"
    credit = "credit"
    wallet = "wallet"
    savings = "savings"


class CategoryType(str, Enum):
    expense = "expense"
    income = "income"


class TransactionType(str, Enum):
    expense = "expense"
    income = "income"
    transfer = "transfer"


class TransactionSource(str, Enum):
    user = "user"
    recurring = "recurring"


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class RecurringStatus(str, Enum):
    active = "active"
    paused = "paused"
    exhausted = "exhausted"


class GoalType(str, Enum):
    savings = "savings"
    debt_payoff = "debt_payoff"
    purchase = "purchase"


class GoalPriority(str, Enum):
    high = "high"
    medium = "medium"
    low = "low"


class GoalStatus(str, Enum):
    active = "active"
    completed = "completed"
    paused = "paused"


class ApiErrorDetail(BaseModel):
    field: str
    message: str


class ApiErrorPayload(BaseModel):
    code: str
    message: str
    details: list[ApiErrorDetail] = Field(default_factory=list)


class ApiErrorResponse(BaseModel):
    error: ApiErrorPayload


def _currency_code(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    up = value.strip().upper()
    if len(up) != 3 or not up.isalpha():
        raise ValueError("must be 3-letter ISO code")
    return up


class AccountCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    accountType: AccountType
    currency: str = "USD"
    openingBalance: int = 0

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        return _currency_code(value)


class AccountUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    accountType: Optional[AccountType] = None
    currency: Optional[str] = None
    isActive: Optional[bool] = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: Optional[str]) -> Optional[str]:
        return _currency_code(value)


class CategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    categoryType: CategoryType


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    categoryType: Optional[CategoryType] = None


class TransactionCreate(BaseModel):
    transactionType: TransactionType
    amount: int = Field(gt=0)
    occurredOn: date
    accountId: UUID
    toAccountId: Optional[UUID] = None
    categoryId: Optional[UUID] = None
    description: str = Field(default="", max_length=500)
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TransactionUpdate(BaseModel):
    transactionType: Optional[TransactionType] = None
    amount: Optional[int] = Field(default=None, gt=0)
    occurredOn: Optional[date] = None
    accountId: Optional[UUID] = None
    toAccountId: Optional[UUID] = None
    categoryId: Optional[UUID] = None
    description: Optional[str] = Field(default=None, max_length=500)
    tags: Optional[list[str]] = None
    metadata: Optional[dict[str, Any]] = None


class TransactionFilter(BaseModel):
    transactionType: Optional[TransactionType] = None
    accountId: Optional[UUID] = None
    categoryId: Optional[UUID] = None
    source: Optional[TransactionSource] = None
    startDate: Optional[date] = None
    endDate: Optional[date] = None


class RecurringTransactionCreate(BaseModel):
    transactionType: TransactionType
    amount: int = Field(gt=0)
    description: str = Field(default="", max_length=500)
    accountId: UUID
    toAccountId: Optional[UUID] = None
    categoryId: Optional[UUID] = None
    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    startDate: date
    endDate: Optional[date] = None


class RecurringTransactionUpdate(BaseModel):
    transactionType: Optional[TransactionType] = None
    amount: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, max_length=500)
    accountId: Optional[UUID] = None
    toAccountId: Optional[UUID] = None
    categoryId: Optional[UUID] = None
    frequency: Optional[Frequency] = None
    interval: Optional[int] = Field(default=None, ge=1)
    startDate: Optional[date] = None
    endDate: Optional[date] = None


class RecurringProcessError(BaseModel):
    id: UUID
    code: str
    error: str
    autoPaused: bool = False


class RecurringProcessResponse(BaseModel):
    processed: int
    failed: int
    created: int
    exhausted: int
    errors: list[RecurringProcessError] = Field(default_factory=list)


class RecurringProcessRequest(BaseModel):
    now: Optional[date] = None


class BudgetCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    categoryId: Optional[UUID] = None
    amount: int = Field(gt=0)
    period: Frequency
    startDate: date
    endDate: Optional[date] = None
    alertThreshold: float = Field(default=0.8, gt=0, le=1)

    @model_validator(mode="after")
    def validate_window(self) -> "BudgetCreate":
        if self.endDate is not None and self.endDate < self.startDate:
            raise ValueError("endDate must be on or after startDate")
        return self


class BudgetUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    categoryId: Optional[UUID] = None
    amount: Optional[int] = Field(default=None, gt=0)
    period: Optional[Frequency] = None
    startDate: Optional[date] = None
    endDate: Optional[date] = None
    alertThreshold: Optional[float] = Field(default=None, gt=0, le=1)
    isActive: Optional[bool] = None


class BudgetStatusResponse(BaseModel):
    budgetId: UUID
    name: str
    windowStart: date
    windowEnd: date
    limit: int
    spent: int
    remaining: int
    percentage: float
    isOverBudget: bool
    shouldAlert: bool


class GoalCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    goalType: GoalType
    targetAmount: int = Field(gt=0)
    currentAmount: int = Field(default=0, ge=0)
    deadline: Optional[date] = None
    linkedAccountId: Optional[UUID] = None
    linkedCategoryId: Optional[UUID] = None
    priority: GoalPriority = GoalPriority.medium

    @model_validator(mode="after")
    def validate_amounts(self) -> "GoalCreate":
        if self.currentAmount > self.targetAmount:
            raise ValueError("currentAmount cannot exceed targetAmount")
        return self


class GoalUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    targetAmount: Optional[int] = Field(default=None, gt=0)
    deadline: Optional[date] = None
    linkedAccountId: Optional[UUID] = None
    linkedCategoryId: Optional[UUID] = None
    priority: Optional[GoalPriority] = None
    status: Optional[GoalStatus] = None


class GoalContribution(BaseModel):
    amount: int = Field(gt=0)
    note: Optional[str] = Field(default=None, max_length=200)


class GoalProgressResponse(BaseModel):
    goalId: UUID
    progress: float
    remainingAmount: int
    averageMonthlyContribution: Optional[float] = None
    monthsToCompletion: Optional[float] = None
    projectedCompletionDate: Optional[date] = None


class SummaryResponse(BaseModel):
    totalIncome: int
    totalExpense: int
    netBalance: int
    transactionCount: int
    startDate: date
    endDate: date


class CategoryBreakdownItem(BaseModel):
    categoryId: Optional[UUID]
    categoryName: str
    amount: int
    percentage: float
    transactionCount: int


class TrendGrouping(str, Enum):
    day = "day"
    week = "week"
    month = "month"


class TrendPoint(BaseModel):
    period: str
    income: int = 0
    expense: int = 0
    net: int = 0


class ChangeItem(BaseModel):
    amount: int
    percentage: float


class ComparisonChange(BaseModel):
    income: ChangeItem
    expense: ChangeItem
    net: ChangeItem


class ComparisonResponse(BaseModel):
    current: SummaryResponse
    previous: SummaryResponse
    change: ComparisonChange


class HealthResponse(BaseModel):
    status: str
    storageBackend: str
    checkedAt: datetime
