from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class RecurringDueEvent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    transaction_id: int = Field(..., gt=0)
    user_id: int = Field(..., gt=0)


class DispatchSummary(BaseModel):
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0


class RecurringRunOut(BaseModel):
    triggered: int
    dispatch: DispatchSummary


class BudgetAlertRunOut(BaseModel):
    evaluated: int = 0
    outcomes: dict[str, int] = Field(default_factory=dict)


class MonthlyReportRunOut(BaseModel):
    period: str
    processed: int = 0
    failed: int = 0


class MonthlyStats(BaseModel):
    total_income: Decimal = Decimal("0")
    total_expenses: Decimal = Decimal("0")
    by_category: dict[str, Decimal] = Field(default_factory=dict)
    transaction_count: int = 0

    @property
    def net(self) -> Decimal:
        return self.total_income - self.total_expenses
