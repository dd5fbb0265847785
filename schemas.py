import datetime as dt
from datetime import date, datetime
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

from models import (
    DEBT_SOURCE_TYPES,
    BillingPeriod,
    CategoryType,
    ExpenseKind,
    PaymentMethod,
    PaymentSourceType,
    TemplateKind,
)


def new_id() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.utcnow()


# ---------------------------------------------------------------------------
# Stored entities
# ---------------------------------------------------------------------------


class RecurringTemplate(BaseModel):
    id: str = Field(default_factory=new_id)
    kind: TemplateKind = TemplateKind.bill
    name: str = Field(..., min_length=1, max_length=120)
    amount: int = Field(..., ge=0)
    billing_period: BillingPeriod = BillingPeriod.monthly
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    recurrence_week: Optional[int] = Field(default=None, ge=1, le=5)
    recurrence_day: Optional[int] = Field(default=None, ge=0, le=6)
    start_date: Optional[date] = None
    payment_source_id: Optional[str] = None
    category_id: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.manual
    is_active: bool = True
    goal_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Occurrence(BaseModel):
    id: str = Field(default_factory=new_id)
    sequence: int = Field(default=1, ge=0)
    expected_date: date
    expected_amount: int = Field(..., ge=0)
    is_closed: bool = False
    closed_date: Optional[date] = None
    # None while closed means "paid exactly the expected amount".
    paid_amount: Optional[int] = Field(default=None, ge=0)
    payment_source_id: Optional[str] = None
    notes: Optional[str] = None
    is_adhoc: bool = False
    scheduled_date: Optional[date] = None
    scheduled_amount: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def actual_amount(self) -> int:
        if not self.is_closed:
            return 0
        if self.paid_amount is None:
            return self.expected_amount
        return self.paid_amount

    @property
    def is_edited(self) -> bool:
        if self.is_adhoc:
            return True
        if self.scheduled_date is not None and self.expected_date != self.scheduled_date:
            return True
        if (
            self.scheduled_amount is not None
            and self.expected_amount != self.scheduled_amount
        ):
            return True
        return bool(self.notes) or self.payment_source_id is not None


class InstanceBase(BaseModel):
    """Per-month materialization of a template; totals derive from occurrences."""

    id: str = Field(default_factory=new_id)
    month: str
    billing_period: BillingPeriod = BillingPeriod.monthly
    occurrences: list[Occurrence] = Field(default_factory=list)
    is_default: bool = True
    is_adhoc: bool = False
    name: Optional[str] = None
    category_id: Optional[str] = None
    payment_source_id: Optional[str] = None
    goal_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def expected_amount(self) -> int:
        return sum(occ.expected_amount for occ in self.occurrences)

    @computed_field
    @property
    def is_closed(self) -> bool:
        return bool(self.occurrences) and all(occ.is_closed for occ in self.occurrences)

    @computed_field
    @property
    def closed_date(self) -> Optional[date]:
        if not self.is_closed:
            return None
        dates = [occ.closed_date for occ in self.occurrences if occ.closed_date]
        return max(dates) if dates else None

    @computed_field
    @property
    def total_paid(self) -> int:
        return sum(occ.actual_amount for occ in self.occurrences)

    @property
    def open_amount(self) -> int:
        return sum(occ.expected_amount for occ in self.occurrences if not occ.is_closed)

    @property
    def template_id(self) -> Optional[str]:
        return None


class BillInstance(InstanceBase):
    kind: Literal["bill"] = "bill"
    bill_id: Optional[str] = None
    is_payoff_bill: bool = False
    payoff_source_id: Optional[str] = None

    @property
    def template_id(self) -> Optional[str]:
        return self.bill_id


class IncomeInstance(InstanceBase):
    kind: Literal["income"] = "income"
    income_id: Optional[str] = None

    @property
    def template_id(self) -> Optional[str]:
        return self.income_id


Instance = Annotated[Union[BillInstance, IncomeInstance], Field(discriminator="kind")]


class Expense(BaseModel):
    id: str = Field(default_factory=new_id)
    kind: ExpenseKind = ExpenseKind.variable
    name: str = Field(..., min_length=1, max_length=120)
    amount: int = Field(..., ge=0)
    payment_source_id: Optional[str] = None
    category_id: Optional[str] = None
    date: Optional[dt.date] = None
    created_at: datetime = Field(default_factory=utcnow)


class MonthlyData(BaseModel):
    month: str
    bill_instances: list[BillInstance] = Field(default_factory=list)
    income_instances: list[IncomeInstance] = Field(default_factory=list)
    variable_expenses: list[Expense] = Field(default_factory=list)
    free_flowing_expenses: list[Expense] = Field(default_factory=list)
    bank_balances: dict[str, int] = Field(default_factory=dict)
    savings_balances_start: dict[str, int] = Field(default_factory=dict)
    savings_balances_end: dict[str, int] = Field(default_factory=dict)
    savings_contributions: dict[str, int] = Field(default_factory=dict)
    is_read_only: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def instances(self) -> list[Union[BillInstance, IncomeInstance]]:
        return [*self.bill_instances, *self.income_instances]


class PaymentSource(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1, max_length=120)
    type: PaymentSourceType = PaymentSourceType.bank_account
    is_active: bool = True
    pay_off_monthly: bool = False
    track_payments_manually: bool = False
    exclude_from_leftover: bool = False
    is_savings: bool = False
    is_investment: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_debt(self) -> bool:
        return self.type in DEBT_SOURCE_TYPES

    @property
    def tracks_payoff(self) -> bool:
        return self.is_active and (self.pay_off_monthly or self.track_payments_manually)

    @property
    def counts_toward_leftover(self) -> bool:
        if not self.is_active:
            return False
        return not (
            self.exclude_from_leftover
            or self.pay_off_monthly
            or self.is_savings
            or self.is_investment
            or self.type == PaymentSourceType.investment
        )

    def signed_balance(self, cents: int) -> int:
        # Debt balances are stored as magnitudes and represent money owed.
        return -abs(cents) if self.is_debt else cents


class Category(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType = CategoryType.bill
    sort_order: int = 0
    color: str = "#6b7280"
    is_predefined: bool = False


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class TemplateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount: int = Field(..., gt=0)
    billing_period: BillingPeriod = BillingPeriod.monthly
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    recurrence_week: Optional[int] = Field(default=None, ge=1, le=5)
    recurrence_day: Optional[int] = Field(default=None, ge=0, le=6)
    start_date: Optional[date] = None
    payment_source_id: Optional[str] = None
    category_id: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.manual
    goal_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class PaymentSourceIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: PaymentSourceType = PaymentSourceType.bank_account
    is_active: bool = True
    pay_off_monthly: bool = False
    track_payments_manually: bool = False
    exclude_from_leftover: bool = False
    is_savings: bool = False
    is_investment: bool = False


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    sort_order: int = 0
    color: str = Field(default="#6b7280", max_length=9)


class PaymentIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Optional[int] = Field(default=None, gt=0)
    paid_on: Optional[date] = None
    payment_source_id: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class OccurrenceUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    expected_date: Optional[date] = None
    expected_amount: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = Field(default=None, max_length=500)
    clear_notes: bool = False


class AdhocInstanceIn(BaseModel):
    kind: TemplateKind = TemplateKind.bill
    name: str = Field(..., min_length=1, max_length=120)
    amount: int = Field(..., gt=0)
    category_id: Optional[str] = None
    payment_source_id: Optional[str] = None
    goal_id: Optional[str] = None
    # A date means the item already happened: the occurrence is created closed.
    date: Optional[dt.date] = None


class ExpenseIn(BaseModel):
    kind: ExpenseKind = ExpenseKind.variable
    name: str = Field(..., min_length=1, max_length=120)
    amount: int = Field(..., gt=0)
    payment_source_id: Optional[str] = None
    category_id: Optional[str] = None
    date: Optional[dt.date] = None


# ---------------------------------------------------------------------------
# Detailed month view
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SectionTally(BaseModel):
    expected: int = 0
    actual: int = 0
    remaining: int = 0

    def __add__(self, other: "SectionTally") -> "SectionTally":
        return SectionTally(
            expected=self.expected + other.expected,
            actual=self.actual + other.actual,
            remaining=self.remaining + other.remaining,
        )


class CategoryRef(BaseModel):
    id: str
    name: str
    color: str
    sort_order: int
    type: CategoryType


class SourceRef(BaseModel):
    id: str
    name: str


class InstanceDetail(BaseModel):
    id: str
    kind: Literal["bill", "income"]
    template_id: Optional[str]
    name: str
    billing_period: BillingPeriod
    category_id: Optional[str]
    expected_amount: int
    total_paid: int
    remaining: int
    occurrences: list[Occurrence]
    occurrence_count: int
    is_extra_occurrence_month: bool
    is_closed: bool
    closed_date: Optional[date]
    is_adhoc: bool
    is_payoff_bill: bool = False
    payoff_source_id: Optional[str] = None
    due_date: Optional[date]
    is_overdue: bool
    days_overdue: Optional[int]
    payment_source: Optional[SourceRef]
    goal_id: Optional[str] = None


class CategorySubtotal(BaseModel):
    expected: int = 0
    actual: int = 0


class CategorySection(BaseModel):
    category: CategoryRef
    items: list[InstanceDetail]
    subtotal: CategorySubtotal


class OverdueItem(BaseModel):
    instance_id: str
    occurrence_id: str
    name: str
    amount: int
    due_date: date
    days_overdue: int


class Tallies(_CamelModel):
    bills: SectionTally
    adhoc_bills: SectionTally
    cc_payoffs: SectionTally
    total_expenses: SectionTally
    income: SectionTally
    adhoc_income: SectionTally
    total_income: SectionTally


class LeftoverBreakdown(_CamelModel):
    bank_balances: int
    remaining_income: int
    remaining_expenses: int
    leftover: int
    is_valid: bool
    has_actuals: bool = False
    missing_balances: list[str] = Field(default_factory=list)
    error_message: Optional[str] = None


class PayoffSummary(_CamelModel):
    payment_source_id: str
    payment_source_name: str
    balance: int
    paid: int
    remaining: int


class DetailedMonthResponse(_CamelModel):
    month: str
    bill_sections: list[CategorySection]
    income_sections: list[CategorySection]
    tallies: Tallies
    leftover: int
    leftover_breakdown: LeftoverBreakdown
    payoff_summaries: list[PayoffSummary]
    overdue_bills: list[OverdueItem]
    bank_balances: dict[str, int]
    is_read_only: bool
    last_updated: datetime


class MonthSummary(_CamelModel):
    month: str
    is_read_only: bool
    leftover: int
    is_valid: bool
    error_message: Optional[str] = None
    bank_balances: int
    remaining_income: int
    remaining_expenses: int
    created_at: datetime
    updated_at: datetime
