from datetime import date

from models import CategoryType, PaymentSourceType, TemplateKind
from occurrences import record_payment
from recurrence import MonthSynchronizer
from schemas import (
    BillInstance,
    Category,
    IncomeInstance,
    MonthlyData,
    Occurrence,
    PaymentSource,
    RecurringTemplate,
)
from tally import build_detailed_month, build_tallies, leftover_breakdown


def _open(amount: int, day: int = 15, **fields) -> Occurrence:
    return Occurrence(expected_date=date(2025, 3, day), expected_amount=amount, **fields)


def _month() -> MonthlyData:
    return MonthlyData(
        month="2025-03",
        bill_instances=[
            BillInstance(month="2025-03", name="Rent", occurrences=[_open(100000, day=1)]),
            BillInstance(
                month="2025-03",
                name="Visa Payoff",
                is_payoff_bill=True,
                payoff_source_id="visa",
                occurrences=[_open(30000, day=28)],
            ),
        ],
        income_instances=[
            IncomeInstance(month="2025-03", name="Salary", occurrences=[_open(250000)]),
        ],
    )


def test_leftover_flags_missing_balance_and_substitutes_zero():
    checking = PaymentSource(name="Checking")
    savings_less = PaymentSource(name="Wallet", type=PaymentSourceType.cash)
    data = _month()
    data.bank_balances = {checking.id: 50000}

    breakdown = leftover_breakdown(data, [checking, savings_less])

    assert breakdown.is_valid is False
    assert breakdown.missing_balances == [savings_less.id]
    assert "Wallet" in breakdown.error_message
    assert breakdown.bank_balances == 50000
    assert breakdown.remaining_income == 250000
    assert breakdown.remaining_expenses == 130000
    assert breakdown.leftover == 50000 + 250000 - 130000


def test_leftover_excludes_payoff_savings_and_signs_debt():
    checking = PaymentSource(name="Checking")
    visa = PaymentSource(
        id="visa", name="Visa", type=PaymentSourceType.credit_card, pay_off_monthly=True
    )
    loc = PaymentSource(name="LOC", type=PaymentSourceType.line_of_credit)
    savings = PaymentSource(name="Savings", is_savings=True)
    broker = PaymentSource(name="Broker", type=PaymentSourceType.investment)
    data = _month()
    data.bank_balances = {checking.id: 80000, loc.id: 20000}

    breakdown = leftover_breakdown(data, [checking, visa, loc, savings, broker])

    assert breakdown.is_valid is True
    assert breakdown.missing_balances == []
    assert breakdown.error_message is None
    assert breakdown.bank_balances == 60000
    assert breakdown.leftover == 60000 + 250000 - 130000


def test_closed_occurrences_leave_remaining_totals():
    checking = PaymentSource(name="Checking")
    data = _month()
    data.bank_balances = {checking.id: 0}
    rent = data.bill_instances[0]
    record_payment(rent, rent.occurrences[0].id, paid_on=date(2025, 3, 1))

    breakdown = leftover_breakdown(data, [checking])

    assert breakdown.remaining_expenses == 30000
    assert breakdown.has_actuals is True


def test_breakdown_serializes_camel_case():
    payload = leftover_breakdown(_month(), []).model_dump(by_alias=True)
    assert {"isValid", "missingBalances", "remainingExpenses"} <= set(payload)


def test_tallies_split_regular_adhoc_and_payoffs():
    data = _month()
    data.bill_instances.append(
        BillInstance(
            month="2025-03",
            name="Vet",
            is_adhoc=True,
            occurrences=[
                _open(8000, is_adhoc=True, is_closed=True, closed_date=date(2025, 3, 3))
            ],
        )
    )
    rent = data.bill_instances[0]
    record_payment(rent, rent.occurrences[0].id, paid_on=date(2025, 3, 1), amount=110000)

    tallies = build_tallies(data)

    assert tallies.bills.expected == 100000
    assert tallies.bills.actual == 110000
    assert tallies.bills.remaining == -10000
    assert tallies.adhoc_bills.expected == 0
    assert tallies.adhoc_bills.actual == 8000
    assert tallies.cc_payoffs.expected == 30000
    assert tallies.total_expenses.expected == 130000
    assert tallies.total_expenses.actual == 118000
    assert tallies.total_income.expected == 250000
    assert tallies.total_income.remaining == 250000


def test_detailed_month_sections_overdue_and_payoffs():
    utilities = Category(name="Utilities", type=CategoryType.bill, sort_order=2)
    housing = Category(name="Housing", type=CategoryType.bill, sort_order=1)
    empty = Category(name="Insurance", type=CategoryType.bill, sort_order=3)
    groceries = Category(name="Groceries", type=CategoryType.variable, sort_order=0)
    wages = Category(name="Wages", type=CategoryType.income)
    rent = RecurringTemplate(
        name="Rent", amount=100000, day_of_month=1, category_id=housing.id
    )
    power = RecurringTemplate(
        name="Power", amount=9000, day_of_month=20, category_id=utilities.id
    )
    salary = RecurringTemplate(
        kind=TemplateKind.income, name="Salary", amount=250000, day_of_month=15
    )
    data = MonthSynchronizer([rent, power], [salary]).create("2025-03")

    view = build_detailed_month(
        data,
        categories=[groceries, utilities, housing, empty, wages],
        sources=[],
        bills=[rent, power],
        incomes=[salary],
        today=date(2025, 3, 10),
    )

    assert [s.category.name for s in view.bill_sections] == [
        "Housing",
        "Utilities",
        "Insurance",
        "Groceries",
    ]
    assert view.bill_sections[3].items == []
    assert view.bill_sections[0].items[0].name == "Rent"
    assert view.bill_sections[0].items[0].is_overdue is True
    assert view.bill_sections[0].items[0].days_overdue == 9
    assert view.bill_sections[2].items == []
    assert [s.category.name for s in view.income_sections] == ["Wages", "Uncategorized"]
    assert view.income_sections[1].items[0].name == "Salary"
    assert [item.name for item in view.overdue_bills] == ["Rent"]
    assert view.overdue_bills[0].days_overdue == 9
    assert view.leftover_breakdown.is_valid is True
    assert view.model_dump(by_alias=True)["leftoverBreakdown"]["leftover"] == (
        250000 - 109000
    )


def test_payoff_summary_reports_paid_and_remaining():
    visa = PaymentSource(
        id="visa", name="Visa", type=PaymentSourceType.credit_card, pay_off_monthly=True
    )
    data = _month()
    data.bill_instances[1].occurrences.append(
        Occurrence(
            expected_date=date(2025, 3, 5),
            expected_amount=10000,
            is_closed=True,
            closed_date=date(2025, 3, 5),
            is_adhoc=True,
        )
    )

    view = build_detailed_month(
        data, categories=[], sources=[visa], bills=[], incomes=[], today=date(2025, 3, 1)
    )

    summary = view.payoff_summaries[0]
    assert summary.payment_source_name == "Visa"
    assert summary.balance == 40000
    assert summary.paid == 10000
    assert summary.remaining == 30000


def test_extra_occurrence_month_flag_on_details():
    weekly = RecurringTemplate(
        name="Groceries",
        amount=1000,
        billing_period="weekly",
        start_date=date(2025, 1, 3),
    )
    data = MonthSynchronizer([weekly], []).create("2025-01")

    view = build_detailed_month(
        data, categories=[], sources=[], bills=[weekly], incomes=[], today=date(2025, 1, 1)
    )

    item = view.bill_sections[0].items[0]
    assert item.occurrence_count == 5
    assert item.is_extra_occurrence_month is True
    assert item.remaining == 5000
