from datetime import date, datetime

import pytest

from errors import ReadOnlyError
from models import BillingPeriod, PaymentSourceType, TemplateKind
from occurrences import record_payment, update_occurrence
from recurrence import MonthSynchronizer
from schemas import (
    BillInstance,
    MonthlyData,
    Occurrence,
    PaymentSource,
    RecurringTemplate,
)

NOW = datetime(2025, 1, 1, 12, 0)
LATER = datetime(2025, 1, 2, 12, 0)


def _rent(**fields) -> RecurringTemplate:
    fields.setdefault("day_of_month", 31)
    return RecurringTemplate(name="Rent", amount=150000, **fields)


def _weekly(amount: int = 1000) -> RecurringTemplate:
    return RecurringTemplate(
        name="Groceries",
        amount=amount,
        billing_period=BillingPeriod.weekly,
        start_date=date(2025, 1, 3),
    )


def _salary() -> RecurringTemplate:
    return RecurringTemplate(
        kind=TemplateKind.income,
        name="Salary",
        amount=300000,
        day_of_month=1,
    )


def test_create_builds_one_instance_per_active_template():
    inactive = RecurringTemplate(name="Old gym", amount=3000, day_of_month=5, is_active=False)
    data = MonthSynchronizer([_rent(), inactive], [_salary()], now=NOW).create("2025-02")

    assert len(data.bill_instances) == 1
    assert len(data.income_instances) == 1
    rent = data.bill_instances[0]
    assert rent.occurrences[0].expected_date == date(2025, 2, 28)
    assert rent.expected_amount == 150000
    assert data.created_at == NOW


def test_create_carries_savings_balances_forward():
    previous = MonthlyData(month="2025-01", savings_balances_end={"sav": 500000})
    data = MonthSynchronizer([], [], now=NOW).create("2025-02", previous)
    assert data.savings_balances_start == {"sav": 500000}


def test_sync_is_idempotent():
    templates = [_rent(), _weekly()]
    data = MonthSynchronizer(templates, [_salary()], now=NOW).create("2025-01")
    snapshot = data.model_dump(mode="json")

    changed = MonthSynchronizer(templates, [_salary()], now=LATER).sync(data)
    assert changed is False
    assert data.model_dump(mode="json") == snapshot

    assert MonthSynchronizer(templates, [_salary()], now=LATER).sync(data) is False
    assert data.updated_at == NOW


def test_sync_adds_instance_for_new_template():
    rent = _rent()
    data = MonthSynchronizer([rent], [], now=NOW).create("2025-01")
    weekly = _weekly()

    assert MonthSynchronizer([rent, weekly], [], now=LATER).sync(data) is True
    assert {inst.bill_id for inst in data.bill_instances} == {rent.id, weekly.id}
    assert data.updated_at == LATER


def test_merge_preserves_closed_occurrence():
    template = _weekly(amount=1000)
    data = MonthSynchronizer([template], [], now=NOW).create("2025-01")
    instance = data.bill_instances[0]
    first = instance.occurrences[0]
    record_payment(instance, first.id, paid_on=date(2025, 1, 3))

    template.amount = 2000
    assert MonthSynchronizer([template], [], now=LATER).sync(data) is True

    instance = data.bill_instances[0]
    assert len(instance.occurrences) == 5
    kept = instance.occurrences[0]
    assert kept.id == first.id
    assert kept.is_closed
    assert kept.expected_amount == 1000
    assert [occ.expected_amount for occ in instance.occurrences[1:]] == [2000] * 4


def test_day_change_does_not_duplicate_closed_monthly_bill():
    template = _rent(day_of_month=15)
    data = MonthSynchronizer([template], [], now=NOW).create("2025-01")
    instance = data.bill_instances[0]
    record_payment(instance, instance.occurrences[0].id, paid_on=date(2025, 1, 15))

    template.day_of_month = 20
    MonthSynchronizer([template], [], now=LATER).sync(data)

    occurrences = data.bill_instances[0].occurrences
    assert len(occurrences) == 1
    assert occurrences[0].is_closed
    assert occurrences[0].expected_date == date(2025, 1, 15)


def test_untouched_open_occurrence_follows_template():
    template = _rent(day_of_month=15)
    data = MonthSynchronizer([template], [], now=NOW).create("2025-01")

    template.day_of_month = 20
    template.amount = 160000
    MonthSynchronizer([template], [], now=LATER).sync(data)

    occurrences = data.bill_instances[0].occurrences
    assert len(occurrences) == 1
    occ = occurrences[0]
    assert occ.expected_date == date(2025, 1, 20)
    assert occ.expected_amount == 160000
    assert not occ.is_edited


def test_edited_open_occurrence_is_kept():
    template = _rent(day_of_month=15)
    data = MonthSynchronizer([template], [], now=NOW).create("2025-01")
    instance = data.bill_instances[0]
    occ_id = instance.occurrences[0].id
    update_occurrence(instance, occ_id, expected_amount=140000)

    template.amount = 160000
    MonthSynchronizer([template], [], now=LATER).sync(data)

    occurrences = data.bill_instances[0].occurrences
    assert len(occurrences) == 1
    assert occurrences[0].id == occ_id
    assert occurrences[0].expected_amount == 140000


def test_adhoc_instances_and_occurrences_are_untouched():
    template = _rent(day_of_month=10)
    data = MonthSynchronizer([template], [], now=NOW).create("2025-01")
    adhoc = BillInstance(
        month="2025-01",
        is_adhoc=True,
        is_default=False,
        name="Vet",
        occurrences=[
            Occurrence(expected_date=date(2025, 1, 9), expected_amount=8000, is_adhoc=True)
        ],
    )
    data.bill_instances.append(adhoc)
    extra = Occurrence(expected_date=date(2025, 1, 25), expected_amount=500, is_adhoc=True)
    data.bill_instances[0].occurrences.append(extra)
    before_adhoc = adhoc.model_dump(mode="json")

    template.day_of_month = 12
    MonthSynchronizer([template], [], now=LATER).sync(data)

    assert data.bill_instances[1].model_dump(mode="json") == before_adhoc
    ids = [occ.id for occ in data.bill_instances[0].occurrences]
    assert extra.id in ids
    assert len(ids) == 2


def test_deactivated_template_keeps_existing_instance():
    template = _rent()
    data = MonthSynchronizer([template], [], now=NOW).create("2025-01")
    template.is_active = False

    assert MonthSynchronizer([template], [], now=LATER).sync(data) is False
    assert len(data.bill_instances) == 1


def test_sync_rejects_read_only_month():
    data = MonthSynchronizer([_rent()], [], now=NOW).create("2025-01")
    data.is_read_only = True
    snapshot = data.model_dump(mode="json")

    with pytest.raises(ReadOnlyError):
        MonthSynchronizer([_rent()], [], now=LATER).sync(data)
    assert data.model_dump(mode="json") == snapshot


def test_payoff_bill_synthesized_for_pay_off_monthly_source():
    card = PaymentSource(
        name="Visa", type=PaymentSourceType.credit_card, pay_off_monthly=True
    )
    data = MonthSynchronizer([], [], [card], payoff_category_id="cat", now=NOW).create(
        "2025-02"
    )
    payoff = data.bill_instances[0]
    assert payoff.is_payoff_bill
    assert payoff.payoff_source_id == card.id
    assert payoff.name == "Visa Payoff"
    assert payoff.category_id == "cat"
    assert payoff.occurrences == []

    data.bank_balances[card.id] = 45000
    assert MonthSynchronizer([], [], [card], now=LATER).sync(data) is True
    occ = data.bill_instances[0].occurrences[0]
    assert occ.expected_date == date(2025, 2, 28)
    assert occ.expected_amount == 45000

    assert MonthSynchronizer([], [], [card], now=LATER).sync(data) is False
    assert len(data.bill_instances) == 1


def test_manual_payoff_source_has_no_occurrences():
    card = PaymentSource(
        name="Amex", type=PaymentSourceType.credit_card, track_payments_manually=True
    )
    data = MonthSynchronizer([], [], [card], now=NOW).create("2025-02")
    data.bank_balances[card.id] = 45000
    MonthSynchronizer([], [], [card], now=LATER).sync(data)

    payoff = data.bill_instances[0]
    assert payoff.name == "Amex Payments"
    assert payoff.occurrences == []
