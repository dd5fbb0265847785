"""Read-side month view: category sections, tallies, overdue items and leftover."""

from datetime import date
from typing import Iterable, Optional, Union

from models import CategoryType
from recurrence import is_extra_occurrence_month
from schemas import (
    BillInstance,
    Category,
    CategoryRef,
    CategorySection,
    CategorySubtotal,
    DetailedMonthResponse,
    IncomeInstance,
    InstanceDetail,
    LeftoverBreakdown,
    MonthlyData,
    OverdueItem,
    PaymentSource,
    PayoffSummary,
    RecurringTemplate,
    SectionTally,
    SourceRef,
    Tallies,
)

UNCATEGORIZED = CategoryRef(
    id="uncategorized",
    name="Uncategorized",
    color="#9ca3af",
    sort_order=10_000,
    type=CategoryType.bill,
)

InstanceT = Union[BillInstance, IncomeInstance]


def _is_payoff(instance: InstanceT) -> bool:
    return isinstance(instance, BillInstance) and instance.is_payoff_bill


def instance_detail(
    instance: InstanceT,
    template: Optional[RecurringTemplate],
    sources: dict[str, PaymentSource],
    today: date,
) -> InstanceDetail:
    name = instance.name or (template.name if template else None) or "Unknown"
    category_id = instance.category_id or (template.category_id if template else None)
    source_id = instance.payment_source_id or (
        template.payment_source_id if template else None
    )
    source = sources.get(source_id) if source_id else None

    open_dates = sorted(occ.expected_date for occ in instance.occurrences if not occ.is_closed)
    all_dates = sorted(occ.expected_date for occ in instance.occurrences)
    due_date = open_dates[0] if open_dates else (all_dates[0] if all_dates else None)
    overdue_dates = [day for day in open_dates if day < today]
    count = len(instance.occurrences)
    regular = not instance.is_adhoc and not _is_payoff(instance)

    return InstanceDetail(
        id=instance.id,
        kind=instance.kind,
        template_id=instance.template_id,
        name=name,
        billing_period=instance.billing_period,
        category_id=category_id,
        expected_amount=instance.expected_amount,
        total_paid=instance.total_paid,
        remaining=instance.expected_amount - instance.total_paid,
        occurrences=list(instance.occurrences),
        occurrence_count=count,
        is_extra_occurrence_month=regular
        and is_extra_occurrence_month(instance.billing_period, count),
        is_closed=instance.is_closed,
        closed_date=instance.closed_date,
        is_adhoc=instance.is_adhoc,
        is_payoff_bill=_is_payoff(instance),
        payoff_source_id=getattr(instance, "payoff_source_id", None),
        due_date=due_date,
        is_overdue=bool(overdue_dates),
        days_overdue=(today - overdue_dates[0]).days if overdue_dates else None,
        payment_source=SourceRef(id=source.id, name=source.name) if source else None,
        goal_id=instance.goal_id,
    )


def _category_ref(category: Category) -> CategoryRef:
    return CategoryRef(
        id=category.id,
        name=category.name,
        color=category.color,
        sort_order=category.sort_order,
        type=category.type,
    )


def build_sections(
    details: list[InstanceDetail],
    categories: Iterable[Category],
    section_type: CategoryType,
) -> list[CategorySection]:
    by_id = {cat.id: cat for cat in categories}
    grouped: dict[str, list[InstanceDetail]] = {}
    for detail in details:
        key = detail.category_id if detail.category_id in by_id else UNCATEGORIZED.id
        grouped.setdefault(key, []).append(detail)

    shown_types = {section_type}
    if section_type == CategoryType.bill:
        shown_types.add(CategoryType.variable)
    wanted = [
        cat
        for cat in by_id.values()
        if cat.type in shown_types or cat.id in grouped
    ]
    wanted.sort(
        key=lambda cat: (cat.type == CategoryType.variable, cat.sort_order, cat.name.lower())
    )
    refs = [_category_ref(cat) for cat in wanted]
    if UNCATEGORIZED.id in grouped:
        refs.append(UNCATEGORIZED)

    sections = []
    for ref in refs:
        items = sorted(
            grouped.get(ref.id, []),
            key=lambda item: (
                item.is_adhoc,
                item.is_closed,
                item.due_date or date.max,
                item.name.lower(),
            ),
        )
        sections.append(
            CategorySection(
                category=ref,
                items=items,
                subtotal=CategorySubtotal(
                    expected=sum(item.expected_amount for item in items),
                    actual=sum(item.total_paid for item in items),
                ),
            )
        )
    return sections


def _tally(instances: Iterable[InstanceT]) -> SectionTally:
    expected = actual = 0
    for instance in instances:
        expected += instance.expected_amount
        actual += instance.total_paid
    return SectionTally(expected=expected, actual=actual, remaining=expected - actual)


def _actual_only(instances: Iterable[InstanceT]) -> SectionTally:
    return SectionTally(actual=sum(instance.total_paid for instance in instances))


def build_tallies(data: MonthlyData) -> Tallies:
    regular_bills = [
        inst for inst in data.bill_instances if not inst.is_adhoc and not inst.is_payoff_bill
    ]
    adhoc_bills = [inst for inst in data.bill_instances if inst.is_adhoc]
    payoffs = [
        inst for inst in data.bill_instances if inst.is_payoff_bill and not inst.is_adhoc
    ]
    regular_income = [inst for inst in data.income_instances if not inst.is_adhoc]
    adhoc_income = [inst for inst in data.income_instances if inst.is_adhoc]

    bills = _tally(regular_bills)
    adhoc = _actual_only(adhoc_bills)
    cc_payoffs = _tally(payoffs)
    income = _tally(regular_income)
    adhoc_in = _actual_only(adhoc_income)
    return Tallies(
        bills=bills,
        adhoc_bills=adhoc,
        cc_payoffs=cc_payoffs,
        total_expenses=bills + adhoc + cc_payoffs,
        income=income,
        adhoc_income=adhoc_in,
        total_income=income + adhoc_in,
    )


def overdue_items(
    instances: Iterable[BillInstance], names: dict[str, str], today: date
) -> list[OverdueItem]:
    items = []
    for instance in instances:
        for occ in instance.occurrences:
            if occ.is_closed or occ.expected_date >= today:
                continue
            items.append(
                OverdueItem(
                    instance_id=instance.id,
                    occurrence_id=occ.id,
                    name=names.get(instance.id, "Unknown"),
                    amount=occ.expected_amount,
                    due_date=occ.expected_date,
                    days_overdue=(today - occ.expected_date).days,
                )
            )
    items.sort(key=lambda item: (item.due_date, item.name.lower()))
    return items


def leftover_breakdown(
    data: MonthlyData, sources: Iterable[PaymentSource]
) -> LeftoverBreakdown:
    """Leftover = bank balances + income still expected - expenses still owed.

    A source without an entered balance counts as 0 and marks the result
    invalid; the figure is still computed.
    """
    included = [src for src in sources if src.counts_toward_leftover]
    missing = [src for src in included if src.id not in data.bank_balances]
    bank = sum(src.signed_balance(data.bank_balances.get(src.id, 0)) for src in included)
    remaining_income = sum(inst.open_amount for inst in data.income_instances)
    remaining_expenses = sum(inst.open_amount for inst in data.bill_instances)
    has_actuals = any(
        occ.is_closed for inst in data.instances() for occ in inst.occurrences
    )

    error_message = None
    if missing:
        names = ", ".join(src.name for src in missing)
        error_message = (
            f"Enter bank balances to calculate leftover. Missing: {names}. "
            "Missing balances were counted as 0."
        )
    return LeftoverBreakdown(
        bank_balances=bank,
        remaining_income=remaining_income,
        remaining_expenses=remaining_expenses,
        leftover=bank + remaining_income - remaining_expenses,
        is_valid=not missing,
        has_actuals=has_actuals,
        missing_balances=[src.id for src in missing],
        error_message=error_message,
    )


def payoff_summaries(
    data: MonthlyData, sources: dict[str, PaymentSource]
) -> list[PayoffSummary]:
    summaries = []
    for instance in data.bill_instances:
        if not instance.is_payoff_bill or not instance.payoff_source_id:
            continue
        source = sources.get(instance.payoff_source_id)
        balance = instance.expected_amount
        paid = sum(occ.expected_amount for occ in instance.occurrences if occ.is_closed)
        summaries.append(
            PayoffSummary(
                payment_source_id=instance.payoff_source_id,
                payment_source_name=source.name if source else "Unknown",
                balance=balance,
                paid=paid,
                remaining=balance - paid,
            )
        )
    return summaries


def build_detailed_month(
    data: MonthlyData,
    categories: Iterable[Category],
    sources: Iterable[PaymentSource],
    bills: Iterable[RecurringTemplate],
    incomes: Iterable[RecurringTemplate],
    today: date,
) -> DetailedMonthResponse:
    categories = list(categories)
    sources = list(sources)
    sources_by_id = {src.id: src for src in sources}
    bill_templates = {tpl.id: tpl for tpl in bills}
    income_templates = {tpl.id: tpl for tpl in incomes}

    bill_details = [
        instance_detail(inst, bill_templates.get(inst.bill_id or ""), sources_by_id, today)
        for inst in data.bill_instances
    ]
    income_details = [
        instance_detail(inst, income_templates.get(inst.income_id or ""), sources_by_id, today)
        for inst in data.income_instances
    ]
    names = {detail.id: detail.name for detail in bill_details}
    breakdown = leftover_breakdown(data, sources)

    return DetailedMonthResponse(
        month=data.month,
        bill_sections=build_sections(bill_details, categories, CategoryType.bill),
        income_sections=build_sections(income_details, categories, CategoryType.income),
        tallies=build_tallies(data),
        leftover=breakdown.leftover,
        leftover_breakdown=breakdown,
        payoff_summaries=payoff_summaries(data, sources_by_id),
        overdue_bills=overdue_items(data.bill_instances, names, today),
        bank_balances=dict(data.bank_balances),
        is_read_only=data.is_read_only,
        last_updated=data.updated_at,
    )
