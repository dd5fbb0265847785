import logging
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Union

from config import get_settings
from errors import ReadOnlyError
from models import BillingPeriod, TemplateKind
from occurrences import resequence, seed_payoff
from periods import MonthPeriod, days_in_month, resolve_month
from schemas import (
    BillInstance,
    IncomeInstance,
    MonthlyData,
    Occurrence,
    PaymentSource,
    RecurringTemplate,
    utcnow,
)

logger = logging.getLogger(__name__)

LAST_WEEK_OF_MONTH = 5
INTERVAL_DAYS = {
    BillingPeriod.weekly: 7,
    BillingPeriod.bi_weekly: 14,
}
SEMI_ANNUAL_STEP_MONTHS = 6
# Regular occurrence counts per period; more than this marks an extra month.
NORMAL_OCCURRENCES = {
    BillingPeriod.monthly: 1,
    BillingPeriod.weekly: 4,
    BillingPeriod.bi_weekly: 2,
    BillingPeriod.semi_annually: 1,
}

InstanceT = Union[BillInstance, IncomeInstance]


def local_today() -> date:
    return datetime.now(get_settings().tzinfo).date()


def clamp_day_of_month(year: int, month: int, day: int) -> int:
    return max(1, min(day, days_in_month(year, month)))


def resolve_nth_weekday(year: int, month: int, week: int, weekday: int) -> date:
    """Date of the ``week``-th ``weekday`` in the month.

    ``weekday`` counts from Sunday (0) to Saturday (6). ``week`` 5 means the
    last such weekday, which is the fourth one in months with only four.
    """
    if not 1 <= week <= LAST_WEEK_OF_MONTH:
        raise ValueError(f"recurrence week must be 1-5, got {week}")
    if not 0 <= weekday <= 6:
        raise ValueError(f"recurrence day must be 0-6, got {weekday}")
    target = (weekday - 1) % 7
    first = date(year, month, 1)
    day = 1 + (target - first.weekday()) % 7 + 7 * (week - 1)
    dim = days_in_month(year, month)
    while day > dim:
        day -= 7
    return date(year, month, day)


def interval_dates_in_month(
    anchor: date, interval_days: int, year: int, month: int
) -> list[date]:
    """Every ``anchor + k * interval_days`` (k may be negative) inside the month."""
    if interval_days <= 0:
        raise ValueError("interval must be positive")
    first = date(year, month, 1)
    last = date(year, month, days_in_month(year, month))
    offset = (first - anchor).days % interval_days
    current = first + timedelta(days=(interval_days - offset) % interval_days)
    dates: list[date] = []
    while current <= last:
        dates.append(current)
        current += timedelta(days=interval_days)
    return dates


def semi_annual_dates_in_month(anchor: date, year: int, month: int) -> list[date]:
    distance = (year - anchor.year) * 12 + (month - anchor.month)
    if distance % SEMI_ANNUAL_STEP_MONTHS:
        return []
    return [date(year, month, clamp_day_of_month(year, month, anchor.day))]


def is_extra_occurrence_month(billing_period: BillingPeriod, count: int) -> bool:
    return count > NORMAL_OCCURRENCES.get(billing_period, 1)


def _monthly_date(template: RecurringTemplate, period: MonthPeriod) -> date:
    if template.recurrence_week is not None and template.recurrence_day is not None:
        return resolve_nth_weekday(
            period.year,
            period.month,
            template.recurrence_week,
            template.recurrence_day,
        )
    if template.day_of_month is not None:
        day = clamp_day_of_month(period.year, period.month, template.day_of_month)
        return date(period.year, period.month, day)
    logger.warning(
        f"template_missing_anchor: id={template.id} period=monthly month={period.slug}"
    )
    return period.start


def occurrence_dates(template: RecurringTemplate, month: str) -> list[date]:
    period = resolve_month(month)
    if template.billing_period == BillingPeriod.monthly:
        return [_monthly_date(template, period)]
    if template.start_date is None:
        logger.warning(
            f"template_missing_anchor: id={template.id} "
            f"period={template.billing_period.value} month={period.slug}"
        )
        return [period.start]
    if template.billing_period == BillingPeriod.semi_annually:
        return semi_annual_dates_in_month(template.start_date, period.year, period.month)
    return interval_dates_in_month(
        template.start_date,
        INTERVAL_DAYS[template.billing_period],
        period.year,
        period.month,
    )


def generate_occurrences(
    template: RecurringTemplate, month: str, now: Optional[datetime] = None
) -> list[Occurrence]:
    now = now or utcnow()
    return [
        Occurrence(
            sequence=index,
            expected_date=day,
            expected_amount=template.amount,
            scheduled_date=day,
            scheduled_amount=template.amount,
            created_at=now,
            updated_at=now,
        )
        for index, day in enumerate(sorted(occurrence_dates(template, month)), start=1)
    ]


def _slot_date(occurrence: Occurrence) -> date:
    return occurrence.scheduled_date or occurrence.expected_date


def _is_pinned(occurrence: Occurrence) -> bool:
    return occurrence.is_closed or occurrence.is_edited


class MonthSynchronizer:
    """Creates a month from the active templates and keeps it in step with them.

    Syncing never touches ad-hoc instances or ad-hoc occurrences, and it keeps
    every closed or hand-edited occurrence as it is.
    """

    def __init__(
        self,
        bills: Iterable[RecurringTemplate],
        incomes: Iterable[RecurringTemplate],
        payment_sources: Iterable[PaymentSource] = (),
        payoff_category_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.bills = [tpl for tpl in bills if tpl.is_active]
        self.incomes = [tpl for tpl in incomes if tpl.is_active]
        self.payment_sources = [src for src in payment_sources if src.tracks_payoff]
        self.payoff_category_id = payoff_category_id
        self.now = now or utcnow()

    def create(self, month: str, previous: Optional[MonthlyData] = None) -> MonthlyData:
        slug = resolve_month(month).slug
        data = MonthlyData(month=slug, created_at=self.now, updated_at=self.now)
        if previous is not None:
            data.savings_balances_start = dict(previous.savings_balances_end)
        self._sync_instances(data)
        logger.info(
            f"month_created: month={slug} bills={len(data.bill_instances)} "
            f"incomes={len(data.income_instances)}"
        )
        return data

    def sync(self, data: MonthlyData) -> bool:
        if data.is_read_only:
            raise ReadOnlyError(data.month)
        before = data.model_dump(mode="json")
        self._sync_instances(data)
        changed = data.model_dump(mode="json") != before
        if changed:
            data.updated_at = self.now
            logger.info(f"month_synced: month={data.month}")
        return changed

    def _sync_instances(self, data: MonthlyData) -> None:
        self._sync_templates(data.month, data.bill_instances, self.bills)
        self._sync_templates(data.month, data.income_instances, self.incomes)
        self.sync_payoffs(data)

    def _sync_templates(
        self,
        month: str,
        instances: list,
        templates: list[RecurringTemplate],
    ) -> None:
        by_template: dict[str, InstanceT] = {}
        for instance in instances:
            template_id = instance.template_id
            if instance.is_adhoc or template_id is None:
                continue
            if template_id in by_template:
                logger.warning(
                    f"duplicate_instance: month={month} template={template_id} "
                    f"instance={instance.id}"
                )
                continue
            by_template[template_id] = instance

        for template in templates:
            existing = by_template.get(template.id)
            if existing is None:
                instances.append(self._new_instance(template, month))
            else:
                self._merge(existing, template)

    def _new_instance(self, template: RecurringTemplate, month: str) -> InstanceT:
        fields = dict(
            month=month,
            billing_period=template.billing_period,
            occurrences=generate_occurrences(template, month, now=self.now),
            goal_id=template.goal_id,
            metadata=dict(template.metadata) if template.metadata else None,
            created_at=self.now,
            updated_at=self.now,
        )
        if template.kind == TemplateKind.income:
            return IncomeInstance(income_id=template.id, **fields)
        return BillInstance(bill_id=template.id, **fields)

    def _merge(self, instance: InstanceT, template: RecurringTemplate) -> None:
        before = instance.model_dump(mode="json")
        slots = generate_occurrences(template, instance.month, now=self.now)
        owned = sorted(
            (occ for occ in instance.occurrences if not occ.is_adhoc),
            key=lambda occ: (_slot_date(occ), occ.sequence),
        )
        matches: dict[int, Occurrence] = {}
        consumed: set[str] = set()

        # Same scheduled date first, then position for pinned occurrences.
        for index, slot in enumerate(slots):
            for occ in owned:
                if occ.id not in consumed and _slot_date(occ) == slot.expected_date:
                    matches[index] = occ
                    consumed.add(occ.id)
                    break
        for index, slot in enumerate(slots):
            if index in matches or index >= len(owned):
                continue
            candidate = owned[index]
            if candidate.id not in consumed and _is_pinned(candidate):
                matches[index] = candidate
                consumed.add(candidate.id)

        merged = [occ for occ in instance.occurrences if occ.is_adhoc]
        for index, slot in enumerate(slots):
            occ = matches.get(index)
            if occ is None:
                merged.append(slot)
                continue
            if not _is_pinned(occ):
                self._refresh(occ, slot)
            merged.append(occ)
        for occ in owned:
            if occ.id in consumed:
                continue
            if occ.is_closed:
                merged.append(occ)
            else:
                logger.info(
                    f"occurrence_dropped: instance={instance.id} occurrence={occ.id} "
                    f"date={occ.expected_date.isoformat()}"
                )

        instance.occurrences = resequence(merged)
        instance.billing_period = template.billing_period
        if instance.model_dump(mode="json") != before:
            instance.updated_at = self.now

    def _refresh(self, occ: Occurrence, slot: Occurrence) -> None:
        current = (
            occ.expected_date,
            occ.expected_amount,
            occ.scheduled_date,
            occ.scheduled_amount,
        )
        target = (
            slot.expected_date,
            slot.expected_amount,
            slot.scheduled_date,
            slot.scheduled_amount,
        )
        if current == target:
            return
        (
            occ.expected_date,
            occ.expected_amount,
            occ.scheduled_date,
            occ.scheduled_amount,
        ) = target
        occ.updated_at = self.now

    def sync_payoffs(self, data: MonthlyData) -> None:
        existing = {
            inst.payoff_source_id: inst
            for inst in data.bill_instances
            if inst.is_payoff_bill and inst.payoff_source_id
        }
        for source in self.payment_sources:
            instance = existing.get(source.id)
            if instance is None:
                suffix = "Payments" if source.track_payments_manually else "Payoff"
                instance = BillInstance(
                    month=data.month,
                    name=f"{source.name} {suffix}",
                    is_payoff_bill=True,
                    payoff_source_id=source.id,
                    category_id=self.payoff_category_id,
                    payment_source_id=source.id,
                    created_at=self.now,
                    updated_at=self.now,
                )
                data.bill_instances.append(instance)
                logger.info(
                    f"payoff_bill_created: month={data.month} source={source.id}"
                )
            if source.track_payments_manually or instance.occurrences:
                continue
            balance = data.bank_balances.get(source.id)
            if balance:
                seed_payoff(instance, balance, now=self.now)
