from __future__ import annotations

import logging
import threading
from datetime import date, datetime
from typing import Callable, Optional, TypeVar

from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from errors import ConflictError, NotFoundError, ReadOnlyError, ValidationError
from models import (
    DEBT_SOURCE_TYPES,
    TEMPLATE_COLLECTIONS,
    BillingPeriod,
    CategoryType,
    Collection,
    Document,
    ExpenseKind,
    PaymentSourceType,
    TemplateKind,
)
import occurrences
from periods import previous_month, resolve_month
from recurrence import MonthSynchronizer, local_today
from schemas import (
    AdhocInstanceIn,
    BillInstance,
    Category,
    CategoryIn,
    DetailedMonthResponse,
    Expense,
    ExpenseIn,
    IncomeInstance,
    MonthlyData,
    MonthSummary,
    Occurrence,
    OccurrenceUpdateIn,
    PaymentIn,
    PaymentSource,
    PaymentSourceIn,
    RecurringTemplate,
    TemplateIn,
    utcnow,
)
from tally import build_detailed_month, leftover_breakdown

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")

PAYOFF_CATEGORY_NAME = "Credit Card Payoffs"
ADHOC_CATEGORY_NAME = "Ad-hoc"

_month_locks: dict[str, threading.RLock] = {}
_month_locks_guard = threading.Lock()


def month_lock(month: str) -> threading.RLock:
    """Process-wide lock serializing writes to one month document."""
    with _month_locks_guard:
        lock = _month_locks.get(month)
        if lock is None:
            lock = _month_locks[month] = threading.RLock()
        return lock


class DocumentStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, collection: Collection, key: str, model: type[M]) -> Optional[M]:
        row = self.session.get(Document, (collection, key))
        if row is None:
            return None
        return model.model_validate(row.payload)

    def exists(self, collection: Collection, key: str) -> bool:
        return self.session.get(Document, (collection, key)) is not None

    def put(self, collection: Collection, key: str, document: BaseModel) -> None:
        payload = document.model_dump(mode="json")
        row = self.session.get(Document, (collection, key))
        if row is None:
            self.session.add(Document(collection=collection, key=key, payload=payload))
        else:
            row.payload = payload
            row.updated_at = datetime.utcnow()
        self.session.flush()

    def delete(self, collection: Collection, key: str) -> bool:
        result = self.session.execute(
            delete(Document).where(
                Document.collection == collection, Document.key == key
            )
        )
        return bool(result.rowcount)

    def list(self, collection: Collection, model: type[M]) -> list[M]:
        stmt = (
            select(Document)
            .where(Document.collection == collection)
            .order_by(Document.key)
        )
        return [model.model_validate(row.payload) for row in self.session.scalars(stmt)]


def validate_template(data: TemplateIn) -> None:
    if data.billing_period == BillingPeriod.monthly:
        has_week = data.recurrence_week is not None
        has_day = data.recurrence_day is not None
        if has_week != has_day:
            raise ValidationError(
                "recurrence_week and recurrence_day must be set together",
                field="recurrence_week",
            )
        if has_week and data.day_of_month is not None:
            raise ValidationError(
                "Use either day_of_month or recurrence_week/recurrence_day, not both",
                field="day_of_month",
            )
        if not has_week and data.day_of_month is None:
            raise ValidationError(
                "Monthly items need day_of_month or recurrence_week/recurrence_day",
                field="day_of_month",
            )
    elif data.start_date is None:
        raise ValidationError(
            f"start_date is required for {data.billing_period.value} items",
            field="start_date",
        )


def validate_payment_source(data: PaymentSourceIn) -> None:
    if data.is_savings and data.is_investment:
        raise ValidationError("A source cannot be both savings and investment")
    if data.pay_off_monthly and (data.is_savings or data.is_investment):
        raise ValidationError(
            "Savings and investment sources cannot be paid off monthly",
            field="pay_off_monthly",
        )
    if data.track_payments_manually and data.type not in DEBT_SOURCE_TYPES:
        raise ValidationError(
            "Manual payment tracking is only available for credit cards and lines of credit",
            field="track_payments_manually",
        )
    if data.type == PaymentSourceType.investment and data.is_savings:
        raise ValidationError("Investment accounts cannot be savings accounts")


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = DocumentStore(session)

    def list_all(self, type: Optional[CategoryType] = None) -> list[Category]:
        categories = self.store.list(Collection.categories, Category)
        if type is not None:
            categories = [cat for cat in categories if cat.type == type]
        return sorted(categories, key=lambda cat: (cat.type.value, cat.sort_order, cat.name))

    def get(self, category_id: str) -> Category:
        category = self.store.get(Collection.categories, category_id, Category)
        if category is None:
            raise NotFoundError("Category", category_id)
        return category

    def create(
        self, data: CategoryIn, is_predefined: bool = False, commit: bool = True
    ) -> Category:
        clean_name = data.name.strip()
        if not clean_name:
            raise ValidationError("Category name cannot be empty", field="name")
        for existing in self.list_all(data.type):
            if existing.name.lower() == clean_name.lower():
                raise ConflictError("Category with this name already exists")
        category = Category(
            name=clean_name,
            type=data.type,
            sort_order=data.sort_order,
            color=data.color,
            is_predefined=is_predefined,
        )
        self.store.put(Collection.categories, category.id, category)
        if commit:
            self.session.commit()
        return category

    def _ensure(self, name: str, sort_order: int, commit: bool) -> Category:
        for existing in self.list_all(CategoryType.bill):
            if existing.name == name:
                return existing
        logger.info(f"category_created: name={name!r}")
        return self.create(
            CategoryIn(name=name, type=CategoryType.bill, sort_order=sort_order),
            is_predefined=True,
            commit=commit,
        )

    def ensure_payoff_category(self, commit: bool = True) -> Category:
        return self._ensure(PAYOFF_CATEGORY_NAME, 900, commit)

    def ensure_adhoc_category(self, commit: bool = True) -> Category:
        return self._ensure(ADHOC_CATEGORY_NAME, 950, commit)


class PaymentSourceService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = DocumentStore(session)

    def list_all(self, include_inactive: bool = True) -> list[PaymentSource]:
        sources = self.store.list(Collection.payment_sources, PaymentSource)
        if not include_inactive:
            sources = [src for src in sources if src.is_active]
        return sorted(sources, key=lambda src: src.name.lower())

    def get(self, source_id: str) -> PaymentSource:
        source = self.store.get(Collection.payment_sources, source_id, PaymentSource)
        if source is None:
            raise NotFoundError("Payment source", source_id)
        return source

    def create(self, data: PaymentSourceIn) -> PaymentSource:
        validate_payment_source(data)
        fields = data.model_dump()
        fields["name"] = data.name.strip()
        if data.type == PaymentSourceType.investment:
            fields["is_investment"] = True
        source = PaymentSource(**fields)
        self.store.put(Collection.payment_sources, source.id, source)
        self.session.commit()
        return source

    def update(self, source_id: str, data: PaymentSourceIn) -> PaymentSource:
        source = self.get(source_id)
        validate_payment_source(data)
        updated = source.model_copy(update=data.model_dump())
        updated.name = data.name.strip()
        if updated.type == PaymentSourceType.investment:
            updated.is_investment = True
        updated.updated_at = utcnow()
        self.store.put(Collection.payment_sources, source_id, updated)
        self.session.commit()
        return updated


class TemplateService:
    """Bills and incomes share one shape; ``kind`` selects the collection."""

    def __init__(self, session: Session, kind: TemplateKind) -> None:
        self.session = session
        self.kind = kind
        self.collection = TEMPLATE_COLLECTIONS[kind]
        self.store = DocumentStore(session)

    def list_all(self) -> list[RecurringTemplate]:
        templates = self.store.list(self.collection, RecurringTemplate)
        return sorted(templates, key=lambda tpl: tpl.name.lower())

    def list_active(self) -> list[RecurringTemplate]:
        return [tpl for tpl in self.list_all() if tpl.is_active]

    def get(self, template_id: str) -> RecurringTemplate:
        template = self.store.get(self.collection, template_id, RecurringTemplate)
        if template is None:
            raise NotFoundError(self.kind.value.capitalize(), template_id)
        return template

    def _check_references(self, data: TemplateIn) -> None:
        if data.payment_source_id:
            PaymentSourceService(self.session).get(data.payment_source_id)
        if data.category_id:
            CategoryService(self.session).get(data.category_id)

    def create(self, data: TemplateIn) -> RecurringTemplate:
        validate_template(data)
        self._check_references(data)
        template = RecurringTemplate(kind=self.kind, **data.model_dump())
        template.name = data.name.strip()
        self.store.put(self.collection, template.id, template)
        self.session.commit()
        logger.info(f"template_created: kind={self.kind.value} id={template.id}")
        return template

    def update(self, template_id: str, data: TemplateIn) -> RecurringTemplate:
        template = self.get(template_id)
        validate_template(data)
        self._check_references(data)
        updated = template.model_copy(update=data.model_dump())
        updated.name = data.name.strip()
        updated.updated_at = utcnow()
        self.store.put(self.collection, template_id, updated)
        self.session.commit()
        return updated

    def deactivate(self, template_id: str) -> RecurringTemplate:
        template = self.get(template_id)
        if template.is_active:
            template.is_active = False
            template.updated_at = utcnow()
            self.store.put(self.collection, template_id, template)
            self.session.commit()
        return template


def _find_instance(data: MonthlyData, instance_id: str) -> BillInstance | IncomeInstance:
    for instance in data.instances():
        if instance.id == instance_id:
            return instance
    raise NotFoundError("Instance", instance_id)


class MonthService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.store = DocumentStore(session)

    def _synchronizer(self) -> MonthSynchronizer:
        # Called only after the read-only check; the caller owns the commit.
        sources = PaymentSourceService(self.session).list_all()
        payoff_category_id = None
        if any(src.tracks_payoff for src in sources):
            payoff_category_id = (
                CategoryService(self.session).ensure_payoff_category(commit=False).id
            )
        return MonthSynchronizer(
            bills=TemplateService(self.session, TemplateKind.bill).list_active(),
            incomes=TemplateService(self.session, TemplateKind.income).list_active(),
            payment_sources=sources,
            payoff_category_id=payoff_category_id,
        )

    def _save(self, data: MonthlyData) -> None:
        self.store.put(Collection.months, data.month, data)

    def _mutate(self, month: str, action: Callable[[MonthlyData], T]) -> T:
        slug = resolve_month(month).slug
        with month_lock(slug):
            data = self.get_month(slug)
            if data.is_read_only:
                raise ReadOnlyError(slug)
            try:
                result = action(data)
                data.updated_at = utcnow()
                self._save(data)
            except Exception:
                self.session.rollback()
                raise
            self.session.commit()
        return result

    def get_month(self, month: str) -> MonthlyData:
        slug = resolve_month(month).slug
        data = self.store.get(Collection.months, slug, MonthlyData)
        if data is None:
            raise NotFoundError("Month", slug)
        return data

    def month_exists(self, month: str) -> bool:
        return self.store.exists(Collection.months, resolve_month(month).slug)

    def create_month(self, month: str) -> MonthlyData:
        slug = resolve_month(month).slug
        with month_lock(slug):
            if self.month_exists(slug):
                raise ConflictError(f"Month {slug} already exists")
            previous = self.store.get(Collection.months, previous_month(slug), MonthlyData)
            try:
                data = self._synchronizer().create(slug, previous)
                self._save(data)
            except Exception:
                self.session.rollback()
                raise
            self.session.commit()
        return data

    def generate_or_sync_month(self, month: str) -> MonthlyData:
        slug = resolve_month(month).slug
        with month_lock(slug):
            data = self.store.get(Collection.months, slug, MonthlyData)
            if data is not None and data.is_read_only:
                raise ReadOnlyError(slug)
            try:
                if data is None:
                    previous = self.store.get(
                        Collection.months, previous_month(slug), MonthlyData
                    )
                    data = self._synchronizer().create(slug, previous)
                    changed = True
                else:
                    changed = self._synchronizer().sync(data)
                if changed:
                    self._save(data)
            except Exception:
                self.session.rollback()
                raise
            # Also persists a payoff category created for this sync.
            self.session.commit()
        logger.info(f"month_sync: month={slug} changed={changed}")
        return data

    def delete_month(self, month: str) -> None:
        slug = resolve_month(month).slug
        with month_lock(slug):
            if not self.store.delete(Collection.months, slug):
                raise NotFoundError("Month", slug)
            self.session.commit()
        logger.info(f"month_deleted: month={slug}")

    def lock_month(self, month: str, lock: bool = True) -> MonthlyData:
        slug = resolve_month(month).slug
        with month_lock(slug):
            data = self.get_month(slug)
            if data.is_read_only != lock:
                data.is_read_only = lock
                data.updated_at = utcnow()
                self._save(data)
                self.session.commit()
        return data

    def update_bank_balances(self, month: str, balances: dict[str, int]) -> MonthlyData:
        sources = {src.id: src for src in PaymentSourceService(self.session).list_all()}
        today = local_today()

        def action(data: MonthlyData) -> MonthlyData:
            data.bank_balances = dict(balances)
            self._synchronizer().sync_payoffs(data)
            for instance in data.bill_instances:
                if not instance.is_payoff_bill or not instance.payoff_source_id:
                    continue
                source = sources.get(instance.payoff_source_id)
                if source is None or source.track_payments_manually:
                    continue
                balance = balances.get(instance.payoff_source_id)
                if balance is not None:
                    occurrences.reconcile_payoff(instance, balance, today=today)
            return data

        return self._mutate(month, action)

    def update_savings_balances(
        self,
        month: str,
        start: Optional[dict[str, int]] = None,
        end: Optional[dict[str, int]] = None,
        contributions: Optional[dict[str, int]] = None,
    ) -> MonthlyData:
        def action(data: MonthlyData) -> MonthlyData:
            if start is not None:
                data.savings_balances_start = dict(start)
            if end is not None:
                data.savings_balances_end = dict(end)
            if contributions is not None:
                data.savings_contributions = dict(contributions)
            return data

        return self._mutate(month, action)

    def record_occurrence_payment(
        self, month: str, instance_id: str, occurrence_id: str, payment: PaymentIn
    ) -> Occurrence:
        paid_on = payment.paid_on or local_today()

        def action(data: MonthlyData) -> Occurrence:
            instance = _find_instance(data, instance_id)
            return occurrences.record_payment(
                instance,
                occurrence_id,
                paid_on=paid_on,
                amount=payment.amount,
                payment_source_id=payment.payment_source_id,
                notes=payment.notes,
            )

        return self._mutate(month, action)

    def reopen_occurrence(
        self, month: str, instance_id: str, occurrence_id: str
    ) -> Occurrence:
        return self._mutate(
            month,
            lambda data: occurrences.reopen(_find_instance(data, instance_id), occurrence_id),
        )

    def update_occurrence(
        self,
        month: str,
        instance_id: str,
        occurrence_id: str,
        changes: OccurrenceUpdateIn,
    ) -> Occurrence:
        def action(data: MonthlyData) -> Occurrence:
            return occurrences.update_occurrence(
                _find_instance(data, instance_id),
                occurrence_id,
                expected_date=changes.expected_date,
                expected_amount=changes.expected_amount,
                notes=changes.notes,
                clear_notes=changes.clear_notes,
            )

        return self._mutate(month, action)

    def add_adhoc_occurrence(
        self,
        month: str,
        instance_id: str,
        expected_amount: int,
        expected_date: date,
    ) -> Occurrence:
        def action(data: MonthlyData) -> Occurrence:
            return occurrences.add_adhoc_occurrence(
                _find_instance(data, instance_id),
                expected_date=expected_date,
                expected_amount=expected_amount,
            )

        return self._mutate(month, action)

    def remove_occurrence(
        self, month: str, instance_id: str, occurrence_id: str
    ) -> Occurrence:
        return self._mutate(
            month,
            lambda data: occurrences.remove_occurrence(
                _find_instance(data, instance_id), occurrence_id
            ),
        )

    def add_adhoc_instance(
        self, month: str, fields: AdhocInstanceIn
    ) -> BillInstance | IncomeInstance:
        period = resolve_month(month)
        if fields.date is not None and not period.contains(fields.date):
            raise ValidationError(
                f"date {fields.date.isoformat()} is outside {period.slug}", field="date"
            )
        today = local_today()
        expected_date = fields.date or (today if period.contains(today) else period.start)
        now = utcnow()
        occurrence = Occurrence(
            expected_date=expected_date,
            expected_amount=fields.amount,
            is_closed=fields.date is not None,
            closed_date=fields.date,
            is_adhoc=True,
            created_at=now,
            updated_at=now,
        )
        common = dict(
            month=period.slug,
            occurrences=[occurrence],
            is_default=False,
            is_adhoc=True,
            name=fields.name.strip(),
            category_id=fields.category_id,
            payment_source_id=fields.payment_source_id,
            goal_id=fields.goal_id,
            created_at=now,
            updated_at=now,
        )
        if fields.kind == TemplateKind.income:
            instance = IncomeInstance(**common)
        else:
            instance = BillInstance(**common)

        def action(data: MonthlyData) -> BillInstance | IncomeInstance:
            if isinstance(instance, IncomeInstance):
                data.income_instances.append(instance)
            else:
                if instance.category_id is None:
                    instance.category_id = (
                        CategoryService(self.session).ensure_adhoc_category(commit=False).id
                    )
                data.bill_instances.append(instance)
            return instance

        return self._mutate(period.slug, action)

    def delete_adhoc_instance(self, month: str, instance_id: str) -> None:
        def action(data: MonthlyData) -> None:
            instance = _find_instance(data, instance_id)
            if not instance.is_adhoc:
                raise ValidationError("Only ad-hoc items can be deleted from a month")
            data.bill_instances = [i for i in data.bill_instances if i.id != instance_id]
            data.income_instances = [i for i in data.income_instances if i.id != instance_id]

        self._mutate(month, action)

    def add_payoff_payment(
        self,
        month: str,
        instance_id: str,
        amount: int,
        paid_on: Optional[date] = None,
        new_balance: Optional[int] = None,
    ) -> int:
        paid_on = paid_on or local_today()

        def action(data: MonthlyData) -> int:
            instance = _find_instance(data, instance_id)
            if not isinstance(instance, BillInstance) or not instance.is_payoff_bill:
                raise ValidationError("Instance is not a payoff bill")
            remaining = occurrences.add_payoff_payment(
                instance,
                amount=amount,
                paid_on=paid_on,
                current_balance=data.bank_balances.get(instance.payoff_source_id, 0),
                new_balance=new_balance,
            )
            data.bank_balances[instance.payoff_source_id] = remaining
            return remaining

        return self._mutate(month, action)

    def add_expense(self, month: str, fields: ExpenseIn) -> Expense:
        period = resolve_month(month)
        if fields.date is not None and not period.contains(fields.date):
            raise ValidationError(
                f"date {fields.date.isoformat()} is outside {period.slug}", field="date"
            )
        expense = Expense(**fields.model_dump())
        expense.name = fields.name.strip()

        def action(data: MonthlyData) -> Expense:
            if expense.kind == ExpenseKind.free_flowing:
                data.free_flowing_expenses.append(expense)
            else:
                data.variable_expenses.append(expense)
            return expense

        return self._mutate(period.slug, action)

    def remove_expense(self, month: str, expense_id: str) -> None:
        def action(data: MonthlyData) -> None:
            before = len(data.variable_expenses) + len(data.free_flowing_expenses)
            data.variable_expenses = [e for e in data.variable_expenses if e.id != expense_id]
            data.free_flowing_expenses = [
                e for e in data.free_flowing_expenses if e.id != expense_id
            ]
            if len(data.variable_expenses) + len(data.free_flowing_expenses) == before:
                raise NotFoundError("Expense", expense_id)

        self._mutate(month, action)

    def sync_metadata(self, month: str) -> MonthlyData:
        """Refresh each template instance's metadata snapshot and goal link."""
        templates = {
            tpl.id: tpl
            for kind in TemplateKind
            for tpl in TemplateService(self.session, kind).list_all()
        }

        def action(data: MonthlyData) -> MonthlyData:
            for instance in data.instances():
                template = templates.get(instance.template_id or "")
                if template is None or instance.is_adhoc:
                    continue
                metadata = dict(template.metadata) if template.metadata else None
                if instance.metadata != metadata or instance.goal_id != template.goal_id:
                    instance.metadata = metadata
                    instance.goal_id = template.goal_id
                    instance.updated_at = utcnow()
            return data

        return self._mutate(month, action)

    def month_summaries(self) -> list[MonthSummary]:
        sources = PaymentSourceService(self.session).list_all()
        summaries = []
        for data in self.store.list(Collection.months, MonthlyData):
            breakdown = leftover_breakdown(data, sources)
            summaries.append(
                MonthSummary(
                    month=data.month,
                    is_read_only=data.is_read_only,
                    leftover=breakdown.leftover,
                    is_valid=breakdown.is_valid,
                    error_message=breakdown.error_message,
                    bank_balances=breakdown.bank_balances,
                    remaining_income=breakdown.remaining_income,
                    remaining_expenses=breakdown.remaining_expenses,
                    created_at=data.created_at,
                    updated_at=data.updated_at,
                )
            )
        summaries.sort(key=lambda summary: summary.month, reverse=True)
        return summaries


class DetailedViewService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.months = MonthService(session)

    def get_detailed_month(
        self, month: str, today: Optional[date] = None
    ) -> DetailedMonthResponse:
        data = self.months.get_month(month)
        return build_detailed_month(
            data,
            categories=CategoryService(self.session).list_all(),
            sources=PaymentSourceService(self.session).list_all(),
            bills=TemplateService(self.session, TemplateKind.bill).list_all(),
            incomes=TemplateService(self.session, TemplateKind.income).list_all(),
            today=today or local_today(),
        )
