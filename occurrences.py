"""Payment tracking on a single instance's occurrences.

Every function here mutates the instance it is given and leaves persistence to
the caller, so a failed validation never reaches the store.
"""

import logging
from datetime import date, datetime
from typing import Iterable, Optional, Union

from errors import NotFoundError, ValidationError
from periods import resolve_month
from schemas import BillInstance, IncomeInstance, Occurrence, utcnow

logger = logging.getLogger(__name__)

PAYOFF_DAY = 28

InstanceT = Union[BillInstance, IncomeInstance]


def resequence(occurrences: Iterable[Occurrence]) -> list[Occurrence]:
    ordered = sorted(occurrences, key=lambda occ: (occ.expected_date, occ.sequence, occ.id))
    for index, occ in enumerate(ordered, start=1):
        if occ.sequence != index:
            occ.sequence = index
    return ordered


def find_occurrence(instance: InstanceT, occurrence_id: str) -> Occurrence:
    for occ in instance.occurrences:
        if occ.id == occurrence_id:
            return occ
    raise NotFoundError("Occurrence", occurrence_id)


def _check_in_month(instance: InstanceT, day: date, field: str) -> None:
    period = resolve_month(instance.month)
    if not period.contains(day):
        raise ValidationError(
            f"{field} {day.isoformat()} is outside {period.slug}", field=field
        )


def _touch(instance: InstanceT, occ: Occurrence, now: datetime) -> None:
    occ.updated_at = now
    instance.updated_at = now


def record_payment(
    instance: InstanceT,
    occurrence_id: str,
    *,
    paid_on: date,
    amount: Optional[int] = None,
    payment_source_id: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Occurrence:
    """Close an occurrence.

    Paying less than expected splits it: the paid part closes and an ad-hoc
    open occurrence for the remainder lands on the last day of the month.
    Paying more closes it with the overpayment as the actual amount.
    """
    occ = find_occurrence(instance, occurrence_id)
    if occ.is_closed:
        raise ValidationError("Occurrence is already closed. Reopen it first.")
    if amount is not None and amount <= 0:
        raise ValidationError("Payment amount must be greater than 0", field="amount")
    now = now or utcnow()

    if amount is not None and amount < occ.expected_amount:
        remainder = Occurrence(
            sequence=occ.sequence + 1,
            expected_date=resolve_month(instance.month).end,
            expected_amount=occ.expected_amount - amount,
            is_adhoc=True,
            created_at=now,
            updated_at=now,
        )
        instance.occurrences.append(remainder)
        occ.expected_amount = amount
        logger.info(
            f"occurrence_split: instance={instance.id} occurrence={occ.id} "
            f"paid={amount} remaining={remainder.expected_amount}"
        )
    elif amount is not None and amount > occ.expected_amount:
        occ.paid_amount = amount

    occ.is_closed = True
    occ.closed_date = paid_on
    if payment_source_id is not None:
        occ.payment_source_id = payment_source_id
    if notes is not None:
        occ.notes = notes.strip() or None
    _touch(instance, occ, now)
    instance.occurrences = resequence(instance.occurrences)
    return occ


def reopen(
    instance: InstanceT, occurrence_id: str, now: Optional[datetime] = None
) -> Occurrence:
    occ = find_occurrence(instance, occurrence_id)
    if not occ.is_closed:
        raise ValidationError("Occurrence is not closed")
    occ.is_closed = False
    occ.closed_date = None
    occ.paid_amount = None
    _touch(instance, occ, now or utcnow())
    return occ


def update_occurrence(
    instance: InstanceT,
    occurrence_id: str,
    *,
    expected_date: Optional[date] = None,
    expected_amount: Optional[int] = None,
    notes: Optional[str] = None,
    clear_notes: bool = False,
    now: Optional[datetime] = None,
) -> Occurrence:
    occ = find_occurrence(instance, occurrence_id)
    if expected_amount is not None and expected_amount < 0:
        raise ValidationError("Expected amount cannot be negative", field="expected_amount")
    if expected_date is not None:
        _check_in_month(instance, expected_date, "expected_date")
        occ.expected_date = expected_date
    if expected_amount is not None:
        occ.expected_amount = expected_amount
    if clear_notes:
        occ.notes = None
    elif notes is not None:
        occ.notes = notes.strip() or None
    _touch(instance, occ, now or utcnow())
    instance.occurrences = resequence(instance.occurrences)
    return occ


def add_adhoc_occurrence(
    instance: InstanceT,
    *,
    expected_date: date,
    expected_amount: int,
    now: Optional[datetime] = None,
) -> Occurrence:
    if expected_amount <= 0:
        raise ValidationError("Amount must be greater than 0", field="expected_amount")
    _check_in_month(instance, expected_date, "expected_date")
    now = now or utcnow()
    occ = Occurrence(
        sequence=len(instance.occurrences) + 1,
        expected_date=expected_date,
        expected_amount=expected_amount,
        is_adhoc=True,
        created_at=now,
        updated_at=now,
    )
    instance.occurrences.append(occ)
    instance.occurrences = resequence(instance.occurrences)
    instance.updated_at = now
    return occ


def remove_occurrence(
    instance: InstanceT, occurrence_id: str, now: Optional[datetime] = None
) -> Occurrence:
    occ = find_occurrence(instance, occurrence_id)
    is_payoff = isinstance(instance, BillInstance) and instance.is_payoff_bill
    if not occ.is_adhoc and not is_payoff:
        raise ValidationError("Only ad-hoc occurrences can be removed")
    instance.occurrences = resequence(o for o in instance.occurrences if o.id != occurrence_id)
    instance.updated_at = now or utcnow()
    return occ


def _payoff_date(instance: InstanceT) -> date:
    period = resolve_month(instance.month)
    return period.start.replace(day=PAYOFF_DAY)


def _open_payoff(instance: InstanceT, remaining: int, now: datetime) -> Occurrence:
    occ = Occurrence(
        sequence=len(instance.occurrences) + 1,
        expected_date=_payoff_date(instance),
        expected_amount=remaining,
        created_at=now,
        updated_at=now,
    )
    instance.occurrences.append(occ)
    return occ


def seed_payoff(
    instance: BillInstance, balance: int, now: Optional[datetime] = None
) -> None:
    """Give an empty payoff bill its single open occurrence for the balance owed."""
    remaining = abs(balance)
    if instance.occurrences or remaining == 0:
        return
    now = now or utcnow()
    _open_payoff(instance, remaining, now)
    instance.updated_at = now


def reconcile_payoff(
    instance: BillInstance,
    balance: int,
    *,
    today: date,
    now: Optional[datetime] = None,
) -> bool:
    """Make the open occurrence match the balance still owed.

    Closed occurrences are payment history and stay as they are. Returns
    whether anything changed.
    """
    remaining = abs(balance)
    now = now or utcnow()
    open_occ = next((occ for occ in instance.occurrences if not occ.is_closed), None)
    if remaining > 0:
        if open_occ is None:
            _open_payoff(instance, remaining, now)
        elif open_occ.expected_amount != remaining:
            open_occ.expected_amount = remaining
            open_occ.updated_at = now
        else:
            return False
    elif open_occ is not None:
        open_occ.expected_amount = 0
        open_occ.is_closed = True
        open_occ.closed_date = today
        open_occ.updated_at = now
    else:
        return False
    instance.occurrences = resequence(instance.occurrences)
    instance.updated_at = now
    logger.info(f"payoff_reconciled: instance={instance.id} remaining={remaining}")
    return True


def add_payoff_payment(
    instance: BillInstance,
    *,
    amount: int,
    paid_on: date,
    current_balance: int,
    new_balance: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """Record a payment against a payoff bill and return the balance still owed."""
    if not instance.is_payoff_bill or not instance.payoff_source_id:
        raise ValidationError("Instance is not a payoff bill")
    if amount <= 0:
        raise ValidationError("Payment amount must be greater than 0", field="amount")
    if new_balance is not None:
        remaining = abs(new_balance)
    else:
        remaining = max(abs(current_balance) - amount, 0)
    now = now or utcnow()

    open_occ = next((occ for occ in instance.occurrences if not occ.is_closed), None)
    if open_occ is not None:
        open_occ.expected_amount = amount
        open_occ.is_closed = True
        open_occ.closed_date = paid_on
        open_occ.updated_at = now
    else:
        instance.occurrences.append(
            Occurrence(
                sequence=len(instance.occurrences) + 1,
                expected_date=paid_on,
                expected_amount=amount,
                is_closed=True,
                closed_date=paid_on,
                is_adhoc=True,
                created_at=now,
                updated_at=now,
            )
        )
    if remaining > 0:
        _open_payoff(instance, remaining, now)

    instance.occurrences = resequence(instance.occurrences)
    instance.updated_at = now
    logger.info(
        f"payoff_payment: instance={instance.id} amount={amount} remaining={remaining}"
    )
    return remaining
