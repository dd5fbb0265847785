from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    DateTime,
    Enum as SAEnum,
    Index,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class BillingPeriod(str, Enum):
    monthly = "monthly"
    bi_weekly = "bi_weekly"
    weekly = "weekly"
    semi_annually = "semi_annually"


class PaymentMethod(str, Enum):
    auto = "auto"
    manual = "manual"


class PaymentSourceType(str, Enum):
    bank_account = "bank_account"
    credit_card = "credit_card"
    line_of_credit = "line_of_credit"
    cash = "cash"
    investment = "investment"


DEBT_SOURCE_TYPES = frozenset(
    {PaymentSourceType.credit_card, PaymentSourceType.line_of_credit}
)


class CategoryType(str, Enum):
    bill = "bill"
    income = "income"
    variable = "variable"


class TemplateKind(str, Enum):
    bill = "bill"
    income = "income"


class ExpenseKind(str, Enum):
    variable = "variable"
    free_flowing = "free_flowing"


class Collection(str, Enum):
    bills = "bills"
    incomes = "incomes"
    payment_sources = "payment_sources"
    categories = "categories"
    months = "months"


TEMPLATE_COLLECTIONS = {
    TemplateKind.bill: Collection.bills,
    TemplateKind.income: Collection.incomes,
}


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Document(Base, TimestampMixin):
    """One JSON document, addressed by collection and key (entity id or month)."""

    __tablename__ = "documents"

    collection: Mapped[Collection] = mapped_column(
        SAEnum(Collection), primary_key=True
    )
    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    __table_args__ = (Index("ix_documents_collection", "collection"),)
