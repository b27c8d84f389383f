from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def _text_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=lambda members: [member.value for member in members],
    )


class CategoryType(str, Enum):
    expense = "expense"
    income = "income"


class TransactionType(str, Enum):
    expense = "expense"
    income = "income"
    transfer = "transfer"


class BillFrequency(str, Enum):
    monthly = "monthly"
    weekly = "weekly"
    yearly = "yearly"


class InvestmentType(str, Enum):
    stock = "stock"
    crypto = "crypto"
    mutual_fund = "mutual_fund"
    gold = "gold"
    bond = "bond"
    other = "other"


class DebtStatus(str, Enum):
    unpaid = "unpaid"
    paid = "paid"


class MessageStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"


class MessageKind(str, Enum):
    stock_opname = "stock_opname"
    reminder = "reminder"
    other = "other"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    messaging_id: Mapped[Optional[int]] = mapped_column(BigInteger, unique=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255))
    name: Mapped[Optional[str]] = mapped_column(String(120))
    username: Mapped[Optional[str]] = mapped_column(String(120))

    settings: Mapped[Optional["UserSettings"]] = relationship(
        "UserSettings", back_populates="user", uselist=False
    )

    @property
    def is_ghost(self) -> bool:
        return self.password_hash is None


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    type: Mapped[CategoryType] = mapped_column(
        _text_enum(CategoryType, "categorytype"), nullable=False
    )
    color: Mapped[str] = mapped_column(String(9), nullable=False, default="#3b82f6")
    icon: Mapped[str] = mapped_column(String(40), nullable=False, default="Wallet")


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        _text_enum(TransactionType, "transactiontype"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    merchant_name: Mapped[Optional[str]] = mapped_column(String(120))
    payment_method: Mapped[Optional[str]] = mapped_column(String(40))
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "occurred_at"),
        Index(
            "ix_transactions_user_category_date",
            "user_id",
            "category_id",
            "occurred_at",
        ),
        CheckConstraint("amount >= 0", name="ck_transactions_amount_positive"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "category_id",
            "month",
            "year",
            name="uq_budget_user_category_month",
        ),
        CheckConstraint("amount >= 0", name="ck_budget_amount_positive"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
    )


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    target_amount: Mapped[float] = mapped_column(Float, nullable=False)
    current_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    deadline: Mapped[Optional[date]] = mapped_column(Date)
    icon: Mapped[str] = mapped_column(String(40), nullable=False, default="Target")
    color: Mapped[str] = mapped_column(String(9), nullable=False, default="#3b82f6")

    def apply_progress(self, delta: float) -> float:
        """Move ``current_amount`` by ``delta`` and return the amount actually moved.

        Deposits stop at ``target_amount``; withdrawals stop at zero. Manual
        edits go through the service's update path instead and may exceed the
        target.
        """
        current = self.current_amount or 0.0
        if delta >= 0:
            ceiling = max(self.target_amount, current)
            new_amount = min(current + delta, ceiling)
        else:
            new_amount = max(current + delta, 0.0)
        moved = new_amount - current
        self.current_amount = new_amount
        return moved


class Bill(Base, TimestampMixin):
    __tablename__ = "bills"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    due_day: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    frequency: Mapped[BillFrequency] = mapped_column(
        _text_enum(BillFrequency, "billfrequency"),
        nullable=False,
        default=BillFrequency.monthly,
    )
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    icon: Mapped[str] = mapped_column(String(40), nullable=False, default="Receipt")
    color: Mapped[str] = mapped_column(String(9), nullable=False, default="#6366f1")
    notes: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_bill_due_day_range"),
        CheckConstraint("amount >= 0", name="ck_bill_amount_positive"),
    )


class Investment(Base, TimestampMixin):
    __tablename__ = "investments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[InvestmentType] = mapped_column(
        _text_enum(InvestmentType, "investmenttype"),
        nullable=False,
        default=InvestmentType.other,
    )
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    avg_buy_price: Mapped[float] = mapped_column(Float, nullable=False)
    current_price: Mapped[float] = mapped_column(Float, nullable=False)
    platform: Mapped[Optional[str]] = mapped_column(String(80))
    icon: Mapped[str] = mapped_column(String(40), nullable=False, default="TrendingUp")
    color: Mapped[str] = mapped_column(String(9), nullable=False, default="#10b981")
    notes: Mapped[Optional[str]] = mapped_column(Text)


class Debt(Base, TimestampMixin):
    __tablename__ = "debts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    counterpart_name: Mapped[str] = mapped_column(String(120), nullable=False)
    # Positive is owed to the user, negative is owed by the user.
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[DebtStatus] = mapped_column(
        _text_enum(DebtStatus, "debtstatus"), nullable=False, default=DebtStatus.unpaid
    )


class ScheduledMessage(Base, TimestampMixin):
    __tablename__ = "scheduled_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[MessageStatus] = mapped_column(
        _text_enum(MessageStatus, "messagestatus"),
        nullable=False,
        default=MessageStatus.pending,
    )
    kind: Mapped[MessageKind] = mapped_column(
        _text_enum(MessageKind, "messagekind"),
        nullable=False,
        default=MessageKind.other,
    )

    __table_args__ = (
        Index("ix_scheduled_messages_user_status", "user_id", "status", "scheduled_at"),
    )


class MerchantMapping(Base, TimestampMixin):
    __tablename__ = "merchant_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    merchant_name: Mapped[str] = mapped_column(String(120), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)

    __table_args__ = (
        Index("ix_merchant_mappings_user_name", "user_id", "merchant_name"),
    )


class UserSettings(Base, TimestampMixin):
    __tablename__ = "user_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"), nullable=False, unique=True
    )
    hourly_rate: Mapped[float] = mapped_column(Float, nullable=False, default=50000)
    # Cleared by GoalService.delete when the goal goes away.
    primary_goal_id: Mapped[Optional[int]] = mapped_column(ForeignKey("goals.id"))
    security_pin: Mapped[Optional[str]] = mapped_column(String(255))
    is_app_lock_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    goals_indexed_for: Mapped[Optional[str]] = mapped_column(String(7))

    user: Mapped["User"] = relationship("User", back_populates="settings")


# Every table whose rows belong to exactly one user. Reconciliation walks this
# list; user_settings is handled separately because it is one-to-one.
OWNED_MODELS: tuple[type[Base], ...] = (
    Transaction,
    Budget,
    Goal,
    Bill,
    Investment,
    Debt,
    ScheduledMessage,
    MerchantMapping,
)
