from __future__ import annotations

import logging
from datetime import datetime, time, timedelta
from typing import Iterator, Optional

from passlib.context import CryptContext
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from models import (
    Bill,
    Budget,
    Category,
    CategoryType,
    Debt,
    DebtStatus,
    Goal,
    Investment,
    MerchantMapping,
    MessageKind,
    MessageStatus,
    ScheduledMessage,
    Transaction,
    TransactionType,
    User,
    UserSettings,
)
from periods import Period, local_now
from schemas import (
    BillIn,
    BillUpdate,
    BudgetIn,
    DebtIn,
    DebtUpdate,
    GoalIn,
    GoalUpdate,
    InvestmentIn,
    InvestmentUpdate,
    SettingsIn,
    TransactionIn,
    TransactionUpdate,
)

logger = logging.getLogger(__name__)


class NotFound(ValueError):
    """The id does not resolve inside the caller's ownership scope."""


class InvalidInput(ValueError):
    pass


class Conflict(ValueError):
    pass


class Unavailable(RuntimeError):
    """The store or an external sink could not be reached."""


DEFAULT_CATEGORIES: tuple[tuple[str, CategoryType, str, str], ...] = (
    ("Food & Drinks", CategoryType.expense, "#f97316", "Utensils"),
    ("Transport", CategoryType.expense, "#3b82f6", "Car"),
    ("Entertainment", CategoryType.expense, "#a855f7", "Gamepad2"),
    ("Shopping", CategoryType.expense, "#ec4899", "ShoppingBag"),
    ("Health", CategoryType.expense, "#22c55e", "Heart"),
    ("Education", CategoryType.expense, "#14b8a6", "BookOpen"),
    ("Bills", CategoryType.expense, "#ef4444", "Receipt"),
    ("Investment", CategoryType.expense, "#10b981", "TrendingUp"),
    ("Savings", CategoryType.expense, "#3b82f6", "Wallet"),
    ("Salary", CategoryType.income, "#3b82f6", "Banknote"),
    ("Freelance", CategoryType.income, "#8b5cf6", "Briefcase"),
    ("Other", CategoryType.expense, "#64748b", "MoreHorizontal"),
)


pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, stored: str) -> bool:
    return pwd_context.verify(password, stored)


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> User:
        user = self.session.scalar(select(User).where(User.id == user_id))
        if not user:
            raise NotFound("User not found")
        return user

    def get_by_messaging_id(self, messaging_id: int) -> Optional[User]:
        return self.session.scalar(
            select(User).where(User.messaging_id == messaging_id)
        )

    def get_or_create_ghost(
        self,
        messaging_id: int,
        *,
        name: Optional[str] = None,
        username: Optional[str] = None,
    ) -> User:
        existing = self.get_by_messaging_id(messaging_id)
        if existing:
            return existing
        user = User(messaging_id=messaging_id, name=name, username=username)
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError:
            # Two webhook deliveries for the same sender raced; keep the winner.
            self.session.rollback()
            existing = self.get_by_messaging_id(messaging_id)
            if existing is None:
                raise
            return existing
        self.session.refresh(user)
        logger.info(f"ghost_user_created: user_id={user.id}")
        return user

    def register(self, email: str, password: str, name: str) -> User:
        email = email.strip().lower()
        existing = self.session.scalar(
            select(User).where(func.lower(User.email) == email)
        )
        if existing:
            raise Conflict("User already exists")
        user = User(email=email, password_hash=hash_password(password), name=name)
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def authenticate(self, email: str, password: str) -> Optional[User]:
        user = self.session.scalar(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )
        if user is None or user.password_hash is None:
            return None
        if not verify_password(password, user.password_hash):
            return None
        return user

    def iter_with_messaging_id(self, page_size: int = 100) -> Iterator[list[int]]:
        """Yield pages of user ids that have a linked messaging id, in id order."""
        last_id = 0
        while True:
            ids = self.session.scalars(
                select(User.id)
                .where(User.messaging_id.is_not(None), User.id > last_id)
                .order_by(User.id)
                .limit(page_size)
            ).all()
            if not ids:
                return
            yield list(ids)
            last_id = ids[-1]


class CategoryService:
    def __init__(self, session: Session, *, autocommit: bool = True) -> None:
        self.session = session
        self.autocommit = autocommit

    def list_all(self) -> list[Category]:
        return self.session.scalars(
            select(Category).order_by(Category.type, Category.name)
        ).all()

    def get(self, category_id: int) -> Category:
        category = self.session.scalar(
            select(Category).where(Category.id == category_id)
        )
        if not category:
            raise NotFound("Category not found")
        return category

    def by_name(self, name: str) -> Optional[Category]:
        cleaned = (name or "").strip().lower()
        if not cleaned:
            return None
        return self.session.scalar(
            select(Category).where(func.lower(Category.name) == cleaned)
        )

    def seed_defaults(self) -> int:
        existing = {c.name.lower() for c in self.list_all()}
        created = 0
        for name, type_, color, icon in DEFAULT_CATEGORIES:
            if name.lower() in existing:
                continue
            self.session.add(Category(name=name, type=type_, color=color, icon=icon))
            created += 1
        self._save()
        return created

    def resolve(self, name: Optional[str], *, fallback_id: Optional[int] = None) -> Category:
        """Resolve a free-text category name to a row, never failing the write.

        Fallback chain: case-insensitive exact name, the configured default
        category, ``fallback_id`` when it exists, and finally a freshly created
        default category.
        """
        if name:
            match = self.by_name(name)
            if match:
                return match

        default_name = get_settings().default_category
        default = self.by_name(default_name)
        if default:
            return default

        if fallback_id is not None:
            fallback = self.session.scalar(
                select(Category).where(Category.id == fallback_id)
            )
            if fallback:
                return fallback

        created = Category(
            name=default_name,
            type=CategoryType.expense,
            color="#64748b",
            icon="MoreHorizontal",
        )
        self.session.add(created)
        self.session.flush()
        logger.info(f"default_category_created: name={default_name}")
        return created

    def _save(self) -> None:
        if self.autocommit:
            self.session.commit()
        else:
            self.session.flush()


class _OwnedService:
    """Base for services whose rows belong to ``user_id``.

    Every lookup filters by ``user_id`` inside the SQL statement. With
    ``autocommit=False`` the service only flushes, leaving the commit to the
    caller so several writes land as one unit.
    """

    def __init__(
        self, session: Session, user_id: int, *, autocommit: bool = True
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.autocommit = autocommit

    def _owned(self, model, row_id: int, label: str):
        row = self.session.scalar(
            select(model).where(model.id == row_id, model.user_id == self.user_id)
        )
        if not row:
            raise NotFound(f"{label} not found")
        return row

    def _save(self, *rows) -> None:
        if self.autocommit:
            self.session.commit()
            for row in rows:
                self.session.refresh(row)
        else:
            self.session.flush()


class MerchantMappingService(_OwnedService):
    def lookup(self, merchant_name: str) -> Optional[MerchantMapping]:
        cleaned = (merchant_name or "").strip().lower()
        if not cleaned:
            return None
        return self.session.scalar(
            select(MerchantMapping)
            .where(
                MerchantMapping.user_id == self.user_id,
                func.lower(MerchantMapping.merchant_name) == cleaned,
            )
            .order_by(MerchantMapping.confidence.desc(), MerchantMapping.id.desc())
        )

    def learn(self, merchant_name: str, category_id: int) -> MerchantMapping:
        mapping = self.lookup(merchant_name)
        if mapping:
            mapping.category_id = category_id
        else:
            mapping = MerchantMapping(
                user_id=self.user_id,
                merchant_name=merchant_name.strip(),
                category_id=category_id,
            )
            self.session.add(mapping)
        self._save(mapping)
        return mapping


class ScheduledMessageService(_OwnedService):
    def schedule(
        self,
        message: str,
        scheduled_at: datetime,
        *,
        kind: MessageKind = MessageKind.other,
    ) -> ScheduledMessage:
        row = ScheduledMessage(
            user_id=self.user_id,
            message=message,
            scheduled_at=scheduled_at,
            kind=kind,
            status=MessageStatus.pending,
        )
        self.session.add(row)
        self._save(row)
        return row

    def due_for_user(self, now: datetime) -> list[ScheduledMessage]:
        return self.session.scalars(
            select(ScheduledMessage)
            .where(
                ScheduledMessage.user_id == self.user_id,
                ScheduledMessage.status == MessageStatus.pending,
                ScheduledMessage.scheduled_at <= now,
            )
            .order_by(ScheduledMessage.scheduled_at, ScheduledMessage.id)
        ).all()

    def drain_due(self, now: datetime) -> list[ScheduledMessage]:
        """Mark every due message sent and return them; each is handed out once."""
        rows = self.due_for_user(now)
        for row in rows:
            row.status = MessageStatus.sent
        self._save(*rows)
        return rows


class TransactionService(_OwnedService):
    def create(self, data: TransactionIn) -> Transaction:
        category = self._category_for(data.category, data.category_id, data.merchant_name)
        occurred_at = data.occurred_at or local_now()
        description = data.description.strip() or (
            "Income" if data.type == TransactionType.income else "Expense"
        )
        txn = Transaction(
            user_id=self.user_id,
            amount=data.amount,
            type=data.type,
            category=category,
            occurred_at=occurred_at,
            description=description,
            merchant_name=data.merchant_name,
            payment_method=data.payment_method,
            is_verified=data.is_verified,
        )
        self.session.add(txn)
        self.session.flush()

        if data.merchant_name and data.category:
            MerchantMappingService(
                self.session, self.user_id, autocommit=False
            ).learn(data.merchant_name, category.id)
        self._schedule_stock_opname(txn)
        self._save(txn)
        return txn

    def _category_for(
        self,
        name: Optional[str],
        category_id: Optional[int],
        merchant_name: Optional[str],
    ) -> Category:
        categories = CategoryService(self.session, autocommit=False)
        if not name and category_id is not None:
            found = self.session.scalar(
                select(Category).where(Category.id == category_id)
            )
            if found:
                return found
        if not name and merchant_name:
            mapping = MerchantMappingService(self.session, self.user_id).lookup(
                merchant_name
            )
            if mapping:
                return categories.get(mapping.category_id)
        return categories.resolve(name, fallback_id=category_id)

    def _schedule_stock_opname(self, txn: Transaction) -> None:
        threshold = get_settings().large_cash_withdrawal
        is_cash = (txn.payment_method or "").lower() == "cash"
        if txn.type != TransactionType.expense or not is_cash or txn.amount < threshold:
            return
        next_morning = datetime.combine(
            txn.occurred_at.date() + timedelta(days=1), time(hour=8)
        )
        ScheduledMessageService(self.session, self.user_id, autocommit=False).schedule(
            f"Cash check: you spent {txn.amount:,.0f} in cash on "
            f"'{txn.description}'. How much of it is left?",
            next_morning,
            kind=MessageKind.stock_opname,
        )

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def list(
        self,
        period: Optional[Period] = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        if period is not None:
            start, end = period.window
            stmt = stmt.where(
                Transaction.occurred_at >= start, Transaction.occurred_at < end
            )
        return self.session.scalars(stmt).all()

    def recent(self, limit: int = 5) -> list[Transaction]:
        return self.list(limit=limit)

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        fields = data.model_dump(exclude_unset=True, exclude_none=True)
        category_name = fields.pop("category", None)
        category_id = fields.pop("category_id", None)
        if category_name:
            # An unknown name on edit keeps the current category.
            match = CategoryService(self.session).by_name(category_name)
            if match:
                txn.category = match
        elif category_id is not None:
            txn.category = CategoryService(self.session).get(category_id)
        for field, value in fields.items():
            setattr(txn, field, value)
        self._save(txn)
        return txn

    def delete(self, transaction_id: int) -> Transaction:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self._save()
        return txn


class BudgetService(_OwnedService):
    def _find(self, data: BudgetIn) -> Optional[Budget]:
        return self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.category_id == data.category_id,
                Budget.month == data.month,
                Budget.year == data.year,
            )
        )

    def create(self, data: BudgetIn) -> Budget:
        """Create or, when the (category, month, year) budget exists, update it."""
        CategoryService(self.session).get(data.category_id)
        existing = self._find(data)
        if existing is None:
            budget = Budget(
                user_id=self.user_id,
                category_id=data.category_id,
                month=data.month,
                year=data.year,
                amount=data.amount,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(budget)
            except IntegrityError:
                # Another writer created the same month's budget first.
                existing = self._find(data)
                if existing is None:
                    raise
            else:
                self._save(budget)
                return budget

        existing.amount = data.amount
        self._save(existing)
        return existing

    def get(self, budget_id: int) -> Budget:
        return self._owned(Budget, budget_id, "Budget")

    def list_for_month(self, month: int, year: int) -> list[Budget]:
        return self.session.scalars(
            select(Budget)
            .options(joinedload(Budget.category))
            .where(
                Budget.user_id == self.user_id,
                Budget.month == month,
                Budget.year == year,
            )
            .order_by(Budget.id)
        ).all()

    def update(self, budget_id: int, amount: float) -> Budget:
        budget = self.get(budget_id)
        budget.amount = amount
        self._save(budget)
        return budget

    def delete(self, budget_id: int) -> Budget:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self._save()
        return budget


class GoalService(_OwnedService):
    def create(self, data: GoalIn) -> Goal:
        goal = Goal(
            user_id=self.user_id,
            name=data.name.strip(),
            target_amount=data.target_amount,
            current_amount=data.current_amount,
            deadline=data.deadline,
        )
        if data.icon:
            goal.icon = data.icon
        if data.color:
            goal.color = data.color
        self.session.add(goal)
        self._save(goal)
        return goal

    def get(self, goal_id: int) -> Goal:
        return self._owned(Goal, goal_id, "Goal")

    def list_all(self) -> list[Goal]:
        return self.session.scalars(
            select(Goal).where(Goal.user_id == self.user_id).order_by(Goal.id)
        ).all()

    def update(self, goal_id: int, data: GoalUpdate) -> Goal:
        goal = self.get(goal_id)
        # Direct sets are manual overrides and may exceed the target.
        for field, value in data.model_dump(exclude_unset=True, exclude_none=True).items():
            setattr(goal, field, value)
        self._save(goal)
        return goal

    def deposit(self, goal_id: int, amount: float) -> float:
        if amount <= 0:
            raise InvalidInput("Amount must be positive")
        goal = self.get(goal_id)
        moved = goal.apply_progress(amount)
        self._save(goal)
        return moved

    def withdraw(self, goal_id: int, amount: float) -> float:
        if amount <= 0:
            raise InvalidInput("Amount must be positive")
        goal = self.get(goal_id)
        if amount > goal.current_amount:
            raise InvalidInput(
                f"Goal '{goal.name}' only holds {goal.current_amount:,.0f}"
            )
        moved = -goal.apply_progress(-amount)
        self._save(goal)
        return moved

    def delete(self, goal_id: int) -> Goal:
        goal = self.get(goal_id)
        self.session.execute(
            update(UserSettings)
            .where(
                UserSettings.user_id == self.user_id,
                UserSettings.primary_goal_id == goal.id,
            )
            .values(primary_goal_id=None)
        )
        self.session.delete(goal)
        self._save()
        return goal


class BillService(_OwnedService):
    def create(self, data: BillIn) -> Bill:
        if data.category_id is not None:
            CategoryService(self.session).get(data.category_id)
        bill = Bill(user_id=self.user_id, **data.model_dump())
        self.session.add(bill)
        self._save(bill)
        return bill

    def get(self, bill_id: int) -> Bill:
        return self._owned(Bill, bill_id, "Bill")

    def list_all(self, *, active_only: bool = False) -> list[Bill]:
        stmt = (
            select(Bill)
            .where(Bill.user_id == self.user_id)
            .order_by(Bill.due_day, Bill.id)
        )
        if active_only:
            stmt = stmt.where(Bill.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def update(self, bill_id: int, data: BillUpdate) -> Bill:
        bill = self.get(bill_id)
        fields = data.model_dump(exclude_unset=True, exclude_none=True)
        if "category_id" in fields:
            CategoryService(self.session).get(fields["category_id"])
        for field, value in fields.items():
            setattr(bill, field, value)
        self._save(bill)
        return bill

    def toggle_paid(self, bill_id: int) -> Bill:
        bill = self.get(bill_id)
        bill.is_paid = not bill.is_paid
        bill.last_paid_at = local_now() if bill.is_paid else bill.last_paid_at
        self._save(bill)
        return bill

    def mark_paid(
        self, bill_id: int, *, record_transaction: bool = True
    ) -> tuple[Bill, Optional[Transaction]]:
        """Flag the bill paid and optionally debit the ledger in the same commit."""
        bill = self.get(bill_id)
        txn: Optional[Transaction] = None
        if record_transaction:
            category_name = bill.category.name if bill.category else "Bills"
            txn = TransactionService(self.session, self.user_id, autocommit=False).create(
                TransactionIn(
                    amount=bill.amount,
                    type=TransactionType.expense,
                    category=category_name,
                    category_id=bill.category_id,
                    description=f"Bill payment: {bill.name}",
                    payment_method="transfer",
                )
            )
        bill.is_paid = True
        bill.last_paid_at = local_now()
        if self.autocommit:
            self.session.commit()
            self.session.refresh(bill)
        else:
            self.session.flush()
        return bill, txn

    def delete(self, bill_id: int) -> Bill:
        bill = self.get(bill_id)
        self.session.delete(bill)
        self._save()
        return bill


class InvestmentService(_OwnedService):
    def create(self, data: InvestmentIn) -> Investment:
        fields = data.model_dump()
        if fields["current_price"] is None:
            fields["current_price"] = fields["avg_buy_price"]
        investment = Investment(user_id=self.user_id, **fields)
        self.session.add(investment)
        self._save(investment)
        return investment

    def get(self, investment_id: int) -> Investment:
        return self._owned(Investment, investment_id, "Investment")

    def list_all(self) -> list[Investment]:
        return self.session.scalars(
            select(Investment)
            .where(Investment.user_id == self.user_id)
            .order_by(Investment.id)
        ).all()

    def update(self, investment_id: int, data: InvestmentUpdate) -> Investment:
        investment = self.get(investment_id)
        for field, value in data.model_dump(exclude_unset=True, exclude_none=True).items():
            setattr(investment, field, value)
        self._save(investment)
        return investment

    def delete(self, investment_id: int) -> Investment:
        investment = self.get(investment_id)
        self.session.delete(investment)
        self._save()
        return investment


class DebtService(_OwnedService):
    def create(self, data: DebtIn) -> Debt:
        debt = Debt(user_id=self.user_id, **data.model_dump())
        self.session.add(debt)
        self._save(debt)
        return debt

    def get(self, debt_id: int) -> Debt:
        return self._owned(Debt, debt_id, "Debt")

    def list_all(self, status: Optional[DebtStatus] = None) -> list[Debt]:
        stmt = (
            select(Debt)
            .where(Debt.user_id == self.user_id)
            .order_by(Debt.created_at.desc(), Debt.id.desc())
        )
        if status is not None:
            stmt = stmt.where(Debt.status == status)
        return self.session.scalars(stmt).all()

    def update(self, debt_id: int, data: DebtUpdate) -> Debt:
        debt = self.get(debt_id)
        fields = data.model_dump(exclude_unset=True, exclude_none=True)
        if fields.get("amount") == 0:
            raise InvalidInput("Debt amount cannot be zero")
        for field, value in fields.items():
            setattr(debt, field, value)
        self._save(debt)
        return debt

    def mark_paid(self, debt_id: int) -> Debt:
        debt = self.get(debt_id)
        debt.status = DebtStatus.paid
        self._save(debt)
        return debt

    def delete(self, debt_id: int) -> Debt:
        debt = self.get(debt_id)
        self.session.delete(debt)
        self._save()
        return debt


class SettingsService(_OwnedService):
    def get_or_create(self) -> UserSettings:
        settings = self.session.scalar(
            select(UserSettings).where(UserSettings.user_id == self.user_id)
        )
        if settings:
            return settings
        settings = UserSettings(user_id=self.user_id)
        self.session.add(settings)
        self._save(settings)
        return settings

    def update(self, data: SettingsIn) -> UserSettings:
        settings = self.get_or_create()
        fields = data.model_dump(exclude_unset=True)
        if fields.get("primary_goal_id") is not None:
            GoalService(self.session, self.user_id).get(fields["primary_goal_id"])
        if fields.get("security_pin"):
            fields["security_pin"] = hash_password(fields["security_pin"])
        for field, value in fields.items():
            if value is None and field not in ("primary_goal_id", "security_pin"):
                continue
            setattr(settings, field, value)
        self._save(settings)
        return settings

