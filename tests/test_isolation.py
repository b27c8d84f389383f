from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import User
from periods import month_period
from schemas import BillIn, BudgetIn, DebtIn, GoalIn, InvestmentIn, TransactionIn
from services import (
    BillService,
    BudgetService,
    CategoryService,
    DebtService,
    GoalService,
    InvestmentService,
    NotFound,
    TransactionService,
)
from stats import StatsService


def _user(session: Session, email: str) -> User:
    user = User(email=email, password_hash="not-a-real-hash", name=email.split("@")[0])
    session.add(user)
    session.commit()
    return user


def test_reads_scoped_to_one_user_never_return_another_users_rows() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        CategoryService(session).seed_defaults()
        food = CategoryService(session).by_name("Food & Drinks")
        alice = _user(session, "alice@example.com")
        bob = _user(session, "bob@example.com")

        txn = TransactionService(session, alice.id).create(
            TransactionIn(
                amount=50_000,
                category_id=food.id,
                occurred_at=datetime(2026, 3, 5, 12, 0),
                description="Lunch",
            )
        )
        budget = BudgetService(session, alice.id).create(
            BudgetIn(category_id=food.id, month=3, year=2026, amount=1_000_000)
        )
        goal = GoalService(session, alice.id).create(
            GoalIn(name="Laptop", target_amount=10_000_000, current_amount=500_000)
        )
        bill = BillService(session, alice.id).create(
            BillIn(name="Internet", amount=350_000, due_day=10)
        )
        investment = InvestmentService(session, alice.id).create(
            InvestmentIn(name="BBCA", quantity=100, avg_buy_price=9_000)
        )
        debt = DebtService(session, alice.id).create(
            DebtIn(counterpart_name="Budi", amount=200_000)
        )

        march = month_period(2026, 3)
        assert TransactionService(session, bob.id).list(march) == []
        assert BudgetService(session, bob.id).list_for_month(3, 2026) == []
        assert GoalService(session, bob.id).list_all() == []
        assert BillService(session, bob.id).list_all() == []
        assert InvestmentService(session, bob.id).list_all() == []
        assert DebtService(session, bob.id).list_all() == []

        with pytest.raises(NotFound):
            TransactionService(session, bob.id).get(txn.id)
        with pytest.raises(NotFound):
            BudgetService(session, bob.id).get(budget.id)
        with pytest.raises(NotFound):
            GoalService(session, bob.id).get(goal.id)
        with pytest.raises(NotFound):
            BillService(session, bob.id).get(bill.id)
        with pytest.raises(NotFound):
            InvestmentService(session, bob.id).get(investment.id)
        with pytest.raises(NotFound):
            DebtService(session, bob.id).get(debt.id)

        bob_stats = StatsService(session, bob.id)
        monthly = bob_stats.monthly_stats(2026, 3)
        assert (monthly.income, monthly.expense, monthly.balance) == (0, 0, 0)
        assert bob_stats.budget_spent(food.id, 3, 2026) == 0
        assert bob_stats.goals_total() == 0
        assert bob_stats.investments_value() == 0
        assert bob_stats.debt_summary()["receivable"] == 0

        alice_stats = StatsService(session, alice.id)
        assert alice_stats.budget_spent(food.id, 3, 2026) == 50_000
        assert alice_stats.goals_total() == 500_000


def test_another_users_rows_cannot_be_modified_or_deleted() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _user(session, "alice@example.com")
        bob = _user(session, "bob@example.com")
        goal = GoalService(session, alice.id).create(
            GoalIn(name="Holiday", target_amount=5_000_000)
        )
        debt = DebtService(session, alice.id).create(
            DebtIn(counterpart_name="Sari", amount=-75_000)
        )

        with pytest.raises(NotFound):
            GoalService(session, bob.id).deposit(goal.id, 100_000)
        with pytest.raises(NotFound):
            GoalService(session, bob.id).delete(goal.id)
        with pytest.raises(NotFound):
            DebtService(session, bob.id).mark_paid(debt.id)

        session.expire_all()
        assert GoalService(session, alice.id).get(goal.id).current_amount == 0
        assert DebtService(session, alice.id).get(debt.id).status.value == "unpaid"
