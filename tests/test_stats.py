from datetime import date, datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import TransactionType, User
from periods import Period, month_window, resolve_period
from schemas import BudgetIn, GoalIn, InvestmentIn, TransactionIn, DebtIn
from services import (
    BudgetService,
    CategoryService,
    DebtService,
    GoalService,
    InvestmentService,
    TransactionService,
)
from stats import StatsService, percent


def _user(session: Session) -> User:
    user = User(email="stats@example.com", password_hash="not-a-real-hash")
    session.add(user)
    session.commit()
    return user


def _txn(session, user_id, amount, when, type_=TransactionType.expense, **extra):
    return TransactionService(session, user_id).create(
        TransactionIn(amount=amount, type=type_, occurred_at=when, **extra)
    )


def test_percent_handles_zero_divisor_and_rounds() -> None:
    assert percent(10, 0) == 0
    assert percent(35_000, 2_500_000) == 1.4
    assert percent(1, 3) == 33.33


def test_empty_month_is_all_zeros() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        stats = StatsService(session, user.id).monthly_stats(2026, 1)
        assert (stats.income, stats.expense, stats.balance) == (0, 0, 0)
        assert StatsService(session, user.id).month_over_month(2026, 1) == 0


def test_balance_is_income_minus_expense() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        CategoryService(session).seed_defaults()
        user = _user(session)
        _txn(session, user.id, 8_000_000, datetime(2026, 4, 1, 9), TransactionType.income, category="Salary")
        _txn(session, user.id, 45_000, datetime(2026, 4, 3, 12), category="Food & Drinks")
        _txn(session, user.id, 120_000, datetime(2026, 4, 20, 18), category="Transport")
        _txn(session, user.id, 500_000, datetime(2026, 4, 21, 18), TransactionType.transfer)

        stats = StatsService(session, user.id).monthly_stats(2026, 4)

        assert stats.income == 8_000_000
        assert stats.expense == 165_000
        assert stats.balance == stats.income - stats.expense


def test_month_window_is_half_open() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        CategoryService(session).seed_defaults()
        user = _user(session)
        start, end = month_window(2026, 2)
        assert start == datetime(2026, 2, 1)
        assert end == datetime(2026, 3, 1)

        _txn(session, user.id, 1_000, datetime(2026, 2, 1, 0, 0))
        _txn(session, user.id, 2_000, datetime(2026, 2, 28, 23, 59, 59))
        _txn(session, user.id, 4_000, datetime(2026, 3, 1, 0, 0))
        _txn(session, user.id, 8_000, datetime(2026, 1, 31, 23, 59, 59))

        service = StatsService(session, user.id)
        assert service.monthly_stats(2026, 2).expense == 3_000
        assert service.monthly_stats(2026, 3).expense == 4_000
        assert service.monthly_stats(2026, 1).expense == 8_000


def test_budget_spent_round_trips_with_a_matching_expense() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        CategoryService(session).seed_defaults()
        food = CategoryService(session).by_name("Food & Drinks")
        user = _user(session)
        BudgetService(session, user.id).create(
            BudgetIn(category_id=food.id, month=6, year=2026, amount=1_000_000)
        )
        _txn(session, user.id, 60_000, datetime(2026, 6, 2, 12), category_id=food.id)
        stats = StatsService(session, user.id)
        before = stats.budget_spent(food.id, 6, 2026)

        extra = _txn(session, user.id, 25_000, datetime(2026, 6, 9, 12), category_id=food.id)
        assert stats.budget_spent(food.id, 6, 2026) == before + 25_000

        TransactionService(session, user.id).delete(extra.id)
        assert stats.budget_spent(food.id, 6, 2026) == before

        progress = stats.budget_progress(6, 2026)
        assert progress[0]["spent"] == 60_000
        assert progress[0]["percent"] == 6.0
        assert progress[0]["over_budget"] is False


def test_income_in_a_budgeted_category_does_not_count_as_spent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        CategoryService(session).seed_defaults()
        other = CategoryService(session).by_name("Other")
        user = _user(session)
        _txn(session, user.id, 300_000, datetime(2026, 6, 2), TransactionType.income, category_id=other.id)

        assert StatsService(session, user.id).budget_spent(other.id, 6, 2026) == 0


def test_goal_percent_edges() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        goals = GoalService(session, user.id)
        goals.create(GoalIn(name="Zero target", target_amount=0))
        goals.create(GoalIn(name="Done", target_amount=2_000_000, current_amount=2_000_000))
        goals.create(GoalIn(name="Halfway", target_amount=1_000_000, current_amount=500_000))

        progress = {g["name"]: g for g in StatsService(session, user.id).goal_progress()}

        assert progress["Zero target"]["percent"] == 0
        assert progress["Zero target"]["completed"] is False
        assert progress["Done"]["percent"] == 100
        assert progress["Done"]["completed"] is True
        assert progress["Halfway"]["percent"] == 50
        assert progress["Halfway"]["remaining"] == 500_000


def test_net_worth_adds_balance_goals_and_holdings() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        CategoryService(session).seed_defaults()
        user = _user(session)
        _txn(session, user.id, 5_000_000, datetime(2026, 7, 1, 9), TransactionType.income)
        _txn(session, user.id, 1_000_000, datetime(2026, 7, 2, 9))
        GoalService(session, user.id).create(
            GoalIn(name="Emergency", target_amount=10_000_000, current_amount=2_500_000)
        )
        InvestmentService(session, user.id).create(
            InvestmentIn(name="Gold", quantity=2, avg_buy_price=1_000_000, current_price=1_200_000)
        )

        worth = StatsService(session, user.id).net_worth(2026, 7)

        assert worth == {
            "balance": 4_000_000,
            "total_goals": 2_500_000,
            "total_investments": 2_400_000,
            "net_worth": 8_900_000,
        }


def test_investment_and_debt_summaries() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        InvestmentService(session, user.id).create(
            InvestmentIn(name="BBRI", quantity=100, avg_buy_price=4_000, current_price=5_000)
        )
        debts = DebtService(session, user.id)
        debts.create(DebtIn(counterpart_name="Andi", amount=150_000))
        debts.create(DebtIn(counterpart_name="Rina", amount=-40_000))
        settled = debts.create(DebtIn(counterpart_name="Joko", amount=90_000))
        debts.mark_paid(settled.id)

        stats = StatsService(session, user.id)
        summary = stats.investment_summary()
        assert summary["total_value"] == 500_000
        assert summary["total_profit"] == 100_000
        assert summary["profit_percent"] == 25.0
        assert stats.debt_summary() == {"receivable": 150_000, "payable": 40_000, "net": 110_000}


def test_category_breakdown_orders_by_total() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        CategoryService(session).seed_defaults()
        user = _user(session)
        _txn(session, user.id, 30_000, datetime(2026, 8, 3), category="Food & Drinks")
        _txn(session, user.id, 90_000, datetime(2026, 8, 4), category="Transport")
        _txn(session, user.id, 80_000, datetime(2026, 7, 30), category="Shopping")

        period = Period("month", date(2026, 8, 1), date(2026, 8, 31))
        breakdown = StatsService(session, user.id).category_breakdown(period)

        assert [row["category"] for row in breakdown] == ["Transport", "Food & Drinks"]
        assert [row["percent"] for row in breakdown] == [75.0, 25.0]


def test_resolve_period_slugs() -> None:
    today = date(2026, 3, 15)
    assert resolve_period(None, None, None, today=today) == Period(
        "this_month", date(2026, 3, 1), date(2026, 3, 31)
    )
    last = resolve_period("last_month", None, None, today=today)
    assert (last.start, last.end) == (date(2026, 2, 1), date(2026, 2, 28))
    custom = resolve_period("custom", "2026-01-10", "2026-01-20", today=today)
    assert custom.window == (datetime(2026, 1, 10), datetime(2026, 1, 21))
