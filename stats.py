"""Derived figures computed on every call from ledger rows.

Nothing here writes or caches. Each query is scoped to ``user_id`` in SQL, so
rows written by the web UI, the assistant and the bot are counted alike.
Month windows are half-open in local wall-clock time.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from models import (
    Budget,
    Category,
    Debt,
    DebtStatus,
    Goal,
    Investment,
    Transaction,
    TransactionType,
)
from periods import Period, day_window, local_today, month_window, previous_month


def percent(part: float, whole: float) -> float:
    if not whole:
        return 0.0
    return round(part / whole * 100, 2)


@dataclass(frozen=True)
class MonthlyStats:
    income: float
    expense: float
    balance: float


@dataclass(frozen=True)
class DayStats:
    income: float
    expense: float
    cash_expense: float


class StatsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _sum_by_type(self, start: datetime, end: datetime) -> tuple[float, float]:
        income_expr = func.coalesce(
            func.sum(
                case((Transaction.type == TransactionType.income, Transaction.amount), else_=0)
            ),
            0,
        )
        expense_expr = func.coalesce(
            func.sum(
                case((Transaction.type == TransactionType.expense, Transaction.amount), else_=0)
            ),
            0,
        )
        row = self.session.execute(
            select(income_expr.label("income"), expense_expr.label("expense")).where(
                Transaction.user_id == self.user_id,
                Transaction.occurred_at >= start,
                Transaction.occurred_at < end,
            )
        ).one()
        return float(row.income or 0), float(row.expense or 0)

    def monthly_stats(self, year: int, month: int) -> MonthlyStats:
        income, expense = self._sum_by_type(*month_window(year, month))
        return MonthlyStats(income=income, expense=expense, balance=income - expense)

    def month_over_month(self, year: int, month: int) -> float:
        current = self.monthly_stats(year, month).balance
        prev = self.monthly_stats(*previous_month(year, month)).balance
        if prev != 0:
            return round((current - prev) / abs(prev) * 100, 2)
        return 100.0 if current != 0 else 0.0

    def day_stats(self, day: date) -> DayStats:
        start, end = day_window(day)
        income, expense = self._sum_by_type(start, end)
        cash = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                func.lower(Transaction.payment_method) == "cash",
                Transaction.occurred_at >= start,
                Transaction.occurred_at < end,
            )
        ).scalar_one()
        return DayStats(income=income, expense=expense, cash_expense=float(cash or 0))

    def budget_spent(self, category_id: int, month: int, year: int) -> float:
        start, end = month_window(year, month)
        spent = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.category_id == category_id,
                Transaction.occurred_at >= start,
                Transaction.occurred_at < end,
            )
        ).scalar_one()
        return float(spent or 0)

    def spent_by_category(self, month: int, year: int) -> dict[int, float]:
        start, end = month_window(year, month)
        rows = self.session.execute(
            select(
                Transaction.category_id,
                func.coalesce(func.sum(Transaction.amount), 0).label("spent"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.occurred_at >= start,
                Transaction.occurred_at < end,
            )
            .group_by(Transaction.category_id)
        )
        return {row.category_id: float(row.spent or 0) for row in rows}

    def budget_progress(self, month: int, year: int) -> list[dict[str, object]]:
        budgets = self.session.execute(
            select(Budget, Category.name)
            .join(Category, Budget.category_id == Category.id)
            .where(
                Budget.user_id == self.user_id,
                Budget.month == month,
                Budget.year == year,
            )
            .order_by(Budget.id)
        ).all()
        spent_by_category = self.spent_by_category(month, year)
        progress: list[dict[str, object]] = []
        for budget, category_name in budgets:
            spent = spent_by_category.get(budget.category_id, 0.0)
            progress.append(
                {
                    "id": budget.id,
                    "category_id": budget.category_id,
                    "category": category_name,
                    "month": budget.month,
                    "year": budget.year,
                    "amount": budget.amount,
                    "spent": spent,
                    "remaining": max(0.0, budget.amount - spent),
                    "percent": percent(spent, budget.amount),
                    "over_budget": spent > budget.amount,
                }
            )
        return progress

    def goal_progress(self) -> list[dict[str, object]]:
        goals = self.session.scalars(
            select(Goal).where(Goal.user_id == self.user_id).order_by(Goal.id)
        ).all()
        return [
            {
                "id": goal.id,
                "name": goal.name,
                "target_amount": goal.target_amount,
                "current_amount": goal.current_amount,
                "remaining": max(0.0, goal.target_amount - goal.current_amount),
                "percent": percent(goal.current_amount, goal.target_amount),
                "completed": goal.target_amount > 0
                and goal.current_amount >= goal.target_amount,
                "deadline": goal.deadline,
            }
            for goal in goals
        ]

    def goals_total(self) -> float:
        total = self.session.execute(
            select(func.coalesce(func.sum(Goal.current_amount), 0)).where(
                Goal.user_id == self.user_id
            )
        ).scalar_one()
        return float(total or 0)

    def investment_summary(self) -> dict[str, object]:
        holdings = self.session.scalars(
            select(Investment)
            .where(Investment.user_id == self.user_id)
            .order_by(Investment.id)
        ).all()
        items = []
        total_value = 0.0
        total_cost = 0.0
        for inv in holdings:
            value = inv.quantity * inv.current_price
            cost = inv.quantity * inv.avg_buy_price
            total_value += value
            total_cost += cost
            items.append(
                {
                    "id": inv.id,
                    "name": inv.name,
                    "type": inv.type.value,
                    "platform": inv.platform,
                    "value": value,
                    "cost": cost,
                    "profit": value - cost,
                    "profit_percent": percent(value - cost, cost),
                }
            )
        return {
            "items": items,
            "total_value": total_value,
            "total_cost": total_cost,
            "total_profit": total_value - total_cost,
            "profit_percent": percent(total_value - total_cost, total_cost),
        }

    def investments_value(self) -> float:
        total = self.session.execute(
            select(
                func.coalesce(
                    func.sum(Investment.quantity * Investment.current_price), 0
                )
            ).where(Investment.user_id == self.user_id)
        ).scalar_one()
        return float(total or 0)

    def net_worth(
        self, year: Optional[int] = None, month: Optional[int] = None
    ) -> dict[str, float]:
        if year is None or month is None:
            today = local_today()
            year, month = today.year, today.month
        balance = self.monthly_stats(year, month).balance
        goals = self.goals_total()
        investments = self.investments_value()
        return {
            "balance": balance,
            "total_goals": goals,
            "total_investments": investments,
            "net_worth": balance + goals + investments,
        }

    def debt_summary(self) -> dict[str, float]:
        receivable = func.coalesce(
            func.sum(case((Debt.amount > 0, Debt.amount), else_=0)), 0
        )
        payable = func.coalesce(
            func.sum(case((Debt.amount < 0, -Debt.amount), else_=0)), 0
        )
        row = self.session.execute(
            select(receivable.label("receivable"), payable.label("payable")).where(
                Debt.user_id == self.user_id, Debt.status == DebtStatus.unpaid
            )
        ).one()
        receivable_total = float(row.receivable or 0)
        payable_total = float(row.payable or 0)
        return {
            "receivable": receivable_total,
            "payable": payable_total,
            "net": receivable_total - payable_total,
        }

    def category_breakdown(self, period: Period) -> list[dict[str, object]]:
        start, end = period.window
        rows = self.session.execute(
            select(
                Category.id,
                Category.name,
                Category.color,
                func.sum(Transaction.amount).label("total"),
            )
            .join(Category, Transaction.category_id == Category.id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.occurred_at >= start,
                Transaction.occurred_at < end,
            )
            .group_by(Category.id, Category.name, Category.color)
            .order_by(func.sum(Transaction.amount).desc(), Category.name)
        ).all()
        grand_total = sum(float(row.total or 0) for row in rows)
        return [
            {
                "category_id": row.id,
                "category": row.name,
                "color": row.color,
                "total": float(row.total or 0),
                "percent": percent(float(row.total or 0), grand_total),
            }
            for row in rows
        ]
