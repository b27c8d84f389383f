"""Daily recap and weekly subscription digests sent over the messaging channel.

Users with a linked messaging id are streamed page by page. Each user runs in
their own session and error boundary: data changes (drained scheduled
messages, inflation-indexed goal targets) are committed before delivery, so a
delivery failure leaves them in place and is reported per user.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Iterator, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal, session_scope
from dispatcher import format_money
from models import Goal, Transaction, TransactionType
from notifications import NotificationSink, deliver_quietly, get_sink
from periods import local_now, month_window, previous_month
from services import ScheduledMessageService, SettingsService, UserService
from stats import StatsService

logger = logging.getLogger(__name__)


@dataclass
class RecapResult:
    user_id: int
    status: str
    expense: float = 0.0
    items: int = 0
    error: Optional[str] = None


@dataclass
class InflationAdjustment:
    goal_id: int
    name: str
    old_target: float
    new_target: float


@dataclass
class Digest:
    day: date
    income: float
    expense: float
    allowance: float
    month_balance: float
    cash_expense: float
    idle_cash: bool
    cash_burn: bool
    pending: list[str] = field(default_factory=list)
    inflation: list[InflationAdjustment] = field(default_factory=list)

    @property
    def saved(self) -> float:
        return self.allowance - self.expense

    def render(self) -> str:
        lines = [
            "*DAILY RECAP*",
            "",
            f"Date: {self.day:%d %B %Y}",
            f"Spent: {format_money(self.expense)}",
            f"Earned: {format_money(self.income)}",
            "--------------------------",
        ]
        if self.saved >= 0:
            lines.append(f"*On track.* You stayed {format_money(self.saved)} under today's allowance.")
        else:
            lines.append(f"*Over budget* by {format_money(-self.saved)} today.")

        if self.idle_cash:
            lines += [
                "",
                "*IDLE CASH*",
                f"{format_money(self.month_balance)} is sitting unused this month. "
                "A money-market fund would keep it ahead of inflation.",
            ]
        if self.cash_burn:
            lines += [
                "",
                "*CASH BURN ALERT*",
                f"You spent {format_money(self.cash_expense)} in cash today. "
                "Cash tends to disappear without a trace.",
            ]
        if self.pending:
            lines += ["", "*PENDING MESSAGES*"]
            lines += self.pending
        if self.inflation:
            lines += [
                "",
                "*INFLATION ADJUSTMENT*",
                "Goal targets were raised to keep their real value:",
            ]
            lines += [
                f"- {adj.name}: {format_money(adj.old_target)} -> {format_money(adj.new_target)}"
                for adj in self.inflation
            ]
        return "\n".join(lines)


@dataclass
class Subscription:
    merchant: str
    amount: float
    frequency: int
    last_date: datetime


class SubscriptionScanner:
    """Find merchants that charge the user repeatedly with a steady amount."""

    def __init__(self, session: Session, user_id: int, *, tolerance: float = 0.1) -> None:
        self.session = session
        self.user_id = user_id
        self.tolerance = tolerance

    def scan(self, months: int = 3, *, now: Optional[datetime] = None) -> list[Subscription]:
        now = now or local_now()
        year, month = now.year, now.month
        for _ in range(months - 1):
            year, month = previous_month(year, month)
        start, _ = month_window(year, month)

        merchant = func.lower(func.coalesce(Transaction.merchant_name, Transaction.description))
        rows = self.session.execute(
            select(
                merchant.label("merchant"),
                func.count(Transaction.id).label("frequency"),
                func.avg(Transaction.amount).label("average"),
                func.min(Transaction.amount).label("lowest"),
                func.max(Transaction.amount).label("highest"),
                func.max(Transaction.occurred_at).label("last_date"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.occurred_at >= start,
                Transaction.occurred_at <= now,
            )
            .group_by(merchant)
            .having(func.count(Transaction.id) >= 2)
            .order_by(func.avg(Transaction.amount).desc())
        ).all()

        found = []
        for row in rows:
            average = float(row.average or 0)
            if not row.merchant or average <= 0:
                continue
            if (float(row.highest) - float(row.lowest)) > average * self.tolerance:
                continue
            found.append(
                Subscription(
                    merchant=row.merchant,
                    amount=round(average),
                    frequency=int(row.frequency),
                    last_date=row.last_date,
                )
            )
        return found


def render_subscriptions(subscriptions: list[Subscription]) -> str:
    lines = [
        "*SUBSCRIPTION CHECK*",
        "",
        f"Found {len(subscriptions)} recurring charges worth a second look:",
        "",
    ]
    for sub in subscriptions:
        lines.append(f"- *{sub.merchant}*: {format_money(sub.amount)} (x{sub.frequency}), last on {sub.last_date:%d %b %Y}")
    total = sum(sub.amount for sub in subscriptions)
    lines += ["", f"Monthly load: *{format_money(total)}*. Cancel what you no longer use."]
    return "\n".join(lines)


class RecapJob:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        sink: Optional[NotificationSink] = None,
    ) -> None:
        self.session_factory = session_factory
        self.sink = sink or get_sink()

    def _user_ids(self) -> Iterator[int]:
        page_size = get_settings().recap_page_size
        with session_scope(self.session_factory) as session:
            for page in UserService(session).iter_with_messaging_id(page_size):
                yield from page

    def build_digest(self, session: Session, user_id: int, now: datetime) -> Digest:
        settings = get_settings()
        stats = StatsService(session, user_id)
        today = stats.day_stats(now.date())
        month = stats.monthly_stats(now.year, now.month)
        allowance = (
            month.income / 30 if month.income > 0 else settings.default_daily_allowance
        )

        pending = [
            row.message
            for row in ScheduledMessageService(session, user_id, autocommit=False).drain_due(now)
        ]

        digest = Digest(
            day=now.date(),
            income=today.income,
            expense=today.expense,
            allowance=allowance,
            month_balance=month.balance,
            cash_expense=today.cash_expense,
            idle_cash=month.balance > settings.idle_cash_threshold,
            cash_burn=today.cash_expense > settings.cash_burn_threshold,
            pending=pending,
        )
        if now.day == 1:
            digest.inflation = self._index_goals(session, user_id, now)
        session.flush()
        return digest

    def _index_goals(
        self, session: Session, user_id: int, now: datetime
    ) -> list[InflationAdjustment]:
        user_settings = SettingsService(session, user_id, autocommit=False).get_or_create()
        month_key = f"{now:%Y-%m}"
        if user_settings.goals_indexed_for == month_key:
            return []
        factor = get_settings().inflation_factor
        adjustments = []
        goals = session.scalars(
            select(Goal).where(Goal.user_id == user_id).order_by(Goal.id)
        ).all()
        for goal in goals:
            new_target = float(math.ceil(goal.target_amount * factor))
            adjustments.append(
                InflationAdjustment(goal.id, goal.name, goal.target_amount, new_target)
            )
            goal.target_amount = new_target
        user_settings.goals_indexed_for = month_key
        return adjustments

    def _deliver(self, user_id: int, address: int, text: str) -> bool:
        try:
            return deliver_quietly(self.sink, address, text)
        except Exception:
            logger.exception(f"delivery_failed: user_id={user_id}")
            return False

    def _recap_user(self, user_id: int, now: datetime) -> RecapResult:
        try:
            with session_scope(self.session_factory) as session:
                address = UserService(session).get(user_id).messaging_id
                if address is None:
                    return RecapResult(user_id, "skipped")
                digest = self.build_digest(session, user_id, now)
        except Exception as exc:
            logger.exception(f"recap_failed: user_id={user_id}")
            return RecapResult(user_id, "error", error=str(exc))

        delivered = self._deliver(user_id, address, digest.render())
        status = "sent" if delivered else "delivery_failed"
        logger.info(f"recap_user: user_id={user_id} status={status}")
        return RecapResult(
            user_id, status, expense=digest.expense, items=len(digest.pending)
        )

    def run(self, now: Optional[datetime] = None) -> list[RecapResult]:
        now = now or local_now()
        results = [self._recap_user(user_id, now) for user_id in self._user_ids()]
        sent = sum(1 for r in results if r.status == "sent")
        logger.info(f"recap_run: users={len(results)} sent={sent}")
        return results

    def _check_user(self, user_id: int, now: datetime, months: int) -> RecapResult:
        try:
            with session_scope(self.session_factory) as session:
                address = UserService(session).get(user_id).messaging_id
                subscriptions = SubscriptionScanner(session, user_id).scan(months, now=now)
        except Exception as exc:
            logger.exception(f"subscription_check_failed: user_id={user_id}")
            return RecapResult(user_id, "error", error=str(exc))

        if not subscriptions or address is None:
            return RecapResult(user_id, "skipped")
        delivered = self._deliver(user_id, address, render_subscriptions(subscriptions))
        return RecapResult(
            user_id,
            "sent" if delivered else "delivery_failed",
            items=len(subscriptions),
        )

    def run_subscription_check(
        self, now: Optional[datetime] = None, *, months: int = 3
    ) -> list[RecapResult]:
        now = now or local_now()
        results = [self._check_user(user_id, now, months) for user_id in self._user_ids()]
        logger.info(
            f"subscription_check_run: users={len(results)} "
            f"found={sum(1 for r in results if r.items)}"
        )
        return results
