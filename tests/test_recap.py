import math
from datetime import datetime

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import Base
from models import Goal, MessageStatus, ScheduledMessage, TransactionType, User
from recap import RecapJob, SubscriptionScanner, render_subscriptions
from schemas import GoalIn, TransactionIn
from services import (
    CategoryService,
    GoalService,
    ScheduledMessageService,
    TransactionService,
    Unavailable,
)


class RecordingSink:
    def __init__(self, failing: frozenset = frozenset()) -> None:
        self.failing = failing
        self.delivered: list[tuple[int, str]] = []

    def deliver(self, address: int, text: str) -> None:
        if address in self.failing:
            raise Unavailable(f"chat {address} unreachable")
        self.delivered.append((address, text))


def _factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'recap.db'}")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def _users(factory, *messaging_ids):
    with factory() as session:
        CategoryService(session).seed_defaults()
        users = [
            User(name=f"user-{mid}", messaging_id=mid) for mid in messaging_ids
        ]
        users.append(User(email="web-only@example.com", password_hash="not-a-real-hash"))
        session.add_all(users)
        session.commit()
        return [user.id for user in users]


def test_one_failing_user_does_not_stop_the_run(tmp_path, monkeypatch) -> None:
    factory = _factory(tmp_path)
    alice, bob, carol, web_only = _users(factory, 100, 200, 300)
    now = datetime(2026, 9, 15, 21, 0)
    with factory() as session:
        TransactionService(session, bob).create(
            TransactionIn(amount=45_000, description="Lunch", occurred_at=datetime(2026, 9, 15, 12))
        )

    sink = RecordingSink(failing=frozenset({300}))
    job = RecapJob(session_factory=factory, sink=sink)
    real_build = job.build_digest

    def flaky_build(session, user_id, when):
        if user_id == alice:
            raise RuntimeError("stats backend exploded")
        return real_build(session, user_id, when)

    monkeypatch.setattr(job, "build_digest", flaky_build)
    results = {result.user_id: result for result in job.run(now)}

    assert set(results) == {alice, bob, carol}
    assert web_only not in results
    assert results[alice].status == "error"
    assert "exploded" in results[alice].error
    assert results[bob].status == "sent"
    assert results[bob].expense == 45_000
    assert results[carol].status == "delivery_failed"
    assert [address for address, _ in sink.delivered] == [200]
    assert "*DAILY RECAP*" in sink.delivered[0][1]
    assert "Rp 45.000" in sink.delivered[0][1]


def test_pending_messages_are_delivered_once(tmp_path) -> None:
    factory = _factory(tmp_path)
    (user_id, _) = _users(factory, 100)
    with factory() as session:
        messages = ScheduledMessageService(session, user_id)
        messages.schedule("Count the cash in your wallet.", datetime(2026, 9, 15, 8, 0))
        messages.schedule("Tomorrow's reminder.", datetime(2026, 9, 16, 8, 0))

    sink = RecordingSink(failing=frozenset({100}))
    job = RecapJob(session_factory=factory, sink=sink)

    first = job.run(datetime(2026, 9, 15, 21, 0))
    second = job.run(datetime(2026, 9, 15, 21, 5))

    assert first[0].status == "delivery_failed"
    assert first[0].items == 1
    assert second[0].items == 0
    with factory() as session:
        statuses = {
            row.message: row.status for row in session.scalars(select(ScheduledMessage))
        }
    assert statuses == {
        "Count the cash in your wallet.": MessageStatus.sent,
        "Tomorrow's reminder.": MessageStatus.pending,
    }


def test_goal_targets_are_indexed_once_on_the_first_of_the_month(tmp_path) -> None:
    factory = _factory(tmp_path)
    (user_id, _) = _users(factory, 100)
    with factory() as session:
        goal_id = GoalService(session, user_id).create(
            GoalIn(name="House deposit", target_amount=1_000_000)
        ).id

    sink = RecordingSink()
    job = RecapJob(session_factory=factory, sink=sink)
    expected = float(math.ceil(1_000_000 * get_settings().inflation_factor))

    job.run(datetime(2026, 10, 1, 21, 0))
    job.run(datetime(2026, 10, 1, 21, 30))
    job.run(datetime(2026, 10, 2, 21, 0))

    with factory() as session:
        assert session.get(Goal, goal_id).target_amount == expected
    assert "*INFLATION ADJUSTMENT*" in sink.delivered[0][1]
    assert all("*INFLATION ADJUSTMENT*" not in text for _, text in sink.delivered[1:])


def test_allowance_falls_back_without_income(tmp_path) -> None:
    factory = _factory(tmp_path)
    (user_id, _) = _users(factory, 100)
    now = datetime(2026, 9, 15, 21, 0)
    job = RecapJob(session_factory=factory, sink=RecordingSink())

    with factory() as session:
        digest = job.build_digest(session, user_id, now)
        assert digest.allowance == get_settings().default_daily_allowance

        TransactionService(session, user_id).create(
            TransactionIn(
                amount=3_000_000,
                type=TransactionType.income,
                category="Salary",
                occurred_at=datetime(2026, 9, 1, 9),
            )
        )
        TransactionService(session, user_id).create(
            TransactionIn(amount=150_000, description="Groceries", occurred_at=datetime(2026, 9, 15, 10))
        )
        digest = job.build_digest(session, user_id, now)

    assert digest.allowance == 100_000
    assert digest.saved == -50_000
    assert digest.cash_burn is (150_000 > get_settings().cash_burn_threshold)
    assert "*Over budget* by Rp 50.000 today." in digest.render()


def test_subscription_scanner_finds_steady_repeats(tmp_path) -> None:
    factory = _factory(tmp_path)
    (user_id, _) = _users(factory, 100)
    now = datetime(2026, 9, 20, 12, 0)
    with factory() as session:
        service = TransactionService(session, user_id)
        for month in (7, 8, 9):
            service.create(
                TransactionIn(
                    amount=54_000 if month == 7 else 55_000,
                    merchant_name="Netflix",
                    category="Entertainment",
                    occurred_at=datetime(2026, month, 3, 8),
                )
            )
        service.create(TransactionIn(amount=100_000, description="Supermarket", occurred_at=datetime(2026, 8, 5)))
        service.create(TransactionIn(amount=300_000, description="Supermarket", occurred_at=datetime(2026, 9, 5)))
        service.create(TransactionIn(amount=80_000, description="Gym", occurred_at=datetime(2026, 6, 10)))
        service.create(TransactionIn(amount=80_000, description="Gym", occurred_at=datetime(2026, 9, 10)))

        found = SubscriptionScanner(session, user_id).scan(3, now=now)

    assert [(s.merchant, s.amount, s.frequency) for s in found] == [("netflix", 54_667, 3)]
    text = render_subscriptions(found)
    assert "*netflix*: Rp 54.667 (x3)" in text


def test_subscription_check_skips_users_without_repeats(tmp_path) -> None:
    factory = _factory(tmp_path)
    first, second, _ = _users(factory, 100, 200)
    with factory() as session:
        for month in (8, 9):
            TransactionService(session, first).create(
                TransactionIn(
                    amount=120_000,
                    merchant_name="Spotify Family",
                    occurred_at=datetime(2026, month, 1, 8),
                )
            )

    sink = RecordingSink()
    results = RecapJob(session_factory=factory, sink=sink).run_subscription_check(
        datetime(2026, 9, 21, 9, 0)
    )

    assert [(r.user_id, r.status) for r in results] == [(first, "sent"), (second, "skipped")]
    assert sink.delivered[0][0] == 100
    assert "*SUBSCRIPTION CHECK*" in sink.delivered[0][1]


class ResettingSink(RecordingSink):
    def deliver(self, address: int, text: str) -> None:
        if address in self.failing:
            raise ConnectionResetError("peer reset")
        self.delivered.append((address, text))


def test_unexpected_delivery_error_does_not_stop_the_run(tmp_path) -> None:
    factory = _factory(tmp_path)
    first, second, _ = _users(factory, 100, 200)
    for month in (8, 9):
        with factory() as session:
            for user_id in (first, second):
                TransactionService(session, user_id).create(
                    TransactionIn(amount=60_000, merchant_name="Cloud Drive", occurred_at=datetime(2026, month, 2, 8))
                )

    sink = ResettingSink(failing=frozenset({100}))
    job = RecapJob(session_factory=factory, sink=sink)

    recap = job.run(datetime(2026, 9, 15, 21, 0))
    check = job.run_subscription_check(datetime(2026, 9, 21, 9, 0))

    assert [(r.user_id, r.status) for r in recap] == [(first, "delivery_failed"), (second, "sent")]
    assert [(r.user_id, r.status) for r in check] == [(first, "delivery_failed"), (second, "sent")]
    assert [address for address, _ in sink.delivered] == [200, 200]


def test_unlinked_user_keeps_pending_messages(tmp_path, monkeypatch) -> None:
    factory = _factory(tmp_path)
    (_, web_only) = _users(factory, 100)
    with factory() as session:
        ScheduledMessageService(session, web_only).schedule(
            "Count the cash in your wallet.", datetime(2026, 9, 15, 8, 0)
        )

    sink = RecordingSink()
    job = RecapJob(session_factory=factory, sink=sink)
    monkeypatch.setattr(job, "_user_ids", lambda: iter([web_only]))

    results = job.run(datetime(2026, 9, 15, 21, 0))

    assert [(r.user_id, r.status) for r in results] == [(web_only, "skipped")]
    assert sink.delivered == []
    with factory() as session:
        assert session.scalar(select(ScheduledMessage)).status == MessageStatus.pending
