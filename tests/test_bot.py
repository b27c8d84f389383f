from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from bot import BotHandler, parse_quick_entry
from database import Base
from models import Transaction, TransactionType, User
from services import CategoryService


def _update(text: str, sender_id: int = 5150, **extra) -> dict:
    return {
        "update_id": 1,
        "message": {
            "message_id": 7,
            "chat": {"id": sender_id},
            "from": {"id": sender_id, "first_name": "Rani", "username": "rani"},
            "text": text,
            **extra,
        },
    }


def test_parse_quick_entry_reads_amount_and_description() -> None:
    entry = parse_quick_entry("50000 makan siang")
    assert entry.amount == 50_000
    assert entry.description == "makan siang"
    assert entry.type == TransactionType.expense
    assert entry.category == "Food & Drinks"

    salary = parse_quick_entry("Rp 1.000.000 gaji bulan ini")
    assert salary.amount == 1_000_000
    assert salary.type == TransactionType.income
    assert salary.category == "Salary"

    trailing = parse_quick_entry("parkir 5,000")
    assert (trailing.amount, trailing.description, trailing.category) == (5_000, "parkir", "Transport")


def test_parse_quick_entry_without_amount() -> None:
    assert parse_quick_entry("just saying hi") is None
    assert parse_quick_entry("0 free coffee") is None
    bare = parse_quick_entry("75000")
    assert bare.description == "Expense"
    assert bare.category is None


def test_free_text_records_a_transaction_for_the_ghost_user() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        CategoryService(session).seed_defaults()
        handler = BotHandler(session)

        reply = handler.handle_update(_update("35000 kopi susu"))
        handler.handle_update(_update("/start"))

        assert reply == 'Expense of Rp 35.000 recorded: "kopi susu" in Food & Drinks.'
        ghost = session.scalars(select(User)).one()
        assert ghost.messaging_id == 5150
        assert ghost.is_ghost is True
        txn = session.scalars(select(Transaction)).one()
        assert (txn.user_id, txn.amount) == (ghost.id, 35_000)


def test_commands() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        CategoryService(session).seed_defaults()
        handler = BotHandler(session)

        assert handler.handle_update(_update("/recent")).startswith("No transactions yet")
        handler.handle_update(_update("2000000 gaji"))
        handler.handle_update(_update("15000 ojek"))

        balance = handler.handle_update(_update("/saldo"))
        assert "Income: Rp 2.000.000" in balance
        assert "Balance: Rp 1.985.000" in balance

        summary = handler.handle_update(_update("/summary@MonevBot"))
        assert "(1 transactions)" in summary
        assert "You saved money this month." in summary

        recent = handler.handle_update(_update("/riwayat"))
        assert "1. -Rp 15.000 ojek" in recent
        assert "2. +Rp 2.000.000 gaji" in recent

        assert handler.handle_update(_update("/batal")) == "Cancelled."
        assert handler.handle_update(_update("/launch")) == "Unknown command /launch. Try /help."
        assert "could not read an amount" in handler.handle_update(_update("hello"))


def test_updates_without_text_are_ignored() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        handler = BotHandler(session)

        assert handler.handle_update({"update_id": 2}) is None
        assert handler.handle_update(_update("")) is None
        assert session.scalars(select(User)).all() == []
