from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from dispatcher import DispatchStatus, ToolDispatcher, format_money, tool_schemas
from models import Bill, Debt, Goal, Transaction, TransactionType, User
from schemas import BudgetIn, GoalIn, IntentRecord
from services import BudgetService, CategoryService, GoalService
from stats import StatsService


def _setup(session: Session) -> User:
    CategoryService(session).seed_defaults()
    user = User(email="chat@example.com", password_hash="not-a-real-hash")
    session.add(user)
    session.commit()
    return user


def _count(session: Session, model) -> int:
    return session.scalar(select(func.count()).select_from(model))


def test_format_money_uses_dot_grouping() -> None:
    assert format_money(35_000) == "Rp 35.000"
    assert format_money(2_500_000.4) == "Rp 2.500.000"
    assert format_money(-1_500) == "-Rp 1.500"


def test_record_transaction_updates_the_february_food_budget() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)
        food = CategoryService(session).by_name("Food & Drinks")
        BudgetService(session, user.id).create(
            BudgetIn(category_id=food.id, month=2, year=2026, amount=2_500_000)
        )
        stats = StatsService(session, user.id)
        assert stats.budget_spent(food.id, 2, 2026) == 0

        result = ToolDispatcher(session).execute(
            user.id,
            "record_transaction",
            {
                "category": "food & drinks",
                "amount": 35_000,
                "type": "expense",
                "description": "Nasi padang",
                "occurredAt": "2026-02-10T12:30:00",
            },
        )

        assert result.status == DispatchStatus.applied
        assert result.facts["category"] == "Food & Drinks"
        assert result.facts["month_balance"] == -35_000
        assert "Rp 35.000" in result.message
        progress = stats.budget_progress(2, 2026)[0]
        assert progress["spent"] == 35_000
        assert progress["percent"] == 1.4


def test_json_string_arguments_and_unknown_category_fall_back() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)

        result = ToolDispatcher(session).execute(
            user.id,
            "record_transaction",
            '{"amount": 12000, "category": "Snacks", "description": "Chips"}',
        )

        assert result.status == DispatchStatus.applied
        assert result.facts["category"] == "Other"


def test_delete_missing_id_reports_not_found_without_writes() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)
        dispatcher = ToolDispatcher(session)
        dispatcher.execute(user.id, "record_transaction", {"amount": 10_000})
        before = _count(session, Transaction)

        result = dispatcher.execute(user.id, "delete_transaction", {"id": 4040})

        assert result.status == DispatchStatus.not_found
        assert result.facts == {"entity": "Transaction", "id": 4040}
        assert result.message == "Transaction [ID: 4040] was not found."
        assert _count(session, Transaction) == before


def test_other_users_ids_look_missing() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        owner = _setup(session)
        intruder = User(email="intruder@example.com", password_hash="x")
        session.add(intruder)
        session.commit()
        goal = GoalService(session, owner.id).create(
            GoalIn(name="Wedding", target_amount=50_000_000)
        )
        dispatcher = ToolDispatcher(session)

        for tool, args in [
            ("delete_goal", {"id": goal.id}),
            ("update_goal", {"id": goal.id, "name": "Mine now"}),
            ("add_goal_funds", {"goalId": goal.id, "amount": 1_000}),
        ]:
            result = dispatcher.execute(intruder.id, tool, args)
            assert result.status == DispatchStatus.not_found, tool

        session.expire_all()
        kept = GoalService(session, owner.id).get(goal.id)
        assert (kept.name, kept.current_amount) == ("Wedding", 0)
        assert _count(session, Transaction) == 0


def test_invalid_arguments_and_unknown_tools_ask_for_clarification() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)
        dispatcher = ToolDispatcher(session)

        missing = dispatcher.execute(user.id, "record_transaction", {"description": "Lunch"})
        negative = dispatcher.execute(user.id, "create_goal", {"name": "X", "targetAmount": -5})
        garbled = dispatcher.execute(user.id, "create_bill", "{not json")
        unknown = dispatcher.execute(user.id, "launch_rocket", {})

        for result in (missing, negative, garbled, unknown):
            assert result.status == DispatchStatus.invalid_input
        assert "amount" in missing.facts["problem"]
        assert unknown.message == 'I do not know how to "launch_rocket" yet.'
        assert _count(session, Transaction) == 0
        assert _count(session, Goal) == 0
        assert _count(session, Bill) == 0


def test_unknown_user_is_not_found() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _setup(session)

        result = ToolDispatcher(session).execute(999, "record_transaction", {"amount": 1_000})

        assert result.status == DispatchStatus.not_found
        assert result.facts == {"entity": "User", "id": 999}
        assert _count(session, Transaction) == 0


def test_reallocate_to_missing_goal_leaves_source_untouched() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)
        source = GoalService(session, user.id).create(
            GoalIn(name="Vacation", target_amount=5_000_000, current_amount=1_000_000)
        )

        result = ToolDispatcher(session).execute(
            user.id,
            "reallocate_goal_funds",
            {"fromGoalId": source.id, "amount": 200_000, "target": "goal", "toGoalId": 11},
        )

        assert result.status == DispatchStatus.not_found
        assert result.facts == {"entity": "Goal", "id": 11}
        session.expire_all()
        assert GoalService(session, user.id).get(source.id).current_amount == 1_000_000


def test_reallocate_between_goals_moves_only_what_fits() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)
        goals = GoalService(session, user.id)
        source = goals.create(GoalIn(name="Vacation", target_amount=5_000_000, current_amount=1_000_000))
        dest = goals.create(GoalIn(name="Laptop", target_amount=800_000, current_amount=700_000))

        result = ToolDispatcher(session).execute(
            user.id,
            "reallocate_goal_funds",
            {"fromGoalId": source.id, "amount": 300_000, "target": "goal", "toGoalId": dest.id},
        )

        assert result.status == DispatchStatus.applied
        assert result.facts["amount"] == 100_000
        assert result.message == 'Moved Rp 100.000 from "Vacation" to "Laptop".'
        session.expire_all()
        assert goals.get(source.id).current_amount == 900_000
        assert goals.get(dest.id).current_amount == 800_000


def test_reallocate_more_than_the_goal_holds_is_rejected() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)
        goals = GoalService(session, user.id)
        source = goals.create(GoalIn(name="Bike", target_amount=3_000_000, current_amount=100_000))
        dest = goals.create(GoalIn(name="Phone", target_amount=3_000_000))

        result = ToolDispatcher(session).execute(
            user.id,
            "reallocate_goal_funds",
            {"fromGoalId": source.id, "amount": 500_000, "target": "goal", "toGoalId": dest.id},
        )

        assert result.status == DispatchStatus.invalid_input
        session.expire_all()
        assert goals.get(source.id).current_amount == 100_000
        assert goals.get(dest.id).current_amount == 0


def test_reallocate_to_balance_returns_all_funds_as_income() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)
        source = GoalService(session, user.id).create(
            GoalIn(name="Concert", target_amount=2_000_000, current_amount=750_000)
        )

        result = ToolDispatcher(session).execute(
            user.id,
            "reallocate_goal_funds",
            {"fromGoalId": source.id, "target": "balance"},
        )

        assert result.status == DispatchStatus.applied
        assert result.facts["amount"] == 750_000
        session.expire_all()
        assert GoalService(session, user.id).get(source.id).current_amount == 0
        txn = session.scalars(select(Transaction)).one()
        assert txn.type == TransactionType.income
        assert txn.amount == 750_000
        assert txn.category.name == "Savings"


def test_add_goal_funds_debits_the_balance_and_respects_the_target() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)
        goal = GoalService(session, user.id).create(
            GoalIn(name="Shoes", target_amount=1_000_000, current_amount=800_000)
        )
        dispatcher = ToolDispatcher(session)

        result = dispatcher.execute(user.id, "add_goal_funds", {"goalId": goal.id, "amount": 500_000})

        assert result.status == DispatchStatus.applied
        assert result.facts["amount"] == 200_000
        assert result.facts["percent"] == 100
        txn = session.scalars(select(Transaction)).one()
        assert (txn.type, txn.amount) == (TransactionType.expense, 200_000)

        full = dispatcher.execute(user.id, "add_goal_funds", {"goalId": goal.id, "amount": 1_000})
        assert full.status == DispatchStatus.invalid_input
        assert _count(session, Transaction) == 1


def test_mark_bill_paid_with_debit_is_one_unit() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)
        dispatcher = ToolDispatcher(session)
        created = dispatcher.execute(
            user.id,
            "create_bill",
            {"name": "Internet", "amount": 350_000, "dueDate": 5, "category": "Bills"},
        )
        bill_id = created.facts["id"]

        result = dispatcher.execute(user.id, "mark_bill_paid", {"id": bill_id})

        assert result.status == DispatchStatus.applied
        assert result.message == 'Bill "Internet" marked as paid and Rp 350.000 recorded as an expense.'
        session.expire_all()
        assert session.get(Bill, bill_id).is_paid is True
        assert _count(session, Transaction) == 1


def test_budget_goal_investment_and_debt_tools() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)
        dispatcher = ToolDispatcher(session)

        budget = dispatcher.execute(
            user.id, "create_budget", {"category": "Transport", "amount": 600_000, "month": 3, "year": 2026}
        )
        assert budget.message == "Budget for Transport set to Rp 600.000 for 03/2026 (0.0% used so far)."
        updated = dispatcher.execute(user.id, "update_budget", {"id": budget.facts["id"], "amount": 700_000})
        assert updated.facts["amount"] == 700_000
        assert dispatcher.execute(user.id, "delete_budget", {"id": budget.facts["id"]}).ok

        goal = dispatcher.execute(user.id, "create_goal", {"name": "Trip", "targetAmount": 4_000_000})
        assert goal.message == 'New goal "Trip" with a target of Rp 4.000.000 created.'
        renamed = dispatcher.execute(user.id, "update_goal", {"id": goal.facts["id"], "name": "Bali trip"})
        assert renamed.facts["name"] == "Bali trip"

        holding = dispatcher.execute(
            user.id, "create_investment", {"name": "ANTM", "quantity": 10, "avgBuyPrice": 1_500}
        )
        repriced = dispatcher.execute(
            user.id, "update_investment", {"id": holding.facts["id"], "currentPrice": 2_000}
        )
        assert repriced.facts["value"] == 20_000
        assert repriced.facts["profit"] == 5_000

        owed = dispatcher.execute(user.id, "record_debt", {"debtorName": "Andi", "amount": 50_000})
        assert owed.message == "Noted: Andi owes you Rp 50.000."
        owing = dispatcher.execute(user.id, "record_debt", {"debtorName": "Sari", "amount": -20_000})
        assert owing.message == "Noted: you owe Sari Rp 20.000."
        paid = dispatcher.execute(user.id, "mark_debt_paid", {"id": owed.facts["id"]})
        assert paid.ok
        session.expire_all()
        assert session.get(Debt, owed.facts["id"]).status.value == "paid"


def test_execute_intent_routes_by_intent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _setup(session)
        dispatcher = ToolDispatcher(session)

        recorded = dispatcher.execute_intent(
            user.id,
            IntentRecord.model_validate(
                {"intent": "transaction", "amount": 1_000_000, "description": "Gaji", "transactionType": "income"}
            ),
        )
        vague = dispatcher.execute_intent(user.id, IntentRecord(intent="transaction"))
        debt = dispatcher.execute_intent(
            user.id, IntentRecord(intent="debt", amount=30_000, debtor_name="Rudi")
        )
        query = dispatcher.execute_intent(user.id, IntentRecord())

        assert recorded.tool == "record_transaction"
        assert recorded.facts["type"] == "income"
        assert vague.status == DispatchStatus.invalid_input
        assert debt.tool == "record_debt"
        assert query.tool == "query"
        assert query.facts["income"] == 1_000_000


def test_tool_schemas_cover_the_tool_table() -> None:
    names = [schema["name"] for schema in tool_schemas()]
    assert "reallocate_goal_funds" in names
    assert len(names) == 20
    record = next(s for s in tool_schemas() if s["name"] == "record_transaction")
    assert "amount" in record["parameters"]["properties"]
