"""Apply assistant tool calls to the ledger.

Each call names one tool from a closed table, carries loosely-typed
arguments, and runs as one unit of work for the acting user: everything the
tool writes is committed together or rolled back together. Outcomes are
structured (``applied``, ``not_found``, ``invalid_input``) and carry the
facts needed to phrase a confirmation; ``message`` is a deterministic
rendering of those facts.

Retries: create-type tools (``record_transaction``, ``create_*``,
``add_goal_funds``, ``record_debt``) are not idempotent, so delivering the
same call twice writes two rows. Update and delete tools are: repeating an
update sets the same fields again and repeating a delete reports
``not_found``.

Ids in arguments only ever resolve inside the acting user's rows. Another
user's id is reported exactly like a missing one.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from config import get_settings
from models import Goal, TransactionType
from periods import local_today
from schemas import (
    AddGoalFundsArgs,
    BillIn,
    BillUpdate,
    BudgetIn,
    CreateBillArgs,
    CreateBudgetArgs,
    CreateGoalArgs,
    CreateInvestmentArgs,
    DebtIn,
    GoalIn,
    GoalUpdate,
    IdArgs,
    IntentRecord,
    InvestmentIn,
    InvestmentUpdate,
    MarkBillPaidArgs,
    ReallocateGoalFundsArgs,
    RecordDebtArgs,
    RecordTransactionArgs,
    TransactionIn,
    TransactionUpdate,
    UpdateBillArgs,
    UpdateBudgetArgs,
    UpdateGoalArgs,
    UpdateInvestmentArgs,
    UpdateTransactionArgs,
)
from services import (
    BillService,
    BudgetService,
    CategoryService,
    DebtService,
    GoalService,
    InvalidInput,
    InvestmentService,
    NotFound,
    TransactionService,
    UserService,
)
from stats import StatsService, percent

logger = logging.getLogger(__name__)


class DispatchStatus(str, Enum):
    applied = "applied"
    not_found = "not_found"
    invalid_input = "invalid_input"


@dataclass
class DispatchResult:
    status: DispatchStatus
    tool: str
    facts: dict[str, Any] = field(default_factory=dict)
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == DispatchStatus.applied


class MissingTarget(NotFound):
    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


@dataclass(frozen=True)
class ToolSpec:
    args_model: type[BaseModel]
    handler: str
    entity: str
    id_field: Optional[str] = None


TOOLS: dict[str, ToolSpec] = {
    "record_transaction": ToolSpec(RecordTransactionArgs, "_record_transaction", "Transaction"),
    "update_transaction": ToolSpec(UpdateTransactionArgs, "_update_transaction", "Transaction", "id"),
    "delete_transaction": ToolSpec(IdArgs, "_delete_transaction", "Transaction", "id"),
    "create_budget": ToolSpec(CreateBudgetArgs, "_create_budget", "Budget"),
    "update_budget": ToolSpec(UpdateBudgetArgs, "_update_budget", "Budget", "id"),
    "delete_budget": ToolSpec(IdArgs, "_delete_budget", "Budget", "id"),
    "create_goal": ToolSpec(CreateGoalArgs, "_create_goal", "Goal"),
    "update_goal": ToolSpec(UpdateGoalArgs, "_update_goal", "Goal", "id"),
    "delete_goal": ToolSpec(IdArgs, "_delete_goal", "Goal", "id"),
    "add_goal_funds": ToolSpec(AddGoalFundsArgs, "_add_goal_funds", "Goal", "goal_id"),
    "reallocate_goal_funds": ToolSpec(
        ReallocateGoalFundsArgs, "_reallocate_goal_funds", "Goal", "from_goal_id"
    ),
    "create_bill": ToolSpec(CreateBillArgs, "_create_bill", "Bill"),
    "update_bill": ToolSpec(UpdateBillArgs, "_update_bill", "Bill", "id"),
    "delete_bill": ToolSpec(IdArgs, "_delete_bill", "Bill", "id"),
    "mark_bill_paid": ToolSpec(MarkBillPaidArgs, "_mark_bill_paid", "Bill", "id"),
    "create_investment": ToolSpec(CreateInvestmentArgs, "_create_investment", "Investment"),
    "update_investment": ToolSpec(UpdateInvestmentArgs, "_update_investment", "Investment", "id"),
    "delete_investment": ToolSpec(IdArgs, "_delete_investment", "Investment", "id"),
    "record_debt": ToolSpec(RecordDebtArgs, "_record_debt", "Debt"),
    "mark_debt_paid": ToolSpec(IdArgs, "_mark_debt_paid", "Debt", "id"),
}

TEMPLATES: dict[str, str] = {
    "record_transaction": '{type_label} of {amount} recorded: "{description}" in {category}.',
    "update_transaction": 'Transaction [ID: {id}] updated: {amount}, "{description}" in {category}.',
    "delete_transaction": 'Transaction [ID: {id}] deleted ({amount}, "{description}").',
    "create_budget": "Budget for {category} set to {amount} for {month:02d}/{year} ({percent}% used so far).",
    "update_budget": "Budget [ID: {id}] for {category} is now {amount}.",
    "delete_budget": "Budget [ID: {id}] for {category} deleted.",
    "create_goal": 'New goal "{name}" with a target of {target_amount} created.',
    "update_goal": 'Goal "{name}" [ID: {id}] updated: {current_amount} of {target_amount}.',
    "delete_goal": 'Goal "{name}" [ID: {id}] deleted.',
    "add_goal_funds": 'Moved {amount} from your main balance into "{name}" ({percent}% of target).',
    "reallocate_goal_funds:goal": 'Moved {amount} from "{from_name}" to "{to_name}".',
    "reallocate_goal_funds:balance": 'Returned {amount} from "{from_name}" to your main balance as income.',
    "create_bill": 'Bill "{name}" of {amount} added, due on day {due_day} ({frequency}).',
    "update_bill": 'Bill "{name}" [ID: {id}] updated: {amount}, due on day {due_day}.',
    "delete_bill": 'Bill "{name}" [ID: {id}] deleted.',
    "mark_bill_paid": 'Bill "{name}" marked as paid.',
    "mark_bill_paid:debited": 'Bill "{name}" marked as paid and {amount} recorded as an expense.',
    "create_investment": 'Investment "{name}" added: {quantity} units at {avg_buy_price}.',
    "update_investment": 'Investment "{name}" [ID: {id}] updated; it is now worth {value}.',
    "delete_investment": 'Investment "{name}" [ID: {id}] deleted.',
    "record_debt:receivable": "Noted: {counterpart} owes you {amount}.",
    "record_debt:payable": "Noted: you owe {counterpart} {amount}.",
    "mark_debt_paid": "Debt with {counterpart} [ID: {id}] marked as paid.",
    "query": "This month: income {income}, expenses {expense}, balance {balance}.",
}

NOT_FOUND_TEMPLATE = "{entity} [ID: {id}] was not found."
INVALID_TEMPLATE = "I need a bit more detail for {tool}: {problem}"
UNKNOWN_TOOL_TEMPLATE = 'I do not know how to "{tool}" yet.'

MONEY_FACTS = frozenset(
    {
        "amount",
        "requested_amount",
        "target_amount",
        "current_amount",
        "spent",
        "remaining",
        "value",
        "avg_buy_price",
        "income",
        "expense",
        "balance",
        "month_balance",
    }
)


def format_money(amount: float) -> str:
    """Rupiah style: ``Rp 35.000``, negative as ``-Rp 35.000``."""
    sign = "-" if amount < 0 else ""
    grouped = f"{abs(amount):,.0f}".replace(",", ".")
    return f"{sign}Rp {grouped}"


def render(template_key: str, facts: Mapping[str, Any]) -> str:
    display = {
        key: format_money(value)
        if key in MONEY_FACTS and isinstance(value, (int, float))
        else value
        for key, value in facts.items()
    }
    return TEMPLATES[template_key].format(**display)


def _validation_problem(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "arguments"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def tool_schemas() -> list[dict[str, Any]]:
    """JSON schemas of every tool's arguments, as offered to the assistant."""
    return [
        {
            "name": name,
            "parameters": spec.args_model.model_json_schema(by_alias=True),
        }
        for name, spec in TOOLS.items()
    ]


class ToolDispatcher:
    def __init__(self, session: Session) -> None:
        self.session = session

    def execute(
        self,
        user_id: int,
        tool_name: str,
        args: Union[Mapping[str, Any], str, None],
    ) -> DispatchResult:
        spec = TOOLS.get(tool_name)
        if spec is None:
            return DispatchResult(
                DispatchStatus.invalid_input,
                tool_name,
                {"problem": "unknown tool"},
                UNKNOWN_TOOL_TEMPLATE.format(tool=tool_name),
            )

        if isinstance(args, str):
            try:
                args = json.loads(args) if args.strip() else {}
            except json.JSONDecodeError:
                return self._invalid(tool_name, "arguments are not valid JSON")
        if args is None:
            args = {}
        if not isinstance(args, Mapping):
            return self._invalid(tool_name, "arguments must be an object")

        try:
            parsed = spec.args_model.model_validate(dict(args))
        except ValidationError as exc:
            return self._invalid(tool_name, _validation_problem(exc))

        handler: Callable[[int, Any], tuple[str, dict[str, Any]]] = getattr(
            self, spec.handler
        )
        try:
            self._require_user(user_id)
            template_key, facts = handler(user_id, parsed)
            self.session.commit()
        except MissingTarget as exc:
            self.session.rollback()
            return self._not_found(tool_name, exc.entity, exc.entity_id)
        except NotFound as exc:
            self.session.rollback()
            entity_id = getattr(parsed, spec.id_field) if spec.id_field else None
            entity = spec.entity if spec.id_field else str(exc).replace(" not found", "")
            return self._not_found(tool_name, entity, entity_id)
        except InvalidInput as exc:
            self.session.rollback()
            return self._invalid(tool_name, str(exc))
        except Exception:
            self.session.rollback()
            logger.exception(f"tool_call_failed: tool={tool_name} user_id={user_id}")
            raise

        logger.info(f"tool_call_applied: tool={tool_name} user_id={user_id}")
        return DispatchResult(
            DispatchStatus.applied, tool_name, facts, render(template_key, facts)
        )

    def execute_intent(self, user_id: int, record: IntentRecord) -> DispatchResult:
        """Route an extraction record (transaction, debt or query) to a tool."""
        if record.intent == "transaction":
            if not record.amount or record.amount <= 0:
                return self._invalid("record_transaction", "how much was it?")
            return self.execute(
                user_id,
                "record_transaction",
                {
                    "amount": record.amount,
                    "description": record.description or "",
                    "category": record.category,
                    "type": (record.transaction_type or TransactionType.expense).value,
                },
            )
        if record.intent == "debt":
            if not record.amount or not record.debtor_name:
                return self._invalid("record_debt", "who is involved and how much?")
            return self.execute(
                user_id,
                "record_debt",
                {
                    "debtorName": record.debtor_name,
                    "amount": record.amount,
                    "description": record.description,
                },
            )

        today = local_today()
        stats = StatsService(self.session, user_id).monthly_stats(today.year, today.month)
        facts = {
            "year": today.year,
            "month": today.month,
            "income": stats.income,
            "expense": stats.expense,
            "balance": stats.balance,
        }
        return DispatchResult(DispatchStatus.applied, "query", facts, render("query", facts))

    def _require_user(self, user_id: int) -> None:
        try:
            UserService(self.session).get(user_id)
        except NotFound:
            raise MissingTarget("User", user_id) from None

    def _invalid(self, tool_name: str, problem: str) -> DispatchResult:
        return DispatchResult(
            DispatchStatus.invalid_input,
            tool_name,
            {"problem": problem},
            INVALID_TEMPLATE.format(tool=tool_name, problem=problem),
        )

    def _not_found(self, tool_name: str, entity: str, entity_id: Any) -> DispatchResult:
        return DispatchResult(
            DispatchStatus.not_found,
            tool_name,
            {"entity": entity, "id": entity_id},
            NOT_FOUND_TEMPLATE.format(entity=entity, id=entity_id),
        )

    # Transactions

    def _record_transaction(self, user_id: int, args: RecordTransactionArgs):
        txn = TransactionService(self.session, user_id, autocommit=False).create(
            TransactionIn(
                amount=args.amount,
                type=args.type,
                category=args.category,
                description=args.description,
                occurred_at=args.occurred_at,
                merchant_name=args.merchant_name,
                payment_method=args.payment_method,
            )
        )
        month_stats = StatsService(self.session, user_id).monthly_stats(
            txn.occurred_at.year, txn.occurred_at.month
        )
        return "record_transaction", {
            "id": txn.id,
            "amount": txn.amount,
            "type": txn.type.value,
            "type_label": txn.type.value.capitalize(),
            "description": txn.description,
            "category": txn.category.name,
            "category_id": txn.category_id,
            "occurred_at": txn.occurred_at.isoformat(),
            "month_balance": month_stats.balance,
        }

    def _update_transaction(self, user_id: int, args: UpdateTransactionArgs):
        txn = TransactionService(self.session, user_id, autocommit=False).update(
            args.id,
            TransactionUpdate(
                amount=args.amount,
                description=args.description,
                category=args.category,
                type=args.type,
            ),
        )
        return "update_transaction", {
            "id": txn.id,
            "amount": txn.amount,
            "type": txn.type.value,
            "description": txn.description,
            "category": txn.category.name,
        }

    def _delete_transaction(self, user_id: int, args: IdArgs):
        service = TransactionService(self.session, user_id, autocommit=False)
        txn = service.get(args.id)
        facts = {"id": txn.id, "amount": txn.amount, "description": txn.description}
        service.delete(args.id)
        return "delete_transaction", facts

    # Budgets

    def _create_budget(self, user_id: int, args: CreateBudgetArgs):
        today = local_today()
        category = CategoryService(self.session, autocommit=False).resolve(args.category)
        budget = BudgetService(self.session, user_id, autocommit=False).create(
            BudgetIn(
                category_id=category.id,
                month=args.month or today.month,
                year=args.year or today.year,
                amount=args.amount,
            )
        )
        spent = StatsService(self.session, user_id).budget_spent(
            budget.category_id, budget.month, budget.year
        )
        return "create_budget", {
            "id": budget.id,
            "category": category.name,
            "category_id": category.id,
            "amount": budget.amount,
            "month": budget.month,
            "year": budget.year,
            "spent": spent,
            "percent": percent(spent, budget.amount),
        }

    def _update_budget(self, user_id: int, args: UpdateBudgetArgs):
        budget = BudgetService(self.session, user_id, autocommit=False).update(
            args.id, args.amount
        )
        return "update_budget", {
            "id": budget.id,
            "category": budget.category.name,
            "amount": budget.amount,
        }

    def _delete_budget(self, user_id: int, args: IdArgs):
        service = BudgetService(self.session, user_id, autocommit=False)
        budget = service.get(args.id)
        facts = {"id": budget.id, "category": budget.category.name, "amount": budget.amount}
        service.delete(args.id)
        return "delete_budget", facts

    # Goals

    def _create_goal(self, user_id: int, args: CreateGoalArgs):
        goal = GoalService(self.session, user_id, autocommit=False).create(
            GoalIn(
                name=args.name,
                target_amount=args.target_amount,
                deadline=args.deadline,
                icon=args.icon,
            )
        )
        return "create_goal", self._goal_facts(goal)

    def _update_goal(self, user_id: int, args: UpdateGoalArgs):
        goal = GoalService(self.session, user_id, autocommit=False).update(
            args.id,
            GoalUpdate(**args.model_dump(exclude={"id"}, exclude_none=True)),
        )
        return "update_goal", self._goal_facts(goal)

    def _delete_goal(self, user_id: int, args: IdArgs):
        service = GoalService(self.session, user_id, autocommit=False)
        facts = self._goal_facts(service.get(args.id))
        service.delete(args.id)
        return "delete_goal", facts

    def _add_goal_funds(self, user_id: int, args: AddGoalFundsArgs):
        goals = GoalService(self.session, user_id, autocommit=False)
        goal = goals.get(args.goal_id)
        moved = goal.apply_progress(args.amount)
        if moved <= 0:
            raise InvalidInput(f'goal "{goal.name}" has already reached its target')
        TransactionService(self.session, user_id, autocommit=False).create(
            TransactionIn(
                amount=moved,
                type=TransactionType.expense,
                category=get_settings().savings_category,
                description=f"Deposit to goal: {goal.name}",
                payment_method="transfer",
            )
        )
        facts = self._goal_facts(goal)
        facts.update({"amount": moved, "requested_amount": args.amount})
        return "add_goal_funds", facts

    def _reallocate_goal_funds(self, user_id: int, args: ReallocateGoalFundsArgs):
        goals = GoalService(self.session, user_id, autocommit=False)
        source = goals.get(args.from_goal_id)

        # Resolve the destination before touching the source.
        destination: Optional[Goal] = None
        if args.target == "goal":
            try:
                destination = goals.get(args.to_goal_id)
            except NotFound:
                raise MissingTarget("Goal", args.to_goal_id) from None
        else:
            category = CategoryService(self.session, autocommit=False).resolve(
                get_settings().savings_category
            )

        amount = args.amount if args.amount is not None else source.current_amount
        if amount <= 0:
            raise InvalidInput(f'goal "{source.name}" has no funds to move')
        if amount > source.current_amount:
            raise InvalidInput(
                f'goal "{source.name}" only holds {format_money(source.current_amount)}'
            )

        if destination is not None:
            moved = destination.apply_progress(amount)
            if moved <= 0:
                raise InvalidInput(
                    f'goal "{destination.name}" has already reached its target'
                )
            source.apply_progress(-moved)
            self.session.flush()
            return "reallocate_goal_funds:goal", {
                "amount": moved,
                "requested_amount": amount,
                "from_goal_id": source.id,
                "from_name": source.name,
                "from_current_amount": source.current_amount,
                "to_goal_id": destination.id,
                "to_name": destination.name,
                "to_current_amount": destination.current_amount,
                "destination": "goal",
            }

        source.apply_progress(-amount)
        txn = TransactionService(self.session, user_id, autocommit=False).create(
            TransactionIn(
                amount=amount,
                type=TransactionType.income,
                category=category.name,
                description=f"Funds returned from goal: {source.name}",
                payment_method="transfer",
            )
        )
        return "reallocate_goal_funds:balance", {
            "amount": amount,
            "requested_amount": amount,
            "from_goal_id": source.id,
            "from_name": source.name,
            "from_current_amount": source.current_amount,
            "transaction_id": txn.id,
            "destination": "balance",
        }

    @staticmethod
    def _goal_facts(goal: Goal) -> dict[str, Any]:
        return {
            "id": goal.id,
            "name": goal.name,
            "target_amount": goal.target_amount,
            "current_amount": goal.current_amount,
            "percent": percent(goal.current_amount, goal.target_amount),
        }

    # Bills

    def _create_bill(self, user_id: int, args: CreateBillArgs):
        category_id = None
        if args.category:
            category_id = (
                CategoryService(self.session, autocommit=False).resolve(args.category).id
            )
        bill = BillService(self.session, user_id, autocommit=False).create(
            BillIn(
                name=args.name,
                amount=args.amount,
                category_id=category_id,
                due_day=args.due_date,
                frequency=args.frequency,
            )
        )
        return "create_bill", self._bill_facts(bill)

    def _update_bill(self, user_id: int, args: UpdateBillArgs):
        bill = BillService(self.session, user_id, autocommit=False).update(
            args.id,
            BillUpdate(
                name=args.name,
                amount=args.amount,
                due_day=args.due_date,
                frequency=args.frequency,
            ),
        )
        return "update_bill", self._bill_facts(bill)

    def _delete_bill(self, user_id: int, args: IdArgs):
        service = BillService(self.session, user_id, autocommit=False)
        facts = self._bill_facts(service.get(args.id))
        service.delete(args.id)
        return "delete_bill", facts

    def _mark_bill_paid(self, user_id: int, args: MarkBillPaidArgs):
        bill, txn = BillService(self.session, user_id, autocommit=False).mark_paid(
            args.id, record_transaction=args.record_transaction
        )
        facts = self._bill_facts(bill)
        facts["transaction_id"] = txn.id if txn else None
        return ("mark_bill_paid:debited" if txn else "mark_bill_paid"), facts

    @staticmethod
    def _bill_facts(bill) -> dict[str, Any]:
        return {
            "id": bill.id,
            "name": bill.name,
            "amount": bill.amount,
            "due_day": bill.due_day,
            "frequency": bill.frequency.value,
            "is_paid": bill.is_paid,
        }

    # Investments

    def _create_investment(self, user_id: int, args: CreateInvestmentArgs):
        investment = InvestmentService(self.session, user_id, autocommit=False).create(
            InvestmentIn(
                name=args.name,
                type=args.type,
                quantity=args.quantity,
                avg_buy_price=args.avg_buy_price,
                current_price=args.current_price,
                platform=args.platform,
            )
        )
        return "create_investment", self._investment_facts(investment)

    def _update_investment(self, user_id: int, args: UpdateInvestmentArgs):
        investment = InvestmentService(self.session, user_id, autocommit=False).update(
            args.id,
            InvestmentUpdate(**args.model_dump(exclude={"id"}, exclude_none=True)),
        )
        return "update_investment", self._investment_facts(investment)

    def _delete_investment(self, user_id: int, args: IdArgs):
        service = InvestmentService(self.session, user_id, autocommit=False)
        facts = self._investment_facts(service.get(args.id))
        service.delete(args.id)
        return "delete_investment", facts

    @staticmethod
    def _investment_facts(investment) -> dict[str, Any]:
        value = investment.quantity * investment.current_price
        return {
            "id": investment.id,
            "name": investment.name,
            "quantity": investment.quantity,
            "avg_buy_price": investment.avg_buy_price,
            "value": value,
            "profit": value - investment.quantity * investment.avg_buy_price,
        }

    # Debts

    def _record_debt(self, user_id: int, args: RecordDebtArgs):
        debt = DebtService(self.session, user_id, autocommit=False).create(
            DebtIn(
                counterpart_name=args.debtor_name,
                amount=args.amount,
                description=args.description,
            )
        )
        direction = "receivable" if debt.amount > 0 else "payable"
        return f"record_debt:{direction}", {
            "id": debt.id,
            "counterpart": debt.counterpart_name,
            "amount": abs(debt.amount),
            "direction": direction,
        }

    def _mark_debt_paid(self, user_id: int, args: IdArgs):
        debt = DebtService(self.session, user_id, autocommit=False).mark_paid(args.id)
        return "mark_debt_paid", {
            "id": debt.id,
            "counterpart": debt.counterpart_name,
            "amount": abs(debt.amount),
        }
