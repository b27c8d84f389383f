import logging
from dataclasses import asdict
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from sqlalchemy.orm import Session

from bot import BotHandler
from database import SessionLocal, init_db, session_scope
from dispatcher import DispatchResult, ToolDispatcher, tool_schemas
from identity import IdentityService
from models import Bill, Budget, Debt, DebtStatus, Goal, Investment, Transaction, UserSettings
from notifications import deliver_quietly, get_sink
from periods import Period, local_today, resolve_period
from recap import RecapJob
from scheduler import SchedulerManager
from schemas import (
    BillIn,
    BillPayIn,
    BillUpdate,
    BudgetIn,
    BudgetUpdate,
    DebtIn,
    DebtUpdate,
    GoalFundsIn,
    GoalIn,
    GoalUpdate,
    IntentRecord,
    InvestmentIn,
    InvestmentUpdate,
    LinkMessagingIn,
    RegisterIn,
    SettingsIn,
    ToolCallIn,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    BillService,
    BudgetService,
    CategoryService,
    Conflict,
    DebtService,
    GoalService,
    InvestmentService,
    NotFound,
    SettingsService,
    TransactionService,
    Unavailable,
    UserService,
)
from stats import StatsService

logger = logging.getLogger(__name__)

app = FastAPI(title="Monev Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    init_db()
    with session_scope() as session:
        CategoryService(session, autocommit=False).seed_defaults()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, Conflict):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, Unavailable):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def current_user_id(
    x_user_id: int = Header(...), db: Session = Depends(get_db)
) -> int:
    """The authentication layer in front of the API sets ``X-User-Id``."""
    try:
        UserService(db).get(x_user_id)
    except NotFound as exc:
        raise HTTPException(status_code=401, detail="Unknown user") from exc
    return x_user_id


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def month_from_request(request: Request) -> tuple[int, int]:
    today = local_today()
    try:
        year = int(request.query_params.get("year", today.year))
        month = int(request.query_params.get("month", today.month))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid year or month") from exc
    if not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12")
    return year, month


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def transaction_out(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "amount": txn.amount,
        "type": txn.type.value,
        "category_id": txn.category_id,
        "category": txn.category.name if txn.category else None,
        "occurred_at": txn.occurred_at.isoformat(),
        "description": txn.description,
        "merchant_name": txn.merchant_name,
        "payment_method": txn.payment_method,
        "is_verified": txn.is_verified,
    }


def budget_out(budget: Budget) -> dict:
    return {
        "id": budget.id,
        "category_id": budget.category_id,
        "month": budget.month,
        "year": budget.year,
        "amount": budget.amount,
    }


def goal_out(goal: Goal) -> dict:
    return {
        "id": goal.id,
        "name": goal.name,
        "target_amount": goal.target_amount,
        "current_amount": goal.current_amount,
        "deadline": _iso(goal.deadline),
        "icon": goal.icon,
        "color": goal.color,
    }


def bill_out(bill: Bill) -> dict:
    return {
        "id": bill.id,
        "name": bill.name,
        "amount": bill.amount,
        "category_id": bill.category_id,
        "due_day": bill.due_day,
        "frequency": bill.frequency.value,
        "is_paid": bill.is_paid,
        "last_paid_at": _iso(bill.last_paid_at),
        "is_active": bill.is_active,
        "notes": bill.notes,
    }


def investment_out(investment: Investment) -> dict:
    return {
        "id": investment.id,
        "name": investment.name,
        "type": investment.type.value,
        "quantity": investment.quantity,
        "avg_buy_price": investment.avg_buy_price,
        "current_price": investment.current_price,
        "platform": investment.platform,
        "notes": investment.notes,
    }


def debt_out(debt: Debt) -> dict:
    return {
        "id": debt.id,
        "counterpart_name": debt.counterpart_name,
        "amount": debt.amount,
        "description": debt.description,
        "due_date": _iso(debt.due_date),
        "status": debt.status.value,
    }


def settings_out(settings: UserSettings) -> dict:
    return {
        "hourly_rate": settings.hourly_rate,
        "primary_goal_id": settings.primary_goal_id,
        "is_app_lock_enabled": settings.is_app_lock_enabled,
        "has_security_pin": settings.security_pin is not None,
    }


def dispatch_out(result: DispatchResult) -> dict:
    return {
        "status": result.status.value,
        "tool": result.tool,
        "facts": result.facts,
        "message": result.message,
    }


# Accounts


@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterIn, db: Session = Depends(get_db)):
    try:
        user = UserService(db).register(payload.email, payload.password, payload.name)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"id": user.id, "email": user.email, "name": user.name}


@app.post("/api/account/link-messaging")
def link_messaging(
    payload: LinkMessagingIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        result = IdentityService(db).merge(user_id, payload.messaging_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "success": result.success,
        "message": result.message,
        "merged_user_id": result.merged_user_id,
        "moved": result.moved,
    }


@app.delete("/api/account/link-messaging")
def unlink_messaging(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    IdentityService(db).unlink(user_id)
    return {"ok": True}


@app.get("/api/categories")
def list_categories(db: Session = Depends(get_db)):
    return [
        {
            "id": c.id,
            "name": c.name,
            "type": c.type.value,
            "color": c.color,
            "icon": c.icon,
        }
        for c in CategoryService(db).list_all()
    ]


# Transactions


@app.get("/api/transactions")
def list_transactions(
    request: Request,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    period = period_from_request(request)
    try:
        page = max(int(request.query_params.get("page", "1")), 1)
        limit = min(max(int(request.query_params.get("limit", "50")), 1), 100)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid page or limit") from exc
    offset = (page - 1) * limit
    items = TransactionService(db, user_id).list(period, limit=limit + 1, offset=offset)
    has_more = len(items) > limit
    return {
        "items": [transaction_out(txn) for txn in items[:limit]],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_out(txn)


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user_id).get(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_out(txn)


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user_id).update(transaction_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_out(txn)


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"ok": True, "id": transaction_id}


# Budgets


@app.get("/api/budgets")
def list_budgets(
    request: Request,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    year, month = month_from_request(request)
    return StatsService(db, user_id).budget_progress(month, year)


@app.post("/api/budgets", status_code=201)
def create_budget(
    payload: BudgetIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        budget = BudgetService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return budget_out(budget)


@app.put("/api/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    payload: BudgetUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        budget = BudgetService(db, user_id).update(budget_id, payload.amount)
    except ValueError as exc:
        raise http_error(exc) from exc
    return budget_out(budget)


@app.delete("/api/budgets/{budget_id}")
def delete_budget(
    budget_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        BudgetService(db, user_id).delete(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"ok": True, "id": budget_id}


# Goals


@app.get("/api/goals")
def list_goals(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return StatsService(db, user_id).goal_progress()


@app.post("/api/goals", status_code=201)
def create_goal(
    payload: GoalIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    goal = GoalService(db, user_id).create(payload)
    return goal_out(goal)


@app.put("/api/goals/{goal_id}")
def update_goal(
    goal_id: int,
    payload: GoalUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        goal = GoalService(db, user_id).update(goal_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return goal_out(goal)


@app.post("/api/goals/{goal_id}/deposit")
def deposit_goal(
    goal_id: int,
    payload: GoalFundsIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    service = GoalService(db, user_id)
    try:
        moved = service.deposit(goal_id, payload.amount)
        goal = service.get(goal_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"moved": moved, "goal": goal_out(goal)}


@app.post("/api/goals/{goal_id}/withdraw")
def withdraw_goal(
    goal_id: int,
    payload: GoalFundsIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    service = GoalService(db, user_id)
    try:
        moved = service.withdraw(goal_id, payload.amount)
        goal = service.get(goal_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"moved": moved, "goal": goal_out(goal)}


@app.delete("/api/goals/{goal_id}")
def delete_goal(
    goal_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        GoalService(db, user_id).delete(goal_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"ok": True, "id": goal_id}


# Bills


@app.get("/api/bills")
def list_bills(
    request: Request,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    active_only = request.query_params.get("active_only") in ("1", "true", "yes")
    return [bill_out(b) for b in BillService(db, user_id).list_all(active_only=active_only)]


@app.post("/api/bills", status_code=201)
def create_bill(
    payload: BillIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        bill = BillService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return bill_out(bill)


@app.put("/api/bills/{bill_id}")
def update_bill(
    bill_id: int,
    payload: BillUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        bill = BillService(db, user_id).update(bill_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return bill_out(bill)


@app.post("/api/bills/{bill_id}/toggle")
def toggle_bill(
    bill_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        bill = BillService(db, user_id).toggle_paid(bill_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return bill_out(bill)


@app.post("/api/bills/{bill_id}/pay")
def pay_bill(
    bill_id: int,
    payload: BillPayIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        bill, txn = BillService(db, user_id).mark_paid(
            bill_id, record_transaction=payload.record_transaction
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "bill": bill_out(bill),
        "transaction": transaction_out(txn) if txn else None,
    }


@app.delete("/api/bills/{bill_id}")
def delete_bill(
    bill_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        BillService(db, user_id).delete(bill_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"ok": True, "id": bill_id}


# Investments


@app.get("/api/investments")
def list_investments(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return [investment_out(i) for i in InvestmentService(db, user_id).list_all()]


@app.post("/api/investments", status_code=201)
def create_investment(
    payload: InvestmentIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    investment = InvestmentService(db, user_id).create(payload)
    return investment_out(investment)


@app.put("/api/investments/{investment_id}")
def update_investment(
    investment_id: int,
    payload: InvestmentUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        investment = InvestmentService(db, user_id).update(investment_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return investment_out(investment)


@app.delete("/api/investments/{investment_id}")
def delete_investment(
    investment_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        InvestmentService(db, user_id).delete(investment_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"ok": True, "id": investment_id}


# Debts


@app.get("/api/debts")
def list_debts(
    request: Request,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    status_param = request.query_params.get("status")
    try:
        status = DebtStatus(status_param) if status_param else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid status") from exc
    return [debt_out(d) for d in DebtService(db, user_id).list_all(status)]


@app.post("/api/debts", status_code=201)
def create_debt(
    payload: DebtIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    debt = DebtService(db, user_id).create(payload)
    return debt_out(debt)


@app.put("/api/debts/{debt_id}")
def update_debt(
    debt_id: int,
    payload: DebtUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        debt = DebtService(db, user_id).update(debt_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return debt_out(debt)


@app.post("/api/debts/{debt_id}/pay")
def pay_debt(
    debt_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        debt = DebtService(db, user_id).mark_paid(debt_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return debt_out(debt)


@app.delete("/api/debts/{debt_id}")
def delete_debt(
    debt_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        DebtService(db, user_id).delete(debt_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"ok": True, "id": debt_id}


# Settings


@app.get("/api/settings")
def get_user_settings(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return settings_out(SettingsService(db, user_id).get_or_create())


@app.put("/api/settings")
def update_user_settings(
    payload: SettingsIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        settings = SettingsService(db, user_id).update(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return settings_out(settings)


# Stats


@app.get("/api/stats/monthly")
def stats_monthly(
    request: Request,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    year, month = month_from_request(request)
    service = StatsService(db, user_id)
    stats = service.monthly_stats(year, month)
    return {
        "year": year,
        "month": month,
        "income": stats.income,
        "expense": stats.expense,
        "balance": stats.balance,
        "month_over_month": service.month_over_month(year, month),
    }


@app.get("/api/stats/categories")
def stats_categories(
    request: Request,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    period = period_from_request(request)
    return StatsService(db, user_id).category_breakdown(period)


@app.get("/api/stats/goals")
def stats_goals(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    service = StatsService(db, user_id)
    return {"items": service.goal_progress(), "total_saved": service.goals_total()}


@app.get("/api/stats/net-worth")
def stats_net_worth(
    request: Request,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    year, month = month_from_request(request)
    return StatsService(db, user_id).net_worth(year, month)


@app.get("/api/stats/investments")
def stats_investments(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return StatsService(db, user_id).investment_summary()


@app.get("/api/stats/debts")
def stats_debts(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return StatsService(db, user_id).debt_summary()


# Assistant and messaging


@app.get("/api/chat/tools")
def chat_tools():
    return tool_schemas()


@app.post("/api/chat/tool-call")
def chat_tool_call(
    payload: ToolCallIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    result = ToolDispatcher(db).execute(user_id, payload.tool_name, payload.arguments)
    return dispatch_out(result)


@app.post("/api/chat/intent")
def chat_intent(
    payload: IntentRecord,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return dispatch_out(ToolDispatcher(db).execute_intent(user_id, payload))


async def telegram_update(request: Request) -> dict:
    try:
        update = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from exc
    if not isinstance(update, dict):
        raise HTTPException(status_code=400, detail="Invalid update")
    return update


@app.post("/api/telegram-webhook")
def telegram_webhook(update: dict = Depends(telegram_update), db: Session = Depends(get_db)):
    reply = BotHandler(db).handle_update(update)
    if reply is None:
        return {"ok": True, "replied": False}
    message = update.get("message") or update.get("edited_message") or {}
    address = (message.get("chat") or {}).get("id") or (message.get("from") or {}).get("id")
    delivered = deliver_quietly(get_sink(), address, reply)
    return {"ok": True, "replied": delivered}


@app.post("/api/cron/daily-recap")
def cron_daily_recap():
    results = RecapJob().run()
    return {"ok": True, "results": [asdict(r) for r in results]}


@app.post("/api/cron/subscription-check")
def cron_subscription_check():
    results = RecapJob().run_subscription_check()
    return {"ok": True, "results": [asdict(r) for r in results]}
