from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from dispatcher import ToolDispatcher, format_money
from models import TransactionType
from periods import local_today, month_period
from services import TransactionService, UserService
from stats import StatsService

logger = logging.getLogger(__name__)

INCOME_KEYWORDS = (
    "gaji",
    "masuk",
    "terima",
    "income",
    "bonus",
    "thr",
    "hadiah",
    "investasi",
    "salary",
)

# Description keywords mapped onto the default category names.
CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "Food & Drinks": ("makan", "minum", "kopi", "warteg", "restoran", "kantin", "lunch", "coffee"),
    "Transport": ("bensin", "parkir", "toll", "gojek", "grab", "ojek", "bus", "kereta"),
    "Shopping": ("beli", "belanja", "shopee", "tokopedia", "lazada"),
    "Entertainment": ("nonton", "game", "hiburan", "netflix", "spotify"),
    "Health": ("obat", "dokter", "rumah sakit", "apotek"),
    "Education": ("buku", "kursus", "pelatihan", "sekolah", "kuliah"),
    "Salary": ("gaji", "salary"),
}

_THOUSANDS_SEPARATOR = re.compile(r"[.,](?=\d{3})")
_CURRENCY_PREFIX = re.compile(r"rp\.?\s*", re.IGNORECASE)
_AMOUNT = re.compile(r"\d+")

HELP_TEXT = (
    "*How to record*\n"
    "Type the amount then a description, for example:\n"
    "`50000 lunch at the warteg`\n"
    "`Rp 1.000.000 salary`\n\n"
    "Words like salary, bonus or gaji mark the entry as income.\n\n"
    "*Commands*\n"
    "/balance - this month's income, expenses and balance\n"
    "/recent - your five latest transactions\n"
    "/summary - this month's totals with counts\n"
    "/cancel - stop what you were doing"
)

UNRECOGNISED_TEXT = (
    "I could not read an amount there.\n"
    "Type `[amount] [description]`, for example `50000 lunch`, or /help."
)


@dataclass(frozen=True)
class QuickEntry:
    amount: float
    description: str
    type: TransactionType
    category: Optional[str] = None


def guess_category(description: str, type_: TransactionType) -> Optional[str]:
    lowered = description.lower()
    for name, keywords in CATEGORY_KEYWORDS.items():
        is_income = name == "Salary"
        if (type_ == TransactionType.income) != is_income:
            continue
        if any(keyword in lowered for keyword in keywords):
            return name
    return None


def parse_quick_entry(text: str) -> Optional[QuickEntry]:
    """Read ``"50000 lunch"`` style input; ``None`` when there is no amount."""
    cleaned = _THOUSANDS_SEPARATOR.sub("", text or "")
    cleaned = _CURRENCY_PREFIX.sub("", cleaned, count=1)
    match = _AMOUNT.search(cleaned)
    if not match:
        return None
    amount = int(match.group(0))
    if amount <= 0:
        return None

    description = (cleaned[: match.start()] + cleaned[match.end():]).strip()
    description = re.sub(r"\s+", " ", description)
    lowered = text.lower()
    type_ = (
        TransactionType.income
        if any(keyword in lowered for keyword in INCOME_KEYWORDS)
        else TransactionType.expense
    )
    if not description:
        description = "Income" if type_ == TransactionType.income else "Expense"
    return QuickEntry(
        amount=float(amount),
        description=description,
        type=type_,
        category=guess_category(description, type_),
    )


class BotHandler:
    def __init__(self, session: Session) -> None:
        self.session = session

    def handle_update(self, update: Mapping[str, Any]) -> Optional[str]:
        """Answer one webhook update; ``None`` when there is nothing to reply to."""
        message = update.get("message") or update.get("edited_message")
        if not message:
            return None
        sender = message.get("from") or {}
        text = (message.get("text") or "").strip()
        if not sender.get("id") or not text:
            return None

        user = UserService(self.session).get_or_create_ghost(
            int(sender["id"]),
            name=sender.get("first_name"),
            username=sender.get("username"),
        )

        command = text.split()[0].split("@")[0].lower() if text.startswith("/") else None
        if command in ("/start",):
            return self._start(sender.get("first_name") or "there")
        if command in ("/help",):
            return HELP_TEXT
        if command in ("/balance", "/saldo"):
            return self._balance(user.id)
        if command in ("/recent", "/riwayat"):
            return self._recent(user.id)
        if command in ("/summary", "/ringkasan"):
            return self._summary(user.id)
        if command in ("/record", "/catat"):
            return "Send the amount and a description, e.g. `25000 parking`."
        if command in ("/cancel", "/batal"):
            return "Cancelled."
        if command is not None:
            return f"Unknown command {command}. Try /help."
        return self._quick_record(user.id, text)

    def _start(self, first_name: str) -> str:
        return (
            f"Hi {first_name}! I keep track of your money.\n\n"
            "Type an amount and a description to record a transaction, "
            "for example `50000 lunch`.\n\n" + HELP_TEXT
        )

    def _balance(self, user_id: int) -> str:
        today = local_today()
        stats = StatsService(self.session, user_id).monthly_stats(today.year, today.month)
        verdict = (
            "Your finances look healthy."
            if stats.balance >= 0
            else "Spending is above income this month."
        )
        return (
            f"*{today:%B %Y}*\n"
            f"Income: {format_money(stats.income)}\n"
            f"Expenses: {format_money(stats.expense)}\n"
            f"Balance: {format_money(stats.balance)}\n\n"
            f"{verdict}"
        )

    def _recent(self, user_id: int) -> str:
        transactions = TransactionService(self.session, user_id).recent(5)
        if not transactions:
            return "No transactions yet. Send `50000 lunch` to record one."
        lines = ["*Latest transactions*"]
        for index, txn in enumerate(transactions, start=1):
            sign = "+" if txn.type == TransactionType.income else "-"
            lines.append(
                f"{index}. {sign}{format_money(txn.amount)} {txn.description} "
                f"({txn.occurred_at:%d %b})"
            )
        return "\n".join(lines)

    def _summary(self, user_id: int) -> str:
        today = local_today()
        stats = StatsService(self.session, user_id).monthly_stats(today.year, today.month)
        counts = {TransactionType.income: 0, TransactionType.expense: 0}
        month = month_period(today.year, today.month)
        for txn in TransactionService(self.session, user_id).list(month, limit=10_000):
            if txn.type in counts:
                counts[txn.type] += 1
        if stats.balance > 0:
            verdict = "You saved money this month."
        elif stats.balance == 0:
            verdict = "Break-even: income equals expenses."
        else:
            verdict = "Watch your spending."
        return (
            f"*Summary for {today:%B %Y}*\n"
            f"Income: {format_money(stats.income)} ({counts[TransactionType.income]} transactions)\n"
            f"Expenses: {format_money(stats.expense)} ({counts[TransactionType.expense]} transactions)\n"
            f"Net: {format_money(stats.balance)}\n\n"
            f"{verdict}"
        )

    def _quick_record(self, user_id: int, text: str) -> str:
        entry = parse_quick_entry(text)
        if entry is None:
            return UNRECOGNISED_TEXT
        result = ToolDispatcher(self.session).execute(
            user_id,
            "record_transaction",
            {
                "amount": entry.amount,
                "description": entry.description,
                "category": entry.category,
                "type": entry.type.value,
            },
        )
        logger.info(f"bot_quick_record: user_id={user_id} status={result.status.value}")
        return result.message
