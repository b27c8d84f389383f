import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        telegram_bot_token: str | None,
        notify_timeout_secs: float,
        default_category: str,
        savings_category: str,
        default_daily_allowance: float,
        idle_cash_threshold: float,
        cash_burn_threshold: float,
        large_cash_withdrawal: float,
        inflation_factor: float,
        recap_page_size: int,
        recap_hour: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.telegram_bot_token = telegram_bot_token
        self.notify_timeout_secs = notify_timeout_secs
        self.default_category = default_category
        self.savings_category = savings_category
        self.default_daily_allowance = default_daily_allowance
        self.idle_cash_threshold = idle_cash_threshold
        self.cash_burn_threshold = cash_burn_threshold
        self.large_cash_withdrawal = large_cash_withdrawal
        self.inflation_factor = inflation_factor
        self.recap_page_size = recap_page_size
        self.recap_hour = recap_hour


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("MONEV_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "monev.db"
    database_url = os.getenv("MONEV_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("MONEV_TIMEZONE", "Asia/Jakarta")
    telegram_bot_token = os.getenv("MONEV_TELEGRAM_BOT_TOKEN") or None
    return Settings(
        database_url=database_url,
        timezone=timezone,
        telegram_bot_token=telegram_bot_token,
        notify_timeout_secs=float(os.getenv("MONEV_NOTIFY_TIMEOUT_SECS", "10")),
        default_category=os.getenv("MONEV_DEFAULT_CATEGORY", "Other"),
        savings_category=os.getenv("MONEV_SAVINGS_CATEGORY", "Savings"),
        default_daily_allowance=float(
            os.getenv("MONEV_DEFAULT_DAILY_ALLOWANCE", "150000")
        ),
        idle_cash_threshold=float(os.getenv("MONEV_IDLE_CASH_THRESHOLD", "5000000")),
        cash_burn_threshold=float(os.getenv("MONEV_CASH_BURN_THRESHOLD", "100000")),
        large_cash_withdrawal=float(
            os.getenv("MONEV_LARGE_CASH_WITHDRAWAL", "1000000")
        ),
        inflation_factor=float(os.getenv("MONEV_INFLATION_FACTOR", "1.005")),
        recap_page_size=int(os.getenv("MONEV_RECAP_PAGE_SIZE", "100")),
        recap_hour=int(os.getenv("MONEV_RECAP_HOUR", "21")),
    )
