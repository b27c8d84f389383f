from __future__ import annotations

import json
import logging
from http.client import HTTPException
from typing import Protocol
from urllib.request import Request, urlopen

from config import get_settings
from services import Unavailable

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def deliver(self, address: int, text: str) -> None: ...


class TelegramSink:
    def __init__(self, token: str, *, timeout: float) -> None:
        self.token = token
        self.timeout = timeout

    def deliver(self, address: int, text: str) -> None:
        url = f"https://api.telegram.org/bot{self.token}/sendMessage"
        body = json.dumps(
            {"chat_id": address, "text": text, "parse_mode": "Markdown"}
        ).encode("utf-8")
        req = Request(
            url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except (OSError, HTTPException, ValueError) as exc:
            raise Unavailable(f"Failed to deliver message to {address}") from exc
        if not payload.get("ok", False):
            raise Unavailable(
                f"Telegram rejected message to {address}: {payload.get('description')}"
            )


class LogSink:
    """Stand-in used when no bot token is configured."""

    def deliver(self, address: int, text: str) -> None:
        logger.info(f"notification_skipped: address={address} chars={len(text)}")


def get_sink() -> NotificationSink:
    settings = get_settings()
    if settings.telegram_bot_token:
        return TelegramSink(
            settings.telegram_bot_token, timeout=settings.notify_timeout_secs
        )
    return LogSink()


def deliver_quietly(sink: NotificationSink, address: int, text: str) -> bool:
    """Fire-and-forget delivery: failures are logged, never raised or retried."""
    try:
        sink.deliver(address, text)
    except Unavailable as exc:
        logger.warning(f"notification_failed: address={address} error={exc}")
        return False
    return True
