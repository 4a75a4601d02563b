"""Notification sinks for tuning events (Telegram, Slack/Discord webhooks, log)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from html import escape
from typing import Any, Iterable, Protocol, Sequence

import aiohttp
from telegram import Bot

import config

logger = logging.getLogger(__name__)

_ICONS = {
    "backtest_completed": "\U0001F4CA",
    "backtest_failed": "⚠️",
    "proposal_applied": "✅",
    "auto_apply_failed": "❌",
    "report_ready": "\U0001F4DD",
}


@dataclass(frozen=True)
class Notification:
    event: str
    title: str
    fields: dict[str, Any] = field(default_factory=dict)
    severity: str = "info"


class NotificationSink(Protocol):
    async def notify(self, notification: Notification) -> None: ...


def format_notification(notification: Notification, *, html: bool = True) -> str:
    icon = _ICONS.get(notification.event, "ℹ️")
    esc = escape if html else (lambda s: s)
    title = f"<b>{esc(notification.title)}</b>" if html else notification.title
    lines = [f"{icon} {title}"]
    for key, value in notification.fields.items():
        if value is None or value == "":
            continue
        if isinstance(value, float):
            value = f"{value:.4g}"
        lines.append(f"{esc(str(key))}: {esc(str(value))}")
    return "\n".join(lines)


class LogNotifier:
    async def notify(self, notification: Notification) -> None:
        level = logging.WARNING if notification.severity in ("warning", "error") else logging.INFO
        logger.log(
            level,
            "NOTIFY event=%s title=%s %s",
            notification.event,
            notification.title,
            " ".join(f"{k}={v}" for k, v in notification.fields.items()),
        )


class TelegramNotifier:
    def __init__(self, bot: Any, chat_ids: Sequence[int]) -> None:
        self.bot = bot
        self.chat_ids = [int(c) for c in chat_ids]

    @classmethod
    def from_token(cls, token: str, chat_ids: Sequence[int]) -> "TelegramNotifier":
        return cls(Bot(token=token), chat_ids)

    async def notify(self, notification: Notification) -> None:
        text = format_notification(notification, html=True)
        for chat_id in self.chat_ids:
            await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode="HTML",
                disable_web_page_preview=True,
            )


class WebhookNotifier:
    """POSTs to Slack (`text`) or Discord (`content`) incoming webhooks."""

    def __init__(self, url: str, timeout_seconds: float = 10.0) -> None:
        self.url = url
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))

    def payload(self, notification: Notification) -> dict[str, Any]:
        text = format_notification(notification, html=False)
        if "discord" in self.url.lower():
            return {"content": text}
        return {"text": text}

    async def notify(self, notification: Notification) -> None:
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.post(self.url, json=self.payload(notification)) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise RuntimeError(f"webhook status={response.status} body={body[:200]}")


class FanoutNotifier:
    """Delivers to every sink concurrently; sink failures are logged, never raised."""

    def __init__(self, sinks: Iterable[NotificationSink]) -> None:
        self.sinks = list(sinks)

    async def notify(self, notification: Notification) -> None:
        if not self.sinks:
            return
        results = await asyncio.gather(
            *[sink.notify(notification) for sink in self.sinks],
            return_exceptions=True,
        )
        failed = 0
        for sink, result in zip(self.sinks, results):
            if isinstance(result, BaseException):
                failed += 1
                logger.warning(
                    "Notification send failed sink=%s event=%s: %s",
                    type(sink).__name__,
                    notification.event,
                    result,
                )
        logger.debug(
            "Notification dispatch event=%s sinks=%s failed=%s",
            notification.event,
            len(self.sinks),
            failed,
        )


def build_notifier() -> FanoutNotifier:
    sinks: list[NotificationSink] = [LogNotifier()]
    if config.TELEGRAM_BOT_TOKEN and config.TUNING_TELEGRAM_CHAT_IDS:
        sinks.append(TelegramNotifier.from_token(config.TELEGRAM_BOT_TOKEN, config.TUNING_TELEGRAM_CHAT_IDS))
    for url in config.TUNING_NOTIFY_WEBHOOKS:
        sinks.append(WebhookNotifier(url, timeout_seconds=config.NOTIFY_TIMEOUT_SECONDS))
    return FanoutNotifier(sinks)
