"""Operator alert channel (Telegram Bot API)."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from otp_relay.config import AlertSettings

logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 4096


class Notifier(Protocol):
    def send(self, text: str) -> bool: ...


class TelegramNotifier:
    """Posts plain-text alerts to one Telegram chat; never raises."""

    def __init__(
        self,
        settings: AlertSettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._client = httpx.Client(
            base_url=settings.telegram_api_base,
            timeout=httpx.Timeout(settings.timeout_seconds),
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.settings.telegram_bot_token and self.settings.telegram_chat_id)

    def send(self, text: str) -> bool:
        if not self.configured:
            logger.warning("Telegram alert not sent: bot token or chat id is not configured")
            return False

        try:
            response = self._client.post(
                f"/bot{self.settings.telegram_bot_token}/sendMessage",
                json={
                    "chat_id": self.settings.telegram_chat_id,
                    "text": text[:MAX_MESSAGE_CHARS],
                },
            )
        except httpx.TimeoutException:
            logger.warning("Timeout sending Telegram alert")
            return False
        except httpx.HTTPError as exc:
            logger.warning("HTTP error sending Telegram alert: %s", exc)
            return False

        if not response.is_success:
            logger.warning(
                "Telegram API rejected alert: HTTP %s %s",
                response.status_code,
                response.text[:200],
            )
            return False
        logger.info("Telegram alert delivered")
        return True

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> TelegramNotifier:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
