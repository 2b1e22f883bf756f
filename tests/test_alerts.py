from __future__ import annotations

import json

import allure
import httpx

from otp_relay.alerts import MAX_MESSAGE_CHARS, TelegramNotifier
from otp_relay.config import AlertSettings

pytestmark = [
    allure.epic("Transport Connection"),
    allure.feature("Operator Alerts"),
]


def _settings() -> AlertSettings:
    return AlertSettings(
        telegram_bot_token="123:abc",
        telegram_chat_id="-100500",
        telegram_api_base="https://telegram.test",
    )


def test_send_posts_message_to_configured_chat() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    with TelegramNotifier(_settings(), transport=httpx.MockTransport(handler)) as notifier:
        assert notifier.send("Transport connection lost")

    assert len(requests) == 1
    assert requests[0].url == "https://telegram.test/bot123:abc/sendMessage"
    assert json.loads(requests[0].content) == {
        "chat_id": "-100500",
        "text": "Transport connection lost",
    }


def test_long_message_is_truncated() -> None:
    payloads: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        payloads.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True})

    with TelegramNotifier(_settings(), transport=httpx.MockTransport(handler)) as notifier:
        notifier.send("x" * (MAX_MESSAGE_CHARS + 100))

    assert len(payloads[0]["text"]) == MAX_MESSAGE_CHARS


def test_unconfigured_notifier_skips_request() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    settings = AlertSettings(telegram_bot_token="123:abc")
    with TelegramNotifier(settings, transport=httpx.MockTransport(handler)) as notifier:
        assert not notifier.configured
        assert notifier.send("ignored") is False


def test_api_rejection_returns_false() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"ok": False, "description": "chat not found"})

    with TelegramNotifier(_settings(), transport=httpx.MockTransport(handler)) as notifier:
        assert notifier.send("alert") is False


def test_network_failure_returns_false() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with TelegramNotifier(_settings(), transport=httpx.MockTransport(handler)) as notifier:
        assert notifier.send("alert") is False


def test_timeout_returns_false() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with TelegramNotifier(_settings(), transport=httpx.MockTransport(handler)) as notifier:
        assert notifier.send("alert") is False
