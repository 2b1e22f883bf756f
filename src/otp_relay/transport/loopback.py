"""In-process transport for local runs: messages land in an outbox file."""

from __future__ import annotations

import json
import logging
import secrets
from pathlib import Path

from otp_relay.errors import TransportSendError
from otp_relay.storage.common import utc_now
from otp_relay.transport.base import TransportListener

logger = logging.getLogger(__name__)

CREDENTIALS_FILE = "creds.json"
OUTBOX_FILE = "outbox.jsonl"


class LoopbackHandle:
    def __init__(self, session_dir: Path, listener: TransportListener) -> None:
        self.session_dir = session_dir
        self.listener = listener
        self.closed = False

    def send_text(self, address: str, text: str) -> str | None:
        if self.closed:
            raise TransportSendError("Loopback connection is closed.")
        message_id = secrets.token_hex(8)
        record = {
            "id": message_id,
            "to": address,
            "text": text,
            "sent_at": utc_now().isoformat(),
        }
        with (self.session_dir / OUTBOX_FILE).open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        return message_id

    def logout(self) -> None:
        (self.session_dir / CREDENTIALS_FILE).unlink(missing_ok=True)

    def close(self) -> None:
        self.closed = True


class LoopbackTransport:
    """Pairs on first use, then opens straight away on every connect."""

    def open(self, session_dir: Path, listener: TransportListener) -> LoopbackHandle:
        credentials = session_dir / CREDENTIALS_FILE
        if not credentials.exists():
            code = f"{secrets.randbelow(10**8):08d}"
            listener.on_pairing_code(code)
            credentials.write_text(
                json.dumps({"paired_at": utc_now().isoformat(), "pairing_code": code}),
                encoding="utf-8",
            )
            logger.info("Loopback transport paired with code %s", code)
        handle = LoopbackHandle(session_dir, listener)
        listener.on_open()
        return handle
