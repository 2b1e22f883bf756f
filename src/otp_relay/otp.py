"""Passcode generation and request intake."""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from otp_relay.config import OtpSettings
from otp_relay.errors import ValidationError
from otp_relay.jobs.models import JobCreate
from otp_relay.jobs.repository import JobRepository
from otp_relay.storage.common import utc_now

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r"^\+[1-9]\d{7,14}$")
OTP_PLACEHOLDER = "{OTP}"
MESSAGE_TEMPLATES = (
    "Your verification code is {OTP}. Do not share it with anyone.",
    "Use {OTP} to confirm your account. The code is valid for a few minutes.",
    "{OTP} is your sign-in code.",
    "Security code: {OTP}. It can be used only once.",
    "To protect your account, enter {OTP} when prompted. Thank you.",
)


def generate_otp(length: int = 4) -> str:
    """Uniform numeric code from the OS CSPRNG, zero-padded to ``length`` digits."""

    if length <= 0:
        raise ValueError("OTP length must be a positive number.")
    return f"{secrets.randbelow(10**length):0{length}d}"


def prepare_message(otp: str, templates: tuple[str, ...] = MESSAGE_TEMPLATES) -> str:
    template = secrets.choice(templates)
    return template.replace(OTP_PLACEHOLDER, otp, 1)


def validate_phone_number(phone: str) -> str:
    """Return the trimmed number or raise ``ValidationError``."""

    candidate = str(phone).strip()
    if not PHONE_PATTERN.match(candidate):
        logger.warning("Rejected phone number in non-international format: %s", candidate)
        raise ValidationError(
            f"Invalid phone number {candidate!r}: expected international format "
            "starting with + and a country code (e.g. +19995550123).",
        )
    return candidate


@dataclass(slots=True)
class OtpReceipt:
    job_id: int
    otp: str
    expires_at: datetime


class OtpService:
    """Validates, composes, and enqueues one passcode per request."""

    def __init__(self, repository: JobRepository, settings: OtpSettings) -> None:
        self.repository = repository
        self.settings = settings

    def request_otp(self, phone: str) -> OtpReceipt:
        recipient = validate_phone_number(phone)
        otp = generate_otp(self.settings.length)
        expires_at = utc_now() + timedelta(minutes=self.settings.lifetime_minutes)
        job_id = self.repository.enqueue(
            JobCreate(
                recipient=recipient,
                otp=otp,
                message_body=prepare_message(otp),
                expires_at=expires_at,
            ),
        )
        logger.info("Passcode for %s queued as job %s, expires %s", recipient, job_id, expires_at)
        return OtpReceipt(job_id=job_id, otp=otp, expires_at=expires_at)
