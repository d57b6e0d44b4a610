from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from twilio.base.exceptions import TwilioException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from .config import Settings
from .errors import DeliveryFailed
from .metrics import record_delivery_attempt

logger = logging.getLogger(__name__)


class SmsSender(Protocol):
    def send(self, to: str, body: str) -> str: ...


def get_twilio_client(settings: Settings) -> Client:
    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        raise RuntimeError(
            "Twilio credentials are not configured (TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN)"
        )

    return Client(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        http_client=TwilioHttpClient(timeout=settings.twilio_timeout_seconds),
    )


class TwilioSender:
    """
    Sends one SMS through the Twilio REST API.

    The REST client is created on first use so the app can boot (and serve
    inbound traffic) before outbound credentials are configured.
    """

    def __init__(self, settings: Settings, client: Client | None = None) -> None:
        self.settings = settings
        self._client = client

    def _get_client(self) -> Client:
        if self._client is None:
            try:
                self._client = get_twilio_client(self.settings)
            except RuntimeError as e:
                raise DeliveryFailed(str(e)) from e
        return self._client

    def send(self, to: str, body: str) -> str:
        """Return the carrier's message sid, or raise ``DeliveryFailed``."""
        if not self.settings.twilio_from_number:
            raise DeliveryFailed("TWILIO_FROM_NUMBER is not configured")

        client = self._get_client()
        try:
            message = client.messages.create(
                to=to,
                from_=self.settings.twilio_from_number,
                body=body,
            )
        # OSError covers the requests transport errors (timeouts, resets)
        except (TwilioException, OSError) as e:
            raise DeliveryFailed(str(e)) from e

        if not message.sid:
            raise DeliveryFailed("Twilio returned no message sid")
        return message.sid


@dataclass(frozen=True)
class Delivered:
    delivery_id: str
    attempts: int


@dataclass(frozen=True)
class Undelivered:
    cause: str
    attempts: int


DeliveryResult = Delivered | Undelivered


def send_with_retry(
    sender: SmsSender,
    to: str,
    body: str,
    *,
    max_attempts: int = 3,
    backoff_seconds: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> DeliveryResult:
    """
    Try ``sender.send`` up to ``max_attempts`` times.

    Waits ``attempt * backoff_seconds`` between attempts. The first success
    wins; after the last failure the cause of that failure is returned.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        try:
            delivery_id = sender.send(to, body)
        except DeliveryFailed as e:
            record_delivery_attempt("failed")
            logger.warning(f"Send attempt {attempt}/{max_attempts} failed: {e.cause}")
            if attempt == max_attempts:
                return Undelivered(cause=e.cause, attempts=attempt)
            sleep(backoff_seconds * attempt)
            continue

        record_delivery_attempt("sent")
        logger.info(f"SMS delivered on attempt {attempt}: {delivery_id}")
        return Delivered(delivery_id=delivery_id, attempts=attempt)

    raise AssertionError("unreachable")
