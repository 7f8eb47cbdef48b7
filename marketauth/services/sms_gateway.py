"""
SMS Gateway

Delivery backends for one-time passwords. The backend is chosen from
settings.sms_backend:

- "twilio": sends through the Twilio Messages REST API
- "log": writes the message to the application log (development)
- "mock": keeps messages in memory (tests)
"""

import abc
import logging
from dataclasses import dataclass

import httpx

from marketauth.config import Settings, settings
from marketauth.exceptions import SmsDeliveryError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SmsMessage:
    to: str
    body: str


def mask_phone_number(phone_number: str | None) -> str | None:
    """
    Mask a phone number for display.
    Example: +18452428261 -> +1******8261
    """
    if not phone_number:
        return phone_number
    if len(phone_number) <= 7:
        return phone_number
    return f"{phone_number[:2]}{'*' * (len(phone_number) - 6)}{phone_number[-4:]}"


class SmsGateway(abc.ABC):
    @abc.abstractmethod
    async def send(self, to: str, body: str) -> None:
        """Deliver ``body`` to ``to``; raise SmsDeliveryError on failure."""


class MockSmsGateway(SmsGateway):
    """Stores messages in memory instead of sending."""

    def __init__(self, fail: bool = False):
        self.outbox: list[SmsMessage] = []
        self.fail = fail

    async def send(self, to: str, body: str) -> None:
        if self.fail:
            raise SmsDeliveryError(message="Mock SMS gateway configured to fail", provider="mock")
        logger.info(f"[MOCK SMS] To: {mask_phone_number(to)}")
        self.outbox.append(SmsMessage(to=to, body=body))

    @property
    def last_message(self) -> SmsMessage | None:
        return self.outbox[-1] if self.outbox else None


class LoggingSmsGateway(SmsGateway):
    """Development backend: the message body goes to the log."""

    async def send(self, to: str, body: str) -> None:
        logger.info(f"[SMS] To: {to} | Message: {body}")


class TwilioSmsGateway(SmsGateway):
    """
    Twilio SMS backend.

    Requires TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        api_base: str = "https://api.twilio.com/2010-04-01",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not account_sid or not auth_token or not from_number:
            raise ValueError("Twilio account SID, auth token and sender number must be configured for SMS")
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.url = f"{api_base.rstrip('/')}/Accounts/{account_sid}/Messages.json"
        self.timeout = timeout
        self._transport = transport

    async def send(self, to: str, body: str) -> None:
        logger.info(f"Sending SMS to {mask_phone_number(to)} via Twilio")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    data={"To": to, "From": self.from_number, "Body": body},
                    auth=(self.account_sid, self.auth_token),
                )
        except httpx.TimeoutException as e:
            logger.error(f"Twilio request timed out for {mask_phone_number(to)}")
            raise SmsDeliveryError(message="SMS provider timed out", provider="twilio") from e
        except httpx.RequestError as e:
            logger.error(f"Twilio request failed for {mask_phone_number(to)}: {e}")
            raise SmsDeliveryError(message="SMS provider unreachable", provider="twilio") from e

        if response.status_code >= 300:
            logger.error(f"Twilio rejected SMS to {mask_phone_number(to)}: HTTP {response.status_code} {response.text}")
            raise SmsDeliveryError(message=f"SMS provider returned HTTP {response.status_code}", provider="twilio")

        logger.info(f"SMS sent successfully. MessageSid: {response.json().get('sid')}")


def get_sms_gateway(config: Settings | None = None) -> SmsGateway:
    """Select the SMS backend from configuration."""
    config = config or settings
    backend = config.sms_backend.lower()

    if backend == "twilio":
        return TwilioSmsGateway(
            account_sid=config.twilio_account_sid or "",
            auth_token=config.twilio_auth_token or "",
            from_number=config.twilio_from_number or "",
            api_base=config.twilio_api_base,
        )
    if backend == "mock":
        return MockSmsGateway()
    if backend != "log":
        logger.warning(f"Unknown SMS_BACKEND: {config.sms_backend}, using LoggingSmsGateway")
    return LoggingSmsGateway()
