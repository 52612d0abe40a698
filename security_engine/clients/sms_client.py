"""
Message delivery providers for one-time passcodes.

The OTP manager only sees the :class:`SMSProvider` interface; which provider
is used is decided by configuration in :func:`get_sms_provider`.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from security_engine.config import settings

logger = logging.getLogger(__name__)

PHONE_NUMBER_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")

PURPOSE_TEXT = {
    "shift_start": "start your shift",
    "shift_end": "end your shift",
    "face_verification": "verify your identity",
    "account_verification": "verify your account",
    "face-settings-access": "access face settings",
    "profile-update": "update your profile",
    "security-verification": "verify your security",
    "password-reset": "reset your password",
    "manager_override": "manager override",
}


def is_valid_phone_number(phone_number: str) -> bool:
    """Check an E.164 international phone number."""
    return bool(phone_number) and PHONE_NUMBER_PATTERN.match(phone_number) is not None


def mask_phone_number(phone_number: str) -> str:
    """Mask every digit except the last four."""
    return re.sub(r"\d(?=\d{4})", "*", phone_number)


@dataclass(frozen=True)
class OTPMessage:
    """Everything a provider needs to deliver a code."""

    phone_number: str
    phone_number_masked: str
    code: str
    purpose: str
    expires_at: datetime

    def render(self) -> str:
        purpose_text = PURPOSE_TEXT.get(self.purpose, "verify your identity")
        return (
            f"Your verification code to {purpose_text} is {self.code}. "
            f"It expires at {self.expires_at.strftime('%H:%M UTC')}. Never share this code."
        )


@dataclass
class SMSResult:
    success: bool
    provider: str
    message_id: Optional[str] = None
    error: Optional[str] = None


class SMSDeliveryError(Exception):
    """Raised when a provider cannot deliver a message."""


class SMSProvider:
    """Capability: send a code to a phone number."""

    name = "base"

    async def send(self, message: OTPMessage) -> SMSResult:
        raise NotImplementedError

    def is_configured(self) -> bool:
        return True

    async def get_status(self) -> Dict[str, Any]:
        return {"available": self.is_configured()}


class ConsoleSMSProvider(SMSProvider):
    """Development provider that writes the message to the log."""

    name = "console"

    async def send(self, message: OTPMessage) -> SMSResult:
        logger.warning(f"[console SMS] to {message.phone_number_masked}: {message.render()}")
        return SMSResult(
            success=True,
            provider=self.name,
            message_id=f"console_{int(datetime.now().timestamp() * 1000)}"
        )

    async def get_status(self) -> Dict[str, Any]:
        return {"available": True, "details": {"mode": "development", "output": "log"}}


class TwilioSMSProvider(SMSProvider):
    """Twilio REST API provider."""

    name = "twilio"
    API_BASE = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout = timeout
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.API_BASE,
            auth=(self.account_sid, self.auth_token),
            timeout=self.timeout,
            transport=self._transport
        )

    async def send(self, message: OTPMessage) -> SMSResult:
        """
        Send a message through Twilio.

        Raises:
            SMSDeliveryError: If the provider is not configured or the request fails
        """
        if not self.is_configured():
            raise SMSDeliveryError("Twilio provider is not configured")

        try:
            async with self._client() as client:
                response = await client.post(
                    f"/Accounts/{self.account_sid}/Messages.json",
                    data={"To": message.phone_number, "From": self.from_number, "Body": message.render()}
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as e:
            logger.error(f"Timeout sending SMS to {message.phone_number_masked}: {e}")
            raise SMSDeliveryError(f"Timeout sending SMS: {e}")
        except httpx.HTTPStatusError as e:
            logger.error(f"Twilio rejected SMS to {message.phone_number_masked}: {e.response.status_code}")
            raise SMSDeliveryError(f"HTTP error sending SMS: {e.response.status_code}")
        except httpx.HTTPError as e:
            logger.error(f"Failed to send SMS to {message.phone_number_masked}: {e}")
            raise SMSDeliveryError(f"Failed to send SMS: {e}")

        logger.info(f"SMS sent to {message.phone_number_masked} via Twilio: {payload.get('sid')}")
        return SMSResult(success=True, provider=self.name, message_id=payload.get("sid"))

    async def get_status(self) -> Dict[str, Any]:
        if not self.is_configured():
            return {"available": False, "details": "Not configured"}
        try:
            async with self._client() as client:
                response = await client.get(f"/Accounts/{self.account_sid}.json")
                response.raise_for_status()
                return {"available": True, "details": {"status": response.json().get("status")}}
        except httpx.HTTPError as e:
            return {"available": False, "details": str(e)}


# Global provider instance, selected once from configuration
_sms_provider: Optional[SMSProvider] = None


def build_sms_provider(provider_name: str) -> SMSProvider:
    """Build the provider named in configuration."""
    if provider_name == "twilio":
        return TwilioSMSProvider(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
            timeout=settings.sms_timeout_seconds
        )
    return ConsoleSMSProvider()


def get_sms_provider() -> SMSProvider:
    """
    Get the global SMS provider instance.

    Returns:
        SMSProvider: The provider selected by SMS_PROVIDER
    """
    global _sms_provider
    if _sms_provider is None:
        _sms_provider = build_sms_provider(settings.sms_provider)
        logger.info(f"SMS provider initialized: {_sms_provider.name}")
    return _sms_provider
