"""
WhatsApp Notification Service

Outbound transport for reminders and followups. The dispatcher treats it
as an opaque, possibly slow, possibly failing dependency: every call
returns a ``SendResult`` and never raises.
"""
import re
import time
from typing import Optional

import httpx

from app.core.utils import logger, mask_phone
from app.config.config import settings
from app.schemas.reminder_schemas import SendResult


class WhatsAppConfig:
    """WhatsApp transport configuration."""

    # Fonnte (primary provider for Indonesia)
    FONNTE_BASE_URL: str = settings.FONNTE_BASE_URL
    FONNTE_TOKEN: Optional[str] = settings.FONNTE_TOKEN

    # 'fonnte' or 'mock'
    PROVIDER: str = settings.WHATSAPP_PROVIDER

    TIMEOUT_SECONDS: float = settings.WHATSAPP_TIMEOUT_SECONDS


def format_whatsapp_number(phone: str) -> str:
    """
    Normalise a phone number to the Indonesian WhatsApp format.

    Examples:
        >>> format_whatsapp_number("0812-3456-7890")
        '6281234567890'
        >>> format_whatsapp_number("+62 812 3456 7890")
        '6281234567890'
    """
    cleaned = re.sub(r"\D", "", phone or "")

    if cleaned.startswith("08"):
        cleaned = "628" + cleaned[2:]
    elif cleaned.startswith("8") and len(cleaned) >= 9:
        cleaned = "62" + cleaned
    elif not cleaned.startswith("62"):
        cleaned = "62" + cleaned

    return cleaned


class WhatsAppService:
    """Send WhatsApp messages through the configured provider."""

    def __init__(
        self,
        provider: Optional[str] = None,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.provider = provider or WhatsAppConfig.PROVIDER
        self.base_url = (base_url or WhatsAppConfig.FONNTE_BASE_URL).rstrip("/")
        self.token = token if token is not None else WhatsAppConfig.FONNTE_TOKEN
        self.timeout = timeout or WhatsAppConfig.TIMEOUT_SECONDS
        self._http_transport = http_transport

    async def send_fonnte(self, to: str, message: str) -> SendResult:
        """
        Send a message using Fonnte.

        Fonnte answers HTTP 200 with ``{"status": false, "reason": ...}``
        for rejected messages, so the body decides success.
        """
        if not self.token:
            return SendResult(success=False, error="Fonnte not configured")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._http_transport
            ) as client:
                response = await client.post(
                    f"{self.base_url}/send",
                    headers={"Authorization": self.token},
                    json={"target": to, "message": message},
                )

            if response.status_code != 200:
                error_msg = f"Status {response.status_code}: {response.text}"
                logger.log_error(
                    {
                        "event": "whatsapp_send_failed",
                        "provider": "fonnte",
                        "to": mask_phone(to),
                        "status_code": response.status_code,
                    }
                )
                return SendResult(success=False, error=error_msg)

            data = response.json()
            if not data.get("status"):
                reason = data.get("reason") or "Fonnte API error"
                logger.log_warning(
                    {
                        "event": "whatsapp_send_rejected",
                        "provider": "fonnte",
                        "to": mask_phone(to),
                        "reason": reason,
                    }
                )
                return SendResult(success=False, error=reason)

            message_id = data.get("id")
            if isinstance(message_id, list):
                message_id = message_id[0] if message_id else None
            message_id = str(message_id) if message_id else f"fonnte_{int(time.time() * 1000)}"

            logger.log_info(
                {
                    "event": "whatsapp_sent",
                    "provider": "fonnte",
                    "to": mask_phone(to),
                    "message_id": message_id,
                }
            )
            return SendResult(success=True, message_id=message_id)

        except httpx.TimeoutException:
            logger.log_error(
                {
                    "event": "whatsapp_send_timeout",
                    "provider": "fonnte",
                    "to": mask_phone(to),
                    "timeout": self.timeout,
                }
            )
            return SendResult(success=False, error="timeout")

        except (httpx.HTTPError, ValueError) as e:
            logger.log_error(
                {
                    "event": "whatsapp_send_error",
                    "provider": "fonnte",
                    "to": mask_phone(to),
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
                exc_info=True,
            )
            return SendResult(success=False, error=str(e))

    async def send_mock(self, to: str, message: str) -> SendResult:
        """Mock sending for development."""
        logger.log_info(
            {
                "event": "whatsapp_sent",
                "provider": "mock",
                "to": mask_phone(to),
                "length": len(message),
            }
        )
        return SendResult(
            success=True, message_id=f"mock_{abs(hash(to + message))}"
        )

    async def send(self, phone_number: str, message: str) -> SendResult:
        """
        Send one WhatsApp message.

        Args:
            phone_number: Recipient number in any local format
            message: Rendered message body

        Returns:
            SendResult with success, message_id and optional error
        """
        to = format_whatsapp_number(phone_number)

        if self.provider == "fonnte":
            return await self.send_fonnte(to, message)
        if self.provider == "mock":
            return await self.send_mock(to, message)

        logger.log_error({"event": "invalid_whatsapp_provider", "provider": self.provider})
        return SendResult(success=False, error=f"Invalid WhatsApp provider: {self.provider}")
