from __future__ import annotations

import asyncio
from typing import Optional

import httpx

from campusauth.logging import get_logger, redact_value

logger = get_logger(__name__)


class SmsDeliveryError(Exception):
    pass


class SmsService:
    """Transactional SMS through an HTTP gateway.

    Each message gets up to ``max_attempts`` tries with exponential backoff
    (``backoff_seconds * 2**(n-1)``, capped). Unconfigured gateways log the
    send in dev mode and report success.
    """

    def __init__(
        self,
        *,
        gateway_url: Optional[str] = None,
        api_key: Optional[str] = None,
        sender_id: str = "CAMPUS",
        brand: str = "Campus Portal",
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        backoff_cap_seconds: float = 5.0,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.gateway_url = gateway_url
        self.api_key = api_key
        self.sender_id = sender_id
        self.brand = brand
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.backoff_cap_seconds = backoff_cap_seconds
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.gateway_url and self.api_key)

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.backoff_cap_seconds)

    async def _post(self, client: httpx.AsyncClient, phone: str, message: str) -> str:
        response = await client.post(
            self.gateway_url,
            headers={"authkey": self.api_key, "Content-Type": "application/json"},
            json={
                "sender": self.sender_id,
                "route": "4",
                "country": "91",
                "sms": [{"message": message, "to": [phone.replace("+91", "", 1)]}],
            },
        )
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400 or data.get("type") != "success":
            raise SmsDeliveryError(data.get("message") or f"gateway returned {response.status_code}")
        return str(data.get("message", ""))

    async def send(self, phone: str, message: str) -> bool:
        if not phone or not message:
            raise ValueError("Phone number and message are required")
        if not self.is_configured:
            logger.info("sms_dev_mode", to=redact_value(phone), length=len(message))
            return True

        async with httpx.AsyncClient(
            timeout=self.timeout_seconds, transport=self._transport
        ) as client:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    message_id = await self._post(client, phone, message)
                    logger.info(
                        "sms_sent", to=redact_value(phone), attempt=attempt, message_id=message_id
                    )
                    return True
                except (httpx.HTTPError, SmsDeliveryError) as exc:
                    logger.warning(
                        "sms_send_attempt_failed",
                        to=redact_value(phone),
                        attempt=attempt,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    if attempt < self.max_attempts:
                        await asyncio.sleep(self._backoff(attempt))
        logger.error("sms_send_failed", to=redact_value(phone), attempts=self.max_attempts)
        return False

    async def send_verification_code(self, phone: str, code: str) -> bool:
        return await self.send(
            phone,
            f"Your {self.brand} verification code is: {code}. Valid for 5 minutes. "
            "Do not share this code with anyone.",
        )

    async def send_password_reset_code(self, phone: str, code: str) -> bool:
        return await self.send(
            phone,
            f"Your {self.brand} password reset code is: {code}. Valid for 1 hour. "
            "Do not share this code with anyone.",
        )

    async def send_account_locked_notice(self, phone: str, minutes: int) -> bool:
        return await self.send(
            phone,
            f"Your {self.brand} account has been temporarily locked due to multiple failed "
            f"login attempts. Please try again after {minutes} minutes.",
        )

    async def send_password_changed_notice(self, phone: str) -> bool:
        return await self.send(
            phone,
            f"Your {self.brand} password has been reset successfully. If you did not request "
            "this change, please contact support immediately.",
        )
