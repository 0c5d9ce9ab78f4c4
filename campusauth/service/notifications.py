from __future__ import annotations

import asyncio
from typing import Protocol

from campusauth.logging import get_logger
from campusauth.service.codes import CodePurpose
from campusauth.service.email import EmailService
from campusauth.service.sms import SmsService

logger = get_logger(__name__)

EMAIL = "email"
SMS = "sms"
CHANNELS = (EMAIL, SMS)


class Notifier(Protocol):
    """Outbound delivery; callers only look at the success flag."""

    async def send_code(
        self, channel: str, address: str, purpose: CodePurpose, code: str
    ) -> bool: ...

    async def send_lock_notice(self, channel: str, address: str, minutes: int) -> bool: ...

    async def send_password_changed(self, channel: str, address: str) -> bool: ...


class NotificationDispatcher:
    """Routes notices to the email or SMS sender."""

    def __init__(self, email: EmailService, sms: SmsService) -> None:
        self.email = email
        self.sms = sms

    async def send_code(
        self, channel: str, address: str, purpose: CodePurpose, code: str
    ) -> bool:
        if channel == EMAIL:
            if purpose == CodePurpose.PASSWORD_RESET:
                return await asyncio.to_thread(self.email.send_password_reset_code, address, code)
            return await asyncio.to_thread(self.email.send_verification_code, address, code)
        if channel == SMS:
            if purpose == CodePurpose.PASSWORD_RESET:
                return await self.sms.send_password_reset_code(address, code)
            return await self.sms.send_verification_code(address, code)
        logger.warning("notification_unknown_channel", channel=channel)
        return False

    async def send_lock_notice(self, channel: str, address: str, minutes: int) -> bool:
        if channel == EMAIL:
            return await asyncio.to_thread(self.email.send_account_locked_notice, address, minutes)
        if channel == SMS:
            return await self.sms.send_account_locked_notice(address, minutes)
        return False

    async def send_password_changed(self, channel: str, address: str) -> bool:
        if channel == SMS:
            return await self.sms.send_password_changed_notice(address)
        # Email confirmation is covered by the reset email itself
        return True
