"""Customer order emails through Brevo's transactional API"""

import asyncio
import logging
from typing import Optional

import sib_api_v3_sdk
from sib_api_v3_sdk.rest import ApiException

from payment_errors import NotificationFailure
from utils.environment import Settings

logger = logging.getLogger(__name__)


class OrderEmailService:
    """Sends confirmation and invoice emails; skipped entirely when Brevo is not configured"""

    def __init__(self, settings: Settings, transactional_emails_api=None):
        self.sender_email = settings.sender_email
        self.sender_name = settings.sender_name
        self.transactional_emails_api = transactional_emails_api

        if self.transactional_emails_api is None and settings.email_enabled:
            configuration = sib_api_v3_sdk.Configuration()
            configuration.api_key["api-key"] = settings.brevo_api_key
            self.transactional_emails_api = sib_api_v3_sdk.TransactionalEmailsApi(
                sib_api_v3_sdk.ApiClient(configuration)
            )
        elif self.transactional_emails_api is None:
            logger.warning("BREVO_API_KEY or SENDER_EMAIL not configured - order emails will be skipped")

    @property
    def enabled(self) -> bool:
        return self.transactional_emails_api is not None and bool(self.sender_email)

    async def send_order_email(self, to_email: str, subject: str, html_content: str, order_id: Optional[str] = None) -> bool:
        """
        Send one order email

        Returns:
            bool: True when Brevo accepted the message, False when email is disabled

        Raises:
            NotificationFailure: Brevo rejected the message or timed out after retries
        """
        if not self.enabled:
            logger.info(f"📧 Email disabled - skipping order email for {order_id}")
            return False

        send_smtp_email = sib_api_v3_sdk.SendSmtpEmail(
            to=[sib_api_v3_sdk.SendSmtpEmailTo(email=to_email)],
            sender=sib_api_v3_sdk.SendSmtpEmailSender(email=self.sender_email, name=self.sender_name),
            subject=subject,
            html_content=html_content,
            tags=["order", "payment"],
        )

        try:
            api_response = await self._send_email_with_retry(send_smtp_email, to_email)
        except (ApiException, asyncio.TimeoutError) as e:
            logger.error(f"❌ Error sending order email to {to_email} for {order_id}: {e}")
            raise NotificationFailure(f"Email delivery failed: {e}", order_id) from e

        logger.info(f"📧 Order email sent to {to_email} for {order_id} - Message ID: {getattr(api_response, 'message_id', None)}")
        return True

    async def _send_email_with_retry(self, send_smtp_email, recipient_email: str,
                                     max_retries: int = 3, timeout: float = 30.0):
        """Blocking Brevo call in a worker thread with timeout and exponential backoff"""
        for attempt in range(max_retries):
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(self.transactional_emails_api.send_transac_email, send_smtp_email),
                    timeout=timeout
                )
            except (asyncio.TimeoutError, ApiException) as e:
                logger.warning(f"Email send failed (attempt {attempt + 1}/{max_retries}) for {recipient_email}: {e}")
                if attempt == max_retries - 1:
                    raise
            await asyncio.sleep((2 ** attempt) * 0.5)
        return None
