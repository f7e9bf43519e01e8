"""
Notification dispatcher: operator chat message plus customer email
Best-effort fan-out. Failures are logged and reported in the result, they
never change order status or crediting.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from telegram import InlineKeyboardButton, InlineKeyboardMarkup
from telegram.constants import ParseMode
from telegram.error import TelegramError

from message_utils import (
    append_final_status_marker, escape_html, format_order_email, format_order_notification,
)
from order_state import CreditOutcome, OPERATOR_CLAIMABLE, Order, OrderStatus
from payment_errors import NotificationFailure

logger = logging.getLogger(__name__)

MARK_DONE_PREFIX = "mark_done_"
MARK_DONE_LABEL = "✅ Marcar como Realizada"


def build_mark_done_keyboard(order_id: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[InlineKeyboardButton(MARK_DONE_LABEL, callback_data=f"{MARK_DONE_PREFIX}{order_id}")]])


@dataclass
class NotificationResult:
    chat_sent: bool = False
    email_sent: bool = False
    message_id: Optional[int] = None


class NotificationDispatcher:
    """Sends and edits operator chat notifications and customer emails"""

    def __init__(self, bot, operator_chat_id: Optional[Union[int, str]], order_store, email_service=None):
        self.bot = bot
        self.operator_chat_id = operator_chat_id
        self.order_store = order_store
        self.email_service = email_service

    async def notify_order(self, order: Order, outcome: Optional[CreditOutcome] = None,
                           payment_summary: Optional[str] = None) -> NotificationResult:
        """
        Announce an order's new status to the operator chat and the customer

        The "mark done" button is attached to orders the operator can still
        complete: confirmed gateway payments and manual payments under review.
        """
        result = NotificationResult()
        result.message_id = await self._send_chat_message(order, outcome, payment_summary)
        result.chat_sent = result.message_id is not None

        if order.email and order.status in (OrderStatus.CONFIRMED, OrderStatus.DONE):
            result.email_sent = await self.send_order_email(order, outcome)

        return result

    async def _send_chat_message(self, order: Order, outcome: Optional[CreditOutcome],
                                 payment_summary: Optional[str]) -> Optional[int]:
        if self.bot is None or not self.operator_chat_id:
            logger.warning(f"⚠️ Operator chat not configured - no notification for {order.order_id}")
            return None

        reply_markup = build_mark_done_keyboard(order.order_id) if order.status in OPERATOR_CLAIMABLE else None
        try:
            message = await self.bot.send_message(
                chat_id=self.operator_chat_id,
                text=format_order_notification(order, outcome, payment_summary),
                parse_mode=ParseMode.HTML,
                reply_markup=reply_markup,
            )
        except TelegramError as e:
            logger.error(f"❌ NOTIFICATION_FAILED: chat message for {order.order_id}: {e}")
            return None

        logger.info(f"📨 Operator notified for {order.order_id} (message {message.message_id})")
        try:
            await self.order_store.set_notification_message(order.order_id, str(self.operator_chat_id), message.message_id)
        except Exception as e:
            logger.error(f"❌ Could not store notification message id for {order.order_id}: {e}")
        return message.message_id

    async def send_receipt(self, order: Order, receipt: bytes, filename: str,
                           content_type: Optional[str] = None) -> bool:
        """Forward a customer's payment receipt to the operator chat, as a photo when it is an image"""
        if self.bot is None or not self.operator_chat_id:
            logger.warning(f"⚠️ Operator chat not configured - receipt for {order.order_id} not forwarded")
            return False

        caption = f"🧾 Comprobante de la orden <code>{escape_html(order.order_id)}</code>"
        try:
            if (content_type or '').startswith('image/'):
                await self.bot.send_photo(chat_id=self.operator_chat_id, photo=receipt, caption=caption,
                                          parse_mode=ParseMode.HTML, filename=filename)
            else:
                await self.bot.send_document(chat_id=self.operator_chat_id, document=receipt, caption=caption,
                                             parse_mode=ParseMode.HTML, filename=filename)
        except TelegramError as e:
            logger.error(f"❌ NOTIFICATION_FAILED: receipt for {order.order_id}: {e}")
            return False

        logger.info(f"📎 Receipt for {order.order_id} forwarded ({content_type or 'unknown type'})")
        return True

    async def send_order_email(self, order: Order, outcome: Optional[CreditOutcome] = None) -> bool:
        if not order.email or self.email_service is None:
            return False
        subject, html_content = format_order_email(order, outcome)
        try:
            return await self.email_service.send_order_email(order.email, subject, html_content, order.order_id)
        except NotificationFailure as e:
            logger.error(f"❌ NOTIFICATION_FAILED: email for {order.order_id}: {e}")
            return False

    async def finalize_operator_message(
        self,
        order: Order,
        outcome: Optional[CreditOutcome],
        original_text: Optional[str],
        chat_id: Optional[Union[int, str]] = None,
        message_id: Optional[int] = None,
        operator_name: Optional[str] = None,
    ) -> bool:
        """Append the final-status marker to the original message and drop its keyboard"""
        chat_id = chat_id or order.notification_chat_id or self.operator_chat_id
        message_id = message_id or order.notification_message_id
        if self.bot is None or not chat_id or not message_id:
            logger.warning(f"⚠️ No chat message to edit for {order.order_id}")
            return False

        base_text = original_text or format_order_notification(order, outcome)
        try:
            await self.bot.edit_message_text(
                chat_id=chat_id,
                message_id=message_id,
                text=append_final_status_marker(base_text, order, outcome, operator_name),
                parse_mode=ParseMode.HTML,
                reply_markup=None,
            )
        except TelegramError as e:
            logger.error(f"❌ NOTIFICATION_FAILED: editing message {message_id} for {order.order_id}: {e}")
            return False

        logger.info(f"✏️ Operator message {message_id} finalized for {order.order_id}")
        return True
