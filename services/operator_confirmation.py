"""
Operator "mark done" flow
Handles the `mark_done_<order_id>` button of an order notification: credits a
wallet top-up that has not been credited yet, moves the order to `done` and
rewrites the original chat message.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional, Union

from telegram import Update
from telegram.ext import ContextTypes

from admin_alerts import AlertCategory
from message_utils import status_label
from order_state import CreditOutcome, OPERATOR_CLAIMABLE, Order, OrderStatus
from payment_errors import PersistenceFailure
from services.notifications import MARK_DONE_PREFIX
from services.reconciliation import ReconciliationContext, credit_wallet_topup

logger = logging.getLogger(__name__)


@dataclass
class OperatorResult:
    ok: bool
    message: str
    order_id: Optional[str] = None
    status: Optional[OrderStatus] = None
    outcome: Optional[CreditOutcome] = None


def parse_mark_done(callback_data: Optional[str]) -> Optional[str]:
    if not callback_data or not callback_data.startswith(MARK_DONE_PREFIX):
        return None
    return callback_data[len(MARK_DONE_PREFIX):].strip() or None


class OperatorConfirmationHandler:
    """Runs the manual completion of an order from the operator chat"""

    def __init__(self, ctx: ReconciliationContext, operator_chat_id: Optional[Union[int, str]]):
        self.ctx = ctx
        self.operator_chat_id = operator_chat_id

    async def mark_done(
        self,
        order_id: str,
        operator_name: Optional[str] = None,
        chat_id: Optional[Union[int, str]] = None,
        message_id: Optional[int] = None,
        original_text: Optional[str] = None,
    ) -> OperatorResult:
        """
        Complete an order on the operator's request

        Args:
            order_id: Order carried by the callback data
            operator_name: Who pressed the button (shown in the edited message)
            chat_id, message_id: Message to rewrite, defaults to the stored reference
            original_text: HTML of the message being rewritten

        Returns:
            OperatorResult: answer text for the operator plus the final state
        """
        store = self.ctx.order_store
        order = await store.get_order(order_id)
        if order is None:
            logger.warning(f"⚠️ MARK_DONE: order {order_id} not found")
            return OperatorResult(False, f"Orden {order_id} no encontrada.", order_id)

        if order.status is OrderStatus.DONE:
            logger.info(f"🔁 MARK_DONE: {order_id} already done - nothing to do")
            return OperatorResult(True, "Esta orden ya fue completada.", order_id, OrderStatus.DONE)

        if order.status not in OPERATOR_CLAIMABLE:
            logger.warning(f"⚠️ MARK_DONE: {order_id} is {order.status.value} - refusing")
            return OperatorResult(False, f"No se puede completar: estado actual {status_label(order.status)}.",
                                  order_id, order.status)

        prior = order.status
        if not await store.claim_order(order_id, prior):
            logger.info(f"🔁 MARK_DONE: {order_id} claimed concurrently - backing off")
            return OperatorResult(False, "La orden está siendo procesada en este momento. Intenta de nuevo.", order_id)

        outcome: Optional[CreditOutcome] = None
        try:
            if order.is_wallet_topup:
                outcome = await self._credit_if_needed(order)
                if not outcome.succeeded:
                    await store.release_claim(order_id, prior)
                    return await self._credit_not_confirmed(order, prior, outcome)

            if not await store.finalize_claim(order_id, OrderStatus.DONE):
                raise PersistenceFailure("processing claim disappeared before finalization", order_id)
        except PersistenceFailure as e:
            return await self._persistence_failed(order, prior, outcome, e)
        except Exception as e:
            await self.ctx.alerts.critical(
                "OperatorConfirmation",
                f"Mark-done for {order_id} crashed: money possibly NOT moved, state possibly NOT updated",
                AlertCategory.PAYMENT_PROCESSING,
                {'order_id': order_id, 'prior_status': prior.value, 'error': str(e)},
            )
            await self._release_quietly(order_id, prior)
            logger.exception(f"💥 MARK_DONE crashed for {order_id}")
            return OperatorResult(False, "🚨 Error inesperado. Se envió una alerta crítica.", order_id, prior, outcome)

        done_order = replace(order, status=OrderStatus.DONE)
        logger.info(f"✅ MARK_DONE: {order_id} completed by {operator_name or 'operator'}")

        if done_order.email:
            await self.ctx.notifier.send_order_email(done_order, outcome)

        await self.ctx.notifier.finalize_operator_message(
            done_order, outcome, original_text, chat_id=chat_id, message_id=message_id, operator_name=operator_name
        )
        return OperatorResult(True, "✅ Orden marcada como realizada.", order_id, OrderStatus.DONE, outcome)

    async def _credit_if_needed(self, order: Order) -> CreditOutcome:
        if await self.ctx.wallet_ledger.has_credit(order.order_id):
            logger.info(f"ℹ️ {order.order_id} already has a wallet credit - not crediting again")
            return CreditOutcome(already_applied=True)
        return await credit_wallet_topup(self.ctx, order)

    async def _credit_not_confirmed(self, order: Order, prior: OrderStatus, outcome: CreditOutcome) -> OperatorResult:
        if outcome.uncertain:
            title = (f"Credit outcome unknown for {order.order_id} - wallet may already be credited, "
                     f"order left in {prior.value}. Pressing the button again will not credit twice")
            answer = "⏳ El saldo pudo haberse acreditado. Verifica y vuelve a intentar, no se duplicará."
        else:
            title = f"Crediting failed for {order.order_id} - order left in {prior.value}, NOT marked done"
            answer = f"❌ No se pudo acreditar el saldo: {outcome.error}"
        await self.ctx.alerts.critical(
            "OperatorConfirmation",
            title,
            AlertCategory.WALLET,
            {'order_id': order.order_id, 'user_id': order.user_id, 'error': outcome.error,
             'outcome_unknown': outcome.uncertain},
        )
        return OperatorResult(False, answer, order.order_id, prior, outcome)

    async def _persistence_failed(self, order: Order, prior: OrderStatus, outcome: Optional[CreditOutcome],
                                  error: Exception) -> OperatorResult:
        money_moved = outcome is not None and outcome.credited
        await self.ctx.alerts.critical(
            "OperatorConfirmation",
            f"Status update for {order.order_id} failed"
            + (" AFTER the wallet was credited" if money_moved else ""),
            AlertCategory.DATABASE,
            {'order_id': order.order_id, 'prior_status': prior.value, 'error': str(error)},
        )
        if money_moved:
            try:
                await self.ctx.order_store.finalize_claim(order.order_id, OrderStatus.CONFIRMED_ERROR_DB)
            except PersistenceFailure as e:
                logger.error(f"🚨 Fallback status write for {order.order_id} also failed: {e}")
        else:
            await self._release_quietly(order.order_id, prior)
        return OperatorResult(False, "🚨 No se pudo guardar el estado. Se envió una alerta crítica.",
                              order.order_id, None, outcome)

    async def _release_quietly(self, order_id: str, prior: OrderStatus):
        try:
            await self.ctx.order_store.release_claim(order_id, prior)
        except PersistenceFailure as e:
            logger.error(f"🚨 Could not release claim on {order_id}: {e}")

    async def handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """CallbackQueryHandler entry point for `mark_done_<order_id>`"""
        query = update.callback_query
        if query is None:
            return

        message = query.message
        chat_id = message.chat.id if message is not None else None
        if self.operator_chat_id is None or str(chat_id) != str(self.operator_chat_id):
            logger.warning(f"🚫 MARK_DONE refused: callback from chat {chat_id} by user {query.from_user.id if query.from_user else None}")
            await query.answer("No autorizado.", show_alert=True)
            return

        order_id = parse_mark_done(query.data)
        if order_id is None:
            await query.answer("Acción inválida.", show_alert=True)
            return

        operator_name = None
        if query.from_user is not None:
            operator_name = f"@{query.from_user.username}" if query.from_user.username else query.from_user.full_name

        result = await self.mark_done(
            order_id,
            operator_name=operator_name,
            chat_id=chat_id,
            message_id=message.message_id if message is not None else None,
            original_text=getattr(message, 'text_html', None),
        )
        await query.answer(result.message, show_alert=not result.ok)
