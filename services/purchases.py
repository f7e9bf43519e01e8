"""
Storefront purchases that do not go through a payment gateway

Wallet purchases debit the customer's balance and record a confirmed order in
one flow, so a debit never exists without an order for the operator to
fulfil. Manual payments (bank transfer, Pago Móvil, ...) are recorded as
pending and forwarded with their receipt for the operator to verify.
"""

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from admin_alerts import AlertCategory
from order_state import Order, OrderKind, OrderStatus, derive_order_kind, normalize_phone
from payment_errors import (
    InsufficientBalance, LedgerConflict, LedgerOutcomeUnknown, NotificationFailure, PersistenceFailure,
)
from pricing_utils import format_money, to_decimal
from services.invoices import CheckoutRequest, CheckoutValidationError, generate_order_id

logger = logging.getLogger(__name__)

WALLET_PROVIDER = "wallet"
MANUAL_PROVIDER = "manual"

# Games whose receipt and account data are sent over WhatsApp instead
RECEIPT_EXEMPT_GAMES = frozenset({"TikTok"})


@dataclass
class ManualPayment:
    """A manual payment submission: order details, payment method and receipt"""
    game: str
    package_name: Optional[str]
    player_id: Optional[str]
    amount: Decimal
    currency: str
    payment_method: str
    email: Optional[str] = None
    phone: Optional[str] = None
    receipt: Optional[bytes] = None
    receipt_filename: Optional[str] = None
    receipt_content_type: Optional[str] = None

    @property
    def receipt_required(self) -> bool:
        return self.game not in RECEIPT_EXEMPT_GAMES

    @classmethod
    def from_fields(cls, details: Mapping[str, Any], payment_method: Optional[str]) -> "ManualPayment":
        """Validate the `transactionDetails` JSON and `paymentMethod` form fields"""
        game = details.get('game')
        if not isinstance(game, str) or not game.strip():
            raise CheckoutValidationError("Datos de transacción incompletos o inválidos: juego")
        if not payment_method or not payment_method.strip():
            raise CheckoutValidationError("Datos de transacción incompletos o inválidos: método de pago")

        try:
            amount = to_decimal(details.get('finalPrice'))
        except ValueError:
            amount = None
        if amount is None or amount <= 0:
            raise CheckoutValidationError("Datos de transacción incompletos o inválidos: monto")

        email = (details.get('email') or '').strip() or None
        if email and '@' not in email:
            raise CheckoutValidationError("Datos de transacción incompletos o inválidos: email")

        return cls(
            game=game.strip(),
            package_name=details.get('package') or details.get('packageName'),
            player_id=details.get('playerId'),
            amount=amount,
            currency=(details.get('currency') or 'USD').upper(),
            payment_method=payment_method.strip().replace('-', ' ').upper(),
            email=email,
            phone=normalize_phone(details.get('whatsapp')),
        )

    def cart_line(self) -> Dict[str, Any]:
        price_key = 'priceUSD' if self.currency == 'USD' else 'priceVES'
        line = {'game': self.game, 'packageName': self.package_name, 'playerId': self.player_id,
                price_key: str(self.amount), 'currency': self.currency}
        return {k: v for k, v in line.items() if v is not None}


class PurchaseService:
    """Records wallet and manual purchases and hands them to the operator"""

    def __init__(self, order_store, wallet_ledger, notifier, alerts):
        self.order_store = order_store
        self.wallet_ledger = wallet_ledger
        self.notifier = notifier
        self.alerts = alerts

    async def wallet_purchase(self, user_id: str, checkout: CheckoutRequest) -> Dict[str, str]:
        """
        Pay a cart with wallet balance

        The order id is always generated here and doubles as the ledger's
        idempotency key, so a client can never point its debit at another
        purchase's entry.

        Returns:
            Dict[str, str]: {"message", "orderId", "newBalance"}

        Raises:
            CheckoutValidationError: the cart is a wallet recharge
            InsufficientBalance: balance does not cover the amount (order removed)
            LedgerConflict: the generated id already has a debit (order removed)
            LedgerOutcomeUnknown: debit timed out (order kept pending, operator alerted)
            PersistenceFailure: order or debit could not be written
        """
        if derive_order_kind(checkout.category) is OrderKind.WALLET_TOPUP:
            raise CheckoutValidationError("No se puede recargar saldo usando el saldo de la Wallet")

        order = Order(
            order_id=generate_order_id(),
            status=OrderStatus.PENDING,
            product_category=checkout.category,
            base_amount=checkout.amount,
            final_amount=checkout.amount,
            currency='USD',
            user_id=user_id,
            provider=WALLET_PROVIDER,
            cart_details=checkout.cart_details,
            email=checkout.email or None,
            phone=checkout.phone,
        )
        await self.order_store.create_order(order)

        try:
            new_balance = await self.wallet_ledger.debit(user_id, checkout.amount, order.order_id)
        except (InsufficientBalance, LedgerConflict, PersistenceFailure):
            await self._discard(order.order_id)
            raise
        except LedgerOutcomeUnknown as e:
            await self.alerts.critical(
                "PurchaseService",
                f"Wallet debit for {order.order_id} timed out - balance may already be debited, order left pending",
                AlertCategory.WALLET,
                {'order_id': order.order_id, 'user_id': user_id, 'amount_usd': str(checkout.amount), 'error': str(e)},
            )
            raise LedgerOutcomeUnknown(str(e), order.order_id) from e

        status = await self._confirm(order, new_balance)
        confirmed = replace(order, status=status)
        summary = f"{format_money(checkout.amount)} (Wallet)"
        await self.notifier.notify_order(confirmed, None, summary)

        logger.info(f"🛍️ WALLET_PURCHASE: {order.order_id} ${checkout.amount} by {user_id} -> {status.value}")
        return {
            'message': 'Deducción de saldo exitosa.',
            'orderId': order.order_id,
            'newBalance': format_money(new_balance, show_currency=False),
        }

    async def _confirm(self, order: Order, new_balance: Decimal) -> OrderStatus:
        """Move a debited order to confirmed; a lost write is recorded as confirmed_error_db"""
        store = self.order_store
        try:
            if (await store.claim_order(order.order_id, OrderStatus.PENDING)
                    and await store.finalize_claim(order.order_id, OrderStatus.CONFIRMED)):
                return OrderStatus.CONFIRMED
            failure: Exception = PersistenceFailure("order changed while it was being confirmed", order.order_id)
        except PersistenceFailure as e:
            failure = e

        await self.alerts.critical(
            "PurchaseService",
            f"Wallet debited for {order.order_id} but the order status was not recorded",
            AlertCategory.DATABASE,
            {'order_id': order.order_id, 'user_id': order.user_id, 'amount_usd': str(order.final_amount),
             'new_balance': str(new_balance), 'error': str(failure)},
        )
        try:
            if await store.finalize_claim(order.order_id, OrderStatus.CONFIRMED_ERROR_DB):
                logger.error(f"🚨 {order.order_id} recorded as confirmed_error_db")
                return OrderStatus.CONFIRMED_ERROR_DB
        except PersistenceFailure as e:
            logger.error(f"🚨 Fallback status write for {order.order_id} also failed: {e}")
        return OrderStatus.PENDING

    async def submit_manual_payment(self, payment: ManualPayment) -> Dict[str, str]:
        """
        Record a manual payment and forward it to the operator chat

        Returns:
            Dict[str, str]: {"message", "orderId"}

        Raises:
            CheckoutValidationError: receipt missing for a game that needs one
            PersistenceFailure: the order could not be written
            NotificationFailure: the operator chat could not be reached (order removed)
        """
        if payment.receipt_required and not payment.receipt:
            raise CheckoutValidationError("Se requiere un comprobante de pago.")

        order = Order(
            order_id=generate_order_id(),
            status=OrderStatus.PENDING,
            product_category=payment.game,
            base_amount=payment.amount,
            final_amount=payment.amount,
            currency=payment.currency,
            provider=MANUAL_PROVIDER,
            provider_details={'payment_method': payment.payment_method,
                              'receipt': 'attached' if payment.receipt else 'whatsapp'},
            cart_details=[payment.cart_line()],
            email=payment.email,
            phone=payment.phone,
        )
        await self.order_store.create_order(order)

        details_sent = False
        if payment.receipt:
            receipt_sent = await self.notifier.send_receipt(
                order, payment.receipt, payment.receipt_filename or 'comprobante', payment.receipt_content_type
            )
        else:
            receipt_sent = True
            logger.info(f"📱 {order.order_id}: {payment.game} receipt arrives over WhatsApp")

        if receipt_sent:
            summary = f"{format_money(payment.amount, payment.currency)} ({payment.payment_method})"
            details_sent = (await self.notifier.notify_order(order, None, summary)).chat_sent

        if not details_sent:
            await self._discard(order.order_id)
            await self.alerts.error(
                "PurchaseService",
                f"Manual payment {order.order_id} could not be forwarded to the operator chat",
                AlertCategory.NOTIFICATION,
                {'order_id': order.order_id, 'payment_method': payment.payment_method,
                 'receipt_sent': receipt_sent},
            )
            raise NotificationFailure("Operator chat unreachable", order.order_id)

        logger.info(f"🧾 MANUAL_PAYMENT: {order.order_id} {payment.amount} {payment.currency} via {payment.payment_method}")
        return {'message': 'Solicitud de pago enviada exitosamente.', 'orderId': order.order_id}

    async def _discard(self, order_id: str):
        try:
            deleted = await self.order_store.delete_pending_order(order_id)
        except PersistenceFailure as e:
            logger.error(f"🚨 Could not remove pending order {order_id}: {e}")
            return
        logger.warning(f"🧹 Pending order {order_id} {'removed' if deleted else 'could not be removed'}")
