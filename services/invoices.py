"""
Checkout: persist a pending order, then ask the provider for an invoice

If the provider call fails the pending order is deleted again, which is the
only case in which an order row is ever removed.
"""

import time
import logging
import secrets
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from order_state import Order, OrderStatus, derive_order_kind, OrderKind, normalize_phone
from payment_errors import InvoiceCreationError
from pricing_utils import calculate_final_amount, convert_to_usd, to_decimal
from services.payment_providers import Invoice, InvoiceRequest

logger = logging.getLogger(__name__)

ORDER_ID_PREFIX = "MALOK"


class CheckoutValidationError(ValueError):
    """Checkout payload rejected before any order was written"""


def generate_order_id(now_ms: Optional[int] = None, suffix: Optional[str] = None) -> str:
    """MALOK-<epoch milliseconds>-<6 random hex digits>, unique even within one millisecond"""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if suffix is None:
        suffix = secrets.token_hex(3).upper()
    return f"{ORDER_ID_PREFIX}-{now_ms}-{suffix}"


@dataclass
class CheckoutRequest:
    amount: Decimal
    email: str
    phone: Optional[str] = None
    cart_details: List[Dict[str, Any]] = field(default_factory=list)
    currency: str = "USD"
    category: Optional[str] = None
    user_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], amount_field: str = 'amount',
                     require_email: bool = True) -> "CheckoutRequest":
        """Validate the storefront's JSON body ({amount, email, whatsapp, cartDetails, ...})"""
        try:
            amount = to_decimal(payload.get(amount_field))
        except ValueError:
            amount = None
        if amount is None or amount <= 0:
            raise CheckoutValidationError("Datos de transacción incompletos o inválidos: monto")

        email = (payload.get('email') or '').strip()
        if not email or '@' not in email:
            raise CheckoutValidationError("Datos de transacción incompletos o inválidos: email")

        cart = payload.get('cartDetails') or []
        if isinstance(cart, dict):
            cart = [cart]
        if not isinstance(cart, list):
            raise CheckoutValidationError("cartDetails debe ser una lista")

        category = payload.get('category')
        if category is None and cart and isinstance(cart[0], dict):
            # The recharge page sends its sentinel in the first cart line's `game`
            category = cart[0].get('game')

        return cls(
            amount=amount,
            email=email,
            phone=normalize_phone(payload.get('whatsapp')),
            cart_details=cart,
            currency=(payload.get('currency') or 'USD').upper(),
            category=category,
            user_id=payload.get('userId') or None,
        )


class InvoiceService:
    """Creates orders and provider invoices for the storefront checkout"""

    def __init__(self, order_store, wallet_ledger, providers: Dict[str, Any], fee_percent: Decimal, exchange_rates=None):
        self.order_store = order_store
        self.wallet_ledger = wallet_ledger
        self.providers = providers
        self.fee_percent = fee_percent
        self.exchange_rates = exchange_rates

    async def create_invoice(self, provider_name: str, checkout: CheckoutRequest) -> Dict[str, str]:
        """
        Persist a pending order and open a provider invoice for it

        Returns:
            Dict[str, str]: {"invoiceUrl": ..., "orderId": ...}

        Raises:
            CheckoutValidationError: bad input or unknown wallet user
            InvoiceCreationError: provider failure (the pending order is removed)
            PersistenceFailure: the pending order could not be written
        """
        client = self.providers.get(provider_name)
        if client is None:
            raise CheckoutValidationError(f"Proveedor de pago desconocido: {provider_name}")

        kind = derive_order_kind(checkout.category)
        if kind is OrderKind.WALLET_TOPUP:
            if not checkout.user_id:
                raise CheckoutValidationError("La recarga de saldo requiere iniciar sesión")
            if not await self.wallet_ledger.user_exists(checkout.user_id):
                raise CheckoutValidationError("Usuario no encontrado para la recarga de saldo")

        final_amount = calculate_final_amount(checkout.amount, self.fee_percent)
        order = Order(
            order_id=generate_order_id(),
            status=OrderStatus.PENDING,
            product_category=checkout.category,
            base_amount=checkout.amount,
            final_amount=final_amount,
            currency=checkout.currency,
            user_id=checkout.user_id,
            provider=provider_name,
            cart_details=checkout.cart_details,
            email=checkout.email,
            phone=checkout.phone,
        )

        amount_usd, base_usd = final_amount, checkout.amount
        if checkout.currency != 'USD':
            rate = await self.exchange_rates.get_rate() if self.exchange_rates else None
            amount_usd = convert_to_usd(final_amount, checkout.currency, rate)
            base_usd = convert_to_usd(checkout.amount, checkout.currency, rate)

        await self.order_store.create_order(order)

        try:
            invoice: Invoice = await client.create_invoice(InvoiceRequest(
                order_id=order.order_id,
                amount_usd=amount_usd,
                base_amount=base_usd,
                email=checkout.email,
                phone=checkout.phone,
                cart_details=checkout.cart_details,
            ))
        except InvoiceCreationError:
            deleted = await self.order_store.delete_pending_order(order.order_id)
            logger.warning(f"🧹 Invoice failed - pending order {order.order_id} {'removed' if deleted else 'could not be removed'}")
            raise

        await self.order_store.merge_provider_details(order.order_id, {
            'invoice_id': invoice.invoice_id,
            'invoice_url': invoice.invoice_url,
            **invoice.details,
        })
        logger.info(f"🧾 Checkout {order.order_id}: {final_amount} {order.currency} via {provider_name}")
        return {'invoiceUrl': invoice.invoice_url, 'orderId': order.order_id}
