"""
Payment reconciliation engine

Turns a verified provider notification into an order status change and, for
wallet top-ups, exactly one wallet credit. Uses claim-then-act: the order is
flipped to `processing` with a compare-and-set before any money moves, so a
duplicate delivery or a concurrent operator action finds the claim taken and
backs off.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from admin_alerts import AlertCategory
from order_state import (
    CreditOutcome, Order, OrderStatus, WEBHOOK_CLAIMABLE,
)
from payment_errors import (
    ConfigurationError, CreditingFailure, InvalidSignature, LedgerOutcomeUnknown,
    MalformedWebhook, OrderNotFound, PersistenceFailure,
)
from pricing_utils import convert_to_usd
from services.webhook_signatures import COINBASE_COMMERCE, PLISIO_FORM, PLISIO_JSON

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({'completed', 'amount_check'})
PENDING_STATUSES = frozenset({'pending'})
FAILURE_STATUSES = frozenset({'mismatch', 'expired', 'error', 'cancelled'})

# Coinbase Commerce event types expressed in the Plisio status vocabulary
COINBASE_EVENT_STATUS = {
    'charge:confirmed': 'completed',
    'charge:resolved': 'completed',
    'charge:pending': 'pending',
    'charge:failed': 'expired',
    'charge:delayed': 'mismatch',
}

ALREADY_HANDLED = frozenset({OrderStatus.DONE, OrderStatus.CONFIRMED, OrderStatus.PROCESSING})


class ReconciliationAction(Enum):
    CONFIRMED = "confirmed"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    PENDING = "pending"
    FAILED = "failed"
    IGNORED = "ignored"


@dataclass
class ReconciliationContext:
    """Everything a reconciliation needs, constructed once and passed in"""
    order_store: Any
    wallet_ledger: Any
    notifier: Any
    alerts: Any
    exchange_rates: Any
    settings: Any = None


@dataclass
class ProviderEvent:
    """A provider notification normalized to the Plisio status vocabulary"""
    provider: str
    order_id: Optional[str]
    status: Optional[str]
    txn_id: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    event_type: Optional[str] = None

    def payment_summary(self) -> Optional[str]:
        if not self.amount:
            return None
        amount = " ".join(str(part) for part in (self.amount, self.currency) if part)
        return f"{amount} ({self.provider.capitalize()})"


@dataclass
class ReconciliationResult:
    action: ReconciliationAction
    order_id: Optional[str]
    status: Optional[OrderStatus] = None
    outcome: Optional[CreditOutcome] = None


# ====================================================================
# PROVIDER NORMALIZATION
# ====================================================================

def plisio_event(fields: Mapping[str, Any]) -> ProviderEvent:
    """Normalize Plisio callback fields (JSON or form-encoded)"""
    order_id = fields.get('order_number') or fields.get('order_id')
    currency = fields.get('currency') or fields.get('currency_in') or fields.get('psys_cid')
    details = {
        'plisio_txn_id': fields.get('txn_id'),
        'plisio_status': fields.get('status'),
        'plisio_amount': fields.get('amount'),
        'plisio_currency': currency,
        'plisio_source_amount': fields.get('source_amount'),
        'plisio_source_currency': fields.get('source_currency'),
    }
    return ProviderEvent(
        provider='plisio',
        order_id=str(order_id) if order_id else None,
        status=str(fields['status']).strip().lower() if fields.get('status') else None,
        txn_id=fields.get('txn_id'),
        amount=fields.get('amount'),
        currency=currency,
        details={k: v for k, v in details.items() if v is not None},
    )


def coinbase_event(envelope: Mapping[str, Any]) -> ProviderEvent:
    """Normalize a Coinbase Commerce webhook envelope"""
    event = envelope.get('event') or {}
    if not isinstance(event, Mapping):
        raise MalformedWebhook("Coinbase event envelope is not an object")

    event_type = event.get('type')
    data = event.get('data') or {}
    metadata = data.get('metadata') or {}

    amount = currency = None
    payments = data.get('payments') or []
    if payments:
        value = (payments[-1].get('value') or {}).get('crypto') or {}
        amount, currency = value.get('amount'), value.get('currency')
    if amount is None:
        local = (data.get('pricing') or {}).get('local') or {}
        amount, currency = local.get('amount'), local.get('currency')

    details = {
        'coinbase_event_id': event.get('id'),
        'coinbase_event_type': event_type,
        'coinbase_charge_code': data.get('code'),
        'coinbase_charge_id': data.get('id'),
        'coinbase_amount': amount,
        'coinbase_currency': currency,
    }
    return ProviderEvent(
        provider='coinbase',
        order_id=metadata.get('order_id'),
        status=COINBASE_EVENT_STATUS.get(event_type),
        txn_id=data.get('code'),
        amount=amount,
        currency=currency,
        details={k: v for k, v in details.items() if v is not None},
        event_type=event_type,
    )


# ====================================================================
# CREDITING
# ====================================================================

def crediting_amount(order: Order) -> Tuple[Optional[Decimal], bool]:
    """
    Amount a wallet top-up credits, in the order's currency

    Returns:
        (amount, used_final_amount_fallback)
    """
    if order.base_amount is not None and order.base_amount > 0:
        return order.base_amount, False
    return order.final_amount, True


async def credit_wallet_topup(ctx: ReconciliationContext, order: Order) -> CreditOutcome:
    """
    Credit a wallet top-up once, converting to USD with the stored rate

    Never raises for ledger problems: the failure is reported in the outcome
    so the caller can record an error status or release its claim.
    """
    amount, used_fallback = crediting_amount(order)
    outcome = CreditOutcome(used_final_amount_fallback=used_fallback)

    if used_fallback:
        logger.warning(f"⚠️ TOPUP_AMOUNT_FALLBACK: {order.order_id} has no base amount - crediting final amount {amount} (fee included)")

    if amount is not None and order.currency != 'USD':
        rate = await ctx.exchange_rates.get_rate()
        amount = convert_to_usd(amount, order.currency, rate)
        logger.info(f"💱 {order.order_id}: converted to ${amount} at {rate} {order.currency}/USD")

    outcome.amount_usd = amount

    if not order.user_id or amount is None or amount <= 0:
        outcome.error = "usuario o monto inválido" if order.user_id else "orden sin usuario"
        outcome.needs_review = True
        logger.error(f"❌ TOPUP_INVALID: {order.order_id} user={order.user_id} amount={amount} - manual review required")
        return outcome

    outcome.attempted = True
    try:
        result = await ctx.wallet_ledger.credit(order.user_id, amount, order.order_id)
    except LedgerOutcomeUnknown as e:
        outcome.uncertain = True
        outcome.error = str(e)
        outcome.needs_review = True
        return outcome
    except CreditingFailure as e:
        outcome.error = str(e)
        outcome.needs_review = True
        return outcome

    outcome.already_applied = result.already_applied
    outcome.credited = not result.already_applied
    outcome.new_balance = result.new_balance
    return outcome


def _credit_failure_title(order: Order, outcome: CreditOutcome) -> str:
    if outcome.uncertain:
        return (f"Wallet top-up {order.order_id} paid, credit outcome unknown "
                f"(wallet may already be credited; a retry will not credit twice)")
    return f"Wallet top-up {order.order_id} paid but not credited"


# ====================================================================
# ENGINE
# ====================================================================

class ReconciliationEngine:
    """Applies verified provider events to orders and wallets"""

    def __init__(self, ctx: ReconciliationContext):
        self.ctx = ctx

    # --- webhook entry points -------------------------------------------------

    async def handle_plisio_webhook(self, fields: Mapping[str, Any], raw_body: bytes, json_mode: bool) -> ReconciliationResult:
        """
        Verify and reconcile a Plisio callback

        Raises:
            ConfigurationError: PLISIO_SECRET_KEY is not set
            MalformedWebhook: signature or order number missing
            InvalidSignature: signature does not match
        """
        secret = getattr(self.ctx.settings, 'plisio_secret_key', None)
        if not secret:
            raise ConfigurationError(['PLISIO_SECRET_KEY'])

        if json_mode:
            scheme, signed, signature = PLISIO_JSON, raw_body, fields.get('verify_hash')
        else:
            scheme, signed, signature = PLISIO_FORM, fields, PLISIO_FORM.provided_signature(fields)

        event = plisio_event(fields)
        if not signature:
            raise MalformedWebhook("Plisio callback without verify_hash", event.order_id)
        if not event.order_id:
            raise MalformedWebhook("Plisio callback without order_number")
        if not scheme.verify(signed, signature, secret):
            raise InvalidSignature(f"Plisio {scheme.name} signature mismatch", event.order_id)

        logger.info(f"🔐 Plisio webhook verified: order {event.order_id}, status {event.status}, txn {event.txn_id}")
        return await self.handle_event(event)

    async def handle_coinbase_webhook(self, envelope: Mapping[str, Any], raw_body: bytes, signature: Optional[str]) -> ReconciliationResult:
        secret = getattr(self.ctx.settings, 'coinbase_webhook_secret', None)
        if not secret:
            raise ConfigurationError(['COINBASE_WEBHOOK_SECRET'])
        if not signature:
            raise MalformedWebhook("Coinbase webhook without X-CC-Webhook-Signature")
        if not COINBASE_COMMERCE.verify(raw_body, signature, secret):
            raise InvalidSignature("Coinbase Commerce signature mismatch")

        event = coinbase_event(envelope)
        if event.status is None:
            logger.info(f"ℹ️ Coinbase event {event.event_type} needs no action")
            return ReconciliationResult(ReconciliationAction.IGNORED, event.order_id)
        if not event.order_id:
            raise MalformedWebhook(f"Coinbase {event.event_type} without metadata.order_id")

        logger.info(f"🔐 Coinbase webhook verified: order {event.order_id}, event {event.event_type}")
        return await self.handle_event(event)

    # --- status table ---------------------------------------------------------

    async def handle_event(self, event: ProviderEvent) -> ReconciliationResult:
        if not event.order_id:
            raise MalformedWebhook("Event without order identifier")

        try:
            if event.status in SUCCESS_STATUSES:
                return await self.confirm_payment(event)
            if event.status in PENDING_STATUSES:
                return await self._advance(event, OrderStatus.PENDING_CONFIRMATION, ReconciliationAction.PENDING)
            if event.status in FAILURE_STATUSES:
                return await self._advance(event, OrderStatus.failed(event.status), ReconciliationAction.FAILED)
        except OrderNotFound:
            logger.warning(f"⚠️ ORDER_NOT_FOUND: {event.provider} {event.status} for {event.order_id} - acknowledging")
            return ReconciliationResult(ReconciliationAction.NOT_FOUND, event.order_id)

        logger.info(f"ℹ️ {event.provider} status '{event.status}' for {event.order_id} needs no action")
        return ReconciliationResult(ReconciliationAction.IGNORED, event.order_id)

    async def _load_order(self, order_id: str) -> Order:
        order = await self.ctx.order_store.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"No order {order_id}", order_id)
        return order

    async def _advance(self, event: ProviderEvent, target: OrderStatus, action: ReconciliationAction) -> ReconciliationResult:
        """Pending and failure updates: only orders still waiting for payment move"""
        order = await self._load_order(event.order_id)

        if order.status not in (OrderStatus.PENDING, OrderStatus.PENDING_CONFIRMATION) or order.status is target:
            logger.info(f"ℹ️ {event.order_id} is {order.status.value} - ignoring {event.provider} status {event.status}")
            return ReconciliationResult(ReconciliationAction.DUPLICATE, event.order_id, order.status)

        moved = await self.ctx.order_store.transition_status(event.order_id, order.status, target, event.details)
        if not moved:
            return ReconciliationResult(ReconciliationAction.DUPLICATE, event.order_id, order.status)
        return ReconciliationResult(action, event.order_id, target)

    # --- confirmation flow ----------------------------------------------------

    async def confirm_payment(self, event: ProviderEvent) -> ReconciliationResult:
        store = self.ctx.order_store
        order = await self._load_order(event.order_id)

        if order.status in ALREADY_HANDLED or order.status not in WEBHOOK_CLAIMABLE:
            logger.info(f"🔁 DUPLICATE_WEBHOOK: {order.order_id} already {order.status.value} - no side effects")
            return ReconciliationResult(ReconciliationAction.DUPLICATE, order.order_id, order.status)

        prior = order.status
        if not await store.claim_order(order.order_id, prior):
            logger.info(f"🔁 CLAIM_LOST: {order.order_id} was claimed concurrently - no side effects")
            return ReconciliationResult(ReconciliationAction.DUPLICATE, order.order_id)

        try:
            if order.is_wallet_topup:
                outcome = await credit_wallet_topup(self.ctx, order)
                target = OrderStatus.DONE if outcome.succeeded else OrderStatus.CONFIRMED_ERROR_BALANCE
                if not outcome.succeeded and prior is not OrderStatus.CONFIRMED_ERROR_BALANCE:
                    await self.ctx.alerts.error(
                        "ReconciliationEngine",
                        _credit_failure_title(order, outcome),
                        AlertCategory.WALLET,
                        {'order_id': order.order_id, 'user_id': order.user_id, 'error': outcome.error,
                         'outcome_unknown': outcome.uncertain},
                    )
            else:
                outcome = None
                target = OrderStatus.CONFIRMED

            target = await self._finalize(order, target, event.details, outcome)
        except Exception as e:
            # Nothing was recorded yet: put the order back so a retry can pick it up
            await self._release_after_error(order, prior, e)
            raise

        if target is prior:
            logger.info(f"🔁 REPEATED_OUTCOME: {order.order_id} stays {target.value} - operator already notified")
            return ReconciliationResult(ReconciliationAction.DUPLICATE, order.order_id, target, outcome)

        final_order = replace(
            order,
            status=target,
            provider_details={**order.provider_details, **event.details},
        )
        await self.ctx.notifier.notify_order(final_order, outcome, event.payment_summary())
        logger.info(f"✅ RECONCILED: {order.order_id} -> {target.value}")
        return ReconciliationResult(ReconciliationAction.CONFIRMED, order.order_id, target, outcome)

    async def _finalize(self, order: Order, target: OrderStatus, details: Dict[str, Any],
                        outcome: Optional[CreditOutcome]) -> OrderStatus:
        """Record the outcome; a lost write after money moved falls back to confirmed_error_db"""
        store = self.ctx.order_store
        failure: Optional[Exception] = None
        try:
            if await store.finalize_claim(order.order_id, target, details):
                return target
            failure = PersistenceFailure("processing claim disappeared before finalization", order.order_id)
        except PersistenceFailure as e:
            failure = e

        money_moved = outcome is not None and outcome.credited
        await self.ctx.alerts.critical(
            "ReconciliationEngine",
            f"Status update for {order.order_id} failed"
            + (" AFTER the wallet was credited" if money_moved else ""),
            AlertCategory.DATABASE,
            {
                'order_id': order.order_id,
                'intended_status': target.value,
                'credited_usd': str(outcome.amount_usd) if money_moved else None,
                'error': str(failure),
            },
        )

        try:
            if await store.finalize_claim(order.order_id, OrderStatus.CONFIRMED_ERROR_DB, details):
                logger.error(f"🚨 {order.order_id} recorded as confirmed_error_db")
                return OrderStatus.CONFIRMED_ERROR_DB
        except PersistenceFailure as e:
            logger.error(f"🚨 Fallback status write for {order.order_id} also failed: {e}")
        return OrderStatus.PROCESSING

    async def _release_after_error(self, order: Order, prior: OrderStatus, error: Exception):
        logger.error(f"💥 Reconciliation of {order.order_id} aborted: {error}")
        try:
            await self.ctx.order_store.release_claim(order.order_id, prior)
        except PersistenceFailure as e:
            logger.error(f"🚨 Could not release claim on {order.order_id}: {e}")
        await self.ctx.alerts.critical(
            "ReconciliationEngine",
            f"Reconciliation of {order.order_id} aborted unexpectedly",
            AlertCategory.PAYMENT_PROCESSING,
            {'order_id': order.order_id, 'error': str(error), 'status_restored_to': prior.value},
        )


def parse_json_object(raw_body: bytes) -> Dict[str, Any]:
    """Decode a webhook body that must be a JSON object (ValueError otherwise)"""
    data = json.loads(raw_body.decode('utf-8') if isinstance(raw_body, bytes) else raw_body)
    if not isinstance(data, dict):
        raise ValueError("Webhook body is not a JSON object")
    return data
