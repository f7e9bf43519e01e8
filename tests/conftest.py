"""
Shared test fixtures and configuration for the Malok payment service test suite
In-memory order store, wallet ledger, notifier and alerts so reconciliation
runs without PostgreSQL or Telegram
"""

import os
import hmac
import json
import hashlib
import pytest
import factory
from factory.declarations import Sequence
from dataclasses import replace
from decimal import Decimal
from typing import Dict, Any, Optional, List, Tuple
from unittest.mock import AsyncMock, MagicMock
import logging

# Configure test logging
logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)

# Test environment configuration
test_env_vars = {
    'TEST_MODE': '1',
    'TELEGRAM_BOT_TOKEN': 'test_token',
    'TELEGRAM_CHAT_ID': '-100123',
}
for key, value in test_env_vars.items():
    os.environ.setdefault(key, value)

from order_state import Order, OrderStatus, WALLET_RECHARGE_CATEGORY, ensure_transition, RELEASABLE_CLAIMS
from payment_errors import CreditingFailure, InsufficientBalance, InvalidTransition, LedgerConflict
from database import CreditResult
from services.notifications import NotificationResult
from services.reconciliation import ReconciliationContext, ReconciliationEngine
from utils.environment import Settings

PLISIO_SECRET = 'plisio-test-secret'
COINBASE_SECRET = 'coinbase-test-secret'


# Test data factories
class OrderFactory(factory.Factory):  # type: ignore[misc]
    """Factory for product purchase orders waiting for payment"""
    class Meta:  # type: ignore[misc]
        model = Order

    order_id = Sequence(lambda n: f"MALOK-{1700000000000 + n}")
    status = OrderStatus.PENDING
    product_category = "Free Fire"
    base_amount = Decimal('10.00')
    final_amount = Decimal('10.30')
    currency = "USD"
    user_id = None
    provider = "plisio"
    provider_details = factory.LazyFunction(dict)
    cart_details = factory.LazyFunction(lambda: [
        {'game': 'Free Fire', 'packageName': '100 Diamantes', 'playerId': '123456', 'priceUSD': '10.00'}
    ])
    email = "cliente@example.com"
    phone = "+584141234567"


class TopupOrderFactory(OrderFactory):
    """Factory for wallet recharge orders"""
    product_category = WALLET_RECHARGE_CATEGORY
    user_id = Sequence(lambda n: f"user-{n}")
    base_amount = Decimal('50.00')
    final_amount = Decimal('51.50')
    cart_details = factory.LazyFunction(lambda: [{'game': WALLET_RECHARGE_CATEGORY, 'priceUSD': '50.00'}])


class FakeOrderStore:
    """In-memory order store with the same compare-and-set semantics as PostgresOrderStore"""

    def __init__(self, *orders: Order):
        self.orders: Dict[str, Order] = {o.order_id: o for o in orders}
        self.history: List[Tuple[str, OrderStatus, OrderStatus]] = []
        self.fail_finalize_with: Optional[Exception] = None
        self.fail_create_with: Optional[Exception] = None
        self.deleted: List[str] = []
        self.notification_messages: Dict[str, Tuple[str, int]] = {}

    def add(self, order: Order) -> Order:
        self.orders[order.order_id] = order
        return order

    def status_of(self, order_id: str) -> OrderStatus:
        return self.orders[order_id].status

    async def get_order(self, order_id: str) -> Optional[Order]:
        order = self.orders.get(order_id)
        return replace(order) if order else None

    async def create_order(self, order: Order) -> None:
        if self.fail_create_with is not None:
            raise self.fail_create_with
        self.orders[order.order_id] = order

    async def delete_pending_order(self, order_id: str) -> bool:
        order = self.orders.get(order_id)
        if order is None or order.status is not OrderStatus.PENDING:
            return False
        del self.orders[order_id]
        self.deleted.append(order_id)
        return True

    async def merge_provider_details(self, order_id: str, details: Dict[str, Any]) -> bool:
        order = self.orders.get(order_id)
        if order is None:
            return False
        order.provider_details = {**order.provider_details, **details}
        return True

    async def transition_status(self, order_id, expected, target, provider_details=None) -> bool:
        ensure_transition(expected, target, order_id)
        return self._compare_and_set(order_id, expected, target, provider_details)

    async def claim_order(self, order_id: str, expected: OrderStatus) -> bool:
        return await self.transition_status(order_id, expected, OrderStatus.PROCESSING)

    async def finalize_claim(self, order_id, target, provider_details=None) -> bool:
        if self.fail_finalize_with is not None and target is not OrderStatus.CONFIRMED_ERROR_DB:
            raise self.fail_finalize_with
        return await self.transition_status(order_id, OrderStatus.PROCESSING, target, provider_details)

    async def release_claim(self, order_id: str, back_to: OrderStatus) -> bool:
        if back_to not in RELEASABLE_CLAIMS:
            raise InvalidTransition(OrderStatus.PROCESSING.value, back_to.value, order_id)
        return self._compare_and_set(order_id, OrderStatus.PROCESSING, back_to, None)

    async def set_notification_message(self, order_id: str, chat_id: str, message_id: int) -> None:
        self.notification_messages[order_id] = (chat_id, message_id)

    def _compare_and_set(self, order_id, expected, target, provider_details) -> bool:
        order = self.orders.get(order_id)
        if order is None or order.status is not expected:
            return False
        order.status = target
        if provider_details:
            order.provider_details = {**order.provider_details, **provider_details}
        self.history.append((order_id, expected, target))
        return True


class FakeWalletLedger:
    """In-memory ledger keyed on (order_id, entry_type) like the wallet_ledger table"""

    def __init__(self, balances: Optional[Dict[str, Decimal]] = None, users: Optional[List[str]] = None):
        self.balances: Dict[str, Decimal] = dict(balances or {})
        self.users = set(users or []) | set(self.balances)
        self.entries: Dict[Tuple[str, str], Decimal] = {}
        self.credit_calls = 0
        self.fail_credit = False
        self.credit_error: Optional[Exception] = None
        self.debit_error: Optional[Exception] = None
        self.sessions: Dict[str, str] = {}

    async def credit(self, user_id: str, amount_usd: Decimal, order_id: str) -> CreditResult:
        self.credit_calls += 1
        if self.fail_credit:
            raise CreditingFailure("ledger unavailable", order_id)
        if self.credit_error is not None:
            raise self.credit_error
        if (order_id, 'credit') in self.entries:
            return CreditResult(self.balances.get(user_id, Decimal('0.00')), already_applied=True)
        self.entries[(order_id, 'credit')] = amount_usd
        self.balances[user_id] = self.balances.get(user_id, Decimal('0.00')) + amount_usd
        return CreditResult(self.balances[user_id])

    async def debit(self, user_id: str, amount_usd: Decimal, order_id: str) -> Decimal:
        if self.debit_error is not None:
            raise self.debit_error
        if (order_id, 'debit') in self.entries:
            raise LedgerConflict(f"Order {order_id} already has a wallet debit", order_id)
        balance = self.balances.get(user_id, Decimal('0.00'))
        if balance < amount_usd:
            raise InsufficientBalance(f"balance {balance} < {amount_usd}", order_id)
        self.entries[(order_id, 'debit')] = amount_usd
        self.balances[user_id] = balance - amount_usd
        return self.balances[user_id]

    async def has_credit(self, order_id: str) -> bool:
        return (order_id, 'credit') in self.entries

    async def get_balance(self, user_id: str) -> Decimal:
        return self.balances.get(user_id, Decimal('0.00'))

    async def user_exists(self, user_id: str) -> bool:
        return user_id in self.users

    async def get_user_id_by_session_token(self, session_token: str) -> Optional[str]:
        return self.sessions.get(session_token)


class FakeExchangeRates:
    def __init__(self, rate: Decimal = Decimal('40')):
        self.rate = rate

    async def get_rate(self) -> Decimal:
        return self.rate


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url='postgresql://test',
        plisio_secret_key=PLISIO_SECRET,
        coinbase_api_key='coinbase-api-key',
        coinbase_webhook_secret=COINBASE_SECRET,
        telegram_bot_token='test_token',
        telegram_chat_id='-100123',
        telegram_webhook_secret='tg-secret',
        brevo_api_key=None,
        sender_email=None,
        sender_name='Malok Recargas',
        site_base_url='https://malok.example',
        fee_percent=Decimal('3'),
        db_operation_timeout=10.0,
        port=5000,
    )
    values.update(overrides)
    return Settings(**values)


def mock_alerts():
    alerts = MagicMock()
    alerts.critical = AsyncMock(return_value=True)
    alerts.error = AsyncMock(return_value=True)
    alerts.warning = AsyncMock(return_value=True)
    alerts.get_alert_stats = AsyncMock(return_value={'enabled': True, 'recent_24h': {}})
    return alerts


def mock_notifier():
    notifier = MagicMock()
    notifier.notify_order = AsyncMock(return_value=NotificationResult(chat_sent=True, message_id=42))
    notifier.send_receipt = AsyncMock(return_value=True)
    notifier.send_order_email = AsyncMock(return_value=True)
    notifier.finalize_operator_message = AsyncMock(return_value=True)
    return notifier


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def order_store():
    return FakeOrderStore()


@pytest.fixture
def wallet_ledger():
    return FakeWalletLedger()


@pytest.fixture
def ctx(order_store, wallet_ledger, settings):
    return ReconciliationContext(
        order_store=order_store,
        wallet_ledger=wallet_ledger,
        notifier=mock_notifier(),
        alerts=mock_alerts(),
        exchange_rates=FakeExchangeRates(),
        settings=settings,
    )


@pytest.fixture
def engine(ctx):
    return ReconciliationEngine(ctx)


@pytest.fixture
def mock_bot():
    """Mock Telegram bot for testing"""
    bot = AsyncMock()
    bot.send_message = AsyncMock(return_value=MagicMock(message_id=42))
    bot.edit_message_text = AsyncMock()
    return bot


def plisio_callback(order_id, status='completed', secret=PLISIO_SECRET, **extra):
    """Signed Plisio ?json=true callback as (fields, raw_body)"""
    fields = {'txn_id': 'txn-1', 'order_number': order_id, 'status': status,
              'amount': '0.00052', 'currency': 'BTC', **extra}
    canonical = json.dumps(fields, separators=(',', ':')).encode()
    fields['verify_hash'] = hmac.new(secret.encode(), canonical, hashlib.sha1).hexdigest()
    raw_body = json.dumps(fields).encode()
    return json.loads(raw_body), raw_body


def coinbase_webhook(order_id, event_type='charge:confirmed', secret=COINBASE_SECRET):
    """Signed Coinbase Commerce webhook as (envelope, raw_body, signature)"""
    envelope = {
        'event': {
            'id': 'evt-1',
            'type': event_type,
            'data': {
                'id': 'charge-id',
                'code': 'ABCD1234',
                'metadata': {'order_id': order_id},
                'pricing': {'local': {'amount': '51.50', 'currency': 'USD'}},
            },
        },
    }
    raw_body = json.dumps(envelope).encode()
    signature = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return envelope, raw_body, signature
