"""
Wallet and manual purchase tests
P0 Critical: a wallet debit always belongs to exactly one server-created order
"""

from decimal import Decimal

import pytest

from conftest import FakeWalletLedger, mock_alerts, mock_notifier
from order_state import OrderStatus, WALLET_RECHARGE_CATEGORY
from payment_errors import (
    InsufficientBalance, LedgerConflict, LedgerOutcomeUnknown, NotificationFailure, PersistenceFailure,
)
from services.invoices import CheckoutRequest, CheckoutValidationError
from services.notifications import NotificationResult
from services.purchases import ManualPayment, PurchaseService


@pytest.fixture
def ledger():
    return FakeWalletLedger(balances={'user-1': Decimal('12.34'), 'user-2': Decimal('12.34')})


@pytest.fixture
def purchases(order_store, ledger):
    return PurchaseService(order_store, ledger, mock_notifier(), mock_alerts())


def cart_checkout(amount='2.34'):
    return CheckoutRequest(amount=Decimal(amount), email='', category='Free Fire',
                           cart_details=[{'game': 'Free Fire', 'packageName': '100 Diamantes', 'playerId': '123'}])


def manual_payment(**overrides):
    values = dict(game='Free Fire', package_name='100 Diamantes', player_id='123', amount=Decimal('10.00'),
                  currency='USD', payment_method='PAGO MOVIL', receipt=b'jpeg-bytes',
                  receipt_filename='pago.jpg', receipt_content_type='image/jpeg')
    values.update(overrides)
    return ManualPayment(**values)


class TestWalletPurchase:

    async def test_debit_creates_confirmed_order_and_notifies(self, purchases, order_store, ledger):
        result = await purchases.wallet_purchase('user-1', cart_checkout())

        assert result['newBalance'] == '10.00'
        order = order_store.orders[result['orderId']]
        assert order.status is OrderStatus.CONFIRMED
        assert order.provider == 'wallet'
        assert order.user_id == 'user-1'
        assert ledger.entries[(order.order_id, 'debit')] == Decimal('2.34')

        notified, outcome, summary = purchases.notifier.notify_order.await_args.args
        assert notified.status is OrderStatus.CONFIRMED
        assert summary == '$2.34 (Wallet)'

    async def test_each_purchase_gets_its_own_order(self, purchases, order_store, ledger):
        first = await purchases.wallet_purchase('user-1', cart_checkout('2.00'))
        second = await purchases.wallet_purchase('user-2', cart_checkout('10.00'))

        assert first['orderId'] != second['orderId']
        assert ledger.balances['user-1'] == Decimal('10.34')
        assert ledger.balances['user-2'] == Decimal('2.34')

    async def test_insufficient_balance_removes_order(self, purchases, order_store, ledger):
        with pytest.raises(InsufficientBalance):
            await purchases.wallet_purchase('user-1', cart_checkout('50'))

        assert order_store.orders == {}
        assert len(order_store.deleted) == 1
        purchases.notifier.notify_order.assert_not_awaited()

    async def test_reused_ledger_key_is_refused(self, purchases, order_store, ledger):
        ledger.debit_error = LedgerConflict("already debited")

        with pytest.raises(LedgerConflict):
            await purchases.wallet_purchase('user-1', cart_checkout())

        assert order_store.orders == {}
        assert ledger.balances['user-1'] == Decimal('12.34')
        purchases.notifier.notify_order.assert_not_awaited()

    async def test_debit_timeout_keeps_order_and_alerts(self, purchases, order_store, ledger):
        ledger.debit_error = LedgerOutcomeUnknown("debit timed out")

        with pytest.raises(LedgerOutcomeUnknown):
            await purchases.wallet_purchase('user-1', cart_checkout())

        [order] = order_store.orders.values()
        assert order.status is OrderStatus.PENDING
        purchases.alerts.critical.assert_awaited_once()
        assert 'may already be debited' in purchases.alerts.critical.await_args.args[1]

    async def test_status_write_failure_after_debit(self, purchases, order_store, ledger):
        order_store.fail_finalize_with = PersistenceFailure("connection lost")

        result = await purchases.wallet_purchase('user-1', cart_checkout())

        assert order_store.status_of(result['orderId']) is OrderStatus.CONFIRMED_ERROR_DB
        assert ledger.balances['user-1'] == Decimal('10.00')
        assert 'not recorded' in purchases.alerts.critical.await_args.args[1]
        notified = purchases.notifier.notify_order.await_args.args[0]
        assert notified.status is OrderStatus.CONFIRMED_ERROR_DB

    async def test_order_write_failure_moves_no_money(self, purchases, order_store, ledger):
        order_store.fail_create_with = PersistenceFailure("insert failed")

        with pytest.raises(PersistenceFailure):
            await purchases.wallet_purchase('user-1', cart_checkout())

        assert ledger.balances['user-1'] == Decimal('12.34')
        assert ledger.entries == {}

    async def test_wallet_cannot_recharge_itself(self, purchases, ledger):
        checkout = cart_checkout()
        checkout.category = WALLET_RECHARGE_CATEGORY

        with pytest.raises(CheckoutValidationError):
            await purchases.wallet_purchase('user-1', checkout)
        assert ledger.entries == {}


class TestManualPayment:

    async def test_receipt_and_details_forwarded(self, purchases, order_store):
        result = await purchases.submit_manual_payment(manual_payment())

        order = order_store.orders[result['orderId']]
        assert order.status is OrderStatus.PENDING
        assert order.provider == 'manual'
        assert order.provider_details == {'payment_method': 'PAGO MOVIL', 'receipt': 'attached'}
        assert order.cart_details[0]['priceUSD'] == '10.00'

        purchases.notifier.send_receipt.assert_awaited_once()
        assert purchases.notifier.send_receipt.await_args.args[1:] == (b'jpeg-bytes', 'pago.jpg', 'image/jpeg')
        purchases.notifier.notify_order.assert_awaited_once()

    async def test_receipt_required(self, purchases, order_store):
        with pytest.raises(CheckoutValidationError):
            await purchases.submit_manual_payment(manual_payment(receipt=None))
        assert order_store.orders == {}

    async def test_tiktok_without_receipt(self, purchases, order_store):
        result = await purchases.submit_manual_payment(manual_payment(game='TikTok', receipt=None))

        assert order_store.orders[result['orderId']].provider_details['receipt'] == 'whatsapp'
        purchases.notifier.send_receipt.assert_not_awaited()
        purchases.notifier.notify_order.assert_awaited_once()

    async def test_receipt_failure_removes_order(self, purchases, order_store):
        purchases.notifier.send_receipt.return_value = False

        with pytest.raises(NotificationFailure):
            await purchases.submit_manual_payment(manual_payment())

        assert order_store.orders == {}
        purchases.notifier.notify_order.assert_not_awaited()
        purchases.alerts.error.assert_awaited_once()

    async def test_details_failure_removes_order(self, purchases, order_store):
        purchases.notifier.notify_order.return_value = NotificationResult(chat_sent=False)

        with pytest.raises(NotificationFailure):
            await purchases.submit_manual_payment(manual_payment())

        assert order_store.orders == {}

    def test_from_fields(self):
        payment = ManualPayment.from_fields(
            {'game': 'Free Fire', 'package': '100 Diamantes', 'playerId': '123', 'finalPrice': '400',
             'currency': 'ves', 'whatsapp': '0414-1234567'},
            'pago-movil',
        )

        assert payment.amount == Decimal('400')
        assert payment.currency == 'VES'
        assert payment.payment_method == 'PAGO MOVIL'
        assert payment.phone == '+04141234567'
        assert payment.cart_line()['priceVES'] == '400'

    @pytest.mark.parametrize("details, method", [
        ({'finalPrice': '10'}, 'pago-movil'),
        ({'game': 'Free Fire', 'finalPrice': '10'}, ''),
        ({'game': 'Free Fire', 'finalPrice': 'NaN'}, 'pago-movil'),
        ({'game': 'Free Fire', 'finalPrice': '-3'}, 'pago-movil'),
        ({'game': 'Free Fire', 'finalPrice': '10', 'email': 'nope'}, 'pago-movil'),
    ])
    def test_from_fields_rejects(self, details, method):
        with pytest.raises(CheckoutValidationError):
            ManualPayment.from_fields(details, method)
