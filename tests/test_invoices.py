"""
Checkout and invoice creation tests
"""

import json
import re
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from conftest import FakeExchangeRates, FakeOrderStore, FakeWalletLedger
from order_state import OrderStatus, WALLET_RECHARGE_CATEGORY
from payment_errors import InvoiceCreationError
from services.invoices import CheckoutRequest, CheckoutValidationError, InvoiceService, generate_order_id
from services.payment_providers import CoinbaseCommerceClient, Invoice, InvoiceRequest, PlisioClient


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def invoice_request(**overrides):
    values = dict(order_id='MALOK-1', amount_usd=Decimal('51.50'), base_amount=Decimal('50.00'),
                  email='a@b.co', phone='+584141234567', cart_details=[])
    values.update(overrides)
    return InvoiceRequest(**values)


class TestCheckoutRequest:

    def test_from_payload(self):
        checkout = CheckoutRequest.from_payload({
            'amount': 50, 'email': ' a@b.co ', 'whatsapp': '0414-1234567', 'userId': 'user-1',
            'cartDetails': [{'game': WALLET_RECHARGE_CATEGORY}], 'currency': 'ves',
        })
        assert checkout.amount == Decimal('50')
        assert checkout.email == 'a@b.co'
        assert checkout.phone == '+04141234567'
        assert checkout.category == WALLET_RECHARGE_CATEGORY
        assert checkout.currency == 'VES'

    @pytest.mark.parametrize("payload", [
        {'email': 'a@b.co'},
        {'amount': -5, 'email': 'a@b.co'},
        {'amount': 5},
        {'amount': 5, 'email': 'a@b.co', 'cartDetails': 'x'},
        {'amount': 'NaN', 'email': 'a@b.co'},
        {'amount': 'Infinity', 'email': 'a@b.co'},
        {'amount': '-inf', 'email': 'a@b.co'},
    ])
    def test_rejects_invalid(self, payload):
        with pytest.raises(CheckoutValidationError):
            CheckoutRequest.from_payload(payload)

    def test_order_id_format(self):
        assert generate_order_id(1700000000123, 'A1B2C3') == 'MALOK-1700000000123-A1B2C3'
        assert re.fullmatch(r'MALOK-\d{13}-[0-9A-F]{6}', generate_order_id())

    def test_order_ids_unique_within_one_millisecond(self):
        ids = {generate_order_id(1700000000123) for _ in range(20)}
        assert len(ids) == 20

    def test_email_optional_when_not_required(self):
        checkout = CheckoutRequest.from_payload({'amountUSD': '4.50'}, amount_field='amountUSD', require_email=False)
        assert checkout.amount == Decimal('4.50')
        assert checkout.email == ''

        with pytest.raises(CheckoutValidationError):
            CheckoutRequest.from_payload({'amountUSD': '4.50', 'email': 'nope'}, amount_field='amountUSD',
                                         require_email=False)


class FakeProvider:
    def __init__(self, fail=False):
        self.fail = fail
        self.requests = []

    async def create_invoice(self, request):
        self.requests.append(request)
        if self.fail:
            raise InvoiceCreationError("provider down", request.order_id)
        return Invoice('plisio', 'txn-1', 'https://plisio.net/invoice/txn-1', {'plisio_txn_id': 'txn-1'})


class TestInvoiceService:

    async def test_topup_requires_known_user(self):
        service = InvoiceService(FakeOrderStore(), FakeWalletLedger(), {'plisio': FakeProvider()}, Decimal('3'))
        checkout = CheckoutRequest(amount=Decimal('50'), email='a@b.co', category=WALLET_RECHARGE_CATEGORY)

        with pytest.raises(CheckoutValidationError):
            await service.create_invoice('plisio', checkout)

    async def test_topup_for_known_user(self):
        store = FakeOrderStore()
        service = InvoiceService(store, FakeWalletLedger(users=['user-1']), {'plisio': FakeProvider()}, Decimal('3'))
        checkout = CheckoutRequest(amount=Decimal('50'), email='a@b.co', category=WALLET_RECHARGE_CATEGORY,
                                   user_id='user-1')

        result = await service.create_invoice('plisio', checkout)

        order = store.orders[result['orderId']]
        assert order.is_wallet_topup
        assert order.base_amount == Decimal('50')
        assert order.final_amount == Decimal('51.50')
        assert order.status is OrderStatus.PENDING

    async def test_ves_amounts_sent_to_provider_in_usd(self):
        provider = FakeProvider()
        service = InvoiceService(FakeOrderStore(), FakeWalletLedger(), {'plisio': provider}, Decimal('0'),
                                 FakeExchangeRates(Decimal('40')))

        await service.create_invoice('plisio', CheckoutRequest(amount=Decimal('1000'), email='a@b.co', currency='VES'))

        assert provider.requests[0].amount_usd == Decimal('25.00')

    async def test_provider_failure_deletes_order(self):
        store = FakeOrderStore()
        service = InvoiceService(store, FakeWalletLedger(), {'plisio': FakeProvider(fail=True)}, Decimal('3'))

        with pytest.raises(InvoiceCreationError):
            await service.create_invoice('plisio', CheckoutRequest(amount=Decimal('10'), email='a@b.co'))
        assert store.orders == {}

    async def test_unknown_provider(self):
        service = InvoiceService(FakeOrderStore(), FakeWalletLedger(), {}, Decimal('3'))
        with pytest.raises(CheckoutValidationError):
            await service.create_invoice('paypal', CheckoutRequest(amount=Decimal('10'), email='a@b.co'))


class TestPlisioClient:

    async def test_creates_invoice(self):
        seen = {}

        def handler(request):
            seen['form'] = parse_qs(request.content.decode())
            return httpx.Response(200, json={'status': 'ok', 'data': {
                'txn_id': 'txn-1', 'invoice_url': 'https://plisio.net/invoice/txn-1'}})

        async with mock_client(handler) as http_client:
            client = PlisioClient('key', 'https://malok.example/webhook/plisio?json=true', 'https://malok.example/ok',
                                  http_client)
            invoice = await client.create_invoice(invoice_request())

        assert invoice.invoice_url == 'https://plisio.net/invoice/txn-1'
        assert seen['form']['amount'] == ['51.50']
        assert seen['form']['order_number'] == ['MALOK-1']
        assert seen['form']['callback_url'] == ['https://malok.example/webhook/plisio?json=true']

    async def test_error_status(self):
        def handler(request):
            return httpx.Response(200, json={'status': 'error', 'data': {'message': 'Invalid amount'}})

        async with mock_client(handler) as http_client:
            with pytest.raises(InvoiceCreationError, match='Invalid amount'):
                await PlisioClient('key', 'cb', 'ok', http_client).create_invoice(invoice_request())

    async def test_http_error(self):
        async with mock_client(lambda request: httpx.Response(503, text='down')) as http_client:
            with pytest.raises(InvoiceCreationError):
                await PlisioClient('key', 'cb', 'ok', http_client).create_invoice(invoice_request())


class TestCoinbaseCommerceClient:

    async def test_creates_charge(self):
        seen = {}

        def handler(request):
            seen['headers'] = request.headers
            seen['body'] = json.loads(request.content)
            return httpx.Response(201, json={'data': {
                'id': 'c-1', 'code': 'ABCD', 'hosted_url': 'https://commerce.coinbase.com/charges/ABCD'}})

        async with mock_client(handler) as http_client:
            invoice = await CoinbaseCommerceClient('key', 'ok', 'cancel', http_client).create_invoice(invoice_request())

        assert invoice.invoice_id == 'ABCD'
        assert seen['headers']['X-CC-Api-Key'] == 'key'
        assert seen['body']['metadata']['order_id'] == 'MALOK-1'
        assert seen['body']['local_price'] == {'amount': '51.50', 'currency': 'USD'}

    async def test_missing_hosted_url(self):
        async with mock_client(lambda request: httpx.Response(201, json={'data': {}})) as http_client:
            with pytest.raises(InvoiceCreationError):
                await CoinbaseCommerceClient('key', 'ok', 'cancel', http_client).create_invoice(invoice_request())
