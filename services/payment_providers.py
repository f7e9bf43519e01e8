"""
Invoice creation against the payment providers (Plisio, Coinbase Commerce)
Thin httpx clients: one call each, explicit timeouts, InvoiceCreationError on
any provider-side failure.
"""

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from payment_errors import InvoiceCreationError

logger = logging.getLogger(__name__)

INVOICE_NAME = "Recarga de Servicios Malok"
INVOICE_DESCRIPTION = "Pago por carrito de recargas - Malok Recargas"

PROVIDER_TIMEOUT = httpx.Timeout(15.0, connect=5.0)


@dataclass
class InvoiceRequest:
    order_id: str
    amount_usd: Decimal
    base_amount: Decimal
    email: str
    phone: Optional[str]
    cart_details: List[Dict[str, Any]]


@dataclass
class Invoice:
    provider: str
    invoice_id: str
    invoice_url: str
    details: Dict[str, Any]


class PlisioClient:
    """Plisio invoice API"""

    name = "plisio"
    base_url = "https://plisio.net/api/v1"
    accepted_currencies = "BTC,ETH,USDT_TRX,LTC"

    def __init__(self, api_key: str, callback_url: str, success_url: str, http_client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.callback_url = callback_url
        self.success_url = success_url
        self._http_client = http_client

    async def create_invoice(self, request: InvoiceRequest) -> Invoice:
        payload = {
            'api_key': self.api_key,
            'order_name': INVOICE_NAME,
            'order_number': request.order_id,
            'currency': 'USD',
            'amount': f"{request.amount_usd:.2f}",
            'currency_in': self.accepted_currencies,
            'callback_url': self.callback_url,
            'success_url': self.success_url,
            'email': request.email,
            'custom': json.dumps({
                'customer_email': request.email,
                'customer_whatsapp': request.phone,
                'original_amount': f"{request.base_amount:.2f}",
            }),
        }

        data = await _post(self._http_client, f"{self.base_url}/invoices/new", self.name, request.order_id, data=payload)
        invoice = data.get('data') or {}
        if data.get('status') != 'ok' or not invoice.get('invoice_url'):
            message = invoice.get('message') or 'unknown Plisio error'
            logger.error(f"❌ Plisio rejected invoice for {request.order_id}: {message}")
            raise InvoiceCreationError(f"Plisio: {message}", request.order_id)

        logger.info(f"✅ Plisio invoice {invoice.get('txn_id')} created for {request.order_id}")
        return Invoice(
            provider=self.name,
            invoice_id=invoice.get('txn_id'),
            invoice_url=invoice['invoice_url'],
            details={'plisio_txn_id': invoice.get('txn_id'), 'plisio_invoice_url': invoice['invoice_url']},
        )


class CoinbaseCommerceClient:
    """Coinbase Commerce charges API"""

    name = "coinbase"
    base_url = "https://api.commerce.coinbase.com"
    api_version = "2018-03-22"

    def __init__(self, api_key: str, redirect_url: str, cancel_url: str, http_client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.redirect_url = redirect_url
        self.cancel_url = cancel_url
        self._http_client = http_client

    async def create_invoice(self, request: InvoiceRequest) -> Invoice:
        payload = {
            'name': INVOICE_NAME,
            'description': INVOICE_DESCRIPTION,
            'pricing_type': 'fixed_price',
            'local_price': {'amount': f"{request.amount_usd:.2f}", 'currency': 'USD'},
            'redirect_url': self.redirect_url,
            'cancel_url': self.cancel_url,
            'metadata': {
                'order_id': request.order_id,
                'customer_email': request.email,
                'customer_whatsapp': request.phone,
                'original_amount': f"{request.base_amount:.2f}",
            },
        }
        headers = {
            'X-CC-Api-Key': self.api_key,
            'X-CC-Version': self.api_version,
            'Content-Type': 'application/json',
        }

        data = await _post(self._http_client, f"{self.base_url}/charges", self.name, request.order_id, json=payload, headers=headers)
        charge = data.get('data') or {}
        if not charge.get('hosted_url'):
            logger.error(f"❌ Coinbase charge response for {request.order_id} has no hosted_url: {data}")
            raise InvoiceCreationError("Coinbase: missing hosted_url", request.order_id)

        logger.info(f"✅ Coinbase charge {charge.get('code')} created for {request.order_id}")
        return Invoice(
            provider=self.name,
            invoice_id=charge.get('code') or charge.get('id'),
            invoice_url=charge['hosted_url'],
            details={
                'coinbase_charge_id': charge.get('id'),
                'coinbase_charge_code': charge.get('code'),
                'coinbase_hosted_url': charge['hosted_url'],
            },
        )


async def _post(http_client: Optional[httpx.AsyncClient], url: str, provider: str, order_id: str, **kwargs) -> Dict[str, Any]:
    try:
        if http_client is not None:
            response = await http_client.post(url, timeout=PROVIDER_TIMEOUT, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=PROVIDER_TIMEOUT) as client:
                response = await client.post(url, **kwargs)
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as e:
        logger.error(f"❌ {provider} API error for {order_id}: {e.response.status_code} - {e.response.text[:200]}")
        raise InvoiceCreationError(f"{provider}: HTTP {e.response.status_code}", order_id) from e
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"❌ {provider} API call failed for {order_id}: {e}")
        raise InvoiceCreationError(f"{provider}: {e}", order_id) from e
