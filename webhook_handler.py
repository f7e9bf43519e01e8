"""
Webhook and API HTTP server for payment processing
aiohttp application with the provider webhooks, the Telegram webhook, invoice
creation and the wallet endpoints.

Provider webhooks are always acknowledged with 200 (bad signatures and
unknown orders included) so providers do not start retry storms. The
exceptions are 405 for non-POST, 400 for an unparseable body and 500 when the
provider secret is not configured.
"""

import hmac
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import parse_qsl

from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response
from telegram import Update

from admin_alerts import AlertCategory
from payment_errors import (
    ConfigurationError, InsufficientBalance, InvalidSignature, InvoiceCreationError, LedgerConflict,
    LedgerOutcomeUnknown, MalformedWebhook, NotificationFailure, PaymentPipelineError, PersistenceFailure,
)
from pricing_utils import format_money
from services.invoices import CheckoutRequest, CheckoutValidationError
from services.purchases import ManualPayment
from services.reconciliation import ReconciliationEngine, ReconciliationResult, parse_json_object
from utils.environment import Settings, require_env

logger = logging.getLogger(__name__)

# SPAM FIX: Suppress aiohttp access logs for successful requests (200s) but keep errors (4xx/5xx)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

INVOICE_REQUIREMENTS = {
    'plisio': ('plisio_secret_key', 'site_base_url'),
    'coinbase': ('coinbase_api_key', 'site_base_url'),
}

# Telegram accepts photos up to 10 MB
MAX_RECEIPT_BYTES = 10 * 1024 * 1024


@dataclass
class AppServices:
    """Collaborators the HTTP layer dispatches to"""
    settings: Settings
    engine: ReconciliationEngine
    invoices: Any
    wallet_ledger: Any
    alerts: Any
    purchases: Any = None
    telegram_application: Any = None


SERVICES = web.AppKey("services", AppServices)


def verify_telegram_webhook_secret(request_headers, expected_token: Optional[str]) -> bool:
    """Verify the Telegram webhook secret token in constant time"""
    received_token = request_headers.get('X-Telegram-Bot-Api-Secret-Token')

    if not received_token:
        logger.error("🛡️ WEBHOOK AUTH FAILURE: Missing X-Telegram-Bot-Api-Secret-Token header")
        return False

    if not expected_token:
        logger.error("🛡️ WEBHOOK AUTH FAILURE: TELEGRAM_WEBHOOK_SECRET_TOKEN not set in environment")
        logger.error("🔧 FIX: Set TELEGRAM_WEBHOOK_SECRET_TOKEN environment variable")
        return False

    if not hmac.compare_digest(received_token, expected_token):
        logger.error("🛡️ WEBHOOK AUTH FAILURE: Secret token mismatch")
        return False

    return True


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


async def _read_json(request: Request) -> Dict[str, Any]:
    return parse_json_object(await request.read())


# ====================================================================
# HEALTH
# ====================================================================

async def health_handler(request: Request) -> Response:
    services = request.app[SERVICES]
    settings = services.settings
    issues = []
    if not settings.telegram_webhook_secret:
        issues.append('TELEGRAM_WEBHOOK_SECRET_TOKEN not set')
    if not settings.plisio_secret_key and not settings.coinbase_webhook_secret:
        issues.append('No payment provider webhook secret configured')

    return web.json_response({
        'status': 'healthy' if not issues else 'degraded',
        'service': 'malok_payments',
        'timestamp': time.time(),
        'issues': issues,
        'alerts': await services.alerts.get_alert_stats(),
    })


# ====================================================================
# PAYMENT WEBHOOKS
# ====================================================================

async def _reconcile(request: Request, provider: str,
                     run: Callable[[], Awaitable[ReconciliationResult]]) -> Response:
    """Run a reconciliation and translate its outcome into the acknowledgement"""
    alerts = request.app[SERVICES].alerts
    try:
        result = await run()
    except ConfigurationError as e:
        logger.error(f"❌ {provider} webhook cannot be processed: {e}")
        await alerts.error(f"{provider}_webhook", str(e), AlertCategory.SYSTEM_HEALTH, {'missing': e.missing})
        return web.json_response({'error': 'configuration'}, status=500)
    except MalformedWebhook as e:
        logger.warning(f"⚠️ MALFORMED_WEBHOOK ({provider}): {e}")
        return web.json_response({'status': 'ignored', 'reason': 'malformed'})
    except InvalidSignature as e:
        logger.error(f"🛡️ INVALID_SIGNATURE ({provider}) from {request.remote}: {e}")
        await alerts.warning(
            f"{provider}_webhook",
            f"Rejected {provider} webhook with an invalid signature",
            AlertCategory.SECURITY,
            {'order_id': e.order_id, 'remote': request.remote},
        )
        return web.json_response({'status': 'rejected'})
    except PaymentPipelineError as e:
        logger.error(f"❌ {provider} webhook for {e.order_id} not processed: {e}")
        return web.json_response({'status': 'error'})
    except Exception as e:
        logger.exception(f"💥 Unexpected error processing {provider} webhook: {e}")
        await alerts.error(f"{provider}_webhook", f"Unexpected webhook failure: {e}", AlertCategory.WEBHOOK)
        return web.json_response({'status': 'error'})

    return web.json_response({
        'status': 'ok',
        'action': result.action.value,
        'orderId': result.order_id,
    })


async def plisio_webhook_handler(request: Request) -> Response:
    """Plisio callback, JSON (?json=true) or form-encoded"""
    raw_body = await request.read()
    json_mode = request.query.get('json') == 'true' or request.content_type == 'application/json'

    try:
        if json_mode:
            fields = parse_json_object(raw_body)
        else:
            fields = dict(parse_qsl(raw_body.decode('utf-8'), keep_blank_values=True, strict_parsing=bool(raw_body)))
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning(f"⚠️ Unparseable Plisio webhook body: {e}")
        return web.json_response({'error': 'invalid body'}, status=400)

    logger.info(f"📦 Plisio callback received: order={fields.get('order_number')} status={fields.get('status')}")
    engine = request.app[SERVICES].engine
    return await _reconcile(request, 'plisio', lambda: engine.handle_plisio_webhook(fields, raw_body, json_mode))


async def coinbase_webhook_handler(request: Request) -> Response:
    """Coinbase Commerce webhook (X-CC-Webhook-Signature over the raw body)"""
    raw_body = await request.read()
    try:
        envelope = parse_json_object(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning(f"⚠️ Unparseable Coinbase webhook body: {e}")
        return web.json_response({'error': 'invalid body'}, status=400)

    signature = request.headers.get('X-CC-Webhook-Signature')
    engine = request.app[SERVICES].engine
    return await _reconcile(request, 'coinbase', lambda: engine.handle_coinbase_webhook(envelope, raw_body, signature))


# ====================================================================
# TELEGRAM
# ====================================================================

async def telegram_webhook_handler(request: Request) -> Response:
    """Operator callbacks and other Telegram updates"""
    services = request.app[SERVICES]
    if not verify_telegram_webhook_secret(request.headers, services.settings.telegram_webhook_secret):
        logger.error(f"🛡️ TELEGRAM WEBHOOK REJECTED from {request.remote}")
        return web.json_response({'error': 'Webhook authentication failed'}, status=403)

    try:
        update_data = await _read_json(request)
    except (ValueError, UnicodeDecodeError):
        return web.json_response({'error': 'invalid body'}, status=400)

    application = services.telegram_application
    if application is None:
        logger.warning("⚠️ Telegram application not ready - dropping update")
        return web.json_response({'error': 'Service unavailable'}, status=503)

    update = Update.de_json(update_data, application.bot)
    try:
        await application.process_update(update)
    except Exception as e:
        logger.exception(f"❌ Error processing Telegram update {update_data.get('update_id')}: {e}")
        return web.json_response({'ok': False})

    logger.debug(f"✅ Processed Telegram update {update_data.get('update_id')}")
    return web.json_response({'ok': True})


# ====================================================================
# INVOICES
# ====================================================================

def _invoice_handler(provider: str):
    async def handler(request: Request) -> Response:
        services = request.app[SERVICES]
        try:
            require_env(services.settings, *INVOICE_REQUIREMENTS[provider])
        except ConfigurationError:
            return web.json_response({'message': 'Error de configuración del servidor.'}, status=500)

        try:
            checkout = CheckoutRequest.from_payload(await _read_json(request))
        except (ValueError, UnicodeDecodeError) as e:
            # CheckoutValidationError is a ValueError too
            message = str(e) if isinstance(e, CheckoutValidationError) else 'Formato de cuerpo de solicitud inválido.'
            return web.json_response({'message': message}, status=400)

        try:
            result = await services.invoices.create_invoice(provider, checkout)
        except CheckoutValidationError as e:
            return web.json_response({'message': str(e)}, status=400)
        except InvoiceCreationError as e:
            logger.error(f"❌ Invoice creation failed ({provider}): {e}")
            return web.json_response({'message': 'Error al crear la factura de pago.', 'details': str(e)}, status=502)
        except PersistenceFailure as e:
            logger.error(f"❌ Checkout order could not be stored ({provider}): {e}")
            return web.json_response({'message': 'No se pudo registrar la orden. Intenta de nuevo.'}, status=503)

        return web.json_response(result)

    handler.__name__ = f"{provider}_invoice_handler"
    return handler


# ====================================================================
# WALLET
# ====================================================================

async def _session_user(request: Request) -> Optional[str]:
    token = _bearer_token(request)
    if token is None:
        return None
    return await request.app[SERVICES].wallet_ledger.get_user_id_by_session_token(token)


async def wallet_balance_handler(request: Request) -> Response:
    user_id = await _session_user(request)
    if user_id is None:
        return web.json_response({'message': 'Sesión inválida o expirada.'}, status=401)

    balance = await request.app[SERVICES].wallet_ledger.get_balance(user_id)
    return web.json_response({'balance': format_money(balance, show_currency=False)})


async def wallet_deduct_handler(request: Request) -> Response:
    """Pay a cart with wallet balance; the order id is always generated server-side"""
    user_id = await _session_user(request)
    if user_id is None:
        return web.json_response({'message': 'Sesión inválida o expirada.'}, status=401)

    try:
        body = await _read_json(request)
    except (ValueError, UnicodeDecodeError):
        return web.json_response({'message': 'Cuerpo de solicitud JSON inválido.'}, status=400)
    if body.get('orderId'):
        logger.info(f"ℹ️ Ignoring client orderId {body.get('orderId')!r} from {user_id}")

    try:
        checkout = CheckoutRequest.from_payload(body, amount_field='amountUSD', require_email=False)
        result = await request.app[SERVICES].purchases.wallet_purchase(user_id, checkout)
    except CheckoutValidationError as e:
        return web.json_response({'message': str(e)}, status=400)
    except InsufficientBalance:
        return web.json_response(
            {'message': 'Saldo insuficiente en la Wallet para completar la compra. Por favor, recargue su saldo.'},
            status=402,
        )
    except LedgerConflict as e:
        logger.error(f"🛡️ Wallet purchase refused for {user_id}: {e}")
        return web.json_response({'message': 'La orden ya fue cobrada. Intenta de nuevo.'}, status=409)
    except LedgerOutcomeUnknown as e:
        return web.json_response(
            {'message': 'No se pudo confirmar el cobro. No repitas la compra; te contactaremos.', 'orderId': e.order_id},
            status=503,
        )
    except PersistenceFailure:
        return web.json_response({'message': 'No se pudo procesar el pago. Intenta de nuevo.'}, status=503)

    return web.json_response(result)


# ====================================================================
# MANUAL PAYMENTS
# ====================================================================

def _form_text(form, name: str) -> str:
    value = form.get(name)
    if isinstance(value, bytes):
        # Parts sent with a non-text content type arrive undecoded
        return value.decode('utf-8', errors='replace')
    return value if isinstance(value, str) else ''


async def manual_payment_handler(request: Request) -> Response:
    """Multipart submission: `transactionDetails` JSON, `paymentMethod` and the `paymentReceipt` file"""
    if not request.content_type.startswith('multipart/'):
        return web.json_response({'message': 'Content-Type debe ser multipart/form-data.'}, status=415)

    try:
        form = await request.post()
        details = parse_json_object(_form_text(form, 'transactionDetails'))
    except (ValueError, UnicodeDecodeError):
        return web.json_response({'message': 'Formato de datos de transacción inválido.'}, status=400)

    try:
        payment = ManualPayment.from_fields(details, _form_text(form, 'paymentMethod'))
    except CheckoutValidationError as e:
        return web.json_response({'message': str(e)}, status=400)

    receipt = form.get('paymentReceipt')
    if isinstance(receipt, web.FileField):
        payment.receipt = receipt.file.read(MAX_RECEIPT_BYTES + 1)
        if len(payment.receipt) > MAX_RECEIPT_BYTES:
            return web.json_response({'message': 'El comprobante supera el tamaño máximo (10 MB).'}, status=413)
        payment.receipt_filename = receipt.filename
        payment.receipt_content_type = receipt.content_type

    try:
        result = await request.app[SERVICES].purchases.submit_manual_payment(payment)
    except CheckoutValidationError as e:
        return web.json_response({'message': str(e)}, status=400)
    except PersistenceFailure:
        return web.json_response({'message': 'No se pudo registrar la orden. Intenta de nuevo.'}, status=503)
    except NotificationFailure:
        return web.json_response({'message': 'Error al enviar la notificación a Telegram.'}, status=502)

    return web.json_response(result)


# ====================================================================
# SERVER
# ====================================================================

def create_app(services: AppServices) -> web.Application:
    # Room for a receipt plus the other form fields
    app = web.Application(client_max_size=MAX_RECEIPT_BYTES + 1024 * 1024)
    app[SERVICES] = services

    app.router.add_get('/', health_handler)
    app.router.add_get('/health', health_handler)

    # Payment webhook routes (POST only, aiohttp answers 405 otherwise)
    app.router.add_post('/webhook/plisio', plisio_webhook_handler)
    app.router.add_post('/webhook/coinbase', coinbase_webhook_handler)

    app.router.add_post('/webhook/telegram', telegram_webhook_handler)

    app.router.add_post('/api/invoices/plisio', _invoice_handler('plisio'))
    app.router.add_post('/api/invoices/coinbase', _invoice_handler('coinbase'))

    app.router.add_get('/api/wallet/balance', wallet_balance_handler)
    app.router.add_post('/api/wallet/deduct', wallet_deduct_handler)
    app.router.add_post('/api/payments/manual', manual_payment_handler)
    return app


async def start_webhook_server(services: AppServices, port: int = 5000) -> web.AppRunner:
    """Start the aiohttp server in the current event loop"""
    runner = web.AppRunner(create_app(services))
    await runner.setup()

    site = web.TCPSite(runner, '0.0.0.0', port)
    await site.start()

    logger.info(f"✅ Webhook server started on http://0.0.0.0:{port}")
    logger.info("🔗 Webhooks: /webhook/plisio, /webhook/coinbase, /webhook/telegram")
    return runner


async def stop_webhook_server(runner: Optional[web.AppRunner]):
    """Stop the aiohttp server"""
    if runner is None:
        return
    await runner.cleanup()
    logger.info("✅ Webhook server stopped")
