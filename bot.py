#!/usr/bin/env python3
"""
Malok payment service - Single Event Loop Implementation
Runs the PTB Application (operator callbacks) and the aiohttp webhook server
in the same asyncio loop
"""

import logging
import asyncio
import sys
import signal
from typing import Optional
from telegram.ext import Application, CallbackQueryHandler, ContextTypes, Defaults

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)

# SECURITY FIX: Prevent httpx from logging sensitive URLs with bot tokens
logging.getLogger("httpx").setLevel(logging.WARNING)

# SPAM FIX: Suppress aiohttp access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

from admin_alerts import get_admin_alert_system
from database import PostgresOrderStore, PostgresWalletLedger, close_connection_pool, init_database
from services.email_service import OrderEmailService
from services.exchange_rates import ExchangeRateService
from services.invoices import InvoiceService
from services.notifications import MARK_DONE_PREFIX, NotificationDispatcher
from services.operator_confirmation import OperatorConfirmationHandler
from services.payment_providers import CoinbaseCommerceClient, PlisioClient
from services.purchases import PurchaseService
from services.reconciliation import ReconciliationContext, ReconciliationEngine
from utils.environment import Settings, get_settings, get_webhook_url, require_env
from webhook_handler import AppServices, start_webhook_server, stop_webhook_server

# Global shutdown flag
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global shutdown_requested
    shutdown_requested = True
    logger.info(f"🛑 Shutdown signal received ({signum}), initiating graceful shutdown...")


async def initialize_database() -> bool:
    try:
        logger.info("🔄 Initializing database schema...")
        await init_database()
        logger.info("✅ Database initialized")
        return True
    except Exception as db_error:
        logger.error(f"❌ Database initialization failed: {db_error}")
        return False


def build_payment_providers(settings: Settings) -> dict:
    """Invoice clients for every provider whose credentials are configured"""
    providers = {}
    if not settings.site_base_url:
        logger.warning("⚠️ SITE_BASE_URL not set - invoice creation disabled")
        return providers

    if settings.plisio_secret_key:
        providers['plisio'] = PlisioClient(
            api_key=settings.plisio_secret_key,
            # JSON callbacks carry an HMAC over the whole body
            callback_url=f"{get_webhook_url(settings, 'plisio')}?json=true",
            success_url=f"{settings.site_base_url}/payment.html?status=success",
        )
    if settings.coinbase_api_key:
        providers['coinbase'] = CoinbaseCommerceClient(
            api_key=settings.coinbase_api_key,
            redirect_url=f"{settings.site_base_url}/payment.html?status=success",
            cancel_url=f"{settings.site_base_url}/payment.html?status=cancel",
        )
    logger.info(f"💳 Payment providers enabled: {', '.join(providers) or 'none'}")
    return providers


async def configure_telegram_webhook(app: Application, settings: Settings) -> bool:
    """Point Telegram at /webhook/telegram with the shared secret token"""
    try:
        webhook_url = get_webhook_url(settings, 'telegram')
        logger.info(f"🌐 Setting Telegram webhook URL: {webhook_url}")

        webhook_result = await app.bot.set_webhook(
            url=webhook_url,
            secret_token=settings.telegram_webhook_secret,
            allowed_updates=['callback_query'],
            drop_pending_updates=False,
        )
        if not webhook_result:
            logger.error("❌ Failed to configure Telegram webhook")
            return False

        webhook_info = await app.bot.get_webhook_info()
        logger.info("✅ Telegram webhook configured successfully!")
        logger.info(f"📨 Pending updates: {webhook_info.pending_update_count}")
        return True

    except Exception as webhook_config_error:
        logger.error(f"❌ Webhook configuration failed: {webhook_config_error}")
        return False


async def main_bot_loop():
    """Main event loop - runs everything in a single asyncio loop"""
    global shutdown_requested

    app: Optional[Application] = None
    webhook_runner = None

    try:
        settings = get_settings()
        require_env(settings, 'database_url', 'telegram_bot_token', 'telegram_chat_id',
                    'telegram_webhook_secret', 'site_base_url')

        if not await initialize_database():
            logger.error("💥 FAIL FAST: database unavailable, exiting for supervisor restart")
            sys.exit(1)

        defaults = Defaults(parse_mode='HTML')
        app = Application.builder().token(settings.telegram_bot_token).defaults(defaults).build()

        async def global_error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
            """Global error handler for unhandled exceptions"""
            logger.warning(f"⚠️ Unhandled application error: {context.error}")

        app.add_error_handler(global_error_handler)

        alerts = get_admin_alert_system()
        alerts.set_bot(app.bot)

        order_store = PostgresOrderStore()
        wallet_ledger = PostgresWalletLedger()
        exchange_rates = ExchangeRateService()
        notifier = NotificationDispatcher(
            app.bot, settings.telegram_chat_id, order_store, OrderEmailService(settings)
        )
        ctx = ReconciliationContext(
            order_store=order_store,
            wallet_ledger=wallet_ledger,
            notifier=notifier,
            alerts=alerts,
            exchange_rates=exchange_rates,
            settings=settings,
        )

        operator = OperatorConfirmationHandler(ctx, settings.telegram_chat_id)
        app.add_handler(CallbackQueryHandler(operator.handle_callback, pattern=f"^{MARK_DONE_PREFIX}"))
        logger.info("✅ Operator mark-done handler registered")

        await app.initialize()
        await app.start()
        logger.info("✅ Application initialized and started successfully")

        services = AppServices(
            settings=settings,
            engine=ReconciliationEngine(ctx),
            invoices=InvoiceService(
                order_store, wallet_ledger, build_payment_providers(settings),
                settings.fee_percent, exchange_rates,
            ),
            wallet_ledger=wallet_ledger,
            alerts=alerts,
            purchases=PurchaseService(order_store, wallet_ledger, notifier, alerts),
            telegram_application=app,
        )
        webhook_runner = await start_webhook_server(services, settings.port)

        if not await configure_telegram_webhook(app, settings):
            logger.error("❌ Failed to configure Telegram webhook")
            sys.exit(1)

        logger.info("✅ Payment service running - listening for provider and Telegram webhooks")

        # Run forever - webhook server handles incoming requests
        status_counter = 0
        while not shutdown_requested:
            await asyncio.sleep(60)
            status_counter += 1
            if status_counter % 5 == 0:
                logger.info(f"⏰ Webhook server running - exchange rates {exchange_rates.get_stats()}")

        logger.info("🛑 Shutdown requested - cleaning up...")
        return True

    except KeyboardInterrupt:
        logger.info("🛑 Received keyboard interrupt")
        return True
    except Exception as runtime_error:
        logger.error(f"❌ Application runtime error: {runtime_error}")
        logger.error("💥 FAIL FAST: Exiting for supervisor restart")
        sys.exit(1)
    finally:
        try:
            if webhook_runner is not None:
                await stop_webhook_server(webhook_runner)
            if app is not None and app.running:
                await app.stop()
                await app.shutdown()
            close_connection_pool()
            logger.info("✅ Cleanup completed")
        except Exception as cleanup_error:
            logger.warning(f"⚠️ Cleanup error: {cleanup_error}")


def main():
    """Main entry point"""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("🚀 Starting Malok payment service with single event loop...")

    try:
        result = asyncio.run(main_bot_loop())
        logger.info("✅ Service stopped normally" if result else "⚠️ Service stopped with error")
        return result
    except Exception as e:
        logger.error(f"💥 Critical failure: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
