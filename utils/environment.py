"""Environment configuration for the storefront payment service"""

import os
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from payment_errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_FEE_PERCENT = Decimal('3')


@dataclass(frozen=True)
class Settings:
    """Snapshot of the environment, taken once at startup"""
    database_url: Optional[str]
    plisio_secret_key: Optional[str]
    coinbase_api_key: Optional[str]
    coinbase_webhook_secret: Optional[str]
    telegram_bot_token: Optional[str]
    telegram_chat_id: Optional[str]
    telegram_webhook_secret: Optional[str]
    brevo_api_key: Optional[str]
    sender_email: Optional[str]
    sender_name: str
    site_base_url: Optional[str]
    fee_percent: Decimal
    db_operation_timeout: float
    port: int

    @property
    def email_enabled(self) -> bool:
        return bool(self.brevo_api_key and self.sender_email)


def _parse_fee_percent(raw: Optional[str]) -> Decimal:
    if not raw:
        return DEFAULT_FEE_PERCENT
    try:
        fee = Decimal(raw)
    except InvalidOperation:
        logger.warning(f"⚠️ Invalid PAYMENT_FEE_PERCENT '{raw}' - using {DEFAULT_FEE_PERCENT}%")
        return DEFAULT_FEE_PERCENT
    if fee < 0:
        # Fee is additive only, final_amount must never drop below base_amount
        logger.warning(f"⚠️ Negative PAYMENT_FEE_PERCENT '{raw}' - using {DEFAULT_FEE_PERCENT}%")
        return DEFAULT_FEE_PERCENT
    return fee


def get_settings() -> Settings:
    """Read every setting from the environment"""
    return Settings(
        database_url=os.getenv('DATABASE_URL'),
        plisio_secret_key=os.getenv('PLISIO_SECRET_KEY'),
        coinbase_api_key=os.getenv('COINBASE_COMMERCE_API_KEY'),
        coinbase_webhook_secret=os.getenv('COINBASE_WEBHOOK_SECRET'),
        telegram_bot_token=os.getenv('TELEGRAM_BOT_TOKEN'),
        telegram_chat_id=os.getenv('TELEGRAM_CHAT_ID'),
        telegram_webhook_secret=os.getenv('TELEGRAM_WEBHOOK_SECRET_TOKEN'),
        brevo_api_key=os.getenv('BREVO_API_KEY'),
        sender_email=os.getenv('SENDER_EMAIL'),
        sender_name=os.getenv('SENDER_NAME', 'Malok Recargas'),
        site_base_url=(os.getenv('SITE_BASE_URL') or '').rstrip('/') or None,
        fee_percent=_parse_fee_percent(os.getenv('PAYMENT_FEE_PERCENT')),
        db_operation_timeout=float(os.getenv('DB_OPERATION_TIMEOUT', '10')),
        port=int(os.getenv('PORT', '5000')),
    )


def require_env(settings: Settings, *fields: str) -> None:
    """
    Fail fast when a mandatory setting for the executing path is missing

    Args:
        settings: Settings snapshot
        fields: Settings attribute names the path needs

    Raises:
        ConfigurationError: naming every missing setting
    """
    missing: List[str] = [name for name in fields if not getattr(settings, name)]
    if missing:
        logger.error(f"❌ CONFIG: missing required settings: {', '.join(missing)}")
        raise ConfigurationError(missing)


def get_webhook_url(settings: Settings, endpoint: str) -> str:
    """
    Get the complete webhook URL for a specific endpoint

    Args:
        settings: Settings snapshot (site_base_url is required)
        endpoint: The endpoint path (e.g., 'plisio', 'coinbase', 'telegram')

    Returns:
        str: Complete webhook URL
    """
    require_env(settings, 'site_base_url')
    return f"{settings.site_base_url}/webhook/{endpoint}"
