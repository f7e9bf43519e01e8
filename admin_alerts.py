"""
Admin Alert System for the Malok Recargas payment service

Operator-facing escalation for money and state problems that must never be
only logged: failed crediting, a status write lost after money moved, forged
webhooks.

Features:
- Severity levels (CRITICAL, ERROR, WARNING, INFO)
- Rate limiting and duplicate suppression (CRITICAL alerts bypass both)
- Recipients from ADMIN_USER_ID / ADDITIONAL_ADMIN_USER_IDS plus the operator chat
- Alerts persisted in the admin_alerts table
"""

import os
import logging
import hashlib
import json
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any, Union
from enum import Enum
from dataclasses import dataclass

from telegram.constants import ParseMode
from telegram.error import TelegramError

from database import execute_query, execute_update
from message_utils import escape_html

logger = logging.getLogger(__name__)

# ====================================================================
# ALERT SEVERITY LEVELS AND CONFIGURATION
# ====================================================================

class AlertSeverity(Enum):
    """Alert severity levels"""
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"

SEVERITY_ORDER = [AlertSeverity.INFO, AlertSeverity.WARNING, AlertSeverity.ERROR, AlertSeverity.CRITICAL]

class AlertCategory(Enum):
    """Alert categories for filtering and organization"""
    PAYMENT_PROCESSING = "payment_processing"
    WALLET = "wallet"
    SECURITY = "security"
    WEBHOOK = "webhook"
    DATABASE = "database"
    NOTIFICATION = "notification"
    SYSTEM_HEALTH = "system_health"

@dataclass
class Alert:
    """Structured alert data"""
    severity: AlertSeverity
    category: AlertCategory
    component: str
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None
    fingerprint: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.utcnow()
        if self.fingerprint is None:
            self.fingerprint = self._generate_fingerprint()

    def _generate_fingerprint(self) -> str:
        """Fingerprint for duplicate suppression"""
        content = f"{self.severity.value}:{self.category.value}:{self.component}:{self.message}"
        return hashlib.md5(content.encode()).hexdigest()

# ====================================================================
# ADMIN ALERT CONFIGURATION
# ====================================================================

class AdminAlertConfig:
    """Configuration for admin alert system"""

    def __init__(self):
        self.rate_limit_window = int(os.getenv('ALERT_RATE_LIMIT_WINDOW', '300'))  # 5 minutes
        self.max_alerts_per_window = int(os.getenv('ALERT_MAX_PER_WINDOW', '10'))
        self.suppression_window = int(os.getenv('ALERT_SUPPRESSION_WINDOW', '3600'))  # 1 hour

        self.admin_user_ids = self._parse_admin_users()
        self.operator_chat_id = os.getenv('TELEGRAM_CHAT_ID') or None

        self.min_severity = AlertSeverity(os.getenv('ALERT_MIN_SEVERITY', 'WARNING').upper())
        self.alerts_enabled = os.getenv('ADMIN_ALERTS_ENABLED', 'true').lower() == 'true'

        logger.info(f"✅ Admin Alert Config: enabled={self.alerts_enabled}, "
                   f"recipients={len(self.recipients)}, min_severity={self.min_severity.value}")

    def _parse_admin_users(self) -> List[int]:
        """Parse admin user IDs from environment variables"""
        admin_ids = []

        primary_admin = os.getenv('ADMIN_USER_ID')
        if primary_admin:
            try:
                admin_ids.append(int(primary_admin))
            except ValueError:
                logger.warning(f"Invalid ADMIN_USER_ID format: {primary_admin}")

        additional_admins = os.getenv('ADDITIONAL_ADMIN_USER_IDS', '')
        for admin_id in additional_admins.split(','):
            admin_id = admin_id.strip()
            if admin_id:
                try:
                    admin_ids.append(int(admin_id))
                except ValueError:
                    logger.warning(f"Invalid additional admin ID format: {admin_id}")

        return admin_ids

    @property
    def recipients(self) -> List[Union[int, str]]:
        """Admin users first, then the operator chat (deduplicated)"""
        recipients: List[Union[int, str]] = list(self.admin_user_ids)
        if self.operator_chat_id and str(self.operator_chat_id) not in {str(r) for r in recipients}:
            recipients.append(self.operator_chat_id)
        return recipients

# ====================================================================
# ADMIN ALERT SYSTEM - MAIN CLASS
# ====================================================================

class AdminAlertSystem:
    """Main admin alert system with rate limiting and deduplication"""

    def __init__(self, config: Optional[AdminAlertConfig] = None, bot=None):
        self.config = config or AdminAlertConfig()
        self._suppressed_alerts: Dict[str, datetime] = {}
        self._rate_limit_tracker: List[datetime] = []
        self._bot = bot
        self._storage_initialized = False

    async def _init_alert_storage(self):
        """Create the admin_alerts table on first use"""
        try:
            await execute_update("""
                CREATE TABLE IF NOT EXISTS admin_alerts (
                    id SERIAL PRIMARY KEY,
                    severity VARCHAR(20) NOT NULL,
                    category VARCHAR(50) NOT NULL,
                    component VARCHAR(100) NOT NULL,
                    message TEXT NOT NULL,
                    details JSONB,
                    fingerprint VARCHAR(32) NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    sent_at TIMESTAMP,
                    suppressed BOOLEAN DEFAULT FALSE
                )
            """)
            await execute_update("""
                CREATE INDEX IF NOT EXISTS idx_admin_alerts_fingerprint
                ON admin_alerts(fingerprint)
            """)
            self._storage_initialized = True
            logger.info("✅ Admin alert storage initialized")
        except Exception as e:
            logger.error(f"❌ Failed to initialize admin alert storage: {e}")

    def set_bot(self, bot):
        """Attach the Telegram bot used to deliver alerts"""
        self._bot = bot
        logger.info("✅ Bot set for admin alerts")

    def _is_rate_limited(self) -> bool:
        now = datetime.utcnow()
        cutoff = now - timedelta(seconds=self.config.rate_limit_window)
        self._rate_limit_tracker = [ts for ts in self._rate_limit_tracker if ts > cutoff]
        return len(self._rate_limit_tracker) >= self.config.max_alerts_per_window

    def _is_suppressed(self, fingerprint: str) -> bool:
        suppressed_until = self._suppressed_alerts.get(fingerprint)
        if suppressed_until is None:
            return False
        if datetime.utcnow() > suppressed_until:
            del self._suppressed_alerts[fingerprint]
            return False
        return True

    def _suppress_alert(self, fingerprint: str):
        self._suppressed_alerts[fingerprint] = datetime.utcnow() + timedelta(seconds=self.config.suppression_window)

    def _format_alert_message(self, alert: Alert) -> str:
        """Format alert for Telegram (HTML)"""
        severity_icons = {
            AlertSeverity.CRITICAL: "🔴",
            AlertSeverity.ERROR: "🟠",
            AlertSeverity.WARNING: "🟡",
            AlertSeverity.INFO: "🔵"
        }
        category_icons = {
            AlertCategory.PAYMENT_PROCESSING: "💰",
            AlertCategory.WALLET: "👛",
            AlertCategory.SECURITY: "🛡️",
            AlertCategory.WEBHOOK: "📡",
            AlertCategory.DATABASE: "🗄️",
            AlertCategory.NOTIFICATION: "📨",
            AlertCategory.SYSTEM_HEALTH: "🏥",
        }

        icon = severity_icons.get(alert.severity, "⚠️")
        cat_icon = category_icons.get(alert.category, "📋")
        timestamp_str = alert.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC") if alert.timestamp else "Unknown"

        message_parts = [
            f"{icon} <b>ADMIN ALERT - {alert.severity.value}</b>",
            f"{cat_icon} <b>Category:</b> {alert.category.value.replace('_', ' ').title()}",
            f"🔧 <b>Component:</b> {escape_html(alert.component)}",
            f"📝 <b>Message:</b> {escape_html(alert.message)}",
            f"🕐 <b>Time:</b> {timestamp_str}",
        ]

        if alert.details:
            message_parts.append("📊 <b>Details:</b>")
            for key, value in alert.details.items():
                if isinstance(value, dict):
                    value = json.dumps(value, default=str)
                elif isinstance(value, (list, tuple)):
                    value = ", ".join(str(v) for v in value)
                message_parts.append(f"   • <b>{escape_html(str(key))}:</b> {escape_html(str(value))}")

        return "\n".join(message_parts)

    async def _send_alert_to(self, chat_id: Union[int, str], alert: Alert) -> bool:
        if self._bot is None:
            logger.warning("⚠️ Bot not available for admin alerts")
            return False

        try:
            await self._bot.send_message(
                chat_id=chat_id,
                text=self._format_alert_message(alert),
                parse_mode=ParseMode.HTML
            )
            logger.info(f"✅ Admin alert sent to {chat_id}: {alert.severity.value} - {alert.component}")
            return True
        except TelegramError as e:
            logger.error(f"❌ Failed to send admin alert to {chat_id}: {e}")
            return False

    async def _store_alert(self, alert: Alert, sent: bool) -> bool:
        try:
            await execute_update("""
                INSERT INTO admin_alerts
                (severity, category, component, message, details, fingerprint, sent_at, suppressed)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """, (
                alert.severity.value,
                alert.category.value,
                alert.component,
                alert.message,
                json.dumps(alert.details, default=str) if alert.details else None,
                alert.fingerprint,
                alert.timestamp if sent else None,
                not sent
            ))
            return True
        except Exception as e:
            logger.error(f"❌ Failed to store admin alert: {e}")
            return False

    async def send_alert(
        self,
        severity: Union[AlertSeverity, str],
        category: Union[AlertCategory, str],
        component: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Send an admin alert with rate limiting and deduplication

        Args:
            severity: Alert severity level
            category: Alert category
            component: Component that generated the alert
            message: Human-readable alert message
            details: Additional structured data (order id, amounts, ...)

        Returns:
            bool: True if the alert reached at least one recipient
        """
        if isinstance(severity, str):
            severity = AlertSeverity(severity.upper())
        if isinstance(category, str):
            category = AlertCategory(category.lower())

        # The log line is written for every alert, delivered or not
        log_level = getattr(logging, severity.value, logging.WARNING)
        logger.log(log_level, f"🚨 ADMIN ALERT ({severity.value}): [{component}] {message} {details or ''}")

        if not self.config.alerts_enabled:
            return False

        if SEVERITY_ORDER.index(severity) < SEVERITY_ORDER.index(self.config.min_severity):
            logger.debug(f"Alert below minimum severity ({self.config.min_severity.value}) - skipping: {message}")
            return False

        if not self._storage_initialized:
            await self._init_alert_storage()

        alert = Alert(
            severity=severity,
            category=category,
            component=component,
            message=message,
            details=details
        )

        # Critical alerts report possible money movement and are never dropped
        if severity is not AlertSeverity.CRITICAL:
            if self._is_suppressed(alert.fingerprint):
                logger.debug(f"Alert suppressed (duplicate): {component}: {message}")
                await self._store_alert(alert, sent=False)
                return False

            if self._is_rate_limited():
                logger.warning(f"⚠️ Admin alerts rate limited - dropping: {component}: {message}")
                await self._store_alert(alert, sent=False)
                return False

        sent_count = 0
        for chat_id in self.config.recipients:
            if await self._send_alert_to(chat_id, alert):
                sent_count += 1

        if sent_count == 0:
            logger.error(f"❌ Failed to send admin alert to any recipient: {component}: {message}")
            await self._store_alert(alert, sent=False)
            return False

        self._rate_limit_tracker.append(datetime.utcnow())
        self._suppress_alert(alert.fingerprint)
        await self._store_alert(alert, sent=True)
        return True

    async def critical(self, component: str, message: str, category: Union[AlertCategory, str] = AlertCategory.PAYMENT_PROCESSING,
                       details: Optional[Dict[str, Any]] = None) -> bool:
        return await self.send_alert(AlertSeverity.CRITICAL, category, component, message, details)

    async def error(self, component: str, message: str, category: Union[AlertCategory, str] = AlertCategory.PAYMENT_PROCESSING,
                    details: Optional[Dict[str, Any]] = None) -> bool:
        return await self.send_alert(AlertSeverity.ERROR, category, component, message, details)

    async def warning(self, component: str, message: str, category: Union[AlertCategory, str] = AlertCategory.PAYMENT_PROCESSING,
                      details: Optional[Dict[str, Any]] = None) -> bool:
        return await self.send_alert(AlertSeverity.WARNING, category, component, message, details)

    async def get_alert_stats(self) -> Dict[str, Any]:
        """Alert counts for the last 24 hours"""
        try:
            recent_alerts = await execute_query("""
                SELECT severity, COUNT(*) as count
                FROM admin_alerts
                WHERE created_at > CURRENT_TIMESTAMP - INTERVAL '24 hours'
                GROUP BY severity
            """)
        except Exception as e:
            logger.error(f"❌ Failed to get alert stats: {e}")
            return {'error': str(e)}

        return {
            'enabled': self.config.alerts_enabled,
            'recipient_count': len(self.config.recipients),
            'min_severity': self.config.min_severity.value,
            'recent_24h': {row['severity']: row['count'] for row in recent_alerts},
            'currently_suppressed': len(self._suppressed_alerts)
        }

# ====================================================================
# GLOBAL ADMIN ALERT INSTANCE
# ====================================================================

_admin_alert_system = None

def get_admin_alert_system() -> AdminAlertSystem:
    """Get or create the global admin alert system instance"""
    global _admin_alert_system
    if _admin_alert_system is None:
        _admin_alert_system = AdminAlertSystem()
        logger.info("✅ Admin alert system initialized")
    return _admin_alert_system
