"""
Admin alert system tests: delivery, suppression and rate limiting
"""

from unittest.mock import AsyncMock, patch

import pytest
from telegram.error import TelegramError

from admin_alerts import AdminAlertConfig, AdminAlertSystem, AlertCategory, AlertSeverity


@pytest.fixture
def alert_env(monkeypatch):
    monkeypatch.setenv('ADMIN_USER_ID', '1001')
    monkeypatch.setenv('ADDITIONAL_ADMIN_USER_IDS', '1002, bad,')
    monkeypatch.setenv('TELEGRAM_CHAT_ID', '-100123')
    monkeypatch.setenv('ALERT_MAX_PER_WINDOW', '2')
    monkeypatch.setenv('ALERT_MIN_SEVERITY', 'WARNING')
    monkeypatch.setenv('ADMIN_ALERTS_ENABLED', 'true')


@pytest.fixture
def alert_system(alert_env, mock_bot):
    with patch('admin_alerts.execute_update', new=AsyncMock(return_value=1)):
        yield AdminAlertSystem(AdminAlertConfig(), mock_bot)


class TestAdminAlertConfig:

    def test_recipients(self, alert_env):
        assert AdminAlertConfig().recipients == [1001, 1002, '-100123']

    def test_operator_chat_not_duplicated(self, alert_env, monkeypatch):
        monkeypatch.setenv('TELEGRAM_CHAT_ID', '1001')
        assert AdminAlertConfig().recipients == [1001, 1002]


class TestAdminAlertSystem:

    async def test_alert_sent_to_every_recipient(self, alert_system, mock_bot):
        sent = await alert_system.error('Webhook', 'signature mismatch', AlertCategory.SECURITY, {'order_id': 'MALOK-1'})

        assert sent
        assert mock_bot.send_message.await_count == 3
        text = mock_bot.send_message.await_args.kwargs['text']
        assert 'MALOK-1' in text
        assert 'Security' in text

    async def test_duplicate_alert_suppressed(self, alert_system, mock_bot):
        await alert_system.warning('Webhook', 'same problem')
        assert not await alert_system.warning('Webhook', 'same problem')
        assert mock_bot.send_message.await_count == 3

    async def test_critical_bypasses_suppression_and_rate_limit(self, alert_system, mock_bot):
        for _ in range(3):
            assert await alert_system.critical('Reconciliation', 'wallet credited but status lost')
        assert mock_bot.send_message.await_count == 9

    async def test_rate_limit(self, alert_system):
        assert await alert_system.error('A', 'one')
        assert await alert_system.error('B', 'two')
        assert not await alert_system.error('C', 'three')

    async def test_below_minimum_severity_skipped(self, alert_system, mock_bot):
        assert not await alert_system.send_alert(AlertSeverity.INFO, 'system_health', 'X', 'fyi')
        mock_bot.send_message.assert_not_awaited()

    async def test_message_content_is_escaped(self, alert_system, mock_bot):
        await alert_system.error('Webhook', 'bad <payload>')
        assert '&lt;payload&gt;' in mock_bot.send_message.await_args.kwargs['text']

    async def test_delivery_failure_reported(self, alert_system, mock_bot):
        mock_bot.send_message.side_effect = TelegramError("blocked")
        assert not await alert_system.critical('X', 'nobody listening')

    async def test_without_bot_only_logs(self, alert_env):
        with patch('admin_alerts.execute_update', new=AsyncMock(return_value=1)):
            assert not await AdminAlertSystem(AdminAlertConfig()).critical('X', 'no bot yet')

    async def test_disabled(self, alert_env, monkeypatch, mock_bot):
        monkeypatch.setenv('ADMIN_ALERTS_ENABLED', 'false')
        system = AdminAlertSystem(AdminAlertConfig(), mock_bot)
        assert not await system.critical('X', 'off')
        mock_bot.send_message.assert_not_awaited()

    async def test_alert_stats(self, alert_env):
        rows = [{'severity': 'CRITICAL', 'count': 2}]
        with patch('admin_alerts.execute_query', new=AsyncMock(return_value=rows)):
            stats = await AdminAlertSystem(AdminAlertConfig()).get_alert_stats()
        assert stats['recent_24h'] == {'CRITICAL': 2}
        assert stats['recipient_count'] == 3
