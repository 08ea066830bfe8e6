import asyncio
import sys

sys.path.insert(0, '.')

from api.notifications import NotificationWebhook


def test_placeholder_webhook_is_disabled_and_only_logs(caplog):
    webhook = NotificationWebhook('https://your-webhook-url.example/notify')
    assert webhook.enabled is False
    with caplog.at_level('INFO'):
        asyncio.run(webhook.send('INFY closed', 'Exited at 110', strategy_id='s1', item_id='r1'))
    assert 'INFY closed' in caplog.text


def test_unreachable_webhook_never_raises():
    webhook = NotificationWebhook('http://127.0.0.1:9/notify', timeout_s=0.5)
    assert webhook.enabled is True
    asyncio.run(webhook.send('title', 'body', data={'event': 'closed'}))
