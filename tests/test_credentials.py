import asyncio
import hashlib
import sys

import pytest

sys.path.insert(0, '.')

from ingest.credentials import (
    SOURCE_DERIVED,
    SOURCE_MANUAL,
    CredentialError,
    CredentialManager,
    checksum,
    next_rotation_expiry,
)
from ingest.groww_rest import ProviderAPIError
from tests.fakes import IST, FakeClock, FakeRESTClient, ist_epoch


def test_checksum_is_sha256_of_secret_and_timestamp():
    expected = hashlib.sha256(b"s3cret1740000000").hexdigest()
    assert checksum("s3cret", "1740000000") == expected


def test_expiry_after_six_rolls_to_next_morning():
    now = ist_epoch(2025, 2, 20, 10, 0)
    assert next_rotation_expiry(now, IST) == ist_epoch(2025, 2, 21, 5, 59)


def test_expiry_before_six_is_same_morning():
    now = ist_epoch(2025, 2, 20, 4, 30)
    assert next_rotation_expiry(now, IST) == ist_epoch(2025, 2, 20, 5, 59)


def test_get_token_exchanges_key_secret_once_and_caches():
    clock = FakeClock(ist_epoch(2025, 2, 20, 10, 0))
    rest = FakeRESTClient(token='derived-token')
    manager = CredentialManager(rest, api_key='key-1', api_secret='secret-1', clock=clock)

    async def _run():
        first = await manager.get_token()
        second = await manager.get_token()
        return first, second

    first, second = asyncio.run(_run())
    assert first.token == 'derived-token'
    assert second is first
    assert len(rest.posts) == 1

    path, body, bearer = rest.posts[0]
    assert path == '/token/api/access'
    assert bearer == 'key-1'
    assert body['key_type'] == 'approval'
    assert body['timestamp'] == str(int(clock.now))
    assert body['checksum'] == checksum('secret-1', body['timestamp'])
    assert manager.status()['source'] == SOURCE_DERIVED


def test_expired_token_is_reacquired():
    clock = FakeClock(ist_epoch(2025, 2, 20, 10, 0))
    rest = FakeRESTClient(routes={'/token/api/access': [{'token': 'day-1'}, {'token': 'day-2'}]})
    manager = CredentialManager(rest, api_key='k', api_secret='s', clock=clock)

    assert asyncio.run(manager.get_token()).token == 'day-1'
    clock.now = ist_epoch(2025, 2, 21, 5, 59)
    assert manager.current() is None
    assert asyncio.run(manager.get_token()).token == 'day-2'


def test_missing_key_and_secret_raises_credential_error():
    manager = CredentialManager(FakeRESTClient(), api_key=None, api_secret=None)
    with pytest.raises(CredentialError):
        asyncio.run(manager.get_token())


def test_exchange_without_token_in_response_is_credential_error():
    rest = FakeRESTClient(routes={'/token/api/access': {'status': 'FAILURE'}})
    manager = CredentialManager(rest, api_key='k', api_secret='s')
    with pytest.raises(CredentialError):
        asyncio.run(manager.get_token())


def test_exchange_http_error_is_credential_error():
    rest = FakeRESTClient(routes={'/token/api/access': ProviderAPIError(401, '/token/api/access', 'nope')})
    manager = CredentialManager(rest, api_key='k', api_secret='s')
    with pytest.raises(CredentialError):
        asyncio.run(manager.get_token())


def test_manual_token_fires_callback_and_reports_status():
    clock = FakeClock(ist_epoch(2025, 2, 20, 10, 0))
    cleared = []
    manager = CredentialManager(FakeRESTClient(), clock=clock)
    manager.on_manual_token(lambda: cleared.append(True))

    result = manager.set_manual_token('  operator-token ')
    assert result['success'] is True
    assert result['expires_in'] == '20 hours'
    assert cleared == [True]

    status = manager.status()
    assert status['has_token'] is True
    assert status['source'] == SOURCE_MANUAL
    assert status['is_expired'] is False
    assert asyncio.run(manager.get_token()).token == 'operator-token'


def test_empty_manual_token_rejected():
    manager = CredentialManager(FakeRESTClient())
    with pytest.raises(CredentialError):
        manager.set_manual_token('   ')


def test_invalidate_clears_token_but_keeps_history():
    clock = FakeClock(ist_epoch(2025, 2, 20, 10, 0))
    manager = CredentialManager(FakeRESTClient(), clock=clock)
    manager.set_manual_token('abc')
    manager.invalidate()

    status = manager.status()
    assert status['has_token'] is False
    assert status['source'] == SOURCE_MANUAL
    assert manager.current() is None


def test_status_without_any_token():
    status = CredentialManager(FakeRESTClient()).status()
    assert status == {
        'has_token': False,
        'source': 'none',
        'set_at': None,
        'expires_at': None,
        'is_expired': False,
    }
