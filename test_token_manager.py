#!/usr/bin/env python3
"""
Test the access token coordinator: request signing, validity buffer,
single-flight refresh and error propagation.
"""

import sys
import threading
import time
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import requests
from nacl.signing import SigningKey

from mtf_trading.errors import TokenRefreshError
from mtf_trading.models import AccountCredentials
from mtf_trading.token_manager import TokenCoordinator, sign_message
from mtf_trading.utils import IST

PRIVATE_KEY = '1f' * 32
NOW = IST.localize(datetime(2024, 6, 3, 10, 0, 0))


def make_credentials():
    return AccountCredentials(
        account_id='acct-1',
        client_id='CLIENT1',
        public_key='pub-key',
        private_key=PRIVATE_KEY
    )


def token_response(token='tok-1', expires_at=None):
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = {
        'status': 'success',
        'data': {
            'access_token': token,
            'expires_at': expires_at or (NOW + timedelta(hours=24)).isoformat()
        }
    }
    return response


def make_coordinator(session, clock=lambda: NOW):
    return TokenCoordinator(
        make_credentials(),
        session=session,
        base_url='https://broker.test',
        clock=clock,
        millis=lambda: 1717390800000
    )


def test_signature_verifies_with_public_key():
    """Signature over clientId + epochMillis verifies with the derived key"""
    signature = sign_message(PRIVATE_KEY, 'CLIENT11717390800000')
    verify_key = SigningKey(bytes.fromhex(PRIVATE_KEY)).verify_key

    verify_key.verify(b'CLIENT11717390800000', bytes.fromhex(signature))
    assert len(signature) == 128
    print("✅ Ed25519 signature verifies")


def test_token_request_headers():
    """Token request carries api key, epoch time and signature headers"""
    session = MagicMock()
    session.post.return_value = token_response()
    coordinator = make_coordinator(session)

    assert coordinator.get_valid_token() == 'tok-1'

    _, kwargs = session.post.call_args
    headers = kwargs['headers']
    assert headers['x-api-key'] == 'pub-key'
    assert headers['x-epoch-time'] == '1717390800000'
    assert headers['x-signature'] == sign_message(PRIVATE_KEY, 'CLIENT11717390800000')
    print("✅ Token request headers correct")


def test_cached_token_reused_until_buffer():
    """Token is reused while > 5 minutes remain and refreshed inside the buffer"""
    session = MagicMock()
    session.post.side_effect = [
        token_response('tok-1', (NOW + timedelta(minutes=10)).isoformat()),
        token_response('tok-2'),
    ]
    current = {'now': NOW}
    coordinator = make_coordinator(session, clock=lambda: current['now'])

    assert coordinator.get_valid_token() == 'tok-1'
    assert coordinator.get_valid_token() == 'tok-1'
    assert session.post.call_count == 1

    # 4 minutes left -> inside the 5 minute buffer
    current['now'] = NOW + timedelta(minutes=6)
    assert coordinator.get_valid_token() == 'tok-2'
    assert session.post.call_count == 2
    print("✅ Token refreshed once inside the 5 minute buffer")


def test_missing_expiry_defaults_to_24_hours():
    """Broker omitting expires_at -> token valid for 24h"""
    session = MagicMock()
    response = token_response()
    response.json.return_value['data'].pop('expires_at')
    session.post.return_value = response
    coordinator = make_coordinator(session)

    coordinator.get_valid_token()
    status = coordinator.get_status()

    assert status['expires_at'] == (NOW + timedelta(hours=24)).isoformat()
    assert status['is_valid']
    print("✅ Default 24h expiry applied")


def test_single_flight_under_concurrency():
    """Ten concurrent callers trigger exactly one token request"""
    gate = threading.Event()
    calls = {'count': 0}

    def slow_post(*args, **kwargs):
        calls['count'] += 1
        gate.wait(timeout=2)
        return token_response('shared-token')

    session = MagicMock()
    session.post.side_effect = slow_post
    coordinator = make_coordinator(session)

    results = []
    lock = threading.Lock()

    def worker():
        token = coordinator.get_valid_token()
        with lock:
            results.append(token)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    time.sleep(0.2)
    gate.set()
    for t in threads:
        t.join(timeout=5)

    assert calls['count'] == 1, f"Expected 1 token request, got {calls['count']}"
    assert results == ['shared-token'] * 10
    print("✅ Single-flight: 10 callers, 1 request")


def test_refresh_failure_propagates_and_clears_flight():
    """Network failure surfaces as TokenRefreshError; next call tries again"""
    session = MagicMock()
    session.post.side_effect = [
        requests.exceptions.ConnectionError("connection refused"),
        token_response('tok-after'),
    ]
    coordinator = make_coordinator(session)

    try:
        coordinator.get_valid_token()
        assert False, "Expected TokenRefreshError"
    except TokenRefreshError as e:
        assert 'connection refused' in str(e)

    assert coordinator.get_status()['refresh_in_flight'] is False
    assert coordinator.get_valid_token() == 'tok-after'
    print("✅ Refresh failure propagated, flight cleared")


def test_rejected_token_request():
    """HTTP 403 and a body without access_token both fail"""
    rejected = MagicMock()
    rejected.status_code = 403
    empty = MagicMock()
    empty.status_code = 200
    empty.json.return_value = {'status': 'error', 'message': 'Invalid signature', 'data': {}}

    session = MagicMock()
    session.post.side_effect = [rejected, empty]
    coordinator = make_coordinator(session)

    for expected in ('HTTP 403', 'Invalid signature'):
        try:
            coordinator.get_valid_token()
            assert False, "Expected TokenRefreshError"
        except TokenRefreshError as e:
            assert expected in str(e), f"'{expected}' not in '{e}'"

    print("✅ Rejected token requests raise TokenRefreshError")


def test_force_refresh_bypasses_cache():
    """force_refresh() requests a new token even when the cached one is valid"""
    session = MagicMock()
    session.post.side_effect = [token_response('tok-1'), token_response('tok-2')]
    coordinator = make_coordinator(session)

    assert coordinator.get_valid_token() == 'tok-1'
    assert coordinator.force_refresh() == 'tok-2'
    assert coordinator.get_valid_token() == 'tok-2'
    assert coordinator.refresh_count == 2
    print("✅ Forced refresh bypasses cache")


if __name__ == '__main__':
    print("=" * 60)
    print("TOKEN COORDINATOR TESTS")
    print("=" * 60)

    try:
        test_signature_verifies_with_public_key()
        test_token_request_headers()
        test_cached_token_reused_until_buffer()
        test_missing_expiry_defaults_to_24_hours()
        test_single_flight_under_concurrency()
        test_refresh_failure_propagates_and_clears_flight()
        test_rejected_token_request()
        test_force_refresh_bypasses_cache()
        print("\n🎉 All token coordinator tests passed!")
        sys.exit(0)
    except Exception as e:
        print(f"\n❌ Test failed: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
