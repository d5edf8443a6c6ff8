#!/usr/bin/env python3
"""
Test the broker API client: response classification, one-shot token refresh
on 401 and parsing of chart / LTP / margin responses.
"""

import sys
from datetime import datetime
from unittest.mock import MagicMock

import requests

from mtf_trading.broker_client import BrokerClient, format_api_time, parse_chart_points
from mtf_trading.errors import AuthenticationError, BrokerApiError, TransientApiError
from mtf_trading.utils import IST


def make_response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    if body is None:
        response.json.side_effect = ValueError("No JSON")
    else:
        response.json.return_value = body
    return response


def make_client(*responses):
    tokens = MagicMock()
    tokens.auth_headers.return_value = {'x-auth-key': 'tok'}
    session = MagicMock()
    session.request.side_effect = list(responses)
    client = BrokerClient(tokens, session=session, base_url='https://broker.test')
    return client, tokens, session


def ok(data):
    return make_response(200, {'status': 'success', 'data': data})


def test_401_triggers_one_refresh_and_retry():
    """HTTP 401 -> force refresh once -> retry succeeds"""
    client, tokens, session = make_client(make_response(401, {}), ok({'last_traded_price': '2850.5'}))

    price = client.get_ltp('RELIANCE')

    assert price == 2850.5
    assert tokens.force_refresh.call_count == 1
    assert session.request.call_count == 2
    print("✅ 401 -> single refresh -> retry succeeded")


def test_second_401_surfaces():
    """Two consecutive 401s raise AuthenticationError after one refresh"""
    client, tokens, _ = make_client(make_response(401, {}), make_response(401, {}))

    try:
        client.get_ltp('RELIANCE')
        assert False, "Expected AuthenticationError"
    except AuthenticationError as e:
        assert e.status_code == 401

    assert tokens.force_refresh.call_count == 1
    print("✅ Second 401 surfaces without a second refresh")


def test_auth_failure_in_body_detected():
    """'Access token validation failed' in a 200 body is an auth failure"""
    client, tokens, _ = make_client(
        make_response(200, {'status': 'error', 'msg': 'Access token validation failed'}),
        ok({'last_traded_price': 100})
    )

    assert client.get_ltp('TCS') == 100.0
    assert tokens.force_refresh.call_count == 1
    print("✅ Auth failure text in body triggers refresh")


def test_place_order_does_not_refresh():
    """Order placement leaves auth handling to the order manager"""
    client, tokens, _ = make_client(make_response(401, {}))

    try:
        client.place_order({'symbol': 'TCS'})
        assert False, "Expected AuthenticationError"
    except AuthenticationError:
        pass

    tokens.force_refresh.assert_not_called()
    print("✅ place_order raises auth errors without refreshing")


def test_transient_and_business_errors():
    """5xx/429 are transient; error bodies carry their error_code"""
    client, _, _ = make_client(
        make_response(503, {}),
        make_response(429, {}),
        make_response(400, {'status': 'error', 'error_code': 'INSUFFICIENT_FUNDS',
                            'msg': 'Insufficient funds'}),
        make_response(200, None),
    )

    for expected_code in ('INTERNAL_ERROR', 'RATE_LIMIT_EXCEEDED'):
        try:
            client.get_ltp('TCS')
            assert False, "Expected TransientApiError"
        except TransientApiError as e:
            assert e.error_code == expected_code

    try:
        client.get_ltp('TCS')
        assert False, "Expected BrokerApiError"
    except BrokerApiError as e:
        assert not isinstance(e, TransientApiError)
        assert e.error_code == 'INSUFFICIENT_FUNDS'
        assert 'Insufficient funds' in str(e)

    try:
        client.get_ltp('TCS')
        assert False, "Expected BrokerApiError for invalid JSON"
    except BrokerApiError as e:
        assert 'invalid JSON' in str(e)

    print("✅ Transient and business errors classified")


def test_network_errors_are_transient():
    """Timeouts and connection errors map to TransientApiError"""
    client, _, session = make_client()
    session.request.side_effect = [
        requests.exceptions.Timeout("read timed out"),
        requests.exceptions.ConnectionError("refused"),
    ]

    for expected_code in ('TIMEOUT_ERROR', 'NETWORK_ERROR'):
        try:
            client.get_ltp('TCS')
            assert False, "Expected TransientApiError"
        except TransientApiError as e:
            assert e.error_code == expected_code

    print("✅ Network errors are transient")


def test_historical_chart_parsing():
    """Chart points become candles with date-only timestamps"""
    points = [
        {'timestamp': '2024-05-30T00:00:00', 'open': '100', 'high': '105',
         'low': '99', 'close': '104', 'volume': '12000'},
        {'timestamp': '2024-05-31T00:00:00', 'open': '104', 'high': '108',
         'low': '103', 'close': '107.5', 'volume': '15000'},
    ]
    client, _, session = make_client(ok({'points': points}))
    end = IST.localize(datetime(2024, 6, 3, 10, 0))

    candles = client.get_historical_chart('INFY', end=end)

    assert [c.date for c in candles] == ['2024-05-30', '2024-05-31']
    assert candles[1].close == 107.5 and candles[1].volume == 15000.0

    _, kwargs = session.request.call_args
    assert kwargs['json']['end_time'] == '2024-06-03T10:00:00'
    assert kwargs['json']['interval'] == '3Y'
    print("✅ Historical chart parsed")


def test_ltp_response_shapes():
    """LTP accepts list, keyed dict and flat dict payloads"""
    client, _, _ = make_client(
        ok([{'symbol': 'SBIN', 'last_traded_price': '812.4'}]),
        ok({'SBIN': {'ltp': 815}}),
        ok({'last_traded_price': 0}),
    )

    assert client.get_ltp('SBIN') == 812.4
    assert client.get_ltp('SBIN') == 815.0
    assert client.get_ltp('SBIN') is None
    print("✅ LTP payload shapes handled")


def test_margin_info_uses_margin_product():
    """Margin request uses productType MARGIN and derives per-share margin"""
    client, _, session = make_client(ok({'approximateMargin': '200'}))

    info = client.get_margin_info('ITC', 1000.0, quantity=1)

    assert info.approximate_margin == 200.0
    assert info.margin_per_share == 200.0
    _, kwargs = session.request.call_args
    assert kwargs['json']['productType'] == 'MARGIN'
    print("✅ Margin info parsed")


def test_helpers():
    """format_api_time drops fractions/offset; parse_chart_points keeps intraday timestamps"""
    dt = IST.localize(datetime(2024, 6, 3, 9, 15, 30, 123456))
    assert format_api_time(dt) == '2024-06-03T09:15:30'

    candles = parse_chart_points([{'timestamp': '2024-06-03T09:15:00', 'close': '1'}], daily=False)
    assert candles[0].date == '2024-06-03T09:15:00'
    assert candles[0].open == 0.0
    print("✅ Helpers correct")


if __name__ == '__main__':
    print("=" * 60)
    print("BROKER CLIENT TESTS")
    print("=" * 60)

    try:
        test_401_triggers_one_refresh_and_retry()
        test_second_401_surfaces()
        test_auth_failure_in_body_detected()
        test_place_order_does_not_refresh()
        test_transient_and_business_errors()
        test_network_errors_are_transient()
        test_historical_chart_parsing()
        test_ltp_response_shapes()
        test_margin_info_uses_margin_product()
        test_helpers()
        print("\n🎉 All broker client tests passed!")
        sys.exit(0)
    except Exception as e:
        print(f"\n❌ Test failed: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
