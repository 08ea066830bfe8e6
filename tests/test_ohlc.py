import sys

sys.path.insert(0, '.')

from ingest.ohlc import OHLC, parse_ohlc


def test_dict_and_json_forms():
    expected = OHLC(101.5, 103.0, 99.2, 100.0)
    assert parse_ohlc({'open': 101.5, 'high': 103, 'low': 99.2, 'close': 100}) == expected
    assert parse_ohlc('{"open": 101.5, "high": 103, "low": 99.2, "close": 100}') == expected


def test_unquoted_provider_form_is_repaired():
    parsed = parse_ohlc('{open: 101.5,high: 103,low: 99.2,close: 100}')
    assert parsed == OHLC(101.5, 103.0, 99.2, 100.0)


def test_partial_repair_fills_missing_with_zero():
    parsed = parse_ohlc("{open: 10, close: 9.5, previous_close: 7}")
    assert parsed == OHLC(open=10.0, high=0.0, low=0.0, close=9.5)


def test_garbage_degrades_to_zeros():
    assert parse_ohlc('not ohlc at all').is_empty
    assert parse_ohlc(None) == OHLC.empty()
    assert parse_ohlc(42).is_empty
