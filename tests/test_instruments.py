import sys
from datetime import date

import pytest

sys.path.insert(0, '.')

from ingest.instruments import (
    Equity,
    InstrumentKind,
    OptionContract,
    OptionRight,
    ResolvedInstrument,
    build_option_contract,
    parse_instrument_name,
    resolve_instrument,
)


@pytest.mark.parametrize('symbol, kind, expected', [
    ('crudeoil', None, ('MCX', 'COMMODITY', 'CRUDEOIL')),
    ('GOLDM', 'Equity', ('MCX', 'COMMODITY', 'GOLDM')),
    ('NIFTY', None, ('NSE', 'CASH', 'NIFTY')),
    ('BANKNIFTY', 'Option', ('NSE', 'CASH', 'BANKNIFTY')),
    (' sensex ', None, ('BSE', 'CASH', 'SENSEX')),
    ('BANKEX', 'Future', ('BSE', 'CASH', 'BANKEX')),
    ('MENTHAOIL', 'Commodity', ('MCX', 'COMMODITY', 'MENTHAOIL')),
    ('MENTHAOIL', 'CommodityFuture', ('MCX', 'COMMODITY', 'MENTHAOIL')),
    ('RELIANCE', 'Future', ('NSE', 'FNO', 'RELIANCE')),
    ('RELIANCE', 'Option', ('NSE', 'FNO', 'RELIANCE')),
    ('reliance', None, ('NSE', 'CASH', 'RELIANCE')),
    ('TCS', 'Basket', ('NSE', 'CASH', 'TCS')),
])
def test_resolve_instrument_table(symbol, kind, expected):
    assert resolve_instrument(symbol, kind) == ResolvedInstrument(*expected)


def test_resolve_instrument_is_deterministic():
    first = resolve_instrument('infy', InstrumentKind.EQUITY)
    second = resolve_instrument('INFY', 'equity')
    assert first == second
    assert first.exchange_symbol == 'NSE_INFY'


def test_unknown_kind_rejected():
    with pytest.raises(ValueError):
        resolve_instrument('INFY', 'Crypto')


def test_parse_compact_option_name():
    parsed = parse_instrument_name('nifty 27FEB2025 22000 ce')
    assert parsed == OptionContract('NIFTY', date(2025, 2, 27), 22000.0, OptionRight.CALL)
    assert parsed.exchange == 'NSE'
    assert parsed.expiry_iso == '2025-02-27'
    assert parsed.display_name() == 'NIFTY 27FEB2025 22000 CE'


def test_parse_iso_option_name_with_put_word():
    parsed = parse_instrument_name('SENSEX 2025-03-04 74500.5 PUT')
    assert isinstance(parsed, OptionContract)
    assert parsed.right is OptionRight.PUT
    assert parsed.strike == 74500.5
    assert parsed.exchange == 'BSE'


def test_plain_names_parse_as_equity():
    assert parse_instrument_name(' hdfcbank ') == Equity('HDFCBANK')
    # Invalid calendar date falls back to a plain name.
    assert parse_instrument_name('NIFTY 31FEB2025 22000 CE') == Equity('NIFTY 31FEB2025 22000 CE')


def test_build_option_contract_requires_every_part():
    assert build_option_contract('NIFTY', '2025-02-27', 22000, 'CE') == OptionContract(
        'NIFTY', date(2025, 2, 27), 22000.0, OptionRight.CALL
    )
    assert build_option_contract('NIFTY', None, 22000, 'CE') is None
    assert build_option_contract('NIFTY', '2025-02-27', None, 'CE') is None
    assert build_option_contract('NIFTY', '2025-02-27', 22000, 'XX') is None
