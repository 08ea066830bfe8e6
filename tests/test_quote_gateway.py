import asyncio
import sys

sys.path.insert(0, '.')

from ingest.credentials import CredentialManager
from ingest.groww_rest import ProviderAPIError, ProviderUnavailable
from ingest.instruments import InstrumentKind, parse_instrument_name
from ingest.quote_cache import PriceCache
from ingest.quote_gateway import LTP_PATH, OHLC_PATH, QUOTE_PATH, QuoteGateway, derive_change
from tests.fakes import FakeClock, FakeRESTClient, ist_epoch, snapshot


def _quote_payload(last_price=105.0, ohlc='{open: 100,high: 106,low: 99,close: 100}', **extra):
    payload = {'last_price': last_price, 'ohlc': ohlc}
    payload.update(extra)
    return {'status': 'SUCCESS', 'payload': payload}


def _gateway(routes, batch_size=50, wall=None, ttl_s=5.0):
    rest = FakeRESTClient(routes=routes)
    wall = wall or FakeClock(ist_epoch(2025, 2, 20, 11, 0))
    mono = FakeClock(1000.0)
    cache = PriceCache(ttl_s=ttl_s, clock=mono)
    credentials = CredentialManager(rest, api_key='k', api_secret='s', clock=wall)
    credentials.on_manual_token(cache.clear)
    gateway = QuoteGateway(rest, credentials, cache, batch_size=batch_size, clock=wall)
    return gateway, rest, mono, credentials


def test_cache_entry_expires_at_ttl():
    clock = FakeClock(0.0)
    cache = PriceCache(ttl_s=5.0, clock=clock)
    cache.put('INFY', None, snapshot('INFY', 1500.0))

    clock.advance(4.9)
    assert cache.get('INFY').last_price == 1500.0
    clock.advance(0.1)
    assert cache.get('INFY') is None
    assert len(cache) == 0


def test_cache_is_keyed_by_symbol_and_kind():
    cache = PriceCache(ttl_s=5.0, clock=FakeClock(0.0))
    cache.put('NIFTY', 'Option', snapshot('NIFTY', 22000.0))
    assert cache.get('NIFTY') is None
    assert cache.get('NIFTY', 'Option') is not None


def test_cache_key_ignores_symbol_case_and_kind_spelling():
    cache = PriceCache(ttl_s=5.0, clock=FakeClock(0.0))
    cache.put(' infy ', None, snapshot('INFY', 1500.0))
    assert cache.get('INFY').last_price == 1500.0

    cache.put('nifty', 'option', snapshot('NIFTY', 22000.0))
    assert cache.get('NIFTY', InstrumentKind.OPTION) is not None
    assert cache.get('Nifty', 'OPTION') is not None
    assert len(cache) == 2


def test_derive_change_guards_zero_close():
    assert derive_change(110.0, 100.0) == (10.0, 10.0)
    assert derive_change(110.0, 0.0) == (0.0, 0.0)


def test_get_quote_parses_and_caches():
    gateway, rest, mono, _ = _gateway({QUOTE_PATH: _quote_payload(high_trade_range=107.5)})

    async def _run():
        first = await gateway.get_quote('reliance')
        second = await gateway.get_quote('reliance')
        return first, second

    first, second = asyncio.run(_run())
    assert first is second
    assert rest.count(QUOTE_PATH) == 1
    assert first.symbol == 'RELIANCE'
    assert first.last_price == 105.0
    assert first.previous_close == 100.0
    assert first.change == 5.0
    assert first.change_percent == 5.0
    assert first.high == 107.5
    assert first.low == 99.0

    _, path, params, bearer = rest.calls[0]
    assert params == {'exchange': 'NSE', 'segment': 'CASH', 'trading_symbol': 'RELIANCE'}
    assert bearer == 'tok-1'


def test_quote_refetched_after_ttl():
    gateway, rest, mono, _ = _gateway({QUOTE_PATH: _quote_payload()})
    asyncio.run(gateway.get_quote('INFY'))
    mono.advance(5.0)
    asyncio.run(gateway.get_quote('INFY'))
    assert rest.count(QUOTE_PATH) == 2


def test_provider_change_fields_win_over_derived():
    gateway, _, _, _ = _gateway({QUOTE_PATH: _quote_payload(day_change=-1.5, day_change_perc=-0.75)})
    quote = asyncio.run(gateway.get_quote('TCS'))
    assert quote.change == -1.5
    assert quote.change_percent == -0.75


def test_403_invalidates_token_and_retries_once():
    routes = {
        QUOTE_PATH: [ProviderAPIError(403, QUOTE_PATH, 'expired'), _quote_payload()],
        '/token/api/access': [{'token': 'old'}, {'token': 'fresh'}],
    }
    gateway, rest, _, credentials = _gateway(routes)

    quote = asyncio.run(gateway.get_quote('INFY'))
    assert quote is not None
    assert [c[3] for c in rest.calls] == ['old', 'fresh']
    assert len(rest.posts) == 2
    assert credentials.current().token == 'fresh'


def test_second_403_gives_up_as_unavailable():
    forbidden = ProviderAPIError(403, QUOTE_PATH, 'forbidden')
    gateway, rest, _, credentials = _gateway({QUOTE_PATH: [forbidden, forbidden]})
    assert asyncio.run(gateway.get_quote('INFY')) is None
    assert rest.count(QUOTE_PATH) == 2
    assert credentials.current() is None


def test_timeout_and_server_errors_are_unavailable():
    gateway, _, _, _ = _gateway({QUOTE_PATH: [ProviderUnavailable('timeout'), ProviderAPIError(502, QUOTE_PATH, '')]})
    assert asyncio.run(gateway.get_quote('INFY')) is None
    assert asyncio.run(gateway.get_quote('INFY')) is None


def test_failed_status_payload_is_unavailable():
    gateway, _, _, _ = _gateway({QUOTE_PATH: {'status': 'FAILURE', 'error': {'code': 'GA001'}}})
    assert asyncio.run(gateway.get_quote('INFY')) is None


def test_manual_token_clears_price_cache():
    gateway, rest, _, credentials = _gateway({QUOTE_PATH: _quote_payload()})
    asyncio.run(gateway.get_quote('INFY'))
    assert len(gateway.cache) == 1

    credentials.set_manual_token('operator')
    assert len(gateway.cache) == 0
    asyncio.run(gateway.get_quote('INFY'))
    assert rest.calls[-1][3] == 'operator'


def test_bulk_quotes_batch_and_degrade_per_batch():
    def ltp(params):
        keys = params['exchange_symbols'].split(',')
        if 'NSE_TCS' in keys:
            raise ProviderUnavailable('timeout')
        return {'status': 'SUCCESS', 'payload': {k: 100.0 + i for i, k in enumerate(keys)}}

    def ohlc(params):
        keys = params['exchange_symbols'].split(',')
        return {'status': 'SUCCESS', 'payload': {k: '{open: 99,high: 101,low: 98,close: 100}' for k in keys}}

    gateway, rest, _, _ = _gateway({LTP_PATH: ltp, OHLC_PATH: ohlc}, batch_size=2)
    gateway.cache.put('HDFCBANK', None, snapshot('HDFCBANK', 1650.0))

    items = [('INFY', None), ('RELIANCE', None), ('TCS', None), ('WIPRO', None), ('HDFCBANK', None)]
    quotes = asyncio.run(gateway.get_bulk_quotes(items))

    assert set(quotes) == {'INFY', 'RELIANCE', 'HDFCBANK'}
    assert quotes['INFY'].last_price == 100.0
    assert quotes['RELIANCE'].last_price == 101.0
    assert quotes['RELIANCE'].change == 1.0
    assert quotes['HDFCBANK'].last_price == 1650.0
    assert rest.count(LTP_PATH) == 2
    for _, path, params, _ in rest.calls:
        assert len(params['exchange_symbols'].split(',')) <= 2


def test_bulk_ohlc_failure_yields_zero_change():
    routes = {
        LTP_PATH: {'status': 'SUCCESS', 'payload': {'NSE_INFY': 1500.0}},
        OHLC_PATH: ProviderAPIError(500, OHLC_PATH, 'boom'),
    }
    gateway, _, _, _ = _gateway(routes)
    quotes = asyncio.run(gateway.get_bulk_quotes([('INFY', None)]))
    assert quotes['INFY'].last_price == 1500.0
    assert quotes['INFY'].previous_close == 0.0
    assert quotes['INFY'].change == 0.0


def test_bulk_groups_by_segment():
    def ltp(params):
        keys = params['exchange_symbols'].split(',')
        return {'status': 'SUCCESS', 'payload': {k: 1.0 for k in keys}}

    gateway, rest, _, _ = _gateway({LTP_PATH: ltp, OHLC_PATH: {'status': 'SUCCESS', 'payload': {}}})
    quotes = asyncio.run(gateway.get_bulk_quotes([('GOLD', None), ('INFY', None)]))
    assert set(quotes) == {'GOLD', 'INFY'}
    segments = sorted(params['segment'] for _, path, params, _ in rest.calls if path == LTP_PATH)
    assert segments == ['CASH', 'COMMODITY']


def test_bulk_ohlc_strips_exchange_prefix():
    payload = {'NSE_INFY': {'open': 1, 'high': 2, 'low': 0.5, 'close': 1.5}, 'NSE_TCS': 'garbage'}
    gateway, _, _, _ = _gateway({OHLC_PATH: {'status': 'SUCCESS', 'payload': payload}})
    result = asyncio.run(gateway.get_bulk_ohlc(['infy', 'tcs']))
    assert result['INFY'].close == 1.5
    assert result['TCS'].is_empty


def test_live_prices_drop_missing():
    def quote(params):
        if params['trading_symbol'] == 'BAD':
            raise ProviderUnavailable('down')
        return _quote_payload()

    gateway, _, _, _ = _gateway({QUOTE_PATH: quote})
    prices = asyncio.run(gateway.get_live_prices([('INFY', None), ('BAD', None), ('TCS', None)]))
    assert set(prices) == {'INFY', 'TCS'}


def test_option_chain_sorted_and_premium_lookup():
    chain_path = '/option-chain/exchange/NSE/underlying/NIFTY'
    payload = {
        'underlying_ltp': 22010.0,
        'strikes': {
            '22100': {'CE': {'ltp': 80.0}, 'PE': {'ltp': 170.0}},
            '22000': {'CE': {'ltp': 125.5, 'open_interest': 1000, 'greeks': {'iv': 13.2}}, 'PE': {'ltp': 110.0}},
        },
    }
    gateway, rest, _, _ = _gateway({chain_path: {'status': 'SUCCESS', 'payload': payload}})

    chain = asyncio.run(gateway.get_option_chain('NSE', 'nifty', '2025-02-27'))
    assert [s.strike_price for s in chain] == [22000.0, 22100.0]
    assert chain[0].ce.iv == 13.2
    assert rest.calls[0][2] == {'expiry_date': '2025-02-27'}

    contract = parse_instrument_name('NIFTY 27FEB2025 22000 CE')
    assert asyncio.run(gateway.get_option_premium(contract)) == 125.5
    missing = parse_instrument_name('NIFTY 27FEB2025 22500 PE')
    assert asyncio.run(gateway.get_option_premium(missing)) is None


def test_option_chain_list_form():
    chain_path = '/option-chain/exchange/BSE/underlying/SENSEX'
    payload = {'option_chain': [
        {'strike_price': 75000, 'ce': {'last_price': 300.0}, 'pe': None},
        {'strike_price': 74500, 'ce': None, 'pe': {'last_price': 210.0}},
    ]}
    gateway, _, _, _ = _gateway({chain_path: {'status': 'SUCCESS', 'payload': payload}})
    chain = asyncio.run(gateway.get_option_chain('BSE', 'SENSEX', '2025-03-04'))
    assert [s.strike_price for s in chain] == [74500.0, 75000.0]
    assert chain[0].ce is None
    assert chain[1].ce.ltp == 300.0


def test_option_expiries_from_instruments_csv():
    url = 'https://growwapi-assets.groww.in/instruments/instrument.csv'
    csv_text = (
        "exchange,exchange_token,trading_symbol,groww_symbol,name,instrument_type,segment,"
        "series,isin,underlying_symbol,underlying_exchange_token,expiry_date,strike_price,lot_size\n"
        "NSE,1,NIFTY25FEB22000CE,,,CE,FNO,,,NIFTY,,2025-02-27,22000,75\n"
        "NSE,2,NIFTY25FEB22000PE,,,PE,FNO,,,NIFTY,,2025-02-27,22000,75\n"
        "NSE,3,NIFTY25MAR22000CE,,,CE,FNO,,,NIFTY,,2025-03-27,22000,75\n"
        "NSE,4,NIFTY25FEB13,,,CE,FNO,,,NIFTY,,2025-02-13,22000,75\n"
        "NSE,5,BANKNIFTY25FEB,,,CE,FNO,,,BANKNIFTY,,2025-02-27,48000,30\n"
        "NSE,6,INFY,,,EQ,CASH,,,,,,,1\n"
    )
    gateway, rest, _, _ = _gateway({url: csv_text})

    assert asyncio.run(gateway.get_option_expiries('NSE', 'nifty')) == ['2025-02-27', '2025-03-27']
    assert asyncio.run(gateway.get_option_expiries('NSE', 'NIFTY', 2025, 3)) == ['2025-03-27']
    assert rest.count(url) == 1


def test_bulk_reuses_quote_cached_under_other_case():
    gateway, rest, _, _ = _gateway({QUOTE_PATH: _quote_payload(last_price=1650.0)})
    asyncio.run(gateway.get_quote('infy'))

    quotes = asyncio.run(gateway.get_bulk_quotes([('INFY', None)]))
    assert set(quotes) == {'INFY'}
    assert quotes['INFY'].last_price == 1650.0
    assert rest.count(LTP_PATH) == 0


def test_unknown_kind_is_quote_unavailable():
    gateway, rest, _, _ = _gateway({QUOTE_PATH: _quote_payload()})
    assert asyncio.run(gateway.get_quote('INFY', 'Equity Intraday')) is None
    assert asyncio.run(gateway.get_bulk_quotes([('INFY', 'Warrant')])) == {}
    assert rest.calls == []
