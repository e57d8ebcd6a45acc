import sys

sys.path.insert(0, '.')

import pytest

from ingest.price_cache import NoData, NotConnected, PriceCache


def test_get_refuses_cached_price_while_disconnected():
    connected = {'value': True}
    cache = PriceCache(lambda: connected['value'])
    cache.update('BTCUSDT', 30000.0)
    assert cache.get_price('BTCUSDT') == 30000.0

    connected['value'] = False
    with pytest.raises(NotConnected):
        cache.get('BTCUSDT')
    # The sample is retained for when the feed comes back
    assert cache.snapshot()['BTCUSDT'].price == 30000.0


def test_not_connected_takes_precedence_over_missing_data():
    cache = PriceCache(lambda: False)
    with pytest.raises(NotConnected):
        cache.get('SOLUSDT')


def test_no_data_before_first_sample():
    cache = PriceCache(lambda: True)
    with pytest.raises(NoData):
        cache.get('SOLUSDT')


def test_update_replaces_sample():
    cache = PriceCache(lambda: True)
    first = cache.update('XRPUSDT', 0.5, received_at=1.0)
    second = cache.update('XRPUSDT', 0.51, received_at=2.0)
    assert cache.get('XRPUSDT') is second
    assert first.price == 0.5
    assert second.to_dict() == {'symbol': 'XRPUSDT', 'price': 0.51, 'receivedAt': 2.0}
