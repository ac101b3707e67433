import importlib


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_ttl_cache_expires_entries():
    cache_mod = importlib.import_module('storage.cache')
    clock = FakeClock()
    cache = cache_mod.TTLCache(default_ttl=10, clock=clock)
    cache.set('a', 1)
    assert cache.get('a') == 1
    assert 'a' in cache
    clock.now += 10
    assert cache.get('a') is None
    assert 'a' not in cache


def test_ttl_cache_set_slides_expiry():
    cache_mod = importlib.import_module('storage.cache')
    clock = FakeClock()
    cache = cache_mod.TTLCache(default_ttl=10, clock=clock)
    cache.set('strike', 1)
    clock.now += 8
    cache.set('strike', 2)
    clock.now += 8
    assert cache.get('strike') == 2


def test_ttl_cache_explicit_ttl_and_purge():
    cache_mod = importlib.import_module('storage.cache')
    clock = FakeClock()
    cache = cache_mod.TTLCache(default_ttl=100, clock=clock)
    cache.set('short', True, ttl=1)
    cache.set('long', True)
    clock.now += 2
    assert cache.purge_expired() == 1
    assert len(cache) == 1
    cache.remove('long')
    assert len(cache) == 0


def test_ttl_cache_keeps_falsy_values():
    cache_mod = importlib.import_module('storage.cache')
    cache = cache_mod.TTLCache(default_ttl=10)
    cache.set('zero', 0)
    assert 'zero' in cache
    assert cache.get('zero', 5) == 0


def test_recurring_store_is_case_insensitive():
    cache_mod = importlib.import_module('storage.cache')
    store = cache_mod.RecurringHashStore()
    store.add('ABCDEF')
    assert 'abcdef' in store
    assert store.contains('AbCdEf')
    store.discard('abcdef')
    assert 'ABCDEF' not in store
    assert not store.contains('')


def test_marked_for_removal_key_lowercases_id():
    cache_mod = importlib.import_module('storage.cache')
    assert cache_mod.marked_for_removal_key('ABC', 'http://sonarr') == 'remove_abc_http://sonarr'


def test_ttl_cache_writes_sweep_expired_entries():
    cache_mod = importlib.import_module('storage.cache')
    clock = FakeClock()
    cache = cache_mod.TTLCache(default_ttl=10, clock=clock)
    for i in range(50):
        cache.set(f'hash{i}', 1)
        clock.now += 100
    assert list(cache._data) == ['hash49']


def test_ttl_cache_sweep_keeps_live_entries():
    cache_mod = importlib.import_module('storage.cache')
    clock = FakeClock()
    cache = cache_mod.TTLCache(default_ttl=10, clock=clock)
    cache.set('old', 1, ttl=1)
    cache.set('live', 1, ttl=1000)
    clock.now += 10
    cache.set('new', 1)
    assert set(cache._data) == {'live', 'new'}
