import importlib
import pytest


pytestmark = pytest.mark.asyncio


class FakeBus:
    def __init__(self):
        self.strikes = []
        self.recurring = []

    async def publish_strike(self, strike_type, count, download_hash, item_name, failed_import_reasons=None):
        self.strikes.append((strike_type, count, download_hash, failed_import_reasons))

    async def publish_recurring_item(self, download_hash, item_name, count, *, instance_type=None, instance_url=None):
        self.recurring.append((download_hash, count, instance_type, instance_url))


def _striker():
    cache_mod = importlib.import_module('storage.cache')
    striker_mod = importlib.import_module('core.striker')
    bus = FakeBus()
    striker = striker_mod.Striker(cache_mod.TTLCache(default_ttl=60), cache_mod.RecurringHashStore(), bus, strike_ttl=60)
    return striker_mod, striker, bus


async def test_strikes_accumulate_until_limit():
    mod, striker, bus = _striker()
    t = mod.StrikeType.STALLED
    assert await striker.strike_and_check_limit('HASH', 'n', 3, t) is False
    assert await striker.strike_and_check_limit('HASH', 'n', 3, t) is False
    assert await striker.strike_and_check_limit('hash', 'n', 3, t) is True
    assert [s[1] for s in bus.strikes] == [1, 2, 3]
    assert striker.get_count('HASH', t) == 3
    assert not bus.recurring


async def test_zero_max_strikes_disables_striking():
    mod, striker, bus = _striker()
    assert await striker.strike_and_check_limit('h', 'n', 0, mod.StrikeType.SLOW_SPEED) is False
    assert bus.strikes == []
    assert striker.get_count('h', mod.StrikeType.SLOW_SPEED) == 0


async def test_strike_types_are_counted_separately():
    mod, striker, bus = _striker()
    await striker.strike_and_check_limit('h', 'n', 3, mod.StrikeType.SLOW_SPEED)
    await striker.strike_and_check_limit('h', 'n', 3, mod.StrikeType.SLOW_TIME)
    assert striker.get_count('h', mod.StrikeType.SLOW_SPEED) == 1
    assert striker.get_count('h', mod.StrikeType.SLOW_TIME) == 1


async def test_strike_past_limit_marks_recurring_offender():
    mod, striker, bus = _striker()
    ctx = mod.StrikeContext(instance_type='Sonarr', instance_url='http://sonarr')
    for _ in range(3):
        await striker.strike_and_check_limit('h', 'n', 3, mod.StrikeType.STALLED, ctx)
    assert await striker.strike_and_check_limit('h', 'n', 3, mod.StrikeType.STALLED, ctx) is True
    assert 'h' in striker.recurring
    assert bus.recurring == [('h', 4, 'Sonarr', 'http://sonarr')]


async def test_failed_import_reasons_only_on_failed_import_strikes():
    mod, striker, bus = _striker()
    ctx = mod.StrikeContext(failed_import_reasons=[{'title': 'x'}])
    await striker.strike_and_check_limit('h', 'n', 3, mod.StrikeType.FAILED_IMPORT, ctx)
    await striker.strike_and_check_limit('h', 'n', 3, mod.StrikeType.STALLED, ctx)
    assert bus.strikes[0][3] == [{'title': 'x'}]
    assert bus.strikes[1][3] is None


async def test_reset_strike_clears_count():
    mod, striker, bus = _striker()
    await striker.strike_and_check_limit('h', 'n', 3, mod.StrikeType.STALLED)
    await striker.strike_and_check_limit('h', 'n', 3, mod.StrikeType.STALLED)
    striker.reset_strike('h', 'n', mod.StrikeType.STALLED)
    assert striker.get_count('h', mod.StrikeType.STALLED) == 0
    assert await striker.strike_and_check_limit('h', 'n', 3, mod.StrikeType.STALLED) is False
    assert striker.get_count('h', mod.StrikeType.STALLED) == 1
    assert bus.strikes[-1][1] == 1


async def test_counters_for_vanished_hashes_are_dropped():
    cache_mod = importlib.import_module('storage.cache')
    striker_mod = importlib.import_module('core.striker')
    now = [1000.0]
    cache = cache_mod.TTLCache(default_ttl=60, clock=lambda: now[0])
    striker = striker_mod.Striker(cache, cache_mod.RecurringHashStore(), FakeBus(), strike_ttl=60)
    for i in range(1000):
        await striker.strike_and_check_limit(f'hash{i}', 'n', 3, striker_mod.StrikeType.STALLED)
        now[0] += 600
    assert len(cache._data) <= 1
