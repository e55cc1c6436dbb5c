from clinic_queue.cache import MISS, TenantCache, TTLClass
from clinic_queue.tenancy import TenantId

NORTH = TenantId('north')
SOUTH = TenantId('south')


def _cache(clock) -> TenantCache:
    return TenantCache(short_ttl=60, long_ttl=300, clock=clock)


def test_entry_served_within_ttl_and_missed_after(clock):
    cache = _cache(clock)
    cache.set(NORTH, 'windows', [{'id': 'w1'}])

    clock.advance(30)
    assert cache.get(NORTH, 'windows') == [{'id': 'w1'}]

    clock.advance(31)
    assert cache.get(NORTH, 'windows') is MISS
    # the expired entry is dropped on read
    assert len(cache) == 0


def test_colliding_keys_never_cross_tenants(clock):
    cache = _cache(clock)
    cache.set(NORTH, 'windows', ['north-window'])
    cache.set(SOUTH, 'windows', ['south-window'])

    assert cache.get(NORTH, 'windows') == ['north-window']
    assert cache.get(SOUTH, 'windows') == ['south-window']

    cache.invalidate(NORTH)
    assert cache.get(NORTH, 'windows') is MISS
    assert cache.get(SOUTH, 'windows') == ['south-window']


def test_unknown_tenant_reads_miss(clock):
    cache = _cache(clock)
    cache.set(NORTH, 'dashboard:stats', {'waiting': 3})
    assert cache.get(TenantId('elsewhere'), 'dashboard:stats') is MISS


def test_long_ttl_outlives_short(clock):
    cache = _cache(clock)
    cache.set(NORTH, 'settings:all', {'clinicName': 'North'}, TTLClass.LONG)
    cache.set(NORTH, 'windows', [])

    clock.advance(120)
    assert cache.get(NORTH, 'windows') is MISS
    assert cache.get(NORTH, 'settings:all') == {'clinicName': 'North'}


def test_pattern_invalidation_only_touches_matching_keys(clock):
    cache = _cache(clock)
    cache.set(NORTH, 'settings:all', {})
    cache.set(NORTH, 'settings:tv', {})
    cache.set(NORTH, 'windows', [])

    removed = cache.invalidate(NORTH, 'settings')

    assert removed == 2
    assert cache.get(NORTH, 'windows') == []
    assert cache.tenant_size(NORTH) == 1


def test_sweep_evicts_entries_older_than_longest_ttl(clock):
    cache = _cache(clock)
    cache.set(NORTH, 'windows', [])
    clock.advance(200)
    cache.set(SOUTH, 'windows', [])
    clock.advance(150)

    assert cache.sweep_expired() == 1
    assert cache.tenant_size(NORTH) == 0
    assert cache.tenant_size(SOUTH) == 1


def test_stats_count_hits_and_misses(clock):
    cache = _cache(clock)
    cache.get(NORTH, 'windows')
    cache.set(NORTH, 'windows', [])
    cache.get(NORTH, 'windows')

    assert cache.stats() == {'entries': 1, 'hits': 1, 'misses': 1}
