import asyncio

import pytest

from clinic_queue.cache import MISS, TenantCache
from clinic_queue.invalidation import DebouncedInvalidator
from clinic_queue.tenancy import TenantId

NORTH = TenantId('north')
SOUTH = TenantId('south')


class RecordingCache(TenantCache):
    """Tenant cache that records when each clear actually ran."""

    def __init__(self) -> None:
        super().__init__(short_ttl=60, long_ttl=300)
        self.clears = []

    def invalidate(self, tenant, pattern=None):
        self.clears.append((tenant, pattern, asyncio.get_running_loop().time()))
        return super().invalidate(tenant, pattern)


class ExplodingCache(TenantCache):
    def invalidate(self, tenant, pattern=None):
        raise RuntimeError('cache offline')


@pytest.mark.asyncio
async def test_burst_coalesces_into_one_clear_after_last_call():
    cache = RecordingCache()
    invalidator = DebouncedInvalidator(cache, debounce_seconds=0.3)
    cache.set(NORTH, 'windows', [])
    loop = asyncio.get_running_loop()

    start = loop.time()
    invalidator.invalidate(NORTH)
    await asyncio.sleep(0.1)
    invalidator.invalidate(NORTH)
    await asyncio.sleep(0.15)
    invalidator.invalidate(NORTH)

    assert invalidator.state(NORTH) == 'pending'
    assert cache.get(NORTH, 'windows') == []

    await asyncio.sleep(0.45)

    assert len(cache.clears) == 1
    elapsed = cache.clears[0][2] - start
    assert 0.5 <= elapsed < 0.75
    assert invalidator.state(NORTH) == 'idle'
    assert cache.get(NORTH, 'windows') is MISS


@pytest.mark.asyncio
async def test_repeat_request_pushes_deadline_forward():
    invalidator = DebouncedInvalidator(TenantCache(), debounce_seconds=0.2)

    invalidator.invalidate(NORTH, 'settings')
    first = invalidator.pending_deadline(NORTH, 'settings')
    await asyncio.sleep(0.05)
    invalidator.invalidate(NORTH, 'settings')
    second = invalidator.pending_deadline(NORTH, 'settings')

    assert first is not None and second is not None
    assert second > first
    assert invalidator.pending_count() == 1
    invalidator.shutdown()


@pytest.mark.asyncio
async def test_immediate_clears_synchronously_and_cancels_pending():
    cache = RecordingCache()
    invalidator = DebouncedInvalidator(cache, debounce_seconds=0.1)
    cache.set(NORTH, 'patients:active', [1, 2])

    invalidator.invalidate(NORTH)
    assert invalidator.state(NORTH) == 'pending'

    invalidator.invalidate(NORTH, immediate=True)

    assert cache.get(NORTH, 'patients:active') is MISS
    assert invalidator.state(NORTH) == 'idle'
    await asyncio.sleep(0.2)
    # the cancelled timer never fires
    assert len(cache.clears) == 1


@pytest.mark.asyncio
async def test_keys_are_independent_per_tenant_and_pattern():
    cache = RecordingCache()
    invalidator = DebouncedInvalidator(cache, debounce_seconds=0.05)
    cache.set(SOUTH, 'windows', ['south'])

    invalidator.invalidate(NORTH)
    invalidator.invalidate(NORTH, 'settings')
    invalidator.invalidate(SOUTH, 'settings')
    assert invalidator.pending_count() == 3

    await asyncio.sleep(0.15)

    assert {(tenant, pattern) for tenant, pattern, _ in cache.clears} == {
        (NORTH, 'settings'),
        (NORTH, None),
        (SOUTH, 'settings'),
    }
    assert len(cache.clears) == 3
    assert cache.get(SOUTH, 'windows') == ['south']


def test_without_running_loop_clear_happens_inline():
    cache = TenantCache()
    invalidator = DebouncedInvalidator(cache, debounce_seconds=10)
    cache.set(NORTH, 'windows', [])

    invalidator.invalidate(NORTH)

    assert cache.get(NORTH, 'windows') is MISS
    assert invalidator.pending_count() == 0


@pytest.mark.asyncio
async def test_failures_are_logged_not_raised():
    invalidator = DebouncedInvalidator(ExplodingCache(), debounce_seconds=0.01)

    invalidator.invalidate(NORTH, immediate=True)
    invalidator.invalidate(NORTH)
    await asyncio.sleep(0.05)

    assert invalidator.state(NORTH) == 'idle'


@pytest.mark.asyncio
async def test_shutdown_cancels_everything():
    cache = RecordingCache()
    invalidator = DebouncedInvalidator(cache, debounce_seconds=0.05)
    invalidator.invalidate(NORTH)
    invalidator.invalidate(SOUTH)

    invalidator.shutdown()
    await asyncio.sleep(0.1)

    assert cache.clears == []
    assert invalidator.pending_count() == 0
