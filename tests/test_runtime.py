import dataclasses

from clinic_queue.runtime import QueueRuntime
from clinic_queue.storage import QueueStorage


def test_bootstrap_admin_is_created_once(in_memory_db, queue_settings):
    settings = dataclasses.replace(
        queue_settings, bootstrap_admin_username='root', bootstrap_admin_password='root-pass'
    )
    runtime = QueueRuntime(settings, in_memory_db.session_factory)

    first = runtime.ensure_bootstrap_admin()
    second = runtime.ensure_bootstrap_admin()

    assert first == second
    session = in_memory_db.make_session()
    try:
        user = QueueStorage(session).get_user_by_username('root')
        assert user.role == 'admin'
    finally:
        session.close()


def test_display_token_resolution(runtime, make_tenant):
    north = make_tenant('north-clinic')
    assert runtime.resolve_display_token(north.tv_token) == north.id
    assert runtime.resolve_display_token(north.token) is None
    assert runtime.resolve_display_token('garbage') is None


def test_cache_read_failure_falls_through_to_loader(runtime, monkeypatch):
    def broken_get(tenant, key):
        raise RuntimeError('cache corrupted')

    monkeypatch.setattr(runtime.cache, 'get', broken_get)

    assert runtime.service.cached('north', 'windows', lambda: ['fresh']) == ['fresh']


def test_cached_reads_hit_until_invalidated(runtime):
    calls = []

    def loader():
        calls.append(1)
        return {'waiting': len(calls)}

    assert runtime.service.cached('north', 'dashboard:stats', loader) == {'waiting': 1}
    assert runtime.service.cached('north', 'dashboard:stats', loader) == {'waiting': 1}
    runtime.invalidator.invalidate('north', immediate=True)
    assert runtime.service.cached('north', 'dashboard:stats', loader) == {'waiting': 2}
