import importlib
import pytest


pytestmark = pytest.mark.asyncio


class DummySession:
    pass


class DummyBus:
    def __init__(self):
        self.events = []

    async def publish_queue_item_deleted(self, name, download_hash, remove_from_client, reason, **kw):
        self.events.append(('deleted', download_hash, remove_from_client, reason))

    async def publish_search_not_triggered(self, download_hash, name, **kw):
        self.events.append(('search_not_triggered', download_hash))

    async def emit(self, event, **fields):
        self.events.append((event, fields.get('action')))


class FakeArr:
    def __init__(self, fail_delete=False):
        self.deleted = []
        self.searched = []
        self.fail_delete = fail_delete

    async def delete_queue_item(self, session, instance, record, remove_from_client):
        if self.fail_delete:
            errors = importlib.import_module('core.errors')
            raise errors.ArrRequestError(instance.url, 'gone', status=404)
        self.deleted.append((record['id'], remove_from_client))

    async def search_items(self, session, instance, records):
        self.searched.append([r['id'] for r in records])
        return True


def _deps(dry_run=False, search_enabled=True, fail_delete=False):
    actions = importlib.import_module('core.actions')
    cache_mod = importlib.import_module('storage.cache')
    executor_mod = importlib.import_module('core.executor')
    bus = DummyBus()
    arr = FakeArr(fail_delete)
    deps = actions.ActionsDeps(
        arr_clients={'sonarr': arr},
        executor=executor_mod.make_executor(dry_run, bus),
        event_bus=bus,
        cache=cache_mod.TTLCache(default_ttl=60),
        recurring=cache_mod.RecurringHashStore(),
        search_enabled=search_enabled,
    )
    return actions, deps, arr, bus


def _instance():
    arr_mod = importlib.import_module('integrations.arr')
    return arr_mod.ArrInstance(name='sonarr', type='sonarr', url='http://sonarr:8989', api_key='k')


RECORDS = [
    {'id': 1, 'downloadId': 'ABC', 'title': 'Show', 'episodeId': 10},
    {'id': 2, 'downloadId': 'ABC', 'title': 'Show', 'episodeId': 11},
]


async def test_remove_deletes_every_record_and_searches():
    actions, deps, arr, bus = _deps()
    ev = importlib.import_module('core.evaluator')
    inst = _instance()
    actions.mark_for_removal(deps, 'ABC', inst)
    assert actions.is_marked_for_removal(deps, 'abc', inst)
    await actions.remove_queue_item(DummySession(), inst, RECORDS, True, ev.DeleteReason.STALLED, deps)
    assert arr.deleted == [(1, True), (2, True)]
    assert arr.searched == [[1, 2]]
    assert bus.events[0] == ('deleted', 'ABC', True, 'Stalled')
    assert not actions.is_marked_for_removal(deps, 'ABC', inst)


async def test_recurring_item_is_not_searched_again():
    actions, deps, arr, bus = _deps()
    ev = importlib.import_module('core.evaluator')
    deps.recurring.add('abc')
    await actions.remove_queue_item(DummySession(), _instance(), RECORDS, False, ev.DeleteReason.FAILED_IMPORT, deps)
    assert arr.searched == []
    assert ('search_not_triggered', 'ABC') in bus.events
    assert 'ABC' not in deps.recurring


async def test_search_disabled_skips_search():
    actions, deps, arr, bus = _deps(search_enabled=False)
    ev = importlib.import_module('core.evaluator')
    await actions.remove_queue_item(DummySession(), _instance(), RECORDS[:1], False, ev.DeleteReason.STALLED, deps)
    assert arr.deleted == [(1, False)]
    assert arr.searched == []


async def test_dry_run_records_actions_without_calls():
    actions, deps, arr, bus = _deps(dry_run=True)
    ev = importlib.import_module('core.evaluator')
    await actions.remove_queue_item(DummySession(), _instance(), RECORDS[:1], True, ev.DeleteReason.STALLED, deps)
    assert arr.deleted == [] and arr.searched == []
    assert len(deps.executor.simulated) == 2
    assert [e[0] for e in bus.events].count('dry_run') == 2


async def test_failed_delete_still_clears_marker():
    actions, deps, arr, bus = _deps(fail_delete=True)
    ev = importlib.import_module('core.evaluator')
    errors = importlib.import_module('core.errors')
    inst = _instance()
    actions.mark_for_removal(deps, 'ABC', inst)
    with pytest.raises(errors.ArrRequestError):
        await actions.remove_queue_item(DummySession(), inst, RECORDS, True, ev.DeleteReason.STALLED, deps)
    assert not actions.is_marked_for_removal(deps, 'ABC', inst)
    assert bus.events == []


async def test_group_queue_records_by_download_id():
    actions = importlib.import_module('core.actions')

    class PagedArr:
        async def iter_queue(self, session, instance):
            for r in [
                {'id': 1, 'downloadId': 'A'},
                {'id': 2, 'downloadId': 'b'},
                {'id': 3, 'downloadId': 'a'},
                {'id': 4},
            ]:
                yield r

    groups = await actions.group_queue_records(DummySession(), PagedArr(), _instance())
    assert [[r['id'] for r in g] for g in groups.values()] == [[1, 3], [2], [4]]
