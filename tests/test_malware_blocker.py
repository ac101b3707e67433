import importlib

import pytest


pytestmark = pytest.mark.asyncio

mb = importlib.import_module('core.malware_blocker')
actions = importlib.import_module('core.actions')
base = importlib.import_module('integrations.clients.base')
arr_mod = importlib.import_module('integrations.arr')
config = importlib.import_module('core.config')
ev = importlib.import_module('core.evaluator')
runner = importlib.import_module('core.runner')


class NullBus:
    async def publish_queue_item_deleted(self, *a, **k):
        pass

    async def publish_search_not_triggered(self, *a, **k):
        pass


class FakeArr:
    def __init__(self, records):
        self.records = records
        self.deleted = []

    async def iter_queue(self, session, instance):
        for r in self.records:
            yield r

    async def delete_queue_item(self, session, instance, record, remove_from_client):
        self.deleted.append((record['id'], remove_from_client))

    async def search_items(self, session, instance, records):
        return True


class FakeBlocklists:
    def __init__(self):
        self.loaded = False

    async def load_all(self, session):
        self.loaded = True
        return {}

    def get(self, arr_type):
        return f'blocklist-{arr_type}'


class FakeService:
    def __init__(self, results):
        self.name = 'qb'
        self.results = results
        self.calls = []

    async def block_unwanted_files(self, session, download_hash, ignored, blocklist, *, ignore_private=False,
                                   delete_known_malware=False):
        self.calls.append((download_hash, blocklist, ignore_private, delete_known_malware))
        return self.results.get(download_hash, base.BlockFilesResult())


def _blocker(records, services, cfg=None):
    cache_mod = importlib.import_module('storage.cache')
    executor_mod = importlib.import_module('core.executor')
    arr = FakeArr(records)
    deps = actions.ActionsDeps(
        arr_clients={'radarr': arr},
        executor=executor_mod.LiveExecutor(),
        event_bus=NullBus(),
        cache=cache_mod.TTLCache(default_ttl=60),
        recurring=cache_mod.RecurringHashStore(),
        search_enabled=False,
    )
    inst = arr_mod.ArrInstance(name='radarr', type='radarr', url='http://radarr', api_key='k')
    ctx = actions.JobContext(actions=deps, services=services, instances={'radarr': [inst]}, metrics=runner.Metrics())
    blocklists = FakeBlocklists()
    job = mb.MalwareBlocker(cfg or config.MalwareBlockerConfig(enabled=True), blocklists, ctx)
    return job, arr, ctx, blocklists


def _rec(rid, download_id, protocol='torrent'):
    return {'id': rid, 'downloadId': download_id, 'title': f'Movie {rid}', 'protocol': protocol}


async def test_no_services_does_nothing():
    job, arr, ctx, blocklists = _blocker([_rec(1, 'AAA')], [])
    await job.execute(None)
    assert not blocklists.loaded


async def test_all_blocked_download_is_removed():
    blocked = base.BlockFilesResult(found=True, should_remove=True, reason=ev.DeleteReason.ALL_FILES_BLOCKED)
    svc = FakeService({'AAA': blocked, 'BBB': base.BlockFilesResult(found=True)})
    cfg = config.MalwareBlockerConfig(enabled=True, ignore_private=True, delete_known_malware=True)
    job, arr, ctx, blocklists = _blocker([_rec(1, 'AAA'), _rec(2, 'BBB')], [svc], cfg)
    await job.execute(None)
    assert blocklists.loaded
    assert svc.calls[0] == ('AAA', 'blocklist-radarr', True, True)
    assert arr.deleted == [(1, True)]
    assert ctx.metrics.removed == 1
    assert ctx.metrics.processed == 2


async def test_private_removal_respects_delete_private():
    private = base.BlockFilesResult(found=True, is_private=True, should_remove=True,
                                    reason=ev.DeleteReason.MALWARE_FILE_FOUND)
    job, arr, ctx, _ = _blocker([_rec(1, 'AAA')], [FakeService({'AAA': private})])
    await job.execute(None)
    assert arr.deleted == [(1, False)]


async def test_usenet_and_ignored_downloads_are_skipped():
    svc = FakeService({})
    cfg = config.MalwareBlockerConfig(enabled=True, ignored_downloads=['AAA'])
    job, arr, ctx, _ = _blocker([_rec(1, 'AAA'), _rec(2, 'NZB', protocol='usenet')], [svc], cfg)
    await job.execute(None)
    assert svc.calls == []
    assert ctx.metrics.processed == 0
