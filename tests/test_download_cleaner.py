import importlib

import pytest


pytestmark = pytest.mark.asyncio

dc = importlib.import_module('core.download_cleaner')
actions = importlib.import_module('core.actions')
arr_mod = importlib.import_module('integrations.arr')
config = importlib.import_module('core.config')
runner = importlib.import_module('core.runner')
errors = importlib.import_module('core.errors')
items = importlib.import_module('integrations.items')


class FakeArr:
    def __init__(self, records, fail=False):
        self.records = records
        self.fail = fail

    async def iter_queue(self, session, instance):
        if self.fail:
            raise errors.ArrRequestError(instance.url, 'queue list failed')
        for r in self.records:
            yield r


class FakeService:
    supports_tags = False

    def __init__(self, name, downloads, fail_seeding=False):
        self.name = name
        self.downloads = downloads
        self.fail_seeding = fail_seeding
        self.created = []
        self.clean_calls = []
        self.change_calls = []

    async def create_category(self, session, name):
        self.created.append(name)

    async def get_seeding_downloads(self, session):
        if self.fail_seeding:
            raise RuntimeError('client down')
        return self.downloads

    def filter_downloads_to_clean(self, downloads, categories):
        return list(downloads)

    def filter_downloads_to_change_category(self, downloads, categories, cfg):
        return list(downloads)

    async def clean_downloads(self, session, downloads, categories, excluded, ignored, *, delete_private=False):
        self.clean_calls.append(([d.hash for d in downloads], set(excluded), delete_private))
        return len([d for d in downloads if d.hash.lower() not in excluded])

    async def change_category_for_no_hardlinks(self, session, downloads, excluded, ignored, cfg):
        self.change_calls.append([d.hash for d in downloads])
        return 1


def _item(h):
    return items.QBitItem({'hash': h, 'name': h, 'state': 'uploading', 'category': 'tv'})


def _cleaner(cfg, services, records=(), fail_queue=False):
    deps = actions.ActionsDeps(
        arr_clients={'sonarr': FakeArr(list(records), fail_queue)},
        executor=None,
        event_bus=None,
        cache=None,
        recurring=None,
    )
    inst = arr_mod.ArrInstance(name='sonarr', type='sonarr', url='http://sonarr', api_key='k')
    ctx = actions.JobContext(actions=deps, services=services, instances={'sonarr': [inst]}, metrics=runner.Metrics())
    return dc.DownloadCleaner(cfg, ctx), ctx


def _clean_cfg(**kw):
    return config.DownloadCleanerConfig(enabled=True, categories=[config.CleanCategory(name='tv', max_ratio=1.0)], **kw)


async def test_nothing_configured_is_a_no_op():
    svc = FakeService('qb', [_item('AAA')])
    cleaner, ctx = _cleaner(config.DownloadCleanerConfig(enabled=True), [svc])
    await cleaner.execute(None)
    assert svc.clean_calls == [] and svc.change_calls == []


async def test_downloads_in_arr_queues_are_excluded():
    svc = FakeService('qb', [_item('AAA'), _item('BBB')])
    cleaner, ctx = _cleaner(_clean_cfg(delete_private=True), [svc], records=[{'downloadId': 'AAA'}, {'id': 5}])
    await cleaner.execute(None)
    assert svc.clean_calls == [(['AAA', 'BBB'], {'aaa'}, True)]
    assert ctx.metrics.cleaned == 1
    assert ctx.metrics['svc:qb:cleaned'] == 1


async def test_unreadable_queue_aborts_the_run():
    svc = FakeService('qb', [_item('AAA')])
    cleaner, ctx = _cleaner(_clean_cfg(), [svc], fail_queue=True)
    await cleaner.execute(None)
    assert svc.clean_calls == []
    assert ctx.metrics.cleaned == 0


async def test_failing_client_does_not_stop_others():
    broken = FakeService('broken', [], fail_seeding=True)
    working = FakeService('qb', [_item('AAA')])
    cleaner, ctx = _cleaner(_clean_cfg(), [broken, working])
    await cleaner.execute(None)
    assert ctx.metrics['svc:broken:errors'] == 1
    assert working.clean_calls


async def test_unlinked_categories_change_and_target_is_created():
    svc = FakeService('qb', [_item('AAA')])
    cfg = config.DownloadCleanerConfig(
        enabled=True, unlinked_enabled=True, unlinked_categories=['tv'], unlinked_target_category='unlinked'
    )
    cleaner, ctx = _cleaner(cfg, [svc])
    await cleaner.execute(None)
    assert svc.created == ['unlinked']
    assert svc.change_calls == [['AAA']]
    assert svc.clean_calls == []
    assert ctx.metrics.category_changed == 1


async def test_tag_mode_skips_category_creation_on_tag_clients():
    svc = FakeService('qb', [])
    svc.supports_tags = True
    cfg = config.DownloadCleanerConfig(
        enabled=True, unlinked_enabled=True, unlinked_categories=['tv'], unlinked_use_tag=True,
    )
    cleaner, ctx = _cleaner(cfg, [svc])
    await cleaner.execute(None)
    assert svc.created == []


async def test_unlinked_pass_covers_every_client_before_cleaning():
    calls = []

    class OrderedService(FakeService):
        async def clean_downloads(self, session, downloads, categories, excluded, ignored, *, delete_private=False):
            calls.append(('clean', self.name))
            return 0

        async def change_category_for_no_hardlinks(self, session, downloads, excluded, ignored, cfg):
            calls.append(('unlinked', self.name))
            return 0

    services = [OrderedService('qb', [_item('AAA')]), OrderedService('tr', [_item('BBB')])]
    cleaner, ctx = _cleaner(_clean_cfg(unlinked_enabled=True, unlinked_categories=['tv']), services)
    await cleaner.execute(None)
    assert calls == [('unlinked', 'qb'), ('unlinked', 'tr'), ('clean', 'qb'), ('clean', 'tr')]
