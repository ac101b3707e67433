import importlib

import aiohttp
import pytest


pytestmark = pytest.mark.asyncio

arr = importlib.import_module('integrations.arr')
rules = importlib.import_module('core.rules')
errors = importlib.import_module('core.errors')


class FakeRequests:
    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.calls = []
        self.error = error

    async def throttled_request(self, session, service_name, url, api_key, **kw):
        self.calls.append((url, kw))
        if self.error is not None:
            raise self.error
        return self.responses.pop(0) if self.responses else None


class FakeStriker:
    def __init__(self, result=True):
        self.calls = []
        self.result = result

    async def strike_and_check_limit(self, download_hash, item_name, max_strikes, strike_type, context=None):
        self.calls.append((download_hash, max_strikes, strike_type, context.failed_import_reasons))
        return self.result


def _instance(kind='sonarr'):
    return arr.ArrInstance(name=kind, type=kind, url=f'http://{kind}:8989/', api_key='key')


async def _collect(client, inst):
    return [r async for r in client.iter_queue(None, inst)]


async def test_iter_queue_pages_through_records():
    reqs = FakeRequests([
        {'totalRecords': 3},
        {'records': [{'id': 1}, {'id': 2}]},
        {'records': [{'id': 3}]},
    ])
    client = arr.ArrClient('sonarr', reqs, page_size=2)
    records = await _collect(client, _instance())
    assert [r['id'] for r in records] == [1, 2, 3]
    url, kw = reqs.calls[1]
    assert url == 'http://sonarr:8989/api/v3/queue'
    assert kw['params']['page'] == 1 and kw['params']['pageSize'] == 2
    assert kw['params']['includeUnknownSeriesItems'] == 'true'
    assert reqs.calls[2][1]['params']['page'] == 2


async def test_iter_queue_empty_and_failures():
    client = arr.ArrClient('radarr', FakeRequests([{'totalRecords': 0}]))
    assert await _collect(client, _instance('radarr')) == []
    client = arr.ArrClient('radarr', FakeRequests([None]))
    with pytest.raises(errors.ArrRequestError):
        await _collect(client, _instance('radarr'))


async def test_lidarr_uses_v1_api():
    inst = _instance('lidarr')
    assert inst.api_url == 'http://lidarr:8989/api/v1'
    assert inst.type_name == 'Lidarr'


async def test_delete_queue_item_params():
    reqs = FakeRequests([{'status': 200}])
    client = arr.ArrClient('radarr', reqs)
    await client.delete_queue_item(None, _instance('radarr'), {'id': 7, 'title': 'Movie'}, False)
    url, kw = reqs.calls[0]
    assert url == 'http://radarr:8989/api/v3/queue/7'
    assert kw['method'] == 'delete'
    assert kw['raise_for_status'] is True
    assert kw['params'] == {
        'removeFromClient': 'false', 'blocklist': 'true', 'skipRedownload': 'true', 'changeCategory': 'false',
    }


async def test_delete_queue_item_404_is_reported():
    not_found = aiohttp.ClientResponseError(request_info=None, history=(), status=404)
    client = arr.ArrClient('radarr', FakeRequests(error=not_found))
    with pytest.raises(errors.ArrRequestError) as exc:
        await client.delete_queue_item(None, _instance('radarr'), {'id': 7}, True)
    assert exc.value.status == 404
    assert 'already been deleted' in str(exc.value)


async def test_search_items_posts_command():
    reqs = FakeRequests([{'id': 99}])
    client = arr.ArrClient('sonarr', reqs)
    assert await client.search_items(None, _instance(), [{'episodeId': 1}, {'episodeId': 2}, {'episodeId': 1}])
    url, kw = reqs.calls[0]
    assert url == 'http://sonarr:8989/api/v3/command'
    assert kw['json_data'] == {'name': 'EpisodeSearch', 'episodeIds': [1, 2]}


async def test_search_items_without_ids_does_nothing():
    reqs = FakeRequests()
    client = arr.ArrClient('radarr', reqs)
    assert await client.search_items(None, _instance('radarr'), [{'id': 1}]) is False
    assert reqs.calls == []


def test_build_search_command_per_type():
    assert arr.build_search_command('radarr', [{'movieId': 5}]) == {'name': 'MoviesSearch', 'movieIds': [5]}
    assert arr.build_search_command('sonarr', [{'seriesId': 3}]) == {'name': 'SeriesSearch', 'seriesId': 3}
    assert arr.build_search_command('lidarr', [{'albumId': 4}]) == {'name': 'AlbumSearch', 'albumIds': [4]}
    assert arr.build_search_command('readarr', [{'bookId': 9}]) == {'name': 'BookSearch', 'bookIds': [9]}
    assert arr.build_search_command('unknown', [{'movieId': 5}]) is None


def test_record_validity_requires_download_id():
    assert arr.is_record_valid({'downloadId': 'x'})
    assert not arr.is_record_valid({'title': 'no id'})


FAILED = {
    'downloadId': 'ABC',
    'title': 'Show',
    'trackedDownloadStatus': 'warning',
    'trackedDownloadState': 'importPending',
    'statusMessages': [{'title': 'Show', 'messages': ['Not an upgrade for existing file']}],
}


def test_has_failed_import_states():
    client = arr.ArrClient('sonarr', FakeRequests())
    assert client.has_failed_import(FAILED)
    assert not client.has_failed_import({**FAILED, 'trackedDownloadStatus': 'ok'})
    lidarr = arr.ArrClient('lidarr', FakeRequests())
    assert lidarr.has_failed_import({'trackedDownloadStatus': 'warning', 'status': 'completed'})


def test_failed_import_pattern_modes():
    include = rules.FailedImportConfig(max_strikes=3, patterns=['not an upgrade'])
    assert arr.matches_failed_import_patterns(FAILED, include)
    exclude = rules.FailedImportConfig(max_strikes=3, patterns=['not an upgrade'], pattern_mode=rules.PatternMode.EXCLUDE)
    assert not arr.matches_failed_import_patterns(FAILED, exclude)
    empty_include = rules.FailedImportConfig(max_strikes=3)
    assert not arr.matches_failed_import_patterns(FAILED, empty_include)
    assert not arr.matches_failed_import_patterns({**FAILED, 'statusMessages': []}, include)


async def test_should_remove_from_queue_strikes_failed_import():
    striker = FakeStriker(result=True)
    cfg = rules.FailedImportConfig(max_strikes=3, patterns=['upgrade'])
    client = arr.ArrClient('sonarr', FakeRequests(), striker=striker, failed_import=cfg)
    assert await client.should_remove_from_queue(FAILED, False, -1) is True
    download_hash, max_strikes, strike_type, reasons = striker.calls[0]
    assert download_hash == 'ABC' and max_strikes == 3
    assert strike_type == 'FailedImport'
    assert reasons == FAILED['statusMessages']


async def test_should_remove_from_queue_respects_instance_override_and_privacy():
    striker = FakeStriker()
    cfg = rules.FailedImportConfig(max_strikes=3, patterns=['upgrade'], ignore_private=True)
    client = arr.ArrClient('sonarr', FakeRequests(), striker=striker, failed_import=cfg)
    assert await client.should_remove_from_queue(FAILED, True, -1) is False
    assert await client.should_remove_from_queue(FAILED, False, 0) is False
    assert await client.should_remove_from_queue(FAILED, False, 5) is True
    assert [c[1] for c in striker.calls] == [5]
