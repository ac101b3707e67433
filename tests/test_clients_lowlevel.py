import importlib

import aiohttp
import pytest


pytestmark = pytest.mark.asyncio

errors = importlib.import_module('core.errors')


class FakeResp:
    def __init__(self, status=200, json_data=None, headers=None, text=''):
        self.status = status
        self._json = json_data
        self._text = text
        self.headers = headers or {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def json(self, **kwargs):
        if isinstance(self._json, Exception):
            raise self._json
        return self._json

    async def text(self):
        return self._text


class QueueSession:
    def __init__(self, responses):
        # responses: list of tuples (method, FakeResp)
        self._q = list(responses)
        self.calls = []

    async def post(self, url, **kwargs):
        self.calls.append(('POST', url, kwargs))
        assert self._q, f"Unexpected POST call to {url}"
        m, resp = self._q.pop(0)
        assert m == 'POST'
        if isinstance(resp, Exception):
            raise resp
        return resp

    async def get(self, url, **kwargs):
        self.calls.append(('GET', url, kwargs))
        assert self._q, f"Unexpected GET call to {url}"
        m, resp = self._q.pop(0)
        assert m == 'GET'
        if isinstance(resp, Exception):
            raise resp
        return resp


async def test_qbittorrent_logs_in_once_and_lists_torrents():
    qb = importlib.import_module('integrations.clients.qbittorrent')
    session = QueueSession([
        ('POST', FakeResp(status=200)),
        ('GET', FakeResp(status=200, json_data=[{'hash': 'A'}, 'junk'])),
        ('GET', FakeResp(status=200, json_data=[{'url': 'https://t.example.org/announce'}])),
    ])
    client = qb.QBitClient('qb', 'http://qb:8080/', 'u', 'p')
    torrents = await client.get_torrents(session, hashes=['A', 'B'], filter='completed')
    assert torrents == [{'hash': 'A'}]
    assert session.calls[0][1] == 'http://qb:8080/api/v2/auth/login'
    assert session.calls[1][2]['params'] == {'hashes': 'A|B', 'filter': 'completed'}
    assert await client.get_trackers(session, 'A') == [{'url': 'https://t.example.org/announce'}]
    assert [c[1].rsplit('/', 1)[-1] for c in session.calls].count('login') == 1


async def test_qbittorrent_relogs_in_on_403():
    qb = importlib.import_module('integrations.clients.qbittorrent')
    session = QueueSession([
        ('POST', FakeResp(status=200)),
        ('GET', FakeResp(status=403)),
        ('POST', FakeResp(status=200)),
        ('GET', FakeResp(status=200, json_data={'is_private': True})),
    ])
    client = qb.QBitClient('qb', 'http://qb', 'u', 'p')
    assert await client.get_properties(session, 'A') == {'is_private': True}
    assert len(session.calls) == 4


async def test_qbittorrent_login_failure_raises():
    qb = importlib.import_module('integrations.clients.qbittorrent')
    session = QueueSession([('POST', FakeResp(status=401))])
    client = qb.QBitClient('qb', 'http://qb', 'u', 'bad')
    with pytest.raises(errors.DownloadClientError):
        await client.get_torrents(session)


async def test_qbittorrent_version_and_delete():
    qb = importlib.import_module('integrations.clients.qbittorrent')
    session = QueueSession([
        ('POST', FakeResp(status=200)),
        ('GET', FakeResp(status=200, text='v4.6.2\n')),
        ('POST', FakeResp(status=200)),
    ])
    client = qb.QBitClient('qb', 'http://qb', 'u', 'p')
    assert await client.get_version(session) == 'v4.6.2'
    await client.delete(session, ['A'], delete_files=True)
    assert session.calls[2][1] == 'http://qb/api/v2/torrents/delete'


async def test_qbittorrent_connection_error_is_wrapped():
    qb = importlib.import_module('integrations.clients.qbittorrent')
    session = QueueSession([('POST', aiohttp.ClientConnectionError('refused'))])
    client = qb.QBitClient('qb', 'http://qb', 'u', 'p')
    with pytest.raises(errors.DownloadClientError) as exc:
        await client.get_torrents(session)
    assert str(exc.value).startswith('qb:')


async def test_transmission_session_id_handshake():
    tr = importlib.import_module('integrations.clients.transmission')
    session = QueueSession([
        ('POST', FakeResp(status=409, headers={'X-Transmission-Session-Id': 'sid-1'})),
        ('POST', FakeResp(status=200, json_data={'result': 'success', 'arguments': {'torrents': [{'hashString': 'a'}]}})),
    ])
    client = tr.TransmissionClient('tr', 'http://tr:9091', 'u', 'p')
    assert client.rpc_url == 'http://tr:9091/transmission/rpc'
    torrents = await client.get_torrents(session, ids=['a'])
    assert torrents == [{'hashString': 'a'}]
    assert session.calls[1][2]['headers'] == {'X-Transmission-Session-Id': 'sid-1'}
    assert session.calls[1][2]['json']['method'] == 'torrent-get'
    assert session.calls[1][2]['json']['arguments']['ids'] == ['a']


async def test_transmission_rpc_failure_result_raises():
    tr = importlib.import_module('integrations.clients.transmission')
    session = QueueSession([('POST', FakeResp(status=200, json_data={'result': 'invalid argument'}))])
    client = tr.TransmissionClient('tr', 'http://tr:9091/transmission/rpc', None, None)
    assert client.auth is None
    with pytest.raises(errors.DownloadClientError):
        await client.remove(session, 'a')


async def test_deluge_login_connects_daemon_then_calls():
    dl = importlib.import_module('integrations.clients.deluge')
    session = QueueSession([
        ('POST', FakeResp(json_data={'result': True, 'error': None})),
        ('POST', FakeResp(json_data={'result': False, 'error': None})),
        ('POST', FakeResp(json_data={'result': [['host-id', '127.0.0.1', 58846, 'Online']], 'error': None})),
        ('POST', FakeResp(json_data={'result': None, 'error': None})),
        ('POST', FakeResp(json_data={'result': {'hash': 'abc', 'name': 'x'}, 'error': None})),
    ])
    client = dl.DelugeClient('deluge', 'http://deluge:8112', 'pw')
    status = await client.get_torrent_status(session, 'abc')
    assert status['name'] == 'x'
    methods = [c[2]['json']['method'] for c in session.calls]
    assert methods == ['auth.login', 'web.connected', 'web.get_hosts', 'web.connect', 'web.get_torrent_status']
    assert session.calls[3][2]['json']['params'] == ['host-id']
    assert session.calls[0][1] == 'http://deluge:8112/json'


async def test_deluge_error_payload_raises():
    dl = importlib.import_module('integrations.clients.deluge')
    session = QueueSession([('POST', FakeResp(json_data={'result': None, 'error': {'message': 'Not authenticated'}}))])
    client = dl.DelugeClient('deluge', 'http://deluge:8112/json', 'pw')
    with pytest.raises(errors.DownloadClientError) as exc:
        await client.login(session)
    assert 'Not authenticated' in str(exc.value)


TOKEN_HTML = "<html><div id='token' style='display:none;'>tok123</div></html>"


async def test_utorrent_token_and_guid_flow():
    ut = importlib.import_module('integrations.clients.utorrent')
    session = QueueSession([
        ('GET', FakeResp(status=200, text=TOKEN_HTML, headers={'Set-Cookie': 'GUID=g123; path=/'})),
        ('GET', FakeResp(status=200, json_data={'build': 1, 'torrents': [['H1', 201, 'name']], 'label': [['tv', 1]]})),
    ])
    client = ut.UTorrentClient('ut', 'http://ut:8080/', 'admin', 'pw')
    rows = await client.get_torrents(session)
    assert rows == [['H1', 201, 'name']]
    assert client.token == 'tok123' and client.guid == 'GUID=g123'
    _, url, kw = session.calls[1]
    assert url == 'http://ut:8080/gui/'
    assert kw['params'] == [('token', 'tok123'), ('list', '1')]
    assert kw['headers'] == {'Cookie': 'GUID=g123'}


async def test_utorrent_reauthenticates_on_rejected_token():
    ut = importlib.import_module('integrations.clients.utorrent')
    session = QueueSession([
        ('GET', FakeResp(status=200, text=TOKEN_HTML, headers={'Set-Cookie': 'GUID=g1'})),
        ('GET', FakeResp(status=400)),
        ('GET', FakeResp(status=200, text=TOKEN_HTML, headers={'Set-Cookie': 'GUID=g2'})),
        ('GET', FakeResp(status=200, json_data={'props': [{'hash': 'H1', 'pex': -1}]})),
    ])
    client = ut.UTorrentClient('ut', 'http://ut:8080', 'admin', 'pw')
    props = await client.get_properties(session, 'H1')
    assert props['pex'] == -1
    assert client.guid == 'GUID=g2'


async def test_utorrent_missing_token_raises():
    ut = importlib.import_module('integrations.clients.utorrent')
    session = QueueSession([('GET', FakeResp(status=200, text='<html></html>', headers={'Set-Cookie': 'GUID=g'}))])
    client = ut.UTorrentClient('ut', 'http://ut:8080', 'admin', 'pw')
    with pytest.raises(errors.DownloadClientError):
        await client.list(session)


def test_parse_guid_cookie():
    ut = importlib.import_module('integrations.clients.utorrent')
    assert ut.parse_guid_cookie('other=1; path=/, GUID=abc; path=/') == 'GUID=abc'
    assert ut.parse_guid_cookie(None) is None
