from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp

from core.errors import DownloadClientError
from integrations.items import TorrentItem, UTorrentItem

from .base import DownloadService, TorrentFile


TOKEN_RE = re.compile(r"""<div[^>]*id=['"]token['"][^>]*>([^<]+)</div>""", re.IGNORECASE)

# file row: [name, size, downloaded, priority, ...]
FILE_NAME, FILE_SIZE, FILE_DOWNLOADED, FILE_PRIORITY = 0, 1, 2, 3


def parse_guid_cookie(set_cookie: Optional[str]) -> Optional[str]:
    for part in (set_cookie or '').split(','):
        part = part.strip()
        if part.startswith('GUID='):
            return part.split(';', 1)[0]
    return None


class UTorrentClient:
    def __init__(self, name: str, base_url: str, username: Optional[str], password: Optional[str], timeout: int = 10) -> None:
        self.name = name
        self.base_url = base_url.rstrip('/')
        self.auth = aiohttp.BasicAuth(username or '', password or '')
        self.timeout = timeout
        self.token: Optional[str] = None
        self.guid: Optional[str] = None

    async def authenticate(self, session: aiohttp.ClientSession) -> None:
        try:
            resp = await session.get(
                f"{self.base_url}/gui/token.html", auth=self.auth, timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            status = getattr(resp, 'status', None)
            if status != 200:
                raise DownloadClientError(self.name, f"token request returned status {status}")
            html = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DownloadClientError(self.name, f"token request failed: {e}") from e
        match = TOKEN_RE.search(html or '')
        if not match:
            raise DownloadClientError(self.name, 'failed to extract authentication token from response')
        guid = parse_guid_cookie(getattr(resp, 'headers', {}).get('Set-Cookie'))
        if not guid:
            raise DownloadClientError(self.name, 'failed to extract GUID cookie from response')
        self.token = match.group(1).strip()
        self.guid = guid

    async def request(self, session: aiohttp.ClientSession, params: List[Tuple[str, str]]) -> Dict[str, Any]:
        for attempt in (1, 2):
            if not self.token:
                await self.authenticate(session)
            query = [('token', self.token or '')] + list(params)
            try:
                resp = await session.get(
                    f"{self.base_url}/gui/",
                    params=query,
                    auth=self.auth,
                    headers={'Cookie': self.guid or ''},
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise DownloadClientError(self.name, f"request failed: {e}") from e
            status = getattr(resp, 'status', None)
            if status in (400, 401) and attempt == 1:
                logging.debug(f"{self.name}: token rejected, authenticating again")
                self.token = None
                continue
            if status != 200:
                raise DownloadClientError(self.name, f"request returned status {status}")
            try:
                data = await resp.json(content_type=None)
            except ValueError as e:
                raise DownloadClientError(self.name, 'malformed json response') from e
            if not isinstance(data, dict):
                raise DownloadClientError(self.name, 'unexpected response payload')
            if data.get('error'):
                raise DownloadClientError(self.name, str(data['error']))
            return data
        raise DownloadClientError(self.name, 'authentication failed')

    async def list(self, session: aiohttp.ClientSession) -> Dict[str, Any]:
        return await self.request(session, [('list', '1')])

    async def get_torrents(self, session: aiohttp.ClientSession) -> List[List[Any]]:
        data = await self.list(session)
        return [row for row in (data.get('torrents') or []) if isinstance(row, list) and row]

    async def get_labels(self, session: aiohttp.ClientSession) -> List[str]:
        data = await self.list(session)
        return [str(row[0]) for row in (data.get('label') or []) if isinstance(row, list) and row and row[0]]

    async def get_files(self, session: aiohttp.ClientSession, info_hash: str) -> List[List[Any]]:
        data = await self.request(session, [('action', 'getfiles'), ('hash', info_hash)])
        files = data.get('files') or []
        if len(files) < 2 or not isinstance(files[1], list):
            return []
        return [f for f in files[1] if isinstance(f, list)]

    async def get_properties(self, session: aiohttp.ClientSession, info_hash: str) -> Optional[Dict[str, Any]]:
        data = await self.request(session, [('action', 'getprops'), ('hash', info_hash)])
        props = data.get('props') or []
        return props[0] if props and isinstance(props[0], dict) else None

    async def set_file_priorities(self, session: aiohttp.ClientSession, info_hash: str, indexes: Sequence[int], priority: int = 0) -> None:
        params = [('action', 'setprio'), ('hash', info_hash), ('p', str(priority))]
        params.extend(('f', str(i)) for i in indexes)
        await self.request(session, params)

    async def remove_with_data(self, session: aiohttp.ClientSession, info_hash: str) -> None:
        await self.request(session, [('action', 'removedatatorrent'), ('hash', info_hash)])

    async def set_label(self, session: aiohttp.ClientSession, info_hash: str, label: str) -> None:
        await self.request(session, [('action', 'setprops'), ('hash', info_hash), ('s', 'label'), ('v', label)])


class UTorrentService(DownloadService):
    async def _wrap(self, session: aiohttp.ClientSession, row: List[Any]) -> UTorrentItem:
        props = await self.client.get_properties(session, str(row[0]))
        return UTorrentItem(row, props, now=time.time())

    async def fetch_item(self, session: aiohttp.ClientSession, download_hash: str) -> Optional[TorrentItem]:
        wanted = download_hash.lower()
        for row in await self.client.get_torrents(session):
            if str(row[0]).lower() == wanted:
                return await self._wrap(session, row)
        return None

    async def fetch_files(self, session: aiohttp.ClientSession, item: TorrentItem) -> List[TorrentFile]:
        files = await self.client.get_files(session, item.hash)
        return [
            TorrentFile(
                index=i,
                name=str(f[FILE_NAME]) if f else '',
                size=int(f[FILE_SIZE]) if len(f) > FILE_SIZE else 0,
                skipped=len(f) > FILE_PRIORITY and int(f[FILE_PRIORITY] or 0) == 0,
            )
            for i, f in enumerate(files)
        ]

    async def fetch_completed(self, session: aiohttp.ClientSession) -> List[TorrentItem]:
        out: List[TorrentItem] = []
        for row in await self.client.get_torrents(session):
            probe = UTorrentItem(row)
            if probe.hash and probe.is_seeding():
                out.append(await self._wrap(session, row))
        return out

    async def skip_files(self, session: aiohttp.ClientSession, item: TorrentItem, indexes: List[int]) -> None:
        await self.client.set_file_priorities(session, item.hash, indexes, 0)

    async def delete_download(self, session: aiohttp.ClientSession, download_hash: str) -> None:
        await self.client.remove_with_data(session, download_hash)

    async def apply_category(self, session: aiohttp.ClientSession, item: TorrentItem, new_category: str, use_tag: bool) -> None:
        await self.client.set_label(session, item.hash, new_category)

    async def list_categories(self, session: aiohttp.ClientSession) -> Optional[List[str]]:
        return await self.client.get_labels(session)
