from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from core.errors import DownloadClientError
from core.evaluator import DeleteReason
from integrations.items import QBitItem, TorrentItem

from .base import DownloadService, TorrentFile


class QBitClient:
    """Minimal qBittorrent Web API v2 client.

    The session cookie set by ``auth/login`` is kept by the aiohttp session;
    a 403 on any call triggers one fresh login.
    """

    def __init__(self, name: str, base_url: str, username: Optional[str], password: Optional[str], timeout: int = 10) -> None:
        self.name = name
        self.base_url = base_url.rstrip('/')
        self.username = username or ''
        self.password = password or ''
        self.timeout = timeout
        self._logged_in = False

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/v2/{path}"

    async def login(self, session: aiohttp.ClientSession) -> None:
        form = aiohttp.FormData()
        form.add_field('username', self.username)
        form.add_field('password', self.password)
        try:
            resp = await session.post(self._url('auth/login'), data=form, timeout=aiohttp.ClientTimeout(total=self.timeout))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DownloadClientError(self.name, f"login failed: {e}") from e
        if getattr(resp, 'status', None) != 200:
            raise DownloadClientError(self.name, f"login failed with status {getattr(resp, 'status', None)}")
        self._logged_in = True

    async def get_version(self, session: aiohttp.ClientSession) -> str:
        if not self._logged_in:
            await self.login(session)
        try:
            resp = await session.get(self._url('app/version'), timeout=aiohttp.ClientTimeout(total=self.timeout))
            if getattr(resp, 'status', None) != 200:
                raise DownloadClientError(self.name, f"app/version returned status {getattr(resp, 'status', None)}")
            return (await resp.text()).strip()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DownloadClientError(self.name, f"app/version failed: {e}") from e

    async def _call(self, session: aiohttp.ClientSession, method: str, path: str, *, params=None, form=None, want_json=True) -> Any:
        if not self._logged_in:
            await self.login(session)
        for attempt in (1, 2):
            try:
                timeout = aiohttp.ClientTimeout(total=self.timeout)
                if method == 'GET':
                    resp = await session.get(self._url(path), params=params, timeout=timeout)
                else:
                    data = aiohttp.FormData()
                    for k, v in (form or {}).items():
                        data.add_field(k, str(v))
                    resp = await session.post(self._url(path), data=data, timeout=timeout)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise DownloadClientError(self.name, f"{path} failed: {e}") from e
            status = getattr(resp, 'status', None)
            if status == 403 and attempt == 1:
                logging.debug(f"{self.name}: session expired, logging in again")
                await self.login(session)
                continue
            if status not in (200, 204):
                raise DownloadClientError(self.name, f"{path} returned status {status}")
            if not want_json:
                return None
            try:
                return await resp.json()
            except (aiohttp.ContentTypeError, ValueError) as e:
                raise DownloadClientError(self.name, f"{path} returned malformed json") from e
        return None

    async def get_torrents(
        self,
        session: aiohttp.ClientSession,
        hashes: Optional[Sequence[str]] = None,
        filter: Optional[str] = None,
        category: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {}
        if hashes:
            params['hashes'] = '|'.join(hashes)
        if filter:
            params['filter'] = filter
        if category is not None:
            params['category'] = category
        data = await self._call(session, 'GET', 'torrents/info', params=params)
        return [t for t in data if isinstance(t, dict)] if isinstance(data, list) else []

    async def get_properties(self, session: aiohttp.ClientSession, info_hash: str) -> Optional[Dict[str, Any]]:
        data = await self._call(session, 'GET', 'torrents/properties', params={'hash': info_hash})
        return data if isinstance(data, dict) else None

    async def get_trackers(self, session: aiohttp.ClientSession, info_hash: str) -> List[Dict[str, Any]]:
        data = await self._call(session, 'GET', 'torrents/trackers', params={'hash': info_hash})
        return [t for t in data if isinstance(t, dict)] if isinstance(data, list) else []

    async def get_files(self, session: aiohttp.ClientSession, info_hash: str) -> List[Dict[str, Any]]:
        data = await self._call(session, 'GET', 'torrents/files', params={'hash': info_hash})
        return [f for f in data if isinstance(f, dict)] if isinstance(data, list) else []

    async def set_file_priority(self, session: aiohttp.ClientSession, info_hash: str, file_ids: Sequence[int], priority: int = 0) -> None:
        form = {'hash': info_hash, 'id': '|'.join(str(i) for i in file_ids), 'priority': priority}
        await self._call(session, 'POST', 'torrents/filePrio', form=form, want_json=False)

    async def delete(self, session: aiohttp.ClientSession, hashes: Sequence[str], delete_files: bool = True) -> None:
        form = {'hashes': '|'.join(hashes), 'deleteFiles': 'true' if delete_files else 'false'}
        await self._call(session, 'POST', 'torrents/delete', form=form, want_json=False)

    async def get_categories(self, session: aiohttp.ClientSession) -> Dict[str, Any]:
        data = await self._call(session, 'GET', 'torrents/categories')
        return data if isinstance(data, dict) else {}

    async def create_category(self, session: aiohttp.ClientSession, name: str) -> None:
        await self._call(session, 'POST', 'torrents/createCategory', form={'category': name, 'savePath': ''}, want_json=False)

    async def set_category(self, session: aiohttp.ClientSession, hashes: Sequence[str], category: str) -> None:
        await self._call(session, 'POST', 'torrents/setCategory', form={'hashes': '|'.join(hashes), 'category': category}, want_json=False)

    async def add_tags(self, session: aiohttp.ClientSession, hashes: Sequence[str], tags: Sequence[str]) -> None:
        await self._call(session, 'POST', 'torrents/addTags', form={'hashes': '|'.join(hashes), 'tags': ','.join(tags)}, want_json=False)


def _is_private(properties: Optional[Dict[str, Any]]) -> bool:
    if not properties:
        return False
    value = properties.get('is_private')
    if isinstance(value, str):
        return value.strip().lower() == 'true'
    return bool(value)


class QBitService(DownloadService):
    supports_tags = True

    async def _wrap(self, session: aiohttp.ClientSession, info: Dict[str, Any]) -> Optional[QBitItem]:
        info_hash = str(info.get('hash') or '')
        trackers = await self.client.get_trackers(session, info_hash)
        properties = await self.client.get_properties(session, info_hash)
        if properties is None:
            logging.error(f"Failed to find torrent properties for {info.get('name')}")
            return None
        return QBitItem(info, trackers, _is_private(properties))

    async def fetch_item(self, session: aiohttp.ClientSession, download_hash: str) -> Optional[TorrentItem]:
        torrents = await self.client.get_torrents(session, hashes=[download_hash])
        if not torrents:
            return None
        return await self._wrap(session, torrents[0])

    async def fetch_files(self, session: aiohttp.ClientSession, item: TorrentItem) -> List[TorrentFile]:
        files = await self.client.get_files(session, item.hash)
        out = []
        for pos, f in enumerate(files):
            index = f.get('index', pos)
            out.append(TorrentFile(
                index=int(index) if index is not None else None,
                name=str(f.get('name') or ''),
                size=int(f.get('size') or 0),
                skipped=int(f.get('priority') or 0) == 0,
            ))
        return out

    async def fetch_completed(self, session: aiohttp.ClientSession) -> List[TorrentItem]:
        out: List[TorrentItem] = []
        for info in await self.client.get_torrents(session, filter='completed'):
            if not info.get('hash'):
                continue
            item = await self._wrap(session, info)
            if item is not None:
                out.append(item)
        return out

    async def skip_files(self, session: aiohttp.ClientSession, item: TorrentItem, indexes: List[int]) -> None:
        await self.client.set_file_priority(session, item.hash, indexes, 0)

    async def delete_download(self, session: aiohttp.ClientSession, download_hash: str) -> None:
        await self.client.delete(session, [download_hash], delete_files=True)

    async def apply_category(self, session: aiohttp.ClientSession, item: TorrentItem, new_category: str, use_tag: bool) -> None:
        if use_tag:
            await self.client.add_tags(session, [item.hash], [new_category])
            return
        await self.client.set_category(session, [item.hash], new_category)

    async def list_categories(self, session: aiohttp.ClientSession) -> Optional[List[str]]:
        cats = await self.client.get_categories(session)
        return [str(v.get('name') or k) if isinstance(v, dict) else str(k) for k, v in cats.items()]

    async def add_category(self, session: aiohttp.ClientSession, name: str) -> None:
        await self.client.create_category(session, name)

    def all_skipped_reason(self, item: TorrentItem) -> DeleteReason:
        # qBittorrent completes a torrent whose files were all skipped at add time
        if item.date_completed is not None and item.downloaded_bytes == 0:
            logging.debug(f"all files are unwanted by qBit | removing download | {item.name}")
            return DeleteReason.ALL_FILES_SKIPPED_BY_QBIT
        return DeleteReason.ALL_FILES_SKIPPED

    async def version(self, session: aiohttp.ClientSession) -> Optional[str]:
        return await self.client.get_version(session)
