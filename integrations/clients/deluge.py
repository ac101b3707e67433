from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from core.errors import DownloadClientError
from integrations.items import DelugeItem, TorrentItem

from .base import DownloadService, TorrentFile


STATUS_KEYS = [
    'hash', 'name', 'state', 'private', 'total_size', 'total_done', 'ratio', 'download_payload_rate',
    'upload_payload_rate', 'eta', 'seeding_time', 'label', 'download_location', 'trackers',
]


def flatten_contents(node: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flatten the nested ``web.get_torrent_files`` tree into file dicts."""
    out: List[Dict[str, Any]] = []
    for child in (node.get('contents') or {}).values():
        if not isinstance(child, dict):
            continue
        if child.get('type') == 'dir':
            out.extend(flatten_contents(child))
        else:
            out.append(child)
    return sorted(out, key=lambda f: int(f.get('index', 0)))


class DelugeClient:
    def __init__(self, name: str, base_url: str, password: Optional[str], timeout: int = 10) -> None:
        self.name = name
        url = base_url.rstrip('/')
        self.url = url if url.endswith('/json') else url + '/json'
        self.password = password or 'deluge'
        self.timeout = timeout
        self._logged_in = False
        self._next_id = 0

    async def _post(self, session: aiohttp.ClientSession, method: str, params: List[Any]) -> Any:
        self._next_id += 1
        body = {"method": method, "params": params, "id": self._next_id}
        try:
            resp = await session.post(self.url, json=body, timeout=aiohttp.ClientTimeout(total=self.timeout))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DownloadClientError(self.name, f"{method} failed: {e}") from e
        if getattr(resp, 'status', None) not in (200, 204):
            raise DownloadClientError(self.name, f"{method} returned status {getattr(resp, 'status', None)}")
        try:
            j = await resp.json()
        except (aiohttp.ContentTypeError, ValueError) as e:
            raise DownloadClientError(self.name, f"{method} returned malformed json") from e
        if not isinstance(j, dict):
            raise DownloadClientError(self.name, f"{method} returned an unexpected payload")
        if j.get('error'):
            err = j['error']
            raise DownloadClientError(self.name, f"{method} failed: {err.get('message') if isinstance(err, dict) else err}")
        return j.get('result')

    async def login(self, session: aiohttp.ClientSession) -> None:
        ok = await self._post(session, 'auth.login', [self.password])
        if not ok:
            raise DownloadClientError(self.name, 'login failed')
        self._logged_in = True
        connected = await self._post(session, 'web.connected', [])
        if connected:
            return
        hosts = await self._post(session, 'web.get_hosts', [])
        if not hosts:
            raise DownloadClientError(self.name, 'no daemon host configured in the web ui')
        logging.debug(f"{self.name}: connecting web ui to daemon {hosts[0][0]}")
        await self._post(session, 'web.connect', [hosts[0][0]])

    async def call(self, session: aiohttp.ClientSession, method: str, params: List[Any]) -> Any:
        if not self._logged_in:
            await self.login(session)
        return await self._post(session, method, params)

    async def get_torrent_status(self, session: aiohttp.ClientSession, info_hash: str) -> Optional[Dict[str, Any]]:
        result = await self.call(session, 'web.get_torrent_status', [info_hash, STATUS_KEYS])
        return result if isinstance(result, dict) and result.get('hash') else None

    async def get_status_for_all(self, session: aiohttp.ClientSession) -> List[Dict[str, Any]]:
        result = await self.call(session, 'core.get_torrents_status', [{}, STATUS_KEYS])
        if not isinstance(result, dict):
            return []
        out = []
        for info_hash, status in result.items():
            if isinstance(status, dict):
                status.setdefault('hash', info_hash)
                out.append(status)
        return out

    async def get_torrent_files(self, session: aiohttp.ClientSession, info_hash: str) -> List[Dict[str, Any]]:
        result = await self.call(session, 'web.get_torrent_files', [info_hash])
        return flatten_contents(result) if isinstance(result, dict) else []

    async def set_file_priorities(self, session: aiohttp.ClientSession, info_hash: str, priorities: Sequence[int]) -> None:
        await self.call(session, 'core.set_torrent_options', [[info_hash], {"file_priorities": list(priorities)}])

    async def remove_torrent(self, session: aiohttp.ClientSession, info_hash: str, remove_data: bool = True) -> None:
        await self.call(session, 'core.remove_torrent', [info_hash, remove_data])

    async def get_labels(self, session: aiohttp.ClientSession) -> List[str]:
        result = await self.call(session, 'label.get_labels', [])
        return [str(x) for x in result] if isinstance(result, list) else []

    async def create_label(self, session: aiohttp.ClientSession, label: str) -> None:
        await self.call(session, 'label.add', [label])

    async def set_torrent_label(self, session: aiohttp.ClientSession, info_hash: str, label: str) -> None:
        await self.call(session, 'label.set_torrent', [info_hash, label])


class DelugeService(DownloadService):
    async def fetch_item(self, session: aiohttp.ClientSession, download_hash: str) -> Optional[TorrentItem]:
        status = await self.client.get_torrent_status(session, download_hash.lower())
        return DelugeItem(status) if status else None

    async def fetch_files(self, session: aiohttp.ClientSession, item: TorrentItem) -> List[TorrentFile]:
        files = await self.client.get_torrent_files(session, item.hash)
        return [
            TorrentFile(
                index=int(f['index']) if f.get('index') is not None else None,
                name=str(f.get('path') or f.get('name') or ''),
                size=int(f.get('size') or 0),
                skipped=int(f.get('priority') or 0) == 0,
            )
            for f in files
        ]

    async def fetch_completed(self, session: aiohttp.ClientSession) -> List[TorrentItem]:
        items = [DelugeItem(s) for s in await self.client.get_status_for_all(session)]
        return [i for i in items if i.hash and i.is_seeding()]

    async def skip_files(self, session: aiohttp.ClientSession, item: TorrentItem, indexes: List[int]) -> None:
        # deluge takes the full priority list, in file index order
        files = await self.client.get_torrent_files(session, item.hash)
        blocked = set(indexes)
        priorities = [0 if int(f.get('index', -1)) in blocked else int(f.get('priority') or 0) for f in files]
        await self.client.set_file_priorities(session, item.hash, priorities)

    async def delete_download(self, session: aiohttp.ClientSession, download_hash: str) -> None:
        await self.client.remove_torrent(session, download_hash.lower(), remove_data=True)

    async def apply_category(self, session: aiohttp.ClientSession, item: TorrentItem, new_category: str, use_tag: bool) -> None:
        await self.client.set_torrent_label(session, item.hash, new_category)

    async def list_categories(self, session: aiohttp.ClientSession) -> Optional[List[str]]:
        return await self.client.get_labels(session)

    async def add_category(self, session: aiohttp.ClientSession, name: str) -> None:
        await self.client.create_label(session, name)
