from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from core.errors import DownloadClientError
from core.utils import join_download_path
from integrations.items import TransmissionItem, TorrentItem

from .base import DownloadService, TorrentFile


FIELDS = [
    'hashString', 'name', 'status', 'isPrivate', 'trackers', 'totalSize', 'downloadedEver',
    'uploadedEver', 'rateDownload', 'rateUpload', 'eta', 'addedDate', 'doneDate',
    'secondsSeeding', 'downloadDir', 'labels', 'files', 'fileStats', 'percentDone',
]


class TransmissionClient:
    def __init__(self, name: str, base_url: str, username: Optional[str], password: Optional[str], timeout: int = 10) -> None:
        self.name = name
        url = base_url.rstrip('/')
        self.rpc_url = url if url.endswith('/rpc') else url + '/transmission/rpc'
        self.auth = aiohttp.BasicAuth(username or '', password or '') if (username or password) else None
        self.timeout = timeout
        self.session_id: Optional[str] = None

    async def rpc(self, session: aiohttp.ClientSession, method: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        body = {"method": method, "arguments": arguments}
        for _ in range(2):
            headers: Dict[str, str] = {}
            if self.session_id:
                headers['X-Transmission-Session-Id'] = self.session_id
            try:
                resp = await session.post(
                    self.rpc_url, json=body, headers=headers, auth=self.auth, timeout=aiohttp.ClientTimeout(total=self.timeout)
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise DownloadClientError(self.name, f"{method} failed: {e}") from e
            status = getattr(resp, 'status', None)
            if status == 409:
                sid = getattr(resp, 'headers', {}).get('X-Transmission-Session-Id')
                if not sid:
                    raise DownloadClientError(self.name, 'session id handshake failed')
                self.session_id = sid
                continue
            if status == 401:
                raise DownloadClientError(self.name, 'authentication failed')
            if status not in (200, 204):
                raise DownloadClientError(self.name, f"{method} returned status {status}")
            try:
                j = await resp.json()
            except (aiohttp.ContentTypeError, ValueError) as e:
                raise DownloadClientError(self.name, f"{method} returned malformed json") from e
            if not isinstance(j, dict) or j.get('result') != 'success':
                raise DownloadClientError(self.name, f"{method} failed: {(j or {}).get('result') if isinstance(j, dict) else j}")
            return j.get('arguments') or {}
        raise DownloadClientError(self.name, 'session id handshake failed')

    async def get_torrents(self, session: aiohttp.ClientSession, ids: Optional[Sequence[str]] = None, fields: Sequence[str] = FIELDS) -> List[Dict[str, Any]]:
        arguments: Dict[str, Any] = {"fields": list(fields)}
        if ids:
            arguments['ids'] = list(ids)
        result = await self.rpc(session, 'torrent-get', arguments)
        return [t for t in (result.get('torrents') or []) if isinstance(t, dict)]

    async def set_files_unwanted(self, session: aiohttp.ClientSession, torrent_id: str, indexes: Sequence[int]) -> None:
        await self.rpc(session, 'torrent-set', {"ids": [torrent_id], "files-unwanted": list(indexes)})

    async def remove(self, session: aiohttp.ClientSession, torrent_id: str, delete_local_data: bool = True) -> None:
        await self.rpc(session, 'torrent-remove', {"ids": [torrent_id], "delete-local-data": delete_local_data})

    async def set_location(self, session: aiohttp.ClientSession, torrent_id: str, location: str, move: bool = True) -> None:
        await self.rpc(session, 'torrent-set-location', {"ids": [torrent_id], "location": location, "move": move})


class TransmissionService(DownloadService):
    async def fetch_item(self, session: aiohttp.ClientSession, download_hash: str) -> Optional[TorrentItem]:
        torrents = await self.client.get_torrents(session, ids=[download_hash])
        return TransmissionItem(torrents[0]) if torrents else None

    async def fetch_files(self, session: aiohttp.ClientSession, item: TorrentItem) -> List[TorrentFile]:
        files = item.raw.get('files') or []
        stats = item.raw.get('fileStats') or []
        out = []
        for i, f in enumerate(files):
            if i >= len(stats) or not isinstance(stats[i], dict):
                # no stats, the file can not be prioritised
                out.append(TorrentFile(index=None, name=str(f.get('name') or '')))
                continue
            out.append(TorrentFile(
                index=i,
                name=str(f.get('name') or ''),
                size=int(f.get('length') or 0),
                skipped=not bool(stats[i].get('wanted', True)),
            ))
        return out

    async def fetch_completed(self, session: aiohttp.ClientSession) -> List[TorrentItem]:
        # 5 seed pending, 6 seeding
        return [TransmissionItem(t) for t in await self.client.get_torrents(session) if t.get('hashString') and t.get('status') in (5, 6)]

    async def skip_files(self, session: aiohttp.ClientSession, item: TorrentItem, indexes: List[int]) -> None:
        await self.client.set_files_unwanted(session, item.hash, indexes)

    async def delete_download(self, session: aiohttp.ClientSession, download_hash: str) -> None:
        await self.client.remove(session, download_hash, delete_local_data=True)

    async def apply_category(self, session: aiohttp.ClientSession, item: TorrentItem, new_category: str, use_tag: bool) -> None:
        # categories are the last folder of the download dir
        location = join_download_path(item.save_path, new_category)
        await self.client.set_location(session, item.hash, location, move=True)
