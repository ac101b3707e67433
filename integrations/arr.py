from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from core.errors import ArrRequestError
from core.rules import FailedImportConfig, PatternMode
from core.striker import StrikeContext, Striker, StrikeType
from integrations.services import RequestManager


ARR_TYPES: Dict[str, Dict[str, Any]] = {
    'sonarr': {
        'name': 'Sonarr',
        'api': 'v3',
        'queue_params': {'includeUnknownSeriesItems': 'true', 'includeSeries': 'true', 'includeEpisode': 'true'},
    },
    'radarr': {
        'name': 'Radarr',
        'api': 'v3',
        'queue_params': {'includeUnknownMovieItems': 'true', 'includeMovie': 'true'},
    },
    'lidarr': {
        'name': 'Lidarr',
        'api': 'v1',
        'queue_params': {'includeUnknownArtistItems': 'true', 'includeArtist': 'true', 'includeAlbum': 'true'},
    },
    'readarr': {
        'name': 'Readarr',
        'api': 'v1',
        'queue_params': {'includeUnknownAuthorItems': 'true', 'includeAuthor': 'true', 'includeBook': 'true'},
    },
    'whisparr': {
        'name': 'Whisparr',
        'api': 'v3',
        'queue_params': {'includeUnknownSeriesItems': 'true', 'includeSeries': 'true', 'includeEpisode': 'true'},
    },
}

_IMPORT_WARNING_STATES = ('importblocked', 'importpending', 'importfailed')


@dataclass
class ArrInstance:
    name: str
    type: str
    url: str
    api_key: str
    # -1 falls back to the global failed import setting, 0 disables it
    failed_import_max_strikes: int = -1

    @property
    def type_name(self) -> str:
        return ARR_TYPES.get(self.type, {}).get('name', self.type.capitalize())

    @property
    def api_url(self) -> str:
        version = ARR_TYPES.get(self.type, {}).get('api', 'v3')
        return f"{self.url.rstrip('/')}/api/{version}"


def is_record_valid(record: Dict[str, Any]) -> bool:
    if not record.get('downloadId'):
        logging.debug(f"skip | download id is null for {record.get('title')}")
        return False
    return True


def status_message_texts(record: Dict[str, Any]) -> List[str]:
    texts: List[str] = []
    for sm in record.get('statusMessages') or []:
        if not isinstance(sm, dict):
            continue
        for m in sm.get('messages') or []:
            if m and m not in texts:
                texts.append(str(m))
        title = sm.get('title')
        if title and title not in texts:
            texts.append(str(title))
    return texts


def matches_failed_import_patterns(record: Dict[str, Any], cfg: FailedImportConfig) -> bool:
    """True when the record's status messages pass the include/exclude filter."""
    title = record.get('title')
    if not record.get('statusMessages'):
        logging.warning(f"skip failed import check | no status message found | {title}")
        return False
    messages = [m.lower() for m in status_message_texts(record)]
    patterns = [p.strip().lower() for p in cfg.patterns if p and p.strip()]
    matched = any(p in m for m in messages for p in patterns)
    if cfg.pattern_mode == PatternMode.EXCLUDE and matched:
        logging.debug(f"skip failed import check | excluded pattern matched | {title}")
        return False
    if cfg.pattern_mode == PatternMode.INCLUDE and (not matched or not cfg.patterns):
        logging.debug(f"skip failed import check | no included pattern matched | {title}")
        return False
    return True


def build_search_command(instance_type: str, records: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    def _collect(key: str, list_key: Optional[str] = None) -> List[Any]:
        out: List[Any] = []
        for r in records:
            if r.get(key) is not None and r[key] not in out:
                out.append(r[key])
            if list_key and isinstance(r.get(list_key), list):
                for v in r[list_key]:
                    if v not in out:
                        out.append(v)
        return out

    if instance_type in ('sonarr', 'whisparr'):
        episodes = _collect('episodeId', 'episodeIds')
        if episodes:
            return {"name": "EpisodeSearch", "episodeIds": episodes}
        series = _collect('seriesId')
        if series:
            return {"name": "SeriesSearch", "seriesId": series[0]}
        return None
    if instance_type == 'radarr':
        movies = _collect('movieId')
        return {"name": "MoviesSearch", "movieIds": movies} if movies else None
    if instance_type == 'lidarr':
        albums = _collect('albumId')
        return {"name": "AlbumSearch", "albumIds": albums} if albums else None
    if instance_type == 'readarr':
        books = _collect('bookId')
        return {"name": "BookSearch", "bookIds": books} if books else None
    return None


@dataclass
class ArrClient:
    """Queue, delete, search and failed-import logic for one arr type."""

    instance_type: str
    request_manager: RequestManager
    striker: Optional[Striker] = None
    failed_import: FailedImportConfig = field(default_factory=FailedImportConfig)
    page_size: int = 100

    async def iter_queue(self, session: aiohttp.ClientSession, instance: ArrInstance) -> AsyncIterator[Dict[str, Any]]:
        queue_url = f"{instance.api_url}/queue"
        extra = ARR_TYPES.get(self.instance_type, {}).get('queue_params', {})
        initial = await self.request_manager.throttled_request(
            session, instance.name, queue_url, instance.api_key, params={'page': 1, 'pageSize': 1, **extra}
        )
        if not isinstance(initial, dict) or 'totalRecords' not in initial:
            raise ArrRequestError(instance.url, 'queue list failed')
        total = int(initial.get('totalRecords') or 0)
        if not total:
            logging.debug(f"{instance.type_name} {instance.name}: queue empty")
            return
        page_size = min(total, self.page_size) or 1
        pages = (total + page_size - 1) // page_size
        for page in range(pages):
            data = await self.request_manager.throttled_request(
                session,
                instance.name,
                queue_url,
                instance.api_key,
                params={'page': page + 1, 'pageSize': page_size, **extra},
            )
            if not isinstance(data, dict) or not isinstance(data.get('records'), list):
                raise ArrRequestError(instance.url, f"unrecognized queue list response on page {page + 1}/{pages}")
            for record in data['records']:
                if isinstance(record, dict):
                    yield record

    async def delete_queue_item(
        self,
        session: aiohttp.ClientSession,
        instance: ArrInstance,
        record: Dict[str, Any],
        remove_from_client: bool,
    ) -> None:
        url = f"{instance.api_url}/queue/{record['id']}"
        params = {
            'removeFromClient': 'true' if remove_from_client else 'false',
            'blocklist': 'true',
            'skipRedownload': 'true',
            'changeCategory': 'false',
        }
        try:
            resp = await self.request_manager.throttled_request(
                session, instance.name, url, instance.api_key, params=params, method='delete', raise_for_status=True
            )
        except aiohttp.ClientResponseError as e:
            if e.status == 404:
                raise ArrRequestError(
                    instance.url,
                    f"Item might have already been deleted by your {instance.type_name} instance",
                    status=404,
                ) from e
            raise ArrRequestError(instance.url, f"queue delete failed | {record.get('title')}", status=e.status) from e
        if resp is None:
            raise ArrRequestError(instance.url, f"queue delete failed | {record.get('title')}")

    async def search_items(self, session: aiohttp.ClientSession, instance: ArrInstance, records: List[Dict[str, Any]]) -> bool:
        command = build_search_command(self.instance_type, records)
        if command is None:
            logging.debug(f"{instance.type_name} {instance.name}: nothing to search for")
            return False
        resp = await self.request_manager.throttled_request(
            session, instance.name, f"{instance.api_url}/command", instance.api_key, json_data=command, method='post'
        )
        if resp is None:
            raise ArrRequestError(instance.url, f"search command {command['name']} failed")
        logging.info(f"{command['name']} triggered | {instance.url}")
        return True

    def has_failed_import(self, record: Dict[str, Any]) -> bool:
        tds = str(record.get('trackedDownloadStatus') or '').lower()
        state = str(record.get('trackedDownloadState') or '').lower()
        status = str(record.get('status') or '').lower()
        warn = tds == 'warning'
        if warn and state in _IMPORT_WARNING_STATES:
            return True
        return self.instance_type == 'lidarr' and status in ('failed', 'completed') and warn

    async def should_remove_from_queue(
        self,
        record: Dict[str, Any],
        is_private: bool,
        arr_max_strikes: int,
        context: Optional[StrikeContext] = None,
    ) -> bool:
        title = record.get('title')
        if self.failed_import.ignore_private and is_private:
            logging.debug(f"skip failed import check | download is private | {title}")
            return False
        if not self.has_failed_import(record):
            return False
        if not matches_failed_import_patterns(record, self.failed_import):
            return False
        if arr_max_strikes == 0:
            logging.debug(f"skip failed import check | arr max strikes is 0 | {title}")
            return False
        max_strikes = arr_max_strikes if arr_max_strikes > 0 else self.failed_import.max_strikes
        messages = record.get('statusMessages') or []
        logging.info(
            f"Item {title} has failed import status with the following reason(s):\n"
            + '\n'.join(json.dumps(m, ensure_ascii=False) for m in messages)
        )
        if self.striker is None:
            return False
        ctx = context or StrikeContext()
        ctx.failed_import_reasons = messages
        return await self.striker.strike_and_check_limit(
            str(record.get('downloadId') or ''), str(title or ''), max_strikes, StrikeType.FAILED_IMPORT, ctx
        )
