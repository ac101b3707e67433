from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from core.utils import host_matches_suffix, last_path_segment, to_float, to_int, tracker_hosts


def _ts(value: Any) -> Optional[datetime]:
    v = to_int(value, 0)
    if v <= 0:
        return None
    return datetime.fromtimestamp(v, tz=timezone.utc)


class TorrentItem:
    """Backend-neutral view of one torrent.

    Subclasses map their native payload onto these properties. Anything a
    backend cannot report falls back to a neutral value.
    """

    backend = 'unknown'

    def __init__(self, raw: Any) -> None:
        self.raw = raw

    # identification
    @property
    def hash(self) -> str:
        return ''

    @property
    def name(self) -> str:
        return ''

    # privacy and tracking
    @property
    def is_private(self) -> bool:
        return False

    @property
    def tracker_urls(self) -> List[str]:
        return []

    @property
    def trackers(self) -> List[str]:
        return tracker_hosts(self.tracker_urls)

    # size and progress
    @property
    def size(self) -> int:
        return 0

    @property
    def completion_percentage(self) -> float:
        return 0.0

    @property
    def downloaded_bytes(self) -> int:
        return 0

    @property
    def total_uploaded(self) -> int:
        return 0

    # speed
    @property
    def download_speed(self) -> int:
        return 0

    @property
    def upload_speed(self) -> int:
        return 0

    @property
    def ratio(self) -> float:
        return 0.0

    # time
    @property
    def eta(self) -> int:
        return 0

    @property
    def date_added(self) -> Optional[datetime]:
        return None

    @property
    def date_completed(self) -> Optional[datetime]:
        return None

    @property
    def seeding_time_seconds(self) -> int:
        return 0

    # categories
    @property
    def category(self) -> Optional[str]:
        return None

    @property
    def tags(self) -> List[str]:
        return []

    @property
    def save_path(self) -> Optional[str]:
        return None

    # state
    def is_downloading(self) -> bool:
        return False

    def is_stalled(self) -> bool:
        return False

    def is_seeding(self) -> bool:
        return False

    def is_completed(self) -> bool:
        return self.completion_percentage >= 100.0

    def is_paused(self) -> bool:
        return False

    def is_queued(self) -> bool:
        return False

    def is_checking(self) -> bool:
        return False

    def is_allocating(self) -> bool:
        return False

    def is_metadata_downloading(self) -> bool:
        return False

    def is_ignored(self, patterns: Sequence[str]) -> bool:
        if not patterns:
            return False
        h = self.hash.lower()
        cat = (self.category or '').lower()
        tags = [t.lower() for t in self.tags]
        for p in patterns:
            if not p:
                continue
            lp = str(p).lower()
            if h and h == lp:
                return True
            if cat and cat == lp:
                return True
            if lp in tags:
                return True
        return any(host_matches_suffix(url, patterns) for url in self.tracker_urls)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.hash} {self.name!r}>"


QBIT_DOWNLOADING = ('downloading', 'forceddl')
QBIT_SEEDING = ('uploading', 'forcedup', 'stalledup')
QBIT_PAUSED = ('pauseddl', 'pausedup', 'stoppeddl', 'stoppedup')
QBIT_QUEUED = ('queueddl', 'queuedup')
QBIT_CHECKING = ('checkingdl', 'checkingup', 'checkingresumedata')
QBIT_METADATA = ('metadl', 'forcedmetadl')
# qBittorrent reports an unknown eta as 8640000 seconds
QBIT_ETA_INFINITY = 8640000


class QBitItem(TorrentItem):
    backend = 'qbittorrent'

    def __init__(self, info: Dict[str, Any], trackers: Optional[List[Dict[str, Any]]] = None, is_private: bool = False) -> None:
        super().__init__(info)
        self._trackers = [t for t in (trackers or []) if isinstance(t, dict)]
        self._is_private = bool(is_private)

    @property
    def _state(self) -> str:
        return str(self.raw.get('state') or '').lower()

    @property
    def hash(self) -> str:
        return str(self.raw.get('hash') or '')

    @property
    def name(self) -> str:
        return str(self.raw.get('name') or '')

    @property
    def is_private(self) -> bool:
        return self._is_private

    @property
    def tracker_urls(self) -> List[str]:
        # DHT/PeX/LSD rows are reported as "** [DHT] **"
        return [str(t.get('url')) for t in self._trackers if t.get('url') and '**' not in str(t.get('url'))]

    @property
    def size(self) -> int:
        return to_int(self.raw.get('size'))

    @property
    def completion_percentage(self) -> float:
        return to_float(self.raw.get('progress')) * 100.0

    @property
    def downloaded_bytes(self) -> int:
        return to_int(self.raw.get('downloaded'))

    @property
    def total_uploaded(self) -> int:
        return to_int(self.raw.get('uploaded'))

    @property
    def download_speed(self) -> int:
        return to_int(self.raw.get('dlspeed'))

    @property
    def upload_speed(self) -> int:
        return to_int(self.raw.get('upspeed'))

    @property
    def ratio(self) -> float:
        return to_float(self.raw.get('ratio'))

    @property
    def eta(self) -> int:
        eta = to_int(self.raw.get('eta'))
        return 0 if eta >= QBIT_ETA_INFINITY else eta

    @property
    def date_added(self) -> Optional[datetime]:
        return _ts(self.raw.get('added_on'))

    @property
    def date_completed(self) -> Optional[datetime]:
        return _ts(self.raw.get('completion_on'))

    @property
    def seeding_time_seconds(self) -> int:
        return to_int(self.raw.get('seeding_time'))

    @property
    def category(self) -> Optional[str]:
        return self.raw.get('category') or None

    @property
    def tags(self) -> List[str]:
        tags = self.raw.get('tags')
        if isinstance(tags, list):
            return [str(t).strip() for t in tags if str(t).strip()]
        return [t.strip() for t in str(tags or '').split(',') if t.strip()]

    @property
    def save_path(self) -> Optional[str]:
        return self.raw.get('save_path') or None

    def is_downloading(self) -> bool:
        return self._state in QBIT_DOWNLOADING

    def is_stalled(self) -> bool:
        return self._state == 'stalleddl'

    def is_seeding(self) -> bool:
        return self._state in QBIT_SEEDING

    def is_paused(self) -> bool:
        return self._state in QBIT_PAUSED

    def is_queued(self) -> bool:
        return self._state in QBIT_QUEUED

    def is_checking(self) -> bool:
        return self._state in QBIT_CHECKING

    def is_allocating(self) -> bool:
        return self._state == 'allocating'

    def is_metadata_downloading(self) -> bool:
        return self._state in QBIT_METADATA


class TransmissionItem(TorrentItem):
    """Transmission status codes: 0 stopped, 1 check pending, 2 checking,
    3 download pending, 4 downloading, 5 seed pending, 6 seeding."""

    backend = 'transmission'

    @property
    def _status(self) -> int:
        return to_int(self.raw.get('status'), -1)

    @property
    def hash(self) -> str:
        return str(self.raw.get('hashString') or '')

    @property
    def name(self) -> str:
        return str(self.raw.get('name') or '')

    @property
    def is_private(self) -> bool:
        return bool(self.raw.get('isPrivate') or False)

    @property
    def tracker_urls(self) -> List[str]:
        return [str(t.get('announce')) for t in (self.raw.get('trackers') or []) if isinstance(t, dict) and t.get('announce')]

    @property
    def size(self) -> int:
        return to_int(self.raw.get('totalSize'))

    @property
    def completion_percentage(self) -> float:
        total = self.size
        if total <= 0:
            return 0.0
        return self.downloaded_bytes / float(total) * 100.0

    @property
    def downloaded_bytes(self) -> int:
        return to_int(self.raw.get('downloadedEver'))

    @property
    def total_uploaded(self) -> int:
        return to_int(self.raw.get('uploadedEver'))

    @property
    def download_speed(self) -> int:
        return to_int(self.raw.get('rateDownload'))

    @property
    def upload_speed(self) -> int:
        return to_int(self.raw.get('rateUpload'))

    @property
    def ratio(self) -> float:
        up, down = self.total_uploaded, self.downloaded_bytes
        if up > 0 and down > 0:
            return up / float(down)
        return 0.0

    @property
    def eta(self) -> int:
        return to_int(self.raw.get('eta'))

    @property
    def date_added(self) -> Optional[datetime]:
        return _ts(self.raw.get('addedDate'))

    @property
    def date_completed(self) -> Optional[datetime]:
        return _ts(self.raw.get('doneDate'))

    @property
    def seeding_time_seconds(self) -> int:
        return to_int(self.raw.get('secondsSeeding'))

    @property
    def category(self) -> Optional[str]:
        return last_path_segment(self.raw.get('downloadDir'))

    @property
    def tags(self) -> List[str]:
        return [str(x) for x in (self.raw.get('labels') or [])]

    @property
    def save_path(self) -> Optional[str]:
        return self.raw.get('downloadDir') or None

    def is_downloading(self) -> bool:
        return self._status == 4

    def is_stalled(self) -> bool:
        return self._status == 4 and self.download_speed <= 0 and self.eta <= 0

    def is_seeding(self) -> bool:
        return self._status == 6

    def is_paused(self) -> bool:
        return self._status == 0

    def is_queued(self) -> bool:
        return self._status in (1, 3, 5)

    def is_checking(self) -> bool:
        return self._status == 2

    def is_ignored(self, patterns: Sequence[str]) -> bool:
        # transmission labels are not matched against the ignore list
        if not patterns:
            return False
        h = self.hash.lower()
        cat = (self.category or '').lower()
        for p in patterns:
            lp = str(p or '').lower()
            if lp and (lp == h or lp == cat):
                return True
        return any(host_matches_suffix(url, patterns) for url in self.tracker_urls)


class DelugeItem(TorrentItem):
    backend = 'deluge'

    @property
    def _state(self) -> str:
        return str(self.raw.get('state') or '').lower()

    @property
    def hash(self) -> str:
        return str(self.raw.get('hash') or '')

    @property
    def name(self) -> str:
        return str(self.raw.get('name') or '')

    @property
    def is_private(self) -> bool:
        return bool(self.raw.get('private') or False)

    @property
    def tracker_urls(self) -> List[str]:
        return [str(t.get('url')) for t in (self.raw.get('trackers') or []) if isinstance(t, dict) and t.get('url')]

    @property
    def size(self) -> int:
        return to_int(self.raw.get('total_size'))

    @property
    def completion_percentage(self) -> float:
        total = self.size
        if total <= 0:
            return 0.0
        return self.downloaded_bytes / float(total) * 100.0

    @property
    def downloaded_bytes(self) -> int:
        return to_int(self.raw.get('total_done'))

    @property
    def total_uploaded(self) -> int:
        return int(self.ratio * self.downloaded_bytes)

    @property
    def download_speed(self) -> int:
        return to_int(self.raw.get('download_payload_rate'))

    @property
    def upload_speed(self) -> int:
        return to_int(self.raw.get('upload_payload_rate'))

    @property
    def ratio(self) -> float:
        return to_float(self.raw.get('ratio'))

    @property
    def eta(self) -> int:
        return to_int(self.raw.get('eta'))

    @property
    def seeding_time_seconds(self) -> int:
        return to_int(self.raw.get('seeding_time'))

    @property
    def category(self) -> Optional[str]:
        return self.raw.get('label') or None

    @property
    def save_path(self) -> Optional[str]:
        return self.raw.get('download_location') or self.raw.get('save_path') or None

    def is_downloading(self) -> bool:
        return self._state == 'downloading'

    def is_stalled(self) -> bool:
        return self._state == 'downloading' and self.download_speed == 0 and self.eta == 0

    def is_seeding(self) -> bool:
        return self._state == 'seeding'

    def is_paused(self) -> bool:
        return self._state == 'paused'

    def is_queued(self) -> bool:
        return self._state == 'queued'

    def is_checking(self) -> bool:
        return self._state == 'checking'

    def is_allocating(self) -> bool:
        return self._state == 'allocating'


# µTorrent status bit field
UT_STARTED = 1
UT_CHECKING = 2
UT_START_AFTER_CHECK = 4
UT_CHECKED = 8
UT_ERROR = 16
UT_PAUSED = 32
UT_QUEUED = 64
UT_LOADED = 128

# positions inside one row of the list=1 "torrents" array
UT_COLUMNS = {
    'hash': 0,
    'status': 1,
    'name': 2,
    'size': 3,
    'progress': 4,
    'downloaded': 5,
    'uploaded': 6,
    'ratio': 7,
    'upload_speed': 8,
    'download_speed': 9,
    'eta': 10,
    'label': 11,
    'remaining': 18,
    'status_message': 21,
    'date_added': 23,
    'date_completed': 24,
    'save_path': 26,
}


class UTorrentItem(TorrentItem):
    backend = 'utorrent'

    def __init__(self, row: Sequence[Any], properties: Optional[Dict[str, Any]] = None, now: Optional[float] = None) -> None:
        super().__init__(list(row))
        self.properties = properties if isinstance(properties, dict) else {}
        self._now = now

    def _col(self, name: str, default: Any = None) -> Any:
        idx = UT_COLUMNS[name]
        if idx < len(self.raw):
            return self.raw[idx]
        return default

    @property
    def status(self) -> int:
        return to_int(self._col('status'))

    @property
    def hash(self) -> str:
        return str(self._col('hash') or '')

    @property
    def name(self) -> str:
        return str(self._col('name') or '')

    @property
    def is_private(self) -> bool:
        # pex is forced off (-1) for private torrents
        return to_int(self.properties.get('pex'), 0) == -1

    @property
    def tracker_urls(self) -> List[str]:
        raw = self.properties.get('trackers') or ''
        return [line.strip() for line in str(raw).replace('\r', '').split('\n') if line.strip()]

    @property
    def size(self) -> int:
        return to_int(self._col('size'))

    @property
    def completion_percentage(self) -> float:
        # progress is reported in per mille
        return to_int(self._col('progress')) / 10.0

    @property
    def downloaded_bytes(self) -> int:
        return to_int(self._col('downloaded'))

    @property
    def total_uploaded(self) -> int:
        return to_int(self._col('uploaded'))

    @property
    def download_speed(self) -> int:
        return to_int(self._col('download_speed'))

    @property
    def upload_speed(self) -> int:
        return to_int(self._col('upload_speed'))

    @property
    def ratio(self) -> float:
        return to_int(self._col('ratio')) / 1000.0

    @property
    def eta(self) -> int:
        return to_int(self._col('eta'))

    @property
    def date_added(self) -> Optional[datetime]:
        return _ts(self._col('date_added'))

    @property
    def date_completed(self) -> Optional[datetime]:
        return _ts(self._col('date_completed'))

    @property
    def seeding_time_seconds(self) -> int:
        completed = to_int(self._col('date_completed'))
        if completed <= 0:
            return 0
        now = self._now if self._now is not None else time.time()
        return max(0, int(now - completed))

    @property
    def category(self) -> Optional[str]:
        return self._col('label') or None

    @property
    def save_path(self) -> Optional[str]:
        return self._col('save_path') or None

    def is_downloading(self) -> bool:
        s = self.status
        return bool(s & UT_STARTED) and bool(s & UT_CHECKED) and not (s & UT_ERROR)

    def is_stalled(self) -> bool:
        return self.is_downloading() and self.download_speed == 0 and self.eta == 0

    def is_seeding(self) -> bool:
        return self.is_downloading() and to_int(self._col('date_completed')) > 0

    def is_completed(self) -> bool:
        return to_int(self._col('progress')) >= 1000

    def is_paused(self) -> bool:
        return bool(self.status & UT_PAUSED)

    def is_queued(self) -> bool:
        return bool(self.status & UT_QUEUED)

    def is_checking(self) -> bool:
        return bool(self.status & UT_CHECKING)
