from __future__ import annotations

import re
from typing import Any, Iterable, List, Optional
from urllib.parse import urlparse

from core.errors import ConfigError


_SIZE_RE = re.compile(r"^\s*(?P<num>\d+(?:\.\d+)?)\s*(?P<unit>[A-Za-z]*)\s*$")

_SIZE_MULTIPLIERS = {
    '': 1,
    'b': 1,
    'bytes': 1,
    'kb': 1024,
    'kib': 1024,
    'mb': 1024 ** 2,
    'mib': 1024 ** 2,
    'gb': 1024 ** 3,
    'gib': 1024 ** 3,
    'tb': 1024 ** 4,
    'tib': 1024 ** 4,
}

_SPEED_SUFFIXES = ('/s', 'ps')


def parse_byte_size(value: Any) -> Optional[int]:
    """Parse ``"50 GB"``, ``"1.5MB"``, ``"512"`` or a plain number into bytes.

    ``None`` and blank strings mean "not set" and return ``None``. Anything
    else that does not parse raises ``ConfigError``.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"invalid byte size: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ConfigError(f"byte size cannot be negative: {value!r}")
        return int(value)
    text = str(value).strip()
    if not text:
        return None
    match = _SIZE_RE.match(text)
    if not match:
        raise ConfigError(f"invalid byte size: {value!r}")
    unit = match.group('unit').lower()
    if unit not in _SIZE_MULTIPLIERS:
        raise ConfigError(f"unknown byte size unit '{match.group('unit')}' in {value!r}")
    return int(float(match.group('num')) * _SIZE_MULTIPLIERS[unit])


def parse_speed(value: Any) -> Optional[int]:
    """Bytes per second from ``"1 MB/s"``, ``"500KBps"`` or a byte size."""
    if isinstance(value, str):
        text = value.strip()
        for suffix in _SPEED_SUFFIXES:
            if text.lower().endswith(suffix):
                text = text[: -len(suffix)]
                break
        return parse_byte_size(text)
    return parse_byte_size(value)


def format_bytes(num: Optional[float]) -> str:
    if num is None:
        return 'n/a'
    size = float(num)
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(size) < 1024 or unit == 'TB':
            return f"{size:.0f} {unit}" if unit == 'B' else f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} TB"


def tracker_host(url: Optional[str]) -> str:
    if not url:
        return ''
    try:
        parsed = urlparse(url)
    except ValueError:
        return ''
    if not parsed.scheme or not parsed.hostname:
        return ''
    return parsed.hostname


def tracker_hosts(urls: Iterable[Optional[str]]) -> List[str]:
    out: List[str] = []
    for url in urls:
        host = tracker_host(url)
        if host and host not in out:
            out.append(host)
    return out


def host_matches_suffix(url: Optional[str], patterns: Iterable[str]) -> bool:
    host = tracker_host(url)
    if not host:
        return False
    host = host.lower()
    for p in patterns:
        if p and host.endswith(str(p).lower()):
            return True
    return False


def join_download_path(save_path: Optional[str], name: str) -> str:
    base = (save_path or '').replace('\\', '/').rstrip('/')
    rel = (name or '').replace('\\', '/').lstrip('/')
    if not base:
        return rel
    return f"{base}/{rel}"


def last_path_segment(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    trimmed = path.replace('\\', '/').rstrip('/')
    if not trimmed:
        return None
    return trimmed.rsplit('/', 1)[-1]


def to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value) if value is not None else default
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value) if value is not None else default
    except (TypeError, ValueError):
        return default
