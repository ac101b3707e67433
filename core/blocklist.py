from __future__ import annotations

import fnmatch
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern, Sequence

import aiohttp

from core.errors import ConfigError


KNOWN_MALWARE_EXTENSIONS = ('.lnk', '.zipx')
REGEX_PREFIX = 'regex:'


class BlocklistType(str, Enum):
    BLACKLIST = 'blacklist'
    WHITELIST = 'whitelist'

    @classmethod
    def parse(cls, value: Any) -> 'BlocklistType':
        try:
            return cls(str(value or 'blacklist').strip().lower())
        except ValueError:
            raise ConfigError(f"invalid blocklist type: {value!r}")


@dataclass
class Blocklist:
    type: BlocklistType = BlocklistType.BLACKLIST
    patterns: List[str] = field(default_factory=list)
    regexes: List[Pattern] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.patterns and not self.regexes


def split_patterns(lines: Sequence[str]) -> Blocklist:
    """Split raw blocklist lines into glob patterns and compiled regexes.

    Blank lines and ``#`` comments are skipped; a ``regex:`` prefix marks a
    regular expression.
    """
    out = Blocklist()
    for raw in lines:
        line = str(raw or '').strip()
        if not line or line.startswith('#'):
            continue
        if line.lower().startswith(REGEX_PREFIX):
            expr = line[len(REGEX_PREFIX):].strip()
            try:
                out.regexes.append(re.compile(expr, re.IGNORECASE))
            except re.error as e:
                raise ConfigError(f"invalid blocklist regex {expr!r}: {e}")
        else:
            out.patterns.append(line.lower())
    return out


class FilenameEvaluator:
    def __init__(self, malware_patterns: Optional[Sequence[str]] = None) -> None:
        self.malware_patterns = [str(p).lower() for p in (malware_patterns or []) if p]

    @staticmethod
    def _matches(name: str, blocklist: Blocklist) -> bool:
        lowered = name.lower()
        base = os.path.basename(lowered.replace('\\', '/'))
        for p in blocklist.patterns:
            if fnmatch.fnmatchcase(base, p) or fnmatch.fnmatchcase(lowered, p):
                return True
        return any(r.search(name) for r in blocklist.regexes)

    def is_valid(self, name: str, blocklist: Optional[Blocklist]) -> bool:
        if blocklist is None or blocklist.is_empty:
            return True
        matched = self._matches(name, blocklist)
        if blocklist.type == BlocklistType.WHITELIST:
            return matched
        return not matched

    def is_malware(self, name: str) -> bool:
        lowered = name.lower()
        if lowered.endswith(KNOWN_MALWARE_EXTENSIONS):
            return True
        base = os.path.basename(lowered.replace('\\', '/'))
        return any(fnmatch.fnmatchcase(base, p) for p in self.malware_patterns)


class BlocklistProvider:
    """Loads one blocklist per arr type from inline patterns, a file or a URL."""

    def __init__(self, configs: Optional[Dict[str, Dict[str, Any]]] = None, request_timeout: int = 10) -> None:
        self.configs = configs or {}
        self.request_timeout = request_timeout
        self._loaded: Dict[str, Blocklist] = {}

    def get(self, arr_type: str) -> Optional[Blocklist]:
        return self._loaded.get(arr_type)

    async def load_all(self, session: aiohttp.ClientSession) -> Dict[str, Blocklist]:
        for arr_type in self.configs:
            try:
                await self.load(session, arr_type)
            except (OSError, aiohttp.ClientError, ConfigError) as e:
                logging.error(f"failed to load blocklist for {arr_type}: {e}")
        return self._loaded

    async def load(self, session: aiohttp.ClientSession, arr_type: str) -> Blocklist:
        cfg = self.configs.get(arr_type) or {}
        lines: List[str] = [str(p) for p in (cfg.get('patterns') or [])]
        path = cfg.get('path')
        if path:
            lines.extend(await self._read_source(session, str(path)))
        blocklist = split_patterns(lines)
        blocklist.type = BlocklistType.parse(cfg.get('type'))
        self._loaded[arr_type] = blocklist
        logging.debug(
            f"loaded {arr_type} {blocklist.type.value} with {len(blocklist.patterns)} patterns "
            f"and {len(blocklist.regexes)} regexes"
        )
        return blocklist

    async def _read_source(self, session: aiohttp.ClientSession, path: str) -> List[str]:
        if path.lower().startswith(('http://', 'https://')):
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            async with session.get(path, timeout=timeout) as resp:
                resp.raise_for_status()
                text = await resp.text()
        else:
            with open(path, 'r', encoding='utf-8') as f:
                text = f.read()
        return text.splitlines()
