from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import yaml

from core.errors import ConfigError
from core.rules import QueueCleanerConfig, _as_bool, _as_float, _as_int
from integrations.arr import ARR_TYPES, ArrInstance


CLIENT_TYPES = ('qbittorrent', 'transmission', 'deluge', 'utorrent')


def load_yaml(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
            return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError) as e:
        logging.error(f"could not read config file {path}: {e}")
        return {}


def env_bool(value: str) -> bool:
    return value.lower() in ['true', '1', 'yes']


def get_env_var(key: str, default: Any = None, cast_to: Callable[[str], Any] = str) -> Any:
    value = os.environ.get(key)
    if value is not None:
        return cast_to(value)
    return default


@dataclass
class GeneralSettings:
    dry_run: bool = False
    debug_logging: bool = False
    structured_logs: bool = True
    poll_interval_seconds: int = 600
    request_timeout: int = 10
    retry_attempts: int = 2
    retry_backoff: float = 1.0
    min_request_interval_ms: float = 0.0
    max_concurrent_requests: int = 0
    search_enabled: bool = True
    search_delay_seconds: float = 0.0
    ignored_downloads: List[str] = field(default_factory=list)

    @property
    def strike_ttl_seconds(self) -> float:
        # counters must outlive one poll interval
        return float(self.poll_interval_seconds) + 2 * 3600


@dataclass
class CleanCategory:
    name: str
    max_ratio: float = -1.0
    min_seed_time: float = 0.0
    max_seed_time: float = -1.0

    def validate(self) -> None:
        if not self.name.strip():
            raise ConfigError('Category name can not be empty')
        if self.max_ratio < 0 and self.max_seed_time < 0:
            raise ConfigError(f"Category '{self.name}': either max ratio or max seed time must be enabled")
        if self.min_seed_time < 0:
            raise ConfigError(f"Category '{self.name}': min seed time can not be negative")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CleanCategory':
        return cls(
            name=str(data.get('name') or '').strip(),
            max_ratio=_as_float(data.get('max_ratio'), -1.0, 'max_ratio'),
            min_seed_time=_as_float(data.get('min_seed_time'), 0.0, 'min_seed_time'),
            max_seed_time=_as_float(data.get('max_seed_time'), -1.0, 'max_seed_time'),
        )


@dataclass
class DownloadCleanerConfig:
    enabled: bool = False
    delete_private: bool = False
    ignored_downloads: List[str] = field(default_factory=list)
    categories: List[CleanCategory] = field(default_factory=list)
    unlinked_enabled: bool = False
    unlinked_target_category: str = 'unlinked'
    unlinked_use_tag: bool = False
    unlinked_ignored_root_dir: str = ''
    unlinked_categories: List[str] = field(default_factory=list)
    # seconds to wait for arr imports before reading the queues
    exclusion_delay_seconds: float = 0.0

    def validate(self) -> None:
        for cat in self.categories:
            cat.validate()
        names = [c.name.lower() for c in self.categories]
        if len(names) != len(set(names)):
            raise ConfigError('Duplicated clean categories found')
        if self.unlinked_enabled:
            if not self.unlinked_target_category.strip():
                raise ConfigError('unlinked target category is required')
            if not self.unlinked_categories:
                raise ConfigError('no unlinked categories configured')
            if self.unlinked_target_category in self.unlinked_categories:
                raise ConfigError('the unlinked target category should not be present in unlinked categories')
            if self.unlinked_ignored_root_dir and not os.path.isdir(self.unlinked_ignored_root_dir):
                raise ConfigError(f"{self.unlinked_ignored_root_dir} root directory does not exist")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'DownloadCleanerConfig':
        data = data if isinstance(data, dict) else {}
        return cls(
            enabled=_as_bool(data.get('enabled'), False),
            delete_private=_as_bool(data.get('delete_private'), False),
            ignored_downloads=[str(x) for x in (data.get('ignored_downloads') or []) if x],
            categories=[CleanCategory.from_dict(c) for c in (data.get('categories') or []) if isinstance(c, dict)],
            unlinked_enabled=_as_bool(data.get('unlinked_enabled'), False),
            unlinked_target_category=str(data.get('unlinked_target_category') or 'unlinked'),
            unlinked_use_tag=_as_bool(data.get('unlinked_use_tag'), False),
            unlinked_ignored_root_dir=str(data.get('unlinked_ignored_root_dir') or ''),
            unlinked_categories=[str(x) for x in (data.get('unlinked_categories') or []) if x],
            exclusion_delay_seconds=_as_float(data.get('exclusion_delay_seconds'), 0.0, 'exclusion_delay_seconds'),
        )


@dataclass
class MalwareBlockerConfig:
    enabled: bool = False
    ignore_private: bool = False
    delete_known_malware: bool = False
    delete_private: bool = False
    ignored_downloads: List[str] = field(default_factory=list)
    malware_patterns: List[str] = field(default_factory=list)
    blocklists: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'MalwareBlockerConfig':
        data = data if isinstance(data, dict) else {}
        blocklists = data.get('blocklists') if isinstance(data.get('blocklists'), dict) else {}
        return cls(
            enabled=_as_bool(data.get('enabled'), False),
            ignore_private=_as_bool(data.get('ignore_private'), False),
            delete_known_malware=_as_bool(data.get('delete_known_malware'), False),
            delete_private=_as_bool(data.get('delete_private'), False),
            ignored_downloads=[str(x) for x in (data.get('ignored_downloads') or []) if x],
            malware_patterns=[str(x) for x in (data.get('malware_patterns') or []) if x],
            blocklists={str(k).lower(): v for k, v in blocklists.items() if isinstance(v, dict)},
        )


@dataclass
class DownloadClientConfig:
    name: str
    type: str
    url: str
    username: Optional[str] = None
    password: Optional[str] = None
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DownloadClientConfig':
        typ = str(data.get('type') or '').lower()
        return cls(
            name=str(data.get('name') or typ),
            type=typ,
            url=str(data.get('url') or ''),
            username=data.get('username'),
            password=data.get('password'),
            enabled=_as_bool(data.get('enabled'), True),
        )


class ConfigAccessor:
    def __init__(self, cfg: Dict[str, Any]) -> None:
        self.cfg = cfg if isinstance(cfg, dict) else {}

    # General settings accessor
    def general(self, key: str, default: Any = None) -> Any:
        gen = self.cfg.get('general') if isinstance(self.cfg.get('general'), dict) else {}
        return gen.get(key, default)

    def settings(self, env_defaults: Optional[Dict[str, Any]] = None) -> GeneralSettings:
        """Build general settings; YAML values win over environment defaults."""
        base = GeneralSettings()
        merged: Dict[str, Any] = dict(env_defaults or {})
        gen = self.cfg.get('general') if isinstance(self.cfg.get('general'), dict) else {}
        merged.update({k: v for k, v in gen.items() if v is not None})

        def pick(key, cast):
            if key not in merged:
                return getattr(base, key)
            return cast(merged[key])

        return GeneralSettings(
            dry_run=pick('dry_run', lambda v: _as_bool(v, False)),
            debug_logging=pick('debug_logging', lambda v: _as_bool(v, False)),
            structured_logs=pick('structured_logs', lambda v: _as_bool(v, True)),
            poll_interval_seconds=pick('poll_interval_seconds', int),
            request_timeout=pick('request_timeout', int),
            retry_attempts=pick('retry_attempts', int),
            retry_backoff=pick('retry_backoff', float),
            min_request_interval_ms=pick('min_request_interval_ms', float),
            max_concurrent_requests=pick('max_concurrent_requests', int),
            search_enabled=pick('search_enabled', lambda v: _as_bool(v, True)),
            search_delay_seconds=pick('search_delay_seconds', float),
            ignored_downloads=[str(x) for x in (merged.get('ignored_downloads') or []) if x],
        )

    def ignored_downloads(self, job_ignored: List[str]) -> List[str]:
        merged = list(job_ignored)
        for x in self.general('ignored_downloads', None) or []:
            if x and str(x) not in merged:
                merged.append(str(x))
        return merged

    def queue_cleaner(self) -> QueueCleanerConfig:
        qc = QueueCleanerConfig.from_dict(self.cfg.get('queue_cleaner'))
        qc.ignored_downloads = self.ignored_downloads(qc.ignored_downloads)
        return qc

    def malware_blocker(self) -> MalwareBlockerConfig:
        mb = MalwareBlockerConfig.from_dict(self.cfg.get('malware_blocker'))
        mb.ignored_downloads = self.ignored_downloads(mb.ignored_downloads)
        return mb

    def download_cleaner(self) -> DownloadCleanerConfig:
        dc = DownloadCleanerConfig.from_dict(self.cfg.get('download_cleaner'))
        dc.ignored_downloads = self.ignored_downloads(dc.ignored_downloads)
        return dc

    def arr_settings(self, arr_type: str) -> Dict[str, Any]:
        arrs = self.cfg.get('arrs') if isinstance(self.cfg.get('arrs'), dict) else {}
        section = arrs.get(arr_type)
        return section if isinstance(section, dict) else {}

    def arr_instances(self, arr_type: str) -> List[ArrInstance]:
        section = self.arr_settings(arr_type)
        max_strikes = _as_int(section.get('failed_import_max_strikes'), -1, f'{arr_type}.failed_import_max_strikes')
        out: List[ArrInstance] = []
        for inst in section.get('instances') or []:
            if not isinstance(inst, dict) or not inst.get('url'):
                continue
            out.append(ArrInstance(
                name=str(inst.get('name') or arr_type),
                type=arr_type,
                url=str(inst['url']),
                api_key=str(inst.get('api_key') or ''),
                failed_import_max_strikes=max_strikes,
            ))
        # Endpoints from env
        endpoint = self.service_endpoint(arr_type)
        if endpoint['api_url'] and endpoint['api_key']:
            if not any(i.url.rstrip('/') == endpoint['api_url'].rstrip('/') for i in out):
                out.append(ArrInstance(
                    name=arr_type,
                    type=arr_type,
                    url=endpoint['api_url'],
                    api_key=endpoint['api_key'],
                    failed_import_max_strikes=max_strikes,
                ))
        return out

    def download_clients(self) -> List[DownloadClientConfig]:
        raw = self.cfg.get('download_clients') if isinstance(self.cfg.get('download_clients'), list) else []
        out = []
        for c in raw:
            if not isinstance(c, dict):
                continue
            cc = DownloadClientConfig.from_dict(c)
            if cc.enabled and cc.type in CLIENT_TYPES and cc.url:
                out.append(cc)
        return out

    def service_endpoint(self, service_name: str) -> Dict[str, Optional[str]]:
        upper = service_name.upper()
        return {
            'api_url': os.environ.get(f'{upper}_URL') or None,
            'api_key': os.environ.get(f'{upper}_API_KEY') or None,
        }


def sanitize_config(cfg: Dict[str, Any], debug_logging: bool = False) -> Dict[str, Any]:
    if not isinstance(cfg, dict):
        return {}
    out = dict(cfg)

    def _nz(v, cast, default):
        try:
            return cast(v)
        except (TypeError, ValueError):
            return default

    gen = out.get('general') if isinstance(out.get('general'), dict) else {}
    if gen:
        for key, cast, default in (
            ('poll_interval_seconds', int, 600),
            ('request_timeout', int, 10),
            ('retry_attempts', int, 2),
            ('retry_backoff', float, 1.0),
            ('min_request_interval_ms', float, 0),
            ('max_concurrent_requests', int, 0),
            ('search_delay_seconds', float, 0),
        ):
            if key in gen:
                gen[key] = max(0, _nz(gen.get(key), cast, default))
        out['general'] = gen

    # Queue cleaner numeric coercions
    qc = out.get('queue_cleaner') if isinstance(out.get('queue_cleaner'), dict) else {}
    if qc:
        if 'downloading_metadata_max_strikes' in qc:
            qc['downloading_metadata_max_strikes'] = max(0, _nz(qc.get('downloading_metadata_max_strikes'), int, 0))
        for list_key in ('stall_rules', 'slow_rules'):
            rules = qc.get(list_key) if isinstance(qc.get(list_key), list) else []
            cleaned = []
            for r in rules:
                if not isinstance(r, dict):
                    if debug_logging:
                        logging.warning(f'Ignoring malformed {list_key} entry: {r}')
                    continue
                for k in ('max_strikes', 'min_completion_percentage', 'max_completion_percentage'):
                    if k in r:
                        r[k] = _nz(r.get(k), int, r.get(k))
                cleaned.append(r)
            qc[list_key] = cleaned
        out['queue_cleaner'] = qc

    dc = out.get('download_cleaner') if isinstance(out.get('download_cleaner'), dict) else {}
    if dc:
        cats = dc.get('categories') if isinstance(dc.get('categories'), list) else []
        cleaned_cats = []
        for c in cats:
            if not isinstance(c, dict) or not c.get('name'):
                if debug_logging:
                    logging.warning(f'Ignoring invalid clean category: {c}')
                continue
            for k, default in (('max_ratio', -1), ('min_seed_time', 0), ('max_seed_time', -1)):
                if k in c:
                    c[k] = _nz(c.get(k), float, default)
            cleaned_cats.append(c)
        dc['categories'] = cleaned_cats
        out['download_cleaner'] = dc

    # Download clients with unknown type are dropped
    clients = out.get('download_clients') if isinstance(out.get('download_clients'), list) else []
    valid_clients = []
    for c in clients:
        if not isinstance(c, dict):
            continue
        typ = str(c.get('type') or '').lower()
        if typ not in CLIENT_TYPES or not c.get('url'):
            if debug_logging:
                logging.warning(f"Ignoring invalid download client: {c.get('name') or c}")
            continue
        c['type'] = typ
        valid_clients.append(c)
    if 'download_clients' in out:
        out['download_clients'] = valid_clients

    arrs = out.get('arrs') if isinstance(out.get('arrs'), dict) else {}
    for arr_type, section in list(arrs.items()):
        if not isinstance(section, dict):
            arrs.pop(arr_type)
            continue
        insts = section.get('instances') if isinstance(section.get('instances'), list) else []
        section['instances'] = [i for i in insts if isinstance(i, dict) and i.get('url')]
        if 'failed_import_max_strikes' in section:
            section['failed_import_max_strikes'] = _nz(section.get('failed_import_max_strikes'), int, -1)
    return out


def validate_config(cfg: Dict[str, Any], debug_logging: bool = False) -> List[str]:
    """Log configuration problems as warnings. Never raises."""
    problems: List[str] = []
    for arr_type, meta in ARR_TYPES.items():
        s = meta['name']
        url = os.environ.get(f'{s.upper()}_URL') or None
        key = os.environ.get(f'{s.upper()}_API_KEY') or None
        if (url and not key) or (key and not url):
            problems.append(f"Service {s} has partial env config (URL/API_KEY); it will be skipped.")
    gen = cfg.get('general') if isinstance(cfg.get('general'), dict) else {}
    try:
        if float(gen.get('min_request_interval_ms') or 0) > 0 and int(gen.get('max_concurrent_requests') or 0) == 0:
            problems.append('min_request_interval_ms set without max_concurrent_requests; consider setting both for effect.')
    except (TypeError, ValueError):
        problems.append('general request throttling values are not numeric')
    arrs = cfg.get('arrs') if isinstance(cfg.get('arrs'), dict) else {}
    for arr_type in arrs:
        if arr_type not in ARR_TYPES:
            problems.append(f"Unknown arr type '{arr_type}'; it will be ignored.")
    accessor = ConfigAccessor(cfg)
    try:
        if accessor.queue_cleaner().enabled or accessor.malware_blocker().enabled:
            if not accessor.download_clients():
                problems.append('No download clients configured; only failed import checks will run.')
    except ConfigError as e:
        problems.append(f'Invalid job configuration: {e}')
    dc = cfg.get('download_cleaner') if isinstance(cfg.get('download_cleaner'), dict) else {}
    if dc.get('unlinked_use_tag') and not any(c.type == 'qbittorrent' for c in accessor.download_clients()):
        problems.append('unlinked_use_tag only applies to qBittorrent clients.')
    for p in problems:
        logging.warning(p)
    return problems
