from __future__ import annotations

from typing import Callable, Dict, Tuple

from core.config import DownloadClientConfig

from .base import BlockFilesResult, DownloadService, QueueCheckResult, ServiceDeps, TorrentFile
from .deluge import DelugeClient, DelugeService
from .qbittorrent import QBitClient, QBitService
from .transmission import TransmissionClient, TransmissionService
from .utorrent import UTorrentClient, UTorrentService


def _qbit(cfg: DownloadClientConfig, timeout: int):
    return QBitClient(cfg.name, cfg.url, cfg.username, cfg.password, timeout)


def _transmission(cfg: DownloadClientConfig, timeout: int):
    return TransmissionClient(cfg.name, cfg.url, cfg.username, cfg.password, timeout)


def _deluge(cfg: DownloadClientConfig, timeout: int):
    return DelugeClient(cfg.name, cfg.url, cfg.password, timeout)


def _utorrent(cfg: DownloadClientConfig, timeout: int):
    return UTorrentClient(cfg.name, cfg.url, cfg.username, cfg.password, timeout)


BACKENDS: Dict[str, Tuple[Callable, type]] = {
    'qbittorrent': (_qbit, QBitService),
    'transmission': (_transmission, TransmissionService),
    'deluge': (_deluge, DelugeService),
    'utorrent': (_utorrent, UTorrentService),
}


def create_download_service(cfg: DownloadClientConfig, deps: ServiceDeps, timeout: int = 10) -> DownloadService:
    try:
        make_client, service_cls = BACKENDS[cfg.type]
    except KeyError:
        raise ValueError(f"unsupported download client type: {cfg.type}")
    return service_cls(cfg, make_client(cfg, timeout), deps)


__all__ = [
    'BACKENDS',
    'BlockFilesResult',
    'DownloadService',
    'QueueCheckResult',
    'ServiceDeps',
    'TorrentFile',
    'create_download_service',
]
