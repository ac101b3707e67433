from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Sequence, Set

import aiohttp

from core.blocklist import Blocklist, FilenameEvaluator
from core.config import CleanCategory, DownloadCleanerConfig, DownloadClientConfig
from core.evaluator import KEEP, DeleteReason, RuleEvaluator, Verdict
from core.executor import Executor
from core.hardlinks import HardLinkFileService
from core.striker import StrikeContext, Striker, StrikeType
from core.utils import join_download_path
from integrations.items import TorrentItem


@dataclass
class QueueCheckResult:
    found: bool = False
    is_private: bool = False
    should_remove: bool = False
    reason: DeleteReason = DeleteReason.NONE
    delete_from_client: bool = False


@dataclass
class BlockFilesResult:
    found: bool = False
    is_private: bool = False
    should_remove: bool = False
    reason: DeleteReason = DeleteReason.NONE


@dataclass
class TorrentFile:
    index: Optional[int]
    name: str
    size: int = 0
    skipped: bool = False


class CleanReason(str, Enum):
    NONE = 'None'
    MAX_RATIO_REACHED = 'MaxRatioReached'
    MAX_SEED_TIME_REACHED = 'MaxSeedTimeReached'


@dataclass
class ServiceDeps:
    executor: Executor
    event_bus: Any
    evaluator: RuleEvaluator
    striker: Striker
    filename_evaluator: FilenameEvaluator = field(default_factory=FilenameEvaluator)
    hardlinks: HardLinkFileService = field(default_factory=HardLinkFileService)


def reached_ratio(ratio: float, seeding_hours: float, category: CleanCategory, name: str = '') -> bool:
    if category.max_ratio < 0:
        return False
    if category.min_seed_time > 0 and seeding_hours < category.min_seed_time:
        logging.debug(f"skip | download has not reached MIN_SEED_TIME | {name}")
        return False
    if ratio < category.max_ratio:
        logging.debug(f"skip | download has not reached MAX_RATIO | {name}")
        return False
    return True


def reached_max_seed_time(seeding_hours: float, category: CleanCategory, name: str = '') -> bool:
    if category.max_seed_time < 0:
        return False
    if category.max_seed_time > 0 and seeding_hours < category.max_seed_time:
        logging.debug(f"skip | download has not reached MAX_SEED_TIME | {name}")
        return False
    return True


def should_clean(item: TorrentItem, category: CleanCategory) -> CleanReason:
    hours = item.seeding_time_seconds / 3600.0
    if reached_ratio(item.ratio, hours, category, item.name):
        return CleanReason.MAX_RATIO_REACHED
    if reached_max_seed_time(hours, category, item.name):
        return CleanReason.MAX_SEED_TIME_REACHED
    return CleanReason.NONE


class DownloadService(ABC):
    """Queue checks, file blocking and seeding cleanup over one client.

    Subclasses only provide the wire calls; every decision lives here so all
    backends behave the same.
    """

    supports_tags = False

    def __init__(self, config: DownloadClientConfig, client: Any, deps: ServiceDeps) -> None:
        self.config = config
        self.client = client
        self.deps = deps

    @property
    def name(self) -> str:
        return self.config.name

    # wire hooks

    @abstractmethod
    async def fetch_item(self, session: aiohttp.ClientSession, download_hash: str) -> Optional[TorrentItem]:
        ...

    @abstractmethod
    async def fetch_files(self, session: aiohttp.ClientSession, item: TorrentItem) -> List[TorrentFile]:
        ...

    @abstractmethod
    async def fetch_completed(self, session: aiohttp.ClientSession) -> List[TorrentItem]:
        ...

    @abstractmethod
    async def skip_files(self, session: aiohttp.ClientSession, item: TorrentItem, indexes: List[int]) -> None:
        ...

    @abstractmethod
    async def delete_download(self, session: aiohttp.ClientSession, download_hash: str) -> None:
        ...

    @abstractmethod
    async def apply_category(self, session: aiohttp.ClientSession, item: TorrentItem, new_category: str, use_tag: bool) -> None:
        ...

    async def list_categories(self, session: aiohttp.ClientSession) -> Optional[List[str]]:
        return None

    async def add_category(self, session: aiohttp.ClientSession, name: str) -> None:
        return None

    async def version(self, session: aiohttp.ClientSession) -> Optional[str]:
        return None

    def all_skipped_reason(self, item: TorrentItem) -> DeleteReason:
        return DeleteReason.ALL_FILES_SKIPPED

    # queue cleaner

    async def should_remove_from_queue(
        self,
        session: aiohttp.ClientSession,
        download_hash: str,
        ignored_downloads: Sequence[str],
        *,
        metadata_max_strikes: int = 0,
        context: Optional[StrikeContext] = None,
    ) -> QueueCheckResult:
        result = QueueCheckResult()
        item = await self.fetch_item(session, download_hash)
        if item is None:
            logging.debug(f"failed to find torrent {download_hash} in the {self.name} download client")
            return result

        result.found = True
        result.is_private = item.is_private

        if item.is_ignored(ignored_downloads):
            logging.info(f"skip | download is ignored | {item.name}")
            return result

        files = await self.fetch_files(session, item)
        if files and all(f.skipped for f in files):
            reason = self.all_skipped_reason(item)
            logging.debug(f"all files are unwanted | removing download | {item.name}")
            result.should_remove = True
            result.reason = reason
            result.delete_from_client = True
            return result

        verdict = await self.evaluate_removal(item, metadata_max_strikes, context)
        result.should_remove, result.reason, result.delete_from_client = verdict
        return result

    async def evaluate_removal(
        self, item: TorrentItem, metadata_max_strikes: int, context: Optional[StrikeContext]
    ) -> Verdict:
        slow = await self.check_if_slow(item, context)
        if slow.should_remove:
            return slow
        return await self.check_if_stuck(item, metadata_max_strikes, context)

    async def check_if_slow(self, item: TorrentItem, context: Optional[StrikeContext]) -> Verdict:
        if not item.is_downloading():
            logging.debug(f"skip slow check | download is not in downloading state | {item.name}")
            return KEEP
        if item.download_speed <= 0:
            logging.debug(f"skip slow check | download speed is 0 | {item.name}")
            return KEEP
        return await self.deps.evaluator.evaluate_slow(item, context)

    async def check_if_stuck(
        self, item: TorrentItem, metadata_max_strikes: int, context: Optional[StrikeContext]
    ) -> Verdict:
        if item.is_metadata_downloading():
            if metadata_max_strikes > 0:
                remove = await self.deps.striker.strike_and_check_limit(
                    item.hash, item.name, metadata_max_strikes, StrikeType.DOWNLOADING_METADATA, context
                )
                return Verdict(remove, DeleteReason.DOWNLOADING_METADATA, remove)
            return KEEP
        if not item.is_stalled():
            logging.debug(f"skip stalled check | download is not in stalled state | {item.name}")
            return KEEP
        return await self.deps.evaluator.evaluate_stall(item, context)

    # malware blocker

    async def block_unwanted_files(
        self,
        session: aiohttp.ClientSession,
        download_hash: str,
        ignored_downloads: Sequence[str],
        blocklist: Optional[Blocklist],
        *,
        ignore_private: bool = False,
        delete_known_malware: bool = False,
    ) -> BlockFilesResult:
        result = BlockFilesResult()
        item = await self.fetch_item(session, download_hash)
        if item is None:
            logging.debug(f"failed to find torrent {download_hash} in the {self.name} download client")
            return result

        result.found = True
        result.is_private = item.is_private

        if item.is_ignored(ignored_downloads):
            logging.info(f"skip | download is ignored | {item.name}")
            return result

        if ignore_private and item.is_private:
            logging.debug(f"skip files check | download is private | {item.name}")
            return result

        files = await self.fetch_files(session, item)
        if not files:
            logging.debug(f"skip files check | no files found | {item.name}")
            return result

        evaluator = self.deps.filename_evaluator
        unwanted: List[int] = []
        total = 0
        total_unwanted = 0
        for f in files:
            if f.index is None:
                continue
            total += 1
            if delete_known_malware and evaluator.is_malware(f.name):
                logging.info(f"malware file found | {f.name} | {item.name}")
                result.should_remove = True
                result.reason = DeleteReason.MALWARE_FILE_FOUND
                return result
            if f.skipped:
                total_unwanted += 1
                continue
            if evaluator.is_valid(f.name, blocklist):
                continue
            logging.info(f"unwanted file found | {f.name}")
            unwanted.append(f.index)
            total_unwanted += 1

        if not unwanted:
            logging.debug(f"No unwanted files found for {item.name}")
            return result

        if total_unwanted == total:
            logging.debug(f"All files are blocked for {item.name}")
            result.should_remove = True
            result.reason = DeleteReason.ALL_FILES_BLOCKED

        logging.debug(f"Marking {len(unwanted)} unwanted files as skipped for {item.name}")
        await self.deps.executor.run(
            f"mark {len(unwanted)} files of {item.name} as skipped on {self.name}",
            self.skip_files,
            session,
            item,
            unwanted,
        )
        return result

    # download cleaner

    async def get_seeding_downloads(self, session: aiohttp.ClientSession) -> List[TorrentItem]:
        return [d for d in await self.fetch_completed(session) if d.hash]

    @staticmethod
    def filter_downloads_to_clean(downloads: Sequence[TorrentItem], categories: Sequence[CleanCategory]) -> List[TorrentItem]:
        names = {c.name.lower() for c in categories}
        return [d for d in downloads if d.hash and (d.category or '').lower() in names]

    def filter_downloads_to_change_category(
        self, downloads: Sequence[TorrentItem], categories: Sequence[str], cfg: DownloadCleanerConfig
    ) -> List[TorrentItem]:
        names = {c.lower() for c in categories}
        target = cfg.unlinked_target_category.lower()
        out = []
        for d in downloads:
            if not d.hash or (d.category or '').lower() not in names:
                continue
            if cfg.unlinked_use_tag and self.supports_tags and any(t.lower() == target for t in d.tags):
                continue
            out.append(d)
        return out

    def _is_excluded(self, item: TorrentItem, excluded_hashes: Set[str], ignored: Sequence[str]) -> bool:
        if item.hash.lower() in excluded_hashes:
            logging.debug(f"skip | download is used by an arr | {item.name}")
            return True
        if item.is_ignored(ignored):
            logging.info(f"skip | download is ignored | {item.name}")
            return True
        return False

    async def clean_downloads(
        self,
        session: aiohttp.ClientSession,
        downloads: Sequence[TorrentItem],
        categories: Sequence[CleanCategory],
        excluded_hashes: Set[str],
        ignored_downloads: Sequence[str],
        *,
        delete_private: bool = False,
    ) -> int:
        cleaned = 0
        by_name = {c.name.lower(): c for c in categories}
        for item in downloads:
            if not item.hash or self._is_excluded(item, excluded_hashes, ignored_downloads):
                continue
            category = by_name.get((item.category or '').lower())
            if category is None:
                continue
            if not delete_private and item.is_private:
                logging.debug(f"skip | download is private | {item.name}")
                continue
            reason = should_clean(item, category)
            if reason == CleanReason.NONE:
                continue

            await self.deps.executor.run(
                f"delete {item.name} from {self.name}", self.delete_download, session, item.hash
            )
            label = 'MAX_RATIO & MIN_SEED_TIME' if reason == CleanReason.MAX_RATIO_REACHED else 'MAX_SEED_TIME'
            logging.info(f"download cleaned | {label} reached | {item.name}")
            await self.deps.event_bus.publish_download_cleaned(
                item.name,
                item.hash,
                item.ratio,
                item.seeding_time_seconds / 3600.0,
                category.name,
                reason.value,
                client_name=self.name,
            )
            cleaned += 1
        return cleaned

    async def create_category(self, session: aiohttp.ClientSession, name: str) -> None:
        existing = await self.list_categories(session)
        if existing is None or any(c.lower() == name.lower() for c in existing):
            return
        logging.debug(f"Creating category {name}")
        await self.deps.executor.run(f"create category {name} on {self.name}", self.add_category, session, name)

    async def has_hardlinks(
        self, session: aiohttp.ClientSession, item: TorrentItem, ignore_root: bool
    ) -> bool:
        files = await self.fetch_files(session, item)
        if not files:
            logging.debug(f"failed to find files for {item.name}")
            return True
        for f in files:
            if f.index is None:
                logging.debug(f"skip | file index is null for {item.name}")
                return True
            path = join_download_path(item.save_path, f.name)
            if f.skipped:
                logging.debug(f"skip | file is not downloaded | {path}")
                continue
            count = self.deps.hardlinks.get_hardlink_count(path, ignore_root)
            if count < 0:
                logging.debug(f"skip | could not get file properties | {path}")
                return True
            if count > 0:
                return True
        return False

    async def change_category_for_no_hardlinks(
        self,
        session: aiohttp.ClientSession,
        downloads: Sequence[TorrentItem],
        excluded_hashes: Set[str],
        ignored_downloads: Sequence[str],
        cfg: DownloadCleanerConfig,
    ) -> int:
        if not downloads:
            return 0
        ignore_root = bool(cfg.unlinked_ignored_root_dir)
        if ignore_root:
            self.deps.hardlinks.populate_file_counts(cfg.unlinked_ignored_root_dir)

        use_tag = cfg.unlinked_use_tag and self.supports_tags
        target = cfg.unlinked_target_category
        changed = 0
        for item in downloads:
            if not item.hash or self._is_excluded(item, excluded_hashes, ignored_downloads):
                continue
            if await self.has_hardlinks(session, item, ignore_root):
                logging.debug(f"skip | download has hardlinks | {item.name}")
                continue

            await self.deps.executor.run(
                f"change category of {item.name} to {target} on {self.name}",
                self.apply_category,
                session,
                item,
                target,
                use_tag,
            )
            await self.deps.event_bus.publish_category_changed(
                item.name, item.hash, item.category, target, use_tag, client_name=self.name
            )
            if use_tag:
                logging.info(f"tag added for {item.name}")
            else:
                logging.info(f"category changed for {item.name}")
            changed += 1
        return changed
