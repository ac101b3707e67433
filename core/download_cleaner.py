from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Set, Tuple

import aiohttp

from core.actions import JobContext
from core.config import DownloadCleanerConfig
from integrations.items import TorrentItem


class DownloadCleaner:
    """Deletes seeding downloads past their limits and relabels unlinked ones.

    Anything an arr still has in its queue is left alone, so every arr queue
    is read first to build the set of excluded hashes.
    """

    name = 'DownloadCleaner'

    def __init__(self, config: DownloadCleanerConfig, ctx: JobContext) -> None:
        self.config = config
        self.ctx = ctx

    def _has_work(self) -> bool:
        clean = bool(self.config.categories)
        unlinked = self.config.unlinked_enabled and bool(self.config.unlinked_categories)
        return clean or unlinked

    async def execute(self, session: aiohttp.ClientSession) -> None:
        if not self._has_work():
            logging.warning(f"{self.name}: no categories configured, nothing to clean")
            return
        if not self.ctx.services:
            logging.warning(f"{self.name}: no download clients configured, nothing to clean")
            return

        if self.config.unlinked_enabled:
            await self.create_target_category(session)

        seeding = await self.collect_seeding(session)
        if not any(downloads for _, downloads in seeding):
            logging.debug(f"{self.name}: no seeding downloads found")
            return

        if self.config.exclusion_delay_seconds > 0:
            # give arrs a moment to pick up freshly completed downloads
            await asyncio.sleep(self.config.exclusion_delay_seconds)
        excluded = await self.collect_excluded_hashes(session)
        if excluded is None:
            logging.warning(f"{self.name}: skipping this run, arr queues could not be read")
            return
        logging.debug(f"{self.name}: {len(excluded)} downloads are in use by an arr")

        ignored = self.config.ignored_downloads
        if self.config.unlinked_enabled and self.config.unlinked_categories:
            for service, downloads in seeding:
                to_change = service.filter_downloads_to_change_category(
                    downloads, self.config.unlinked_categories, self.config
                )
                try:
                    changed = await service.change_category_for_no_hardlinks(
                        session, to_change, excluded, ignored, self.config
                    )
                except Exception as e:
                    logging.error(f"{self.name}: failed to change categories on {service.name}: {e}")
                    self.ctx.incr('errors', service.name)
                else:
                    for _ in range(changed):
                        self.ctx.incr('category_changed', service.name)

        if self.config.categories:
            for service, downloads in seeding:
                to_clean = service.filter_downloads_to_clean(downloads, self.config.categories)
                try:
                    cleaned = await service.clean_downloads(
                        session,
                        to_clean,
                        self.config.categories,
                        excluded,
                        ignored,
                        delete_private=self.config.delete_private,
                    )
                except Exception as e:
                    logging.error(f"{self.name}: failed to clean downloads on {service.name}: {e}")
                    self.ctx.incr('errors', service.name)
                else:
                    for _ in range(cleaned):
                        self.ctx.incr('cleaned', service.name)

    async def create_target_category(self, session: aiohttp.ClientSession) -> None:
        target = self.config.unlinked_target_category
        for service in self.ctx.services:
            if self.config.unlinked_use_tag and service.supports_tags:
                continue
            try:
                await service.create_category(session, target)
            except Exception as e:
                logging.error(f"{self.name}: failed to create category {target} on {service.name}: {e}")

    async def collect_seeding(self, session: aiohttp.ClientSession) -> List[Tuple[object, List[TorrentItem]]]:
        out = []
        for service in self.ctx.services:
            try:
                downloads = await service.get_seeding_downloads(session)
            except Exception as e:
                logging.error(f"{self.name}: failed to get seeding downloads from {service.name}: {e}")
                self.ctx.incr('errors', service.name)
                continue
            logging.debug(f"{service.name}: {len(downloads)} seeding downloads")
            out.append((service, downloads))
        return out

    async def collect_excluded_hashes(self, session: aiohttp.ClientSession) -> Optional[Set[str]]:
        """Download ids of every arr queue, or None when a queue could not be read."""
        excluded: Set[str] = set()
        for instances in self.ctx.instances.values():
            for instance in instances:
                arr_client = self.ctx.actions.arr_clients[instance.type]
                try:
                    async for record in arr_client.iter_queue(session, instance):
                        if record.get('downloadId'):
                            excluded.add(str(record['downloadId']).lower())
                except Exception as e:
                    logging.error(f"{self.name}: failed to read queue of {instance.url}: {e}")
                    return None
        return excluded
