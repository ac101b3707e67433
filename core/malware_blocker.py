from __future__ import annotations

import logging
from typing import Any, Dict, List

import aiohttp

from core import actions
from core.actions import JobContext
from core.blocklist import BlocklistProvider
from core.config import MalwareBlockerConfig
from core.errors import ArrRequestError
from core.queue_cleaner import is_torrent
from integrations.arr import ArrInstance, is_record_valid
from integrations.clients.base import BlockFilesResult


class MalwareBlocker:
    """Skips blocklisted files in queued torrents and removes what is left empty."""

    name = 'MalwareBlocker'

    def __init__(self, config: MalwareBlockerConfig, blocklists: BlocklistProvider, ctx: JobContext) -> None:
        self.config = config
        self.blocklists = blocklists
        self.ctx = ctx

    async def execute(self, session: aiohttp.ClientSession) -> None:
        if not self.ctx.services:
            logging.warning(f"{self.name}: no download clients configured, nothing to check")
            return
        await self.blocklists.load_all(session)
        for instances in self.ctx.instances.values():
            for instance in instances:
                try:
                    await self.process_instance(session, instance)
                except Exception as e:
                    logging.error(f"{self.name}: failed to process {instance.type_name} instance {instance.name} ({instance.url}): {e}")
                    self.ctx.incr('errors', instance.name)

    async def process_instance(self, session: aiohttp.ClientSession, instance: ArrInstance) -> None:
        arr_client = self.ctx.actions.arr_clients[instance.type]
        groups = await actions.group_queue_records(session, arr_client, instance)
        for records in groups.values():
            if any(not is_record_valid(r) for r in records):
                continue
            await self.process_download(session, instance, records)

    async def process_download(self, session: aiohttp.ClientSession, instance: ArrInstance, records: List[Dict[str, Any]]) -> None:
        record = records[0]
        download_id = str(record['downloadId'])
        title = record.get('title')

        if not is_torrent(record):
            logging.debug(f"skip | not a torrent | {title}")
            return
        if download_id.lower() in (x.lower() for x in self.config.ignored_downloads):
            logging.info(f"skip | {title} | ignored")
            return
        if actions.is_marked_for_removal(self.ctx.actions, download_id, instance):
            logging.debug(f"skip | already marked for removal | {title}")
            return

        self.ctx.incr('processed', instance.name)
        blocklist = self.blocklists.get(instance.type)
        result = BlockFilesResult()
        for service in self.ctx.services:
            try:
                result = await service.block_unwanted_files(
                    session,
                    download_id,
                    self.config.ignored_downloads,
                    blocklist,
                    ignore_private=self.config.ignore_private,
                    delete_known_malware=self.config.delete_known_malware,
                )
            except Exception as e:
                logging.error(f"Error checking files of {title} with download client {service.name}: {e}")
                result = BlockFilesResult()
                continue
            if result.found:
                break

        if not result.found:
            logging.warning(f"Download not found in any torrent client | {title}")
            return
        if not result.should_remove:
            return

        remove_from_client = not result.is_private or self.config.delete_private
        actions.mark_for_removal(self.ctx.actions, download_id, instance)
        try:
            await actions.remove_queue_item(session, instance, records, remove_from_client, result.reason, self.ctx.actions)
        except ArrRequestError as e:
            logging.error(f"failed to remove {title} from {instance.url}: {e}")
            self.ctx.incr('errors', instance.name)
            return
        self.ctx.incr('removed', instance.name)
