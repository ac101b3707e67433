from __future__ import annotations

import logging
from typing import Any, Dict, List

import aiohttp

from core import actions
from core.actions import JobContext
from core.errors import ArrRequestError
from core.evaluator import DeleteReason
from core.rules import QueueCleanerConfig
from core.striker import StrikeContext
from integrations.arr import ArrInstance, is_record_valid
from integrations.clients.base import QueueCheckResult


def is_torrent(record: Dict[str, Any]) -> bool:
    return 'torrent' in str(record.get('protocol') or '').lower()


class QueueCleaner:
    """Strikes and removes stuck, slow and failed-import queue items."""

    name = 'QueueCleaner'

    def __init__(self, config: QueueCleanerConfig, ctx: JobContext) -> None:
        self.config = config
        self.ctx = ctx

    async def execute(self, session: aiohttp.ClientSession) -> None:
        for arr_type, instances in self.ctx.instances.items():
            for instance in instances:
                try:
                    await self.process_instance(session, instance)
                except Exception as e:
                    logging.error(f"{self.name}: failed to process {instance.type_name} instance {instance.name} ({instance.url}): {e}")
                    self.ctx.incr('errors', instance.name)

    async def process_instance(self, session: aiohttp.ClientSession, instance: ArrInstance) -> None:
        arr_client = self.ctx.actions.arr_clients[instance.type]
        groups = await actions.group_queue_records(session, arr_client, instance)
        logging.debug(f"{instance.type_name} {instance.name}: {len(groups)} downloads in queue")
        for records in groups.values():
            if any(not is_record_valid(r) for r in records):
                continue
            await self.process_download(session, instance, records)

    async def process_download(self, session: aiohttp.ClientSession, instance: ArrInstance, records: List[Dict[str, Any]]) -> None:
        record = records[0]
        download_id = str(record['downloadId'])
        title = record.get('title')
        ignored = self.config.ignored_downloads
        self.ctx.incr('processed', instance.name)
        logging.debug(f"processing | {title} | {download_id}")

        if download_id.lower() in (x.lower() for x in ignored):
            logging.info(f"skip | {title} | ignored")
            return
        if actions.is_marked_for_removal(self.ctx.actions, download_id, instance):
            logging.debug(f"skip | already marked for removal | {title}")
            return

        context = StrikeContext(instance_type=instance.type_name, instance_url=instance.url)
        result = QueueCheckResult()
        torrent = is_torrent(record)
        if torrent and self.ctx.services:
            result = await self.check_clients(session, download_id, str(title), context)

        if result.should_remove:
            remove_from_client = not result.is_private or result.delete_from_client
            await self.remove(session, instance, records, remove_from_client, result.reason)
            return

        if torrent and self.ctx.services and not result.found and self.config.failed_import.skip_if_not_found_in_client:
            logging.info(f"skip | torrent not found in any torrent client | {title}")
            return

        arr_client = self.ctx.actions.arr_clients[instance.type]
        if await arr_client.should_remove_from_queue(record, result.is_private, instance.failed_import_max_strikes, context):
            remove_from_client = not result.is_private or self.config.failed_import.delete_private
            await self.remove(session, instance, records, remove_from_client, DeleteReason.FAILED_IMPORT)
            return

        logging.debug(f"skip | {title}")

    async def check_clients(
        self, session: aiohttp.ClientSession, download_id: str, title: str, context: StrikeContext
    ) -> QueueCheckResult:
        result = QueueCheckResult()
        for service in self.ctx.services:
            try:
                result = await service.should_remove_from_queue(
                    session,
                    download_id,
                    self.config.ignored_downloads,
                    metadata_max_strikes=self.config.downloading_metadata_max_strikes,
                    context=context,
                )
            except Exception as e:
                logging.error(f"Error checking download {title} with download client {service.name}: {e}")
                result = QueueCheckResult()
                continue
            if result.found:
                break
        if not result.found:
            logging.warning(f"Download not found in any torrent client | {title}")
        return result

    async def remove(
        self,
        session: aiohttp.ClientSession,
        instance: ArrInstance,
        records: List[Dict[str, Any]],
        remove_from_client: bool,
        reason: DeleteReason,
    ) -> None:
        download_id = str(records[0]['downloadId'])
        actions.mark_for_removal(self.ctx.actions, download_id, instance)
        try:
            await actions.remove_queue_item(session, instance, records, remove_from_client, reason, self.ctx.actions)
        except ArrRequestError as e:
            logging.error(f"failed to remove {records[0].get('title')} from {instance.url}: {e}")
            self.ctx.incr('errors', instance.name)
            return
        self.ctx.incr('removed', instance.name)
