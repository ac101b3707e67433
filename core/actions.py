from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from core.evaluator import DeleteReason
from core.executor import Executor
from integrations.arr import ArrClient, ArrInstance
from storage.cache import RecurringHashStore, TTLCache, marked_for_removal_key


@dataclass
class ActionsDeps:
    arr_clients: Dict[str, ArrClient]
    executor: Executor
    event_bus: Any  # expects .publish_queue_item_deleted / .publish_search_not_triggered
    cache: TTLCache
    recurring: RecurringHashStore
    search_enabled: bool = True
    search_delay_seconds: float = 0.0


@dataclass
class JobContext:
    """Everything a job needs for one run."""

    actions: ActionsDeps
    services: List[Any]
    instances: Dict[str, List[ArrInstance]]
    metrics: Any = None

    def incr(self, key: str, scope: Optional[str] = None) -> None:
        if self.metrics is not None:
            self.metrics.incr(key, scope)


async def group_queue_records(
    session: aiohttp.ClientSession, arr_client: ArrClient, instance: ArrInstance
) -> Dict[str, List[Dict[str, Any]]]:
    """Page through a queue and group its rows by download id, keeping order."""
    groups: Dict[str, List[Dict[str, Any]]] = {}
    async for record in arr_client.iter_queue(session, instance):
        key = str(record.get('downloadId') or f"__record_{record.get('id')}").lower()
        groups.setdefault(key, []).append(record)
    return groups


def mark_for_removal(deps: ActionsDeps, download_id: str, instance: ArrInstance) -> None:
    deps.cache.set(marked_for_removal_key(download_id, instance.url), True)


def is_marked_for_removal(deps: ActionsDeps, download_id: str, instance: ArrInstance) -> bool:
    return marked_for_removal_key(download_id, instance.url) in deps.cache


async def remove_queue_item(
    session: aiohttp.ClientSession,
    instance: ArrInstance,
    records: List[Dict[str, Any]],
    remove_from_client: bool,
    reason: DeleteReason,
    deps: ActionsDeps,
) -> None:
    """Delete every queue row of one download, then search for a replacement.

    A download that keeps coming back is not searched again; the operator is
    told instead. The marked-for-removal guard is always cleared.
    """
    record = records[0]
    download_id = str(record.get('downloadId') or '')
    title = record.get('title')
    arr_client = deps.arr_clients[instance.type]
    try:
        for rec in records:
            await deps.executor.run(
                f"delete queue item {rec.get('id')} ({title}) from {instance.url} removeFromClient={remove_from_client}",
                arr_client.delete_queue_item,
                session,
                instance,
                rec,
                remove_from_client,
            )
        if remove_from_client:
            logging.info(f"queue item deleted with reason {reason.value} | {instance.url} | {title}")
        else:
            logging.info(f"queue item removed from arr with reason {reason.value} | {instance.url} | {title}")

        await deps.event_bus.publish_queue_item_deleted(
            str(title or ''),
            download_id,
            remove_from_client,
            reason.value,
            instance_type=instance.type_name,
            instance_url=instance.url,
        )

        if download_id and download_id.lower() in deps.recurring:
            await deps.event_bus.publish_search_not_triggered(
                download_id, str(title or ''), instance_type=instance.type_name, instance_url=instance.url
            )
            deps.recurring.discard(download_id)
            return

        if not deps.search_enabled:
            return
        await deps.executor.run(
            f"search replacement for {title} on {instance.url}",
            arr_client.search_items,
            session,
            instance,
            records,
        )
        if deps.search_delay_seconds > 0:
            # one search per delay window
            await asyncio.sleep(deps.search_delay_seconds)
    finally:
        deps.cache.remove(marked_for_removal_key(download_id, instance.url))
