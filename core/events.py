from __future__ import annotations

import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional


Subscriber = Callable[[Dict[str, Any]], Awaitable[None]]

# event names
STRIKE = 'strike'
QUEUE_ITEM_DELETED = 'queue_item_deleted'
DOWNLOAD_CLEANED = 'download_cleaned'
CATEGORY_CHANGED = 'category_changed'
RECURRING_ITEM = 'recurring_item'
SEARCH_NOT_TRIGGERED = 'search_not_triggered'
DRY_RUN = 'dry_run'

_STRIKE_EVENT_TYPES = {
    'Stalled': 'StalledStrike',
    'DownloadingMetadata': 'DownloadingMetadataStrike',
    'FailedImport': 'FailedImportStrike',
    'SlowSpeed': 'SlowSpeedStrike',
    'SlowTime': 'SlowTimeStrike',
}


class EventBus:
    """Fire-and-forget event sink.

    Every event becomes one line on the event logger (JSON when
    ``structured_logs`` is on) and is then handed to any subscribers.
    A failing subscriber is logged and never breaks the caller.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        *,
        structured_logs: bool,
        dry_run: bool,
        debug_logging: bool,
        logger,
    ) -> None:
        self.config = config
        self.structured_logs = structured_logs
        self.dry_run = dry_run
        self.debug_logging = debug_logging
        self.logger = logger
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def log(self, event: str, **fields) -> Dict[str, Any]:
        payload = {"event": event, **fields}
        try:
            if self.structured_logs:
                self.logger.info(json.dumps(payload, ensure_ascii=False, default=str))
            else:
                self.logger.info(f"{event}: {fields}")
        except Exception:
            self.logger.info(str(payload))
        return payload

    async def emit(
        self,
        event: str,
        *,
        message: Optional[str] = None,
        severity: str = 'information',
        **fields,
    ) -> None:
        fields.setdefault('dry_run', self.dry_run)
        fields.setdefault('ts', int(time.time()))
        if message is not None:
            fields.setdefault('message', message)
        fields.setdefault('severity', severity)
        payload = self.log(event, **fields)
        for cb in list(self._subscribers):
            try:
                await cb(payload)
            except Exception as e:
                logging.warning(f"Event subscriber failed for {event}: {e}")

    async def publish_strike(
        self,
        strike_type: str,
        strike_count: int,
        download_hash: str,
        item_name: str,
        failed_import_reasons: Optional[List[Any]] = None,
    ) -> None:
        fields: Dict[str, Any] = {
            'hash': download_hash,
            'item_name': item_name,
            'strike_count': strike_count,
            'strike_type': strike_type,
            'event_type': _STRIKE_EVENT_TYPES.get(strike_type, f"{strike_type}Strike"),
        }
        if failed_import_reasons is not None:
            fields['failed_import_reasons'] = failed_import_reasons
        await self.emit(
            STRIKE,
            message=f"Item '{item_name}' has been struck {strike_count} times for reason '{strike_type}'",
            severity='important',
            **fields,
        )

    async def publish_queue_item_deleted(
        self,
        download_name: str,
        download_hash: str,
        remove_from_client: bool,
        delete_reason: str,
        *,
        instance_type: Optional[str] = None,
        instance_url: Optional[str] = None,
    ) -> None:
        await self.emit(
            QUEUE_ITEM_DELETED,
            message=f"Deleting item from queue with reason: {delete_reason}",
            severity='important',
            download_name=download_name,
            hash=download_hash,
            remove_from_client=remove_from_client,
            delete_reason=delete_reason,
            instance_type=instance_type,
            instance_url=instance_url,
        )

    async def publish_download_cleaned(
        self,
        download_name: str,
        download_hash: str,
        ratio: float,
        seeding_time_hours: float,
        category_name: str,
        reason: str,
        *,
        client_name: Optional[str] = None,
    ) -> None:
        await self.emit(
            DOWNLOAD_CLEANED,
            message=f"Cleaned item from download client with reason: {reason}",
            severity='important',
            download_name=download_name,
            hash=download_hash,
            category_name=category_name,
            ratio=ratio,
            seeding_time=seeding_time_hours,
            reason=reason,
            client=client_name,
        )

    async def publish_category_changed(
        self,
        download_name: str,
        download_hash: str,
        old_category: Optional[str],
        new_category: str,
        is_tag: bool = False,
        *,
        client_name: Optional[str] = None,
    ) -> None:
        if is_tag:
            message = f"Tag '{new_category}' added to download"
        else:
            message = f"Category changed from '{old_category}' to '{new_category}'"
        await self.emit(
            CATEGORY_CHANGED,
            message=message,
            download_name=download_name,
            hash=download_hash,
            old_category=old_category,
            new_category=new_category,
            is_tag=is_tag,
            client=client_name,
        )

    async def publish_recurring_item(
        self,
        download_hash: str,
        item_name: str,
        strike_count: int,
        *,
        instance_type: Optional[str] = None,
        instance_url: Optional[str] = None,
    ) -> None:
        await self.emit(
            RECURRING_ITEM,
            message='Download keeps coming back after deletion',
            severity='important',
            item_name=item_name,
            hash=download_hash,
            strike_count=strike_count,
            instance_type=instance_type,
            instance_url=instance_url,
        )

    async def publish_search_not_triggered(
        self,
        download_hash: str,
        item_name: str,
        *,
        instance_type: Optional[str] = None,
        instance_url: Optional[str] = None,
    ) -> None:
        await self.emit(
            SEARCH_NOT_TRIGGERED,
            message='Replacement search was not triggered after removal because the item keeps coming back',
            severity='warning',
            item_name=item_name,
            hash=download_hash,
            instance_type=instance_type,
            instance_url=instance_url,
        )
