from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from storage.cache import RecurringHashStore, TTLCache


class StrikeType(str, Enum):
    STALLED = 'Stalled'
    DOWNLOADING_METADATA = 'DownloadingMetadata'
    FAILED_IMPORT = 'FailedImport'
    SLOW_SPEED = 'SlowSpeed'
    SLOW_TIME = 'SlowTime'


@dataclass
class StrikeContext:
    """Where the struck item came from, carried into published events."""

    instance_type: Optional[str] = None
    instance_url: Optional[str] = None
    failed_import_reasons: Optional[List[Any]] = None


def strike_key(strike_type: StrikeType, download_hash: str) -> str:
    return f"strike_{strike_type.value}_{(download_hash or '').lower()}"


@dataclass
class Striker:
    cache: TTLCache
    recurring: RecurringHashStore
    event_bus: Any
    strike_ttl: Optional[float] = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))

    def get_count(self, download_hash: str, strike_type: StrikeType) -> int:
        return int(self.cache.get(strike_key(strike_type, download_hash), 0) or 0)

    async def strike_and_check_limit(
        self,
        download_hash: str,
        item_name: str,
        max_strikes: int,
        strike_type: StrikeType,
        context: Optional[StrikeContext] = None,
    ) -> bool:
        if max_strikes == 0:
            self.logger.debug(f"skip striking for {strike_type.value} | max strikes is 0 | {item_name}")
            return False
        ctx = context or StrikeContext()
        key = strike_key(strike_type, download_hash)
        count = int(self.cache.get(key, 0) or 0) + 1
        self.logger.info(f"Item on strike number {count} | reason {strike_type.value} | {item_name}")
        await self.event_bus.publish_strike(
            strike_type.value,
            count,
            download_hash,
            item_name,
            failed_import_reasons=ctx.failed_import_reasons if strike_type == StrikeType.FAILED_IMPORT else None,
        )
        self.cache.set(key, count, self.strike_ttl)

        if count < max_strikes:
            return False

        if count > max_strikes:
            self.logger.warning(f"Blocked item keeps coming back | {item_name}")
            self.recurring.add(download_hash)
            await self.event_bus.publish_recurring_item(
                download_hash,
                item_name,
                count,
                instance_type=ctx.instance_type,
                instance_url=ctx.instance_url,
            )

        self.logger.info(f"Removing item with max strikes | reason {strike_type.value} | {item_name}")
        return True

    def reset_strike(self, download_hash: str, item_name: str, strike_type: StrikeType) -> None:
        key = strike_key(strike_type, download_hash)
        previous = int(self.cache.get(key, 0) or 0)
        if previous > 0:
            self.logger.info(
                f"Progress detected | resetting {strike_type.value} strikes from {previous} to 0 | {item_name}"
            )
        self.cache.remove(key)
