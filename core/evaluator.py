from __future__ import annotations

import logging
from enum import Enum
from typing import Any, NamedTuple, Optional

from core.rule_manager import RuleManager
from core.striker import StrikeContext, Striker, StrikeType
from storage.cache import TTLCache


class DeleteReason(str, Enum):
    NONE = 'None'
    STALLED = 'Stalled'
    FAILED_IMPORT = 'FailedImport'
    DOWNLOADING_METADATA = 'DownloadingMetadata'
    SLOW_SPEED = 'SlowSpeed'
    SLOW_TIME = 'SlowTime'
    ALL_FILES_SKIPPED = 'AllFilesSkipped'
    ALL_FILES_SKIPPED_BY_QBIT = 'AllFilesSkippedByQBit'
    ALL_FILES_BLOCKED = 'AllFilesBlocked'
    MALWARE_FILE_FOUND = 'MalwareFileFound'


class Verdict(NamedTuple):
    should_remove: bool
    reason: DeleteReason
    delete_from_client: bool


KEEP = Verdict(False, DeleteReason.NONE, False)


def progress_key(download_hash: str, strike_type: StrikeType) -> str:
    return f"progress_{strike_type.value}_{(download_hash or '').lower()}"


class RuleEvaluator:
    """Turns a matched rule plus strike history into strike, reset or remove."""

    def __init__(
        self,
        rule_manager: RuleManager,
        striker: Striker,
        cache: TTLCache,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.rule_manager = rule_manager
        self.striker = striker
        self.cache = cache
        self.logger = logger or logging.getLogger(__name__)

    async def evaluate_stall(self, item: Any, context: Optional[StrikeContext] = None) -> Verdict:
        rule = self.rule_manager.match_stall(item)
        if rule is None:
            self.logger.debug(f"skip | no stall rule matched | {item.name}")
            return KEEP

        if rule.reset_strikes_on_progress:
            previous, progressed = self._track_progress(item, StrikeType.STALLED)
            if progressed:
                minimum = rule.minimum_progress_bytes
                gained = int(item.downloaded_bytes) - int(previous or 0)
                if minimum and gained < minimum:
                    self.logger.debug(
                        f"progress of {gained} bytes below minimum of {minimum} bytes | {item.name}"
                    )
                else:
                    self.striker.reset_strike(item.hash, item.name, StrikeType.STALLED)
                    return KEEP

        remove = await self.striker.strike_and_check_limit(
            item.hash, item.name, rule.max_strikes, StrikeType.STALLED, context
        )
        if remove:
            return Verdict(True, DeleteReason.STALLED, rule.delete_private_torrents_from_client)
        return KEEP

    async def evaluate_slow(self, item: Any, context: Optional[StrikeContext] = None) -> Verdict:
        rule = self.rule_manager.match_slow(item)
        if rule is None:
            self.logger.debug(f"skip | no slow rule matched | {item.name}")
            return KEEP

        min_speed = rule.min_speed_bytes
        if min_speed > 0 and int(item.download_speed) < min_speed:
            remove = await self.striker.strike_and_check_limit(
                item.hash, item.name, rule.max_strikes, StrikeType.SLOW_SPEED, context
            )
            if remove:
                return Verdict(True, DeleteReason.SLOW_SPEED, rule.delete_private_torrents_from_client)
        elif rule.reset_strikes_on_progress:
            self.striker.reset_strike(item.hash, item.name, StrikeType.SLOW_SPEED)

        max_seconds = float(rule.max_time_hours) * 3600
        if max_seconds > 0 and int(item.eta) > max_seconds:
            remove = await self.striker.strike_and_check_limit(
                item.hash, item.name, rule.max_strikes, StrikeType.SLOW_TIME, context
            )
            if remove:
                return Verdict(True, DeleteReason.SLOW_TIME, rule.delete_private_torrents_from_client)
        elif rule.reset_strikes_on_progress:
            self.striker.reset_strike(item.hash, item.name, StrikeType.SLOW_TIME)

        return KEEP

    def _track_progress(self, item: Any, strike_type: StrikeType):
        """Return ``(previous_bytes, progressed)`` and store the fresh value.

        The first sighting only records a baseline.
        """
        key = progress_key(item.hash, strike_type)
        current = int(item.downloaded_bytes or 0)
        previous = self.cache.get(key)
        if previous is None:
            self.cache.set(key, current, self.striker.strike_ttl)
            return None, False
        self.cache.set(key, current, self.striker.strike_ttl)
        return previous, current > previous
