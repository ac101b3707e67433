from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from core.errors import ConfigError
from core.utils import parse_byte_size, parse_speed


class PrivacyType(str, Enum):
    PUBLIC = 'public'
    PRIVATE = 'private'
    BOTH = 'both'

    @classmethod
    def parse(cls, value: Any) -> 'PrivacyType':
        if isinstance(value, PrivacyType):
            return value
        text = str(value or 'public').strip().lower()
        for member in cls:
            if member.value == text:
                return member
        raise ConfigError(f"unknown privacy type: {value!r}")


class PatternMode(str, Enum):
    INCLUDE = 'include'
    EXCLUDE = 'exclude'

    @classmethod
    def parse(cls, value: Any) -> 'PatternMode':
        if isinstance(value, PatternMode):
            return value
        text = str(value or 'include').strip().lower()
        for member in cls:
            if member.value == text:
                return member
        raise ConfigError(f"unknown pattern mode: {value!r}")


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes', 'on')
    return bool(value)


def _as_int(value: Any, default: int, what: str) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{what} must be an integer, got {value!r}")


def _as_float(value: Any, default: float, what: str) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{what} must be a number, got {value!r}")


@dataclass
class QueueRule:
    """Shared contract of stall and slow rules.

    A rule covers the completion range ``(min, max]``; when ``min`` is 0 the
    lower bound is inclusive so a torrent at exactly 0% is still covered.
    """

    name: str
    enabled: bool = True
    max_strikes: int = 3
    privacy_type: PrivacyType = PrivacyType.PUBLIC
    min_completion_percentage: int = 0
    max_completion_percentage: int = 100
    delete_private_torrents_from_client: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    kind = 'queue'

    def matches_privacy(self, is_private: bool) -> bool:
        if self.privacy_type == PrivacyType.PUBLIC:
            return not is_private
        if self.privacy_type == PrivacyType.PRIVATE:
            return is_private
        return True

    def matches_completion(self, completion: float) -> bool:
        if self.max_completion_percentage < self.min_completion_percentage:
            return False
        if self.min_completion_percentage == 0:
            lower = completion >= 0
        else:
            lower = completion > self.min_completion_percentage
        return lower and completion <= self.max_completion_percentage

    def matches(self, item: Any) -> bool:
        if not self.matches_privacy(bool(item.is_private)):
            return False
        return self.matches_completion(float(item.completion_percentage))

    def validate(self) -> None:
        if not self.name or not str(self.name).strip():
            raise ConfigError('Rule name cannot be empty')
        if self.max_strikes < 3:
            raise ConfigError(f"{self.kind.capitalize()} rule '{self.name}': max strikes must be at least 3")
        if not 0 <= self.min_completion_percentage <= 100:
            raise ConfigError(f"Rule '{self.name}': minimum completion percentage must be between 0 and 100")
        if not 0 <= self.max_completion_percentage <= 100:
            raise ConfigError(f"Rule '{self.name}': maximum completion percentage must be between 0 and 100")
        if self.max_completion_percentage < self.min_completion_percentage:
            raise ConfigError(
                f"Rule '{self.name}': maximum completion percentage must be greater than or equal to the minimum"
            )

    @staticmethod
    def _base_kwargs(data: Dict[str, Any]) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            'name': str(data.get('name') or '').strip(),
            'enabled': _as_bool(data.get('enabled'), True),
            'max_strikes': _as_int(data.get('max_strikes'), 3, 'max_strikes'),
            'privacy_type': PrivacyType.parse(data.get('privacy_type')),
            'min_completion_percentage': _as_int(data.get('min_completion_percentage'), 0, 'min_completion_percentage'),
            'max_completion_percentage': _as_int(data.get('max_completion_percentage'), 100, 'max_completion_percentage'),
            'delete_private_torrents_from_client': _as_bool(data.get('delete_private_torrents_from_client'), False),
        }
        if data.get('id'):
            kwargs['id'] = str(data['id'])
        return kwargs


@dataclass
class StallRule(QueueRule):
    reset_strikes_on_progress: bool = True
    minimum_progress: Optional[str] = None

    kind = 'stall'

    @property
    def minimum_progress_bytes(self) -> Optional[int]:
        return parse_byte_size(self.minimum_progress)

    def validate(self) -> None:
        super().validate()
        # raises on junk and negative sizes
        parse_byte_size(self.minimum_progress)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StallRule':
        if not isinstance(data, dict):
            raise ConfigError(f"stall rule must be a mapping, got {type(data).__name__}")
        mp = data.get('minimum_progress')
        return cls(
            **cls._base_kwargs(data),
            reset_strikes_on_progress=_as_bool(data.get('reset_strikes_on_progress'), True),
            minimum_progress=str(mp) if mp not in (None, '') else None,
        )


@dataclass
class SlowRule(QueueRule):
    reset_strikes_on_progress: bool = True
    min_speed: Optional[str] = None
    max_time_hours: float = 0.0
    ignore_above_size: Optional[str] = None

    kind = 'slow'

    @property
    def min_speed_bytes(self) -> int:
        return parse_speed(self.min_speed) or 0

    @property
    def ignore_above_size_bytes(self) -> Optional[int]:
        return parse_byte_size(self.ignore_above_size)

    def matches(self, item: Any) -> bool:
        if not super().matches(item):
            return False
        limit = self.ignore_above_size_bytes
        if limit is not None and int(item.size or 0) >= limit:
            return False
        return True

    def validate(self) -> None:
        super().validate()
        if self.max_time_hours < 0:
            raise ConfigError(f"Slow rule '{self.name}': maximum time cannot be negative")
        has_min_speed = bool(self.min_speed and str(self.min_speed).strip())
        if not has_min_speed and not self.max_time_hours > 0:
            raise ConfigError(f"Slow rule '{self.name}': either minimum speed or maximum time must be specified")
        if has_min_speed:
            parse_speed(self.min_speed)
        parse_byte_size(self.ignore_above_size)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SlowRule':
        if not isinstance(data, dict):
            raise ConfigError(f"slow rule must be a mapping, got {type(data).__name__}")
        ms = data.get('min_speed')
        ias = data.get('ignore_above_size')
        return cls(
            **cls._base_kwargs(data),
            reset_strikes_on_progress=_as_bool(data.get('reset_strikes_on_progress'), True),
            min_speed=str(ms) if ms not in (None, '') else None,
            max_time_hours=_as_float(data.get('max_time_hours'), 0.0, 'max_time_hours'),
            ignore_above_size=str(ias) if ias not in (None, '') else None,
        )


@dataclass
class FailedImportConfig:
    max_strikes: int = 0
    ignore_private: bool = False
    delete_private: bool = False
    skip_if_not_found_in_client: bool = True
    patterns: List[str] = field(default_factory=list)
    pattern_mode: PatternMode = PatternMode.INCLUDE

    def validate(self) -> None:
        if 0 < self.max_strikes < 3:
            raise ConfigError('The minimum value for failed imports max strikes must be 3')
        if self.max_strikes >= 3 and self.pattern_mode == PatternMode.INCLUDE and not self.patterns:
            raise ConfigError('At least one pattern must be specified when using the include pattern mode')

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'FailedImportConfig':
        data = data if isinstance(data, dict) else {}
        patterns = data.get('patterns') or []
        if isinstance(patterns, str):
            patterns = [patterns]
        return cls(
            max_strikes=_as_int(data.get('max_strikes'), 0, 'failed_import.max_strikes'),
            ignore_private=_as_bool(data.get('ignore_private'), False),
            delete_private=_as_bool(data.get('delete_private'), False),
            skip_if_not_found_in_client=_as_bool(data.get('skip_if_not_found_in_client'), True),
            patterns=[str(p) for p in patterns if p is not None],
            pattern_mode=PatternMode.parse(data.get('pattern_mode')),
        )


@dataclass
class QueueCleanerConfig:
    enabled: bool = False
    ignored_downloads: List[str] = field(default_factory=list)
    downloading_metadata_max_strikes: int = 0
    failed_import: FailedImportConfig = field(default_factory=FailedImportConfig)
    stall_rules: List[StallRule] = field(default_factory=list)
    slow_rules: List[SlowRule] = field(default_factory=list)
    reject_overlapping_rules: bool = True

    def validate(self) -> None:
        from core.intervals import RuleIntervalValidator

        self.failed_import.validate()
        if 0 < self.downloading_metadata_max_strikes < 3:
            raise ConfigError('the minimum value for downloading metadata max strikes must be 3')
        for rule in self.stall_rules:
            rule.validate()
        for rule in self.slow_rules:
            rule.validate()
        for kind, rules in (('stall', self.stall_rules), ('slow', self.slow_rules)):
            names = [r.name for r in rules if r.enabled]
            if len(names) != len(set(names)):
                raise ConfigError(f'Duplicate {kind} rule names found')
        if self.reject_overlapping_rules:
            validator = RuleIntervalValidator()
            for rules in (self.stall_rules, self.slow_rules):
                result = validator.validate_rule_set(rules)
                if not result.is_valid:
                    raise ConfigError(result.message, conflicts=result.conflicting_rules)

    def enabled_stall_rules(self) -> List[StallRule]:
        return sort_rules([r for r in self.stall_rules if r.enabled])

    def enabled_slow_rules(self) -> List[SlowRule]:
        return sort_rules([r for r in self.slow_rules if r.enabled])

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'QueueCleanerConfig':
        data = data if isinstance(data, dict) else {}
        ignored = data.get('ignored_downloads') or []
        return cls(
            enabled=_as_bool(data.get('enabled'), False),
            ignored_downloads=[str(x) for x in ignored if x],
            downloading_metadata_max_strikes=_as_int(
                data.get('downloading_metadata_max_strikes'), 0, 'downloading_metadata_max_strikes'
            ),
            failed_import=FailedImportConfig.from_dict(data.get('failed_import')),
            stall_rules=[StallRule.from_dict(r) for r in (data.get('stall_rules') or [])],
            slow_rules=[SlowRule.from_dict(r) for r in (data.get('slow_rules') or [])],
            reject_overlapping_rules=_as_bool(data.get('reject_overlapping_rules'), True),
        )


def sort_rules(rules: List[Any]) -> List[Any]:
    return sorted(
        rules,
        key=lambda r: (r.max_completion_percentage, r.min_completion_percentage),
        reverse=True,
    )
