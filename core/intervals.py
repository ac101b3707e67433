from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from core.rules import PrivacyType, QueueRule


@dataclass
class RuleInterval:
    privacy_type: PrivacyType
    start: float
    end: float
    rule_name: str
    rule_id: str


@dataclass
class IntervalGap:
    privacy_type: PrivacyType
    start: float
    end: float

    def to_dict(self) -> Dict[str, Any]:
        return {'privacy_type': self.privacy_type.value, 'start': self.start, 'end': self.end}


@dataclass
class Overlap:
    rule_name: str
    conflicting_rule_name: str
    privacy_type: PrivacyType
    start: float
    end: float


@dataclass
class ValidationResult:
    is_valid: bool
    message: str = ''
    conflicting_rules: List[str] = field(default_factory=list)
    overlaps: List[Overlap] = field(default_factory=list)

    @classmethod
    def success(cls) -> 'ValidationResult':
        return cls(is_valid=True)


def _privacy_classes(privacy: PrivacyType) -> List[PrivacyType]:
    if privacy == PrivacyType.BOTH:
        return [PrivacyType.PUBLIC, PrivacyType.PRIVATE]
    return [privacy]


def expand_intervals(rules: Sequence[QueueRule]) -> List[RuleInterval]:
    out: List[RuleInterval] = []
    for rule in rules:
        for pt in _privacy_classes(rule.privacy_type):
            out.append(RuleInterval(
                privacy_type=pt,
                start=rule.min_completion_percentage,
                end=rule.max_completion_percentage,
                rule_name=rule.name,
                rule_id=rule.id,
            ))
    return out


def _overlap(a: RuleInterval, b: RuleInterval) -> Optional[tuple]:
    if a.rule_id == b.rule_id:
        return None
    if a.start < b.end and b.start < a.end:
        start = max(a.start, b.start)
        end = min(a.end, b.end)
        if end > start:
            return start, end
    return None


class RuleIntervalValidator:
    """Rejects enabled rules of one kind whose completion intervals overlap
    within the same privacy class. ``both`` rules count for public and private."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    def validate_stall_rule(self, new_rule: QueueRule, existing: Sequence[QueueRule]) -> ValidationResult:
        return self.validate(new_rule, existing)

    def validate_slow_rule(self, new_rule: QueueRule, existing: Sequence[QueueRule]) -> ValidationResult:
        return self.validate(new_rule, existing)

    def validate(self, new_rule: QueueRule, existing: Sequence[QueueRule]) -> ValidationResult:
        self.logger.debug(f"Validating {new_rule.kind} rule intervals for rule {new_rule.name}")
        # an updated rule replaces its stored version
        by_id: Dict[str, QueueRule] = {}
        for r in list(existing) + [new_rule]:
            by_id[r.id] = r
        enabled = [r for r in by_id.values() if r.enabled]
        if not new_rule.enabled:
            return ValidationResult.success()
        new_intervals = expand_intervals([new_rule])
        others = [i for i in expand_intervals(enabled) if i.rule_id != new_rule.id]
        overlaps: List[Overlap] = []
        for ni in new_intervals:
            for oi in sorted(others, key=lambda i: (i.start, i.end)):
                if oi.privacy_type != ni.privacy_type:
                    continue
                hit = _overlap(ni, oi)
                if hit:
                    overlaps.append(Overlap(new_rule.name, oi.rule_name, ni.privacy_type, hit[0], hit[1]))
        return self._result(overlaps)

    def validate_rule_set(self, rules: Sequence[QueueRule]) -> ValidationResult:
        """Pairwise check of a whole rule list, reporting every overlap."""
        enabled = [r for r in rules if r.enabled]
        intervals = sorted(expand_intervals(enabled), key=lambda i: (i.privacy_type.value, i.start, i.end))
        overlaps: List[Overlap] = []
        for idx, a in enumerate(intervals):
            for b in intervals[idx + 1:]:
                if a.privacy_type != b.privacy_type:
                    continue
                hit = _overlap(a, b)
                if hit:
                    overlaps.append(Overlap(a.rule_name, b.rule_name, a.privacy_type, hit[0], hit[1]))
        return self._result(overlaps, include_self=True)

    def _result(self, overlaps: List[Overlap], include_self: bool = False) -> ValidationResult:
        if not overlaps:
            return ValidationResult.success()
        names: List[str] = []
        for ov in overlaps:
            self.logger.warning(
                f"Rule {ov.rule_name} overlaps for {ov.privacy_type.value.capitalize()} torrents with rule "
                f"{ov.conflicting_rule_name} (both cover {ov.start:g}%-{ov.end:g}%)"
            )
            candidates = [ov.rule_name, ov.conflicting_rule_name] if include_self else [ov.conflicting_rule_name]
            for n in candidates:
                if n not in names:
                    names.append(n)
        return ValidationResult(
            is_valid=False,
            message='Rule creates overlapping intervals with existing rules: ' + ', '.join(names),
            conflicting_rules=names,
            overlaps=overlaps,
        )

    def find_gaps_in_coverage(self, rules: Sequence[QueueRule]) -> List[IntervalGap]:
        enabled = [r for r in rules if r.enabled]
        gaps: List[IntervalGap] = []
        for pt in (PrivacyType.PUBLIC, PrivacyType.PRIVATE):
            gaps.extend(self._gaps_for(enabled, pt))
        self.logger.debug(f"Found {len(gaps)} gaps in coverage")
        return gaps

    @staticmethod
    def _gaps_for(rules: Sequence[QueueRule], privacy: PrivacyType) -> List[IntervalGap]:
        relevant = [r for r in rules if r.privacy_type in (privacy, PrivacyType.BOTH)]
        if not relevant:
            return [IntervalGap(privacy, 0, 100)]
        spans = []
        for r in relevant:
            start = max(0, min(100, r.min_completion_percentage))
            end = max(0, min(100, r.max_completion_percentage))
            if end >= start:
                spans.append((start, end))
        spans.sort()
        gaps: List[IntervalGap] = []
        covered = 0
        for start, end in spans:
            if start > covered:
                gaps.append(IntervalGap(privacy, covered, start))
            if end > covered:
                covered = end
            if covered >= 100:
                break
        if covered < 100:
            gaps.append(IntervalGap(privacy, covered, 100))
        return gaps
