from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

from core.rules import QueueRule, SlowRule, StallRule


class RuleManager:
    def __init__(
        self,
        stall_rules: Optional[Sequence[StallRule]] = None,
        slow_rules: Optional[Sequence[SlowRule]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.stall_rules: List[StallRule] = list(stall_rules or [])
        self.slow_rules: List[SlowRule] = list(slow_rules or [])
        self.logger = logger or logging.getLogger(__name__)

    def match_stall(self, item: Any) -> Optional[StallRule]:
        return self._match(item, self.stall_rules, 'stall')

    def match_slow(self, item: Any) -> Optional[SlowRule]:
        return self._match(item, self.slow_rules, 'slow')

    def _match(self, item: Any, rules: Sequence[QueueRule], kind: str) -> Optional[Any]:
        if not rules:
            return None
        matched = [r for r in rules if r.enabled and r.matches(item)]
        if len(matched) > 1:
            names = ', '.join(r.name for r in matched)
            self.logger.warning(f"skip | multiple {kind} rules matched ({names}) | {item.name}")
            return None
        return matched[0] if matched else None
