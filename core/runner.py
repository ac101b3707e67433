from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from core.events import DRY_RUN, STRIKE


COUNTERS = ('processed', 'removed', 'struck', 'cleaned', 'category_changed', 'simulated', 'errors')


class Metrics:
    def __init__(self) -> None:
        self.processed = 0
        self.removed = 0
        self.struck = 0
        self.cleaned = 0
        self.category_changed = 0
        self.simulated = 0
        self.errors = 0
        # generic counters and per-scope aggregation
        self.extra: Dict[str, int] = {}

    def incr(self, key: str, scope: Optional[str] = None) -> None:
        self[key] = self.get(key, 0) + 1
        if scope:
            scoped = f'svc:{scope}:{key}'
            self.extra[scoped] = self.extra.get(scoped, 0) + 1

    # dict-like access
    def get(self, key: str, default: int = 0) -> int:
        if key in COUNTERS:
            return getattr(self, key)
        return self.extra.get(key, default)

    def __getitem__(self, key: str) -> int:
        return self.get(key, 0)

    def __setitem__(self, key: str, value: int) -> None:
        if key in COUNTERS:
            setattr(self, key, value)
        else:
            self.extra[key] = value

    def scopes(self) -> List[str]:
        seen: List[str] = []
        for key in self.extra:
            parts = key.split(':', 2)
            if len(parts) == 3 and parts[0] == 'svc' and parts[1] not in seen:
                seen.append(parts[1])
        return seen


@dataclass
class RunnerState:
    poll_interval: int
    metrics: Metrics = field(default_factory=Metrics)
    runs: int = 0


def make_event_counter(state: RunnerState) -> Callable[[Dict[str, Any]], Any]:
    """Event bus subscriber that counts strikes and simulated actions into the current run."""

    async def _count(payload: Dict[str, Any]) -> None:
        event = payload.get('event')
        if event == STRIKE:
            state.metrics.incr('struck', payload.get('strike_type'))
        elif event == DRY_RUN:
            state.metrics.incr('simulated')

    return _count


def summarize(metrics: Metrics, poll_interval: int, now: Optional[float] = None) -> Dict[str, Any]:
    now = time.time() if now is None else now
    next_run_str = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(now + poll_interval))
    per_scope: Dict[str, Dict[str, int]] = {}
    for scope in metrics.scopes():
        per_scope[scope] = {key: metrics.get(f'svc:{scope}:{key}', 0) for key in COUNTERS}
    summary: Dict[str, Any] = {key: metrics.get(key, 0) for key in COUNTERS}
    summary['per_scope'] = per_scope
    summary['next_run'] = next_run_str
    return summary


def log_summary(summary: Dict[str, Any], poll_interval: int, log_fn: Callable[[str], None]) -> None:
    log_fn("Run summary:")
    log_fn(
        f"  processed={summary['processed']} removed={summary['removed']} struck={summary['struck']}"
    )
    log_fn(
        f"  cleaned={summary['cleaned']} category_changed={summary['category_changed']} errors={summary['errors']}"
    )
    if summary.get('simulated'):
        log_fn(f"  dry_run_actions={summary['simulated']}")
    for scope, s in (summary.get('per_scope') or {}).items():
        counts = ' '.join(f"{k}={v}" for k, v in s.items() if v)
        if counts:
            log_fn(f"  {scope}: {counts}")
    log_fn(f"Next run: {summary['next_run']} (in {poll_interval}s)")


async def run_once(session: Any, jobs: List[Any], state: RunnerState, log_fn: Callable[[str], None]) -> Dict[str, Any]:
    """Run every job once, in order, against a fresh set of counters."""
    state.metrics = Metrics()
    state.runs += 1
    for job in jobs:
        job.ctx.metrics = state.metrics
        logging.debug(f"{job.name}: starting")
        try:
            await job.execute(session)
        except Exception as e:
            log_fn(f"Unhandled error in {job.name}: {e}")
            state.metrics.incr('errors', job.name)
    summary = summarize(state.metrics, state.poll_interval)
    log_summary(summary, state.poll_interval, log_fn)
    return summary


async def run_forever(
    session: Any,
    jobs: List[Any],
    state: RunnerState,
    log_fn: Callable[[str], None],
    max_runs: Optional[int] = None,
) -> None:
    while True:
        await run_once(session, jobs, state, log_fn)
        if max_runs is not None and state.runs >= max_runs:
            return
        await asyncio.sleep(state.poll_interval)
