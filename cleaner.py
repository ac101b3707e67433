import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from core.actions import ActionsDeps, JobContext
from core.blocklist import BlocklistProvider, FilenameEvaluator
from core.config import (
    ConfigAccessor,
    DownloadCleanerConfig,
    GeneralSettings,
    MalwareBlockerConfig,
    env_bool,
    get_env_var,
    load_yaml,
    sanitize_config,
    validate_config,
)
from core.download_cleaner import DownloadCleaner
from core.errors import ConfigError, DownloadClientError
from core.evaluator import RuleEvaluator
from core.events import EventBus
from core.executor import make_executor
from core.hardlinks import HardLinkFileService
from core.malware_blocker import MalwareBlocker
from core.queue_cleaner import QueueCleaner
from core.rule_manager import RuleManager
from core.rules import QueueCleanerConfig
from core.runner import RunnerState, make_event_counter, run_forever, run_once
from core.striker import Striker
from integrations.arr import ARR_TYPES, ArrClient
from integrations.clients import ServiceDeps, create_download_service
from integrations.services import HttpSettings, RequestManager
from storage.cache import RecurringHashStore, TTLCache

EVENT_LOGGER_NAME = 'arr_cleaner.events'
LOG_FORMAT = '%(asctime)s [%(levelname)s]: %(message)s'

CONFIG_PATH = get_env_var('CONFIG_PATH', '/app/config.yaml')


def env_defaults() -> Dict[str, Any]:
    """General settings from the environment; YAML ``general`` wins over these."""
    out: Dict[str, Any] = {}
    for key, env_key, cast in (
        ('debug_logging', 'DEBUG_LOGGING', env_bool),
        ('structured_logs', 'STRUCTURED_LOGS', env_bool),
        ('dry_run', 'DRY_RUN', env_bool),
        ('poll_interval_seconds', 'POLL_INTERVAL', int),
        ('request_timeout', 'REQUEST_TIMEOUT', int),
        ('retry_attempts', 'RETRY_ATTEMPTS', int),
        ('retry_backoff', 'RETRY_BACKOFF', float),
    ):
        value = get_env_var(env_key, None, cast)
        if value is not None:
            out[key] = value
    return out


def setup_logging(debug_logging: bool) -> logging.Logger:
    level = logging.DEBUG if debug_logging else logging.INFO
    logging.basicConfig(format=LOG_FORMAT, level=level, handlers=[logging.StreamHandler()], force=True)

    # Dedicated non-propagating logger for structured event lines
    event_log = logging.getLogger(EVENT_LOGGER_NAME)
    event_log.setLevel(level)
    event_log.propagate = False
    # exactly one handler, even when re-imported by a runner
    for h in list(event_log.handlers):
        event_log.removeHandler(h)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    event_log.addHandler(handler)
    return event_log


def load_config(path: str) -> Dict[str, Any]:
    cfg = load_yaml(path)
    debug = bool(ConfigAccessor(cfg).settings(env_defaults()).debug_logging)
    cfg = sanitize_config(cfg, debug)
    validate_config(cfg, debug)
    return cfg


@dataclass
class App:
    settings: GeneralSettings
    event_bus: EventBus
    state: RunnerState
    jobs: List[Any]
    ctx: JobContext


def load_job_config(label: str, load: Callable[[], Any], disabled: Callable[[], Any]) -> Any:
    """Parse and validate one job section; a broken section only turns that job off."""
    try:
        job_cfg = load()
        if job_cfg.enabled and hasattr(job_cfg, 'validate'):
            job_cfg.validate()
        return job_cfg
    except ConfigError as e:
        logging.error(f"{label} not started, invalid configuration: {e}")
        for conflict in e.conflicts:
            logging.error(f"  {conflict}")
        return disabled()


def build_app(cfg: Dict[str, Any], settings: GeneralSettings, event_log: Optional[logging.Logger] = None) -> App:
    """Wire the engine from a sanitized config dict."""
    accessor = ConfigAccessor(cfg)
    event_bus = EventBus(
        cfg,
        structured_logs=settings.structured_logs,
        dry_run=settings.dry_run,
        debug_logging=settings.debug_logging,
        logger=event_log or logging.getLogger(EVENT_LOGGER_NAME),
    )
    state = RunnerState(poll_interval=settings.poll_interval_seconds)
    event_bus.subscribe(make_event_counter(state))

    cache = TTLCache(default_ttl=settings.strike_ttl_seconds)
    recurring = RecurringHashStore()
    striker = Striker(cache, recurring, event_bus, strike_ttl=settings.strike_ttl_seconds)
    executor = make_executor(settings.dry_run, event_bus)
    request_manager = RequestManager(HttpSettings(
        request_timeout=settings.request_timeout,
        retry_attempts=settings.retry_attempts,
        retry_backoff=settings.retry_backoff,
        min_interval_ms=settings.min_request_interval_ms,
        max_concurrent=settings.max_concurrent_requests,
        debug_logging=settings.debug_logging,
    ))

    queue_cfg = load_job_config('queue cleaner', accessor.queue_cleaner, QueueCleanerConfig)
    malware_cfg = load_job_config('malware blocker', accessor.malware_blocker, MalwareBlockerConfig)
    cleaner_cfg = load_job_config('download cleaner', accessor.download_cleaner, DownloadCleanerConfig)

    instances: Dict[str, List[Any]] = {}
    for arr_type in ARR_TYPES:
        try:
            found = accessor.arr_instances(arr_type)
        except ConfigError as e:
            logging.error(f"{arr_type} instances skipped, invalid configuration: {e}")
            continue
        if found:
            instances[arr_type] = found
    arr_clients = {
        t: ArrClient(t, request_manager, striker=striker, failed_import=queue_cfg.failed_import)
        for t in ARR_TYPES
    }

    rule_manager = RuleManager(queue_cfg.enabled_stall_rules(), queue_cfg.enabled_slow_rules())
    evaluator = RuleEvaluator(rule_manager, striker, cache)
    service_deps = ServiceDeps(
        executor=executor,
        event_bus=event_bus,
        evaluator=evaluator,
        striker=striker,
        filename_evaluator=FilenameEvaluator(malware_cfg.malware_patterns),
        hardlinks=HardLinkFileService(),
    )
    services = [create_download_service(c, service_deps, settings.request_timeout) for c in accessor.download_clients()]

    ctx = JobContext(
        actions=ActionsDeps(
            arr_clients=arr_clients,
            executor=executor,
            event_bus=event_bus,
            cache=cache,
            recurring=recurring,
            search_enabled=settings.search_enabled,
            search_delay_seconds=settings.search_delay_seconds,
        ),
        services=services,
        instances=instances,
        metrics=state.metrics,
    )

    jobs: List[Any] = []
    if queue_cfg.enabled:
        jobs.append(QueueCleaner(queue_cfg, ctx))
    if malware_cfg.enabled:
        provider = BlocklistProvider(malware_cfg.blocklists, settings.request_timeout)
        jobs.append(MalwareBlocker(malware_cfg, provider, ctx))
    if cleaner_cfg.enabled:
        jobs.append(DownloadCleaner(cleaner_cfg, ctx))

    return App(settings=settings, event_bus=event_bus, state=state, jobs=jobs, ctx=ctx)


async def log_client_versions(session: aiohttp.ClientSession, services: List[Any]) -> None:
    for service in services:
        try:
            version = await service.version(session)
        except DownloadClientError as e:
            logging.warning(f"download client {service.name} is not reachable: {e}")
            continue
        if version:
            logging.info(f"download client {service.name} version {version}")


def _log_fn(msg: str) -> None:
    logging.info(msg)


async def main(once: bool = False) -> Optional[Dict[str, Any]]:
    cfg = load_config(CONFIG_PATH)
    settings = ConfigAccessor(cfg).settings(env_defaults())
    event_log = setup_logging(settings.debug_logging)
    app = build_app(cfg, settings, event_log)
    if not app.jobs:
        logging.warning('No jobs enabled; check queue_cleaner, malware_blocker and download_cleaner settings')
    if settings.dry_run:
        logging.info('Dry run enabled; no changes will be made')

    async with aiohttp.ClientSession() as session:
        logging.debug('Running arr queue cleaner')
        await log_client_versions(session, app.ctx.services)
        if once:
            return await run_once(session, app.jobs, app.state, _log_fn)
        await run_forever(session, app.jobs, app.state, _log_fn)
    return None


if __name__ == '__main__':
    asyncio.run(main())
