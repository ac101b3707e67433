from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp


@dataclass
class HttpSettings:
    request_timeout: int = 10
    retry_attempts: int = 2
    retry_backoff: float = 1.0
    min_interval_ms: float = 0.0
    max_concurrent: int = 0
    debug_logging: bool = False


class RequestManager:
    """Per-instance throttling in front of ``make_api_request``.

    State is scoped to the manager so separate runners never share
    semaphores or rate-limit clocks.
    """

    def __init__(self, settings: Optional[HttpSettings] = None) -> None:
        self.settings = settings or HttpSettings()
        self._service_last_request_at: Dict[str, float] = {}
        self._service_semaphore: Dict[str, asyncio.Semaphore] = {}

    async def throttled_request(
        self,
        session: aiohttp.ClientSession,
        service_name: str,
        url: str,
        api_key: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Any] = None,
        method: str = 'get',
        min_interval_ms: Optional[float] = None,
        max_concurrent: Optional[int] = None,
        raise_for_status: bool = False,
    ):
        s = self.settings
        min_interval_ms = s.min_interval_ms if min_interval_ms is None else min_interval_ms
        max_concurrent = s.max_concurrent if max_concurrent is None else max_concurrent
        # Rate limit by elapsed time between calls
        if min_interval_ms and min_interval_ms > 0:
            last = self._service_last_request_at.get(service_name, 0.0)
            now = asyncio.get_event_loop().time()
            wait = (last + (min_interval_ms / 1000.0)) - now
            if wait > 0:
                await asyncio.sleep(wait)
            self._service_last_request_at[service_name] = asyncio.get_event_loop().time()

        kwargs = dict(
            params=params,
            json_data=json_data,
            method=method,
            request_timeout=s.request_timeout,
            retry_attempts=s.retry_attempts,
            retry_backoff=s.retry_backoff,
            debug_logging=s.debug_logging,
            raise_for_status=raise_for_status,
        )
        # Limit concurrency per service
        if max_concurrent and max_concurrent > 0:
            sem = self._service_semaphore.get(service_name)
            if sem is None:
                sem = asyncio.Semaphore(max_concurrent)
                self._service_semaphore[service_name] = sem
            async with sem:
                return await make_api_request(session, url, api_key, **kwargs)
        return await make_api_request(session, url, api_key, **kwargs)


def _backoff(retry_backoff: float, attempts: int) -> float:
    return retry_backoff * (2 ** (attempts - 1)) * (1 + random.uniform(0, 0.25))


async def make_api_request(
    session: aiohttp.ClientSession,
    url: str,
    api_key: Optional[str],
    *,
    params: Optional[Dict[str, Any]] = None,
    json_data: Optional[Any] = None,
    method: str = 'get',
    request_timeout: int = 10,
    retry_attempts: int = 2,
    retry_backoff: float = 1.0,
    debug_logging: bool = False,
    raise_for_status: bool = False,
):
    """Send one arr API call with retries on 5xx/429 and network errors.

    Returns the decoded JSON body, ``{'status': n}`` for empty responses, or
    ``None`` when the call failed. With ``raise_for_status`` a non-retriable
    HTTP error is raised as ``aiohttp.ClientResponseError`` instead.
    """
    import logging

    headers = {'X-Api-Key': api_key} if api_key else {}
    attempts = 0
    last_error: Optional[Exception] = None
    while attempts <= retry_attempts:
        try:
            timeout = aiohttp.ClientTimeout(total=request_timeout)
            async with session.request(method, url, headers=headers, params=params, json=json_data, timeout=timeout) as response:
                response.raise_for_status()
                content_type = response.headers.get('Content-Type', '')
                # Prefer explicit status handling to avoid parsing empty JSON bodies
                if response.status in (200, 201, 202, 204):
                    if response.status != 204 and 'application/json' in content_type:
                        try:
                            return await response.json()
                        except Exception:
                            # Fall back to status on empty/malformed body
                            pass
                    if debug_logging:
                        logging.debug(f'HTTP {method.upper()} {url} -> {response.status} (no content)')
                    return {'status': response.status}
                if 'application/json' in content_type:
                    try:
                        return await response.json()
                    except Exception:
                        pass
                if debug_logging:
                    logging.debug(f'HTTP {method.upper()} {url} -> {response.status} ({content_type})')
                return {'status': response.status, 'content_type': content_type}
        except aiohttp.ClientResponseError as e:
            if e.status and (500 <= e.status < 600 or e.status == 429) and attempts < retry_attempts:
                attempts += 1
                sleep_for = _backoff(retry_backoff, attempts)
                if debug_logging:
                    logging.warning(f'HTTP {method.upper()} {url} {e.status}; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
                await asyncio.sleep(sleep_for)
                last_error = e
                continue
            logging.error(f'HTTP {method.upper()} {url} error {getattr(e, "status", None)}: {getattr(e, "message", str(e))}')
            if raise_for_status:
                raise
            return None
        except (aiohttp.ClientConnectorError, aiohttp.ClientOSError, aiohttp.ServerTimeoutError, asyncio.TimeoutError) as e:
            if attempts < retry_attempts:
                attempts += 1
                sleep_for = _backoff(retry_backoff, attempts)
                if debug_logging:
                    logging.warning(f'HTTP {method.upper()} {url} network/timeout; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
                await asyncio.sleep(sleep_for)
                last_error = e
                continue
            logging.error(f'HTTP {method.upper()} {url} network/timeout: {str(e)}')
            return None
        except aiohttp.ClientError as e:
            logging.error(f'HTTP {method.upper()} {url} unexpected error: {str(e)}')
            return None
    if last_error is not None:
        logging.error(f'HTTP {method.upper()} {url} failed after {retry_attempts} retries: {last_error}')
    return None
