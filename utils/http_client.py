"""Resilient shared HTTP client with retry/backoff and per-source cooldowns."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any

import aiohttp

import config

logger = logging.getLogger(__name__)


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""


@dataclass
class HttpSourceStats:
    ok: int = 0
    fail: int = 0
    rate_limited: int = 0
    retries: int = 0
    latency_total_ms: float = 0.0
    latency_count: int = 0


class ResilientHttpClient:
    def __init__(
        self,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._source_limits = dict(source_limits or {})
        self._session: aiohttp.ClientSession | None = None
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._stats: dict[str, HttpSourceStats] = {}
        self._cooldown_until: dict[str, float] = {}

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    @staticmethod
    def _source_key(source: str) -> str:
        return str(source or "default").strip().lower() or "default"

    def _get_semaphore(self, source_key: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(source_key)
        if sem is None:
            sem = asyncio.Semaphore(max(1, int(self._source_limits.get(source_key, 4))))
            self._semaphores[source_key] = sem
        return sem

    def _stats_row(self, source_key: str) -> HttpSourceStats:
        row = self._stats.get(source_key)
        if row is None:
            row = HttpSourceStats()
            self._stats[source_key] = row
        return row

    async def _wait_cooldown(self, source_key: str) -> None:
        wait_for = float(self._cooldown_until.get(source_key, 0.0)) - time.monotonic()
        if wait_for > 0:
            logger.debug("HTTP_COOLDOWN_WAIT source=%s wait=%.2fs", source_key, wait_for)
            await asyncio.sleep(wait_for)

    def _apply_cooldown(self, source_key: str, response: aiohttp.ClientResponse) -> None:
        try:
            retry_after = max(0.0, float((response.headers or {}).get("Retry-After", "") or 0.0))
        except ValueError:
            retry_after = 0.0
        cooldown = max(float(config.HTTP_429_COOLDOWN_SECONDS), retry_after)
        if cooldown > 0:
            until = time.monotonic() + cooldown
            self._cooldown_until[source_key] = max(self._cooldown_until.get(source_key, 0.0), until)

    @staticmethod
    def _compute_delay(attempt: int) -> float:
        base = float(config.HTTP_BACKOFF_BASE_SECONDS)
        cap = max(base, float(config.HTTP_BACKOFF_MAX_SECONDS))
        exp = min(cap, base * (2 ** max(0, attempt - 1)))
        return max(0.01, exp + random.uniform(0.0, float(config.HTTP_JITTER_SECONDS)))

    def snapshot_stats(self) -> dict[str, dict[str, int | float]]:
        out: dict[str, dict[str, int | float]] = {}
        for source, row in self._stats.items():
            total = row.ok + row.fail
            out[source] = {
                "ok": row.ok,
                "fail": row.fail,
                "rate_limited": row.rate_limited,
                "retries": row.retries,
                "error_percent": round((row.fail / total * 100.0) if total else 0.0, 2),
                "latency_avg_ms": round(row.latency_total_ms / row.latency_count, 2) if row.latency_count else 0.0,
            }
        return out

    async def get_json(
        self,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> HttpResult:
        return await self._request("GET", url, source=source, params=params, headers=headers)

    async def post_json(
        self,
        url: str,
        payload: Any,
        *,
        source: str = "default",
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        return await self._request(
            "POST", url, source=source, json_body=payload, headers=headers, max_attempts=max_attempts
        )

    async def _request(
        self,
        method: str,
        url: str,
        *,
        source: str,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        attempts = max(1, int(max_attempts or config.HTTP_RETRY_ATTEMPTS))
        req_headers = dict(self._headers)
        if headers:
            req_headers.update(headers)
        source_key = self._source_key(source)
        sem = self._get_semaphore(source_key)
        stats = self._stats_row(source_key)

        for attempt in range(1, attempts + 1):
            status = 0
            await self._wait_cooldown(source_key)
            async with sem:
                started = time.perf_counter()
                try:
                    session = await self._get_session()
                    async with session.request(
                        method, url, params=params, json=json_body, headers=req_headers
                    ) as response:
                        stats.latency_total_ms += max(0.0, (time.perf_counter() - started) * 1000.0)
                        stats.latency_count += 1
                        status = int(response.status or 0)
                        if 200 <= status < 300:
                            payload = await response.json(content_type=None)
                            stats.ok += 1
                            return HttpResult(ok=True, status=status, data=payload)

                        retryable = status == 429 or (500 <= status <= 599)
                        if status == 429:
                            stats.rate_limited += 1
                            self._apply_cooldown(source_key, response)
                        if not retryable or attempt >= attempts:
                            stats.fail += 1
                            body = (await response.text())[:300]
                            return HttpResult(ok=False, status=status, data=None, error=f"http_status_{status}:{body}")
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                    if attempt >= attempts:
                        stats.fail += 1
                        return HttpResult(ok=False, status=status, data=None, error=f"http_error:{exc}")

            stats.retries += 1
            delay = self._compute_delay(attempt)
            logger.debug(
                "HTTP_RETRY source=%s method=%s attempt=%s/%s status=%s delay=%.2fs url=%s",
                source_key,
                method,
                attempt,
                attempts,
                status,
                delay,
                url,
            )
            await asyncio.sleep(delay)

        return HttpResult(ok=False, status=0, data=None, error="http_exhausted")
