"""
Activity: Service Readiness Gate — polls backing services until they report healthy.

The gate never starts or stops a service; it only observes it. Each service is
polled in its own task so several services become ready independently, and a
step waits on the conjunction of the services it needs.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable

import psycopg2
import requests

from models.errors import ReadinessTimeoutError
from models.schemas import BackingService, Readiness

log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

PROBE_TIMEOUT = 5  # seconds, per attempt


async def await_ready(service: BackingService, sleep: Sleep = asyncio.sleep) -> Readiness:
    """Poll ``service.probe`` until it succeeds or ``max_retries`` attempts fail.

    Returns READY right after the first successful attempt. Returns UNREADY only
    after exactly ``max_retries`` failed attempts. A probe that raises counts as
    a failed attempt.
    """
    loop = asyncio.get_running_loop()
    for attempt in range(1, service.max_retries + 1):
        try:
            healthy = await loop.run_in_executor(None, service.probe)
        except Exception as e:
            log.debug("Probe for %s raised: %s", service.name, e)
            healthy = False

        if healthy:
            log.info("Service %s ready after %d attempt(s)", service.name, attempt)
            return Readiness.READY

        log.info(
            "Service %s not ready (attempt %d/%d)",
            service.name, attempt, service.max_retries,
        )
        if attempt < service.max_retries:
            await sleep(service.retry_interval)

    log.error("Service %s unready after %d attempts", service.name, service.max_retries)
    return Readiness.UNREADY


class ReadinessGate:
    """Starts one polling task per service and lets steps wait on subsets."""

    def __init__(self, services: Iterable[BackingService], sleep: Sleep = asyncio.sleep):
        self.services = {s.name: s for s in services}
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task] = {}

    def start(self) -> None:
        """Begin polling every service concurrently with whatever runs next."""
        for name, service in self.services.items():
            if name not in self._tasks:
                self._tasks[name] = asyncio.create_task(
                    await_ready(service, self._sleep), name=f"readiness:{name}"
                )

    async def wait_for(self, names: Iterable[str]) -> None:
        """Block until every named service is READY.

        Raises ReadinessTimeoutError for the first service that came back UNREADY.
        """
        names = list(names)
        if not names:
            return
        self.start()
        results = await asyncio.gather(*(self._tasks[n] for n in names))
        for name, result in zip(names, results):
            if result is Readiness.UNREADY:
                service = self.services[name]
                raise ReadinessTimeoutError(name, service.max_retries, service.retry_interval)

    async def close(self) -> None:
        """Cancel polling that nothing waited for."""
        pending = [t for t in self._tasks.values() if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


# ── Probes ────────────────────────────────────────────────────────────

def postgres_probe(database_url: str) -> Callable[[], bool]:
    """Connect and run ``SELECT 1`` (the equivalent of ``pg_isready``)."""
    def probe() -> bool:
        conn = psycopg2.connect(database_url, connect_timeout=PROBE_TIMEOUT)
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                return cur.fetchone() == (1,)
        finally:
            conn.close()
    return probe


def http_probe(url: str) -> Callable[[], bool]:
    """GET ``url`` and treat any 2xx as healthy."""
    def probe() -> bool:
        resp = requests.get(url, timeout=PROBE_TIMEOUT)
        return 200 <= resp.status_code < 300
    return probe


def object_store_probe(endpoint_url: str) -> Callable[[], bool]:
    """MinIO liveness endpoint under the S3 endpoint URL."""
    return http_probe(endpoint_url.rstrip("/") + "/minio/health/live")
