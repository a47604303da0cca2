"""
Polling engine
==============

Reconciles server-side job status into the ``JobStore`` until nothing is
left to wait for.

    Idle   --register(pending job)-->  Active   (immediate tick + interval)
    Active --tick, nothing pending-->  Idle
    Active --stop()---------------->   Idle

A tick fetches ``GET /jobs/{id}`` for every non-provisional, non-terminal
job at once.  A fetch that fails or returns non-OK leaves that job alone
until the next tick.  The first time a job is seen ``completed`` the
export hook runs and the job is marked ``downloaded``; that happens at
most once per job.

The timer is a small scheduler object so tests can swap it for one they
drive by hand and call ``tick()`` directly.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol

from govision.errors import SessionExpired, TransportError
from govision.jobs import COMPLETED, JobPatch, JobStore, parse_predictions
from govision.transport import AuthenticatedTransport, is_ok, parse_json_safe

log = logging.getLogger("govision.polling")

JOB_STATUS_PATH = "/jobs/{job_id}"

TickFn = Callable[[], Awaitable[None]]


class Scheduler(Protocol):
    running: bool

    def start(self, callback: TickFn) -> None: ...

    def stop(self) -> None: ...


class IntervalScheduler:
    """Runs ``callback`` now and then every ``interval`` seconds on the event loop.

    The loop awaits each callback before sleeping, so two ticks never run
    at the same time.
    """

    def __init__(self, interval: float):
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self, callback: TickFn) -> None:
        if self._task is not None:
            return
        # The first tick runs on the next loop iteration, not inside start()
        self._task = asyncio.get_running_loop().create_task(self._run(callback))

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # A tick stopping its own timer just lets the loop fall through
        if task is not current:
            task.cancel()

    async def _run(self, callback: TickFn) -> None:
        me = asyncio.current_task()
        while self._task is me:
            await callback()
            if self._task is not me:
                break
            await asyncio.sleep(self.interval)


class PollingEngine:
    """Polls pending jobs and merges the results into the store."""

    def __init__(
        self,
        transport: AuthenticatedTransport,
        store: JobStore,
        scheduler: Scheduler,
        exporter: Callable[[str], Awaitable[object]] | None = None,
        on_tick: Callable[[], None] | None = None,
    ):
        self.transport = transport
        self.store = store
        self.scheduler = scheduler
        # None disables automatic export; jobs then stay downloaded=False
        self.exporter = exporter
        self.on_tick = on_tick
        self.ticks = 0

    @property
    def active(self) -> bool:
        return self.scheduler.running

    def register(self, job_id: str) -> None:
        """Start polling if ``job_id`` is pending and the timer is idle."""
        job = self.store.get(job_id)
        if job is None or not job.is_pending:
            return
        if not self.scheduler.running:
            log.info("Polling started (job %s)", job_id)
            self.scheduler.start(self.tick)

    def stop(self) -> None:
        if self.scheduler.running:
            log.info("Polling stopped")
        self.scheduler.stop()

    async def tick(self) -> None:
        """One reconciliation pass over every pending job."""
        pending = self.store.pending_ids()
        if not pending:
            self.stop()
            return

        self.ticks += 1
        results = await asyncio.gather(
            *(self._fetch(job_id) for job_id in pending), return_exceptions=True
        )
        for job_id, result in zip(pending, results):
            if isinstance(result, SessionExpired):
                self.stop()
                break
            if isinstance(result, BaseException):
                log.warning("Status fetch for job %s failed: %s", job_id, result)

        if self.on_tick is not None:
            self.on_tick()

    async def _fetch(self, job_id: str) -> None:
        try:
            response = await self.transport.request(
                "GET", JOB_STATUS_PATH.format(job_id=job_id)
            )
        except TransportError as e:
            log.debug("Job %s: %s, retrying next tick", job_id, e)
            return
        if not is_ok(response):
            return
        data = parse_json_safe(response)
        if data is None:
            return

        job = self.store.get(job_id)
        if job is None:
            return
        was_completed = job.status == COMPLETED

        status = data.get("status") or job.status
        patch = JobPatch(status=status, image_url=data.get("image_url") or None)
        if status == COMPLETED and isinstance(data.get("predictions"), list):
            patch.detections = parse_predictions(data["predictions"])
        updated = self.store.merge(job_id, patch)

        if not was_completed and updated.status == COMPLETED and not updated.downloaded:
            log.info("Job %s completed with %d detection(s)", job_id, len(updated.detections))
            if self.exporter is not None:
                await self.exporter(job_id)
                self.store.merge(job_id, JobPatch(downloaded=True))
