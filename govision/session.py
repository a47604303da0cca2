"""
Dashboard session
=================

The command interface a front end drives.  One ``DashboardSession`` owns
the credential store, job store, transport, upload pipeline, polling
engine and exporter, wired together at construction:

    session = DashboardSession(config)
    session.select(["cat.png", "dog.jpg"])
    await session.upload_all()
    await session.wait_until_idle()
    session.table()
    await session.close()

None of the components know about each other's owners; everything they
share is passed in here.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Iterable, Optional

import numpy as np
import pandas as pd

from govision import auth
from govision.config import ClientConfig
from govision.credentials import CredentialStore
from govision.errors import SessionExpired
from govision.jobs import JobStore, jobs_table
from govision.polling import IntervalScheduler, PollingEngine, Scheduler
from govision.renderer import AnnotationExporter
from govision.transport import AuthenticatedTransport, SendFn
from govision.uploads import FileCandidate, FileSelection, UploadPipeline

log = logging.getLogger("govision.session")


class DashboardSession:

    def __init__(
        self,
        config: ClientConfig,
        credentials: CredentialStore | None = None,
        send: SendFn | None = None,
        fetch: Callable[..., object] | None = None,
        scheduler: Scheduler | None = None,
        on_change: Callable[[], None] | None = None,
    ):
        self.config = config
        self.credentials = credentials or CredentialStore(config.credentials_path)
        self.store = JobStore()
        self.session_ended = False

        self.transport = AuthenticatedTransport(
            config, self.credentials, send=send, on_session_end=self._on_session_end,
        )
        self.exporter = AnnotationExporter(config, self.store, fetch=fetch)
        self.poller = PollingEngine(
            self.transport,
            self.store,
            scheduler or IntervalScheduler(config.poll_interval),
            exporter=self.exporter.export if config.auto_export else None,
            on_tick=on_change,
        )
        self.pipeline = UploadPipeline(
            config, self.transport, self.store,
            on_job_created=self.poller.register,
            on_change=on_change,
        )
        self.selection = FileSelection(config)

    # ------------------------------------------------------------------
    #  Auth
    # ------------------------------------------------------------------

    @property
    def logged_in(self) -> bool:
        return self.credentials.get() is not None

    def require_auth(self) -> None:
        if not self.logged_in:
            raise SessionExpired("Not logged in")

    async def login(self, email: str, password: str):
        credential = await auth.login(self.transport, email, password)
        self.session_ended = False
        return credential

    async def register(self, email: str, password: str, confirm_password: str | None = None):
        await auth.register(self.transport, email, password, confirm_password)

    async def logout(self) -> None:
        await self.close()
        auth.logout(self.credentials)

    def _on_session_end(self) -> None:
        self.session_ended = True
        self.poller.stop()

    # ------------------------------------------------------------------
    #  Files and uploads
    # ------------------------------------------------------------------

    def select(self, paths: Iterable[str | Path]) -> int:
        """Add files to the pending selection; returns how many were accepted."""
        return self.selection.add(FileCandidate.from_path(p) for p in paths)

    async def upload_all(self) -> None:
        self.require_auth()
        batch = self.selection.take()
        if batch:
            await self.pipeline.upload(batch)

    async def wait_until_idle(self, check_every: float = 0.1) -> None:
        """Return once the polling engine has nothing left to poll."""
        while self.poller.active:
            await asyncio.sleep(check_every)

    # ------------------------------------------------------------------
    #  Results
    # ------------------------------------------------------------------

    def table(self) -> pd.DataFrame:
        return jobs_table(self.store)

    async def view(self, job_id: str) -> Optional[np.ndarray]:
        """Annotated image for a completed job (None if unavailable)."""
        return await self.exporter.render(job_id)

    async def download(self, job_id: str, path: Path | None = None) -> Optional[Path]:
        image = await self.view(job_id)
        if image is None:
            return None
        return self.exporter.save(image, job_id, path)

    async def close(self) -> None:
        """Teardown: stop polling; no further ticks run."""
        self.poller.stop()
