"""
Upload pipeline
===============

Two steps:

    selection = FileSelection(config)
    selection.add(FileCandidate.from_path(p) for p in paths)   # filter
    await pipeline.upload(selection.take())                     # dispatch

Filtering drops files with a disallowed MIME type, files over the size
limit and exact duplicates (same name and size) without complaint.

Dispatch runs ``min(concurrency, len(batch))`` lanes that pull from one
shared queue until it is empty.  Each file gets a provisional
``uploading`` job straight away; when the server answers, that placeholder
is swapped for the real job (which is handed to the polling engine) or
for a ``failed`` job under the same temporary id.  One file failing never
stops the others, and ``upload()`` returns only after every lane is done.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import random
import string
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from govision.config import ClientConfig
from govision.errors import SessionExpired, TransportError
from govision.jobs import FAILED, QUEUED, UPLOADING, Job, JobStore
from govision.transport import AuthenticatedTransport, is_ok, parse_json_safe

log = logging.getLogger("govision.uploads")

UPLOAD_PATH = "/image/upload"

T = TypeVar("T")


@dataclass(frozen=True)
class FileCandidate:
    """A file offered for upload.  Files on disk are only read when sent."""
    name: str
    size: int
    mime_type: str
    content: Optional[bytes] = None
    path: Optional[Path] = None

    @classmethod
    def from_path(cls, path: str | Path) -> "FileCandidate":
        p = Path(path)
        mime_type, _ = mimetypes.guess_type(p.name)
        return cls(name=p.name, size=p.stat().st_size, mime_type=mime_type or "", path=p)

    def read(self) -> bytes:
        if self.content is not None:
            return self.content
        return self.path.read_bytes()


def is_valid_file(candidate: FileCandidate, config: ClientConfig) -> bool:
    return (
        candidate.mime_type.lower() in config.allowed_mime_types
        and candidate.size <= config.max_upload_bytes
    )


class FileSelection:
    """Files picked for the next upload, already filtered and de-duplicated."""

    def __init__(self, config: ClientConfig):
        self.config = config
        self.files: list[FileCandidate] = []

    def __len__(self) -> int:
        return len(self.files)

    def add(self, candidates: Iterable[FileCandidate]) -> int:
        """Add the acceptable candidates; returns how many were kept."""
        kept = 0
        for candidate in candidates:
            if not is_valid_file(candidate, self.config):
                log.info("Skipping %s (%s, %d bytes)", candidate.name,
                         candidate.mime_type or "unknown type", candidate.size)
                continue
            if any(f.name == candidate.name and f.size == candidate.size for f in self.files):
                continue
            self.files.append(candidate)
            kept += 1
        return kept

    def remove(self, index: int) -> None:
        del self.files[index]

    def take(self) -> list[FileCandidate]:
        """Hand over the current batch and start a fresh selection."""
        batch, self.files = self.files, []
        return batch


async def run_with_concurrency(
    items: Iterable[T],
    concurrency: int,
    worker: Callable[[T], Awaitable[None]],
) -> None:
    """Run ``worker`` over ``items`` with at most ``concurrency`` in flight.

    Worker exceptions are logged and swallowed per item; the call returns
    when every lane has drained the queue.
    """
    queue = deque(items)

    async def lane():
        while queue:
            item = queue.popleft()
            try:
                await worker(item)
            except Exception:
                log.exception("Worker failed on %r", item)

    lanes = [lane() for _ in range(min(concurrency, len(queue)))]
    await asyncio.gather(*lanes)


def _temp_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"temp-{int(time.time() * 1000)}-{suffix}"


class UploadPipeline:
    """Uploads a batch through a fixed-width pool of lanes."""

    def __init__(
        self,
        config: ClientConfig,
        transport: AuthenticatedTransport,
        store: JobStore,
        on_job_created: Callable[[str], None] | None = None,
        on_change: Callable[[], None] | None = None,
    ):
        self.config = config
        self.transport = transport
        self.store = store
        # Called with the real job id once the server accepts a file
        self.on_job_created = on_job_created
        self.on_change = on_change
        self._session_expired: Optional[SessionExpired] = None

    async def upload(self, batch: list[FileCandidate], concurrency: int | None = None) -> None:
        """Upload every file in ``batch``; see the module docstring."""
        if not batch:
            return
        width = concurrency or self.config.upload_concurrency
        self._session_expired = None
        log.info("Uploading %d file(s), %d at a time", len(batch), min(width, len(batch)))

        await run_with_concurrency(batch, width, self._upload_unless_expired)

        if self._session_expired is not None:
            raise self._session_expired

    async def _upload_unless_expired(self, candidate: FileCandidate) -> None:
        # Once the session is gone the remaining files are not started
        if self._session_expired is None:
            await self.upload_one(candidate)

    async def upload_one(self, candidate: FileCandidate) -> Job:
        temp_id = _temp_id()
        placeholder = self.store.set(Job(
            id=temp_id, file_name=candidate.name, status=UPLOADING, is_provisional=True,
        ))
        self._changed()

        try:
            content = await asyncio.to_thread(candidate.read)
        except OSError as e:
            log.warning("Cannot read %s: %s", candidate.name, e)
            return self._fail(placeholder, "Cannot read file")

        try:
            response = await self.transport.request(
                "POST", UPLOAD_PATH,
                files={"file": (candidate.name, content, candidate.mime_type)},
            )
        except SessionExpired as e:
            self._session_expired = e
            return self._fail(placeholder, "Session expired")
        except TransportError as e:
            log.warning("Upload of %s failed: %s", candidate.name, e)
            return self._fail(placeholder, "Network error")

        data = parse_json_safe(response) or {}
        job_id = data.get("job_id")
        if not is_ok(response) or not job_id:
            message = data.get("message") or "Upload failed"
            log.warning("Upload of %s rejected (HTTP %d): %s",
                        candidate.name, response.status_code, message)
            return self._fail(placeholder, message)

        job = self.store.replace(temp_id, Job(
            id=str(job_id),
            file_name=candidate.name,
            status=data.get("status") or QUEUED,
        ))
        log.info("Uploaded %s as job %s (%s)", candidate.name, job.id, job.status)
        if self.on_job_created is not None:
            self.on_job_created(job.id)
        self._changed()
        return job

    def _fail(self, placeholder: Job, message: str) -> Job:
        job = self.store.replace(placeholder.id, Job(
            id=placeholder.id,
            file_name=placeholder.file_name,
            status=FAILED,
            error=message,
            created_at=placeholder.created_at,
            is_provisional=True,
        ))
        self._changed()
        return job

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()
