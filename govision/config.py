"""
Client configuration
====================

Every setting has a tested default and can be overridden from the
environment.  The CLI builds one ``ClientConfig`` at startup and hands it
to the session; nothing reads the environment after that.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


DEFAULT_API_BASE = "http://localhost:8080/v1"
DEFAULT_CREDENTIALS_PATH = Path.home() / ".govision" / "credentials.json"

ALLOWED_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/gif"})


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off", "")


@dataclass
class ClientConfig:

    # -- Remote API --
    api_base: str = DEFAULT_API_BASE
    request_timeout: float = 30.0

    # -- Uploads --
    max_upload_mb: int = 5
    upload_concurrency: int = 3
    allowed_mime_types: frozenset = field(default_factory=lambda: ALLOWED_MIME_TYPES)

    # -- Polling --
    poll_interval_ms: int = 3000

    # -- Export --
    auto_export: bool = True
    output_dir: Path = Path(".")

    # -- Credentials (None keeps them in memory only) --
    credentials_path: Path | None = None

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000.0

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Build a config from ``GOVISION_*`` environment variables."""
        return cls(
            api_base=os.getenv("GOVISION_API_BASE", DEFAULT_API_BASE).rstrip("/"),
            request_timeout=float(os.getenv("GOVISION_REQUEST_TIMEOUT", "30")),
            max_upload_mb=int(os.getenv("GOVISION_MAX_UPLOAD_MB", "5")),
            upload_concurrency=int(os.getenv("GOVISION_UPLOAD_CONCURRENCY", "3")),
            poll_interval_ms=int(os.getenv("GOVISION_POLL_INTERVAL_MS", "3000")),
            auto_export=_env_bool("GOVISION_AUTO_EXPORT", True),
            output_dir=Path(os.getenv("GOVISION_OUTPUT_DIR", ".")),
            credentials_path=Path(
                os.getenv("GOVISION_CREDENTIALS", str(DEFAULT_CREDENTIALS_PATH))
            ).expanduser(),
        )
