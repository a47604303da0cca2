"""
Credential storage
==================

Holds the access token, refresh token and identity label (the e-mail the
user logged in with).  Pure storage: no network, no validation.

With a ``path`` the triple is mirrored to a small JSON file so it survives
restarts, the same way the browser client kept it in localStorage.  The
file is always rewritten whole through a temp file + ``os.replace`` so a
reader never sees a half-cleared credential.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

log = logging.getLogger("govision.credentials")


@dataclass(frozen=True)
class Credential:
    access_token: str
    refresh_token: str
    identity: str = ""


class CredentialStore:
    """In-memory credential triple with optional JSON file backing."""

    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path is not None else None
        self._credential: Optional[Credential] = None
        if self.path is not None:
            self._credential = self._load()

    def get(self) -> Optional[Credential]:
        return self._credential

    def identity(self) -> str:
        return self._credential.identity if self._credential else ""

    def save(self, tokens: dict, identity: str | None = None) -> Credential:
        """Overwrite both tokens; keep the previous identity unless one is given."""
        if identity is None:
            identity = self.identity()
        self._credential = Credential(
            access_token=tokens["access_token"],
            refresh_token=tokens["refresh_token"],
            identity=identity,
        )
        self._persist()
        return self._credential

    def clear(self) -> None:
        self._credential = None
        self._persist()

    # ------------------------------------------------------------------
    #  File backing
    # ------------------------------------------------------------------

    def _load(self) -> Optional[Credential]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            log.warning("Ignoring unreadable credentials file %s: %s", self.path, e)
            return None
        if not isinstance(raw, dict) or not raw.get("access_token") or not raw.get("refresh_token"):
            return None
        return Credential(
            access_token=str(raw["access_token"]),
            refresh_token=str(raw["refresh_token"]),
            identity=str(raw.get("identity") or ""),
        )

    def _persist(self) -> None:
        if self.path is None:
            return
        if self._credential is None:
            self.path.unlink(missing_ok=True)
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(asdict(self._credential)), encoding="utf-8")
        os.replace(tmp, self.path)
