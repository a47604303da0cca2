import json
import threading

import pytest

from govision.config import ClientConfig
from govision.credentials import CredentialStore
from govision.jobs import JobStore

API = "http://api.test/v1"


class FakeResponse:
    def __init__(self, status_code=200, body=None, content_type="application/json", content=b""):
        self.status_code = status_code
        self.headers = {"content-type": content_type} if content_type else {}
        self._body = body
        self.content = content

    def json(self):
        if isinstance(self._body, (bytes, str)):
            return json.loads(self._body)
        if self._body is None:
            raise ValueError("no body")
        return self._body


class FakeSend:
    """Blocking send() stand-in.  ``handler(method, url, **kwargs)`` builds responses."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, method, url, **kwargs):
        with self._lock:
            self.calls.append((method, url, kwargs))
        result = self.handler(method, url, **kwargs)
        if isinstance(result, Exception):
            raise result
        return result

    def paths(self):
        return [url[len(API):] for _, url, _ in self.calls]


class RotatingAuthServer:
    """Accepts only the newest access token; each refresh token works once.

    Status GETs answer ``{"status": "pending"}`` once authorized.
    """

    def __init__(self, stale_requests=2):
        self.access = None
        self.refresh = "ref-1"
        self.refreshes = 0
        self._lock = threading.Lock()
        # Holds the first 401s until all of them are in flight together
        self._barrier = threading.Barrier(stale_requests, timeout=5)

    def __call__(self, method, url, **kw):
        if url.endswith("/auth/refresh"):
            with self._lock:
                if kw["json"]["refresh_token"] != self.refresh:
                    return FakeResponse(400, {"message": "invalid refresh token"})
                self.refreshes += 1
                self.access = f"acc-{self.refreshes + 1}"
                self.refresh = f"ref-{self.refreshes + 1}"
                return FakeResponse(200, {"access_token": self.access, "refresh_token": self.refresh})

        if kw["headers"].get("Authorization") == f"Bearer {self.access}":
            return FakeResponse(200, {"status": "pending"})
        self._barrier.wait()
        return FakeResponse(401, {"message": "token expired"})


class ManualScheduler:
    """Scheduler that only records start/stop; tests call tick() themselves."""

    def __init__(self):
        self.running = False
        self.starts = 0
        self.callback = None

    def start(self, callback):
        if self.running:
            return
        self.running = True
        self.starts += 1
        self.callback = callback

    def stop(self):
        self.running = False


@pytest.fixture
def config(tmp_path):
    return ClientConfig(api_base=API, output_dir=tmp_path / "out", credentials_path=None)


@pytest.fixture
def credentials():
    store = CredentialStore()
    store.save({"access_token": "acc-1", "refresh_token": "ref-1"}, identity="me@example.com")
    return store


@pytest.fixture
def store():
    return JobStore()
