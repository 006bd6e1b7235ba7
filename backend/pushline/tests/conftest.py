"""
Pytest fixtures shared across all test modules.
Uses an in-memory SQLite database with StaticPool so all connections
share a single in-memory DB — no real Postgres required for tests.
Push delivery is faked — no push service or VAPID keys required.
"""

import os

# Set env vars BEFORE any pushline module is imported
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["REGISTRY_BACKEND"] = "sql"
os.environ["REDIS_URL"] = ""
os.environ["VAPID_PUBLIC_KEY"] = ""
os.environ["VAPID_PRIVATE_KEY"] = ""
os.environ["OPERATOR_TOKEN"] = ""

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient
from pywebpush import WebPushException
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Import pushline modules AFTER env vars are set
import pushline.models.push_subscription  # noqa: E402,F401
from pushline.api.deps import get_registry, get_sender  # noqa: E402
from pushline.database import Base  # noqa: E402
from pushline.main import app  # noqa: E402
from pushline.schemas.push import PushSubscriptionData  # noqa: E402
from pushline.services.registry import SqlSubscriptionRegistry  # noqa: E402
from pushline.worker.cache import CacheStore  # noqa: E402
from pushline.worker.lifecycle import WorkerRegistration  # noqa: E402
from pushline.worker.platform import HttpxFetcher, WorkerPlatform  # noqa: E402
from pushline.worker.runtime import PushWorker  # noqa: E402

# Single shared in-memory SQLite engine — StaticPool ensures all
# connections share the same DB instance.
engine = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    """Create tables before each test, drop after."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def registry():
    return SqlSubscriptionRegistry(TestingSessionLocal)


@pytest.fixture()
def client(registry):
    app.dependency_overrides[get_registry] = lambda: registry
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Fake push sender
# ---------------------------------------------------------------------------


class FakePushResponse:
    def __init__(self, status_code: int):
        self.status_code = status_code
        self.text = ""


class FakeSender:
    """Stands in for WebPushSender; outcomes are scripted per endpoint."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self._errors: dict[str, Exception] = {}
        self._gates: dict[str, asyncio.Event] = {}

    def gone(self, endpoint: str, status: int = 410):
        self._errors[endpoint] = WebPushException(f"Push failed: {status}", response=FakePushResponse(status))

    def reject(self, endpoint: str, status: int = 500):
        self._errors[endpoint] = WebPushException(f"Push failed: {status}", response=FakePushResponse(status))

    def break_transport(self, endpoint: str):
        self._errors[endpoint] = ConnectionError("connection reset by peer")

    def block(self, endpoint: str) -> asyncio.Event:
        gate = self._gates[endpoint] = asyncio.Event()
        return gate

    async def send(self, subscription: PushSubscriptionData, data: str) -> None:
        gate = self._gates.get(subscription.endpoint)
        if gate is not None:
            await gate.wait()
        error = self._errors.get(subscription.endpoint)
        if error is not None:
            raise error
        self.sent.append((subscription.endpoint, data))


@pytest.fixture()
def fake_sender():
    return FakeSender()


@pytest.fixture()
def push_client(client, fake_sender):
    """TestClient whose dispatcher delivers through FakeSender."""
    app.dependency_overrides[get_sender] = lambda: fake_sender
    return client


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_subscription():
    def _make(n: int | str = 1, p256dh: str | None = None, auth: str | None = None) -> PushSubscriptionData:
        return PushSubscriptionData(
            endpoint=f"https://push.example.com/send/{n}",
            keys={"p256dh": p256dh or f"BP256-{n}", "auth": auth or f"auth-{n}"},
        )

    return _make


# ---------------------------------------------------------------------------
# Background worker platform
# ---------------------------------------------------------------------------

ORIGIN = "https://app.example"


class FakeNetwork:
    """httpx MockTransport handler serving canned responses by path."""

    def __init__(self):
        self.online = True
        self.routes: dict[str, tuple[int, str, bytes]] = {}
        self.requests: list[str] = []

    def route(self, path: str, status: int = 200, body: bytes = b"ok", content_type: str = "text/html"):
        self.routes[path] = (status, content_type, body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        if not self.online:
            raise httpx.ConnectError("network unreachable", request=request)
        if request.url.path not in self.routes:
            return httpx.Response(404, text="not found")
        status, content_type, body = self.routes[request.url.path]
        return httpx.Response(status, headers={"content-type": content_type}, content=body)


@pytest.fixture()
def network():
    net = FakeNetwork()
    net.route("/", body=b"<html>home</html>")
    net.route("/manifest.json", body=b"{}", content_type="application/json")
    return net


@pytest.fixture()
def worker_platform(network):
    fetcher = HttpxFetcher(httpx.AsyncClient(transport=httpx.MockTransport(network.handler)))
    return WorkerPlatform(origin=ORIGIN, fetch=fetcher, caches=CacheStore())


@pytest.fixture()
def worker_registration(worker_platform):
    return WorkerRegistration(ORIGIN + "/", worker_platform, PushWorker.factory())
