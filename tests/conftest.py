"""Pytest configuration and fixtures."""

import asyncio
import threading
import time
from typing import Any, Callable, Generator

import httpx
import pytest
from fastapi.testclient import TestClient

from app.parse_service.config import Settings
from app.parse_service.database import create_db_engine, create_session_factory, init_db
from app.parse_service.main import create_app
from app.parse_service.models import ExtractedField, ExtractedTable, ParseResult
from app.parse_service.services.engine import ExtractionEngine
from app.parse_service.services.store import DeliveryStore, JobStore

API_KEY = "test-key"
WEBHOOK_SECRET = "test-secret"

# Minimal valid PDF structure
SAMPLE_PDF = b"""%PDF-1.4
1 0 obj
<< /Type /Catalog /Pages 2 0 R >>
endobj
2 0 obj
<< /Type /Pages /Kids [3 0 R] /Count 1 >>
endobj
3 0 obj
<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents 4 0 R >>
endobj
4 0 obj
<< /Length 44 >>
stream
BT
/F1 12 Tf
100 700 Td
(Test) Tj
ET
endstream
endobj
xref
0 5
0000000000 65535 f
0000000009 00000 n
0000000058 00000 n
0000000115 00000 n
0000000214 00000 n
trailer
<< /Size 5 /Root 1 0 R >>
startxref
306
%%EOF"""


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from the environment and .env files."""
    values: dict[str, Any] = {
        "database_url": "sqlite://",
        "openai_api_key": None,
        "max_concurrent_extractions": 2,
        "sync_timeout_seconds": 5.0,
        "async_timeout_seconds": 5.0,
        "webhook_secret": WEBHOOK_SECRET,
        "rate_limits": {"free": 1000, "pro": 1000, "enterprise": 1000},
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_result(total: float = 1234.56) -> ParseResult:
    return ParseResult(
        fields={"total": ExtractedField(value=total, confidence=0.92, page=1)},
        tables=[ExtractedTable(page=1, headers=["Item", "Amount"], rows=[["Widget", "1234.56"]])],
        raw_text=f"Invoice total {total}",
        page_count=1,
        confidence=0.92,
    )


class FakeEngine(ExtractionEngine):
    """
    Engine double.

    Returns a canned result. A document containing one of the failure
    markers raises the mapped exception instead. When gated, extract()
    blocks until release() is called.
    """

    def __init__(
        self,
        result: ParseResult | None = None,
        failures: dict[bytes, Exception] | None = None,
        gated: bool = False,
        delay: Callable[[bytes], float] | None = None,
    ):
        self.result = result or make_result()
        self.failures = failures or {}
        self.delay = delay
        self.calls: list[tuple[bytes, Any, str | None]] = []
        self.started = threading.Event()
        self._gate = threading.Event()
        if not gated:
            self._gate.set()

    def release(self) -> None:
        self._gate.set()

    def extract(self, document, options, filename=None):
        self.calls.append((document, options, filename))
        self.started.set()
        self._gate.wait(timeout=10)
        if self.delay is not None:
            time.sleep(self.delay(document))
        for marker, exc in self.failures.items():
            if marker in document:
                raise exc
        return self.result


class RecordingDispatcher:
    """Webhook dispatcher double that records enqueued events in order."""

    def __init__(self):
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def enqueue(self, event, target_url, data, api_key=None):
        self.events.append((event.value, target_url, data))

    def of(self, event: str) -> list[dict[str, Any]]:
        return [data for name, _, data in self.events if name == event]


def pdf_url_transport(unreachable: set[str] | None = None) -> httpx.MockTransport:
    """Serve SAMPLE_PDF for every URL except the unreachable ones (404)."""
    unreachable = unreachable or set()

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) in unreachable:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, content=SAMPLE_PDF, headers={"Content-Type": "application/pdf"})

    return httpx.MockTransport(handler)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll a condition from async tests."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


def poll_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll a condition from sync (TestClient) tests."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met in time")
        time.sleep(0.02)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def session_factory():
    """In-memory database with all tables created."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def job_store(session_factory) -> JobStore:
    return JobStore(session_factory)


@pytest.fixture
def delivery_store(session_factory) -> DeliveryStore:
    return DeliveryStore(session_factory)


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """A minimal valid PDF."""
    return SAMPLE_PDF


@pytest.fixture
def invalid_file_bytes() -> bytes:
    """Create invalid (non-PDF) file bytes for testing."""
    return b"This is not a PDF file"


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"X-API-Key": API_KEY}


@pytest.fixture
def make_client() -> Generator[Callable[..., TestClient], None, None]:
    """Factory for test clients with custom settings, engine and transports."""
    clients: list[TestClient] = []

    def factory(
        engine: ExtractionEngine | None = None,
        fetch_transport: httpx.AsyncBaseTransport | None = None,
        webhook_transport: httpx.AsyncBaseTransport | None = None,
        **overrides: Any,
    ) -> TestClient:
        app = create_app(
            make_settings(**overrides),
            extraction_engine=engine or FakeEngine(),
            fetch_transport=fetch_transport,
            webhook_transport=webhook_transport,
        )
        test_client = TestClient(app)
        test_client.__enter__()
        clients.append(test_client)
        return test_client

    yield factory
    for test_client in clients:
        test_client.__exit__(None, None, None)


@pytest.fixture
def client(make_client, fake_engine) -> TestClient:
    """Create a test client for the FastAPI application."""
    return make_client(engine=fake_engine, fetch_transport=pdf_url_transport())
