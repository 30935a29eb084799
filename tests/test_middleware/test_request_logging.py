"""Integration tests for logging middleware."""

import asyncio
import json
import logging
from io import StringIO

import pytest
from fastapi import APIRouter, FastAPI
from httpx import ASGITransport, AsyncClient

from vmhost.middleware.logging import LoggingMiddleware
from vmhost.utils.context import get_context
from vmhost.utils.logger import ContextInjectionFilter, CustomJsonFormatter, get_logger


def create_test_app() -> FastAPI:
    """Create a test FastAPI app with logging middleware."""
    app = FastAPI()
    app.add_middleware(LoggingMiddleware)

    router = APIRouter()

    @router.get("/test")
    async def test_endpoint():
        return {"message": "test"}

    @router.get("/test-error")
    async def test_error_endpoint():
        raise ValueError("Test error")

    @router.get("/test-context")
    async def test_context():
        await asyncio.sleep(0.01)
        return get_context()

    app.include_router(router)
    return app


@pytest.fixture
def log_stream():
    """Capture middleware log records as JSON lines."""
    logger = get_logger("vmhost.middleware.logging")
    log_filter = ContextInjectionFilter()
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(CustomJsonFormatter())
    logger.addFilter(log_filter)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

    yield stream

    logger.removeHandler(handler)
    logger.removeFilter(log_filter)


def parse_logs(stream: StringIO) -> list:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


def find_log(logs: list, message: str) -> dict:
    return next(log for log in logs if log.get("message") == message)


class TestLoggingMiddleware:
    """Tests for LoggingMiddleware."""

    @pytest.mark.asyncio
    async def test_logs_request_and_response(self, log_stream):
        async with AsyncClient(
            transport=ASGITransport(app=create_test_app()), base_url="http://test"
        ) as client:
            response = await client.get("/test?verbose=1")

        logs = parse_logs(log_stream)
        started = find_log(logs, "Request started")
        completed = find_log(logs, "Request completed")

        assert started["method"] == "GET"
        assert started["path"] == "/test"
        assert started["query_params"] == "verbose=1"
        assert "client_ip" in started
        assert completed["status_code"] == 200
        assert completed["duration_ms"] >= 0
        assert completed["request_id"] == started["request_id"]
        assert response.headers["X-Request-ID"] == started["request_id"]
        assert response.headers["X-Process-Time"].endswith("ms")

    @pytest.mark.asyncio
    async def test_uses_incoming_request_id(self):
        async with AsyncClient(
            transport=ASGITransport(app=create_test_app()), base_url="http://test"
        ) as client:
            response = await client.get("/test-context", headers={"X-Request-ID": "req-42"})

        assert response.json() == {"request_id": "req-42", "action": "http.request"}
        assert response.headers["X-Request-ID"] == "req-42"

    @pytest.mark.asyncio
    async def test_concurrent_requests_get_unique_ids(self):
        async with AsyncClient(
            transport=ASGITransport(app=create_test_app()), base_url="http://test"
        ) as client:
            responses = await asyncio.gather(*[client.get("/test-context") for _ in range(5)])

        request_ids = [r.json()["request_id"] for r in responses]
        assert len(set(request_ids)) == 5

    @pytest.mark.asyncio
    async def test_logs_failed_requests(self, log_stream):
        async with AsyncClient(
            transport=ASGITransport(app=create_test_app()), base_url="http://test"
        ) as client:
            with pytest.raises(ValueError, match="Test error"):
                await client.get("/test-error")

        failed = find_log(parse_logs(log_stream), "Request failed")
        assert failed["error"] == "Test error"
        assert failed["error_type"] == "ValueError"
        assert failed["path"] == "/test-error"
