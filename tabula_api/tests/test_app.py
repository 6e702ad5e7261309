"""Tests for application wiring: health, error mapping, middleware and logging."""

from __future__ import annotations

import json
import logging
import sys

import pytest
from httpx import AsyncClient

from tabula_api.config import APISettings
from tabula_api.main import status_for_error
from tabula_api.middleware.json_formatter import JSONFormatter, configure_logging
from tabula_engine.errors import (
    AmbiguousKeyError,
    ConcurrencyConflictError,
    CycleError,
    ExecutionCancelledError,
    NotFoundError,
    SchemaInferenceError,
    ScriptSandboxError,
    StepExecutionError,
    StorageError,
    ValidationError,
)


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["db"] == "ok"
        assert body["eventHandlers"] == 1


class TestErrorMapping:
    @pytest.mark.parametrize(
        "exc, status",
        [
            (ValidationError("bad"), 400),
            (SchemaInferenceError("bad"), 400),
            (NotFoundError("gone"), 404),
            (AmbiguousKeyError("dup"), 409),
            (ConcurrencyConflictError("busy"), 409),
            (CycleError("a", "b", ["a", "b", "a"]), 409),
            (ExecutionCancelledError("stop"), 409),
            (StepExecutionError(0, "filter", ValueError("x")), 422),
            (ScriptSandboxError("unsafe"), 422),
            (StorageError("disk"), 500),
        ],
    )
    def test_status_for_error(self, exc, status: int) -> None:
        assert status_for_error(exc) == status

    @pytest.mark.asyncio
    async def test_request_validation_is_400(self, client: AsyncClient) -> None:
        resp = await client.post("/api/v1/snapshots", json={"records": []})
        assert resp.status_code == 400
        body = resp.json()
        assert body["kind"] == "validation_error"
        assert body["context"]["errors"]


class TestRequestLogging:
    @pytest.mark.asyncio
    async def test_echoes_correlation_id(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "abc-123"})
        assert resp.headers["X-Correlation-ID"] == "abc-123"

    @pytest.mark.asyncio
    async def test_generates_correlation_id(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/health")
        assert len(resp.headers["X-Correlation-ID"]) == 36

    @pytest.mark.asyncio
    async def test_logs_request(self, client: AsyncClient, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="tabula_api.access"):
            await client.get("/api/v1/snapshots/missing")
        records = [r for r in caplog.records if r.name == "tabula_api.access"]
        assert records[-1].levelno == logging.WARNING
        assert records[-1].request["status_code"] == 404
        assert records[-1].request["path"] == "/api/v1/snapshots/missing"


class TestJSONFormatter:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord(
            name="tabula_api.access",
            level=logging.INFO,
            pathname="test.py",
            lineno=1,
            msg="request %s",
            args=("completed",),
            exc_info=None,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_basic_fields(self) -> None:
        data = json.loads(JSONFormatter().format(self._record()))
        assert data["level"] == "INFO"
        assert data["logger"] == "tabula_api.access"
        assert data["message"] == "request completed"
        assert "timestamp" in data
        assert "request" not in data

    def test_request_context(self) -> None:
        data = json.loads(JSONFormatter().format(self._record(request={"path": "/x", "status_code": 200})))
        assert data["request"] == {"path": "/x", "status_code": 200}

    def test_exception_info(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = self._record()
            record.exc_info = sys.exc_info()
        data = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in data["exc_info"]

    def test_configure_logging_structured(self) -> None:
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            configure_logging(structured=True, level=logging.DEBUG)
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert root.level == logging.DEBUG
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


class TestAPISettings:
    def test_defaults(self) -> None:
        settings = APISettings(_env_file=None)
        assert settings.port == 8000
        assert settings.database_url.startswith("sqlite+aiosqlite")

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TABULA_API_PORT", "9100")
        assert APISettings(_env_file=None).port == 9100

    def test_wildcard_with_credentials_rejected(self) -> None:
        with pytest.raises(ValueError):
            APISettings(_env_file=None, cors_origins=["*"], cors_allow_credentials=True)
