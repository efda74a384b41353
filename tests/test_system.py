from __future__ import annotations

import uuid

import pytest
from httpx import AsyncClient
from starlette.requests import Request

from app import main
from app.middleware.logging import request_context


@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "queijaria", "version": "0.1.0"}


@pytest.mark.asyncio
async def test_health_ready_ok(client: AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
    async def _ok(_app):
        return {
            "database": {"ok": True, "message": "ok"},
            "redis": {"ok": True, "message": "disabled"},
            "recipes": {"ok": True, "message": "1 recipe(s)"},
        }

    monkeypatch.setattr(main, "_run_readiness_checks", _ok)

    response = await client.get("/health/ready")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["checks"]["redis"]["message"] == "disabled"


@pytest.mark.asyncio
async def test_health_ready_degraded(client: AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
    async def _bad(_app):
        return {
            "database": {"ok": False, "message": "connection refused"},
            "redis": {"ok": True, "message": "ok"},
            "recipes": {"ok": True, "message": "1 recipe(s)"},
        }

    monkeypatch.setattr(main, "_run_readiness_checks", _bad)

    response = await client.get("/health/ready")
    assert response.status_code == 503
    body = response.json()
    assert body["status"] == "degraded"
    assert body["checks"]["database"]["ok"] is False


@pytest.mark.asyncio
async def test_request_id_is_propagated(client: AsyncClient) -> None:
    response = await client.get("/health", headers={"x-request-id": "queijaria-request-id"})
    assert response.status_code == 200
    assert response.headers.get("x-request-id") == "queijaria-request-id"


@pytest.mark.asyncio
async def test_request_id_generated_when_missing(client: AsyncClient) -> None:
    response = await client.get("/api/v1/recipes")
    assert response.status_code == 200
    generated = response.headers.get("x-request-id")
    assert generated is not None
    assert len(generated) >= 8


def _request(path: str) -> Request:
    return Request({"type": "http", "method": "GET", "path": path, "query_string": b"", "headers": []})


def test_request_context_binds_batch_id() -> None:
    batch_id = uuid.uuid4()

    bound = request_context(_request(f"/api/v1/batches/{str(batch_id).upper()}/advance"), "req-1")

    assert bound == {"request_id": "req-1", "batch_id": str(batch_id)}
    assert request_context(_request("/api/v1/batches/active"), "req-2") == {"request_id": "req-2"}
