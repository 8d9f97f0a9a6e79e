"""Unit tests for the service adapters: HTTP client, routine catalog, generation.

All HTTP traffic goes through :class:`httpx.MockTransport`; no network I/O.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest

from routinebot.core.exceptions import (
    GenerationError,
    ServiceAuthError,
    ServiceRateLimitError,
    ServiceRequestError,
    ServiceUnavailableError,
)
from routinebot.core.models import ExecutionRecord, FailureKind
from routinebot.service import http_client as http_client_module
from routinebot.service.catalog import HttpRoutineCatalog, parse_routines
from routinebot.service.generation import GenerationClient, extract_content
from routinebot.service.http_client import ServiceHttpClient

BASE_URL = "http://svc.test"


@pytest.fixture(autouse=True)
def _no_transport_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    """Make tenacity's transport back-off instant."""
    monkeypatch.setattr(http_client_module, "_transport_wait", lambda rs: 0.0)


class _Recorder:
    """MockTransport handler that replays canned responses in order."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self._responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(item, Exception):
            raise item
        return item


def _client(handler: Any, **kwargs: Any) -> ServiceHttpClient:
    return ServiceHttpClient(BASE_URL, transport=httpx.MockTransport(handler), **kwargs)


def _routine_payload(rid: str, active: bool = True) -> dict[str, Any]:
    return {
        "id": rid,
        "name": f"Routine {rid}",
        "description": "",
        "isActive": active,
        "steps": [{"id": f"{rid}-1", "order": 1, "type": "text", "content": "do it"}],
    }


# ---------------------------------------------------------------------------
# ServiceHttpClient
# ---------------------------------------------------------------------------


class TestServiceHttpClient:
    @pytest.mark.asyncio
    async def test_get_json_success_with_bearer(self) -> None:
        handler = _Recorder(httpx.Response(200, json={"ok": True}))
        async with _client(handler, token="secret") as client:
            body = await client.get_json("/api/x", params={"a": "1"})

        assert body == {"ok": True}
        request = handler.requests[0]
        assert request.headers["Authorization"] == "Bearer secret"
        assert request.url.params["a"] == "1"

    @pytest.mark.asyncio
    async def test_no_auth_header_without_token(self) -> None:
        handler = _Recorder(httpx.Response(200, json={}))
        async with _client(handler) as client:
            await client.get_json("/api/x")
        assert "Authorization" not in handler.requests[0].headers

    @pytest.mark.asyncio
    async def test_empty_body_decodes_to_none(self) -> None:
        async with _client(_Recorder(httpx.Response(204))) as client:
            assert await client.post_json("/api/x", {"a": 1}) is None

    @pytest.mark.asyncio
    async def test_429_raises_immediately_with_retry_after(self) -> None:
        handler = _Recorder(httpx.Response(429, headers={"Retry-After": "17"}))
        async with _client(handler) as client:
            with pytest.raises(ServiceRateLimitError) as excinfo:
                await client.get_json("/api/x")
        assert excinfo.value.retry_after == 17.0
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_marker_in_body(self) -> None:
        handler = _Recorder(
            httpx.Response(400, json={"code": "RATE_LIMIT_EXCEEDED", "retryAfter": 30})
        )
        async with _client(handler) as client:
            with pytest.raises(ServiceRateLimitError) as excinfo:
                await client.post_json("/api/llm", {"prompt": "x"})
        assert excinfo.value.retry_after == 30.0
        assert excinfo.value.failure_kind is FailureKind.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_5xx_is_retried_then_succeeds(self) -> None:
        handler = _Recorder(httpx.Response(503), httpx.Response(200, json=[1, 2]))
        async with _client(handler, max_attempts=3) as client:
            assert await client.get_json("/api/x") == [1, 2]
        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_5xx_exhausted_raises_unavailable(self) -> None:
        handler = _Recorder(httpx.Response(502))
        async with _client(handler, max_attempts=2) as client:
            with pytest.raises(ServiceUnavailableError):
                await client.get_json("/api/x")
        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_transport_error_exhausted_is_wrapped(self) -> None:
        handler = _Recorder(httpx.ConnectError("refused"))
        async with _client(handler, max_attempts=3) as client:
            with pytest.raises(ServiceUnavailableError) as excinfo:
                await client.get_json("/api/x")
        assert len(handler.requests) == 3
        assert isinstance(excinfo.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_errors(self, status: int) -> None:
        handler = _Recorder(httpx.Response(status, json={"message": "nope"}))
        async with _client(handler) as client:
            with pytest.raises(ServiceAuthError, match="nope"):
                await client.get_json("/api/x")
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_other_4xx_is_request_error(self) -> None:
        handler = _Recorder(httpx.Response(404, text="missing"))
        async with _client(handler) as client:
            with pytest.raises(ServiceRequestError) as excinfo:
                await client.get_json("/api/x")
        assert excinfo.value.status_code == 404
        assert excinfo.value.failure_kind is FailureKind.PERMANENT

    @pytest.mark.asyncio
    async def test_health_check(self) -> None:
        async with _client(_Recorder(httpx.Response(200))) as client:
            assert await client.health_check() is True
        async with _client(_Recorder(httpx.Response(500))) as client:
            assert await client.health_check() is False

    def test_invalid_max_attempts(self) -> None:
        with pytest.raises(ValueError):
            ServiceHttpClient(BASE_URL, max_attempts=0)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        client = _client(_Recorder(httpx.Response(200)))
        async with client:
            pass
        await client.close()


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class TestParseRoutines:
    def test_envelope(self) -> None:
        routines = parse_routines({"success": True, "data": [_routine_payload("a")]})
        assert [r.id for r in routines] == ["a"]
        assert routines[0].steps[0].content == "do it"

    def test_bare_list(self) -> None:
        assert len(parse_routines([_routine_payload("a"), _routine_payload("b")])) == 2

    def test_success_false(self) -> None:
        assert parse_routines({"success": False, "message": "boom"}) == []

    def test_malformed_and_inactive_entries_skipped(self) -> None:
        payload = {
            "success": True,
            "data": [
                _routine_payload("a"),
                {"name": "no id"},
                "garbage",
                _routine_payload("c", active=False),
            ],
        }
        assert [r.id for r in parse_routines(payload)] == ["a"]

    def test_unexpected_shapes(self) -> None:
        assert parse_routines(None) == []
        assert parse_routines({"success": True, "data": {"id": "a"}}) == []


class TestHttpRoutineCatalog:
    @pytest.mark.asyncio
    async def test_fetch_active(self) -> None:
        handler = _Recorder(
            httpx.Response(200, json={"success": True, "data": [_routine_payload("a")]})
        )
        async with _client(handler) as client:
            routines = await HttpRoutineCatalog(client).fetch_active()

        assert [r.id for r in routines] == ["a"]
        request = handler.requests[0]
        assert request.url.path == "/api/routines"
        assert request.url.params["active"] == "true"

    @pytest.mark.asyncio
    async def test_transient_failure_returns_last_good(self) -> None:
        handler = _Recorder(
            httpx.Response(200, json={"success": True, "data": [_routine_payload("a")]}),
            httpx.ConnectError("down"),
        )
        async with _client(handler, max_attempts=1) as client:
            catalog = HttpRoutineCatalog(client)
            first = await catalog.fetch_active()
            second = await catalog.fetch_active()
        assert [r.id for r in first] == [r.id for r in second] == ["a"]

    @pytest.mark.asyncio
    async def test_transient_failure_on_first_use_is_empty(self) -> None:
        async with _client(_Recorder(httpx.Response(503)), max_attempts=1) as client:
            assert await HttpRoutineCatalog(client).fetch_active() == []

    @pytest.mark.asyncio
    async def test_rate_limit_propagates(self) -> None:
        async with _client(_Recorder(httpx.Response(429))) as client:
            with pytest.raises(ServiceRateLimitError):
                await HttpRoutineCatalog(client).fetch_active()

    @pytest.mark.asyncio
    async def test_permanent_failure_propagates(self) -> None:
        async with _client(_Recorder(httpx.Response(401))) as client:
            with pytest.raises(ServiceAuthError):
                await HttpRoutineCatalog(client).fetch_active()

    @pytest.mark.asyncio
    async def test_report_outcome_payload(self) -> None:
        handler = _Recorder(httpx.Response(200, json={"success": True}))
        record = ExecutionRecord(
            id="e1",
            routine_id="a",
            routine_name="Routine a",
            success=False,
            message="change failed",
            error="File does not exist",
            failure_kind=FailureKind.PERMANENT,
            duration_ms=1234,
            executed_at=datetime(2026, 10, 19, 8, 0, tzinfo=UTC),
        )
        async with _client(handler) as client:
            await HttpRoutineCatalog(client).report_outcome(record)

        request = handler.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/api/routine-executions"
        body = json.loads(request.content)
        assert body == {
            "routineId": "a",
            "routineName": "Routine a",
            "success": False,
            "message": "change failed",
            "error": "File does not exist",
            "duration": 1234,
            "executedAt": "2026-10-19T08:00:00+00:00",
        }


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


class TestExtractContent:
    @pytest.mark.parametrize(
        ("payload", "expected"),
        [
            ({"success": True, "data": {"llmResponse": "A"}}, "A"),
            ({"success": True, "data": {"response": "B"}}, "B"),
            ({"success": True, "data": {"llmResponse": "", "response": "C"}}, "C"),
            ({"success": True, "data": "D"}, "D"),
            ("E", "E"),
            ({"success": False, "data": "x"}, None),
            ({"success": True, "data": {"other": 1}}, None),
            ({"success": True}, None),
            ("", None),
            (None, None),
        ],
    )
    def test_lookup_order(self, payload: Any, expected: str | None) -> None:
        assert extract_content(payload) == expected


class TestGenerationClient:
    @pytest.mark.asyncio
    async def test_generate_posts_prompt_and_timestamp(self) -> None:
        handler = _Recorder(
            httpx.Response(200, json={"success": True, "data": {"llmResponse": '{"type":"done"}'}})
        )
        fixed = datetime(2026, 10, 19, 8, 0, tzinfo=UTC)
        async with _client(handler) as client:
            gen = GenerationClient(client, "/api/llm/generate", clock=lambda: fixed)
            assert await gen.generate("hello") == '{"type":"done"}'

        body = json.loads(handler.requests[0].content)
        assert body == {"prompt": "hello", "timestamp": "2026-10-19T08:00:00+00:00"}
        assert handler.requests[0].url.path == "/api/llm/generate"

    @pytest.mark.asyncio
    async def test_no_content_raises(self) -> None:
        handler = _Recorder(httpx.Response(200, json={"success": True, "data": {}}))
        async with _client(handler) as client:
            with pytest.raises(GenerationError):
                await GenerationClient(client, "/api/llm/generate").generate("x")

    @pytest.mark.asyncio
    async def test_rate_limit_surfaces(self) -> None:
        async with _client(_Recorder(httpx.Response(429))) as client:
            with pytest.raises(ServiceRateLimitError):
                await GenerationClient(client, "/api/llm/generate").generate("x")
