"""Tests for the host-sandbox bridge: authorization gate and Unix socket listener."""

from __future__ import annotations

import asyncio
import json
import stat
from pathlib import Path

import pytest

from harness.models import CapabilityDescriptor
from harness.registry import CapabilityRegistry
from harness.router import ToolCallRouter
from harness.sandbox.audit import SandboxAuditLogger
from harness.sandbox.bridge import BridgeEndpoint, BridgeListener
from harness.sessions import SessionStore
from harness.tokenization import TokenizationService


class Harness:
    """Minimal wiring of the components behind a bridge."""

    def __init__(self, tmp_path: Path, max_calls: int = 500) -> None:
        self.calls: list = []
        self.registry = CapabilityRegistry()
        self.registry.register(
            CapabilityDescriptor(name="crm__lookup", input_schema={"type": "object"}),
            self._lookup,
        )
        self.tokenizer = TokenizationService()
        self.router = ToolCallRouter(self.registry, self.tokenizer)
        self.sessions = SessionStore()
        self.audit = SandboxAuditLogger(tmp_path / "audit")
        self.endpoint = BridgeEndpoint(
            self.sessions, self.router, audit=self.audit, max_calls_per_session=max_calls
        )
        self.session = self.sessions.create(
            "alice",
            skills_dir=tmp_path / "skills",
            workspace_dir=tmp_path / "ws",
            ttl_seconds=60,
        )

    def _lookup(self, payload):
        self.calls.append(payload)
        return {"email": "carol@example.com"}

    def audit_entries(self) -> list[dict]:
        path = self.audit._log_file()
        if not path.exists():
            return []
        return [json.loads(line) for line in path.read_text().splitlines()]


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    return Harness(tmp_path)


class TestBridgeEndpoint:
    @pytest.mark.asyncio
    async def test_valid_call_routes_and_tokenizes(self, harness):
        await harness.audit.start()
        response = await harness.endpoint.invoke(harness.session.auth_token, "crm__lookup", {})
        assert response == {"success": True, "result": {"email": "[EMAIL_1]"}}
        assert harness.calls == [{}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", [None, "", "forged", 42])
    async def test_unauthorized_call_has_no_side_effect(self, harness, token):
        await harness.audit.start()
        response = await harness.endpoint.invoke(token, "crm__lookup", {"q": "x"})

        assert response["success"] is False
        assert response["error"].startswith("UnauthorizedBridgeCall: ")
        assert harness.calls == []
        assert harness.router.get_stats()["total_calls"] == 0
        assert [e["status"] for e in harness.audit_entries()] == ["rejected"]

    @pytest.mark.asyncio
    async def test_destroyed_session_rejected(self, harness):
        harness.sessions.destroy(harness.session.session_id)
        response = await harness.endpoint.invoke(harness.session.auth_token, "crm__lookup", {})
        assert response["error"].startswith("UnauthorizedBridgeCall")
        assert harness.calls == []

    @pytest.mark.asyncio
    async def test_token_bound_to_its_listener_session(self, harness, tmp_path):
        other = harness.sessions.create(
            "bob", skills_dir=tmp_path, workspace_dir=tmp_path, ttl_seconds=60
        )
        response = await harness.endpoint.invoke(
            other.auth_token, "crm__lookup", {}, expected_session_id=harness.session.session_id
        )
        assert response["error"].startswith("UnauthorizedBridgeCall")
        assert harness.calls == []

    @pytest.mark.asyncio
    async def test_missing_tool_name(self, harness):
        response = await harness.endpoint.invoke(harness.session.auth_token, None, {})
        assert response == {
            "success": False,
            "error": "MalformedToolInvocation: toolName must be a non-empty string",
        }

    @pytest.mark.asyncio
    async def test_call_cap(self, tmp_path):
        harness = Harness(tmp_path, max_calls=2)
        token = harness.session.auth_token
        assert (await harness.endpoint.invoke(token, "crm__lookup", {}))["success"]
        assert (await harness.endpoint.invoke(token, "crm__lookup", {}))["success"]
        third = await harness.endpoint.invoke(token, "crm__lookup", {})
        assert third["error"].startswith("ResourceLimitExceeded")
        assert len(harness.calls) == 2

        harness.endpoint.forget_session(harness.session.session_id)
        assert (await harness.endpoint.invoke(token, "crm__lookup", {}))["success"]

    @pytest.mark.asyncio
    async def test_call_counts_dropped_once_session_is_gone(self, harness, tmp_path):
        other = harness.sessions.create(
            "bob", skills_dir=tmp_path / "s2", workspace_dir=tmp_path / "w2", ttl_seconds=60
        )
        await harness.endpoint.invoke(harness.session.auth_token, "crm__lookup", {})
        await harness.endpoint.invoke(other.auth_token, "crm__lookup", {})
        harness.sessions.destroy(harness.session.session_id)

        rejected = await harness.endpoint.invoke(harness.session.auth_token, "crm__lookup", {})

        assert rejected["error"].startswith("UnauthorizedBridgeCall")
        assert dict(harness.endpoint._call_counts) == {other.session_id: 1}

    @pytest.mark.asyncio
    async def test_audit_never_records_raw_token_or_values(self, harness):
        await harness.audit.start()
        await harness.endpoint.invoke(harness.session.auth_token, "crm__lookup", {})
        content = harness.audit._log_file().read_text()
        assert harness.session.auth_token not in content
        assert "carol@example.com" not in content
        assert "[EMAIL_1]" in content


async def _send(socket_path: Path, *requests: object) -> list[dict]:
    reader, writer = await asyncio.open_unix_connection(str(socket_path))
    try:
        for request in requests:
            data = request if isinstance(request, bytes) else json.dumps(request).encode()
            writer.write(data + b"\n")
        await writer.drain()
        return [json.loads(await reader.readline()) for _ in requests]
    finally:
        writer.close()


class TestBridgeListener:
    @pytest.mark.asyncio
    async def test_socket_round_trip(self, harness, tmp_path):
        socket_path = tmp_path / "run" / "bridge.sock"
        listener = BridgeListener(harness.endpoint, socket_path, harness.session.session_id)
        await listener.start()
        try:
            assert listener.is_serving
            assert stat.S_IMODE(socket_path.stat().st_mode) == 0o600
            responses = await _send(
                socket_path,
                {"authToken": harness.session.auth_token, "toolName": "list_mcp_tools", "input": {}},
                {"authToken": harness.session.auth_token, "toolName": "crm__lookup", "input": {}},
            )
        finally:
            await listener.stop()

        assert responses == [
            {"success": True, "result": ["crm__lookup"]},
            {"success": True, "result": {"email": "[EMAIL_1]"}},
        ]
        assert not socket_path.exists()
        assert not listener.is_serving

    @pytest.mark.asyncio
    async def test_malformed_requests(self, harness, tmp_path):
        socket_path = tmp_path / "bridge.sock"
        listener = BridgeListener(harness.endpoint, socket_path, harness.session.session_id)
        await listener.start()
        try:
            responses = await _send(socket_path, b"not json", [1, 2])
        finally:
            await listener.stop()

        assert all(r["success"] is False for r in responses)
        assert all(r["error"].startswith("MalformedToolInvocation") for r in responses)
        assert harness.calls == []

    @pytest.mark.asyncio
    async def test_request_timeout(self, harness, tmp_path):
        async def hang(payload):
            await asyncio.sleep(30)

        harness.registry.register(CapabilityDescriptor(name="crm__hang"), hang)
        socket_path = tmp_path / "bridge.sock"
        listener = BridgeListener(
            harness.endpoint, socket_path, harness.session.session_id, request_timeout=0.2
        )
        await listener.start()
        try:
            (response,) = await _send(
                socket_path,
                {"authToken": harness.session.auth_token, "toolName": "crm__hang", "input": {}},
            )
        finally:
            await listener.stop()
        assert response == {
            "success": False,
            "error": "CapabilityExecutionFailure: call exceeded 0.2s",
        }

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_calls(self, harness, tmp_path):
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def slow(payload):
            started.set()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        harness.registry.register(CapabilityDescriptor(name="crm__slow"), slow)
        socket_path = tmp_path / "bridge.sock"
        listener = BridgeListener(harness.endpoint, socket_path, harness.session.session_id)
        await listener.start()

        reader, writer = await asyncio.open_unix_connection(str(socket_path))
        request = {"authToken": harness.session.auth_token, "toolName": "crm__slow", "input": {}}
        writer.write(json.dumps(request).encode() + b"\n")
        await writer.drain()
        await asyncio.wait_for(started.wait(), timeout=5)
        assert listener.in_flight == 1

        await asyncio.wait_for(listener.stop(), timeout=10)
        writer.close()

        assert cancelled.is_set()
        assert listener.in_flight == 0
        assert not socket_path.exists()
