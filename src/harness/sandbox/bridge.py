"""Host-sandbox bridge: the only sanctioned channel out of an isolation.

``BridgeEndpoint`` is the single operation ``invoke(authToken, toolName,
input)``: it authenticates the token against the SessionStore before
anything else, then hands the call to the ToolCallRouter.

``BridgeListener`` exposes one endpoint to one run over a Unix domain
socket created inside that run's private runtime directory.  Nothing is
bound to a TCP port, so the bridge is unreachable from the network.

Wire protocol: newline-delimited JSON, any number of requests per
connection, answered in the order received.

Request:
    {"authToken": "<hex>", "toolName": "<name>", "input": {...}}

Response:
    {"success": true, "result": ...}
    {"success": false, "error": "<Kind>: <message>"}
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import defaultdict
from pathlib import Path
from typing import TYPE_CHECKING, Any

from harness.errors import (
    HarnessError,
    MalformedToolInvocation,
    ResourceLimitExceeded,
    UnauthorizedBridgeCall,
)
from harness.models import ToolCallContext

if TYPE_CHECKING:
    from harness.router import ToolCallRouter
    from harness.sandbox.audit import SandboxAuditLogger
    from harness.sessions import SessionStore

logger = logging.getLogger(__name__)

# A single request line may not exceed this many bytes.
_MAX_REQUEST_BYTES = 4 * 1024 * 1024


class BridgeEndpoint:
    """Authenticated pass-through from isolated code to the router.

    No deduplication: a retried request executes again.
    """

    def __init__(
        self,
        sessions: SessionStore,
        router: ToolCallRouter,
        *,
        audit: SandboxAuditLogger | None = None,
        max_calls_per_session: int = 500,
    ) -> None:
        self._sessions = sessions
        self._router = router
        self._audit = audit
        self._max_calls = max_calls_per_session
        self._call_counts: dict[str, int] = defaultdict(int)

    async def invoke(
        self,
        auth_token: Any,
        tool_name: Any,
        payload: Any,
        *,
        expected_session_id: str | None = None,
    ) -> dict[str, Any]:
        """Validate, route and answer one bridge request."""
        try:
            session = self._sessions.authenticate(auth_token)
            if expected_session_id is not None and session.session_id != expected_session_id:
                raise UnauthorizedBridgeCall("session token does not belong to this sandbox")
        except UnauthorizedBridgeCall as exc:
            logger.warning("Bridge: rejected call to %r: %s", tool_name, exc)
            await self._audit_call(expected_session_id or "", "", tool_name, payload, exc.describe(), "rejected")
            self._prune_call_counts()
            return {"success": False, "error": exc.describe()}

        try:
            if not isinstance(tool_name, str) or not tool_name:
                raise MalformedToolInvocation("toolName must be a non-empty string")
            self._call_counts[session.session_id] += 1
            if self._call_counts[session.session_id] > self._max_calls:
                raise ResourceLimitExceeded(
                    f"bridge call limit of {self._max_calls} per session exceeded"
                )
        except HarnessError as exc:
            await self._audit_call(
                session.session_id, session.auth_token, tool_name, payload, exc.describe(), "error"
            )
            return {"success": False, "error": exc.describe()}

        outcome = await self._router.route(
            ToolCallContext(tool_name=tool_name, input=payload, session_id=session.session_id)
        )
        response = outcome.to_wire()
        await self._audit_call(
            session.session_id,
            session.auth_token,
            tool_name,
            payload,
            response.get("result") if outcome.success else response.get("error"),
            "ok" if outcome.success else "error",
        )
        return response

    def forget_session(self, session_id: str) -> None:
        self._call_counts.pop(session_id, None)

    def _prune_call_counts(self) -> None:
        """Drop counters of sessions that no longer exist (destroyed or expired)."""
        for session_id in [sid for sid in self._call_counts if self._sessions.get(sid) is None]:
            self.forget_session(session_id)

    async def _audit_call(
        self,
        session_id: str,
        token: str,
        tool_name: Any,
        payload: Any,
        result: Any,
        status: str,
    ) -> None:
        if self._audit is None:
            return
        await self._audit.log_bridge_call(
            session_id=session_id,
            session_token=token,
            tool=str(tool_name),
            payload=payload,
            result=result,
            status=status,  # type: ignore[arg-type]
        )


class BridgeListener:
    """Per-run Unix socket server in front of a BridgeEndpoint.

    Lifecycle:
        listener = BridgeListener(endpoint, socket_path, session_id)
        await listener.start()   # binds the socket (mode 0600)
        ...
        await listener.stop()    # cancels in-flight calls, removes the socket
    """

    def __init__(
        self,
        endpoint: BridgeEndpoint,
        socket_path: Path,
        session_id: str,
        *,
        request_timeout: float = 60.0,
    ) -> None:
        self._endpoint = endpoint
        self._socket_path = socket_path
        self._session_id = session_id
        self._request_timeout = request_timeout
        self._server: asyncio.AbstractServer | None = None
        self._connections: set[asyncio.Task] = set()

    @property
    def socket_path(self) -> Path:
        return self._socket_path

    @property
    def is_serving(self) -> bool:
        return self._server is not None

    @property
    def in_flight(self) -> int:
        return len(self._connections)

    async def start(self) -> None:
        self._socket_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        self._socket_path.unlink(missing_ok=True)
        self._server = await asyncio.start_unix_server(
            self._handle_connection,
            path=str(self._socket_path),
            limit=_MAX_REQUEST_BYTES,
        )
        os.chmod(self._socket_path, 0o600)
        logger.debug("Bridge listening for session %s at %s", self._session_id, self._socket_path)

    async def stop(self) -> None:
        """Cancel in-flight calls, close the server and unlink the socket."""
        for task in list(self._connections):
            task.cancel()
        if self._connections:
            await asyncio.gather(*self._connections, return_exceptions=True)

        server, self._server = self._server, None
        if server is not None:
            server.close()
            try:
                await asyncio.wait_for(server.wait_closed(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Bridge for session %s did not close in time", self._session_id)
        self._socket_path.unlink(missing_ok=True)
        logger.debug("Bridge stopped for session %s", self._session_id)

    # ── Connection Handler ────────────────────────────────────────────────────

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    await self._respond(
                        writer,
                        {"success": False, "error": "MalformedToolInvocation: request too large"},
                    )
                    break
                if not line:
                    break
                response = await self._process_line(line)
                await self._respond(writer, response)
        except (ConnectionResetError, BrokenPipeError):
            logger.debug("Bridge client for session %s disconnected", self._session_id)
        finally:
            if task is not None:
                self._connections.discard(task)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass

    async def _process_line(self, line: bytes) -> dict[str, Any]:
        try:
            request = json.loads(line.decode())
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            return {"success": False, "error": f"MalformedToolInvocation: malformed request: {exc}"}
        if not isinstance(request, dict):
            return {"success": False, "error": "MalformedToolInvocation: request must be an object"}

        try:
            return await asyncio.wait_for(
                self._endpoint.invoke(
                    request.get("authToken"),
                    request.get("toolName"),
                    request.get("input"),
                    expected_session_id=self._session_id,
                ),
                timeout=self._request_timeout,
            )
        except asyncio.TimeoutError:
            return {
                "success": False,
                "error": f"CapabilityExecutionFailure: call exceeded {self._request_timeout}s",
            }

    async def _respond(self, writer: asyncio.StreamWriter, response: dict[str, Any]) -> None:
        try:
            data = json.dumps(response, default=str)
        except (TypeError, ValueError) as exc:
            data = json.dumps({"success": False, "error": f"CapabilityExecutionFailure: {exc}"})
        writer.write(data.encode() + b"\n")
        await writer.drain()
