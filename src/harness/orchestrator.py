"""SessionOrchestrator: wires the harness together and runs tasks end to end.

Component graph (built once, shared by every session):

    CapabilityRegistry ─┬─ VirtualCatalog
                        └─ ToolCallRouter ── TokenizationService
    SessionStore ── BridgeEndpoint ── ToolCallRouter
    SandboxEngine ── BridgeEndpoint, SandboxNamespace, SandboxAuditLogger
    WorkspaceManager

Every entry point opens a session, does its work inside it and destroys
it in ``finally``: the token stops authenticating, the workspace is
wiped and the session's PII mapping is forgotten.  Anything handed back
to the caller has been tokenized under that session first.
"""

from __future__ import annotations

import inspect
import logging
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Union

from harness.catalog import VirtualCatalog
from harness.config import HarnessConfig
from harness.errors import HarnessError, MalformedToolInvocation, SandboxSetupError
from harness.models import ExecutionResult, ModelReply, Session, TaskResult, ToolCallContext
from harness.prompts import build_system_prompt, discovery_tool_definitions, format_tools
from harness.registry import CapabilityRegistry
from harness.router import ToolCallRouter
from harness.sandbox.audit import SandboxAuditLogger
from harness.sandbox.bridge import BridgeEndpoint
from harness.sandbox.engine import SandboxEngine
from harness.sandbox.namespace import SandboxNamespace
from harness.sandbox.workspace import WorkspaceManager
from harness.sessions import SessionStore
from harness.tokenization import TokenizationService

logger = logging.getLogger(__name__)

# language_model(prompt, tools) -> ModelReply (or a dict of the same shape),
# sync or async.
LanguageModel = Callable[
    [str, list[dict[str, Any]]],
    Union[ModelReply, dict[str, Any], Awaitable[Union[ModelReply, dict[str, Any]]]],
]


class SessionOrchestrator:
    """Owns every harness component and the per-session lifecycle."""

    def __init__(
        self,
        config: HarnessConfig | None = None,
        registry: CapabilityRegistry | None = None,
        *,
        language_model: LanguageModel | None = None,
    ) -> None:
        self.config = config or HarnessConfig()
        sandbox = self.config.sandbox

        self.registry = registry or CapabilityRegistry()
        if self.config.capability_modules:
            self.registry.load_modules(self.config.capability_modules)

        self.tokenizer = TokenizationService()
        for rule in self.config.tokenization.extra_rules:
            self.tokenizer.add_rule(rule.category, rule.pattern)

        self.catalog = VirtualCatalog(self.registry)
        self.router = ToolCallRouter(self.registry, self.tokenizer, self.catalog)
        self.sessions = SessionStore(token_bytes=sandbox.session_token_bytes)

        self.audit: SandboxAuditLogger | None = None
        if sandbox.audit_enabled:
            self.audit = SandboxAuditLogger(Path(sandbox.audit_dir))

        self.endpoint = BridgeEndpoint(
            self.sessions,
            self.router,
            audit=self.audit,
            max_calls_per_session=sandbox.max_bridge_calls_per_session,
        )
        self.namespace = SandboxNamespace(sandbox)
        self.workspaces = WorkspaceManager(sandbox, owner=self.namespace.drop_target())
        self.engine = SandboxEngine(
            sandbox, self.endpoint, audit=self.audit, namespace=self.namespace
        )
        self.language_model = language_model

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Prepare long-lived resources (audit chain)."""
        if self.audit is not None:
            await self.audit.start()
        logger.info(
            "Harness started: %d capabilities, namespaces %s",
            len(self.registry),
            "requested" if self.namespace.available else "unavailable",
        )

    async def stop(self) -> None:
        expired = self.sessions.purge_expired()
        for session_id in expired:
            self.endpoint.forget_session(session_id)
        if expired:
            logger.info("Purged %d expired session(s) on shutdown", len(expired))
        logger.info("Harness stopped")

    # ── Sessions ─────────────────────────────────────────────────────────────

    def open_session(self, user_id: str) -> Session:
        """Create a session with its skills dir and a fresh workspace."""
        session_id = uuid.uuid4().hex
        try:
            skills_dir = self.workspaces.skills_dir(user_id)
            workspace_dir = self.workspaces.create_workspace(session_id)
        except ValueError as exc:
            raise MalformedToolInvocation(str(exc)) from exc
        except OSError as exc:
            raise SandboxSetupError(f"could not prepare session storage: {exc}") from exc
        return self.sessions.create(
            user_id,
            skills_dir=skills_dir,
            workspace_dir=workspace_dir,
            ttl_seconds=self.config.sandbox.session_ttl_seconds,
            session_id=session_id,
        )

    async def close_session(self, session: Session) -> None:
        """Destroy a session; cleanup failures are logged, never raised."""
        self.sessions.destroy(session.session_id)
        self.endpoint.forget_session(session.session_id)
        try:
            await self.workspaces.wipe(session.workspace_dir)
        except (OSError, ValueError):
            logger.exception("Failed to wipe workspace of session %s", session.session_id)
        self.tokenizer.clear_session(session.session_id)

    # ── Code execution ───────────────────────────────────────────────────────

    async def execute_code(self, user_id: str, code: str) -> ExecutionResult:
        """Run agent code in a fresh session and return the tokenized result."""
        session = self.open_session(user_id)
        try:
            return await self._execute_in(session, code)
        finally:
            await self.close_session(session)

    async def _execute_in(self, session: Session, code: str) -> ExecutionResult:
        result = await self.engine.run(code, session)
        sid = session.session_id
        return result.model_copy(
            update={
                "output": self.tokenizer.tokenize(sid, result.output),
                "logs": self.tokenizer.tokenize(sid, result.logs),
                "error": self.tokenizer.tokenize(sid, result.error),
            }
        )

    # ── Agent loop ───────────────────────────────────────────────────────────

    async def run_task(self, user_id: str, task: str) -> TaskResult:
        """Ask the language model for one step and carry it out.

        Raises:
            HarnessError: no language model is configured, or its reply
                cannot be acted upon.
        """
        if self.language_model is None:
            raise HarnessError("no language model configured")

        session = self.open_session(user_id)
        sid = session.session_id
        try:
            tools = format_tools(discovery_tool_definitions(), self.config.model.provider_format)
            prompt = build_system_prompt(self.registry.descriptors())
            prompt += "\n\n## Task\n\n" + self.tokenizer.tokenize(sid, task)

            reply = await self._ask_model(prompt, tools)
            logger.info("Session %s: model replied with %s", sid, reply.type)

            if reply.type == "code_execution":
                if not reply.code:
                    raise MalformedToolInvocation("code_execution reply carries no code")
                result = await self._execute_in(session, reply.code)
                return TaskResult(
                    session_id=sid,
                    kind=reply.type,
                    message="code executed" if result.ok else "code execution failed",
                    output=result.output,
                    logs=result.logs,
                    error=result.error,
                )

            if reply.type == "tool_call":
                if not reply.tool_name:
                    raise MalformedToolInvocation("tool_call reply carries no tool_name")
                outcome = await self.router.route(
                    ToolCallContext(
                        tool_name=reply.tool_name,
                        input=reply.tool_input if reply.tool_input is not None else {},
                        session_id=sid,
                    )
                )
                return TaskResult(
                    session_id=sid,
                    kind=reply.type,
                    message=f"{reply.tool_name} {'succeeded' if outcome.success else 'failed'}",
                    result=self.tokenizer.tokenize(sid, outcome.result),
                    error=outcome.error,
                )

            return TaskResult(
                session_id=sid,
                kind=reply.type,
                message=self.tokenizer.tokenize(sid, reply.text or ""),
            )
        finally:
            await self.close_session(session)

    async def _ask_model(self, prompt: str, tools: list[dict[str, Any]]) -> ModelReply:
        reply = self.language_model(prompt, tools)
        if inspect.isawaitable(reply):
            reply = await reply
        if isinstance(reply, ModelReply):
            return reply
        if isinstance(reply, dict):
            try:
                return ModelReply.model_validate(reply)
            except ValueError as exc:
                raise MalformedToolInvocation(f"invalid model reply: {exc}") from exc
        raise MalformedToolInvocation(f"invalid model reply type: {type(reply).__name__}")

    # ── Introspection ────────────────────────────────────────────────────────

    def get_stats(self) -> dict[str, Any]:
        return {
            "router": self.router.get_stats(),
            "active_sessions": self.sessions.active_count(),
            "capabilities": len(self.registry),
            "sandbox": {k: len(v) for k, v in self.engine.inventory().items()},
        }
