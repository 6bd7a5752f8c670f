"""Tool-call router: decides how each bridge call is fulfilled.

Strategy precedence (pure function of the tool name plus an optional
override, evaluated top to bottom, first match wins):

1. a valid explicit override;
2. discovery / meta operation names             → ``meta``;
3. filesystem-introspection operation names     → ``filesystem``;
4. everything else                              → ``mcp-direct``.

``meta`` and ``filesystem`` answer from registry metadata only.
``mcp-direct`` always runs the detokenize → invoke → tokenize sandwich;
there is no per-call switch to skip it.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from typing import Any

from harness.catalog import VirtualCatalog
from harness.errors import (
    CapabilityExecutionFailure,
    HarnessError,
    MalformedToolInvocation,
    UnknownCapability,
)
from harness.models import CapabilityDescriptor, RoutingStrategy, ToolCallContext, ToolCallResult
from harness.registry import CapabilityRegistry
from harness.tokenization import TokenizationService

logger = logging.getLogger(__name__)

INTERNAL_PREFIX = "__internal_"
FILESYSTEM_PREFIX = "filesystem_"

LIST_OPERATIONS = frozenset({"__internal_list_tools", "list_mcp_tools", "list_capabilities"})
DESCRIBE_OPERATIONS = frozenset(
    {"__internal_get_tool_details", "get_mcp_tool_details", "describe_capability"}
)
META_OPERATIONS = LIST_OPERATIONS | DESCRIBE_OPERATIONS

FILESYSTEM_OPERATIONS = frozenset(
    {
        "introspect_servers",
        "get_virtual_library",
        "get_server_index",
        "list_server_functions",
        "get_tool_details",
    }
)


def determine_strategy(tool_name: str, override: str | None = None) -> RoutingStrategy:
    """Map a tool name to exactly one strategy."""
    if override and override != "auto":
        try:
            return RoutingStrategy(override)
        except ValueError:
            logger.warning("Router: ignoring invalid strategy override %r", override)

    if tool_name in META_OPERATIONS or tool_name.startswith(INTERNAL_PREFIX):
        return RoutingStrategy.META
    if tool_name in FILESYSTEM_OPERATIONS or tool_name.startswith(FILESYSTEM_PREFIX):
        return RoutingStrategy.FILESYSTEM
    return RoutingStrategy.DIRECT


def _as_mapping(payload: Any) -> dict[str, Any]:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise MalformedToolInvocation(
            f"input must be an object, got {type(payload).__name__}"
        )
    return payload


def validate_input(descriptor: CapabilityDescriptor, payload: Any) -> None:
    """Check ``payload`` against the descriptor's top-level object schema."""
    schema = descriptor.input_schema or {}
    if schema.get("type", "object") != "object":
        return
    if not isinstance(payload, dict):
        raise MalformedToolInvocation(
            f"{descriptor.name}: input must be an object, got {type(payload).__name__}"
        )
    missing = [key for key in schema.get("required", []) if key not in payload]
    if missing:
        raise MalformedToolInvocation(
            f"{descriptor.name}: missing required field(s): {', '.join(missing)}"
        )


class ToolCallRouter:
    """Routes ToolCallContexts to meta, filesystem or direct dispatch."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        tokenizer: TokenizationService,
        catalog: VirtualCatalog | None = None,
    ) -> None:
        self._registry = registry
        self._tokenizer = tokenizer
        self._catalog = catalog or VirtualCatalog(registry)

        self._total_calls = 0
        self._calls_by_tool: dict[str, dict[str, int]] = defaultdict(
            lambda: {"success": 0, "failure": 0}
        )
        self._calls_by_strategy: dict[str, int] = defaultdict(int)

    # ── Routing ───────────────────────────────────────────────────────────────

    async def route(self, ctx: ToolCallContext) -> ToolCallResult:
        start = time.monotonic()
        strategy = determine_strategy(ctx.tool_name, ctx.strategy)
        logger.debug("Router: %s → %s (session=%s)", ctx.tool_name, strategy.value, ctx.session_id)

        try:
            if strategy is RoutingStrategy.META:
                result = self._handle_meta(ctx.tool_name, ctx.input)
            elif strategy is RoutingStrategy.FILESYSTEM:
                result = self._handle_filesystem(ctx.tool_name, ctx.input)
            else:
                result = await self._handle_direct(ctx)
            outcome = ToolCallResult(success=True, result=result, strategy=strategy)
        except HarnessError as exc:
            outcome = self._failure(ctx, strategy, exc)
        except Exception as exc:
            logger.exception("Router: unexpected error routing %s", ctx.tool_name)
            outcome = self._failure(ctx, strategy, CapabilityExecutionFailure(str(exc)))

        outcome.elapsed_ms = round((time.monotonic() - start) * 1000, 3)
        self._record(ctx.tool_name, strategy, outcome.success)
        return outcome

    def _failure(
        self, ctx: ToolCallContext, strategy: RoutingStrategy, exc: HarnessError
    ) -> ToolCallResult:
        error = self._tokenizer.tokenize(ctx.session_id, exc.describe())
        logger.info("Router: %s failed (%s, strategy=%s)", ctx.tool_name, exc.kind, strategy.value)
        return ToolCallResult(success=False, error=error, strategy=strategy)

    # ── Meta ──────────────────────────────────────────────────────────────────

    def _handle_meta(self, tool_name: str, payload: Any) -> Any:
        if tool_name in LIST_OPERATIONS:
            return [n for n in self._registry.list() if not n.startswith(INTERNAL_PREFIX)]
        if tool_name in DESCRIBE_OPERATIONS:
            if isinstance(payload, str):
                name = payload
            else:
                args = _as_mapping(payload)
                name = args.get("toolName") or args.get("name")
            if not isinstance(name, str) or not name:
                raise MalformedToolInvocation(f"{tool_name} requires a toolName")
            if name.startswith(INTERNAL_PREFIX):
                raise UnknownCapability(
                    f"Tool not found: {name}. Use list_mcp_tools() to see available tools."
                )
            return self._registry.describe(name).to_public()
        raise UnknownCapability(f"Unknown meta operation: {tool_name}")

    # ── Filesystem ────────────────────────────────────────────────────────────

    def _handle_filesystem(self, tool_name: str, payload: Any) -> Any:
        args = _as_mapping(payload)
        if tool_name == "introspect_servers":
            return self._catalog.servers()
        if tool_name == "get_virtual_library":
            return self._catalog.library()
        if tool_name == "get_server_index":
            return self._catalog.server_index(args.get("serverName"))
        if tool_name == "list_server_functions":
            return self._catalog.functions(args.get("serverName"))
        if tool_name == "get_tool_details":
            return self._catalog.function_details(
                args.get("serverName"), args.get("functionName")
            )
        raise UnknownCapability(f"Unknown filesystem operation: {tool_name}")

    # ── Direct dispatch ───────────────────────────────────────────────────────

    async def _handle_direct(self, ctx: ToolCallContext) -> Any:
        descriptor = self._registry.describe(ctx.tool_name)
        validate_input(descriptor, ctx.input)
        restored = self._tokenizer.detokenize(ctx.session_id, ctx.input)
        raw = await self._registry.invoke(ctx.tool_name, restored)
        return self._tokenizer.tokenize(ctx.session_id, raw)

    # ── Statistics ────────────────────────────────────────────────────────────

    def _record(self, tool_name: str, strategy: RoutingStrategy, success: bool) -> None:
        try:
            self._total_calls += 1
            self._calls_by_tool[tool_name]["success" if success else "failure"] += 1
            self._calls_by_strategy[strategy.value] += 1
        except Exception:
            logger.exception("Router: failed to record statistics for %s", tool_name)

    def get_stats(self) -> dict[str, Any]:
        successes = sum(c["success"] for c in self._calls_by_tool.values())
        return {
            "total_calls": self._total_calls,
            "success_rate": successes / self._total_calls if self._total_calls else 0.0,
            "calls_by_tool": {tool: dict(c) for tool, c in self._calls_by_tool.items()},
            "calls_by_strategy": dict(self._calls_by_strategy),
        }

    def reset_stats(self) -> None:
        self._total_calls = 0
        self._calls_by_tool.clear()
        self._calls_by_strategy.clear()
