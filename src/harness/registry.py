"""Capability registry: the static catalog of callable external operations.

Capabilities are registered explicitly at startup, either directly via
``register()`` / the ``capability`` decorator, or by importing the modules
named in ``HarnessConfig.capability_modules`` (each exposes a
``register(registry)`` function).  Descriptors are frozen once registered;
agent code can discover them but never mutate them.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

from harness.errors import CapabilityExecutionFailure, UnknownCapability
from harness.models import CapabilityDescriptor

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class _Entry:
    descriptor: CapabilityDescriptor
    handler: Handler
    is_async: bool


class CapabilityRegistry:
    """Holds descriptors plus one dispatch function per capability name."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # ── Registration ──────────────────────────────────────────────────────────

    def register(self, descriptor: CapabilityDescriptor, handler: Handler) -> None:
        """Register one capability.  Names are unique."""
        if descriptor.name in self._entries:
            raise ValueError(f"capability already registered: {descriptor.name}")
        self._entries[descriptor.name] = _Entry(
            descriptor=descriptor,
            handler=handler,
            is_async=inspect.iscoroutinefunction(handler),
        )
        logger.debug("Registered capability %s (category=%s)", descriptor.name, descriptor.category)

    def capability(
        self,
        name: str,
        description: str = "",
        input_schema: dict[str, Any] | None = None,
        *,
        category: str = "",
    ) -> Callable[[Handler], Handler]:
        """Decorator form of ``register``."""

        def decorator(fn: Handler) -> Handler:
            descriptor = CapabilityDescriptor(
                name=name,
                description=description or (inspect.getdoc(fn) or ""),
                input_schema=input_schema or {"type": "object"},
                category=category,
            )
            self.register(descriptor, fn)
            return fn

        return decorator

    def load_modules(self, module_names: list[str]) -> None:
        """Import each module and call its ``register(registry)`` hook."""
        for module_name in module_names:
            module = importlib.import_module(module_name)
            hook = getattr(module, "register", None)
            if not callable(hook):
                raise ValueError(f"capability module {module_name} has no register(registry)")
            before = len(self)
            hook(self)
            logger.info(
                "Loaded %d capabilities from %s", len(self) - before, module_name
            )

    # ── Lookup ────────────────────────────────────────────────────────────────

    def list(self) -> list[str]:
        return sorted(self._entries)

    def describe(self, name: str) -> CapabilityDescriptor:
        entry = self._entries.get(name)
        if entry is None:
            raise UnknownCapability(
                f"Tool not found: {name}. Use list_mcp_tools() to see available tools."
            )
        return entry.descriptor

    def descriptors(self) -> list[CapabilityDescriptor]:
        return [self._entries[name].descriptor for name in self.list()]

    # ── Dispatch ──────────────────────────────────────────────────────────────

    async def invoke(self, name: str, payload: Any) -> Any:
        """Run a capability handler.

        Sync handlers run in a worker thread so a slow capability never
        stalls the event loop serving other sessions.

        Raises:
            UnknownCapability: no capability is registered under ``name``.
            CapabilityExecutionFailure: the handler raised.
        """
        entry = self._entries.get(name)
        if entry is None:
            raise UnknownCapability(
                f"Tool not found: {name}. Use list_mcp_tools() to see available tools."
            )
        try:
            if entry.is_async:
                return await entry.handler(payload)
            result = await asyncio.to_thread(entry.handler, payload)
            if inspect.isawaitable(result):
                result = await result
            return result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Capability %s raised %s", name, type(exc).__name__)
            raise CapabilityExecutionFailure(str(exc) or type(exc).__name__) from exc
