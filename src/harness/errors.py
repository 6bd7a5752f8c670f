"""Exception taxonomy for the execution harness.

Every harness failure derives from ``HarnessError``.  The ``kind`` of an
error is its class name, and ``describe()`` renders the
``"<kind>: <message>"`` string that crosses component boundaries (bridge
responses, ``ExecutionResult.error``, HTTP error bodies) so callers can
tell a timeout from a resource violation from a runtime exception without
parsing free text.
"""

from __future__ import annotations


class HarnessError(Exception):
    """Base class for all harness errors."""

    @property
    def kind(self) -> str:
        return type(self).__name__

    def describe(self) -> str:
        return f"{self.kind}: {self}"


class IsolationTimeout(HarnessError):
    """The isolated run exceeded its wall-clock deadline."""


class ResourceLimitExceeded(HarnessError):
    """The isolated run exceeded its memory or CPU ceiling."""


class AgentCodeError(HarnessError):
    """Agent code raised an uncaught exception or exited without a result."""


class SandboxSetupError(HarnessError):
    """The host could not materialise the isolated context."""


class UnauthorizedBridgeCall(HarnessError):
    """A bridge request carried an unknown or expired session token."""


class UnknownCapability(HarnessError):
    """No capability (or meta/filesystem operation) is registered under the name."""


class CapabilityExecutionFailure(HarnessError):
    """The capability handler itself raised."""


class MalformedToolInvocation(HarnessError):
    """The request could not be routed or its input failed validation."""
