"""Virtual filesystem view of the capability catalog.

Capabilities are grouped into "servers" (categories) holding named
functions (operations), laid out as if on disk::

    /servers/<category>/<operation>

The view is derived from the registry on every call and never touches a
handler, so introspection is side-effect free.
"""

from __future__ import annotations

import re
from typing import Any

from harness.errors import MalformedToolInvocation, UnknownCapability
from harness.registry import CapabilityRegistry

_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def _require_name(value: Any, field: str) -> str:
    if not isinstance(value, str) or not _NAME_RE.match(value):
        raise MalformedToolInvocation(
            f"invalid {field} {value!r}: only letters, digits, '_' and '-' are allowed"
        )
    return value


class VirtualCatalog:
    """Read-only category → operation hierarchy over a CapabilityRegistry."""

    def __init__(self, registry: CapabilityRegistry) -> None:
        self._registry = registry

    def _grouped(self) -> dict[str, list]:
        groups: dict[str, list] = {}
        for descriptor in self._registry.descriptors():
            if descriptor.name.startswith("__internal_"):
                continue
            groups.setdefault(descriptor.category, []).append(descriptor)
        return groups

    def servers(self) -> list[str]:
        return sorted(self._grouped())

    def server_index(self, server_name: Any) -> dict[str, Any]:
        name = _require_name(server_name, "serverName")
        descriptors = self._grouped().get(name)
        if not descriptors:
            raise UnknownCapability(f"Server not found: {name}")
        return {
            "name": name,
            "description": f"{len(descriptors)} operation(s) in {name}",
            "path": f"/servers/{name}",
            "functions": [d.operation for d in descriptors],
        }

    def functions(self, server_name: Any) -> list[str]:
        return self.server_index(server_name)["functions"]

    def function_details(self, server_name: Any, function_name: Any) -> dict[str, Any]:
        server = _require_name(server_name, "serverName")
        function = _require_name(function_name, "functionName")
        for descriptor in self._grouped().get(server, []):
            if descriptor.operation == function:
                details = descriptor.to_public()
                details["path"] = f"/servers/{server}/{function}"
                return details
        raise UnknownCapability(f"Function not found: {server}/{function}")

    def library(self) -> dict[str, Any]:
        return {
            "type": "virtual-library",
            "description": "Capabilities grouped by server; call them by their full name.",
            "servers": {name: self.server_index(name) for name in self.servers()},
        }
