"""Isolated execution of agent code.

Layers applied to every run:
- Linux namespace isolation (user, mount, pid, net, ipc, uts) via unshare
- rlimits for memory, CPU time and file size; no_new_privs
- Privilege drop to an unprivileged uid when the host runs as root
- In-process audit-hook guard (writes only under skills/workspace, no
  subprocesses, no sockets except the bridge)
- Per-run Unix socket bridge authenticated by a session token
- Environment scrubbing: zero secrets in the isolated process
- Hash-chained audit logging of bridge calls and run events
"""

from .audit import SandboxAuditLogger
from .bridge import BridgeEndpoint, BridgeListener
from .config import SandboxConfig
from .engine import SandboxEngine
from .env_scrub import build_isolation_env
from .namespace import SandboxNamespace
from .workspace import WorkspaceManager, user_slug

__all__ = [
    "BridgeEndpoint",
    "BridgeListener",
    "SandboxAuditLogger",
    "SandboxConfig",
    "SandboxEngine",
    "SandboxNamespace",
    "WorkspaceManager",
    "build_isolation_env",
    "user_slug",
]
