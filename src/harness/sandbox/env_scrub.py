"""Environment construction for sandboxed processes.

The isolation never inherits the host environment wholesale.  It starts
from an allowlist (``SandboxConfig.passthrough_env_vars``), drops anything
that looks like a credential, and then adds the variables the bootstrap
runtime needs to reach its bridge and storage roots.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from harness.sandbox.config import SandboxConfig

logger = logging.getLogger(__name__)

# Substrings that mark a variable name as a credential.
_SECRET_PATTERNS = frozenset(
    {
        "API_KEY",
        "SECRET",
        "PRIVATE_KEY",
        "ACCESS_TOKEN",
        "AUTH_TOKEN",
        "PASSWORD",
    }
)

ENV_SOCKET = "HARNESS_BRIDGE_SOCKET"
ENV_TOKEN = "HARNESS_SESSION_TOKEN"
ENV_SKILLS = "HARNESS_SKILLS_DIR"
ENV_WORKSPACE = "HARNESS_WORKSPACE_DIR"
ENV_CODE = "HARNESS_CODE_FILE"
ENV_MARKER = "HARNESS_RESULT_MARKER"
ENV_TIMEOUT = "HARNESS_CALL_TIMEOUT"


def is_secret_name(name: str, config: SandboxConfig) -> bool:
    if name in config.secret_env_vars:
        return True
    upper = name.upper()
    return any(pattern in upper for pattern in _SECRET_PATTERNS)


def build_isolation_env(
    config: SandboxConfig,
    *,
    socket_path: Path,
    session_token: str,
    skills_dir: Path,
    workspace_dir: Path,
    code_path: Path,
    result_marker: str,
) -> dict[str, str]:
    """Build the complete environment for one isolated run.

    Returns:
        A new dict; ``os.environ`` is never mutated.
    """
    env: dict[str, str] = {}
    stripped: list[str] = []
    for name in config.passthrough_env_vars:
        value = os.environ.get(name)
        if value is None:
            continue
        if is_secret_name(name, config):
            stripped.append(name)
            continue
        env[name] = value

    if stripped:
        logger.info(
            "Env scrub: refused to pass %d secret var(s): %s",
            len(stripped),
            ", ".join(sorted(stripped)),
        )

    env.setdefault("PATH", "/usr/local/bin:/usr/bin:/bin")
    env.update(
        {
            "HOME": str(workspace_dir),
            "TMPDIR": str(workspace_dir),
            ENV_SOCKET: str(socket_path),
            ENV_TOKEN: session_token,
            ENV_SKILLS: str(skills_dir),
            ENV_WORKSPACE: str(workspace_dir),
            ENV_CODE: str(code_path),
            ENV_MARKER: result_marker,
            ENV_TIMEOUT: str(config.bridge_request_timeout),
        }
    )
    return env
