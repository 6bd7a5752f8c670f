"""Sandbox configuration model."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SandboxConfig(BaseModel):
    """Configuration for isolated code execution."""

    # ── Resource ceilings ────────────────────────────────────────────────────
    timeout_seconds: float = 30.0
    memory_limit_mb: int = 512
    cpu_limit_seconds: int = 30
    max_file_size_mb: int = 64
    max_log_lines: int = 2000
    max_log_line_chars: int = 4000

    # ── Namespace isolation (util-linux unshare) ─────────────────────────────
    namespaces_enabled: bool = True
    namespace_mount: bool = True
    namespace_pid: bool = True
    namespace_net: bool = True
    namespace_ipc: bool = True
    namespace_uts: bool = True

    # ── Identity ─────────────────────────────────────────────────────────────
    # Used only when the host itself runs as root; the child drops to this
    # uid/gid before exec.  65534 is "nobody" on most distributions.
    run_as_uid: int = 65534
    run_as_gid: int = 65534

    # ── Storage layout ───────────────────────────────────────────────────────
    skills_root: str = "/var/lib/mcp-harness/skills"
    workspace_root: str = "/tmp/mcp-harness/workspaces"
    runtime_dir: str = "/tmp/mcp-harness/run"
    audit_dir: str = "/var/lib/mcp-harness/audit"
    audit_enabled: bool = True

    # ── Sessions & bridge ────────────────────────────────────────────────────
    python_executable: str = ""  # empty → sys.executable
    session_ttl_seconds: int = 600
    session_token_bytes: int = 32
    max_bridge_calls_per_session: int = 500
    bridge_request_timeout: float = 60.0

    # ── Environment scrubbing ────────────────────────────────────────────────
    # Only these host vars are copied into the isolation (minus secrets).
    passthrough_env_vars: list[str] = Field(
        default_factory=lambda: ["PATH", "LANG", "LC_ALL", "TZ"]
    )
    secret_env_vars: list[str] = Field(
        default_factory=lambda: [
            "OPENAI_API_KEY",
            "ANTHROPIC_API_KEY",
            "AWS_SECRET_ACCESS_KEY",
            "GITHUB_TOKEN",
        ]
    )
