"""Shared fixtures for tests that start real sandboxed processes."""

from __future__ import annotations

import os
import platform
import shutil
import stat
import sys
import tempfile
from pathlib import Path

import pytest

from harness.config import HarnessConfig
from harness.sandbox.config import SandboxConfig


def _world_reachable(path: Path) -> bool:
    """True if an unrelated uid can traverse to ``path`` and read it."""
    for candidate in {path.absolute(), path.resolve()}:
        for parent in candidate.parents:
            if not parent.stat().st_mode & stat.S_IXOTH:
                return False
        if not candidate.stat().st_mode & stat.S_IROTH:
            return False
    return True


def isolation_supported() -> tuple[bool, str]:
    if platform.system() != "Linux":
        return False, "sandboxed execution tests need Linux"
    if os.geteuid() != 0:
        return True, ""
    # As root, the child drops to nobody and must still reach the interpreter.
    for path in (Path(sys.executable), Path(os.__file__)):
        if not _world_reachable(path):
            return False, f"{path} is not reachable by the unprivileged sandbox uid"
    return True, ""


@pytest.fixture
def sandbox_root():
    """World-traversable scratch root; pytest's tmp_path is private to its owner."""
    supported, reason = isolation_supported()
    if not supported:
        pytest.skip(reason)
    root = Path(tempfile.mkdtemp(prefix="harness-test-"))
    root.chmod(0o755)
    yield root
    shutil.rmtree(root, ignore_errors=True)


@pytest.fixture
def sandbox_config(sandbox_root: Path) -> SandboxConfig:
    return SandboxConfig(
        namespaces_enabled=False,
        timeout_seconds=10.0,
        cpu_limit_seconds=10,
        skills_root=str(sandbox_root / "skills"),
        workspace_root=str(sandbox_root / "workspaces"),
        runtime_dir=str(sandbox_root / "run"),
        audit_dir=str(sandbox_root / "audit"),
    )


@pytest.fixture
def harness_config(sandbox_config: SandboxConfig) -> HarnessConfig:
    return HarnessConfig(sandbox=sandbox_config)
