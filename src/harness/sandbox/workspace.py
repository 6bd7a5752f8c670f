"""Storage areas visible to sandboxed code.

Each run can write to exactly two directories:

- the persistent **skills** directory of its user
  (``<skills_root>/<user-slug>``), which survives across sessions and is
  shared by every session of that user.  Concurrent writers to the same
  file are not serialised;
- the ephemeral **workspace** of its session
  (``<workspace_root>/<session_id>``), created fresh and wiped when the
  session ends.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from harness.sandbox.config import SandboxConfig

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def user_slug(user_id: str) -> str:
    """Filesystem-safe, collision-resistant directory name for a user id."""
    if not user_id:
        raise ValueError("user_id must not be empty")
    readable = _UNSAFE_CHARS.sub("_", user_id)[:48].strip(".") or "user"
    digest = hashlib.sha256(user_id.encode()).hexdigest()[:12]
    return f"{readable}-{digest}"


class WorkspaceManager:
    """Creates, hands over and wipes the per-user and per-session directories."""

    def __init__(self, config: SandboxConfig, owner: tuple[int, int] | None = None) -> None:
        self._skills_root = Path(config.skills_root)
        self._workspace_root = Path(config.workspace_root)
        # (uid, gid) the sandboxed process runs as, when different from ours.
        self._owner = owner

    @property
    def workspace_root(self) -> Path:
        return self._workspace_root

    def skills_dir(self, user_id: str) -> Path:
        """Return (creating if needed) the persistent skills dir for a user."""
        path = self._skills_root / user_slug(user_id)
        path.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.grant(path)
        return path

    def create_workspace(self, session_id: str) -> Path:
        """Create a fresh, empty workspace for a session."""
        self._workspace_root.mkdir(parents=True, exist_ok=True, mode=0o711)
        path = self._workspace_root / session_id
        path.mkdir(mode=0o700)
        self.grant(path)
        logger.debug("Created workspace %s", path)
        return path

    def grant(self, path: Path) -> None:
        """Hand a directory to the sandbox identity (root hosts only)."""
        if self._owner is not None:
            uid, gid = self._owner
            os.chown(path, uid, gid)

    async def wipe(self, path: Path) -> None:
        """Remove a workspace and everything in it.

        Raises:
            OSError: the directory could not be removed completely.
        """
        if not path.exists():
            return
        if path.parent != self._workspace_root:
            raise ValueError(f"refusing to wipe {path}: not a workspace directory")
        await asyncio.to_thread(shutil.rmtree, path)
        logger.debug("Wiped workspace %s", path)

    def inventory(self) -> list[Path]:
        """Workspaces currently on disk."""
        if not self._workspace_root.exists():
            return []
        return sorted(p for p in self._workspace_root.iterdir() if p.is_dir())
