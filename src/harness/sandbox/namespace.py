"""Process-level isolation for sandbox runs.

Two layers, both native Linux / POSIX interfaces with no third-party
dependencies:

- ``SandboxNamespace.wrap_command`` prefixes the interpreter command with
  util-linux ``unshare`` so the run gets its own user, mount, pid, network,
  ipc and uts namespaces.  A fresh network namespace has no interfaces
  besides a down loopback, which leaves the bridge's Unix socket as the
  only way out.
- ``SandboxNamespace.preexec`` returns the function executed in the child
  between fork and exec: resource ceilings (rlimits), privilege drop when
  the host runs as root, and ``PR_SET_NO_NEW_PRIVS``.
"""

from __future__ import annotations

import asyncio
import ctypes
import ctypes.util
import logging
import os
import platform
import resource
import shutil
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from harness.sandbox.config import SandboxConfig

logger = logging.getLogger(__name__)

_PR_SET_NO_NEW_PRIVS = 38
_MB = 1024 * 1024


def is_linux() -> bool:
    return platform.system() == "Linux"


def unshare_available() -> bool:
    return is_linux() and shutil.which("unshare") is not None


def _load_libc() -> ctypes.CDLL | None:
    if not is_linux():
        return None
    libc_name = ctypes.util.find_library("c")
    if libc_name is None:
        return None
    return ctypes.CDLL(libc_name, use_errno=True)


class SandboxNamespace:
    """Builds the command line and child setup for one isolated process.

    When namespace isolation is unavailable (non-Linux host, unshare not
    found, or the probe failed), wrap_command() returns the command
    unchanged and the run relies on rlimits, privilege drop and the
    in-process guard.
    """

    def __init__(self, config: SandboxConfig) -> None:
        self._config = config
        self._available = config.namespaces_enabled and unshare_available()
        self._probed = False
        # Resolved before any fork; the child must not call find_library.
        self._libc = _load_libc()

    @property
    def available(self) -> bool:
        return self._available

    def wrap_command(self, cmd: list[str]) -> list[str]:
        """Wrap a command to run inside the configured namespaces."""
        if not self._available:
            return cmd

        # A user namespace lets an unprivileged host create the others,
        # and --map-current-user keeps the caller's uid rather than root.
        unshare_args = ["unshare", "--user", "--map-current-user"]

        if self._config.namespace_mount:
            unshare_args.append("--mount")
        if self._config.namespace_pid:
            unshare_args.append("--pid")
            unshare_args.append("--fork")
        if self._config.namespace_net:
            unshare_args.append("--net")
        if self._config.namespace_ipc:
            unshare_args.append("--ipc")
        if self._config.namespace_uts:
            unshare_args.append("--uts")

        return unshare_args + ["--"] + cmd

    async def probe(self) -> bool:
        """Check once that the wrapped command actually starts on this host.

        Kernels with unprivileged user namespaces disabled, or an unshare
        too old for --map-current-user, fail here; isolation then degrades
        to the non-namespace layers with a warning.
        """
        if self._probed or not self._available:
            return self._available
        self._probed = True
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.wrap_command(["true"]),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                preexec_fn=self.preexec(),
            )
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=10)
        except (OSError, asyncio.TimeoutError) as exc:
            stderr, returncode = str(exc).encode(), -1
        else:
            returncode = proc.returncode
        if returncode != 0:
            self._available = False
            logger.warning(
                "Namespace isolation requested but unshare failed (%s) "
                "-- running without namespace isolation",
                stderr.decode(errors="replace").strip() or f"exit {returncode}",
            )
        return self._available

    def drop_target(self) -> tuple[int, int] | None:
        """The (uid, gid) to switch to in the child, or None if already unprivileged."""
        if os.geteuid() != 0:
            return None
        return self._config.run_as_uid, self._config.run_as_gid

    def preexec(self) -> Callable[[], None]:
        """Return the fork-to-exec setup function for one child process."""
        memory = self._config.memory_limit_mb * _MB
        cpu = self._config.cpu_limit_seconds
        fsize = self._config.max_file_size_mb * _MB
        drop = self.drop_target()
        libc = self._libc

        def _setup_child() -> None:
            resource.setrlimit(resource.RLIMIT_AS, (memory, memory))
            # Soft limit raises SIGXCPU; the hard limit one second later is SIGKILL.
            resource.setrlimit(resource.RLIMIT_CPU, (cpu, cpu + 1))
            resource.setrlimit(resource.RLIMIT_FSIZE, (fsize, fsize))
            resource.setrlimit(resource.RLIMIT_CORE, (0, 0))
            if drop is not None:
                uid, gid = drop
                os.setgroups([])
                os.setgid(gid)
                os.setuid(uid)
            if libc is not None and libc.prctl(_PR_SET_NO_NEW_PRIVS, 1, 0, 0, 0) != 0:
                errno = ctypes.get_errno()
                raise OSError(errno, os.strerror(errno))

        return _setup_child
