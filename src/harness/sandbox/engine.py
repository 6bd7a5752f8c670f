"""SandboxEngine: runs untrusted agent code in an isolated process.

Per run:
1. Create a private runtime directory holding the code file and the
   bridge socket.
2. Start a BridgeListener for the session on that socket.
3. Spawn ``python -I -S -B -c <bootstrap source>``, wrapped in namespaces, with
   rlimits, privilege drop and no_new_privs applied between fork and exec,
   a scrubbed environment, and the session workspace as cwd.
4. Stream stdout/stderr lines into ``logs``; pick out the result line.
5. Wait for exit or the wall-clock deadline, whichever comes first; on
   the deadline, kill the whole process group.
6. Classify the outcome into an ExecutionResult.
7. Tear down (kill leftovers, stop the listener which cancels in-flight
   bridge calls, remove the runtime directory) on every exit path.

Isolated-code failures never raise out of ``run``; they become
``ExecutionResult.error``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
import shutil
import signal
import subprocess
import sys
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from harness.errors import (
    AgentCodeError,
    HarnessError,
    IsolationTimeout,
    ResourceLimitExceeded,
    SandboxSetupError,
)
from harness.models import ExecutionResult, RunState
from harness.sandbox import bootstrap
from harness.sandbox.bridge import BridgeListener
from harness.sandbox.env_scrub import build_isolation_env
from harness.sandbox.namespace import SandboxNamespace

if TYPE_CHECKING:
    from harness.models import Session
    from harness.sandbox.audit import SandboxAuditLogger
    from harness.sandbox.bridge import BridgeEndpoint
    from harness.sandbox.config import SandboxConfig

logger = logging.getLogger(__name__)

# Upper bound on one stdout/stderr line, including the result line.
_STREAM_LIMIT = 8 * 1024 * 1024
# How long to wait for output pipes to drain after the process is gone.
_DRAIN_GRACE = 2.0
_KILL_SIGNALS = {signal.SIGKILL, signal.SIGXCPU}


@dataclass
class _Run:
    """Bookkeeping for one in-progress run."""

    run_id: str
    session: Session
    max_lines: int
    max_chars: int
    state: RunState = RunState.CREATED
    run_dir: Path | None = None
    listener: BridgeListener | None = None
    process: asyncio.subprocess.Process | None = None
    readers: list[asyncio.Task] = field(default_factory=list)
    logs: list[str] = field(default_factory=list)
    dropped_lines: int = 0
    result_line: str | None = None

    def add_log(self, line: str) -> None:
        if len(self.logs) >= self.max_lines:
            self.dropped_lines += 1
            return
        if len(line) > self.max_chars:
            line = line[: self.max_chars] + "…[truncated]"
        self.logs.append(line)

    def collected_logs(self) -> list[str]:
        logs = list(self.logs)
        if self.dropped_lines:
            logs.append(f"[{self.dropped_lines} log line(s) dropped]")
        return logs


class SandboxEngine:
    """Creates, supervises and destroys isolated execution contexts."""

    def __init__(
        self,
        config: SandboxConfig,
        endpoint: BridgeEndpoint,
        *,
        audit: SandboxAuditLogger | None = None,
        namespace: SandboxNamespace | None = None,
    ) -> None:
        self._config = config
        self._endpoint = endpoint
        self._audit = audit
        self._namespace = namespace or SandboxNamespace(config)
        self._runtime_dir = Path(config.runtime_dir)
        self._python = config.python_executable or sys.executable
        # Passed with -c so the unprivileged child needs no read access to the package.
        self._bootstrap_source = Path(bootstrap.__file__).read_text(encoding="utf-8")
        self._active: dict[str, _Run] = {}

    # ── Inventory ─────────────────────────────────────────────────────────────

    def inventory(self) -> dict[str, list[Any]]:
        """Isolation resources currently allocated by this engine."""
        runtime_dirs: list[str] = []
        if self._runtime_dir.exists():
            runtime_dirs = sorted(str(p) for p in self._runtime_dir.iterdir())
        return {
            "runs": sorted(self._active),
            "processes": [
                run.process.pid
                for run in self._active.values()
                if run.process is not None and run.process.returncode is None
            ],
            "listeners": [
                str(run.listener.socket_path)
                for run in self._active.values()
                if run.listener is not None and run.listener.is_serving
            ],
            "runtime_dirs": runtime_dirs,
        }

    def is_clean(self) -> bool:
        return not any(self.inventory().values())

    # ── Run ───────────────────────────────────────────────────────────────────

    async def run(self, code: str, session: Session) -> ExecutionResult:
        """Execute ``code`` for ``session`` and return its ExecutionResult."""
        run = _Run(
            run_id=uuid.uuid4().hex,
            session=session,
            max_lines=self._config.max_log_lines,
            max_chars=self._config.max_log_line_chars,
        )
        self._active[run.run_id] = run
        started = time.monotonic()
        try:
            result = await self._execute(run, code)
        except HarnessError as exc:
            logger.warning("Sandbox run %s failed before completion: %s", run.run_id, exc.describe())
            result = ExecutionResult(
                logs=run.collected_logs(), error=exc.describe(), state=RunState.CRASHED
            )
        except Exception as exc:
            logger.exception("Sandbox run %s: internal error", run.run_id)
            result = ExecutionResult(
                logs=run.collected_logs(),
                error=SandboxSetupError(f"internal sandbox error: {exc}").describe(),
                state=RunState.CRASHED,
            )
        finally:
            await self._teardown(run)
            self._active.pop(run.run_id, None)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Sandbox run %s (session %s) finished: %s in %dms",
            run.run_id,
            session.session_id,
            result.state.value,
            result.duration_ms,
        )
        return result

    async def _execute(self, run: _Run, code: str) -> ExecutionResult:
        session = run.session
        drop = self._namespace.drop_target()
        if (drop is not None and drop[0] == 0) or (drop is None and os.geteuid() == 0):
            raise SandboxSetupError("refusing to run sandboxed code as root")

        await self._namespace.probe()

        run.run_dir = self._runtime_dir / run.run_id
        run.run_dir.mkdir(parents=True, mode=0o700)
        code_path = run.run_dir / "agent.py"
        code_path.write_text(code, encoding="utf-8")
        socket_path = run.run_dir / "bridge.sock"

        run.listener = BridgeListener(
            self._endpoint,
            socket_path,
            session.session_id,
            request_timeout=self._config.bridge_request_timeout,
        )
        await run.listener.start()

        if drop is not None:
            for path in (run.run_dir, code_path, socket_path):
                os.chown(path, *drop)

        marker = f"@@harness-result-{secrets.token_hex(16)}@@"
        env = build_isolation_env(
            self._config,
            socket_path=socket_path,
            session_token=session.auth_token,
            skills_dir=session.skills_dir,
            workspace_dir=session.workspace_dir,
            code_path=code_path,
            result_marker=marker,
        )
        cmd = self._namespace.wrap_command(
            [self._python, "-I", "-S", "-B", "-c", self._bootstrap_source]
        )

        try:
            run.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(session.workspace_dir),
                env=env,
                start_new_session=True,
                preexec_fn=self._namespace.preexec(),
                limit=_STREAM_LIMIT,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise SandboxSetupError(f"could not start isolated process: {exc}") from exc

        run.state = RunState.STARTED
        await self._audit_event(run, "run_start", {"run_id": run.run_id, "pid": run.process.pid})

        run.readers = [
            asyncio.create_task(self._pump(run.process.stdout, run, marker)),
            asyncio.create_task(self._pump(run.process.stderr, run, marker)),
        ]

        timed_out = False
        try:
            await asyncio.wait_for(run.process.wait(), timeout=self._config.timeout_seconds)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(
                "Sandbox run %s exceeded %ss; killing process group",
                run.run_id,
                self._config.timeout_seconds,
            )
            await self._kill(run)

        # Grandchildren may still hold the pipes open; don't wait on them forever.
        _, pending = await asyncio.wait(run.readers, timeout=_DRAIN_GRACE)
        for task in pending:
            task.cancel()

        return self._classify(run, run.process.returncode, timed_out)

    async def _pump(self, stream: asyncio.StreamReader | None, run: _Run, marker: str) -> None:
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                run.add_log("[oversized output line discarded]")
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if line.startswith(marker):
                run.result_line = line[len(marker):]
            else:
                run.add_log(line)

    # ── Outcome ───────────────────────────────────────────────────────────────

    def _classify(self, run: _Run, returncode: int | None, timed_out: bool) -> ExecutionResult:
        logs = run.collected_logs()
        payload = _parse_result(run.result_line)

        if timed_out:
            state = RunState.TIMED_OUT
            error: HarnessError | None = IsolationTimeout(
                f"execution exceeded the {self._config.timeout_seconds}s wall-clock limit"
            )
        elif payload.get("type") == "result" and returncode == bootstrap.EXIT_OK:
            run.state = RunState.COMPLETED
            return ExecutionResult(output=payload.get("output"), logs=logs, state=RunState.COMPLETED)
        elif payload.get("kind") == "memory" or returncode == bootstrap.EXIT_MEMORY:
            state = RunState.RESOURCE_EXCEEDED
            error = ResourceLimitExceeded(
                f"memory ceiling of {self._config.memory_limit_mb} MB exceeded"
            )
        elif _killed_by(returncode) == signal.SIGXCPU:
            state = RunState.RESOURCE_EXCEEDED
            error = ResourceLimitExceeded(
                f"cpu ceiling of {self._config.cpu_limit_seconds}s exceeded"
            )
        elif _killed_by(returncode) == signal.SIGKILL:
            state = RunState.RESOURCE_EXCEEDED
            error = ResourceLimitExceeded(
                "process killed by SIGKILL after reaching a cpu or memory ceiling"
            )
        elif payload.get("kind") == "exception":
            state = RunState.CRASHED
            error = AgentCodeError(payload.get("message") or "uncaught exception")
        elif returncode == bootstrap.EXIT_BOOTSTRAP_ERROR:
            state = RunState.CRASHED
            error = SandboxSetupError("sandbox runtime failed to start")
        else:
            state = RunState.CRASHED
            error = AgentCodeError(f"process exited with code {returncode} without a result")

        run.state = state
        return ExecutionResult(logs=logs, error=error.describe(), state=state)

    # ── Teardown ──────────────────────────────────────────────────────────────

    async def _kill(self, run: _Run) -> None:
        proc = run.process
        if proc is None or proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            proc.kill()
        try:
            await asyncio.wait_for(proc.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            logger.error("Sandbox run %s: process %d did not die after SIGKILL", run.run_id, proc.pid)

    async def _teardown(self, run: _Run) -> None:
        """Release every resource of a run; failures are logged, never raised."""
        try:
            await self._kill(run)
        except Exception:
            logger.exception("Sandbox run %s: failed to kill process", run.run_id)

        for task in run.readers:
            task.cancel()
        if run.readers:
            await asyncio.gather(*run.readers, return_exceptions=True)

        if run.listener is not None:
            try:
                await run.listener.stop()
            except Exception:
                logger.exception("Sandbox run %s: failed to stop bridge listener", run.run_id)

        if run.run_dir is not None and run.run_dir.exists():
            try:
                shutil.rmtree(run.run_dir)
            except OSError:
                logger.exception("Sandbox run %s: failed to remove %s", run.run_id, run.run_dir)

        previous = run.state
        run.state = RunState.CLEANED_UP
        await self._audit_event(run, "run_end", {"run_id": run.run_id, "outcome": previous.value})

    async def _audit_event(self, run: _Run, event: str, details: dict[str, Any]) -> None:
        if self._audit is None:
            return
        try:
            await self._audit.log_run_event(
                session_id=run.session.session_id,
                session_token=run.session.auth_token,
                event=event,
                details=details,
            )
        except Exception:
            logger.exception("Sandbox run %s: failed to write audit event %s", run.run_id, event)


def _parse_result(line: str | None) -> dict[str, Any]:
    if not line:
        return {}
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _killed_by(returncode: int | None) -> int | None:
    """Signal that ended the process, from either -N or the shell-style 128+N."""
    if returncode is None:
        return None
    if returncode < 0:
        return -returncode
    if returncode > 128 and (returncode - 128) in _KILL_SIGNALS:
        return returncode - 128
    return None
