"""Tests for sandbox building blocks: config, audit, namespace, env scrub, workspaces."""

from __future__ import annotations

import json
import logging
import os
import secrets
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from harness.sandbox.audit import SandboxAuditLogger, _sha256_hex
from harness.sandbox.config import SandboxConfig
from harness.sandbox.env_scrub import (
    ENV_MARKER,
    ENV_SOCKET,
    ENV_TOKEN,
    build_isolation_env,
    is_secret_name,
)
from harness.sandbox.namespace import SandboxNamespace
from harness.sandbox.workspace import WorkspaceManager, user_slug


# -- Fixtures ---------------------------------------------------------------


@pytest.fixture
def sandbox_config(tmp_path: Path) -> SandboxConfig:
    return SandboxConfig(
        namespaces_enabled=False,
        skills_root=str(tmp_path / "skills"),
        workspace_root=str(tmp_path / "workspaces"),
        runtime_dir=str(tmp_path / "run"),
        audit_dir=str(tmp_path / "audit"),
    )


# -- SandboxConfig ----------------------------------------------------------


class TestSandboxConfig:
    def test_defaults(self):
        cfg = SandboxConfig()
        assert cfg.timeout_seconds == 30.0
        assert cfg.memory_limit_mb == 512
        assert cfg.namespaces_enabled is True
        assert cfg.run_as_uid == 65534
        assert cfg.max_bridge_calls_per_session == 500
        assert cfg.audit_enabled is True

    def test_passthrough_defaults_hold_no_secrets(self):
        cfg = SandboxConfig()
        assert "PATH" in cfg.passthrough_env_vars
        assert not any(is_secret_name(n, cfg) for n in cfg.passthrough_env_vars)

    def test_custom_config(self):
        cfg = SandboxConfig(timeout_seconds=2.5, memory_limit_mb=128, namespace_net=False)
        assert cfg.timeout_seconds == 2.5
        assert cfg.memory_limit_mb == 128
        assert cfg.namespace_net is False


# -- SandboxAuditLogger -----------------------------------------------------


class TestSandboxAuditLogger:
    @pytest.mark.asyncio
    async def test_log_and_verify(self, tmp_path: Path):
        audit = SandboxAuditLogger(tmp_path / "audit")
        await audit.start()
        token = secrets.token_hex(32)
        await audit.log_bridge_call(
            session_id="s1",
            session_token=token,
            tool="text__word_count",
            payload={"text": "a b"},
            result={"words": 2},
            status="ok",
        )
        await audit.log_run_event(
            session_id="s1", session_token=token, event="run_end", details={"outcome": "completed"}
        )
        ok, msg = audit.verify_chain()
        assert ok, f"Chain verification failed: {msg}"
        assert msg == "chain intact (2 entries)"

    @pytest.mark.asyncio
    async def test_chain_detects_tampering(self, tmp_path: Path):
        audit = SandboxAuditLogger(tmp_path / "audit")
        await audit.start()
        await audit.log_bridge_call(
            session_id="s1", session_token="t", tool="a__b", payload={}, result={}, status="ok"
        )
        log_file = audit._log_file()
        entry = json.loads(log_file.read_text().strip())
        entry["tool"] = "tampered"
        log_file.write_text(json.dumps(entry, sort_keys=True) + "\n")
        ok, msg = audit.verify_chain(log_file)
        assert not ok
        assert "hash mismatch" in msg

    @pytest.mark.asyncio
    async def test_dropped_line_breaks_chain(self, tmp_path: Path):
        audit = SandboxAuditLogger(tmp_path / "audit")
        await audit.start()
        for i in range(3):
            await audit.log_run_event(session_id="s1", session_token="t", event=f"e{i}")
        log_file = audit._log_file()
        lines = log_file.read_text().splitlines()
        log_file.write_text("\n".join([lines[0], lines[2]]) + "\n")
        ok, _ = audit.verify_chain(log_file)
        assert not ok

    @pytest.mark.asyncio
    async def test_session_token_not_stored_raw(self, tmp_path: Path):
        audit = SandboxAuditLogger(tmp_path / "audit")
        await audit.start()
        token = secrets.token_hex(32)
        await audit.log_bridge_call(
            session_id="s1", session_token=token, tool="a__b", payload={}, result={}, status="ok"
        )
        content = audit._log_file().read_text()
        assert token not in content
        assert _sha256_hex(token) in content

    @pytest.mark.asyncio
    async def test_restart_continues_chain(self, tmp_path: Path):
        first = SandboxAuditLogger(tmp_path / "audit")
        await first.start()
        await first.log_run_event(session_id="s1", session_token="t", event="run_start")

        second = SandboxAuditLogger(tmp_path / "audit")
        await second.start()
        await second.log_run_event(session_id="s1", session_token="t", event="run_end")

        ok, msg = second.verify_chain()
        assert ok, msg
        seqs = [json.loads(l)["seq"] for l in second._log_file().read_text().splitlines()]
        assert seqs == [1, 2]

    @pytest.mark.asyncio
    async def test_rejected_call_logged(self, tmp_path: Path):
        audit = SandboxAuditLogger(tmp_path / "audit")
        await audit.start()
        await audit.log_bridge_call(
            session_id="",
            session_token="",
            tool="crm__send",
            payload={"to": "[EMAIL_1]"},
            result="UnauthorizedBridgeCall: session token invalid or expired",
            status="rejected",
        )
        entry = json.loads(audit._log_file().read_text())
        assert entry["status"] == "rejected"
        assert entry["token_hash"] == ""
        assert "[EMAIL_1]" in entry["input_summary"]

    def test_verify_without_file(self, tmp_path: Path):
        ok, msg = SandboxAuditLogger(tmp_path / "none").verify_chain()
        assert ok
        assert msg == "no log file"


# -- SandboxNamespace -------------------------------------------------------


class TestSandboxNamespace:
    def test_disabled_returns_original_command(self):
        ns = SandboxNamespace(SandboxConfig(namespaces_enabled=False))
        cmd = ["python", "-c", "pass"]
        assert ns.available is False
        assert ns.wrap_command(cmd) == cmd

    def test_wrap_command_includes_namespace_flags(self):
        ns = SandboxNamespace(SandboxConfig())
        ns._available = True
        wrapped = ns.wrap_command(["python", "-c", "pass"])
        assert wrapped[:3] == ["unshare", "--user", "--map-current-user"]
        for flag in ("--mount", "--pid", "--fork", "--net", "--ipc", "--uts"):
            assert flag in wrapped
        assert "--map-root-user" not in wrapped
        assert wrapped[-4:] == ["--", "python", "-c", "pass"]

    def test_wrap_command_selective_namespaces(self):
        cfg = SandboxConfig(
            namespace_mount=False,
            namespace_pid=False,
            namespace_net=True,
            namespace_ipc=False,
            namespace_uts=False,
        )
        ns = SandboxNamespace(cfg)
        ns._available = True
        wrapped = ns.wrap_command(["cmd"])
        assert "--net" in wrapped
        assert "--mount" not in wrapped
        assert "--pid" not in wrapped
        assert "--fork" not in wrapped

    @pytest.mark.asyncio
    async def test_probe_failure_degrades_with_warning(self, caplog):
        ns = SandboxNamespace(SandboxConfig())
        ns._available = True
        proc = MagicMock()
        proc.returncode = 1
        proc.communicate = AsyncMock(return_value=(b"", b"unshare: operation not permitted"))

        with patch(
            "harness.sandbox.namespace.asyncio.create_subprocess_exec",
            AsyncMock(return_value=proc),
        ):
            with caplog.at_level(logging.WARNING, logger="harness.sandbox.namespace"):
                assert await ns.probe() is False

        assert ns.available is False
        assert "operation not permitted" in caplog.text
        assert ns.wrap_command(["cmd"]) == ["cmd"]

    @pytest.mark.asyncio
    async def test_probe_runs_once(self):
        ns = SandboxNamespace(SandboxConfig())
        ns._available = True
        proc = MagicMock()
        proc.returncode = 0
        proc.communicate = AsyncMock(return_value=(b"", b""))
        spawn = AsyncMock(return_value=proc)

        with patch("harness.sandbox.namespace.asyncio.create_subprocess_exec", spawn):
            assert await ns.probe() is True
            assert await ns.probe() is True
        assert spawn.await_count == 1

    def test_drop_target_only_for_root(self):
        ns = SandboxNamespace(SandboxConfig(run_as_uid=1234, run_as_gid=4321))
        with patch("harness.sandbox.namespace.os.geteuid", return_value=0):
            assert ns.drop_target() == (1234, 4321)
        with patch("harness.sandbox.namespace.os.geteuid", return_value=1000):
            assert ns.drop_target() is None

    def test_preexec_is_callable(self):
        ns = SandboxNamespace(SandboxConfig(namespaces_enabled=False))
        assert callable(ns.preexec())


# -- Environment scrubbing --------------------------------------------------


class TestEnvScrub:
    def _build(self, cfg: SandboxConfig, tmp_path: Path) -> dict[str, str]:
        return build_isolation_env(
            cfg,
            socket_path=tmp_path / "bridge.sock",
            session_token="tok",
            skills_dir=tmp_path / "skills",
            workspace_dir=tmp_path / "ws",
            code_path=tmp_path / "agent.py",
            result_marker="@@m@@",
        )

    def test_host_environment_not_inherited(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("SOME_HOST_SETTING", "x")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-secret")
        env = self._build(SandboxConfig(), tmp_path)
        assert "SOME_HOST_SETTING" not in env
        assert "OPENAI_API_KEY" not in env
        assert "sk-secret" not in env.values()

    def test_secret_in_passthrough_list_is_stripped(self, tmp_path: Path, monkeypatch, caplog):
        monkeypatch.setenv("MY_SERVICE_API_KEY", "hunter2")
        monkeypatch.setenv("LANG", "C.UTF-8")
        cfg = SandboxConfig(passthrough_env_vars=["LANG", "MY_SERVICE_API_KEY"])
        with caplog.at_level(logging.INFO, logger="harness.sandbox.env_scrub"):
            env = self._build(cfg, tmp_path)
        assert env["LANG"] == "C.UTF-8"
        assert "MY_SERVICE_API_KEY" not in env
        assert "MY_SERVICE_API_KEY" in caplog.text
        assert "hunter2" not in caplog.text

    def test_harness_variables_set(self, tmp_path: Path):
        env = self._build(SandboxConfig(), tmp_path)
        assert env[ENV_SOCKET] == str(tmp_path / "bridge.sock")
        assert env[ENV_TOKEN] == "tok"
        assert env[ENV_MARKER] == "@@m@@"
        assert env["HOME"] == str(tmp_path / "ws")
        assert env["TMPDIR"] == str(tmp_path / "ws")
        assert "PATH" in env

    def test_does_not_mutate_os_environ(self, tmp_path: Path):
        before = dict(os.environ)
        self._build(SandboxConfig(), tmp_path)
        assert dict(os.environ) == before

    @pytest.mark.parametrize(
        "name,secret",
        [
            ("GITHUB_TOKEN", True),
            ("DB_PASSWORD", True),
            ("aws_secret_access_key", True),
            ("LANG", False),
            ("PATH", False),
        ],
    )
    def test_is_secret_name(self, name, secret):
        assert is_secret_name(name, SandboxConfig()) is secret


# -- Workspaces -------------------------------------------------------------


class TestUserSlug:
    def test_safe_and_stable(self):
        assert user_slug("alice") == user_slug("alice")
        assert user_slug("alice").startswith("alice-")

    def test_traversal_neutralised(self):
        slug = user_slug("../../etc/passwd")
        assert "/" not in slug
        assert not slug.startswith(".")

    def test_similar_ids_do_not_collide(self):
        assert user_slug("a/b") != user_slug("a_b")

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            user_slug("")


class TestWorkspaceManager:
    def test_skills_dir_persistent_per_user(self, sandbox_config):
        manager = WorkspaceManager(sandbox_config)
        first = manager.skills_dir("alice")
        (first / "helper.py").write_text("X = 1\n")
        second = manager.skills_dir("alice")
        assert first == second
        assert (second / "helper.py").exists()
        assert manager.skills_dir("bob") != first

    def test_create_workspace_fresh(self, sandbox_config):
        manager = WorkspaceManager(sandbox_config)
        ws = manager.create_workspace("sess1")
        assert ws.is_dir()
        assert list(ws.iterdir()) == []
        with pytest.raises(FileExistsError):
            manager.create_workspace("sess1")

    @pytest.mark.asyncio
    async def test_wipe(self, sandbox_config):
        manager = WorkspaceManager(sandbox_config)
        ws = manager.create_workspace("sess1")
        (ws / "nested").mkdir()
        (ws / "nested" / "f.txt").write_text("data")
        await manager.wipe(ws)
        assert not ws.exists()
        assert manager.inventory() == []

    @pytest.mark.asyncio
    async def test_wipe_refuses_foreign_paths(self, sandbox_config, tmp_path: Path):
        manager = WorkspaceManager(sandbox_config)
        outside = tmp_path / "precious"
        outside.mkdir()
        with pytest.raises(ValueError, match="refusing"):
            await manager.wipe(outside)
        assert outside.exists()

    @pytest.mark.asyncio
    async def test_wipe_missing_is_noop(self, sandbox_config):
        manager = WorkspaceManager(sandbox_config)
        await manager.wipe(manager.workspace_root / "never-created")

    def test_grant_chowns_to_owner(self, sandbox_config):
        manager = WorkspaceManager(sandbox_config, owner=(65534, 65534))
        with patch("harness.sandbox.workspace.os.chown") as chown:
            ws = manager.create_workspace("sess1")
        chown.assert_called_once_with(ws, 65534, 65534)
