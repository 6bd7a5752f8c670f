"""Runtime executed inside the isolation (``python -I -S -B -c <this source>``).

Standard library only: this file runs without site-packages and must not
import the harness package.  It is configured entirely through the
``HARNESS_*`` environment variables set by ``env_scrub.build_isolation_env``.

Sequence:
1. Read configuration, then remove the bridge token and marker from
   ``os.environ``.
2. Install the audit-hook guard (writes only under the skills/workspace
   roots, no process spawning, no ctypes, no sockets except the bridge).
3. Compile the agent code as the body of ``async def __agent_main__()``
   so top-level ``await`` and ``return`` work.
4. Run it with the injected globals ``invoke_capability``,
   ``list_capabilities`` and ``describe_capability``.
5. Print exactly one result line ``<marker>{json}`` on stdout.

Exit codes: 0 completed, 1 agent exception, 2 bootstrap failure,
3 memory exhausted.
"""

import ast
import asyncio
import json
import linecache
import os
import sys
import threading
import traceback

EXIT_OK = 0
EXIT_AGENT_ERROR = 1
EXIT_BOOTSTRAP_ERROR = 2
EXIT_MEMORY = 3

AGENT_FILENAME = "<agent>"

_PATH_EVENTS = {
    # event name -> indexes of path arguments
    "os.remove": (0,),
    "os.rmdir": (0,),
    "os.mkdir": (0,),
    "os.rename": (0, 1),
    "os.link": (0, 1),
    "os.symlink": (1,),
    "os.chmod": (0,),
    "os.chown": (0,),
    "os.truncate": (0,),
    "os.utime": (0,),
    "os.chflags": (0,),
    "os.lchflags": (0,),
    "os.setxattr": (0,),
    "os.removexattr": (0,),
    "shutil.rmtree": (0,),
    "shutil.chown": (0,),
}

_DENIED_EVENTS = {
    "subprocess.Popen",
    "os.system",
    "os.exec",
    "os.posix_spawn",
    "os.spawn",
    "os.fork",
    "os.forkpty",
    "os.startfile",
    "pty.spawn",
    "ctypes.dlopen",
    "ctypes.dlsym",
    "ctypes.cdata",
    "socket.getaddrinfo",
    "socket.gethostbyname",
    "socket.gethostbyaddr",
    "gc.get_objects",
    "gc.get_referrers",
    "gc.get_referents",
    "sys.settrace",
    "sys.setprofile",
}

_WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_CREAT | os.O_APPEND | os.O_TRUNC


class CapabilityError(Exception):
    """A bridge call failed; the message carries the error kind."""


class SandboxViolation(PermissionError):
    """The guard refused an operation."""


# ── Guard ─────────────────────────────────────────────────────────────────────


def install_guard(write_roots, bridge_socket):
    roots = tuple(os.path.realpath(r) for r in write_roots)
    bridge = os.path.realpath(bridge_socket)
    own_pid = os.getpid()
    busy = set()

    def allowed_path(path):
        if path is None or isinstance(path, int):
            return True
        resolved = os.path.realpath(os.fsdecode(path))
        return any(resolved == r or resolved.startswith(r + os.sep) for r in roots)

    def check(event, args):
        if event == "open":
            path, mode, flags = args
            writing = (isinstance(mode, str) and any(c in mode for c in "wax+")) or (
                isinstance(flags, int) and flags & _WRITE_FLAGS
            )
            if writing and not allowed_path(path):
                raise SandboxViolation(f"write access denied: {path}")
        elif event in _PATH_EVENTS:
            for index in _PATH_EVENTS[event]:
                if index < len(args) and not allowed_path(args[index]):
                    raise SandboxViolation(f"{event} denied: {args[index]}")
        elif event in _DENIED_EVENTS:
            raise SandboxViolation(f"{event} is not permitted in the sandbox")
        elif event in ("socket.connect", "socket.sendto", "socket.sendmsg"):
            address = args[1] if len(args) > 1 else None
            if not isinstance(address, (str, bytes)) or os.path.realpath(os.fsdecode(address)) != bridge:
                raise SandboxViolation("network access is not permitted; use invoke_capability()")
        elif event in ("os.kill", "os.killpg"):
            if args[0] not in (own_pid, 0):
                raise SandboxViolation(f"{event} denied")
        elif event == "object.__setattr__":
            if args[1] == "__code__":
                raise SandboxViolation("replacing function code is not permitted")

    # Re-entrancy is tracked per thread; other threads are always checked.
    def hook(event, args):
        ident = threading.get_ident()
        if ident in busy:
            return
        busy.add(ident)
        try:
            check(event, args)
        finally:
            busy.discard(ident)

    sys.addaudithook(hook)


# ── Bridge client ─────────────────────────────────────────────────────────────


class BridgeClient:
    """Sends one request per connection to the host bridge socket."""

    def __init__(self, socket_path, token, timeout):
        self._socket_path = socket_path
        self._token = token
        self._timeout = timeout

    async def call(self, tool_name, payload):
        request = json.dumps({"authToken": self._token, "toolName": tool_name, "input": payload})
        reader, writer = await asyncio.open_unix_connection(self._socket_path, limit=4 * 1024 * 1024)
        try:
            writer.write(request.encode() + b"\n")
            await writer.drain()
            line = await asyncio.wait_for(reader.readline(), self._timeout)
        finally:
            writer.close()
        if not line:
            raise CapabilityError("bridge closed the connection without a response")
        response = json.loads(line)
        if response.get("success"):
            return response.get("result")
        raise CapabilityError(response.get("error") or "bridge call failed")


def build_globals(client, skills_dir, workspace_dir):
    async def invoke_capability(name, input=None):
        """Invoke a named capability with structured input."""
        return await client.call(name, {} if input is None else input)

    async def list_capabilities():
        """Return the names of all available capabilities."""
        return await client.call("__internal_list_tools", {})

    async def describe_capability(name):
        """Return one capability's description and input schema."""
        return await client.call("__internal_get_tool_details", {"toolName": name})

    return {
        "__name__": "__agent__",
        "__builtins__": __builtins__,
        "invoke_capability": invoke_capability,
        "list_capabilities": list_capabilities,
        "describe_capability": describe_capability,
        "call_mcp_tool": invoke_capability,
        "list_mcp_tools": list_capabilities,
        "get_mcp_tool_details": describe_capability,
        "CapabilityError": CapabilityError,
        "SKILLS_DIR": skills_dir,
        "WORKSPACE_DIR": workspace_dir,
    }


# ── Agent code ────────────────────────────────────────────────────────────────


def compile_agent(source):
    """Compile ``source`` as the body of ``async def __agent_main__()``."""
    linecache.cache[AGENT_FILENAME] = (len(source), None, source.splitlines(True), AGENT_FILENAME)
    module = ast.parse(source, filename=AGENT_FILENAME)
    wrapper = ast.parse("async def __agent_main__():\n    pass\n")
    wrapper.body[0].body = module.body or [ast.Pass()]
    ast.fix_missing_locations(wrapper)
    return compile(wrapper, AGENT_FILENAME, "exec")


def _agent_traceback(exc):
    tb = exc.__traceback__
    while tb is not None and tb.tb_frame.f_code.co_filename != AGENT_FILENAME:
        tb = tb.tb_next
    return "".join(traceback.format_exception(type(exc), exc, tb or exc.__traceback__))


def _fallback_repr(value):
    """String form of a result JSON cannot encode (non-str keys, deep nesting)."""
    try:
        return repr(value)
    except RecursionError:
        return f"<{type(value).__name__} nested too deeply to render>"


def main():
    env = os.environ
    try:
        socket_path = env["HARNESS_BRIDGE_SOCKET"]
        token = env.pop("HARNESS_SESSION_TOKEN")
        marker = env.pop("HARNESS_RESULT_MARKER")
        skills_dir = env["HARNESS_SKILLS_DIR"]
        workspace_dir = env["HARNESS_WORKSPACE_DIR"]
        code_file = env["HARNESS_CODE_FILE"]
        timeout = float(env.get("HARNESS_CALL_TIMEOUT", "60"))
        with open(code_file, encoding="utf-8") as fh:
            source = fh.read()
    except (KeyError, OSError, ValueError) as exc:
        print(f"bootstrap misconfigured: {exc}", file=sys.stderr)
        return EXIT_BOOTSTRAP_ERROR

    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)
    result_stream = sys.stdout

    def emit(payload):
        try:
            line = json.dumps(payload, default=str)
        except (TypeError, ValueError, RecursionError):
            line = json.dumps({**payload, "output": _fallback_repr(payload.get("output"))})
        result_stream.write(marker + line + "\n")
        result_stream.flush()

    install_guard([skills_dir, workspace_dir], socket_path)
    namespace = build_globals(BridgeClient(socket_path, token, timeout), skills_dir, workspace_dir)

    try:
        exec(compile_agent(source), namespace)
        value = asyncio.run(namespace["__agent_main__"]())
    except MemoryError:
        emit({"type": "error", "kind": "memory", "message": "MemoryError"})
        return EXIT_MEMORY
    except SystemExit as exc:
        if exc.code in (None, 0):
            value = None
        else:
            emit({"type": "error", "kind": "exception", "message": f"SystemExit: {exc.code}"})
            return EXIT_AGENT_ERROR
    except BaseException as exc:
        sys.stderr.write(_agent_traceback(exc))
        message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
        emit({"type": "error", "kind": "exception", "message": message})
        return EXIT_AGENT_ERROR

    emit({"type": "result", "output": value})
    return EXIT_OK


if __name__ == "__main__":
    try:
        code = main()
    except MemoryError:
        code = EXIT_MEMORY
    sys.stdout.flush()
    sys.stderr.flush()
    os._exit(code)
