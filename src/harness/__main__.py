"""mcp-harness CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

DEMO_MODULE = "harness.capabilities"


def _load(config_path: Path | None):
    from harness.config import HarnessConfig, apply_env_overrides, load_config

    if config_path is None:
        return apply_env_overrides(HarnessConfig())
    return load_config(config_path)


async def _run_file(config, code: str, user_id: str):
    from harness.orchestrator import SessionOrchestrator

    orchestrator = SessionOrchestrator(config)
    await orchestrator.start()
    try:
        return await orchestrator.execute_code(user_id, code)
    finally:
        await orchestrator.stop()


def main():
    parser = argparse.ArgumentParser(
        prog="harness",
        description="mcp-harness: sandboxed code execution for agents",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to harness.yaml (default: built-in defaults plus HARNESS_* env vars)",
    )
    common.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # harness serve
    serve_parser = subparsers.add_parser("serve", parents=[common], help="Start the HTTP server")
    serve_parser.add_argument("--host", default=None, help="Host to bind to (default: from config)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind to (default: from config)")
    serve_parser.add_argument(
        "--demo-capabilities",
        action="store_true",
        help=f"Register the demo capabilities from {DEMO_MODULE}",
    )

    # harness run
    run_parser = subparsers.add_parser(
        "run", parents=[common], help="Execute one agent code file and print the result"
    )
    run_parser.add_argument("file", type=Path, help="Python file with the agent code")
    run_parser.add_argument("--user", required=True, help="User id the session belongs to")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = _load(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.command == "run":
        if not args.file.is_file():
            print(f"Error: {args.file} not found", file=sys.stderr)
            sys.exit(1)
        result = asyncio.run(_run_file(config, args.file.read_text(), args.user))
        print(json.dumps(result.model_dump(mode="json"), indent=2))
        sys.exit(0 if result.ok else 1)

    if args.demo_capabilities and DEMO_MODULE not in config.capability_modules:
        config.capability_modules.append(DEMO_MODULE)

    # Create and run app
    import uvicorn

    from harness.server import create_app

    app = create_app(config)
    uvicorn.run(
        app,
        host=args.host or config.server.host,
        port=args.port or config.server.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
