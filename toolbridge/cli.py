"""toolbridge CLI - inspect and exercise configured MCP tool servers.

Example:
    # Show which enabled servers connect and what they expose
    toolbridge status

    # Check a server's launch command without connecting
    toolbridge validate mcp-1712345678901-abc123def

    # Call a tool on whichever connected server exposes it first
    toolbridge call search --args '{"query": "weather"}'
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any

from toolbridge.tool.config_loader import ServerConfigStore
from toolbridge.tool.errors import ToolBridgeError
from toolbridge.tool.manager import ConnectionManager

logger = logging.getLogger(__name__)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _manager(args: argparse.Namespace) -> ConnectionManager:
    return ConnectionManager(ServerConfigStore(args.config), stderr_dir=args.stderr_dir)


async def _status(args: argparse.Namespace) -> int:
    manager = _manager(args)
    try:
        report = await manager.connect_enabled()
        _print_json(manager.get_detailed_status().model_dump(by_alias=True))
        return 0 if report.ok else 1
    finally:
        await manager.disconnect_all()


async def _tools(args: argparse.Namespace) -> int:
    manager = _manager(args)
    try:
        await manager.connect_enabled()
        _print_json([t.model_dump(by_alias=True) for t in manager.get_all_tools()])
        return 0
    finally:
        await manager.disconnect_all()


async def _call(args: argparse.Namespace) -> int:
    try:
        arguments = json.loads(args.args)
    except json.JSONDecodeError as e:
        print(f"Invalid --args JSON: {e}", file=sys.stderr)
        return 1

    manager = _manager(args)
    try:
        if args.server:
            connected = await manager.connect(args.server)
            if not connected:
                print(f"Failed to connect {args.server}: {manager.last_error(args.server)}", file=sys.stderr)
                return 1
        else:
            await manager.connect_enabled()
        output = await manager.call_tool(args.tool, arguments, server_id=args.server)
        _print_json(output.model_dump())
        return 1 if output.is_error else 0
    except ToolBridgeError as e:
        print(str(e), file=sys.stderr)
        return 1
    finally:
        await manager.disconnect_all()


async def _validate(args: argparse.Namespace) -> int:
    try:
        result = await _manager(args).validate_server_command(args.server_id)
    except ToolBridgeError as e:
        print(str(e), file=sys.stderr)
        return 1
    _print_json({"valid": result.valid, "error": result.error, "fixedCommand": result.fixed_command})
    return 0 if result.valid else 1


async def _fix(args: argparse.Namespace) -> int:
    try:
        result = await _manager(args).attempt_platform_fix(args.server_id)
    except ToolBridgeError as e:
        print(str(e), file=sys.stderr)
        return 1
    _print_json({"success": result.success, "message": result.message})
    return 0 if result.success else 1


async def _list_servers(args: argparse.Namespace) -> int:
    try:
        data = ServerConfigStore(args.config).load()
    except ToolBridgeError as e:
        print(str(e), file=sys.stderr)
        return 1
    _print_json(data.to_dict())
    return 0


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="toolbridge", description=__doc__.splitlines()[0])
    parser.add_argument("--config", default=None, help="Server config file (YAML or JSON)")
    parser.add_argument("--stderr-dir", default=None, help="Directory for provider stderr logs")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("TOOLBRIDGE_LOG_LEVEL", "INFO").upper(),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("status", help="Connect enabled servers and print status").set_defaults(func=_status)
    subparsers.add_parser("tools", help="List tools of enabled servers").set_defaults(func=_tools)
    subparsers.add_parser("list-servers", help="Print the server config").set_defaults(func=_list_servers)

    call_parser = subparsers.add_parser("call", help="Call a tool")
    call_parser.add_argument("tool")
    call_parser.add_argument("--args", default="{}", help="Tool arguments as JSON")
    call_parser.add_argument("--server", default=None, help="Route to this server id")
    call_parser.set_defaults(func=_call)

    validate_parser = subparsers.add_parser("validate", help="Validate a server launch command")
    validate_parser.add_argument("server_id")
    validate_parser.set_defaults(func=_validate)

    fix_parser = subparsers.add_parser("fix", help="Attempt platform fixes for a server")
    fix_parser.add_argument("server_id")
    fix_parser.set_defaults(func=_fix)

    return parser


def main() -> int:
    parser = create_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if not hasattr(args, "func"):
        parser.print_help()
        return 1
    return asyncio.run(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
