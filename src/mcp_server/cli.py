"""Command line interface.

    replbridge serve [--host HOST] [--port PORT] [--workspace DIR]
    replbridge check [--url URL] [--api-key KEY]
    replbridge security status|init|add-key|revoke-key|allow-ip|deny-ip|set-mode
"""

import argparse
import asyncio
import sys
from typing import Optional

from shared.config import Settings, get_settings
from shared.errors import SecurityConfigError
from shared.logging import setup_logging
from shared.models import SecurityMode
from mcp_client import MCPClient, MCPClientError
from mcp_server import security_config

MODES = [m.value for m in SecurityMode]


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="replbridge",
        description="JSON-RPC tool server for a live Python session"
    )
    parser.add_argument("--workspace", default=None, help="Workspace directory holding .replbridge/")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the server")
    serve.add_argument("--host", default=None, help="HTTP host")
    serve.add_argument("--port", type=int, default=None, help="HTTP port")
    serve.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default=None)

    check = commands.add_parser("check", help="Ping a running server")
    check.add_argument("--url", default=None, help="Server URL (default: configured host and port)")
    check.add_argument("--api-key", default=None, help="API key (default: first key in security.json)")

    security = commands.add_parser("security", help="Manage the workspace security configuration")
    actions = security.add_subparsers(dest="action", required=True)
    actions.add_parser("status", help="Show the current configuration")
    init = actions.add_parser("init", help="Create a configuration with a new API key")
    init.add_argument("--mode", choices=MODES, default=SecurityMode.STRICT.value)
    init.add_argument("--force", action="store_true", help="Overwrite an existing configuration")
    actions.add_parser("add-key", help="Generate an additional API key")
    revoke = actions.add_parser("revoke-key", help="Revoke an API key")
    revoke.add_argument("key")
    allow = actions.add_parser("allow-ip", help="Allow an address, CIDR range or wildcard pattern")
    allow.add_argument("ip")
    deny = actions.add_parser("deny-ip", help="Remove an address from the allow-list")
    deny.add_argument("ip")
    set_mode = actions.add_parser("set-mode", help="Change the security mode")
    set_mode.add_argument("mode", choices=MODES)

    return parser.parse_args(argv)


def _settings(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    server_updates: dict = {}
    if args.workspace:
        server_updates["workspace_dir"] = args.workspace
    if getattr(args, "host", None):
        server_updates["host"] = args.host
    if getattr(args, "port", None) is not None:
        server_updates["port"] = args.port

    updates: dict = {}
    if server_updates:
        updates["server"] = settings.server.model_copy(update=server_updates)
    if getattr(args, "log_level", None):
        updates["log_level"] = args.log_level
    return settings.model_copy(update=updates) if updates else settings


async def _check(url: str, api_key: Optional[str]) -> int:
    async with MCPClient(server_url=url, timeout=10.0, api_key=api_key) as client:
        try:
            health = await client.health_check()
            await client.initialize()
            text = await client.call_tool("ping")
        except MCPClientError as e:
            print(f"Check failed: {e}", file=sys.stderr)
            return 1

    print(f"Server {url} is up (version {health.get('version')}, {health.get('tool_count')} tools)")
    print(text)
    return 0


def _security(args: argparse.Namespace, settings: Settings) -> int:
    workspace = settings.workspace

    if args.action == "status":
        policy = security_config.load_security_config(workspace)
        if policy is None:
            print("No security configuration found: the server accepts every request.")
            print("Run `replbridge security init` to create one.")
            return 0
        print(f"Mode:        {policy.mode.value}")
        print(f"Port:        {policy.port or 'default'}")
        print(f"API keys:    {len(policy.api_keys)}")
        for key in policy.api_keys:
            print(f"  {security_config.mask_key(key)}")
        print(f"Allowed IPs: {', '.join(policy.allowed_ips) or 'none'}")
        return 0

    if args.action == "init":
        policy, key = security_config.init_security_config(
            workspace, mode=SecurityMode(args.mode), force=args.force
        )
        print(f"Security configuration created ({policy.mode.value} mode).")
        print(f"API key: {key}")
        print("Send it as `Authorization: Bearer <key>`. It is not shown again.")
        return 0

    if args.action == "add-key":
        key = security_config.add_api_key(workspace)
        print(f"API key: {key}")
        return 0

    if args.action == "revoke-key":
        if not security_config.remove_api_key(args.key, workspace):
            print("API key not found.", file=sys.stderr)
            return 1
        print("API key revoked.")
        return 0

    if args.action == "allow-ip":
        if not security_config.add_allowed_ip(args.ip, workspace):
            print(f"{args.ip} is already allowed.")
            return 0
        print(f"Allowed {args.ip}.")
        return 0

    if args.action == "deny-ip":
        if not security_config.remove_allowed_ip(args.ip, workspace):
            print(f"{args.ip} is not in the allow-list.", file=sys.stderr)
            return 1
        print(f"Removed {args.ip}.")
        return 0

    if args.action == "set-mode":
        policy = security_config.change_security_mode(args.mode, workspace)
        print(f"Security mode set to {policy.mode.value}.")
        return 0

    return 2


def run(argv: Optional[list[str]] = None) -> int:
    """Run a command and return the process exit status."""
    args = parse_args(argv)
    settings = _settings(args)
    setup_logging(settings.log_level, json_output=settings.json_logs)

    if args.command == "serve":
        from mcp_server.main import serve
        serve(settings)
        return 0

    if args.command == "check":
        url = args.url or f"http://{settings.server.host}:{settings.server.port}"
        api_key = args.api_key
        if api_key is None:
            policy = security_config.load_security_config(settings.workspace)
            if policy is not None and policy.api_keys:
                api_key = policy.api_keys[0]
        return asyncio.run(_check(url, api_key))

    try:
        return _security(args, settings)
    except SecurityConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
