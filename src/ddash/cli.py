# ddash
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of ddash.
#
# ddash is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""
ddash CLI -- Main entry point.

Usage:
    ddash version                     # Version info
    ddash sandbox init [-i]           # Create .ddash.yaml
    ddash sandbox list                # Show the current config
    ddash sandbox status              # Is a config present?
    ddash run [--deny-write] -- CMD   # Run CMD in the sandbox
    ddash proxy [--port PORT]         # Foreground interactive proxy
    ddash trace [--save] -- CMD       # Suggest a policy from what CMD touches
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from . import __version__
from .config import (
    ConfigError,
    SandboxConfig,
    config_path,
    default_config,
    load_config,
    network_mode,
    save_config,
)
from .proxy import ProxyStartError

logger = logging.getLogger("ddash.cli")


def _split_list(text: str) -> list[str]:
    return [part.strip() for part in text.split(",") if part.strip()]


def _ask(question: str) -> str:
    return input(question).strip()


def _yes(question: str) -> bool:
    return _ask(question).lower() in ("y", "yes")


def _interactive_config(base: SandboxConfig) -> SandboxConfig:
    """Walk through the policy one question at a time."""
    name = _ask(f"Project name [{base.name}]: ") or base.name

    allow_net: list[str] = []
    if _yes("Allow network access? [y/N]: "):
        answer = _ask("  Allow all hosts or specific ones? [all/specific]: ").lower()
        if answer == "specific":
            allow_net = _split_list(_ask("  Hosts (comma-separated): "))
        else:
            allow_net = ["*"]

    allow_write = ["."]
    if _yes("Allow writes outside current directory? [y/N]: "):
        allow_write += _split_list(_ask("  Additional write paths (comma-separated): "))

    allow_read = ["."]
    if _yes("Allow reads outside current directory and system paths? [y/N]: "):
        allow_read += _split_list(_ask("  Additional read paths (comma-separated): "))

    base.name = name
    base.allow_net = allow_net
    base.allow_read = allow_read
    base.allow_write = allow_write
    return base


def _print_help(parser: argparse.ArgumentParser) -> int:
    parser.print_help()
    return 0


def cmd_sandbox_init(args: argparse.Namespace) -> int:
    path = config_path()
    if path.exists():
        print(
            f"ddash: sandbox config already exists at {path} (delete it first or edit manually)",
            file=sys.stderr,
        )
        return 1

    config = default_config()
    if args.interactive:
        config = _interactive_config(config)
    save_config(config, path)
    print(f"Initialized sandbox config at {path}")
    return 0


def cmd_sandbox_list(args: argparse.Namespace) -> int:
    path = config_path()
    if not path.exists():
        print("No sandbox configured. Run 'ddash sandbox init' to create one.")
        return 0

    config = load_config(path)
    rows = [
        ("Name:", config.name),
        ("Isolation:", config.isolation),
        ("Created:", config.created_at),
        ("Network:", ", ".join(config.allow_net) if config.allow_net else "interactive proxy"),
        ("Read:", ", ".join(config.allow_read) or "-"),
        ("Write:", ", ".join(config.allow_write) or "-"),
    ]
    for label, value in rows:
        print(f"{label:<12} {value}")
    if config.domains:
        print("Domains:")
        for domain, decision in sorted(config.domains.items()):
            print(f"  {domain:<40} {decision}")
    return 0


def cmd_sandbox_status(args: argparse.Namespace) -> int:
    path = config_path()
    if not path.exists():
        print("No sandbox configured.")
        return 0
    config = load_config(path)
    print(f"Sandbox: configured (network: {network_mode(config)}, {len(config.domains)} remembered domains)")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    from .run import run_command

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        print("ddash: run needs a command, e.g. 'ddash run -- npm install'", file=sys.stderr)
        return 2

    path = Path(args.config) if args.config else config_path()
    config = load_config(path)
    return run_command(
        command,
        config,
        config_file=path if path.exists() else None,
        deny_write=args.deny_write,
        audit_log_path=args.audit_log,
    )


def cmd_trace(args: argparse.Namespace) -> int:
    from .trace import TraceError, trace_command

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        print("ddash: trace needs a command, e.g. 'ddash trace -- python train.py'", file=sys.stderr)
        return 2

    try:
        return trace_command(command, save=args.save, config_file=args.config)
    except TraceError as exc:
        print(f"ddash: {exc}", file=sys.stderr)
        return 1


def cmd_proxy(args: argparse.Namespace) -> int:
    from .proxy.server import serve

    path = Path(args.config) if args.config else config_path()
    config = load_config(path)
    serve(
        config,
        host=args.host,
        port=args.port,
        config_file=path if path.exists() else None,
        audit_log_path=args.audit_log,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ddash",
        description="ddash -- AI sandbox orchestration CLI",
    )
    parser.add_argument("-v", "--version", action="version", version=f"ddash version {__version__}")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command_name")

    sub.add_parser("version", help="Print the ddash version")

    sandbox = sub.add_parser("sandbox", help="Manage sandbox configuration")
    sandbox.set_defaults(func=lambda args: _print_help(sandbox))
    sandbox_sub = sandbox.add_subparsers(dest="sandbox_command")
    init = sandbox_sub.add_parser("init", help="Create a .ddash.yaml (use -i for interactive setup)")
    init.add_argument("-i", "--interactive", action="store_true", help="Walk through policy setup step by step")
    init.set_defaults(func=cmd_sandbox_init)
    sandbox_sub.add_parser("list", help="Show current sandbox configuration").set_defaults(func=cmd_sandbox_list)
    sandbox_sub.add_parser("status", help="Check if a sandbox config exists").set_defaults(func=cmd_sandbox_status)

    run = sub.add_parser("run", help="Run a command inside the sandbox")
    run.add_argument("--deny-write", action="store_true", help="Deny all file writes")
    run.add_argument("--config", default=None, help="Path to the sandbox config (default: ./.ddash.yaml)")
    run.add_argument("--audit-log", default=None, help="Write a JSON Lines audit log of proxied connections")
    run.add_argument("command", nargs=argparse.REMAINDER, help="Command to run (after --)")
    run.set_defaults(func=cmd_run)

    proxy = sub.add_parser("proxy", help="Run the interactive proxy in the foreground")
    proxy.add_argument("--host", default="127.0.0.1", help="Listen address (default: 127.0.0.1)")
    proxy.add_argument("--port", type=int, default=0, help="Listen port (default: ephemeral)")
    proxy.add_argument("--config", default=None, help="Path to the sandbox config (default: ./.ddash.yaml)")
    proxy.add_argument("--audit-log", default=None, help="Write a JSON Lines audit log of proxied connections")
    proxy.set_defaults(func=cmd_proxy)

    trace = sub.add_parser("trace", help="Trace a command's access and suggest a sandbox policy")
    trace.add_argument("--save", action="store_true", help="Save the suggested config without asking")
    trace.add_argument("--config", default=None, help="Where to save the config (default: ./.ddash.yaml)")
    trace.add_argument("command", nargs=argparse.REMAINDER, help="Command to trace (after --)")
    trace.set_defaults(func=cmd_trace)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command_name == "version":
        print(f"ddash version {__version__}")
        return 0

    func = getattr(args, "func", None)
    if func is None:
        return _print_help(parser)

    try:
        return func(args)
    except ConfigError as exc:
        print(f"ddash: {exc}", file=sys.stderr)
        return 1
    except ProxyStartError as exc:
        print(f"ddash: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
