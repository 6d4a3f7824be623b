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
"""Run a command inside the sandbox.

Puts the pieces together for one run:
  1. Scrub credentials from the environment
  2. In proxy mode, start a NetworkProxy and point the command at it
  3. Wrap the command with sandbox-exec (macOS) using the generated profile
  4. Forward the exit code and remember always/never answers
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Callable, Sequence

from .config import (
    NETWORK_PROXY,
    SandboxConfig,
    network_mode,
    record_decisions,
    save_config,
    seed_domains,
)
from .env import scrub_env
from .profile import generate_profile
from .proxy import Decision, NetworkProxy

logger = logging.getLogger("ddash.run")

# Exit code when the command cannot be found (same as the shell's)
EXIT_NOT_FOUND = 127

_PROXY_VARS = ("HTTP_PROXY", "HTTPS_PROXY", "http_proxy", "https_proxy")
_NO_PROXY_VARS = ("NO_PROXY", "no_proxy", "ALL_PROXY", "all_proxy")


def proxy_env(env: dict[str, str], proxy_url: str) -> dict[str, str]:
    """Point every proxy variable at ``proxy_url`` and drop bypasses."""
    env = dict(env)
    for name in _NO_PROXY_VARS:
        env.pop(name, None)
    for name in _PROXY_VARS:
        env[name] = proxy_url
    return env


def sandbox_argv(argv: Sequence[str], profile: str) -> list[str]:
    """Wrap ``argv`` with sandbox-exec when it is available."""
    sandbox_exec = shutil.which("sandbox-exec") if sys.platform == "darwin" else None
    if sandbox_exec is None:
        logger.warning("sandbox-exec not available -- running without an OS-level sandbox")
        return list(argv)
    return [sandbox_exec, "-p", profile, *argv]


def run_command(
    argv: Sequence[str],
    config: SandboxConfig,
    config_file: Path | str | None = None,
    deny_write: bool = False,
    prompter: Callable[[str], Decision] | None = None,
    audit_log_path: Path | str | None = None,
) -> int:
    """Run ``argv`` under ``config`` and return its exit code."""
    if not argv:
        raise ValueError("no command given")

    command_name = shlex.join(argv[:2])
    env = scrub_env()
    proxy_mode = network_mode(config) == NETWORK_PROXY
    proxy: NetworkProxy | None = None

    if proxy_mode:
        proxy = NetworkProxy(
            seed_domains(config),
            command_name=command_name,
            prompter=prompter,
            audit_log_path=audit_log_path,
        )
        proxy.start()
        env = proxy_env(env, proxy.url)

    profile = generate_profile(config, deny_write=deny_write, proxy_mode=proxy_mode, cwd=os.getcwd())
    full_argv = sandbox_argv(argv, profile)
    logger.info("Running %s (network: %s)", command_name, "proxy" if proxy_mode else "open")

    try:
        try:
            completed = subprocess.run(full_argv, env=env)
        except FileNotFoundError:
            print(f"ddash: command not found: {argv[0]}", file=sys.stderr)
            return EXIT_NOT_FOUND
        if completed.returncode < 0:
            # Killed by a signal: report it the way a shell would
            return 128 - completed.returncode
        return completed.returncode
    finally:
        if proxy is not None:
            proxy.shutdown()
            _remember(config, proxy.domains(), config_file)


def _remember(config: SandboxConfig, decisions: dict, config_file: Path | str | None) -> None:
    if not record_decisions(config, decisions):
        return
    if config_file is None:
        logger.info("No config file given -- not persisting always/never answers")
        return
    save_config(config, config_file)
