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
"""Trace a command's access and suggest a sandbox policy.

``ddash trace`` runs a command with everything allowed under a
sandbox-exec trace profile, then reads the trace log back:

  1. Count outbound hosts, file reads and file writes
  2. Print an access summary
  3. Suggest a minimal .ddash.yaml (and save it if asked)

Trace log lines are SBPL rules, one per access, e.g.:
  (allow network-outbound (remote ip "pypi.org:443"))
  (allow file-write-data (literal "/Users/dev/app/build/out.o"))
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import tempfile
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Sequence, TextIO

import yaml

from .config import SandboxConfig, config_path, default_config, save_config
from .proxy.decisions import strip_port

logger = logging.getLogger("ddash.trace")

# Reads under these prefixes are the OS, not the project
SYSTEM_PREFIXES = ("/bin", "/sbin", "/usr", "/System", "/Library", "/opt", "/private", "/dev")

# Scratch directories that every profile already allows writing to
_SCRATCH_PREFIXES = ("/tmp", "/private/tmp")

# Longest list of write paths shown in the summary
_MAX_WRITES_SHOWN = 5


class TraceError(Exception):
    """The command could not be traced at all."""


@dataclass
class AccessLog:
    """Access counts gathered from one trace."""

    net_out: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    file_reads: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    file_writes: dict[str, int] = field(default_factory=lambda: defaultdict(int))


def trace_profile(log_path: str) -> str:
    """Allow everything and trace every operation to ``log_path``."""
    quoted = log_path.replace("\\", "\\\\").replace('"', '\\"')
    return f'(version 1)\n(allow default)\n(trace "{quoted}")\n'


def _first_quoted(line: str) -> str:
    start = line.find('"')
    if start == -1:
        return ""
    end = line.find('"', start + 1)
    if end == -1:
        return ""
    return line[start + 1 : end]


def extract_path(line: str) -> str:
    """Return the first quoted string in a trace line ('' if none)."""
    return _first_quoted(line)


def extract_host(line: str) -> str:
    """Return the host of the first quoted ``host:port`` in a trace line."""
    return strip_port(_first_quoted(line)).lower()


def analyze_trace(log_path: str) -> AccessLog:
    """Count the accesses recorded in a trace log.

    A missing or unreadable log is an empty AccessLog, since the command
    may simply have done nothing worth tracing.
    """
    access = AccessLog()
    try:
        with open(log_path, encoding="utf-8", errors="replace") as f:
            lines = f.read().splitlines()
    except OSError as exc:
        logger.warning("Cannot read trace log %s: %s", log_path, exc)
        return access

    for line in lines:
        line = line.strip()
        if not line:
            continue
        if "file-read" in line:
            path = extract_path(line)
            if path:
                access.file_reads[path] += 1
        elif "file-write" in line:
            path = extract_path(line)
            if path:
                access.file_writes[path] += 1
        elif "network-outbound" in line:
            host = extract_host(line)
            if host:
                access.net_out[host] += 1
    return access


def enrich_from_command(access: AccessLog, argv: Sequence[str], cwd: str) -> None:
    """Count the project dir and any existing file arguments as reads."""
    access.file_reads[cwd] += 1
    for arg in argv[1:]:
        if arg.startswith("-"):
            continue
        path = os.path.abspath(arg)
        if os.path.exists(path):
            access.file_reads[path] += 1


def categorize_files(files: dict[str, int], cwd: str) -> tuple[int, int]:
    """Split paths into (system, project) counts by prefix."""
    system = sum(1 for path in files if path.startswith(SYSTEM_PREFIXES))
    return system, len(files) - system


def format_summary(access: AccessLog, cwd: str) -> str:
    lines = ["Access summary:"]

    if not access.net_out:
        lines.append("  Network:     no outbound connections detected")
    else:
        hosts = sorted(access.net_out)
        lines.append(f"  Network:     {len(hosts)} outbound ({', '.join(hosts)})")

    system, project = categorize_files(access.file_reads, cwd)
    lines.append(f"  File reads:  {len(access.file_reads)} (system: {system}, project: {project})")

    if not access.file_writes:
        lines.append("  File writes: none detected")
    else:
        writes = sorted(access.file_writes)
        shown = writes[:_MAX_WRITES_SHOWN]
        if len(writes) > _MAX_WRITES_SHOWN:
            shown.append(f"... and {len(writes) - _MAX_WRITES_SHOWN} more")
        lines.append(f"  File writes: {len(writes)} ({', '.join(shown)})")

    return "\n".join(lines)


def suggest_config(access: AccessLog, cwd: str) -> SandboxConfig:
    """The narrowest config that would have let the traced run succeed.

    Writes inside the project collapse to ``.``; writes to /tmp are
    dropped because scratch space is always writable; any other write
    allows its parent directory.
    """
    config = default_config(cwd)
    config.allow_net = sorted(access.net_out)

    write_dirs: set[str] = set()
    for path in access.file_writes:
        directory = os.path.dirname(path)
        rel = os.path.relpath(directory, cwd)
        if rel != os.pardir and not rel.startswith(os.pardir + os.sep):
            write_dirs.add(".")
        elif any(directory == p or directory.startswith(p + "/") for p in _SCRATCH_PREFIXES):
            continue
        else:
            write_dirs.add(directory)
    config.allow_write = sorted(write_dirs) or ["."]
    return config


def _save(config: SandboxConfig, path: str, out: TextIO) -> None:
    if os.path.exists(path):
        print(f"Overwriting existing {path}", file=out)
    save_config(config, path)
    print(f"Saved to {path}", file=out)


def trace_command(
    argv: Sequence[str],
    save: bool = False,
    config_file: str | None = None,
    confirm: Callable[[str], str] = input,
    out: TextIO | None = None,
) -> int:
    """Trace ``argv``, print what it touched and offer a config.

    Returns 0 once the summary is printed, whatever the command's own
    exit status. Raises TraceError if the command or sandbox-exec
    cannot be found.
    """
    if not argv:
        raise ValueError("no command given")
    out = out or sys.stderr
    path = str(config_file or config_path())

    binary = shutil.which(argv[0])
    if binary is None:
        raise TraceError(f"command not found: {argv[0]}")
    sandbox_exec = shutil.which("sandbox-exec")
    if sandbox_exec is None:
        raise TraceError("sandbox-exec not found (tracing needs macOS)")

    fd, log_path = tempfile.mkstemp(prefix="ddash-trace-", suffix=".log")
    os.close(fd)
    try:
        print(f"ddash: tracing {argv[0]} (all access allowed, logging to {log_path})\n", file=out)
        env = dict(os.environ, SANDBOX_LOG_FILE=log_path)
        completed = subprocess.run(
            [sandbox_exec, "-p", trace_profile(log_path), binary, *argv[1:]],
            env=env,
        )
        print(file=out)
        if completed.returncode != 0:
            print(f"ddash: command exited with status {completed.returncode}\n", file=out)

        access = analyze_trace(log_path)
    finally:
        try:
            os.remove(log_path)
        except OSError as exc:
            logger.debug("Could not remove trace log %s: %s", log_path, exc)

    cwd = os.getcwd()
    enrich_from_command(access, argv, cwd)
    print(format_summary(access, cwd), file=out)

    config = suggest_config(access, cwd)
    print(f"\nSuggested {os.path.basename(path)}:", file=out)
    rendered = yaml.dump(config.to_dict(), default_flow_style=False, sort_keys=False)
    for line in rendered.splitlines():
        print(f"  {line}", file=out)

    if save:
        _save(config, path, out)
        return 0

    try:
        answer = confirm("\nSave this config? [Y/n] ").strip().lower()
    except EOFError:
        answer = ""
    if answer in ("", "y", "yes"):
        _save(config, path, out)
    else:
        print("Config not saved.", file=out)
    return 0
