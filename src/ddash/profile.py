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
"""macOS sandbox-exec profile generation.

Turns a SandboxConfig into SBPL text for ``sandbox-exec -p``. The
profile starts from ``(deny default)`` and opens only what the command
needs to run plus what the project config allows.

In proxy mode the only network the command may reach is localhost,
where the interactive NetworkProxy listens.
"""

from __future__ import annotations

import os

from .config import NETWORK_OPEN, SandboxConfig, network_mode

# Paths every command needs to read to start at all
SYSTEM_READ_PATHS = (
    "/bin",
    "/sbin",
    "/usr",
    "/System",
    "/Library",
    "/Applications",
    "/opt",
    "/private/etc",
    "/private/var",
    "/private/tmp",
    "/dev",
    "/etc",
    "/var",
    "/tmp",
)

# Scratch locations writable unless writes are denied outright
SCRATCH_WRITE_PATHS = ("/private/tmp", "/private/var/folders", "/dev")


def resolve_path(path: str, cwd: str) -> str:
    """Resolve a config path against the project directory.

    ``.`` is the project itself; absolute paths are kept as given; any
    other path is joined to ``cwd`` without normalization.
    """
    if path == ".":
        return cwd
    if os.path.isabs(path):
        return path
    return os.path.join(cwd, path)


def _quote(path: str) -> str:
    return '"' + path.replace("\\", "\\\\").replace('"', '\\"') + '"'


def generate_profile(
    config: SandboxConfig,
    deny_write: bool = False,
    proxy_mode: bool = False,
    cwd: str | None = None,
) -> str:
    """Render the SBPL profile for a config."""
    cwd = cwd or os.getcwd()
    lines = [
        "(version 1)",
        "(deny default)",
        "",
        ";; Process execution",
        "(allow process-exec)",
        "(allow process-fork)",
        "(allow signal (target self))",
        "(allow sysctl-read)",
        "(allow mach-lookup)",
        "(allow ipc-posix-shm)",
        "",
        ";; Reads: system paths",
    ]
    lines += [f"(allow file-read* (subpath {_quote(p)}))" for p in SYSTEM_READ_PATHS]
    lines.append("(allow file-read-metadata)")

    lines += ["", ";; Reads: project"]
    for p in config.allow_read:
        lines.append(f"(allow file-read* (subpath {_quote(resolve_path(p, cwd))}))")

    lines += ["", ";; Writes"]
    if deny_write:
        lines.append(f"(allow file-write* (literal {_quote('/dev/null')}))")
    else:
        lines += [f"(allow file-write* (subpath {_quote(p)}))" for p in SCRATCH_WRITE_PATHS]
        for p in config.allow_write:
            lines.append(f"(allow file-write* (subpath {_quote(resolve_path(p, cwd))}))")

    lines += ["", ";; Network"]
    if proxy_mode:
        lines.append(";; Interactive proxy mode: only the local ddash proxy is reachable")
        lines.append('(allow network* (remote ip "localhost:*"))')
        lines.append('(allow network* (local ip "localhost:*"))')
    elif network_mode(config) == NETWORK_OPEN:
        lines.append("(allow network*)")
    else:
        lines.append(";; No network access")

    return "\n".join(lines) + "\n"


def network_status(profile: str) -> str:
    """Summarize a profile's network policy for display."""
    if "(allow network*)" in profile:
        return "allowed"
    if "Interactive proxy mode" in profile:
        return "proxy"
    return "denied"


def write_status(profile: str) -> str:
    """``restricted`` if only /dev/null is writable, ``allowed`` otherwise."""
    writes = [line for line in profile.splitlines() if line.startswith("(allow file-write*")]
    if all('"/dev/null"' in line for line in writes):
        return "restricted"
    return "allowed"
