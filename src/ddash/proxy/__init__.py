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
"""ddash network proxy -- interactive per-domain egress control.

Host-side gate for every HTTP and HTTPS connection made by a sandboxed
command. The sandbox only allows traffic to localhost, and the command
is pointed at this proxy through HTTP_PROXY / HTTPS_PROXY.

Architecture:
  Sandboxed command --> NetworkProxy (127.0.0.1) --> Internet (per-domain)

Security properties:
  - One decision per domain per run, never re-prompted
  - Unknown domains ask the operator on /dev/tty, not the command's stdin
  - Anything but an explicit allow is a deny (including no terminal)
  - HTTPS is tunneled opaquely, never decrypted
  - Denied connections get a 403, never a reset
"""

from .decisions import Decision, DecisionStore, is_allowed, strip_port
from .prompt import ControlChannel, TerminalPrompter
from .proxy import NetworkProxy, ProxyStartError

__all__ = [
    "ControlChannel",
    "Decision",
    "DecisionStore",
    "NetworkProxy",
    "ProxyStartError",
    "TerminalPrompter",
    "is_allowed",
    "strip_port",
]
