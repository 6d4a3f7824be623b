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
"""Standalone proxy entry point.

Runs the interactive proxy in the foreground without launching a
command, for use with tools started by hand:

    ddash proxy --port 8899
    HTTPS_PROXY=http://127.0.0.1:8899 curl https://example.com

Answers given as always/never are written back to the project config
on exit.
"""

from __future__ import annotations

import logging
import signal
import threading
from pathlib import Path
from typing import Callable

from ..config import SandboxConfig, record_decisions, save_config, seed_domains
from .decisions import Decision
from .proxy import NetworkProxy

logger = logging.getLogger("ddash.proxy.server")


def serve(
    config: SandboxConfig,
    host: str = "127.0.0.1",
    port: int = 0,
    config_file: Path | str | None = None,
    audit_log_path: Path | str | None = None,
    command_name: str = "proxy client",
    prompter: Callable[[str], Decision] | None = None,
    stop_event: threading.Event | None = None,
) -> dict[str, str]:
    """Serve until SIGINT/SIGTERM (or ``stop_event``) and return the decisions."""
    stop = stop_event or threading.Event()
    proxy = NetworkProxy(
        seed_domains(config),
        command_name=command_name,
        host=host,
        port=port,
        prompter=prompter,
        audit_log_path=audit_log_path,
    )

    def _shutdown(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        stop.set()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGINT, _shutdown)
        signal.signal(signal.SIGTERM, _shutdown)

    logger.info("=" * 60)
    logger.info("ddash interactive proxy")
    logger.info("=" * 60)
    logger.info("  Listening: %s", proxy.url)
    logger.info("  Remembered domains: %d", len(config.domains))
    logger.info("  Audit log: %s", audit_log_path or "disabled")
    logger.info("=" * 60)
    print(f"export HTTP_PROXY={proxy.url} HTTPS_PROXY={proxy.url}", flush=True)

    proxy.start()
    try:
        while not stop.wait(0.5):
            if not proxy.is_running:
                break
    finally:
        proxy.shutdown()

    decisions = {domain: decision.value for domain, decision in proxy.domains().items()}
    if record_decisions(config, decisions) and config_file is not None:
        save_config(config, config_file)
    return decisions
