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
"""Environment scrubbing for sandboxed commands.

The sandbox limits what a command can touch on disk and on the network,
but anything in its environment is already in hand. Credentials are
therefore removed before the command starts.
"""

from __future__ import annotations

import logging
import os
import re
from typing import Iterable, Mapping

logger = logging.getLogger("ddash.env")

# Substrings that mark a variable as a credential
_SENSITIVE_PARTS = (
    "SECRET",
    "TOKEN",
    "PASSWORD",
    "PASSWD",
    "CREDENTIAL",
    "API_KEY",
    "PRIVATE_KEY",
    "ACCESS_KEY",
)

# Suffixes that mark a variable as a credential (GCP_SERVICE_ACCOUNT_KEY, SENTRY_DSN)
_SENSITIVE_SUFFIX = re.compile(r"_(KEY|DSN)$")

# Connection strings and agent sockets that carry credentials or access
_SENSITIVE_NAMES = frozenset(
    {
        "DATABASE_URL",
        "REDIS_URL",
        "MONGODB_URI",
        "MONGO_URL",
        "AMQP_URL",
        "SSH_AUTH_SOCK",
    }
)


def is_sensitive(name: str) -> bool:
    """Return True if an environment variable name looks like a credential."""
    upper = name.upper()
    if upper in _SENSITIVE_NAMES:
        return True
    if any(part in upper for part in _SENSITIVE_PARTS):
        return True
    return bool(_SENSITIVE_SUFFIX.search(upper))


def scrub_env(
    environ: Mapping[str, str] | None = None,
    passthrough: Iterable[str] = (),
) -> dict[str, str]:
    """Return a copy of ``environ`` without credential-looking variables.

    Names in ``passthrough`` are kept even if they look sensitive.
    """
    source = os.environ if environ is None else environ
    keep = {p.upper() for p in passthrough}
    env: dict[str, str] = {}
    scrubbed = []
    for name, value in source.items():
        if is_sensitive(name) and name.upper() not in keep:
            scrubbed.append(name)
            continue
        env[name] = value
    if scrubbed:
        logger.info("Scrubbed %d sensitive environment variables", len(scrubbed))
        logger.debug("Scrubbed: %s", ", ".join(sorted(scrubbed)))
    return env
