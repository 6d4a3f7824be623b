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
"""Per-domain network decisions -- the single source of truth.

Every proxied connection asks the DecisionStore whether its destination
domain may be reached. A domain is decided exactly once per run:

  - Pre-seeded decisions (from .ddash.yaml) are returned immediately.
  - Unknown domains are handed to the resolver (the interactive
    terminal prompt) and the answer is recorded for the rest of the run.

Resolution is serialized behind one lock that is held while the
resolver runs. Two prompts on the same terminal would interleave their
input, and two connections to the same new domain must never produce
two prompts. The cost is that a connection to a *different* unknown
domain waits for the prompt in flight. Already-decided domains are
read without the lock and never wait.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Mapping

logger = logging.getLogger("ddash.proxy.decisions")


class Decision(str, Enum):
    """Outcome attached to a domain."""

    ALLOW = "allow"  # Permit for this run only
    DENY = "deny"  # Block for this run only
    ALWAYS = "always"  # Permit and persist to .ddash.yaml
    NEVER = "never"  # Block and persist to .ddash.yaml

    @classmethod
    def parse(cls, token: str | None) -> Decision | None:
        """Map a config token to a Decision, or None if unrecognized."""
        if token is None:
            return None
        try:
            return cls(str(token).strip().lower())
        except ValueError:
            return None

    @property
    def persistent(self) -> bool:
        return self in (Decision.ALWAYS, Decision.NEVER)


def is_allowed(decision: str | None) -> bool:
    """Return True if a decision means the connection should proceed.

    Only ``allow`` and ``always`` pass. Empty and unrecognized tokens
    are treated exactly like ``deny``.
    """
    return decision in (Decision.ALLOW.value, Decision.ALWAYS.value)


def strip_port(host: str) -> str:
    """Remove a ``:port`` suffix and IPv6 brackets from a host.

    >>> strip_port("example.com:443")
    'example.com'
    >>> strip_port("[::1]:443")
    '::1'
    """
    host = host.strip()
    if host.startswith("["):
        end = host.find("]")
        if end != -1:
            return host[1:end]
        return host
    # A bare IPv6 literal has more than one colon and no port to strip
    if host.count(":") == 1:
        return host.rsplit(":", 1)[0]
    return host


class DecisionStore:
    """Thread-safe mapping of domain -> Decision.

    Usage:
        store = DecisionStore(prompter, initial={"pypi.org": "always"})
        decision = store.resolve("registry.npmjs.org")  # may prompt
        current = store.snapshot()
    """

    def __init__(
        self,
        resolver: Callable[[str], Decision],
        initial: Mapping[str, str] | None = None,
    ) -> None:
        self._resolver = resolver
        self._lock = threading.Lock()
        self._decisions: dict[str, Decision] = {}

        for domain, token in (initial or {}).items():
            decision = Decision.parse(token)
            if decision is None:
                logger.warning(
                    "Unrecognized decision %r for %s -- treating as deny", token, domain
                )
                decision = Decision.DENY
            self._decisions[domain] = decision

    def resolve(self, domain: str) -> Decision:
        """Return the decision for a domain, asking the resolver on first sight.

        The resolver runs at most once per domain. Concurrent callers on
        the same domain block until that single resolution completes and
        then all receive the same answer. If the resolver raises, nothing
        is recorded and the exception propagates.
        """
        decision = self._decisions.get(domain)
        if decision is not None:
            return decision

        with self._lock:
            decision = self._decisions.get(domain)
            if decision is not None:
                return decision

            decision = self._resolver(domain)
            self._decisions[domain] = decision
            logger.info("Domain %s decided: %s", domain, decision.value)
            return decision

    def snapshot(self) -> dict[str, Decision]:
        """Return a copy of the current decisions."""
        with self._lock:
            return dict(self._decisions)

    def __contains__(self, domain: object) -> bool:
        with self._lock:
            return domain in self._decisions

    def __len__(self) -> int:
        with self._lock:
            return len(self._decisions)
