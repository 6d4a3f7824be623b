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
"""Per-project sandbox configuration.

Each project may carry a ``.ddash.yaml`` next to its sources. When it
exists, ``ddash run`` applies it automatically.

Schema:
  name:        project name (defaults to the directory name)
  version:     ddash version that created the file
  created_at:  RFC 3339 UTC timestamp
  isolation:   "process"
  allow_net:   []       # ["*"] for open network, otherwise hosts pre-allowed
  allow_read:  ["."]    # system paths are always readable
  allow_write: ["."]
  domains:              # remembered proxy answers (always / never)
    pypi.org: always
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

import yaml

from . import __version__

logger = logging.getLogger("ddash.config")

CONFIG_FILENAME = ".ddash.yaml"

# Network modes derived from allow_net
NETWORK_OPEN = "open"
NETWORK_PROXY = "proxy"


class ConfigError(Exception):
    """The config file exists but cannot be used."""


@dataclass
class SandboxConfig:
    """Sandbox policy for one project."""

    name: str = ""
    version: str = __version__
    created_at: str = ""
    isolation: str = "process"
    allow_net: list[str] = field(default_factory=list)
    allow_read: list[str] = field(default_factory=lambda: ["."])
    allow_write: list[str] = field(default_factory=lambda: ["."])
    domains: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "created_at": self.created_at,
            "isolation": self.isolation,
            "allow_net": list(self.allow_net),
            "allow_read": list(self.allow_read),
            "allow_write": list(self.allow_write),
            "domains": dict(self.domains),
        }


def config_path(directory: Path | str | None = None) -> Path:
    return Path(directory or ".") / CONFIG_FILENAME


def default_config(directory: Path | str | None = None) -> SandboxConfig:
    """Restrictive defaults: no network, read/write the project only."""
    base = Path(directory).resolve() if directory else Path.cwd()
    return SandboxConfig(
        name=base.name or "ddash",
        created_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    )


def network_mode(config: SandboxConfig) -> str:
    """``open`` if every host is allowed, otherwise ``proxy``."""
    return NETWORK_OPEN if "*" in config.allow_net else NETWORK_PROXY


def load_config(path: Path | str | None = None) -> SandboxConfig:
    """Load a project config.

    A missing file yields the restrictive defaults. A file that exists
    but cannot be parsed raises ConfigError rather than silently
    loosening or tightening the policy.
    """
    path = Path(path) if path else config_path()

    if not path.exists():
        logger.info("No sandbox config at %s -- using defaults", path)
        return default_config(path.parent)

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"failed to read {path}: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"invalid sandbox config at {path} (not a mapping)")
    return _parse_config(raw)


def save_config(config: SandboxConfig, path: Path | str | None = None) -> None:
    path = Path(path) if path else config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        yaml.dump(config.to_dict(), default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )
    logger.info("Saved sandbox config to %s", path)


def seed_domains(config: SandboxConfig) -> dict[str, str]:
    """Pre-seeded proxy decisions: remembered answers plus allow_net hosts."""
    seeded = dict(config.domains)
    for host in config.allow_net:
        host = host.strip().lower()
        if host and host != "*":
            seeded.setdefault(host, "allow")
    return seeded


def record_decisions(config: SandboxConfig, decisions: Mapping[str, str]) -> bool:
    """Copy persistent (always / never) decisions into the config.

    Run-only answers (allow / deny) are not remembered. Returns True if
    the config changed and should be saved.
    """
    changed = False
    for domain, decision in decisions.items():
        token = str(getattr(decision, "value", decision))
        if token not in ("always", "never"):
            continue
        if config.domains.get(domain) != token:
            config.domains[domain] = token
            changed = True
    return changed


def _string_list(value: Any, default: list[str]) -> list[str]:
    if value is None:
        return list(default)
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        logger.warning("Expected a list, got %r -- using %r", value, default)
        return list(default)
    return [str(v).strip() for v in value if str(v).strip()]


def _parse_config(raw: dict) -> SandboxConfig:
    """Parse a raw YAML mapping into SandboxConfig."""
    domains_raw = raw.get("domains") or {}
    domains: dict[str, str] = {}
    if isinstance(domains_raw, dict):
        for domain, token in domains_raw.items():
            domain = str(domain).strip().lower()
            if domain:
                domains[domain] = str(token).strip().lower()
    else:
        logger.warning("Ignoring malformed domains section: %r", domains_raw)

    return SandboxConfig(
        name=str(raw.get("name", "")),
        version=str(raw.get("version", __version__)),
        created_at=str(raw.get("created_at", "")),
        isolation=str(raw.get("isolation", "process")),
        allow_net=_string_list(raw.get("allow_net"), []),
        allow_read=_string_list(raw.get("allow_read"), ["."]),
        allow_write=_string_list(raw.get("allow_write"), ["."]),
        domains=domains,
    )
