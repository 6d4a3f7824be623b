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
"""Interactive domain prompt on the operator's terminal.

The sandboxed command owns stdin/stdout, so questions go to /dev/tty
instead. The terminal is opened on the first prompt and reused for the
rest of the run.

Anything other than a recognized answer is a deny. If no terminal can
be opened (detached runs, CI) every unknown domain is denied.
"""

from __future__ import annotations

import logging
import sys
from typing import IO, Any, Callable, TextIO

from .decisions import Decision

logger = logging.getLogger("ddash.proxy.prompt")

DEFAULT_TTY_PATH = "/dev/tty"

_ANSWERS: dict[str, Decision] = {
    "a": Decision.ALLOW,
    "allow": Decision.ALLOW,
    "d": Decision.DENY,
    "deny": Decision.DENY,
    "l": Decision.ALWAYS,
    "always": Decision.ALWAYS,
    "n": Decision.NEVER,
    "never": Decision.NEVER,
}


def parse_answer(line: str) -> Decision | None:
    """Map one line of operator input to a Decision (None if unknown)."""
    return _ANSWERS.get(line.strip().lower())


class ControlChannel:
    """A question/answer text stream separate from the child's stdio."""

    def __init__(self, reader: IO[Any], writer: TextIO) -> None:
        self.reader = reader
        self.writer = writer

    @classmethod
    def open_tty(cls, path: str = DEFAULT_TTY_PATH) -> ControlChannel:
        """Open the controlling terminal. Raises OSError if there is none."""
        # Terminals are not seekable, so read and write get separate handles.
        # The reader is unbuffered so close() never waits on a pending read.
        reader = open(path, "rb", buffering=0)
        try:
            writer = open(path, "a", encoding="utf-8")
        except OSError:
            reader.close()
            raise
        return cls(reader, writer)

    def ask(self, question: str) -> str:
        """Write a question and return the next line of input ('' on EOF)."""
        self.writer.write(question)
        self.writer.flush()
        line = self.reader.readline()
        if isinstance(line, bytes):
            return line.decode("utf-8", errors="replace")
        return line

    def say(self, message: str) -> None:
        self.writer.write(message)
        self.writer.flush()

    def close(self) -> None:
        for stream in (self.reader, self.writer):
            try:
                stream.close()
            except OSError as exc:
                logger.debug("Error closing control channel: %s", exc)


class TerminalPrompter:
    """Asks the operator what to do about a domain.

    Instances are callables suitable as a DecisionStore resolver. They are
    not thread-safe on their own; the DecisionStore lock serializes calls,
    which also makes opening the channel and the first prompt atomic.
    """

    def __init__(
        self,
        command_name: str,
        tty_path: str = DEFAULT_TTY_PATH,
        opener: Callable[[], ControlChannel] | None = None,
    ) -> None:
        self.command_name = command_name or "command"
        self._tty_path = tty_path
        self._opener = opener or (lambda: ControlChannel.open_tty(self._tty_path))
        self._channel: ControlChannel | None = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._channel is not None

    def __call__(self, domain: str) -> Decision:
        return self.prompt(domain)

    def prompt(self, domain: str) -> Decision:
        """Ask about ``domain`` and return the operator's decision.

        Never raises. A missing terminal, a read error, end of input and
        a prompter that has been closed all result in Decision.DENY.
        """
        if self._closed:
            logger.info("Prompter closed -- denying %s", domain)
            return Decision.DENY

        channel = self._ensure_open(domain)
        if channel is None:
            return Decision.DENY

        try:
            line = channel.ask(
                f"\nddash: {self.command_name} wants to connect to {domain}\n"
                "       [a]llow  [d]eny  a[l]ways  [n]ever: "
            )
        except (OSError, ValueError) as exc:
            # ValueError: the channel was closed underneath us by shutdown()
            logger.warning("Prompt for %s failed (%s) -- denying", domain, exc)
            return Decision.DENY

        decision = parse_answer(line)
        if decision is None:
            answer = line.strip().lower()
            logger.info("Unknown answer %r for %s -- denying", answer, domain)
            try:
                channel.say(f"       (unknown input {answer!r}, denying)\n")
            except (OSError, ValueError) as exc:
                logger.debug("Could not echo denial: %s", exc)
            return Decision.DENY
        return decision

    def close(self) -> None:
        """Close the control channel for good.

        Later prompts deny without reopening the terminal.
        """
        self._closed = True
        if self._channel is not None:
            self._channel.close()
            self._channel = None

    def _ensure_open(self, domain: str) -> ControlChannel | None:
        if self._channel is None:
            try:
                self._channel = self._opener()
            except OSError as exc:
                logger.warning("Cannot open %s (%s) -- denying %s", self._tty_path, exc, domain)
                print(f"ddash: can't open {self._tty_path}, denying {domain}", file=sys.stderr)
                return None
        return self._channel
