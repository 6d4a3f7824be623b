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
"""Interactive network proxy for sandboxed commands.

A local HTTP forward proxy that every outbound connection of the
sandboxed command is routed through (via HTTP_PROXY / HTTPS_PROXY):

  Sandboxed command --HTTP_PROXY--> NetworkProxy (127.0.0.1) --> Internet

Each connection's destination domain is checked against the
DecisionStore. Unknown domains pause the connection while the operator
is asked on the terminal.

For HTTPS the client uses CONNECT. The proxy never decrypts TLS:
  - The decision is based on the CONNECT hostname only
  - After "200 Connection Established" bytes are relayed opaquely
Plain HTTP requests are replayed upstream with httpx and the response
is streamed back with hop-by-hop headers removed.
"""

from __future__ import annotations

import contextlib
import http.server
import logging
import socket
import threading
import time
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping
from urllib.parse import urlsplit

import httpx

from .audit import AuditEntry, AuditLogger
from .decisions import Decision, DecisionStore, is_allowed
from .prompt import TerminalPrompter

logger = logging.getLogger("ddash.proxy.proxy")

# Buffer size for tunnel relay
_TUNNEL_BUFSIZE = 65536

# Timeout for dialing / talking to upstream servers (seconds)
_UPSTREAM_TIMEOUT = 30.0

# Headers that describe a single hop and are never forwarded (RFC 9110 7.6.1)
_HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

_BLOCKED_MESSAGE = "ddash: connection blocked"


class ProxyStartError(RuntimeError):
    """The proxy could not bind its listening socket."""


class _MalformedBody(Exception):
    """The client's request body framing could not be parsed."""


def _connection_tokens(headers: Any) -> set[str]:
    """Header names listed in Connection, which are hop-by-hop too."""
    tokens: set[str] = set()
    for value in headers.get_all("Connection") or []:
        tokens.update(t.strip().lower() for t in value.split(",") if t.strip())
    return tokens


class NetworkProxyHandler(http.server.BaseHTTPRequestHandler):
    """Per-connection dispatcher.

    CONNECT requests become opaque tunnels, everything else is forwarded.
    Both paths ask the owning NetworkProxy's DecisionStore first.
    """

    server_version = "ddash-proxy"

    # Unbuffered, so no tunnel bytes get stranded in a read buffer
    rbufsize = 0

    server: _ProxyHTTPServer

    @property
    def proxy(self) -> NetworkProxy:
        return self.server.proxy

    @property
    def client_ip(self) -> str:
        return self.client_address[0] if self.client_address else ""

    # ---------------------------------------------------------------
    # CONNECT method -- HTTPS tunneling
    # ---------------------------------------------------------------
    def do_CONNECT(self) -> None:
        target = self.path
        hostname, port = self._parse_connect_target()
        if not hostname:
            self._send_error(400, f"ddash: bad CONNECT target {target!r}")
            return

        # The host that is checked is the host that gets dialed
        domain = hostname
        decision = self._check_domain(domain)
        if not is_allowed(decision):
            self._audit(AuditEntry.blocked("CONNECT", target, domain, decision.value, self.client_ip))
            self._send_error(403, _BLOCKED_MESSAGE)
            return

        try:
            upstream = socket.create_connection((hostname, port), timeout=self.proxy.upstream_timeout)
        except OSError as exc:
            logger.warning("Failed to connect to %s -- %s", target, exc)
            self._audit(AuditEntry.error("CONNECT", target, domain, str(exc), client_ip=self.client_ip))
            self._send_error(502, f"ddash: failed to connect to {target}: {exc}")
            return

        # From here on this handler owns every byte on the client socket
        self.close_connection = True
        start_time = time.monotonic()
        try:
            upstream.settimeout(None)
            self.wfile.write(b"HTTP/1.1 200 Connection Established\r\n\r\n")
            self._audit(
                AuditEntry.allowed("CONNECT", target, domain, decision.value, 200, client_ip=self.client_ip)
            )
            self._tunnel(self.connection, upstream)
        except OSError as exc:
            logger.debug("Tunnel to %s failed: %s", target, exc)
        finally:
            upstream.close()
        logger.debug("Tunnel to %s closed after %.0f ms", target, (time.monotonic() - start_time) * 1000)

    # ---------------------------------------------------------------
    # Regular HTTP methods (GET, POST, PUT, DELETE, etc.)
    # ---------------------------------------------------------------
    def do_GET(self) -> None:
        self._handle_http_request()

    def do_HEAD(self) -> None:
        self._handle_http_request()

    def do_POST(self) -> None:
        self._handle_http_request()

    def do_PUT(self) -> None:
        self._handle_http_request()

    def do_PATCH(self) -> None:
        self._handle_http_request()

    def do_DELETE(self) -> None:
        self._handle_http_request()

    def do_OPTIONS(self) -> None:
        self._handle_http_request()

    def _handle_http_request(self) -> None:
        method = self.command
        url = self.path
        parsed = urlsplit(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            self._send_error(400, f"ddash: bad request: proxy requests need an absolute URL, got {url!r}")
            return
        if "@" in parsed.netloc or "\\" in parsed.netloc:
            # URL parsers disagree on userinfo, so the host is not guessed
            self._send_error(400, f"ddash: bad request: userinfo is not allowed in proxy URL {url!r}")
            return

        domain = parsed.hostname
        decision = self._check_domain(domain)
        if not is_allowed(decision):
            self._audit(AuditEntry.blocked(method, url, domain, decision.value, self.client_ip))
            self._send_error(403, _BLOCKED_MESSAGE)
            return

        self._forward(method, url, domain, decision)

    def _forward(self, method: str, url: str, domain: str, decision: Decision) -> None:
        """Replay the request upstream and stream the response back."""
        try:
            body = self._request_body()
        except ValueError as exc:
            self._send_error(400, f"ddash: bad request: {exc}")
            return

        start_time = time.monotonic()
        client = self.proxy.http_client
        try:
            request = client.build_request(method, url, headers=self._forward_headers(), content=body)
            response = client.send(request, stream=True)
        except _MalformedBody as exc:
            self._send_error(400, f"ddash: bad request: {exc}")
            return
        except (httpx.HTTPError, OSError) as exc:
            logger.warning("Upstream request failed: %s %s -- %s", method, url, exc)
            self._audit(AuditEntry.error(method, url, domain, str(exc), client_ip=self.client_ip))
            self._send_error(502, f"ddash: upstream error: {exc}")
            return

        try:
            self.send_response_only(response.status_code, response.reason_phrase or None)
            self.log_request(response.status_code)
            for key, value in response.headers.multi_items():
                if key.lower() in _HOP_BY_HOP:
                    continue
                self.send_header(key, value)
            self.end_headers()
            if method != "HEAD":
                for chunk in response.iter_raw():
                    self.wfile.write(chunk)
        except (httpx.HTTPError, OSError) as exc:
            # Headers are already out; all that is left is to drop the connection
            logger.warning("Relay of %s %s interrupted: %s", method, url, exc)
        finally:
            response.close()
            self.close_connection = True

        self._audit(
            AuditEntry.allowed(
                method,
                url,
                domain,
                decision.value,
                status_code=response.status_code,
                duration_ms=(time.monotonic() - start_time) * 1000,
                client_ip=self.client_ip,
            )
        )

    # ---------------------------------------------------------------
    # Helper methods
    # ---------------------------------------------------------------
    def _check_domain(self, domain: str) -> Decision:
        """Ask the DecisionStore, denying if resolution itself blows up."""
        try:
            return self.proxy.store.resolve(domain)
        except Exception:
            logger.exception("Resolving %s failed -- denying", domain)
            return Decision.DENY

    def _parse_connect_target(self) -> tuple[str, int]:
        """Parse a CONNECT authority, which must be exactly ``host[:port]``.

        Userinfo, paths, queries and fragments give ("", 0), as does any
        target the parser does not read back whole.
        """
        target = self.path
        if not target or any(c in target for c in "@/?#\\ \t"):
            return "", 0
        try:
            parts = urlsplit("//" + target)
            port = parts.port or 443
        except ValueError:
            return "", 0
        if parts.netloc != target or not parts.hostname:
            return "", 0
        return parts.hostname, port

    def _forward_headers(self) -> list[tuple[str, str]]:
        """Request headers minus hop-by-hop ones and Host (httpx derives it)."""
        skip = _HOP_BY_HOP | _connection_tokens(self.headers) | {"host"}
        return [(key, value) for key, value in self.headers.items() if key.lower() not in skip]

    def _request_body(self) -> Iterator[bytes] | bytes | None:
        """Return a streaming iterator over the client's request body."""
        transfer_encoding = self.headers.get("Transfer-Encoding", "")
        if "chunked" in transfer_encoding.lower():
            return self._iter_chunked()

        length = self.headers.get("Content-Length")
        if length is None:
            return None
        try:
            remaining = int(length)
        except ValueError:
            raise ValueError(f"invalid Content-Length {length!r}") from None
        if remaining < 0:
            raise ValueError(f"invalid Content-Length {length!r}")
        if remaining == 0:
            return b""
        return self._iter_fixed(remaining)

    def _iter_fixed(self, remaining: int) -> Iterator[bytes]:
        while remaining > 0:
            chunk = self.rfile.read(min(remaining, _TUNNEL_BUFSIZE))
            if not chunk:
                raise _MalformedBody("request body shorter than Content-Length")
            remaining -= len(chunk)
            yield chunk

    def _iter_chunked(self) -> Iterator[bytes]:
        while True:
            size_line = self.rfile.readline(1024)
            try:
                size = int(size_line.split(b";", 1)[0].strip(), 16)
            except ValueError:
                raise _MalformedBody(f"bad chunk size {size_line!r}") from None
            if size == 0:
                # Discard trailers
                while self.rfile.readline(1024) not in (b"\r\n", b"\n", b""):
                    pass
                return
            yield from self._iter_fixed(size)
            self.rfile.readline(1024)

    def _tunnel(self, client_conn: socket.socket, upstream_conn: socket.socket) -> None:
        """Relay bytes both ways until each direction has finished."""

        def relay(src: socket.socket, dst: socket.socket, direction: str) -> None:
            try:
                while True:
                    data = src.recv(_TUNNEL_BUFSIZE)
                    if not data:
                        break
                    dst.sendall(data)
            except OSError as exc:
                logger.debug("Tunnel %s failed: %s", direction, exc)
                # Unblock the opposite direction as well
                for sock in (src, dst):
                    with contextlib.suppress(OSError):
                        sock.shutdown(socket.SHUT_RDWR)
                return
            with contextlib.suppress(OSError):
                dst.shutdown(socket.SHUT_WR)

        threads = [
            threading.Thread(
                target=relay, args=(client_conn, upstream_conn, "client->upstream"), daemon=True
            ),
            threading.Thread(
                target=relay, args=(upstream_conn, client_conn, "upstream->client"), daemon=True
            ),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    def _audit(self, entry: AuditEntry) -> None:
        if self.proxy.audit is not None:
            self.proxy.audit.log(entry)

    def _send_error(self, code: int, message: str) -> None:
        """Send a short plain-text response produced by the proxy itself."""
        body = f"{message}\n".encode()
        self.close_connection = True
        try:
            self.send_response(code)
            self.send_header("Content-Type", "text/plain; charset=utf-8")
            self.send_header("Content-Length", str(len(body)))
            if code == 403:
                self.send_header("X-Ddash-Blocked", "true")
            self.end_headers()
            if self.command != "HEAD":
                self.wfile.write(body)
        except OSError as exc:
            logger.debug("Could not send %d to client: %s", code, exc)

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use our logger instead of stderr."""
        logger.debug("Proxy: %s", format % args)


class _ProxyHTTPServer(http.server.ThreadingHTTPServer):
    """One daemon thread per accepted connection, owned by a NetworkProxy."""

    daemon_threads = True

    def __init__(self, server_address: tuple[str, int], proxy: NetworkProxy) -> None:
        self.proxy = proxy
        if ":" in server_address[0]:
            self.address_family = socket.AF_INET6
        super().__init__(server_address, NetworkProxyHandler)


class NetworkProxy:
    """Local interactive proxy for one sandboxed run.

    The listener is bound at construction, so ``addr`` is known before
    the proxy starts serving and can be exported to the child process.

    Usage:
        proxy = NetworkProxy({"pypi.org": "always"}, command_name="pip install")
        proxy.start()
        env["HTTP_PROXY"] = env["HTTPS_PROXY"] = proxy.url
        # ... run the sandboxed command ...
        proxy.shutdown()
        decisions = proxy.domains()
    """

    def __init__(
        self,
        domains: Mapping[str, str] | None = None,
        command_name: str = "",
        host: str = "127.0.0.1",
        port: int = 0,
        prompter: Callable[[str], Decision] | None = None,
        audit_log_path: str | Path | None = None,
        upstream_timeout: float = _UPSTREAM_TIMEOUT,
    ) -> None:
        self.command_name = command_name
        self.upstream_timeout = upstream_timeout
        self._prompter = prompter or TerminalPrompter(command_name)
        self._store = DecisionStore(self._prompter, initial=domains)
        self._audit = AuditLogger(audit_log_path) if audit_log_path else None

        try:
            self._httpd = _ProxyHTTPServer((host, port), self)
        except OSError as exc:
            if self._audit is not None:
                self._audit.close()
            raise ProxyStartError(f"failed to start proxy listener on {host}:{port}: {exc}") from exc

        self._http_client = httpx.Client(
            timeout=upstream_timeout,
            follow_redirects=False,
            trust_env=False,
        )
        self._thread: threading.Thread | None = None
        self._running = False
        self._closed = False

    @property
    def store(self) -> DecisionStore:
        return self._store

    @property
    def audit(self) -> AuditLogger | None:
        return self._audit

    @property
    def http_client(self) -> httpx.Client:
        return self._http_client

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def addr(self) -> str:
        """The bound listen address as ``host:port``."""
        host, port = self._httpd.server_address[:2]
        if ":" in host:
            return f"[{host}]:{port}"
        return f"{host}:{port}"

    @property
    def url(self) -> str:
        """Proxy URL suitable for HTTP_PROXY / HTTPS_PROXY."""
        return f"http://{self.addr}"

    def domains(self) -> dict[str, Decision]:
        """Return a copy of the current domain decisions."""
        return self._store.snapshot()

    def start(self) -> None:
        """Start serving connections in a background thread."""
        if self._running:
            logger.warning("Network proxy already running")
            return
        if self._closed:
            raise ProxyStartError("proxy has been shut down")

        self._thread = threading.Thread(
            target=self._serve,
            name="ddash-proxy",
            daemon=True,
        )
        self._running = True
        self._thread.start()

        logger.info(
            "Network proxy listening on %s (%d pre-seeded domains)",
            self.addr,
            len(self._store),
        )

    def shutdown(self) -> None:
        """Close the listener and the control channel.

        In-flight connections are not drained; they end on their own
        I/O errors once their sockets are torn down.
        """
        if self._closed:
            return
        self._closed = True
        if self._thread is not None:
            self._httpd.shutdown()
            self._thread.join(timeout=5)
            self._thread = None
        self._running = False
        self._httpd.server_close()

        close_prompter = getattr(self._prompter, "close", None)
        if close_prompter is not None:
            close_prompter()
        self._http_client.close()
        if self._audit is not None:
            self._audit.close()
        logger.info("Network proxy stopped")

    def _serve(self) -> None:
        try:
            self._httpd.serve_forever(poll_interval=0.2)
        except Exception as exc:
            if self._running:
                logger.error("Network proxy crashed: %s", exc)
        finally:
            self._running = False

    def __enter__(self) -> NetworkProxy:
        return self

    def __exit__(self, *args: object) -> None:
        self.shutdown()
