# ddash
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""End-to-end tests for the interactive network proxy."""

import io
import json
import socket
import socketserver
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import httpx
import pytest

from ddash.proxy.decisions import Decision
from ddash.proxy.prompt import ControlChannel, TerminalPrompter
from ddash.proxy.proxy import NetworkProxy, ProxyStartError


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------
class _BackendHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        self._reply()

    def do_POST(self):
        self._reply()

    def do_HEAD(self):
        self._reply()

    def _read_body(self) -> bytes:
        if "chunked" in self.headers.get("Transfer-Encoding", "").lower():
            data = b""
            while True:
                size = int(self.rfile.readline().split(b";")[0].strip(), 16)
                if size == 0:
                    self.rfile.readline()
                    return data
                data += self.rfile.read(size)
                self.rfile.readline()
        length = int(self.headers.get("Content-Length", 0) or 0)
        return self.rfile.read(length) if length else b""

    def _reply(self):
        self.server.hits += 1
        body_in = self._read_body()
        if self.path.startswith("/echo"):
            payload = json.dumps(
                {
                    "method": self.command,
                    "path": self.path,
                    "headers": {k.lower(): v for k, v in self.headers.items()},
                    "body": body_in.decode(),
                }
            ).encode()
        else:
            payload = b"backend-ok"

        self.send_response(201 if self.path == "/created" else 200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(payload)))
        self.send_header("X-Backend", "yes")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(payload)

    def log_message(self, format, *args):
        pass


class _EchoHandler(socketserver.BaseRequestHandler):
    def handle(self):
        self.server.connections += 1
        while True:
            data = self.request.recv(4096)
            if not data:
                break
            self.request.sendall(data)


def _serve(server):
    thread = threading.Thread(target=server.serve_forever, kwargs={"poll_interval": 0.1}, daemon=True)
    thread.start()
    return thread


@pytest.fixture
def backend():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _BackendHandler)
    server.daemon_threads = True
    server.hits = 0
    _serve(server)
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def echo_backend():
    server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), _EchoHandler)
    server.daemon_threads = True
    server.connections = 0
    _serve(server)
    yield server
    server.shutdown()
    server.server_close()


def _url(server, path="/"):
    return f"http://127.0.0.1:{server.server_address[1]}{path}"


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _scripted(answers: str):
    """A TerminalPrompter whose terminal types ``answers``."""
    channel = ControlChannel(io.StringIO(answers), io.StringIO())
    return TerminalPrompter("test", opener=lambda: channel)


def _no_terminal():
    def opener():
        raise OSError("No such device or address: '/dev/tty'")

    return TerminalPrompter("test", opener=opener)


@pytest.fixture
def make_proxy():
    """Factory for started proxies, shut down after the test."""
    proxies = []

    def factory(domains=None, prompter=None, **kwargs):
        proxy = NetworkProxy(domains, command_name="test", prompter=prompter or _no_terminal(), **kwargs)
        proxy.start()
        proxies.append(proxy)
        return proxy

    yield factory
    for proxy in proxies:
        proxy.shutdown()


def _client(proxy):
    return httpx.Client(proxy=proxy.url, timeout=5.0, trust_env=False)


def _raw_request(proxy, request: bytes) -> tuple[socket.socket, bytes]:
    """Send raw bytes to the proxy and read until the end of the response head."""
    host, port = proxy.addr.rsplit(":", 1)
    sock = socket.create_connection((host, int(port)), timeout=5)
    sock.sendall(request)
    head = b""
    while b"\r\n\r\n" not in head:
        chunk = sock.recv(4096)
        if not chunk:
            break
        head += chunk
    return sock, head


def _connect(proxy, target: str) -> tuple[socket.socket, bytes]:
    return _raw_request(proxy, f"CONNECT {target} HTTP/1.1\r\nHost: {target}\r\n\r\n".encode())


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------
class TestNetworkProxyLifecycle:
    """Tests for NetworkProxy construction, start and shutdown."""

    def test_starts_and_listens(self, make_proxy):
        proxy = make_proxy()
        assert proxy.is_running is True
        assert proxy.addr.startswith("127.0.0.1:")
        assert proxy.url == f"http://{proxy.addr}"

        host, port = proxy.addr.rsplit(":", 1)
        with socket.create_connection((host, int(port)), timeout=1):
            pass

    def test_binds_requested_port(self, make_proxy):
        port = _free_port()
        proxy = make_proxy(port=port)
        assert proxy.addr == f"127.0.0.1:{port}"

    def test_bind_failure_is_fatal(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
            taken.bind(("127.0.0.1", 0))
            taken.listen(1)
            port = taken.getsockname()[1]
            with pytest.raises(ProxyStartError):
                NetworkProxy(port=port, prompter=_no_terminal())

    def test_double_start_warns(self, make_proxy):
        proxy = make_proxy()
        proxy.start()
        assert proxy.is_running is True

    def test_shutdown_closes_listener(self):
        proxy = NetworkProxy(prompter=_no_terminal())
        proxy.start()
        host, port = proxy.addr.rsplit(":", 1)
        proxy.shutdown()

        assert proxy.is_running is False
        with pytest.raises(OSError):
            socket.create_connection((host, int(port)), timeout=1)

    def test_shutdown_without_start(self):
        proxy = NetworkProxy(prompter=_no_terminal())
        proxy.shutdown()
        proxy.shutdown()
        with pytest.raises(ProxyStartError):
            proxy.start()

    def test_shutdown_closes_control_channel(self, backend):
        prompter = _scripted("a\n")
        proxy = NetworkProxy(command_name="test", prompter=prompter)
        proxy.start()
        with _client(proxy) as client:
            client.get(_url(backend))
        assert prompter.is_open is True

        proxy.shutdown()
        assert prompter.is_open is False

    def test_resolution_after_shutdown_denies_without_terminal(self):
        opens = []

        def opener():
            opens.append(1)
            return ControlChannel(io.StringIO("a\n"), io.StringIO())

        proxy = NetworkProxy(command_name="test", prompter=TerminalPrompter("test", opener=opener))
        proxy.start()
        proxy.shutdown()
        assert proxy.store.resolve("late.example") is Decision.DENY
        assert opens == []

    def test_context_manager(self):
        with NetworkProxy(prompter=_no_terminal()) as proxy:
            proxy.start()
            assert proxy.is_running is True
        assert proxy.is_running is False

    def test_domains_returns_copy(self, make_proxy):
        proxy = make_proxy({"example.com": "allow"})
        got = proxy.domains()
        got["evil.com"] = Decision.ALLOW

        assert "evil.com" not in proxy.domains()
        assert proxy.domains() == {"example.com": Decision.ALLOW}


# ---------------------------------------------------------------------------
# Plain HTTP
# ---------------------------------------------------------------------------
class TestHttpForwarding:
    """Tests for plain HTTP requests through the proxy."""

    @pytest.mark.parametrize("token", ["allow", "always"])
    def test_allowed_domain_reaches_backend(self, backend, make_proxy, token):
        proxy = make_proxy({"127.0.0.1": token})
        with _client(proxy) as client:
            resp = client.get(_url(backend))
        assert resp.status_code == 200
        assert resp.text == "backend-ok"
        assert backend.hits == 1

    @pytest.mark.parametrize("token", ["deny", "never", "bogus"])
    def test_denied_domain_gets_403(self, backend, make_proxy, token):
        proxy = make_proxy({"127.0.0.1": token})
        with _client(proxy) as client:
            resp = client.get(_url(backend))
        assert resp.status_code == 403
        assert resp.text.strip() == "ddash: connection blocked"
        assert resp.headers["X-Ddash-Blocked"] == "true"
        assert backend.hits == 0

    def test_status_and_headers_copied(self, backend, make_proxy):
        proxy = make_proxy({"127.0.0.1": "allow"})
        with _client(proxy) as client:
            resp = client.get(_url(backend, "/created"))
        assert resp.status_code == 201
        assert resp.headers["X-Backend"] == "yes"
        assert resp.headers["Content-Type"] == "text/plain"

    def test_request_method_headers_and_body_preserved(self, backend, make_proxy):
        proxy = make_proxy({"127.0.0.1": "allow"})
        with _client(proxy) as client:
            resp = client.post(
                _url(backend, "/echo?q=1"),
                content=b"hello upstream",
                headers={"X-Custom": "kept"},
            )
        seen = resp.json()
        assert seen["method"] == "POST"
        assert seen["path"] == "/echo?q=1"
        assert seen["body"] == "hello upstream"
        assert seen["headers"]["x-custom"] == "kept"

    def test_chunked_request_body_streamed(self, backend, make_proxy):
        proxy = make_proxy({"127.0.0.1": "allow"})

        def body():
            yield b"part one, "
            yield b"part two"

        with _client(proxy) as client:
            resp = client.post(_url(backend, "/echo"), content=body())
        assert resp.json()["body"] == "part one, part two"

    def test_hop_by_hop_headers_dropped(self, backend, make_proxy):
        proxy = make_proxy({"127.0.0.1": "allow"})
        with _client(proxy) as client:
            resp = client.get(
                _url(backend, "/echo"),
                headers={
                    "Proxy-Authorization": "Basic c2VjcmV0",
                    "Connection": "X-Hop",
                    "X-Hop": "1",
                    "X-End-To-End": "1",
                },
            )
        headers = resp.json()["headers"]
        assert "proxy-authorization" not in headers
        assert "x-hop" not in headers
        assert headers["x-end-to-end"] == "1"

    def test_head_request(self, backend, make_proxy):
        proxy = make_proxy({"127.0.0.1": "allow"})
        with _client(proxy) as client:
            resp = client.head(_url(backend))
        assert resp.status_code == 200
        assert resp.content == b""

    def test_unreachable_upstream_gets_502(self, make_proxy):
        proxy = make_proxy({"127.0.0.1": "allow"})
        with _client(proxy) as client:
            resp = client.get(f"http://127.0.0.1:{_free_port()}/")
        assert resp.status_code == 502
        assert "upstream error" in resp.text

    def test_relative_target_gets_400(self, make_proxy):
        proxy = make_proxy({"127.0.0.1": "allow"})
        sock, head = _raw_request(proxy, b"GET /relative HTTP/1.1\r\nHost: 127.0.0.1\r\n\r\n")
        sock.close()
        assert head.split(b"\r\n", 1)[0].split()[1] == b"400"

    def test_userinfo_in_url_gets_400(self, backend, make_proxy):
        proxy = make_proxy({"good.example": "allow", "127.0.0.1": "allow"})
        port = backend.server_address[1]
        request = f"GET http://good.example:1@127.0.0.1:{port}/ HTTP/1.1\r\nHost: 127.0.0.1\r\n\r\n"
        sock, head = _raw_request(proxy, request.encode())
        sock.close()
        assert head.split(b"\r\n", 1)[0].split()[1] == b"400"
        assert backend.hits == 0

    def test_port_is_not_part_of_the_domain(self, backend, make_proxy):
        prompts = []

        def prompter(domain):
            prompts.append(domain)
            return Decision.ALLOW

        proxy = make_proxy(prompter=prompter)
        with _client(proxy) as client:
            client.get(_url(backend))
            client.get(f"http://127.0.0.1:{_free_port()}/")
        assert prompts == ["127.0.0.1"]


# ---------------------------------------------------------------------------
# Interactive decisions
# ---------------------------------------------------------------------------
class TestInteractiveDecisions:
    """Tests for first-sight prompting through the proxy."""

    def test_allow_answer(self, backend, make_proxy):
        proxy = make_proxy(prompter=_scripted("a\n"))
        with _client(proxy) as client:
            resp = client.get(_url(backend))
        assert resp.text == "backend-ok"
        assert proxy.domains()["127.0.0.1"] is Decision.ALLOW

    def test_always_answer_recorded(self, backend, make_proxy):
        proxy = make_proxy(prompter=_scripted("l\n"))
        with _client(proxy) as client:
            resp = client.get(_url(backend))
        assert resp.status_code == 200
        assert proxy.domains()["127.0.0.1"] is Decision.ALWAYS

    def test_never_answer_recorded(self, backend, make_proxy):
        proxy = make_proxy(prompter=_scripted("n\n"))
        with _client(proxy) as client:
            resp = client.get(_url(backend))
        assert resp.status_code == 403
        assert backend.hits == 0
        assert proxy.domains()["127.0.0.1"] is Decision.NEVER

    def test_unknown_answer_denies(self, backend, make_proxy):
        proxy = make_proxy(prompter=_scripted("whatever\n"))
        with _client(proxy) as client:
            resp = client.get(_url(backend))
        assert resp.status_code == 403
        assert proxy.domains()["127.0.0.1"] is Decision.DENY

    def test_no_terminal_denies(self, backend, make_proxy):
        proxy = make_proxy(prompter=_no_terminal())
        with _client(proxy) as client:
            resp = client.get(_url(backend))
        assert resp.status_code == 403
        assert backend.hits == 0
        assert proxy.domains() == {"127.0.0.1": Decision.DENY}

    def test_answer_is_remembered(self, backend, make_proxy):
        prompts = []

        def prompter(domain):
            prompts.append(domain)
            return Decision.ALLOW

        proxy = make_proxy(prompter=prompter)
        with _client(proxy) as client:
            for _ in range(3):
                assert client.get(_url(backend)).status_code == 200
        assert prompts == ["127.0.0.1"]

    def test_concurrent_first_requests_prompt_once(self, backend, make_proxy):
        prompts = []

        def prompter(domain):
            prompts.append(domain)
            time.sleep(0.3)
            return Decision.ALLOW

        proxy = make_proxy(prompter=prompter)
        statuses = []

        def fetch():
            with _client(proxy) as client:
                statuses.append(client.get(_url(backend)).status_code)

        threads = [threading.Thread(target=fetch) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert prompts == ["127.0.0.1"]
        assert statuses == [200] * 5

    def test_crashing_prompter_denies(self, backend, make_proxy):
        def prompter(domain):
            raise RuntimeError("boom")

        proxy = make_proxy(prompter=prompter)
        with _client(proxy) as client:
            resp = client.get(_url(backend))
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# CONNECT tunnels
# ---------------------------------------------------------------------------
class TestConnectTunnel:
    """Tests for CONNECT tunneling."""

    def test_allowed_connect_relays_bytes(self, echo_backend, make_proxy):
        proxy = make_proxy({"127.0.0.1": "allow"})
        sock, head = _connect(proxy, f"127.0.0.1:{echo_backend.server_address[1]}")
        try:
            assert head == b"HTTP/1.1 200 Connection Established\r\n\r\n"
            payload = b"\x16\x03\x01 opaque bytes"
            sock.sendall(payload)
            received = b""
            while len(received) < len(payload):
                chunk = sock.recv(4096)
                if not chunk:
                    break
                received += chunk
            assert received == payload
        finally:
            sock.close()
        assert echo_backend.connections == 1

    def test_half_close_propagates(self, echo_backend, make_proxy):
        proxy = make_proxy({"127.0.0.1": "always"})
        sock, head = _connect(proxy, f"127.0.0.1:{echo_backend.server_address[1]}")
        try:
            assert b"200" in head
            sock.sendall(b"last words")
            sock.shutdown(socket.SHUT_WR)
            received = b""
            while True:
                chunk = sock.recv(4096)
                if not chunk:
                    break
                received += chunk
            assert received == b"last words"
        finally:
            sock.close()

    @pytest.mark.parametrize("token", ["deny", "never"])
    def test_denied_connect_never_dials(self, echo_backend, make_proxy, token):
        proxy = make_proxy({"127.0.0.1": token})
        sock, head = _connect(proxy, f"127.0.0.1:{echo_backend.server_address[1]}")
        sock.close()
        status_line = head.split(b"\r\n", 1)[0]
        assert b" 403 " in status_line + b" "
        time.sleep(0.1)
        assert echo_backend.connections == 0

    def test_connect_with_interactive_always(self, echo_backend, make_proxy):
        proxy = make_proxy(prompter=_scripted("l\n"))
        sock, head = _connect(proxy, f"127.0.0.1:{echo_backend.server_address[1]}")
        sock.close()
        assert b"200 Connection Established" in head
        assert proxy.domains() == {"127.0.0.1": Decision.ALWAYS}

    def test_connect_unreachable_gets_502(self, make_proxy):
        proxy = make_proxy({"127.0.0.1": "allow"})
        sock, head = _connect(proxy, f"127.0.0.1:{_free_port()}")
        sock.close()
        assert b" 502 " in head.split(b"\r\n", 1)[0] + b" "

    def test_connect_bad_port_gets_400(self, make_proxy):
        proxy = make_proxy({"127.0.0.1": "allow"})
        sock, head = _connect(proxy, "127.0.0.1:notaport")
        sock.close()
        assert b" 400 " in head.split(b"\r\n", 1)[0] + b" "

    @pytest.mark.parametrize(
        "template",
        [
            "good.example:1@127.0.0.1:{port}",
            "good.example@127.0.0.1:{port}",
            "127.0.0.1:{port}/path",
            "127.0.0.1:{port}?q=1",
            "127.0.0.1:{port}#frag",
        ],
    )
    def test_connect_target_must_be_host_and_port(self, echo_backend, make_proxy, template):
        asked = []

        def prompter(domain):
            asked.append(domain)
            return Decision.ALLOW

        proxy = make_proxy({"good.example": "allow"}, prompter=prompter)
        sock, head = _connect(proxy, template.format(port=echo_backend.server_address[1]))
        sock.close()
        assert b" 400 " in head.split(b"\r\n", 1)[0] + b" "
        time.sleep(0.1)
        assert echo_backend.connections == 0
        assert asked == []
        assert proxy.domains() == {"good.example": Decision.ALLOW}

    def test_connect_checks_the_dialed_host(self, echo_backend, make_proxy):
        proxy = make_proxy({"127.0.0.1": "never"})
        sock, head = _connect(proxy, f"127.0.0.1:{echo_backend.server_address[1]}")
        sock.close()
        assert b" 403 " in head.split(b"\r\n", 1)[0] + b" "
        assert proxy.domains() == {"127.0.0.1": Decision.NEVER}

    def test_httpx_sees_denied_connect_as_proxy_error(self, make_proxy):
        proxy = make_proxy({"127.0.0.1": "deny"})
        with _client(proxy) as client:
            with pytest.raises(httpx.ProxyError):
                client.get(f"https://127.0.0.1:{_free_port()}/")


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------
class TestProxyAudit:
    """Tests for the proxy's audit log."""

    def test_audit_log_populated(self, backend, make_proxy, tmp_path):
        proxy = make_proxy(
            {"127.0.0.1": "allow", "blocked.example.com": "never"},
            audit_log_path=tmp_path / "audit.log",
        )
        with _client(proxy) as client:
            client.get(_url(backend))
            client.get("http://blocked.example.com/steal")
        time.sleep(0.1)

        stats = proxy.audit.get_stats()
        assert stats["allowed"] == 1
        assert stats["blocked"] == 1
        entries = proxy.audit.read_recent()
        blocked = [e for e in entries if e.event_type == "blocked"][0]
        assert blocked.domain == "blocked.example.com"
        assert blocked.decision == "never"

    def test_audit_disabled_by_default(self, make_proxy):
        assert make_proxy().audit is None
