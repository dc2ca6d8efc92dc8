import base64
import gzip
import io
import json
import logging
import socket
import socketserver
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from authproxy.model.AuthProxyServer import AuthProxyServer
from authproxy.model.Core.AuthManager import Credentials
from authproxy.model.Core.header import read_request

USERNAME = "proxy"
PASSWORD = "s3cret"

GZIP_BODY = gzip.compress(b"compressed payload " * 20)


def basic(username=USERNAME, password=PASSWORD) -> str:
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return f"Basic {token}"


def make_request(raw: bytes, remote_addr="127.0.0.1:50000"):
    return read_request(io.BufferedReader(io.BytesIO(raw)), remote_addr)


def read_head(sock: socket.socket) -> bytes:
    """Read a response head byte by byte so nothing after it is consumed."""
    head = b""
    while not head.endswith(b"\r\n\r\n"):
        byte = sock.recv(1)
        if not byte:
            break
        head += byte
    return head


def recv_exactly(sock: socket.socket, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


def closed_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def wait_until(predicate, timeout=5.0):
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def logger():
    log = logging.getLogger("tests.authproxy")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def credentials():
    return Credentials(USERNAME, PASSWORD)


@pytest.fixture
def proxy_server(credentials, logger):
    server = AuthProxyServer(
        credentials,
        logger,
        listening_addr="127.0.0.1",
        listening_port=0,
        dial_timeout=2.0,
        upstream_timeout=5.0,
    )
    server.bind()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown(time.monotonic() + 2.0)
    thread.join(2.0)


class EchoHandler(socketserver.BaseRequestHandler):
    def handle(self):
        while True:
            data = self.request.recv(65536)
            if not data:
                self.server.eof.set()
                return
            self.request.sendall(data)


class GoodbyeHandler(socketserver.BaseRequestHandler):
    def handle(self):
        self.request.sendall(b"bye")


class _TCPServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


def _serve_tcp(handler):
    server = _TCPServer(("127.0.0.1", 0), handler)
    server.eof = threading.Event()
    threading.Thread(target=server.serve_forever, daemon=True).start()
    return server


@pytest.fixture
def echo_server():
    server = _serve_tcp(EchoHandler)
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def goodbye_server():
    server = _serve_tcp(GoodbyeHandler)
    yield server
    server.shutdown()
    server.server_close()


class UpstreamHandler(BaseHTTPRequestHandler):
    def log_message(self, format, *args):
        pass

    def _reply(self, status, body=b"", headers=()):
        self.send_response(status)
        for name, value in headers:
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def do_HEAD(self):
        self.do_GET()

    def do_GET(self):
        if self.path == "/hello":
            self._reply(
                200,
                b"hello world",
                [("X-Upstream", "one"), ("Set-Cookie", "a=1"), ("Set-Cookie", "b=2"), ("Content-Type", "text/plain")],
            )
        elif self.path.startswith("/headers"):
            body = json.dumps({"path": self.path, "headers": dict(self.headers.items())}).encode()
            self._reply(200, body, [("Content-Type", "application/json")])
        elif self.path == "/redirect":
            self._reply(302, b"", [("Location", "/hello")])
        elif self.path == "/gzip":
            self._reply(200, GZIP_BODY, [("Content-Encoding", "gzip")])
        elif self.path == "/stream":
            # HTTP/1.0 close-delimited body, no Content-Length
            self.send_response(200)
            self.send_header("Content-Type", "text/plain")
            self.end_headers()
            for i in range(5):
                self.wfile.write(b"part-%d;" % i)
        else:
            self._reply(404, b"missing")

    def _read_chunked(self):
        body = b""
        while True:
            size = int(self.rfile.readline().split(b";")[0].strip(), 16)
            if size == 0:
                self.rfile.readline()
                return body
            body += self.rfile.read(size)
            self.rfile.readline()

    def do_POST(self):
        if self.headers.get("Transfer-Encoding", "").lower() == "chunked":
            body = self._read_chunked()
            framing = "chunked"
        else:
            body = self.rfile.read(int(self.headers.get("Content-Length", "0")))
            framing = "length"
        self._reply(201, body, [("X-Method", self.command), ("X-Framing", framing)])


@pytest.fixture
def upstream():
    server = ThreadingHTTPServer(("127.0.0.1", 0), UpstreamHandler)
    server.daemon_threads = True
    threading.Thread(target=server.serve_forever, daemon=True).start()
    yield f"127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()
