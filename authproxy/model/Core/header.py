# =============================================================================
# Core Types & HTTP/1.x wire handling
# =============================================================================

import http.client
import socket
import threading
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import formatdate
from enum import Enum
from http import HTTPStatus
from typing import Iterator, List, Optional, Tuple
from urllib.parse import urlsplit

from requests.structures import CaseInsensitiveDict

from .errors import BadRequest, HijackNotSupported

MAX_LINE = 65536
BUFFER_SIZE = 32 * 1024


class Protocol(Enum):
    HTTP = "HTTP"
    TUNNEL = "CONNECT"


class BodyReader:
    """
    Reads a request body off the client stream, honouring Content-Length or
    chunked transfer coding. Chunked bodies are returned de-chunked.
    """

    def __init__(self, rfile, length: int = 0, chunked: bool = False):
        self._rfile = rfile
        self._remaining = length
        self._chunk_left = 0
        self.chunked = chunked
        self._done = not chunked and length == 0

    def __len__(self):
        return 0 if self.chunked else self._remaining

    def __iter__(self) -> Iterator[bytes]:
        while True:
            data = self.read(BUFFER_SIZE)
            if not data:
                return
            yield data

    @property
    def exhausted(self) -> bool:
        return self._done

    def read(self, size: int = -1) -> bytes:
        if self._done:
            return b""
        if self.chunked:
            return self._read_chunked(size)

        if size < 0 or size > self._remaining:
            size = self._remaining
        data = self._rfile.read(size)
        if not data:
            raise ConnectionResetError("client closed the connection before the body was complete")
        self._remaining -= len(data)
        if self._remaining == 0:
            self._done = True
        return data

    def _read_chunked(self, size: int) -> bytes:
        if self._chunk_left == 0:
            line = self._rfile.readline(MAX_LINE + 1)
            if not line:
                raise ConnectionResetError("client closed the connection inside a chunked body")
            try:
                self._chunk_left = int(line.split(b";", 1)[0].strip(), 16)
            except ValueError:
                raise BadRequest("invalid chunk size") from None
            if self._chunk_left == 0:
                # Trailers are dropped
                while self._rfile.readline(MAX_LINE + 1) not in (b"\r\n", b"\n", b""):
                    pass
                self._done = True
                return b""

        if size < 0 or size > self._chunk_left:
            size = self._chunk_left
        data = self._rfile.read(size)
        if not data:
            raise ConnectionResetError("client closed the connection inside a chunked body")
        self._chunk_left -= len(data)
        if self._chunk_left == 0:
            self._rfile.readline(MAX_LINE + 1)
        return data


@dataclass
class HTTPRequest:
    method: str
    target: str
    version: str
    headers: http.client.HTTPMessage
    body: BodyReader
    remote_addr: str = ""

    @property
    def host(self) -> str:
        """Destination authority: the CONNECT target, the absolute URI host or the Host header."""
        if self.method == "CONNECT":
            return self.target
        if "://" in self.target:
            netloc = urlsplit(self.target).netloc
            if netloc:
                return netloc
        return self.headers.get("Host", "")

    @property
    def keep_alive(self) -> bool:
        tokens = connection_tokens(self.headers.get_all("Connection", []) + self.headers.get_all("Proxy-Connection", []))
        if self.version == "HTTP/1.0":
            return "keep-alive" in tokens
        return "close" not in tokens

    def log_fields(self) -> dict:
        return {
            "remote_addr": self.remote_addr,
            "host": self.host,
            "proto": self.version,
            "method": self.method,
            "url": self.target,
        }


@dataclass
class ConnectionContext:
    connection_id: str
    client_socket: socket.socket
    client_addr: Tuple[str, int]
    start_time: datetime
    protocol: Optional[Protocol] = None
    target_host: Optional[str] = None
    target_port: Optional[int] = None
    upstream_socket: Optional[socket.socket] = None
    idle: bool = True
    thread: Optional[threading.Thread] = field(default=None, repr=False)

    @property
    def remote_addr(self) -> str:
        return format_addr(self.client_addr)


def format_addr(addr) -> str:
    host, port = addr[0], addr[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def connection_tokens(values: List[str]) -> List[str]:
    return [token.strip().lower() for value in values for token in value.split(",") if token.strip()]


def split_host_port(authority: str, default_port: int) -> Tuple[str, int]:
    """Split "host:port" (IPv6 hosts in brackets). Raises ValueError on a bad port."""
    parts = urlsplit("//" + authority)
    host = parts.hostname
    if not host:
        raise ValueError(f"missing host in address {authority!r}")
    port = parts.port
    return host, port if port is not None else default_port


def read_request(rfile, remote_addr: str = "") -> Optional[HTTPRequest]:
    """
    Read one request head off the client stream.

    Returns:
        HTTPRequest, or None when the client closed the connection between requests.
    """
    line = rfile.readline(MAX_LINE + 1)
    while line in (b"\r\n", b"\n"):
        line = rfile.readline(MAX_LINE + 1)
    if not line:
        return None
    if len(line) > MAX_LINE:
        raise BadRequest("request line too long", HTTPStatus.REQUEST_URI_TOO_LONG)

    parts = line.decode("iso-8859-1").rstrip("\r\n").split()
    if len(parts) != 3:
        raise BadRequest(f"malformed request line {line[:100]!r}")
    method, target, version = parts
    if version not in ("HTTP/1.0", "HTTP/1.1"):
        raise BadRequest(f"unsupported protocol version {version}", HTTPStatus.HTTP_VERSION_NOT_SUPPORTED)

    try:
        headers = http.client.parse_headers(rfile)
    except http.client.HTTPException as e:
        raise BadRequest(f"malformed headers: {e}", HTTPStatus.REQUEST_HEADER_FIELDS_TOO_LARGE) from None

    if method == "CONNECT":
        body = BodyReader(rfile)
    elif "chunked" in connection_tokens(headers.get_all("Transfer-Encoding", [])):
        body = BodyReader(rfile, chunked=True)
    else:
        try:
            length = int(headers.get("Content-Length", "0"))
        except ValueError:
            raise BadRequest("invalid Content-Length") from None
        if length < 0:
            raise BadRequest("invalid Content-Length")
        body = BodyReader(rfile, length=length)

    return HTTPRequest(method, target, version, headers, body, remote_addr)


class ResponseWriter:
    """
    Writes one HTTP/1.1 response onto a buffered stream.

    The status and headers are held until the first body write or flush. Body
    framing is chosen at that point: an explicit Content-Length is honoured,
    HTTP/1.1 clients otherwise get chunked coding and HTTP/1.0 clients get a
    connection close.

    Attributes:
        headers (CaseInsensitiveDict): Header name -> list of values
        status (int): Status code once write_header() was called
        close_connection (bool): Whether the connection must close afterwards
    """

    def __init__(self, wfile, request: HTTPRequest):
        self.wfile = wfile
        self.request = request
        self.headers = CaseInsensitiveDict()
        self.status = None
        self.reason = None
        self.header_sent = False
        self.close_connection = not request.keep_alive
        self._chunked = False
        self._body_allowed = True

    def set_header(self, name: str, value: str):
        self.headers[name] = [value]

    def write_header(self, status: int, reason: Optional[str] = None):
        if self.status is not None:
            return
        self.status = int(status)
        if reason is None:
            try:
                reason = HTTPStatus(self.status).phrase
            except ValueError:
                reason = ""
        self.reason = reason

    def write(self, data: bytes):
        if self.status is None:
            self.write_header(HTTPStatus.OK)
        self._send_header()
        if not data or not self._body_allowed:
            return
        if self._chunked:
            self.wfile.write(b"%x\r\n%s\r\n" % (len(data), data))
        else:
            self.wfile.write(data)

    def flush(self):
        if self.status is None:
            self.write_header(HTTPStatus.OK)
        self._send_header()
        self.wfile.flush()

    def finish(self):
        self.flush()
        if self._chunked:
            self.wfile.write(b"0\r\n\r\n")
            self._chunked = False
        self.wfile.flush()

    def hijack(self):
        raise HijackNotSupported("response writer does not own a raw connection")

    def _send_header(self):
        if self.header_sent:
            return
        self.header_sent = True
        method = self.request.method
        status = self.status

        self._body_allowed = not (
            100 <= status < 200
            or status in (HTTPStatus.NO_CONTENT, HTTPStatus.NOT_MODIFIED)
            or method == "HEAD"
            or (method == "CONNECT" and 200 <= status < 300)
        )
        if "close" in connection_tokens(self.headers.get("Connection", [])):
            self.close_connection = True

        if self._body_allowed and "Content-Length" not in self.headers:
            if self.request.version == "HTTP/1.1":
                self.set_header("Transfer-Encoding", "chunked")
                self._chunked = True
            else:
                self.close_connection = True

        if self.close_connection:
            self.set_header("Connection", "close")
        elif self.request.version == "HTTP/1.0":
            self.set_header("Connection", "keep-alive")
        if "Date" not in self.headers:
            self.set_header("Date", formatdate(usegmt=True))

        lines = [f"HTTP/1.1 {status} {self.reason}\r\n"]
        for name, values in self.headers.items():
            for value in values:
                lines.append(f"{name}: {value}\r\n")
        lines.append("\r\n")
        self.wfile.write("".join(lines).encode("iso-8859-1"))


class ConnectionResponseWriter(ResponseWriter):
    """ResponseWriter bound to a live client socket, able to hand it over raw."""

    def __init__(self, sock: socket.socket, rfile, wfile, request: HTTPRequest):
        super().__init__(wfile, request)
        self._sock = sock
        self._rfile = rfile
        self.hijacked = False

    def hijack(self):
        """
        Take the raw client connection away from the HTTP machinery.

        Returns:
            tuple: (socket, buffered reader). The reader may already hold bytes
            the client sent after the request head.
        """
        if self.hijacked:
            raise HijackNotSupported("connection already hijacked")
        self.wfile.flush()
        self.hijacked = True
        return self._sock, self._rfile


def http_error(w: ResponseWriter, message: str, status: int):
    """Reply with a plain text error body, replacing any framing headers."""
    body = (message + "\n").encode("utf-8")
    w.headers.pop("Content-Length", None)
    w.headers.pop("Transfer-Encoding", None)
    w.set_header("Content-Type", "text/plain; charset=utf-8")
    w.set_header("X-Content-Type-Options", "nosniff")
    w.set_header("Content-Length", str(len(body)))
    w.write_header(status)
    w.write(body)


def close_socket(sock: Optional[socket.socket]):
    """Shut a socket down in both directions so blocked readers wake up, then close it."""
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()
