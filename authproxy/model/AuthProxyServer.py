"""
AuthProxy Proxy Server
Description: Credential gated forward proxy. Plain HTTP requests are re-issued
             to their destination, CONNECT requests become opaque TCP tunnels.
             Every request must carry Basic Proxy-Authorization credentials.
"""

import logging
import socket
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from datetime import datetime
from http import HTTPStatus
from http.cookiejar import DefaultCookiePolicy
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import requests
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from .Core.AuthManager import Credentials, check_basic_auth
from .Core.errors import BadRequest, HijackNotSupported, ListenerError
from .Core.header import (
    BUFFER_SIZE,
    ConnectionContext,
    ConnectionResponseWriter,
    HTTPRequest,
    Protocol,
    ResponseWriter,
    close_socket,
    connection_tokens,
    http_error,
    read_request,
    split_host_port,
)
from .Core.logger import fields

ACCEPT_POLL_INTERVAL = 0.5

# Headers that describe a single hop and are never forwarded
HOP_BY_HOP_HEADERS = {
    "connection",
    "proxy-connection",
    "keep-alive",
    "proxy-authorization",
    "proxy-authenticate",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}


def new_upstream_session() -> requests.Session:
    """Session for forwarded requests: no default headers, no proxy environment, no cookie jar."""
    session = requests.Session()
    session.trust_env = False
    session.headers.clear()
    # Upstream cookies belong to the client that received them
    session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
    return session


class AuthProxyServer:
    """
    A forward proxy that authenticates every request before relaying it.

    Attributes:
        listening_addr (str): The address on which the proxy server listens
        listening_port (int): The port on which the proxy server listens
        credentials (Credentials): The accepted username/password pair
        buffer_size (int): Chunk size of the byte copy loops
        session (requests.Session): Upstream session shared by every connection
            thread. It is configured once here, stores no cookies and is never
            mutated afterwards, so concurrent use only goes through its thread
            safe connection pool.
        server_socket (socket): The listening socket
        active_connections (dict): Connection id -> ConnectionContext
        running (bool): Flag indicating if the server accepts connections
    """

    def __init__(
        self,
        credentials: Credentials,
        logger: logging.Logger,
        listening_addr: str = "0.0.0.0",
        listening_port: int = 31280,
        realm: str = "Restricted",
        dial_timeout: float = 10.0,
        upstream_timeout: float = 60.0,
        buffer_size: int = BUFFER_SIZE,
        session: Optional[requests.Session] = None,
    ):
        self.credentials = credentials
        self.logger = logger
        self.listening_addr = listening_addr
        self.listening_port = listening_port
        self.realm = realm
        self.dial_timeout = dial_timeout
        self.upstream_timeout = upstream_timeout
        self.buffer_size = buffer_size
        self.session = session or new_upstream_session()
        self.server_socket = None
        self.active_connections = {}
        self.lock = threading.Lock()
        self.running = False

    # ========== Dispatch ==========

    def handle_proxy(self, w: ResponseWriter, r: HTTPRequest, context: Optional[ConnectionContext] = None):
        """
        Single entry point for every proxy request: authenticate, then branch
        on the method.
        """
        if not check_basic_auth(w, r, self.credentials, self.logger, self.realm):
            self.logger.warning("Proxy (unauthorized) %s", fields(**r.log_fields()))
            return

        self.logger.info("Proxy %s", fields(**r.log_fields()))
        if r.method == "CONNECT":
            self.handle_https(w, r, context)
        else:
            self.handle_http(w, r, context)

    # ========== CONNECT tunnel ==========

    def handle_https(self, w: ResponseWriter, r: HTTPRequest, context: Optional[ConnectionContext] = None):
        """
        Handle CONNECT by tunneling raw bytes between client and destination.

        The tunnel ends as soon as either copy direction finishes; both
        sockets are closed at that point.
        """
        try:
            host, port = split_host_port(r.host, 443)
            dest = socket.create_connection((host, port), timeout=self.dial_timeout)
        except (OSError, ValueError) as e:
            self.logger.error("Tunnel dial failed %s", fields(**r.log_fields(), error=e))
            http_error(w, str(e), HTTPStatus.SERVICE_UNAVAILABLE)
            return
        dest.settimeout(None)

        if context is not None:
            context.protocol = Protocol.TUNNEL
            context.target_host = host
            context.target_port = port
            context.upstream_socket = dest

        try:
            client_sock, client_reader = w.hijack()
        except HijackNotSupported as e:
            self.logger.error("Tunnel hijack failed %s", fields(**r.log_fields(), error=e))
            close_socket(dest)
            http_error(w, "Hijacking not supported", HTTPStatus.INTERNAL_SERVER_ERROR)
            return

        try:
            client_sock.sendall(b"HTTP/1.1 200 Connection Established\r\n\r\n")
            sent, received = self._tunnel(client_reader, client_sock, dest, r.host)
            self.logger.debug("Tunnel closed %s", fields(**r.log_fields(), sent=sent, received=received))
        except OSError as e:
            self.logger.debug("Tunnel aborted %s", fields(**r.log_fields(), error=e))
        finally:
            close_socket(dest)
            close_socket(client_sock)

    def _tunnel(self, client_reader, client_sock: socket.socket, dest: socket.socket, label: str):
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="tunnel") as pool:
            upstream = pool.submit(self._copy, client_reader.read1, dest, label)
            downstream = pool.submit(self._copy, dest.recv, client_sock, label)

            # First direction to finish ends the tunnel for both
            wait([upstream, downstream], return_when=FIRST_COMPLETED)
            close_socket(dest)
            close_socket(client_sock)
        return upstream.result(), downstream.result()

    def _copy(self, read, dst: socket.socket, label: str) -> int:
        total = 0
        try:
            while True:
                data = read(self.buffer_size)
                if not data:
                    break
                dst.sendall(data)
                total += len(data)
        except (OSError, ValueError) as e:
            self.logger.debug("Tunnel copy ended %s", fields(host=label, error=e))
        return total

    # ========== Plain HTTP ==========

    def handle_http(self, w: ResponseWriter, r: HTTPRequest, context: Optional[ConnectionContext] = None):
        """
        Re-issue a plain HTTP request to the host it names and relay the
        response status, headers and body unmodified.
        """
        if context is not None:
            context.protocol = Protocol.HTTP
            context.target_host = r.host

        target = urlsplit(r.target)
        url = urlunsplit(("http", r.host, target.path or "/", target.query, ""))

        if r.body.chunked:
            data = iter(r.body)
        elif len(r.body):
            data = r.body
        else:
            data = None

        try:
            resp = self.session.request(
                r.method,
                url,
                headers=self._outbound_headers(r),
                data=data,
                stream=True,
                allow_redirects=False,
                timeout=self.upstream_timeout,
            )
        except requests.RequestException as e:
            self.logger.error("Forward failed %s", fields(**r.log_fields(), error=e))
            http_error(w, str(e), HTTPStatus.BAD_GATEWAY)
            return

        try:
            for name in resp.raw.headers.keys():
                if name.lower() == "transfer-encoding":
                    continue
                w.headers[name] = list(resp.raw.headers.getlist(name))
            w.write_header(resp.status_code, resp.reason)

            for chunk in resp.raw.stream(self.buffer_size, decode_content=False):
                w.write(chunk)
                w.flush()
        except (Urllib3HTTPError, requests.RequestException) as e:
            self.logger.error("Forward body relay failed %s", fields(**r.log_fields(), error=e))
            # The response framing is broken, the client connection has to go
            raise ConnectionAbortedError(str(e)) from e
        finally:
            resp.close()

    def _outbound_headers(self, r: HTTPRequest) -> dict:
        dropped = HOP_BY_HOP_HEADERS | {"host"}
        dropped.update(connection_tokens(r.headers.get_all("Connection", [])))

        headers = {}
        for name, value in r.headers.items():
            if name.lower() in dropped:
                continue
            if name in headers:
                headers[name] = f"{headers[name]}, {value}"
            else:
                headers[name] = value
        return headers

    # ========== Connection handling ==========

    def handle_client(self, context: ConnectionContext):
        """
        Serve every request of one client connection until it closes, asks to
        close, gets hijacked for a tunnel or the server shuts down.
        """
        client_socket = context.client_socket
        client_socket.settimeout(None)
        rfile = client_socket.makefile("rb")
        wfile = client_socket.makefile("wb")
        try:
            while True:
                with self.lock:
                    if not self.running:
                        break
                    context.idle = True

                w = None
                try:
                    request = read_request(rfile, context.remote_addr)
                    if request is None:
                        break
                    with self.lock:
                        context.idle = False

                    w = ConnectionResponseWriter(client_socket, rfile, wfile, request)
                    self.handle_proxy(w, request, context)
                except BadRequest as e:
                    self.logger.warning("Bad request %s", fields(remote_addr=context.remote_addr, error=e))
                    self._reject(w, wfile, e)
                    break
                except OSError:
                    raise
                except Exception:
                    self.logger.exception(
                        "Proxy handler failed %s", fields(remote_addr=context.remote_addr, id=context.connection_id)
                    )
                    self._fail(w)
                    break

                if w.hijacked:
                    break
                w.finish()
                if w.close_connection or not request.body.exhausted:
                    break
        except OSError as e:
            self.logger.debug("Connection closed %s", fields(remote_addr=context.remote_addr, id=context.connection_id, error=e))
        finally:
            with self.lock:
                self.active_connections.pop(context.connection_id, None)
            for stream in (wfile, rfile):
                try:
                    stream.close()
                except OSError:
                    pass
            close_socket(client_socket)

    def _fail(self, w: Optional[ConnectionResponseWriter]):
        if w is None or w.hijacked or w.header_sent:
            return
        w.close_connection = True
        http_error(w, "Internal Server Error", HTTPStatus.INTERNAL_SERVER_ERROR)
        w.finish()

    def _reject(self, w: Optional[ResponseWriter], wfile, error: BadRequest):
        if w is not None:
            if w.header_sent:
                return
            w.close_connection = True
            http_error(w, str(error), error.status)
            w.finish()
            return
        status = HTTPStatus(error.status)
        body = f"{status.value} {status.phrase}".encode()
        wfile.write(
            b"HTTP/1.1 %d %s\r\nContent-Type: text/plain; charset=utf-8\r\nConnection: close\r\nContent-Length: %d\r\n\r\n%s"
            % (status.value, status.phrase.encode(), len(body), body)
        )
        wfile.flush()

    def _handle_new_connection(self, client_socket: socket.socket, client_addr):
        context = ConnectionContext(
            connection_id=str(uuid.uuid4())[:8],
            client_socket=client_socket,
            client_addr=client_addr,
            start_time=datetime.now(),
        )
        thread = threading.Thread(
            target=self.handle_client,
            args=(context,),
            name=f"proxy-{context.connection_id}",
            daemon=True,
        )
        context.thread = thread

        with self.lock:
            if not self.running:
                close_socket(client_socket)
                return
            self.active_connections[context.connection_id] = context
            thread.start()

    # ========== Lifecycle ==========

    def bind(self):
        """Open the listening socket. Raises ListenerError when that fails."""
        family = socket.AF_INET6 if ":" in self.listening_addr else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.listening_addr, self.listening_port))
            sock.listen(128)
        except OSError as e:
            sock.close()
            raise ListenerError(f"proxy listener cannot bind {self.listening_addr}:{self.listening_port}: {e}") from e
        sock.settimeout(ACCEPT_POLL_INTERVAL)

        self.server_socket = sock
        self.listening_port = sock.getsockname()[1]
        self.running = True

    def serve_forever(self):
        """Accept loop. Returns once shutdown() stopped the server."""
        self.logger.info("Starting proxy server %s", fields(addr=self.listening_addr, port=self.listening_port))
        server_socket = self.server_socket
        while self.running:
            try:
                client_socket, addr = server_socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if not self.running:
                    break
                raise ListenerError(f"proxy accept failed: {e}") from e
            self._handle_new_connection(client_socket, addr)

    def start(self):
        """
        Start the proxy server and begin listening for connections.
        """
        self.bind()
        self.serve_forever()

    def shutdown(self, deadline: float) -> bool:
        """
        Stop accepting, close idle connections and wait for in-flight requests
        and tunnels until the deadline. Whatever is left is forcibly closed.

        Args:
            deadline (float): time.monotonic() value by which draining must end

        Returns:
            bool: True when every connection finished before the deadline
        """
        with self.lock:
            self.running = False
            idle = [ctx for ctx in self.active_connections.values() if ctx.idle]
        self.cleanup()
        for context in idle:
            close_socket(context.client_socket)

        for context in self._snapshot():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            context.thread.join(remaining)

        stragglers = [ctx for ctx in self._snapshot() if ctx.thread.is_alive()]
        for context in stragglers:
            self.logger.warning(
                "Forcing connection closed %s",
                fields(remote_addr=context.remote_addr, id=context.connection_id, target=context.target_host),
            )
            close_socket(context.upstream_socket)
            close_socket(context.client_socket)
        return not stragglers

    def _snapshot(self):
        with self.lock:
            return list(self.active_connections.values())

    def cleanup(self):
        """
        Close the listening socket.
        """
        if self.server_socket:
            self.server_socket.close()
            self.server_socket = None
