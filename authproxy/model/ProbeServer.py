"""
Liveness and readiness probes, served by Flask on their own port.
"""

import logging
import threading
import time

import requests
from flask import Flask, Response, request
from werkzeug.serving import WSGIRequestHandler, make_server

from .Core.errors import ListenerError
from .Core.logger import fields


class ProbeRequestHandler(WSGIRequestHandler):
    # One request per connection, so no idle keep-alive sockets outlive shutdown
    protocol_version = "HTTP/1.0"


def _request_fields() -> dict:
    return {
        "remote_addr": request.remote_addr,
        "host": request.host,
        "proto": request.environ.get("SERVER_PROTOCOL", ""),
        "method": request.method,
        "url": request.full_path.rstrip("?"),
    }


def create_probe_app(readiness_url: str, logger: logging.Logger, readiness_timeout: float = 5.0) -> Flask:
    """
    Build the probe application.

    /healthz always answers 200 "OK". /readyz performs one GET against
    readiness_url: any HTTP response counts as ready, a transport failure
    answers 503 with the error text.
    """
    app = Flask(__name__)

    @app.route("/healthz")
    def healthz():
        logger.debug("Liveness %s", fields(**_request_fields()))
        return Response("OK", status=200, mimetype="text/plain")

    @app.route("/readyz")
    def readyz():
        logger.debug("Readiness %s", fields(**_request_fields()))
        try:
            requests.get(readiness_url, timeout=readiness_timeout).close()
        except requests.RequestException as e:
            logger.error("Readiness %s", fields(error=e, url=readiness_url))
            return Response(f"{e}\n", status=503, mimetype="text/plain")
        return Response("OK", status=200, mimetype="text/plain")

    return app


class ProbeServer:
    """
    Threaded Werkzeug server hosting the probe application.

    Attributes:
        listening_addr (str): Bind address
        listening_port (int): Bind port, updated with the real port after bind()
        app (Flask): The probe application
    """

    def __init__(
        self,
        readiness_url: str,
        logger: logging.Logger,
        listening_addr: str = "0.0.0.0",
        listening_port: int = 31281,
        readiness_timeout: float = 5.0,
    ):
        self.logger = logger
        self.listening_addr = listening_addr
        self.listening_port = listening_port
        self.app = create_probe_app(readiness_url, logger, readiness_timeout)
        self.server = None

    def bind(self):
        try:
            self.server = make_server(
                self.listening_addr, self.listening_port, self.app, threaded=True, request_handler=ProbeRequestHandler
            )
        except (OSError, SystemExit) as e:
            raise ListenerError(f"probes listener cannot bind {self.listening_addr}:{self.listening_port}: {e}") from e
        # Request threads are joined on server_close()
        self.server.daemon_threads = False
        self.listening_port = self.server.server_port

    def serve_forever(self):
        self.logger.info("Starting probes server %s", fields(addr=self.listening_addr, port=self.listening_port))
        self.server.serve_forever()

    def shutdown(self, deadline: float) -> bool:
        """
        Stop the server and wait for in-flight probe requests until the deadline.

        Returns:
            bool: True when the server drained before the deadline
        """
        if self.server is None:
            return True
        stopper = threading.Thread(target=self._stop, name="probes-shutdown", daemon=True)
        stopper.start()
        stopper.join(max(0.0, deadline - time.monotonic()))
        return not stopper.is_alive()

    def _stop(self):
        self.server.shutdown()
        self.server.server_close()

    def cleanup(self):
        """Close the listening socket of a server that never served."""
        if self.server is not None:
            self.server.server_close()
            self.server = None
