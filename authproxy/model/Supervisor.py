"""
Process supervisor: runs the proxy and probe listeners side by side, waits for
a termination signal and shuts both down against one shared deadline.
"""

import logging
import signal
import threading
import time
from enum import Enum

from .Core.errors import ListenerError
from .Core.logger import fields

SIGNAL_POLL_INTERVAL = 0.2


class State(Enum):
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class ShutdownOutcome:
    """Aggregate result of one shutdown sequence, written by several threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ok = True

    def fail(self):
        with self._lock:
            self._ok = False

    @property
    def ok(self) -> bool:
        with self._lock:
            return self._ok


class Supervisor:
    """
    Owns the two listeners for the lifetime of the process.

    Both servers must provide bind(), serve_forever(), cleanup() and
    shutdown(deadline) returning True on a clean drain.

    Attributes:
        servers (dict): Listener name -> server
        shutdown_timeout (float): Shared shutdown bound in seconds
        state (State): Current lifecycle state
    """

    def __init__(self, proxy_server, probe_server, shutdown_timeout: float, logger: logging.Logger):
        self.servers = {"proxy": proxy_server, "probes": probe_server}
        self.shutdown_timeout = shutdown_timeout
        self.logger = logger
        self.state = State.STARTING
        self.threads = []
        self._stop = threading.Event()
        self._failure = None
        self.received_signal = None

    @property
    def listener_failed(self) -> bool:
        return self._failure is not None

    def handle_signal(self, sig, frame):
        """
        Handle SIGINT/SIGTERM by waking up the supervisor.

        Only sets an attribute, which wait() polls. No lock is taken here.
        """
        self.received_signal = signal.Signals(sig)

    def install_signal_handlers(self):
        signal.signal(signal.SIGINT, self.handle_signal)
        signal.signal(signal.SIGTERM, self.handle_signal)

    def start(self):
        """
        Bind both listeners, then serve each in its own thread.

        Raises:
            ListenerError: A listener could not bind. Nothing is left serving.
        """
        bound = []
        try:
            for server in self.servers.values():
                server.bind()
                bound.append(server)
        except ListenerError:
            for server in bound:
                server.cleanup()
            raise

        for name, server in self.servers.items():
            thread = threading.Thread(target=self._serve, args=(name, server), name=f"{name}-server", daemon=True)
            thread.start()
            self.threads.append(thread)
        self.state = State.RUNNING

    def _serve(self, name, server):
        try:
            server.serve_forever()
        except Exception as e:
            self.logger.error("%s: serve loop failed %s", name.capitalize(), fields(error=e))
            self._failure = e
            self._stop.set()

    def wait(self):
        """Block until a termination signal arrives or a listener dies."""
        while self.received_signal is None and not self._stop.wait(SIGNAL_POLL_INTERVAL):
            pass
        if self.received_signal is not None:
            self.logger.info("Received signal %s", fields(signal=self.received_signal.name))

    def shutdown(self) -> bool:
        """
        Shut both listeners down concurrently against one deadline.

        Returns:
            bool: True only if both drained before the deadline
        """
        self.state = State.SHUTTING_DOWN
        self.logger.info("Server shutting down gracefully %s", fields(timeout=f"{self.shutdown_timeout}s"))
        deadline = time.monotonic() + self.shutdown_timeout
        outcome = ShutdownOutcome()

        workers = [
            threading.Thread(
                target=self._shutdown_one,
                args=(name, server, deadline, outcome),
                name=f"{name}-shutdown",
            )
            for name, server in self.servers.items()
        ]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        self.state = State.STOPPED
        return outcome.ok

    def _shutdown_one(self, name, server, deadline, outcome: ShutdownOutcome):
        try:
            clean = server.shutdown(deadline)
        except Exception as e:
            self.logger.error("%s server shutdown raised %s", name.capitalize(), fields(error=e))
            clean = False
        if not clean:
            self.logger.error("%s server forced to shutdown", name.capitalize())
            outcome.fail()

    def run(self) -> int:
        """
        Full lifecycle: start, wait for a signal, shut down.

        Returns:
            int: Process exit code, 0 on a clean shutdown
        """
        try:
            self.start()
        except ListenerError as e:
            self.logger.error("Listener startup failed %s", fields(error=e))
            self.state = State.STOPPED
            return 1

        self.wait()

        if self.listener_failed:
            self.logger.error("Listener stopped unexpectedly, exiting without graceful shutdown")
            self.state = State.STOPPED
            return 1

        if not self.shutdown():
            return 1
        self.logger.info("Server shutdown successfully")
        return 0
