"""
Connection acceptor: owns the listening socket and services each connection
through handshake, echo loop and teardown.
"""
import logging
import socket
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Tuple, Dict, Any, List

from ..exceptions import ListenError, HandshakeError
from ..models.config import Config
from ..models.session import SessionState, ConnectionOutcome, format_address
from .handshake_service import HandshakeEngine
from .logging_service import ErrorTracker
from .session_service import SessionService


class ConnectionAcceptor:
    """Accepts TCP connections and runs the echo protocol on each one.

    Connections are serviced strictly one after another unless
    ``max_workers`` is above one, in which case each connection runs on its
    own worker thread with its own session. The only state shared between
    workers is the engine's read-only trust configuration.
    """

    def __init__(self,
                 handshake_engine: HandshakeEngine,
                 session_service: SessionService,
                 address: Tuple[str, int],
                 max_workers: int = 1,
                 poll_interval: float = 0.5,
                 error_tracker: Optional[ErrorTracker] = None,
                 stop_event: Optional[threading.Event] = None,
                 history_size: int = 100):
        """
        Initialize the acceptor.

        Args:
            handshake_engine: Server-role handshake engine
            session_service: Runs the echo loop on each session
            address: (bind address, port); "" binds all interfaces
            max_workers: 1 for strictly sequential service
            poll_interval: Seconds between checks of the stop event while idle
            error_tracker: Counts per-connection failures
            stop_event: Run/stop signal; a fresh event is created if omitted
            history_size: Number of recent connection outcomes kept
        """
        self.handshake_engine = handshake_engine
        self.session_service = session_service
        self.address = address
        self.max_workers = max_workers
        self.poll_interval = poll_interval
        self.error_tracker = error_tracker or ErrorTracker()
        self.stop_event = stop_event or threading.Event()
        self.logger = logging.getLogger(__name__)

        self._listener: Optional[socket.socket] = None
        self._stats_lock = threading.Lock()
        self._outcomes = deque(maxlen=history_size)
        self._stats = {
            'accepted': 0,
            'accept_failures': 0,
            'handshake_failures': 0,
            'sessions_closed': 0,
            'sessions_errored': 0,
            'bytes_echoed': 0
        }

    @classmethod
    def from_config(cls, config: Config, handshake_engine: HandshakeEngine,
                    session_service: SessionService,
                    error_tracker: Optional[ErrorTracker] = None) -> 'ConnectionAcceptor':
        """Create an acceptor from a validated server configuration."""
        return cls(
            handshake_engine=handshake_engine,
            session_service=session_service,
            address=(config.host, config.port),
            max_workers=config.max_workers,
            poll_interval=config.accept_poll_interval,
            error_tracker=error_tracker
        )

    @property
    def server_address(self) -> Tuple[str, int]:
        """Address actually bound (useful when port 0 was requested)."""
        if self._listener is None:
            raise ListenError("Acceptor is not listening")
        return self._listener.getsockname()[:2]

    def bind(self) -> socket.socket:
        """
        Create the listening socket. Called once; failure is fatal.

        Raises:
            ListenError: If the socket cannot be created, bound or put in listen mode
        """
        if self._listener is not None:
            return self._listener

        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        except OSError as e:
            raise ListenError(f"Cannot create a socket: {e}") from e

        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(self.address)
            sock.listen(socket.SOMAXCONN)
            # Accept wakes up periodically so the stop event is honoured
            sock.settimeout(self.poll_interval)
        except OSError as e:
            sock.close()
            raise ListenError(
                f"Could not listen on {format_address(self.address[0] or '0.0.0.0', self.address[1])}: {e}"
            ) from e

        self._listener = sock
        host, port = self.server_address
        self.logger.info(f"Listening for mTLS connections on {format_address(host, port)}")
        return sock

    def serve_forever(self):
        """
        Accept and service connections until ``stop()`` is called.

        Accept failures and per-connection failures are logged and never end
        the loop. The listening socket is closed on the way out.
        """
        listener = self.bind()
        executor = ThreadPoolExecutor(max_workers=self.max_workers) if self.max_workers > 1 else None

        try:
            while not self.stop_event.is_set():
                try:
                    conn, peer_address = listener.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if self.stop_event.is_set():
                        break
                    self._bump('accept_failures')
                    self.logger.error(f"Failed to accept connection: {e}")
                    continue

                self._bump('accepted')
                if executor is not None:
                    executor.submit(self._service_connection, conn, peer_address)
                else:
                    self._service_connection(conn, peer_address)
        finally:
            if executor is not None:
                executor.shutdown(wait=True)
            self.close()

    def _service_connection(self, conn: socket.socket, peer_address: Tuple):
        try:
            self.handle_connection(conn, peer_address)
        except Exception as e:
            self.logger.error(f"Unexpected error servicing {peer_address}: {e}", exc_info=True)

    def handle_connection(self, conn: socket.socket, peer_address: Tuple) -> ConnectionOutcome:
        """
        Service one accepted connection: handshake, echo loop, teardown.

        Never raises for handshake or session failures; they are recorded
        in the returned outcome.
        """
        peer_label = format_address(peer_address[0], peer_address[1])
        started = time.perf_counter()

        try:
            try:
                session = self.handshake_engine.handshake(conn, peer_label)
            except HandshakeError as e:
                self.logger.error(f"Could not perform SSL handshake with {peer_label}: {e}")
                self.error_tracker.track_error(e, {'peer': peer_label})
                outcome = ConnectionOutcome.handshake_failed(
                    peer_address[:2], e, self._elapsed_ms(started)
                )
                self._record(outcome)
                return outcome

            loop_result = self.session_service.run_echo_loop(session)
            if loop_result.error is not None:
                self.error_tracker.track_error(loop_result.error, {'peer': peer_label})

            outcome = ConnectionOutcome.from_loop(
                peer_address[:2], session.peer_identity, loop_result, self._elapsed_ms(started)
            )
            self._record(outcome)
            self.logger.info(
                f"Session with {peer_label} ended {outcome.state.value} "
                f"after echoing {outcome.bytes_echoed} bytes"
            )
            return outcome
        finally:
            conn.close()

    def stop(self):
        """Ask the accept loop to finish after the current connection."""
        self.stop_event.set()

    def close(self):
        """Close the listening socket."""
        if self._listener is not None:
            self._listener.close()
            self._listener = None
            self.logger.info("Listening socket closed")

    def get_stats(self) -> Dict[str, Any]:
        """Get connection counters."""
        with self._stats_lock:
            return dict(self._stats)

    def get_recent_outcomes(self) -> List[ConnectionOutcome]:
        """Get the most recent connection outcomes, oldest first."""
        with self._stats_lock:
            return list(self._outcomes)

    def _record(self, outcome: ConnectionOutcome):
        with self._stats_lock:
            self._outcomes.append(outcome)
            if outcome.state is SessionState.HANDSHAKE_FAILED:
                self._stats['handshake_failures'] += 1
            elif outcome.state is SessionState.CLOSED:
                self._stats['sessions_closed'] += 1
            else:
                self._stats['sessions_errored'] += 1
            self._stats['bytes_echoed'] += outcome.bytes_echoed

    def _bump(self, counter: str):
        with self._stats_lock:
            self._stats[counter] += 1

    def _elapsed_ms(self, started: float) -> float:
        return (time.perf_counter() - started) * 1000
