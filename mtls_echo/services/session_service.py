"""
Session service: application I/O over an authenticated TLS channel.

A ``TLSSession`` performs single reads and single writes and never retries
a partial write. ``SessionService`` drives the client's one-shot exchange
and the server's echo loop on top of it.
"""
import logging
import ssl
from typing import BinaryIO, Optional

from ..exceptions import InputError, ReadError, WriteError, SessionIOError
from ..models.session import BUFFER_SIZE, SessionState, ExchangeResult, EchoLoopResult
from ..security.models import Role, PeerIdentity
from .logging_service import ConsoleReporter


class TLSSession:
    """An authenticated, encrypted channel owned by exactly one flow."""

    def __init__(self, channel: ssl.SSLSocket, role: Role, peer_identity: PeerIdentity,
                 peer_label: str, buffer_size: int = BUFFER_SIZE):
        self.channel = channel
        self.role = role
        self.peer_identity = peer_identity
        self.peer_label = peer_label
        self.buffer_size = buffer_size
        self.state = SessionState.AUTHENTICATED
        self.logger = logging.getLogger(__name__)
        self._closed = False

    def __enter__(self) -> 'TLSSession':
        return self

    def __exit__(self, exc_type, exc_value, tb):
        self.close()
        return False

    @property
    def closed(self) -> bool:
        return self._closed

    def read(self) -> bytes:
        """Read up to ``buffer_size`` bytes; ``b""`` means the peer closed the session."""
        self.state = SessionState.EXCHANGING
        try:
            return self.channel.recv(self.buffer_size)
        except (ssl.SSLError, OSError) as e:
            raise ReadError(f"SSL read from {self.peer_label} failed: {e}") from e

    def write(self, data: bytes) -> int:
        """Write ``data`` in one call; a short count is an error."""
        self.state = SessionState.EXCHANGING
        try:
            written = self.channel.send(data)
        except (ssl.SSLError, OSError) as e:
            raise WriteError(f"SSL write to {self.peer_label} failed: {e}") from e

        if written != len(data):
            raise WriteError(
                f"Short SSL write to {self.peer_label}: {written} of {len(data)} bytes"
            )
        return written

    def close(self):
        """Send close_notify, then release the socket. Safe to call twice."""
        if self._closed:
            return
        self._closed = True

        try:
            self.channel.unwrap()
        except (ssl.SSLError, OSError, ValueError) as e:
            self.logger.debug(f"TLS shutdown with {self.peer_label} was not clean: {e}")
        finally:
            self.channel.close()

        self.logger.debug(f"Session with {self.peer_label} torn down ({self.state.value})")


class SessionService:
    """Runs the echo exchanges over established sessions."""

    def __init__(self, reporter: Optional[ConsoleReporter] = None, strict_echo: bool = False):
        """
        Initialize the session service.

        Args:
            reporter: Where received payloads are surfaced (stdout by default)
            strict_echo: Compare echoed content, not only its length (client)
        """
        self.reporter = reporter or ConsoleReporter()
        self.strict_echo = strict_echo
        self.logger = logging.getLogger(__name__)

    def read_input_line(self, source: BinaryIO, buffer_size: int = BUFFER_SIZE) -> bytes:
        """Read one line, truncated to ``buffer_size`` bytes including its terminator."""
        try:
            line = source.readline(buffer_size)
        except (OSError, ValueError) as e:
            raise InputError(f"Could not read input from the user: {e}") from e

        if not line:
            raise InputError("Could not read input from the user")
        return line

    def run_client_exchange(self, session: TLSSession, source: BinaryIO) -> ExchangeResult:
        """
        Send one line of input and surface the reply if it looks like an echo.

        The session is always torn down before this returns or raises.

        Args:
            session: Authenticated client session
            source: Binary stream to read the line from (usually stdin)

        Returns:
            ExchangeResult describing what was sent and received

        Raises:
            InputError, WriteError, ReadError
        """
        with session:
            try:
                line = self.read_input_line(source, session.buffer_size)
                session.write(line)
                reply = session.read()
            except (InputError, SessionIOError):
                session.state = SessionState.ERRORED
                raise

            echoed = self._is_echo(line, reply)
            if echoed:
                self.reporter.payload(reply)
            else:
                self.logger.warning(
                    f"Reply from {session.peer_label} does not match the request "
                    f"({len(reply)} of {len(line)} bytes)"
                )

            session.state = SessionState.CLOSED
            return ExchangeResult(sent=line, received=reply, echoed=echoed, state=session.state)

    def _is_echo(self, sent: bytes, received: bytes) -> bool:
        if self.strict_echo:
            return sent == received
        # Length equality is taken as a correct echo
        return len(sent) == len(received)

    def run_echo_loop(self, session: TLSSession) -> EchoLoopResult:
        """
        Echo everything the peer sends until it closes or an I/O error occurs.

        The last buffer received is surfaced once after the loop ends, then
        the session is torn down, whichever way the loop exited.

        Args:
            session: Authenticated server session

        Returns:
            EchoLoopResult with the terminal state (CLOSED or ERRORED)
        """
        result = EchoLoopResult(state=SessionState.EXCHANGING)

        with session:
            try:
                while True:
                    data = session.read()
                    if not data:
                        result.state = SessionState.CLOSED
                        break

                    result.last_received = data
                    session.write(data)
                    result.bytes_echoed += len(data)
                    result.exchanges += 1
            except SessionIOError as e:
                self.logger.error(str(e))
                result.state = SessionState.ERRORED
                result.error = e

            session.state = result.state
            if result.last_received:
                self.reporter.payload(result.last_received)

        return result
