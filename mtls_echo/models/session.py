"""
Session data models: roles, lifecycle states and exchange results.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from ..security.models import PeerIdentity, Role


# Fixed transfer size for one read or one line of client input.
BUFFER_SIZE = 128


def format_address(host: str, port: int) -> str:
    """Format an address as ``host:port``, bracketing IPv6 hosts."""
    if ":" in host:
        host = f"[{host}]"
    return f"{host}:{port}"


class SessionState(Enum):
    """Lifecycle of one connection, shared by both roles."""
    CONNECTED = "connected"
    HANDSHAKING = "handshaking"
    AUTHENTICATED = "authenticated"
    EXCHANGING = "exchanging"
    CLOSED = "closed"
    ERRORED = "errored"
    HANDSHAKE_FAILED = "handshake_failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.CLOSED, SessionState.ERRORED, SessionState.HANDSHAKE_FAILED)


@dataclass
class ExchangeResult:
    """Result of the client's single send-then-receive exchange."""
    sent: bytes
    received: bytes
    echoed: bool
    state: SessionState = SessionState.CLOSED


@dataclass
class EchoLoopResult:
    """Result of the server's receive-then-echo loop for one session."""
    state: SessionState
    last_received: bytes = b""
    bytes_echoed: int = 0
    exchanges: int = 0
    error: Optional[Exception] = None


@dataclass
class ConnectionOutcome:
    """What happened to one accepted connection, recorded by the acceptor."""
    peer_address: Tuple[str, int]
    state: SessionState
    peer_identity: Optional[PeerIdentity] = None
    last_received: bytes = b""
    bytes_echoed: int = 0
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: float = 0.0
    finished_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.state.is_terminal:
            raise ValueError(f"Connection outcome needs a terminal state, got {self.state.value}")
        if self.finished_at is None:
            self.finished_at = datetime.now()

    @property
    def peer_label(self) -> str:
        return format_address(self.peer_address[0], self.peer_address[1])

    @classmethod
    def from_loop(cls, peer_address: Tuple[str, int], peer_identity: PeerIdentity,
                  loop_result: EchoLoopResult, duration_ms: float) -> 'ConnectionOutcome':
        """Create an outcome for a connection that reached the echo loop."""
        error = loop_result.error
        return cls(
            peer_address=peer_address,
            state=loop_result.state,
            peer_identity=peer_identity,
            last_received=loop_result.last_received,
            bytes_echoed=loop_result.bytes_echoed,
            error_type=type(error).__name__ if error else None,
            error_message=str(error) if error else None,
            duration_ms=duration_ms
        )

    @classmethod
    def handshake_failed(cls, peer_address: Tuple[str, int], error: Exception,
                         duration_ms: float) -> 'ConnectionOutcome':
        """Create an outcome for a connection rejected during the handshake."""
        return cls(
            peer_address=peer_address,
            state=SessionState.HANDSHAKE_FAILED,
            error_type=type(error).__name__,
            error_message=str(error),
            duration_ms=duration_ms
        )
