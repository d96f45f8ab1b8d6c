"""
Handshake engine: turns a connected TCP socket into an authenticated TLS session.
"""
import logging
import socket
import ssl
from typing import Optional

from ..exceptions import HandshakeError, HandshakeProtocolError, HandshakeVerificationError
from ..models.session import BUFFER_SIZE, SessionState
from ..security.models import Role, TrustConfig
from ..security.trust_service import TrustService
from .logging_service import ConsoleReporter, PerformanceMonitor
from .session_service import TLSSession


# OpenSSL reasons meaning a certificate was missing or rejected, by us or by the peer
VERIFICATION_REASONS = frozenset({
    "CERTIFICATE_VERIFY_FAILED",
    "PEER_DID_NOT_RETURN_A_CERTIFICATE",
    "NO_CERTIFICATE_RETURNED",
    "SSLV3_ALERT_BAD_CERTIFICATE",
    "SSLV3_ALERT_CERTIFICATE_EXPIRED",
    "SSLV3_ALERT_CERTIFICATE_REVOKED",
    "SSLV3_ALERT_CERTIFICATE_UNKNOWN",
    "SSLV3_ALERT_UNSUPPORTED_CERTIFICATE",
    "TLSV1_ALERT_UNKNOWN_CA",
    "TLSV13_ALERT_CERTIFICATE_REQUIRED",
})


class HandshakeEngine:
    """Drives the mutual-TLS handshake for one role."""

    def __init__(self, trust_config: TrustConfig,
                 trust_service: Optional[TrustService] = None,
                 reporter: Optional[ConsoleReporter] = None,
                 performance_monitor: Optional[PerformanceMonitor] = None,
                 handshake_timeout: Optional[float] = None,
                 io_timeout: Optional[float] = None,
                 buffer_size: int = BUFFER_SIZE):
        """
        Initialize the handshake engine.

        Args:
            trust_config: Trust material and SSL context for the local role
            trust_service: Checks the peer certificate against the trust anchor
            reporter: Receives the one "handshake successful" status line
            performance_monitor: Records handshake durations
            handshake_timeout: Seconds allowed for the handshake (None blocks forever)
            io_timeout: Seconds allowed per read/write once established (None blocks forever)
            buffer_size: Transfer size for sessions produced by this engine
        """
        self.trust_config = trust_config
        self.trust_service = trust_service or TrustService()
        self.reporter = reporter or ConsoleReporter()
        self.performance_monitor = performance_monitor or PerformanceMonitor()
        self.handshake_timeout = handshake_timeout
        self.io_timeout = io_timeout
        self.buffer_size = buffer_size
        self.logger = logging.getLogger(__name__)

    @property
    def role(self) -> Role:
        return self.trust_config.role

    def handshake(self, raw_sock: socket.socket, peer_label: str,
                  server_hostname: Optional[str] = None) -> TLSSession:
        """
        Perform the TLS handshake over ``raw_sock``.

        On failure the TLS wrapper (which owns the descriptor once created)
        is closed before the error propagates; no session exists.

        Args:
            raw_sock: Connected, blocking TCP socket
            peer_label: How the peer is named in status lines and diagnostics
            server_hostname: SNI name to send (client role only)

        Returns:
            TLSSession in the AUTHENTICATED state

        Raises:
            HandshakeProtocolError: No valid TLS exchange completed
            HandshakeVerificationError: Peer certificate missing or untrusted
        """
        self._log_transition(peer_label, SessionState.CONNECTED, SessionState.HANDSHAKING)
        try:
            with self.performance_monitor.measure_operation(
                "handshake", {"peer": peer_label, "role": self.role.value}
            ):
                session = self._handshake(raw_sock, peer_label, server_hostname)
        except HandshakeError:
            self._log_transition(peer_label, SessionState.HANDSHAKING, SessionState.HANDSHAKE_FAILED)
            raise

        self._log_transition(peer_label, SessionState.HANDSHAKING, session.state)
        self.reporter.status(f"SSL handshake successful with {peer_label}")
        return session

    def _handshake(self, raw_sock: socket.socket, peer_label: str,
                   server_hostname: Optional[str]) -> TLSSession:
        server_side = self.role is Role.SERVER

        try:
            raw_sock.settimeout(self.handshake_timeout)
            channel = self.trust_config.context.wrap_socket(
                raw_sock,
                server_side=server_side,
                do_handshake_on_connect=False,
                server_hostname=None if server_side else server_hostname
            )
        except (ssl.SSLError, OSError) as e:
            raise HandshakeProtocolError(f"Could not get an SSL handle for {peer_label}: {e}") from e

        try:
            channel.do_handshake()
            peer_identity = self.trust_service.verify_peer_certificate(
                self.trust_config, channel.getpeercert(binary_form=True)
            )
            channel.settimeout(self.io_timeout)
        except HandshakeError:
            channel.close()
            raise
        except ssl.SSLError as e:
            channel.close()
            raise self._classify_ssl_error(e, peer_label) from e
        except OSError as e:
            channel.close()
            raise HandshakeProtocolError(f"SSL handshake with {peer_label} failed: {e}") from e

        self.logger.debug(f"Peer {peer_label} authenticated as {peer_identity.subject}")
        return TLSSession(channel, self.role, peer_identity, peer_label, self.buffer_size)

    def _log_transition(self, peer_label: str, old: SessionState, new: SessionState) -> None:
        self.logger.debug(f"{peer_label}: {old.value} -> {new.value}")

    def _classify_ssl_error(self, error: ssl.SSLError, peer_label: str) -> HandshakeError:
        """Map an OpenSSL failure to verification or protocol failure."""
        reason = getattr(error, "reason", None)
        if isinstance(error, ssl.SSLCertVerificationError) or reason in VERIFICATION_REASONS:
            detail = getattr(error, "verify_message", None) or reason or str(error)
            return HandshakeVerificationError(f"Verification of handshake with {peer_label} failed: {detail}")

        return HandshakeProtocolError(f"SSL handshake with {peer_label} failed: {error}")
