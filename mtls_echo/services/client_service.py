"""
Echo client: dial, handshake, one exchange, teardown.
"""
import logging
import socket
from typing import BinaryIO

from ..exceptions import ConnectError
from ..models.config import Config
from ..models.session import ExchangeResult
from .handshake_service import HandshakeEngine
from .session_service import SessionService


class EchoClient:
    """Client side of the echo service."""

    def __init__(self, config: Config, handshake_engine: HandshakeEngine,
                 session_service: SessionService):
        self.config = config
        self.handshake_engine = handshake_engine
        self.session_service = session_service
        self.logger = logging.getLogger(__name__)

    def connect(self) -> socket.socket:
        """
        Open the TCP connection to the configured server.

        Raises:
            ConnectError: If the server cannot be reached
        """
        target = self.config.address_label
        try:
            sock = socket.create_connection(
                (self.config.host, self.config.port),
                timeout=self.config.handshake_timeout
            )
        except OSError as e:
            raise ConnectError(f"Could not connect to the server {target}: {e}") from e

        self.logger.debug(f"TCP connection to {target} established")
        return sock

    def run(self, source: BinaryIO) -> ExchangeResult:
        """
        Perform one complete echo exchange with the server.

        Args:
            source: Binary stream providing the line to send

        Returns:
            ExchangeResult of the exchange

        Raises:
            ConnectError, HandshakeProtocolError, HandshakeVerificationError,
            InputError, WriteError, ReadError
        """
        target = self.config.address_label
        sock = self.connect()

        try:
            session = self.handshake_engine.handshake(sock, target, server_hostname=self.config.host)
            return self.session_service.run_client_exchange(session, source)
        finally:
            sock.close()
