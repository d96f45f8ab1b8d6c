"""
Services package for the mutual-TLS echo service.
"""

from .config_service import ConfigService
from .logging_service import LoggingService, ConsoleReporter
from .handshake_service import HandshakeEngine
from .session_service import SessionService, TLSSession
from .acceptor_service import ConnectionAcceptor
from .client_service import EchoClient

__all__ = [
    'ConfigService',
    'LoggingService',
    'ConsoleReporter',
    'HandshakeEngine',
    'SessionService',
    'TLSSession',
    'ConnectionAcceptor',
    'EchoClient'
]
