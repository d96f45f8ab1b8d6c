"""
Main entry point for the mutual-TLS echo service.
Handles argument parsing, service wiring, exit status and graceful shutdown.
"""

import argparse
import signal
import sys
import threading
import logging
from typing import Optional, BinaryIO, List

from .exceptions import (
    EchoError, UsageError, ConfigError, TrustLoadError, CertLoadError, KeyLoadError,
    KeyMismatchError, ListenError, ConnectError, HandshakeProtocolError,
    HandshakeVerificationError, InputError, ReadError, WriteError
)
from .models.config import Config
from .security.models import Role, TrustConfig
from .security.trust_service import TrustService
from .services.acceptor_service import ConnectionAcceptor
from .services.client_service import EchoClient
from .services.config_service import ConfigService
from .services.handshake_service import HandshakeEngine
from .services.logging_service import LoggingService, ConsoleReporter
from .services.session_service import SessionService


EXIT_SUCCESS = 0
EXIT_FAILURE = 1

# Most specific first
FAILURE_MESSAGES = [
    (UsageError, "Usage error"),
    (ConfigError, "Invalid configuration"),
    (TrustLoadError, "Cannot load the CA file"),
    (CertLoadError, "Cannot load the certificate file"),
    (KeyLoadError, "Cannot load the key file"),
    (KeyMismatchError, "Certificate and key don't match"),
    (ListenError, "Cannot listen for connections"),
    (ConnectError, "Could not connect to the server"),
    (HandshakeVerificationError, "Verification of handshake failed"),
    (HandshakeProtocolError, "SSL handshake failed"),
    (InputError, "Could not read input from the user"),
    (WriteError, "Cannot write to the server"),
    (ReadError, "Cannot read from the server"),
]


def describe_failure(error: EchoError) -> str:
    """One diagnostic line naming the step that failed."""
    for error_cls, label in FAILURE_MESSAGES:
        if isinstance(error, error_cls):
            return f"{label}: {error}"
    return f"Error: {error}"


class EchoApplication:
    """Wires the services for one server or client invocation."""

    def __init__(self, config: Config, source: Optional[BinaryIO] = None,
                 reporter: Optional[ConsoleReporter] = None):
        """
        Initialize the echo application.

        Args:
            config: Validated configuration
            source: Input stream for the client (stdin by default)
            reporter: Standard output channel for status lines and payloads
        """
        self.config = config
        self.source = source
        self.reporter = reporter or ConsoleReporter()
        self.logger = logging.getLogger(__name__)
        self.logging_service: Optional[LoggingService] = None
        self.trust_config: Optional[TrustConfig] = None
        self.handshake_engine: Optional[HandshakeEngine] = None
        self.session_service: Optional[SessionService] = None
        self.acceptor: Optional[ConnectionAcceptor] = None
        self.client: Optional[EchoClient] = None

        self._shutdown_event = threading.Event()

    def initialize(self):
        """
        Set up logging, load the identity and build the services.

        Raises:
            TrustLoadError, CertLoadError, KeyLoadError, KeyMismatchError
        """
        self.logging_service = LoggingService(self.config)
        self.logger.info(f"Starting mtls-echo {self.config.role.value} ({self.config.address_label})")

        trust_service = TrustService()
        self.trust_config = trust_service.load_trust_config(
            self.config.ca_cert_path,
            self.config.cert_path,
            self.config.key_path,
            self.config.role
        )

        self.handshake_engine = HandshakeEngine(
            self.trust_config,
            trust_service=trust_service,
            reporter=self.reporter,
            performance_monitor=self.logging_service.performance_monitor,
            handshake_timeout=self.config.handshake_timeout,
            io_timeout=self.config.io_timeout
        )
        self.session_service = SessionService(
            reporter=self.reporter,
            strict_echo=self.config.strict_echo
        )

        if self.config.role is Role.SERVER:
            self.acceptor = ConnectionAcceptor.from_config(
                self.config,
                self.handshake_engine,
                self.session_service,
                error_tracker=self.logging_service.error_tracker
            )
            self.acceptor.stop_event = self._shutdown_event
        else:
            self.client = EchoClient(self.config, self.handshake_engine, self.session_service)

    def run(self) -> int:
        """
        Run the server until shut down, or the client's single exchange.

        Returns:
            Process exit status

        Raises:
            EchoError: For startup failures (server) or any failure (client)
        """
        if self.handshake_engine is None:
            raise EchoError("Application not initialized. Call initialize() first.")

        if self.acceptor is not None:
            self.acceptor.bind()
            self._setup_signal_handlers()
            try:
                self.acceptor.serve_forever()
            finally:
                self._log_summary()
            return EXIT_SUCCESS

        source = self.source if self.source is not None else sys.stdin.buffer
        self.client.run(source)
        return EXIT_SUCCESS

    def _setup_signal_handlers(self):
        """Stop accepting on SIGINT/SIGTERM (main thread only)."""
        if threading.current_thread() is not threading.main_thread():
            return

        def signal_handler(signum, frame):
            signal_name = signal.Signals(signum).name
            self.logger.info(f"Received {signal_name} signal, initiating graceful shutdown...")
            self.shutdown()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def shutdown(self):
        """Ask the accept loop to stop after the connection in progress."""
        self._shutdown_event.set()

    def _log_summary(self):
        stats = self.acceptor.get_stats()
        self.logger.info(
            f"Server stopped: {stats['accepted']} connections accepted, "
            f"{stats['sessions_closed']} closed, {stats['sessions_errored']} errored, "
            f"{stats['handshake_failures']} handshake failures, {stats['bytes_echoed']} bytes echoed"
        )

        handshake_stats = self.logging_service.get_performance_stats().get('handshake')
        if handshake_stats:
            self.logger.info(
                f"Handshakes: {handshake_stats['success_count']}/{handshake_stats['total_calls']} "
                f"successful, avg {handshake_stats['avg_duration_ms']:.1f}ms"
            )

        error_summary = self.logging_service.get_error_summary()
        if error_summary['total_errors']:
            self.logger.info(f"Connection errors by type: {error_summary['error_types']}")


class EchoArgumentParser(argparse.ArgumentParser):
    """Argument parser that reports problems as UsageError instead of exiting."""

    def error(self, message):
        raise UsageError(message)


def build_parser() -> EchoArgumentParser:
    """Build the command line parser."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--config', '-c', help='INI file with additional settings')
    common.add_argument('--log-level', help='DEBUG, INFO, WARNING, ERROR or CRITICAL')
    common.add_argument('--log-file', dest='log_file_path', help='Also write JSON logs to this file')
    common.add_argument('--log-json', action='store_true', default=None,
                        help='Write console diagnostics as JSON')
    common.add_argument('--handshake-timeout', type=float,
                        help='Seconds allowed for connect and handshake (default: no limit)')
    common.add_argument('--io-timeout', type=float,
                        help='Seconds allowed per read or write (default: no limit)')

    parser = EchoArgumentParser(
        prog='mtls-echo',
        description='Mutual-TLS echo server and client'
    )
    subparsers = parser.add_subparsers(dest='mode', metavar='(server | client)')
    subparsers.required = True

    server = subparsers.add_parser('server', parents=[common], help='Run the echo server')
    server.add_argument('port', help='Port number to listen on (1-65535)')
    server.add_argument('ca_cert', help='CA certificate (PEM) trusted for client certificates')
    server.add_argument('cert', help="Server's certificate (PEM)")
    server.add_argument('key', help="Server's private key (PEM)")
    server.add_argument('--bind', dest='host', help='Address to bind (default: all interfaces)')
    server.add_argument('--workers', dest='max_workers', type=int,
                        help='Service up to N connections concurrently (default: 1)')

    client = subparsers.add_parser('client', parents=[common], help='Send one line to an echo server')
    client.add_argument('address', help='Server address as host:port')
    client.add_argument('ca_cert', help='CA certificate (PEM) trusted for the server certificate')
    client.add_argument('cert', help="Client's certificate (PEM)")
    client.add_argument('key', help="Client's private key (PEM)")
    client.add_argument('--strict-echo', action='store_true', default=None,
                        help='Print the reply only if its content equals the request')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the application."""
    parser = build_parser()

    try:
        args = parser.parse_args(argv)
    except UsageError as e:
        parser.print_usage(sys.stderr)
        print(describe_failure(e), file=sys.stderr)
        return EXIT_FAILURE

    overrides = {
        'log_level': args.log_level,
        'log_file_path': args.log_file_path,
        'log_json': args.log_json,
        'handshake_timeout': args.handshake_timeout,
        'io_timeout': args.io_timeout,
        'host': getattr(args, 'host', None),
        'max_workers': getattr(args, 'max_workers', None),
        'strict_echo': getattr(args, 'strict_echo', None),
    }
    address = args.port if args.mode == 'server' else args.address

    try:
        config = ConfigService().build_config(
            args.mode, address, args.ca_cert, args.cert, args.key,
            config_path=args.config,
            overrides=overrides
        )
        app = EchoApplication(config)
        app.initialize()
        return app.run()
    except EchoError as e:
        print(describe_failure(e), file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print("\nShutdown requested by user", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == '__main__':
    sys.exit(main())
