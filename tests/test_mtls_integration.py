"""
End-to-end tests: a real acceptor on the loopback interface and real TLS clients.
"""
import io
import shutil
import socket
import ssl
import tempfile
import threading
import time
import unittest

from mtls_echo.exceptions import HandshakeVerificationError
from mtls_echo.models.config import Config
from mtls_echo.models.session import BUFFER_SIZE, SessionState
from mtls_echo.security.models import Role
from mtls_echo.security.trust_service import TrustService
from mtls_echo.services.acceptor_service import ConnectionAcceptor
from mtls_echo.services.client_service import EchoClient
from mtls_echo.services.handshake_service import HandshakeEngine
from mtls_echo.services.logging_service import ConsoleReporter
from mtls_echo.services.session_service import SessionService

from pki_helpers import build_pki


TIMEOUT = 5.0


class TestMTLSEchoIntegration(unittest.TestCase):
    """Test the server and client against each other over real sockets."""

    @classmethod
    def setUpClass(cls):
        cls.temp_dir = tempfile.mkdtemp()
        cls.pki = build_pki(cls.temp_dir)

    @classmethod
    def tearDownClass(cls):
        shutil.rmtree(cls.temp_dir, ignore_errors=True)

    def setUp(self):
        self.servers = []
        self.server_output = io.BytesIO()

    def tearDown(self):
        for acceptor, thread in self.servers:
            acceptor.stop()
            thread.join(TIMEOUT)

    def start_server(self, identity='server', max_workers=1) -> ConnectionAcceptor:
        server = self.pki[identity]
        trust_config = TrustService().load_trust_config(
            self.pki['ca'].cert_path, server.cert_path, server.key_path, Role.SERVER
        )
        reporter = ConsoleReporter(self.server_output)
        engine = HandshakeEngine(trust_config, reporter=reporter, handshake_timeout=TIMEOUT, io_timeout=TIMEOUT)
        acceptor = ConnectionAcceptor(
            engine,
            SessionService(reporter=reporter),
            ("127.0.0.1", 0),
            max_workers=max_workers,
            poll_interval=0.05
        )
        acceptor.bind()

        thread = threading.Thread(target=acceptor.serve_forever, daemon=True)
        thread.start()
        self.servers.append((acceptor, thread))
        return acceptor

    def make_client(self, acceptor, identity='client', strict_echo=False):
        host, port = acceptor.server_address
        client_identity = self.pki[identity]
        config = Config(
            role=Role.CLIENT,
            host=host,
            port=port,
            ca_cert_path=self.pki['ca'].cert_path,
            cert_path=client_identity.cert_path,
            key_path=client_identity.key_path,
            handshake_timeout=TIMEOUT,
            io_timeout=TIMEOUT,
            strict_echo=strict_echo
        )
        trust_config = TrustService().load_trust_config(
            config.ca_cert_path, config.cert_path, config.key_path, Role.CLIENT
        )
        output = io.BytesIO()
        reporter = ConsoleReporter(output)
        engine = HandshakeEngine(trust_config, reporter=reporter, handshake_timeout=TIMEOUT, io_timeout=TIMEOUT)
        client = EchoClient(config, engine, SessionService(reporter=reporter, strict_echo=strict_echo))
        return client, output

    def raw_attempt(self, acceptor, identity=None):
        """Connect with a plain ssl client and try one exchange, ignoring failures."""
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.check_hostname = False
        context.load_verify_locations(cafile=self.pki['ca'].cert_path)
        if identity is not None:
            context.load_cert_chain(self.pki[identity].cert_path, self.pki[identity].key_path)

        sock = socket.create_connection(acceptor.server_address, timeout=TIMEOUT)
        try:
            with context.wrap_socket(sock) as tls:
                tls.sendall(b"ping\n")
                tls.recv(BUFFER_SIZE)
        except (ssl.SSLError, OSError):
            pass
        finally:
            sock.close()

    def wait_for_outcomes(self, acceptor, count):
        deadline = time.monotonic() + TIMEOUT
        while time.monotonic() < deadline:
            outcomes = acceptor.get_recent_outcomes()
            if len(outcomes) >= count:
                return outcomes
            time.sleep(0.02)
        self.fail(f"Server recorded fewer than {count} connection outcomes")

    def test_ping_echoed(self):
        acceptor = self.start_server()
        client, client_output = self.make_client(acceptor)
        host, port = acceptor.server_address

        result = client.run(io.BytesIO(b"ping\n"))

        self.assertTrue(result.echoed)
        self.assertEqual(result.received, b"ping\n")
        self.assertEqual(
            client_output.getvalue(),
            f"SSL handshake successful with {host}:{port}\n".encode() + b"ping\n"
        )

        outcome = self.wait_for_outcomes(acceptor, 1)[0]
        self.assertEqual(outcome.state, SessionState.CLOSED)
        self.assertEqual(outcome.last_received, b"ping\n")
        self.assertEqual(outcome.bytes_echoed, 5)
        self.assertEqual(outcome.peer_identity.common_name, "Echo Client")

        server_output = self.server_output.getvalue()
        self.assertTrue(server_output.startswith(b"SSL handshake successful with 127.0.0.1:"))
        self.assertTrue(server_output.endswith(b"\nping\n"))

    def test_long_line_truncated_to_buffer(self):
        acceptor = self.start_server()
        client, client_output = self.make_client(acceptor)

        result = client.run(io.BytesIO(b"a" * 200 + b"\n"))

        self.assertEqual(result.sent, b"a" * BUFFER_SIZE)
        self.assertTrue(result.echoed)
        self.assertTrue(client_output.getvalue().endswith(b"\n" + b"a" * BUFFER_SIZE))

        outcome = self.wait_for_outcomes(acceptor, 1)[0]
        self.assertEqual(outcome.bytes_echoed, BUFFER_SIZE)

    def test_strict_echo_round_trip(self):
        acceptor = self.start_server()
        client, client_output = self.make_client(acceptor, strict_echo=True)

        result = client.run(io.BytesIO(b"exact\n"))

        self.assertTrue(result.echoed)
        self.assertTrue(client_output.getvalue().endswith(b"exact\n"))

    def test_untrusted_client_rejected_and_server_continues(self):
        """Test a client from another CA fails verification without ending the server."""
        acceptor = self.start_server()

        self.raw_attempt(acceptor, identity='foreign_client')
        rejected = self.wait_for_outcomes(acceptor, 1)[0]

        self.assertEqual(rejected.state, SessionState.HANDSHAKE_FAILED)
        self.assertEqual(rejected.error_type, "HandshakeVerificationError")
        self.assertIsNone(rejected.peer_identity)

        client, _ = self.make_client(acceptor)
        self.assertTrue(client.run(io.BytesIO(b"still here\n")).echoed)

        outcomes = self.wait_for_outcomes(acceptor, 2)
        self.assertEqual(outcomes[1].state, SessionState.CLOSED)
        self.assertEqual(outcomes[1].last_received, b"still here\n")

        stats = acceptor.get_stats()
        self.assertEqual(stats['accepted'], 2)
        self.assertEqual(stats['handshake_failures'], 1)
        self.assertEqual(stats['sessions_closed'], 1)

    def test_client_without_certificate_rejected(self):
        acceptor = self.start_server()

        self.raw_attempt(acceptor, identity=None)
        outcome = self.wait_for_outcomes(acceptor, 1)[0]

        self.assertEqual(outcome.state, SessionState.HANDSHAKE_FAILED)
        self.assertEqual(outcome.error_type, "HandshakeVerificationError")

    def test_intermediate_issued_client_rejected(self):
        """Test a client certificate chaining through an intermediate is refused."""
        acceptor = self.start_server()

        self.raw_attempt(acceptor, identity='chained_client')
        outcome = self.wait_for_outcomes(acceptor, 1)[0]

        self.assertEqual(outcome.state, SessionState.HANDSHAKE_FAILED)
        self.assertEqual(outcome.error_type, "HandshakeVerificationError")
        self.assertIn("not directly by the trust anchor", outcome.error_message)
        self.assertEqual(self.server_output.getvalue(), b"")

    def test_untrusted_server_rejected_by_client(self):
        acceptor = self.start_server(identity='foreign_server')
        client, client_output = self.make_client(acceptor)

        with self.assertRaises(HandshakeVerificationError):
            client.run(io.BytesIO(b"ping\n"))

        self.assertEqual(client_output.getvalue(), b"")
        outcome = self.wait_for_outcomes(acceptor, 1)[0]
        self.assertEqual(outcome.state, SessionState.HANDSHAKE_FAILED)

    def test_intermediate_issued_server_rejected_by_client(self):
        """Test a client refuses a server whose certificate chains through an intermediate."""
        acceptor = self.start_server(identity='chained_server')
        client, client_output = self.make_client(acceptor)

        with self.assertRaises(HandshakeVerificationError) as ctx:
            client.run(io.BytesIO(b"ping\n"))

        self.assertIn("not directly by the trust anchor", str(ctx.exception))
        self.assertEqual(client_output.getvalue(), b"")

        # The server may finish its side first; either way nothing is echoed
        outcome = self.wait_for_outcomes(acceptor, 1)[0]
        self.assertEqual(outcome.bytes_echoed, 0)

    def test_concurrent_sessions_with_workers(self):
        """Test an idle session does not block another client when workers are enabled."""
        acceptor = self.start_server(max_workers=2)

        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.check_hostname = False
        context.load_verify_locations(cafile=self.pki['ca'].cert_path)
        context.load_cert_chain(self.pki['client'].cert_path, self.pki['client'].key_path)

        idle = context.wrap_socket(socket.create_connection(acceptor.server_address, timeout=TIMEOUT))
        try:
            client, _ = self.make_client(acceptor)
            self.assertTrue(client.run(io.BytesIO(b"concurrent\n")).echoed)

            first = self.wait_for_outcomes(acceptor, 1)[0]
            self.assertEqual(first.last_received, b"concurrent\n")
        finally:
            idle.close()

        # The idle peer never read its session tickets, so its close may arrive as a reset
        outcomes = self.wait_for_outcomes(acceptor, 2)
        self.assertIn(outcomes[1].state, (SessionState.CLOSED, SessionState.ERRORED))
        self.assertEqual(outcomes[1].bytes_echoed, 0)

    def test_stop_closes_listener(self):
        acceptor = self.start_server()
        address = acceptor.server_address
        thread = self.servers[-1][1]

        acceptor.stop()
        thread.join(TIMEOUT)

        self.assertFalse(thread.is_alive())
        with self.assertRaises(OSError):
            socket.create_connection(address, timeout=1).close()


if __name__ == '__main__':
    unittest.main()
