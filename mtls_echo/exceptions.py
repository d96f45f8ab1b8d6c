"""
Exception types for the mutual-TLS echo service.

Startup errors (configuration, identity, listener) abort the process.
Per-connection errors (handshake, session I/O) are contained to the
connection that raised them.
"""


class EchoError(Exception):
    """Base class for all mtls-echo errors."""
    pass


class UsageError(EchoError):
    """Command line could not be parsed."""
    pass


class ConfigError(EchoError, ValueError):
    """Configuration validation errors (bad port, bad paths, bad options)."""
    pass


class IdentityError(EchoError):
    """Trust anchor or local identity could not be loaded."""
    pass


class TrustLoadError(IdentityError):
    """Trust anchor file is unreadable or not a valid certificate."""
    pass


class CertLoadError(IdentityError):
    """Local certificate file is unreadable or malformed."""
    pass


class KeyLoadError(IdentityError):
    """Local private key file is unreadable or malformed."""
    pass


class KeyMismatchError(IdentityError):
    """Local certificate and private key do not form a key pair."""
    pass


class ListenError(EchoError):
    """Listening socket could not be created."""
    pass


class ConnectError(EchoError):
    """Client could not reach the server."""
    pass


class HandshakeError(EchoError):
    """TLS handshake did not produce an authenticated session."""
    pass


class HandshakeProtocolError(HandshakeError):
    """No valid TLS exchange completed."""
    pass


class HandshakeVerificationError(HandshakeError):
    """Peer certificate missing or not trusted under the verification policy."""
    pass


class SessionIOError(EchoError):
    """Application data could not be exchanged over an established session."""
    pass


class ReadError(SessionIOError):
    pass


class WriteError(SessionIOError):
    pass


class InputError(EchoError):
    """No line could be read from the invoking side."""
    pass
