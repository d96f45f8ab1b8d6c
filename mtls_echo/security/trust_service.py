"""
Trust service for mutual-TLS identity loading and peer certificate validation.
"""
import ssl
import logging
from datetime import datetime, timezone
from typing import Optional, Type

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID

from ..exceptions import (
    IdentityError, TrustLoadError, CertLoadError, KeyLoadError, KeyMismatchError,
    HandshakeVerificationError
)
from .models import Role, TrustConfig, PeerIdentity, CertificateInfo


class TrustService:
    """Service for loading the trust anchor and local identity and for judging peers."""

    def __init__(self):
        """Initialize the trust service."""
        self.logger = logging.getLogger(__name__)

    def load_trust_config(self, trust_anchor_path: str, local_cert_path: str,
                          local_key_path: str, role: Role) -> TrustConfig:
        """
        Load and validate the trust material for one role.

        The steps run in a fixed order and the first failure wins: trust
        anchor, local certificate, local key, then the key pair check.

        Args:
            trust_anchor_path: PEM file holding the single trusted CA certificate
            local_cert_path: PEM file holding this side's certificate (and chain)
            local_key_path: PEM file holding this side's unencrypted private key
            role: Role.SERVER or Role.CLIENT

        Returns:
            Immutable TrustConfig with a ready SSL context

        Raises:
            TrustLoadError, CertLoadError, KeyLoadError, KeyMismatchError
        """
        role = Role(role)

        trust_anchor = self._load_certificate(trust_anchor_path, TrustLoadError, "trust anchor")
        local_cert = self._load_certificate(local_cert_path, CertLoadError, "certificate")
        private_key = self._load_private_key(local_key_path)

        if not self._keys_match(local_cert, private_key):
            raise KeyMismatchError(
                f"Certificate {local_cert_path} and key {local_key_path} don't match"
            )

        cert_info = self._get_certificate_info(local_cert)
        if not cert_info.is_valid:
            self.logger.warning(
                f"Local certificate {cert_info.subject} is outside its validity window "
                f"({cert_info.not_before.isoformat()} - {cert_info.not_after.isoformat()})"
            )

        context = self._build_context(role, trust_anchor_path, local_cert_path, local_key_path)

        acceptable_issuers = ()
        if role is Role.SERVER:
            acceptable_issuers = (trust_anchor.subject.rfc4514_string(),)
            self.logger.info(f"Acceptable client certificate issuers: {', '.join(acceptable_issuers)}")

        self.logger.info(f"Loaded {role.value} identity {cert_info.subject}")
        return TrustConfig(
            trust_anchor_path=trust_anchor_path,
            local_cert_path=local_cert_path,
            local_key_path=local_key_path,
            role=role,
            trust_anchor=trust_anchor,
            local_cert=local_cert,
            context=context,
            acceptable_issuers=acceptable_issuers
        )

    def _read_file(self, file_path: str, error_cls: Type[IdentityError], what: str) -> bytes:
        """Read a PEM file, mapping I/O problems to the step's error type."""
        try:
            with open(file_path, 'rb') as f:
                content = f.read()
        except OSError as e:
            raise error_cls(f"Cannot read {what} file {file_path}: {e.strerror or e}") from e

        if not content.strip():
            raise error_cls(f"The {what} file is empty: {file_path}")

        return content

    def _load_certificate(self, file_path: str, error_cls: Type[IdentityError],
                          what: str) -> x509.Certificate:
        """Load the first PEM certificate from a file."""
        content = self._read_file(file_path, error_cls, what)
        try:
            return x509.load_pem_x509_certificate(content, default_backend())
        except ValueError as e:
            raise error_cls(f"The {what} file {file_path} is not a valid certificate: {e}") from e

    def _load_private_key(self, file_path: str):
        """Load an unencrypted PEM private key."""
        content = self._read_file(file_path, KeyLoadError, "key")
        try:
            return serialization.load_pem_private_key(content, password=None, backend=default_backend())
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise KeyLoadError(f"The key file {file_path} is not a usable private key: {e}") from e

    def _keys_match(self, cert: x509.Certificate, private_key) -> bool:
        """Check that the certificate carries the public half of the private key."""
        encoding = serialization.Encoding.DER
        public_format = serialization.PublicFormat.SubjectPublicKeyInfo
        cert_public = cert.public_key().public_bytes(encoding, public_format)
        key_public = private_key.public_key().public_bytes(encoding, public_format)
        return cert_public == key_public

    def _build_context(self, role: Role, trust_anchor_path: str,
                       local_cert_path: str, local_key_path: str) -> ssl.SSLContext:
        """Create an SSL context configured for mutual TLS."""
        if role is Role.SERVER:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        else:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            # Only the chain is verified, never the host name
            context.check_hostname = False

        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.verify_mode = ssl.CERT_REQUIRED
        context.options |= ssl.OP_NO_RENEGOTIATION | ssl.OP_NO_TICKET

        try:
            context.load_verify_locations(cafile=trust_anchor_path)
        except (ssl.SSLError, OSError) as e:
            raise TrustLoadError(f"Could not set the CA file location {trust_anchor_path}: {e}") from e

        try:
            context.load_cert_chain(certfile=local_cert_path, keyfile=local_key_path)
        except (ssl.SSLError, OSError) as e:
            raise KeyMismatchError(
                f"OpenSSL rejected certificate {local_cert_path} with key {local_key_path}: {e}"
            ) from e

        self.logger.debug(f"SSL context configured for mTLS ({role.value})")
        return context

    def verify_peer_certificate(self, trust_config: TrustConfig,
                                peer_cert_der: Optional[bytes]) -> PeerIdentity:
        """
        Judge the certificate the peer presented, for either role.

        OpenSSL has already checked the chain; this enforces a chain depth of
        one: the peer's leaf must be issued directly by the trust anchor.

        Args:
            trust_config: Trust material of the local side
            peer_cert_der: DER bytes from ``SSLSocket.getpeercert(binary_form=True)``

        Returns:
            PeerIdentity of the verified peer

        Raises:
            HandshakeVerificationError: If no certificate was presented or the
                certificate is not directly signed by the trust anchor
        """
        if not peer_cert_der:
            raise HandshakeVerificationError("Peer did not present a certificate")

        try:
            peer_cert = x509.load_der_x509_certificate(peer_cert_der, default_backend())
        except ValueError as e:
            raise HandshakeVerificationError(f"Peer certificate could not be parsed: {e}") from e

        self._verify_directly_issued(peer_cert, trust_config.trust_anchor)

        identity = self._get_peer_identity(peer_cert)
        self.logger.debug(f"Verified peer certificate {identity.subject}")
        return identity

    def _verify_directly_issued(self, cert: x509.Certificate, anchor: x509.Certificate) -> None:
        """Check the issuer name and signature of ``cert`` against the trust anchor."""
        subject = cert.subject.rfc4514_string()
        if cert.issuer != anchor.subject:
            raise HandshakeVerificationError(
                f"Certificate {subject} is issued by {cert.issuer.rfc4514_string()}, "
                f"not directly by the trust anchor {anchor.subject.rfc4514_string()}"
            )

        try:
            cert.verify_directly_issued_by(anchor)
        except (ValueError, TypeError, InvalidSignature) as e:
            raise HandshakeVerificationError(
                f"Certificate {subject} signature does not verify against the trust anchor: {e}"
            ) from e

    def _get_peer_identity(self, cert: x509.Certificate) -> PeerIdentity:
        info = self._get_certificate_info(cert)
        return PeerIdentity(
            subject=info.subject,
            issuer=info.issuer,
            common_name=self._extract_common_name(cert),
            serial_number=info.serial_number,
            not_before=info.not_before,
            not_after=info.not_after,
            fingerprint=info.fingerprint
        )

    def _get_certificate_info(self, cert: x509.Certificate) -> CertificateInfo:
        """Extract information from a certificate."""
        now = datetime.now(timezone.utc)

        not_before = cert.not_valid_before_utc
        not_after = cert.not_valid_after_utc

        return CertificateInfo(
            subject=cert.subject.rfc4514_string(),
            issuer=cert.issuer.rfc4514_string(),
            serial_number=str(cert.serial_number),
            not_before=not_before,
            not_after=not_after,
            is_valid=not_before <= now <= not_after,
            fingerprint=cert.fingerprint(hashes.SHA256()).hex()
        )

    def _extract_common_name(self, cert: x509.Certificate) -> str:
        """Extract the common name, falling back to the serial number."""
        for attribute in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME):
            return str(attribute.value)

        return str(cert.serial_number)

