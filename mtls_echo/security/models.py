"""
Security models for mutual-TLS identity and trust management.
"""
import ssl
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Tuple

from cryptography import x509


class Role(str, Enum):
    """Side of the TLS connection a process plays."""
    SERVER = "server"
    CLIENT = "client"


@dataclass(frozen=True)
class TrustConfig:
    """Trust anchor and local identity for one role.

    Peer verification is the same for both roles: a certificate is always
    required and must be signed directly by the trust anchor.

    Built once per process by ``TrustService.load_trust_config`` and never
    mutated afterwards, so it can be shared by concurrent sessions.
    """
    trust_anchor_path: str
    local_cert_path: str
    local_key_path: str
    role: Role
    trust_anchor: x509.Certificate
    local_cert: x509.Certificate
    context: ssl.SSLContext
    # Recorded and logged only. The ssl module cannot set the CA list sent in
    # the CertificateRequest, so clients are not told about these issuers.
    acceptable_issuers: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PeerIdentity:
    """Verified certificate details of the remote party."""
    subject: str
    issuer: str
    common_name: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    fingerprint: str


@dataclass
class CertificateInfo:
    """Information about a certificate."""
    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    is_valid: bool
    fingerprint: str
