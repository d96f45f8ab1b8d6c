"""
Security package for mTLS trust and identity management.
"""
from .models import Role, TrustConfig, PeerIdentity, CertificateInfo
from .trust_service import TrustService

__all__ = [
    'Role',
    'TrustConfig',
    'PeerIdentity',
    'CertificateInfo',
    'TrustService'
]
