"""
Models package for the mutual-TLS echo service.
"""

from .config import Config, ConfigValidationError, ConfigValidationResult
from .session import (
    BUFFER_SIZE, SessionState, ExchangeResult, EchoLoopResult, ConnectionOutcome, format_address
)

__all__ = [
    'Config',
    'ConfigValidationError',
    'ConfigValidationResult',
    'BUFFER_SIZE',
    'SessionState',
    'ExchangeResult',
    'EchoLoopResult',
    'ConnectionOutcome',
    'format_address'
]
