"""Gatehouse: multi-tenant authentication, sessions and audit logging."""

from gatehouse.auth.nonces import NonceRegistry, RedisNonceRegistry, build_challenge_message
from gatehouse.auth.tokens import TokenClaims, TokenService, TokenStatus, TokenVerification
from gatehouse.threats.detector import detect_threats

__all__ = [
    "NonceRegistry",
    "RedisNonceRegistry",
    "build_challenge_message",
    "TokenClaims",
    "TokenService",
    "TokenStatus",
    "TokenVerification",
    "detect_threats",
]
__version__ = "0.1.0"
