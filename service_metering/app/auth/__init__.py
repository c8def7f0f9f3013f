"""
Caller authentication for the metering service.
"""

from .keyring import KeyRing, KeyNotFound, KeysUnavailable
from .verifier import (
    AuthError,
    AuthReason,
    IdentityVerifier,
    VerificationResult,
    VerifiedIdentity,
    extract_bearer_token,
    mask_host,
)

__all__ = [
    "AuthError",
    "AuthReason",
    "IdentityVerifier",
    "KeyNotFound",
    "KeyRing",
    "KeysUnavailable",
    "VerificationResult",
    "VerifiedIdentity",
    "extract_bearer_token",
    "mask_host",
]
