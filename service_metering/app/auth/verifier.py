"""
Bearer token verification against the identity provider's signing keys.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional
from urllib.parse import urlsplit

from jose import jws, jwt
from jose.exceptions import JOSEError, JWTError

from shared.errors import AuthenticationError
from shared.logging import get_logger, set_subject_context

from .keyring import KeyNotFound, KeyRing, KeysUnavailable

# Algorithm -> required JWK key type. Symmetric and "none" are never accepted.
SUPPORTED_ALGORITHMS = {
    "ES256": "EC",
    "ES384": "EC",
    "RS256": "RSA",
    "RS384": "RSA",
    "RS512": "RSA",
}

_BEARER_RE = re.compile(r"^\s*bearer\s+(\S+)\s*$", re.IGNORECASE)


class AuthReason(str, Enum):
    NO_CREDENTIAL = "NO_CREDENTIAL"
    MALFORMED_TOKEN = "MALFORMED_TOKEN"
    UNKNOWN_KEY = "UNKNOWN_KEY"
    BAD_SIGNATURE = "BAD_SIGNATURE"
    EXPIRED = "EXPIRED"
    NOT_YET_VALID = "NOT_YET_VALID"
    ISSUER_MISMATCH = "ISSUER_MISMATCH"
    KEYS_UNAVAILABLE = "KEYS_UNAVAILABLE"


class AuthError(AuthenticationError):
    """Credential rejected for a specific, stable reason."""

    def __init__(self, reason: AuthReason, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code=reason.value)
        self.reason = reason
        if reason is AuthReason.KEYS_UNAVAILABLE:
            self.status_code = 503


@dataclass(frozen=True)
class VerifiedIdentity:
    """Caller identity derived from a verified access token."""

    subject: str
    is_admin: bool = False
    claims: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of verifying one credential: an identity or an error, never both."""

    identity: Optional[VerifiedIdentity] = None
    error: Optional[AuthError] = None
    request_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.identity is not None

    @property
    def reason(self) -> Optional[AuthReason]:
        return self.error.reason if self.error is not None else None


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer`` header value, if well formed."""
    if not authorization:
        return None
    match = _BEARER_RE.match(authorization)
    return match.group(1) if match else None


def mask_host(value: Any) -> str:
    """Reduce an issuer URL to a masked host fragment safe for logs and responses."""
    if not isinstance(value, str) or not value:
        return "***"
    host = urlsplit(value).hostname if "://" in value else value
    if not host or len(host) <= 6:
        return "***"
    return f"{host[:3]}***{host[-3:]}"


class IdentityVerifier:
    """Verifies bearer tokens and yields the caller's subject id.

    The only network dependency is ``KeyRing.resolve``; everything after key
    resolution is local computation.
    """

    def __init__(
        self,
        keyring: KeyRing,
        *,
        issuer: str,
        admin_subjects: Iterable[str] = (),
        leeway: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.keyring = keyring
        self.issuer = issuer
        self.admin_subjects = frozenset(admin_subjects)
        self.leeway = leeway
        self.logger = get_logger("metering.verifier")
        self._clock = clock

    async def verify(self, authorization: Optional[str], request_id: Optional[str] = None) -> VerificationResult:
        """Verify an Authorization header value. Auth failures are returned, not raised."""
        try:
            identity = await self._verify(authorization)
        except AuthError as exc:
            self.logger.warning(
                "Credential rejected",
                reason=exc.reason.value,
                request_id=request_id,
                **exc.details
            )
            return VerificationResult(error=exc, request_id=request_id)

        set_subject_context(identity.subject)
        return VerificationResult(identity=identity, request_id=request_id)

    def is_admin(self, subject: str) -> bool:
        return subject in self.admin_subjects

    async def _verify(self, authorization: Optional[str]) -> VerifiedIdentity:
        token = extract_bearer_token(authorization)
        if token is None:
            raise AuthError(AuthReason.NO_CREDENTIAL, "Missing or malformed Authorization header")

        try:
            header = jwt.get_unverified_header(token)
            claims = jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise AuthError(AuthReason.MALFORMED_TOKEN, "Token could not be decoded") from exc

        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise AuthError(AuthReason.MALFORMED_TOKEN, "Token header missing key id")

        alg = header.get("alg")
        if alg not in SUPPORTED_ALGORITHMS:
            raise AuthError(AuthReason.BAD_SIGNATURE, "Unsupported signing algorithm", {"alg": str(alg)})

        try:
            key = await self.keyring.resolve(kid)
        except KeyNotFound as exc:
            raise AuthError(AuthReason.UNKNOWN_KEY, "Signing key not found", {"kid": kid}) from exc
        except KeysUnavailable as exc:
            raise AuthError(AuthReason.KEYS_UNAVAILABLE, "Signing keys unavailable") from exc

        self._verify_signature(token, key, alg, kid)
        self._check_time_claims(claims)

        issuer = claims.get("iss")
        if issuer != self.issuer:
            raise AuthError(
                AuthReason.ISSUER_MISMATCH,
                "Token issuer not accepted",
                {"expected_host": mask_host(self.issuer), "actual_host": mask_host(issuer)},
            )

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise AuthError(AuthReason.MALFORMED_TOKEN, "Token missing subject claim")

        return VerifiedIdentity(subject=subject, is_admin=self.is_admin(subject), claims=claims)

    def _verify_signature(self, token: str, key: Dict[str, Any], alg: str, kid: str) -> None:
        if key.get("kty") != SUPPORTED_ALGORITHMS[alg] or key.get("alg", alg) != alg:
            raise AuthError(AuthReason.BAD_SIGNATURE, "Key does not match token algorithm", {"kid": kid, "alg": alg})

        try:
            jws.verify(token, key, algorithms=[alg])
        except JOSEError as exc:
            raise AuthError(AuthReason.BAD_SIGNATURE, "Signature verification failed", {"kid": kid}) from exc

    def _check_time_claims(self, claims: Dict[str, Any]) -> None:
        now = self._clock()

        exp = claims.get("exp")
        if not _is_number(exp):
            raise AuthError(AuthReason.MALFORMED_TOKEN, "Token missing expiry")
        if now >= exp + self.leeway:
            raise AuthError(AuthReason.EXPIRED, "Token has expired")

        nbf = claims.get("nbf")
        if nbf is not None:
            if not _is_number(nbf):
                raise AuthError(AuthReason.MALFORMED_TOKEN, "Token has invalid not-before claim")
            if nbf > now + self.leeway:
                raise AuthError(AuthReason.NOT_YET_VALID, "Token not yet valid")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
