"""
Test helper functions and factory methods for the metering gateway.
"""

import asyncio
import time
import uuid
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import httpx
import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from jwt.algorithms import ECAlgorithm, RSAAlgorithm

TEST_ISSUER = "https://idp.example.test/auth/v1"
TEST_JWKS_URL = f"{TEST_ISSUER}/.well-known/jwks.json"


@dataclass
class SigningKey:
    """Private key plus the public JWK an identity provider would publish."""
    kid: str
    alg: str
    private_pem: bytes
    public_jwk: Dict[str, Any] = field(default_factory=dict)


def generate_ec_key(kid: Optional[str] = None, alg: str = "ES256") -> SigningKey:
    """Generate an EC signing key for ES256 or ES384."""
    curve = ec.SECP256R1() if alg == "ES256" else ec.SECP384R1()
    private_key = ec.generate_private_key(curve)
    public_jwk = ECAlgorithm.to_jwk(private_key.public_key(), as_dict=True)
    return _build_signing_key(private_key, public_jwk, kid, alg)


def generate_rsa_key(kid: Optional[str] = None, alg: str = "RS256") -> SigningKey:
    """Generate an RSA signing key for RS256/RS384/RS512."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    public_jwk = RSAAlgorithm.to_jwk(private_key.public_key(), as_dict=True)
    return _build_signing_key(private_key, public_jwk, kid, alg)


def _build_signing_key(private_key, public_jwk: Dict[str, Any], kid: Optional[str], alg: str) -> SigningKey:
    kid = kid or f"key-{uuid.uuid4().hex[:8]}"
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_jwk.update({"kid": kid, "alg": alg, "use": "sig"})
    return SigningKey(kid=kid, alg=alg, private_pem=private_pem, public_jwk=public_jwk)


def jwks_document(*keys: SigningKey) -> Dict[str, List[Dict[str, Any]]]:
    """Build a key discovery document publishing the given keys."""
    return {"keys": [dict(key.public_jwk) for key in keys]}


def create_test_token(key: SigningKey,
                      subject: Optional[str] = "user-123",
                      issuer: Optional[str] = TEST_ISSUER,
                      expires_in: Optional[int] = 3600,
                      not_before: Optional[int] = None,
                      kid: Optional[str] = None,
                      now: Optional[float] = None,
                      extra_claims: Optional[Dict[str, Any]] = None) -> str:
    """Mint a signed access token.

    Passing ``None`` for subject, issuer or expires_in leaves that claim out.
    ``not_before`` is an offset in seconds from ``now``.
    """
    now = int(now if now is not None else time.time())
    payload: Dict[str, Any] = {"iat": now, "role": "authenticated"}
    if subject is not None:
        payload["sub"] = subject
    if issuer is not None:
        payload["iss"] = issuer
    if expires_in is not None:
        payload["exp"] = now + expires_in
    if not_before is not None:
        payload["nbf"] = now + not_before
    if extra_claims:
        payload.update(extra_claims)

    return jwt.encode(
        payload,
        key.private_pem,
        algorithm=key.alg,
        headers={"kid": kid if kid is not None else key.kid},
    )


def bearer(token: str) -> str:
    return f"Bearer {token}"


class FakeClock:
    """Manually advanced clock usable wherever a ``time.monotonic``-style callable is accepted."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUtcClock:
    """Manually advanced UTC datetime clock for ledger and scheduler tests."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class MockJWKSServer:
    """In-process key discovery endpoint served through ``httpx.MockTransport``."""

    def __init__(self, *keys: SigningKey):
        self.document: Dict[str, Any] = jwks_document(*keys)
        self.calls = 0
        self.fail = False
        self.delay = 0.0

    def publish(self, *keys: SigningKey) -> None:
        self.document = jwks_document(*keys)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            return httpx.Response(503, json={"error": "unavailable"})
        return httpx.Response(200, json=self.document)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
