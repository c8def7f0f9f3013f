"""
Unit tests for IdentityVerifier.
"""

import jwt as pyjwt
import pytest

from service_metering.app.auth.keyring import KeyRing
from service_metering.app.auth.verifier import (
    AuthReason,
    IdentityVerifier,
    extract_bearer_token,
    mask_host,
)
from shared.test_helpers import (
    TEST_ISSUER,
    TEST_JWKS_URL,
    FakeClock,
    MockJWKSServer,
    bearer,
    create_test_token,
    generate_ec_key,
    generate_rsa_key,
)

FIXED_NOW = 1_700_000_000


class TestIdentityVerifier:
    """Test cases for IdentityVerifier."""

    @pytest.fixture(scope="class")
    def ec_key(self):
        return generate_ec_key(kid="ec-1")

    @pytest.fixture(scope="class")
    def rsa_key(self):
        return generate_rsa_key(kid="rsa-1")

    @pytest.fixture
    def server(self, ec_key, rsa_key):
        return MockJWKSServer(ec_key, rsa_key)

    @pytest.fixture
    def verifier(self, server):
        keyring = KeyRing(TEST_JWKS_URL, client=server.client(), clock=FakeClock())
        return IdentityVerifier(
            keyring,
            issuer=TEST_ISSUER,
            admin_subjects={"admin-1"},
            clock=lambda: FIXED_NOW + 10,
        )

    def token(self, key, **kwargs):
        kwargs.setdefault("now", FIXED_NOW)
        return create_test_token(key, **kwargs)

    @pytest.mark.asyncio
    async def test_verify_es256_token(self, verifier, ec_key):
        """Test a valid ES256 token yields the subject."""
        result = await verifier.verify(bearer(self.token(ec_key)), request_id="req-1")

        assert result.ok
        assert result.error is None
        assert result.identity.subject == "user-123"
        assert result.identity.is_admin is False
        assert result.request_id == "req-1"

    @pytest.mark.asyncio
    async def test_verify_rs256_token(self, verifier, rsa_key):
        """Test a valid RS256 token yields the subject."""
        result = await verifier.verify(bearer(self.token(rsa_key, subject="user-rsa")))

        assert result.ok
        assert result.identity.subject == "user-rsa"

    @pytest.mark.asyncio
    async def test_scheme_is_case_insensitive(self, verifier, ec_key):
        """Test a lowercase scheme is accepted."""
        result = await verifier.verify(f"bearer {self.token(ec_key)}")

        assert result.ok

    @pytest.mark.asyncio
    @pytest.mark.parametrize("authorization", [None, "", "Basic dXNlcjpwYXNz", "Bearer", "Bearer a b"])
    async def test_missing_credential(self, verifier, authorization):
        """Test absent or malformed headers are rejected as no credential."""
        result = await verifier.verify(authorization)

        assert not result.ok
        assert result.reason is AuthReason.NO_CREDENTIAL
        assert result.error.status_code == 401

    @pytest.mark.asyncio
    async def test_undecodable_token(self, verifier, server):
        """Test garbage tokens are malformed and never reach the key ring."""
        result = await verifier.verify(bearer("abc.def.ghi"))

        assert result.reason is AuthReason.MALFORMED_TOKEN
        assert server.calls == 0

    @pytest.mark.asyncio
    async def test_token_without_kid(self, verifier, ec_key):
        """Test a token without a key id is malformed."""
        result = await verifier.verify(bearer(self.token(ec_key, kid="")))

        assert result.reason is AuthReason.MALFORMED_TOKEN

    @pytest.mark.asyncio
    async def test_missing_subject(self, verifier, ec_key):
        """Test a token without a subject is malformed."""
        result = await verifier.verify(bearer(self.token(ec_key, subject=None)))

        assert result.reason is AuthReason.MALFORMED_TOKEN

    @pytest.mark.asyncio
    async def test_missing_expiry(self, verifier, ec_key):
        """Test a token without an expiry is malformed."""
        result = await verifier.verify(bearer(self.token(ec_key, expires_in=None)))

        assert result.reason is AuthReason.MALFORMED_TOKEN

    @pytest.mark.asyncio
    async def test_unknown_key(self, verifier, ec_key):
        """Test a kid that is not published is rejected."""
        result = await verifier.verify(bearer(self.token(ec_key, kid="rotated-away")))

        assert result.reason is AuthReason.UNKNOWN_KEY
        assert result.error.details == {"kid": "rotated-away"}

    @pytest.mark.asyncio
    async def test_signature_from_wrong_key(self, verifier):
        """Test a token signed by a different key under a published kid fails."""
        impostor = generate_ec_key(kid="ec-1")

        result = await verifier.verify(bearer(self.token(impostor)))

        assert result.reason is AuthReason.BAD_SIGNATURE

    @pytest.mark.asyncio
    async def test_tampered_payload(self, verifier, ec_key):
        """Test a token whose payload was swapped fails signature checks."""
        header, _, signature = self.token(ec_key).split(".")
        _, payload, _ = self.token(ec_key, subject="someone-else").split(".")

        result = await verifier.verify(bearer(f"{header}.{payload}.{signature}"))

        assert result.reason is AuthReason.BAD_SIGNATURE

    @pytest.mark.asyncio
    async def test_symmetric_algorithm_rejected(self, verifier, server):
        """Test HS256 tokens are rejected before any key lookup."""
        token = pyjwt.encode(
            {"sub": "user-123", "iss": TEST_ISSUER, "exp": FIXED_NOW + 3600},
            "a-shared-secret-that-is-at-least-32-bytes",
            algorithm="HS256",
            headers={"kid": "ec-1"},
        )

        result = await verifier.verify(bearer(token))

        assert result.reason is AuthReason.BAD_SIGNATURE
        assert server.calls == 0

    @pytest.mark.asyncio
    async def test_algorithm_must_match_key_type(self, verifier, rsa_key):
        """Test an RSA-signed token cannot claim an EC key."""
        result = await verifier.verify(bearer(self.token(rsa_key, kid="ec-1")))

        assert result.reason is AuthReason.BAD_SIGNATURE

    @pytest.mark.asyncio
    async def test_expired_token(self, verifier, ec_key):
        """Test an expired token is rejected."""
        result = await verifier.verify(bearer(self.token(ec_key, expires_in=-60)))

        assert result.reason is AuthReason.EXPIRED

    @pytest.mark.asyncio
    async def test_token_not_yet_valid(self, verifier, ec_key):
        """Test a token with a future not-before is rejected."""
        result = await verifier.verify(bearer(self.token(ec_key, not_before=300)))

        assert result.reason is AuthReason.NOT_YET_VALID

    @pytest.mark.asyncio
    async def test_leeway_allows_small_clock_skew(self, server, ec_key):
        """Test configured leeway tolerates recently expired tokens."""
        keyring = KeyRing(TEST_JWKS_URL, client=server.client(), clock=FakeClock())
        verifier = IdentityVerifier(keyring, issuer=TEST_ISSUER, leeway=30, clock=lambda: FIXED_NOW + 10)

        result = await verifier.verify(bearer(self.token(ec_key, expires_in=0)))

        assert result.ok

    @pytest.mark.asyncio
    async def test_issuer_mismatch_masks_hosts(self, verifier, ec_key):
        """Test a foreign issuer is rejected without leaking full hostnames."""
        token = self.token(ec_key, issuer="https://evil.example.org/auth/v1")

        result = await verifier.verify(bearer(token))

        assert result.reason is AuthReason.ISSUER_MISMATCH
        assert result.error.details == {"expected_host": "idp***est", "actual_host": "evi***org"}

    @pytest.mark.asyncio
    async def test_keys_unavailable(self, verifier, server, ec_key):
        """Test an unreachable key endpoint fails closed with 503."""
        server.fail = True

        result = await verifier.verify(bearer(self.token(ec_key)))

        assert result.reason is AuthReason.KEYS_UNAVAILABLE
        assert result.error.status_code == 503

    @pytest.mark.asyncio
    async def test_admin_subject(self, verifier, ec_key):
        """Test configured admin subjects are flagged."""
        result = await verifier.verify(bearer(self.token(ec_key, subject="admin-1")))

        assert result.identity.is_admin is True
        assert verifier.is_admin("admin-1")
        assert not verifier.is_admin("user-123")


class TestHeaderHelpers:
    """Test cases for header parsing and masking helpers."""

    def test_extract_bearer_token(self):
        assert extract_bearer_token("Bearer abc") == "abc"
        assert extract_bearer_token("  BEARER   abc  ") == "abc"
        assert extract_bearer_token("Token abc") is None
        assert extract_bearer_token(None) is None

    def test_mask_host(self):
        assert mask_host("https://idp.example.test/auth/v1") == "idp***est"
        assert mask_host("https://short.io") == "sho***.io"
        assert mask_host("https://a.io") == "***"
        assert mask_host(None) == "***"
        assert mask_host("") == "***"
