"""
Unit tests for administrative credentials.
"""

import pytest

from shared.errors import AuthenticationError, AuthorizationError, ValidationError
from service_ledger.app.auth.credentials import ADMIN_SCOPE, WEBHOOK_SCOPE, CredentialAuthority
from shared.test_helpers import TEST_ADMIN_KEY, MockTokenGenerator


class TestCredentialAuthority:
    """Test cases for CredentialAuthority."""

    @pytest.fixture
    def authority(self):
        return CredentialAuthority(TEST_ADMIN_KEY)

    @pytest.fixture
    def tokens(self):
        return MockTokenGenerator()

    def test_raw_key_grants_every_scope(self, authority):
        authority.authorize(TEST_ADMIN_KEY, ADMIN_SCOPE)
        authority.authorize(TEST_ADMIN_KEY, WEBHOOK_SCOPE)

    def test_wrong_key_is_unauthorized(self, authority):
        with pytest.raises(AuthorizationError) as exc_info:
            authority.authorize("not-the-key", ADMIN_SCOPE)

        assert exc_info.value.message == "Unauthorized"

    def test_missing_credential_is_unauthenticated(self, authority):
        with pytest.raises(AuthenticationError):
            authority.authorize(None, ADMIN_SCOPE)

    def test_unconfigured_key_rejects_everything(self):
        authority = CredentialAuthority("")

        with pytest.raises(AuthorizationError):
            authority.authorize("anything", ADMIN_SCOPE)

    def test_issued_token_round_trip(self, authority):
        token, expires_at = authority.issue_token(WEBHOOK_SCOPE, ttl_seconds=60)

        authority.authorize(token, WEBHOOK_SCOPE)
        assert expires_at.tzinfo is not None

    def test_webhook_token_cannot_administer(self, authority, tokens):
        token = tokens.service_token(WEBHOOK_SCOPE)

        with pytest.raises(AuthorizationError):
            authority.authorize(token, ADMIN_SCOPE)

    def test_admin_token_implies_webhook(self, authority, tokens):
        authority.authorize(tokens.service_token(ADMIN_SCOPE), WEBHOOK_SCOPE)

    def test_expired_token_rejected(self, authority, tokens):
        with pytest.raises(AuthorizationError):
            authority.authorize(tokens.expired_token(), ADMIN_SCOPE)

    def test_token_from_other_issuer_rejected(self, authority):
        foreign = MockTokenGenerator(issuer="someone-else")

        with pytest.raises(AuthorizationError):
            authority.authorize(foreign.service_token(), ADMIN_SCOPE)

    def test_token_signed_with_other_key_rejected(self, authority):
        forged = MockTokenGenerator(secret="another-secret-that-is-long-enough-0000")

        with pytest.raises(AuthorizationError):
            authority.authorize(forged.service_token(), ADMIN_SCOPE)

    def test_unknown_scope_cannot_be_issued(self, authority):
        with pytest.raises(ValidationError):
            authority.issue_token("ledger:everything")
