"""
Administrative credentials.

One shared secret backs every privileged call. Callers present either the
raw key or a short-lived HS256 service token signed with it; tokens carry
a scope so a webhook relay never holds full admin rights.
"""

import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import jwt
from shared.errors import AuthenticationError, AuthorizationError, ValidationError
from shared.logging import get_logger


ADMIN_SCOPE = "ledger:admin"
WEBHOOK_SCOPE = "ledger:webhook"

# Scopes each presented scope satisfies.
_IMPLIED_SCOPES = {
    ADMIN_SCOPE: {ADMIN_SCOPE, WEBHOOK_SCOPE},
    WEBHOOK_SCOPE: {WEBHOOK_SCOPE},
}

_ALGORITHM = "HS256"


class CredentialAuthority:
    """Issues and checks administrative credentials."""

    def __init__(self, admin_key: str, issuer: str = "accounts-ledger", default_ttl_seconds: int = 3600):
        self._admin_key = admin_key
        self.issuer = issuer
        self.default_ttl_seconds = default_ttl_seconds
        self.logger = get_logger("ledger.auth.credentials")

    @property
    def configured(self) -> bool:
        return bool(self._admin_key)

    def issue_token(self, scope: str, ttl_seconds: Optional[int] = None) -> Tuple[str, datetime]:
        """Sign a service token for ``scope``; returns the token and its expiry."""
        if scope not in _IMPLIED_SCOPES:
            raise ValidationError("Unknown scope", {"scope": scope})
        if not self.configured:
            raise AuthorizationError("Administrative key is not configured")

        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=ttl_seconds or self.default_ttl_seconds)
        payload = {
            "iss": self.issuer,
            "scope": scope,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(payload, self._admin_key, algorithm=_ALGORITHM)

        self.logger.info("Service token issued", scope=scope, expires_at=expires_at.isoformat())
        return token, expires_at

    def authorize(self, credential: Optional[str], scope: str) -> None:
        """Raise unless ``credential`` grants ``scope``."""
        if not credential:
            raise AuthenticationError("Credential required")
        if not self.configured:
            raise AuthorizationError()

        if hmac.compare_digest(credential.encode(), self._admin_key.encode()):
            return

        claims = self._decode(credential)
        granted = _IMPLIED_SCOPES.get(claims.get("scope"), set())
        if scope not in granted:
            self.logger.warning("Credential scope insufficient",
                                presented=claims.get("scope"), required=scope)
            raise AuthorizationError(details={"required_scope": scope})

    def _decode(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self._admin_key,
                algorithms=[_ALGORITHM],
                issuer=self.issuer,
                options={"require": ["exp", "iss", "scope"]},
            )
        except jwt.InvalidTokenError as exc:
            self.logger.warning("Credential rejected", error=str(exc))
            raise AuthorizationError() from exc
