# signal_auth/tokens.py
#
# -----------------------------------------------------------------------------
# Access tokens
# -----------------------------------------------------------------------------
# Access tokens are standard JWTs (RFC 7519) signed ES256 with one of the key
# store's pairs. The KID travels in the JOSE header (so a resource server can
# pick the key from /.well-known/jwks.json) and is mirrored as a claim.
#
# Claims:
#   sub              identifier (username or phone)
#   signal_username  present for username identities
#   phone            present for phone identities
#   iss / aud        authorization server / resource server base URLs
#   kid, jti, iat, exp
#
# Tokens are not persisted: validity is signature + expiry only.
# -----------------------------------------------------------------------------

import base64
import time
import uuid
from typing import Any, Dict, Optional

import jwt

from .identity import Identity
from .keystore import SIGNING_ALGORITHM, KeyStore


ACCESS_TOKEN_TTL = 4 * 3600


def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 WITHOUT padding."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


class TokenIssuer:
    def __init__(
        self,
        keys: KeyStore,
        issuer: str,
        audience: str,
        ttl_seconds: int = ACCESS_TOKEN_TTL,
    ):
        self.keys = keys
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds

    def claims(self, identity: Identity, kid: str, now: Optional[int] = None) -> Dict[str, Any]:
        now = int(time.time()) if now is None else now
        claims: Dict[str, Any] = {
            "sub": identity.identifier,
            "iss": self.issuer,
            "aud": self.audience,
            "kid": kid,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self.ttl_seconds,
        }
        if identity.username:
            claims["signal_username"] = identity.username
        if identity.phone:
            claims["phone"] = identity.phone
        return claims

    def issue(self, identity: Identity, kid: str) -> str:
        private_key = self.keys.private_key(kid)
        return jwt.encode(
            self.claims(identity, kid),
            private_key,
            algorithm=SIGNING_ALGORITHM,
            headers={"kid": kid},
        )

    def decode(self, token: str) -> Dict[str, Any]:
        """
        Verify a token issued here and return its claims.

        Raises jwt.PyJWTError (bad signature, expired, wrong iss/aud) or
        KeyNotFoundError (header names an unknown KID).
        """
        kid = jwt.get_unverified_header(token).get("kid")
        public_key = self.keys.public_key(str(kid))
        return jwt.decode(
            token,
            public_key,
            algorithms=[SIGNING_ALGORITHM],
            issuer=self.issuer,
            audience=self.audience,
            options={"require": ["exp", "iat", "sub", "jti"]},
        )
