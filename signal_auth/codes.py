"""
signal_auth/codes.py

Authorization codes and PKCE.

An authorization code is a hex-encoded ECDSA-SHA256 (DER) signature over the
identity's identifier, made with the private key of the session's KID.

What the code proves:
  - it was produced by this server, for this identity, under this KID

What it does NOT prove:
  - which session, client or transaction it belongs to
    (ECDSA signatures are randomized, so every issued code is distinct, and
    the session store's pointer table is what binds a code to one session)
"""

import hashlib
import hmac

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from .errors import ConfigurationFault, KeyNotFoundError
from .identity import Identity
from .keystore import KeyStore
from .tokens import b64url_encode


def pkce_s256(code_verifier: str) -> str:
    """base64url( SHA-256(code_verifier) ) without padding (RFC 7636 S256)."""
    return b64url_encode(hashlib.sha256(code_verifier.encode("utf-8")).digest())


def verify_pkce(code_verifier: str, code_challenge: str) -> bool:
    if not code_verifier or not code_challenge:
        return False
    return hmac.compare_digest(
        pkce_s256(code_verifier).encode("utf-8"),
        str(code_challenge).encode("utf-8"),
    )


class AuthorizationCodeIssuer:
    def __init__(self, keys: KeyStore):
        self.keys = keys

    def issue(self, identity: Identity, kid: str) -> str:
        private_key = self.keys.private_key(kid)
        sig = private_key.sign(
            identity.identifier.encode("utf-8"),
            ec.ECDSA(hashes.SHA256()),
        )
        return sig.hex()

    def verify(self, identity: Identity, kid: str, code: str) -> bool:
        """
        True only if `code` is a signature over the identifier under `kid`.

        A corrupted code or a code from another key is a plain False.
        A KID with no public key is a misconfiguration: ConfigurationFault.
        """
        try:
            public_key = self.keys.public_key(kid)
        except KeyNotFoundError as e:
            raise ConfigurationFault(f"no public key for kid {kid!r}") from e

        try:
            sig = bytes.fromhex(str(code))
        except ValueError:
            return False

        try:
            public_key.verify(
                sig,
                identity.identifier.encode("utf-8"),
                ec.ECDSA(hashes.SHA256()),
            )
        except InvalidSignature:
            return False
        return True
