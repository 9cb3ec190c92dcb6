"""
signal_auth/keystore.py

Signing key pairs addressed by an opaque key id (KID).

Security model:
  - Every pair is ECDSA over P-256 (JWS alg ES256)
  - Keys are generated in-process and live only in memory
  - The store only grows: pairs are never removed, so reads of an existing
    KID need no synchronization against writes
  - Only the public half is ever exported (JWKS discovery); the private JWK
    form is never built
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from cryptography.hazmat.primitives.asymmetric import ec
from jwt.algorithms import ECAlgorithm

from .errors import KeyNotFoundError


SIGNING_ALGORITHM = "ES256"


@dataclass(frozen=True)
class KeyPair:
    kid: str
    private_key: ec.EllipticCurvePrivateKey
    public_key: ec.EllipticCurvePublicKey
    public_jwk: Dict[str, Any] = field(repr=False)
    algorithm: str = SIGNING_ALGORITHM


def export_public_jwk(public_key: ec.EllipticCurvePublicKey, kid: str) -> Dict[str, Any]:
    """Public JWK (kty/crv/x/y) tagged with kid, use and alg."""
    jwk = ECAlgorithm.to_jwk(public_key, as_dict=True)
    jwk.update({"kid": kid, "use": "sig", "alg": SIGNING_ALGORITHM})
    return jwk


class KeyStore:
    def __init__(self):
        self._pairs: Dict[str, KeyPair] = {}
        self._default_kid: Optional[str] = None

    def __contains__(self, kid: object) -> bool:
        return kid in self._pairs

    def __len__(self) -> int:
        return len(self._pairs)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._pairs))

    @property
    def default_kid(self) -> str:
        if self._default_kid is None:
            raise KeyNotFoundError("no signing key", "key store is empty")
        return self._default_kid

    def generate_key_pair(self, kid: Optional[str] = None) -> str:
        """
        Generate a fresh P-256 pair under `kid` (random uuid4 if omitted).

        Idempotent per KID: an existing pair is kept and its KID returned.
        """
        kid = kid or str(uuid.uuid4())
        if kid in self._pairs:
            return kid

        private_key = ec.generate_private_key(ec.SECP256R1())
        public_key = private_key.public_key()

        self._pairs[kid] = KeyPair(
            kid=kid,
            private_key=private_key,
            public_key=public_key,
            public_jwk=export_public_jwk(public_key, kid),
        )
        if self._default_kid is None:
            self._default_kid = kid
        return kid

    def ensure_key_pair(self) -> str:
        """Guarantee at least one pair exists; returns the default KID."""
        if self._default_kid is None:
            return self.generate_key_pair()
        return self._default_kid

    def public_key_set(self) -> List[Dict[str, Any]]:
        return [dict(p.public_jwk) for p in self._pairs.values()]

    def _pair(self, kid: str) -> KeyPair:
        pair = self._pairs.get(kid)
        if pair is None:
            raise KeyNotFoundError("unknown key", f"no keypair with kid {kid!r}")
        return pair

    def private_key(self, kid: str) -> ec.EllipticCurvePrivateKey:
        return self._pair(kid).private_key

    def public_key(self, kid: str) -> ec.EllipticCurvePublicKey:
        return self._pair(kid).public_key
