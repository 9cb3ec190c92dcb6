import base64
import hashlib
from datetime import datetime, timezone
from typing import List, Tuple

import pytest

from signal_auth.audit import AuditLog
from signal_auth.codes import AuthorizationCodeIssuer
from signal_auth.config import Settings
from signal_auth.flow import AuthorizationFlow
from signal_auth.keystore import KeyStore
from signal_auth.sessions import SessionStore
from signal_auth.signal_client import DeliveryReceipt, MessageDeliveryError
from signal_auth.tokens import TokenIssuer


class RecordingChannel:
    """Stands in for the Signal service; remembers every message sent."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Tuple[str, List[str]]] = []

    async def send(self, message: str, recipients: List[str]) -> DeliveryReceipt:
        if self.fail:
            raise MessageDeliveryError("signal service unreachable")
        self.sent.append((message, list(recipients)))
        return DeliveryReceipt(timestamp=datetime.now(timezone.utc))

    def last_code_for(self, identifier: str) -> str:
        for message, recipients in reversed(self.sent):
            if identifier in recipients:
                return message
        raise AssertionError(f"no challenge sent to {identifier}")


def pkce_challenge(verifier: str) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=").decode()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        AUTHORIZATION_SERVER_BASE_URL="https://auth.example.test/",
        RESOURCE_SERVER_BASE_URL="https://api.example.test",
        CLIENT_BASE_URL="https://app.example.test",
        SIGNAL_SERVICE_BASE_URL="http://signal.example.test",
        FROM_NUMBER="+12223334444",
        AUDIT_DIR=tmp_path / "audit",
    )


@pytest.fixture
def keys() -> KeyStore:
    ks = KeyStore()
    ks.generate_key_pair("kid-a")
    return ks


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def audit(settings) -> AuditLog:
    return AuditLog(settings.AUDIT_DIR)


@pytest.fixture
def flow(settings, keys, channel, audit) -> AuthorizationFlow:
    return AuthorizationFlow(
        keys=keys,
        sessions=SessionStore(),
        codes=AuthorizationCodeIssuer(keys),
        tokens=TokenIssuer(keys, issuer=settings.issuer, audience=settings.audience),
        channel=channel,
        audit=audit,
        challenge_code_length=settings.CHALLENGE_CODE_LENGTH,
        challenge_ttl_seconds=settings.CHALLENGE_TTL_SECONDS,
    )
