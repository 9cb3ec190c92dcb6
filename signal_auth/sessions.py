# signal_auth/sessions.py
import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from .errors import SessionAlreadyPendingError, SessionNotFoundError
from .identity import Identity


def session_key(identifier: str, state: str) -> str:
    # unique per user + client-supplied state (the state carries the entropy)
    return f"{identifier}::{state}"


class SessionStatus(str, Enum):
    PENDING_CHALLENGE = "pending_challenge"
    CODE_ISSUED = "code_issued"


@dataclass
class ChallengeSession:
    session_key: str
    kid: str
    identity: Identity
    client_id: str
    redirect_uri: str
    state: str
    code_challenge: str
    challenge_code: str = field(repr=False)

    created_at: int = field(default_factory=lambda: int(time.time()))
    expires_at: Optional[int] = None  # None: the challenge never lapses
    status: SessionStatus = SessionStatus.PENDING_CHALLENGE
    authorization_code: Optional[str] = field(default=None, repr=False)

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and int(time.time()) >= self.expires_at

    @property
    def is_live(self) -> bool:
        # an issued code keeps its session alive until redeemed
        return self.status != SessionStatus.PENDING_CHALLENGE or not self.is_expired


class SessionStore:
    """
    In-memory table of in-flight authorization attempts plus the pointer
    table (authorization code -> session key).

    Lifecycle of one entry:
      create   -> PENDING_CHALLENGE
      promote  -> CODE_ISSUED (pointer recorded, session kept)
      consume  -> gone (session and pointer, exactly once)

    A PENDING_CHALLENGE entry past its expires_at is no longer live: `create`
    replaces it and the flow refuses its challenge code.

    Locking:
      `create` is an atomic insert-if-absent and takes the lock itself.
      The other primitives do not await; callers that chain several of them
      into one transition (verify+promote, resolve+consume) must hold `lock`.
    """

    def __init__(self):
        self.sessions: Dict[str, ChallengeSession] = {}
        self.pointers: Dict[str, str] = {}
        self.lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self.sessions)

    async def create(self, key: str, record: ChallengeSession) -> ChallengeSession:
        async with self.lock:
            existing = self.sessions.get(key)
            if existing is not None and existing.is_live:
                raise SessionAlreadyPendingError(
                    "Invalid request",
                    f"session {key!r} already pending",
                )
            record.session_key = key
            self.sessions[key] = record
            return record

    def find(self, key: str) -> Optional[ChallengeSession]:
        return self.sessions.get(key)

    def get(self, key: str) -> ChallengeSession:
        sess = self.sessions.get(key)
        if sess is None:
            raise SessionNotFoundError("Invalid session", f"no session {key!r}")
        return sess

    def promote(self, key: str, issued_code: str) -> ChallengeSession:
        """Record the pointer for a freshly issued code. Caller must hold lock."""
        sess = self.get(key)
        if sess.status != SessionStatus.PENDING_CHALLENGE:
            raise SessionNotFoundError(
                "Invalid session",
                f"session {key!r} is {sess.status.value}, not pending",
            )
        sess.status = SessionStatus.CODE_ISSUED
        sess.authorization_code = issued_code
        self.pointers[issued_code] = key
        return sess

    def resolve_pointer(self, code: str) -> str:
        key = self.pointers.get(code)
        if key is None or key not in self.sessions:
            raise SessionNotFoundError("Unknown authorization code", "no pointer for code")
        return key

    def consume(self, key: str) -> ChallengeSession:
        """Remove a session and its pointer. Caller must hold lock."""
        sess = self.sessions.pop(key, None)
        if sess is None:
            raise SessionNotFoundError("Invalid session", f"no session {key!r}")
        if sess.authorization_code is not None:
            self.pointers.pop(sess.authorization_code, None)
        return sess

    def discard(self, key: str) -> None:
        """Drop a session that never left PENDING_CHALLENGE (aborted request)."""
        sess = self.sessions.get(key)
        if sess is not None and sess.status == SessionStatus.PENDING_CHALLENGE:
            del self.sessions[key]
