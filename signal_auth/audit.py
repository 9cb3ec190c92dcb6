"""
signal_auth/audit.py

Tamper-evident audit log of the authorization flow.

We append one JSON object per line (JSONL). Each event is hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

Properties:
- Any modification, deletion, or reordering of log lines breaks the chain.
- Chain state is persisted in <dir>/auth_audit.state
- Uses file locking (flock) to keep chain consistent under concurrency.
- Identifiers, challenge codes and authorization codes are never written in
  clear: only their SHA3-256 digests.

Every event is also emitted as a JSON line on the "signal-auth.audit" logger.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

audit_logger = logging.getLogger("signal-auth.audit")

GENESIS_HASH = "0" * 64  # 32 bytes hex

LOG_NAME = "auth_audit.jsonl"
STATE_NAME = "auth_audit.state"
LOCK_NAME = "auth_audit.lock"


# -----------------------------------------------------------------------------
# Canonical JSON
# -----------------------------------------------------------------------------
def canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """
    Deterministic JSON bytes for hashing and logging:
    - sorted keys
    - no whitespace
    - UTF-8
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def chain_hash(prev_hash: str, event: Dict[str, Any]) -> str:
    e = dict(event)
    e.pop("prev_hash", None)
    e.pop("hash", None)
    return sha3_256_hex(bytes.fromhex(prev_hash) + canonical_json_bytes(e))


def build_common(
    *,
    event: str,
    identifier: Optional[str] = None,
    client_id: Optional[str] = None,
    kid: Optional[str] = None,
    state: Optional[str] = None,
    code: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build common audit fields. Keep this "boring" and stable.

    Secrets and personal identifiers are stored as digests so the log can
    still correlate events for one user/code without containing them.
    """
    out: Dict[str, Any] = {"ts": int(time.time()), "event": event}

    if identifier:
        out["identifier_sha3_256"] = sha3_256_hex(identifier.encode("utf-8"))
    if client_id:
        out["client_id"] = client_id
    if kid:
        out["kid"] = kid
    if state:
        out["state_sha3_256"] = sha3_256_hex(state.encode("utf-8"))
    if code:
        out["code_sha3_256"] = sha3_256_hex(code.encode("utf-8"))
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    return out


class AuditLog:
    def __init__(self, directory: Path, enabled: bool = True):
        self.directory = Path(directory)
        self.enabled = enabled

    @property
    def log_path(self) -> Path:
        return self.directory / LOG_NAME

    @property
    def state_path(self) -> Path:
        return self.directory / STATE_NAME

    @property
    def lock_path(self) -> Path:
        return self.directory / LOCK_NAME

    def _read_last_hash_unlocked(self) -> str:
        """Caller must hold lock. GENESIS_HASH if state missing or garbled."""
        try:
            s = self.state_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return GENESIS_HASH
        if len(s) != 64:
            return GENESIS_HASH
        try:
            bytes.fromhex(s)
        except ValueError:
            return GENESIS_HASH
        return s.lower()

    def append(self, event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Append one event with hash chaining and return the stored record.

        - locks the dedicated lock file
        - reads prev hash
        - computes next hash over the event (excluding hash fields)
        - writes the JSONL line, then updates the state file
        """
        # Never allow callers to inject their own chain fields.
        e = dict(event)
        e.pop("prev_hash", None)
        e.pop("hash", None)

        audit_logger.info(canonical_json_bytes(e).decode("utf-8"))

        if not self.enabled:
            return None

        self.directory.mkdir(parents=True, exist_ok=True)

        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()

                stored = dict(e)
                stored["prev_hash"] = prev_hash
                stored["hash"] = chain_hash(prev_hash, e)

                with open(self.log_path, "ab") as f:
                    f.write(canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(stored["hash"] + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return stored

    def verify_chain(self) -> bool:
        return verify_log_chain(self.log_path)


def verify_log_chain(path: Path) -> bool:
    """
    Verify the hash chain of an audit log file.
    Returns True if valid (or absent), False otherwise.
    """
    if not path.exists():
        return True

    prev = GENESIS_HASH
    with open(path, "rb") as f:
        for raw_line in f:
            raw_line = raw_line.strip()
            if not raw_line:
                continue
            try:
                obj = json.loads(raw_line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                return False
            if not isinstance(obj, dict) or obj.get("prev_hash") != prev:
                return False
            try:
                expect = chain_hash(prev, obj)
            except ValueError:
                return False
            if expect != obj.get("hash"):
                return False
            prev = obj["hash"]

    return True
