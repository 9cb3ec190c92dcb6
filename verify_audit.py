#!/usr/bin/env python3
"""
verify_audit.py — Verify the tamper-evident authorization audit log (JSONL).

Checks:
- every line parses as a JSON object
- prev_hash links to the previous line's hash (first line: 64 zeros)
- hash = SHA3-256(prev_hash_bytes || canonical_json(event_without_hash_fields))
- optional state file holds the last hash

Exit codes:
- 0: OK
- 1: Verification failed
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from signal_auth.audit import GENESIS_HASH, chain_hash


@dataclass
class VerifyResult:
    ok: bool
    lines: int
    last_hash: Optional[str]
    message: str


def _is_hex64(s: object) -> bool:
    if not isinstance(s, str) or len(s) != 64:
        return False
    try:
        int(s, 16)
        return True
    except ValueError:
        return False


def verify_audit(jsonl_path: Path, state_path: Optional[Path] = None) -> VerifyResult:
    if not jsonl_path.exists():
        return VerifyResult(False, 0, None, f"Log not found: {jsonl_path}")

    lines = 0
    prev = GENESIS_HASH

    with jsonl_path.open("r", encoding="utf-8") as f:
        for lineno, raw in enumerate(f, start=1):
            line = raw.strip()
            if not line:
                continue
            lines += 1
            try:
                event = json.loads(line)
            except ValueError as e:
                return VerifyResult(False, lines, prev, f"{jsonl_path}:{lineno}: invalid JSON: {e}")
            if not isinstance(event, dict):
                return VerifyResult(False, lines, prev, f"{jsonl_path}:{lineno}: JSON root must be object")

            if not _is_hex64(event.get("prev_hash")) or not _is_hex64(event.get("hash")):
                return VerifyResult(False, lines, prev, f"{jsonl_path}:{lineno}: missing or malformed chain fields")

            if event["prev_hash"] != prev:
                return VerifyResult(
                    False, lines, prev,
                    f"{jsonl_path}:{lineno}: prev_hash mismatch: expected {prev} got {event['prev_hash']}",
                )

            recomputed = chain_hash(prev, event)
            if event["hash"] != recomputed:
                return VerifyResult(
                    False, lines, prev,
                    f"{jsonl_path}:{lineno}: hash mismatch: expected {recomputed} got {event['hash']}",
                )
            prev = event["hash"]

    last_hash = prev if lines else None

    if state_path is not None:
        if not state_path.exists():
            return VerifyResult(False, lines, last_hash, f"State file not found: {state_path}")
        state_val = state_path.read_text(encoding="utf-8").strip()
        if state_val != (last_hash or ""):
            return VerifyResult(False, lines, last_hash, f"State mismatch: state={state_val} log_last={last_hash}")

    return VerifyResult(True, lines, last_hash, "OK")


def main(argv: Optional[list] = None) -> int:
    p = argparse.ArgumentParser(description="Verify signal-auth audit log integrity (hash-chained JSONL).")
    p.add_argument("log", type=Path, help="Path to audit JSONL file (e.g. audit/auth_audit.jsonl)")
    p.add_argument(
        "--state",
        type=Path,
        default=None,
        help="Optional state file containing last hash (e.g. audit/auth_audit.state)",
    )
    args = p.parse_args(argv)

    res = verify_audit(args.log, state_path=args.state)
    out = sys.stdout if res.ok else sys.stderr
    print("OK" if res.ok else "FAIL", file=out)
    if not res.ok:
        print(res.message, file=out)
    print(f"lines={res.lines}", file=out)
    if res.last_hash:
        print(f"last_hash={res.last_hash}", file=out)
    return 0 if res.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
