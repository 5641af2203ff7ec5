#!/usr/bin/env python3
"""
verify_audit.py - Verify the tamper-evident claim audit log (JSONL).

Checks:
- every line parses as a JSON object
- hash chain: prev_hash links and hash = SHA3-256(prev || canonical(event))
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

from moltens.audit import GENESIS_HASH, LOG_NAME, STATE_NAME, chain_hash


@dataclass
class VerifyResult:
    ok: bool
    lines: int
    last_hash: Optional[str]
    message: str


def _is_hex64(s) -> bool:
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
    last_hash: Optional[str] = None

    with jsonl_path.open("r", encoding="utf-8") as f:
        for lineno, raw in enumerate(f, start=1):
            line = raw.strip()
            if not line:
                continue
            lines += 1
            where = f"{jsonl_path}:{lineno}"

            try:
                event = json.loads(line)
            except ValueError as e:
                return VerifyResult(False, lines, last_hash, f"{where}: invalid JSON: {e}")
            if not isinstance(event, dict):
                return VerifyResult(False, lines, last_hash, f"{where}: JSON root must be object")

            claimed_prev = event.pop("prev_hash", None)
            claimed_hash = event.pop("hash", None)
            if not _is_hex64(claimed_prev) or not _is_hex64(claimed_hash):
                return VerifyResult(False, lines, last_hash, f"{where}: missing or malformed chain fields")

            if claimed_prev != prev:
                return VerifyResult(
                    False, lines, last_hash,
                    f"{where}: prev_hash mismatch: expected {prev} got {claimed_prev}",
                )

            recomputed = chain_hash(prev, event)
            if claimed_hash != recomputed:
                return VerifyResult(
                    False, lines, last_hash,
                    f"{where}: hash mismatch: expected {recomputed} got {claimed_hash}",
                )

            prev = last_hash = claimed_hash

    if state_path is not None:
        if not state_path.exists():
            return VerifyResult(False, lines, last_hash, f"State file not found: {state_path}")
        state_val = state_path.read_text(encoding="utf-8").strip()
        if state_val != (last_hash or ""):
            return VerifyResult(False, lines, last_hash, f"State mismatch: state={state_val} log_last={last_hash}")

    return VerifyResult(True, lines, last_hash, "OK")


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Verify MoltENS claim audit log integrity.")
    p.add_argument(
        "audit_dir",
        type=Path,
        nargs="?",
        default=Path("audit"),
        help=f"Directory holding {LOG_NAME} and {STATE_NAME} (default: ./audit)",
    )
    p.add_argument("--no-state", action="store_true", help="Skip the state file check.")
    args = p.parse_args(argv)

    state = None if args.no_state else args.audit_dir / STATE_NAME
    res = verify_audit(args.audit_dir / LOG_NAME, state_path=state)

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
