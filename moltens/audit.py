"""
moltens/audit.py

Tamper-evident audit log of claim events.

We append one JSON object per line (JSONL). Each event is hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

Properties:
- Any modification, deletion, or reordering of log lines breaks the chain.
- Chain state is persisted in <dir>/claims_audit.state
- Uses file locking (flock) to keep chain consistent under concurrency.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional


GENESIS_HASH = "0" * 64  # 32 bytes hex

LOG_NAME = "claims_audit.jsonl"
STATE_NAME = "claims_audit.state"
LOCK_NAME = "claims_audit.lock"


def canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """Sorted keys, no whitespace, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def chain_hash(prev_hash: str, event: Dict[str, Any]) -> str:
    return sha3_256_hex(bytes.fromhex(prev_hash) + canonical_json_bytes(event))


def build_common(
    *,
    label: Optional[str] = None,
    wallet: Optional[str] = None,
    reference_token: Optional[str] = None,
    signature: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Common audit fields.

    Signatures are stored as length + hash only, so logs stay small and
    carry nothing replayable.
    """
    out: Dict[str, Any] = {"ts": int(time.time())}

    if label:
        out["label"] = label
    if wallet:
        out["wallet"] = wallet
    if reference_token:
        out["reference_token"] = reference_token
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    if signature is not None:
        sig_bytes = str(signature).encode("utf-8")
        out["signature_len"] = len(sig_bytes)
        out["signature_sha3_256"] = sha3_256_hex(sig_bytes)

    return out


class AuditLog:
    def __init__(self, directory: Path | str):
        self.directory = Path(directory)
        self.log_path = self.directory / LOG_NAME
        self.state_path = self.directory / STATE_NAME
        self.lock_path = self.directory / LOCK_NAME

    def _read_last_hash_unlocked(self) -> str:
        """Caller must hold lock. GENESIS_HASH if state missing or unreadable."""
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

    def append(self, event: Dict[str, Any]) -> str:
        """
        Append one event with hash chaining and return its hash.

        Lock -> read prev hash -> hash canonical event -> append line -> update state.
        """
        self.directory.mkdir(parents=True, exist_ok=True)

        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()

                # Never allow callers to inject their own chain fields.
                e = dict(event)
                e.pop("prev_hash", None)
                e.pop("hash", None)

                next_hash = chain_hash(prev_hash, e)

                stored = dict(e)
                stored["prev_hash"] = prev_hash
                stored["hash"] = next_hash

                with open(self.log_path, "ab") as f:
                    f.write(canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(next_hash + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return next_hash

    def verify_chain(self) -> bool:
        return verify_log_chain(self.log_path)


def verify_log_chain(path: Path) -> bool:
    """
    Verify the hash chain of an audit log file.
    Returns True if valid (or absent), False otherwise.
    """
    path = Path(path)
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
            except ValueError:
                return False
            if not isinstance(obj, dict):
                return False

            if obj.get("prev_hash") != prev:
                return False

            body = dict(obj)
            body.pop("prev_hash", None)
            line_hash = body.pop("hash", None)

            if chain_hash(prev, body) != line_hash:
                return False
            prev = line_hash

    return True
