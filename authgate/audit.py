"""
authgate/audit.py

Tamper-evident audit log of authentication decisions.

We append one JSON object per line (JSONL). Each event is hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

Properties:
- Any modification, deletion, or reordering of log lines breaks the chain.
- Chain state is persisted in <AUDIT_DIR>/auth_audit.state
- Uses file locking (flock) to keep chain consistent across workers.

Emails are recorded as SHA3-256 digests only; codes, challenges and cookies
are never recorded.
"""

from __future__ import annotations

import asyncio
import fcntl
import hashlib
import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

GENESIS_HASH = "0" * 64


# -----------------------------------------------------------------------------
# Canonical JSON
# -----------------------------------------------------------------------------
def _canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """
    Produce deterministic JSON bytes for hashing and logging:
    - sorted keys
    - no whitespace
    - UTF-8
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def email_digest(email: str) -> str:
    return _sha3_256_hex(email.strip().lower().encode("utf-8"))


class AuditLog:
    def __init__(self, audit_dir: str | Path, enabled: bool = True):
        self.enabled = enabled
        self.dir = Path(audit_dir)
        self.log_path = self.dir / "auth_audit.jsonl"
        self.state_path = self.dir / "auth_audit.state"
        self.lock_path = self.dir / "auth_audit.lock"

    def _read_last_hash_unlocked(self) -> str:
        """
        Read last hash from the state file. Caller must hold lock.
        Returns GENESIS_HASH if state missing or unreadable.
        """
        try:
            if not self.state_path.exists():
                return GENESIS_HASH
            s = self.state_path.read_text(encoding="utf-8").strip()
            if len(s) != 64:
                return GENESIS_HASH
            bytes.fromhex(s)
            return s.lower()
        except (OSError, ValueError):
            return GENESIS_HASH

    def append_event(self, event: Dict[str, Any]) -> Optional[str]:
        """
        Append one event with hash chaining; returns the new chain head.

        - locks the lock file
        - reads prev hash
        - computes next hash over canonical event (excluding hash fields)
        - writes JSONL line containing prev_hash + hash
        - updates state file
        """
        if not self.enabled:
            return None

        self.dir.mkdir(parents=True, exist_ok=True)

        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()

                # Never allow callers to inject their own chain fields.
                e = dict(event)
                e.pop("prev_hash", None)
                e.pop("hash", None)

                next_hash = _sha3_256_hex(bytes.fromhex(prev_hash) + _canonical_json_bytes(e))

                stored = dict(e)
                stored["prev_hash"] = prev_hash
                stored["hash"] = next_hash

                with open(self.log_path, "ab") as f:
                    f.write(_canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(next_hash + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return next_hash

    async def record(self, result: str, reason: str, **fields: Any) -> None:
        """
        Async entry point used by the routes.

        The write (with fsync) runs in a worker thread so the event loop is
        never blocked. A failing audit write is logged, not raised: the
        authentication outcome has already been decided.
        """
        if not self.enabled:
            return
        event = {**build_common(**fields), "result": result, "reason": reason}
        try:
            await asyncio.to_thread(self.append_event, event)
        except OSError as e:
            logger.error(f"audit append failed: {e}")

    def verify(self) -> bool:
        return verify_log_chain(self.log_path)


def build_common(
    *,
    channel: Optional[str] = None,
    email: Optional[str] = None,
    credential_id: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    labels: Optional[list] = None,
) -> Dict[str, Any]:
    """
    Build common audit fields. Keep this "boring" and stable.
    """
    out: Dict[str, Any] = {"ts": int(time.time())}

    if channel:
        out["channel"] = channel
    if email:
        out["email_sha3_256"] = email_digest(email)
    if credential_id:
        out["credential_id"] = credential_id[:128]
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]
    if labels is not None:
        out["labels"] = sorted(str(label) for label in labels)

    return out


def verify_log_chain(path: Path) -> bool:
    """
    Verify the hash chain of an audit log file.
    Returns True if valid (or absent), False otherwise.
    """
    if not path.exists():
        return True

    prev = GENESIS_HASH
    try:
        with open(path, "rb") as f:
            for raw_line in f:
                raw_line = raw_line.strip()
                if not raw_line:
                    continue
                obj = json.loads(raw_line.decode("utf-8"))

                if obj.get("prev_hash") != prev:
                    return False

                obj2 = dict(obj)
                line_hash = obj2.pop("hash", None)
                obj2.pop("prev_hash", None)

                expect = _sha3_256_hex(bytes.fromhex(prev) + _canonical_json_bytes(obj2))
                if expect != line_hash:
                    return False

                prev = line_hash

        return True
    except (OSError, ValueError):
        return False
