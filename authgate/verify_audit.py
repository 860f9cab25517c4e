"""
authgate/verify_audit.py: offline check of the authentication audit trail.

Walks <AUDIT_DIR>/auth_audit.jsonl, recomputes every link of the SHA3-256
chain, and (unless --no-state) compares the last hash with
<AUDIT_DIR>/auth_audit.state.

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

from .audit import GENESIS_HASH, _canonical_json_bytes, _sha3_256_hex


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
        bytes.fromhex(s)
    except ValueError:
        return False
    return True


def verify_audit_dir(audit_dir: Path, check_state: bool = True) -> VerifyResult:
    log_path = audit_dir / "auth_audit.jsonl"
    state_path = audit_dir / "auth_audit.state"

    if not log_path.exists():
        return VerifyResult(False, 0, None, f"Log not found: {log_path}")

    lines = 0
    prev = GENESIS_HASH
    last_hash: Optional[str] = None

    with log_path.open("rb") as f:
        for lineno, raw in enumerate(f, start=1):
            raw = raw.strip()
            if not raw:
                continue
            lines += 1

            try:
                event = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, ValueError) as e:
                return VerifyResult(False, lines, last_hash, f"{log_path}:{lineno}: invalid JSON: {e}")
            if not isinstance(event, dict):
                return VerifyResult(False, lines, last_hash, f"{log_path}:{lineno}: JSON root must be an object")

            claimed_prev = event.pop("prev_hash", None)
            claimed = event.pop("hash", None)
            if not _is_hex64(claimed_prev) or not _is_hex64(claimed):
                return VerifyResult(False, lines, last_hash, f"{log_path}:{lineno}: missing or malformed chain fields")

            if claimed_prev != prev:
                return VerifyResult(
                    False, lines, last_hash,
                    f"{log_path}:{lineno}: prev_hash mismatch: expected {prev} got {claimed_prev}",
                )

            recomputed = _sha3_256_hex(bytes.fromhex(prev) + _canonical_json_bytes(event))
            if claimed != recomputed:
                return VerifyResult(
                    False, lines, last_hash,
                    f"{log_path}:{lineno}: hash mismatch: expected {recomputed} got {claimed}",
                )

            prev = last_hash = claimed

    if check_state and last_hash is not None:
        if not state_path.exists():
            return VerifyResult(False, lines, last_hash, f"State file not found: {state_path}")
        state_val = state_path.read_text(encoding="utf-8").strip()
        if state_val != last_hash:
            return VerifyResult(False, lines, last_hash, f"State mismatch: state={state_val} log_last={last_hash}")

    return VerifyResult(True, lines, last_hash, "OK")


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Verify the authgate audit log hash chain.")
    p.add_argument("audit_dir", type=Path, help="Directory holding auth_audit.jsonl (AUDIT_DIR)")
    p.add_argument(
        "--no-state",
        action="store_true",
        help="Skip comparing the last hash with auth_audit.state.",
    )
    args = p.parse_args(argv)

    res = verify_audit_dir(args.audit_dir, check_state=not args.no_state)

    out = sys.stdout if res.ok else sys.stderr
    print(res.message if res.ok else f"FAIL\n{res.message}", file=out)
    print(f"lines={res.lines}", file=out)
    if res.last_hash:
        print(f"last_hash={res.last_hash}", file=out)
    return 0 if res.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
