# authgate/storage.py
#
# Persistence contract for the gateway.
#
# Three keyed collections belong to the credential store:
#   - verification codes   (key: email)            one active record per email
#   - challenges           (key: email | handle)   one active record per key
#   - credentials          (key: credential_id)    many per email
#
# Sessions live in a separate store owned by the session manager.
#
# Every write that replaces a record is a single upsert, and the passkey
# counter moves only through compare_and_set_counter(). Those are the only
# operations that must be atomic; nothing else needs a lock.
import secrets
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional


def b64url_token(nbytes: int) -> str:
    # token_urlsafe returns base64url-ish without padding; good enough
    return secrets.token_urlsafe(nbytes)


def now_epoch() -> int:
    return int(time.time())


class DuplicateCredentialError(Exception):
    """A credential with this ID is already registered (IDs are system-wide unique)."""


@dataclass
class VerificationCode:
    email: str
    code: str
    expires_at: int

    def is_expired(self, now: int) -> bool:
        return now > self.expires_at


@dataclass
class Challenge:
    # email for registration / email-scoped login, opaque handle for discoverable login
    key: str
    challenge: str
    created_at: int

    def is_expired(self, now: int, ttl_seconds: int) -> bool:
        return now >= self.created_at + ttl_seconds


@dataclass
class Credential:
    credential_id: str  # base64url, no padding
    email: str
    public_key: bytes
    counter: int = 0
    transports: List[str] = field(default_factory=list)
    device_name: Optional[str] = None
    created_at: int = field(default_factory=now_epoch)


@dataclass
class SessionRecord:
    session_id: str
    email: str
    display_name: str
    labels: List[str]
    authenticated: bool
    created_at: int
    expires_at: int

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at

    def public_user(self) -> dict:
        return {"email": self.email, "name": self.display_name, "labels": list(self.labels)}


class CredentialStore:
    """Key-value contract for codes, challenges and passkey credentials."""

    async def put_code(self, rec: VerificationCode) -> None:
        raise NotImplementedError

    async def get_code(self, email: str) -> Optional[VerificationCode]:
        raise NotImplementedError

    async def delete_code(self, email: str, code: Optional[str] = None) -> bool:
        """Delete the record; with `code`, only if it still holds that code."""
        raise NotImplementedError

    async def put_challenge(self, rec: Challenge) -> None:
        raise NotImplementedError

    async def get_challenge(self, key: str) -> Optional[Challenge]:
        raise NotImplementedError

    async def take_challenge(self, key: str) -> Optional[Challenge]:
        """Remove and return the challenge in one step."""
        raise NotImplementedError

    async def add_credential(self, cred: Credential) -> None:
        raise NotImplementedError

    async def get_credential(self, credential_id: str) -> Optional[Credential]:
        raise NotImplementedError

    async def list_credentials(self, email: str) -> List[Credential]:
        raise NotImplementedError

    async def compare_and_set_counter(self, credential_id: str, expected: int, new: int) -> bool:
        raise NotImplementedError

    async def purge_expired(self, now: int, challenge_ttl_seconds: int) -> int:
        raise NotImplementedError

    async def init(self) -> None:
        return None

    async def close(self) -> None:
        return None


class SessionStore:
    async def put_session(self, rec: SessionRecord) -> None:
        raise NotImplementedError

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        raise NotImplementedError

    async def delete_session(self, session_id: str) -> bool:
        raise NotImplementedError

    async def purge_expired(self, now: int) -> int:
        raise NotImplementedError


# -----------------------------------------------------------------------------
# In-memory backend
# -----------------------------------------------------------------------------
# None of these coroutines await internally, so each one runs to completion on
# the event loop without interleaving. That is what makes the upserts and the
# counter CAS atomic here. Not shared across workers or nodes.
class InMemoryStore(CredentialStore, SessionStore):
    def __init__(self):
        self.codes: Dict[str, VerificationCode] = {}
        self.challenges: Dict[str, Challenge] = {}
        self.credentials: Dict[str, Credential] = {}
        self.sessions: Dict[str, SessionRecord] = {}

    async def put_code(self, rec: VerificationCode) -> None:
        self.codes[rec.email] = rec

    async def get_code(self, email: str) -> Optional[VerificationCode]:
        return self.codes.get(email)

    async def delete_code(self, email: str, code: Optional[str] = None) -> bool:
        rec = self.codes.get(email)
        if rec is None or (code is not None and rec.code != code):
            return False
        del self.codes[email]
        return True

    async def put_challenge(self, rec: Challenge) -> None:
        self.challenges[rec.key] = rec

    async def get_challenge(self, key: str) -> Optional[Challenge]:
        return self.challenges.get(key)

    async def take_challenge(self, key: str) -> Optional[Challenge]:
        return self.challenges.pop(key, None)

    async def add_credential(self, cred: Credential) -> None:
        if cred.credential_id in self.credentials:
            raise DuplicateCredentialError(cred.credential_id)
        self.credentials[cred.credential_id] = cred

    async def get_credential(self, credential_id: str) -> Optional[Credential]:
        return self.credentials.get(credential_id)

    async def list_credentials(self, email: str) -> List[Credential]:
        return [c for c in self.credentials.values() if c.email == email]

    async def compare_and_set_counter(self, credential_id: str, expected: int, new: int) -> bool:
        cred = self.credentials.get(credential_id)
        if cred is None or cred.counter != expected:
            return False
        cred.counter = new
        return True

    async def put_session(self, rec: SessionRecord) -> None:
        self.sessions[rec.session_id] = rec

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        return self.sessions.get(session_id)

    async def delete_session(self, session_id: str) -> bool:
        return self.sessions.pop(session_id, None) is not None

    async def purge_expired(self, now: int, challenge_ttl_seconds: int = 600) -> int:
        """Best-effort pruning to bound memory growth; TTLs are enforced on read anyway."""
        dead_codes = [k for k, v in self.codes.items() if v.is_expired(now)]
        dead_challenges = [k for k, v in self.challenges.items() if v.is_expired(now, challenge_ttl_seconds)]
        dead_sessions = [k for k, v in self.sessions.items() if v.is_expired(now)]

        for k in dead_codes:
            self.codes.pop(k, None)
        for k in dead_challenges:
            self.challenges.pop(k, None)
        for k in dead_sessions:
            self.sessions.pop(k, None)

        return len(dead_codes) + len(dead_challenges) + len(dead_sessions)
