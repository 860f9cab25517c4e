"""
Shared fixtures: a gateway app wired to in-process fakes.

The member directory, mailer and WebAuthn verifier are replaced by the fakes
below; the upstream backend is an httpx.MockTransport. Everything else (codes,
passkey orchestration, sessions, policy, proxy, audit) is the real code.
"""

from typing import Any, Dict, List, Optional

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from authgate.audit import AuditLog
from authgate.config import Settings
from authgate.identity import Member
from authgate.main import create_app
from authgate.passkeys import AssertionResult, RegistrationResult
from authgate.storage import InMemoryStore


class FakeDirectory:
    def __init__(self, members: Optional[Dict[str, Member]] = None):
        self.members = dict(members or {})
        self.lookups: List[str] = []

    async def get_member_by_email(self, email: str) -> Optional[Member]:
        self.lookups.append(email)
        return self.members.get(email)


class FakeMailer:
    def __init__(self):
        self.sent: List[Dict[str, str]] = []

    async def send_verification(self, email: str, name: str, code: str) -> None:
        self.sent.append({"email": email, "name": name, "code": code})

    def last_code(self, email: str) -> str:
        for msg in reversed(self.sent):
            if msg["email"] == email:
                return msg["code"]
        raise AssertionError(f"no code sent to {email}")


class FakeVerifier:
    """
    Stands in for the WebAuthn capability.

    A response "verifies" when it echoes the challenge it was issued for.
    Registration responses carry the credential id in "id"; assertions carry
    the authenticator's reported counter in "counter".
    """

    def __init__(self):
        self.verify_calls: List[Dict[str, Any]] = []

    async def registration_options(self, *, challenge, user_id, user_name, display_name, exclude):
        return {
            "challenge": challenge,
            "rp": {"id": "localhost", "name": "Insights"},
            "user": {"id": user_id.hex(), "name": user_name, "displayName": display_name},
            "excludeCredentials": [{"id": c.credential_id, "type": "public-key"} for c in exclude],
        }

    async def verify_registration(self, *, challenge, response):
        self.verify_calls.append({"kind": "registration", "challenge": challenge})
        if response.get("challenge") != challenge:
            return RegistrationResult(verified=False)
        return RegistrationResult(
            verified=True,
            credential_id=response["id"],
            public_key=b"pk-" + response["id"].encode(),
            transports=["internal"],
        )

    async def authentication_options(self, *, challenge, allow):
        return {
            "challenge": challenge,
            "allowCredentials": [{"id": c.credential_id, "type": "public-key"} for c in allow],
        }

    async def verify_authentication(self, *, challenge, response, public_key, counter):
        self.verify_calls.append({"kind": "authentication", "challenge": challenge, "counter": counter})
        if response.get("challenge") != challenge:
            return AssertionResult(verified=False)
        if public_key != b"pk-" + response["id"].encode():
            return AssertionResult(verified=False)
        return AssertionResult(verified=True, new_counter=int(response.get("counter", 0)))


class FakeUpstream:
    """Records forwarded requests; answers from a path -> handler table."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.routes: Dict[str, Any] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(
                200,
                headers={"content-type": "text/html; charset=utf-8"},
                content=b"<html><body><h1>Post</h1></body></html>",
            )
        if callable(handler):
            return handler(request)
        return handler


MEMBERS = {
    "a@x.com": Member(email="a@x.com", name="Alice", labels=["builder"]),
    "free@x.com": Member(email="free@x.com", name="Freddie", labels=["free-member"]),
}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        ORIGIN="http://localhost:3002",
        RP_ID="localhost",
        ALLOWED_LABELS=["builder", "patron"],
        SESSION_SECRET="test-session-secret",
        SSO_PROVIDER_URL="https://sso.test",
        SSO_TOKEN_SECRET="test-sso-secret",
        SSO_TOKEN_ISSUER="bear.flights",
        UPSTREAM_URL="http://upstream.test",
        SWEEP_INTERVAL_SECONDS=0,
        AUDIT_DIR=str(tmp_path / "audit"),
        DATABASE_URL="",
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def directory():
    return FakeDirectory(MEMBERS)


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def audit(settings):
    return AuditLog(settings.AUDIT_DIR)


@pytest.fixture
def app(settings, store, directory, mailer, verifier, upstream, audit):
    return create_app(
        settings,
        store=store,
        directory=directory,
        mailer=mailer,
        verifier=verifier,
        upstream_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
        audit=audit,
    )


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
def sign_in(client, mailer):
    """Run the email-code lane for `email`; returns the verify-code response."""

    async def _sign_in(email: str) -> httpx.Response:
        resp = await client.post("/api/auth/send-verification", json={"email": email})
        assert resp.status_code == 200, resp.text
        return await client.post("/api/auth/verify-code", json={"email": email, "code": mailer.last_code(email)})

    return _sign_in
