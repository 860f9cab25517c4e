from http.cookies import SimpleCookie
from typing import Optional

import pytest
from fastapi import Request, Response

from authgate.identity import Identity
from authgate.sessions import SessionManager
from authgate.storage import InMemoryStore
from authgate.tokens import CookieSigner

COOKIE = "authgate.sid"
TTL = 7 * 24 * 60 * 60


class Clock:
    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now


def make_request(cookie: Optional[str] = None) -> Request:
    headers = []
    if cookie is not None:
        headers.append((b"cookie", f"{COOKIE}={cookie}".encode("latin-1")))
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers, "query_string": b""})


def cookie_from(response: Response) -> SimpleCookie:
    jar = SimpleCookie()
    for value in response.headers.getlist("set-cookie"):
        jar.load(value)
    return jar


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def mem_store():
    return InMemoryStore()


@pytest.fixture
def manager(mem_store, clock):
    return SessionManager(mem_store, CookieSigner("secret"), COOKIE, TTL, secure=True, clock=clock)


ALICE = Identity(email="a@x.com", name="Alice", labels=["builder"])


async def test_create_then_read(manager):
    response = Response()
    rec = await manager.create_session(make_request(), response, ALICE)

    jar = cookie_from(response)
    morsel = jar[COOKIE]
    assert morsel["httponly"]
    assert morsel["secure"]
    assert morsel["samesite"].lower() == "lax"
    assert morsel["path"] == "/"
    assert int(morsel["max-age"]) == TTL

    again = await manager.get_session(make_request(morsel.value))
    assert again.session_id == rec.session_id
    assert again.authenticated is True
    assert again.public_user() == {"email": "a@x.com", "name": "Alice", "labels": ["builder"]}


async def test_lifetime_is_fixed_from_issuance(manager, clock):
    response = Response()
    await manager.create_session(make_request(), response, ALICE)
    cookie = cookie_from(response)[COOKIE].value

    clock.now += TTL - 1
    assert await manager.get_session(make_request(cookie)) is not None

    clock.now += 1
    assert await manager.get_session(make_request(cookie)) is None


async def test_expired_read_deletes_record(manager, mem_store, clock):
    response = Response()
    rec = await manager.create_session(make_request(), response, ALICE)
    clock.now += TTL

    await manager.get_session(make_request(cookie_from(response)[COOKIE].value))

    assert await mem_store.get_session(rec.session_id) is None


@pytest.mark.parametrize("cookie", ["garbage", "v1.abc.def", ""])
async def test_bad_cookie_is_no_session(manager, cookie):
    assert await manager.get_session(make_request(cookie)) is None


async def test_cookie_signed_with_other_secret_is_ignored(manager, mem_store, clock):
    rec = await manager.create_session(make_request(), Response(), ALICE)
    forged = CookieSigner("other").sign(rec.session_id)

    assert await manager.get_session(make_request(forged)) is None


async def test_new_login_rotates_session_id(manager, mem_store):
    first = Response()
    old = await manager.create_session(make_request(), first, ALICE)

    new = await manager.create_session(make_request(cookie_from(first)[COOKIE].value), Response(), ALICE)

    assert new.session_id != old.session_id
    assert await mem_store.get_session(old.session_id) is None


async def test_destroy_is_idempotent(manager, mem_store):
    response = Response()
    rec = await manager.create_session(make_request(), response, ALICE)
    cookie = cookie_from(response)[COOKIE].value

    out = Response()
    await manager.destroy_session(make_request(cookie), out)
    assert await mem_store.get_session(rec.session_id) is None
    assert cookie_from(out)[COOKIE]["max-age"] == "0"

    # second logout, and logout with no cookie at all: no error
    await manager.destroy_session(make_request(cookie), Response())
    await manager.destroy_session(make_request(), Response())


async def test_display_name_falls_back_to_email(manager):
    rec = await manager.create_session(make_request(), Response(), Identity(email="b@x.com", name="", labels=[]))
    assert rec.display_name == "b@x.com"
