import time

import jwt


def mint(secret="test-sso-secret", **claims):
    payload = {
        "iss": "bear.flights",
        "email": "a@x.com",
        "name": "Alice",
        "labels": ["builder"],
        "exp": int(time.time()) + 300,
    }
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


class TestSsoCallback:
    async def test_valid_token_creates_session_and_redirects_home(self, client, settings):
        resp = await client.get("/auth/callback", params={"token": mint()})

        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        assert settings.SESSION_COOKIE_NAME in resp.cookies

        status = (await client.get("/api/auth/status")).json()
        assert status == {
            "authenticated": True,
            "user": {"email": "a@x.com", "name": "Alice", "labels": ["builder"]},
        }

    async def test_token_email_is_normalized(self, client):
        await client.get("/auth/callback", params={"token": mint(email=" A@X.com")})

        status = (await client.get("/api/auth/status")).json()
        assert status["user"]["email"] == "a@x.com"

    async def test_missing_token(self, client):
        resp = await client.get("/auth/callback")

        assert resp.status_code == 400
        assert resp.json() == {"error": "Missing authentication token"}

    async def test_foreign_issuer(self, client, settings):
        resp = await client.get("/auth/callback", params={"token": mint(iss="someone.else")})

        assert resp.status_code == 401
        assert resp.json() == {"error": "Invalid token issuer"}
        assert settings.SESSION_COOKIE_NAME not in resp.cookies

    async def test_bad_signature(self, client):
        resp = await client.get("/auth/callback", params={"token": mint(secret="wrong-secret")})

        assert resp.status_code == 500
        assert resp.json() == {"error": "Authentication failed"}

    async def test_expired_token(self, client):
        resp = await client.get("/auth/callback", params={"token": mint(exp=int(time.time()) - 60)})

        assert resp.status_code == 500

    async def test_new_login_replaces_previous_session(self, client, store):
        await client.get("/auth/callback", params={"token": mint()})
        first = set(store.sessions)

        await client.get("/auth/callback", params={"token": mint()})

        assert len(store.sessions) == 1
        assert set(store.sessions).isdisjoint(first)


class TestPolicyAtTheProxy:
    async def test_sso_session_without_allowed_label_is_denied_content(self, client, upstream, settings):
        await client.get(
            "/auth/callback",
            params={"token": mint(email="free@x.com", name="Freddie", labels=["free-member"])},
        )

        resp = await client.get("/2024/10/a-post/", headers={"accept": "text/html"})

        assert resp.status_code == 403
        body = resp.json()
        assert body["userLabels"] == ["free-member"]
        assert body["redirectUrl"] == settings.MEMBERSHIP_URL
        assert upstream.requests == []

    async def test_sso_session_with_allowed_label_reaches_upstream(self, client, upstream):
        await client.get("/auth/callback", params={"token": mint(labels=["patron"])})

        resp = await client.get("/")

        assert resp.status_code == 200
        assert len(upstream.requests) == 1
