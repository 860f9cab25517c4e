"""
Server-side sessions referenced by a signed cookie.

The cookie carries only a signed session id (see tokens.CookieSigner); the
identity and labels live in the session store. Lifetime is fixed from
issuance (no sliding renewal). A cookie that fails verification, or points
at a missing or expired record, is treated as no session at all.
"""

from typing import Callable, Optional

from fastapi import Request, Response

from .identity import Identity
from .storage import SessionRecord, SessionStore, b64url_token, now_epoch
from .tokens import CookieSigner


class SessionManager:
    def __init__(
        self,
        store: SessionStore,
        signer: CookieSigner,
        cookie_name: str,
        ttl_seconds: int,
        secure: bool,
        clock: Callable[[], int] = now_epoch,
    ):
        self.store = store
        self.signer = signer
        self.cookie_name = cookie_name
        self.ttl_seconds = ttl_seconds
        self.secure = secure
        self._clock = clock

    def _session_id(self, request: Request) -> Optional[str]:
        raw = request.cookies.get(self.cookie_name)
        if not raw:
            return None
        try:
            return self.signer.unsign(raw)
        except ValueError:
            return None

    async def get_session(self, request: Request) -> Optional[SessionRecord]:
        sid = self._session_id(request)
        if not sid:
            return None

        rec = await self.store.get_session(sid)
        if rec is None:
            return None

        if rec.is_expired(self._clock()):
            await self.store.delete_session(sid)
            return None

        return rec

    async def create_session(self, request: Request, response: Response, identity: Identity) -> SessionRecord:
        # a new login never reuses the id a visitor arrived with
        old = self._session_id(request)
        if old:
            await self.store.delete_session(old)

        now = self._clock()
        rec = SessionRecord(
            session_id=b64url_token(32),
            email=identity.email,
            display_name=identity.name or identity.email,
            labels=list(identity.labels),
            authenticated=True,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        await self.store.put_session(rec)

        response.set_cookie(
            self.cookie_name,
            self.signer.sign(rec.session_id),
            max_age=self.ttl_seconds,
            httponly=True,
            secure=self.secure,
            samesite="lax",
            path="/",
        )
        return rec

    async def destroy_session(self, request: Request, response: Response) -> None:
        sid = self._session_id(request)
        if sid:
            await self.store.delete_session(sid)
        response.delete_cookie(self.cookie_name, path="/", secure=self.secure, httponly=True, samesite="lax")
