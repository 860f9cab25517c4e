"""
One-time email verification codes.

Lifecycle per email:

    issue()  -> record stored (overwrites any previous code)
    verify() -> True once, then the record is gone
                False if absent / wrong / expired (expired records are purged)

Expiry is checked against the stored timestamp on every read; there is no
background eviction requirement (the store sweep only bounds growth).
"""

import secrets
from typing import Callable

from loguru import logger

from .storage import CredentialStore, VerificationCode, now_epoch


class VerificationCodeService:
    def __init__(
        self,
        store: CredentialStore,
        ttl_seconds: int = 600,
        length: int = 6,
        clock: Callable[[], int] = now_epoch,
    ):
        if length < 4:
            raise ValueError("verification codes must be at least 4 digits")
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.length = length
        self._clock = clock

    def generate_code(self) -> str:
        # uniform over the full fixed-width range, leading zeros included
        return f"{secrets.randbelow(10 ** self.length):0{self.length}d}"

    async def issue(self, email: str) -> str:
        code = self.generate_code()
        await self.store.put_code(
            VerificationCode(email=email, code=code, expires_at=self._clock() + self.ttl_seconds)
        )
        return code

    async def verify(self, email: str, code: str) -> bool:
        rec = await self.store.get_code(email)
        if rec is None:
            return False

        if rec.is_expired(self._clock()):
            await self.store.delete_code(email, code=rec.code)
            logger.debug("verification code expired; purged")
            return False

        if rec.code != code:
            return False

        # Conditional delete: of two concurrent correct submissions only the
        # one that actually removes the record succeeds.
        return await self.store.delete_code(email, code=code)
