"""
authgate/sql_storage.py

Durable backend for the credential and session stores (SQLAlchemy, async).

Works against SQLite (sqlite+aiosqlite://) and PostgreSQL (postgresql+asyncpg://).
The atomicity requirements map onto single statements:

  - reissue of a code / challenge      INSERT ... ON CONFLICT DO UPDATE
  - one-time consumption               DELETE ... WHERE key AND code  (rowcount)
  - challenge consumption              DELETE ... RETURNING
  - passkey counter                    UPDATE ... WHERE counter = :expected  (rowcount)

Never a delete followed by an insert.
"""

from __future__ import annotations

from typing import List, Optional

from loguru import logger
from sqlalchemy import JSON, BigInteger, Boolean, Integer, LargeBinary, String, Text, delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .storage import (
    Challenge,
    Credential,
    CredentialStore,
    DuplicateCredentialError,
    InMemoryStore,
    SessionRecord,
    SessionStore,
    VerificationCode,
    now_epoch,
)


class Base(DeclarativeBase):
    pass


class VerificationCodeRow(Base):
    __tablename__ = "verification_codes"

    email: Mapped[str] = mapped_column(String(320), primary_key=True)
    code: Mapped[str] = mapped_column(String(16), nullable=False)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class ChallengeRow(Base):
    __tablename__ = "challenges"

    key: Mapped[str] = mapped_column(String(320), primary_key=True)
    challenge: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)


class PasskeyRow(Base):
    __tablename__ = "passkeys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    credential_id: Mapped[str] = mapped_column(String(1024), nullable=False, unique=True, index=True)
    public_key: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    counter: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    transports: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    device_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class SessionRow(Base):
    __tablename__ = "sessions"

    session_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    labels: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    authenticated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)


def _to_credential(row: PasskeyRow) -> Credential:
    return Credential(
        credential_id=row.credential_id,
        email=row.email,
        public_key=bytes(row.public_key),
        counter=int(row.counter),
        transports=list(row.transports or []),
        device_name=row.device_name,
        created_at=int(row.created_at),
    )


class SqlStore(CredentialStore, SessionStore):
    def __init__(self, url: str = "", engine: Optional[AsyncEngine] = None):
        if engine is None and not url:
            raise ValueError("SqlStore needs a database URL or an engine")
        self.engine = engine or create_async_engine(url)
        self._sessions = async_sessionmaker(self.engine, expire_on_commit=False)

    async def init(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"SQL store ready ({self.engine.dialect.name})")

    async def close(self) -> None:
        await self.engine.dispose()

    def _insert(self, model):
        if self.engine.dialect.name == "postgresql":
            return pg_insert(model)
        return sqlite_insert(model)

    async def _upsert(self, model, key: str, values: dict) -> None:
        stmt = self._insert(model).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[key],
            set_={k: v for k, v in values.items() if k != key},
        )
        async with self._sessions.begin() as s:
            await s.execute(stmt)

    # -------------------------------------------------------------------------
    # Verification codes
    # -------------------------------------------------------------------------
    async def put_code(self, rec: VerificationCode) -> None:
        await self._upsert(
            VerificationCodeRow,
            "email",
            {"email": rec.email, "code": rec.code, "expires_at": rec.expires_at, "created_at": now_epoch()},
        )

    async def get_code(self, email: str) -> Optional[VerificationCode]:
        async with self._sessions() as s:
            row = await s.get(VerificationCodeRow, email)
            if row is None:
                return None
            return VerificationCode(email=row.email, code=row.code, expires_at=int(row.expires_at))

    async def delete_code(self, email: str, code: Optional[str] = None) -> bool:
        stmt = delete(VerificationCodeRow).where(VerificationCodeRow.email == email)
        if code is not None:
            stmt = stmt.where(VerificationCodeRow.code == code)
        async with self._sessions.begin() as s:
            result = await s.execute(stmt)
        return result.rowcount > 0

    # -------------------------------------------------------------------------
    # Challenges
    # -------------------------------------------------------------------------
    async def put_challenge(self, rec: Challenge) -> None:
        await self._upsert(
            ChallengeRow,
            "key",
            {"key": rec.key, "challenge": rec.challenge, "created_at": rec.created_at},
        )

    async def get_challenge(self, key: str) -> Optional[Challenge]:
        async with self._sessions() as s:
            row = await s.get(ChallengeRow, key)
            if row is None:
                return None
            return Challenge(key=row.key, challenge=row.challenge, created_at=int(row.created_at))

    async def take_challenge(self, key: str) -> Optional[Challenge]:
        stmt = (
            delete(ChallengeRow)
            .where(ChallengeRow.key == key)
            .returning(ChallengeRow.key, ChallengeRow.challenge, ChallengeRow.created_at)
        )
        async with self._sessions.begin() as s:
            row = (await s.execute(stmt)).first()
        if row is None:
            return None
        return Challenge(key=row.key, challenge=row.challenge, created_at=int(row.created_at))

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------
    async def add_credential(self, cred: Credential) -> None:
        row = PasskeyRow(
            email=cred.email,
            credential_id=cred.credential_id,
            public_key=cred.public_key,
            counter=cred.counter,
            transports=list(cred.transports),
            device_name=cred.device_name,
            created_at=cred.created_at,
        )
        try:
            async with self._sessions.begin() as s:
                s.add(row)
        except IntegrityError as e:
            raise DuplicateCredentialError(cred.credential_id) from e

    async def get_credential(self, credential_id: str) -> Optional[Credential]:
        async with self._sessions() as s:
            row = (
                await s.execute(select(PasskeyRow).where(PasskeyRow.credential_id == credential_id))
            ).scalar_one_or_none()
            return _to_credential(row) if row else None

    async def list_credentials(self, email: str) -> List[Credential]:
        async with self._sessions() as s:
            rows = (
                await s.execute(select(PasskeyRow).where(PasskeyRow.email == email).order_by(PasskeyRow.id))
            ).scalars().all()
            return [_to_credential(r) for r in rows]

    async def compare_and_set_counter(self, credential_id: str, expected: int, new: int) -> bool:
        stmt = (
            update(PasskeyRow)
            .where(PasskeyRow.credential_id == credential_id, PasskeyRow.counter == expected)
            .values(counter=new)
        )
        async with self._sessions.begin() as s:
            result = await s.execute(stmt)
        return result.rowcount == 1

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------
    async def put_session(self, rec: SessionRecord) -> None:
        await self._upsert(
            SessionRow,
            "session_id",
            {
                "session_id": rec.session_id,
                "email": rec.email,
                "display_name": rec.display_name,
                "labels": list(rec.labels),
                "authenticated": rec.authenticated,
                "created_at": rec.created_at,
                "expires_at": rec.expires_at,
            },
        )

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        async with self._sessions() as s:
            row = await s.get(SessionRow, session_id)
            if row is None:
                return None
            return SessionRecord(
                session_id=row.session_id,
                email=row.email,
                display_name=row.display_name,
                labels=list(row.labels or []),
                authenticated=bool(row.authenticated),
                created_at=int(row.created_at),
                expires_at=int(row.expires_at),
            )

    async def delete_session(self, session_id: str) -> bool:
        async with self._sessions.begin() as s:
            result = await s.execute(delete(SessionRow).where(SessionRow.session_id == session_id))
        return result.rowcount > 0

    # -------------------------------------------------------------------------
    # Sweep
    # -------------------------------------------------------------------------
    async def purge_expired(self, now: int, challenge_ttl_seconds: int = 600) -> int:
        async with self._sessions.begin() as s:
            codes = await s.execute(delete(VerificationCodeRow).where(VerificationCodeRow.expires_at < now))
            challenges = await s.execute(
                delete(ChallengeRow).where(ChallengeRow.created_at + challenge_ttl_seconds <= now)
            )
            sessions = await s.execute(delete(SessionRow).where(SessionRow.expires_at <= now))
        return codes.rowcount + challenges.rowcount + sessions.rowcount


def open_store(database_url: str):
    """Empty URL -> InMemoryStore; otherwise a SqlStore (schema is created by init())."""
    if not database_url:
        logger.warning("DATABASE_URL not set: using in-memory store (single process only)")
        return InMemoryStore()

    return SqlStore(database_url)
