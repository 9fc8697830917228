"""
SQL token store — PostgreSQL, SQLite, or anything SQLAlchemy speaks.

The ``qbo_tokens`` table carries a partial unique index on
``(owner_id, realm_id) WHERE is_active``, so the database itself refuses a
second active record. ``replace_atomically`` deactivates the old record and
inserts the new one inside a single transaction. The owner's active rows
are locked first (``SELECT ... FOR UPDATE``) so concurrent replaces queue
behind each other. Under READ COMMITTED two first-time inserts can still
race; the loser hits the unique index with ``IntegrityError`` and is
retried in a fresh transaction, which then sees and deactivates the
winner's row.

Blocking database calls run in a worker thread via ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    insert,
    select,
    true,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from qbolink.auth.crypto import TokenCipher
from qbolink.auth.store import TokenStore, _check_record
from qbolink.models.token import TokenRecord

logger = logging.getLogger("qbolink.auth.sql_store")

_REPLACE_ATTEMPTS = 3

metadata = MetaData()

qbo_tokens = Table(
    "qbo_tokens",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("owner_id", String(255), nullable=False, index=True),
    Column("realm_id", String(64), nullable=False),
    Column("access_token", Text, nullable=False),
    Column("refresh_token", Text),
    Column("token_type", String(32), nullable=False, default="Bearer"),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("refresh_expires_at", DateTime(timezone=True)),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
)

# One active token per owner per company
Index(
    "idx_qbo_tokens_unique_active",
    qbo_tokens.c.owner_id,
    qbo_tokens.c.realm_id,
    unique=True,
    sqlite_where=qbo_tokens.c.is_active == true(),
    postgresql_where=qbo_tokens.c.is_active == true(),
)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SQLTokenStore(TokenStore):
    """Token store backed by a relational database.

    Usage::

        store = SQLTokenStore("sqlite:///tokens.db")
        await store.replace_atomically("user_123", record)
    """

    def __init__(
        self,
        database_url: str | None = None,
        *,
        engine: Engine | None = None,
        cipher: TokenCipher | None = None,
        create_tables: bool = True,
    ) -> None:
        if engine is None:
            if not database_url:
                raise ValueError("SQLTokenStore requires a database_url or an engine")
            engine = create_engine(database_url)
        self.engine = engine
        self._cipher = cipher
        if create_tables:
            metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _seal(self, value: str) -> str:
        return self._cipher.encrypt(value) if self._cipher and value else value

    def _open(self, value: str | None) -> str:
        if not value:
            return ""
        return self._cipher.decrypt(value) if self._cipher else value

    def _to_row(self, record: TokenRecord) -> dict[str, Any]:
        return {
            "id": record.id,
            "owner_id": record.owner_id,
            "realm_id": record.realm_id,
            "access_token": self._seal(record.access_token),
            "refresh_token": self._seal(record.refresh_token),
            "token_type": record.token_type,
            "expires_at": record.expires_at,
            "refresh_expires_at": record.refresh_expires_at,
            "is_active": record.is_active,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        }

    def _from_row(self, row: Any) -> TokenRecord:
        return TokenRecord(
            id=row.id,
            owner_id=row.owner_id,
            realm_id=row.realm_id,
            access_token=self._open(row.access_token),
            refresh_token=self._open(row.refresh_token),
            token_type=row.token_type,
            expires_at=_aware(row.expires_at),
            refresh_expires_at=_aware(row.refresh_expires_at),
            is_active=bool(row.is_active),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    # ------------------------------------------------------------------
    # Blocking implementations
    # ------------------------------------------------------------------

    def _get_active_sync(self, owner_id: str) -> TokenRecord | None:
        stmt = (
            select(qbo_tokens)
            .where(qbo_tokens.c.owner_id == owner_id, qbo_tokens.c.is_active == true())
            .order_by(qbo_tokens.c.created_at.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).first()
        return self._from_row(row) if row else None

    def _replace_sync(self, owner_id: str, record: TokenRecord) -> TokenRecord:
        attempt = 1
        while True:
            try:
                return self._replace_once(owner_id, record)
            except IntegrityError:
                # A concurrent writer got its active row in first; retry in a fresh transaction
                if attempt >= _REPLACE_ATTEMPTS:
                    raise
                attempt += 1
                logger.debug("Concurrent token replace for owner %s, retrying", owner_id)

    def _replace_once(self, owner_id: str, record: TokenRecord) -> TokenRecord:
        now = datetime.now(timezone.utc)
        active = (qbo_tokens.c.owner_id == owner_id, qbo_tokens.c.is_active == true())
        with self.engine.begin() as conn:
            # Lock the owner's active rows (no-op on SQLite, which locks the whole database)
            conn.execute(select(qbo_tokens.c.id).where(*active).with_for_update())
            conn.execute(update(qbo_tokens).where(*active).values(is_active=False, updated_at=now))
            conn.execute(insert(qbo_tokens).values(**self._to_row(record)))
        return record

    def _deactivate_sync(self, owner_id: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(qbo_tokens)
                .where(qbo_tokens.c.owner_id == owner_id, qbo_tokens.c.is_active == true())
                .values(is_active=False, updated_at=datetime.now(timezone.utc))
            )
        return result.rowcount

    def _delete_sync(self, owner_id: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(delete(qbo_tokens).where(qbo_tokens.c.owner_id == owner_id))
        return result.rowcount

    def _list_sync(self, owner_id: str) -> list[TokenRecord]:
        stmt = (
            select(qbo_tokens)
            .where(qbo_tokens.c.owner_id == owner_id)
            .order_by(qbo_tokens.c.created_at.asc())
        )
        with self.engine.connect() as conn:
            return [self._from_row(row) for row in conn.execute(stmt)]

    # ------------------------------------------------------------------
    # TokenStore API
    # ------------------------------------------------------------------

    async def get_active(self, owner_id: str) -> TokenRecord | None:
        return await asyncio.to_thread(self._get_active_sync, owner_id)

    async def replace_atomically(self, owner_id: str, record: TokenRecord) -> TokenRecord:
        _check_record(owner_id, record)
        stored = await asyncio.to_thread(self._replace_sync, owner_id, record)
        logger.debug("Replaced token for owner %s (realm %s)", owner_id, record.realm_id)
        return stored

    async def deactivate_all(self, owner_id: str) -> int:
        count = await asyncio.to_thread(self._deactivate_sync, owner_id)
        if count:
            logger.info("Deactivated %d token(s) for owner %s", count, owner_id)
        return count

    async def delete_all(self, owner_id: str) -> int:
        count = await asyncio.to_thread(self._delete_sync, owner_id)
        if count:
            logger.info("Deleted %d token(s) for owner %s", count, owner_id)
        return count

    async def list_records(self, owner_id: str) -> list[TokenRecord]:
        return await asyncio.to_thread(self._list_sync, owner_id)

    async def close(self) -> None:
        self.engine.dispose()
