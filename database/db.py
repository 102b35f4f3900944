"""SQL-backed key-value store for the keeper lock, cursor and attempt records."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

from sqlalchemy import create_engine, delete
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from database.models import Base, KVEntry
from utils.errors import KVStoreError


def _engine_kwargs(database_url: str) -> dict[str, Any]:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return {}
    # Sessions run on worker threads.
    kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if url.database in (None, "", ":memory:"):
        kwargs["poolclass"] = StaticPool
    return kwargs


class SqlKVStore:
    """KV store on any SQLAlchemy URL. Expired rows read as absent and are purged lazily."""

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self.engine = create_engine(database_url, future=True, **_engine_kwargs(database_url))
        self._session_factory = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, future=True)
        self._initialized = False

    def init_db(self) -> None:
        Base.metadata.create_all(bind=self.engine)
        self._initialized = True

    def _session(self) -> Session:
        if not self._initialized:
            self.init_db()
        return self._session_factory()

    def _get_sync(self, key: str) -> Optional[str]:
        db = self._session()
        try:
            row = db.get(KVEntry, key)
            if row is None:
                return None
            if row.is_expired(time.time()):
                db.delete(row)
                db.commit()
                return None
            return str(row.value)
        except SQLAlchemyError as exc:
            db.rollback()
            raise KVStoreError(f"sql get failed key={key}: {exc}") from exc
        finally:
            db.close()

    def _put_sync(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        expires_at = time.time() + int(ttl_seconds) if ttl_seconds else None
        db = self._session()
        try:
            db.merge(KVEntry(key=key, value=str(value), expires_at=expires_at))
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise KVStoreError(f"sql put failed key={key}: {exc}") from exc
        finally:
            db.close()

    def _delete_sync(self, key: str) -> None:
        db = self._session()
        try:
            db.execute(delete(KVEntry).where(KVEntry.key == key))
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise KVStoreError(f"sql delete failed key={key}: {exc}") from exc
        finally:
            db.close()

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._get_sync, key)

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await asyncio.to_thread(self._put_sync, key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete_sync, key)

    async def close(self) -> None:
        await asyncio.to_thread(self.engine.dispose)
