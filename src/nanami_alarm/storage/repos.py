"""Repository and state store for last-seen markers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from nanami_alarm.errors import StateWriteError
from nanami_alarm.storage.models import Base, LastSeenMarkerModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


@dataclass
class LastSeenMarkerDTO:
    """Data transfer object for last-seen markers."""

    source_id: str
    last_item_id: str
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: LastSeenMarkerModel) -> LastSeenMarkerDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            source_id=model.source_id,
            last_item_id=model.last_item_id,
            updated_at=model.updated_at,
        )


class LastSeenRepository:
    """Repository for last-seen marker rows."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def get(self, source_id: str) -> LastSeenMarkerDTO | None:
        """Get the marker of a source.

        Args:
            source_id: Source key.

        Returns:
            LastSeenMarkerDTO if found, None otherwise.
        """
        result = await self.session.execute(
            select(LastSeenMarkerModel).where(LastSeenMarkerModel.source_id == source_id)
        )
        model = result.scalar_one_or_none()
        return LastSeenMarkerDTO.from_model(model) if model else None

    async def list_all(self) -> list[LastSeenMarkerDTO]:
        result = await self.session.execute(
            select(LastSeenMarkerModel).order_by(LastSeenMarkerModel.source_id)
        )
        return [LastSeenMarkerDTO.from_model(m) for m in result.scalars().all()]

    async def upsert(self, source_id: str, last_item_id: str) -> LastSeenMarkerDTO:
        """Insert or overwrite the marker of a source.

        Args:
            source_id: Source key.
            last_item_id: Id of the last delivered item.

        Returns:
            The stored marker.
        """
        now = datetime.now(UTC)
        dialect = self.session.bind.dialect.name if self.session.bind else "sqlite"
        insert = pg_insert if dialect == "postgresql" else sqlite_insert

        stmt = insert(LastSeenMarkerModel).values(
            source_id=source_id, last_item_id=last_item_id, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["source_id"],
            set_={
                "last_item_id": stmt.excluded.last_item_id,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return LastSeenMarkerDTO(source_id=source_id, last_item_id=last_item_id, updated_at=now)


class StateStore:
    """Persisted last-seen marker per source.

    Writes are serialized with a lock because sqlite allows a single writer.

    Example:
        ```python
        store = StateStore.from_url("sqlite+aiosqlite:///./cve_state.db")
        await store.init_schema()
        await store.set_last_id("cve", "NEW:CVE-2024-0001")
        assert await store.get_last_id("cve") == "NEW:CVE-2024-0001"
        await store.close()
        ```
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)
        self._write_lock = asyncio.Lock()

    @classmethod
    def from_url(cls, database_url: str, *, echo: bool = False) -> StateStore:
        return cls(create_async_engine(database_url, echo=echo))

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def init_schema(self) -> None:
        """Create missing tables."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("State store ready (%s)", self._engine.url.render_as_string(hide_password=True))

    async def get_last_id(self, source_key: str) -> str | None:
        """Return the last delivered item id of a source, or None."""
        async with self._sessions() as session:
            marker = await LastSeenRepository(session).get(source_key)
        return marker.last_item_id if marker else None

    async def set_last_id(self, source_key: str, item_id: str) -> None:
        """Overwrite the marker of a source.

        Raises:
            StateWriteError: If the write fails.
        """
        async with self._write_lock:
            try:
                async with self._sessions() as session, session.begin():
                    await LastSeenRepository(session).upsert(source_key, item_id)
            except SQLAlchemyError as e:
                raise StateWriteError(source_key, e) from e
        logger.debug("Marker for %s set to %s", source_key, item_id)

    async def list_markers(self) -> list[LastSeenMarkerDTO]:
        async with self._sessions() as session:
            return await LastSeenRepository(session).list_all()

    async def close(self) -> None:
        await self._engine.dispose()
