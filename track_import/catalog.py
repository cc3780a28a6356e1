"""Track catalog commit: the last step of every import job.

The orchestrator only depends on the ``CatalogWriter`` protocol; the
SQLAlchemy implementation below writes a ``Track`` row and classifies
database failures into the pipeline error taxonomy.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Protocol

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from track_import.errors import ImportValidationError, TransientNetworkError
from track_import.gateway.client import StorageDescriptor, StorageKind
from track_import.models.track import Track

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogRecord:
    """Fields of one catalog row, built by the orchestrator."""

    title: str
    artist: str
    duration: str
    storage_key: str | None
    storage_url: str | None
    is_public: bool = False
    storage_type: str = "r2"
    dropbox_path: str | None = None
    file_url: str | None = None

    @classmethod
    def from_descriptor(
        cls,
        descriptor: StorageDescriptor,
        *,
        title: str,
        artist: str,
        duration: str,
        is_public: bool = False,
    ) -> CatalogRecord:
        is_key = descriptor.kind == StorageKind.PRIVATE_KEY
        return cls(
            title=title,
            artist=artist,
            duration=duration,
            storage_key=descriptor.ref if is_key else None,
            storage_url=None if is_key else descriptor.ref,
            is_public=is_public,
        )

    def as_row(self) -> dict[str, Any]:
        return asdict(self)


class CatalogWriter(Protocol):
    async def insert(self, record: CatalogRecord) -> uuid.UUID: ...


class SqlCatalogWriter:
    """Inserts catalog records through an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def insert(self, record: CatalogRecord) -> uuid.UUID:
        """Insert one track row and return its id.

        Raises:
            TransientNetworkError: connection-level database failure.
            ImportValidationError: the row was rejected (constraint violation).
        """
        track_id = uuid.uuid4()
        try:
            async with self._session_factory() as session:
                session.add(Track(id=track_id, **record.as_row()))
                await session.commit()
        except IntegrityError as exc:
            raise ImportValidationError(f"Catalog rejected track row: {exc.orig}") from exc
        except (OperationalError, InterfaceError) as exc:
            raise TransientNetworkError(f"Catalog unavailable: {exc.orig}") from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise TransientNetworkError("Catalog connection lost") from exc
            raise
        except OSError as exc:
            raise TransientNetworkError(f"Catalog unreachable: {exc}") from exc

        logger.info("Catalog row %s committed: %s - %s", track_id, record.artist, record.title)
        return track_id
