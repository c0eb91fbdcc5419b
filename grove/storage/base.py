"""Base repository: CRUD, short-ID resolution and merge-based updates.

Each concrete repository declares its ORM model, its entity model, and which
entity fields are materialized as columns; everything else is stored in the
row's JSON `data` blob. Updates always read the row under a write lock, merge
the patch into the current entity with `deep_merge`, validate, and write the
result back, all inside the caller's transaction.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, ClassVar, Generic, Iterator, Optional, Sequence, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from grove.errors import AlreadyExistsError, GroveError, InvalidStateError, NotFoundError, RepositoryError
from grove.ids import generate_id, is_full_id, like_pattern, normalize_id, resolve_short_id
from grove.merge import Patch, deep_merge, patch_from
from grove.storage.models import Base

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=BaseModel)
R = TypeVar("R", bound=Base)


class BaseRepository(Generic[E, R]):
    record: ClassVar[type[Base]]
    entity: ClassVar[type[BaseModel]]
    entity_type: ClassVar[str]
    # entity field -> record attribute
    columns: ClassVar[dict[str, str]] = {}
    # fields bumped to "now" on every update
    touch_fields: ClassVar[tuple[str, ...]] = ("updated_at",)

    def __init__(self, session: AsyncSession):
        self.session = session

    # --- conversion ---

    def _row_values(self, entity: E) -> dict[str, Any]:
        python_values = entity.model_dump()
        json_values = entity.model_dump(mode="json")
        values = {attr: python_values[field] for field, attr in self.columns.items()}
        values["data"] = {k: v for k, v in json_values.items() if k not in self.columns}
        return values

    def _to_entity(self, row: R) -> E:
        data = dict(row.data or {})
        for field, attr in self.columns.items():
            data[field] = getattr(row, attr)
        return self.entity.model_validate(data)

    def _validate(self, data: dict[str, Any]) -> E:
        try:
            return self.entity.model_validate(data)
        except ValidationError as e:
            raise InvalidStateError(f"Invalid {self.entity_type.lower()}: {e}") from e

    @contextmanager
    def _storage_errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except GroveError:
            raise
        except SQLAlchemyError as e:
            raise RepositoryError(
                f"Failed to {action} {self.entity_type.lower()}: {e}", e
            ) from e

    # --- identity ---

    async def resolve_id(self, id: str) -> str:
        """Resolve a full ID or short prefix to a full ID."""
        if is_full_id(id):
            return id
        if not normalize_id(id):
            raise NotFoundError(self.entity_type, id)
        with self._storage_errors("resolve"):
            result = await self.session.execute(
                select(self.record.id).where(self.record.id.like(like_pattern(id)))
            )
            candidates = [row[0] for row in result.all()]
        return resolve_short_id(id, candidates, self.entity_type)

    async def _get_row(self, id: str, *, for_update: bool = False) -> R:
        full_id = await self.resolve_id(id)
        with self._storage_errors("load"):
            query = select(self.record).where(self.record.id == full_id)
            if for_update:
                query = query.with_for_update()
            result = await self.session.execute(query)
            row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError(self.entity_type, id)
        return row

    # --- CRUD ---

    async def get(self, id: str) -> E:
        """Fetch by full or short ID.

        Raises:
            NotFoundError: Nothing matches.
            AmbiguousIdError: A short prefix matches several rows.
        """
        return self._to_entity(await self._get_row(id))

    async def find_by_id(self, id: str) -> Optional[E]:
        """Like get(), but None when nothing matches. Ambiguity still raises."""
        try:
            return await self.get(id)
        except NotFoundError:
            return None

    async def find_many(self, ids: Sequence[str]) -> list[E]:
        """Fetch full IDs in the given order, skipping ones that no longer exist."""
        if not ids:
            return []
        with self._storage_errors("load"):
            result = await self.session.execute(select(self.record).where(self.record.id.in_(list(ids))))
            rows = {row.id: row for row in result.scalars().all()}
        return [self._to_entity(rows[i]) for i in ids if i in rows]

    async def find_all(self, limit: Optional[int] = None) -> list[E]:
        with self._storage_errors("list"):
            query = select(self.record).order_by(self.record.created_at.asc(), self.record.id.asc())
            if limit:
                query = query.limit(limit)
            result = await self.session.execute(query)
            return [self._to_entity(row) for row in result.scalars().all()]

    async def _find_where(self, *conditions, order_by=None) -> list[E]:
        with self._storage_errors("list"):
            query = select(self.record).where(*conditions)
            query = query.order_by(*(order_by or (self.record.created_at.asc(), self.record.id.asc())))
            result = await self.session.execute(query)
            return [self._to_entity(row) for row in result.scalars().all()]

    async def create(self, data: Patch) -> E:
        """Insert a new entity. A fresh ID is assigned unless one is supplied."""
        values = patch_from(data)
        values.setdefault("id", None)
        if not values["id"]:
            values["id"] = generate_id()
        entity = self._validate(values)
        await self._check_unique(entity)

        with self._storage_errors("create"):
            row = self.record(**self._row_values(entity))
            self.session.add(row)
            try:
                await self.session.flush()
            except IntegrityError as e:
                raise AlreadyExistsError(self.entity_type, entity.id, str(e.orig)) from e

        logger.debug("Created %s %s", self.entity_type.lower(), entity.id[:8])
        return entity

    async def create_many(self, items: Sequence[Patch]) -> list[E]:
        """Insert several entities in one flush."""
        entities = []
        for data in items:
            values = patch_from(data)
            if not values.get("id"):
                values["id"] = generate_id()
            entities.append(self._validate(values))
        for entity in entities:
            await self._check_unique(entity)

        with self._storage_errors("create"):
            self.session.add_all([self.record(**self._row_values(e)) for e in entities])
            try:
                await self.session.flush()
            except IntegrityError as e:
                raise AlreadyExistsError(self.entity_type, f"batch of {len(entities)}", str(e.orig)) from e
        return entities

    async def update(self, id: str, patch: Patch) -> E:
        """Apply a partial update using deep-merge semantics.

        The row is read under a write lock (where the backend supports it) so
        concurrent patches to the same entity serialize on the transaction.
        """
        row = await self._get_row(id, for_update=True)
        current = self._to_entity(row).model_dump(mode="json")

        changes = patch_from(patch)
        changes.pop("id", None)
        merged = deep_merge(current, changes)
        now = datetime.now(timezone.utc).isoformat()
        for field in self.touch_fields:
            merged[field] = now

        entity = self._validate(merged)
        await self._check_unique(entity)

        with self._storage_errors("update"):
            for attr, value in self._row_values(entity).items():
                setattr(row, attr, value)
            try:
                await self.session.flush()
            except IntegrityError as e:
                raise AlreadyExistsError(self.entity_type, entity.id, str(e.orig)) from e
        return entity

    async def delete(self, id: str) -> None:
        row = await self._get_row(id)
        with self._storage_errors("delete"):
            await self.session.delete(row)
            await self.session.flush()
        logger.debug("Deleted %s %s", self.entity_type.lower(), row.id[:8])

    async def count(self) -> int:
        with self._storage_errors("count"):
            result = await self.session.execute(select(func.count()).select_from(self.record))
            return int(result.scalar_one())

    async def _check_unique(self, entity: E) -> None:
        """Hook for repositories with natural keys (slugs)."""
