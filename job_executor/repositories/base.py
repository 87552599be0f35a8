"""Base repository pattern with common operations.

Provides the foundation for all repository implementations with
standardized CRUD operations over a caller-owned session.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Generic, TypeVar

from sqlalchemy import func
from sqlmodel import Session, select

EntityT = TypeVar("EntityT")


class BaseRepository(Generic[EntityT], ABC):
    """Base repository with common operations.

    Repositories never commit; the unit of work that owns the session
    decides when changes become durable.
    """

    def __init__(self, session: Session):
        self.session = session

    @abstractmethod
    def get_entity_class(self) -> type[EntityT]:
        """Return the SQLModel entity class."""

    def add(self, entity: EntityT) -> EntityT:
        """Stage a new entity and flush it."""
        self.session.add(entity)
        self.session.flush()
        return entity

    def add_all(self, entities: list[EntityT]) -> list[EntityT]:
        """Stage several entities in one flush."""
        self.session.add_all(entities)
        self.session.flush()
        return entities

    def get_by_id(self, entity_id: Any) -> EntityT | None:
        """Get entity by primary key (a tuple for composite keys)."""
        return self.session.get(self.get_entity_class(), entity_id)

    def update(self, entity_id: Any, updates: dict[str, Any]) -> EntityT | None:
        """Apply field updates to an entity."""
        entity = self.get_by_id(entity_id)
        if entity:
            for key, value in updates.items():
                if hasattr(entity, key):
                    setattr(entity, key, value)
            if hasattr(entity, "updated_at"):
                entity.updated_at = datetime.now()
            self.session.add(entity)
            self.session.flush()
        return entity

    def delete(self, entity_id: Any) -> bool:
        """Delete entity by primary key."""
        entity = self.get_by_id(entity_id)
        if entity:
            self.session.delete(entity)
            self.session.flush()
            return True
        return False

    def list_all(self, limit: int | None = None) -> list[EntityT]:
        """Get all entities with optional limit."""
        statement = select(self.get_entity_class())
        if limit:
            statement = statement.limit(limit)
        return list(self.session.exec(statement).all())

    def count(self) -> int:
        """Count total entities."""
        statement = select(func.count()).select_from(self.get_entity_class())
        return self.session.exec(statement).one()

    def exists(self, entity_id: Any) -> bool:
        """Check if entity exists."""
        return self.get_by_id(entity_id) is not None
