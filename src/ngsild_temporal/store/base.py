"""
Abstract base class for temporal storage backends.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from ngsild_temporal.temporal.models import (
    Attribute,
    AttributeInstanceResult,
    EntitiesQuery,
    EntityPayload,
    ScopeInstanceResult,
    TemporalEntitiesQuery,
    TemporalProperty,
    TemporalQuery,
)


class TemporalStore(ABC):
    """Abstract interface for the storage of entities and their attribute instances."""

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    @abstractmethod
    def entity_exists(self, entity_id: str) -> bool:
        pass

    @abstractmethod
    def retrieve_entity(self, entity_id: str) -> Optional[EntityPayload]:
        """
        Get the core data of an entity.

        Args:
            entity_id: URI of the entity

        Returns:
            EntityPayload if found, None otherwise
        """
        pass

    @abstractmethod
    def query_entities(
        self, entities_query: EntitiesQuery, access_right_filter: Optional[str] = None
    ) -> list[str]:
        """
        Get the ids of the entities matching a query, for the requested page.

        Args:
            entities_query: Selection and pagination of the entities
            access_right_filter: Optional SQL condition restricting the readable entities

        Returns:
            Entity ids, ordered by id
        """
        pass

    @abstractmethod
    def count_entities(
        self, entities_query: EntitiesQuery, access_right_filter: Optional[str] = None
    ) -> int:
        """Count the entities matching a query, regardless of pagination."""
        pass

    # ------------------------------------------------------------------
    # Attributes and instances
    # ------------------------------------------------------------------

    @abstractmethod
    def get_attributes_for_entity(
        self,
        entity_id: str,
        attrs: frozenset[str] = frozenset(),
        dataset_ids: frozenset[str] = frozenset(),
    ) -> list[Attribute]:
        """
        Get the attributes of an entity.

        Args:
            entity_id: URI of the entity
            attrs: Expanded attribute names to keep (all if empty)
            dataset_ids: Dataset ids to keep (all if empty, ``@none`` for the default instance)

        Returns:
            List of attributes
        """
        pass

    @abstractmethod
    def get_attributes_for_entities(
        self, entity_ids: list[str], entities_query: EntitiesQuery
    ) -> list[Attribute]:
        """Get the attributes of several entities, filtered like get_attributes_for_entity."""
        pass

    @abstractmethod
    def search_instances(
        self,
        query: TemporalEntitiesQuery,
        attributes: list[Attribute],
        origin: Optional[datetime] = None,
    ) -> list[AttributeInstanceResult]:
        """
        Get the instances of attributes matching a temporal query.

        At most ``instance_limit`` instances are returned per attribute, the
        most recent ones when lastN is requested. Instances of an attribute are
        always returned in ascending time order.

        Args:
            query: The temporal query
            attributes: Attributes whose instances are searched
            origin: Origin of the aggregation buckets

        Returns:
            Instances (full, simplified or aggregated depending on the representation)
        """
        pass

    @abstractmethod
    def select_oldest_date(
        self, temporal_query: TemporalQuery, attributes: list[Attribute]
    ) -> Optional[datetime]:
        pass

    @abstractmethod
    def retrieve_scope_history(
        self,
        entity_ids: list[str],
        query: TemporalEntitiesQuery,
        origin: Optional[datetime] = None,
    ) -> dict[str, list[ScopeInstanceResult]]:
        """
        Get the scope history of entities.

        Returns:
            Scope instances per entity id
        """
        pass

    @abstractmethod
    def select_oldest_scope_date(
        self, entity_id: str, timeproperty: TemporalProperty
    ) -> Optional[datetime]:
        pass

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @abstractmethod
    def create_entity(
        self,
        entity_id: str,
        types: list[str],
        scopes: Optional[list[str]] = None,
        sub: Optional[str] = None,
    ) -> None:
        pass

    @abstractmethod
    def update_entity(
        self,
        entity_id: str,
        types: list[str],
        scopes: Optional[list[str]] = None,
        sub: Optional[str] = None,
    ) -> None:
        """Add types to an existing entity and record a new scope if it changed."""
        pass

    @abstractmethod
    def append_instances(
        self,
        entity_id: str,
        attributes: dict[str, list[dict[str, Any]]],
        sub: Optional[str] = None,
    ) -> int:
        """
        Append attribute instances to an entity.

        Args:
            entity_id: URI of the entity
            attributes: Instance payloads (compacted members) per expanded attribute name
            sub: Subject performing the update

        Returns:
            Number of appended instances
        """
        pass

    @abstractmethod
    def delete_entity(self, entity_id: str) -> bool:
        pass

    @abstractmethod
    def delete_attribute(
        self,
        entity_id: str,
        attribute_name: str,
        dataset_id: Optional[str] = None,
        delete_all: bool = False,
    ) -> bool:
        """
        Delete an attribute and its whole history.

        Returns:
            True if something was deleted
        """
        pass

    @abstractmethod
    def close(self):
        """Close the database connection."""
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
