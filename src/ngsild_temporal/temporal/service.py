"""
Temporal query service.

Orchestrates the retrieval of the temporal evolution of entities: access
checks, instance retrieval from the store, partial-result pagination, building
of the requested representation and term compaction. Also handles the writes
of the temporal API (creation of entities and appending of attribute instances).
"""

from datetime import datetime
from typing import Any, Optional

from dateutil import parser as date_parser

from ngsild_temporal.authorization import AuthorizationService
from ngsild_temporal.config import get_logger
from ngsild_temporal.errors import (
    BadRequestDataException,
    ResourceNotFoundException,
    attribute_not_found_message,
    entity_not_found_message,
    entity_or_attrs_not_found_message,
)
from ngsild_temporal.jsonld import JSONLD_CONTEXT, compact_entities, compact_entity, expand_term
from ngsild_temporal.store.base import TemporalStore
from ngsild_temporal.temporal.builder import (
    NGSILD_SCOPE_PROPERTY,
    build_temporal_entities,
    build_temporal_entity,
)
from ngsild_temporal.temporal.models import (
    Attribute,
    AttributeType,
    AttributesWithInstances,
    EntityTemporalResult,
    Range,
    TemporalEntitiesQuery,
)
from ngsild_temporal.temporal.pagination import get_paginated_attributes_with_instances_and_range

logger = get_logger(__name__)

# Members of an entity payload which are not attributes
ENTITY_CORE_MEMBERS = {"id", "type", "scope", JSONLD_CONTEXT, "createdAt", "modifiedAt"}


class TemporalQueryService:
    """Service answering temporal queries and recording attribute instances."""

    def __init__(self, store: TemporalStore, authorization_service: AuthorizationService):
        """
        Initialize the service.

        Args:
            store: Storage of entities and attribute instances
            authorization_service: Access control checks
        """
        self.store = store
        self.authorization_service = authorization_service

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query_temporal_entity(
        self,
        entity_id: str,
        query: TemporalEntitiesQuery,
        sub: Optional[str] = None,
    ) -> tuple[dict[str, Any], Optional[Range]]:
        """
        Retrieve the temporal evolution of one entity.

        Args:
            entity_id: URI of the entity
            query: The temporal query
            sub: Subject performing the query

        Returns:
            The compacted temporal entity and the pagination range (None if complete)

        Raises:
            ResourceNotFoundException: If the entity or none of the requested attributes exist
            AccessDeniedException: If the subject cannot read the entity
        """
        if not self.store.entity_exists(entity_id):
            raise ResourceNotFoundException(entity_not_found_message(entity_id))
        self.authorization_service.user_can_read_entity(entity_id, sub)

        entities_query = query.entities_query
        attributes = self.store.get_attributes_for_entity(
            entity_id, entities_query.attrs, entities_query.dataset_ids
        )
        if not attributes:
            raise ResourceNotFoundException(
                entity_or_attrs_not_found_message(entity_id, entities_query.attrs)
            )

        entity_payload = self.store.retrieve_entity(entity_id)
        if entity_payload is None:
            raise ResourceNotFoundException(entity_not_found_message(entity_id))

        origin = self.calculate_oldest_timestamp(entity_id, query, attributes)

        scope_history = []
        if self._with_scope(query):
            scope_history = self.store.retrieve_scope_history([entity_id], query, origin).get(entity_id, [])

        attributes_with_instances, range_ = self._search_and_paginate(attributes, query, origin)

        temporal_entity = build_temporal_entity(
            EntityTemporalResult(entity_payload, scope_history, attributes_with_instances),
            query,
            keep_empty=range_ is not None,
        )
        return compact_entity(temporal_entity, list(entities_query.contexts)), range_

    def query_temporal_entities(
        self,
        query: TemporalEntitiesQuery,
        sub: Optional[str] = None,
    ) -> tuple[list[dict[str, Any]], int, Optional[Range]]:
        """
        Retrieve the temporal evolution of the entities matching a query.

        Args:
            query: The temporal query
            sub: Subject performing the query

        Returns:
            The compacted temporal entities of the requested page, the total
            number of matching entities and the pagination range (None if complete)
        """
        entities_query = query.entities_query
        access_right_filter = self.authorization_service.compute_access_right_filter(sub)
        entity_ids = self.store.query_entities(entities_query, access_right_filter)
        count = self.store.count_entities(entities_query, access_right_filter)

        # an empty page with a non-zero count is valid (e.g., offset too high)
        if not entity_ids:
            return [], count, None

        attributes = self.store.get_attributes_for_entities(entity_ids, entities_query)
        # timeAt is mandatory when querying entities, it is the origin of the aggregation buckets
        origin = query.temporal_query.time_at if query.with_aggregated_values else None

        scope_histories = {}
        if self._with_scope(query):
            scope_histories = self.store.retrieve_scope_history(entity_ids, query, origin)

        attributes_with_instances, range_ = self._search_and_paginate(attributes, query, origin)

        results = []
        for entity_id in entity_ids:
            entity_payload = self.store.retrieve_entity(entity_id)
            if entity_payload is None:
                continue
            results.append(
                EntityTemporalResult(
                    entity_payload,
                    scope_histories.get(entity_id, []),
                    {
                        attribute: instances
                        for attribute, instances in attributes_with_instances.items()
                        if attribute.entity_id == entity_id
                    },
                )
            )

        temporal_entities = build_temporal_entities(results, query, keep_empty=range_ is not None)
        logger.debug(f"Built {len(temporal_entities)} temporal entities out of {count}")
        return compact_entities(temporal_entities, list(entities_query.contexts)), count, range_

    def calculate_oldest_timestamp(
        self,
        entity_id: str,
        query: TemporalEntitiesQuery,
        attributes: list[Attribute],
    ) -> Optional[datetime]:
        """
        Compute the origin of the aggregation buckets of a single entity query.

        The origin is timeAt when provided, the oldest instance (attributes or
        scope) otherwise. There is no origin when not aggregating.
        """
        temporal_query = query.temporal_query
        if not query.with_aggregated_values:
            return None
        if temporal_query.time_at is not None:
            return temporal_query.time_at

        origin_for_attributes = self.store.select_oldest_date(temporal_query, attributes)
        origin_for_scope = (
            self.store.select_oldest_scope_date(entity_id, temporal_query.timeproperty)
            if self._with_scope(query)
            else None
        )
        if origin_for_attributes is None:
            return origin_for_scope
        if origin_for_scope is None:
            return origin_for_attributes
        return min(origin_for_attributes, origin_for_scope)

    @staticmethod
    def _with_scope(query: TemporalEntitiesQuery) -> bool:
        attrs = query.entities_query.attrs
        return not attrs or NGSILD_SCOPE_PROPERTY in attrs

    def _search_and_paginate(
        self,
        attributes: list[Attribute],
        query: TemporalEntitiesQuery,
        origin: Optional[datetime],
    ) -> tuple[AttributesWithInstances, Optional[Range]]:
        """
        Search the instances of the attributes and paginate them.

        Only the attributes having instances in the queried window are kept, so an
        empty list always means the pagination range removed all of them.
        """
        attributes_by_id = {attribute.id: attribute for attribute in attributes}
        attributes_with_instances: AttributesWithInstances = {}
        for instance in self.store.search_instances(query, attributes, origin):
            attribute = attributes_by_id[instance.attribute_uuid]
            attributes_with_instances.setdefault(attribute, []).append(instance)

        paginated, range_ = get_paginated_attributes_with_instances_and_range(
            attributes_with_instances, query
        )
        return {
            attribute: paginated.get(attribute, [])
            for attribute in attributes
            if attribute in attributes_with_instances
        }, range_

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_or_update_temporal_entity(
        self,
        payload: dict[str, Any],
        contexts: list[str],
        sub: Optional[str] = None,
    ) -> tuple[str, bool]:
        """
        Create a temporal entity, or append instances to it if it already exists.

        Args:
            payload: Temporal entity, attributes given as lists of instances
            contexts: JSON-LD contexts of the request
            sub: Subject performing the request

        Returns:
            The entity id and True if the entity was created
        """
        entity_id = payload.get("id")
        if not isinstance(entity_id, str) or ":" not in entity_id:
            raise BadRequestDataException("The provided NGSI-LD entity does not contain a valid id")
        types = payload.get("type")
        if not types:
            raise BadRequestDataException("The provided NGSI-LD entity does not contain a type property")
        if isinstance(types, str):
            types = [types]
        expanded_types = [expand_term(type_, contexts) for type_ in types]
        scopes = self._parse_scopes(payload.get("scope"))
        attributes = self._parse_attributes(payload, contexts)

        if not self.store.entity_exists(entity_id):
            self.authorization_service.user_can_create_entities(sub)
            self.store.create_entity(entity_id, expanded_types, scopes, sub)
            self.store.append_instances(entity_id, attributes, sub)
            return entity_id, True

        self.authorization_service.user_can_update_entity(entity_id, sub)
        self.store.update_entity(entity_id, expanded_types, scopes, sub)
        self.store.append_instances(entity_id, attributes, sub)
        logger.info(f"Upserted temporal entity {entity_id}")
        return entity_id, False

    def upsert_attributes(
        self,
        entity_id: str,
        payload: dict[str, Any],
        contexts: list[str],
        sub: Optional[str] = None,
    ) -> int:
        """
        Append attribute instances to an existing entity.

        Returns:
            Number of appended instances
        """
        if not self.store.entity_exists(entity_id):
            raise ResourceNotFoundException(entity_not_found_message(entity_id))
        self.authorization_service.user_can_update_entity(entity_id, sub)

        attributes = self._parse_attributes(payload, contexts)
        if not attributes:
            raise BadRequestDataException("The request does not contain any attribute instance")
        return self.store.append_instances(entity_id, attributes, sub)

    def delete_entity(self, entity_id: str, sub: Optional[str] = None) -> None:
        if not self.store.entity_exists(entity_id):
            raise ResourceNotFoundException(entity_not_found_message(entity_id))
        self.authorization_service.user_can_update_entity(entity_id, sub)
        self.store.delete_entity(entity_id)

    def delete_attribute(
        self,
        entity_id: str,
        attribute_name: str,
        contexts: list[str],
        dataset_id: Optional[str] = None,
        delete_all: bool = False,
        sub: Optional[str] = None,
    ) -> None:
        """
        Delete the whole history of an attribute.

        Raises:
            ResourceNotFoundException: If the entity or the attribute does not exist
        """
        if not self.store.entity_exists(entity_id):
            raise ResourceNotFoundException(entity_not_found_message(entity_id))
        self.authorization_service.user_can_update_entity(entity_id, sub)

        expanded_name = expand_term(attribute_name, contexts)
        if not self.store.delete_attribute(entity_id, expanded_name, dataset_id, delete_all):
            raise ResourceNotFoundException(attribute_not_found_message(attribute_name, dataset_id))

    @staticmethod
    def _parse_scopes(scope: Any) -> Optional[list[str]]:
        if scope is None:
            return None
        if isinstance(scope, str):
            return [scope]
        if isinstance(scope, list) and all(isinstance(item, str) for item in scope):
            return scope
        raise BadRequestDataException("The provided scope is not valid, it must be a string or a list of strings")

    @staticmethod
    def _parse_attributes(
        payload: dict[str, Any], contexts: list[str]
    ) -> dict[str, list[dict[str, Any]]]:
        """
        Extract and validate the attribute instances of a temporal payload.

        Every instance must be an object of a known attribute type, carry the
        value member of its type and a valid observedAt.
        """
        attributes: dict[str, list[dict[str, Any]]] = {}
        for name, instances in payload.items():
            if name in ENTITY_CORE_MEMBERS:
                continue
            if isinstance(instances, dict):
                instances = [instances]
            if not isinstance(instances, list) or not all(isinstance(i, dict) for i in instances):
                raise BadRequestDataException(f"Attribute {name} must be an object or a list of objects")

            for instance in instances:
                try:
                    attribute_type = AttributeType(instance.get("type", AttributeType.PROPERTY.value))
                except ValueError:
                    raise BadRequestDataException(
                        f"Attribute {name} has an unknown type: {instance.get('type')}"
                    )
                if attribute_type.value_member() not in instance:
                    raise BadRequestDataException(
                        f"Attribute {name} of type {attribute_type.value} must have a "
                        f"'{attribute_type.value_member()}' member"
                    )
                observed_at = instance.get("observedAt")
                if observed_at is None:
                    raise BadRequestDataException(
                        f"Attribute {name} has an instance without an observedAt property"
                    )
                try:
                    if not isinstance(observed_at, str):
                        raise ValueError(observed_at)
                    date_parser.isoparse(observed_at)
                except ValueError:
                    raise BadRequestDataException(
                        f"Attribute {name} has an instance with an invalid observedAt: {observed_at}"
                    )

            attributes[expand_term(name, contexts)] = instances
        return attributes
