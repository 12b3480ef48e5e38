"""
Folding of attribute instances into temporal entities.

The builder takes the instances retrieved for an entity and shapes them into
one of the three temporal representations. Attribute names are kept expanded;
term compaction is done afterwards by the JSON-LD layer.
"""

from typing import Any, Iterable

from ngsild_temporal.jsonld import NGSILD_PREFIX
from ngsild_temporal.temporal.models import (
    AggregatedAttributeInstanceResult,
    AggregatedScopeInstanceResult,
    Aggregate,
    Attribute,
    AttributeInstanceResult,
    AttributesWithInstances,
    EntityTemporalResult,
    FullAttributeInstanceResult,
    FullScopeInstanceResult,
    SimplifiedAttributeInstanceResult,
    SimplifiedScopeInstanceResult,
    TemporalEntitiesQuery,
    TemporalRepresentation,
    format_ngsild_datetime,
)

NGSILD_SCOPE_PROPERTY = NGSILD_PREFIX + "scope"
NGSILD_PROPERTY_TYPE = "Property"
AUTH_PROP_SUB = "sub"


def build_temporal_entities(
    results: Iterable[EntityTemporalResult],
    query: TemporalEntitiesQuery,
    keep_empty: bool = False,
) -> list[dict[str, Any]]:
    return [build_temporal_entity(result, query, keep_empty) for result in results]


def build_temporal_entity(
    result: EntityTemporalResult,
    query: TemporalEntitiesQuery,
    keep_empty: bool = False,
) -> dict[str, Any]:
    """
    Build the temporal representation of one entity.

    Args:
        result: Entity core data, scope history and attribute instances
        query: The temporal query, selecting the representation and options
        keep_empty: Emit attributes without instances as empty lists instead of
            omitting them (used when pagination restricted the time window)

    Returns:
        The member-shaped entity, with expanded attribute names
    """
    entity = result.entity
    temporal_entity: dict[str, Any] = {
        "id": entity.entity_id,
        "type": entity.types[0] if len(entity.types) == 1 else list(entity.types),
    }
    if query.with_sys_attrs:
        temporal_entity["createdAt"] = format_ngsild_datetime(entity.created_at)
        if entity.modified_at is not None:
            temporal_entity["modifiedAt"] = format_ngsild_datetime(entity.modified_at)

    temporal_entity.update(
        build_temporal_attributes(result.attributes_with_instances, query, keep_empty)
    )
    temporal_entity.update(
        build_scope_attribute_instances(entity.scopes, result.scope_history, query)
    )
    return temporal_entity


def build_temporal_attributes(
    attributes_with_instances: AttributesWithInstances,
    query: TemporalEntitiesQuery,
    keep_empty: bool = False,
) -> dict[str, Any]:
    representation = query.temporal_representation
    if representation == TemporalRepresentation.TEMPORAL_VALUES:
        return _merge_on_attribute_name(
            {
                attribute: _build_simplified_attribute(attribute, instances)
                for attribute, instances in attributes_with_instances.items()
                if instances or keep_empty
            }
        )
    if representation == TemporalRepresentation.AGGREGATED_VALUES:
        return _merge_on_attribute_name(
            {
                attribute: _build_aggregated_attribute(
                    attribute, instances, query.temporal_query.aggr_methods
                )
                for attribute, instances in attributes_with_instances.items()
                if instances or keep_empty
            }
        )
    return _build_full_attributes(attributes_with_instances, query.with_audit, keep_empty)


# ============================================================================
# Normalized representation
# ============================================================================


def _build_full_attributes(
    attributes_with_instances: AttributesWithInstances,
    with_audit: bool,
    keep_empty: bool,
) -> dict[str, Any]:
    instances_per_name: dict[str, list[dict[str, Any]]] = {}
    dataset_ids_per_name: dict[str, set] = {}
    for attribute, instances in attributes_with_instances.items():
        instances_per_name.setdefault(attribute.attribute_name, []).extend(
            _build_full_instance(instance, with_audit) for instance in instances
        )
        dataset_ids_per_name.setdefault(attribute.attribute_name, set()).add(attribute.dataset_id)

    attributes: dict[str, Any] = {}
    for name, instances in instances_per_name.items():
        if not instances:
            if keep_empty:
                attributes[name] = []
        elif len(instances) == 1 and len(dataset_ids_per_name[name]) == 1:
            attributes[name] = instances[0]
        else:
            attributes[name] = instances
    return attributes


def _build_full_instance(instance: AttributeInstanceResult, with_audit: bool) -> dict[str, Any]:
    match instance:
        case FullAttributeInstanceResult():
            payload = dict(instance.payload)
            if with_audit and instance.sub is not None:
                payload[AUTH_PROP_SUB] = instance.sub
            payload[instance.timeproperty.value] = format_ngsild_datetime(instance.time)
            return payload
        case _:
            raise TypeError(
                f"Normalized representation expects full instances, got {type(instance).__name__}"
            )


# ============================================================================
# Simplified (temporalValues) and aggregated representations
# ============================================================================


def _attribute_header(attribute: Attribute) -> dict[str, Any]:
    header: dict[str, Any] = {"type": attribute.attribute_type.value}
    if attribute.dataset_id is not None:
        header["datasetId"] = attribute.dataset_id
    return header


def _build_simplified_attribute(
    attribute: Attribute,
    instances: list[AttributeInstanceResult],
) -> dict[str, Any]:
    simplified = _attribute_header(attribute)
    values = []
    for instance in instances:
        match instance:
            case SimplifiedAttributeInstanceResult():
                values.append([instance.value, format_ngsild_datetime(instance.time)])
            case FullAttributeInstanceResult():
                value = instance.payload.get(attribute.attribute_type.value_member())
                values.append([value, format_ngsild_datetime(instance.time)])
            case _:
                raise TypeError(
                    f"Simplified representation cannot use {type(instance).__name__}"
                )
    simplified[attribute.attribute_type.simplified_representation_key()] = values
    return simplified


def _build_aggregated_attribute(
    attribute: Attribute,
    instances: list[AttributeInstanceResult],
    aggr_methods: tuple[Aggregate, ...],
) -> dict[str, Any]:
    aggregated = _attribute_header(attribute)
    aggregated.update(_flatten_aggregates(instances, aggr_methods))
    return aggregated


def _flatten_aggregates(instances: list, aggr_methods: tuple[Aggregate, ...]) -> dict[str, list]:
    results = []
    for instance in instances:
        match instance:
            case AggregatedAttributeInstanceResult() | AggregatedScopeInstanceResult():
                results.extend(instance.values)
            case _:
                raise TypeError(
                    f"Aggregated representation cannot use {type(instance).__name__}"
                )

    return {
        aggregate.value: [
            [
                result.value,
                format_ngsild_datetime(result.start_date_time),
                format_ngsild_datetime(result.end_date_time),
            ]
            for result in results
            if result.aggregate == aggregate
        ]
        for aggregate in aggr_methods
    }


def _merge_on_attribute_name(shaped: dict[Attribute, dict[str, Any]]) -> dict[str, Any]:
    """Group the per dataset id objects under their attribute name."""
    grouped: dict[str, list[dict[str, Any]]] = {}
    for attribute, value in shaped.items():
        grouped.setdefault(attribute.attribute_name, []).append(value)
    return {
        name: values[0] if len(values) == 1 else values
        for name, values in grouped.items()
    }


# ============================================================================
# Scope history
# ============================================================================


def build_scope_attribute_instances(
    scopes: list[str] | None,
    scope_history: list,
    query: TemporalEntitiesQuery,
) -> dict[str, Any]:
    """
    Build the scope member of a temporal entity.

    An entity without scope and without history gets no scope member, an
    entity with a scope but without history in the time window gets an empty
    list.
    """
    if scopes is None and not scope_history:
        return {}
    if not scope_history:
        return {NGSILD_SCOPE_PROPERTY: []}

    representation = query.temporal_representation
    if representation == TemporalRepresentation.AGGREGATED_VALUES:
        scope: Any = {"type": NGSILD_PROPERTY_TYPE}
        scope.update(_flatten_aggregates(scope_history, query.temporal_query.aggr_methods))
    elif representation == TemporalRepresentation.TEMPORAL_VALUES:
        scope = {
            "type": NGSILD_PROPERTY_TYPE,
            "values": [
                [list(instance.scopes), format_ngsild_datetime(instance.time)]
                for instance in scope_history
                if isinstance(instance, (SimplifiedScopeInstanceResult, FullScopeInstanceResult))
            ],
        }
    else:
        scope = [
            {
                "type": NGSILD_PROPERTY_TYPE,
                "value": list(instance.scopes),
                instance.timeproperty.value: format_ngsild_datetime(instance.time),
            }
            for instance in scope_history
            if isinstance(instance, FullScopeInstanceResult)
        ]
    return {NGSILD_SCOPE_PROPERTY: scope}
