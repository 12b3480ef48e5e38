"""
Data models for temporal queries and the temporal evolution of entities.

This module defines the validated query description (TemporalQuery), the
identity of an attribute (Attribute), the three shapes an attribute instance
can be retrieved in, and the per-entity result consumed by the temporal
entity builder.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ngsild_temporal.errors import BadRequestDataException

# A closed time interval, start and end as computed (start may be after end)
Range = tuple[datetime, datetime]


def format_ngsild_datetime(value: datetime) -> str:
    """Format a datetime as an UTC ISO 8601 string (``2020-01-01T00:00:00Z``)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


# ============================================================================
# Query enums
# ============================================================================


class Timerel(str, Enum):
    """Temporal relation between the requested instances and timeAt."""
    BEFORE = "before"
    AFTER = "after"
    BETWEEN = "between"


class TemporalProperty(str, Enum):
    """Temporal property an instance is indexed on (NGSI-LD 4.8)."""
    OBSERVED_AT = "observedAt"
    CREATED_AT = "createdAt"
    MODIFIED_AT = "modifiedAt"
    DELETED_AT = "deletedAt"

    @classmethod
    def from_property_name(cls, property_name: str) -> "TemporalProperty":
        for member in cls:
            if member.value == property_name:
                return member
        raise BadRequestDataException(f"Unknown value for 'timeproperty': {property_name}")


class Aggregate(str, Enum):
    """Supported aggregation methods (NGSI-LD 4.5.19)."""
    TOTAL_COUNT = "totalCount"
    DISTINCT_COUNT = "distinctCount"
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    STDDEV = "stddev"
    SUMSQ = "sumsq"

    @classmethod
    def is_supported(cls, method: str) -> bool:
        return any(member.value == method for member in cls)

    @classmethod
    def for_method(cls, method: str) -> Optional["Aggregate"]:
        for member in cls:
            if member.value == method:
                return member
        return None


class TemporalRepresentation(str, Enum):
    """Output shape of a temporal entity."""
    NORMALIZED = "normalized"
    TEMPORAL_VALUES = "temporalValues"
    AGGREGATED_VALUES = "aggregatedValues"


# ============================================================================
# Queries
# ============================================================================


WHOLE_TIME_RANGE_DURATION = "PT0S"


class TemporalQuery(BaseModel):
    """Validated description of the time window and instances to retrieve.

    Attributes:
        timerel: Relation to timeAt (None when querying a single entity without time filter)
        time_at: Reference time of the query
        end_time_at: End of the window, set only when timerel is BETWEEN
        aggr_period_duration: ISO 8601 duration of an aggregation bucket
        aggr_methods: Ordered aggregation methods, empty when not aggregating
        last_n: Number of most recent instances asked by the client, as asked
        instance_limit: Effective cap on the number of instances per attribute
        timeproperty: Temporal property the instances are filtered and sorted on
    """

    timerel: Optional[Timerel] = None
    time_at: Optional[datetime] = None
    end_time_at: Optional[datetime] = None
    aggr_period_duration: Optional[str] = None
    aggr_methods: tuple[Aggregate, ...] = ()
    last_n: Optional[int] = None
    instance_limit: int
    timeproperty: TemporalProperty = TemporalProperty.OBSERVED_AT

    model_config = ConfigDict(frozen=True)

    def has_last_n(self) -> bool:
        return self.last_n is not None

    def is_last_n_the_limit(self) -> bool:
        """True when lastN, and not the configured maximum, caps the instances."""
        return self.last_n is not None and self.last_n <= self.instance_limit


class PaginationQuery(BaseModel):
    """Offset based pagination of entities."""

    offset: int = 0
    limit: int = 30
    count: bool = False

    model_config = ConfigDict(frozen=True)


class PaginationConfig(BaseModel):
    """Process-wide pagination limits, read once from the settings."""

    limit_default: int = 30
    limit_max: int = 100
    temporal_limit: int = 10000

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_settings(cls, settings) -> "PaginationConfig":
        return cls(
            limit_default=settings.pagination_limit_default,
            limit_max=settings.pagination_limit_max,
            temporal_limit=settings.pagination_temporal_limit,
        )


class EntitiesQuery(BaseModel):
    """Selection of the entities a temporal query applies to.

    Types and attribute names are held in their expanded form.
    """

    ids: frozenset[str] = frozenset()
    types: frozenset[str] = frozenset()
    id_pattern: Optional[str] = None
    attrs: frozenset[str] = frozenset()
    dataset_ids: frozenset[str] = frozenset()
    pagination: PaginationQuery = Field(default_factory=PaginationQuery)
    contexts: tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True)


class TemporalEntitiesQuery(BaseModel):
    """A temporal query bound to its entity selection and output options."""

    entities_query: EntitiesQuery
    temporal_query: TemporalQuery
    temporal_representation: TemporalRepresentation = TemporalRepresentation.NORMALIZED
    with_audit: bool = False
    with_sys_attrs: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def with_temporal_values(self) -> bool:
        return self.temporal_representation == TemporalRepresentation.TEMPORAL_VALUES

    @property
    def with_aggregated_values(self) -> bool:
        return self.temporal_representation == TemporalRepresentation.AGGREGATED_VALUES

    def is_aggregated_with_defined_duration(self) -> bool:
        duration = self.temporal_query.aggr_period_duration
        return (
            self.with_aggregated_values
            and duration is not None
            and duration != WHOLE_TIME_RANGE_DURATION
        )


# Body of POST /temporal/entityOperations/query

class TemporalQ(BaseModel):
    """The temporalQ member of an NGSI-LD Query."""

    timerel: Optional[str] = None
    timeAt: Optional[str] = None
    endTimeAt: Optional[str] = None
    aggrPeriodDuration: Optional[str] = None
    aggrMethods: Optional[list[str]] = None
    lastN: Optional[int] = None
    timeproperty: Optional[str] = None


class EntitySelector(BaseModel):
    id: Optional[str] = None
    idPattern: Optional[str] = None
    type: Optional[str] = None


class Query(BaseModel):
    """NGSI-LD Query data type (5.2.23), restricted to what temporal queries use."""

    type: str = "Query"
    entities: list[EntitySelector] = Field(default_factory=list)
    attrs: list[str] = Field(default_factory=list)
    temporalQ: Optional[TemporalQ] = None
    lang: Optional[str] = None

    model_config = ConfigDict(extra="allow")


# ============================================================================
# Attributes
# ============================================================================


class AttributeType(str, Enum):
    """NGSI-LD attribute types."""
    PROPERTY = "Property"
    RELATIONSHIP = "Relationship"
    GEO_PROPERTY = "GeoProperty"
    JSON_PROPERTY = "JsonProperty"
    LANGUAGE_PROPERTY = "LanguageProperty"
    VOCAB_PROPERTY = "VocabProperty"

    def value_member(self) -> str:
        """Name of the member holding the value of an instance."""
        return _VALUE_MEMBERS[self]

    def simplified_representation_key(self) -> str:
        """Name of the member holding the values in the temporalValues representation."""
        return _SIMPLIFIED_REPRESENTATION_KEYS[self]


_VALUE_MEMBERS = {
    AttributeType.PROPERTY: "value",
    AttributeType.RELATIONSHIP: "object",
    AttributeType.GEO_PROPERTY: "value",
    AttributeType.JSON_PROPERTY: "json",
    AttributeType.LANGUAGE_PROPERTY: "languageMap",
    AttributeType.VOCAB_PROPERTY: "vocab",
}

_SIMPLIFIED_REPRESENTATION_KEYS = {
    AttributeType.PROPERTY: "values",
    AttributeType.RELATIONSHIP: "objects",
    AttributeType.GEO_PROPERTY: "values",
    AttributeType.JSON_PROPERTY: "jsons",
    AttributeType.LANGUAGE_PROPERTY: "languageMaps",
    AttributeType.VOCAB_PROPERTY: "vocabs",
}


class AttributeValueType(str, Enum):
    NUMBER = "Number"
    OBJECT = "Object"
    ARRAY = "Array"
    STRING = "String"
    BOOLEAN = "Boolean"
    GEOMETRY = "Geometry"
    DATETIME = "DateTime"
    URI = "Uri"
    JSON = "Json"


class Attribute(BaseModel):
    """Identity of one attribute of one entity, independent of its values.

    A None dataset_id designates the default instance of the attribute.
    """

    id: UUID
    entity_id: str
    attribute_name: str
    attribute_type: AttributeType = AttributeType.PROPERTY
    attribute_value_type: AttributeValueType = AttributeValueType.STRING
    dataset_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    model_config = ConfigDict(frozen=True)


# ============================================================================
# Attribute instance results
# ============================================================================


class FullAttributeInstanceResult(BaseModel):
    """Complete instance as stored, with the time of the queried temporal property."""

    attribute_uuid: UUID
    payload: dict[str, Any]
    time: datetime
    timeproperty: TemporalProperty = TemporalProperty.OBSERVED_AT
    sub: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def comparable_time(self) -> datetime:
        return self.time


class SimplifiedAttributeInstanceResult(BaseModel):
    """Bare value of an instance and its time."""

    attribute_uuid: UUID
    value: Any
    time: datetime

    model_config = ConfigDict(frozen=True)

    def comparable_time(self) -> datetime:
        return self.time


class AggregateResult(BaseModel):
    """Result of one aggregation method over one time bucket."""

    aggregate: Aggregate
    value: Any
    start_date_time: datetime
    end_date_time: datetime

    model_config = ConfigDict(frozen=True)


class AggregatedAttributeInstanceResult(BaseModel):
    """Results of all requested aggregation methods over one time bucket."""

    attribute_uuid: UUID
    values: list[AggregateResult]

    model_config = ConfigDict(frozen=True)

    def comparable_time(self) -> datetime:
        return self.values[0].start_date_time


AttributeInstanceResult = Union[
    FullAttributeInstanceResult,
    SimplifiedAttributeInstanceResult,
    AggregatedAttributeInstanceResult,
]

AttributesWithInstances = dict[Attribute, list[AttributeInstanceResult]]


# ============================================================================
# Scope history
# ============================================================================


class FullScopeInstanceResult(BaseModel):
    entity_id: str
    scopes: list[str]
    time: datetime
    timeproperty: TemporalProperty = TemporalProperty.MODIFIED_AT

    model_config = ConfigDict(frozen=True)


class SimplifiedScopeInstanceResult(BaseModel):
    entity_id: str
    scopes: list[str]
    time: datetime

    model_config = ConfigDict(frozen=True)


class AggregatedScopeInstanceResult(BaseModel):
    entity_id: str
    values: list[AggregateResult]

    model_config = ConfigDict(frozen=True)


ScopeInstanceResult = Union[
    FullScopeInstanceResult,
    SimplifiedScopeInstanceResult,
    AggregatedScopeInstanceResult,
]


# ============================================================================
# Entities
# ============================================================================


class EntityPayload(BaseModel):
    """Core metadata of an entity."""

    entity_id: str
    types: list[str]
    scopes: Optional[list[str]] = None
    created_at: datetime
    modified_at: Optional[datetime] = None
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


@dataclass(frozen=True)
class EntityTemporalResult:
    """All temporal data retrieved for one entity by one query."""

    entity: EntityPayload
    scope_history: list = field(default_factory=list)
    attributes_with_instances: AttributesWithInstances = field(default_factory=dict)
