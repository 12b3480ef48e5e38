"""
Parsing and validation of temporal query parameters.

Every rule is checked before the store is accessed; any violation raises a
BadRequestDataException (or TooManyResultsException for an oversized page)
whose detail names the offending parameter.
"""

import re
from datetime import datetime, UTC
from typing import Mapping, Optional

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from ngsild_temporal.config import get_logger
from ngsild_temporal.errors import BadRequestDataException, TooManyResultsException
from ngsild_temporal.jsonld import expand_term
from ngsild_temporal.temporal.models import (
    Aggregate,
    EntitiesQuery,
    PaginationConfig,
    PaginationQuery,
    Query,
    TemporalEntitiesQuery,
    TemporalProperty,
    TemporalQuery,
    TemporalRepresentation,
    Timerel,
    WHOLE_TIME_RANGE_DURATION,
)

logger = get_logger(__name__)

# Query parameters (first name is the current one, others are accepted aliases)
TIMEREL_PARAM = ("timerel",)
TIMEAT_PARAM = ("timeAt", "time")
ENDTIMEAT_PARAM = ("endTimeAt", "endTime")
AGGRPERIODDURATION_PARAM = ("aggrPeriodDuration", "timeBucketDuration")
AGGRMETHODS_PARAM = ("aggrMethods",)
LASTN_PARAM = ("lastN",)
TIMEPROPERTY_PARAM = ("timeproperty",)

QUERY_PARAM_ID = "id"
QUERY_PARAM_TYPE = "type"
QUERY_PARAM_ID_PATTERN = "idPattern"
QUERY_PARAM_ATTRS = "attrs"
QUERY_PARAM_DATASET_ID = "datasetId"
QUERY_PARAM_OPTIONS = "options"
QUERY_PARAM_FORMAT = "format"
QUERY_PARAM_COUNT = "count"
QUERY_PARAM_OFFSET = "offset"
QUERY_PARAM_LIMIT = "limit"

OPTION_TEMPORAL_VALUES = "temporalValues"
OPTION_AGGREGATED_VALUES = "aggregatedValues"
OPTION_AUDIT = "audit"
OPTION_SYS_ATTRS = "sysAttrs"

_DURATION_PATTERN = re.compile(
    r"^P(?!$)"
    r"(?:(?P<years>\d+)Y)?"
    r"(?:(?P<months>\d+)M)?"
    r"(?:(?P<weeks>\d+)W)?"
    r"(?:(?P<days>\d+)D)?"
    r"(?:T(?=\d)"
    r"(?:(?P<hours>\d+)H)?"
    r"(?:(?P<minutes>\d+)M)?"
    r"(?:(?P<seconds>\d+(?:\.\d+)?)S)?"
    r")?$"
)


def get_first(params: Mapping[str, str], *names: str) -> Optional[str]:
    """Return the value of the first of the given parameter names present in params."""
    for name in names:
        value = params.get(name)
        if value is not None:
            return value
    return None


def parse_request_parameter(value: Optional[str]) -> set[str]:
    """Split a comma separated parameter, ignoring blank items."""
    if not value:
        return set()
    return {item.strip() for item in value.split(",") if item.strip()}


def parse_options(params: Mapping[str, str]) -> set[str]:
    """Collect the values of the options and format parameters."""
    return parse_request_parameter(params.get(QUERY_PARAM_OPTIONS)) | parse_request_parameter(
        params.get(QUERY_PARAM_FORMAT)
    )


def parse_temporal_representation(options: set[str]) -> TemporalRepresentation:
    with_temporal_values = OPTION_TEMPORAL_VALUES in options
    with_aggregated_values = OPTION_AGGREGATED_VALUES in options
    if with_temporal_values and with_aggregated_values:
        raise BadRequestDataException("Only one temporal representation can be present")
    if with_temporal_values:
        return TemporalRepresentation.TEMPORAL_VALUES
    if with_aggregated_values:
        return TemporalRepresentation.AGGREGATED_VALUES
    return TemporalRepresentation.NORMALIZED


def parse_time_parameter(value: str, error_message: str) -> datetime:
    """
    Parse an ISO 8601 date-time.

    Date-times without an offset are considered to be expressed in UTC.

    Raises:
        BadRequestDataException: If the value is not a valid date-time
    """
    try:
        parsed = date_parser.isoparse(value)
    except (ValueError, OverflowError):
        raise BadRequestDataException(error_message)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_aggr_period_duration(duration: Optional[str]) -> Optional[relativedelta]:
    """
    Convert an ISO 8601 duration into a relativedelta.

    Returns:
        The duration of one aggregation bucket, or None when the aggregation
        spans the whole time range (no duration or PT0S)

    Raises:
        BadRequestDataException: If the duration is not a valid ISO 8601 duration
    """
    if duration is None or duration == WHOLE_TIME_RANGE_DURATION:
        return None

    match = _DURATION_PATTERN.match(duration)
    if not match:
        raise BadRequestDataException(
            f"'{duration}' is not a valid ISO 8601 duration for 'aggrPeriodDuration' parameter"
        )

    parts = {name: value for name, value in match.groupdict().items() if value is not None}
    seconds = float(parts.pop("seconds", 0))
    delta = relativedelta(
        years=int(parts.get("years", 0)),
        months=int(parts.get("months", 0)),
        weeks=int(parts.get("weeks", 0)),
        days=int(parts.get("days", 0)),
        hours=int(parts.get("hours", 0)),
        minutes=int(parts.get("minutes", 0)),
        seconds=int(seconds),
        microseconds=round((seconds - int(seconds)) * 1_000_000),
    )
    if not delta:
        # a zero duration in any spelling means the whole time range
        return None
    return delta


def _build_timerel_and_time(
    timerel_param: Optional[str],
    time_at_param: Optional[str],
    in_query_entities: bool,
) -> tuple[Optional[Timerel], Optional[datetime]]:
    # when querying a specific temporal entity, timeAt and timerel are optional
    if timerel_param is None and time_at_param is None and not in_query_entities:
        return None, None
    if timerel_param is None or time_at_param is None:
        raise BadRequestDataException("'timerel' and 'time' must be used in conjunction")

    try:
        timerel = Timerel(timerel_param.lower())
    except ValueError:
        raise BadRequestDataException(
            "'timerel' is not valid, it should be one of 'before', 'between', or 'after'"
        )

    time_at = parse_time_parameter(time_at_param, "'timeAt' parameter is not a valid date")
    return timerel, time_at


def _parse_last_n(last_n_param: Optional[str]) -> Optional[int]:
    # invalid values fall back to the configured limit instead of failing the request
    if last_n_param is None:
        return None
    try:
        last_n = int(last_n_param)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring invalid lastN value: {last_n_param}")
        return None
    return last_n if last_n >= 1 else None


def build_temporal_query(
    params: Mapping[str, str],
    temporal_limit: int,
    in_query_entities: bool = False,
    with_aggregated_values: bool = False,
) -> TemporalQuery:
    """
    Validate the temporal parameters of a request and build a TemporalQuery.

    Args:
        params: Raw request parameters
        temporal_limit: Configured maximum number of instances per attribute
        in_query_entities: True when querying many entities (timerel and time become mandatory)
        with_aggregated_values: True when the aggregatedValues representation is requested

    Returns:
        The validated temporal query

    Raises:
        BadRequestDataException: On the first violated rule
    """
    timerel_param = get_first(params, *TIMEREL_PARAM)
    time_at_param = get_first(params, *TIMEAT_PARAM)
    end_time_at_param = get_first(params, *ENDTIMEAT_PARAM)
    aggr_period_duration_param = get_first(params, *AGGRPERIODDURATION_PARAM)
    aggr_methods_param = get_first(params, *AGGRMETHODS_PARAM)
    last_n_param = get_first(params, *LASTN_PARAM)
    timeproperty_param = get_first(params, *TIMEPROPERTY_PARAM)

    timeproperty = (
        TemporalProperty.from_property_name(timeproperty_param)
        if timeproperty_param is not None
        else TemporalProperty.OBSERVED_AT
    )

    end_time_at = (
        parse_time_parameter(end_time_at_param, "'endTimeAt' parameter is not a valid date")
        if end_time_at_param is not None
        else None
    )

    timerel, time_at = _build_timerel_and_time(timerel_param, time_at_param, in_query_entities)

    if timerel == Timerel.BETWEEN and end_time_at is None:
        raise BadRequestDataException("'endTime' request parameter is mandatory if 'timerel' is 'between'")

    if with_aggregated_values and aggr_methods_param is None:
        raise BadRequestDataException("'aggrMethods' is mandatory if 'aggregatedValues' option is specified")

    if (aggr_period_duration_param is None) != (aggr_methods_param is None):
        raise BadRequestDataException("'aggrPeriodDuration' and 'aggrMethods' must be used in conjunction")

    aggr_methods: list[Aggregate] = []
    for method in parse_aggr_methods(aggr_methods_param):
        if not Aggregate.is_supported(method):
            raise BadRequestDataException(
                f"'{method}' is not a recognized aggregation method for 'aggrMethods' parameter"
            )
        aggregate = Aggregate.for_method(method)
        if aggregate not in aggr_methods:
            aggr_methods.append(aggregate)

    # validated even when not used by the requested representation
    parse_aggr_period_duration(aggr_period_duration_param)

    last_n = _parse_last_n(last_n_param)
    instance_limit = last_n if last_n is not None and last_n < temporal_limit else temporal_limit

    return TemporalQuery(
        timerel=timerel,
        time_at=time_at,
        end_time_at=end_time_at if timerel == Timerel.BETWEEN else None,
        aggr_period_duration=aggr_period_duration_param if with_aggregated_values else None,
        aggr_methods=tuple(aggr_methods) if with_aggregated_values else (),
        last_n=last_n,
        instance_limit=instance_limit,
        timeproperty=timeproperty,
    )


def parse_aggr_methods(aggr_methods_param: Optional[str]) -> list[str]:
    if aggr_methods_param is None:
        return []
    return [method.strip() for method in aggr_methods_param.split(",")]


def parse_pagination_parameters(
    params: Mapping[str, str],
    limit_default: int,
    limit_max: int,
) -> PaginationQuery:
    """
    Parse the offset, limit and count parameters.

    Raises:
        BadRequestDataException: If offset or limit are out of bounds
        TooManyResultsException: If limit is greater than the configured maximum
    """
    count = (params.get(QUERY_PARAM_COUNT) or "").lower() == "true"
    offset = _to_int_or_default(params.get(QUERY_PARAM_OFFSET), 0)
    limit = _to_int_or_default(params.get(QUERY_PARAM_LIMIT), limit_default)

    if not count and (limit <= 0 or offset < 0):
        raise BadRequestDataException(
            "Offset must be greater than zero and limit must be strictly greater than zero"
        )
    if count and (limit < 0 or offset < 0):
        raise BadRequestDataException("Offset and limit must be greater than zero")
    if limit > limit_max:
        raise TooManyResultsException(
            f"You asked for {limit} results, but the supported maximum limit is {limit_max}"
        )
    return PaginationQuery(offset=offset, limit=limit, count=count)


def _to_int_or_default(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def validate_id_pattern(id_pattern: Optional[str]) -> Optional[str]:
    if id_pattern is None:
        return None
    try:
        re.compile(id_pattern)
    except re.error as e:
        raise BadRequestDataException(f"Invalid value for idPattern: {id_pattern} ({e})")
    return id_pattern


def compose_entities_query(
    params: Mapping[str, str],
    pagination_config: PaginationConfig,
    contexts: list[str],
) -> EntitiesQuery:
    """Build the entity selection part of a query from request parameters."""
    return EntitiesQuery(
        ids=frozenset(parse_request_parameter(params.get(QUERY_PARAM_ID))),
        types=frozenset(
            expand_term(type_, contexts)
            for type_ in parse_request_parameter(params.get(QUERY_PARAM_TYPE))
        ),
        id_pattern=validate_id_pattern(params.get(QUERY_PARAM_ID_PATTERN)),
        attrs=frozenset(
            expand_term(attr, contexts)
            for attr in parse_request_parameter(params.get(QUERY_PARAM_ATTRS))
        ),
        dataset_ids=frozenset(parse_request_parameter(params.get(QUERY_PARAM_DATASET_ID))),
        pagination=parse_pagination_parameters(
            params, pagination_config.limit_default, pagination_config.limit_max
        ),
        contexts=tuple(contexts),
    )


def validate_minimal_query_entities_parameters(entities_query: EntitiesQuery) -> EntitiesQuery:
    if not entities_query.ids and not entities_query.types and not entities_query.attrs:
        raise BadRequestDataException("One of 'id', 'type' or 'attrs' must be provided in the query")
    return entities_query


def compose_temporal_entities_query(
    params: Mapping[str, str],
    pagination_config: PaginationConfig,
    contexts: list[str],
    in_query_entities: bool = False,
) -> TemporalEntitiesQuery:
    """
    Build a complete temporal query from the parameters of a GET request.

    Args:
        params: Request query parameters
        pagination_config: Configured pagination limits
        contexts: JSON-LD contexts of the request
        in_query_entities: True for the multi-entity endpoint

    Returns:
        The validated temporal entities query
    """
    entities_query = compose_entities_query(params, pagination_config, contexts)
    if in_query_entities:
        validate_minimal_query_entities_parameters(entities_query)

    options = parse_options(params)
    representation = parse_temporal_representation(options)
    temporal_query = build_temporal_query(
        params,
        pagination_config.temporal_limit,
        in_query_entities,
        representation == TemporalRepresentation.AGGREGATED_VALUES,
    )

    return TemporalEntitiesQuery(
        entities_query=entities_query,
        temporal_query=temporal_query,
        temporal_representation=representation,
        with_audit=OPTION_AUDIT in options,
        with_sys_attrs=OPTION_SYS_ATTRS in options,
    )


def compose_temporal_entities_query_from_post(
    query: Query,
    params: Mapping[str, str],
    pagination_config: PaginationConfig,
    contexts: list[str],
) -> TemporalEntitiesQuery:
    """
    Build a complete temporal query from the body of a POST query request.

    The entity selectors and the temporal part come from the body, while the
    pagination and the options still come from the request parameters.
    """
    if query.type != "Query":
        raise BadRequestDataException(f"The type parameter should be equals to 'Query', got {query.type}")

    id_patterns = [entity.idPattern for entity in query.entities if entity.idPattern]
    entities_query = EntitiesQuery(
        ids=frozenset(entity.id for entity in query.entities if entity.id),
        types=frozenset(
            expand_term(type_, contexts)
            for entity in query.entities
            if entity.type
            for type_ in parse_request_parameter(entity.type)
        ),
        id_pattern=validate_id_pattern(id_patterns[0] if id_patterns else None),
        attrs=frozenset(expand_term(attr, contexts) for attr in query.attrs),
        dataset_ids=frozenset(parse_request_parameter(params.get(QUERY_PARAM_DATASET_ID))),
        pagination=parse_pagination_parameters(
            params, pagination_config.limit_default, pagination_config.limit_max
        ),
        contexts=tuple(contexts),
    )
    validate_minimal_query_entities_parameters(entities_query)

    options = parse_options(params)
    representation = parse_temporal_representation(options)

    temporal_q = query.temporalQ
    temporal_params: dict[str, str] = {}
    if temporal_q is not None:
        for name, value in (
            ("timerel", temporal_q.timerel),
            ("timeAt", temporal_q.timeAt),
            ("endTimeAt", temporal_q.endTimeAt),
            ("aggrPeriodDuration", temporal_q.aggrPeriodDuration),
            ("aggrMethods", ",".join(temporal_q.aggrMethods) if temporal_q.aggrMethods else None),
            ("lastN", str(temporal_q.lastN) if temporal_q.lastN is not None else None),
            ("timeproperty", temporal_q.timeproperty),
        ):
            if value is not None:
                temporal_params[name] = value

    temporal_query = build_temporal_query(
        temporal_params,
        pagination_config.temporal_limit,
        True,
        representation == TemporalRepresentation.AGGREGATED_VALUES,
    )

    return TemporalEntitiesQuery(
        entities_query=entities_query,
        temporal_query=temporal_query,
        temporal_representation=representation,
        with_audit=OPTION_AUDIT in options,
        with_sys_attrs=OPTION_SYS_ATTRS in options,
    )
