"""
Partial-result pagination of temporal queries.

When the store truncated the instances of one or more attributes to the
instance limit, a single time range is computed from the truncated attributes,
every attribute is filtered down to it and the range is reported to the client
(HTTP 206 and Content-Range header) so the next page can be requested.

All functions here are pure and never raise: a range that cannot be computed
means that no pagination applies.
"""

from datetime import datetime
from typing import Optional, Sequence

from ngsild_temporal.config import get_logger
from ngsild_temporal.temporal.models import (
    AggregatedAttributeInstanceResult,
    AttributeInstanceResult,
    AttributesWithInstances,
    Range,
    TemporalEntitiesQuery,
    Timerel,
)

logger = get_logger(__name__)

# (first comparable time, limit comparable time) of one truncated attribute
Boundaries = tuple[datetime, datetime]


def get_attributes_who_reached_limit(
    attributes_with_instances: AttributesWithInstances,
    instance_limit: int,
) -> list[list[AttributeInstanceResult]]:
    """Return the instance lists whose size reached the instance limit."""
    return [
        instances
        for instances in attributes_with_instances.values()
        if len(instances) >= instance_limit
    ]


def extract_boundaries(
    instances: Sequence[AttributeInstanceResult],
    instance_limit: int,
    with_aggregated_values: bool = False,
) -> Boundaries:
    """
    Read the first and the limit-th time of a truncated attribute.

    For aggregated results the limit-th time is the end of the last returned
    bucket, so that the bucket is entirely part of the page.
    """
    limit_instance = instances[min(instance_limit, len(instances)) - 1]
    if with_aggregated_values and isinstance(limit_instance, AggregatedAttributeInstanceResult):
        limit_time = limit_instance.values[0].end_date_time
    else:
        limit_time = limit_instance.comparable_time()
    return instances[0].comparable_time(), limit_time


def compute_range(
    timerel: Optional[Timerel],
    time_at: Optional[datetime],
    end_time_at: Optional[datetime],
    has_last_n: bool,
    boundaries: Sequence[Boundaries],
) -> Optional[Range]:
    """
    Reconcile the boundaries of all truncated attributes into one range.

    With lastN, instances are the most recent ones: the range goes from the most
    recent limit time back to the most recent first time. Otherwise instances
    are scanned forward: the range goes from the oldest first time to the oldest
    limit time. In both cases the start is pinned to the query bounds when the
    relation provides one on that side.

    Args:
        timerel: Temporal relation of the query
        time_at: timeAt of the query
        end_time_at: endTimeAt of the query
        has_last_n: Whether lastN was requested
        boundaries: (first time, limit time) of each truncated attribute

    Returns:
        The (start, end) range, or None if there are no boundaries
    """
    if not boundaries:
        return None

    if has_last_n:
        discriminating_start = max(limit_time for _, limit_time in boundaries)
        discriminating_end = max(first_time for first_time, _ in boundaries)
        if timerel == Timerel.BEFORE and time_at is not None:
            start = time_at
        elif timerel == Timerel.BETWEEN and end_time_at is not None:
            start = end_time_at
        else:
            start = discriminating_start
        return start, discriminating_end

    discriminating_start = min(first_time for first_time, _ in boundaries)
    discriminating_end = min(limit_time for _, limit_time in boundaries)
    if timerel in (Timerel.AFTER, Timerel.BETWEEN) and time_at is not None:
        start = time_at
    else:
        start = discriminating_start
    return start, discriminating_end


def range_contains(range_: Range, time: datetime) -> bool:
    """Closed-interval containment, whatever the order of the range bounds."""
    start, end = range_
    return start >= time >= end or start <= time <= end


def filter_in_range(
    attributes_with_instances: AttributesWithInstances,
    range_: Range,
) -> AttributesWithInstances:
    """Keep, for every attribute, the instances within the range, keeping their order."""
    return {
        attribute: [
            instance for instance in instances if range_contains(range_, instance.comparable_time())
        ]
        for attribute, instances in attributes_with_instances.items()
    }


def detect(
    attributes_with_instances: AttributesWithInstances,
    query: TemporalEntitiesQuery,
) -> Optional[Range]:
    """
    Compute the pagination range of a result set, if any.

    Returns:
        None when lastN alone bounds the result or when no attribute reached
        the instance limit
    """
    temporal_query = query.temporal_query
    if temporal_query.is_last_n_the_limit():
        return None

    reached_limit = get_attributes_who_reached_limit(
        attributes_with_instances, temporal_query.instance_limit
    )
    if not reached_limit:
        return None

    boundaries = [
        extract_boundaries(instances, temporal_query.instance_limit, query.with_aggregated_values)
        for instances in reached_limit
        if instances
    ]
    return compute_range(
        temporal_query.timerel,
        temporal_query.time_at,
        temporal_query.end_time_at,
        temporal_query.has_last_n(),
        boundaries,
    )


def get_paginated_attributes_with_instances_and_range(
    attributes_with_instances: AttributesWithInstances,
    query: TemporalEntitiesQuery,
) -> tuple[AttributesWithInstances, Optional[Range]]:
    """
    Detect truncation and filter every attribute to the resulting range.

    Every attribute is filtered, including the ones that did not reach the
    limit, so that all of them cover the same time window.

    Returns:
        The (possibly filtered) attributes and the range, None if not paginated
    """
    range_ = detect(attributes_with_instances, query)
    if range_ is None:
        return attributes_with_instances, None

    logger.debug(f"Temporal result truncated, paginating on range {range_[0]} - {range_[1]}")
    return filter_in_range(attributes_with_instances, range_), range_
