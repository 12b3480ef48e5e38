"""
Unit tests for the parsing and validation of temporal query parameters.
"""

from datetime import datetime, UTC

import pytest
from dateutil.relativedelta import relativedelta

from ngsild_temporal.errors import BadRequestDataException, TooManyResultsException
from ngsild_temporal.jsonld import NGSILD_DEFAULT_VOCAB
from ngsild_temporal.temporal.models import (
    Aggregate,
    PaginationConfig,
    Query,
    TemporalProperty,
    TemporalRepresentation,
    Timerel,
)
from ngsild_temporal.temporal.query_utils import (
    build_temporal_query,
    compose_temporal_entities_query,
    compose_temporal_entities_query_from_post,
    parse_aggr_period_duration,
    parse_pagination_parameters,
    parse_temporal_representation,
)

CONTEXTS = ["https://uri.etsi.org/ngsi-ld/v1/ngsi-ld-core-context-v1.8.jsonld"]
PAGINATION_CONFIG = PaginationConfig(limit_default=30, limit_max=100, temporal_limit=100)


def assert_bad_request(params: dict, message: str, in_query_entities: bool = False, aggregated: bool = False):
    with pytest.raises(BadRequestDataException) as exc_info:
        build_temporal_query(params, 100, in_query_entities, aggregated)
    assert exc_info.value.detail == message


class TestBuildTemporalQuery:
    """Tests for build_temporal_query."""

    def test_between_query(self):
        """Test a complete between query."""
        query = build_temporal_query(
            {
                "timerel": "between",
                "timeAt": "2019-10-17T07:31:39Z",
                "endTimeAt": "2019-10-18T07:31:39Z",
                "lastN": "2",
                "timeproperty": "modifiedAt",
            },
            100,
            in_query_entities=True,
        )

        assert query.timerel == Timerel.BETWEEN
        assert query.time_at == datetime(2019, 10, 17, 7, 31, 39, tzinfo=UTC)
        assert query.end_time_at == datetime(2019, 10, 18, 7, 31, 39, tzinfo=UTC)
        assert query.last_n == 2
        assert query.instance_limit == 2
        assert query.timeproperty == TemporalProperty.MODIFIED_AT
        assert query.is_last_n_the_limit()

    def test_legacy_parameter_names(self):
        """Test that time and endTime are accepted as aliases."""
        query = build_temporal_query(
            {"timerel": "between", "time": "2019-10-17T07:31:39Z", "endTime": "2019-10-18T07:31:39Z"},
            100,
        )

        assert query.time_at == datetime(2019, 10, 17, 7, 31, 39, tzinfo=UTC)
        assert query.end_time_at == datetime(2019, 10, 18, 7, 31, 39, tzinfo=UTC)

    def test_end_time_at_dropped_when_not_between(self):
        """Test that endTimeAt is only kept for between queries."""
        query = build_temporal_query(
            {"timerel": "after", "timeAt": "2019-10-17T07:31:39Z", "endTimeAt": "2019-10-18T07:31:39Z"},
            100,
        )

        assert query.end_time_at is None

    def test_single_entity_without_time_filter(self):
        """Test that timerel and timeAt are optional for a single entity."""
        query = build_temporal_query({}, 100)

        assert query.timerel is None
        assert query.time_at is None
        assert query.instance_limit == 100
        assert query.timeproperty == TemporalProperty.OBSERVED_AT

    def test_last_n_above_limit_is_capped(self):
        """Test that the instance limit never exceeds the configured maximum."""
        query = build_temporal_query({"lastN": "500"}, 100)

        assert query.last_n == 500
        assert query.instance_limit == 100
        assert not query.is_last_n_the_limit()

    @pytest.mark.parametrize("last_n", ["-1", "0", "two"])
    def test_invalid_last_n_is_ignored(self, last_n):
        """Test that an invalid lastN falls back to the configured limit."""
        query = build_temporal_query({"lastN": last_n}, 100)

        assert query.last_n is None
        assert query.instance_limit == 100

    def test_aggregated_query(self):
        """Test that aggregation methods are kept in order and without duplicates."""
        query = build_temporal_query(
            {
                "timerel": "after",
                "timeAt": "2019-10-17T07:31:39Z",
                "aggrPeriodDuration": "P1D",
                "aggrMethods": "sum,avg,sum",
            },
            100,
            with_aggregated_values=True,
        )

        assert query.aggr_methods == (Aggregate.SUM, Aggregate.AVG)
        assert query.aggr_period_duration == "P1D"

    def test_aggregation_ignored_when_not_aggregated(self):
        """Test that aggregation parameters are validated but not kept for other representations."""
        query = build_temporal_query({"aggrPeriodDuration": "P1D", "aggrMethods": "sum"}, 100)

        assert query.aggr_methods == ()
        assert query.aggr_period_duration is None

    @pytest.mark.parametrize(
        "params, message",
        [
            ({"timerel": "before"}, "'timerel' and 'time' must be used in conjunction"),
            ({"timeAt": "2019-10-17T07:31:39Z"}, "'timerel' and 'time' must be used in conjunction"),
            (
                {"timerel": "befor", "timeAt": "2019-10-17T07:31:39Z"},
                "'timerel' is not valid, it should be one of 'before', 'between', or 'after'",
            ),
            ({"timerel": "before", "timeAt": "yesterday"}, "'timeAt' parameter is not a valid date"),
            (
                {"timerel": "between", "timeAt": "2019-10-17T07:31:39Z"},
                "'endTime' request parameter is mandatory if 'timerel' is 'between'",
            ),
            (
                {"timerel": "between", "timeAt": "2019-10-17T07:31:39Z", "endTimeAt": "tomorrow"},
                "'endTimeAt' parameter is not a valid date",
            ),
            ({"aggrMethods": "sum"}, "'aggrPeriodDuration' and 'aggrMethods' must be used in conjunction"),
            ({"aggrPeriodDuration": "P1D"}, "'aggrPeriodDuration' and 'aggrMethods' must be used in conjunction"),
            (
                {"aggrPeriodDuration": "P1D", "aggrMethods": "sum,median"},
                "'median' is not a recognized aggregation method for 'aggrMethods' parameter",
            ),
            (
                {"aggrPeriodDuration": "1 day", "aggrMethods": "sum"},
                "'1 day' is not a valid ISO 8601 duration for 'aggrPeriodDuration' parameter",
            ),
            ({"timeproperty": "updatedAt"}, "Unknown value for 'timeproperty': updatedAt"),
        ],
    )
    def test_invalid_parameters(self, params, message):
        """Test the detail of every validation failure."""
        assert_bad_request(params, message)

    def test_time_is_mandatory_when_querying_entities(self):
        """Test that timerel and timeAt are mandatory for many entities."""
        assert_bad_request({}, "'timerel' and 'time' must be used in conjunction", in_query_entities=True)

    def test_aggr_methods_mandatory_for_aggregated_values(self):
        """Test that aggregatedValues requires aggregation methods."""
        assert_bad_request(
            {"timerel": "after", "timeAt": "2019-10-17T07:31:39Z"},
            "'aggrMethods' is mandatory if 'aggregatedValues' option is specified",
            aggregated=True,
        )


class TestAggrPeriodDuration:
    """Tests for parse_aggr_period_duration."""

    @pytest.mark.parametrize(
        "duration, expected",
        [
            ("P1D", relativedelta(days=1)),
            ("PT1M", relativedelta(minutes=1)),
            ("P1Y2M", relativedelta(years=1, months=2)),
            ("P1W", relativedelta(weeks=1)),
            ("PT0.5S", relativedelta(microseconds=500000)),
        ],
    )
    def test_valid_durations(self, duration, expected):
        assert parse_aggr_period_duration(duration) == expected

    @pytest.mark.parametrize("duration", [None, "PT0S", "P0D", "PT0M"])
    def test_whole_time_range(self, duration):
        """Test that a zero duration means one bucket over the whole range."""
        assert parse_aggr_period_duration(duration) is None

    @pytest.mark.parametrize("duration", ["P", "PT", "1D", "P1H"])
    def test_invalid_durations(self, duration):
        with pytest.raises(BadRequestDataException):
            parse_aggr_period_duration(duration)


class TestPagination:
    """Tests for the offset, limit and count parameters."""

    def test_defaults(self):
        pagination = parse_pagination_parameters({}, 30, 100)

        assert (pagination.offset, pagination.limit, pagination.count) == (0, 30, False)

    def test_zero_limit_allowed_with_count(self):
        """Test that a count-only request may ask for no entity at all."""
        pagination = parse_pagination_parameters({"limit": "0", "count": "true"}, 30, 100)

        assert pagination.limit == 0
        assert pagination.count

    def test_zero_limit_without_count(self):
        with pytest.raises(BadRequestDataException) as exc_info:
            parse_pagination_parameters({"limit": "0"}, 30, 100)

        assert exc_info.value.detail == (
            "Offset must be greater than zero and limit must be strictly greater than zero"
        )

    def test_negative_offset_with_count(self):
        with pytest.raises(BadRequestDataException) as exc_info:
            parse_pagination_parameters({"offset": "-1", "count": "true"}, 30, 100)

        assert exc_info.value.detail == "Offset and limit must be greater than zero"

    def test_limit_above_maximum(self):
        with pytest.raises(TooManyResultsException) as exc_info:
            parse_pagination_parameters({"limit": "200"}, 30, 100)

        assert exc_info.value.status_code == 403
        assert "200" in exc_info.value.detail


class TestComposeTemporalEntitiesQuery:
    """Tests for the composition of complete temporal queries."""

    def test_get_request(self):
        """Test that types and attributes are expanded and options are read."""
        query = compose_temporal_entities_query(
            {
                "type": "BeeHive",
                "attrs": "incoming,outgoing",
                "timerel": "after",
                "timeAt": "2019-10-17T07:31:39Z",
                "options": "temporalValues,audit",
            },
            PAGINATION_CONFIG,
            CONTEXTS,
            in_query_entities=True,
        )

        assert query.entities_query.types == {NGSILD_DEFAULT_VOCAB + "BeeHive"}
        assert query.entities_query.attrs == {
            NGSILD_DEFAULT_VOCAB + "incoming",
            NGSILD_DEFAULT_VOCAB + "outgoing",
        }
        assert query.temporal_representation == TemporalRepresentation.TEMPORAL_VALUES
        assert query.with_audit
        assert not query.with_sys_attrs

    def test_format_parameter_selects_representation(self):
        query = compose_temporal_entities_query({"format": "temporalValues"}, PAGINATION_CONFIG, CONTEXTS)

        assert query.with_temporal_values

    def test_entity_selector_is_mandatory(self):
        """Test that querying many entities needs at least one selector."""
        with pytest.raises(BadRequestDataException) as exc_info:
            compose_temporal_entities_query(
                {"timerel": "after", "timeAt": "2019-10-17T07:31:39Z"},
                PAGINATION_CONFIG,
                CONTEXTS,
                in_query_entities=True,
            )

        assert exc_info.value.detail == "One of 'id', 'type' or 'attrs' must be provided in the query"

    def test_both_representations(self):
        with pytest.raises(BadRequestDataException) as exc_info:
            parse_temporal_representation({"temporalValues", "aggregatedValues"})

        assert exc_info.value.detail == "Only one temporal representation can be present"

    def test_invalid_id_pattern(self):
        with pytest.raises(BadRequestDataException) as exc_info:
            compose_temporal_entities_query({"idPattern": "urn:(", "type": "BeeHive"}, PAGINATION_CONFIG, CONTEXTS)

        assert exc_info.value.detail.startswith("Invalid value for idPattern: urn:(")

    def test_post_request(self):
        """Test that entity selectors and the temporal part come from the body."""
        body = Query.model_validate(
            {
                "type": "Query",
                "entities": [{"type": "BeeHive"}],
                "attrs": ["incoming"],
                "temporalQ": {
                    "timerel": "after",
                    "timeAt": "2019-10-17T07:31:39Z",
                    "aggrMethods": ["sum"],
                    "aggrPeriodDuration": "PT1H",
                    "lastN": 3,
                },
            }
        )

        query = compose_temporal_entities_query_from_post(
            body, {"options": "aggregatedValues", "limit": "10"}, PAGINATION_CONFIG, CONTEXTS
        )

        assert query.entities_query.types == {NGSILD_DEFAULT_VOCAB + "BeeHive"}
        assert query.entities_query.pagination.limit == 10
        assert query.temporal_query.timerel == Timerel.AFTER
        assert query.temporal_query.aggr_methods == (Aggregate.SUM,)
        assert query.temporal_query.last_n == 3
        assert query.is_aggregated_with_defined_duration()

    def test_post_request_with_wrong_type(self):
        body = Query.model_validate({"type": "Entity", "entities": [{"type": "BeeHive"}]})

        with pytest.raises(BadRequestDataException) as exc_info:
            compose_temporal_entities_query_from_post(body, {}, PAGINATION_CONFIG, CONTEXTS)

        assert exc_info.value.detail == "The type parameter should be equals to 'Query', got Entity"
