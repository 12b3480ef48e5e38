"""
Unit tests for the HTTP framing of temporal query results.
"""

import pytest

from ngsild_temporal.errors import NotAcceptableException
from ngsild_temporal.temporal.models import EntitiesQuery, PaginationQuery, Timerel
from ngsild_temporal.temporal.responses import (
    CONTENT_RANGE_HEADER,
    HTTP_OK,
    HTTP_PARTIAL_CONTENT,
    JSON_CONTENT_TYPE,
    JSON_LD_CONTENT_TYPE,
    LINK_HEADER,
    RESULTS_COUNT_HEADER,
    build_entities_temporal_response,
    build_entity_temporal_response,
    get_applicable_media_type,
    get_header_range,
    get_paging_links,
)

from temporal_factories import LEAST_RECENT, MOST_RECENT, TIME_AT, make_query

RESOURCE_URL = "/ngsi-ld/v1/temporal/entities"
CONTEXT = "https://example.org/ngsi-ld/apic.jsonld"
REQUEST_PARAMS = [("type", "BeeHive"), ("timerel", "after"), ("timeAt", "2019-01-01T00:00:00Z")]


def entities_query(offset: int = 0, limit: int = 30, count: bool = False) -> EntitiesQuery:
    return EntitiesQuery(
        types=frozenset({"BeeHive"}),
        pagination=PaginationQuery(offset=offset, limit=limit, count=count),
        contexts=(CONTEXT,),
    )


@pytest.fixture
def entities():
    return [
        {"id": "urn:ngsi-ld:BeeHive:01", "type": "BeeHive", "@context": CONTEXT},
        {"id": "urn:ngsi-ld:BeeHive:02", "type": "BeeHive", "@context": CONTEXT},
    ]


class TestPagingLinks:
    """Tests for the prev and next Link headers."""

    def test_first_page(self):
        """Test that the first page only has a next link."""
        prev_link, next_link = get_paging_links(RESOURCE_URL, REQUEST_PARAMS, 3, 0, 1)

        assert prev_link is None
        assert next_link == (
            "</ngsi-ld/v1/temporal/entities?type=BeeHive&timerel=after&timeAt=2019-01-01T00:00:00Z"
            '&limit=1&offset=1>;rel="next";type="application/ld+json"'
        )

    def test_middle_page(self):
        """Test that a middle page has both links, replacing the request offset and limit."""
        params = REQUEST_PARAMS + [("limit", "1"), ("offset", "1")]

        prev_link, next_link = get_paging_links(RESOURCE_URL, params, 3, 1, 1)

        assert prev_link.startswith(f"<{RESOURCE_URL}?type=BeeHive&")
        assert "&limit=1&offset=0>" in prev_link
        assert prev_link.endswith('rel="prev";type="application/ld+json"')
        assert "&limit=1&offset=2>" in next_link

    def test_last_page(self):
        prev_link, next_link = get_paging_links(RESOURCE_URL, REQUEST_PARAMS, 3, 2, 1)

        assert "&offset=1>" in prev_link
        assert next_link is None

    def test_offset_beyond_count(self):
        """Test that an offset too far from the count gives no link."""
        assert get_paging_links(RESOURCE_URL, REQUEST_PARAMS, 3, 10, 2) == (None, None)

    def test_repeated_parameters_are_joined(self):
        params = [("type", "BeeHive"), ("type", "Apiary")]

        _, next_link = get_paging_links(RESOURCE_URL, params, 2, 0, 1)

        assert next_link.startswith(f"<{RESOURCE_URL}?type=BeeHive,Apiary&limit=1&offset=1>")

    def test_parameter_values_are_percent_encoded(self):
        """Test that a time offset survives the next request decoding the link."""
        params = [("type", "BeeHive"), ("timerel", "after"), ("timeAt", "2020-01-01T00:00:00+01:00")]

        _, next_link = get_paging_links(RESOURCE_URL, params, 2, 0, 1)

        assert next_link.startswith(
            f"<{RESOURCE_URL}?type=BeeHive&timerel=after&timeAt=2020-01-01T00:00:00%2B01:00&limit=1&offset=1>"
        )


class TestHeaderRange:
    """Tests for the Content-Range header value."""

    def test_without_last_n(self):
        query = make_query(timerel=Timerel.AFTER, time_at=TIME_AT)

        header = get_header_range((LEAST_RECENT, MOST_RECENT), query.temporal_query)

        assert header == "date-time 2020-01-01T00:01:00Z-2020-01-01T00:05:00Z/*"

    def test_with_last_n(self):
        query = make_query(timerel=Timerel.AFTER, time_at=TIME_AT, last_n=100, instance_limit=5)

        header = get_header_range((MOST_RECENT, LEAST_RECENT), query.temporal_query)

        assert header == "date-time 2020-01-01T00:05:00Z-2020-01-01T00:01:00Z/100"


class TestMediaType:
    """Tests for the negotiation of the response media type."""

    @pytest.mark.parametrize(
        "accept, expected",
        [
            (None, JSON_CONTENT_TYPE),
            ("", JSON_CONTENT_TYPE),
            ("*/*", JSON_CONTENT_TYPE),
            ("application/json", JSON_CONTENT_TYPE),
            ("application/ld+json", JSON_LD_CONTENT_TYPE),
            ("application/ld+json, application/json;q=0.9", JSON_CONTENT_TYPE),
        ],
    )
    def test_accepted_media_types(self, accept, expected):
        assert get_applicable_media_type(accept) == expected

    def test_unsupported_media_type(self):
        with pytest.raises(NotAcceptableException) as exc_info:
            get_applicable_media_type("text/html")

        assert exc_info.value.status_code == 406


class TestTemporalResponses:
    """Tests for the framing of temporal query responses."""

    def test_complete_result(self, entities):
        """Test that a non truncated result is a plain 200 response."""
        query = make_query(entities_query=entities_query(), timerel=Timerel.AFTER, time_at=TIME_AT)

        response = build_entities_temporal_response(
            entities, 2, RESOURCE_URL, query, REQUEST_PARAMS, JSON_LD_CONTENT_TYPE, [CONTEXT], None
        )

        assert response.status_code == HTTP_OK
        assert response.body == entities
        assert response.get_headers(CONTENT_RANGE_HEADER) == []
        assert response.get_headers(LINK_HEADER) == []

    def test_truncated_result(self, entities):
        """Test that a truncated result is a 206 response with a Content-Range header."""
        query = make_query(entities_query=entities_query(), timerel=Timerel.AFTER, time_at=TIME_AT)

        response = build_entities_temporal_response(
            entities,
            2,
            RESOURCE_URL,
            query,
            REQUEST_PARAMS,
            JSON_LD_CONTENT_TYPE,
            [CONTEXT],
            (TIME_AT, MOST_RECENT),
        )

        assert response.status_code == HTTP_PARTIAL_CONTENT
        assert response.get_headers(CONTENT_RANGE_HEADER) == [
            "date-time 2019-01-01T00:00:00Z-2020-01-01T00:05:00Z/*"
        ]

    def test_count_and_paging_headers_are_kept_on_partial_content(self, entities):
        """Test that offset pagination headers are independent of the temporal range."""
        query = make_query(
            entities_query=entities_query(offset=0, limit=2, count=True),
            timerel=Timerel.AFTER,
            time_at=TIME_AT,
        )

        response = build_entities_temporal_response(
            entities,
            5,
            RESOURCE_URL,
            query,
            REQUEST_PARAMS,
            JSON_LD_CONTENT_TYPE,
            [CONTEXT],
            (TIME_AT, MOST_RECENT),
        )

        assert response.status_code == HTTP_PARTIAL_CONTENT
        assert response.get_headers(RESULTS_COUNT_HEADER) == ["5"]
        assert len(response.get_headers(LINK_HEADER)) == 1
        assert 'rel="next"' in response.get_headers(LINK_HEADER)[0]

    def test_empty_page_has_no_link(self):
        query = make_query(entities_query=entities_query(offset=10, limit=2, count=True))

        response = build_entities_temporal_response(
            [], 5, RESOURCE_URL, query, REQUEST_PARAMS, JSON_LD_CONTENT_TYPE, [CONTEXT], None
        )

        assert response.body == []
        assert response.get_headers(LINK_HEADER) == []
        assert response.get_headers(RESULTS_COUNT_HEADER) == ["5"]

    def test_json_response_moves_context_to_link_header(self, entities):
        """Test that application/json bodies carry their context in a Link header."""
        query = make_query(entities_query=entities_query())

        response = build_entities_temporal_response(
            entities, 2, RESOURCE_URL, query, REQUEST_PARAMS, JSON_CONTENT_TYPE, [CONTEXT], None
        )

        assert all("@context" not in entity for entity in response.body)
        assert response.get_headers(LINK_HEADER) == [
            f'<{CONTEXT}>; rel="http://www.w3.org/ns/json-ld#context"; type="application/ld+json"'
        ]

    def test_single_entity(self, entities):
        query = make_query(entities_query=entities_query(), last_n=100, instance_limit=5)

        response = build_entity_temporal_response(
            entities[0], query, JSON_LD_CONTENT_TYPE, [CONTEXT], (MOST_RECENT, LEAST_RECENT)
        )

        assert response.status_code == HTTP_PARTIAL_CONTENT
        assert response.body["@context"] == CONTEXT
        assert response.get_headers(CONTENT_RANGE_HEADER) == [
            "date-time 2020-01-01T00:05:00Z-2020-01-01T00:01:00Z/100"
        ]
