"""
Tests for the temporal API endpoints.
"""

from unittest.mock import patch

from fastapi.testclient import TestClient

ENTITIES_URL = "/ngsi-ld/v1/temporal/entities"
ENTITY_URL = ENTITIES_URL + "/urn:ngsi-ld:BeeHive:TESTC"
QUERY_URL = "/ngsi-ld/v1/temporal/entityOperations/query"
ERRORS_BASE_URI = "https://uri.etsi.org/ngsi-ld/errors/"
CORE_CONTEXT_LINK = (
    '<https://uri.etsi.org/ngsi-ld/v1/ngsi-ld-core-context-v1.8.jsonld>; '
    'rel="http://www.w3.org/ns/json-ld#context"; type="application/ld+json"'
)


class TestHealthEndpoint:
    """Tests for GET /health endpoint."""

    def test_health_check(self):
        """Test that the health endpoint reports the server as healthy."""
        from ngsild_temporal.server.app import app

        client = TestClient(app)
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == "0.1.0"


class TestGetTemporalEntity:
    """Tests for GET /ngsi-ld/v1/temporal/entities/{entityId} endpoint."""

    def test_truncated_history_returns_partial_content(self, client):
        """Test that a truncated history gives a 206 with the range of the page."""
        response = client.get(ENTITY_URL, params={"timerel": "after", "timeAt": "2019-01-01T00:00:00Z"})

        assert response.status_code == 206
        assert response.headers["Content-Range"] == "date-time 2019-01-01T00:00:00Z-2020-01-01T00:05:00Z/*"
        data = response.json()
        assert len(data["incoming"]) == 5
        assert len(data["outgoing"]) == 2

    def test_complete_history_returns_ok(self, client):
        response = client.get(ENTITY_URL, params={"timerel": "after", "timeAt": "2020-01-01T00:06:00Z"})

        assert response.status_code == 200
        assert "Content-Range" not in response.headers

    def test_json_response_has_context_link(self, client):
        """Test that plain JSON responses carry the context in a Link header."""
        response = client.get(ENTITY_URL, params={"lastN": "1"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/json")
        assert response.headers["Link"] == CORE_CONTEXT_LINK
        assert "@context" not in response.json()

    def test_json_ld_response_has_context(self, client):
        response = client.get(ENTITY_URL, params={"lastN": "1"}, headers={"Accept": "application/ld+json"})

        assert response.headers["content-type"].startswith("application/ld+json")
        assert "@context" in response.json()

    def test_last_n_with_temporal_values(self, client):
        response = client.get(ENTITY_URL, params={"lastN": "2", "options": "temporalValues"})

        assert response.status_code == 200
        assert response.json()["outgoing"] == {
            "type": "Property",
            "values": [[12.0, "2020-01-01T00:07:00Z"], [12.0, "2020-01-01T00:08:00Z"]],
        }

    def test_last_n_above_limit_reports_requested_size(self, client):
        response = client.get(ENTITY_URL, params={"lastN": "100"})

        assert response.status_code == 206
        assert response.headers["Content-Range"].endswith("/100")

    def test_aggregated_values(self, client):
        response = client.get(
            ENTITY_URL,
            params={
                "options": "aggregatedValues",
                "aggrMethods": "totalCount",
                "aggrPeriodDuration": "PT0S",
                "attrs": "incoming",
            },
        )

        assert response.status_code == 200
        assert response.json()["incoming"] == {
            "type": "Property",
            "totalCount": [[5, "2020-01-01T00:01:00Z", "2020-01-01T00:05:00Z"]],
        }

    def test_unknown_entity(self, client):
        response = client.get(ENTITIES_URL + "/urn:ngsi-ld:BeeHive:unknown")

        assert response.status_code == 404
        assert response.json() == {
            "type": ERRORS_BASE_URI + "ResourceNotFound",
            "title": "The referred resource has not been found",
            "detail": "Entity urn:ngsi-ld:BeeHive:unknown was not found",
        }

    def test_between_without_end_time(self, client):
        """Test that validation errors are reported before any store access."""
        response = client.get(ENTITY_URL, params={"timerel": "between", "timeAt": "2019-01-01T00:00:00Z"})

        assert response.status_code == 400
        data = response.json()
        assert data["type"] == ERRORS_BASE_URI + "BadRequestData"
        assert data["detail"] == "'endTime' request parameter is mandatory if 'timerel' is 'between'"

    def test_unsupported_accept_header(self, client):
        response = client.get(ENTITY_URL, headers={"Accept": "text/html"})

        assert response.status_code == 406
        assert response.json()["type"] == ERRORS_BASE_URI + "NotAcceptable"


class TestQueryTemporalEntities:
    """Tests for GET /ngsi-ld/v1/temporal/entities endpoint."""

    def test_query_by_type(self, client):
        response = client.get(
            ENTITIES_URL, params={"type": "BeeHive", "timerel": "after", "timeAt": "2019-01-01T00:00:00Z"}
        )

        assert response.status_code == 206
        data = response.json()
        assert [entity["id"] for entity in data] == ["urn:ngsi-ld:BeeHive:TESTC"]

    def test_paging_links_and_count(self, client, sample_entity_data):
        """Test that offset pagination headers are sent along the temporal range."""
        other_entity = dict(sample_entity_data, id="urn:ngsi-ld:BeeHive:TESTD")
        client.post(ENTITIES_URL, json=other_entity)

        response = client.get(
            ENTITIES_URL,
            params={
                "type": "BeeHive",
                "timerel": "after",
                "timeAt": "2020-01-01T00:06:00Z",
                "limit": "1",
                "count": "true",
            },
        )

        assert response.status_code == 200
        assert response.headers["NGSILD-Results-Count"] == "2"
        links = response.headers.get_list("Link")
        assert CORE_CONTEXT_LINK in links
        assert (
            f"<{ENTITIES_URL}?type=BeeHive&timerel=after&timeAt=2020-01-01T00:06:00Z"
            '&count=true&limit=1&offset=1>;rel="next";type="application/ld+json"'
        ) in links

    def test_entity_selector_is_mandatory(self, client):
        response = client.get(ENTITIES_URL, params={"timerel": "after", "timeAt": "2019-01-01T00:00:00Z"})

        assert response.status_code == 400
        assert response.json()["detail"] == "One of 'id', 'type' or 'attrs' must be provided in the query"

    def test_time_is_mandatory(self, client):
        response = client.get(ENTITIES_URL, params={"type": "BeeHive"})

        assert response.status_code == 400
        assert response.json()["detail"] == "'timerel' and 'time' must be used in conjunction"

    def test_limit_above_maximum(self, client):
        response = client.get(
            ENTITIES_URL,
            params={"type": "BeeHive", "timerel": "after", "timeAt": "2019-01-01T00:00:00Z", "limit": "500"},
        )

        assert response.status_code == 403
        assert response.json()["type"] == ERRORS_BASE_URI + "TooManyResults"


class TestQueryTemporalEntitiesViaPost:
    """Tests for POST /ngsi-ld/v1/temporal/entityOperations/query endpoint."""

    def test_query(self, client):
        response = client.post(
            QUERY_URL,
            json={
                "type": "Query",
                "entities": [{"type": "BeeHive"}],
                "attrs": ["outgoing"],
                "temporalQ": {"timerel": "before", "timeAt": "2020-01-01T00:06:00Z"},
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert len(data) == 1
        assert "incoming" not in data[0]
        assert len(data[0]["outgoing"]) == 2

    def test_malformed_body(self, client):
        response = client.post(
            QUERY_URL, content="{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["type"] == ERRORS_BASE_URI + "InvalidRequest"


class TestTemporalWrites:
    """Tests for the endpoints recording and deleting temporal data."""

    def test_create_returns_location(self, sample_entity_data):
        from ngsild_temporal.server.app import app

        client = TestClient(app)
        response = client.post(ENTITIES_URL, json=sample_entity_data)

        assert response.status_code == 201
        assert response.headers["Location"] == ENTITY_URL

    def test_second_create_appends(self, client, sample_entity_data):
        response = client.post(ENTITIES_URL, json=sample_entity_data)

        assert response.status_code == 204

    def test_add_attributes(self, client):
        response = client.post(
            ENTITY_URL + "/attrs",
            json={"humidity": {"type": "Property", "value": 60, "observedAt": "2020-01-01T00:01:00Z"}},
        )

        assert response.status_code == 204
        assert client.get(ENTITY_URL, params={"attrs": "humidity"}).json()["humidity"]["value"] == 60

    def test_add_attributes_without_observed_at(self, client):
        response = client.post(ENTITY_URL + "/attrs", json={"humidity": {"type": "Property", "value": 60}})

        assert response.status_code == 400

    def test_delete_attribute(self, client):
        response = client.delete(ENTITY_URL + "/attrs/outgoing")

        assert response.status_code == 204
        assert client.delete(ENTITY_URL + "/attrs/outgoing").status_code == 404

    def test_delete_entity(self, client):
        response = client.delete(ENTITY_URL)

        assert response.status_code == 204
        assert client.get(ENTITY_URL).status_code == 404


class TestUnexpectedErrors:
    """Tests for the handling of unexpected failures."""

    def test_internal_error(self):
        from ngsild_temporal.server.app import app

        with patch("ngsild_temporal.server.app.get_query_service") as mock_service:
            mock_service.return_value.delete_entity.side_effect = RuntimeError("database is gone")
            client = TestClient(app, raise_server_exceptions=False)
            response = client.delete(ENTITY_URL)

        assert response.status_code == 500
        assert response.json()["type"] == ERRORS_BASE_URI + "InternalError"
