"""
HTTP framing of temporal query results.

Turns built entities, the entity count and the pagination range into a status
code, a body and the response headers (paging links, results count, JSON-LD
context link and Content-Range).
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional
from urllib.parse import quote

from ngsild_temporal.errors import NotAcceptableException
from ngsild_temporal.jsonld import JSONLD_CONTEXT, build_context_link_header
from ngsild_temporal.temporal.models import (
    Range,
    TemporalEntitiesQuery,
    TemporalQuery,
    format_ngsild_datetime,
)

JSON_CONTENT_TYPE = "application/json"
JSON_LD_CONTENT_TYPE = "application/ld+json"
RESULTS_COUNT_HEADER = "NGSILD-Results-Count"
CONTENT_RANGE_HEADER = "Content-Range"
LINK_HEADER = "Link"
# Characters kept unencoded in paging links, besides the unreserved ones
URL_SAFE_CHARACTERS = ":"

HTTP_OK = 200
HTTP_PARTIAL_CONTENT = 206


@dataclass
class TemporalResponse:
    """Status, body and headers of a temporal query response.

    Headers are kept as a list of pairs since Link may appear several times.
    """

    status_code: int
    body: Any
    media_type: str = JSON_LD_CONTENT_TYPE
    headers: list[tuple[str, str]] = field(default_factory=list)

    def get_headers(self, name: str) -> list[str]:
        return [value for key, value in self.headers if key.lower() == name.lower()]


def get_applicable_media_type(accept: Optional[str]) -> str:
    """
    Select the response media type from an Accept header.

    application/json takes precedence over application/ld+json when both are
    acceptable.

    Raises:
        NotAcceptableException: If none of the supported media types is accepted
    """
    if not accept:
        return JSON_CONTENT_TYPE

    media_types = [item.split(";")[0].strip().lower() for item in accept.split(",") if item.strip()]
    if not media_types:
        return JSON_CONTENT_TYPE
    if any(media_type in (JSON_CONTENT_TYPE, "application/*", "*/*") for media_type in media_types):
        return JSON_CONTENT_TYPE
    if JSON_LD_CONTENT_TYPE in media_types:
        return JSON_LD_CONTENT_TYPE
    raise NotAcceptableException(f"Unsupported Accept header value: {accept}")


def _to_encoded_url(request_params: Iterable[tuple[str, str]], offset: int, limit: int) -> str:
    grouped: dict[str, list[str]] = {}
    for key, value in request_params:
        if key in ("offset", "limit"):
            continue
        encoded_key = quote(key, safe=URL_SAFE_CHARACTERS)
        grouped.setdefault(encoded_key, []).append(quote(value, safe=URL_SAFE_CHARACTERS))
    grouped["limit"] = [str(limit)]
    grouped["offset"] = [str(offset)]
    return "&".join(f"{key}={','.join(values)}" for key, values in grouped.items())


def get_paging_links(
    resource_url: str,
    request_params: Iterable[tuple[str, str]],
    resources_count: int,
    offset: int,
    limit: int,
) -> tuple[Optional[str], Optional[str]]:
    """
    Compute the prev and next Link header values of a page of entities.

    Args:
        resource_url: URL of the queried resource, without query string
        request_params: Query parameters of the request
        resources_count: Total number of matching entities
        offset: Offset of the current page
        limit: Size of the current page

    Returns:
        (prev link, next link), each None when there is no such page
    """
    request_params = list(request_params)
    prev_link = None
    next_link = None

    if offset > 0 and resources_count > offset - limit:
        prev_offset = offset - limit if offset > limit else 0
        prev_link = (
            f"<{resource_url}?{_to_encoded_url(request_params, prev_offset, limit)}>;"
            f'rel="prev";type="{JSON_LD_CONTENT_TYPE}"'
        )

    if resources_count > offset + limit:
        next_link = (
            f"<{resource_url}?{_to_encoded_url(request_params, offset + limit, limit)}>;"
            f'rel="next";type="{JSON_LD_CONTENT_TYPE}"'
        )

    return prev_link, next_link


def get_header_range(range_: Range, temporal_query: TemporalQuery) -> str:
    """Format the Content-Range header value of a partial temporal response."""
    size = temporal_query.last_n if temporal_query.last_n is not None else "*"
    return f"date-time {format_ngsild_datetime(range_[0])}-{format_ngsild_datetime(range_[1])}/{size}"


def _apply_media_type(body: Any, media_type: str, contexts: list[str]) -> tuple[Any, list[tuple[str, str]]]:
    # plain JSON responses carry their context in a Link header instead of the body
    if media_type != JSON_CONTENT_TYPE:
        return body, []

    def strip_context(entity: dict[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in entity.items() if key != JSONLD_CONTEXT}

    if isinstance(body, list):
        body = [strip_context(entity) for entity in body]
    else:
        body = strip_context(body)
    return body, [(LINK_HEADER, build_context_link_header(contexts))]


def build_entities_temporal_response(
    entities: list[dict[str, Any]],
    total: int,
    resource_url: str,
    query: TemporalEntitiesQuery,
    request_params: Iterable[tuple[str, str]],
    media_type: str,
    contexts: list[str],
    range_: Optional[Range],
) -> TemporalResponse:
    """
    Frame the response of a query on many temporal entities.

    Args:
        entities: Compacted temporal entities of the current page
        total: Total number of matching entities
        resource_url: URL of the queried resource, used in paging links
        query: The temporal query
        request_params: Query parameters of the request, used in paging links
        media_type: Negotiated response media type
        contexts: JSON-LD contexts of the response
        range_: Pagination range, None when the result was not truncated

    Returns:
        A 200 response, or a 206 response with a Content-Range header
    """
    body, headers = _apply_media_type(entities, media_type, contexts)

    pagination = query.entities_query.pagination
    if entities:
        prev_link, next_link = get_paging_links(
            resource_url, request_params, total, pagination.offset, pagination.limit
        )
        for link in (prev_link, next_link):
            if link is not None:
                headers.append((LINK_HEADER, link))

    if pagination.count:
        headers.append((RESULTS_COUNT_HEADER, str(total)))

    if range_ is None:
        return TemporalResponse(HTTP_OK, body, media_type, headers)

    headers.append((CONTENT_RANGE_HEADER, get_header_range(range_, query.temporal_query)))
    return TemporalResponse(HTTP_PARTIAL_CONTENT, body, media_type, headers)


def build_entity_temporal_response(
    entity: dict[str, Any],
    query: TemporalEntitiesQuery,
    media_type: str,
    contexts: list[str],
    range_: Optional[Range],
) -> TemporalResponse:
    """Frame the response of a query on a single temporal entity."""
    body, headers = _apply_media_type(entity, media_type, contexts)
    if range_ is None:
        return TemporalResponse(HTTP_OK, body, media_type, headers)

    headers.append((CONTENT_RANGE_HEADER, get_header_range(range_, query.temporal_query)))
    return TemporalResponse(HTTP_PARTIAL_CONTENT, body, media_type, headers)
