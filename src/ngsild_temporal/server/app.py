"""
FastAPI application for the NGSI-LD temporal API.

This server provides endpoints for:
- Retrieval of the temporal evolution of one or many entities
- Temporal queries sent as a POST body
- Recording and deletion of attribute instances
"""

import time
from datetime import datetime, UTC
from typing import Any, Optional

from fastapi import Body, FastAPI, Query as QueryParam, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ngsild_temporal.authorization import StandaloneAuthorizationService
from ngsild_temporal.config import get_logger, get_settings
from ngsild_temporal.errors import (
    APIException,
    InternalErrorException,
    InvalidRequestException,
)
from ngsild_temporal.jsonld import parse_link_header
from ngsild_temporal.store.database import TemporalDB
from ngsild_temporal.temporal.models import PaginationConfig, Query
from ngsild_temporal.temporal.query_utils import (
    compose_temporal_entities_query,
    compose_temporal_entities_query_from_post,
)
from ngsild_temporal.temporal.responses import (
    LINK_HEADER,
    TemporalResponse,
    build_entities_temporal_response,
    build_entity_temporal_response,
    get_applicable_media_type,
)
from ngsild_temporal.temporal.service import TemporalQueryService
from ngsild_temporal.server.models import HealthResponse, ProblemDetails

logger = get_logger(__name__)

TEMPORAL_ENTITIES_PATH = "/ngsi-ld/v1/temporal/entities"
TEMPORAL_QUERY_PATH = "/ngsi-ld/v1/temporal/entityOperations/query"

ERROR_RESPONSES = {
    400: {"model": ProblemDetails},
    403: {"model": ProblemDetails},
    404: {"model": ProblemDetails},
}

# ============================================================================
# FastAPI App Initialization
# ============================================================================

app = FastAPI(
    title="NGSI-LD Temporal API",
    description="Temporal evolution of NGSI-LD entities with partial-result pagination",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Range", "Link", "NGSILD-Results-Count", "Location"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    process_time = (time.time() - start) * 1000
    logger.info(f"{request.method} {request.url.path} - {response.status_code} ({process_time:.2f}ms)")
    return response


# ============================================================================
# Global State
# ============================================================================

_store: TemporalDB | None = None
_query_service: TemporalQueryService | None = None


def get_store() -> TemporalDB:
    """Get or create the global TemporalDB instance."""
    global _store
    if _store is None:
        db_path = get_settings().db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _store = TemporalDB(db_path)
    return _store


def get_query_service() -> TemporalQueryService:
    """Get or create the global TemporalQueryService instance."""
    global _query_service
    if _query_service is None:
        _query_service = TemporalQueryService(
            store=get_store(),
            authorization_service=StandaloneAuthorizationService(),
        )
    return _query_service


def get_contexts(request: Request) -> list[str]:
    """Get the JSON-LD contexts of a request from its Link header."""
    return parse_link_header(request.headers.get(LINK_HEADER), get_settings().core_context)


def to_http_response(temporal_response: TemporalResponse) -> JSONResponse:
    response = JSONResponse(
        content=temporal_response.body,
        status_code=temporal_response.status_code,
        media_type=temporal_response.media_type,
    )
    # Link may be repeated, headers are appended rather than set
    for name, value in temporal_response.headers:
        response.headers.append(name, value)
    return response


# ============================================================================
# Error Handlers
# ============================================================================


def problem_response(exception: APIException) -> JSONResponse:
    problem = ProblemDetails(**exception.to_problem_details())
    return JSONResponse(status_code=exception.status_code, content=problem.model_dump())


@app.exception_handler(APIException)
async def api_exception_handler(request: Request, exc: APIException):
    logger.info(f"{request.method} {request.url.path} failed: {exc.detail}")
    return problem_response(exc)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = "; ".join(
        f"{'.'.join(str(loc) for loc in error['loc'])}: {error['msg']}" for error in exc.errors()
    )
    return problem_response(InvalidRequestException(f"The request body is not valid: {errors}"))


@app.exception_handler(Exception)
async def unexpected_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return problem_response(InternalErrorException(str(exc)))


# ============================================================================
# API Endpoints
# ============================================================================


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC).isoformat(),
    )


@app.get(TEMPORAL_ENTITIES_PATH, responses=ERROR_RESPONSES)
def query_temporal_entities(request: Request):
    """
    Query the temporal evolution of the entities matching the request parameters.

    One of id, type or attrs is mandatory, as well as timerel and timeAt.

    Returns:
        200 with the temporal entities, or 206 with a Content-Range header when
        the history of at least one attribute was truncated
    """
    settings = get_settings()
    media_type = get_applicable_media_type(request.headers.get("Accept"))
    contexts = get_contexts(request)
    query = compose_temporal_entities_query(
        request.query_params,
        PaginationConfig.from_settings(settings),
        contexts,
        in_query_entities=True,
    )

    entities, count, range_ = get_query_service().query_temporal_entities(query)

    return to_http_response(
        build_entities_temporal_response(
            entities,
            count,
            TEMPORAL_ENTITIES_PATH,
            query,
            request.query_params.multi_items(),
            media_type,
            contexts,
            range_,
        )
    )


@app.post(TEMPORAL_QUERY_PATH, responses=ERROR_RESPONSES)
def query_temporal_entities_via_post(request: Request, query_body: Query):
    """
    Query the temporal evolution of entities with a structured query body.

    Pagination and options are still read from the request parameters.
    """
    settings = get_settings()
    media_type = get_applicable_media_type(request.headers.get("Accept"))
    contexts = get_contexts(request)
    query = compose_temporal_entities_query_from_post(
        query_body,
        request.query_params,
        PaginationConfig.from_settings(settings),
        contexts,
    )

    entities, count, range_ = get_query_service().query_temporal_entities(query)

    return to_http_response(
        build_entities_temporal_response(
            entities,
            count,
            TEMPORAL_QUERY_PATH,
            query,
            request.query_params.multi_items(),
            media_type,
            contexts,
            range_,
        )
    )


@app.get(TEMPORAL_ENTITIES_PATH + "/{entity_id}", responses=ERROR_RESPONSES)
def get_temporal_entity(entity_id: str, request: Request):
    """
    Retrieve the temporal evolution of one entity.

    Args:
        entity_id: URI of the entity

    Returns:
        200 with the temporal entity, or 206 with a Content-Range header when
        the history of at least one attribute was truncated
    """
    settings = get_settings()
    media_type = get_applicable_media_type(request.headers.get("Accept"))
    contexts = get_contexts(request)
    query = compose_temporal_entities_query(
        request.query_params,
        PaginationConfig.from_settings(settings),
        contexts,
    )

    entity, range_ = get_query_service().query_temporal_entity(entity_id, query)

    return to_http_response(
        build_entity_temporal_response(entity, query, media_type, contexts, range_)
    )


@app.post(TEMPORAL_ENTITIES_PATH, status_code=201, responses=ERROR_RESPONSES)
def create_temporal_entity(request: Request, payload: dict[str, Any] = Body(...)):
    """
    Create a temporal entity, or append its instances if it already exists.

    Returns:
        201 with a Location header on creation, 204 on update
    """
    entity_id, created = get_query_service().create_or_update_temporal_entity(
        payload, get_contexts(request)
    )

    if not created:
        return Response(status_code=204)

    logger.info(f"Created temporal entity {entity_id}")
    return Response(
        status_code=201,
        headers={"Location": f"{TEMPORAL_ENTITIES_PATH}/{entity_id}"},
    )


@app.post(TEMPORAL_ENTITIES_PATH + "/{entity_id}/attrs", status_code=204, responses=ERROR_RESPONSES)
def add_attributes(entity_id: str, request: Request, payload: dict[str, Any] = Body(...)):
    """Append attribute instances to an existing temporal entity."""
    appended = get_query_service().upsert_attributes(entity_id, payload, get_contexts(request))
    logger.info(f"Appended {appended} instances to {entity_id}")
    return Response(status_code=204)


@app.delete(TEMPORAL_ENTITIES_PATH + "/{entity_id}", status_code=204, responses=ERROR_RESPONSES)
def delete_temporal_entity(entity_id: str):
    """Delete a temporal entity and the whole history of its attributes."""
    get_query_service().delete_entity(entity_id)
    logger.info(f"Deleted temporal entity {entity_id}")
    return Response(status_code=204)


@app.delete(
    TEMPORAL_ENTITIES_PATH + "/{entity_id}/attrs/{attr_id}",
    status_code=204,
    responses=ERROR_RESPONSES,
)
def delete_attribute(
    entity_id: str,
    attr_id: str,
    request: Request,
    dataset_id: Optional[str] = QueryParam(default=None, alias="datasetId"),
    delete_all: bool = QueryParam(default=False, alias="deleteAll"),
):
    """
    Delete the whole history of an attribute.

    Args:
        entity_id: URI of the entity
        attr_id: Name of the attribute
        dataset_id: Instance to delete, the default instance if not given
        delete_all: Delete every instance of the attribute whatever its dataset id
    """
    get_query_service().delete_attribute(
        entity_id,
        attr_id,
        get_contexts(request),
        dataset_id=dataset_id,
        delete_all=delete_all,
    )
    return Response(status_code=204)
