"""
Error model of the broker.

Every error sent back to a client is a problem details document carrying a
stable ``type`` URI, a fixed ``title`` per kind of error and a ``detail``
describing the offending parameter or value.
"""

from typing import Iterable, Optional

ERRORS_BASE_URI = "https://uri.etsi.org/ngsi-ld/errors/"


class APIException(Exception):
    """Base class for errors that are rendered as an API error response."""

    type: str = ERRORS_BASE_URI + "InternalError"
    title: str = "There has been an error during the operation execution"
    status_code: int = 500

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)

    def to_problem_details(self) -> dict:
        """Serialize the error into the NGSI-LD error body."""
        return {
            "type": self.type,
            "title": self.title,
            "detail": self.detail,
        }


class BadRequestDataException(APIException):
    type = ERRORS_BASE_URI + "BadRequestData"
    title = "The request includes input data which does not meet the requirements of the operation"
    status_code = 400


class InvalidRequestException(APIException):
    type = ERRORS_BASE_URI + "InvalidRequest"
    title = "The request associated to the operation is syntactically invalid or includes wrong content"
    status_code = 400


class ResourceNotFoundException(APIException):
    type = ERRORS_BASE_URI + "ResourceNotFound"
    title = "The referred resource has not been found"
    status_code = 404


class AccessDeniedException(APIException):
    type = ERRORS_BASE_URI + "AccessDenied"
    title = "The request tried to access an unauthorized resource"
    status_code = 403


class TooManyResultsException(APIException):
    type = ERRORS_BASE_URI + "TooManyResults"
    title = "The query associated to the operation is producing so many results that can exhaust client or server resources"
    status_code = 403


class NotAcceptableException(APIException):
    type = ERRORS_BASE_URI + "NotAcceptable"
    title = "The media type provided in Accept header is not supported"
    status_code = 406


class InternalErrorException(APIException):
    pass


def entity_not_found_message(entity_id: str) -> str:
    return f"Entity {entity_id} was not found"


def entity_or_attrs_not_found_message(entity_id: str, attrs: Optional[Iterable[str]] = None) -> str:
    attrs = sorted(attrs or [])
    if not attrs:
        return f"Entity {entity_id} does not exist or it has none of the requested attributes : []"
    return (
        f"Entity {entity_id} does not exist or it has none of the requested attributes : "
        f"[{', '.join(attrs)}]"
    )


def attribute_not_found_message(attribute_name: str, dataset_id: Optional[str] = None) -> str:
    if dataset_id:
        return f"Attribute {attribute_name} (datasetId: {dataset_id}) was not found"
    return f"Attribute {attribute_name} (default datasetId) was not found"
