"""
Minimal JSON-LD term handling.

Only the parts of JSON-LD needed by the temporal API are provided here: terms
are expanded against the NGSI-LD core vocabulary or the default vocabulary, and
compacted back the same way. Full context resolution is left to a dedicated
JSON-LD processor in front of the broker.
"""

import re
from typing import Any, Optional

NGSILD_PREFIX = "https://uri.etsi.org/ngsi-ld/"
NGSILD_DEFAULT_VOCAB = "https://uri.etsi.org/ngsi-ld/default-context/"
JSONLD_CONTEXT = "@context"
JSONLD_CONTEXT_REL = "http://www.w3.org/ns/json-ld#context"

# Terms defined by the core context, compacted without any prefix
NGSILD_CORE_TERMS = frozenset({
    "id",
    "type",
    "scope",
    "location",
    "observationSpace",
    "operationSpace",
    "createdAt",
    "modifiedAt",
    "deletedAt",
    "observedAt",
    "datasetId",
    "instanceId",
    "unitCode",
    "value",
    "object",
    "json",
    "languageMap",
    "vocab",
})

_LINK_HEADER_PATTERN = re.compile(r'<([^>]+)>\s*;\s*rel="?([^";]+)"?')


def expand_term(term: str, contexts: Optional[list[str]] = None) -> str:
    """
    Expand a term to its full IRI.

    Args:
        term: A short term (``temperature``) or an absolute IRI
        contexts: The contexts of the request (only the core one is interpreted)

    Returns:
        The expanded IRI
    """
    if ":" in term:
        return term
    if term in NGSILD_CORE_TERMS:
        return NGSILD_PREFIX + term
    return NGSILD_DEFAULT_VOCAB + term


def compact_term(iri: str, contexts: Optional[list[str]] = None) -> str:
    """Compact an IRI previously expanded with expand_term."""
    if iri.startswith(NGSILD_DEFAULT_VOCAB):
        return iri[len(NGSILD_DEFAULT_VOCAB):]
    if iri.startswith(NGSILD_PREFIX):
        candidate = iri[len(NGSILD_PREFIX):]
        if candidate in NGSILD_CORE_TERMS:
            return candidate
    return iri


def compact_entity(entity: dict[str, Any], contexts: list[str]) -> dict[str, Any]:
    """
    Compact the attribute names of an entity and attach its @context.

    Member values are already shaped by the temporal entity builder and are
    left untouched, entity types excepted.
    """
    compacted: dict[str, Any] = {}
    for key, value in entity.items():
        if key == "id":
            compacted[key] = value
        elif key == "type":
            if isinstance(value, list):
                compacted[key] = [compact_term(type_, contexts) for type_ in value]
            else:
                compacted[key] = compact_term(value, contexts)
        else:
            compacted[compact_term(key, contexts)] = value
    compacted[JSONLD_CONTEXT] = contexts[0] if len(contexts) == 1 else list(contexts)
    return compacted


def compact_entities(entities: list[dict[str, Any]], contexts: list[str]) -> list[dict[str, Any]]:
    return [compact_entity(entity, contexts) for entity in entities]


def parse_link_header(link_header: Optional[str], core_context: str) -> list[str]:
    """
    Extract the contexts referenced by a Link header.

    The core context is always appended last so that core terms cannot be
    overridden.

    Args:
        link_header: Value of the HTTP Link header, if any
        core_context: URL of the NGSI-LD core context

    Returns:
        List of context URLs
    """
    if not link_header:
        return [core_context]

    contexts = [
        url
        for url, rel in _LINK_HEADER_PATTERN.findall(link_header)
        if rel == JSONLD_CONTEXT_REL
    ]
    if core_context not in contexts:
        contexts.append(core_context)
    return contexts


def build_context_link_header(contexts: list[str]) -> str:
    return f'<{contexts[0]}>; rel="{JSONLD_CONTEXT_REL}"; type="application/ld+json"'
