"""
NGSI-LD temporal query service.

Serves the temporal evolution of entities with partial-result pagination.
"""

__version__ = "0.1.0"
