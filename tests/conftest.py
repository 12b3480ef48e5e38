"""
Shared fixtures for temporal query tests.
"""

import pytest

from temporal_factories import INCOMING, OUTGOING, make_attribute


@pytest.fixture
def incoming_attribute():
    """Default instance of the incoming property."""
    return make_attribute(INCOMING)


@pytest.fixture
def outgoing_attribute():
    """Default instance of the outgoing property."""
    return make_attribute(OUTGOING)
