"""
Access control checks applied before temporal data is read or written.
"""

from abc import ABC, abstractmethod
from typing import Optional


class AuthorizationService(ABC):
    """Abstract interface deciding what a subject may read or write.

    Checks raise AccessDeniedException when the subject is not allowed.
    """

    @abstractmethod
    def user_can_read_entity(self, entity_id: str, sub: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def user_can_update_entity(self, entity_id: str, sub: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def user_can_create_entities(self, sub: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def compute_access_right_filter(self, sub: Optional[str] = None) -> Optional[str]:
        """
        Build the condition restricting entity queries to the readable entities.

        Args:
            sub: Subject performing the query

        Returns:
            A SQL condition on the entity_payload table, or None for no restriction
        """
        pass


class StandaloneAuthorizationService(AuthorizationService):
    """Authorization used when the broker runs without authentication: everything is allowed."""

    def user_can_read_entity(self, entity_id: str, sub: Optional[str] = None) -> None:
        return None

    def user_can_update_entity(self, entity_id: str, sub: Optional[str] = None) -> None:
        return None

    def user_can_create_entities(self, sub: Optional[str] = None) -> None:
        return None

    def compute_access_right_filter(self, sub: Optional[str] = None) -> Optional[str]:
        return None
