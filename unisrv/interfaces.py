"""
Core interfaces for the unisrv CLI.

This module defines the abstract interfaces that components must implement
so that storage and configuration backends can be swapped, including in tests.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from .models import Session


class ICredentialStore(ABC):
    """Interface for persisting the authenticated session."""

    @abstractmethod
    def save(self, session: Session) -> None:
        """Persist the session, overwriting any prior one."""
        pass

    @abstractmethod
    def load(self) -> Optional[Session]:
        """Load the persisted session, or None if there is none."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove the persisted session. Clearing an empty store is not an error."""
        pass


class IConfigurationManager(ABC):
    """Interface for configuration management."""

    @abstractmethod
    def get_api_host(self) -> str:
        """Get the API base host including scheme."""
        pass

    @abstractmethod
    def get_timeout(self) -> float:
        """Get the request timeout in seconds."""
        pass

    @abstractmethod
    def get_config(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        pass

    @abstractmethod
    def set_override(self, key: str, value: Any) -> None:
        """Set a command-line override."""
        pass
