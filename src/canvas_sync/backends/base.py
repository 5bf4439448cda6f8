"""Abstract base class for state storage backends."""

from abc import ABC, abstractmethod
from typing import Dict, Any, Optional


class StateBackend(ABC):
    """Abstract base class for state storage backends.

    Stores the persisted sync state:
    - Courses (the reconciled course records, keyed by course id)
    - Metadata (``last_synced``, the start of the last complete run)

    State is read once at the start of a sync run and written once at the
    end; the sync engine is the only writer.
    """

    @abstractmethod
    def load(self) -> Dict[str, Any]:
        """Load complete state as a dictionary.

        Returns:
            Dict with keys: 'courses', 'last_synced'
        """
        pass

    @abstractmethod
    def save(self, state: Dict[str, Any]) -> None:
        """Save complete state from dictionary.

        Args:
            state: Dict with keys: 'courses', 'last_synced'
        """
        pass

    @abstractmethod
    def get_course(self, course_id: str) -> Optional[Dict]:
        """Get a single persisted course.

        Args:
            course_id: Canvas course id

        Returns:
            Course dict, or None if not found
        """
        pass

    @abstractmethod
    def set_course(self, course_id: str, data: Dict) -> None:
        """Update or insert a persisted course.

        Args:
            course_id: Canvas course id
            data: Course dict
        """
        pass

    @abstractmethod
    def get_all_courses(self) -> Dict[str, Dict]:
        """Get all persisted courses.

        Returns:
            Dict mapping course id -> course dict
        """
        pass

    @abstractmethod
    def get_metadata(self, key: str) -> Optional[str]:
        """Get metadata value.

        Args:
            key: Metadata key (e.g., 'last_synced')

        Returns:
            Value string, or None if not found
        """
        pass

    @abstractmethod
    def set_metadata(self, key: str, value: Optional[str]) -> None:
        """Set metadata value.

        Args:
            key: Metadata key
            value: Value string
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close backend and release resources."""
        pass
