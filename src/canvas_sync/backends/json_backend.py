"""JSON-based state storage backend."""

import json
import logging
from pathlib import Path
from typing import Dict, Any, Optional

from .base import StateBackend

logger = logging.getLogger(__name__)


class JsonStateBackend(StateBackend):
    """JSON file-based state storage.

    Loads the entire state into memory and writes it back on every save.
    Changes made through the setters stay in memory until save() is called.
    """

    def __init__(self, state_file: Path):
        """Initialize JSON backend.

        Args:
            state_file: Path to JSON state file
        """
        self.state_file = state_file
        self._state: Optional[Dict[str, Any]] = None

    def load(self) -> Dict[str, Any]:
        """Load complete state from JSON file.

        A missing or unreadable file yields an empty state, so the next sync
        rebuilds every course from scratch.
        """
        if self._state is not None:
            return self._state

        if not self.state_file.exists():
            self._state = self._get_default_state()
            return self._state

        try:
            state = json.loads(self.state_file.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Failed to load state from {self.state_file}: {e}")
            self._state = self._get_default_state()
            return self._state

        if not isinstance(state, dict):
            logger.error(f"State file {self.state_file} does not hold an object, resetting")
            state = self._get_default_state()
        # Ensure required keys exist
        state.setdefault('courses', {})
        state.setdefault('last_synced', None)
        self._state = state
        return self._state

    def save(self, state: Dict[str, Any]) -> None:
        """Save complete state to JSON file."""
        self._state = state
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)

            # Write atomically: write to temp file, then rename
            temp_file = self.state_file.with_suffix('.json.tmp')
            temp_file.write_text(json.dumps(state, indent=2))
            temp_file.chmod(0o600)
            temp_file.replace(self.state_file)

            # Set secure permissions
            self.state_file.chmod(0o600)
        except OSError as e:
            logger.error(f"Failed to save state to {self.state_file}: {e}")
            raise
        logger.debug(f"Saved state for {len(state.get('courses', {}))} courses to {self.state_file}")

    def get_course(self, course_id: str) -> Optional[Dict]:
        """Get a single persisted course."""
        state = self.load()
        return state.get('courses', {}).get(str(course_id))

    def set_course(self, course_id: str, data: Dict) -> None:
        """Update or insert a persisted course."""
        state = self.load()
        state.setdefault('courses', {})[str(course_id)] = data

    def get_all_courses(self) -> Dict[str, Dict]:
        """Get all persisted courses."""
        state = self.load()
        return state.get('courses', {})

    def get_metadata(self, key: str) -> Optional[str]:
        """Get metadata value."""
        state = self.load()
        value = state.get(key)
        return str(value) if value is not None else None

    def set_metadata(self, key: str, value: Optional[str]) -> None:
        """Set metadata value."""
        state = self.load()
        state[key] = value

    def close(self) -> None:
        """Close backend (no-op for JSON)."""
        self._state = None

    @staticmethod
    def _get_default_state() -> Dict[str, Any]:
        """Get default empty state structure."""
        return {
            'courses': {},
            'last_synced': None,
        }
