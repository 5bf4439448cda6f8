"""Configuration validators for Canvas Sync."""

import logging
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


class ValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


class ConfigValidator:
    """Base class for configuration validators."""

    def validate(self, value: Any) -> Any:
        """Validate and normalize a configuration value.

        Args:
            value: Raw configuration value

        Returns:
            Validated and normalized value

        Raises:
            ValidationError: If validation fails
        """
        raise NotImplementedError


class RootUrlValidator(ConfigValidator):
    """Validates the base URL of the Canvas instance."""

    def validate(self, value: Any) -> str:
        if not isinstance(value, str):
            raise ValidationError(f"Canvas URL must be a string, got: {type(value)}")

        url = value.strip().rstrip('/')
        if not url:
            raise ValidationError("Canvas URL cannot be empty")

        # Bare host names are accepted and served over https
        if '://' not in url:
            url = f"https://{url}"

        parsed = urlparse(url)
        if parsed.scheme != 'https':
            raise ValidationError(f"Canvas URL must use https, got: {parsed.scheme}")
        if not parsed.hostname:
            raise ValidationError(f"Canvas URL has no host name: {value}")
        if parsed.path not in ('', '/') or parsed.query or parsed.fragment:
            raise ValidationError(
                f"Canvas URL must be the instance root (e.g. https://school.instructure.com), got: {value}"
            )

        return f"{parsed.scheme}://{parsed.netloc}"


class SyncDirectoryValidator(ConfigValidator):
    """Validates sync directory path."""

    def validate(self, value: Any) -> str:
        if not isinstance(value, (str, Path)):
            raise ValidationError(f"Sync directory must be a string or Path, got: {type(value)}")

        path = Path(value).expanduser().resolve()

        # Check parent exists
        if not path.parent.exists():
            raise ValidationError(
                f"Parent directory does not exist: {path.parent}"
            )

        # Create sync directory if it doesn't exist
        if not path.exists():
            try:
                path.mkdir(parents=True, exist_ok=True)
                logger.info(f"Created sync directory: {path}")
            except OSError as e:
                raise ValidationError(
                    f"Failed to create sync directory {path}: {e}"
                )

        if not path.is_dir():
            raise ValidationError(
                f"Sync directory path exists but is not a directory: {path}"
            )

        return str(path)


class LogLevelValidator(ConfigValidator):
    """Validates log level."""

    VALID_LEVELS = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}

    def validate(self, value: Any) -> str:
        if not isinstance(value, str):
            raise ValidationError(f"Log level must be a string, got: {type(value)}")

        level = value.upper()

        if level not in self.VALID_LEVELS:
            raise ValidationError(
                f"Invalid log level: {value}. Must be one of: {', '.join(sorted(self.VALID_LEVELS))}"
            )

        return level


class IntegerValidator(ConfigValidator):
    """Validates integer values with optional min/max bounds."""

    def __init__(self, min_value: int = None, max_value: int = None):
        self.min_value = min_value
        self.max_value = max_value

    def validate(self, value: Any) -> int:
        if isinstance(value, bool):
            raise ValidationError(f"Must be an integer, got: {value}")
        try:
            int_value = int(value)
        except (ValueError, TypeError):
            raise ValidationError(f"Must be an integer, got: {value}")

        if self.min_value is not None and int_value < self.min_value:
            raise ValidationError(
                f"Must be at least {self.min_value}, got: {int_value}"
            )

        if self.max_value is not None and int_value > self.max_value:
            raise ValidationError(
                f"Must be at most {self.max_value}, got: {int_value}"
            )

        return int_value


# Registry of validators for known config keys
VALIDATORS = {
    'root_url': RootUrlValidator(),
    'sync_directory': SyncDirectoryValidator(),
    'log_level': LogLevelValidator(),
    'page_size': IntegerValidator(min_value=1, max_value=1000),
    'max_workers': IntegerValidator(min_value=1, max_value=32),
}


def validate_config_value(key: str, value: Any) -> Any:
    """Validate a configuration value using registered validators.

    Args:
        key: Configuration key
        value: Value to validate

    Returns:
        Validated and normalized value

    Raises:
        ValidationError: If validation fails
    """
    if key in VALIDATORS:
        return VALIDATORS[key].validate(value)

    # Unknown keys pass through unchanged
    return value
