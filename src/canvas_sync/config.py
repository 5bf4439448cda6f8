#!/usr/bin/env python3
"""Configuration and state management for Canvas Sync.

State File Structure
====================

sync_state.json contains:

{
  "courses": {
    // Reconciled course records, keyed by Canvas course id
    "1234": {
      "id": 1234,
      "name": "Biology 101",
      "has_modules_tab": true,
      "has_files_tab": true,
      "sync": true,                       // User selected this course for sync
      "modules": [...],                   // Rebuilt on every sync
      "folders": [...],                   // folder_path, updated_at, counts, urls
      "files": [...],                     // file_path, url, updated_at, last_synced
      "files_url": "https://...",
      "folders_url": "https://...",
      "root_folder_label": "course files",
      "conflicts": [...],                 // Unresolved path collisions
      "synced_at": "2024-01-30T12:00:00+00:00"  // Course watermark, null until a clean run
    }
  },

  "last_synced": "2024-01-30T12:00:00+00:00"  // Start of the last run without failed branches
}

Key Distinction:
- updated_at: when Canvas last changed an entity (remote)
- last_synced: when the bytes of a file were last written locally (per file),
  or when the last complete run started (top level)
- synced_at: start of the last run that reconciled a course without a
  failed branch; the course is diffed against it
"""

import json
import logging
import base64
from pathlib import Path
from typing import Optional, Dict, Any

from cryptography.fernet import Fernet, InvalidToken
import keyring

from .backends import JsonStateBackend, StateBackend
from .canvas_client import DEFAULT_PAGE_SIZE
from .concurrency import DEFAULT_MAX_WORKERS
from .validators import validate_config_value, ValidationError

logger = logging.getLogger(__name__)


class Config:
    """Manages Canvas Sync configuration."""

    DEFAULT_CONFIG_DIR = Path.home() / ".config" / "canvas-sync"
    DEFAULT_SYNC_DIR = Path.home() / "Canvas"
    CONFIG_FILE = "config.json"
    TOKEN_FILE = ".canvas_token"
    STATE_FILE = "sync_state.json"
    LOG_FILE = "canvas_sync.log"
    KEYRING_SERVICE = "canvas-sync"

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_dir: Custom configuration directory path
        """
        self.config_dir = config_dir or self.DEFAULT_CONFIG_DIR
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.config_path = self.config_dir / self.CONFIG_FILE
        self.token_path = self.config_dir / self.TOKEN_FILE
        self.state_path = self.config_dir / self.STATE_FILE
        self.log_path = self.config_dir / self.LOG_FILE

        self._config: Dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        """Load configuration from file."""
        if self.config_path.exists():
            with open(self.config_path, 'r') as f:
                self._config = json.load(f)
            logger.debug(f"Loaded config from {self.config_path}")
        else:
            # Initialize with defaults
            self._config = {
                'root_url': '',
                'sync_directory': str(self.DEFAULT_SYNC_DIR),
                'page_size': DEFAULT_PAGE_SIZE,
                'max_workers': DEFAULT_MAX_WORKERS,
                'log_level': 'INFO',
            }
            self.save()
            logger.debug(f"Created default config at {self.config_path}")

    def save(self) -> None:
        """Save configuration to file."""
        with open(self.config_path, 'w') as f:
            json.dump(self._config, f, indent=2)
        # Secure file permissions (owner read/write only)
        self.config_path.chmod(0o600)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value
        """
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value with validation.

        Args:
            key: Configuration key
            value: Configuration value

        Raises:
            ValueError: If value is invalid for the given key
        """
        try:
            validated_value = validate_config_value(key, value)
        except ValidationError as e:
            raise ValueError(str(e))
        self._config[key] = validated_value
        self.save()

    def items(self) -> Dict[str, Any]:
        """Get a copy of all configuration values."""
        return dict(self._config)

    @property
    def root_url(self) -> str:
        """Get Canvas instance URL."""
        return self._config.get('root_url', '')

    @property
    def sync_directory(self) -> Path:
        """Get sync directory path."""
        return Path(self._config.get('sync_directory', str(self.DEFAULT_SYNC_DIR)))

    @sync_directory.setter
    def sync_directory(self, path: Path) -> None:
        """Set sync directory path."""
        self.set('sync_directory', path)

    @property
    def page_size(self) -> int:
        """Get number of records fetched per listing."""
        return self._config.get('page_size', DEFAULT_PAGE_SIZE)

    @property
    def max_workers(self) -> int:
        """Get ceiling on concurrent requests."""
        return self._config.get('max_workers', DEFAULT_MAX_WORKERS)

    @property
    def log_level(self) -> str:
        """Get log level."""
        return self._config.get('log_level', 'INFO').upper()

    def state_backend(self) -> StateBackend:
        """Create the backend holding the persisted sync state."""
        return JsonStateBackend(self.state_path)

    def _get_encryption_key(self) -> bytes:
        """Get or create encryption key from system keyring.

        Returns:
            Encryption key bytes
        """
        key_name = "token_encryption_key"

        key_str = keyring.get_password(self.KEYRING_SERVICE, key_name)
        if key_str:
            return base64.b64decode(key_str.encode())

        key = Fernet.generate_key()
        key_str = base64.b64encode(key).decode()
        keyring.set_password(self.KEYRING_SERVICE, key_name, key_str)

        logger.info("Generated new encryption key")
        return key

    def _encrypt_token(self, token_data: Dict[str, Any]) -> bytes:
        fernet = Fernet(self._get_encryption_key())
        return fernet.encrypt(json.dumps(token_data).encode())

    def _decrypt_token(self, encrypted_data: bytes) -> Dict[str, Any]:
        """Decrypt token data.

        Raises:
            ValueError: If decryption fails
        """
        try:
            fernet = Fernet(self._get_encryption_key())
            decrypted = fernet.decrypt(encrypted_data)
            return json.loads(decrypted.decode())
        except InvalidToken:
            raise ValueError("Invalid or corrupted token data")
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValueError(f"Decryption failed: {e}")

    def save_token(self, access_token: str) -> None:
        """Save the Canvas access token, encrypted.

        Args:
            access_token: Developer access token generated in Canvas
        """
        access_token = access_token.strip()
        if not access_token:
            raise ValueError("Access token cannot be empty")

        self.token_path.write_bytes(self._encrypt_token({'access_token': access_token}))
        # Secure file permissions (owner read/write only)
        self.token_path.chmod(0o600)

        logger.info("Token saved with encryption")

    def load_token(self) -> Optional[str]:
        """Load and decrypt the Canvas access token.

        Returns:
            Access token or None if not found
        """
        if not self.token_path.exists():
            return None

        try:
            token_data = self._decrypt_token(self.token_path.read_bytes())
        except ValueError as e:
            logger.warning(f"Could not decrypt token: {e}")
            logger.warning("Token file is unreadable - please store the access token again")
            self.token_path.unlink(missing_ok=True)
            return None

        token = token_data.get('access_token') if isinstance(token_data, dict) else None
        if not token:
            logger.warning("Token file holds no access token")
            return None
        logger.debug("Token loaded and decrypted successfully")
        return token

    def delete_token(self) -> None:
        """Remove the stored access token."""
        self.token_path.unlink(missing_ok=True)
        logger.info("Token removed")
