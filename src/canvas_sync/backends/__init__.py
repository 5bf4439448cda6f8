"""State storage backends for Canvas Sync."""

from .base import StateBackend
from .json_backend import JsonStateBackend

__all__ = ['StateBackend', 'JsonStateBackend']
