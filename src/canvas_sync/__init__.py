"""Canvas Sync - incremental mirror of Canvas LMS course files."""

__version__ = '0.1.0'
__license__ = 'MIT'

from .canvas_client import CanvasClient
from .config import Config
from .engine import SyncEngine

__all__ = ['CanvasClient', 'Config', 'SyncEngine']
