#!/usr/bin/env python3
"""Path utilities for turning Canvas names into safe local paths."""

import logging
import os
import re
import unicodedata
from pathlib import Path

logger = logging.getLogger(__name__)


REPLACEMENT = '-'
MAX_NAME_LENGTH = 100
EMPTY_NAME = 'untitled'

# Characters rejected by at least one of Windows, macOS or Linux
_RESERVED_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')
_REPEATED_REPLACEMENT = re.compile(re.escape(REPLACEMENT) + '{2,}')
_RELATIVE_NAME = re.compile(r'^\.+$')
_WINDOWS_RESERVED = re.compile(r'^(con|prn|aux|nul|com[0-9]|lpt[0-9])$', re.IGNORECASE)


class SecurityError(Exception):
    """Raised when a security violation is detected."""
    pass


class StalePathMismatchError(Exception):
    """Raised when a remote full path does not start with the expected root label."""
    pass


def sanitize_name(raw_name: str) -> str:
    """Convert a remote name into a single filesystem-safe path segment.

    The result is valid on Windows, macOS and Linux at once. Anything after
    the first ``|`` is dropped, so ``"Midterm | v2.pdf"`` becomes ``"Midterm"``.
    Applying the function to its own output returns the same value.

    Args:
        raw_name: Name as reported by Canvas

    Returns:
        Sanitized name, never empty
    """
    name = unicodedata.normalize('NFC', str(raw_name))
    name = name.split('|')[0].strip()

    name = _RESERVED_CHARS.sub(REPLACEMENT, name)
    name = _RELATIVE_NAME.sub(REPLACEMENT, name)
    name = _REPEATED_REPLACEMENT.sub(REPLACEMENT, name)
    name = _strip_outer(name)

    if len(name) > MAX_NAME_LENGTH:
        name = _strip_outer(name[:MAX_NAME_LENGTH])

    stem, dot, suffix = name.partition('.')
    if _WINDOWS_RESERVED.match(stem):
        name = f"{stem}{REPLACEMENT}{dot}{suffix}"

    return name or EMPTY_NAME


def _strip_outer(name: str) -> str:
    # Windows drops trailing dots and spaces silently
    return name.lstrip(' ' + REPLACEMENT).rstrip(' .' + REPLACEMENT)


def sanitize_path(raw_path: str, remote_separator: str = '/',
                  local_separator: str = os.sep) -> str:
    """Sanitize every segment of a remote hierarchical path.

    The path is split with the remote system's separator and rejoined with
    the local one, so the two may differ.

    Args:
        raw_path: Path as reported by Canvas (e.g. ``"Week 1/Slides: intro"``)
        remote_separator: Separator used by the remote path
        local_separator: Separator to join the sanitized segments with

    Returns:
        Sanitized relative path, or an empty string if nothing remains
    """
    segments = [segment for segment in raw_path.split(remote_separator) if segment.strip()]
    return local_separator.join(sanitize_name(segment) for segment in segments)


def strip_remote_root(full_name: str, root_label: str) -> str:
    """Remove the remote root folder label from a Canvas ``full_name``.

    Canvas reports folder paths like ``"course files/Week 1"``; the label
    must not appear in the local path.

    Args:
        full_name: Full remote path of a folder
        root_label: Name of the course root folder

    Returns:
        Path relative to the root folder (empty for the root itself)

    Raises:
        StalePathMismatchError: If the path does not start with the label
    """
    if full_name == root_label:
        return ''
    prefix = f"{root_label}/"
    if not full_name.startswith(prefix):
        raise StalePathMismatchError(
            f"Folder path '{full_name}' does not start with root label '{root_label}'"
        )
    return full_name[len(prefix):]


def join_path(*segments: str) -> str:
    """Join already-sanitized segments with the local separator."""
    return os.path.join(*[segment for segment in segments if segment])


def validate_sync_path(rel_path: str, sync_dir: Path) -> Path:
    """Validate path is within sync directory and not a symlink.

    Args:
        rel_path: Relative path to validate
        sync_dir: Sync directory base path

    Returns:
        Validated absolute path

    Raises:
        SecurityError: If path validation fails
    """
    full_path = (sync_dir / rel_path).resolve()
    sync_dir_resolved = sync_dir.resolve()

    try:
        full_path.relative_to(sync_dir_resolved)
    except ValueError:
        raise SecurityError(f"Path traversal detected: {rel_path}")

    # Walk back up to sync_dir without following symlinks
    check_path = full_path
    while check_path != sync_dir_resolved:
        if check_path.is_symlink():
            raise SecurityError(f"Symlink detected in path: {rel_path}")
        if check_path == check_path.parent:
            raise SecurityError(f"Path validation failed - reached filesystem root: {rel_path}")
        check_path = check_path.parent

    return full_path
