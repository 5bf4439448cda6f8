#!/usr/bin/env python3
"""Record types for courses, modules, folders and files.

Raw Canvas JSON is validated once, at the fetch boundary, through the
``from_record`` constructors. Everything past that point works with these
dataclasses. ``to_dict``/``from_dict`` convert to and from the persisted
state format, where timestamps are ISO 8601 strings.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Union

from dateutil import parser as date_parser


class MalformedRecordError(ValueError):
    """Raised when a remote record is missing a field or has the wrong type."""
    pass


Timestamp = Union[datetime, str, int, float, None]


def parse_timestamp(value: Timestamp) -> Optional[datetime]:
    """Parse a timestamp into a timezone-aware datetime.

    Accepts datetimes, ISO 8601 strings (as returned by Canvas) and epoch
    milliseconds. Naive values are assumed to be UTC.

    Args:
        value: Timestamp in any supported form, or None

    Returns:
        Aware datetime, or None if value is empty

    Raises:
        ValueError: If a string cannot be parsed
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        dt = date_parser.isoparse(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def require_field(record: Dict[str, Any], key: str, kind: str, types: tuple) -> Any:
    if not isinstance(record, dict):
        raise MalformedRecordError(f"{kind} record is not an object: {record!r}")
    value = record.get(key)
    if value is None or isinstance(value, bool) or not isinstance(value, types):
        raise MalformedRecordError(
            f"{kind} record {record.get('id', '?')} has invalid '{key}': {value!r}"
        )
    return value


def _optional_int(record: Dict[str, Any], key: str, kind: str) -> int:
    value = record.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedRecordError(
            f"{kind} record {record.get('id', '?')} has invalid '{key}': {value!r}"
        )
    return value


def _record_timestamp(record: Dict[str, Any], key: str, kind: str) -> Optional[datetime]:
    try:
        return parse_timestamp(record.get(key))
    except (ValueError, OverflowError, TypeError) as e:
        raise MalformedRecordError(
            f"{kind} record {record.get('id', '?')} has invalid '{key}': {e}"
        )


_ID_TYPES = (int, str)


@dataclass
class Module:
    """A named grouping of items within a course."""

    id: Union[int, str]
    name: str
    module_path: str
    items_url: str
    items_count: int = 0

    @classmethod
    def from_record(cls, record: Dict[str, Any], name: str, module_path: str) -> 'Module':
        return cls(
            id=require_field(record, 'id', 'Module', _ID_TYPES),
            name=name,
            module_path=module_path,
            items_url=require_field(record, 'items_url', 'Module', (str,)),
            items_count=_optional_int(record, 'items_count', 'Module'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'module_path': self.module_path,
            'items_url': self.items_url,
            'items_count': self.items_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Module':
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            module_path=data.get('module_path', ''),
            items_url=data.get('items_url', ''),
            items_count=data.get('items_count', 0),
        )


@dataclass
class Folder:
    """A folder in a course's file tree."""

    id: Union[int, str]
    name: str
    folder_path: str
    folders_count: int = 0
    folders_url: str = ''
    files_count: int = 0
    files_url: str = ''
    updated_at: Optional[datetime] = None
    sync: bool = True

    @property
    def path(self) -> str:
        return self.folder_path

    @classmethod
    def from_record(cls, record: Dict[str, Any], name: str, folder_path: str) -> 'Folder':
        """Build a folder from a Canvas folder record.

        Args:
            record: Raw folder JSON
            name: Sanitized folder name
            folder_path: Resolved local path of the folder

        Raises:
            MalformedRecordError: If required fields are missing
        """
        return cls(
            id=require_field(record, 'id', 'Folder', _ID_TYPES),
            name=name,
            folder_path=folder_path,
            folders_count=_optional_int(record, 'folders_count', 'Folder'),
            folders_url=require_field(record, 'folders_url', 'Folder', (str,)),
            files_count=_optional_int(record, 'files_count', 'Folder'),
            files_url=require_field(record, 'files_url', 'Folder', (str,)),
            updated_at=_record_timestamp(record, 'updated_at', 'Folder'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'folder_path': self.folder_path,
            'folders_count': self.folders_count,
            'folders_url': self.folders_url,
            'files_count': self.files_count,
            'files_url': self.files_url,
            'updated_at': format_timestamp(self.updated_at),
            'sync': self.sync,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Folder':
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            folder_path=data.get('folder_path', ''),
            folders_count=data.get('folders_count', 0),
            folders_url=data.get('folders_url', ''),
            files_count=data.get('files_count', 0),
            files_url=data.get('files_url', ''),
            updated_at=parse_timestamp(data.get('updated_at')),
            sync=data.get('sync', True),
        )


@dataclass
class File:
    """A file reachable from a module or a folder.

    ``updated_at`` is the remote modification time; ``last_synced`` is when
    the bytes were last written locally. The two are never mixed.
    """

    id: Union[int, str]
    name: str
    file_path: str
    url: str
    size: int = 0
    updated_at: Optional[datetime] = None
    last_synced: Optional[datetime] = None
    sync: bool = True
    course_id: Optional[Union[int, str]] = None
    source: str = 'folder'

    @property
    def path(self) -> str:
        return self.file_path

    @classmethod
    def from_record(cls, record: Dict[str, Any], name: str, file_path: str,
                    course_id: Optional[Union[int, str]] = None,
                    source: str = 'folder') -> 'File':
        """Build a file from a Canvas file record.

        Args:
            record: Raw file JSON
            name: Sanitized file name
            file_path: Resolved local path of the file
            course_id: Owning course
            source: 'module' or 'folder'

        Raises:
            MalformedRecordError: If required fields are missing
        """
        return cls(
            id=require_field(record, 'id', 'File', _ID_TYPES),
            name=name,
            file_path=file_path,
            url=require_field(record, 'url', 'File', (str,)),
            size=_optional_int(record, 'size', 'File'),
            updated_at=_record_timestamp(record, 'updated_at', 'File'),
            course_id=course_id,
            source=source,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'file_path': self.file_path,
            'url': self.url,
            'size': self.size,
            'updated_at': format_timestamp(self.updated_at),
            'last_synced': format_timestamp(self.last_synced),
            'sync': self.sync,
            'course_id': self.course_id,
            'source': self.source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'File':
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            file_path=data.get('file_path', ''),
            url=data.get('url', ''),
            size=data.get('size', 0),
            updated_at=parse_timestamp(data.get('updated_at')),
            last_synced=parse_timestamp(data.get('last_synced')),
            sync=data.get('sync', True),
            course_id=data.get('course_id'),
            source=data.get('source', 'folder'),
        )


@dataclass
class Conflict:
    """Two distinct remote entities resolving to the same local path.

    Conflicts are only recorded here; picking a winner is left to the user.
    """

    file_path: str
    kind: str
    existing_id: Optional[Union[int, str]]
    incoming_id: Union[int, str]
    incoming: Dict[str, Any] = field(default_factory=dict)
    reason: str = ''

    @property
    def key(self) -> tuple:
        return (self.kind, self.file_path, self.incoming_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'file_path': self.file_path,
            'kind': self.kind,
            'existing_id': self.existing_id,
            'incoming_id': self.incoming_id,
            'incoming': self.incoming,
            'reason': self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Conflict':
        return cls(
            file_path=data['file_path'],
            kind=data.get('kind', 'file'),
            existing_id=data.get('existing_id'),
            incoming_id=data['incoming_id'],
            incoming=data.get('incoming', {}),
            reason=data.get('reason', ''),
        )


@dataclass
class Course:
    """A Canvas course and everything discovered under it.

    ``synced_at`` is the start of the last run that reconciled the course
    without a failed branch. It is the watermark the course is diffed
    against; None means the next run lists everything again.
    """

    id: Union[int, str]
    name: str
    has_modules_tab: bool = False
    has_files_tab: bool = False
    sync: bool = True
    modules: List[Module] = field(default_factory=list)
    files: List[File] = field(default_factory=list)
    folders: List[Folder] = field(default_factory=list)
    files_url: Optional[str] = None
    folders_url: Optional[str] = None
    root_folder_label: str = 'course files'
    conflicts: List[Conflict] = field(default_factory=list)
    synced_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any], name: str) -> 'Course':
        return cls(id=require_field(record, 'id', 'Course', _ID_TYPES), name=name)

    def find_file(self, file_path: str) -> Optional[File]:
        for file in self.files:
            if file.file_path == file_path:
                return file
        return None

    def find_folder(self, folder_path: str) -> Optional[Folder]:
        for folder in self.folders:
            if folder.folder_path == folder_path:
                return folder
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'has_modules_tab': self.has_modules_tab,
            'has_files_tab': self.has_files_tab,
            'sync': self.sync,
            'modules': [module.to_dict() for module in self.modules],
            'files': [file.to_dict() for file in self.files],
            'folders': [folder.to_dict() for folder in self.folders],
            'files_url': self.files_url,
            'folders_url': self.folders_url,
            'root_folder_label': self.root_folder_label,
            'conflicts': [conflict.to_dict() for conflict in self.conflicts],
            'synced_at': format_timestamp(self.synced_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Course':
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            has_modules_tab=data.get('has_modules_tab', False),
            has_files_tab=data.get('has_files_tab', False),
            sync=data.get('sync', True),
            modules=[Module.from_dict(m) for m in data.get('modules', [])],
            files=[File.from_dict(f) for f in data.get('files', [])],
            folders=[Folder.from_dict(f) for f in data.get('folders', [])],
            files_url=data.get('files_url'),
            folders_url=data.get('folders_url'),
            root_folder_label=data.get('root_folder_label', 'course files'),
            conflicts=[Conflict.from_dict(c) for c in data.get('conflicts', [])],
            synced_at=parse_timestamp(data.get('synced_at')),
        )


@dataclass
class FailedBranch:
    """A branch of a sync run that could not be fetched."""

    course_id: Optional[Union[int, str]]
    kind: str
    ref: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'course_id': self.course_id,
            'kind': self.kind,
            'ref': self.ref,
            'error': self.error,
        }


@dataclass
class SyncReport:
    """Outcome of one sync run."""

    added: int = 0
    updated: int = 0
    unchanged: int = 0
    stale: int = 0
    downloaded: int = 0
    conflicts: List[Conflict] = field(default_factory=list)
    failures: List[FailedBranch] = field(default_factory=list)
    completed: bool = False

    @property
    def ok(self) -> bool:
        return self.completed and not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            'added': self.added,
            'updated': self.updated,
            'unchanged': self.unchanged,
            'stale': self.stale,
            'downloaded': self.downloaded,
            'conflicts': [conflict.to_dict() for conflict in self.conflicts],
            'failures': [failure.to_dict() for failure in self.failures],
            'completed': self.completed,
        }
