#!/usr/bin/env python3
"""Incremental change detection against a last-synced watermark."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import List, Dict, Any, Optional

from .canvas_client import CanvasClient, RECOVERABLE_ERRORS
from .concurrency import run_branches
from .course_map import CourseMapBuilder
from .crawler import build_file
from .models import Course, Module, Folder, File, FailedBranch, Timestamp, parse_timestamp, require_field
from .path_utils import sanitize_name, sanitize_path, strip_remote_root, join_path, StalePathMismatchError

logger = logging.getLogger(__name__)


@dataclass
class DiffResult:
    """Entities that changed since the watermark.

    ``modules`` is None when the module list could not be refreshed, so the
    merger keeps the modules it already has.
    """

    files: List[File] = field(default_factory=list)
    folders: List[Folder] = field(default_factory=list)
    modules: Optional[List[Module]] = None
    failures: List[FailedBranch] = field(default_factory=list)


def is_newer(updated_at: Optional[datetime], last_synced_at: Optional[datetime]) -> bool:
    """Check whether a remote timestamp is strictly after the watermark."""
    if last_synced_at is None:
        return True
    if updated_at is None:
        return False
    return updated_at > last_synced_at


class IncrementalDiffer:
    """Finds new and updated folders and files of a known course.

    Folder and file listings are requested sorted by ``updated_at``
    descending and filtered against the watermark. Module files are not
    diffed: they are re-fetched in full on every run.
    """

    def __init__(self, client: CanvasClient, builder: CourseMapBuilder):
        self.client = client
        self.builder = builder
        self.max_workers = builder.max_workers

    def diff(self, course: Course, last_synced_at: Timestamp) -> DiffResult:
        """Compute what changed in a course since last_synced_at.

        Args:
            course: Previously persisted course
            last_synced_at: Watermark (datetime, ISO string, epoch ms or None)

        Returns:
            DiffResult; failed branches contribute nothing
        """
        watermark = parse_timestamp(last_synced_at)
        result = DiffResult()

        if course.has_modules_tab:
            modules, module_files, failures = self.builder.collect_module_files(course)
            if not any(failure.kind == 'modules' for failure in failures):
                result.modules = modules
            result.files.extend(module_files)
            result.failures.extend(failures)

        if course.has_files_tab:
            result.folders = self.new_folders(course, watermark, result.failures)
            result.files.extend(self.new_or_updated_files(course, result.folders, watermark, result.failures))

        logger.info(f"Diff for {course.name}: {len(result.folders)} new folders, "
                    f"{len(result.files)} new or updated files, {len(result.failures)} failed branches")
        return result

    def new_folders(self, course: Course, watermark: Optional[datetime],
                    failures: List[FailedBranch]) -> List[Folder]:
        """List folders updated after the watermark with their local paths."""
        try:
            records = self.client.list_folders_by_updated_at(course.id)
        except RECOVERABLE_ERRORS as e:
            logger.error(f"Problem getting new folders for {course.name}: {e}")
            failures.append(FailedBranch(course.id, 'folders', str(course.id), str(e)))
            return []

        folders = []
        for record in records:
            try:
                folder = self._folder_from_full_name(record, course)
            except RECOVERABLE_ERRORS as e:
                logger.warning(f"Skipping folder in {course.name}: {e}")
                record_id = record.get('id') if isinstance(record, dict) else None
                failures.append(FailedBranch(course.id, 'folder', str(record_id), str(e)))
                continue
            if folder is not None and is_newer(folder.updated_at, watermark):
                folders.append(folder)
        return folders

    def _folder_from_full_name(self, record: Dict[str, Any], course: Course) -> Optional[Folder]:
        full_name = require_field(record, 'full_name', 'Folder', (str,))
        try:
            relative = strip_remote_root(full_name, course.root_folder_label)
        except StalePathMismatchError as e:
            logger.warning(f"{e}; using the raw path")
            relative = full_name
        if not relative:
            # The course root folder itself
            return None
        name = sanitize_name(require_field(record, 'name', 'Folder', (str,)))
        folder_path = join_path(course.name, sanitize_path(relative))
        return Folder.from_record(record, name=name, folder_path=folder_path)

    def new_or_updated_files(self, course: Course, new_folders: List[Folder],
                             watermark: Optional[datetime],
                             failures: List[FailedBranch]) -> List[File]:
        """List files updated after the watermark.

        Covers the course root, every known folder and every folder that is
        new in this diff.
        """
        listings = []
        if course.files_url:
            listings.append(('root', course.files_url, course.name))
        seen_paths = set()
        for folder in list(course.folders) + list(new_folders):
            if not folder.files_url or folder.folder_path in seen_paths:
                continue
            seen_paths.add(folder.folder_path)
            listings.append((str(folder.id), folder.files_url, folder.folder_path))

        tasks = [
            ((ref, base_path), partial(self._changed_files, files_url, base_path, course, watermark))
            for ref, files_url, base_path in listings
        ]
        files: List[File] = []
        for outcome in run_branches(tasks, self.max_workers):
            ref, base_path = outcome.key
            if outcome.failed:
                logger.error(f"Problem getting new or updated files in {base_path}: {outcome.error}")
                failures.append(FailedBranch(course.id, 'files', ref, str(outcome.error)))
                continue
            files.extend(outcome.value)
        return files

    def _changed_files(self, files_url: str, base_path: str, course: Course,
                       watermark: Optional[datetime]) -> List[File]:
        records = self.client.list_files_by_updated_at(files_url)
        files = [build_file(record, base_path, course.id) for record in records]
        return [file for file in files if is_newer(file.updated_at, watermark)]

    def has_changes(self, course: Course, last_synced_at: Timestamp) -> bool:
        """Cheap probe: has any file of the course changed since the watermark?

        Errors are treated as "changed" so the caller falls back to a diff.
        """
        watermark = parse_timestamp(last_synced_at)
        try:
            latest = self.client.get_latest_file(course.id)
        except RECOVERABLE_ERRORS as e:
            logger.warning(f"Error checking if {course.name} has new files: {e}")
            return True
        if not latest or not isinstance(latest[0], dict):
            return False
        try:
            updated_at = parse_timestamp(latest[0].get('updated_at'))
        except (ValueError, OverflowError) as e:
            logger.warning(f"Unreadable timestamp on latest file of {course.name}: {e}")
            return True
        return is_newer(updated_at, watermark)
