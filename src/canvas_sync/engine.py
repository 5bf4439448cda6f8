#!/usr/bin/env python3
"""One sync run: discover, reconcile, optionally download, persist."""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, List, Optional

from .backends import StateBackend
from .canvas_client import CanvasClient, AuthInvalidError, RECOVERABLE_ERRORS
from .concurrency import DEFAULT_MAX_WORKERS
from .course_map import CourseMapBuilder
from .differ import IncrementalDiffer
from .merger import ReconciliationMerger, MergeResult
from .models import Course, File, FailedBranch, SyncReport, format_timestamp
from .path_utils import validate_sync_path

logger = logging.getLogger(__name__)


# Failures of these kinds do not hold back the last complete sync time
_LOCAL_FAILURE_KINDS = ('download',)


class SyncEngine:
    """Coordinates a single sync run and is the only writer of sync state.

    Courses seen for the first time are mapped in full by the builder.
    Known courses are diffed against their own ``synced_at`` watermark.
    Either way the batch goes through the merger before it reaches the
    state. The top level ``last_synced`` records the start of the last run
    without a failed remote branch.
    """

    def __init__(self, client: CanvasClient, backend: StateBackend,
                 sync_directory: Optional[Path] = None,
                 max_workers: int = DEFAULT_MAX_WORKERS,
                 builder: Optional[CourseMapBuilder] = None,
                 differ: Optional[IncrementalDiffer] = None,
                 merger: Optional[ReconciliationMerger] = None):
        """Initialize sync engine.

        Args:
            client: Canvas API client
            backend: Persisted state store
            sync_directory: Local root for downloaded files
            max_workers: Ceiling on concurrent requests
            builder: Course map builder (created from client if omitted)
            differ: Incremental differ (created from builder if omitted)
            merger: Reconciliation merger
        """
        self.client = client
        self.backend = backend
        self.sync_directory = sync_directory
        self.builder = builder or CourseMapBuilder(client, page_size=client.page_size, max_workers=max_workers)
        self.differ = differ or IncrementalDiffer(client, self.builder)
        self.merger = merger or ReconciliationMerger()

    def sync(self, download: bool = False) -> SyncReport:
        """Run one sync cycle.

        Each course is diffed against its own ``synced_at`` watermark, which
        only advances when none of the course's branches failed, so the next
        run looks at the failed parts again. A course whose first build was
        incomplete keeps no watermark and is listed in full until a run
        succeeds. If the access token is rejected, nothing is saved and
        AuthInvalidError propagates.

        Args:
            download: Also transfer files whose bytes are missing or outdated

        Returns:
            SyncReport for the run
        """
        logger.info("Starting sync...")
        report = SyncReport()
        run_started = datetime.now(timezone.utc)

        state = self.backend.load()

        updated: Dict[str, Dict[str, Any]] = {}
        try:
            try:
                courses, failures = self.builder.discover_courses()
            except RECOVERABLE_ERRORS as e:
                logger.error(f"Failed to list courses: {e}")
                report.failures.append(FailedBranch(None, 'course', 'all', str(e)))
                return report
            report.failures.extend(failures)

            for course in courses:
                merged = self._sync_course(course, self.backend.get_course(str(course.id)), run_started, report)
                if merged is None:
                    continue
                if download:
                    merged = self._download_files(merged, report)
                updated[str(course.id)] = merged.to_dict()
        except AuthInvalidError:
            logger.error("Canvas rejected the access token, sync aborted without saving")
            raise

        for course_id, data in updated.items():
            self.backend.set_course(course_id, data)
        remote_failures = [f for f in report.failures if f.kind not in _LOCAL_FAILURE_KINDS]
        if remote_failures:
            logger.warning(f"{len(remote_failures)} branches failed, last complete sync stays at "
                           f"{self.backend.get_metadata('last_synced')}")
        else:
            self.backend.set_metadata('last_synced', format_timestamp(run_started))
        self.backend.save(state)

        report.completed = True
        logger.info(f"Sync completed: {report.added} added, {report.updated} updated, "
                    f"{report.unchanged} unchanged, {report.stale} stale, "
                    f"{report.downloaded} downloaded, {len(report.conflicts)} conflicts, "
                    f"{len(report.failures)} failed branches")
        return report

    def _sync_course(self, course: Course, stored: Optional[Dict[str, Any]],
                     run_started: datetime, report: SyncReport) -> Optional[Course]:
        """Reconcile one course; returns the merged course, or None if skipped."""
        if stored is None:
            logger.info(f"New course {course.name}, building full course map")
            build = self.builder.build(course)
            report.failures.extend(build.failures)
            shell = Course(
                id=course.id,
                name=course.name,
                has_modules_tab=course.has_modules_tab,
                has_files_tab=course.has_files_tab,
                sync=course.sync,
                files_url=course.files_url,
                folders_url=course.folders_url,
                root_folder_label=course.root_folder_label,
            )
            result = self.merger.merge(
                shell,
                files=build.course.files,
                folders=build.course.folders,
                modules=build.course.modules,
            )
            self._record(result, report)
            return self._advance(result.course, build.failures, run_started)

        existing = Course.from_dict(stored)
        if not existing.sync:
            logger.debug(f"Course {existing.name} is not selected for sync, skipping")
            return None
        self._refresh_capabilities(existing, course)
        watermark = existing.synced_at

        if (watermark is not None and not existing.has_modules_tab
                and not self.differ.has_changes(existing, watermark)):
            logger.info(f"No changes in {existing.name} since {watermark.isoformat()}")
            return self._advance(existing, [], run_started)

        if watermark is None:
            logger.info(f"{existing.name} has no complete sync yet, listing everything")
        diff = self.differ.diff(existing, watermark)
        report.failures.extend(diff.failures)
        result = self.merger.merge(existing, files=diff.files, folders=diff.folders, modules=diff.modules)
        self._record(result, report)
        return self._advance(result.course, diff.failures, run_started)

    def _advance(self, course: Course, failures: List[FailedBranch], run_started: datetime) -> Course:
        if failures:
            logger.warning(f"{len(failures)} branches of {course.name} failed, "
                           f"watermark stays at {format_timestamp(course.synced_at)}")
        else:
            course.synced_at = run_started
        return course

    def _refresh_capabilities(self, existing: Course, discovered: Course) -> None:
        # The course name stays as persisted: every stored path is rooted at it
        if discovered.name != existing.name:
            logger.info(f"Course {existing.id} is now called '{discovered.name}', "
                        f"keeping local name '{existing.name}'")
        existing.has_modules_tab = discovered.has_modules_tab
        existing.has_files_tab = discovered.has_files_tab
        existing.files_url = discovered.files_url or existing.files_url
        existing.folders_url = discovered.folders_url or existing.folders_url
        existing.root_folder_label = discovered.root_folder_label

    def _record(self, result: MergeResult, report: SyncReport) -> None:
        report.added += result.added
        report.updated += result.updated
        report.unchanged += result.unchanged
        report.stale += result.stale
        report.conflicts.extend(result.conflicts)

    def _download_candidates(self, course: Course) -> List[File]:
        candidates = []
        for file in course.files:
            if not file.sync or not file.url:
                continue
            if file.last_synced is None or (file.updated_at is not None and file.updated_at > file.last_synced):
                candidates.append(file)
        return candidates

    def _download_files(self, course: Course, report: SyncReport) -> Course:
        """Transfer missing or outdated file bytes and record them as synced."""
        if self.sync_directory is None:
            logger.warning("No sync directory configured, skipping downloads")
            return course

        for file in self._download_candidates(course):
            try:
                local_path = validate_sync_path(file.file_path, self.sync_directory)
                self.client.download_file(file.url, local_path)
            except RECOVERABLE_ERRORS + (OSError,) as e:
                logger.error(f"Failed to download {file.file_path}: {e}")
                report.failures.append(FailedBranch(course.id, 'download', file.file_path, str(e)))
                continue
            course = self.merger.mark_synced(course, file.file_path, datetime.now(timezone.utc))
            report.downloaded += 1
        return course
