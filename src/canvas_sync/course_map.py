#!/usr/bin/env python3
"""Cold-start course maps: modules, module files, folders and folder files."""

import copy
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import List, Dict, Any, Optional, Tuple
from urllib.parse import unquote_plus

from .canvas_client import CanvasClient, RECOVERABLE_ERRORS, DEFAULT_PAGE_SIZE
from .concurrency import run_branches, DEFAULT_MAX_WORKERS
from .crawler import TreeCrawler, warn_if_truncated
from .models import Course, Module, File, FailedBranch, MalformedRecordError, require_field
from .path_utils import sanitize_name, join_path

logger = logging.getLogger(__name__)


@dataclass
class BuildResult:
    """A fully mapped course and the branches that could not be mapped."""

    course: Course
    failures: List[FailedBranch] = field(default_factory=list)


class CourseMapBuilder:
    """Builds the complete map of a course on first connection."""

    def __init__(self, client: CanvasClient, crawler: Optional[TreeCrawler] = None,
                 page_size: int = DEFAULT_PAGE_SIZE, max_workers: int = DEFAULT_MAX_WORKERS):
        """Initialize builder.

        Args:
            client: Paged fetcher for the Canvas API
            crawler: Folder crawler (created from client if omitted)
            page_size: Records fetched per listing
            max_workers: Ceiling on concurrent requests
        """
        self.client = client
        self.page_size = page_size
        self.max_workers = max_workers
        self.crawler = crawler or TreeCrawler(client, page_size=page_size, max_workers=max_workers)

    def discover_courses(self) -> Tuple[List[Course], List[FailedBranch]]:
        """List the user's active courses with their capability flags.

        A course whose tabs or root folder cannot be read is skipped and
        reported. Failing to list courses at all is raised to the caller.

        Returns:
            Tuple of (courses, failed branches)
        """
        records = self.client.list_active_courses()
        logger.info(f"Found {len(records)} active courses")

        tasks = [
            (record, partial(self._describe_course, record))
            for record in records
        ]
        courses: List[Course] = []
        failures: List[FailedBranch] = []
        for outcome in run_branches(tasks, self.max_workers):
            record = outcome.key
            if outcome.failed:
                course_id = record.get('id') if isinstance(record, dict) else None
                logger.error(f"Error getting course {course_id}: {outcome.error}")
                failures.append(FailedBranch(course_id, 'course', str(course_id), str(outcome.error)))
                continue
            courses.append(outcome.value)
        return courses, failures

    def _describe_course(self, record: Dict[str, Any]) -> Course:
        name = sanitize_name(require_field(record, 'name', 'Course', (str,)))
        course = Course.from_record(record, name=name)

        tabs = self.client.list_course_tabs(course.id)
        tab_ids = {tab.get('id') for tab in tabs if isinstance(tab, dict)}
        course.has_modules_tab = 'modules' in tab_ids
        course.has_files_tab = 'files' in tab_ids

        if course.has_files_tab:
            root = self.client.get_course_root_folder(course.id)
            course.files_url = require_field(root, 'files_url', 'Folder', (str,))
            course.folders_url = require_field(root, 'folders_url', 'Folder', (str,))
            course.root_folder_label = root.get('full_name') or root.get('name') or course.root_folder_label
        return course

    def build(self, course: Course) -> BuildResult:
        """Build the full map of a course.

        Modules and files are both optional capabilities. Every branch that
        fails degrades to an empty result and is reported; only an invalid
        access token aborts the build.

        Args:
            course: Course as returned by discover_courses

        Returns:
            BuildResult with a new Course; the input is not modified
        """
        course = copy.deepcopy(course)
        course.modules = []
        course.files = []
        course.folders = []
        failures: List[FailedBranch] = []

        if course.has_modules_tab:
            modules, module_files, module_failures = self.collect_module_files(course)
            course.modules = modules
            course.files.extend(module_files)
            failures.extend(module_failures)

        if course.has_files_tab:
            crawl = self.crawler.crawl(course)
            course.folders = crawl.folders
            course.files.extend(crawl.files)
            failures.extend(crawl.failures)

            if course.files_url:
                try:
                    course.files.extend(
                        self.crawler.list_files(course.files_url, course.name, course.id)
                    )
                except RECOVERABLE_ERRORS as e:
                    logger.error(f"Failed to list root files of {course.name}: {e}")
                    failures.append(FailedBranch(course.id, 'files', 'root', str(e)))

        logger.info(f"Built course map for {course.name}: {len(course.modules)} modules, "
                    f"{len(course.folders)} folders, {len(course.files)} files")
        return BuildResult(course=course, failures=failures)

    def collect_module_files(self, course: Course) -> Tuple[List[Module], List[File], List[FailedBranch]]:
        """Fetch the module list and every file linked from a module.

        Items are listed for all modules concurrently, then the metadata of
        every file item is fetched concurrently. Files locked for the user
        are dropped.

        Returns:
            Tuple of (modules, module files, failed branches)
        """
        failures: List[FailedBranch] = []
        try:
            records = self.client.list_modules(course.id)
        except RECOVERABLE_ERRORS as e:
            logger.error(f"Issue getting modules for {course.name}: {e}")
            return [], [], [FailedBranch(course.id, 'modules', str(course.id), str(e))]
        warn_if_truncated(records, self.client.page_size, f"modules of {course.name}")

        modules: List[Module] = []
        for record in records:
            try:
                name = sanitize_name(require_field(record, 'name', 'Module', (str,)))
                modules.append(Module.from_record(record, name=name, module_path=join_path(course.name, name)))
            except MalformedRecordError as e:
                logger.warning(f"Skipping malformed module in {course.name}: {e}")
                record_id = record.get('id') if isinstance(record, dict) else None
                failures.append(FailedBranch(course.id, 'module', str(record_id), str(e)))

        item_tasks = [
            (module, partial(self.client.fetch_page, module.items_url, self.page_size))
            for module in modules
        ]
        detail_tasks = []
        for outcome in run_branches(item_tasks, self.max_workers):
            module = outcome.key
            if outcome.failed:
                logger.error(f"Issue getting module items for {module.module_path}: {outcome.error}")
                failures.append(FailedBranch(course.id, 'module', str(module.id), str(outcome.error)))
                continue
            warn_if_truncated(outcome.value, self.page_size, f"items of {module.module_path}")
            for item in outcome.value:
                if isinstance(item, dict) and item.get('type') == 'File' and item.get('url'):
                    detail_tasks.append(((module, item), partial(self.client.fetch_one, item['url'])))

        files: List[File] = []
        for outcome in run_branches(detail_tasks, self.max_workers):
            module, item = outcome.key
            try:
                if outcome.failed:
                    raise outcome.error
                file = self._module_file(outcome.value, module, course)
            except RECOVERABLE_ERRORS as e:
                logger.error(f"Issue getting file '{item.get('title')}' in {module.module_path}: {e}")
                failures.append(FailedBranch(course.id, 'module', str(module.id), str(e)))
                continue
            if file is not None:
                files.append(file)

        return modules, files, failures

    def _module_file(self, record: Dict[str, Any], module: Module, course: Course) -> Optional[File]:
        if record.get('locked_for_user'):
            logger.debug(f"Skipping locked file {record.get('id')} in {module.module_path}")
            return None
        raw_name = require_field(record, 'filename', 'File', (str,))
        name = sanitize_name(unquote_plus(raw_name).replace('\\', ' '))
        return File.from_record(
            record,
            name=name,
            file_path=join_path(module.module_path, name),
            course_id=course.id,
            source='module',
        )
