#!/usr/bin/env python3
"""Folder tree discovery for a Canvas course."""

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import List, Dict, Any, Optional, Union

from .canvas_client import CanvasClient, DEFAULT_PAGE_SIZE
from .concurrency import run_branches, DEFAULT_MAX_WORKERS
from .models import Course, Folder, File, FailedBranch, require_field
from .path_utils import sanitize_name, join_path

logger = logging.getLogger(__name__)


@dataclass
class CrawlResult:
    """Folders and files discovered for one course."""

    folders: List[Folder] = field(default_factory=list)
    files: List[File] = field(default_factory=list)
    failures: List[FailedBranch] = field(default_factory=list)


def warn_if_truncated(records: List[Any], page_size: int, what: str) -> None:
    """Log when a single-page listing came back full and may be cut short."""
    if len(records) >= page_size:
        logger.warning(f"Listing of {what} returned a full page ({page_size}); "
                       f"entries beyond the first page are not discovered")

def build_folder(record: Dict[str, Any], base_path: str) -> Folder:
    """Create a Folder from a raw record, placed under base_path."""
    name = sanitize_name(require_field(record, 'name', 'Folder', (str,)))
    return Folder.from_record(record, name=name, folder_path=join_path(base_path, name))


def build_file(record: Dict[str, Any], base_path: str,
               course_id: Optional[Union[int, str]] = None,
               source: str = 'folder') -> File:
    """Create a File from a raw record, placed under base_path."""
    name = sanitize_name(require_field(record, 'display_name', 'File', (str,)))
    return File.from_record(
        record,
        name=name,
        file_path=join_path(base_path, name),
        course_id=course_id,
        source=source,
    )


class TreeCrawler:
    """Discovers the folder tree of a course and the files inside it.

    Folders are walked breadth-first, one level at a time; every folder of a
    level is fetched concurrently on a bounded pool. Each folder is fetched
    with a single page of ``page_size`` records, so a folder with more
    children than that is only partially discovered. A full page is logged
    so the gap is visible.
    """

    def __init__(self, client: CanvasClient, page_size: int = DEFAULT_PAGE_SIZE,
                 max_workers: int = DEFAULT_MAX_WORKERS):
        """Initialize crawler.

        Args:
            client: Paged fetcher for the Canvas API
            page_size: Records fetched per folder listing
            max_workers: Ceiling on concurrent requests
        """
        self.client = client
        self.page_size = page_size
        self.max_workers = max_workers

    def crawl(self, course: Course) -> CrawlResult:
        """Discover all folders of a course, then the files inside them.

        Args:
            course: Course with ``folders_url`` set

        Returns:
            CrawlResult with folders, folder files and failed branches
        """
        result = CrawlResult()
        if not course.folders_url:
            logger.debug(f"Course {course.name} has no folders endpoint, nothing to crawl")
            return result

        result.folders = self.discover_folders(course, result.failures)
        result.files = self.list_folder_files(result.folders, course.id, result.failures)

        logger.info(f"Crawled {course.name}: {len(result.folders)} folders, "
                    f"{len(result.files)} files, {len(result.failures)} failed branches")
        return result

    def discover_folders(self, course: Course, failures: List[FailedBranch]) -> List[Folder]:
        """Walk the folder tree below the course root.

        Args:
            course: Course to walk
            failures: Failed branches are appended here

        Returns:
            Every discovered folder, parents before children
        """
        discovered: List[Folder] = []
        visited = set()
        frontier = [(course.folders_url, course.name, 'root')]

        while frontier:
            tasks = [
                ((url, base_path, ref), partial(self._fetch_subfolders, url, base_path))
                for url, base_path, ref in frontier
            ]
            next_frontier = []
            for outcome in run_branches(tasks, self.max_workers):
                _url, base_path, ref = outcome.key
                if outcome.failed:
                    logger.error(f"Failed to list sub-folders of {base_path}: {outcome.error}")
                    failures.append(FailedBranch(course.id, 'folder', str(ref), str(outcome.error)))
                    continue

                for folder in outcome.value:
                    if folder.id in visited:
                        logger.debug(f"Skipping already visited folder {folder.id}")
                        continue
                    visited.add(folder.id)
                    discovered.append(folder)
                    if folder.folders_count > 0:
                        next_frontier.append((folder.folders_url, folder.folder_path, folder.id))
            frontier = next_frontier

        return discovered

    def _fetch_subfolders(self, folders_url: str, base_path: str) -> List[Folder]:
        records = self.client.fetch_page(folders_url, page_size=self.page_size)
        warn_if_truncated(records, self.page_size, f"sub-folders of {base_path}")
        return [build_folder(record, base_path) for record in records]

    def list_folder_files(self, folders: List[Folder], course_id: Optional[Union[int, str]],
                          failures: List[FailedBranch]) -> List[File]:
        """List files for every folder that reports any.

        Args:
            folders: Previously discovered folders
            course_id: Owning course
            failures: Failed branches are appended here

        Returns:
            Files of all folders whose listing succeeded
        """
        tasks = [
            (folder, partial(self.list_files, folder.files_url, folder.folder_path, course_id))
            for folder in folders if folder.files_count > 0
        ]
        files: List[File] = []
        for outcome in run_branches(tasks, self.max_workers):
            folder = outcome.key
            if outcome.failed:
                logger.error(f"Failed to list files of {folder.folder_path}: {outcome.error}")
                failures.append(FailedBranch(course_id, 'files', str(folder.id), str(outcome.error)))
                continue
            files.extend(outcome.value)
        return files

    def list_files(self, files_url: str, base_path: str,
                   course_id: Optional[Union[int, str]] = None,
                   source: str = 'folder') -> List[File]:
        """Fetch one page of files and place them under base_path."""
        records = self.client.fetch_page(files_url, page_size=self.page_size)
        warn_if_truncated(records, self.page_size, f"files of {base_path}")
        return [build_file(record, base_path, course_id, source) for record in records]
