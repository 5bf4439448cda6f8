#!/usr/bin/env python3
"""Reconciliation of freshly observed entities into persisted course state."""

import copy
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Iterable, Optional, Union

from .models import Course, Module, Folder, File, Conflict, Timestamp, parse_timestamp

logger = logging.getLogger(__name__)


Entity = Union[File, Folder]


@dataclass
class MergeResult:
    """Merged course plus what the merge did."""

    course: Course
    conflicts: List[Conflict] = field(default_factory=list)
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    stale: int = 0


class ReconciliationMerger:
    """Merges new and updated entities into a course, keyed by local path.

    The merger never mutates its input: it works on a copy of the course
    and returns it. Replaying the same batch yields the same course and
    records no duplicate conflicts.
    """

    def merge(self, existing_course: Course, files: Iterable[File] = (),
              folders: Iterable[Folder] = (),
              modules: Optional[Iterable[Module]] = None) -> MergeResult:
        """Merge a batch of entities into a course.

        For each incoming entity, the entity already stored at the same path
        is replaced in place (keeping local-only metadata) or, if there is
        none, the entity is appended. Incoming data strictly older than the
        stored entity is rejected and counted as stale.

        A path holds one remote id. An incoming entity whose id differs from
        the one stored at its path becomes a Conflict and the stored entity
        is left untouched, whether or not the batch itself collides. Within
        the batch, the first id to claim a new path wins and later ids become
        Conflicts. A stored entity whose path is contested in the batch is
        not updated until the conflict is resolved.

        Args:
            existing_course: Persisted course state
            files: Incoming files
            folders: Incoming folders
            modules: Replacement module list, or None to keep the current one

        Returns:
            MergeResult with the merged course and the conflicts of this batch
        """
        course = copy.deepcopy(existing_course)
        result = MergeResult(course=course)

        if modules is not None:
            course.modules = copy.deepcopy(list(modules))

        self._merge_entities(course.folders, list(folders), 'folder', result)
        self._merge_entities(course.files, list(files), 'file', result)
        self._record_conflicts(course, result.conflicts)

        logger.info(f"Merged into {course.name}: {result.added} added, {result.updated} updated, "
                    f"{result.unchanged} unchanged, {result.stale} stale, "
                    f"{len(result.conflicts)} conflicts")
        return result

    def _merge_entities(self, current: List[Entity], incoming: List[Entity],
                        kind: str, result: MergeResult) -> None:
        index = {entity.path: position for position, entity in enumerate(current)}
        stored_before = set(index)

        ids_by_path = defaultdict(set)
        for entity in incoming:
            ids_by_path[entity.path].add(entity.id)
        contested = {path for path, ids in ids_by_path.items() if len(ids) > 1}

        claimed = {}
        for entity in incoming:
            path = entity.path
            if path in stored_before:
                stored = current[index[path]]
                if entity.id != stored.id:
                    self._add_conflict(result, kind, entity, stored.id,
                                       "another entity is already stored at this path")
                    continue
                if path in contested:
                    # Left as stored until the conflict at this path is resolved
                    continue
                self._replace(current, index[path], entity, kind, result)
                continue

            if path in claimed and claimed[path] != entity.id:
                self._add_conflict(result, kind, entity, claimed[path],
                                   "name collides with another entity in the same listing")
                continue
            claimed[path] = entity.id

            position = index.get(path)
            if position is None:
                current.append(copy.deepcopy(entity))
                index[path] = len(current) - 1
                result.added += 1
                logger.debug(f"Added {kind}: {path}")
                continue

            self._replace(current, position, entity, kind, result)

    def _replace(self, current: List[Entity], position: int, incoming: Entity,
                 kind: str, result: MergeResult) -> None:
        stored = current[position]
        if (incoming.updated_at is not None and stored.updated_at is not None
                and incoming.updated_at < stored.updated_at):
            logger.warning(f"Ignoring stale {kind} data for {incoming.path}: "
                           f"{incoming.updated_at.isoformat()} is older than "
                           f"{stored.updated_at.isoformat()}")
            result.stale += 1
            return

        merged = copy.deepcopy(incoming)
        merged.sync = stored.sync
        if isinstance(merged, File):
            merged.last_synced = stored.last_synced

        if merged == stored:
            result.unchanged += 1
            return
        current[position] = merged
        result.updated += 1
        logger.debug(f"Updated {kind}: {incoming.path}")

    def _add_conflict(self, result: MergeResult, kind: str, entity: Entity,
                      existing_id, reason: str) -> None:
        conflict = Conflict(
            file_path=entity.path,
            kind=kind,
            existing_id=existing_id,
            incoming_id=entity.id,
            incoming=entity.to_dict(),
            reason=reason,
        )
        if any(known.key == conflict.key for known in result.conflicts):
            return
        logger.warning(f"Conflict at {entity.path}: {kind} {entity.id} vs {existing_id} ({reason})")
        result.conflicts.append(conflict)

    def _record_conflicts(self, course: Course, conflicts: List[Conflict]) -> None:
        known = {conflict.key for conflict in course.conflicts}
        for conflict in conflicts:
            if conflict.key not in known:
                course.conflicts.append(copy.deepcopy(conflict))
                known.add(conflict.key)

    def mark_synced(self, course: Course, file_path: str, when: Timestamp = None) -> Course:
        """Record that a file's bytes were written locally.

        Never moves ``last_synced`` backwards.

        Args:
            course: Course state
            file_path: Path of the downloaded file
            when: Time of the download (defaults to now)

        Returns:
            Updated copy of the course

        Raises:
            KeyError: If no file is stored at file_path
        """
        synced_at = parse_timestamp(when) or datetime.now(timezone.utc)
        course = copy.deepcopy(course)
        file = course.find_file(file_path)
        if file is None:
            raise KeyError(file_path)
        if file.last_synced is None or synced_at >= file.last_synced:
            file.last_synced = synced_at
        return course

    def resolve_conflict(self, course: Course, file_path: str,
                         accept_id: Optional[Union[int, str]] = None) -> Course:
        """Drop the recorded conflicts at a path once a user has dealt with them.

        By default the stored entity stays. With ``accept_id``, the incoming
        entity recorded under that id takes the path instead; it keeps the
        stored ``sync`` flag and starts with no ``last_synced``.

        Args:
            course: Course state
            file_path: Path of the conflicts
            accept_id: Incoming id of the recorded entity to keep, if any

        Returns:
            Updated copy of the course

        Raises:
            KeyError: If accept_id names no conflict at file_path
        """
        course = copy.deepcopy(course)
        if accept_id is not None:
            matches = [c for c in course.conflicts
                       if c.file_path == file_path and str(c.incoming_id) == str(accept_id)]
            if not matches:
                raise KeyError(f"{file_path} ({accept_id})")
            self._accept(course, matches[0])
        course.conflicts = [c for c in course.conflicts if c.file_path != file_path]
        return course

    def _accept(self, course: Course, conflict: Conflict) -> None:
        if conflict.kind == 'folder':
            current, accepted = course.folders, Folder.from_dict(conflict.incoming)
        else:
            current, accepted = course.files, File.from_dict(conflict.incoming)
            accepted.last_synced = None
        for position, stored in enumerate(current):
            if stored.path == conflict.file_path:
                accepted.sync = stored.sync
                current[position] = accepted
                break
        else:
            current.append(accepted)
        logger.info(f"Accepted {conflict.kind} {conflict.incoming_id} at {conflict.file_path}")
