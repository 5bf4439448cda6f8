#!/usr/bin/env python3
"""Tests for incremental change detection."""

import os
from datetime import datetime, timedelta, timezone

import pytest

from canvas_sync.canvas_client import TransportError
from canvas_sync.course_map import CourseMapBuilder
from canvas_sync.differ import IncrementalDiffer, is_newer
from canvas_sync.models import Folder

from fakes import folder_record, file_record, module_record, file_item, API


T = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


def iso(moment):
    return moment.isoformat()


def make_differ(fetcher):
    return IncrementalDiffer(fetcher, CourseMapBuilder(fetcher))


@pytest.fixture
def files_only(course):
    course.has_modules_tab = False
    return course


def test_is_newer():
    assert is_newer(T, None)
    assert is_newer(T + timedelta(seconds=1), T)
    assert not is_newer(T, T)
    assert not is_newer(T - timedelta(seconds=1), T)
    assert not is_newer(None, T)


def test_folder_watermark_is_strict(fetcher, files_only):
    fetcher.pages['courses/1/folders'] = [
        folder_record(30, 'Week 2', updated_at=iso(T + timedelta(seconds=1))),
        folder_record(31, 'Week 1', updated_at=iso(T - timedelta(seconds=1))),
    ]

    result = make_differ(fetcher).diff(files_only, T)

    assert [folder.name for folder in result.folders] == ['Week 2']
    assert result.failures == []


def test_nested_folder_paths_come_from_full_name(fetcher, files_only):
    fetcher.pages['courses/1/folders'] = [
        folder_record(30, 'Lab: 1', full_name='course files/Labs/Lab: 1', updated_at=iso(T + timedelta(hours=1))),
        folder_record('r1', 'course files', full_name='course files', updated_at=iso(T + timedelta(hours=1))),
    ]

    result = make_differ(fetcher).diff(files_only, T)

    assert [folder.folder_path for folder in result.folders] == [os.path.join('Biology 101', 'Labs', 'Lab- 1')]


def test_unexpected_root_label_uses_raw_path(fetcher, files_only, caplog):
    fetcher.pages['courses/1/folders'] = [
        folder_record(30, 'Extra', full_name='unfiled/Extra', updated_at=iso(T + timedelta(hours=1))),
    ]

    result = make_differ(fetcher).diff(files_only, T)

    assert result.folders[0].folder_path == os.path.join('Biology 101', 'unfiled', 'Extra')
    assert 'does not start with root label' in caplog.text


def test_changed_files_in_root_known_and_new_folders(fetcher, files_only):
    labs = Folder(id=20, name='Labs', folder_path=os.path.join('Biology 101', 'Labs'),
                  files_url=f'{API}/folders/20/files', files_count=2)
    files_only.folders.append(labs)
    new_folder = folder_record(30, 'Week 2', updated_at=iso(T + timedelta(seconds=1)))
    fetcher.pages['courses/1/folders'] = [new_folder]
    fetcher.pages[files_only.files_url] = [file_record(1, 'syllabus.pdf', updated_at=iso(T + timedelta(days=1)))]
    fetcher.pages[labs.files_url] = [
        file_record(2, 'lab 2.pdf', updated_at=iso(T + timedelta(seconds=1))),
        file_record(3, 'lab 1.pdf', updated_at=iso(T - timedelta(seconds=1))),
    ]
    fetcher.pages[new_folder['files_url']] = [file_record(4, 'intro.pdf', updated_at=iso(T + timedelta(minutes=5)))]

    result = make_differ(fetcher).diff(files_only, T)

    assert sorted(file.file_path for file in result.files) == sorted([
        os.path.join('Biology 101', 'syllabus.pdf'),
        os.path.join('Biology 101', 'Labs', 'lab 2.pdf'),
        os.path.join('Biology 101', 'Week 2', 'intro.pdf'),
    ])


def test_no_watermark_means_everything_is_new(fetcher, files_only):
    fetcher.pages['courses/1/folders'] = [folder_record(30, 'Week 1', updated_at=iso(T - timedelta(days=300)))]
    fetcher.pages[files_only.files_url] = [file_record(1, 'old.pdf', updated_at=iso(T - timedelta(days=300)))]

    result = make_differ(fetcher).diff(files_only, None)

    assert len(result.folders) == 1
    assert len(result.files) == 1


def test_watermark_accepts_strings_and_epoch_ms(fetcher, files_only):
    fetcher.pages['courses/1/folders'] = [folder_record(30, 'Week 2', updated_at=iso(T + timedelta(seconds=1)))]
    differ = make_differ(fetcher)

    assert len(differ.diff(files_only, '2024-01-10T12:00:00Z').folders) == 1
    assert len(differ.diff(files_only, int(T.timestamp() * 1000)).folders) == 1


def test_failed_folder_listing(fetcher, files_only):
    fetcher.fail('courses/1/folders', TransportError('boom', 500))
    fetcher.pages[files_only.files_url] = [file_record(1, 'new.pdf', updated_at=iso(T + timedelta(hours=1)))]

    result = make_differ(fetcher).diff(files_only, T)

    assert result.folders == []
    assert [file.name for file in result.files] == ['new.pdf']
    assert [(f.kind, f.ref) for f in result.failures] == [('folders', '1')]


def test_malformed_folder_record_is_skipped(fetcher, files_only):
    bad = folder_record(30, 'Bad', updated_at=iso(T + timedelta(hours=1)))
    del bad['full_name']
    fetcher.pages['courses/1/folders'] = [bad, folder_record(31, 'Good', updated_at=iso(T + timedelta(hours=1)))]

    result = make_differ(fetcher).diff(files_only, T)

    assert [folder.name for folder in result.folders] == ['Good']
    assert [(f.kind, f.ref) for f in result.failures] == [('folder', '30')]


def test_modules_are_refetched_in_full(fetcher, course):
    module = module_record(3, 'Week 1')
    fetcher.pages['courses/1/modules'] = [module]
    fetcher.pages[module['items_url']] = [file_item(9)]
    fetcher.records[f'{API}/courses/1/files/9'] = file_record(9, 'old.pdf', updated_at=iso(T - timedelta(days=30)))

    result = make_differ(fetcher).diff(course, T)

    assert [m.id for m in result.modules] == [3]
    assert [file.name for file in result.files] == ['old.pdf']


def test_failed_module_list_keeps_modules(fetcher, course):
    fetcher.fail('courses/1/modules', TransportError('boom', 500))

    result = make_differ(fetcher).diff(course, T)

    assert result.modules is None
    assert ('modules', '1') in [(f.kind, f.ref) for f in result.failures]


def test_has_changes(fetcher, files_only):
    differ = make_differ(fetcher)

    fetcher.pages['courses/1/files'] = [file_record(1, 'a.pdf', updated_at=iso(T + timedelta(seconds=1)))]
    assert differ.has_changes(files_only, T)

    fetcher.pages['courses/1/files'] = [file_record(1, 'a.pdf', updated_at=iso(T))]
    assert not differ.has_changes(files_only, T)

    fetcher.pages['courses/1/files'] = []
    assert not differ.has_changes(files_only, T)

    fetcher.fail('courses/1/files', TransportError('boom', 500))
    assert differ.has_changes(files_only, T)
