#!/usr/bin/env python3
"""Tests for complete sync runs against a fake Canvas."""

import json
import os
from datetime import datetime, timedelta, timezone

import pytest

from canvas_sync.backends import JsonStateBackend
from canvas_sync.canvas_client import AuthInvalidError, TransportError
from canvas_sync.engine import SyncEngine

from fakes import API, folder_record, file_record, file_item, module_record, serve_course


OLD = '2024-01-10T12:00:00Z'


def future(days=1):
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


@pytest.fixture
def state_file(tmp_path):
    return tmp_path / 'config' / 'sync_state.json'


@pytest.fixture
def sync_dir(tmp_path):
    path = tmp_path / 'Canvas'
    path.mkdir()
    return path


@pytest.fixture
def canvas(fetcher):
    """One files-only course: a Labs folder with one file and one file at the root."""
    root = serve_course(fetcher, tabs=('files',))
    labs = folder_record(20, 'Labs', full_name='course files/Labs', files_count=1, updated_at=OLD)
    fetcher.pages[root['folders_url']] = [labs]
    fetcher.pages['courses/1/folders'] = [labs, dict(root)]
    fetcher.pages[labs['files_url']] = [file_record(21, 'lab.pdf', updated_at=OLD)]
    fetcher.pages[root['files_url']] = [file_record(22, 'syllabus.pdf', updated_at=OLD)]
    fetcher.pages['courses/1/files'] = [file_record(21, 'lab.pdf', updated_at=OLD)]
    return fetcher


def make_engine(fetcher, state_file, sync_dir=None):
    return SyncEngine(fetcher, JsonStateBackend(state_file), sync_directory=sync_dir, max_workers=4)


def load_state(state_file):
    return json.loads(state_file.read_text())


def test_first_sync_builds_course_map(canvas, state_file):
    report = make_engine(canvas, state_file).sync()

    assert report.completed and report.ok
    assert report.added == 3
    state = load_state(state_file)
    course = state['courses']['1']
    assert sorted(f['file_path'] for f in course['files']) == sorted([
        os.path.join('Biology 101', 'Labs', 'lab.pdf'),
        os.path.join('Biology 101', 'syllabus.pdf'),
    ])
    assert [f['folder_path'] for f in course['folders']] == [os.path.join('Biology 101', 'Labs')]
    assert state['last_synced'] is not None
    assert (state_file.stat().st_mode & 0o777) == 0o600


def test_unchanged_course_is_skipped_without_diff(canvas, state_file):
    make_engine(canvas, state_file).sync()
    canvas.calls.clear()

    report = make_engine(canvas, state_file).sync()

    assert report.ok
    assert report.added == 0
    assert 'courses/1/files' in canvas.calls
    assert 'courses/1/folders' not in canvas.calls


def test_warm_sync_merges_new_and_updated_files(canvas, state_file):
    make_engine(canvas, state_file).sync()
    root_files = canvas.records['courses/1/folders/root']['files_url']
    canvas.pages[root_files] = [
        file_record(23, 'week 2.pdf', updated_at=future()),
        file_record(22, 'syllabus.pdf', updated_at=future(), size=4096),
    ]
    canvas.pages['courses/1/files'] = [file_record(23, 'week 2.pdf', updated_at=future())]

    report = make_engine(canvas, state_file).sync()

    assert (report.added, report.updated) == (1, 1)
    files = {f['file_path']: f for f in load_state(state_file)['courses']['1']['files']}
    assert files[os.path.join('Biology 101', 'syllabus.pdf')]['size'] == 4096
    assert os.path.join('Biology 101', 'week 2.pdf') in files


def test_failed_branch_keeps_watermark(canvas, state_file):
    canvas.fail(canvas.pages['courses/1/folders'][0]['files_url'], TransportError('boom', 500))

    report = make_engine(canvas, state_file).sync()

    assert report.completed and not report.ok
    assert [(f.kind, f.ref) for f in report.failures] == [('files', '20')]
    state = load_state(state_file)
    assert state['last_synced'] is None
    assert [f['name'] for f in state['courses']['1']['files']] == ['syllabus.pdf']


def test_auth_error_aborts_without_saving(canvas, state_file):
    canvas.fail('courses/1/tabs', AuthInvalidError('Invalid access token', 401))

    with pytest.raises(AuthInvalidError):
        make_engine(canvas, state_file).sync()

    assert not state_file.exists()


def test_course_listing_failure_is_reported(canvas, state_file):
    canvas.fail('users/self/courses', TransportError('down', 503))

    report = make_engine(canvas, state_file).sync()

    assert not report.completed
    assert [(f.kind, f.ref) for f in report.failures] == [('course', 'all')]
    assert not state_file.exists()


def test_download_writes_files_and_marks_them_synced(canvas, state_file, sync_dir):
    report = make_engine(canvas, state_file, sync_dir).sync(download=True)

    assert report.downloaded == 2
    assert (sync_dir / 'Biology 101' / 'Labs' / 'lab.pdf').exists()
    assert (sync_dir / 'Biology 101' / 'syllabus.pdf').exists()
    files = load_state(state_file)['courses']['1']['files']
    assert all(f['last_synced'] for f in files)

    canvas.downloads.clear()
    again = make_engine(canvas, state_file, sync_dir).sync(download=True)
    assert again.downloaded == 0
    assert canvas.downloads == []


def test_failed_download_does_not_hold_back_watermark(canvas, state_file, sync_dir):
    canvas.fail('https://canvas.test/files/21/download', TransportError('reset', 500))

    report = make_engine(canvas, state_file, sync_dir).sync(download=True)

    assert report.downloaded == 1
    assert [(f.kind, f.ref) for f in report.failures] == [
        ('download', os.path.join('Biology 101', 'Labs', 'lab.pdf'))
    ]
    assert load_state(state_file)['last_synced'] is not None


def test_courses_not_selected_for_sync_are_left_alone(canvas, state_file):
    make_engine(canvas, state_file).sync()
    state = load_state(state_file)
    state['courses']['1']['sync'] = False
    state_file.write_text(json.dumps(state))
    canvas.calls.clear()

    make_engine(canvas, state_file).sync()

    assert 'courses/1/files' not in canvas.calls
    assert load_state(state_file)['courses']['1']['sync'] is False


def test_conflicts_are_reported_and_persisted(canvas, state_file):
    root_files = canvas.records['courses/1/folders/root']['files_url']
    canvas.pages[root_files] = [
        file_record(30, 'Syllabus', updated_at=OLD),
        file_record(31, 'Syllabus | Fall', updated_at=OLD),
    ]

    report = make_engine(canvas, state_file).sync()

    assert [(c.existing_id, c.incoming_id) for c in report.conflicts] == [(30, 31)]
    assert len(load_state(state_file)['courses']['1']['conflicts']) == 1


def test_module_file_at_stored_folder_file_path_is_a_conflict(fetcher, state_file, sync_dir):
    root = serve_course(fetcher)
    week = folder_record(20, 'Week 1', files_count=1, updated_at=OLD)
    fetcher.pages[root['folders_url']] = [week]
    fetcher.pages['courses/1/folders'] = [week, dict(root)]
    fetcher.pages[week['files_url']] = [file_record(21, 'notes.pdf', updated_at=OLD)]
    make_engine(fetcher, state_file, sync_dir).sync(download=True)
    notes = sync_dir / 'Biology 101' / 'Week 1' / 'notes.pdf'
    notes.write_bytes(b'local copy')

    module = module_record(5, 'Week 1')
    fetcher.pages['courses/1/modules'] = [module]
    fetcher.pages[module['items_url']] = [file_item(99, 'notes')]
    fetcher.records[f'{API}/courses/1/files/99'] = file_record(99, 'notes.pdf', updated_at=future())

    report = make_engine(fetcher, state_file, sync_dir).sync(download=True)

    assert [(c.existing_id, c.incoming_id) for c in report.conflicts] == [(21, 99)]
    assert (report.updated, report.downloaded) == (0, 0)
    course = load_state(state_file)['courses']['1']
    assert [(f['id'], f['source']) for f in course['files']] == [(21, 'folder')]
    assert len(course['conflicts']) == 1
    assert notes.read_bytes() == b'local copy'

    again = make_engine(fetcher, state_file, sync_dir).sync(download=True)
    assert [c.incoming_id for c in again.conflicts] == [99]
    assert len(load_state(state_file)['courses']['1']['conflicts']) == 1


def test_incomplete_first_build_is_listed_again_after_watermark(canvas, state_file):
    make_engine(canvas, state_file).sync()

    root = serve_course(canvas, course_id=2, name='Chem', tabs=('files',))
    labs = folder_record(40, 'Labs', files_count=1, updated_at=OLD)
    canvas.pages[root['folders_url']] = [labs]
    canvas.pages['courses/2/folders'] = [labs, dict(root)]
    canvas.pages[labs['files_url']] = [file_record(41, 'lab.pdf', updated_at=OLD)]
    canvas.pages['courses/2/files'] = [file_record(41, 'lab.pdf', updated_at=OLD)]
    canvas.fail(labs['files_url'], TransportError('boom', 500))

    report = make_engine(canvas, state_file).sync()

    assert [(f.course_id, f.kind, f.ref) for f in report.failures] == [(2, 'files', '40')]
    state = load_state(state_file)
    assert state['courses']['2']['files'] == []
    assert state['courses']['2']['synced_at'] is None
    assert state['courses']['1']['synced_at'] is not None

    del canvas.failures[labs['files_url']]
    recovered = make_engine(canvas, state_file).sync()

    assert recovered.ok
    course = load_state(state_file)['courses']['2']
    assert [f['file_path'] for f in course['files']] == [os.path.join('Chem', 'Labs', 'lab.pdf')]
    assert course['synced_at'] is not None


def test_failed_diff_keeps_course_watermark(canvas, state_file):
    make_engine(canvas, state_file).sync()
    first = load_state(state_file)['courses']['1']['synced_at']
    canvas.pages['courses/1/files'] = [file_record(21, 'lab.pdf', updated_at=future())]
    canvas.fail('courses/1/folders', TransportError('boom', 500))

    report = make_engine(canvas, state_file).sync()

    assert [(f.kind, f.ref) for f in report.failures] == [('folders', '1')]
    assert load_state(state_file)['courses']['1']['synced_at'] == first
