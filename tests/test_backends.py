#!/usr/bin/env python3
"""Tests for the JSON state backend."""

import json

from canvas_sync.backends import JsonStateBackend


def test_missing_file_gives_default_state(tmp_path):
    backend = JsonStateBackend(tmp_path / 'sync_state.json')
    assert backend.load() == {'courses': {}, 'last_synced': None}


def test_save_and_reload(tmp_path):
    state_file = tmp_path / 'nested' / 'sync_state.json'
    backend = JsonStateBackend(state_file)
    backend.set_course(1, {'id': 1, 'name': 'Biology 101'})
    backend.set_metadata('last_synced', '2024-01-10T12:00:00+00:00')
    backend.save(backend.load())

    reloaded = JsonStateBackend(state_file)
    assert reloaded.get_course('1') == {'id': 1, 'name': 'Biology 101'}
    assert reloaded.get_all_courses() == {'1': {'id': 1, 'name': 'Biology 101'}}
    assert reloaded.get_metadata('last_synced') == '2024-01-10T12:00:00+00:00'
    assert (state_file.stat().st_mode & 0o777) == 0o600
    assert not state_file.with_suffix('.json.tmp').exists()


def test_corrupted_file_resets_state(tmp_path):
    state_file = tmp_path / 'sync_state.json'
    state_file.write_text('{"courses": ')

    assert JsonStateBackend(state_file).load() == {'courses': {}, 'last_synced': None}


def test_missing_keys_are_filled_in(tmp_path):
    state_file = tmp_path / 'sync_state.json'
    state_file.write_text(json.dumps({'courses': {'1': {'id': 1}}}))

    state = JsonStateBackend(state_file).load()

    assert state['last_synced'] is None
    assert state['courses'] == {'1': {'id': 1}}


def test_non_object_state_resets(tmp_path):
    state_file = tmp_path / 'sync_state.json'
    state_file.write_text('[]')

    assert JsonStateBackend(state_file).load() == {'courses': {}, 'last_synced': None}


def test_close_drops_cached_state(tmp_path):
    state_file = tmp_path / 'sync_state.json'
    backend = JsonStateBackend(state_file)
    backend.load()
    state_file.write_text(json.dumps({'courses': {'2': {'id': 2}}, 'last_synced': None}))

    backend.close()

    assert backend.get_course('2') == {'id': 2}
