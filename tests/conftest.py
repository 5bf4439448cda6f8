"""Shared fixtures for the Canvas Sync tests."""

import pytest

from canvas_sync.models import Course

from fakes import FakeFetcher, root_folder_record


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def course():
    """A course with both tabs and the root folder endpoints of course 1."""
    root = root_folder_record(1)
    return Course(
        id=1,
        name='Biology 101',
        has_modules_tab=True,
        has_files_tab=True,
        files_url=root['files_url'],
        folders_url=root['folders_url'],
    )


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    """Retries never sleep in tests."""
    monkeypatch.setattr('canvas_sync.canvas_client.time.sleep', lambda seconds: None)


@pytest.fixture
def keyring_store(monkeypatch):
    """In-memory replacement for the system keyring."""
    store = {}
    monkeypatch.setattr('canvas_sync.config.keyring.get_password',
                        lambda service, name: store.get((service, name)))
    monkeypatch.setattr('canvas_sync.config.keyring.set_password',
                        lambda service, name, value: store.__setitem__((service, name), value))
    return store
