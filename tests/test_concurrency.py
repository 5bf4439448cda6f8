#!/usr/bin/env python3
"""Tests for the bounded branch runner."""

import threading
import time

import pytest

from canvas_sync.canvas_client import NotFoundError, AuthInvalidError
from canvas_sync.concurrency import run_branches


def test_outcomes_follow_submission_order():
    def slow(value, delay):
        time.sleep(delay)
        return value

    tasks = [(n, lambda n=n: slow(n, 0.01 * (5 - n))) for n in range(5)]
    outcomes = run_branches(tasks, max_workers=5)

    assert [outcome.key for outcome in outcomes] == [0, 1, 2, 3, 4]
    assert [outcome.value for outcome in outcomes] == [0, 1, 2, 3, 4]


def test_recoverable_error_ends_only_its_branch():
    def missing():
        raise NotFoundError('gone', 404)

    outcomes = run_branches([('a', lambda: 1), ('b', missing), ('c', lambda: 3)], max_workers=2)

    assert [outcome.failed for outcome in outcomes] == [False, True, False]
    assert isinstance(outcomes[1].error, NotFoundError)
    assert outcomes[2].value == 3


def test_auth_error_is_raised():
    def rejected():
        raise AuthInvalidError('Invalid access token', 401)

    with pytest.raises(AuthInvalidError):
        run_branches([('a', lambda: 1), ('b', rejected)], max_workers=2)
    with pytest.raises(AuthInvalidError):
        run_branches([('b', rejected)], max_workers=8)


def test_worker_ceiling_is_respected():
    lock = threading.Lock()
    running = []
    peak = []

    def task():
        with lock:
            running.append(1)
            peak.append(len(running))
        time.sleep(0.02)
        with lock:
            running.pop()

    run_branches([(n, task) for n in range(10)], max_workers=3)

    assert max(peak) <= 3


def test_single_worker_runs_inline():
    outcomes = run_branches([(n, threading.current_thread) for n in range(3)], max_workers=1)
    assert all(outcome.value is threading.current_thread() for outcome in outcomes)


def test_no_tasks():
    assert run_branches([], max_workers=4) == []
