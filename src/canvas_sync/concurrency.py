#!/usr/bin/env python3
"""Bounded fan-out over independent fetch branches."""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from .canvas_client import RECOVERABLE_ERRORS


DEFAULT_MAX_WORKERS = 8


@dataclass
class BranchOutcome:
    """Result of one branch: either a value or the error that ended it."""

    key: Any
    value: Any = None
    error: Optional[Exception] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def run_branches(tasks: List[Tuple[Any, Callable[[], Any]]],
                 max_workers: int = DEFAULT_MAX_WORKERS) -> List[BranchOutcome]:
    """Run independent branches on a bounded thread pool.

    Each branch only returns a value; nothing is merged until the caller
    walks the outcomes, which come back in submission order. Recoverable
    fetch errors end their own branch only. Any other exception (notably
    ``AuthInvalidError``) cancels the pending branches and is re-raised.

    Args:
        tasks: (key, callable) pairs
        max_workers: Ceiling on concurrent requests

    Returns:
        One BranchOutcome per task, in task order
    """
    if not tasks:
        return []

    if max_workers <= 1 or len(tasks) == 1:
        return [_run_inline(key, task) for key, task in tasks]

    outcomes = {}
    with ThreadPoolExecutor(max_workers=min(max_workers, len(tasks))) as executor:
        future_to_index = {
            executor.submit(task): index for index, (_key, task) in enumerate(tasks)
        }
        try:
            for future in as_completed(future_to_index):
                index = future_to_index[future]
                key = tasks[index][0]
                try:
                    outcomes[index] = BranchOutcome(key=key, value=future.result())
                except RECOVERABLE_ERRORS as e:
                    outcomes[index] = BranchOutcome(key=key, error=e)
        except Exception:
            for future in future_to_index:
                future.cancel()
            raise

    return [outcomes[index] for index in range(len(tasks))]


def _run_inline(key: Any, task: Callable[[], Any]) -> BranchOutcome:
    try:
        return BranchOutcome(key=key, value=task())
    except RECOVERABLE_ERRORS as e:
        return BranchOutcome(key=key, error=e)
