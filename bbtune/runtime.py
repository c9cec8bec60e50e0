"""Cancellation and chunked iteration for long-running analyses."""
from __future__ import annotations

import threading
from typing import Iterator, Optional, Tuple

from .errors import AnalysisCancelled

CHUNK_SIZE = 2000


class CancellationToken:
    """Thread-safe flag a host can set to abort an analysis in progress."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AnalysisCancelled("analysis cancelled by caller")


def check_cancelled(cancel: Optional[CancellationToken]) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()


def iter_chunks(
    n: int,
    chunk_size: int = CHUNK_SIZE,
    cancel: Optional[CancellationToken] = None,
) -> Iterator[Tuple[int, int]]:
    """Yield ``(start, stop)`` slices covering ``range(n)``.

    The cancellation token is checked before each chunk.
    """
    for start in range(0, n, chunk_size):
        check_cancelled(cancel)
        yield start, min(n, start + chunk_size)
