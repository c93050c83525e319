"""
Coalescing queue of build triggers.

Notifications arriving while a pass is queued or running are merged into a
single pending Trigger, so a burst of file events costs one pass.
"""

import os
import time
import threading
from typing import Iterable, Optional, Set


class Trigger:
    """Everything that has to be reconsidered by the next pass."""

    def __init__(self, paths: Optional[Iterable[str]] = None, full: bool = False,
                 recommendations: Optional[Iterable[str]] = None, themes: bool = False):
        self.paths: Set[str] = set(paths or ())
        self.full = full
        self.recommendations: Set[str] = set(recommendations or ())
        self.themes = themes

    def merge(self, other: 'Trigger') -> None:
        self.paths |= other.paths
        self.full = self.full or other.full
        self.recommendations |= other.recommendations
        self.themes = self.themes or other.themes

    def __bool__(self):
        return bool(self.paths or self.full or self.recommendations or self.themes)

    def __repr__(self):
        return (f"Trigger(paths={len(self.paths)}, full={self.full}, "
                f"recommendations={len(self.recommendations)}, themes={self.themes})")


class TriggerQueue:
    """Thread-safe, bounded, coalescing trigger holder."""

    def __init__(self, max_pending_paths: int = 256):
        self.max_pending_paths = max_pending_paths
        self._pending = Trigger()
        self._last_event = 0.0
        self._closed = False
        self._cond = threading.Condition()

    def _add(self, trigger: Trigger) -> None:
        with self._cond:
            self._pending.merge(trigger)
            if len(self._pending.paths) > self.max_pending_paths:
                # Too many individual paths: one full rescan is cheaper.
                self._pending.paths.clear()
                self._pending.full = True
            self._last_event = time.monotonic()
            self._cond.notify_all()

    def put_path(self, path: str) -> None:
        self._add(Trigger(paths=[os.path.abspath(path)]))

    def put_full(self) -> None:
        self._add(Trigger(full=True))

    def put_recommendations(self, node_ids: Iterable[str]) -> None:
        node_ids = set(node_ids)
        if node_ids:
            self._add(Trigger(recommendations=node_ids))

    def put_themes(self) -> None:
        self._add(Trigger(themes=True))

    def pending(self) -> bool:
        with self._cond:
            return bool(self._pending)

    def size(self) -> int:
        """Number of pending items (paths, flags and recommendation ids)."""
        with self._cond:
            p = self._pending
            return len(p.paths) + len(p.recommendations) + int(p.full) + int(p.themes)

    def get(self, timeout: Optional[float] = None, debounce: float = 0.0) -> Optional[Trigger]:
        """
        Wait for a trigger and return everything pending merged into one.

        Once something is pending, waits until no new notification has
        arrived for ``debounce`` seconds. Returns None on timeout or close.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._pending and not self._closed:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)
            if self._closed and not self._pending:
                return None
            while debounce > 0 and not self._closed:
                quiet = time.monotonic() - self._last_event
                if quiet >= debounce:
                    break
                self._cond.wait(debounce - quiet)
            trigger, self._pending = self._pending, Trigger()
            return trigger

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed
