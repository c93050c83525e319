"""
Dependency graph between build targets and the keys they depend on.

Targets are artifact paths or page ids; keys are node ids or symbolic keys
such as ``nav``, ``docs``, ``theme:<name>`` and ``recs:<id>``.
"""

import threading
from typing import Dict, Iterable, Set


NAV = 'nav'
DOCS = 'docs'


def theme_key(name: str) -> str:
    return f'theme:{name}'


def recs_key(node_id: str) -> str:
    return f'recs:{node_id}'


class DependencyGraph:
    """Forward (target -> keys) and reverse (key -> targets) index."""

    def __init__(self):
        self._forward: Dict[str, Set[str]] = {}
        self._reverse: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def set(self, target: str, keys: Iterable[str]) -> None:
        """Replace every dependency of ``target``."""
        keys = set(keys)
        with self._lock:
            self._unlink(target)
            self._forward[target] = keys
            for key in keys:
                self._reverse.setdefault(key, set()).add(target)

    def remove(self, target: str) -> None:
        with self._lock:
            self._unlink(target)

    def _unlink(self, target):
        for key in self._forward.pop(target, ()):
            targets = self._reverse.get(key)
            if targets is None:
                continue
            targets.discard(target)
            if not targets:
                del self._reverse[key]

    def dependencies(self, target: str) -> Set[str]:
        with self._lock:
            return set(self._forward.get(target, ()))

    def dependents(self, keys: Iterable[str]) -> Set[str]:
        """Every target depending on at least one of ``keys``."""
        found = set()
        with self._lock:
            for key in keys:
                found |= self._reverse.get(key, set())
        return found

    def targets(self) -> Set[str]:
        with self._lock:
            return set(self._forward)

    def clear(self) -> None:
        with self._lock:
            self._forward.clear()
            self._reverse.clear()

    def __contains__(self, target):
        with self._lock:
            return target in self._forward

    def __len__(self):
        with self._lock:
            return len(self._forward)
