"""
Atomic publishing of compiled artifacts.

The output root is a symlink to one complete generation directory under
``<parent>/.<name>.generations/``. A publish stages the next generation
(hard-linking unchanged artifacts from the live one), writes a manifest and
swaps the symlink with a single ``os.replace``. Readers therefore see
either the old or the new generation, never a mix.
"""

import os
import json
import shutil
import hashlib
import logging
import posixpath
import threading
from typing import Dict, List, Optional, Tuple

from .errors import Issue, PublishIOError


MANIFEST_NAME = '.lfblog-manifest.json'
GENERATION_PREFIX = 'gen-'


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            digest.update(chunk)
    return digest.hexdigest()


def is_safe_path(path: str) -> bool:
    if not path or path.startswith('/') or '\\' in path:
        return False
    normalized = posixpath.normpath(path)
    return normalized == path and not normalized.startswith('..') and path != MANIFEST_NAME


class PublishPlan:
    """Artifacts to write, files to copy and paths to drop in the next generation."""

    def __init__(self):
        self.writes: Dict[str, Tuple[bytes, Optional[str]]] = {}
        self.copies: Dict[str, Tuple[str, Optional[str]]] = {}
        self.deletes = set()

    def write(self, path: str, data: bytes, node_id: Optional[str] = None) -> None:
        self.deletes.discard(path)
        self.copies.pop(path, None)
        self.writes[path] = (data, node_id)

    def copy(self, path: str, source_path: str, node_id: Optional[str] = None) -> None:
        self.deletes.discard(path)
        self.writes.pop(path, None)
        self.copies[path] = (source_path, node_id)

    def delete(self, path: str) -> None:
        self.writes.pop(path, None)
        self.copies.pop(path, None)
        self.deletes.add(path)

    def paths(self):
        return set(self.writes) | set(self.copies) | self.deletes

    def __bool__(self):
        return bool(self.writes or self.copies or self.deletes)

    def __repr__(self):
        return f"PublishPlan(writes={len(self.writes)}, copies={len(self.copies)}, deletes={len(self.deletes)})"


class PublishResult:
    def __init__(self, generation: int, published: bool = False):
        self.generation = generation
        self.published = published
        self.written = set()
        self.unchanged = set()
        self.deleted = set()
        self.failed = set()
        self.failures: List[Issue] = []

    def __repr__(self):
        return (f"PublishResult(generation={self.generation}, written={len(self.written)}, "
                f"deleted={len(self.deleted)}, failures={len(self.failures)})")


class Publisher:
    """Owns the output root and its generation directories."""

    def __init__(self, output_dir: str, keep_generations: int = 3):
        self.output_dir = os.path.abspath(output_dir)
        self.parent_dir = os.path.dirname(self.output_dir)
        self.name = os.path.basename(self.output_dir)
        self.generations_dir = os.path.join(self.parent_dir, f'.{self.name}.generations')
        self.keep_generations = max(2, keep_generations)
        self.logger = logging.getLogger('LFBlog.publisher')
        self._lock = threading.Lock()
        self._manifest = self._read_live_manifest()

    # Live generation

    def live_dir(self) -> Optional[str]:
        if not os.path.islink(self.output_dir):
            return None
        target = os.path.realpath(self.output_dir)
        return target if os.path.isdir(target) else None

    @property
    def generation(self) -> int:
        return self._manifest.get('generation', 0)

    def manifest(self) -> dict:
        with self._lock:
            return json.loads(json.dumps(self._manifest))

    def artifacts(self) -> Dict[str, dict]:
        with self._lock:
            return {path: dict(record) for path, record in self._manifest.get('artifacts', {}).items()}

    def read_artifact(self, path: str) -> Optional[bytes]:
        """Bytes of ``path`` in the live generation, or None when absent."""
        if not is_safe_path(path):
            return None
        live = self.live_dir()
        if live is None:
            return None
        try:
            with open(os.path.join(live, *path.split('/')), 'rb') as f:
                return f.read()
        except (IOError, OSError):
            return None

    def _read_live_manifest(self) -> dict:
        empty = {'generation': 0, 'artifacts': {}}
        live = self.live_dir()
        if live is None:
            return empty
        try:
            with open(os.path.join(live, MANIFEST_NAME), 'r', encoding='utf-8') as f:
                manifest = json.load(f)
        except (IOError, OSError, ValueError) as e:
            self.logger.warning(f"Ignoring unreadable manifest in {live}: {e}")
            return empty
        if not isinstance(manifest, dict) or not isinstance(manifest.get('artifacts'), dict):
            return empty
        return manifest

    # Publishing

    def publish(self, plan: PublishPlan) -> PublishResult:
        """
        Stage and swap in a new generation containing the previous
        artifacts updated by ``plan``. Raises PublishIOError(fatal=True) when
        the generation cannot be staged or swapped; the previous generation
        then stays live.
        """
        with self._lock:
            self._prepare_root()
            previous = self._manifest.get('artifacts', {})
            live = self.live_dir()
            generation = self._manifest.get('generation', 0) + 1
            result = PublishResult(generation)

            if not plan and live is not None:
                result.generation = generation - 1
                return result

            staging = os.path.join(self.generations_dir, f'{GENERATION_PREFIX}{generation:06d}')
            try:
                if os.path.lexists(staging):
                    shutil.rmtree(staging)
                os.makedirs(staging)
            except (IOError, OSError, PermissionError) as e:
                raise PublishIOError(f"Cannot create staging directory {staging}: {e}", fatal=True)

            try:
                artifacts = self._stage(plan, previous, live, staging, generation, result)
                manifest = {'generation': generation, 'artifacts': artifacts}
                with open(os.path.join(staging, MANIFEST_NAME), 'w', encoding='utf-8') as f:
                    json.dump(manifest, f, indent=2, sort_keys=True)
                self._swap(staging)
            except PublishIOError:
                shutil.rmtree(staging, ignore_errors=True)
                raise
            except (IOError, OSError, PermissionError) as e:
                shutil.rmtree(staging, ignore_errors=True)
                raise PublishIOError(f"Failed to publish generation {generation}: {e}", fatal=True)

            self._manifest = manifest
            result.published = True
            self.logger.info(f"Published generation {generation}: {len(result.written)} written, "
                             f"{len(result.deleted)} removed, {len(result.failures)} failed")
            self._prune(staging)
            return result

    def _prepare_root(self):
        if os.path.islink(self.output_dir):
            return
        if os.path.isdir(self.output_dir):
            try:
                entries = os.listdir(self.output_dir)
            except (IOError, OSError) as e:
                raise PublishIOError(f"Cannot inspect output directory {self.output_dir}: {e}", fatal=True)
            if entries:
                raise PublishIOError(
                    f"Output directory {self.output_dir} is not empty and not managed by lfblog; "
                    f"move it away or choose another output path", fatal=True)
            try:
                os.rmdir(self.output_dir)
            except (IOError, OSError) as e:
                raise PublishIOError(f"Cannot replace output directory {self.output_dir}: {e}", fatal=True)
        elif os.path.lexists(self.output_dir):
            raise PublishIOError(f"Output path {self.output_dir} exists and is not a directory", fatal=True)
        try:
            os.makedirs(self.generations_dir, exist_ok=True)
        except (IOError, OSError) as e:
            raise PublishIOError(f"Cannot create {self.generations_dir}: {e}", fatal=True)

    def _stage(self, plan, previous, live, staging, generation, result) -> Dict[str, dict]:
        artifacts = {}

        def carry_over(path):
            # Raises OSError: a retained artifact that cannot be staged is fatal.
            self._link_or_copy(os.path.join(live, *path.split('/')), self._target(staging, path))
            artifacts[path] = dict(previous[path])

        for path in sorted(previous):
            if path in plan.deletes:
                result.deleted.add(path)
            elif path not in plan.writes and path not in plan.copies and live is not None:
                carry_over(path)

        for path in sorted(plan.writes):
            data, node_id = plan.writes[path]
            old = previous.get(path)
            try:
                if not is_safe_path(path):
                    raise ValueError(f"unsafe artifact path {path!r}")
                digest = sha256_bytes(data)
                if old is not None and old.get('sha256') == digest and live is not None:
                    carry_over(path)
                    result.unchanged.add(path)
                    continue
                self._write_file(self._target(staging, path), data)
                artifacts[path] = {'sha256': digest, 'node': node_id, 'generation': generation}
                result.written.add(path)
            except (IOError, OSError, PermissionError, ValueError) as e:
                self._record_failure(result, path, node_id, e)
                if old is not None and live is not None:
                    carry_over(path)

        for path in sorted(plan.copies):
            source, node_id = plan.copies[path]
            old = previous.get(path)
            try:
                if not is_safe_path(path):
                    raise ValueError(f"unsafe artifact path {path!r}")
                digest = sha256_file(source)
                if old is not None and old.get('sha256') == digest and live is not None:
                    carry_over(path)
                    result.unchanged.add(path)
                    continue
                self._copy_file(source, self._target(staging, path))
                artifacts[path] = {'sha256': digest, 'node': node_id, 'generation': generation}
                result.written.add(path)
            except (IOError, OSError, PermissionError, ValueError) as e:
                self._record_failure(result, path, node_id, e)
                if old is not None and live is not None:
                    carry_over(path)

        return artifacts

    def _record_failure(self, result, path, node_id, error):
        result.failed.add(path)
        issue = PublishIOError(f"Failed to publish {path}: {error}", node_id).to_issue()
        self.logger.error(issue.message)
        result.failures.append(issue)

    @staticmethod
    def _target(staging, path):
        target = os.path.join(staging, *path.split('/'))
        os.makedirs(os.path.dirname(target), exist_ok=True)
        return target

    def _write_file(self, target: str, data: bytes) -> None:
        with open(target, 'wb') as f:
            f.write(data)

    def _copy_file(self, source: str, target: str) -> None:
        shutil.copy2(source, target)

    def _link_or_copy(self, source: str, target: str) -> None:
        try:
            os.link(source, target)
        except OSError:
            shutil.copy2(source, target)

    def _swap(self, staging: str) -> None:
        link_target = os.path.relpath(staging, self.parent_dir)
        temp_link = os.path.join(self.parent_dir, f'.{self.name}.swap-{os.getpid()}-{threading.get_ident()}')
        try:
            if os.path.lexists(temp_link):
                os.unlink(temp_link)
            os.symlink(link_target, temp_link)
            os.replace(temp_link, self.output_dir)
        except (IOError, OSError) as e:
            if os.path.lexists(temp_link):
                os.unlink(temp_link)
            raise PublishIOError(f"Failed to swap {self.output_dir} to {staging}: {e}", fatal=True)

    def _prune(self, live: str) -> None:
        try:
            names = sorted(name for name in os.listdir(self.generations_dir)
                           if name.startswith(GENERATION_PREFIX))
        except (IOError, OSError) as e:
            self.logger.warning(f"Cannot list generations in {self.generations_dir}: {e}")
            return
        stale = names[:-self.keep_generations]
        for name in stale:
            path = os.path.join(self.generations_dir, name)
            if os.path.realpath(path) == os.path.realpath(live):
                continue
            try:
                shutil.rmtree(path)
                self.logger.debug(f"Pruned generation {name}")
            except (IOError, OSError) as e:
                self.logger.warning(f"Failed to prune generation {path}: {e}")

    def generations(self) -> List[str]:
        if not os.path.isdir(self.generations_dir):
            return []
        return sorted(name for name in os.listdir(self.generations_dir) if name.startswith(GENERATION_PREFIX))
