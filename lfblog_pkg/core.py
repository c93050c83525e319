"""
Build orchestration for LF Blog.

A single BuildOrchestrator owns the content tree, the parsed Documents,
the records of published artifacts and the recommendation store. Passes run
one at a time: scan, parse, render, publish. Change notifications arriving
meanwhile are coalesced in the TriggerQueue and handled by the next pass.
"""

import os
import time
import logging
import calendar
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import formatdate
from enum import Enum
from typing import Dict, List, Optional, Set
from xml.sax.saxutils import escape

from .document import DocumentParser
from .errors import (BuildError, Issue, PublishIOError, RecommenderError, SourceReadError,
                     TemplateError, ThemeError, ERROR)
from .graph import DependencyGraph, NAV, DOCS, theme_key, recs_key
from .links import LinkIndex
from .publisher import Publisher, PublishPlan, sha256_bytes, sha256_file
from .recommender import RecommendationStore, Recommender
from .renderer import PageRenderer, SiteContext, resolve_theme_name
from .scanner import Scanner, ScanDelta, is_within
from .settings import normalize_settings
from .theme import ThemeManager
from .triggers import Trigger, TriggerQueue


ROBOTS = 'robots'
PAGE = 'page'
CATEGORY = 'category'
INDEX = 'index'
NOT_FOUND = 'not-found'
SITEMAP = 'sitemap'
FEED = 'feed'
ASSET = 'asset'
ATTACHMENT = 'attachment'

FEED_SIZE = 20


class BuildState(Enum):
    IDLE = 'idle'
    QUEUED = 'queued'
    SCANNING = 'scanning'
    PARSING = 'parsing'
    RENDERING = 'rendering'
    PUBLISHING = 'publishing'


class InfoFilter(logging.Filter):
    """Filter to allow only build milestones to be shown in the console."""
    def filter(self, record):
        if record.levelno >= logging.WARNING:
            return True
        allowed_messages = [
            "Build pass completed in",
            "Pages parsed:",
            "Artifacts rendered:",
            "Published generation",
            "Starting full build",
            "Loaded configuration from",
            "Settings reloaded",
            "Theme files changed",
            "Watching for changes",
            "Stopped watching",
        ]
        return any(msg in record.getMessage() for msg in allowed_messages)


def setup_logging(log_dir: Optional[str] = None) -> logging.Logger:
    """Attach console (and optionally file) handlers to the LFBlog logger once."""
    logger = logging.getLogger('LFBlog')
    logger.setLevel(logging.DEBUG if log_dir else logging.INFO)

    if not logger.handlers:
        # Console handler with filter
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.INFO)
        console_handler.addFilter(InfoFilter())
        console_handler.setFormatter(logging.Formatter('%(message)s'))
        logger.addHandler(console_handler)

        if log_dir:
            # File handler for all logs
            os.makedirs(log_dir, exist_ok=True)
            log_filename = datetime.now().strftime('lfblog_%Y-%m-%d_%H-%M-%S.log')
            file_handler = logging.FileHandler(os.path.join(log_dir, log_filename))
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
            logger.addHandler(file_handler)
    return logger


class ArtifactRecord:
    """What is known about one published artifact."""

    __slots__ = ('path', 'kind', 'node_id', 'sha256', 'theme')

    def __init__(self, path, kind, node_id, sha256, theme=None):
        self.path = path
        self.kind = kind
        self.node_id = node_id
        self.sha256 = sha256
        self.theme = theme

    def __repr__(self):
        return f"ArtifactRecord({self.kind} {self.path!r})"


class PassResult:
    """Summary of one compilation pass."""

    def __init__(self, full: bool = False):
        self.full = full
        self.delta = ScanDelta()
        self.parsed: Set[str] = set()
        self.rendered: Set[str] = set()
        self.written: Set[str] = set()
        self.deleted: Set[str] = set()
        self.issues: List[Issue] = []
        self.generation = 0
        self.published = False
        self.error: Optional[str] = None
        self.duration = 0.0

    @property
    def errors(self) -> List[Issue]:
        return [issue for issue in self.issues if issue.is_error]

    @property
    def warnings(self) -> List[Issue]:
        return [issue for issue in self.issues if not issue.is_error]

    def as_dict(self):
        return {
            'full': self.full,
            'added': sorted(self.delta.added),
            'modified': sorted(self.delta.modified),
            'removed': sorted(self.delta.removed),
            'parsed': sorted(self.parsed),
            'rendered': sorted(self.rendered),
            'written': sorted(self.written),
            'deleted': sorted(self.deleted),
            'generation': self.generation,
            'published': self.published,
            'error': self.error,
            'issues': [issue.as_dict() for issue in self.issues],
            'duration': round(self.duration, 3),
        }

    def __repr__(self):
        return (f"PassResult(generation={self.generation}, parsed={len(self.parsed)}, "
                f"written={len(self.written)}, deleted={len(self.deleted)}, error={self.error!r})")


@dataclass
class BuildStatus:
    state: BuildState
    generation: int
    queued: bool
    last_error: Optional[str]
    node_errors: Dict[str, str] = field(default_factory=dict)
    warnings: Dict[str, List[str]] = field(default_factory=dict)
    recommendation_generation: int = 0
    last_result: Optional[PassResult] = None

    def as_dict(self):
        return {
            'state': self.state.value,
            'generation': self.generation,
            'queued': self.queued,
            'last_error': self.last_error,
            'node_errors': dict(self.node_errors),
            'warnings': {node: list(messages) for node, messages in self.warnings.items()},
            'recommendation_generation': self.recommendation_generation,
            'last_result': self.last_result.as_dict() if self.last_result else None,
        }


class _Target:
    __slots__ = ('path', 'kind', 'node_id')

    def __init__(self, path, kind, node_id=None):
        self.path = path
        self.kind = kind
        self.node_id = node_id


class BuildOrchestrator:
    """Owns all build state; every mutation goes through a compilation pass."""

    def __init__(self, settings: dict):
        self.settings = normalize_settings(settings)
        self.logger = logging.getLogger('LFBlog.core')
        self.queue = TriggerQueue(self.settings['max_pending_paths'])
        self.store = RecommendationStore()

        self._tree = None
        self._documents = {}
        self._records: Dict[str, ArtifactRecord] = {}
        self._artifact_deps = DependencyGraph()
        self._link_deps = DependencyGraph()
        self._retry: Set[str] = set()
        self._scan_issues: Dict[str, List[Issue]] = {}
        self._node_issues: Dict[str, List[Issue]] = {}
        self._rec_issues: List[Issue] = []
        self._documents_view = {}
        self._issues_view: Dict[str, List[Issue]] = {}
        self._missing_themes: Set[str] = set()
        self._pending: Dict[str, ArtifactRecord] = {}
        self._asset_paths: Set[str] = set()
        self._attachment_paths: Set[str] = set()
        self._last_result = None
        self._last_error = None

        self._state = BuildState.IDLE
        self._state_lock = threading.Lock()
        self._build_lock = threading.RLock()
        self._rec_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='lfblog-recommender')
        self._rec_future = None
        self._rec_rebuild = True
        self._reparse_all = False
        self._worker = None
        self._stop = threading.Event()

        self._configure()

    def _configure(self):
        s = self.settings
        self.content_dir = os.path.abspath(s['content'])
        self.themes_dir = os.path.abspath(s['themes'])
        self.scanner = Scanner(self.content_dir, s['hash_mode'])
        self.parser = DocumentParser(s['summary_length'])
        self.theme_manager = ThemeManager(self.themes_dir)
        self.renderer = PageRenderer(self.theme_manager, s['theme'])
        self.recommender = Recommender(s['recommend_k'], s['tag_weight'], s['term_weight'],
                                       s['excluded_categories'], s['category_weight'])
        self.publisher = Publisher(s['output'], s['keep_generations'])

    # Public surface

    @property
    def state(self) -> BuildState:
        with self._state_lock:
            state = self._state
        if state is BuildState.IDLE and self.queue.pending():
            return BuildState.QUEUED
        return state

    def _set_state(self, state: BuildState) -> None:
        with self._state_lock:
            self._state = state
        self.logger.debug(f"State: {state.value}")

    def notify(self, path: str, kind: str = 'modified') -> bool:
        """
        Feed a filesystem change into the trigger queue. Returns False when
        the path is outside the content and themes directories.
        """
        abs_path = os.path.abspath(path)
        if abs_path == self.content_dir or abs_path.startswith(self.content_dir + os.sep):
            self.logger.debug(f"Change notification ({kind}): {abs_path}")
            self.queue.put_path(abs_path)
            return True
        if abs_path == self.themes_dir or abs_path.startswith(self.themes_dir + os.sep):
            self.logger.debug(f"Theme change notification ({kind}): {abs_path}")
            self.queue.put_themes()
            return True
        return False

    def request_compile(self) -> None:
        """Manual "recompile now": a full rescan on the next pass."""
        self.queue.put_full()

    def status(self) -> BuildStatus:
        node_errors = {}
        warnings = {}
        for node_id, issues in sorted(self._all_issues().items()):
            errors = [issue.message for issue in issues if issue.is_error]
            if errors:
                node_errors[node_id] = errors[-1]
            messages = [issue.message for issue in issues if not issue.is_error]
            if messages:
                warnings[node_id] = messages
        return BuildStatus(
            state=self.state,
            generation=self.publisher.generation,
            queued=self.queue.pending(),
            last_error=self._last_error,
            node_errors=node_errors,
            warnings=warnings,
            recommendation_generation=self.store.generation,
            last_result=self._last_result,
        )

    def content_tree(self):
        return self._tree

    def documents(self) -> dict:
        """Documents as of the last finished parse stage."""
        return dict(self._documents_view)

    def artifact(self, path: str) -> Optional[bytes]:
        return self.publisher.read_artifact(path.lstrip('/'))

    def recommendations(self, node_id: str):
        return self.store.recommendations(node_id)

    def reload_settings(self, settings: dict) -> None:
        """Apply new settings; the next pass rescans and re-renders everything."""
        with self._build_lock:
            self.settings = normalize_settings(settings)
            self.queue.max_pending_paths = self.settings['max_pending_paths']
            self._configure()
            self._reparse_all = True
            self._rec_rebuild = True
        self.logger.info("Settings reloaded; scheduling full rebuild")
        self.queue.put_full()

    # Synchronous and background driving

    def build(self, full: bool = False) -> Optional[PassResult]:
        """
        Run passes until nothing is pending, including the re-render passes
        caused by recommendation updates. Returns the last pass result.
        """
        if full or self._tree is None:
            self.queue.put_full()
        while True:
            trigger = self.queue.get(timeout=0)
            if trigger:
                self.run_pass(trigger)
                continue
            future = self._rec_future
            if future is not None and not future.done():
                future.result()
                continue
            break
        return self._last_result

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._worker_loop, name='lfblog-build', daemon=True)
        self._worker.start()

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        self._stop.set()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None
        future = self._rec_future
        if future is not None:
            future.result(timeout)

    def close(self) -> None:
        self.stop()
        self.queue.close()
        self._rec_executor.shutdown(wait=True)

    def _worker_loop(self):
        while not self._stop.is_set():
            trigger = self.queue.get(timeout=0.2, debounce=self.settings['debounce'])
            if not trigger:
                continue
            try:
                self.run_pass(trigger)
            except Exception as e:
                self._last_error = f"Build pass failed: {e}"
                self.logger.exception(self._last_error)
                self._set_state(BuildState.IDLE)

    # One pass

    def run_pass(self, trigger: Trigger) -> PassResult:
        with self._build_lock:
            start_time = time.time()
            full = trigger.full or self._tree is None
            result = PassResult(full)
            if full:
                self.logger.info("Starting full build")
            try:
                self._run_pass(trigger, result)
            finally:
                self._publish_snapshot()
                result.duration = time.time() - start_time
                self._last_result = result
                self._set_state(BuildState.IDLE)
            self.logger.info(f"Build pass completed in {result.duration:.2f} seconds "
                             f"(generation {result.generation})")
            return result

    def _run_pass(self, trigger: Trigger, result: PassResult) -> None:
        old_tree = self._tree
        theme_names = self.theme_manager.begin_generation()
        if trigger.themes and self._missing_themes:
            theme_names |= self._missing_themes
            self._missing_themes = set()
        changed_themes = {theme_key(name) for name in theme_names}

        # Scanning
        self._set_state(BuildState.SCANNING)
        try:
            if result.full:
                scan = self.scanner.scan(previous=old_tree)
            elif trigger.paths:
                scan = self.scanner.rescan(old_tree, sorted(trigger.paths))
            else:
                scan = None
        except SourceReadError as e:
            result.error = self._last_error = str(e)
            result.issues.append(e.to_issue())
            result.generation = self.publisher.generation
            self.logger.error(f"Scan failed: {e}")
            return

        tree = scan.tree if scan else old_tree
        delta = scan.delta if scan else ScanDelta()
        result.delta = delta
        if scan is not None:
            self._replace_scan_issues(scan)
            result.issues.extend(scan.issues)
        self._tree = tree
        link_index = LinkIndex.from_tree(self.content_dir, tree)

        old_nodes = {node.id: node for node in old_tree.walk()} if old_tree else {}
        url_changed = {
            node.id for node in tree.walk()
            if node.id in old_nodes and old_nodes[node.id].url != node.url
        }
        changed_keys = set()
        old_link_index = LinkIndex(self.content_dir)
        for node_id in delta.removed:
            changed_keys |= old_link_index.keys_for(old_nodes[node_id])
        for node_id in delta.added | url_changed:
            changed_keys |= link_index.keys_for(tree.get(node_id))

        # Parsing
        self._set_state(BuildState.PARSING)
        pages = {node.id for node in tree.pages()}
        if self._reparse_all or result.full and not self._documents:
            to_parse = set(pages)
        else:
            to_parse = {node_id for node_id in delta.added | delta.modified if node_id in pages}
            to_parse |= self._link_deps.dependents(changed_keys) & pages
            to_parse |= pages - set(self._documents) - self._failed_nodes()
        if result.full:
            to_parse |= pages - set(self._documents)
        self._reparse_all = False

        dirty_keys = set(delta.changed) | url_changed | changed_themes
        dirty_keys |= {recs_key(node_id) for node_id in trigger.recommendations}
        if delta.structural or url_changed or any(
                tree.get(node_id) is not None and tree.get(node_id).is_category for node_id in delta.modified):
            dirty_keys.add(NAV)

        rec_changed = set()
        listing_changed = False
        # An id can survive a rescan as a different kind (bundle -> category).
        stale = set(delta.removed) | {node_id for node_id in self._documents if node_id not in pages}
        for node_id in sorted(stale):
            if self._documents.pop(node_id, None) is not None:
                rec_changed.add(node_id)
                listing_changed = True
            self._link_deps.remove(node_id)
            self._node_issues.pop(node_id, None)

        parsed = self._parse(sorted(to_parse), tree, link_index)
        result.parsed = set(parsed)
        for node_id, (document, issues) in parsed.items():
            self._node_issues[node_id] = issues
            result.issues.extend(issues)
            if document is None:
                continue
            old = self._documents.get(node_id)
            self._documents[node_id] = document
            link_keys = set()
            for target in document.outbound_links:
                link_keys.add(target)
                if not target.endswith('.md'):
                    link_keys.add(target + '.md')
            self._link_deps.set(node_id, link_keys)
            if old is None or old.source_hash != document.source_hash or old.terms != document.terms:
                rec_changed.add(node_id)
            if not document.same_output(old):
                dirty_keys.add(node_id)
                listing_changed = True
        rec_changed |= url_changed & pages
        if listing_changed or delta.structural:
            dirty_keys.add(DOCS)
        self._publish_snapshot()
        self.logger.info(f"Pages parsed: {len(parsed)}")

        # Rendering
        self._set_state(BuildState.RENDERING)
        plan = PublishPlan()
        rendered = self._render(tree, dirty_keys, result, plan)
        result.rendered = set(rendered)

        # Publishing
        self._set_state(BuildState.PUBLISHING)
        if plan:
            try:
                published = self.publisher.publish(plan)
            except PublishIOError as e:
                result.error = self._last_error = str(e)
                result.issues.append(e.to_issue())
                self._retry |= plan.paths()
                self.logger.error(f"Publishing aborted, previous generation stays live: {e}")
            else:
                self._apply_publish(plan, published, result)
                self._last_error = None
        else:
            self._last_error = None
        result.generation = self.publisher.generation

        if rec_changed or self._rec_rebuild:
            self._schedule_recommendations(tree, rec_changed)

    def _failed_nodes(self) -> Set[str]:
        return {node_id for node_id, issues in self._node_issues.items()
                if any(issue.is_error for issue in issues)}

    def _replace_scan_issues(self, scan) -> None:
        for node_id in list(self._scan_issues):
            if any(is_within(node_id or '', scope) for scope in scan.scopes):
                del self._scan_issues[node_id]
        for issue in scan.issues:
            self._scan_issues.setdefault(issue.node_id or '', []).append(issue)

    def _note_issue(self, node_id, issue) -> None:
        """Keep only the most recent issue of each kind per node."""
        if node_id is None:
            return
        issues = [i for i in self._node_issues.get(node_id, []) if i.kind != issue.kind]
        self._node_issues[node_id] = issues + [issue]

    def _clear_issues(self, node_id, kind) -> None:
        if node_id is None or node_id not in self._node_issues:
            return
        self._node_issues[node_id] = [i for i in self._node_issues[node_id] if i.kind != kind]

    def _publish_snapshot(self) -> None:
        """Copy documents and issues for readers outside the build thread."""
        issues = {}
        for source in (self._scan_issues, self._node_issues):
            for node_id, node_issues in source.items():
                if node_issues:
                    issues.setdefault(node_id, []).extend(node_issues)
        self._issues_view = issues
        self._documents_view = dict(self._documents)

    def _all_issues(self) -> Dict[str, List[Issue]]:
        merged = {node_id: list(issues) for node_id, issues in self._issues_view.items()}
        rec_issues = self._rec_issues
        if rec_issues:
            merged.setdefault('', []).extend(rec_issues)
        return merged

    # Parallel stages

    def _run_tasks(self, fn, items, label):
        """Run ``fn`` over ``items``; threads only above the parallel threshold."""
        results = {}
        workers = self.settings['workers']
        if len(items) >= self.settings['parallel_threshold'] and workers > 1:
            self.logger.debug(f"Using {workers} threads for {len(items)} {label} tasks")
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f'lfblog-{label}') as executor:
                futures = {executor.submit(fn, item): item for item in items}
                for future in as_completed(futures):
                    item = futures[future]
                    try:
                        results[item] = future.result()
                    except Exception as e:
                        results[item] = e
        else:
            for item in items:
                try:
                    results[item] = fn(item)
                except Exception as e:
                    results[item] = e
        return results

    def _parse(self, node_ids, tree, link_index):
        def parse_one(node_id):
            return self.parser.parse_file(tree.get(node_id), link_index)

        parsed = {}
        for node_id, outcome in self._run_tasks(parse_one, node_ids, 'parse').items():
            if isinstance(outcome, BuildError):
                issue = outcome.to_issue()
                issue.node_id = node_id
                self.logger.error(f"{node_id}: {outcome}")
                parsed[node_id] = (None, [issue])
            elif isinstance(outcome, Exception):
                issue = Issue('parse', node_id, f"Error processing {node_id}: {outcome}", ERROR)
                self.logger.error(issue.message)
                parsed[node_id] = (None, [issue])
            else:
                parsed[node_id] = (outcome.document, outcome.issues)
        return parsed

    def _expected_targets(self, tree) -> Dict[str, _Target]:
        targets = {'index.html': _Target('index.html', INDEX, tree.root.id),
                   '404.html': _Target('404.html', NOT_FOUND),
                   'robots.txt': _Target('robots.txt', ROBOTS)}
        if self.settings.get('site_url'):
            targets['sitemap.xml'] = _Target('sitemap.xml', SITEMAP)
            targets['feed/index.xml'] = _Target('feed/index.xml', FEED)
        for node in tree.walk():
            if node.is_category and node.id:
                path = tree.output_path(node)
                targets[path] = _Target(path, CATEGORY, node.id)
            elif node.is_page:
                document = self._documents.get(node.id)
                if document is None or document.draft:
                    continue
                path = tree.output_path(node)
                targets[path] = _Target(path, PAGE, node.id)
        return targets

    def _dependencies(self, target: _Target, tree, theme_name: Optional[str]) -> Set[str]:
        keys = {NAV}
        if theme_name:
            keys.add(theme_key(theme_name))
        if target.kind in (PAGE, CATEGORY):
            node = tree.get(target.node_id)
            keys.add(node.id)
            keys |= {ancestor.id for ancestor in node.ancestors()}
            if target.kind == PAGE:
                keys.add(recs_key(node.id))
            else:
                keys |= {child.id for child in node.children}
        elif target.kind == INDEX:
            keys |= {DOCS, tree.root.id}
            keys |= {child.id for child in tree.root.children}
        elif target.kind in (NOT_FOUND, SITEMAP, FEED):
            keys.add(DOCS)
        elif target.kind == ROBOTS:
            keys = set()
        return keys

    def _render(self, tree, dirty_keys, result, plan) -> Set[str]:
        expected = self._expected_targets(tree)
        self._pending = {}
        if result.full:
            selected = set(expected)
        else:
            selected = self._artifact_deps.dependents(dirty_keys)
            selected |= {path for path in expected if path not in self._records}
            selected |= self._retry
        selected &= set(expected)
        self._retry -= selected

        published_docs = {node_id: doc for node_id, doc in self._documents.items()
                          if not doc.draft and node_id in tree}
        latest = self.recommender.latest(published_docs, self.settings['latest_count'])
        context = SiteContext(self.settings, tree, published_docs, latest, self.store.recommendations)

        def render_one(path):
            return self._render_target(expected[path], tree, context)

        rendered = set()
        outcomes = self._run_tasks(render_one, sorted(selected), 'render')
        for path in sorted(outcomes):
            target = expected[path]
            outcome = outcomes[path]
            if isinstance(outcome, Exception):
                if isinstance(outcome, BuildError):
                    issue = outcome.to_issue()
                else:
                    issue = TemplateError(f"Failed to render {path}: {outcome}").to_issue()
                issue.node_id = target.node_id
                self.logger.error(f"{path}: {issue.message}")
                result.issues.append(issue)
                self._note_issue(target.node_id, issue)
                # Re-render once the requested theme appears or changes.
                theme_name = self._theme_name(target, tree)
                self._artifact_deps.set(path, self._dependencies(target, tree, theme_name))
                if isinstance(outcome, ThemeError) and theme_name:
                    self._missing_themes.add(theme_name)
                if path not in self._records:
                    self._retry.add(path)
                continue
            data, theme_name = outcome
            if data is None:
                if path in self._records:
                    plan.delete(path)
                continue
            rendered.add(path)
            self._clear_issues(target.node_id, TemplateError.kind)
            self._artifact_deps.set(path, self._dependencies(target, tree, theme_name))
            record = self._records.get(path)
            digest = sha256_bytes(data)
            if record is None or record.sha256 != digest:
                plan.write(path, data, target.node_id)
            self._pending[path] = ArtifactRecord(path, target.kind, target.node_id, digest, theme_name)

        self.logger.info(f"Artifacts rendered: {len(rendered)}")
        self._plan_assets(expected, result, plan)
        self._plan_attachments(tree, dirty_keys, result, plan)

        keep = set(expected) | self._asset_paths | self._attachment_paths
        for path in self._records:
            if path not in keep:
                plan.delete(path)
        return rendered

    def _theme_name(self, target: _Target, tree) -> Optional[str]:
        if target.kind == PAGE:
            return resolve_theme_name(self._documents[target.node_id], tree.get(target.node_id),
                                      self.settings['theme'])
        if target.kind == CATEGORY:
            return resolve_theme_name(None, tree.get(target.node_id), self.settings['theme'])
        if target.kind in (INDEX, NOT_FOUND):
            return self.renderer.site_theme_name(tree)
        return None

    def _render_target(self, target: _Target, tree, context: SiteContext):
        """Returns (bytes or None, theme name)."""
        theme_name = self._theme_name(target, tree)
        if target.kind == PAGE:
            html = self.renderer.render_page(self._documents[target.node_id], tree.get(target.node_id), context)
        elif target.kind == CATEGORY:
            html = self.renderer.render_category(tree.get(target.node_id), context)
        elif target.kind == INDEX:
            html = self.renderer.render_index(context)
        elif target.kind == NOT_FOUND:
            html = self.renderer.render_not_found(context)
        elif target.kind == SITEMAP:
            return self.generate_xml_sitemap(tree, context).encode('utf-8'), None
        elif target.kind == FEED:
            return self.generate_rss_feed(context).encode('utf-8'), None
        elif target.kind == ROBOTS:
            return self.generate_robots_txt().encode('utf-8'), None
        else:
            raise ValueError(f"Unknown artifact kind {target.kind}")
        return (html.encode('utf-8') if html is not None else None), theme_name

    def _plan_assets(self, expected, result, plan):
        themes = set()
        for path in expected:
            record = self._pending.get(path) or self._records.get(path)
            if record is not None and record.theme:
                themes.add(record.theme)
        self._asset_paths = set()
        for name in sorted(themes):
            try:
                theme = self.theme_manager.get(name)
                assets = theme.assets(minify=bool(self.settings['minify']))
            except BuildError as e:
                issue = e.to_issue()
                self.logger.error(f"Theme assets for {name}: {e}")
                result.issues.append(issue)
                self._asset_paths |= {path for path, record in self._records.items()
                                      if record.kind == ASSET and record.theme == name}
                continue
            for path, data in sorted(assets.items()):
                self._asset_paths.add(path)
                digest = sha256_bytes(data)
                record = self._records.get(path)
                if record is None or record.sha256 != digest or path in self._retry:
                    plan.write(path, data)
                self._pending[path] = ArtifactRecord(path, ASSET, None, digest, name)
                self._retry.discard(path)

    def _plan_attachments(self, tree, dirty_keys, result, plan):
        self._attachment_paths = set()
        for node in tree.pages():
            document = self._documents.get(node.id)
            if document is None or document.draft:
                continue
            for attachment in node.attachments:
                path = attachment.output_path
                self._attachment_paths.add(path)
                record = self._records.get(path)
                if not (result.full or record is None or node.id in dirty_keys
                        or record.node_id != node.id or path in self._retry):
                    continue
                self._retry.discard(path)
                if (record is not None and record.node_id == node.id
                        and self._unchanged_file(attachment.source_path, record.sha256)):
                    continue
                plan.copy(path, attachment.source_path, node.id)
                self._pending[path] = ArtifactRecord(path, ATTACHMENT, node.id, None)

    def _unchanged_file(self, path, digest) -> bool:
        try:
            return sha256_file(path) == digest
        except (IOError, OSError) as e:
            # The copy in the publish stage reports the failure.
            self.logger.debug(f"Cannot hash {path}: {e}")
            return False

    def _apply_publish(self, plan, published, result):
        failed = published.failed
        manifest = self.publisher.artifacts()
        for path in plan.paths() | set(self._pending):
            if path in plan.deletes:
                if path not in failed:
                    self._records.pop(path, None)
                    self._artifact_deps.remove(path)
                continue
            if path in failed:
                self._retry.add(path)
                continue
            pending = self._pending.get(path)
            entry = manifest.get(path)
            if pending is None or entry is None:
                continue
            pending.sha256 = entry.get('sha256')
            self._records[path] = pending
            self._clear_issues(pending.node_id, PublishIOError.kind)
        for issue in published.failures:
            result.issues.append(issue)
            self._note_issue(issue.node_id, issue)
        result.written = set(published.written)
        result.deleted = set(published.deleted)
        result.published = published.published

    # Recommendations

    def _schedule_recommendations(self, tree, changed: Set[str]) -> None:
        documents = dict(self._documents)
        removed = {node_id for node_id in changed if node_id not in documents}
        rebuild = self._rec_rebuild
        self._rec_rebuild = False
        recommender = self.recommender
        generation = self.publisher.generation

        def task():
            previous = self.store.index
            try:
                if rebuild:
                    index = recommender.build(documents, tree, generation=previous.generation + 1)
                    changed_entries = {
                        node_id for node_id in set(index.entries()) | set(previous.entries())
                        if index.items_for(node_id) != previous.items_for(node_id)
                    }
                else:
                    update = recommender.update(previous, documents, tree, changed, removed)
                    index, changed_entries = update.index, update.changed_entries
            except Exception as e:
                error = RecommenderError(f"Recommendation update for generation {generation} failed: {e}")
                self._last_error = str(error)
                self._rec_issues = [error.to_issue()]
                self.logger.error(str(error))
                self._rec_rebuild = True
                return set()
            self._rec_issues = []
            self.store.swap(index)
            self.logger.debug(f"Recommendation generation {index.generation}: "
                              f"{len(changed_entries)} entries changed")
            if changed_entries:
                self.queue.put_recommendations(changed_entries)
            return changed_entries

        self._rec_future = self._rec_executor.submit(task)

    # Site-wide artifacts

    def generate_xml_sitemap(self, tree, context: SiteContext) -> str:
        """Generate XML sitemap."""
        site_url = self.settings['site_url']
        entries = []
        for node in tree.walk():
            if node.is_page:
                document = context.documents.get(node.id)
                if document is None:
                    continue
                entries.append(self.format_xml_sitemap_entry(site_url + node.url, document.date))
            else:
                entries.append(self.format_xml_sitemap_entry(site_url + node.url, None))
        return ('<?xml version="1.0" encoding="UTF-8"?>\n'
                '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">\n'
                + ''.join(entries) + '</urlset>\n')

    def format_xml_sitemap_entry(self, url, lastmod):
        """Format a single sitemap entry."""
        lastmod_line = f"<lastmod>{lastmod.strftime('%Y-%m-%d')}</lastmod>\n" if lastmod else ''
        return f"<url>\n<loc>{escape(url)}</loc>\n{lastmod_line}</url>\n"

    def generate_rss_feed(self, context: SiteContext) -> str:
        """Generate RSS feed of the most recent dated pages."""
        site_url = self.settings['site_url']
        site_name = self.settings['site_title'] or site_url
        latest = self.recommender.latest(context.documents, FEED_SIZE)

        def rfc822(value):
            return formatdate(calendar.timegm(value.timetuple()))

        items = []
        for node_id in latest:
            document = context.documents[node_id]
            link = site_url + context.tree.get(node_id).url
            items.append(
                f"<item>\n<title>{escape(document.title)}</title>\n<link>{escape(link)}</link>\n"
                f"<description>{escape(document.summary)}</description>\n"
                f"<pubDate>{rfc822(document.date)}</pubDate>\n<guid>{escape(link)}</guid>\n</item>\n"
            )
        last_build = (f"<lastBuildDate>{rfc822(context.documents[latest[0]].date)}</lastBuildDate>\n"
                      if latest else '')
        description = self.settings['site_description'] or f"Latest pages from {site_name}"
        return ('<?xml version="1.0" encoding="UTF-8"?>\n<rss version="2.0">\n<channel>\n'
                f"<title>{escape(site_name)}</title>\n<link>{escape(site_url)}/</link>\n"
                f"<description>{escape(description)}</description>\n{last_build}"
                + ''.join(items) + '</channel>\n</rss>\n')

    def generate_robots_txt(self) -> str:
        """Generate robots.txt file."""
        if self.settings['robots'] == 'private':
            return "User-agent: *\nDisallow: /\n"
        robots_content = "User-agent: *\nAllow: /\n"
        if self.settings.get('site_url'):
            robots_content += f"\nSitemap: {self.settings['site_url']}/sitemap.xml\n"
        return robots_content
