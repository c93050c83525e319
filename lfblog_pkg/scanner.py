"""
Content scanner: walks the content directory and builds an immutable
ContentTree snapshot of categories (directories) and pages (Markdown files).
"""

import os
import re
import hashlib
import logging
import weakref
from enum import Enum
from typing import Dict, Iterator, List, Optional, Set, Tuple
from urllib.parse import quote

from .errors import Issue, SourceReadError, WARNING
from .document import split_front_matter

logger = logging.getLogger('LFBlog.scanner')

ATTACHMENT_DIR = 'attachment'
INDEX_FILE = 'index.md'
IGNORED_NAMES = {'Thumbs.db', 'desktop.ini', '.DS_Store', '__pycache__'}


def slugify(text: str) -> str:
    text = text.lower()
    text = re.sub(r"[^\w]+", "-", text, flags=re.UNICODE)
    text = text.strip("-_").replace("_", "-")
    return text or "item"


def is_ignored(name: str) -> bool:
    """Hidden, private and editor/system files never become content."""
    return (
        name.startswith('.')
        or name.startswith('_')
        or name.endswith('~')
        or name in IGNORED_NAMES
    )


class NodeKind(Enum):
    CATEGORY = 'category'
    PAGE = 'page'


class Attachment:
    """A non-Markdown file published next to its page."""

    __slots__ = ('filename', 'source_path', 'url', 'output_path', 'size', 'mtime')

    def __init__(self, filename, source_path, size=0, mtime=0.0):
        self.filename = filename
        self.source_path = source_path
        self.size = size
        self.mtime = mtime
        self.url = None
        self.output_path = None

    def fingerprint(self):
        return (self.filename, self.size, self.mtime)

    def copy(self) -> 'Attachment':
        return Attachment(self.filename, self.source_path, self.size, self.mtime)

    def __repr__(self):
        return f"Attachment({self.filename!r})"


class ContentNode:
    """
    One source unit: a category or a page, told apart by ``kind``.

    Categories own ordered children; pages own attachments. The parent link
    is a weak reference so ownership only flows from the root down.
    """

    def __init__(self, node_id: str, kind: NodeKind, title: str, slug: str, source_path: str,
                 mtime: float = 0.0, content_hash: str = '', index_path: Optional[str] = None,
                 meta: Optional[dict] = None, attachments: Optional[List[Attachment]] = None):
        self.id = node_id
        self.kind = kind
        self.title = title
        self.slug = slug
        self.source_path = source_path
        self.mtime = mtime
        self.content_hash = content_hash
        self.index_path = index_path
        self.meta = meta or {}
        self.attachments = list(attachments or [])
        self.children = []
        self.url = None
        self._parent = None

    @property
    def parent(self) -> Optional['ContentNode']:
        return self._parent() if self._parent is not None else None

    @property
    def is_category(self) -> bool:
        return self.kind is NodeKind.CATEGORY

    @property
    def is_page(self) -> bool:
        return self.kind is NodeKind.PAGE

    @property
    def theme(self) -> Optional[str]:
        value = self.meta.get('theme')
        return str(value) if value else None

    @property
    def description(self) -> Optional[str]:
        value = self.meta.get('description')
        return str(value) if value else None

    def add_child(self, child: 'ContentNode') -> None:
        child._parent = weakref.ref(self)
        self.children.append(child)

    def ancestors(self) -> Iterator['ContentNode']:
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    def signature(self) -> Tuple:
        """Everything about the node that downstream stages depend on."""
        return (self.kind, self.content_hash, self.slug, self.title)

    def clone(self) -> 'ContentNode':
        """Copy without children or parent."""
        node = ContentNode(
            self.id, self.kind, self.title, self.slug, self.source_path,
            mtime=self.mtime, content_hash=self.content_hash, index_path=self.index_path,
            meta=self.meta, attachments=[attachment.copy() for attachment in self.attachments],
        )
        return node

    def __repr__(self):
        return f"ContentNode({self.kind.value} {self.id!r})"


class ContentTree:
    """Immutable snapshot of the content hierarchy with an id index."""

    def __init__(self, root: ContentNode):
        self.root = root
        self._index = {}
        self._assign(root, [])

    def _assign(self, node, slugs):
        self._index[node.id] = node
        node.url = '/' + ''.join(f'{s}/' for s in slugs)
        for attachment in node.attachments:
            attachment.url = node.url + ATTACHMENT_DIR + '/' + quote(attachment.filename)
            attachment.output_path = '/'.join(slugs + [ATTACHMENT_DIR, attachment.filename])
        for child in node.children:
            self._assign(child, slugs + [child.slug])

    def __contains__(self, node_id):
        return node_id in self._index

    def __len__(self):
        return len(self._index)

    def get(self, node_id: str) -> Optional[ContentNode]:
        return self._index.get(node_id)

    def ids(self) -> Set[str]:
        return set(self._index)

    def walk(self, node: Optional[ContentNode] = None) -> Iterator[ContentNode]:
        node = node or self.root
        yield node
        for child in node.children:
            yield from self.walk(child)

    def pages(self) -> List[ContentNode]:
        return [node for node in self.walk() if node.is_page]

    def categories(self) -> List[ContentNode]:
        return [node for node in self.walk() if node.is_category]

    def output_path(self, node: ContentNode) -> str:
        """Published path of the node's HTML artifact, relative to the output root."""
        return node.url.lstrip('/') + 'index.html'

    def navigation(self) -> List[dict]:
        return [
            {'id': child.id, 'title': child.title, 'url': child.url, 'slug': child.slug}
            for child in self.root.children
            if child.is_category
        ]

    def replace_subtree(self, node_id: str, subtree: Optional[ContentNode]) -> 'ContentTree':
        """
        Return a new tree where ``node_id`` is replaced by ``subtree`` (or removed
        when ``subtree`` is None). Every node is cloned so weak parent links stay
        inside the new snapshot.
        """
        if node_id == self.root.id:
            if subtree is None:
                raise ValueError("cannot remove the content root")
            return ContentTree(subtree)

        def copy(node):
            clone = node.clone()
            for child in node.children:
                if child.id == node_id:
                    if subtree is not None:
                        clone.add_child(subtree)
                else:
                    clone.add_child(copy(child))
            return clone

        return ContentTree(copy(self.root))


class ScanDelta:
    """Node ids whose source changed between two snapshots."""

    def __init__(self, added=None, modified=None, removed=None):
        self.added = set(added or ())
        self.modified = set(modified or ())
        self.removed = set(removed or ())

    @property
    def structural(self) -> bool:
        return bool(self.added or self.removed)

    @property
    def changed(self) -> Set[str]:
        return self.added | self.modified | self.removed

    def __bool__(self):
        return bool(self.added or self.modified or self.removed)

    def merge(self, other: 'ScanDelta') -> None:
        self.added |= other.added
        self.modified |= other.modified
        self.removed |= other.removed

    def __repr__(self):
        return (f"ScanDelta(added={sorted(self.added)}, modified={sorted(self.modified)}, "
                f"removed={sorted(self.removed)})")


class ScanResult:
    def __init__(self, tree: ContentTree, delta: ScanDelta, issues: List[Issue], scopes=('',)):
        self.tree = tree
        self.delta = delta
        self.issues = issues
        self.scopes = tuple(scopes)


def diff_nodes(old: Dict[str, ContentNode], new: Dict[str, ContentNode]) -> ScanDelta:
    added = set(new) - set(old)
    removed = set(old) - set(new)
    modified = {
        node_id for node_id in set(old) & set(new)
        if old[node_id].signature() != new[node_id].signature()
    }
    return ScanDelta(added, modified, removed)


class Scanner:
    """Builds ContentTree snapshots from a content directory."""

    def __init__(self, content_dir: str, hash_mode: str = 'content'):
        self.content_dir = os.path.abspath(content_dir)
        self.hash_mode = hash_mode

    def scan(self, previous: Optional[ContentTree] = None) -> ScanResult:
        """Full scan. The delta is computed against ``previous`` when given."""
        issues = []
        if not os.path.isdir(self.content_dir):
            raise SourceReadError(f"Content directory does not exist: {self.content_dir}", '')
        root = self._scan_dir(self.content_dir, '', issues, is_root=True)
        tree = ContentTree(root)
        old = {node.id: node for node in previous.walk()} if previous else {}
        delta = diff_nodes(old, {node.id: node for node in tree.walk()})
        logger.debug(f"Full scan found {len(tree)} nodes ({delta})")
        return ScanResult(tree, delta, issues)

    def rescan(self, tree: ContentTree, paths) -> ScanResult:
        """
        Rescan only the categories that contain ``paths`` and return the nodes
        that were added, modified or removed underneath them.
        """
        issues = []
        if not os.path.isdir(self.content_dir):
            raise SourceReadError(f"Content directory does not exist: {self.content_dir}", '')

        scopes = set()
        for path in paths:
            scope = self.scope_for(tree, path)
            if scope is not None:
                scopes.add(scope)
        # Drop scopes nested inside another scope.
        scopes = {
            scope for scope in scopes
            if not any(other != scope and is_within(scope, other) for other in scopes)
        }

        delta = ScanDelta()
        rescanned = set()
        for scope in sorted(scopes):
            old_node = tree.get(scope)
            if old_node is None:
                continue
            while True:
                abs_dir = self._abs(scope)
                new_node = None
                if scope == '' or os.path.isdir(abs_dir):
                    new_node = self._scan_dir(abs_dir, scope, issues, is_root=(scope == ''))
                if new_node is not None or scope == '':
                    break
                # The category vanished or emptied: rescan its parent instead.
                old_node = old_node.parent
                scope = old_node.id
            # Sibling de-duplication happened in the parent, which was not rescanned.
            new_node.slug = old_node.slug
            rescanned.add(scope)
            old = {node.id: node for node in tree.walk(old_node)}
            new = {node.id: node for node in _walk(new_node)}
            delta.merge(diff_nodes(old, new))
            tree = tree.replace_subtree(scope, new_node)

        logger.debug(f"Scoped rescan of {sorted(scopes)}: {delta}")
        return ScanResult(tree, delta, issues, scopes=sorted(rescanned))

    def scope_for(self, tree: ContentTree, path: str) -> Optional[str]:
        """Nearest existing category id containing ``path``, or None when outside the content root."""
        abs_path = os.path.abspath(path)
        if abs_path != self.content_dir and not abs_path.startswith(self.content_dir + os.sep):
            return None
        rel = os.path.relpath(abs_path, self.content_dir).replace(os.sep, '/')
        if rel == '.':
            return ''
        candidate = rel if os.path.isdir(abs_path) else os.path.dirname(rel)
        while True:
            node = tree.get(candidate)
            if node is not None and node.is_category:
                return candidate
            if candidate == '':
                return ''
            candidate = os.path.dirname(candidate)

    def _abs(self, node_id: str) -> str:
        if not node_id:
            return self.content_dir
        return os.path.join(self.content_dir, *node_id.split('/'))

    def _rel(self, abs_path: str) -> str:
        rel = os.path.relpath(abs_path, self.content_dir).replace(os.sep, '/')
        return '' if rel == '.' else rel

    def _list_dir(self, abs_dir, node_id, issues, is_root=False):
        try:
            with os.scandir(abs_dir) as it:
                entries = sorted(
                    (entry for entry in it if not is_ignored(entry.name)),
                    key=lambda e: e.name,
                )
            return entries
        except (IOError, OSError, PermissionError) as e:
            if is_root:
                raise SourceReadError(f"Cannot read content directory {abs_dir}: {e}", node_id)
            issue = SourceReadError(f"Cannot read directory {abs_dir}: {e}", node_id).to_issue()
            logger.error(issue.message)
            issues.append(issue)
            return None

    def _scan_dir(self, abs_dir: str, node_id: str, issues: List[Issue], is_root: bool = False) -> Optional[ContentNode]:
        entries = self._list_dir(abs_dir, node_id, issues, is_root)
        if entries is None:
            return None

        subdirs = []
        md_files = []
        index_path = None
        attachment_dir = None
        for entry in entries:
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
                is_file = entry.is_file()
            except OSError:
                continue
            if is_dir:
                if entry.name == ATTACHMENT_DIR:
                    attachment_dir = entry.path
                else:
                    subdirs.append(entry)
            elif is_file and entry.name.lower().endswith('.md'):
                if entry.name.lower() == INDEX_FILE:
                    index_path = entry.path
                else:
                    md_files.append(entry)

        name = os.path.basename(abs_dir)
        meta = {}
        content_hash = ''
        mtime = 0.0
        if index_path:
            try:
                meta, content_hash, mtime = self._read_index(index_path)
            except (IOError, OSError, PermissionError) as e:
                issue = SourceReadError(f"Cannot read {index_path}: {e}", node_id).to_issue()
                logger.error(issue.message)
                issues.append(issue)
                index_path = None

        title = str(meta.get('title') or (name if not is_root else ''))
        category = ContentNode(node_id, NodeKind.CATEGORY, title, slugify(name) if not is_root else '',
                               abs_dir, mtime=mtime, content_hash=content_hash,
                               index_path=index_path, meta=meta)

        children = []
        for entry in subdirs:
            child_id = self._rel(entry.path)
            bundle_md = self._bundle_source(entry.path)
            if bundle_md:
                page = self._scan_page(bundle_md, child_id, entry.name,
                                       os.path.join(entry.path, ATTACHMENT_DIR), issues, owns_loose=True)
                if page is not None:
                    children.append(page)
                continue
            sub = self._scan_dir(entry.path, child_id, issues)
            if sub is not None:
                children.append(sub)

        owns_loose = len(md_files) == 1
        if attachment_dir and not owns_loose:
            for loose in self._loose_files(attachment_dir):
                issue = Issue('source-read', node_id,
                              f"Attachment {loose} in {attachment_dir} has no single owning page; skipped",
                              WARNING)
                logger.warning(issue.message)
                issues.append(issue)
        for entry in md_files:
            stem = os.path.splitext(entry.name)[0]
            page = self._scan_page(entry.path, self._rel(entry.path), stem,
                                   attachment_dir, issues, owns_loose=owns_loose)
            if page is not None:
                children.append(page)

        if not children and not index_path and not is_root:
            return None

        # Categories first, then pages; stable within each kind.
        children.sort(key=lambda n: (0 if n.is_category else 1, n.id))
        seen = set()
        for child in children:
            slug = child.slug
            counter = 2
            while slug in seen:
                slug = f"{child.slug}-{counter}"
                counter += 1
            seen.add(slug)
            child.slug = slug
            category.add_child(child)

        return category

    def _bundle_source(self, abs_dir: str) -> Optional[str]:
        """A directory holding only ``<dirname>.md`` (plus attachments) is a page bundle."""
        try:
            with os.scandir(abs_dir) as it:
                entries = [entry for entry in it if not is_ignored(entry.name)]
        except OSError:
            return None
        name = os.path.basename(abs_dir)
        md_files = []
        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    if entry.name != ATTACHMENT_DIR:
                        return None
                elif entry.name.lower().endswith('.md'):
                    md_files.append(entry)
            except OSError:
                return None
        if len(md_files) == 1 and os.path.splitext(md_files[0].name)[0] == name:
            return md_files[0].path
        return None

    def _scan_page(self, md_path, node_id, stem, attachment_dir, issues, owns_loose=False):
        try:
            stat = os.stat(md_path)
            attachments = self._collect_attachments(attachment_dir, stem, owns_loose)
            content_hash = self._hash_page(md_path, stat, attachments)
        except (IOError, OSError, PermissionError) as e:
            issue = SourceReadError(f"Cannot read page {md_path}: {e}", node_id).to_issue()
            logger.error(issue.message)
            issues.append(issue)
            return None
        return ContentNode(node_id, NodeKind.PAGE, stem, slugify(stem), md_path,
                           mtime=stat.st_mtime, content_hash=content_hash,
                           attachments=attachments)

    def _loose_files(self, attachment_dir):
        try:
            with os.scandir(attachment_dir) as it:
                return sorted(entry.name for entry in it
                              if entry.is_file() and not is_ignored(entry.name))
        except OSError:
            return []

    def _collect_attachments(self, attachment_dir, stem, owns_loose):
        if not attachment_dir or not os.path.isdir(attachment_dir):
            return []
        sources = []
        own_dir = os.path.join(attachment_dir, stem)
        if os.path.isdir(own_dir):
            sources.extend(os.path.join(own_dir, name) for name in self._loose_files(own_dir))
        if owns_loose:
            sources.extend(os.path.join(attachment_dir, name) for name in self._loose_files(attachment_dir))
        attachments = {}
        for source in sources:
            filename = os.path.basename(source)
            if filename in attachments:
                continue
            stat = os.stat(source)
            attachments[filename] = Attachment(filename, source, stat.st_size, stat.st_mtime)
        return [attachments[name] for name in sorted(attachments)]

    def _hash_page(self, md_path, stat, attachments) -> str:
        digest = hashlib.sha256()
        if self.hash_mode == 'stat':
            digest.update(f"{stat.st_size}:{stat.st_mtime_ns}".encode('utf-8'))
        else:
            with open(md_path, 'rb') as f:
                digest.update(f.read())
        for attachment in attachments:
            digest.update(b'\0')
            digest.update(repr(attachment.fingerprint()).encode('utf-8'))
        return digest.hexdigest()

    def _read_index(self, index_path):
        with open(index_path, 'rb') as f:
            raw = f.read()
        stat = os.stat(index_path)
        text = raw.decode('utf-8', errors='replace')
        meta, _, problem = split_front_matter(text)
        if problem:
            logger.warning(f"{index_path}: {problem}")
        return meta, hashlib.sha256(raw).hexdigest(), stat.st_mtime


def _walk(node):
    yield node
    for child in node.children:
        yield from _walk(child)


def is_within(node_id: str, ancestor_id: str) -> bool:
    if ancestor_id == '':
        return True
    return node_id == ancestor_id or node_id.startswith(ancestor_id + '/')
