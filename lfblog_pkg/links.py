"""
Link rewriting for parsed documents.

Relative links between Markdown sources and references to attachments are
mapped to their published URLs. Anything that points outside the content
root, or at a source that does not exist, is reported as unresolved.
"""

import os
import re
import html
import posixpath
from typing import Dict, Optional, Tuple
from urllib.parse import unquote


SCHEME_RE = re.compile(r'^[a-zA-Z][a-zA-Z0-9+.\-]*:')

EXTERNAL = 'external'
ANCHOR = 'anchor'
ABSOLUTE = 'absolute'
ATTACHMENT = 'attachment'
INTERNAL = 'internal'
UNRESOLVED = 'unresolved'


class ResolvedLink:
    """Outcome of resolving one link target."""

    __slots__ = ('url', 'kind', 'target', 'original')

    def __init__(self, url: str, kind: str, target: Optional[str] = None, original: str = ''):
        self.url = url
        self.kind = kind
        self.target = target
        self.original = original

    @property
    def resolved(self) -> bool:
        return self.kind != UNRESOLVED

    def __repr__(self):
        return f"ResolvedLink({self.kind} {self.original!r} -> {self.url!r})"


class LinkIndex:
    """
    Snapshot mapping content-relative source paths to (node id, URL).

    Pages are reachable through their Markdown path and, for page bundles,
    through their directory; categories through their directory and their
    index.md.
    """

    def __init__(self, content_dir: str, entries: Optional[Dict[str, Tuple[str, str]]] = None):
        self.content_dir = os.path.abspath(content_dir)
        self._entries = dict(entries or {})

    @classmethod
    def from_tree(cls, content_dir: str, tree) -> 'LinkIndex':
        index = cls(content_dir)
        for node in tree.walk():
            for key in index.keys_for(node):
                index._entries[key] = (node.id, node.url)
        return index

    def keys_for(self, node):
        """Source keys under which a node can be linked to."""
        keys = {node.id}
        if node.is_page:
            keys.add(self.relative(node.source_path))
        elif node.id:
            keys.add(node.id + '/index.md')
        else:
            keys.add('index.md')
        return keys

    def relative(self, path: str) -> str:
        rel = os.path.relpath(os.path.abspath(path), self.content_dir).replace(os.sep, '/')
        return '' if rel == '.' else rel

    def lookup(self, key: str) -> Optional[Tuple[str, str]]:
        return self._entries.get(key.strip('/'))

    def __len__(self):
        return len(self._entries)


class LinkResolver:
    """Resolves the links of one page against a LinkIndex and its attachments."""

    def __init__(self, node, link_index: LinkIndex):
        self.node = node
        self.link_index = link_index
        self.attachments = {attachment.filename: attachment for attachment in node.attachments}
        self.source_dir = posixpath.dirname(link_index.relative(node.source_path))

    def resolve(self, url: str) -> ResolvedLink:
        raw = url.strip()
        if not raw:
            return ResolvedLink(raw, EXTERNAL, original=url)
        if SCHEME_RE.match(raw) or raw.startswith('//'):
            return ResolvedLink(raw, EXTERNAL, original=url)
        if raw.startswith('#'):
            return ResolvedLink(raw, ANCHOR, original=url)
        if raw.startswith('/'):
            return ResolvedLink(raw, ABSOLUTE, original=url)

        path, _, fragment = html.unescape(raw).partition('#')
        path, _, query = path.partition('?')
        path = unquote(path)
        suffix = ('?' + query if query else '') + ('#' + fragment if fragment else '')

        attachment = self._attachment_for(path)
        if attachment is not None:
            return ResolvedLink(attachment.url + suffix, ATTACHMENT, original=url)

        joined = posixpath.normpath(posixpath.join(self.source_dir, path))
        if joined == '.':
            joined = ''
        if joined == '..' or joined.startswith('../'):
            return ResolvedLink(raw, UNRESOLVED, original=url)

        found = self.link_index.lookup(joined)
        if found is None and not joined.endswith('.md'):
            found = self.link_index.lookup(joined + '.md')
        if found is None:
            return ResolvedLink(raw, UNRESOLVED, target=joined, original=url)
        node_id, target_url = found
        return ResolvedLink(target_url + suffix, INTERNAL, target=node_id, original=url)

    def _attachment_for(self, path: str):
        clean = path[2:] if path.startswith('./') else path
        if clean.startswith('attachment/'):
            name = posixpath.basename(clean)
            return self.attachments.get(name)
        if '/' not in clean:
            return self.attachments.get(clean)
        return None
