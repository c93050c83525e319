"""
Document parser: turns one page's Markdown source into an immutable Document.

Front matter is YAML between ``---`` lines. Malformed constructs never abort
the page; they are reported as issues and rendered literally or omitted.
"""

import re
import html
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, date
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import mistune
import yaml

from .errors import Issue, SourceReadError, WARNING
from .links import LinkResolver


MARKDOWN_PLUGINS = ['table', 'task_lists', 'strikethrough']
DATE_FORMATS = ['%Y-%m-%dT%H:%M:%S', '%Y-%m-%d %H:%M:%S', '%Y-%m-%d', '%b %d, %Y']

WORD_RE = re.compile(r"[a-z0-9]+(?:'[a-z0-9]+)?")
CJK_RE = re.compile(r"[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af]+")
TAG_RE = re.compile(r'<[^>]+>')

STOPWORDS = frozenset("""
about above after again against all also and any are because been before being below
between both but can could did does doing down during each few for from further had has
have having her here hers him his how into its itself just more most not now off once
only other our ours out over own same she should some such than that the their theirs
them then there these they this those through too under until very was were what when
where which while who whom why will with would you your yours
""".split())


def split_front_matter(text: str) -> Tuple[Dict[str, Any], str, Optional[str]]:
    """
    Split ``text`` into (metadata, body, problem).

    ``problem`` describes a malformed block; the body then holds whatever
    should be rendered in its place.
    """
    clean_text = text.lstrip('\ufeff')
    lines = clean_text.splitlines(keepends=True)
    if not lines or lines[0].strip() != '---':
        return {}, clean_text, None

    end = None
    for i in range(1, len(lines)):
        if lines[i].strip() in ('---', '...'):
            end = i
            break
    if end is None:
        return {}, clean_text, "Unterminated front matter block; rendered literally"

    block = ''.join(lines[1:end])
    body = ''.join(lines[end + 1:])
    try:
        metadata = yaml.safe_load(block)
    except yaml.YAMLError as e:
        return {}, body, f"Invalid YAML front matter omitted: {e}"
    if metadata is None:
        return {}, body, None
    if not isinstance(metadata, dict):
        return {}, body, "Front matter is not a mapping; omitted"
    return {str(key).lower(): value for key, value in metadata.items()}, body, None


def parse_date(value) -> Optional[datetime]:
    """Parse a front matter date; returns None when it cannot be understood."""
    if isinstance(value, datetime):
        return value.replace(tzinfo=None) if value.tzinfo else value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        value = value.strip()
        for fmt in DATE_FORMATS:
            try:
                return datetime.strptime(value, fmt)
            except ValueError:
                continue
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return None
        return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed
    return None


def parse_tags(value) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = value.strip()
        if value.startswith('[') and value.endswith(']'):
            value = value[1:-1]
        items = [item.strip().strip('\'"') for item in value.split(',')]
    elif isinstance(value, (list, tuple, set)):
        items = [str(item).strip() for item in value if item is not None]
    else:
        items = [str(value).strip()]
    return tuple(sorted({item.lower() for item in items if item}))


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    cut = text[:limit].rsplit(' ', 1)[0].rstrip(',;:.')
    return (cut or text[:limit]) + '...'


def plain_text(tokens) -> str:
    """Concatenate the text content of mistune AST tokens."""
    parts = []
    for token in tokens or []:
        kind = token.get('type')
        if kind in ('softbreak', 'linebreak', 'blank_line'):
            parts.append(' ')
        elif 'children' in token:
            parts.append(plain_text(token['children']))
        elif 'raw' in token:
            parts.append(token['raw'])
        if kind in ('paragraph', 'heading', 'block_code', 'list_item', 'block_quote'):
            parts.append(' ')
    return ''.join(parts)


def normalize_space(text: str) -> str:
    return ' '.join(text.split())


def extract_terms(*texts: str) -> Dict[str, int]:
    """Term counts used for similarity: latin words and CJK character bigrams."""
    counts = Counter()
    for text in texts:
        lowered = text.lower()
        for word in WORD_RE.findall(lowered):
            if len(word) >= 3 and word not in STOPWORDS and not word.isdigit():
                counts[word] += 1
        for run in CJK_RE.findall(lowered):
            if len(run) == 1:
                counts[run] += 1
            for i in range(len(run) - 1):
                counts[run[i:i + 2]] += 1
    return dict(sorted(counts.items()))


def heading_anchor(text: str) -> str:
    anchor = re.sub(r"[^\w]+", "-", text.lower(), flags=re.UNICODE).strip('-')
    return anchor or 'section'


@dataclass(frozen=True)
class Document:
    """Parsed, render-ready form of a page. Never mutated; superseded as a whole."""

    node_id: str
    title: str
    summary: str
    tags: Tuple[str, ...]
    body_html: str
    source_hash: str
    date: Optional[datetime] = None
    author: Optional[str] = None
    theme: Optional[str] = None
    template: Optional[str] = None
    draft: bool = False
    headings: Tuple[Tuple[int, str, str], ...] = ()
    outbound_links: frozenset = frozenset()
    unresolved_links: Tuple[str, ...] = ()
    terms: Mapping[str, int] = field(default_factory=dict, hash=False)
    body_ast: Tuple[dict, ...] = field(default=(), hash=False)
    metadata: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        # Read-only views over the mutable inputs.
        object.__setattr__(self, 'terms', MappingProxyType(dict(self.terms)))
        object.__setattr__(self, 'body_ast', tuple(self.body_ast))
        object.__setattr__(self, 'metadata', MappingProxyType(dict(self.metadata)))

    @property
    def date_display(self) -> str:
        return self.date.strftime('%B %d, %Y') if self.date else ''

    @property
    def date_iso(self) -> str:
        return self.date.strftime('%Y-%m-%d') if self.date else ''

    def same_output(self, other: Optional['Document']) -> bool:
        """True when rendering ``other`` would bind exactly the same values."""
        if other is None:
            return False
        return (
            self.title == other.title and self.summary == other.summary
            and self.tags == other.tags and self.body_html == other.body_html
            and self.date == other.date and self.author == other.author
            and self.theme == other.theme and self.template == other.template
            and self.draft == other.draft and self.headings == other.headings
            and self.metadata == other.metadata
        )


class ParseResult:
    def __init__(self, document: Document, issues: List[Issue]):
        self.document = document
        self.issues = issues


class DocumentRenderer(mistune.HTMLRenderer):
    """HTML renderer that rewrites links and anchors headings."""

    def __init__(self, resolver: LinkResolver):
        super().__init__(escape=False)
        self.resolver = resolver
        self.links = []
        self.headings = []
        self._anchors = Counter()

    def _href(self, url):
        resolved = self.resolver.resolve(html.unescape(url))
        self.links.append(resolved)
        return resolved

    def link(self, text, url, title=None):
        resolved = self._href(url)
        if not resolved.resolved:
            return '<span class="broken-link">' + text + '</span>'
        s = '<a href="' + self.safe_url(html.escape(resolved.url, quote=True)) + '"'
        if title:
            s += ' title="' + html.escape(title, quote=True) + '"'
        return s + '>' + text + '</a>'

    def image(self, text, url, title=None):
        resolved = self._href(url)
        alt = html.escape(TAG_RE.sub('', text), quote=True)
        s = '<img src="' + self.safe_url(html.escape(resolved.url, quote=True)) + '" alt="' + alt + '"'
        if title:
            s += ' title="' + html.escape(title, quote=True) + '"'
        return s + ' />'

    def heading(self, text, level, **attrs):
        label = normalize_space(html.unescape(TAG_RE.sub('', text)))
        anchor = heading_anchor(label)
        self._anchors[anchor] += 1
        if self._anchors[anchor] > 1:
            anchor = f"{anchor}-{self._anchors[anchor]}"
        self.headings.append((level, label, anchor))
        return f'<h{level} id="{anchor}">{text}</h{level}>\n'

    def block_code(self, code, info=None):
        escaped_code = mistune.escape(code)
        lang = info.split()[0] if info and info.strip() else None
        if lang:
            return '<pre style="white-space: pre-wrap;"><code class="language-{}">{}</code></pre>\n'.format(
                html.escape(lang, quote=True), escaped_code)
        return '<pre style="white-space: pre-wrap;"><code>{}</code></pre>\n'.format(escaped_code)


class DocumentParser:
    """Parses page sources into Documents."""

    def __init__(self, summary_length: int = 200):
        self.summary_length = summary_length
        self.logger = logging.getLogger('LFBlog.document')

    def parse_file(self, node, link_index) -> ParseResult:
        """Read ``node.source_path`` and parse it. Raises SourceReadError when unreadable."""
        try:
            with open(node.source_path, 'rb') as f:
                raw = f.read()
        except (IOError, OSError, PermissionError) as e:
            raise SourceReadError(f"Failed to read markdown file {node.source_path}: {e}", node.id)
        issues = []
        try:
            text = raw.decode('utf-8')
        except UnicodeDecodeError:
            text = raw.decode('utf-8', errors='replace')
            issues.append(Issue('parse', node.id, "Source is not valid UTF-8; undecodable bytes replaced", WARNING))
        result = self.parse(node, text, link_index)
        result.issues[:0] = issues
        return result

    def parse(self, node, text: str, link_index) -> ParseResult:
        issues = []
        metadata, body, problem = split_front_matter(text)
        if problem:
            issues.append(Issue('parse', node.id, problem, WARNING))

        resolver = LinkResolver(node, link_index)
        renderer = DocumentRenderer(resolver)
        markdown = mistune.create_markdown(renderer=renderer, plugins=MARKDOWN_PLUGINS)
        body_html = markdown(body)

        ast = mistune.create_markdown(renderer='ast', plugins=MARKDOWN_PLUGINS)(body)

        outbound = set()
        unresolved = []
        for link in renderer.links:
            if link.target:
                outbound.add(link.target)
            if not link.resolved:
                unresolved.append(link.original)
                issues.append(Issue('link', node.id, f"Unresolvable link: {link.original}", WARNING))

        title = self._title(metadata, ast, node)
        summary = self._summary(metadata, ast)
        tags = parse_tags(metadata.get('tags'))

        raw_date = metadata.get('date', metadata.get('time'))
        doc_date = parse_date(raw_date) if raw_date is not None else None
        if raw_date is not None and doc_date is None:
            issues.append(Issue('parse', node.id, f"Unrecognised date {raw_date!r}; ignored", WARNING))

        body_text = normalize_space(plain_text(ast))
        document = Document(
            node_id=node.id,
            title=title,
            summary=summary,
            tags=tags,
            body_html=body_html,
            source_hash=node.content_hash,
            date=doc_date,
            author=_optional_str(metadata.get('author')),
            theme=_optional_str(metadata.get('theme')),
            template=_optional_str(metadata.get('template')),
            draft=bool(metadata.get('draft', False)),
            headings=tuple(renderer.headings),
            outbound_links=frozenset(outbound),
            unresolved_links=tuple(unresolved),
            terms=extract_terms(title, summary, body_text),
            body_ast=ast,
            metadata=metadata,
        )

        for issue in issues:
            self.logger.warning(f"{node.id}: {issue.message}")
        return ParseResult(document, issues)

    def _title(self, metadata, ast, node) -> str:
        title = metadata.get('title')
        if isinstance(title, (str, int, float)) and str(title).strip():
            return str(title).strip()
        headings = [token for token in ast if token.get('type') == 'heading']
        for token in headings:
            if token.get('attrs', {}).get('level') == 1:
                return normalize_space(plain_text(token.get('children')))
        if headings:
            return normalize_space(plain_text(headings[0].get('children')))
        return node.title or 'Untitled'

    def _summary(self, metadata, ast) -> str:
        for key in ('description', 'summary', 'excerpt'):
            value = metadata.get(key)
            if isinstance(value, str) and value.strip():
                return truncate(normalize_space(value), self.summary_length)
        for token in ast:
            if token.get('type') == 'paragraph':
                text = normalize_space(plain_text(token.get('children')))
                if text:
                    return truncate(text, self.summary_length)
        return ''


def _optional_str(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None
