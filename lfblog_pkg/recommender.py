"""
Related-page recommendations.

Each published page gets up to ``k`` similar pages, scored by tag overlap
(Jaccard) plus a lower-weighted cosine similarity of term counts, with an
optional bonus for pages in the same category. The index is rebuilt
incrementally and swapped in atomically, so readers always see one complete
generation.
"""

import math
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple


@dataclass(frozen=True)
class Recommendation:
    node_id: str
    title: str
    url: str
    score: float

    def as_dict(self):
        return {'id': self.node_id, 'title': self.title, 'url': self.url, 'score': self.score}


@dataclass(frozen=True)
class SimilarityEntry:
    """Ranked recommendations for one page."""

    node_id: str
    items: Tuple[Recommendation, ...]

    @property
    def cutoff(self) -> float:
        """Lowest listed score, or 0.0 when the list has room left."""
        return self.items[-1].score if self.items else 0.0


class RecommendationIndex:
    """Immutable set of SimilarityEntry records for one generation."""

    def __init__(self, generation: int = 0, entries: Optional[Dict[str, SimilarityEntry]] = None):
        self.generation = generation
        self._entries = dict(entries or {})

    def get(self, node_id: str) -> Optional[SimilarityEntry]:
        return self._entries.get(node_id)

    def items_for(self, node_id: str) -> Tuple[Recommendation, ...]:
        entry = self._entries.get(node_id)
        return entry.items if entry else ()

    def entries(self) -> Dict[str, SimilarityEntry]:
        return dict(self._entries)

    def __contains__(self, node_id):
        return node_id in self._entries

    def __len__(self):
        return len(self._entries)


class RecommendationUpdate:
    def __init__(self, index: RecommendationIndex, changed_entries: Set[str]):
        self.index = index
        self.changed_entries = changed_entries


class RecommendationStore:
    """Holds the live RecommendationIndex; swapping is atomic for readers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._index = RecommendationIndex()

    @property
    def index(self) -> RecommendationIndex:
        with self._lock:
            return self._index

    @property
    def generation(self) -> int:
        return self.index.generation

    def swap(self, index: RecommendationIndex) -> RecommendationIndex:
        with self._lock:
            previous, self._index = self._index, index
        return previous

    def recommendations(self, node_id: str) -> List[Recommendation]:
        return list(self.index.items_for(node_id))


class _Features:
    __slots__ = ('node_id', 'title', 'url', 'date', 'tags', 'terms', 'norm', 'source_hash', 'candidate',
                 'category')

    def __init__(self, document, node, candidate):
        self.node_id = document.node_id
        self.title = document.title
        self.url = node.url
        self.date = document.date
        self.tags = frozenset(document.tags)
        self.terms = document.terms
        self.norm = math.sqrt(sum(count * count for count in self.terms.values()))
        self.source_hash = document.source_hash
        self.candidate = candidate
        self.category = node.parent.id if node.parent is not None else ''

    def same_as(self, other: '_Features') -> bool:
        return (self.source_hash == other.source_hash and self.title == other.title
                and self.url == other.url and self.candidate == other.candidate)


def jaccard(a: frozenset, b: frozenset) -> float:
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def cosine(a: Dict[str, int], norm_a: float, b: Dict[str, int], norm_b: float) -> float:
    if not norm_a or not norm_b:
        return 0.0
    if len(a) > len(b):
        a, b = b, a
    dot = 0
    for term in sorted(a.keys() & b.keys()):
        dot += a[term] * b[term]
    return dot / (norm_a * norm_b)


def _rank_key(recommendation: Recommendation, dates: Dict[str, Optional[datetime]]):
    published = dates.get(recommendation.node_id)
    recency = (0, -(published - datetime.min).total_seconds()) if published else (1, 0.0)
    return (-recommendation.score, recency, recommendation.node_id)


class Recommender:
    """Computes SimilarityEntry records from Documents."""

    def __init__(self, k: int = 5, tag_weight: float = 1.0, term_weight: float = 0.25,
                 excluded_categories: Iterable[str] = (), category_weight: float = 0.0):
        self.k = max(0, int(k))
        self.tag_weight = float(tag_weight)
        self.term_weight = float(term_weight)
        self.category_weight = float(category_weight)
        self.excluded_categories = tuple(sorted(c.strip('/') for c in excluded_categories if c.strip('/')))
        self.logger = logging.getLogger('LFBlog.recommender')
        self._features = {}

    def is_excluded(self, node_id: str) -> bool:
        return any(node_id == prefix or node_id.startswith(prefix + '/')
                   for prefix in self.excluded_categories)

    def score(self, a: _Features, b: _Features) -> float:
        value = (self.tag_weight * jaccard(a.tags, b.tags)
                 + self.term_weight * cosine(a.terms, a.norm, b.terms, b.norm))
        if a.category == b.category:
            value += self.category_weight
        return round(value, 6)

    def _collect(self, documents, tree) -> Dict[str, _Features]:
        features = {}
        for node_id in sorted(documents):
            document = documents[node_id]
            node = tree.get(node_id)
            if node is None or not node.is_page or document.draft:
                continue
            features[node_id] = _Features(document, node, not self.is_excluded(node_id))
        return features

    def _entry(self, node_id: str, features: Dict[str, _Features]) -> SimilarityEntry:
        if self.k == 0:
            return SimilarityEntry(node_id, ())
        target = features[node_id]
        scored = []
        for other_id, other in features.items():
            if other_id == node_id or not other.candidate:
                continue
            value = self.score(target, other)
            if value > 0:
                scored.append(Recommendation(other_id, other.title, other.url, value))
        dates = {fid: f.date for fid, f in features.items()}
        scored.sort(key=lambda r: _rank_key(r, dates))
        return SimilarityEntry(node_id, tuple(scored[:self.k]))

    def build(self, documents, tree, generation: int = 1) -> RecommendationIndex:
        """Compute every entry from scratch."""
        features = self._collect(documents, tree)
        entries = {node_id: self._entry(node_id, features) for node_id in features}
        self._features = features
        self.logger.debug(f"Built recommendations for {len(entries)} pages")
        return RecommendationIndex(generation, entries)

    def update(self, previous: RecommendationIndex, documents, tree, changed: Iterable[str] = (),
               removed: Iterable[str] = (), generation: Optional[int] = None) -> RecommendationUpdate:
        """
        Recompute only the entries that can differ from ``previous``.

        An entry is recomputed when its page changed, when its list mentions
        a changed or removed page, or when a changed page now scores above
        the entry's lowest listed score.
        """
        generation = previous.generation + 1 if generation is None else generation
        features = self._collect(documents, tree)
        old_features = self._features

        dirty = set(changed) | set(removed)
        for node_id, feature in features.items():
            old = old_features.get(node_id)
            if old is None or not old.same_as(feature):
                dirty.add(node_id)
        dirty |= set(old_features) - set(features)

        old_entries = previous.entries()
        recompute = {node_id for node_id in dirty if node_id in features}
        for node_id in features:
            if node_id in recompute:
                continue
            entry = old_entries.get(node_id)
            if entry is None:
                recompute.add(node_id)
                continue
            if any(item.node_id in dirty for item in entry.items):
                recompute.add(node_id)
                continue
            full = len(entry.items) >= self.k
            target = features[node_id]
            for other_id in dirty:
                other = features.get(other_id)
                if other is None or other_id == node_id or not other.candidate:
                    continue
                value = self.score(target, other)
                if value > 0 and (not full or value >= entry.cutoff):
                    recompute.add(node_id)
                    break

        entries = {}
        changed_entries = set()
        for node_id in features:
            if node_id in recompute:
                entry = self._entry(node_id, features)
                old = old_entries.get(node_id)
                if old is None or old.items != entry.items:
                    changed_entries.add(node_id)
            else:
                entry = old_entries[node_id]
            entries[node_id] = entry
        changed_entries |= set(old_entries) - set(entries)

        self._features = features
        self.logger.debug(f"Recomputed {len(recompute)} recommendation entries, {len(changed_entries)} changed")
        return RecommendationUpdate(RecommendationIndex(generation, entries), changed_entries)

    def latest(self, documents, n: int) -> List[str]:
        """Ids of the ``n`` most recent dated, published pages, newest first."""
        dated = [doc for doc in documents.values() if doc.date and not doc.draft]
        dated.sort(key=lambda doc: (-(doc.date - datetime.min).total_seconds(), doc.node_id))
        return [doc.node_id for doc in dated[:max(0, n)]]
