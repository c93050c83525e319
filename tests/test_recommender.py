"""Tests for the recommender."""

import pytest
import os
import threading
from datetime import datetime

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from lfblog_pkg.document import Document
from lfblog_pkg.recommender import (Recommender, RecommendationIndex, RecommendationStore,
                                    SimilarityEntry, Recommendation, jaccard, cosine)
from lfblog_pkg.scanner import ContentNode, ContentTree, NodeKind


def make_site(pages):
    """
    Build a tree and documents from ``{id: dict(tags=..., terms=..., date=...)}``.
    Ids are ``<category>/<name>.md``.
    """
    root = ContentNode('', NodeKind.CATEGORY, '', '', '/content')
    categories = {}
    for node_id in sorted(pages):
        category_id, name = node_id.split('/')
        if category_id not in categories:
            category = ContentNode(category_id, NodeKind.CATEGORY, category_id, category_id,
                                   f'/content/{category_id}')
            root.add_child(category)
            categories[category_id] = category
        stem = name[:-len('.md')]
        categories[category_id].add_child(
            ContentNode(node_id, NodeKind.PAGE, stem, stem, f'/content/{node_id}'))
    tree = ContentTree(root)
    documents = {node_id: make_document(node_id, **fields) for node_id, fields in pages.items()}
    return tree, documents


def make_document(node_id, tags=(), terms=None, date=None, title=None, draft=False, version=''):
    return Document(
        node_id=node_id,
        title=title or node_id,
        summary='',
        tags=tuple(sorted(tags)),
        body_html='',
        source_hash=f'{node_id}:{sorted(tags)}:{sorted((terms or {}).items())}:{version}',
        date=date,
        draft=draft,
        terms=dict(terms or {}),
    )


SCENARIO = {
    'a/p1.md': dict(tags=['x', 'y'], date=datetime(2024, 1, 3)),
    'a/p2.md': dict(tags=['x'], date=datetime(2024, 1, 2)),
    'b/p3.md': dict(tags=['y'], date=datetime(2024, 1, 1)),
    'a/p4.md': dict(tags=[], terms={'shared': 1}),
}


class TestScores:
    """Test cases for the similarity functions."""

    def test_jaccard(self):
        """Tag overlap is intersection over union."""
        assert jaccard(frozenset('xy'), frozenset('x')) == 0.5
        assert jaccard(frozenset(), frozenset()) == 0.0

    def test_cosine(self):
        """Term similarity is the cosine of count vectors."""
        assert cosine({'a': 1}, 1.0, {'a': 2}, 2.0) == pytest.approx(1.0)
        assert cosine({'a': 1}, 1.0, {'b': 1}, 1.0) == 0.0
        assert cosine({}, 0.0, {'a': 1}, 1.0) == 0.0

    def test_shared_tags_beat_no_tags(self):
        """Sharing all tags scores strictly higher than sharing none."""
        tree, documents = make_site({
            'a/base.md': dict(tags=['x', 'y'], terms={'word': 1}),
            'a/all.md': dict(tags=['x', 'y'], terms={'word': 1}),
            'a/none.md': dict(tags=['z'], terms={'word': 1}),
        })
        entry = Recommender().build(documents, tree).get('a/base.md')

        assert [item.node_id for item in entry.items] == ['a/all.md', 'a/none.md']
        assert entry.items[0].score > entry.items[1].score

    def test_category_weight(self):
        """A same-category bonus lifts siblings and can list otherwise unrelated pages."""
        tree, documents = make_site({
            'a/base.md': dict(tags=['t']),
            'a/sibling.md': dict(tags=['t']),
            'b/other.md': dict(tags=['t']),
            'a/untagged.md': dict(tags=[]),
        })

        plain = Recommender().build(documents, tree).items_for('a/base.md')
        weighted = Recommender(category_weight=0.5).build(documents, tree).items_for('a/base.md')

        assert [item.node_id for item in plain] == ['a/sibling.md', 'b/other.md']
        assert [(item.node_id, item.score) for item in weighted] == [
            ('a/sibling.md', 1.5), ('b/other.md', 1.0), ('a/untagged.md', 0.5)]


class TestRecommenderBuild:
    """Test cases for full builds."""

    def test_scenario_ranking(self):
        """p1's top recommendations share a tag; the untagged page ranks below them."""
        p4 = dict(SCENARIO['a/p4.md'])
        p1 = dict(SCENARIO['a/p1.md'], terms={'shared': 1})
        tree, documents = make_site(dict(SCENARIO, **{'a/p1.md': p1, 'a/p4.md': p4}))

        index = Recommender(k=5).build(documents, tree)
        items = index.items_for('a/p1.md')

        assert [item.node_id for item in items] == ['a/p2.md', 'b/p3.md', 'a/p4.md']
        assert items[0].score == items[1].score == 0.5
        assert items[2].score < 0.5

    def test_tie_break_by_date_then_id(self):
        """Equal scores order by newest date, undated last, then id."""
        tree, documents = make_site({
            'a/base.md': dict(tags=['t']),
            'a/old.md': dict(tags=['t'], date=datetime(2020, 1, 1)),
            'a/new.md': dict(tags=['t'], date=datetime(2023, 1, 1)),
            'a/undated-b.md': dict(tags=['t']),
            'a/undated-a.md': dict(tags=['t']),
        })

        items = Recommender().build(documents, tree).items_for('a/base.md')

        assert [item.node_id for item in items] == [
            'a/new.md', 'a/old.md', 'a/undated-a.md', 'a/undated-b.md']

    def test_top_k_and_self_exclusion(self):
        """Lists hold at most k items and never the page itself."""
        tree, documents = make_site({f'a/p{i}.md': dict(tags=['t']) for i in range(6)})

        index = Recommender(k=2).build(documents, tree)

        for node_id in documents:
            ids = [item.node_id for item in index.items_for(node_id)]
            assert len(ids) == 2
            assert node_id not in ids

    def test_excluded_categories(self):
        """Pages in excluded categories are never recommended but still get lists."""
        tree, documents = make_site(SCENARIO)

        index = Recommender(excluded_categories=['b']).build(documents, tree)

        assert 'b/p3.md' not in [item.node_id for item in index.items_for('a/p1.md')]
        assert [item.node_id for item in index.items_for('b/p3.md')] == ['a/p1.md']

    def test_drafts_ignored(self):
        """Draft pages neither get nor appear in lists."""
        tree, documents = make_site(dict(SCENARIO, **{'a/p2.md': dict(tags=['x'], draft=True)}))

        index = Recommender().build(documents, tree)

        assert 'a/p2.md' not in index
        assert 'a/p2.md' not in [item.node_id for item in index.items_for('a/p1.md')]

    def test_category_ids_ignored(self):
        """A document whose id now names a category is neither listed nor given a list."""
        tree, documents = make_site(SCENARIO)
        documents['b'] = make_document('b', tags=['x', 'y'])

        index = Recommender().build(documents, tree)

        assert 'b' not in index
        assert 'b' not in [item.node_id for item in index.items_for('a/p1.md')]

    def test_zero_k(self):
        """k=0 yields empty lists."""
        tree, documents = make_site(SCENARIO)
        index = Recommender(k=0).build(documents, tree)
        assert all(index.items_for(node_id) == () for node_id in documents)

    def test_latest(self):
        """Latest lists dated pages, newest first."""
        tree, documents = make_site(SCENARIO)
        assert Recommender().latest(documents, 2) == ['a/p1.md', 'a/p2.md']


class TestRecommenderUpdate:
    """Test cases for incremental updates."""

    def test_update_matches_full_build(self):
        """An incremental update gives the same entries as a rebuild."""
        tree, documents = make_site(SCENARIO)
        recommender = Recommender(k=2)
        previous = recommender.build(documents, tree)

        documents['b/p3.md'] = make_document('b/p3.md', tags=['x', 'y'], date=datetime(2024, 1, 1))
        update = recommender.update(previous, documents, tree, changed={'b/p3.md'})

        expected = Recommender(k=2).build(documents, tree)
        assert update.index.generation == previous.generation + 1
        for node_id in documents:
            assert update.index.items_for(node_id) == expected.items_for(node_id)

    def test_removed_page_leaves_lists(self):
        """Removing a page recomputes exactly the lists that mentioned it."""
        tree, documents = make_site(SCENARIO)
        recommender = Recommender()
        previous = recommender.build(documents, tree)
        p3_entry = previous.get('b/p3.md')

        del documents['a/p2.md']
        update = recommender.update(previous, documents, tree, removed={'a/p2.md'})

        assert 'a/p2.md' not in [item.node_id for item in update.index.items_for('a/p1.md')]
        assert 'a/p2.md' not in update.index
        assert 'a/p1.md' in update.changed_entries
        assert 'b/p3.md' not in update.changed_entries
        assert update.index.get('b/p3.md') is p3_entry

    def test_unrelated_change_recomputes_nothing_else(self):
        """A change that does not reach anyone's list leaves other entries as they were."""
        tree, documents = make_site({
            'a/one.md': dict(tags=['t']),
            'a/two.md': dict(tags=['t']),
            'b/lone.md': dict(tags=['solo']),
        })
        recommender = Recommender()
        previous = recommender.build(documents, tree)

        documents['b/lone.md'] = make_document('b/lone.md', tags=['solo'], version='2')
        update = recommender.update(previous, documents, tree, changed={'b/lone.md'})

        assert update.changed_entries == set()
        assert update.index.get('a/one.md') is previous.get('a/one.md')
        assert update.index.get('a/two.md') is previous.get('a/two.md')

    def test_new_page_enters_full_lists(self):
        """A changed page that beats a full list's cutoff enters it."""
        tree, documents = make_site({
            'a/base.md': dict(tags=['t', 'u']),
            'a/weak.md': dict(tags=['t', 'v', 'w']),
            'a/strong.md': dict(tags=['z']),
        })
        recommender = Recommender(k=1)
        previous = recommender.build(documents, tree)
        assert [i.node_id for i in previous.items_for('a/base.md')] == ['a/weak.md']

        documents['a/strong.md'] = make_document('a/strong.md', tags=['t', 'u'])
        update = recommender.update(previous, documents, tree, changed={'a/strong.md'})

        assert [i.node_id for i in update.index.items_for('a/base.md')] == ['a/strong.md']
        assert 'a/base.md' in update.changed_entries


class TestRecommendationStore:
    """Test cases for the atomic store."""

    def test_swap(self):
        """Readers see one whole index at a time."""
        store = RecommendationStore()
        entry = SimilarityEntry('a', (Recommendation('b', 'B', '/b/', 1.0),))
        previous = store.swap(RecommendationIndex(3, {'a': entry}))

        assert previous.generation == 0
        assert store.generation == 3
        assert store.recommendations('a')[0].as_dict() == {'id': 'b', 'title': 'B', 'url': '/b/', 'score': 1.0}
        assert store.recommendations('missing') == []

    def test_concurrent_readers(self):
        """Concurrent swaps never expose a partially built index."""
        store = RecommendationStore()
        indexes = [
            RecommendationIndex(g, {str(i): SimilarityEntry(str(i), ()) for i in range(50)})
            for g in range(1, 30)
        ]
        errors = []

        def reader():
            for _ in range(200):
                index = store.index
                if len(index) not in (0, 50):
                    errors.append(len(index))

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for thread in threads:
            thread.start()
        for index in indexes:
            store.swap(index)
        for thread in threads:
            thread.join()

        assert errors == []
        assert store.generation == 29
