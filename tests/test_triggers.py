"""Tests for the coalescing trigger queue."""

import os
import threading
import time

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from lfblog_pkg.triggers import Trigger, TriggerQueue


class TestTrigger:
    """Test cases for Trigger."""

    def test_empty_trigger_is_false(self):
        """A trigger with nothing in it is falsy."""
        assert not Trigger()
        assert Trigger(full=True)
        assert Trigger(themes=True)
        assert Trigger(recommendations=['a/p1.md'])

    def test_merge(self):
        """Merging unions paths and ids and ors the flags."""
        trigger = Trigger(paths=['/a'], recommendations=['x'])
        trigger.merge(Trigger(paths=['/b'], full=True, recommendations=['y']))

        assert trigger.paths == {'/a', '/b'}
        assert trigger.recommendations == {'x', 'y'}
        assert trigger.full
        assert not trigger.themes


class TestTriggerQueue:
    """Test cases for TriggerQueue."""

    def test_notifications_coalesce(self, temp_dir):
        """Several notifications come back as one trigger."""
        queue = TriggerQueue()
        first = os.path.join(temp_dir, 'one.md')
        second = os.path.join(temp_dir, 'two.md')
        queue.put_path(first)
        queue.put_path(first)
        queue.put_path(second)
        queue.put_themes()

        assert queue.size() == 3
        trigger = queue.get(timeout=0)

        assert trigger.paths == {first, second}
        assert trigger.themes
        assert not queue.pending()

    def test_get_times_out(self):
        """An empty queue returns None once the timeout has passed."""
        assert TriggerQueue().get(timeout=0) is None
        assert TriggerQueue().get(timeout=0.01) is None

    def test_bounded_paths_become_full_rescan(self):
        """Past max_pending_paths the paths collapse into one full rescan."""
        queue = TriggerQueue(max_pending_paths=3)
        for i in range(5):
            queue.put_path(f'/content/p{i}.md')

        trigger = queue.get(timeout=0)

        assert trigger.full
        assert trigger.paths == set()
        assert queue.size() == 0

    def test_empty_recommendations_ignored(self):
        """No ids means nothing is queued."""
        queue = TriggerQueue()
        queue.put_recommendations([])
        assert not queue.pending()

    def test_debounce_waits_for_quiet(self):
        """A burst arriving within the debounce window is delivered together."""
        queue = TriggerQueue()
        queue.put_path('/content/a.md')

        def late():
            time.sleep(0.05)
            queue.put_path('/content/b.md')

        thread = threading.Thread(target=late)
        thread.start()
        trigger = queue.get(timeout=1, debounce=0.2)
        thread.join()

        assert trigger.paths == {os.path.abspath('/content/a.md'), os.path.abspath('/content/b.md')}

    def test_get_wakes_on_notify(self):
        """A waiting consumer is woken by a producer thread."""
        queue = TriggerQueue()
        timer = threading.Timer(0.05, queue.put_full)
        timer.start()

        trigger = queue.get(timeout=2)
        timer.join()

        assert trigger is not None and trigger.full

    def test_close_releases_waiters(self):
        """Closing wakes a blocked consumer with None."""
        queue = TriggerQueue()
        results = []
        thread = threading.Thread(target=lambda: results.append(queue.get()))
        thread.start()

        queue.close()
        thread.join(timeout=2)

        assert results == [None]
        assert queue.closed

    def test_close_still_drains_pending(self):
        """Work queued before close is still handed out."""
        queue = TriggerQueue()
        queue.put_full()
        queue.close()

        assert queue.get(timeout=0).full
        assert queue.get(timeout=0) is None
