"""
Filesystem watching: forwards watchdog events to the build orchestrator.
"""

import os
import logging

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer


class ChangeHandler(FileSystemEventHandler):
    """Maps created/modified/deleted/moved events to orchestrator notifications."""

    def __init__(self, orchestrator):
        super().__init__()
        self.orchestrator = orchestrator

    def handle(self, path, kind):
        if not path:
            return
        self.orchestrator.notify(os.fsdecode(path), kind)

    def on_created(self, event):
        self.handle(event.src_path, 'created')

    def on_modified(self, event):
        # Directory mtime changes are covered by the events for their entries.
        if not event.is_directory:
            self.handle(event.src_path, 'modified')

    def on_deleted(self, event):
        self.handle(event.src_path, 'removed')

    def on_moved(self, event):
        self.handle(event.src_path, 'removed')
        self.handle(event.dest_path, 'created')


class ContentWatcher:
    """Watches the content and theme directories while a build worker runs."""

    def __init__(self, orchestrator, paths=None, observer_class=Observer):
        self.orchestrator = orchestrator
        if paths is None:
            paths = [orchestrator.content_dir, orchestrator.themes_dir]
        self.paths = [os.path.abspath(path) for path in paths if os.path.isdir(path)]
        self.handler = ChangeHandler(orchestrator)
        self.observer = observer_class()
        self.logger = logging.getLogger('LFBlog.watcher')

    def start(self):
        for path in self.paths:
            self.observer.schedule(self.handler, path, recursive=True)
        self.observer.start()
        self.orchestrator.start()
        self.logger.info(f"Watching for changes in: {', '.join(self.paths)}")

    def stop(self):
        self.observer.stop()
        self.observer.join()
        self.orchestrator.stop()
        self.logger.info("Stopped watching")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False
