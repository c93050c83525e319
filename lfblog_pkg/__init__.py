"""
LF Blog - an incremental blog compiler.

LF Blog turns a directory tree of Markdown pages into a themed static site.
Directories are categories, Markdown files are pages and files under an
``attachment/`` directory are published next to their page. Only the
artifacts affected by a change are rebuilt, every build is published
atomically, and related pages are recommended by tag and term similarity.
"""

__version__ = "1.0.0"

from .core import BuildOrchestrator, BuildState, BuildStatus, PassResult
from .settings import LFBlogSettings

__all__ = ['BuildOrchestrator', 'BuildState', 'BuildStatus', 'PassResult', 'LFBlogSettings']
