"""Test configuration and fixtures for LF Blog tests."""

import pytest
import tempfile
import shutil
import os
from pathlib import Path

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from lfblog_pkg.core import BuildOrchestrator


def write(path, text):
    """Write ``text`` to ``path``, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding='utf-8')
    return str(path)


def read_live(output_dir, rel_path):
    """Bytes of an artifact in the live generation."""
    with open(os.path.join(output_dir, *rel_path.split('/')), 'rb') as f:
        return f.read()


PAGE_P1 = """---
title: Alpha
tags: [x, y]
date: 2024-01-03
---
# Alpha

Violin zebra notes about [the second page](p2.md).
"""

PAGE_P2 = """---
title: Bravo
tags: [x]
date: 2024-01-02
---
# Bravo

Zebra quartz mountains.
"""

PAGE_P3 = """---
title: Charlie
tags: [y]
date: 2024-01-01
---
# Charlie

Violin orchestra melody.
"""

PAGE_P4 = """---
title: Delta
---
# Delta

Notes on gardening.
"""


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def site_settings(temp_dir):
    """Settings pointing at content, output and themes directories under temp_dir."""
    content_dir = os.path.join(temp_dir, 'content')
    os.makedirs(content_dir)
    return {
        'content': content_dir,
        'output': os.path.join(temp_dir, 'output'),
        'themes': os.path.join(temp_dir, 'themes'),
        'site_title': 'Test Blog',
        'site_description': 'Collections and notes',
        'site_url': 'https://example.com',
        'workers': 1,
        'debounce': 0,
        'keep_generations': 3,
    }


@pytest.fixture
def scenario_content(site_settings):
    """
    Category "a" with p1 (tags x, y), p2 (tag x) and untagged p4; category
    "b" with p3 (tag y). p2 and p3 share no terms.
    """
    content_dir = site_settings['content']
    write(os.path.join(content_dir, 'a', 'index.md'), "---\ntitle: Articles\n---\n")
    write(os.path.join(content_dir, 'a', 'p1.md'), PAGE_P1)
    write(os.path.join(content_dir, 'a', 'p2.md'), PAGE_P2)
    write(os.path.join(content_dir, 'a', 'p4.md'), PAGE_P4)
    write(os.path.join(content_dir, 'b', 'p3.md'), PAGE_P3)
    return content_dir


@pytest.fixture
def orchestrator(site_settings):
    """A BuildOrchestrator over site_settings, closed after the test."""
    orch = BuildOrchestrator(site_settings)
    yield orch
    orch.close()

