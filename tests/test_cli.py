"""Tests for the command-line interface."""

import pytest
import os
import json

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from lfblog_pkg.cli import main, build_parser, create_category, create_page, ACTION_ARGS
from conftest import write, read_live, PAGE_P1, PAGE_P2


@pytest.fixture
def project(temp_dir, monkeypatch):
    """Run the CLI from inside temp_dir."""
    monkeypatch.chdir(temp_dir)
    return temp_dir


class TestParser:
    """Test cases for argument parsing."""

    def test_flags_default_to_none(self):
        """Unset flags must not override configuration values."""
        args = build_parser().parse_args([])
        assert args.minify is None
        assert args.watch is None
        assert args.site_title is None

    def test_setting_flags(self):
        """Dashed flags map onto setting keys."""
        args = build_parser().parse_args(['--site-url', 'https://example.com', '--recommend-k', '3',
                                          '--hash-mode', 'stat', '--minify'])
        assert args.site_url == 'https://example.com'
        assert args.recommend_k == 3
        assert args.hash_mode == 'stat'
        assert args.minify is True

    def test_action_args_are_parser_dests(self):
        """Every action argument is a real parser destination."""
        dests = {action.dest for action in build_parser()._actions}
        assert set(ACTION_ARGS) <= dests


class TestScaffolding:
    """Test cases for --init, --new-category and --new-page."""

    def test_init(self, project, capsys):
        """--init writes a config file and starter content."""
        main(['--init', 'yml'])

        assert os.path.isfile(os.path.join(project, 'lfblog.yml'))
        assert os.path.isfile(os.path.join(project, 'content', 'index.md'))
        assert os.path.isfile(os.path.join(project, 'content', 'Getting Started', 'index.md'))
        assert os.path.isfile(os.path.join(project, 'content', 'Getting Started', 'welcome.md'))
        assert os.path.isdir(os.path.join(project, 'themes'))
        assert 'Your new LF Blog is ready!' in capsys.readouterr().out

    def test_init_then_build(self, project):
        """The starter project builds cleanly and its pages link to each other."""
        main(['--init', 'yml'])
        main([])

        page = read_live(os.path.join(project, 'output'), 'getting-started/welcome/index.html').decode('utf-8')
        assert '<a href="/getting-started/organising-pages/">' in page
        assert 'class="recommendations"' in page

    def test_new_category(self, project):
        """--new-category creates a directory with an index.md."""
        main(['--new-category', 'Minerals'])

        index = os.path.join(project, 'content', 'Minerals', 'index.md')
        with open(index, encoding='utf-8') as f:
            assert f.read() == '---\ntitle: "Minerals"\n---\n'

    def test_new_page_bundle(self, project):
        """--new-page creates a page bundle by default."""
        main(['--new-page', 'Quartz Crystals', '--category', 'Minerals'])

        bundle = os.path.join(project, 'content', 'Minerals', 'quartz-crystals')
        assert os.path.isfile(os.path.join(bundle, 'quartz-crystals.md'))
        assert os.path.isdir(os.path.join(bundle, 'attachment'))

    def test_new_page_single_file(self, project):
        """--no-bundle creates a plain Markdown file."""
        main(['--new-page', 'Feldspar', '--no-bundle'])

        path = os.path.join(project, 'content', 'feldspar.md')
        with open(path, encoding='utf-8') as f:
            text = f.read()
        assert text.startswith('---\ntitle: "Feldspar"\ndate: "')
        assert 'tags: []' in text
        assert '# Feldspar' in text

    def test_duplicate_page_exits(self, project, capsys):
        """Creating the same page twice fails with exit status 1."""
        main(['--new-page', 'Feldspar', '--no-bundle'])

        with pytest.raises(SystemExit) as excinfo:
            main(['--new-page', 'Feldspar', '--no-bundle'])

        assert excinfo.value.code == 1
        assert 'already exists' in capsys.readouterr().err

    def test_invalid_category_exits(self, project):
        """Category names may not escape the content directory."""
        with pytest.raises(SystemExit) as excinfo:
            main(['--new-category', '../outside'])
        assert excinfo.value.code == 1

    def test_helpers_directly(self, temp_dir):
        """The scaffolding helpers work on explicit directories."""
        content = os.path.join(temp_dir, 'content')
        category = create_category('Notes/Daily', content, 'Day by day')
        page = create_page('Monday', content, 'Notes/Daily', bundle=False)

        assert category == os.path.join(content, 'Notes', 'Daily')
        assert page == os.path.join(category, 'monday.md')
        with open(os.path.join(category, 'index.md'), encoding='utf-8') as f:
            assert 'description: "Day by day"' in f.read()


class TestBuildCommand:
    """Test cases for building from the command line."""

    def test_build_with_status(self, project, capsys):
        """A build prints its status as JSON with --status."""
        write(os.path.join(project, 'content', 'a', 'p1.md'), PAGE_P1)
        write(os.path.join(project, 'content', 'a', 'p2.md'), PAGE_P2)

        main(['--site-url', 'https://example.com', '--workers', '1', '--status'])

        status = json.loads(capsys.readouterr().out)
        assert status['state'] == 'idle'
        assert status['generation'] >= 1
        assert status['last_error'] is None
        output = os.path.join(project, 'output')
        assert os.path.islink(output)
        assert os.path.isfile(os.path.join(output, 'sitemap.xml'))
        assert os.path.isfile(os.path.join(output, 'a', 'p1', 'index.html'))

    def test_config_file_and_overrides(self, project):
        """Settings come from lfblog.yml; flags override them."""
        write(os.path.join(project, 'lfblog.yml'), "site_title: From Config\noutput: public\n")
        write(os.path.join(project, 'content', 'a', 'p1.md'), PAGE_P1)

        main(['--site-title', 'From Flag'])

        page = read_live(os.path.join(project, 'public'), 'a/p1/index.html').decode('utf-8')
        assert '<title>Alpha - From Flag</title>' in page

    def test_missing_content_exits(self, project, capsys):
        """A build without a content directory exits with status 1."""
        with pytest.raises(SystemExit) as excinfo:
            main(['--content', 'missing'])

        assert excinfo.value.code == 1
        assert 'does not exist' in capsys.readouterr().err
