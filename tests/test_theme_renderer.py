"""Tests for the theme manager and the page renderer."""

import pytest
import os

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from lfblog_pkg.document import DocumentParser
from lfblog_pkg.errors import TemplateError, ThemeError
from lfblog_pkg.links import LinkIndex
from lfblog_pkg.recommender import Recommendation
from lfblog_pkg.renderer import PageRenderer, SiteContext, resolve_theme_name
from lfblog_pkg.scanner import Scanner
from lfblog_pkg.settings import normalize_settings
from lfblog_pkg.theme import ThemeManager, palette_css, DEFAULT_PALETTES
from conftest import write


MINIMAL_TEMPLATES = {
    'page.html': "PAGE {{ page.title }} {{ theme_assets }}",
    'category.html': "CATEGORY {{ category.title }}",
    'index.html': "INDEX {{ site.title }}",
}


def make_theme(themes_dir, name, templates=None, extra=None):
    """Write a theme with the given templates under themes_dir."""
    files = dict(MINIMAL_TEMPLATES if templates is None else templates)
    for filename, text in files.items():
        write(os.path.join(themes_dir, name, 'templates', filename), text)
    for rel, text in (extra or {}).items():
        write(os.path.join(themes_dir, name, rel), text)
    return os.path.join(themes_dir, name)


@pytest.fixture
def rendered_site(site_settings, scenario_content):
    """Scanned tree, parsed documents and a SiteContext for the scenario content."""
    tree = Scanner(scenario_content).scan().tree
    index = LinkIndex.from_tree(scenario_content, tree)
    parser = DocumentParser()
    documents = {node.id: parser.parse_file(node, index).document for node in tree.pages()}
    recs = {'a/p1.md': [Recommendation('a/p2.md', 'Bravo', '/a/p2/', 0.5)]}
    context = SiteContext(normalize_settings(site_settings), tree, documents,
                          ['a/p1.md', 'a/p2.md'], lambda node_id: recs.get(node_id, []))
    return tree, documents, context


class TestThemeManager:
    """Test cases for ThemeManager."""

    def test_builtin_default(self, temp_dir):
        """The built-in default theme validates and is cached."""
        manager = ThemeManager(os.path.join(temp_dir, 'themes'))
        theme = manager.get('default')

        assert theme.has_template('page.html')
        assert theme.has_template('404.html')
        assert theme.assets_url == '/assets/default/'
        assert manager.get('default') is theme
        assert 'default' in manager.available()

    def test_user_theme_shadows_builtin(self, temp_dir):
        """A user theme of the same name is found first."""
        themes_dir = os.path.join(temp_dir, 'themes')
        path = make_theme(themes_dir, 'default')

        theme = ThemeManager(themes_dir).get('default')

        assert theme.path == path
        assert not theme.has_template('404.html')

    def test_missing_theme(self, temp_dir):
        """An unknown theme name is a ThemeError."""
        with pytest.raises(ThemeError, match="Theme not found"):
            ThemeManager(os.path.join(temp_dir, 'themes')).get('nope')

    def test_invalid_theme_name(self, temp_dir):
        """Names that could escape the themes directory are never located."""
        manager = ThemeManager(os.path.join(temp_dir, 'themes'))
        assert manager.locate('../default') is None
        assert manager.locate('') is None

    def test_missing_required_template(self, temp_dir):
        """A theme without every required template is rejected."""
        themes_dir = os.path.join(temp_dir, 'themes')
        make_theme(themes_dir, 'partial', {'page.html': 'x'})

        with pytest.raises(ThemeError, match="category.html, index.html"):
            ThemeManager(themes_dir).get('partial')

    def test_begin_generation_detects_changes(self, temp_dir):
        """Editing a theme file invalidates it for the next generation."""
        themes_dir = os.path.join(temp_dir, 'themes')
        path = make_theme(themes_dir, 'mine')
        manager = ThemeManager(themes_dir)
        first = manager.get('mine')

        assert manager.begin_generation() == set()
        write(os.path.join(path, 'templates', 'page.html'), "CHANGED")

        assert manager.begin_generation() == {'mine'}
        assert manager.get('mine') is not first

    def test_invalid_theme_yml(self, temp_dir):
        """Malformed palettes are reported as ThemeError."""
        themes_dir = os.path.join(temp_dir, 'themes')
        make_theme(themes_dir, 'bad', extra={'theme.yml': "light: [1, 2\n"})

        with pytest.raises(ThemeError, match="Invalid YAML"):
            ThemeManager(themes_dir).get('bad')


class TestThemeAssets:
    """Test cases for palettes and published assets."""

    def test_palette_css(self):
        """Both palettes become CSS custom properties."""
        css = palette_css(DEFAULT_PALETTES)

        assert ':root {\n    --bg-color: #ffffff;' in css
        assert '@media (prefers-color-scheme: dark)' in css
        assert '--bg-color: #1a1a1a;' in css
        assert '[data-theme="dark"]' in css

    def test_palette_override(self, temp_dir):
        """theme.yml overrides individual colours."""
        themes_dir = os.path.join(temp_dir, 'themes')
        make_theme(themes_dir, 'red', extra={'theme.yml': "light:\n  primary: '#ff0000'\n"})

        css = ThemeManager(themes_dir).get('red').css()

        assert '--primary-color: #ff0000;' in css
        assert '--primary-color: #5dade2;' in css

    def test_assets_with_minify(self, temp_dir):
        """Minification adds .min.css and .min.js siblings."""
        manager = ThemeManager(os.path.join(temp_dir, 'themes'))
        assets = manager.get('default').assets(minify=True)

        assert 'assets/default/theme.css' in assets
        assert 'assets/default/theme.min.css' in assets
        assert 'assets/default/css/style.css' in assets
        assert 'assets/default/css/style.min.css' in assets
        assert 'assets/default/js/site.min.js' in assets
        assert len(assets['assets/default/css/style.min.css']) < len(assets['assets/default/css/style.css'])

    def test_assets_without_minify(self, temp_dir):
        """Without minify only the sources are published."""
        assets = ThemeManager(os.path.join(temp_dir, 'themes')).get('default').assets()
        assert not any('.min.' in path for path in assets)


class TestThemeResolution:
    """Test cases for resolve_theme_name."""

    def test_resolution_order(self, site_settings):
        """Page field, then nearest category, then the site default."""
        content = site_settings['content']
        write(os.path.join(content, 'a', 'index.md'), "---\ntheme: dusk\n---\n")
        write(os.path.join(content, 'a', 'inner', 'p.md'), "# P")
        write(os.path.join(content, 'b', 'q.md'), "# Q")
        tree = Scanner(content).scan().tree
        index = LinkIndex.from_tree(content, tree)
        parser = DocumentParser()

        inner = tree.get('a/inner/p.md')
        plain = parser.parse(inner, "# P", index).document
        themed = parser.parse(inner, "---\ntheme: night\n---\n# P", index).document
        other = tree.get('b/q.md')

        assert resolve_theme_name(themed, inner, 'default') == 'night'
        assert resolve_theme_name(plain, inner, 'default') == 'dusk'
        assert resolve_theme_name(None, tree.get('a'), 'default') == 'dusk'
        assert resolve_theme_name(parser.parse(other, "# Q", index).document, other, 'default') == 'default'


class TestPageRenderer:
    """Test cases for PageRenderer."""

    def test_render_page(self, temp_dir, rendered_site):
        """Page fields, navigation and recommendations are bound into the page."""
        tree, documents, context = rendered_site
        renderer = PageRenderer(ThemeManager(os.path.join(temp_dir, 'themes')))

        html = renderer.render_page(documents['a/p1.md'], tree.get('a/p1.md'), context)

        assert '<title>Alpha - Test Blog</title>' in html
        assert '<a href="/a/p2/">the second page</a>' in html
        assert '<a href="/a/">Articles</a>' in html
        assert '<a href="/b/">b</a>' in html
        assert 'class="recommendations"' in html
        assert '<li>x</li>' in html
        assert '/assets/default/theme.css' in html
        assert 'https://example.com/feed/index.xml' in html

    def test_render_category_and_index(self, temp_dir, rendered_site):
        """Category listings skip nothing published; the home page lists latest pages."""
        tree, documents, context = rendered_site
        renderer = PageRenderer(ThemeManager(os.path.join(temp_dir, 'themes')))

        category = renderer.render_category(tree.get('a'), context)
        index = renderer.render_index(context)

        assert '<h1>Articles</h1>' in category
        assert category.index('/a/p1/') < category.index('/a/p2/') < category.index('/a/p4/')
        assert 'Latest' in index
        assert '/a/p1/' in index

    def test_render_not_found(self, temp_dir, rendered_site):
        """The 404 page is optional."""
        tree, documents, context = rendered_site
        themes_dir = os.path.join(temp_dir, 'themes')

        assert 'Page not found' in PageRenderer(ThemeManager(themes_dir)).render_not_found(context)

        make_theme(themes_dir, 'bare')
        assert PageRenderer(ThemeManager(themes_dir), 'bare').render_not_found(context) is None

    def test_missing_page_template(self, temp_dir, rendered_site, scenario_content):
        """A page asking for a template its theme lacks fails with its node id."""
        tree, documents, context = rendered_site
        node = tree.get('a/p2.md')
        document = DocumentParser().parse(node, "---\ntemplate: gallery\n---\n# Two",
                                          LinkIndex.from_tree(scenario_content, tree)).document

        with pytest.raises(TemplateError) as excinfo:
            PageRenderer(ThemeManager(os.path.join(temp_dir, 'themes'))).render_page(document, node, context)

        assert excinfo.value.node_id == 'a/p2.md'
        assert 'page-gallery.html' in str(excinfo.value)

    def test_template_errors_are_contained(self, temp_dir, rendered_site):
        """Syntax errors and undefined values become TemplateError."""
        tree, documents, context = rendered_site
        themes_dir = os.path.join(temp_dir, 'themes')
        make_theme(themes_dir, 'broken', {
            'page.html': "{{ page.missing_field }}",
            'category.html': "{% if %}",
            'index.html': "ok",
        })
        renderer = PageRenderer(ThemeManager(themes_dir), 'broken')

        with pytest.raises(TemplateError, match="Undefined"):
            renderer.render_page(documents['a/p1.md'], tree.get('a/p1.md'), context)
        with pytest.raises(TemplateError, match="syntax error"):
            renderer.render_category(tree.get('a'), context)

    def test_unknown_theme_reported_with_node(self, temp_dir, rendered_site):
        """A page naming a missing theme fails that page only."""
        tree, documents, context = rendered_site
        renderer = PageRenderer(ThemeManager(os.path.join(temp_dir, 'themes')), 'missing-theme')

        with pytest.raises(ThemeError) as excinfo:
            renderer.render_category(tree.get('b'), context)
        assert excinfo.value.node_id == 'b'

    def test_rendering_is_deterministic(self, temp_dir, rendered_site):
        """Rendering the same inputs twice gives identical output."""
        tree, documents, context = rendered_site
        renderer = PageRenderer(ThemeManager(os.path.join(temp_dir, 'themes')))
        node = tree.get('b/p3.md')

        assert (renderer.render_page(documents['b/p3.md'], node, context)
                == renderer.render_page(documents['b/p3.md'], node, context))
