"""
HTML rendering of pages, category indexes, the home page and the 404 page.

Rendering is a pure function of a Document (or tree node), the SiteContext
and the theme's templates.
"""

import logging
from typing import Callable, Dict, List, Optional

from jinja2 import TemplateError as JinjaTemplateError
from jinja2 import TemplateNotFound, TemplateSyntaxError, UndefinedError

from .errors import TemplateError, ThemeError
from .theme import NOT_FOUND_TEMPLATE


def resolve_theme_name(document, node, default: str) -> str:
    """Page ``theme`` field, then the nearest category theme, then ``default``."""
    if document is not None and document.theme:
        return document.theme
    category = node if node.is_category else node.parent
    while category is not None:
        if category.theme:
            return category.theme
        category = category.parent
    return default


def page_summary(document, node) -> dict:
    return {
        'id': node.id,
        'title': document.title,
        'url': node.url,
        'summary': document.summary,
        'tags': list(document.tags),
        'date': document.date_display,
        'date_iso': document.date_iso,
        'author': document.author,
    }


class SiteContext:
    """Site-wide values shared by every template in a pass."""

    def __init__(self, settings: dict, tree, documents: Dict[str, object],
                 latest_ids: Optional[List[str]] = None,
                 recommendations: Optional[Callable[[str], list]] = None):
        self.settings = settings
        self.tree = tree
        self.documents = documents
        self.site = {
            'title': settings.get('site_title') or '',
            'description': settings.get('site_description') or '',
            'url': settings.get('site_url') or '',
            'author': settings.get('site_author') or '',
        }
        self.navigation = tree.navigation()
        self.latest = [self.summary_for(node_id) for node_id in (latest_ids or [])]
        self.latest = [item for item in self.latest if item is not None]
        self._recommendations = recommendations or (lambda node_id: [])

    def summary_for(self, node_id: str) -> Optional[dict]:
        document = self.documents.get(node_id)
        node = self.tree.get(node_id)
        if document is None or node is None or document.draft:
            return None
        return page_summary(document, node)

    def recommendations(self, node_id: str) -> List[dict]:
        return [item.as_dict() for item in self._recommendations(node_id)]


class PageRenderer:
    """Renders artifacts through the ThemeManager."""

    def __init__(self, theme_manager, default_theme: str = 'default'):
        self.theme_manager = theme_manager
        self.default_theme = default_theme
        self.logger = logging.getLogger('LFBlog.renderer')

    def theme_for(self, document, node):
        name = resolve_theme_name(document, node, self.default_theme)
        try:
            return self.theme_manager.get(name)
        except ThemeError as e:
            raise ThemeError(str(e), node.id)

    def _render(self, theme, template_name, node_id, **values) -> str:
        try:
            template = theme.get_template(template_name)
            return template.render(**values)
        except TemplateNotFound as e:
            raise TemplateError(f"Template not found in theme '{theme.name}': {e}", node_id)
        except TemplateSyntaxError as e:
            raise TemplateError(f"Template syntax error in {e.name or template_name} line {e.lineno}: {e.message}", node_id)
        except UndefinedError as e:
            raise TemplateError(f"Undefined value in {template_name}: {e}", node_id)
        except (JinjaTemplateError, TypeError, ValueError) as e:
            raise TemplateError(f"Failed to render {template_name}: {e}", node_id)

    def _base_values(self, theme, context: SiteContext, current_url: str) -> dict:
        return {
            'site': context.site,
            'navigation': context.navigation,
            'theme_assets': theme.assets_url,
            'current_url': current_url,
            'minify': bool(context.settings.get('minify')),
        }

    def _breadcrumbs(self, node) -> List[dict]:
        crumbs = [{'title': a.title, 'url': a.url} for a in node.ancestors() if a.id]
        crumbs.reverse()
        return crumbs

    def render_page(self, document, node, context: SiteContext) -> str:
        theme = self.theme_for(document, node)
        template_name = f'page-{document.template}.html' if document.template else 'page.html'
        category = node.parent
        page = page_summary(document, node)
        page.update({
            'body': document.body_html,
            'headings': [{'level': level, 'text': text, 'anchor': anchor}
                         for level, text, anchor in document.headings],
            'attachments': [{'filename': a.filename, 'url': a.url} for a in node.attachments],
            'metadata': document.metadata,
        })
        return self._render(
            theme, template_name, node.id,
            page=page,
            category={'title': category.title, 'url': category.url} if category is not None and category.id else None,
            breadcrumbs=self._breadcrumbs(node),
            recommendations=context.recommendations(node.id),
            **self._base_values(theme, context, node.url),
        )

    def render_category(self, node, context: SiteContext) -> str:
        theme = self.theme_for(None, node)
        subcategories = [
            {'title': child.title, 'url': child.url, 'description': child.description or ''}
            for child in node.children if child.is_category
        ]
        pages = [context.summary_for(child.id) for child in node.children if child.is_page]
        return self._render(
            theme, 'category.html', node.id,
            category={'id': node.id, 'title': node.title, 'url': node.url,
                      'description': node.description or ''},
            subcategories=subcategories,
            pages=[page for page in pages if page is not None],
            breadcrumbs=self._breadcrumbs(node),
            **self._base_values(theme, context, node.url),
        )

    def render_index(self, context: SiteContext) -> str:
        root = context.tree.root
        theme = self.theme_for(None, root)
        categories = [
            {'title': child.title, 'url': child.url, 'description': child.description or ''}
            for child in root.children if child.is_category
        ]
        pages = [context.summary_for(child.id) for child in root.children if child.is_page]
        return self._render(
            theme, 'index.html', root.id,
            categories=categories,
            pages=[page for page in pages if page is not None],
            latest=context.latest,
            **self._base_values(theme, context, '/'),
        )

    def render_not_found(self, context: SiteContext) -> Optional[str]:
        """The 404 page, or None when the theme has no 404 template."""
        root = context.tree.root
        theme = self.theme_for(None, root)
        if not theme.has_template(NOT_FOUND_TEMPLATE):
            return None
        return self._render(theme, NOT_FOUND_TEMPLATE, None,
                            latest=context.latest,
                            **self._base_values(theme, context, '/404.html'))

    def site_theme_name(self, tree) -> str:
        return resolve_theme_name(None, tree.root, self.default_theme)
