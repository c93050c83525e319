"""
Theme manager.

A theme is a directory holding ``templates/`` (Jinja2), an optional
``static/`` tree copied under ``assets/<theme>/`` and an optional
``theme.yml`` with light and dark colour palettes. User themes shadow the
built-in ones of the same name.
"""

import os
import re
import hashlib
import logging
import threading
from typing import Dict, List, Optional, Set

import yaml
import csscompressor
import rjsmin
from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from .errors import ThemeError


BUILTIN_THEMES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'themes')

REQUIRED_TEMPLATES = ('page.html', 'category.html', 'index.html')
NOT_FOUND_TEMPLATE = '404.html'
THEME_FILE = 'theme.yml'
THEME_NAME_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')

PALETTE_KEYS = ('background', 'foreground', 'primary', 'secondary', 'accent', 'border', 'muted')
CSS_VARIABLES = {
    'background': '--bg-color',
    'foreground': '--fg-color',
    'primary': '--primary-color',
    'secondary': '--secondary-color',
    'accent': '--accent-color',
    'border': '--border-color',
    'muted': '--muted-color',
}
DEFAULT_PALETTES = {
    'light': {
        'background': '#ffffff',
        'foreground': '#333333',
        'primary': '#3498db',
        'secondary': '#2c3e50',
        'accent': '#e74c3c',
        'border': '#e0e0e0',
        'muted': '#666666',
    },
    'dark': {
        'background': '#1a1a1a',
        'foreground': '#e0e0e0',
        'primary': '#5dade2',
        'secondary': '#34495e',
        'accent': '#ec7063',
        'border': '#333333',
        'muted': '#999999',
    },
}


def _read_palettes(theme_file: str) -> Dict[str, Dict[str, str]]:
    palettes = {mode: dict(values) for mode, values in DEFAULT_PALETTES.items()}
    if not os.path.isfile(theme_file):
        return palettes
    try:
        with open(theme_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ThemeError(f"Invalid YAML in {theme_file}: {e}")
    except (IOError, OSError, PermissionError) as e:
        raise ThemeError(f"Cannot read {theme_file}: {e}")
    if not isinstance(data, dict):
        raise ThemeError(f"{theme_file} must contain a mapping")
    for mode in palettes:
        values = data.get(mode) or {}
        if not isinstance(values, dict):
            raise ThemeError(f"{theme_file}: '{mode}' must be a mapping of colours")
        for key, value in values.items():
            if key in PALETTE_KEYS and value is not None:
                palettes[mode][key] = str(value)
    return palettes


def palette_css(palettes: Dict[str, Dict[str, str]]) -> str:
    """CSS custom properties for both colour schemes."""
    def block(palette, indent):
        return ''.join(f"{indent}{CSS_VARIABLES[key]}: {palette[key]};\n" for key in PALETTE_KEYS)

    return (
        ":root {\n" + block(palettes['light'], '    ') + "}\n\n"
        "@media (prefers-color-scheme: dark) {\n"
        "    :root {\n" + block(palettes['dark'], '        ') + "    }\n}\n\n"
        "[data-theme=\"light\"] {\n" + block(palettes['light'], '    ') + "}\n\n"
        "[data-theme=\"dark\"] {\n" + block(palettes['dark'], '    ') + "}\n\n"
        "body {\n    background-color: var(--bg-color);\n    color: var(--fg-color);\n}\n"
    )


def fingerprint_directory(path: str) -> str:
    """Hash of every file name and content below ``path``."""
    digest = hashlib.sha256()
    digest.update(os.path.abspath(path).encode('utf-8'))
    for dirpath, dirnames, filenames in os.walk(path):
        dirnames.sort()
        for filename in sorted(filenames):
            file_path = os.path.join(dirpath, filename)
            rel = os.path.relpath(file_path, path).replace(os.sep, '/')
            digest.update(b'\0' + rel.encode('utf-8') + b'\0')
            try:
                with open(file_path, 'rb') as f:
                    digest.update(f.read())
            except (IOError, OSError):
                digest.update(b'<unreadable>')
    return digest.hexdigest()


class Theme:
    """Read-only handle on one validated theme."""

    def __init__(self, name: str, path: str, fingerprint: str):
        self.name = name
        self.path = path
        self.fingerprint = fingerprint
        self.templates_dir = os.path.join(path, 'templates')
        self.static_dir = os.path.join(path, 'static')
        self.palettes = _read_palettes(os.path.join(path, THEME_FILE))
        self.env = Environment(
            loader=FileSystemLoader(self.templates_dir),
            autoescape=select_autoescape(['html', 'xml']),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            auto_reload=False,
        )

    @property
    def assets_url(self) -> str:
        return f'/assets/{self.name}/'

    def has_template(self, template_name: str) -> bool:
        return os.path.isfile(os.path.join(self.templates_dir, template_name))

    def get_template(self, template_name: str):
        return self.env.get_template(template_name)

    def css(self) -> str:
        return palette_css(self.palettes)

    def static_files(self) -> List[str]:
        """Static files relative to the theme's static directory, sorted."""
        files = []
        if not os.path.isdir(self.static_dir):
            return files
        for dirpath, dirnames, filenames in os.walk(self.static_dir):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith('.'))
            for filename in filenames:
                if filename.startswith('.'):
                    continue
                rel = os.path.relpath(os.path.join(dirpath, filename), self.static_dir)
                files.append(rel.replace(os.sep, '/'))
        return sorted(files)

    def assets(self, minify: bool = False) -> Dict[str, bytes]:
        """
        Output path -> bytes for every published theme asset: the static
        tree, the generated ``theme.css`` and, with ``minify``, ``.min.css``
        and ``.min.js`` siblings.
        """
        logger = logging.getLogger('LFBlog.theme')
        prefix = f'assets/{self.name}/'
        assets = {prefix + 'theme.css': self.css().encode('utf-8')}
        for rel in self.static_files():
            source = os.path.join(self.static_dir, *rel.split('/'))
            try:
                with open(source, 'rb') as f:
                    data = f.read()
            except (IOError, OSError, PermissionError) as e:
                raise ThemeError(f"Cannot read theme asset {source}: {e}")
            assets[prefix + rel] = data

        if minify:
            for path in sorted(assets):
                try:
                    if path.endswith('.css') and not path.endswith('.min.css'):
                        minified = csscompressor.compress(assets[path].decode('utf-8'))
                        assets[path[:-len('.css')] + '.min.css'] = minified.encode('utf-8')
                        logger.debug(f"Minified CSS: {path}")
                    elif path.endswith('.js') and not path.endswith('.min.js'):
                        minified = rjsmin.jsmin(assets[path].decode('utf-8'))
                        assets[path[:-len('.js')] + '.min.js'] = minified.encode('utf-8')
                        logger.debug(f"Minified JS: {path}")
                except UnicodeDecodeError as e:
                    logger.error(f"Failed to minify {path}: {e}")
        return assets

    def __repr__(self):
        return f"Theme({self.name!r} at {self.path!r})"


class ThemeManager:
    """Resolves theme names to cached Theme handles."""

    def __init__(self, themes_dir: Optional[str] = None, builtin_dir: str = BUILTIN_THEMES_DIR):
        self.themes_dir = os.path.abspath(themes_dir) if themes_dir else None
        self.builtin_dir = builtin_dir
        self.logger = logging.getLogger('LFBlog.theme')
        self._themes = {}
        self._lock = threading.Lock()

    def locate(self, name: str) -> Optional[str]:
        if not name or not THEME_NAME_RE.match(name):
            return None
        for base in (self.themes_dir, self.builtin_dir):
            if not base:
                continue
            candidate = os.path.join(base, name)
            if os.path.isdir(candidate):
                return candidate
        return None

    def available(self) -> List[str]:
        names = set()
        for base in (self.themes_dir, self.builtin_dir):
            if base and os.path.isdir(base):
                names.update(entry for entry in os.listdir(base)
                             if os.path.isdir(os.path.join(base, entry)) and THEME_NAME_RE.match(entry))
        return sorted(names)

    def fingerprint(self, name: str) -> Optional[str]:
        path = self.locate(name)
        return fingerprint_directory(path) if path else None

    def get(self, name: str) -> Theme:
        """Return the validated theme ``name``. Raises ThemeError."""
        with self._lock:
            theme = self._themes.get(name)
            if theme is not None:
                return theme
            path = self.locate(name)
            if path is None:
                raise ThemeError(f"Theme not found: {name}")
            missing = [t for t in REQUIRED_TEMPLATES
                       if not os.path.isfile(os.path.join(path, 'templates', t))]
            if missing:
                raise ThemeError(f"Theme '{name}' is missing required templates: {', '.join(missing)}")
            theme = Theme(name, path, fingerprint_directory(path))
            self._themes[name] = theme
            self.logger.debug(f"Loaded theme {name} from {path}")
            return theme

    def begin_generation(self) -> Set[str]:
        """Drop cached themes whose files changed; return their names."""
        changed = set()
        with self._lock:
            for name, theme in list(self._themes.items()):
                path = self.locate(name)
                if path != theme.path or fingerprint_directory(path) != theme.fingerprint:
                    del self._themes[name]
                    changed.add(name)
        if changed:
            self.logger.info(f"Theme files changed: {', '.join(sorted(changed))}")
        return changed
