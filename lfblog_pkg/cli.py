#!/usr/bin/env python3
"""
Command-line interface for LF Blog - incremental blog compiler.
"""

import os
import sys
import json
import time
import argparse
import logging
from datetime import date
from typing import List, Optional

from . import __version__
from .core import BuildOrchestrator, setup_logging
from .scanner import INDEX_FILE, ATTACHMENT_DIR, slugify
from .settings import LFBlogSettings
from .watcher import ContentWatcher


# Arguments that select an action rather than override a setting
ACTION_ARGS = ('init', 'status', 'new_category', 'new_page', 'category', 'no_bundle', 'config_dir')


def _write_new_file(path: str, content: str, label: str) -> bool:
    if os.path.exists(path):
        print(f"{label} already exists: {os.path.relpath(path)}")
        return False
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(content)
    print(f"Created {label.lower()}: {os.path.relpath(path)}")
    return True


def _front_matter(**fields) -> str:
    lines = ['---']
    for key, value in fields.items():
        lines.append(f"{key}: {json.dumps(value, ensure_ascii=False)}")
    lines.append('---')
    return '\n'.join(lines) + '\n'


def create_category(name: str, content_dir: str, description: Optional[str] = None) -> str:
    """Create a category directory with an index.md holding its title. Returns the directory."""
    parts = [part.strip() for part in name.replace('\\', '/').split('/') if part.strip()]
    if not parts or any(part in ('.', '..') or part.startswith(('.', '_')) for part in parts):
        raise ValueError(f"Invalid category name: {name!r}")
    category_dir = os.path.join(content_dir, *parts)
    fields = {'title': parts[-1]}
    if description:
        fields['description'] = description
    _write_new_file(os.path.join(category_dir, INDEX_FILE), _front_matter(**fields), 'Category')
    return category_dir


def create_page(title: str, content_dir: str, category: Optional[str] = None, bundle: bool = True) -> str:
    """
    Create a page source. A bundle is ``<slug>/<slug>.md`` with an empty
    attachment directory; otherwise a single ``<slug>.md`` file.

    Returns:
        Path of the created Markdown file
    """
    parent = create_category(category, content_dir) if category else content_dir
    slug = slugify(title)
    body = _front_matter(title=title, date=date.today().isoformat(), tags=[])
    body += f"\n# {title}\n\nWrite your page here.\n"
    if bundle:
        page_dir = os.path.join(parent, slug)
        md_path = os.path.join(page_dir, f'{slug}.md')
        os.makedirs(os.path.join(page_dir, ATTACHMENT_DIR), exist_ok=True)
    else:
        md_path = os.path.join(parent, f'{slug}.md')
    if os.path.exists(md_path):
        raise FileExistsError(f"Page already exists: {md_path}")
    _write_new_file(md_path, body, 'Page')
    return md_path


def create_starter_structure(base_dir: Optional[str] = None) -> None:
    """Create a content tree with one category and two related pages, plus a themes directory."""
    base_dir = base_dir or os.getcwd()
    content_dir = os.path.join(base_dir, 'content')
    themes_dir = os.path.join(base_dir, 'themes')

    for directory in (content_dir, themes_dir):
        if os.path.exists(directory):
            print(f"Directory already exists: {os.path.relpath(directory)}")
        else:
            os.makedirs(directory, exist_ok=True)
            print(f"Created directory: {os.path.relpath(directory)}")

    _write_new_file(os.path.join(content_dir, INDEX_FILE),
                    _front_matter(title='Home', description='Notes about my collections'), 'Home index')

    create_category('Getting Started', content_dir, 'How this blog is organised')

    welcome = _front_matter(
        title='Welcome to LF Blog',
        date=date.today().isoformat(),
        tags=['lfblog', 'getting-started'],
        description='Your first page, compiled from Markdown.',
    ) + """
# Welcome to LF Blog

Every directory under `content/` is a **category** and every Markdown file is
a **page**. Files placed in an `attachment/` directory next to a page are
published alongside it.

See [how pages are organised](organising-pages.md) for the details.
"""
    _write_new_file(os.path.join(content_dir, 'Getting Started', 'welcome.md'), welcome, 'Sample page')

    organising = _front_matter(
        title='Organising pages',
        date=date.today().isoformat(),
        tags=['lfblog', 'layout'],
    ) + """
# Organising pages

A directory holding a single `<name>.md` file is a page bundle; its
`attachment/` directory belongs to that page alone. Pages that share tags are
recommended to each other.

Back to the [welcome page](welcome.md).
"""
    _write_new_file(os.path.join(content_dir, 'Getting Started', 'organising-pages.md'),
                    organising, 'Sample page')

    print("\nStarter structure created successfully!")
    print("\nNext steps:")
    print("1. Edit the configuration file (lfblog.yml)")
    print("2. Add categories and pages under 'content/'")
    print("3. Put custom themes in 'themes/<name>/templates/'")
    print("4. Run 'lfblog' to build once or 'lfblog --watch' to rebuild on changes")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='LF Blog - incremental blog compiler')
    parser.add_argument('--config-dir', type=str,
                        help='Directory holding lfblog.yml/lfblog.json (default: current directory)')
    parser.add_argument('--output', type=str,
                        help='Output root for the published site')
    parser.add_argument('--content', type=str,
                        help='Content directory containing categories and pages')
    parser.add_argument('--themes', type=str,
                        help='Directory with user themes')
    parser.add_argument('--theme', type=str,
                        help='Default theme name')
    parser.add_argument('--site-title', type=str, help='Site title for metadata')
    parser.add_argument('--site-description', type=str, help='Site description for metadata')
    parser.add_argument('--site-url', type=str,
                        help='Site URL for RSS feeds and sitemaps')
    parser.add_argument('--site-author', type=str, help='Site author')
    parser.add_argument('--recommend-k', type=int,
                        help='Number of recommendations per page')
    parser.add_argument('--excluded-categories', type=str,
                        help='Comma-separated category paths excluded from recommendations')
    parser.add_argument('--tag-weight', type=float, help='Weight of tag overlap in similarity')
    parser.add_argument('--term-weight', type=float, help='Weight of term similarity')
    parser.add_argument('--category-weight', type=float,
                        help='Score bonus for pages in the same category')
    parser.add_argument('--summary-length', type=int, help='Maximum summary length in characters')
    parser.add_argument('--latest-count', type=int, help='Number of pages listed on the home page')
    parser.add_argument('--hash-mode', type=str, choices=['content', 'stat'],
                        help='Change detection by content hash or by size and mtime')
    parser.add_argument('--workers', type=int, help='Worker threads for parsing and rendering')
    parser.add_argument('--parallel-threshold', type=int,
                        help='Minimum number of tasks before threads are used')
    parser.add_argument('--debounce', type=float,
                        help='Seconds to wait for more changes before a watch rebuild')
    parser.add_argument('--max-pending-paths', type=int,
                        help='Pending changed paths before falling back to a full rescan')
    parser.add_argument('--keep-generations', type=int,
                        help='Number of published generations kept on disk')
    parser.add_argument('--robots', type=str, choices=['public', 'private'],
                        help='Robots.txt configuration')
    parser.add_argument('--minify', action='store_true', default=None,
                        help='Also write minified theme CSS and JS')
    parser.add_argument('--log-dir', type=str,
                        help="Directory for debug log files (default: 'logs')")
    parser.add_argument('--watch', action='store_true', default=None,
                        help='Watch content and themes and rebuild on changes')
    parser.add_argument('--status', action='store_true',
                        help='Print the build status as JSON after building')
    parser.add_argument('--init', type=str, choices=['yml', 'yaml', 'json'],
                        help='Create a sample configuration file and starter content')
    parser.add_argument('--new-category', type=str, metavar='NAME',
                        help='Create a category directory under the content root')
    parser.add_argument('--new-page', type=str, metavar='TITLE',
                        help='Create a page under the content root')
    parser.add_argument('--category', type=str,
                        help='Category path for --new-page')
    parser.add_argument('--no-bundle', action='store_true',
                        help='With --new-page, create a single Markdown file instead of a page bundle')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def watch(orchestrator: BuildOrchestrator, settings_loader: LFBlogSettings, args_dict: dict) -> None:
    """Rebuild on changes until interrupted; a changed config file reloads the settings."""
    logger = logging.getLogger('LFBlog.cli')
    config_path = settings_loader.config_file_path
    config_mtime = os.path.getmtime(config_path) if config_path and os.path.exists(config_path) else None

    with ContentWatcher(orchestrator):
        try:
            while True:
                time.sleep(1)
                if config_path and os.path.exists(config_path):
                    mtime = os.path.getmtime(config_path)
                    if mtime != config_mtime:
                        config_mtime = mtime
                        settings_loader.reload()
                        orchestrator.reload_settings(settings_loader.merge_with_args(args_dict))
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings_loader = LFBlogSettings(args.config_dir)

    # Handle init command
    if args.init:
        config_path = settings_loader.create_sample_config(args.init)
        print(f"Created sample configuration file: {config_path}")
        print("\nCreating starter project structure...")
        create_starter_structure(settings_loader.config_dir)
        print("\nYour new LF Blog is ready!")
        return

    config_settings = settings_loader.load_settings()

    if args.new_category or args.new_page:
        content_dir = config_settings['content']
        if args.content:
            content_dir = args.content
        try:
            if args.new_category:
                create_category(args.new_category, content_dir)
            if args.new_page:
                create_page(args.new_page, content_dir, args.category, bundle=not args.no_bundle)
        except (ValueError, IOError, OSError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        return

    # Convert argparse Namespace to dict, excluding None values for proper merging
    args_dict = {k: v for k, v in vars(args).items() if v is not None and k not in ACTION_ARGS}

    # Command line arguments take precedence over the config file
    final_settings = settings_loader.merge_with_args(args_dict)
    for key in ('content', 'output', 'themes'):
        final_settings[key] = os.path.expanduser(final_settings[key])

    logger = setup_logging(final_settings['log_dir'] or 'logs')

    orchestrator = BuildOrchestrator(final_settings)
    try:
        result = orchestrator.build(full=True)
        if final_settings['watch']:
            watch(orchestrator, settings_loader, args_dict)
        status = orchestrator.status()
        if args.status:
            print(json.dumps(status.as_dict(), indent=2, sort_keys=True))
    finally:
        orchestrator.close()

    if result is not None:
        logger.info(f"Published generation {status.generation}: "
                    f"{len(status.node_errors)} pages with errors, {len(status.warnings)} with warnings")
    if status.last_error:
        print(f"Error: {status.last_error}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
