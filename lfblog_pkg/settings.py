#!/usr/bin/env python3
"""
Settings loader for the LF Blog compiler.
Supports configuration from lfblog.yml, lfblog.yaml or lfblog.json files.
"""

import os
import json
import logging
import yaml
from typing import Dict, Any, Optional


logger = logging.getLogger('LFBlog.settings')


class LFBlogSettings:
    """Load and manage LF Blog configuration settings."""

    # Default configuration
    DEFAULT_SETTINGS = {
        'content': 'content',
        'output': 'output',
        'themes': 'themes',
        'theme': 'default',
        'site_title': 'LF Blog',
        'site_description': '',
        'site_url': None,
        'site_author': None,
        'recommend_k': 5,
        'excluded_categories': [],
        'tag_weight': 1.0,
        'term_weight': 0.25,
        'category_weight': 0.0,
        'summary_length': 200,
        'latest_count': 10,
        'hash_mode': 'content',
        'workers': None,
        'parallel_threshold': 12,
        'debounce': 0.5,
        'max_pending_paths': 256,
        'keep_generations': 3,
        'minify': False,
        'robots': 'public',
        'log_dir': None,
        'watch': False,
    }

    # Config file names to look for (in order of preference)
    CONFIG_FILES = ['lfblog.yml', 'lfblog.yaml', 'lfblog.json']

    HASH_MODES = ('content', 'stat')

    def __init__(self, config_dir: str = None):
        """
        Initialize settings loader.

        Args:
            config_dir: Directory to look for config files. Defaults to current directory.
        """
        self.config_dir = config_dir or os.getcwd()
        self.settings = self.DEFAULT_SETTINGS.copy()
        self.config_file_path = None

    def load_settings(self) -> Dict[str, Any]:
        """
        Load settings from configuration file if it exists.

        Returns:
            Dictionary of configuration settings
        """
        config_file = self._find_config_file()

        if config_file:
            self.config_file_path = config_file
            try:
                loaded_settings = self._load_config_file(config_file)
                if loaded_settings:
                    if not isinstance(loaded_settings, dict):
                        raise ValueError("top-level value must be a mapping")
                    self.settings.update(loaded_settings)
                    logger.info(f"Loaded configuration from: {os.path.relpath(config_file)}")
            except Exception as e:
                logger.warning(f"Failed to load config file {config_file}: {e}")

        self.settings = normalize_settings(self.settings)
        return self.settings.copy()

    def reload(self) -> Dict[str, Any]:
        """Discard merged values and read the configuration file again."""
        self.settings = self.DEFAULT_SETTINGS.copy()
        return self.load_settings()

    def _find_config_file(self) -> Optional[str]:
        """
        Find the first available configuration file.

        Returns:
            Path to config file or None if not found
        """
        for filename in self.CONFIG_FILES:
            config_path = os.path.join(self.config_dir, filename)
            if os.path.exists(config_path):
                return config_path
        return None

    def _load_config_file(self, config_path: str) -> Dict[str, Any]:
        """
        Load configuration from a file.

        Args:
            config_path: Path to the configuration file

        Returns:
            Dictionary of configuration settings
        """
        try:
            file_ext = os.path.splitext(config_path)[1].lower()

            with open(config_path, 'r', encoding='utf-8') as f:
                if file_ext in ['.yml', '.yaml']:
                    return yaml.safe_load(f) or {}
                elif file_ext == '.json':
                    return json.load(f) or {}
                else:
                    raise ValueError(f"Unsupported config file format: {file_ext}")
        except FileNotFoundError:
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        except PermissionError:
            raise PermissionError(f"Permission denied reading configuration file: {config_path}")
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file {config_path}: {e}")
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file {config_path}: {e}")
        except (IOError, OSError) as e:
            raise IOError(f"Error reading configuration file {config_path}: {e}")

    def create_sample_config(self, file_format: str = 'yml') -> str:
        """
        Create a sample configuration file.

        Args:
            file_format: Format for config file ('yml', 'yaml', or 'json')

        Returns:
            Path to created sample config file
        """
        filename = f'lfblog.{file_format}'
        config_path = os.path.join(self.config_dir, filename)

        try:
            with open(config_path, 'w', encoding='utf-8') as f:
                if file_format in ['yml', 'yaml']:
                    f.write("# LF Blog configuration file\n\n")
                    f.write("# Site information\n")
                    f.write("site_title: My Collections\n")
                    f.write("site_description: A blog about my collections\n")
                    f.write("site_url: http://localhost:8080\n")
                    f.write("site_author: Site Author\n\n")
                    f.write("# Paths\n")
                    f.write("content: content\n")
                    f.write("output: output\n")
                    f.write("themes: themes\n")
                    f.write("theme: default\n\n")
                    f.write("# Recommendations\n")
                    f.write("recommend_k: 5\n")
                    f.write("excluded_categories: []\n")
                    f.write("tag_weight: 1.0\n")
                    f.write("term_weight: 0.25\n")
                    f.write("category_weight: 0.0  # bonus for pages in the same category\n\n")
                    f.write("# Build settings\n")
                    f.write("summary_length: 200\n")
                    f.write("hash_mode: content  # content or stat\n")
                    f.write("debounce: 0.5\n")
                    f.write("minify: false\n")
                    f.write("robots: public  # public or private\n")
                elif file_format == 'json':
                    sample = {
                        'site_title': 'My Collections',
                        'site_description': 'A blog about my collections',
                        'site_url': 'http://localhost:8080',
                        'site_author': 'Site Author',
                        'content': 'content',
                        'output': 'output',
                        'themes': 'themes',
                        'theme': 'default',
                        'recommend_k': 5,
                        'excluded_categories': [],
                        'tag_weight': 1.0,
                        'term_weight': 0.25,
                        'category_weight': 0.0,
                        'summary_length': 200,
                        'hash_mode': 'content',
                        'debounce': 0.5,
                        'minify': False,
                        'robots': 'public',
                    }
                    json.dump(sample, f, indent=2)
                else:
                    raise ValueError(f"Unsupported config file format: {file_format}")
        except PermissionError:
            raise PermissionError(f"Permission denied creating configuration file: {config_path}")
        except (IOError, OSError) as e:
            raise IOError(f"Error writing configuration file {config_path}: {e}")

        return config_path

    def merge_with_args(self, args_dict: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge configuration settings with command-line arguments.
        Command-line arguments take precedence over config file settings.

        Args:
            args_dict: Dictionary of command-line arguments

        Returns:
            Merged configuration dictionary
        """
        merged = self.settings.copy()

        # Override with non-None command line arguments
        for key, value in args_dict.items():
            if value is None:
                continue
            if key == 'excluded_categories' and isinstance(value, str):
                # Convert comma-separated string to list
                merged[key] = [item.strip() for item in value.split(',') if item.strip()]
            else:
                merged[key] = value

        return normalize_settings(merged)


def normalize_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Fill missing keys and clamp numeric settings into their valid ranges."""
    merged = LFBlogSettings.DEFAULT_SETTINGS.copy()
    merged.update(settings or {})

    merged['recommend_k'] = max(0, int(merged['recommend_k']))
    merged['summary_length'] = max(20, int(merged['summary_length']))
    merged['latest_count'] = max(0, int(merged['latest_count']))
    merged['parallel_threshold'] = max(1, int(merged['parallel_threshold']))
    merged['max_pending_paths'] = max(1, int(merged['max_pending_paths']))
    merged['keep_generations'] = max(2, int(merged['keep_generations']))
    merged['debounce'] = max(0.0, float(merged['debounce']))
    merged['tag_weight'] = float(merged['tag_weight'])
    merged['term_weight'] = float(merged['term_weight'])
    merged['category_weight'] = float(merged['category_weight'])

    workers = merged.get('workers')
    merged['workers'] = max(1, int(workers)) if workers else (os.cpu_count() or 1)

    if merged['hash_mode'] not in LFBlogSettings.HASH_MODES:
        logger.warning(f"Unknown hash_mode {merged['hash_mode']!r}, using 'content'")
        merged['hash_mode'] = 'content'

    excluded = merged.get('excluded_categories') or []
    if isinstance(excluded, str):
        excluded = [item.strip() for item in excluded.split(',')]
    merged['excluded_categories'] = [str(item).strip('/') for item in excluded if str(item).strip('/')]

    if merged.get('site_url'):
        merged['site_url'] = str(merged['site_url']).rstrip('/')

    return merged
