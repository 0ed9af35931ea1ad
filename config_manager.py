"""
Configuration management for the quantization application.
Handles loading, saving, and managing user preferences.
"""

import copy
import json
import logging
import os
from typing import Any, Dict
from pathlib import Path

__all__ = [
    'ConfigManager',
]

logger = logging.getLogger(__name__)


class ConfigManager:
    """Manages user preferences that apply across CLI runs."""

    DEFAULT_CONFIG = {
        # Defaults for job fields left out of a job config
        "defaults": {
            "num_colors": 5,
            "tree": "standard",
            "dither_mode": "floyd_steinberg",
            "edge_policy": "skip",
            "sweep_min": 2,
            "sweep_max": 8
        },

        # Last used paths
        "paths": {
            "last_input_dir": None,
            "last_output_dir": None
        },

        # Where generated palettes are stored
        "palette_file": "palette.json",

        # Recent outputs (keep last 10)
        "recent_files": []
    }

    def __init__(self, config_file: str = "quantizer_prefs.json"):
        """
        Initialize config manager.

        Args:
            config_file: Path to preferences file
        """
        self.config_file = config_file
        self.config = self._load_config()

    def _load_config(self) -> Dict:
        """Load config from file, or create default if not exists."""
        defaults = copy.deepcopy(self.DEFAULT_CONFIG)
        if os.path.exists(self.config_file):
            try:
                with open(self.config_file, 'r', encoding='utf-8') as f:
                    loaded = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Error loading preferences from {self.config_file}: {e}")
                return defaults
            if not isinstance(loaded, dict):
                logger.warning(f"Ignoring preferences in {self.config_file}: not a JSON object")
                return defaults
            # Merge with defaults to handle new settings
            return self._merge_configs(defaults, loaded)

        self.config = defaults
        self.save()
        return defaults

    def _merge_configs(self, default: Dict, loaded: Dict) -> Dict:
        """
        Recursively merge loaded config with defaults.
        Ensures all default keys exist even if not in loaded config.
        """
        for key, value in default.items():
            if key in loaded:
                if isinstance(value, dict) and isinstance(loaded[key], dict):
                    default[key] = self._merge_configs(value, loaded[key])
                else:
                    default[key] = loaded[key]
        return default

    def save(self):
        """Save current config to file."""
        try:
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=4)
        except OSError as e:
            logger.warning(f"Error saving preferences to {self.config_file}: {e}")

    def get(self, *keys: str, default: Any = None) -> Any:
        """
        Get config value by nested keys.

        Args:
            *keys: Nested keys (e.g., "defaults", "num_colors")
            default: Default value if key not found

        Returns:
            Config value or default

        Example:
            config.get("defaults", "num_colors")  # Returns 5
        """
        value = self.config
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, *keys: str, value: Any):
        """
        Set config value by nested keys.

        Example:
            config.set("defaults", "num_colors", value=8)
        """
        if len(keys) == 0:
            return

        current = self.config
        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def update_last_path(self, path_type: str, filepath: str):
        """
        Update last used directory for a path type.

        Args:
            path_type: "input" or "output"
            filepath: File path to extract directory from
        """
        if filepath:
            directory = str(Path(filepath).parent)
            self.set("paths", f"last_{path_type}_dir", value=directory)

    def add_recent_file(self, filepath: str, max_recent: int = 10):
        """
        Add file to recent files list.

        Args:
            filepath: File path to add
            max_recent: Maximum number of recent files to keep
        """
        recent = self.get("recent_files", default=[])

        if filepath in recent:
            recent.remove(filepath)

        recent.insert(0, filepath)
        recent = recent[:max_recent]

        self.set("recent_files", value=recent)
