from __future__ import annotations


import os
import json
import logging
from copy import deepcopy
from typing import Any, Dict, List, Tuple, Optional, Union


from rtc_app.utils.general_utils import atomic_save, get_source_dir, normalize_rgb_color


logger = logging.getLogger(__name__)


# Standard isodose bank (percent of prescription) with preassigned colors
DEFAULT_ISODOSE_LEVELS: List[Dict[str, Any]] = [
    {"level": 102, "color": [170, 0, 0]},
    {"level": 100, "color": [238, 69, 0]},
    {"level": 98, "color": [255, 165, 0]},
    {"level": 95, "color": [255, 255, 0]},
    {"level": 90, "color": [0, 255, 0]},
    {"level": 80, "color": [0, 139, 0]},
    {"level": 70, "color": [0, 255, 255]},
    {"level": 50, "color": [0, 0, 255]},
    {"level": 30, "color": [0, 0, 128]},
]

DEFAULT_USER_CONFIG: Dict[str, Any] = {
    "max_isodose_color": [120, 0, 0],
    "isodose_fill_alpha": 70,
    "structure_fill_alpha": 115,
    "nearest_index_tolerance": 0.001,
    "isodose_max_workers": 0,  # 0 runs slices on the calling thread
}


class ConfigManager:
    """Manages configuration settings stored as JSON files."""

    def __init__(self, config_dir: Optional[str] = None) -> None:
        self._set_directories(config_dir)
        self._set_config_files()
        self._load_configs()

    def _set_directories(self, config_dir: Optional[str]) -> None:
        """Set up key project directories."""
        source_dir = get_source_dir()
        project_dir = os.path.dirname(source_dir)

        self.dirs: Dict[str, str] = {
            "project": project_dir,
            "source": source_dir,
            "config_files": config_dir or os.path.join(project_dir, "config_files"),
            "logs": os.path.join(project_dir, "logs"),
        }

    def _set_config_files(self) -> None:
        """Map configuration keys to file paths and data types."""
        initial_files: Dict[str, Tuple[str, type]] = {
            "user_config": ("user_config.json", dict),
            "isodose_levels": ("isodose_levels.json", list),
        }
        self.config_files = {
            key: (os.path.join(self.dirs["config_files"], filename), expected_type)
            for key, (filename, expected_type) in initial_files.items()
        }

    def _load_configs(self) -> None:
        """Load and validate configuration files."""
        defaults: Dict[str, Any] = {
            "user_config": DEFAULT_USER_CONFIG,
            "isodose_levels": DEFAULT_ISODOSE_LEVELS,
        }
        self.configs: Dict[str, Any] = {}
        for key, (file_path, expected_type) in self.config_files.items():
            loaded_data = self._load_config(file_path)
            if loaded_data is None:
                loaded_data = deepcopy(defaults[key])
            elif not isinstance(loaded_data, expected_type):
                logger.warning(
                    f"Configuration file '{file_path}' has data of type {type(loaded_data).__name__} "
                    f"(expected {expected_type.__name__}); using default configuration."
                )
                loaded_data = deepcopy(defaults[key])
            elif key == "user_config":
                # Fill in keys missing from an older or partial file
                loaded_data = {**DEFAULT_USER_CONFIG, **loaded_data}
            self.configs[key] = loaded_data

    def _load_config(self, file_path: str) -> Optional[Any]:
        """Load JSON configuration file."""
        if not os.path.exists(file_path):
            logger.debug(f"Configuration file '{file_path}' not found; using defaults.")
            return None
        try:
            with open(file_path, "r", encoding="utf-8") as file:
                return json.load(file)
        except Exception:
            logger.exception(f"Unable to load configuration file '{file_path}'.")
            return None

    def _save_config(self, key: str, new_config: Union[dict, list]) -> bool:
        """Validate and save configuration data."""
        if key not in self.config_files:
            logger.error(f"Configuration key '{key}' is invalid; cannot update configuration.")
            return False

        file_path, expected_type = self.config_files[key]
        if not isinstance(new_config, expected_type):
            logger.error(
                f"Configuration update for '{key}' has invalid data type: expected {expected_type.__name__}, "
                f"got {type(new_config).__name__}."
            )
            return False

        if atomic_save(
            filepath=file_path,
            write_func=lambda file: json.dump(new_config, file, indent=2),
            error_message=f"Failed to save configuration for '{key}' to '{file_path}'."
        ):
            self.configs[key] = new_config
            return True
        return False

    def update_user_config(self, updates: dict) -> bool:
        """Update user configuration settings."""
        if not isinstance(updates, dict):
            logger.error(f"Configuration update for 'user_config' must be a dict, got {type(updates).__name__}.")
            return False

        user_config: Dict[str, Any] = dict(self.configs["user_config"])
        user_config.update(updates)
        saved = self._save_config("user_config", user_config)
        if saved:
            logger.info(f"Updated user configuration settings: {updates}")
        return saved

    def set_isodose_levels(self, levels: List[Dict[str, Any]]) -> bool:
        """Replace the standard isodose bank."""
        if not isinstance(levels, list):
            logger.error(f"Isodose levels must be a list, got {type(levels).__name__}.")
            return False
        return self._save_config("isodose_levels", levels)

    def get_user_config_value(self, key: str, default: Any = None) -> Any:
        return self.configs["user_config"].get(key, default)

    def get_isodose_levels(self) -> List[Tuple[int, List[int]]]:
        """Return the standard bank as (level, [r, g, b]) pairs, dropping malformed entries."""
        levels: List[Tuple[int, List[int]]] = []
        for item in self.configs["isodose_levels"]:
            try:
                level = int(item["level"])
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Ignoring malformed isodose level entry: {item}")
                continue
            levels.append((level, normalize_rgb_color(item.get("color"), default=[255, 255, 255])))
        return levels

    def get_max_isodose_color(self) -> List[int]:
        return normalize_rgb_color(self.get_user_config_value("max_isodose_color"), default=[120, 0, 0])

    def get_isodose_fill_alpha(self) -> int:
        return self._get_int("isodose_fill_alpha", 70)

    def get_structure_fill_alpha(self) -> int:
        return self._get_int("structure_fill_alpha", 115)

    def get_isodose_max_workers(self) -> int:
        return max(0, self._get_int("isodose_max_workers", 0))

    def get_nearest_index_tolerance(self) -> float:
        value = self.get_user_config_value("nearest_index_tolerance", 0.001)
        try:
            value = float(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid nearest_index_tolerance '{value}'; using 0.001.")
            return 0.001
        return value if value > 0 else 0.001

    def _get_int(self, key: str, default: int) -> int:
        value = self.get_user_config_value(key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid value '{value}' for configuration key '{key}'; using {default}.")
            return default
