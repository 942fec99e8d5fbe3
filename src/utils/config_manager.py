"""
Configuration Manager

This module handles persistent storage and retrieval of viewer session settings
that steer the hanging-protocol core: which protocol to fall back to, how
segmentations are hydrated, and how many prior studies protocols may pull from.
Settings are stored in a JSON file in the user's application data directory.

Inputs:
    - Session preferences (default protocol, hydration mode, priors limit, etc.)

Outputs:
    - Loaded configuration values
    - Saved configuration file

Requirements:
    - json module (standard library)
    - pathlib module (standard library)
    - os module (standard library)
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional


HYDRATION_MODES = ("prompt", "automatic")
MAX_RECENT_PROTOCOLS = 10


class ConfigManager:
    """
    Manages core configuration and user preferences.

    Handles loading and saving of settings including:
    - Default (fallback) hanging protocol id
    - Segmentation hydration mode (prompt the user or hydrate automatically)
    - Upper bound on prior studies a protocol may reference
    - Recently applied protocol ids
    """

    def __init__(self, config_filename: str = "hanging_core_config.json"):
        """
        Initialize the configuration manager.

        Args:
            config_filename: Name of the configuration file to use
        """
        if os.name == 'nt':  # Windows
            app_data = os.getenv('APPDATA', os.path.expanduser('~'))
            self.config_dir = Path(app_data) / "HangingCore"
        else:  # Mac/Linux
            self.config_dir = Path.home() / ".config" / "HangingCore"

        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.config_path = self.config_dir / config_filename

        self.default_config = {
            "default_protocol_id": "@ohif/mnGrid",
            "segmentation_hydration_mode": "prompt",  # prompt or automatic
            "disable_confirmation_prompts": False,  # Skip hydration prompt even in prompt mode
            "number_of_priors_referenced_limit": -1,  # -1 = honour each protocol's own value
            "recent_protocol_ids": [],  # Most recent first (max 10)
            "active_viewport_on_load": "default",
        }

        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """
        Load configuration from file, or return defaults if file doesn't exist.

        Returns:
            Dictionary containing configuration values
        """
        if self.config_path.exists():
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded_config = json.load(f)
                    config = self.default_config.copy()
                    config.update(loaded_config)
                    return config
            except (json.JSONDecodeError, IOError) as e:
                print(f"[CONFIG] Warning: Could not load config file: {e}")
                return self.default_config.copy()
        return self.default_config.copy()

    def save_config(self) -> bool:
        """
        Save current configuration to file.

        Returns:
            True if save was successful, False otherwise
        """
        try:
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=4, ensure_ascii=False)
            return True
        except IOError as e:
            print(f"[CONFIG] Error saving config file: {e}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.

        Args:
            key: Configuration key to retrieve
            default: Default value if key doesn't exist

        Returns:
            Configuration value or default
        """
        return self.config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """
        Set a configuration value (not persisted until save_config()).

        Args:
            key: Configuration key to set
            value: Value to set
        """
        self.config[key] = value

    def get_default_protocol_id(self) -> str:
        """Get the protocol id used when no registered protocol matches a study."""
        return self.config.get("default_protocol_id", self.default_config["default_protocol_id"])

    def set_default_protocol_id(self, protocol_id: str) -> None:
        """Set the fallback protocol id and persist it."""
        self.config["default_protocol_id"] = protocol_id
        self.save_config()

    def get_segmentation_hydration_mode(self) -> str:
        """
        Get how loaded segmentations become hydrated.

        Returns:
            "prompt" (ask the user) or "automatic"; unknown stored values
            fall back to "prompt".
        """
        mode = self.config.get("segmentation_hydration_mode", "prompt")
        if mode not in HYDRATION_MODES:
            return "prompt"
        return mode

    def set_segmentation_hydration_mode(self, mode: str) -> None:
        """
        Set the segmentation hydration mode.

        Args:
            mode: "prompt" or "automatic"
        """
        if mode not in HYDRATION_MODES:
            raise ValueError(f"Invalid hydration mode: {mode}")
        self.config["segmentation_hydration_mode"] = mode
        self.save_config()

    def get_disable_confirmation_prompts(self) -> bool:
        """Whether the hydration confirmation prompt is suppressed."""
        return bool(self.config.get("disable_confirmation_prompts", False))

    def set_disable_confirmation_prompts(self, disabled: bool) -> None:
        self.config["disable_confirmation_prompts"] = bool(disabled)
        self.save_config()

    def get_number_of_priors_referenced_limit(self) -> int:
        """
        Get the session-wide cap on prior studies.

        Returns:
            -1 when protocols decide on their own, otherwise a non-negative cap
        """
        try:
            return int(self.config.get("number_of_priors_referenced_limit", -1))
        except (TypeError, ValueError):
            return -1

    def set_number_of_priors_referenced_limit(self, limit: int) -> None:
        self.config["number_of_priors_referenced_limit"] = int(limit)
        self.save_config()

    def get_recent_protocol_ids(self) -> List[str]:
        """Get recently applied protocol ids, most recent first."""
        return list(self.config.get("recent_protocol_ids", []))

    def add_recent_protocol_id(self, protocol_id: str) -> None:
        """
        Record a protocol as most recently applied.

        Moves an existing entry to the front and caps the list length.
        """
        recent = [p for p in self.get_recent_protocol_ids() if p != protocol_id]
        recent.insert(0, protocol_id)
        self.config["recent_protocol_ids"] = recent[:MAX_RECENT_PROTOCOLS]
        self.save_config()

    def get_active_viewport_on_load(self) -> Optional[str]:
        return self.config.get("active_viewport_on_load") or None
