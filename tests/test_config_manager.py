"""
Tests for ConfigManager session settings.

Covers defaults, validation of the hydration mode, the recent-protocol list,
and persistence. Uses a dedicated test config filename to avoid overwriting
user config; cleans up after tests.
"""

import json
import os
import sys
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from utils.config_manager import MAX_RECENT_PROTOCOLS, ConfigManager


TEST_CONFIG_FILENAME = "hanging_core_config_test_manager.json"


class TestConfigManager(unittest.TestCase):
    """Tests for hanging-core config keys and getters/setters."""

    def setUp(self):
        """Create a ConfigManager using a test config file."""
        self.config = ConfigManager(config_filename=TEST_CONFIG_FILENAME)
        self.config_path = self.config.config_path
        if self.config_path.exists():
            self.config_path.unlink()
            self.config = ConfigManager(config_filename=TEST_CONFIG_FILENAME)

    def tearDown(self):
        """Remove test config file if it was created."""
        if self.config_path.exists():
            try:
                self.config_path.unlink()
            except OSError:
                pass

    def test_defaults(self):
        self.assertEqual(self.config.get_default_protocol_id(), "@ohif/mnGrid")
        self.assertEqual(self.config.get_segmentation_hydration_mode(), "prompt")
        self.assertFalse(self.config.get_disable_confirmation_prompts())
        self.assertEqual(self.config.get_number_of_priors_referenced_limit(), -1)
        self.assertEqual(self.config.get_recent_protocol_ids(), [])
        self.assertEqual(self.config.get_active_viewport_on_load(), "default")

    def test_hydration_mode_validation(self):
        self.config.set_segmentation_hydration_mode("automatic")
        self.assertEqual(self.config.get_segmentation_hydration_mode(), "automatic")
        with self.assertRaises(ValueError):
            self.config.set_segmentation_hydration_mode("sometimes")
        self.assertEqual(self.config.get_segmentation_hydration_mode(), "automatic")

    def test_unknown_stored_hydration_mode_reads_as_prompt(self):
        self.config.set("segmentation_hydration_mode", "never")
        self.assertEqual(self.config.get_segmentation_hydration_mode(), "prompt")

    def test_recent_protocol_ids(self):
        """Re-applying a protocol moves it to the front; the list is capped."""
        self.config.add_recent_protocol_id("a")
        self.config.add_recent_protocol_id("b")
        self.config.add_recent_protocol_id("a")
        self.assertEqual(self.config.get_recent_protocol_ids(), ["a", "b"])

        for i in range(MAX_RECENT_PROTOCOLS + 5):
            self.config.add_recent_protocol_id(f"p{i}")
        recent = self.config.get_recent_protocol_ids()
        self.assertEqual(len(recent), MAX_RECENT_PROTOCOLS)
        self.assertEqual(recent[0], f"p{MAX_RECENT_PROTOCOLS + 4}")

    def test_priors_limit(self):
        self.config.set_number_of_priors_referenced_limit(2)
        self.assertEqual(self.config.get_number_of_priors_referenced_limit(), 2)
        self.config.set("number_of_priors_referenced_limit", "many")
        self.assertEqual(self.config.get_number_of_priors_referenced_limit(), -1)

    def test_persists_to_disk(self):
        """Values are written to the config file and reloaded by a new instance."""
        self.config.set_default_protocol_id("petct")
        self.config.set_disable_confirmation_prompts(True)
        self.assertTrue(self.config_path.exists(), "Config file should exist after set")

        reloaded = ConfigManager(config_filename=TEST_CONFIG_FILENAME)
        self.assertEqual(reloaded.get_default_protocol_id(), "petct")
        self.assertTrue(reloaded.get_disable_confirmation_prompts())

    def test_partial_file_is_merged_with_defaults(self):
        with open(self.config_path, "w", encoding="utf-8") as f:
            json.dump({"segmentation_hydration_mode": "automatic"}, f)
        reloaded = ConfigManager(config_filename=TEST_CONFIG_FILENAME)
        self.assertEqual(reloaded.get_segmentation_hydration_mode(), "automatic")
        self.assertEqual(reloaded.get_default_protocol_id(), "@ohif/mnGrid")

    def test_corrupt_file_gives_defaults(self):
        self.config_path.write_text("{not json", encoding="utf-8")
        reloaded = ConfigManager(config_filename=TEST_CONFIG_FILENAME)
        self.assertEqual(reloaded.get_segmentation_hydration_mode(), "prompt")


if __name__ == "__main__":
    unittest.main()
