#!/usr/bin/env python3
"""
Tests for daemon configuration
"""

import unittest
import json
import shutil
import tempfile
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from trackdevice.DeviceModels import Requirement
from trackjuggler.JugglerConfig import JugglerConfig, load_requirement, UNCLASSIFIED_NON_MATCHING
from trackutils.errors import ConfigError


class ConfigTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmp)

    def write_config(self, data, name="trackjoy.json"):
        path = os.path.join(self.tmp, name)
        with open(path, "w", encoding="utf-8") as f:
            if isinstance(data, str):
                f.write(data)
            else:
                json.dump(data, f)
        return path


class TestLoadRequirement(ConfigTestCase):

    def test_counts_mappings(self):
        path = self.write_config({"keys_mappings": [{}], "pad_mappings": [{}, {}], "other": 1})
        self.assertEqual(load_requirement(path), Requirement(min_keyboards=1, min_trackpads=2))

    def test_missing_sections_count_as_zero(self):
        path = self.write_config({"pad_mappings": [{}]})
        self.assertEqual(load_requirement(path), Requirement(0, 1))

    def test_stdin_is_rejected(self):
        with self.assertRaises(ConfigError):
            load_requirement("-")

    def test_missing_file(self):
        with self.assertRaises(ConfigError):
            load_requirement(os.path.join(self.tmp, "absent.json"))

    def test_invalid_json(self):
        with self.assertRaises(ConfigError):
            load_requirement(self.write_config("{not json"))

    def test_not_an_object(self):
        with self.assertRaises(ConfigError):
            load_requirement(self.write_config([1, 2]))

    def test_mappings_must_be_lists(self):
        with self.assertRaises(ConfigError):
            load_requirement(self.write_config({"keys_mappings": {"a": 1}}))


class TestJugglerConfig(ConfigTestCase):

    def test_defaults(self):
        config = JugglerConfig("trackjoy.json")
        self.assertEqual(config.dev_dir, "/dev/input/by-path")
        self.assertEqual(config.watch, "directory")
        self.assertEqual(config.debounce, 1.0)
        self.assertEqual(config.executable, "trackjoy")
        self.assertFalse(config.restart_on_crash)
        self.assertTrue(config.bind_devices)
        self.assertEqual(config.oracle_command[0], "udevadm")

    def test_validate_loads_requirement(self):
        path = self.write_config({"keys_mappings": [{}], "pad_mappings": [{}]})
        config = JugglerConfig(path)
        config.validate()
        self.assertEqual(config.requirement, Requirement(1, 1))

    def test_explicit_requirement_is_kept(self):
        path = self.write_config({"keys_mappings": [{}], "pad_mappings": [{}]})
        config = JugglerConfig(path, requirement=Requirement(2, 1))
        config.validate()
        self.assertEqual(config.requirement, Requirement(2, 1))

    def test_empty_requirement_is_rejected(self):
        path = self.write_config({"keys_mappings": [], "pad_mappings": []})
        with self.assertRaises(ConfigError):
            JugglerConfig(path).validate()

    def test_invalid_settings(self):
        path = self.write_config({"keys_mappings": [{}], "pad_mappings": [{}]})
        for overrides in [{'watch': 'inotify'}, {'unclassified_policy': 'maybe'},
                          {'debounce': -1}, {'executable': ''}, {'config_path': ''}]:
            with self.subTest(overrides=overrides):
                options = {'config_path': path}
                options.update(overrides)
                with self.assertRaises(ConfigError):
                    JugglerConfig(**options).validate()

    def test_to_dict(self):
        config = JugglerConfig("trackjoy.json", debounce=0.25, restart_on_crash=True,
                               unclassified_policy=UNCLASSIFIED_NON_MATCHING,
                               requirement=Requirement(1, 2))
        data = config.to_dict()
        self.assertEqual(data['debounce'], 0.25)
        self.assertTrue(data['restart_on_crash'])
        self.assertEqual(data['unclassified_policy'], "non-matching")
        self.assertEqual(data['requirement'], {'min_keyboards': 1, 'min_trackpads': 2})
        self.assertEqual(data['oracle_command'][0], "udevadm")


if __name__ == "__main__":
    unittest.main()
