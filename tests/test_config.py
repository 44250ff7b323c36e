import os
import sys
import unittest
from unittest.mock import mock_open, patch

import yaml

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import plexbacklog
from plexbacklog import ThresholdConfig, ValidationError


class TestLoadConfig(unittest.TestCase):

    @patch("builtins.open", new_callable=mock_open)
    @patch("yaml.safe_load")
    def test_load_config_returns_mapping(self, mock_yaml_safe_load, mock_file_open):
        config_dict = {"PLEX": {"HOST": "plex.lan", "PORT": 32400}}
        mock_yaml_safe_load.return_value = config_dict
        mock_file_open.return_value.read.return_value = yaml.dump(config_dict)

        self.assertEqual(plexbacklog.load_config("config.yaml"), config_dict)

    @patch("builtins.open", side_effect=FileNotFoundError)
    def test_missing_default_config_is_ignored(self, mock_file_open):
        self.assertEqual(plexbacklog.load_config("config.yaml"), {})

    @patch("sys.exit", side_effect=SystemExit(1))
    @patch("logging.critical")
    @patch("builtins.open", side_effect=FileNotFoundError)
    def test_missing_explicit_config_exits(self, mock_file_open, mock_log_critical, mock_sys_exit):
        with self.assertRaises(SystemExit):
            plexbacklog.load_config("/nope/config.yaml", required=True)
        mock_log_critical.assert_called_with("Configuration file not found at /nope/config.yaml.")
        mock_sys_exit.assert_called_with(1)

    @patch("sys.exit", side_effect=SystemExit(1))
    @patch("logging.critical")
    @patch("builtins.open", new_callable=mock_open)
    @patch("yaml.safe_load", return_value=["not", "a", "mapping"])
    def test_non_mapping_config_exits(self, mock_yaml_safe_load, mock_file_open, mock_log_critical, mock_sys_exit):
        with self.assertRaises(SystemExit):
            plexbacklog.load_config("config.yaml")
        mock_sys_exit.assert_called_with(1)


@patch.dict(os.environ, {}, clear=True)
class TestLoadSettings(unittest.TestCase):

    def load(self, argv, config=None, env=None):
        with patch("plexbacklog.load_config", return_value=config or {}), \
                patch.dict(os.environ, env or {}):
            return plexbacklog.load_settings(plexbacklog.parse_cli_args(argv))

    def test_defaults(self):
        settings = self.load([])
        self.assertEqual(settings.host, "localhost")
        self.assertEqual(settings.port, 32400)
        self.assertEqual(settings.scheme, "http")
        self.assertEqual(settings.timeout, 10.0)
        self.assertIsNone(settings.token)
        self.assertIsNone(settings.section)
        self.assertEqual(settings.thresholds, ThresholdConfig())

    def test_config_file_values(self):
        config = {
            "PLEX": {"HOST": "plex.lan", "PORT": 32401, "SCHEME": "https", "TOKEN": "cfg-token", "TIMEOUT": 5},
            "REPORT": {"SECTION": "TV Shows", "LOWER_BOUND": 1, "UPPER_BOUND": 99,
                       "YELLOW_LIMIT": 10, "RED_LIMIT": 20},
            "LOG_LEVEL": "debug",
        }
        settings = self.load([], config=config)
        self.assertEqual(settings.host, "plex.lan")
        self.assertEqual(settings.port, 32401)
        self.assertEqual(settings.scheme, "https")
        self.assertEqual(settings.token, "cfg-token")
        self.assertEqual(settings.timeout, 5.0)
        self.assertEqual(settings.section, "TV Shows")
        self.assertEqual(settings.thresholds, ThresholdConfig(1, 99, 10, 20))
        self.assertEqual(settings.log_level, "DEBUG")

    def test_precedence(self):
        config = {"PLEX": {"HOST": "from-config", "PORT": 1, "TOKEN": "cfg"}, "REPORT": {"RED_LIMIT": 5}}
        env = {"PLEX_HOST": "from-env", "PLEX_PORT": "2", "PLEX_TOKEN": "env"}
        settings = self.load(["--port", "3", "--red", "9"], config=config, env=env)
        self.assertEqual(settings.host, "from-env")
        self.assertEqual(settings.port, 3)
        self.assertEqual(settings.token, "env")
        self.assertEqual(settings.thresholds.red_limit, 9)

    def test_numeric_section_in_config(self):
        settings = self.load([], config={"REPORT": {"SECTION": 4}})
        self.assertEqual(settings.section, 4)

    def test_bad_port_type(self):
        with self.assertRaises(ValidationError):
            self.load([], config={"PLEX": {"PORT": "plex"}})

    def test_port_out_of_range(self):
        with self.assertRaises(ValidationError):
            self.load(["--port", "70000"])

    def test_bad_limit_type(self):
        with self.assertRaises(ValidationError):
            self.load([], config={"REPORT": {"RED_LIMIT": True}})

    def test_bad_scheme(self):
        with self.assertRaises(ValidationError):
            self.load([], config={"PLEX": {"SCHEME": "ftp"}})

    def test_bad_log_level(self):
        with self.assertRaises(ValidationError):
            self.load([], config={"LOG_LEVEL": "LOUD"})

    def test_section_not_mapping(self):
        with self.assertRaises(ValidationError):
            self.load([], config={"PLEX": "localhost"})

    def test_log_level_from_env_overrides_config(self):
        settings = self.load([], config={"LOG_LEVEL": "ERROR"}, env={"LOG_LEVEL": "debug"})
        self.assertEqual(settings.log_level, "DEBUG")

    def test_bad_log_level_in_env(self):
        with self.assertRaises(ValidationError):
            self.load([], env={"LOG_LEVEL": "LOUD"})

    def test_malformed_cli_values(self):
        for argv in (["-l", "abc"], ["-r", "1.5"], ["--port", "plex"], ["--timeout", "soon"]):
            with self.assertRaises(ValidationError):
                self.load(argv)


if __name__ == "__main__":
    unittest.main()
