import unittest
from unittest.mock import patch

import livecast.config as config


class ConfigBehaviorTests(unittest.TestCase):
    def setUp(self):
        """Prepare test preconditions for each test case."""
        self._state = {
            name: getattr(config, name)
            for name in (
                "HOST", "PORT", "API_PREFIX", "DEBUG", "CONSOLE_LOG", "LOG_ENABLED", "VERBOSE_HTTP_LOG",
                "CORS_ORIGINS", "DATA_DIR", "STREAM_DIR", "SETTINGS_FILE", "LOG_FILE", "AUDIO_SOURCE",
                "AUDIO_DEVICE", "DEFAULT_VOLUME", "DISPLAY_ID", "VIDEO_DEVICE", "CAPTURE_URL", "DESTINATION",
                "TTS_PROVIDER", "FFMPEG_BIN", "XVFB_BIN", "CHROME_BIN", "FRAME_FILE",
            )
        }

    def tearDown(self):
        """Clean up resources created by each test case."""
        for key, value in self._state.items():
            setattr(config, key, value)

    def test_csv_list_trims_and_deduplicates(self):
        """Validate scenario: csv list trims and deduplicates."""
        self.assertEqual(config._csv_list("  a, b ,a,, c  "), ["a", "b", "c"])

    def test_env_first_skips_blank_values(self):
        """Validate scenario: the first non-blank variable wins."""
        with patch.dict("os.environ", {"A_VAR": "  ", "B_VAR": " two "}, clear=False):
            self.assertEqual(config.env_first("A_VAR", "B_VAR"), "two")
            self.assertEqual(config.env_first("MISSING_VAR", default="x"), "x")

    def test_primary_names_win_over_legacy_aliases(self):
        """Validate scenario: LIVECAST_* beats STREAM_* when both are set."""
        env = {
            "LIVECAST_AUDIO_SOURCE": "device",
            "STREAM_AUDIO_SOURCE": "tts",
            "STREAM_DISPLAY": ":42",
            "STREAM_VOLUME": "55",
            "LIVECAST_PORT": "9191",
            "LIVECAST_API_PREFIX": "/v2/",
            "LIVECAST_DESTINATION": "youtube",
        }
        with patch.dict("os.environ", env, clear=False):
            config.reload_from_env()
            self.assertEqual(config.AUDIO_SOURCE, "device")
            self.assertEqual(config.DISPLAY_ID, ":42")
            self.assertEqual(config.DEFAULT_VOLUME, 55)
            self.assertEqual(config.PORT, 9191)
            self.assertEqual(config.API_PREFIX, "/v2")
            self.assertEqual(config.DESTINATION, "youtube")
            self.assertEqual(config.capture_url(), config.CAPTURE_URL or "http://127.0.0.1:9191")

    def test_bad_integer_falls_back(self):
        """Validate scenario: unparseable integers keep the default."""
        with patch.dict("os.environ", {"LIVECAST_VOLUME": "loud", "STREAM_VOLUME": ""}, clear=False):
            config.reload_from_env()
            self.assertEqual(config.DEFAULT_VOLUME, 80)

    def test_data_dir_drives_settings_path(self):
        """Validate scenario: settings live under the data dir."""
        with patch.dict("os.environ", {"LIVECAST_DATA_DIR": "/tmp/livecast-cfg-test"}, clear=False):
            config.reload_from_env()
            self.assertEqual(config.STREAM_DIR, "/tmp/livecast-cfg-test/stream")
            self.assertTrue(config.SETTINGS_FILE.endswith("stream-settings.json"))


if __name__ == "__main__":
    unittest.main()
