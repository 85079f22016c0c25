"""Tests for environment driven server settings."""
from __future__ import annotations

import unittest

from tagrelay.config import BroadcastMode, ServerConfig, __version__


class ServerConfigTest(unittest.TestCase):
    def test_defaults(self) -> None:
        config = ServerConfig.from_env({})
        self.assertEqual(config.port, 3000)
        self.assertEqual(config.cors_origins, ("*",))
        self.assertEqual(config.ping_interval, 25.0)
        self.assertEqual(config.ping_timeout, 60.0)
        self.assertIs(config.broadcast_mode, BroadcastMode.ALL)
        self.assertEqual(config.server_info(), {"platform": "Local", "project": "local", "version": __version__})
        self.assertIsNone(config.metrics_log)

    def test_reads_environment(self) -> None:
        config = ServerConfig.from_env(
            {
                "PORT": "8080",
                "TAGRELAY_CORS_ORIGINS": "http://a.local, http://b.local",
                "TAGRELAY_PING_INTERVAL": "5",
                "TAGRELAY_PING_TIMEOUT": "15.5",
                "TAGRELAY_BROADCAST_MODE": "OTHERS",
                "PROJECT_DOMAIN": "nfc-demo",
                "TAGRELAY_VERSION": "9.9.9",
                "TAGRELAY_METRICS_LOG": "relay.csv",
            }
        )
        self.assertEqual(config.port, 8080)
        self.assertEqual(config.cors_origins, ("http://a.local", "http://b.local"))
        self.assertEqual(config.ping_interval, 5.0)
        self.assertEqual(config.ping_timeout, 15.5)
        self.assertIs(config.broadcast_mode, BroadcastMode.OTHERS)
        self.assertEqual(config.server_info(), {"platform": "Glitch", "project": "nfc-demo", "version": "9.9.9"})
        self.assertEqual(config.metrics_log, "relay.csv")

    def test_rejects_invalid_values(self) -> None:
        with self.assertRaises(ValueError):
            ServerConfig.from_env({"TAGRELAY_BROADCAST_MODE": "some"})
        with self.assertRaises(ValueError):
            ServerConfig.from_env({"PORT": "http"})
        with self.assertRaises(ValueError):
            ServerConfig.from_env({"TAGRELAY_PING_TIMEOUT": "-1"})


if __name__ == "__main__":
    unittest.main()
