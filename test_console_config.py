import os
import unittest
from unittest import mock

from console_config import CONSOLE_VERSION, ConsoleConfig
from pricing_engine import ENGINE_VERSION


class FromEnvTest(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = ConsoleConfig.from_env(dotenv=False)
        self.assertEqual(config.engine_version, ENGINE_VERSION)
        self.assertEqual(config.console_version, CONSOLE_VERSION)
        self.assertEqual(config.snapshot_source, "fixture")
        self.assertFalse(config.erp_configured)
        self.assertTrue(config.notify_in_background)
        self.assertEqual(config.policy.jump_warn, 0.30)

    def test_reads_environment(self):
        env = {
            "ERPNEXT_URL": " https://erp.example.test/ ",
            "ERPNEXT_API_KEY": "key",
            "ERPNEXT_API_SECRET": "secret",
            "CONSOLE_JUMP_WARN_PCT": "0.2",
            "CONSOLE_PULL_COOLDOWN_MINUTES": "not-a-number",
            "CONSOLE_WAREHOUSE": "",
            "TELEGRAM_ALERT_BOT_TOKEN": "t",
            "TELEGRAM_CHAT_ID": "c",
            "CONSOLE_NOTIFY_BACKGROUND": "0",
            "CONSOLE_LOG_LEVEL": "debug",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = ConsoleConfig.from_env(dotenv=False)
        self.assertEqual(config.erp_url, "https://erp.example.test")
        self.assertTrue(config.erp_configured)
        self.assertEqual(config.snapshot_source, "erp")
        self.assertEqual(config.policy.jump_warn, 0.2)
        self.assertEqual(config.pull_cooldown_minutes, 5)
        self.assertEqual(config.warehouse, "Stores")
        self.assertEqual(config.telegram_chat_id, "c")
        self.assertFalse(config.notify_in_background)
        self.assertEqual(config.log_level, "DEBUG")


if __name__ == "__main__":
    unittest.main()
