import json
import logging
import os
import sys
import unittest
from pathlib import Path
from unittest.mock import patch

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))

from ai_thub.config import (
    MAX_RETRIES,
    RATE_LIMIT_DELAY,
    REQUEST_TIMEOUT,
    Settings,
    get_config_path,
    load_settings,
    load_user_config,
    setup_logging,
)
from ai_thub.dispatch import DispatchEngine
from ai_thub.providers import ProviderId


class TestSettings(unittest.TestCase):
    def test_defaults(self):
        settings = Settings()
        self.assertEqual(settings.rate_limit_delay, RATE_LIMIT_DELAY)
        self.assertEqual(settings.max_retries, MAX_RETRIES)
        self.assertEqual(settings.timeout, REQUEST_TIMEOUT)
        self.assertEqual(settings.max_tokens, 7999)
        self.assertEqual(settings.endpoint_overrides, {})

    def test_from_dict(self):
        settings = Settings.from_dict(
            {
                "dispatch": {
                    "rateLimitDelay": 2,
                    "retryDelay": 0.5,
                    "maxRetries": 5,
                    "timeout": 10,
                    "maxTokens": 2048,
                },
                "endpoints": {"OpenAI": "http://localhost:8080/v1/chat/completions"},
                "pollInterval": 5,
                "logging": {"level": "debug", "file": "~/thub.log"},
            }
        )
        self.assertEqual(settings.rate_limit_delay, 2.0)
        self.assertEqual(settings.retry_delay, 0.5)
        self.assertEqual(settings.max_retries, 5)
        self.assertEqual(settings.timeout, 10.0)
        self.assertEqual(settings.max_tokens, 2048)
        self.assertEqual(
            settings.endpoint_overrides,
            {"openai": "http://localhost:8080/v1/chat/completions"},
        )
        self.assertEqual(settings.poll_interval, 5.0)
        self.assertEqual(settings.log_level, "DEBUG")
        self.assertEqual(settings.log_file, "~/thub.log")

    def test_invalid_values_fall_back(self):
        # negative, boolean and string numbers are ignored
        settings = Settings.from_dict(
            {"dispatch": {"rateLimitDelay": -1, "maxRetries": True, "timeout": "30"}}
        )
        self.assertEqual(settings.rate_limit_delay, RATE_LIMIT_DELAY)
        self.assertEqual(settings.max_retries, MAX_RETRIES)
        self.assertEqual(settings.timeout, REQUEST_TIMEOUT)

    def test_engine_uses_overrides(self):
        settings = Settings.from_dict(
            {"endpoints": {"groq": "http://localhost:9000/chat"}, "dispatch": {"maxTokens": 64}}
        )
        engine = DispatchEngine(settings=settings)
        strategy = engine.strategy(ProviderId.GROQ)
        self.assertEqual(strategy.endpoint, "http://localhost:9000/chat")
        self.assertEqual(strategy.max_tokens, 64)


class TestConfigFile(unittest.TestCase):
    def setUp(self):
        import tempfile

        self._tmp = tempfile.TemporaryDirectory()
        self.home = Path(self._tmp.name)
        self._env = patch.dict(os.environ, {"AI_THUB_HOME": str(self.home)})
        self._env.start()

    def tearDown(self):
        self._env.stop()
        self._tmp.cleanup()

    def test_config_path_honours_env(self):
        self.assertEqual(get_config_path(), self.home / "config.json")

    def test_missing_file(self):
        self.assertEqual(load_user_config(), {})
        self.assertEqual(load_settings(), Settings())

    def test_loads_file(self):
        (self.home / "config.json").write_text(
            json.dumps({"dispatch": {"maxRetries": 1}}), encoding="utf-8"
        )
        self.assertEqual(load_settings().max_retries, 1)

    def test_invalid_file_warns(self):
        (self.home / "config.json").write_text("{not json", encoding="utf-8")
        with self.assertLogs("ai_thub.config", level="WARNING"):
            self.assertEqual(load_user_config(), {})

    def test_non_object_file(self):
        (self.home / "config.json").write_text("[1, 2]", encoding="utf-8")
        self.assertEqual(load_user_config(), {})


class TestSetupLogging(unittest.TestCase):
    def setUp(self):
        self._root_handlers = logging.root.handlers[:]
        self._root_level = logging.root.level

    def tearDown(self):
        for handler in logging.root.handlers:
            if handler not in self._root_handlers:
                handler.close()
        logging.root.handlers = self._root_handlers
        logging.root.setLevel(self._root_level)

    def test_level_from_settings(self):
        setup_logging(Settings(log_level="WARNING"))
        self.assertEqual(logging.root.level, logging.WARNING)

    def test_verbose_wins(self):
        setup_logging(Settings(log_level="ERROR"), verbose=True)
        self.assertEqual(logging.root.level, logging.DEBUG)

    def test_file_handler(self):
        import tempfile

        with tempfile.TemporaryDirectory() as tmp:
            log_file = os.path.join(tmp, "thub.log")
            setup_logging(Settings(log_file=log_file))
            file_handlers = [
                h for h in logging.root.handlers if isinstance(h, logging.FileHandler)
            ]
            self.assertEqual(len(file_handlers), 1)
            self.assertEqual(file_handlers[0].baseFilename, log_file)
            for handler in file_handlers:
                handler.close()
                logging.root.removeHandler(handler)


if __name__ == "__main__":
    unittest.main()
