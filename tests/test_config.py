import logging
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from ambros.config import CHAIN_TIMEOUT_KEY, DB_PATH_KEY, LOG_LEVEL_KEY, PLUGINS_DIR_KEY, load_config, load_env_file
from ambros.errors import ConfigInvalidError
from ambros.observability.structured_log import log_json

_KEYS = (PLUGINS_DIR_KEY, DB_PATH_KEY, CHAIN_TIMEOUT_KEY, LOG_LEVEL_KEY)


def _clean_env():
    return {k: v for k, v in os.environ.items() if k not in _KEYS}


class TestConfig(unittest.TestCase):
    def test_defaults_live_under_config_dir(self):
        with tempfile.TemporaryDirectory() as tmp, patch.dict(os.environ, _clean_env(), clear=True):
            cfg = load_config(Path(tmp))
            root = Path(tmp).resolve()
            self.assertEqual(cfg.plugins_dir, root / "plugins")
            self.assertEqual(cfg.db_path, root / "ambros.db")
            self.assertEqual(cfg.registries_path, root / "registries.json")
            self.assertEqual(cfg.chain_timeout_sec, 1800.0)
            self.assertEqual(cfg.log_level, "INFO")

    def test_env_file_values(self):
        with tempfile.TemporaryDirectory() as tmp, patch.dict(os.environ, _clean_env(), clear=True):
            (Path(tmp) / ".env").write_text(
                "# ambros settings\n"
                f"{PLUGINS_DIR_KEY}={tmp}/custom-plugins\n"
                f"{CHAIN_TIMEOUT_KEY}=90\n"
                "not a pair\n"
                f"{LOG_LEVEL_KEY}=debug\n",
                encoding="utf-8",
            )
            cfg = load_config(Path(tmp))
            self.assertEqual(cfg.plugins_dir, (Path(tmp) / "custom-plugins").resolve())
            self.assertEqual(cfg.chain_timeout_sec, 90.0)
            self.assertEqual(cfg.log_level, "DEBUG")

    def test_process_env_overrides_env_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / ".env").write_text(f"{CHAIN_TIMEOUT_KEY}=90\n", encoding="utf-8")
            env = _clean_env()
            env[CHAIN_TIMEOUT_KEY] = "5"
            env[DB_PATH_KEY] = f"{tmp}/other.db"
            with patch.dict(os.environ, env, clear=True):
                cfg = load_config(Path(tmp))
            self.assertEqual(cfg.chain_timeout_sec, 5.0)
            self.assertEqual(cfg.db_path, (Path(tmp) / "other.db").resolve())

    def test_invalid_timeout(self):
        for raw in ("soon", "0", "-3"):
            with self.subTest(raw=raw):
                env = _clean_env()
                env[CHAIN_TIMEOUT_KEY] = raw
                with tempfile.TemporaryDirectory() as tmp, patch.dict(os.environ, env, clear=True):
                    with self.assertRaises(ConfigInvalidError):
                        load_config(Path(tmp))

    def test_missing_env_file(self):
        self.assertEqual(load_env_file(Path("/nonexistent/ambros/.env")), {})


class TestStructuredLog(unittest.TestCase):
    def test_log_json_emits_sorted_json(self):
        logger = logging.getLogger("ambros.test.structured")
        with self.assertLogs(logger, level="INFO") as logs:
            log_json(logger, "command.executed", exit_code=0, command_id="CMD-1")
        message = logs.records[0].getMessage()
        self.assertIn('"event": "command.executed"', message)
        self.assertLess(message.index('"command_id"'), message.index('"exit_code"'))


if __name__ == "__main__":
    unittest.main()
