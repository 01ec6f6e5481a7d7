from __future__ import annotations

import logging
import os
from dataclasses import replace

import jobrelay.core.logging as jobrelay_logging
from jobrelay.config import get_settings
from jobrelay.utils.env import load_env_file


def test_env_file_does_not_override_real_environment(tmp_path, monkeypatch) -> None:
  env_file = tmp_path / ".env"
  env_file.write_text("# comment\nexport JOBRELAY_TEST_A='one'\nJOBRELAY_TEST_B=\"two\"\nnot an assignment\n", encoding="utf-8")
  monkeypatch.delenv("JOBRELAY_TEST_A", raising=False)
  monkeypatch.setenv("JOBRELAY_TEST_B", "real")

  applied = load_env_file(env_file)

  assert applied == {"JOBRELAY_TEST_A": "one"}
  os.environ.pop("JOBRELAY_TEST_A", None)


def test_missing_env_file_is_ignored(tmp_path) -> None:
  assert load_env_file(tmp_path / "missing.env") == {}


def test_setup_logging_writes_file_once(tmp_path, monkeypatch) -> None:
  monkeypatch.setattr(jobrelay_logging, "_LOGGING_INITIALIZED", False)
  monkeypatch.setattr(jobrelay_logging, "_LOG_FILE_PATH", None)
  package_logger = logging.getLogger("jobrelay")
  monkeypatch.setattr(package_logger, "handlers", [])
  settings = replace(get_settings(), log_dir=str(tmp_path / "logs"), realtime_debug=True)

  log_path = jobrelay_logging.setup_logging(settings)
  again = jobrelay_logging.setup_logging(settings)

  assert log_path is not None and log_path.parent == tmp_path / "logs"
  assert again == log_path
  assert len(package_logger.handlers) == 2
  assert logging.getLogger(jobrelay_logging.REALTIME_LOGGER).level == logging.DEBUG
  for handler in package_logger.handlers:
    handler.close()
