from __future__ import annotations

import os
from pathlib import Path

from agentrelay import paths
from agentrelay.log_utils import build_log_config


def test_platform_dirs_use_xdg_homes() -> None:
    expected_config = Path(os.environ["XDG_CONFIG_HOME"]) / "agentrelay"
    expected_state = Path(os.environ["XDG_STATE_HOME"]) / "agentrelay"

    assert paths.config_dir() == expected_config
    assert paths.env_file() == expected_config / ".env"
    assert paths.log_dir().is_relative_to(expected_state)


def test_default_log_file_lives_in_log_dir(monkeypatch) -> None:
    monkeypatch.delenv("AGENTRELAY_LOG_DIR", raising=False)
    config = build_log_config(log_file_name="chat.log")
    assert config.log_file == paths.log_dir() / "chat.log"
