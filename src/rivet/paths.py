from __future__ import annotations

import os
from pathlib import Path

CONFIG_FILE_NAME = "rivet.yaml"


def default_config_path() -> Path:
    override = os.environ.get("RIVET_CONFIG")
    if override:
        return Path(override).expanduser()

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        return Path(xdg_config_home).expanduser() / "rivet" / CONFIG_FILE_NAME

    return Path.home() / ".config" / "rivet" / CONFIG_FILE_NAME
