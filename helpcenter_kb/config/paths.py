"""Config and data directory resolution (XDG base directories)."""

import os
import sys
from dataclasses import dataclass
from pathlib import Path

APP_NAME = "helpcenter-kb"


@dataclass(frozen=True)
class AppPaths:
    config_dir: Path
    data_dir: Path

    @property
    def config_file(self) -> Path:
        return self.config_dir / "config.yaml"

    @property
    def database(self) -> Path:
        return self.data_dir / "kb.sqlite"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"


def get_paths() -> AppPaths:
    """Resolve config and data directories for the current platform.

    ``KB_HOME`` wins over everything and puts both directories under one root,
    which is what tests and throwaway setups want.
    """
    kb_home = os.getenv("KB_HOME")
    if kb_home:
        root = Path(kb_home).expanduser()
        return AppPaths(config_dir=root / "config", data_dir=root / "data")

    home = Path.home()
    if sys.platform == "win32":
        config_root = Path(os.getenv("APPDATA", home / "AppData" / "Roaming"))
        data_root = Path(os.getenv("LOCALAPPDATA", home / "AppData" / "Local"))
    else:
        config_root = home / ".config"
        data_root = home / ".local" / "share"

    config_dir = Path(os.getenv("XDG_CONFIG_HOME", config_root)) / APP_NAME
    data_dir = Path(os.getenv("XDG_DATA_HOME", data_root)) / APP_NAME
    return AppPaths(config_dir=config_dir, data_dir=data_dir)


def ensure_directories() -> AppPaths:
    """Create config, data and log directories if needed."""
    paths = get_paths()
    paths.config_dir.mkdir(parents=True, exist_ok=True)
    paths.data_dir.mkdir(parents=True, exist_ok=True)
    paths.logs_dir.mkdir(parents=True, exist_ok=True)
    return paths
