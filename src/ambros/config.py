import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from ambros.errors import ConfigInvalidError

PLUGINS_DIR_KEY = "AMBROS_PLUGINS_DIR"
DB_PATH_KEY = "AMBROS_DB_PATH"
CHAIN_TIMEOUT_KEY = "AMBROS_CHAIN_TIMEOUT_SEC"
LOG_LEVEL_KEY = "LOG_LEVEL"

DEFAULT_CONFIG_DIR = Path.home() / ".ambros"
DEFAULT_CHAIN_TIMEOUT_SEC = 30 * 60


@dataclass
class Config:
    config_dir: Path
    env_path: Path
    plugins_dir: Path
    db_path: Path
    registries_path: Path
    chain_timeout_sec: float
    log_level: str


def load_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    if not path.exists():
        return data
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            data[k.strip()] = v.strip()
    except OSError as exc:
        print(f"Failed to read .env: {exc}", file=sys.stderr)
    return data


def get_env_value(key: str, env_file: Dict[str, str]) -> Optional[str]:
    return os.environ.get(key) or env_file.get(key)


def get_env_path(config_dir: Path) -> Path:
    return config_dir / ".env"


def _read_path(key: str, env_file: Dict[str, str], default: Path) -> Path:
    raw = (get_env_value(key, env_file) or "").strip()
    if not raw:
        return default
    return Path(raw).expanduser().resolve()


def _read_float(key: str, env_file: Dict[str, str], default: float) -> float:
    raw = (get_env_value(key, env_file) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigInvalidError(f"{key} must be a number (got '{raw}')", exc)
    if value <= 0:
        raise ConfigInvalidError(f"{key} must be positive (got '{raw}')")
    return value


def load_config(config_dir: Optional[Path] = None) -> Config:
    resolved_dir = Path(config_dir or DEFAULT_CONFIG_DIR).expanduser().resolve()
    env_path = get_env_path(resolved_dir)
    env_file = load_env_file(env_path)
    return Config(
        config_dir=resolved_dir,
        env_path=env_path,
        plugins_dir=_read_path(PLUGINS_DIR_KEY, env_file, resolved_dir / "plugins"),
        db_path=_read_path(DB_PATH_KEY, env_file, resolved_dir / "ambros.db"),
        registries_path=resolved_dir / "registries.json",
        chain_timeout_sec=_read_float(CHAIN_TIMEOUT_KEY, env_file, float(DEFAULT_CHAIN_TIMEOUT_SEC)),
        log_level=(get_env_value(LOG_LEVEL_KEY, env_file) or "INFO").strip().upper(),
    )
