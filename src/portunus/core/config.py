"""
Configuration for migration runs: TOML file, environment, command line.

Precedence (highest first):
1. Command-line overrides (``set_override``)
2. Environment variables: ``database.url`` is read from ``PORTUNUS_DATABASE_URL``
3. The TOML file
4. Defaults passed by the caller
"""
import os
import tomllib
from pathlib import Path
from typing import Any, Optional

from portunus.core.errors import ConfigurationError

DEFAULT_DATABASE_URL = "sqlite:///./data/app.db"
DEFAULT_MIGRATIONS_PATH = "migrations"
DEFAULT_LEDGER_TABLE = "_portunus_migrations"
DEFAULT_LOCK_NAME = "portunus"
DEFAULT_LOCK_TIMEOUT_SECONDS = 60.0
DEFAULT_LOCK_POLL_INTERVAL_SECONDS = 1.0

CONFIG_SEARCH_PATHS = (
    Path("portunus.toml"),
    Path("config/portunus.toml"),
)

_TRUE = ("true", "1", "yes", "on")
_FALSE = ("false", "0", "no", "off")
_MISSING = object()


def _coerce_env(value: str) -> Any:
    """Environment values arrive as text; recover booleans and numbers."""
    lowered = value.strip().lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    for number in (int, float):
        try:
            return number(value)
        except ValueError:
            continue
    return value


class ConfigManager:
    """Dot-notation access to layered configuration.

    Usage:
        config = ConfigManager(Path("config/portunus.toml"))
        url = config.get("database.url", DEFAULT_DATABASE_URL)
        timeout = config.get_float("lock.timeout_seconds", 60.0)
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        env_prefix: str = "PORTUNUS_",
    ) -> None:
        """Initialize ConfigManager.

        Args:
            config_path: TOML file to read; a missing file means no file values
            env_prefix: Prefix of environment variable overrides
        """
        self._config_path = config_path
        self._env_prefix = env_prefix
        self._overrides: dict[str, Any] = {}
        self._file: dict[str, Any] = {}

        if config_path is not None and config_path.exists():
            self._file = self._read(config_path)

    @staticmethod
    def _read(path: Path) -> dict[str, Any]:
        try:
            with open(path, "rb") as f:
                return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {path}", e) from e

    @property
    def config_path(self) -> Optional[Path]:
        return self._config_path

    def env_name(self, key: str) -> str:
        """Environment variable consulted for ``key``."""
        return self._env_prefix + key.replace(".", "_").upper()

    def _from_file(self, key: str) -> Any:
        node: Any = self._file
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return _MISSING
            node = node[part]
        return node

    def set_override(self, key: str, value: Any) -> None:
        """Pin ``key`` for this process (command-line flags). ``None`` is ignored."""
        if value is not None:
            self._overrides[key] = value

    def _lookup(self, key: str) -> tuple[Any, bool]:
        # (value, whether it came from the config file)
        if key in self._overrides:
            return self._overrides[key], False

        env_value = os.environ.get(self.env_name(key))
        if env_value is not None:
            return _coerce_env(env_value), False

        return self._from_file(key), True

    def get(self, key: str, default: Any = None) -> Any:
        """Value of a dot-notation key such as ``"lock.timeout_seconds"``."""
        value, _ = self._lookup(key)
        return default if value is _MISSING else value

    def base_dir(self, key: str) -> Optional[Path]:
        """Directory that a relative path in ``key`` is relative to.

        The config file's directory when the value was read from the file;
        None (the working directory) for flags, environment and defaults.
        """
        value, from_file = self._lookup(key)
        if from_file and value is not _MISSING and self._config_path is not None:
            return self._config_path.parent
        return None

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, str):
            if value.lower() in _TRUE:
                return True
            if value.lower() in _FALSE:
                return False
            raise ConfigurationError(f"{key} must be true or false, got {value!r}")
        return bool(value)

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key)
        if value is None:
            return default
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{key} must be an integer, got {value!r}", e) from e

    def get_float(self, key: str, default: Optional[float] = 0.0) -> Optional[float]:
        value = self.get(key)
        if value is None:
            return default
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{key} must be a number, got {value!r}", e) from e

    def get_path(self, key: str, default: str) -> Path:
        """Value of ``key`` as a Path.

        Relative paths in a config file are relative to that file, so a
        checked-in config works from any working directory. Relative paths
        from flags or the environment are relative to the working directory.
        """
        path = Path(str(self.get(key, default))).expanduser()
        base = self.base_dir(key)
        if path.is_absolute() or base is None:
            return path
        return base / path


def find_config_file(specified: Optional[Path] = None) -> Optional[Path]:
    """The config file to use: ``specified`` (which must exist) or the first search path found."""
    if specified is not None:
        if not specified.exists():
            raise ConfigurationError(f"Config file not found: {specified}")
        return specified

    for path in CONFIG_SEARCH_PATHS:
        if path.exists():
            return path
    return None
