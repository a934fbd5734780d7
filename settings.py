"""
Launcher configuration.

`launcher_config.json` holds the directory layout and engine knobs; every
string in it may use `:thisdir:` for the directory the file lives in. An
optional `config.json` next to it carries the per-user part (account, memory,
window size, feature flags) and overrides the same keys.
"""
import json
import logging
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from errors import ConfigError
from fetcher import DEFAULT_WORKERS
from replacer import replace_text
from runtime import Account, RuntimeContext

log = logging.getLogger(__name__)

CONFIG_FILENAME = 'launcher_config.json'
USER_CONFIG_FILENAME = 'config.json'

USER_KEYS = ('auth_player_name', 'auth_uuid', 'auth_access_token', 'auth_xuid', 'max_memory', 'min_memory',
             'features', 'demo', 'resolution_width', 'resolution_height')


@dataclass(frozen=True)
class LauncherConfig:
    config_dir: pathlib.Path
    version: Optional[str] = None
    basepath: Optional[pathlib.Path] = None
    path: str = '.minecraft'
    cache: Optional[pathlib.Path] = None
    java: Optional[pathlib.Path] = None
    workers: int = DEFAULT_WORKERS
    retries: int = 3
    account: Account = field(default_factory=Account)
    max_memory: Optional[int] = None
    min_memory: Optional[int] = None
    features: Dict[str, bool] = field(default_factory=dict)
    resolution: Optional[Tuple[int, int]] = None

    @property
    def install_root(self) -> pathlib.Path:
        base = self.basepath if self.basepath is not None else self.config_dir / '.mc_launcher_data'
        return base / self.path

    @property
    def cache_root(self) -> pathlib.Path:
        return self.cache if self.cache is not None else self.install_root / 'cache'

    @property
    def versions_dir(self) -> pathlib.Path:
        return self.install_root / 'versions'

    def runtime_context(self, **overrides) -> RuntimeContext:
        """Context for this machine, filled from the configured account and limits."""
        features = dict(self.features)
        if self.resolution is not None:
            features.setdefault('has_custom_resolution', True)
        options = dict(account=self.account, features=features, max_memory_mb=self.max_memory,
                       min_memory_mb=self.min_memory, resolution=self.resolution)
        options.update(overrides)
        return RuntimeContext.current(self.install_root, **options)


def _read_json(file_path: pathlib.Path) -> Dict[str, Any]:
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            document = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"{file_path.name} not found in {file_path.parent}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Error parsing {file_path.name}: {e}") from e
    if not isinstance(document, dict):
        raise ConfigError(f"{file_path.name} must contain a JSON object")
    return document


def _int(raw: Dict[str, Any], key: str, default=None) -> Optional[int]:
    value = raw.get(key, default)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"'{key}' must be an integer, got {value!r}") from e


def _path(raw: Dict[str, Any], key: str) -> Optional[pathlib.Path]:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"'{key}' must be a path string, got {value!r}")
    return pathlib.Path(value)


def _patched(document: Dict[str, Any], config_dir: pathlib.Path) -> Dict[str, Any]:
    return {key: replace_text(value, {':thisdir:': str(config_dir)}) for key, value in document.items()}


def load_config(file_path=None) -> LauncherConfig:
    """
    Loads `launcher_config.json` (and `config.json` beside it, if present).

    Args:
        file_path: Path to the config file, or to the directory holding it.
                   Defaults to the current directory.

    Raises:
        ConfigError: if the file is missing, is not valid JSON or holds a value
                     of the wrong type.
    """
    file_path = pathlib.Path(file_path) if file_path is not None else pathlib.Path.cwd()
    if file_path.is_dir():
        file_path = file_path / CONFIG_FILENAME
    config_dir = file_path.parent.resolve()
    raw = _patched(_read_json(file_path), config_dir)

    user_path = config_dir / USER_CONFIG_FILENAME
    if user_path.exists():
        try:
            user = _patched(_read_json(user_path), config_dir)
        except ConfigError as e:
            log.warning(f"Could not read {USER_CONFIG_FILENAME}: {e}. Using defaults.")
        else:
            raw.update({key: value for key, value in user.items() if key in USER_KEYS})

    features = raw.get('features') or {}
    if not isinstance(features, dict):
        raise ConfigError(f"'features' must be an object, got {features!r}")
    features = {str(name): bool(flag) for name, flag in features.items()}
    if 'demo' in raw:
        features.setdefault('is_demo_user', bool(raw['demo']))

    width, height = _int(raw, 'resolution_width'), _int(raw, 'resolution_height')
    resolution = (width, height) if width is not None and height is not None else None

    # Empty strings in the user file mean "not set".
    account_fields = {name: raw[key] for key, name in (('auth_player_name', 'player_name'), ('auth_uuid', 'uuid'),
                                                       ('auth_access_token', 'access_token'), ('auth_xuid', 'xuid'))
                      if raw.get(key)}

    config = LauncherConfig(
        config_dir=config_dir,
        version=raw.get('version'),
        basepath=_path(raw, 'basepath'),
        path=raw.get('path', '.minecraft'),
        cache=_path(raw, 'cache'),
        java=_path(raw, 'java'),
        workers=_int(raw, 'workers', DEFAULT_WORKERS),
        retries=_int(raw, 'retries', 3),
        account=Account(**account_fields),
        max_memory=_int(raw, 'max_memory'),
        min_memory=_int(raw, 'min_memory'),
        features=features,
        resolution=resolution,
    )
    if config.workers < 1 or config.retries < 1:
        raise ConfigError("'workers' and 'retries' must be at least 1")
    log.info(f"Launcher config loaded from {file_path}: install root {config.install_root}")
    return config
