"""
Static settings, loaded once at process start.

Values come from built-in defaults, then an optional YAML file, then
``JINJA_PAGES_*`` environment variables.
"""

import os
import secrets
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from errors import ConfigError

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_CONFIG_FILE = BASE_DIR / 'config.yaml'
ENV_PREFIX = 'JINJA_PAGES_'


@dataclass
class PoolSettings:
    initial_size: int = 5
    max_active: int = 10
    max_idle: int = 5
    min_idle: int = 2
    max_wait: float = 5.0


@dataclass
class DatabaseSettings:
    url: str = 'file:jinja_pages?mode=memory&cache=shared'
    init_script: str = str(BASE_DIR / 'init.sql')
    pool: PoolSettings = field(default_factory=PoolSettings)


@dataclass
class Settings:
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    pages_dir: str = str(BASE_DIR / 'pages')
    template_extension: str = '.html'
    default_template: str = 'index'
    max_include_depth: int = 10
    auto_reload: bool = True
    secret_key: str = ''
    debug: bool = False
    host: str = '0.0.0.0'
    port: int = 8080
    log_level: str = 'INFO'
    globals: dict = field(default_factory=dict)


# Environment variable suffix -> dotted settings path
ENV_OVERRIDES = {
    'DATABASE_URL': 'database.url',
    'INIT_SCRIPT': 'database.init_script',
    'PAGES_DIR': 'pages_dir',
    'SECRET_KEY': 'secret_key',
    'DEBUG': 'debug',
    'HOST': 'host',
    'PORT': 'port',
    'LOG_LEVEL': 'log_level',
}


def _coerce(value, current, name):
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in {'1', 'true', 'yes', 'on'}
    if isinstance(current, (int, float)) and not isinstance(value, type(current)):
        try:
            return type(current)(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f'Invalid value for {name}: {value!r}') from exc
    return value


def _apply(target, data, prefix=''):
    known = {f.name for f in fields(target)}
    for key, value in data.items():
        name = f'{prefix}{key}'
        if key not in known:
            raise ConfigError(f'Unknown setting: {name}')
        current = getattr(target, key)
        if hasattr(current, '__dataclass_fields__'):
            if not isinstance(value, dict):
                raise ConfigError(f'Setting {name} must be a mapping')
            _apply(current, value, prefix=f'{name}.')
        elif key == 'globals':
            if not isinstance(value, dict):
                raise ConfigError('Setting globals must be a mapping')
            setattr(target, key, dict(value))
        else:
            setattr(target, key, _coerce(value, current, name))


def _set_path(settings, path, value):
    *parents, leaf = path.split('.')
    target = settings
    for part in parents:
        target = getattr(target, part)
    setattr(target, leaf, _coerce(value, getattr(target, leaf), path))


def load_settings(path=None, environ=None):
    environ = os.environ if environ is None else environ
    settings = Settings()

    config_path = path or environ.get(f'{ENV_PREFIX}CONFIG')
    if config_path is None and DEFAULT_CONFIG_FILE.exists():
        config_path = DEFAULT_CONFIG_FILE

    if config_path is not None:
        try:
            with open(config_path, encoding='utf-8') as fh:
                data = yaml.safe_load(fh)
        except OSError as exc:
            raise ConfigError(f'Cannot read config file {config_path}: {exc}') from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f'Invalid YAML in {config_path}: {exc}') from exc
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f'Config file {config_path} must contain a mapping')
        _apply(settings, data)

        # Relative paths in the file are relative to the file itself
        config_dir = Path(config_path).resolve().parent
        settings.pages_dir = str(config_dir / settings.pages_dir)
        settings.database.init_script = str(config_dir / settings.database.init_script)

    for suffix, setting_path in ENV_OVERRIDES.items():
        value = environ.get(f'{ENV_PREFIX}{suffix}')
        if value is not None:
            _set_path(settings, setting_path, value)

    # Random per-process key, like Flask's own development fallback
    if not settings.secret_key:
        settings.secret_key = secrets.token_hex(32)

    return settings
