"""
Hostplay run configuration.

Settings are layered, lowest to highest:

1. Built-in defaults (the ``RunConfig`` field defaults)
2. ``[defaults]`` section of an INI file: ``$HOSTPLAY_CONFIG`` or
   ``./hostplay.cfg``
3. ``HOSTPLAY_*`` environment variables
4. CLI flags, applied by the caller through ``RunConfig.override``
"""

import configparser
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from hostplay.engine.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILE = 'hostplay.cfg'
STRATEGIES = ('linear', 'free')

# Environment variable -> RunConfig field
ENV_VARS = {
    'HOSTPLAY_FORKS': 'forks',
    'HOSTPLAY_STRATEGY': 'strategy',
    'HOSTPLAY_TIMEOUT': 'task_timeout',
    'HOSTPLAY_GATHERING': 'gather_facts',
    'HOSTPLAY_FACT_CACHE': 'fact_cache_path',
    'HOSTPLAY_ROLES_PATH': 'roles_path',
}

# INI keys that differ from the field name
INI_ALIASES = {
    'timeout': 'task_timeout',
    'gathering': 'gather_facts',
    'fact_caching_connection': 'fact_cache_path',
}

_TRUE = ('1', 'true', 'yes', 'on', 'implicit')
_FALSE = ('0', 'false', 'no', 'off', 'explicit', '')


@dataclass
class RunConfig:
    """Run-wide defaults; plays and tasks may override some of them."""

    forks: int = 5
    strategy: str = 'linear'
    task_timeout: Optional[float] = None
    gather_facts: bool = False
    fact_cache_path: Optional[str] = None
    check_mode: bool = False
    diff_mode: bool = False
    verbosity: int = 0
    roles_path: List[str] = field(default_factory=list)
    any_errors_fatal: bool = False

    def override(self, **values: Any) -> 'RunConfig':
        """Return a copy with every non-None value applied and validated."""
        changes = {k: v for k, v in values.items() if v is not None}
        return replace(self, **{k: _coerce(k, v) for k, v in changes.items()})


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw setting to the field's type, raising ConfigError."""
    if name in ('forks', 'verbosity'):
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ConfigError(name, value, "must be an integer")
        if name == 'forks' and number < 1:
            raise ConfigError(name, value, "must be at least 1")
        return number

    if name == 'task_timeout':
        if value in ('', 0, '0'):
            return None
        try:
            seconds = float(value)
        except (TypeError, ValueError):
            raise ConfigError(name, value, "must be a number of seconds")
        if seconds < 0:
            raise ConfigError(name, value, "must not be negative")
        return seconds

    if name == 'strategy':
        if value not in STRATEGIES:
            raise ConfigError(name, value, f"must be one of {', '.join(STRATEGIES)}")
        return value

    if name in ('gather_facts', 'check_mode', 'diff_mode', 'any_errors_fatal'):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigError(name, value, "must be a boolean")

    if name == 'roles_path':
        if isinstance(value, str):
            return [p for p in value.split(os.pathsep) if p]
        return list(value)

    return value


def _read_ini(path: Path) -> Dict[str, str]:
    parser = configparser.ConfigParser()
    try:
        parser.read(path, encoding='utf-8')
    except configparser.Error as e:
        raise ConfigError(str(path), None, f"unreadable config file: {e}")
    if not parser.has_section('defaults'):
        return {}

    known = {f.name for f in fields(RunConfig)}
    values = {}
    for key, value in parser.items('defaults'):
        name = INI_ALIASES.get(key, key)
        if name in known:
            values[name] = value
        else:
            logger.warning("Ignoring unknown setting %r in %s", key, path)
    return values


def load_config(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RunConfig:
    """
    Build the run configuration from defaults, config file and environment.

    Args:
        path: Explicit config file; defaults to $HOSTPLAY_CONFIG, then ./hostplay.cfg
        environ: Environment mapping (defaults to os.environ)

    Raises:
        ConfigError: If a setting has an invalid value
    """
    environ = os.environ if environ is None else environ
    config = RunConfig()

    config_path = path or environ.get('HOSTPLAY_CONFIG')
    candidate = Path(config_path) if config_path else Path.cwd() / CONFIG_FILE
    if candidate.is_file():
        logger.debug("Using config file %s", candidate)
        config = config.override(**_read_ini(candidate))
    elif config_path:
        raise ConfigError('HOSTPLAY_CONFIG', config_path, "config file not found")

    from_env = {name: environ[var] for var, name in ENV_VARS.items() if var in environ}
    if from_env:
        config = config.override(**from_env)
    return config
