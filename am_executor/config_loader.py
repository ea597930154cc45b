#!/usr/bin/env python3
"""
am-executor - Configuration

Loads the YAML configuration file (TLS and authentication settings) and
keeps the active snapshot behind a lock so it can be swapped on reload
without tearing reads in request handlers.

File format:
    tls:
      enabled: false
      crt: server.crt
      key: server.key
    basicAuth:
      enabled: false
      username: admin
      password: admin
    bearerAuth:
      enabled: false
      signingKey: my_secret_key

Reload is all-or-nothing: a file that fails to load or validate leaves
the previous snapshot active.
"""

import os
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when the configuration file cannot be loaded or is invalid."""
    pass


@dataclass(frozen=True)
class TLSConfig:
    enabled: bool = False
    crt: str = ""
    key: str = ""


@dataclass(frozen=True)
class BasicAuthConfig:
    enabled: bool = False
    username: str = ""
    password: str = ""


@dataclass(frozen=True)
class BearerAuthConfig:
    enabled: bool = False
    signing_key: str = ""


@dataclass(frozen=True)
class Config:
    tls: TLSConfig = field(default_factory=TLSConfig)
    basic_auth: BasicAuthConfig = field(default_factory=BasicAuthConfig)
    bearer_auth: BearerAuthConfig = field(default_factory=BearerAuthConfig)

    @property
    def auth_enabled(self) -> bool:
        return self.basic_auth.enabled or self.bearer_auth.enabled


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{name}: expected a mapping, got {type(value).__name__}")
    return value


def _bool(section: Dict[str, Any], name: str, where: str) -> bool:
    value = section.get(name, False)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ConfigError(f"{where}.{name}: expected true/false, got {value!r}")
    return value


def _str(section: Dict[str, Any], name: str, where: str) -> str:
    value = section.get(name, "")
    if value is None:
        return ""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ConfigError(f"{where}.{name}: expected a string, got {value!r}")
    return str(value)


def parse_config(data: Any) -> Config:
    """Build and validate a Config from parsed YAML."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"top level: expected a mapping, got {type(data).__name__}")

    tls = _section(data, "tls")
    basic = _section(data, "basicAuth")
    bearer = _section(data, "bearerAuth")

    config = Config(
        tls=TLSConfig(
            enabled=_bool(tls, "enabled", "tls"),
            crt=_str(tls, "crt", "tls"),
            key=_str(tls, "key", "tls"),
        ),
        basic_auth=BasicAuthConfig(
            enabled=_bool(basic, "enabled", "basicAuth"),
            username=_str(basic, "username", "basicAuth"),
            password=_str(basic, "password", "basicAuth"),
        ),
        bearer_auth=BearerAuthConfig(
            enabled=_bool(bearer, "enabled", "bearerAuth"),
            signing_key=_str(bearer, "signingKey", "bearerAuth"),
        ),
    )

    # === Configuration Validation (Fail Fast) ===
    if config.tls.enabled and not (config.tls.crt and config.tls.key):
        raise ConfigError("tls.enabled requires both tls.crt and tls.key")
    if config.basic_auth.enabled and not (config.basic_auth.username and config.basic_auth.password):
        raise ConfigError("basicAuth.enabled requires basicAuth.username and basicAuth.password")
    if config.bearer_auth.enabled and not config.bearer_auth.signing_key:
        raise ConfigError("bearerAuth.enabled requires bearerAuth.signingKey")

    if config.basic_auth.enabled and config.bearer_auth.enabled:
        logger.warning("Both basicAuth and bearerAuth are enabled; basicAuth takes precedence")

    return config


def load_config(path: str) -> Config:
    """
    Load and validate the configuration file.

    Raises:
        ConfigError: missing/unreadable file, YAML error, invalid values
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse config file {path}: {e}") from e
    return parse_config(data)


class ConfigHolder:
    """
    Active configuration snapshot with atomic replace-on-reload.

    Readers call get() once per request and use that snapshot throughout.
    """

    def __init__(self, path: str, config: Optional[Config] = None):
        self.path = path
        self._lock = threading.Lock()
        self._config = config if config is not None else load_config(path)

    def get(self) -> Config:
        with self._lock:
            return self._config

    def reload(self) -> Config:
        """
        Re-read the file and swap the snapshot.

        Raises:
            ConfigError: the previous snapshot stays active
        """
        new_config = load_config(self.path)
        with self._lock:
            old_config = self._config
            self._config = new_config
        if old_config.tls != new_config.tls:
            logger.warning("TLS settings changed; the listener keeps its startup settings until restart")
        return new_config


def resolve_path(path: str) -> str:
    """Absolute config path so reloads survive a changed working directory."""
    return os.path.abspath(path)
