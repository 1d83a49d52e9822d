"""Configuration for the local OCI store and the remote registries."""

from __future__ import annotations

import json
import logging
import os
import stat
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger("sori")

DEFAULT_DIR_MODE = 0o755
DEFAULT_OCI_STORE = "/var/lib/sori/oci"

_oci_store = DEFAULT_OCI_STORE


class ConfigError(Exception):
    """Raised when a configuration file is missing, malformed or invalid."""


@dataclass
class LocalStore:
    type: str = ""
    path: str = ""


@dataclass
class TLSConfig:
    insecure: bool = False
    ca_file: str = ""


@dataclass
class AuthConfig:
    username: str = ""
    password: str = ""
    token: str = ""


@dataclass
class RemoteStore:
    name: str = ""
    type: str = ""
    registry: str = ""
    repository: str = ""
    tls: TLSConfig = field(default_factory=TLSConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)


@dataclass
class Config:
    local: LocalStore = field(default_factory=LocalStore)
    remotes: list[RemoteStore] = field(default_factory=list)

    def ensure_dir(self) -> None:
        """Make sure the local store path exists as a directory, creating it if needed."""
        if not self.local.path:
            raise ConfigError("local.path is empty")
        path = os.path.normpath(self.local.path)
        try:
            info = os.stat(path)
        except FileNotFoundError:
            try:
                os.makedirs(path, DEFAULT_DIR_MODE, exist_ok=True)
            except OSError as exc:
                raise ConfigError(f"failed to create directory '{path}': {exc}") from exc
            log.info("Created directory: %s", path)
            return
        except OSError as exc:
            raise ConfigError(f"failed to check directory '{path}': {exc}") from exc
        if stat.S_ISDIR(info.st_mode):
            log.info("%s is ready", path)
            return
        raise ConfigError(f"path '{path}' already exists but is not a directory")


def _object(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"decode json: field {key!r} must be an object")
    return value


def _string(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"decode json: field {key!r} must be a string")
    return value


def _boolean(data: dict[str, Any], key: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ConfigError(f"decode json: field {key!r} must be a boolean")
    return value


def _parse_remote(data: Any) -> RemoteStore:
    if data is None:
        return RemoteStore()
    if not isinstance(data, dict):
        raise ConfigError("decode json: remote entries must be objects")
    tls = _object(data, "tls")
    auth = _object(data, "auth")
    return RemoteStore(
        name=_string(data, "name"),
        type=_string(data, "type"),
        registry=_string(data, "registry"),
        repository=_string(data, "repository"),
        tls=TLSConfig(insecure=_boolean(tls, "insecure"), ca_file=_string(tls, "ca_file")),
        auth=AuthConfig(
            username=_string(auth, "username"),
            password=_string(auth, "password"),
            token=_string(auth, "token"),
        ),
    )


def _parse_config(data: Any) -> Config:
    if data is None:
        return Config()
    if not isinstance(data, dict):
        raise ConfigError("decode json: configuration must be an object")
    local = _object(data, "local")
    remotes = data.get("remotes")
    if remotes is None:
        remotes = []
    if not isinstance(remotes, list):
        raise ConfigError("decode json: field 'remotes' must be an array")
    return Config(
        local=LocalStore(type=_string(local, "type"), path=_string(local, "path")),
        remotes=[_parse_remote(item) for item in remotes],
    )


def load_config(path: str | os.PathLike[str]) -> Config:
    """Read and validate a JSON configuration file; symbolic links are refused."""
    abs_path = os.path.abspath(path)
    try:
        info = os.lstat(abs_path)
    except OSError as exc:
        raise ConfigError(f"stat config: {exc}") from exc
    if not stat.S_ISREG(info.st_mode):
        raise ConfigError(f"config is not a regular file: {abs_path}")

    try:
        with open(abs_path, encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {abs_path}") from exc
    except OSError as exc:
        raise ConfigError(f"open config: {exc}") from exc
    except ValueError as exc:
        raise ConfigError(f"decode json: {exc}") from exc

    cfg = _parse_config(data)
    if not cfg.local.path:
        raise ConfigError("local.path is empty")
    if cfg.local.type != "oci":
        raise ConfigError(
            f"config error: local.type must be 'oci', but got '{cfg.local.type}'"
        )
    for i, remote in enumerate(cfg.remotes):
        if not remote.name or not remote.registry or not remote.repository:
            raise ConfigError(f"remotes[{i}] missing required fields")
    return cfg


def init_config(path: str | os.PathLike[str]) -> Config:
    """Load the configuration and make its local path the active OCI store."""
    global _oci_store
    cfg = load_config(path)
    _oci_store = cfg.local.path
    log.info("oci store path: %s", _oci_store)
    return cfg


def oci_store_path() -> str:
    """Return the path of the active local OCI store."""
    return _oci_store