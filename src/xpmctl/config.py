"""Configuration loader for xpmctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/xpmctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``XPMCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export XPMCTL_REMOTE__TIMEOUT=10
    export XPMCTL_DEPLOY__ON_FAILURE=cleanup

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "XPMCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RemoteConfig:
    """Where the upstream manifest lives and how to reach it."""

    manifest_url: str = ""
    token: str | None = None
    timeout: float = 30.0
    cache_bust: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (token redacted)."""
        return {
            "manifest_url": self.manifest_url,
            "token": "***" if self.token else None,
            "timeout": self.timeout,
            "cache_bust": self.cache_bust,
        }


@dataclass(frozen=True)
class SourceConfig:
    """Local checkout of the upstream repository."""

    root: Path
    versions_subdir: str = "core/versions"
    sync: bool = True
    git_bin: str = "git"
    remote: str = "origin"
    branch: str = "master"
    timeout: float = 30.0

    @property
    def versions_dir(self) -> Path:
        """Directory holding per-version folders inside the checkout."""
        return self.root / self.versions_subdir

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "versions_subdir": self.versions_subdir,
            "sync": self.sync,
            "git_bin": self.git_bin,
            "remote": self.remote,
            "branch": self.branch,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class DeployConfig:
    """Deployment worker behaviour."""

    on_failure: str = "keep"
    hash_algorithm: str = "sha256"
    queued_grace: float = 300.0
    materialize_timeout: float = 600.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "on_failure": self.on_failure,
            "hash_algorithm": self.hash_algorithm,
            "queued_grace": self.queued_grace,
            "materialize_timeout": self.materialize_timeout,
        }


@dataclass(frozen=True)
class CoreFilesConfig:
    """Raw core file serving options."""

    verify_on_read: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"verify_on_read": self.verify_on_read}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for xpmctl."""

    config_file: Path
    core_root: Path
    versions_root: Path
    manifest_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    remote: RemoteConfig
    source: SourceConfig
    deploy: DeployConfig
    core_files: CoreFilesConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "core_root": str(self.core_root),
            "versions_root": str(self.versions_root),
            "manifest_file": str(self.manifest_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "remote": self.remote.to_dict(),
            "source": self.source.to_dict(),
            "deploy": self.deploy.to_dict(),
            "core_files": self.core_files.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/xpmctl/config.yml",
    "core_root": "/srv/xpm/core",
    "versions_root": None,  # derived from core_root when absent
    "manifest_file": None,  # derived from core_root when absent
    "state_dir": "/var/lib/xpmctl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/xpmctl",
    "runtime_dir": "/run/xpmctl",
    "lock_timeout": 30.0,
    "remote": {
        "manifest_url": "",
        "token": None,
        "timeout": 30.0,
        "cache_bust": True,
    },
    "source": {
        "root": "/srv/xpm/source",
        "versions_subdir": "core/versions",
        "sync": True,
        "git_bin": "git",
        "remote": "origin",
        "branch": "master",
        "timeout": 30.0,
    },
    "deploy": {
        "on_failure": "keep",
        "hash_algorithm": "sha256",
        "queued_grace": 300.0,
        "materialize_timeout": 600.0,
    },
    "core_files": {
        "verify_on_read": False,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_FAILURE_POLICIES = {"keep", "cleanup"}
ALLOWED_HASH_ALGORITHMS = {"sha256", "sha512", "sha1", "md5"}
_SECTION_KEYS: dict[str, set[str]] = {
    "remote": {"manifest_url", "token", "timeout", "cache_bust"},
    "source": {"root", "versions_subdir", "sync", "git_bin", "remote", "branch", "timeout"},
    "deploy": {"on_failure", "hash_algorithm", "queued_grace", "materialize_timeout"},
    "core_files": {"verify_on_read"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    deploy_map = _as_dict(raw.get("deploy"), "deploy")
    policy = str(deploy_map.get("on_failure", "keep"))
    if policy not in ALLOWED_FAILURE_POLICIES:
        allowed = ", ".join(sorted(ALLOWED_FAILURE_POLICIES))
        raise ConfigError(f"Unsupported deploy failure policy '{policy}'. Allowed: {allowed}.")
    algorithm = str(deploy_map.get("hash_algorithm", "sha256")).lower()
    if algorithm not in ALLOWED_HASH_ALGORITHMS:
        allowed = ", ".join(sorted(ALLOWED_HASH_ALGORITHMS))
        raise ConfigError(f"Unsupported hash algorithm '{algorithm}'. Allowed: {allowed}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    core_root = _to_path(raw.get("core_root"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    versions_root_value = raw.get("versions_root")
    versions_root = (
        _to_path(versions_root_value) if versions_root_value else core_root / "versions"
    )
    manifest_value = raw.get("manifest_file")
    manifest_file = _to_path(manifest_value) if manifest_value else core_root / "manifests.json"
    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    remote_mapping = _as_dict(raw.get("remote"), "remote")
    token_value = remote_mapping.get("token")
    remote = RemoteConfig(
        manifest_url=str(remote_mapping.get("manifest_url") or "").strip(),
        token=str(token_value) if token_value not in (None, "") else None,
        timeout=_expect_positive_float(
            remote_mapping.get("timeout"), "remote.timeout", default=30.0
        ),
        cache_bust=_expect_bool(remote_mapping.get("cache_bust"), "remote.cache_bust", True),
    )

    source_mapping = _as_dict(raw.get("source"), "source")
    source = SourceConfig(
        root=_to_path(source_mapping.get("root", "/srv/xpm/source")),
        versions_subdir=str(source_mapping.get("versions_subdir", "core/versions")).strip("/"),
        sync=_expect_bool(source_mapping.get("sync"), "source.sync", True),
        git_bin=str(source_mapping.get("git_bin", "git")),
        remote=str(source_mapping.get("remote", "origin")),
        branch=str(source_mapping.get("branch", "master")),
        timeout=_expect_positive_float(
            source_mapping.get("timeout"), "source.timeout", default=30.0
        ),
    )

    deploy_mapping = _as_dict(raw.get("deploy"), "deploy")
    deploy = DeployConfig(
        on_failure=str(deploy_mapping.get("on_failure", "keep")),
        hash_algorithm=str(deploy_mapping.get("hash_algorithm", "sha256")).lower(),
        queued_grace=_expect_positive_float(
            deploy_mapping.get("queued_grace"), "deploy.queued_grace", default=300.0
        ),
        materialize_timeout=_expect_positive_float(
            deploy_mapping.get("materialize_timeout"),
            "deploy.materialize_timeout",
            default=600.0,
        ),
    )

    core_files_mapping = _as_dict(raw.get("core_files"), "core_files")
    core_files = CoreFilesConfig(
        verify_on_read=_expect_bool(
            core_files_mapping.get("verify_on_read"), "core_files.verify_on_read", False
        ),
    )

    return AppConfig(
        config_file=config_file,
        core_root=core_root,
        versions_root=versions_root,
        manifest_file=manifest_file,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        remote=remote,
        source=source,
        deploy=deploy,
        core_files=core_files,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_bool(value: object | None, label: str, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "yes", "1", "on"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "no", "0", "off"}:
        return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "CoreFilesConfig",
    "DeployConfig",
    "RemoteConfig",
    "SourceConfig",
    "load_config",
]
