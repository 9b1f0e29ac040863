"""Configuration store for phppark.

Settings are resolved from, in increasing precedence:

1. Built-in defaults.
2. ``~/.phppark/config.yaml``.
3. Environment variables prefixed with ``PHPPARK_``.
4. Explicit overrides supplied programmatically.

Environment keys use double underscores to express nesting, e.g.::

    export PHPPARK_DOMAIN=localhost
    export PHPPARK_SYSTEM__NGINX_BIN=/usr/sbin/nginx

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The result is an immutable :class:`ParkConfig`.
"""
from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import cast

import yaml

from .errors import ParseError, PrivilegeError, StorageError
from .php.version import FALLBACK_VERSION, normalize_version

ENV_PREFIX = "PHPPARK_"
RESERVED_ENV_KEYS = {f"{ENV_PREFIX}HOME"}
# Version strings such as "8.10" must not be read as floats.
LITERAL_ENV_PATHS = {("default_php",)}

_DOMAIN_RE = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)*$")


class ConfigError(ParseError):
    """Raised when configuration parsing fails."""


class StubState(str, Enum):
    """Whether phppark has disabled the systemd-resolved stub listener."""

    ENABLED = "enabled"
    DISABLED = "disabled"


@dataclass(frozen=True)
class SystemConfig:
    """Host paths and binaries phppark reconciles against."""

    nginx_bin: str = "nginx"
    systemctl_bin: str = "systemctl"
    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    php_search_paths: tuple[Path, ...] = (Path("/usr/bin"), Path("/usr/local/bin"))
    dnsmasq_dir: Path = Path("/etc/dnsmasq.d")
    resolved_conf: Path = Path("/etc/systemd/resolved.conf")
    resolv_conf: Path = Path("/etc/resolv.conf")
    resolved_upstream: Path = Path("/run/systemd/resolve/resolv.conf")
    resolved_stub: Path = Path("/run/systemd/resolve/stub-resolv.conf")
    lock_timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "nginx_bin": self.nginx_bin,
            "systemctl_bin": self.systemctl_bin,
            "sites_available": str(self.sites_available),
            "sites_enabled": str(self.sites_enabled),
            "php_search_paths": [str(path) for path in self.php_search_paths],
            "dnsmasq_dir": str(self.dnsmasq_dir),
            "resolved_conf": str(self.resolved_conf),
            "resolv_conf": str(self.resolv_conf),
            "resolved_upstream": str(self.resolved_upstream),
            "resolved_stub": str(self.resolved_stub),
            "lock_timeout": self.lock_timeout,
        }


@dataclass(frozen=True)
class DnsConfig:
    """Persisted DNS resolver state."""

    stub_state: StubState = StubState.ENABLED

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"stub_state": self.stub_state.value}


@dataclass(frozen=True)
class ParkConfig:
    """Resolved global settings."""

    config_file: Path
    domain: str = "test"
    default_php: str = FALLBACK_VERSION
    use_https: bool = False
    dns: DnsConfig = field(default_factory=DnsConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "domain": self.domain,
            "default_php": self.default_php,
            "use_https": self.use_https,
            "dns": self.dns.to_dict(),
            "system": self.system.to_dict(),
        }

    def to_document(self) -> dict[str, object]:
        """Return the mapping persisted to ``config.yaml``.

        Only ``system`` keys that differ from the built-in defaults are kept so
        the file stays readable.
        """
        document: dict[str, object] = {
            "domain": self.domain,
            "default_php": self.default_php,
            "use_https": self.use_https,
            "dns": self.dns.to_dict(),
        }
        defaults = SystemConfig().to_dict()
        system = {
            key: value
            for key, value in self.system.to_dict().items()
            if defaults.get(key) != value
        }
        if system:
            document["system"] = system
        return document

    def with_default_php(self, version: str) -> ParkConfig:
        """Return a copy using *version* as the registry-wide default."""
        return replace(self, default_php=normalize_version(version))

    def with_stub_state(self, state: StubState) -> ParkConfig:
        """Return a copy recording the DNS stub *state*."""
        return replace(self, dns=DnsConfig(stub_state=state))


DEFAULTS: dict[str, object] = {
    "domain": "test",
    "default_php": FALLBACK_VERSION,
    "use_https": False,
    "dns": {"stub_state": StubState.ENABLED.value},
    "system": SystemConfig().to_dict(),
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SYSTEM_KEYS = set(SystemConfig().to_dict().keys())


def default_config(config_file: Path, *, default_php: str | None = None) -> ParkConfig:
    """Return install-time defaults, preferring the detected *default_php*."""
    version = normalize_version(default_php) if default_php else FALLBACK_VERSION
    return ParkConfig(config_file=config_file, default_php=version)


def load_config(
    config_file: str | os.PathLike[str],
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
    allow_missing: bool = False,
) -> ParkConfig:
    """Load and merge configuration sources into a :class:`ParkConfig`.

    A missing *config_file* is an error unless *allow_missing* is set, which
    only ``install`` does.
    """
    path = Path(config_file)
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    if not path.exists() and not allow_missing:
        raise StorageError(f"Config file {path} not found. Run 'phppark install' first.")

    file_values = _load_yaml_file(path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    _validate_structure(merged)
    return _build_config(path, merged)


def save_config(config: ParkConfig, config_file: Path | None = None) -> Path:
    """Atomically write *config* as YAML and return the destination."""
    path = config_file or config.config_file
    _atomic_write_yaml(path, config.to_document(), mode=0o644)
    return path


def _atomic_write_yaml(path: Path, payload: Mapping[str, object], *, mode: int) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    except PermissionError as exc:
        raise PrivilegeError(f"Cannot write {path}: {exc}") from exc
    except OSError as exc:
        raise StorageError(f"Cannot write {path}: {exc}") from exc
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            yaml.safe_dump(dict(payload), handle, sort_keys=False)
        os.replace(tmp_path, path)
        os.chmod(path, mode)
    except OSError as exc:
        raise StorageError(f"Cannot write {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    except OSError as exc:
        raise StorageError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    dns = _as_dict(raw.get("dns"), "dns")
    unknown = set(dns.keys()) - {"stub_state"}
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown dns configuration keys: {joined}.")

    system = _as_dict(raw.get("system"), "system")
    unknown = set(system.keys()) - ALLOWED_SYSTEM_KEYS
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown system configuration keys: {joined}.")


def _build_config(path: Path, raw: Mapping[str, object]) -> ParkConfig:
    domain = str(raw.get("domain", "")).strip().lower().lstrip(".")
    if not _DOMAIN_RE.match(domain):
        raise ConfigError(f"Invalid domain suffix {raw.get('domain')!r}.")

    default_php_raw = raw.get("default_php", FALLBACK_VERSION)
    if not isinstance(default_php_raw, str):
        raise ConfigError(
            f"Expected default_php to be a string. Got {default_php_raw!r}; "
            f"quote it, for example default_php: \"{default_php_raw}\"."
        )
    try:
        default_php = normalize_version(default_php_raw)
    except ParseError as exc:
        raise ConfigError(f"default_php: {exc}") from exc

    use_https = raw.get("use_https", False)
    if not isinstance(use_https, bool):
        raise ConfigError(f"Expected use_https to be a boolean. Got {use_https!r}.")

    dns_mapping = _as_dict(raw.get("dns"), "dns")
    stub_value = str(dns_mapping.get("stub_state", StubState.ENABLED.value))
    try:
        stub_state = StubState(stub_value)
    except ValueError as exc:
        allowed = ", ".join(state.value for state in StubState)
        raise ConfigError(
            f"Unsupported dns.stub_state '{stub_value}'. Allowed: {allowed}."
        ) from exc

    system_mapping = _as_dict(raw.get("system"), "system")
    defaults = SystemConfig()
    search_paths_raw = system_mapping.get("php_search_paths")
    if search_paths_raw is None:
        search_paths = defaults.php_search_paths
    else:
        search_paths = tuple(
            _to_path(item)
            for item in _as_sequence(search_paths_raw, "system.php_search_paths")
        )

    system = SystemConfig(
        nginx_bin=str(system_mapping.get("nginx_bin", defaults.nginx_bin)),
        systemctl_bin=str(system_mapping.get("systemctl_bin", defaults.systemctl_bin)),
        sites_available=_to_path(system_mapping.get("sites_available", defaults.sites_available)),
        sites_enabled=_to_path(system_mapping.get("sites_enabled", defaults.sites_enabled)),
        php_search_paths=search_paths,
        dnsmasq_dir=_to_path(system_mapping.get("dnsmasq_dir", defaults.dnsmasq_dir)),
        resolved_conf=_to_path(system_mapping.get("resolved_conf", defaults.resolved_conf)),
        resolv_conf=_to_path(system_mapping.get("resolv_conf", defaults.resolv_conf)),
        resolved_upstream=_to_path(
            system_mapping.get("resolved_upstream", defaults.resolved_upstream)
        ),
        resolved_stub=_to_path(system_mapping.get("resolved_stub", defaults.resolved_stub)),
        lock_timeout=_expect_positive_float(
            system_mapping.get("lock_timeout"),
            "system.lock_timeout",
            default=defaults.lock_timeout,
        ),
    )

    return ParkConfig(
        config_file=path,
        domain=domain,
        default_php=default_php,
        use_https=use_https,
        dns=DnsConfig(stub_state=stub_state),
        system=system,
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
        if tuple(path_segments) in LITERAL_ENV_PATHS:
            _assign_nested(overrides, path_segments, value.strip())
        else:
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
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:
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
        raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")
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
    "ConfigError",
    "DnsConfig",
    "ParkConfig",
    "StubState",
    "SystemConfig",
    "default_config",
    "load_config",
    "save_config",
]
