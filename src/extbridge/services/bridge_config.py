from __future__ import annotations
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping
import logging
import os
import yaml

from extbridge.config import const

_log = logging.getLogger("extbridge.config")

ENV_PREFIX = "EXTBRIDGE_"


def default_base_dir() -> Path:
    raw = os.environ.get("EXTBRIDGE_HOME")
    if raw:
        return Path(raw).expanduser()
    return Path.home() / ".extbridge"


def default_config_path() -> Path:
    return default_base_dir() / "bridge.yaml"


def default_pairing_store_path() -> Path:
    return default_base_dir() / "paired-devices.json"


@dataclass
class BridgeSettings:
    host: str = const.BRIDGE_HOST
    port: int = const.BRIDGE_PORT
    path: str = const.BRIDGE_PATH
    pairing_code_ttl_seconds: int = const.DEFAULT_PAIRING_CODE_TTL_SECONDS
    pairing_store_path: str | None = None
    network_policy: str = const.DEFAULT_NETWORK_POLICY
    idle_timeout_seconds: float = const.DEFAULT_IDLE_TIMEOUT_SECONDS
    request_timeout_ms: int = const.DEFAULT_REQUEST_TIMEOUT_MS
    reconnect_wait_ms: int = const.DEFAULT_RECONNECT_WAIT_MS
    allowed_actions: list[str] = field(default_factory=lambda: list(const.DEFAULT_ALLOWED_ACTIONS))
    admin_token: str | None = None
    log_level: str = "INFO"
    log_file: str | None = None

    def ensure_defaults(self) -> bool:
        """Replace invalid values with defaults. Returns True when anything changed."""
        changed = False
        host = (self.host or "").strip()
        if not host:
            self.host = const.BRIDGE_HOST
            changed = True
        elif host != self.host:
            self.host = host
            changed = True
        if not self.path.startswith("/"):
            self.path = "/" + self.path
            changed = True
        if self.network_policy not in const.NETWORK_POLICIES:
            _log.warning(
                "unknown network policy %r, falling back to %s",
                self.network_policy,
                const.DEFAULT_NETWORK_POLICY,
            )
            self.network_policy = const.DEFAULT_NETWORK_POLICY
            changed = True
        if self.pairing_code_ttl_seconds <= 0:
            self.pairing_code_ttl_seconds = const.DEFAULT_PAIRING_CODE_TTL_SECONDS
            changed = True
        if self.idle_timeout_seconds < 0:
            self.idle_timeout_seconds = 0
            changed = True
        if self.request_timeout_ms <= 0:
            self.request_timeout_ms = const.DEFAULT_REQUEST_TIMEOUT_MS
            changed = True
        if self.reconnect_wait_ms < 0:
            self.reconnect_wait_ms = 0
            changed = True
        if not self.allowed_actions:
            self.allowed_actions = list(const.DEFAULT_ALLOWED_ACTIONS)
            changed = True
        return changed

    def store_path(self) -> Path:
        if self.pairing_store_path:
            return Path(self.pairing_store_path).expanduser()
        return default_pairing_store_path()

    def endpoint_url(self) -> str:
        host = "localhost" if self.host in ("0.0.0.0", "::") else self.host
        return f"ws://{host}:{self.port}{self.path}"

    def admin_base_url(self) -> str:
        host = "127.0.0.1" if self.host in ("0.0.0.0", "::") else self.host
        return f"http://{host}:{self.port}"

    def with_overrides(self, **overrides: Any) -> "BridgeSettings":
        clean = {key: value for key, value in overrides.items() if value is not None}
        updated = replace(self, **clean)
        updated.ensure_defaults()
        return updated

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _coerce(raw: str, template: Any) -> Any:
    if isinstance(template, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(template, int):
        return int(raw)
    if isinstance(template, float):
        return float(raw)
    if isinstance(template, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def _typed(value: Any, template: Any) -> Any:
    """Convert a yaml value to the type of the field default. Raises ValueError."""
    if value is None:
        if template is None:
            return None
        raise ValueError("missing value")
    if isinstance(value, str):
        return value if template is None else _coerce(value, template)
    if template is None:
        if isinstance(value, (dict, list)):
            raise ValueError("expected a scalar")
        return str(value)
    if isinstance(template, bool):
        if isinstance(value, bool):
            return value
        raise ValueError("expected a boolean")
    if isinstance(template, (int, float)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("expected a number")
        return type(template)(value)
    if isinstance(template, list):
        if not isinstance(value, (list, tuple)):
            raise ValueError("expected a list")
        return [str(item) for item in value]
    if isinstance(value, (dict, list)):
        raise ValueError("expected a scalar")
    return str(value)


def _settings_from_dict(payload: Mapping[str, Any]) -> BridgeSettings:
    defaults = BridgeSettings()
    known = {f.name for f in fields(BridgeSettings)}
    kwargs: dict[str, Any] = {}
    for key, value in payload.items():
        name = str(key).replace("-", "_")
        if name not in known:
            _log.warning("ignoring unknown config key %s", key)
            continue
        try:
            kwargs[name] = _typed(value, getattr(defaults, name))
        except ValueError:
            _log.warning("invalid value for config key %s: %r, using default", key, value)
    return BridgeSettings(**kwargs)


def _apply_env(settings: BridgeSettings, environ: Mapping[str, str]) -> BridgeSettings:
    defaults = BridgeSettings()
    overrides: dict[str, Any] = {}
    for f in fields(BridgeSettings):
        raw = environ.get(ENV_PREFIX + f.name.upper())
        if raw is None or raw == "":
            continue
        template = getattr(defaults, f.name)
        try:
            overrides[f.name] = _coerce(raw, template) if template is not None else raw
        except ValueError:
            _log.warning("invalid value for %s%s: %r", ENV_PREFIX, f.name.upper(), raw)
    if not overrides:
        return settings
    return replace(settings, **overrides)


def load_settings(path: Path | None = None, *, environ: Mapping[str, str] | None = None) -> BridgeSettings:
    """Load settings from yaml, then apply ``EXTBRIDGE_*`` environment overrides."""

    config_path = path or default_config_path()
    data: Any = {}
    if config_path.exists():
        try:
            data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError):
            _log.warning("failed to read %s, using defaults", config_path, exc_info=True)
            data = {}
    if not isinstance(data, dict):
        _log.warning("config %s is not a mapping, using defaults", config_path)
        data = {}
    settings = _settings_from_dict(data)
    settings = _apply_env(settings, os.environ if environ is None else environ)
    settings.ensure_defaults()
    return settings


def save_settings(settings: BridgeSettings, path: Path | None = None) -> Path:
    config_path = path or default_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        yaml.safe_dump(settings.to_dict(), allow_unicode=True, sort_keys=False),
        encoding="utf-8",
    )
    return config_path


__all__ = [
    "BridgeSettings",
    "default_base_dir",
    "default_config_path",
    "default_pairing_store_path",
    "load_settings",
    "save_settings",
]
