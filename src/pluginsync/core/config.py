"""
Layered configuration for pluginsync.

Precedence, lowest first:
  built-in defaults
  first existing YAML file (./pluginsync.yml, ~/.config/pluginsync/config.yml, /etc/pluginsync/config.yml)
  PSYNC_<SECTION>__<KEY> environment variables (a .env file is loaded first, existing env wins)
  CLI overrides (None values ignored)

String values of the form "${VAR}" are expanded from the environment.
"""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv


@dataclass
class AppSection:
    run_id: Optional[str] = None
    dry_run: bool = False


@dataclass
class StoreSection:
    base_url: str = ""
    token: str = ""          # secret, never logged
    verify_tls: bool = True
    timeout_sec: int = 30
    retries: int = 3
    file: str = ""           # JSON dump served by InMemoryRecordStore instead of HTTP


@dataclass
class SyncSection:
    snapshot_path: str = "./plugin-steps.json"
    assembly_name: str = ""
    identity_mode: str = ""          # "" -> mode recorded in the snapshot
    check_version: bool = True
    delete_orphans: bool = False


@dataclass
class WebResourcesSection:
    root: str = "./webresources"
    prefix: str = ""
    patterns: list[str] = field(default_factory=lambda: ["*.html", "*.htm", "*.js"])


@dataclass
class LoggingSection:
    base_dir: str = "logs"
    console_level: str = "INFO"
    file_level: str = "DEBUG"


@dataclass
class AppConfig:
    app: AppSection
    store: StoreSection
    sync: SyncSection
    webresources: WebResourcesSection
    logging: LoggingSection

    @property
    def run_id(self) -> str:
        """Short run identifier, generated on first access when not configured."""
        if not self.app.run_id:
            self.app.run_id = uuid.uuid4().hex[:12]
        return self.app.run_id


_DEFAULT_FILES: Tuple[str, ...] = (
    "./pluginsync.yml",
    os.path.expanduser("~/.config/pluginsync/config.yml"),
    "/etc/pluginsync/config.yml",
)

_SECTIONS = {
    "app": AppSection,
    "store": StoreSection,
    "sync": SyncSection,
    "webresources": WebResourcesSection,
    "logging": LoggingSection,
}

_BOOL_KEYS = {"verify_tls", "dry_run", "check_version", "delete_orphans"}
_INT_KEYS = {"timeout_sec", "retries"}
_LIST_KEYS = {"patterns"}

_TRUE = {"1", "true", "yes", "y", "on"}


def _defaults() -> Dict[str, Dict[str, Any]]:
    return {name: vars(cls()) for name, cls in _SECTIONS.items()}


def _merge(lower: Dict[str, Any], upper: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Nested dicts merge key by key; any other value from `upper` replaces."""
    merged = dict(lower)
    for key, value in (upper or {}).items():
        below = merged.get(key)
        merged[key] = _merge(below, value) if isinstance(value, dict) and isinstance(below, dict) else value
    return merged


def _load_yaml(files: Tuple[str, ...]) -> Dict[str, Any]:
    path = next((p for p in files if os.path.exists(p)), None)
    if path is None:
        return {}
    with open(path, "r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Top-level YAML must be a mapping: {path}")
    return data


def _load_dotenv() -> None:
    env_path = find_dotenv(usecwd=True)
    if env_path:
        load_dotenv(env_path, override=False)


def _env_layer(prefix: str) -> Dict[str, Any]:
    """PSYNC_STORE__BASE_URL=x -> {"store": {"base_url": "x"}}."""
    layer: Dict[str, Any] = {}
    for name, raw in os.environ.items():
        if not name.startswith(prefix):
            continue
        *sections, key = name[len(prefix):].lower().split("__")
        node = layer
        for section in sections:
            node = node.setdefault(section, {})
        node[key] = [p.strip() for p in raw.split(",") if p.strip()] if key in _LIST_KEYS else raw
    return layer


def _expand_vars(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _expand_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_vars(v) for v in value]
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        return os.environ.get(value[2:-1], "")
    return value


def _coerce(value: Any, key: str = "") -> Any:
    if isinstance(value, dict):
        return {k: _coerce(v, k) for k, v in value.items()}
    if isinstance(value, list):
        return [_coerce(v, key) for v in value]
    if key in _BOOL_KEYS and not isinstance(value, bool):
        return str(value).strip().lower() in _TRUE
    if key in _INT_KEYS:
        try:
            return int(value)
        except (TypeError, ValueError):
            return value
    return value


def _without_none(overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Unset CLI flags arrive as None and must not mask lower layers."""
    out: Dict[str, Any] = {}
    for key, value in overrides.items():
        if isinstance(value, dict):
            out[key] = _without_none(value)
        elif value is not None:
            out[key] = value
    return out


def _validate(cfg: Dict[str, Any]) -> None:
    for name in _SECTIONS:
        if not isinstance(cfg.get(name), dict):
            raise ValueError(f"Config section '{name}' must be a mapping")
    mode = str(cfg["sync"].get("identity_mode") or "").lower()
    if mode not in ("", "guid", "composite"):
        raise ValueError(f"sync.identity_mode must be 'guid' or 'composite', got {mode!r}")
    if cfg["app"].get("dry_run"):
        return
    store = cfg["store"]
    if not store.get("base_url") and not store.get("file"):
        raise ValueError("Missing required configuration for non-dry run: store.base_url (or store.file)")


def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    files: Tuple[str, ...] = _DEFAULT_FILES,
    env_prefix: str = "PSYNC_",
    *,
    use_dotenv: bool = True,
) -> AppConfig:
    """Merge every layer, expand ${VAR}, coerce bool/int keys and validate."""
    if use_dotenv:
        _load_dotenv()

    merged: Dict[str, Any] = _defaults()
    for layer in (_load_yaml(files), _env_layer(env_prefix), _without_none(cli_overrides or {})):
        merged = _merge(merged, layer)
    merged = _coerce(_expand_vars(merged))

    _validate(merged)
    sections: Dict[str, Any] = {}
    for name, cls in _SECTIONS.items():
        try:
            sections[name] = cls(**merged[name])
        except TypeError as exc:
            raise ValueError(f"Invalid keys in config section '{name}': {exc}") from exc
    return AppConfig(**sections)
