"""Configuration loading and environment variable parsing for nido."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from nido.constants import (
    BACKUPS_DIR_NAME,
    CATALOG_URL,
    CONFIG_FILE_NAME,
    DEFAULT_CACHE_TTL,
    DEFAULT_MEMORY_MB,
    DEFAULT_ROOT_NAME,
    DEFAULT_SSH_USER,
    DEFAULT_TEMPLATE,
    IMAGES_DIR_NAME,
    PORT_SCAN_WIDTH,
    QEMU_BINARY,
    RUN_DIR_NAME,
    SSH_PORT_START,
    TRUTHY,
    VMS_DIR_NAME,
    VNC_PORT_START,
)
from nido.exceptions import ManagerError
from nido.utils import get_env, get_env_bool, parse_int_env


@dataclass
class Config:
    root_dir: Path
    template_dir: Path
    image_dir: Path
    ssh_user: str = DEFAULT_SSH_USER
    template_default: str = DEFAULT_TEMPLATE
    linked_clones: bool = True
    memory_mb: int = DEFAULT_MEMORY_MB
    catalog_url: str = CATALOG_URL
    catalog_ttl: int = DEFAULT_CACHE_TTL
    ssh_port_start: int = SSH_PORT_START
    vnc_port_start: int = VNC_PORT_START
    port_scan_width: int = PORT_SCAN_WIDTH
    qemu_binary: str = QEMU_BINARY
    ssh_dir: Optional[Path] = None

    @classmethod
    def for_root(cls, root_dir: Path) -> "Config":
        root = Path(root_dir)
        return cls(
            root_dir=root,
            template_dir=root / BACKUPS_DIR_NAME,
            image_dir=root / IMAGES_DIR_NAME,
        )

    @property
    def vms_dir(self) -> Path:
        return self.root_dir / VMS_DIR_NAME

    @property
    def run_dir(self) -> Path:
        return self.root_dir / RUN_DIR_NAME


# YAML key -> (attribute, type)
_FILE_KEYS: Dict[str, tuple] = {
    "template_dir": ("template_dir", Path),
    "backup_dir": ("template_dir", Path),
    "image_dir": ("image_dir", Path),
    "ssh_user": ("ssh_user", str),
    "template_default": ("template_default", str),
    "linked_clones": ("linked_clones", bool),
    "memory_mb": ("memory_mb", int),
    "catalog_url": ("catalog_url", str),
    "catalog_ttl": ("catalog_ttl", int),
    "ssh_port_start": ("ssh_port_start", int),
    "vnc_port_start": ("vnc_port_start", int),
    "port_scan_width": ("port_scan_width", int),
    "qemu_binary": ("qemu_binary", str),
    "ssh_dir": ("ssh_dir", Path),
}


def default_root() -> Path:
    """Data root for the invoking user. Only entry points should call this."""
    return Path.home() / DEFAULT_ROOT_NAME


def _coerce(key: str, value: Any, kind: type) -> Any:
    if kind is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, str)):
            return str(value).strip().lower() in TRUTHY
        raise ManagerError(f"Config key '{key}' must be a boolean (got {value!r})")
    if kind is int:
        if isinstance(value, bool):
            raise ManagerError(f"Config key '{key}' must be an integer (got {value!r})")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ManagerError(f"Config key '{key}' must be an integer (got {value!r})")
    if kind is Path:
        if not isinstance(value, str) or not value.strip():
            raise ManagerError(f"Config key '{key}' must be a non-empty path")
        return Path(value.strip()).expanduser()
    if not isinstance(value, str) or not value.strip():
        raise ManagerError(f"Config key '{key}' must be a non-empty string")
    return value.strip()


def load_config_file(cfg: Config, path: Path) -> Config:
    """Apply settings from a YAML mapping on top of ``cfg``."""
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ManagerError(f"Config file {path} contains invalid YAML: {exc}")
    if data is None:
        return cfg
    if not isinstance(data, dict):
        raise ManagerError(f"Config file {path} must contain a YAML mapping")
    for key, value in data.items():
        entry = _FILE_KEYS.get(str(key))
        if entry is None or value is None:
            continue
        attr, kind = entry
        setattr(cfg, attr, _coerce(str(key), value, kind))
    return cfg


def apply_env_overrides(cfg: Config) -> Config:
    """Let NIDO_* environment variables win over the config file."""
    template_dir = get_env("NIDO_TEMPLATE_DIR")
    if template_dir:
        cfg.template_dir = Path(template_dir).expanduser()
    image_dir = get_env("NIDO_IMAGE_DIR")
    if image_dir:
        cfg.image_dir = Path(image_dir).expanduser()
    ssh_dir = get_env("NIDO_SSH_DIR")
    if ssh_dir:
        cfg.ssh_dir = Path(ssh_dir).expanduser()
    ssh_user = (get_env("NIDO_SSH_USER") or "").strip()
    if ssh_user:
        cfg.ssh_user = ssh_user
    catalog_url = (get_env("NIDO_CATALOG_URL") or "").strip()
    if catalog_url:
        cfg.catalog_url = catalog_url
    cfg.linked_clones = get_env_bool("NIDO_LINKED_CLONES", cfg.linked_clones)
    cfg.memory_mb = parse_int_env("NIDO_MEMORY", str(cfg.memory_mb), min_val=128)
    cfg.catalog_ttl = parse_int_env("NIDO_CATALOG_TTL", str(cfg.catalog_ttl), min_val=0)
    cfg.ssh_port_start = parse_int_env("NIDO_SSH_PORT_START", str(cfg.ssh_port_start), max_val=65535)
    cfg.vnc_port_start = parse_int_env("NIDO_VNC_PORT_START", str(cfg.vnc_port_start), max_val=65535)
    return cfg


def load_config(path: Optional[Path] = None, root_dir: Optional[Path] = None) -> Config:
    """Build a Config for ``root_dir`` from its config file and the environment."""
    root = Path(root_dir) if root_dir is not None else Path(get_env("NIDO_HOME") or default_root())
    cfg = Config.for_root(root)
    config_path = path if path is not None else root / CONFIG_FILE_NAME
    if config_path.exists():
        load_config_file(cfg, config_path)
    elif path is not None:
        raise ManagerError(f"Config file missing: {config_path}")
    return apply_env_overrides(cfg)
