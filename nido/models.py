"""Data models for nido."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional

from nido.constants import DEFAULT_IMAGE_VERSION


class ImageRef(NamedTuple):
    name: str
    version: str

    @classmethod
    def parse(cls, text: str) -> "ImageRef":
        """Split 'name[:version]'; an empty version means the latest alias."""
        name, _, version = text.partition(":")
        return cls(name=name, version=version)

    def __str__(self) -> str:
        return f"{self.name}:{self.version or DEFAULT_IMAGE_VERSION}"


@dataclass
class VMOptions:
    memory_mb: Optional[int] = None
    vcpus: Optional[int] = None
    disk_path: Optional[str] = None
    user_data_path: Optional[Path] = None
    gui: bool = False
    ssh_user: Optional[str] = None


@dataclass
class VMState:
    """Durable per-VM record, one JSON file per name under run/."""

    name: str
    pid: int = 0
    ssh_port: int = 0
    vnc_port: int = 0
    gui: bool = False
    ssh_user: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "pid": self.pid,
            "ssh_port": self.ssh_port,
            "vnc_port": self.vnc_port,
            "gui": self.gui,
        }
        if self.ssh_user:
            data["ssh_user"] = self.ssh_user
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VMState":
        return cls(
            name=str(data["name"]),
            pid=int(data.get("pid") or 0),
            ssh_port=int(data.get("ssh_port") or 0),
            vnc_port=int(data.get("vnc_port") or 0),
            gui=bool(data.get("gui", False)),
            ssh_user=str(data.get("ssh_user") or ""),
        )


@dataclass
class VMStatus:
    name: str
    state: str
    pid: int = 0
    ssh_port: int = 0
    vnc_port: int = 0
    ssh_user: str = ""


@dataclass
class VMDetail:
    name: str
    state: str
    pid: int = 0
    ip: str = "127.0.0.1"
    ssh_user: str = ""
    ssh_port: int = 0
    vnc_port: int = 0
    disk_path: Optional[Path] = None
    disk_missing: bool = False
    backing_path: Optional[str] = None
    backing_missing: bool = False


@dataclass
class Version:
    version: str
    aliases: List[str] = field(default_factory=list)
    arch: str = "amd64"
    url: str = ""
    checksum_type: str = "sha256"
    checksum: str = ""
    size_bytes: int = 0
    format: str = "qcow2"
    part_urls: List[str] = field(default_factory=list)

    def matches(self, wanted: str) -> bool:
        return self.version == wanted or wanted in self.aliases

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Version":
        return cls(
            version=str(data["version"]),
            aliases=[str(a) for a in data.get("aliases") or []],
            arch=str(data.get("arch") or "amd64"),
            url=str(data.get("url") or ""),
            checksum_type=str(data.get("checksum_type") or "sha256"),
            checksum=str(data.get("checksum") or ""),
            size_bytes=int(data.get("size_bytes") or 0),
            format=str(data.get("format") or "qcow2"),
            part_urls=[str(u) for u in data.get("part_urls") or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "version": self.version,
            "aliases": list(self.aliases),
            "arch": self.arch,
            "url": self.url,
            "checksum_type": self.checksum_type,
            "checksum": self.checksum,
            "size_bytes": self.size_bytes,
            "format": self.format,
        }
        if self.part_urls:
            data["part_urls"] = list(self.part_urls)
        return data


@dataclass
class Image:
    name: str
    registry: str = "official"
    description: str = ""
    homepage: str = ""
    ssh_user: str = ""
    versions: List[Version] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Image":
        return cls(
            name=str(data["name"]),
            registry=str(data.get("registry") or "official"),
            description=str(data.get("description") or ""),
            homepage=str(data.get("homepage") or ""),
            ssh_user=str(data.get("ssh_user") or ""),
            versions=[Version.from_dict(v) for v in data.get("versions") or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "registry": self.registry,
            "description": self.description,
            "homepage": self.homepage,
            "versions": [v.to_dict() for v in self.versions],
        }
        if self.ssh_user:
            data["ssh_user"] = self.ssh_user
        return data


@dataclass
class CachedImage:
    name: str
    version: str
    path: Path
    size: int
    mtime: float


@dataclass
class CacheStats:
    total_images: int = 0
    total_size: int = 0
    oldest: Optional[float] = None
    newest: Optional[float] = None
