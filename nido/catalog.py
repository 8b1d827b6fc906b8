"""Remote image catalog, local image cache and image acquisition."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

try:
    import requests  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("requests is required but not installed") from exc

from nido.checksum import verify_checksum
from nido.constants import (
    CATALOG_CACHE_FILE,
    CATALOG_SCHEMA_VERSION,
    CATALOG_URL,
    DEFAULT_CACHE_TTL,
    DEFAULT_IMAGE_VERSION,
    DISK_SUFFIX,
    HTTP_TIMEOUT,
    PART_SUFFIX,
    USER_AGENT,
)
from nido.downloader import ARCHIVE_SUFFIX, Downloader, extract_archive, is_archive
from nido.exceptions import ChecksumMismatchError, ManagerError, NotFoundError, SchemaVersionError, UnreachableError
from nido.models import CachedImage, CacheStats, Image, ImageRef, Version
from nido.utils import ensure_directory, format_bytes, log


@dataclass
class Catalog:
    schema_version: str
    updated_at: str = ""
    images: List[Image] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Catalog":
        if not isinstance(data, dict):
            raise ManagerError("Catalog payload must be a JSON object")
        schema = str(data.get("schema_version", ""))
        if schema != CATALOG_SCHEMA_VERSION:
            raise SchemaVersionError(
                f"Unsupported catalog schema version '{schema}' (expected '{CATALOG_SCHEMA_VERSION}')"
            )
        try:
            images = [Image.from_dict(item) for item in data.get("images") or []]
        except (KeyError, TypeError, ValueError) as exc:
            raise ManagerError(f"Malformed catalog entry: {exc}")
        return cls(schema_version=schema, updated_at=str(data.get("updated_at") or ""), images=images)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "updated_at": self.updated_at,
            "images": [img.to_dict() for img in self.images],
        }

    def find_image(self, name: str, version: str = "") -> Tuple[Image, Version]:
        """Resolve ``name`` and a version string or alias; empty means 'latest'."""
        wanted = version or DEFAULT_IMAGE_VERSION
        for image in self.images:
            if image.name != name:
                continue
            for candidate in image.versions:
                if candidate.matches(wanted):
                    return image, candidate
            raise NotFoundError(f"Version '{wanted}' not found for image '{name}'")
        raise NotFoundError(f"Image '{name}' not found in catalog")

    def has_image(self, name: str) -> bool:
        return any(image.name == name for image in self.images)

    def duplicate_aliases(self) -> List[Tuple[str, str]]:
        """(image, alias) pairs where more than one version claims the alias."""
        dupes: List[Tuple[str, str]] = []
        for image in self.images:
            seen: Dict[str, str] = {}
            for candidate in image.versions:
                for alias in candidate.aliases:
                    if alias in seen and seen[alias] != candidate.version:
                        if (image.name, alias) not in dupes:
                            dupes.append((image.name, alias))
                    else:
                        seen.setdefault(alias, candidate.version)
        return dupes

    def refs(self) -> List[str]:
        return [f"{image.name}:{v.version}" for image in self.images for v in image.versions]


def cache_file_name(name: str, version: str) -> str:
    return f"{name}-{version}{DISK_SUFFIX}"


class CatalogManager:
    """Loads the catalog (cache first, then remote) and manages cached images."""

    def __init__(
        self,
        cache_dir: Path,
        url: str = CATALOG_URL,
        ttl: int = DEFAULT_CACHE_TTL,
        session=None,
        downloader: Optional[Downloader] = None,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.url = url
        self.ttl = ttl
        self.session = session or requests.Session()
        self.downloader = downloader or Downloader(session=self.session)
        self._catalog: Optional[Catalog] = None

    @property
    def cache_path(self) -> Path:
        return self.cache_dir / CATALOG_CACHE_FILE

    # -- catalog -----------------------------------------------------------

    def load(self) -> Catalog:
        if self._catalog is None:
            self._catalog = self._load()
            for image_name, alias in self._catalog.duplicate_aliases():
                log("WARN", f"Alias '{alias}' is shared by several versions of '{image_name}'; first match wins")
        return self._catalog

    def _load(self) -> Catalog:
        cache = self.cache_path
        if cache.exists():
            age = time.time() - cache.stat().st_mtime
            if age < self.ttl:
                log("DEBUG", f"Using cached catalog ({int(age)}s old)")
                try:
                    return self.load_file(cache)
                except SchemaVersionError:
                    raise
                except ManagerError as exc:
                    log("WARN", f"Ignoring unusable cached catalog: {exc}")

        try:
            catalog = self._fetch_remote()
        except SchemaVersionError:
            raise
        except ManagerError as exc:
            return self._load_stale(cache, exc)

        try:
            ensure_directory(self.cache_dir)
            cache.write_text(json.dumps(catalog.to_dict(), indent=2), encoding="utf-8")
        except OSError as exc:
            log("WARN", f"Failed to cache catalog: {exc}")
        return catalog

    def _load_stale(self, cache: Path, error: ManagerError) -> Catalog:
        """Fall back to the cached catalog after the remote one failed with ``error``."""
        if not cache.exists():
            if isinstance(error, UnreachableError):
                raise error
            raise UnreachableError(f"Catalog from {self.url} unusable: {error}") from error
        log("WARN", f"{error}; using stale cached catalog")
        try:
            return self.load_file(cache)
        except SchemaVersionError:
            raise
        except ManagerError as exc:
            raise UnreachableError(f"{error}; cached catalog unusable: {exc}") from error

    def _fetch_remote(self) -> Catalog:
        log("DEBUG", f"Fetching catalog from {self.url}")
        try:
            response = self.session.get(self.url, headers={"User-Agent": USER_AGENT}, timeout=HTTP_TIMEOUT)
        except requests.RequestException as exc:
            raise UnreachableError(f"Failed to fetch catalog from {self.url}: {exc}")
        if response.status_code != 200:
            raise UnreachableError(f"Failed to fetch catalog from {self.url}: HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise UnreachableError(f"Catalog at {self.url} is not valid JSON: {exc}")
        return Catalog.from_dict(data)

    def load_file(self, path: Path) -> Catalog:
        """Parse a catalog document from disk (cache file or a local registry)."""
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except OSError as exc:
            raise NotFoundError(f"Catalog file {path} unreadable: {exc}")
        except ValueError as exc:
            raise ManagerError(f"Catalog file {path} is not valid JSON: {exc}")
        return Catalog.from_dict(data)

    def refresh(self) -> Catalog:
        self.cache_path.unlink(missing_ok=True)
        self._catalog = None
        return self.load()

    def find_image(self, ref: str) -> Tuple[Image, Version]:
        parsed = ImageRef.parse(ref)
        return self.load().find_image(parsed.name, parsed.version)

    # -- acquisition -------------------------------------------------------

    def image_path(self, name: str, version: str) -> Path:
        return self.cache_dir / cache_file_name(name, version)

    def pull(self, ref: str) -> Tuple[Image, Version, Path]:
        """Make ``name[:version]`` available locally and return its cached path."""
        image, version = self.find_image(ref)
        dest = self.image_path(image.name, version.version)
        if dest.exists():
            log("INFO", f"Image {image.name}:{version.version} is already downloaded")
            return image, version, dest

        ensure_directory(self.cache_dir)
        log("INFO", f"Pulling {image.name}:{version.version} ({format_bytes(version.size_bytes)})")
        archive = is_archive(version.url)
        fetched = dest.with_name(dest.name[: -len(DISK_SUFFIX)] + ARCHIVE_SUFFIX) if archive else dest

        if version.part_urls:
            self.downloader.download_multipart(version.part_urls, fetched, version.size_bytes)
        else:
            self.downloader.download(version.url, fetched, version.size_bytes)

        if version.checksum:
            try:
                verify_checksum(fetched, version.checksum, version.checksum_type)
            except ChecksumMismatchError:
                log("ERROR", f"Checksum verification failed for {image.name}:{version.version}; deleting download")
                fetched.unlink(missing_ok=True)
                raise
        else:
            log("WARN", f"No checksum published for {image.name}:{version.version}; skipping verification")

        if archive:
            try:
                extract_archive(fetched, dest)
            finally:
                fetched.unlink(missing_ok=True)
        log("SUCCESS", f"Image {image.name}:{version.version} downloaded and verified")
        return image, version, dest

    # -- cache -------------------------------------------------------------

    def cached_images(self) -> List[CachedImage]:
        if not self.cache_dir.is_dir():
            return []
        items: List[CachedImage] = []
        for path in sorted(self.cache_dir.glob(f"*{DISK_SUFFIX}")):
            if not path.is_file() or path.name.endswith(PART_SUFFIX):
                continue
            stem = path.name[: -len(DISK_SUFFIX)]
            name, sep, version = stem.partition("-")
            if not sep or not version:
                continue
            stat = path.stat()
            items.append(CachedImage(name=name, version=version, path=path, size=stat.st_size, mtime=stat.st_mtime))
        return items

    def cache_stats(self) -> CacheStats:
        items = self.cached_images()
        if not items:
            return CacheStats()
        return CacheStats(
            total_images=len(items),
            total_size=sum(item.size for item in items),
            oldest=min(item.mtime for item in items),
            newest=max(item.mtime for item in items),
        )

    def remove_cached_image(self, name: str, version: str) -> None:
        path = self.image_path(name, version)
        if not path.exists():
            raise NotFoundError(f"Cached image not found: {name}:{version}")
        path.unlink()

    def prune_cache(self, unused_only: bool = False, in_use: Iterable[str] = ()) -> int:
        """Remove cached images, keeping any whose path is in ``in_use`` when asked."""
        keep = {str(Path(p).resolve()) for p in in_use}
        removed = 0
        for item in self.cached_images():
            if unused_only and str(item.path.resolve()) in keep:
                continue
            try:
                item.path.unlink()
            except OSError as exc:
                log("WARN", f"Failed to remove {item.path}: {exc}")
                continue
            removed += 1
        return removed
