"""Resumable HTTP downloads and archive extraction for cloud images."""

from __future__ import annotations

import shutil
import sys
import tarfile
import tempfile
import time
from pathlib import Path
from typing import List, Optional, Sequence

try:
    import requests  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("requests is required but not installed") from exc

from nido.constants import DOWNLOAD_CHUNK_SIZE, HTTP_TIMEOUT, PART_SUFFIX, PROGRESS_INTERVAL, USER_AGENT
from nido.exceptions import DownloadError
from nido.utils import ensure_directory, format_bytes, log

ARCHIVE_SUFFIX = ".tar.xz"


class _Progress:
    """Single-line progress bar, redrawn at most every PROGRESS_INTERVAL seconds."""

    def __init__(self, total: int, current: int = 0, quiet: bool = False, stream=None) -> None:
        self.total = total
        self.current = current
        self.quiet = quiet
        self.stream = stream or sys.stdout
        self.start = time.monotonic()
        self._last = 0.0
        self.renders = 0

    def update(self, n: int) -> None:
        self.current += n
        if self.quiet:
            return
        now = time.monotonic()
        if now - self._last < PROGRESS_INTERVAL and (self.total <= 0 or self.current < self.total):
            return
        self._last = now
        self.renders += 1
        if self.total > 0:
            pct = min(self.current * 100 / self.total, 100.0)
            bar_len = 30
            filled = int(bar_len * pct / 100)
            bar = "#" * filled + "-" * (bar_len - filled)
            line = f"\r  [{bar}] {pct:5.1f}% {format_bytes(self.current)}/{format_bytes(self.total)}"
        else:
            line = f"\r  {format_bytes(self.current)} downloaded"
        print(line, end="", flush=True, file=self.stream)

    def finish(self) -> None:
        if not self.quiet:
            print(flush=True, file=self.stream)


class Downloader:
    def __init__(self, session=None, quiet: bool = False, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> None:
        self.session = session or requests.Session()
        self.quiet = quiet
        self.chunk_size = chunk_size

    def download(self, url: str, dest: Path, expected_size: int = 0) -> Path:
        """Fetch ``url`` into ``dest``, resuming from ``dest.part`` when present.

        The partial file is only renamed into place once its size matches the
        expected total; on a mismatch it is left behind for the next attempt.
        """
        return self._download(url, Path(dest), expected_size, retried=False)

    def _download(self, url: str, dest: Path, expected_size: int, retried: bool) -> Path:
        part = dest.with_name(dest.name + PART_SUFFIX)
        ensure_directory(dest.parent)
        headers = {"User-Agent": USER_AGENT}
        offset = part.stat().st_size if part.exists() else 0
        if offset:
            headers["Range"] = f"bytes={offset}-"
            log("INFO", f"Resuming download of {url} at {format_bytes(offset)}")
        elif not self.quiet:
            log("INFO", f"Downloading {url}")

        try:
            response = self.session.get(url, headers=headers, stream=True, timeout=HTTP_TIMEOUT)
        except requests.RequestException as exc:
            raise DownloadError(f"Failed to download {url}: {exc}")

        try:
            if response.status_code == 416:
                # Range past the end: the partial file is stale, start over.
                response.close()
                part.unlink(missing_ok=True)
                if retried:
                    raise DownloadError(f"Server rejected range request for {url}")
                return self._download(url, dest, expected_size, retried=True)
            if response.status_code not in (200, 206):
                raise DownloadError(f"HTTP error downloading {url}: {response.status_code}")

            if response.status_code == 200:
                # Full body: either a fresh download or the server ignored Range.
                offset = 0
                mode = "wb"
            else:
                mode = "ab"

            length = int(response.headers.get("Content-Length") or 0)
            total = length + offset if length else 0
            if total == 0 and expected_size > 0:
                total = expected_size

            progress = _Progress(total, offset, quiet=self.quiet)
            try:
                with open(part, mode) as handle:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if not chunk:
                            continue
                        handle.write(chunk)
                        progress.update(len(chunk))
            except requests.RequestException as exc:
                raise DownloadError(f"Download of {url} interrupted: {exc}")
            finally:
                progress.finish()
        finally:
            response.close()

        actual = part.stat().st_size
        if total > 0 and actual != total:
            raise DownloadError(f"size mismatch: expected {total}, got {actual}")
        part.replace(dest)
        if not self.quiet:
            log("SUCCESS", f"Downloaded {format_bytes(actual)} to {dest}")
        return dest

    def download_multipart(self, urls: Sequence[str], dest: Path, expected_total: int = 0) -> Path:
        """Download split parts in order and concatenate them into ``dest``."""
        dest = Path(dest)
        ensure_directory(dest.parent)
        with tempfile.TemporaryDirectory(prefix="nido-download-") as tmpdir:
            parts: List[Path] = []
            for index, url in enumerate(urls, start=1):
                if not self.quiet:
                    log("INFO", f"Downloading part {index}/{len(urls)}")
                target = Path(tmpdir) / f"part.{index:03d}"
                self.download(url, target)
                parts.append(target)

            if not self.quiet:
                log("INFO", "Reassembling image...")
            with open(dest, "wb") as out:
                for part in parts:
                    with open(part, "rb") as src:
                        shutil.copyfileobj(src, out)

        actual = dest.stat().st_size
        if expected_total > 0 and actual != expected_total:
            dest.unlink(missing_ok=True)
            raise DownloadError(f"final size mismatch: expected {expected_total}, got {actual}")
        return dest


def is_archive(path_or_url: str) -> bool:
    return str(path_or_url).endswith(ARCHIVE_SUFFIX)


def _extract_members(tar: tarfile.TarFile, path: str) -> None:
    if hasattr(tarfile, "data_filter"):
        tar.extractall(path, filter="data")
        return
    # Interpreters without extraction filters: regular files and directories
    # inside ``path`` only.
    for member in tar.getmembers():
        name = Path(member.name)
        if name.is_absolute() or ".." in name.parts or not (member.isfile() or member.isdir()):
            raise DownloadError(f"Refusing unsafe archive member: {member.name}")
    tar.extractall(path)


def extract_archive(src: Path, dest: Path) -> Path:
    """Unpack a ``.tar.xz`` cloud image and move the disk inside to ``dest``.

    Archives either carry ``<archive stem>.qcow2`` or a ``disk.raw`` that is
    really qcow2 despite the name.
    """
    src, dest = Path(src), Path(dest)
    if not is_archive(src.name):
        raise DownloadError(f"Unsupported archive format: {src.name}")
    log("INFO", f"Extracting {src.name}...")
    with tempfile.TemporaryDirectory(prefix="nido-extract-", dir=dest.parent) as tmpdir:
        try:
            with tarfile.open(src, "r:xz") as tar:
                _extract_members(tar, tmpdir)
        except (tarfile.TarError, OSError) as exc:
            raise DownloadError(f"Extraction of {src} failed: {exc}")

        stem = src.name[: -len(ARCHIVE_SUFFIX)]
        found: Optional[Path] = None
        for candidate in (f"{stem}.qcow2", "disk.raw"):
            matches = sorted(Path(tmpdir).rglob(candidate))
            if matches:
                found = matches[0]
                break
        if found is None:
            raise DownloadError(f"No disk image found inside {src.name}")
        found.replace(dest)
    return dest
