"""Shared test fixtures: config, fake process table, fake HTTP and qemu-img."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest
import requests

from nido.config import Config
from nido.runtime import HostPlatform


class FakeProcessTable:
    """Process table whose live pids are whatever the test says they are."""

    def __init__(self) -> None:
        self.alive: Set[int] = set()
        self.signals: List[tuple] = []
        # Processes that die as soon as they are signalled
        self.die_on_signal = True

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def signal(self, pid: int, sig: int = 2) -> bool:
        if pid not in self.alive:
            return False
        self.signals.append((pid, sig))
        if self.die_on_signal:
            self.alive.discard(pid)
        return True


class FakeResponse:
    def __init__(self, status_code: int = 200, body: bytes = b"", headers: Optional[Dict[str, str]] = None, payload=None):
        self.status_code = status_code
        self.body = body
        self.headers = headers if headers is not None else {"Content-Length": str(len(body))}
        self._payload = payload
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i : i + chunk_size]

    def json(self):
        if self._payload is None:
            return json.loads(self.body.decode("utf-8"))
        return self._payload

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Serves byte payloads by URL and honours ``Range: bytes=N-`` headers."""

    def __init__(self) -> None:
        self.files: Dict[str, bytes] = {}
        self.queued: Dict[str, List[FakeResponse]] = {}
        self.calls: List[tuple] = []
        self.fail = False

    def add(self, url: str, body: bytes) -> None:
        self.files[url] = body

    def queue(self, url: str, response: FakeResponse) -> None:
        self.queued.setdefault(url, []).append(response)

    def get(self, url, headers=None, stream=False, timeout=None):
        headers = headers or {}
        self.calls.append((url, dict(headers)))
        if self.fail:
            raise requests.ConnectionError("network down")
        if self.queued.get(url):
            return self.queued[url].pop(0)
        if url not in self.files:
            return FakeResponse(404, b"")
        body = self.files[url]
        rng = headers.get("Range")
        if rng:
            start = int(rng.split("=", 1)[1].rstrip("-"))
            if start >= len(body):
                return FakeResponse(416, b"")
            return FakeResponse(206, body[start:])
        return FakeResponse(200, body)


class QemuImgFake:
    """Stands in for ``utils.run``: fakes qemu-img and QEMU launches."""

    def __init__(self, processes: FakeProcessTable, run_dir: Path) -> None:
        self.processes = processes
        self.run_dir = run_dir
        self.calls: List[List[str]] = []
        self.info: Dict[str, dict] = {}
        self.next_pid = 4242
        self.launch_rc = 0
        self.launch_stderr = ""
        self.create_rc = 0

    def __call__(self, cmd, check=True, **kwargs):
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        if cmd[0] == "qemu-img":
            return self._qemu_img(cmd)
        if cmd[0].startswith("qemu-system"):
            return self._launch(cmd)
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def _qemu_img(self, cmd):
        action = cmd[1]
        if action == "info":
            target = cmd[-1]
            if target in self.info:
                return subprocess.CompletedProcess(cmd, 0, json.dumps(self.info[target]), "")
            if Path(target).exists():
                return subprocess.CompletedProcess(cmd, 0, json.dumps({"format": "qcow2", "virtual-size": 1024}), "")
            return subprocess.CompletedProcess(cmd, 1, "", "No such file")
        if self.create_rc:
            return subprocess.CompletedProcess(cmd, self.create_rc, "", "qemu-img: boom")
        if action == "create":
            target = Path(cmd[-2])
            target.write_bytes(b"QFI\xfb")
            if "-b" in cmd:
                self.info[str(target)] = {"format": "qcow2", "backing-filename": cmd[cmd.index("-b") + 1]}
        elif action == "convert":
            Path(cmd[-1]).write_bytes(Path(cmd[-2]).read_bytes())
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def _launch(self, cmd):
        if self.launch_rc:
            return subprocess.CompletedProcess(cmd, self.launch_rc, "", self.launch_stderr)
        pidfile = Path(cmd[cmd.index("-pidfile") + 1])
        pid = self.next_pid
        self.next_pid += 1
        pidfile.write_text(f"{pid}\n")
        self.processes.alive.add(pid)
        return subprocess.CompletedProcess(cmd, 0, "", "")


class NullInjector:
    def __init__(self, endpoint, **kwargs):
        self.endpoint = endpoint
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True
        return self

    def cancel(self):
        self.cancelled = True


@pytest.fixture
def config(tmp_path) -> Config:
    cfg = Config.for_root(tmp_path / "nido")
    cfg.ssh_dir = tmp_path / "ssh"
    return cfg


@pytest.fixture
def processes() -> FakeProcessTable:
    return FakeProcessTable()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def generic_platform() -> HostPlatform:
    return HostPlatform()


@pytest.fixture
def catalog_payload() -> dict:
    return {
        "schema_version": "1",
        "updated_at": "2025-01-01T00:00:00Z",
        "images": [
            {
                "name": "ubuntu",
                "registry": "official",
                "description": "Ubuntu LTS",
                "ssh_user": "ubuntu",
                "versions": [
                    {
                        "version": "24.04",
                        "aliases": ["latest", "noble", "lts"],
                        "url": "https://images.example/ubuntu-24.04.img",
                        "checksum_type": "sha256",
                        "checksum": "",
                        "size_bytes": 0,
                    },
                    {
                        "version": "22.04",
                        "aliases": ["jammy", "lts"],
                        "url": "https://images.example/ubuntu-22.04.img",
                    },
                ],
            },
            {
                "name": "alpine",
                "versions": [
                    {
                        "version": "3.20",
                        "aliases": ["latest"],
                        "url": "https://images.example/alpine-3.20.qcow2",
                    }
                ],
            },
        ],
    }
