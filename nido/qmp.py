"""QEMU Machine Protocol client and boot-menu key injection."""

from __future__ import annotations

import json
import socket
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

from nido.constants import (
    BOOT_KEY_DEADLINE,
    BOOT_KEY_INTERVAL,
    BOOT_KEY_PRESSES,
    BOOT_KEY_SETTLE_DELAY,
    QMP_CONNECT_TIMEOUT,
    QMP_IO_TIMEOUT,
)
from nido.exceptions import ManagerError, QMPNotReadyError
from nido.runtime import Endpoint
from nido.utils import log


class QMPClient:
    """Newline-delimited JSON session against a QMP socket.

    Usage::

        with QMPClient(run_dir / "vm.qmp") as qmp:
            qmp.send_key("ret")
    """

    def __init__(
        self,
        endpoint: Endpoint,
        timeout: float = QMP_IO_TIMEOUT,
        connect_timeout: float = QMP_CONNECT_TIMEOUT,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self._sock: Optional[socket.socket] = None
        self._reader = None
        self.greeting: Dict[str, Any] = {}

    def connect(self) -> None:
        if isinstance(self.endpoint, (str, Path)):
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            address: Any = str(self.endpoint)
        else:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            address = tuple(self.endpoint)
        sock.settimeout(self.connect_timeout)
        try:
            sock.connect(address)
        except OSError as exc:
            sock.close()
            raise QMPNotReadyError(f"QMP socket {self.endpoint} not ready: {exc}")
        sock.settimeout(self.timeout)
        self._sock = sock
        self._reader = sock.makefile("rb")
        try:
            self.greeting = self._read()
            self.execute("qmp_capabilities")
        except (OSError, ManagerError):
            self.close()
            raise

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> "QMPClient":
        self.connect()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _read(self) -> Dict[str, Any]:
        assert self._reader is not None
        line = self._reader.readline()
        if not line:
            raise QMPNotReadyError(f"QMP socket {self.endpoint} closed the connection")
        try:
            return json.loads(line.decode("utf-8"))
        except ValueError as exc:
            raise ManagerError(f"Malformed QMP message: {exc}")

    def execute(self, command: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send one command and return the single response line."""
        if self._sock is None:
            raise QMPNotReadyError("QMP client is not connected")
        payload: Dict[str, Any] = {"execute": command}
        if arguments:
            payload["arguments"] = arguments
        self._sock.sendall((json.dumps(payload) + "\n").encode("utf-8"))
        return self._read()

    def send_key(self, key: str = "ret") -> Dict[str, Any]:
        return self.execute("send-key", {"keys": [{"type": "qcode", "data": key}]})


class BootKeyInjector:
    """Presses Enter a few times during early boot to get past bootloader menus.

    Runs on a daemon thread, never outlives ``deadline`` seconds and swallows
    every failure: a VM that never shows a menu is the common case.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        settle_delay: float = BOOT_KEY_SETTLE_DELAY,
        presses: int = BOOT_KEY_PRESSES,
        interval: float = BOOT_KEY_INTERVAL,
        deadline: float = BOOT_KEY_DEADLINE,
        key: str = "ret",
    ) -> None:
        self.endpoint = endpoint
        self.settle_delay = settle_delay
        self.presses = presses
        self.interval = interval
        self.deadline = deadline
        self.key = key
        self.sent = 0
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="boot-keys", daemon=True)

    @property
    def done(self) -> bool:
        return self._thread.ident is not None and not self._thread.is_alive()

    def start(self) -> "BootKeyInjector":
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def _run(self) -> None:
        deadline = time.monotonic() + self.deadline
        if self._stop.wait(self.settle_delay):
            return
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return
        try:
            with QMPClient(self.endpoint, timeout=min(QMP_IO_TIMEOUT, remaining)) as qmp:
                for i in range(self.presses):
                    if time.monotonic() >= deadline:
                        break
                    qmp.send_key(self.key)
                    self.sent += 1
                    if i + 1 < self.presses and self._stop.wait(self.interval):
                        break
        except (OSError, ManagerError) as exc:
            log("DEBUG", f"Boot key injection to {self.endpoint} stopped: {exc}")
