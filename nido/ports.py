"""Loopback TCP port allocation for forwarded guest services."""

from __future__ import annotations

import os
import socket
from typing import Iterable, Optional

from nido.constants import LOOPBACK
from nido.exceptions import ExhaustedError
from nido.utils import log


def is_port_available(port: int, host: str = LOOPBACK) -> bool:
    """Return True if a TCP listener can be opened on ``host:port`` right now.

    Ports lingering in TIME_WAIT count as free, matching what QEMU's own
    listener will accept.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        if os.name == "posix":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
            sock.listen(1)
        except OSError:
            return False
    return True


def find_available_port(start: int, end: int, reserved: Optional[Iterable[int]] = None) -> int:
    """Return the first bindable port in ``[start, end]`` that is not reserved.

    The check socket is closed before returning, so another process may take
    the port before QEMU binds it; that surfaces later as a launch failure.
    """
    skip = set(reserved or ())
    for port in range(start, end + 1):
        if port in skip:
            continue
        if is_port_available(port):
            log("DEBUG", f"Selected port {port}")
            return port
    raise ExhaustedError(f"No free port in range {start}-{end}")
