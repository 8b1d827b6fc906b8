"""Process liveness and signalling for hypervisor processes."""

from __future__ import annotations

import errno
import os
import signal


class ProcessTable:
    """Thin wrapper over the OS process table so callers can swap in a fake."""

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except OSError as exc:
            # EPERM: the process exists but belongs to someone else.
            return exc.errno == errno.EPERM
        return True

    def signal(self, pid: int, sig: int = signal.SIGINT) -> bool:
        """Deliver ``sig``; False if the process is already gone."""
        if pid <= 0:
            return False
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return False
        return True
