"""Per-VM state records and runtime files under ``run/``."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional, Set

from nido.constants import PID_SUFFIX, QMP_SUFFIX, SERIAL_LOG_SUFFIX, STATE_SUFFIX
from nido.exceptions import NotFoundError
from nido.models import VMState
from nido.utils import ensure_directory, log


class StateStore:
    """One JSON document per VM, rewritten wholesale on every save."""

    def __init__(self, run_dir: Path) -> None:
        self.run_dir = Path(run_dir)

    def state_path(self, name: str) -> Path:
        return self.run_dir / f"{name}{STATE_SUFFIX}"

    def pid_path(self, name: str) -> Path:
        return self.run_dir / f"{name}{PID_SUFFIX}"

    def qmp_path(self, name: str) -> Path:
        return self.run_dir / f"{name}{QMP_SUFFIX}"

    def serial_log_path(self, name: str) -> Path:
        return self.run_dir / f"{name}{SERIAL_LOG_SUFFIX}"

    def save(self, record: VMState) -> None:
        ensure_directory(self.run_dir)
        payload = json.dumps(record.to_dict(), indent=2)
        self.state_path(record.name).write_text(payload + "\n", encoding="utf-8")

    def load(self, name: str) -> VMState:
        path = self.state_path(name)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise NotFoundError(f"No state record for VM '{name}'")
        except (OSError, ValueError) as exc:
            raise NotFoundError(f"State record for VM '{name}' is unreadable: {exc}")
        if not isinstance(data, dict):
            raise NotFoundError(f"State record for VM '{name}' is malformed")
        data.setdefault("name", name)
        try:
            return VMState.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise NotFoundError(f"State record for VM '{name}' is malformed: {exc}")

    def delete(self, name: str) -> None:
        self.state_path(name).unlink(missing_ok=True)

    def exists(self, name: str) -> bool:
        return self.state_path(name).exists()

    def names(self) -> Set[str]:
        if not self.run_dir.is_dir():
            return set()
        return {p.name[: -len(STATE_SUFFIX)] for p in self.run_dir.glob(f"*{STATE_SUFFIX}")}

    def reserved_ports(self) -> Set[int]:
        """Every SSH/VNC port recorded by any VM, running or not."""
        ports: Set[int] = set()
        for name in self.names():
            try:
                record = self.load(name)
            except NotFoundError as exc:
                log("DEBUG", f"Ignoring state record: {exc}")
                continue
            for port in (record.ssh_port, record.vnc_port):
                if port > 0:
                    ports.add(port)
        return ports

    def read_pid(self, name: str) -> Optional[int]:
        path = self.pid_path(name)
        try:
            raw = path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        try:
            pid = int(raw)
        except ValueError:
            return None
        return pid if pid > 0 else None

    def clear_runtime_files(self, name: str) -> None:
        self.pid_path(name).unlink(missing_ok=True)
        self.qmp_path(name).unlink(missing_ok=True)
