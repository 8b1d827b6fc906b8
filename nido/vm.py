"""QEMU virtual machine lifecycle management."""

from __future__ import annotations

import json
import shutil
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from nido.catalog import CatalogManager
from nido.cloud_init import SeedConfig, generate_seed_iso, local_ssh_key, read_user_data
from nido.config import Config
from nido.constants import (
    BIN_DIR_NAME,
    DEFAULT_DISK_BYTES,
    DEFAULT_DISK_SIZE,
    DEFAULT_VCPUS,
    DISK_SUFFIX,
    LOOPBACK,
    PID_SUFFIX,
    PIDFILE_POLL_ATTEMPTS,
    PIDFILE_POLL_INTERVAL,
    QEMU_IMG,
    SEED_SUFFIX,
    STOP_POLL_ATTEMPTS,
    STOP_POLL_INTERVAL,
    TEMPLATE_SUFFIX,
    VNC_DISPLAY_BASE,
)
from nido.exceptions import (
    AlreadyExistsError,
    DiskCreationError,
    LaunchError,
    ManagerError,
    NotFoundError,
)
from nido.models import CachedImage, CacheStats, VMDetail, VMOptions, VMState, VMStatus
from nido.ports import find_available_port
from nido.process import ProcessTable
from nido.qmp import BootKeyInjector
from nido.runtime import HostPlatform, detect_platform
from nido.state import StateStore
from nido.utils import ensure_directory, log, run, validate_disk_size, validate_vm_name

RUNNING = "running"
STOPPED = "stopped"


class VMManager:
    """Creates, boots, stops and destroys QEMU guests under one data root."""

    def __init__(
        self,
        config: Config,
        process_table: Optional[ProcessTable] = None,
        platform: Optional[HostPlatform] = None,
        catalog: Optional[CatalogManager] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
        injector_factory: Callable[..., BootKeyInjector] = BootKeyInjector,
    ) -> None:
        self.cfg = config
        self.processes = process_table or ProcessTable()
        self.platform = platform or detect_platform()
        self.catalog = catalog
        self.which = which
        self.injector_factory = injector_factory
        self.state = StateStore(config.run_dir)
        self.injectors: Dict[str, BootKeyInjector] = {}

    # -- paths -------------------------------------------------------------

    def disk_path(self, name: str) -> Path:
        return self.cfg.vms_dir / f"{name}{DISK_SUFFIX}"

    def seed_path(self, name: str) -> Path:
        return self.cfg.vms_dir / f"{name}{SEED_SUFFIX}"

    def template_path(self, name: str) -> Path:
        return self.cfg.template_dir / f"{name}{TEMPLATE_SUFFIX}"

    # -- qemu-img ----------------------------------------------------------

    def _qemu_img(self, args: List[str], action: str) -> None:
        try:
            result = run([QEMU_IMG] + args, check=False, capture_output=True)
        except OSError as exc:
            raise DiskCreationError(f"qemu-img {action} failed: {exc}")
        if result.returncode != 0:
            raise DiskCreationError(f"qemu-img {action} failed: {(result.stderr or '').strip()}")

    def image_info(self, path: Path, force_share: bool = False) -> Dict[str, object]:
        """``qemu-img info`` as a dict; empty when the lookup fails."""
        cmd = [QEMU_IMG, "info", "--output=json"]
        if force_share:
            cmd.append("-U")
        cmd.append(str(path))
        try:
            result = run(cmd, check=False, capture_output=True)
        except OSError as exc:
            log("DEBUG", f"qemu-img info unavailable: {exc}")
            return {}
        if result.returncode != 0:
            return {}
        try:
            data = json.loads(result.stdout or "{}")
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def backing_file(self, disk: Path) -> Optional[Path]:
        info = self.image_info(disk, force_share=True)
        backing = info.get("full-backing-filename") or info.get("backing-filename")
        if not backing:
            return None
        backing_path = Path(str(backing))
        if not backing_path.is_absolute():
            backing_path = disk.parent / backing_path
        return backing_path

    def _disk_size_for(self, backing: Path) -> str:
        virtual = int(self.image_info(backing).get("virtual-size") or 0)
        if virtual > DEFAULT_DISK_BYTES:
            return str(virtual)
        return DEFAULT_DISK_SIZE

    def create_disk(self, name: str, size: str, template: Optional[Path] = None) -> Path:
        """Materialize ``vms/<name>.qcow2``, backed by ``template`` when given."""
        validate_disk_size(size)
        ensure_directory(self.cfg.vms_dir)
        target = self.disk_path(name)
        if target.exists():
            raise AlreadyExistsError(f"Disk already exists: {target}")
        if template is not None:
            template = Path(template).absolute()
            if not template.exists():
                raise NotFoundError(f"Template not found: {template}")

        if template is not None and not self.cfg.linked_clones:
            log("INFO", f"Creating full copy of {template.name} for {name}")
            self._qemu_img(["convert", "-O", "qcow2", str(template), str(target)], "convert")
            self._qemu_img(["resize", str(target), size], "resize")
            return target

        args = ["create", "-f", "qcow2"]
        if template is not None:
            fmt = str(self.image_info(template).get("format") or "qcow2")
            args += ["-b", str(template), "-F", fmt]
        args += [str(target), size]
        self._qemu_img(args, "create")
        log("DEBUG", f"Created disk {target} ({size})")
        return target

    # -- liveness ----------------------------------------------------------

    def _pid(self, name: str) -> int:
        return self.state.read_pid(name) or 0

    def is_running(self, name: str) -> bool:
        return self.processes.is_alive(self._pid(name))

    # -- spawn / start -----------------------------------------------------

    def resolve_source(self, source: Optional[str]) -> Tuple[Path, str]:
        """Map a spawn source to a backing file and the image's login user."""
        source = source or self.cfg.template_default
        is_path = "/" in source or "\\" in source
        if not is_path and ":" in source:
            return self._pull(source)
        if not is_path:
            template = self.template_path(source)
            if not template.exists() and self._catalog_has(source):
                return self._pull(source)
            return template, ""
        return Path(source).expanduser(), ""

    def _catalog_has(self, name: str) -> bool:
        if self.catalog is None:
            return False
        try:
            return self.catalog.load().has_image(name)
        except ManagerError as exc:
            log("DEBUG", f"Catalog lookup for '{name}' skipped: {exc}")
            return False

    def _pull(self, ref: str) -> Tuple[Path, str]:
        if self.catalog is None:
            raise ManagerError(f"Cannot resolve image '{ref}': no image catalog configured")
        image, _, path = self.catalog.pull(ref)
        return path, image.ssh_user

    def _allocate_port(self, start: int, reserved: Set[int]) -> int:
        end = start + self.cfg.port_scan_width - 1
        port = find_available_port(start, end, reserved)
        reserved.add(port)
        return port

    def _write_seed(self, name: str, ssh_user: str, user_data_path: Optional[Path]) -> None:
        ssh_key = local_ssh_key(self.cfg.ssh_dir) if self.cfg.ssh_dir else ""
        custom = ""
        if user_data_path:
            try:
                custom = read_user_data(Path(user_data_path), ssh_key)
            except OSError as exc:
                log("WARN", f"Failed to read custom user-data {user_data_path}: {exc}")
        seed = SeedConfig(hostname=name, user=ssh_user, ssh_key=ssh_key, custom_user_data=custom)
        try:
            generate_seed_iso(seed, self.seed_path(name), which=self.which)
        except (ManagerError, OSError) as exc:
            log("WARN", f"Failed to generate cloud-init seed: {exc}")

    def spawn(self, name: str, source: Optional[str] = None, options: Optional[VMOptions] = None) -> VMState:
        validate_vm_name(name)
        options = options or VMOptions()
        if self.disk_path(name).exists():
            raise AlreadyExistsError(f"VM '{name}' already exists")

        backing, image_user = self.resolve_source(source or options.disk_path)
        if not backing.exists():
            raise NotFoundError(f"Backing image not found: {backing}")

        reserved = self.state.reserved_ports()
        ssh_port = self._allocate_port(self.cfg.ssh_port_start, reserved)
        vnc_port = self._allocate_port(self.cfg.vnc_port_start, reserved) if options.gui else 0

        log("INFO", f"Spawning VM '{name}' from {backing}")
        self.create_disk(name, self._disk_size_for(backing), backing)

        ensure_directory(self.cfg.run_dir)
        ssh_user = options.ssh_user or image_user or self.cfg.ssh_user
        self._write_seed(name, ssh_user, options.user_data_path)

        self.state.save(
            VMState(name=name, pid=0, ssh_port=ssh_port, vnc_port=vnc_port, gui=options.gui, ssh_user=ssh_user)
        )
        return self.start(name, options)

    def build_command(self, name: str, record: VMState, memory_mb: int, vcpus: int) -> List[str]:
        disk = self.disk_path(name)
        cmd = [
            self.cfg.qemu_binary,
            "-name", name,
            "-m", str(memory_mb),
            "-smp", str(vcpus),
            # i440fx keeps legacy images (CirrOS and friends) bootable
            "-machine", "pc",
        ]
        cmd += self.platform.accel_args()
        cmd += [
            "-drive", f"file={disk},format=qcow2,if=virtio",
            "-daemonize",
            "-pidfile", str(self.state.pid_path(name)),
            "-netdev", f"user,id=net0,hostfwd=tcp:{LOOPBACK}:{record.ssh_port}-:22",
            "-device", "virtio-net-pci,netdev=net0",
            "-boot", "menu=off,strict=on,splash-time=0",
            "-serial", f"file:{self.state.serial_log_path(name)}",
        ]
        seed = self.seed_path(name)
        if seed.exists():
            cmd += ["-cdrom", str(seed)]
        cmd += self.platform.qmp_args(self.cfg.run_dir, name)
        if record.vnc_port > 0:
            cmd += ["-vnc", f"{LOOPBACK}:{record.vnc_port - VNC_DISPLAY_BASE}"]
        else:
            cmd += ["-display", "none"]
        return cmd

    def _wait_for_pid(self, name: str) -> int:
        for _ in range(PIDFILE_POLL_ATTEMPTS):
            pid = self.state.read_pid(name)
            if pid:
                return pid
            time.sleep(PIDFILE_POLL_INTERVAL)
        log("WARN", f"QEMU did not write a pid file for '{name}'")
        return 0

    def start(self, name: str, options: Optional[VMOptions] = None) -> VMState:
        """Boot an existing VM; returns its state record."""
        options = options or VMOptions()
        if self.is_running(name):
            log("INFO", f"VM '{name}' is already running")
            return self._record(name)

        disk = self.disk_path(name)
        if not disk.exists():
            raise NotFoundError(f"Disk image not found: {disk}")
        ensure_directory(self.cfg.run_dir)

        record = self._record(name)
        if options.gui:
            record.gui = True
        if options.ssh_user:
            record.ssh_user = options.ssh_user
        reserved = self.state.reserved_ports()
        if record.ssh_port == 0:
            record.ssh_port = self._allocate_port(self.cfg.ssh_port_start, reserved)
        if record.gui and record.vnc_port == 0:
            record.vnc_port = self._allocate_port(self.cfg.vnc_port_start, reserved)

        self.state.clear_runtime_files(name)
        cmd = self.build_command(
            name,
            record,
            options.memory_mb or self.cfg.memory_mb,
            options.vcpus or DEFAULT_VCPUS,
        )
        log("INFO", f"Starting VM '{name}' (ssh port {record.ssh_port})")
        try:
            result = run(cmd, check=False, capture_output=True)
        except OSError as exc:
            raise LaunchError(f"Failed to launch {self.cfg.qemu_binary}: {exc}")
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise LaunchError(f"QEMU exited with status {result.returncode} for VM '{name}': {stderr}", stderr=stderr)

        record.pid = self._wait_for_pid(name)
        self.state.save(record)
        self._inject_boot_keys(name)
        log("SUCCESS", f"VM '{name}' started (pid {record.pid})")
        return record

    def _record(self, name: str) -> VMState:
        try:
            return self.state.load(name)
        except NotFoundError:
            # VMs created before state records existed
            return VMState(name=name)

    def _inject_boot_keys(self, name: str) -> None:
        endpoint = self.platform.control_endpoint(self.cfg.run_dir, name)
        if endpoint is None:
            return
        self.injectors[name] = self.injector_factory(endpoint).start()

    # -- stop / delete -----------------------------------------------------

    def stop(self, name: str, graceful: bool = True) -> None:
        """Interrupt the VM's QEMU process; a missing or dead process is not an error."""
        injector = self.injectors.pop(name, None)
        if injector is not None:
            injector.cancel()

        pid = self._pid(name)
        if pid and self.processes.signal(pid):
            log("INFO", f"Stopping VM '{name}' (pid {pid})")
            if graceful:
                for _ in range(STOP_POLL_ATTEMPTS):
                    if not self.processes.is_alive(pid):
                        break
                    time.sleep(STOP_POLL_INTERVAL)
                else:
                    log("WARN", f"VM '{name}' still running after interrupt")
        self.state.clear_runtime_files(name)
        if self.state.exists(name):
            try:
                record = self.state.load(name)
            except NotFoundError as exc:
                log("DEBUG", f"Not updating state for '{name}': {exc}")
            else:
                if record.pid:
                    record.pid = 0
                    self.state.save(record)

    def delete(self, name: str) -> None:
        self.stop(name, graceful=False)
        for path in (self.state.state_path(name), self.seed_path(name), self.state.serial_log_path(name)):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                log("WARN", f"Failed to remove {path}: {exc}")
        disk = self.disk_path(name)
        if not disk.exists():
            raise NotFoundError(f"Disk image not found: {disk}")
        try:
            disk.unlink()
        except OSError as exc:
            raise ManagerError(f"Failed to remove disk {disk}: {exc}") from exc
        log("SUCCESS", f"VM '{name}' deleted")

    def prune(self) -> int:
        """Delete every stopped VM and return how many went away."""
        count = 0
        for status in self.list():
            if status.state != STOPPED:
                continue
            try:
                self.delete(status.name)
            except ManagerError as exc:
                log("DEBUG", f"Prune skipped '{status.name}': {exc}")
                continue
            count += 1
        return count

    # -- inspection --------------------------------------------------------

    def _vm_names(self) -> Set[str]:
        names: Set[str] = set()
        if self.cfg.vms_dir.is_dir():
            for disk in self.cfg.vms_dir.glob(f"*{DISK_SUFFIX}"):
                if not disk.name.endswith(TEMPLATE_SUFFIX):
                    names.add(disk.name[: -len(DISK_SUFFIX)])
        if self.cfg.run_dir.is_dir():
            for pid_file in self.cfg.run_dir.glob(f"*{PID_SUFFIX}"):
                names.add(pid_file.name[: -len(PID_SUFFIX)])
        return names

    def list(self) -> List[VMStatus]:
        statuses = []
        for name in sorted(self._vm_names()):
            pid = self._pid(name)
            record = self._record(name)
            statuses.append(
                VMStatus(
                    name=name,
                    state=RUNNING if self.processes.is_alive(pid) else STOPPED,
                    pid=pid,
                    ssh_port=record.ssh_port,
                    vnc_port=record.vnc_port,
                    ssh_user=record.ssh_user or self.cfg.ssh_user,
                )
            )
        return statuses

    def info(self, name: str) -> VMDetail:
        disk = self.disk_path(name)
        if not (disk.exists() or self.state.exists(name) or self.state.pid_path(name).exists()):
            raise NotFoundError(f"VM '{name}' not found")
        pid = self._pid(name)
        record = self._record(name)
        detail = VMDetail(
            name=name,
            state=RUNNING if self.processes.is_alive(pid) else STOPPED,
            pid=pid,
            ip=LOOPBACK,
            ssh_user=record.ssh_user or self.cfg.ssh_user,
            ssh_port=record.ssh_port,
            vnc_port=record.vnc_port,
            disk_path=disk,
            disk_missing=not disk.exists(),
        )
        if not detail.disk_missing:
            backing = self.backing_file(disk)
            if backing is not None:
                detail.backing_path = str(backing)
                detail.backing_missing = not backing.exists()
        return detail

    def ssh_command(self, name: str) -> str:
        record = self.state.load(name)
        user = record.ssh_user or self.cfg.ssh_user
        return f"ssh -p {record.ssh_port} {user}@{LOOPBACK}"

    # -- templates ---------------------------------------------------------

    def create_template(self, vm_name: str, template_name: str) -> Path:
        """Compress a VM's disk into a reusable template."""
        self.stop(vm_name, graceful=True)
        source = self.disk_path(vm_name)
        if not source.exists():
            raise NotFoundError(f"Source disk not found: {source}")
        ensure_directory(self.cfg.template_dir)
        target = self.template_path(template_name)
        log("INFO", f"Creating template '{template_name}' from VM '{vm_name}'")
        self._qemu_img(["convert", "-O", "qcow2", "-c", str(source), str(target)], "convert")
        log("SUCCESS", f"Template written to {target}")
        return target

    def list_templates(self) -> List[str]:
        if not self.cfg.template_dir.is_dir():
            return []
        return sorted(p.name[: -len(TEMPLATE_SUFFIX)] for p in self.cfg.template_dir.glob(f"*{TEMPLATE_SUFFIX}"))

    def delete_template(self, name: str) -> None:
        path = self.template_path(name)
        if not path.exists():
            raise NotFoundError(f"Template not found: {name}")
        path.unlink()

    # -- environment -------------------------------------------------------

    def doctor(self) -> List[str]:
        reports: List[str] = []

        def add(label: str, passed: bool, details: str) -> None:
            status = "[PASS]" if passed else "[FAIL]"
            reports.append(f"{label:<20} {status} {details}")

        root = self.cfg.root_dir
        for directory in (
            root,
            root / BIN_DIR_NAME,
            self.cfg.vms_dir,
            self.cfg.run_dir,
            self.cfg.template_dir,
            self.cfg.image_dir,
        ):
            add(f"Dir: {directory.name}", directory.is_dir(), str(directory))

        for label, binary in (("Binary: QEMU", self.cfg.qemu_binary), ("Binary: qemu-img", QEMU_IMG)):
            found = self.which(binary)
            add(label, found is not None, found or f"{binary} not on PATH")

        for label, passed, details in self.platform.accel_checks():
            add(label, passed, details)
        return reports

    # -- image cache -------------------------------------------------------

    def used_backing_files(self) -> List[str]:
        used: Set[str] = set()
        if not self.cfg.vms_dir.is_dir():
            return []
        for disk in self.cfg.vms_dir.glob(f"*{DISK_SUFFIX}"):
            backing = self.backing_file(disk)
            if backing is not None:
                used.add(str(backing.absolute()))
        return sorted(used)

    def _require_catalog(self) -> CatalogManager:
        if self.catalog is None:
            raise ManagerError("No image catalog configured")
        return self.catalog

    def cached_images(self) -> List[CachedImage]:
        return self._require_catalog().cached_images()

    def cache_stats(self) -> CacheStats:
        return self._require_catalog().cache_stats()

    def remove_cached_image(self, name: str, version: str) -> None:
        self._require_catalog().remove_cached_image(name, version)

    def cache_prune(self, unused_only: bool = False) -> int:
        catalog = self._require_catalog()
        in_use = self.used_backing_files() if unused_only else []
        return catalog.prune_cache(unused_only=unused_only, in_use=in_use)
