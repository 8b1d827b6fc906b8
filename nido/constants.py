"""Global constants and path layout for nido."""

from __future__ import annotations

import os
import re

DEFAULT_ROOT_NAME = ".nido"
CONFIG_FILE_NAME = "config.yaml"

# Layout under the data root
VMS_DIR_NAME = "vms"
RUN_DIR_NAME = "run"
IMAGES_DIR_NAME = "images"
BACKUPS_DIR_NAME = "backups"
BIN_DIR_NAME = "bin"

DISK_SUFFIX = ".qcow2"
TEMPLATE_SUFFIX = ".compact.qcow2"
SEED_SUFFIX = "-seed.iso"
PID_SUFFIX = ".pid"
QMP_SUFFIX = ".qmp"
STATE_SUFFIX = ".json"
SERIAL_LOG_SUFFIX = ".serial.log"
PART_SUFFIX = ".part"

QEMU_BINARY = "qemu-system-x86_64"
QEMU_IMG = "qemu-img"
KVM_DEVICE = "/dev/kvm"

DEFAULT_SSH_USER = "vmuser"
DEFAULT_MEMORY_MB = 2048
DEFAULT_VCPUS = 1
DEFAULT_DISK_SIZE = "20G"
DEFAULT_DISK_BYTES = 20 * 1024 * 1024 * 1024
DEFAULT_TEMPLATE = "template-headless"

# Ports are assigned once per VM and kept across restarts.
SSH_PORT_START = 50022
VNC_PORT_START = 59000
PORT_SCAN_WIDTH = 100
VNC_DISPLAY_BASE = 5900
LOOPBACK = "127.0.0.1"

# Catalog
CATALOG_URL = "https://raw.githubusercontent.com/Josepavese/nido/main/registry/images.json"
CATALOG_CACHE_FILE = ".catalog.json"
CATALOG_SCHEMA_VERSION = "1"
DEFAULT_CACHE_TTL = 6 * 60 * 60
DEFAULT_IMAGE_VERSION = "latest"
SUPPORTED_CHECKSUMS = ("sha256", "sha512")

# Downloads
DOWNLOAD_CHUNK_SIZE = 256 * 1024
PROGRESS_INTERVAL = 0.1
HTTP_TIMEOUT = 30
USER_AGENT = "nido/0.3"

# Boot-menu key injection over QMP
BOOT_KEY_SETTLE_DELAY = 3.0
BOOT_KEY_PRESSES = 3
BOOT_KEY_INTERVAL = 1.0
BOOT_KEY_DEADLINE = 10.0
QMP_CONNECT_TIMEOUT = 0.5
QMP_IO_TIMEOUT = 5.0

# Process supervision
PIDFILE_POLL_ATTEMPTS = 10
PIDFILE_POLL_INTERVAL = 0.1
STOP_POLL_ATTEMPTS = 50
STOP_POLL_INTERVAL = 0.1

TRUTHY = {"1", "true", "yes", "on"}
VM_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

_LOG_VERBOSE = os.environ.get("NIDO_LOG_VERBOSE", "").lower() in TRUTHY
