"""NoCloud seed media for first-boot guest configuration."""

from __future__ import annotations

import shutil
import tempfile
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from nido.exceptions import ManagerError
from nido.utils import ensure_directory, hash_password, log, run

SSH_KEY_PLACEHOLDER = "${SSH_KEY}"
DEFAULT_PASSWORD = "nido"
SSH_KEY_NAMES = ("id_ed25519.pub", "id_rsa.pub")

# Tools tried in order; the first one on PATH builds the seed.
ISO_TOOLS = ("genisoimage", "mkisofs", "xorriso", "cloud-localds")


@dataclass
class SeedConfig:
    hostname: str
    user: str
    ssh_key: str = ""
    password: str = DEFAULT_PASSWORD
    custom_user_data: str = ""


def local_ssh_key(ssh_dir: Path) -> str:
    """First public key found in ``ssh_dir``, or an empty string."""
    for name in SSH_KEY_NAMES:
        try:
            return (Path(ssh_dir) / name).read_text(encoding="utf-8").strip()
        except OSError:
            continue
    return ""


def read_user_data(path: Path, ssh_key: str) -> str:
    """Load a custom user-data file, substituting the SSH key placeholder."""
    content = Path(path).read_text(encoding="utf-8")
    return content.replace(SSH_KEY_PLACEHOLDER, ssh_key)


def render_meta_data(hostname: str) -> str:
    return (
        textwrap.dedent(
            f"""
        instance-id: i-{hostname}
        local-hostname: {hostname}
        """
        ).strip()
        + "\n"
    )


def render_vendor_data(seed: SeedConfig) -> str:
    """Default account and boot tweaks, kept apart from the user's own payload."""
    user: Dict[str, object] = {
        "name": seed.user,
        "groups": ["wheel"],
        "lock_passwd": False,
        "sudo": "ALL=(ALL) NOPASSWD:ALL",
        "shell": "/bin/bash",
        "passwd": hash_password(seed.password),
    }
    if seed.ssh_key:
        user["ssh_authorized_keys"] = [seed.ssh_key]
    vendor_cfg: Dict[str, object] = {
        "users": [user],
        "chpasswd": {"expire": False},
        "ssh_pwauth": True,
        "runcmd": [
            # Zero out bootloader menus so later boots skip straight to the kernel
            "if [ -f /etc/default/grub ]; then sed -i 's/GRUB_TIMEOUT=[0-9]*/GRUB_TIMEOUT=0/' /etc/default/grub"
            " && (update-grub || grub-mkconfig -o /boot/grub/grub.cfg); fi",
            "if [ -f /boot/extlinux.conf ]; then sed -i 's/^TIMEOUT [0-9]*/TIMEOUT 0/' /boot/extlinux.conf; fi",
            f"if [ -x /usr/bin/doas ]; then mkdir -p /etc/doas.d"
            f" && echo \"permit nopass {seed.user} as root\" > /etc/doas.d/nido.conf"
            f" && chmod 0400 /etc/doas.d/nido.conf; fi",
        ],
    }
    return "#cloud-config\n" + yaml.safe_dump(vendor_cfg, sort_keys=False, default_flow_style=False)


def render_cirros_script(seed: SeedConfig) -> str:
    # CirrOS ships a minimal cloud-init that only runs shell scripts.
    lines = ["#!/bin/sh", 'echo "[nido] cloud-init script starting..." > /dev/console']
    if seed.ssh_key:
        home = f"/home/{seed.user}"
        lines += [
            f"mkdir -p {home}/.ssh",
            f"cat <<EOF >> {home}/.ssh/authorized_keys\n{seed.ssh_key}\nEOF",
            f"chown -R {seed.user}:{seed.user} {home}/.ssh",
            f"chmod 700 {home}/.ssh",
            f"chmod 600 {home}/.ssh/authorized_keys",
            'echo "[nido] SSH key injected." > /dev/console',
        ]
    return "\n".join(lines) + "\n"


def _iso_command(tool: str, output: Path, files: List[Path]) -> List[str]:
    if tool == "cloud-localds":
        by_name = {f.name: f for f in files}
        cmd = ["cloud-localds"]
        if "vendor-data" in by_name:
            cmd += ["--vendor-data", str(by_name["vendor-data"])]
        return cmd + [str(output), str(by_name["user-data"]), str(by_name["meta-data"])]
    prefix = ["xorriso", "-as", "mkisofs"] if tool == "xorriso" else [tool]
    return prefix + ["-output", str(output), "-volid", "cidata", "-joliet", "-rock"] + [str(f) for f in files]


def generate_seed_iso(
    seed: SeedConfig,
    output: Path,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> Path:
    """Write a ``cidata`` ISO for ``seed`` to ``output``.

    Raises ManagerError when no ISO tool is installed or the tool fails.
    """
    tool = next((t for t in ISO_TOOLS if which(t)), None)
    if tool is None:
        raise ManagerError("No ISO creation tool found (install genisoimage or cloud-utils)")

    ensure_directory(output.parent)
    with tempfile.TemporaryDirectory(prefix="nido-cloud-init") as tmpdir:
        tmp = Path(tmpdir)
        files = [tmp / "meta-data", tmp / "user-data"]
        (tmp / "meta-data").write_text(render_meta_data(seed.hostname), encoding="utf-8")

        if seed.custom_user_data.strip():
            user_data = seed.custom_user_data
        elif seed.user == "cirros":
            user_data = render_cirros_script(seed)
        else:
            user_data = ""
        (tmp / "user-data").write_text(user_data, encoding="utf-8")

        if seed.user != "cirros":
            (tmp / "vendor-data").write_text(render_vendor_data(seed), encoding="utf-8")
            files.append(tmp / "vendor-data")

        result = run(_iso_command(tool, output, files), check=False, capture_output=True)
        if result.returncode != 0:
            raise ManagerError(f"{tool} failed: {(result.stderr or '').strip()}")
    log("DEBUG", f"Cloud-init seed written to {output}")
    return output
