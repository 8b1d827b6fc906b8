"""CLI entry points for nido."""

from __future__ import annotations

import argparse
import time
from pathlib import Path
from typing import List, Optional

from nido.catalog import CatalogManager
from nido.config import Config, load_config
from nido.exceptions import ManagerError
from nido.models import VMOptions
from nido.utils import format_bytes, log
from nido.vm import VMManager


def build_manager(cfg: Config) -> VMManager:
    """Wire a VMManager for ``cfg`` with a catalog rooted at its image dir."""
    catalog = CatalogManager(cfg.image_dir, url=cfg.catalog_url, ttl=cfg.catalog_ttl)
    return VMManager(cfg, catalog=catalog)


def print_vm_table(manager: VMManager) -> None:
    statuses = manager.list()
    if not statuses:
        log("INFO", "No VMs found")
        return
    width = max(len(s.name) for s in statuses)
    for status in statuses:
        vnc = f" vnc={status.vnc_port}" if status.vnc_port else ""
        print(f"  {status.name:<{width}}  {status.state:<8} ssh={status.ssh_port}{vnc} pid={status.pid}")


def print_images(catalog: CatalogManager, refresh: bool = False) -> None:
    data = catalog.refresh() if refresh else catalog.load()
    for image in data.images:
        for version in image.versions:
            aliases = f" ({', '.join(version.aliases)})" if version.aliases else ""
            size = format_bytes(version.size_bytes) if version.size_bytes else "?"
            print(f"  {image.name}:{version.version}{aliases}  {size}  {image.description}")


def print_cache(manager: VMManager) -> None:
    stats = manager.cache_stats()
    for item in manager.cached_images():
        print(f"  {item.name}:{item.version}  {format_bytes(item.size)}  {item.path}")
    log("INFO", f"{stats.total_images} cached image(s), {format_bytes(stats.total_size)} total")
    if stats.oldest is not None and stats.newest is not None:
        oldest = time.strftime("%Y-%m-%d %H:%M", time.localtime(stats.oldest))
        newest = time.strftime("%Y-%m-%d %H:%M", time.localtime(stats.newest))
        log("INFO", f"Oldest: {oldest}, newest: {newest}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nido", description="Local QEMU VM manager")
    parser.add_argument("--root", type=Path, default=None, help="Data root (default: ~/.nido)")
    parser.add_argument("--config", type=Path, default=None, help="Alternate config.yaml")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("doctor", help="Check host prerequisites")
    sub.add_parser("list", help="List VMs")

    spawn = sub.add_parser("spawn", help="Create and boot a VM")
    spawn.add_argument("name")
    spawn.add_argument("source", nargs="?", default=None, help="Template name, disk path or image[:version]")
    spawn.add_argument("--gui", action="store_true", help="Expose a VNC display")
    spawn.add_argument("--memory", type=int, default=None, help="Memory in MiB")
    spawn.add_argument("--cpus", type=int, default=None)
    spawn.add_argument("--user", default=None, help="Login user to provision")
    spawn.add_argument("--user-data", type=Path, default=None, help="Custom cloud-init user-data file")

    for name, text in (("start", "Boot a stopped VM"), ("info", "Show VM details"), ("ssh", "Print SSH command")):
        cmd = sub.add_parser(name, help=text)
        cmd.add_argument("name")
    stop = sub.add_parser("stop", help="Stop a VM")
    stop.add_argument("name")
    stop.add_argument("--force", action="store_true", help="Do not wait for the process to exit")
    delete = sub.add_parser("delete", help="Stop and remove a VM")
    delete.add_argument("name")
    sub.add_parser("prune", help="Remove all stopped VMs")

    template = sub.add_parser("template", help="Create a template from a VM disk")
    template.add_argument("vm")
    template.add_argument("template")
    sub.add_parser("templates", help="List templates")

    images = sub.add_parser("images", help="List catalog images")
    images.add_argument("--refresh", action="store_true", help="Ignore the cached catalog")
    pull = sub.add_parser("pull", help="Download an image into the cache")
    pull.add_argument("ref", help="name[:version]")

    cache = sub.add_parser("cache", help="Inspect or clean the image cache")
    cache_sub = cache.add_subparsers(dest="cache_command")
    cache_sub.add_parser("ls", help="List cached images")
    prune = cache_sub.add_parser("prune", help="Remove cached images")
    prune.add_argument("--unused", action="store_true", help="Keep images backing existing VMs")
    rm = cache_sub.add_parser("rm", help="Remove one cached image")
    rm.add_argument("ref", help="name:version")
    return parser


def _dispatch(args: argparse.Namespace, manager: VMManager) -> int:
    command = args.command
    if command == "doctor":
        reports = manager.doctor()
        for line in reports:
            print(line)
        return 1 if any("[FAIL]" in line for line in reports) else 0
    if command == "list":
        print_vm_table(manager)
    elif command == "spawn":
        options = VMOptions(
            memory_mb=args.memory,
            vcpus=args.cpus,
            user_data_path=args.user_data,
            gui=args.gui,
            ssh_user=args.user,
        )
        manager.spawn(args.name, args.source, options)
        print(manager.ssh_command(args.name))
    elif command == "start":
        manager.start(args.name)
    elif command == "stop":
        manager.stop(args.name, graceful=not args.force)
    elif command == "delete":
        manager.delete(args.name)
    elif command == "prune":
        log("INFO", f"Removed {manager.prune()} stopped VM(s)")
    elif command == "info":
        detail = manager.info(args.name)
        for key, value in vars(detail).items():
            print(f"  {key}: {value}")
    elif command == "ssh":
        print(manager.ssh_command(args.name))
    elif command == "template":
        manager.create_template(args.vm, args.template)
    elif command == "templates":
        for name in manager.list_templates():
            print(f"  {name}")
    elif command == "images":
        assert manager.catalog is not None
        print_images(manager.catalog, refresh=args.refresh)
    elif command == "pull":
        assert manager.catalog is not None
        _, _, path = manager.catalog.pull(args.ref)
        print(path)
    elif command == "cache":
        if args.cache_command == "prune":
            log("INFO", f"Removed {manager.cache_prune(unused_only=args.unused)} cached image(s)")
        elif args.cache_command == "rm":
            name, sep, version = args.ref.partition(":")
            if not sep or not version:
                raise ManagerError(f"Expected name:version, got '{args.ref}'")
            manager.remove_cached_image(name, version)
        else:
            print_cache(manager)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        cfg = load_config(path=args.config, root_dir=args.root)
        if cfg.ssh_dir is None:
            cfg.ssh_dir = Path.home() / ".ssh"
        return _dispatch(args, build_manager(cfg))
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
